"""Operating system and distribution detection run through a command runner."""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from .runner import CommandRunner

_OS_RELEASE_ID = re.compile(r"^ID=(.+)$", re.MULTILINE)
_OS_RELEASE_VERSION = re.compile(r"^VERSION_ID=(.+)$", re.MULTILINE)


class OperatingSystem(Enum):
    """Kernel families the tool can recognise."""

    LINUX = "linux"
    MACOS = "macos"
    WINDOWS = "windows"
    UNKNOWN = "unknown"


class Distribution(Enum):
    """Linux distributions with known package managers."""

    UBUNTU = "ubuntu"
    DEBIAN = "debian"
    RASPBIAN = "raspbian"
    FEDORA = "fedora"
    CENTOS = "centos"
    ARCH = "arch"
    UNKNOWN = "unknown"

    @property
    def package_manager(self) -> str | None:
        """Return the package manager binary used on this distribution."""
        if self in {Distribution.UBUNTU, Distribution.DEBIAN, Distribution.RASPBIAN}:
            return "apt-get"
        if self in {Distribution.FEDORA, Distribution.CENTOS}:
            return "yum"
        if self is Distribution.ARCH:
            return "pacman"
        return None


@dataclass(frozen=True, slots=True)
class SystemInfo:
    """Detection results for a target host."""

    os: OperatingSystem
    arch: str
    release: str
    distro: Distribution = Distribution.UNKNOWN
    distro_version: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "os": self.os.value,
            "arch": self.arch,
            "release": self.release,
            "distro": self.distro.value,
            "distro_version": self.distro_version,
        }


def detect_system(runner: CommandRunner) -> SystemInfo:
    """Identify the target's kernel, architecture and distribution."""
    kernel = runner.execute("uname -s").stdout.strip().lower()
    if "linux" in kernel:
        os_family = OperatingSystem.LINUX
    elif "darwin" in kernel:
        os_family = OperatingSystem.MACOS
    elif any(marker in kernel for marker in ("mingw", "msys", "cygwin")):
        os_family = OperatingSystem.WINDOWS
    else:
        os_family = OperatingSystem.UNKNOWN

    arch = runner.execute("uname -m").stdout.strip() or "unknown"
    release = runner.execute("uname -r").stdout.strip()

    distro = Distribution.UNKNOWN
    distro_version: str | None = None
    if os_family is OperatingSystem.LINUX:
        os_release = runner.execute("cat /etc/os-release")
        if os_release.ok:
            distro, distro_version = parse_os_release(os_release.stdout)

    return SystemInfo(
        os=os_family,
        arch=arch,
        release=release,
        distro=distro,
        distro_version=distro_version,
    )


def parse_os_release(content: str) -> tuple[Distribution, str | None]:
    """Map ``/etc/os-release`` content to a :class:`Distribution`."""
    version_match = _OS_RELEASE_VERSION.search(content)
    version = version_match.group(1).strip().strip("'\"") if version_match else None
    id_match = _OS_RELEASE_ID.search(content)
    if not id_match:
        return Distribution.UNKNOWN, version
    identifier = id_match.group(1).strip().strip("'\"").lower()
    # Raspberry Pi OS reports ID=raspbian; check it before the debian family.
    for distro in (
        Distribution.RASPBIAN,
        Distribution.UBUNTU,
        Distribution.DEBIAN,
        Distribution.FEDORA,
        Distribution.CENTOS,
        Distribution.ARCH,
    ):
        if distro.value in identifier:
            return distro, version
    return Distribution.UNKNOWN, version


__all__ = ["Distribution", "OperatingSystem", "SystemInfo", "detect_system", "parse_os_release"]
