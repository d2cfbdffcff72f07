"""Prerequisite checks and package installation on the target host."""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..errors import ExecutionError
from ..instance_config import FeatureSettings
from ..osinfo import Distribution
from ..runner import CommandRunner
from ..versioning import VersionTriple

LOGGER = logging.getLogger(__name__)

_VERSION_IN_TEXT = re.compile(r"v?(\d+(?:\.\d+){0,2})")
NODE_SETUP_SCRIPT = "setup_18.x"
_INDEX_REFRESH = {
    "apt-get": "apt-get update -y",
    "yum": "yum makecache -y",
    "pacman": "pacman -Sy --noconfirm",
}


@dataclass(frozen=True, slots=True)
class Prerequisite:
    """A tool the payload or a provisioning step needs."""

    name: str
    check_command: str
    packages: dict[str, tuple[str, ...]] = field(default_factory=dict)
    minimum: str | None = None


@dataclass(slots=True)
class PrerequisiteCheck:
    """Result of checking one prerequisite."""

    name: str
    installed: bool
    version: str | None = None
    minimum: str | None = None

    @property
    def satisfied(self) -> bool:
        """``True`` when installed and at or above the minimum version."""
        if not self.installed:
            return False
        if self.minimum is None or self.version is None:
            return True
        return VersionTriple.parse(self.version) >= VersionTriple.parse(self.minimum)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "installed": self.installed,
            "version": self.version,
            "minimum": self.minimum,
            "satisfied": self.satisfied,
        }


NODE = Prerequisite("node", "node --version", minimum="16.0.0")
NPM = Prerequisite(
    "npm",
    "npm --version",
    {"apt-get": ("npm",), "yum": ("npm",), "pacman": ("npm",)},
    minimum="8.0.0",
)
GIT = Prerequisite(
    "git", "git --version", {"apt-get": ("git",), "yum": ("git",), "pacman": ("git",)}
)
NGINX = Prerequisite(
    "nginx", "nginx -v", {"apt-get": ("nginx",), "yum": ("nginx",), "pacman": ("nginx",)}
)
CERTBOT = Prerequisite(
    "certbot",
    "certbot --version",
    {
        "apt-get": ("certbot", "python3-certbot-nginx"),
        "yum": ("certbot", "python3-certbot-nginx"),
        "pacman": ("certbot", "certbot-nginx"),
    },
)
UFW = Prerequisite(
    "ufw", "ufw --version", {"apt-get": ("ufw",), "yum": ("ufw",), "pacman": ("ufw",)}
)
FAIL2BAN = Prerequisite(
    "fail2ban",
    "fail2ban-client --version",
    {"apt-get": ("fail2ban",), "yum": ("fail2ban",), "pacman": ("fail2ban",)},
)


def required_prerequisites(
    features: FeatureSettings,
    *,
    tls: bool | None = None,
) -> list[Prerequisite]:
    """Return the prerequisites needed for the enabled *features*."""
    use_tls = features.tls if tls is None else tls
    items = [NODE, NPM, GIT, NGINX]
    if use_tls:
        items.append(CERTBOT)
    if features.firewall:
        items.append(UFW)
    if features.intrusion_prevention:
        items.append(FAIL2BAN)
    return items


def extract_version(output: str) -> str | None:
    """Return the first dotted version number found in *output*."""
    match = _VERSION_IN_TEXT.search(output)
    return match.group(1) if match else None


@dataclass(slots=True)
class PrerequisiteProvider:
    """Check for and install missing prerequisites."""

    runner: CommandRunner
    distro: Distribution = Distribution.UNKNOWN

    def check(self, items: Iterable[Prerequisite]) -> list[PrerequisiteCheck]:
        """Check every item; nothing is installed."""
        checks: list[PrerequisiteCheck] = []
        for item in items:
            # ``nginx -v`` reports on stderr.
            result = self.runner.execute(f"{item.check_command} 2>&1")
            version = extract_version(result.stdout) if result.ok else None
            checks.append(
                PrerequisiteCheck(
                    name=item.name,
                    installed=result.ok,
                    version=version,
                    minimum=item.minimum,
                )
            )
        missing = [check.name for check in checks if not check.satisfied]
        LOGGER.info(
            "Prerequisites on %s: %d checked, %d missing%s",
            self.runner.target,
            len(checks),
            len(missing),
            f" ({', '.join(missing)})" if missing else "",
        )
        return checks

    def install_missing(
        self,
        items: Iterable[Prerequisite],
        checks: Iterable[PrerequisiteCheck],
    ) -> list[str]:
        """Install every unsatisfied prerequisite and return their names."""
        by_name = {item.name: item for item in items}
        missing = [check.name for check in checks if not check.satisfied and check.name in by_name]
        if not missing:
            LOGGER.info("All prerequisites already installed")
            return []

        manager = self.distro.package_manager
        if manager is None:
            raise ExecutionError(
                f"Cannot install {', '.join(missing)}: "
                f"unsupported distribution '{self.distro.value}'."
            )
        self._refresh_index(manager)
        for name in missing:
            self.runner.execute_privileged(self.install_command(by_name[name])).check(
                f"Installing {name}"
            )
            LOGGER.info("Installed prerequisite %s", name)
        return missing

    def install_command(self, item: Prerequisite) -> str:
        """Return the privileged shell command installing *item*."""
        manager = self.distro.package_manager
        if item is NODE:
            if manager == "apt-get":
                return (
                    f"curl -fsSL https://deb.nodesource.com/{NODE_SETUP_SCRIPT} | bash - && "
                    "apt-get install -y nodejs"
                )
            if manager == "yum":
                return (
                    f"curl -fsSL https://rpm.nodesource.com/{NODE_SETUP_SCRIPT} | bash - && "
                    "yum install -y nodejs"
                )
            if manager == "pacman":
                return "pacman -S --noconfirm nodejs npm"
            return "apt-get install -y nodejs npm"
        packages = " ".join(item.packages.get(manager or "apt-get", (item.name,)))
        if manager == "pacman":
            return f"pacman -S --noconfirm {packages}"
        return f"{manager or 'apt-get'} install -y {packages}"

    def _refresh_index(self, manager: str) -> None:
        command = _INDEX_REFRESH.get(manager)
        if command is not None:
            self.runner.execute_privileged(command).check("Refreshing package index")


__all__ = [
    "CERTBOT",
    "FAIL2BAN",
    "GIT",
    "NGINX",
    "NODE",
    "NPM",
    "Prerequisite",
    "PrerequisiteCheck",
    "PrerequisiteProvider",
    "UFW",
    "extract_version",
    "required_prerequisites",
]
