"""Systemd provider for managing instance service units on the target."""
from __future__ import annotations

import logging
import re
import shlex
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath

from ..runner import CommandResult, CommandRunner
from ..templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

_MAIN_PID = re.compile(r"Main PID:\s+(\d+)")
_CPU = re.compile(r"CPU:\s+([\d.]+(?:ms|s|min|h)?)", re.IGNORECASE)
_UPTIME = re.compile(r"Active:.*since\s+[^;]+;\s+(.+?)\s*$", re.MULTILINE)


class ServiceState(str, Enum):
    """Coarse service state as reported by ``systemctl is-active``."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    FAILED = "failed"
    ACTIVATING = "activating"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, output: str) -> ServiceState:
        """Map ``is-active`` output onto a state."""
        value = output.strip().splitlines()[0].strip() if output.strip() else ""
        for member in cls:
            if member.value == value:
                return member
        if value in {"deactivating", "reloading"}:
            return cls.ACTIVATING
        return cls.UNKNOWN


@dataclass(slots=True)
class ServiceInfo:
    """Snapshot of a service unit."""

    state: ServiceState
    enabled: bool
    pid: int | None = None
    uptime: str | None = None
    memory: str | None = None
    cpu: str | None = None

    @property
    def is_active(self) -> bool:
        """``True`` when the unit reports ``active``."""
        return self.state is ServiceState.ACTIVE

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "enabled": self.enabled,
            "pid": self.pid,
            "uptime": self.uptime,
            "memory": self.memory,
            "cpu": self.cpu,
        }


def parse_status_details(output: str) -> dict[str, object]:
    """Extract main PID, CPU time and uptime from ``systemctl status`` output."""
    details: dict[str, object] = {}
    pid = _MAIN_PID.search(output)
    if pid:
        details["pid"] = int(pid.group(1))
    cpu = _CPU.search(output)
    if cpu:
        details["cpu"] = cpu.group(1)
    uptime = _UPTIME.search(output)
    if uptime:
        details["uptime"] = uptime.group(1).removesuffix(" ago").strip()
    return details


def format_rss(output: str) -> str | None:
    """Turn ``ps -o rss=`` kilobytes into a megabyte string."""
    text = output.strip()
    if not text.isdigit():
        return None
    return f"{int(text) / 1024:.1f}MB"


@dataclass(slots=True)
class SystemdProvider:
    """Render and control the service unit of one instance."""

    runner: CommandRunner
    templates: TemplateEngine
    unit_name: str
    systemd_dir: str = "/etc/systemd/system"
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    @property
    def unit_file(self) -> str:
        """Return ``<name>.service``."""
        return f"{self.unit_name}.service"

    @property
    def unit_path(self) -> str:
        """Return the full path of the unit file on the target."""
        return str(PurePosixPath(self.systemd_dir) / self.unit_file)

    def render_unit(self, context: Mapping[str, object]) -> str:
        """Return unit file text for *context*."""
        merged = {"unit_name": self.unit_name, **context}
        return self.templates.render_to_string("systemd/service.j2", merged)

    def install_unit(self, context: Mapping[str, object]) -> bool:
        """Write the rendered unit to the target; return ``True`` when it changed."""
        content = self.render_unit(context)
        current = self.runner.read_text(self.unit_path, privileged=True)
        if current == content:
            return False
        self.runner.write_text(self.unit_path, content, mode=0o644).check(
            f"Writing service unit {self.unit_path}"
        )
        self.daemon_reload()
        return True

    def unit_exists(self) -> bool:
        """Return ``True`` when the unit file is present."""
        return self.runner.path_exists(self.unit_path)

    def daemon_reload(self) -> CommandResult:
        """Ask systemd to re-read unit files."""
        return self._systemctl("daemon-reload", unit=False).check("systemctl daemon-reload")

    def start(self) -> CommandResult:
        """Start the unit."""
        return self._systemctl("start").check(f"Starting {self.unit_file}")

    def stop(self) -> CommandResult:
        """Stop the unit."""
        return self._systemctl("stop").check(f"Stopping {self.unit_file}")

    def restart(self) -> CommandResult:
        """Restart the unit."""
        return self._systemctl("restart").check(f"Restarting {self.unit_file}")

    def enable(self) -> CommandResult:
        """Enable the unit at boot."""
        return self._systemctl("enable").check(f"Enabling {self.unit_file}")

    def disable(self) -> CommandResult:
        """Disable the unit at boot."""
        return self._systemctl("disable").check(f"Disabling {self.unit_file}")

    def is_active(self) -> bool:
        """Return ``True`` when ``systemctl is-active`` reports ``active``."""
        result = self._systemctl("is-active", privileged=False)
        return ServiceState.parse(result.stdout) is ServiceState.ACTIVE

    def is_enabled(self) -> bool:
        """Return ``True`` when the unit is enabled."""
        result = self._systemctl("is-enabled", privileged=False)
        return result.stdout.strip() == "enabled"

    def status(self) -> ServiceInfo:
        """Return a :class:`ServiceInfo` snapshot; detail lookups are best effort."""
        state = ServiceState.parse(self._systemctl("is-active", privileged=False).stdout)
        info = ServiceInfo(state=state, enabled=self.is_enabled())
        detail = self._systemctl("status", extra="--no-pager", privileged=False)
        if detail.stdout:
            parsed = parse_status_details(detail.stdout)
            pid = parsed.get("pid")
            info.pid = pid if isinstance(pid, int) and pid > 0 else None
            info.cpu = _opt(parsed.get("cpu"))
            info.uptime = _opt(parsed.get("uptime"))
        if info.pid is not None:
            rss = self.runner.execute(f"ps -p {info.pid} -o rss=")
            if rss.ok:
                info.memory = format_rss(rss.stdout)
            else:
                LOGGER.debug("Could not read memory for pid %s: %s", info.pid, rss.output)
        return info

    def wait_active(self, timeout: float, poll_interval: float = 1.0) -> bool:
        """Poll until the unit is active or *timeout* seconds elapse."""
        deadline = self.clock() + timeout
        while True:
            if self.is_active():
                return True
            if self.clock() >= deadline:
                return False
            self.sleep(poll_interval)

    def logs(self, lines: int = 50, *, follow: bool = False) -> str | Iterator[str]:
        """Return the last *lines* journal lines, or a line iterator when following."""
        command = (
            f"{self.journalctl_bin} -u {shlex.quote(self.unit_file)} "
            f"-n {int(lines)} --no-pager"
        )
        if follow:
            return self.runner.stream(f"{command} --follow")
        result = self.runner.execute_privileged(command)
        return result.stdout if result.ok else result.output

    def remove(self) -> None:
        """Stop, disable and delete the unit file."""
        self._systemctl("stop")
        self._systemctl("disable")
        self.runner.remove_path(self.unit_path).check(f"Removing {self.unit_path}")
        self._systemctl("daemon-reload", unit=False)

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        *,
        unit: bool = True,
        extra: str = "",
        privileged: bool = True,
    ) -> CommandResult:
        parts = [self.systemctl_bin, command]
        if unit:
            parts.append(shlex.quote(self.unit_file))
        if extra:
            parts.append(extra)
        line = " ".join(parts)
        if privileged:
            return self.runner.execute_privileged(line)
        return self.runner.execute(line)


def _opt(value: object) -> str | None:
    return str(value) if value not in (None, "") else None


__all__ = [
    "ServiceInfo",
    "ServiceState",
    "SystemdProvider",
    "format_rss",
    "parse_status_details",
]
