"""Port allocation and port-binding checks."""
from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import ValidationError
from .runner import CommandRunner
from .state import Registry

LISTEN_QUERY_COMMAND = "ss -ltn 2>/dev/null || netstat -ltn 2>/dev/null"
_PORT_SUFFIX = re.compile(r":(\d+)$")


@dataclass(slots=True)
class PortAllocator:
    """Find ports not allocated to any registered instance."""

    registry: Registry
    base_port: int = 7000

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if not 1 <= self.base_port <= 65535:
            raise ValidationError("Base port must be between 1 and 65535.", field="port")

    def next_available(
        self,
        start: int | None = None,
        *,
        max_attempts: int = 100,
        exclude_id: str | None = None,
    ) -> int:
        """Return the first unallocated port at or after *start*."""
        candidate = self.base_port if start is None else start
        for _ in range(max_attempts):
            if candidate > 65535:
                break
            if not self.registry.port_in_use(candidate, exclude_id=exclude_id):
                return candidate
            candidate += 1
        raise ValidationError(
            f"No free port found within {max_attempts} attempts from {start or self.base_port}.",
            field="port",
        )


def parse_listening_ports(output: str) -> set[int]:
    """Extract listening TCP ports from ``ss -ltn`` or ``netstat -ltn`` output."""
    ports: set[int] = set()
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 4:
            continue
        match = _PORT_SUFFIX.search(parts[3])
        if match:
            ports.add(int(match.group(1)))
    return ports


def port_is_bound(runner: CommandRunner, port: int) -> tuple[bool, str]:
    """Return whether *port* is bound on the target plus the raw listing output."""
    result = runner.execute(LISTEN_QUERY_COMMAND)
    output = result.stdout
    return port in parse_listening_ports(output), output


__all__ = [
    "LISTEN_QUERY_COMMAND",
    "PortAllocator",
    "parse_listening_ports",
    "port_is_bound",
]
