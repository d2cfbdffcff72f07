"""Pre-flight validation of instance name, port and domain.

:class:`ConflictGuard` is consulted before any connection is opened or any
host is touched. It fails on the first problem with a
:class:`~addonctl.errors.ValidationError` that names the offending field and
suggests an alternative.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from .errors import ValidationError
from .ports import PortAllocator
from .runner import CommandRunner
from .state import Registry
from .state.models import SERVICE_PREFIX

LOGGER = logging.getLogger(__name__)

MAX_NAME_LENGTH = 50
_NAME_PATTERN = re.compile(r"^[A-Za-z0-9\s_-]+$")
_DOMAIN_PATTERN = re.compile(
    r"^(?:[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,}$"
    r"|^localhost$"
    r"|^(?:\d{1,3}\.){3}\d{1,3}$"
)
_UNIT_LINE = re.compile(r"^\W*(\S+)\.service\b")


def validate_name(name: str) -> str:
    """Return the trimmed *name* or raise when it is not acceptable."""
    trimmed = name.strip()
    if not trimmed:
        raise ValidationError("Instance name cannot be empty.", field="name")
    if len(trimmed) > MAX_NAME_LENGTH:
        raise ValidationError(
            f"Instance name must be {MAX_NAME_LENGTH} characters or less.",
            field="name",
        )
    if not _NAME_PATTERN.match(trimmed):
        raise ValidationError(
            "Instance name can only contain letters, numbers, spaces, hyphens and underscores.",
            field="name",
        )
    return trimmed


def validate_port(port: int) -> int:
    """Return *port* or raise when it is outside 1-65535."""
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise ValidationError("Port must be a number between 1 and 65535.", field="port")
    return port


def validate_domain(domain: str) -> str:
    """Return the normalised *domain* or raise when it is malformed."""
    trimmed = domain.strip().lower()
    if not trimmed:
        raise ValidationError("Domain cannot be empty.", field="domain")
    if not _DOMAIN_PATTERN.match(trimmed):
        raise ValidationError(f"Invalid domain format: '{domain}'.", field="domain")
    return trimmed


@dataclass(slots=True)
class ConflictGuard:
    """Check name/port/domain against format rules and the registry."""

    registry: Registry
    ports: PortAllocator
    port_search_limit: int = 10

    def validate(
        self,
        name: str,
        port: int,
        domain: str,
        *,
        exclude_id: str | None = None,
    ) -> None:
        """Raise :class:`ValidationError` on the first invalid or colliding field."""
        name = validate_name(name)
        existing = self.registry.get_by_name(name)
        if existing is not None and existing.id != exclude_id:
            raise ValidationError(
                f"Instance name '{name}' is already in use by instance '{existing.id}'.",
                field="name",
                suggestion=f"Try a different name like '{name} 2' or '{name}-backup'.",
            )

        port = validate_port(port)
        holder = next(
            (
                item
                for item in self.registry.list_instances()
                if item.port == port and item.id != exclude_id
            ),
            None,
        )
        if holder is not None:
            raise ValidationError(
                f"Port {port} is already in use by instance '{holder.name}'.",
                field="port",
                suggestion=f"Try using port {self._suggest_port(port, exclude_id)} instead.",
            )

        domain = validate_domain(domain)
        owner = next(
            (
                item
                for item in self.registry.list_instances()
                if item.domain.lower() == domain and item.id != exclude_id
            ),
            None,
        )
        if owner is not None:
            raise ValidationError(
                f"Domain '{domain}' is already in use by instance '{owner.name}'.",
                field="domain",
                suggestion="Each instance needs its own domain; use a subdomain "
                f"such as '{_subdomain_hint(name, domain)}'.",
            )

    def detect_orphaned_services(self, runner: CommandRunner) -> list[str]:
        """Return host services named like ours that the registry does not know.

        The lookup is best effort; failures are logged and produce an empty list.
        """
        result = runner.execute(
            f"systemctl list-units --all --type=service --no-legend --plain '{SERVICE_PREFIX}-*'"
        )
        if not result.ok:
            LOGGER.warning("Could not list services for orphan detection: %s", result.output)
            return []
        registered = {item.service_name for item in self.registry.list_instances()}
        orphaned: list[str] = []
        for line in result.stdout.splitlines():
            match = _UNIT_LINE.match(line)
            if not match:
                continue
            unit = match.group(1)
            if unit.startswith(f"{SERVICE_PREFIX}-") and unit not in registered:
                orphaned.append(unit)
        for unit in orphaned:
            LOGGER.warning("Service '%s' exists on %s but is not registered", unit, runner.target)
        return orphaned

    def _suggest_port(self, port: int, exclude_id: str | None) -> int:
        try:
            return self.ports.next_available(
                port + 1,
                max_attempts=self.port_search_limit,
                exclude_id=exclude_id,
            )
        except ValidationError:
            return port + 1


def _subdomain_hint(name: str, domain: str) -> str:
    label = re.sub(r"[^a-z0-9-]", "-", name.strip().lower()).strip("-") or "addon"
    if re.match(r"^(?:\d{1,3}\.){3}\d{1,3}$", domain) or domain == "localhost":
        return f"{label}.example.org"
    return f"{label}.{domain}"


__all__ = [
    "ConflictGuard",
    "MAX_NAME_LENGTH",
    "validate_domain",
    "validate_name",
    "validate_port",
]
