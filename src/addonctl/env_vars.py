"""The payload's service environment, described by a fixed table.

Every variable the payload understands is an :class:`EnvVar` member carrying
an :class:`EnvVarDescriptor`. Building, validating, generating and redacting
environment values all consult the same table.

Merge priority, lowest first: descriptor defaults, values derived from the
instance configuration (``descriptor.source`` is a dotted attribute path into
:class:`~addonctl.instance_config.InstanceConfig`), then explicit overrides.
An override of ``None`` drops the override so the config/default value applies.
"""
from __future__ import annotations

import re
import secrets
import string
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum

from .errors import ValidationError
from .instance_config import InstanceConfig

_DOMAIN_PATTERN = (
    r"^(?:[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,}$"
    r"|^localhost$|^(?:\d{1,3}\.){3}\d{1,3}$"
)
PASSWORD_LENGTH = 16
REDACTED = "***"


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Return a random alphanumeric password."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


@dataclass(frozen=True, slots=True)
class EnvVarDescriptor:
    """Metadata for one environment variable."""

    name: str
    description: str
    kind: str = "string"
    default: str | None = None
    minimum: int | None = None
    maximum: int | None = None
    min_length: int | None = None
    required: bool = False
    sensitive: bool = False
    generator: Callable[[], str] | None = None
    source: str = "system"
    pattern: str | None = None

    @property
    def generateable(self) -> bool:
        """``True`` when a value can be generated for this variable."""
        return self.generator is not None


class EnvVar(Enum):
    """Environment variables consumed by the payload service."""

    NODE_ENV = EnvVarDescriptor(
        "NODE_ENV",
        "Node.js environment",
        default="production",
        required=True,
    )
    PORT = EnvVarDescriptor(
        "PORT",
        "Addon server port",
        kind="integer",
        default="7000",
        minimum=1024,
        maximum=65535,
        required=True,
        source="addon.port",
    )
    RD_API_TOKEN = EnvVarDescriptor(
        "RD_API_TOKEN",
        "Real-Debrid API token",
        min_length=1,
        required=True,
        sensitive=True,
        source="secrets.real_debrid_token",
    )
    ADDON_PASSWORD = EnvVarDescriptor(
        "ADDON_PASSWORD",
        "Addon authentication password",
        min_length=8,
        required=True,
        sensitive=True,
        generator=generate_password,
        source="addon.password",
    )
    ADDON_DOMAIN = EnvVarDescriptor(
        "ADDON_DOMAIN",
        "Addon domain for manifest base URL",
        min_length=1,
        source="addon.domain",
        pattern=_DOMAIN_PATTERN,
    )
    TORRENT_LIMIT = EnvVarDescriptor(
        "TORRENT_LIMIT",
        "Maximum number of torrents to process",
        kind="integer",
        default="15",
        minimum=1,
        maximum=50,
        required=True,
        source="addon.torrent_limit",
    )
    AVAILABILITY_CHECK_LIMIT = EnvVarDescriptor(
        "AVAILABILITY_CHECK_LIMIT",
        "Number of torrents to check for instant availability",
        kind="integer",
        default="15",
        minimum=5,
        maximum=50,
        source="addon.availability_check_limit",
    )
    MAX_STREAMS = EnvVarDescriptor(
        "MAX_STREAMS",
        "Maximum number of streams to return",
        kind="integer",
        default="5",
        minimum=1,
        maximum=20,
        source="addon.max_streams",
    )
    MAX_CONCURRENCY = EnvVarDescriptor(
        "MAX_CONCURRENCY",
        "Number of torrents to process in parallel",
        kind="integer",
        default="3",
        minimum=1,
        maximum=10,
        source="addon.max_concurrency",
    )

    @property
    def descriptor(self) -> EnvVarDescriptor:
        """Return the member's descriptor."""
        return self.value


def descriptor(name: str) -> EnvVarDescriptor:
    """Return the descriptor for *name* or raise :class:`ValidationError`."""
    try:
        return EnvVar[name].descriptor
    except KeyError:
        valid = ", ".join(member.name for member in EnvVar)
        raise ValidationError(
            f"Unknown environment variable: {name}.",
            field=name,
            suggestion=f"Valid variables: {valid}.",
        ) from None


def defaults() -> dict[str, str]:
    """Return every variable that has a default value."""
    return {
        member.name: member.descriptor.default
        for member in EnvVar
        if member.descriptor.default is not None
    }


def from_config(config: InstanceConfig) -> dict[str, str]:
    """Return the values derived from *config* (empty values are omitted)."""
    values: dict[str, str] = {"NODE_ENV": "production"}
    for member in EnvVar:
        meta = member.descriptor
        if meta.source == "system":
            continue
        value = _resolve(config, meta.source)
        if value is None or value == "":
            continue
        values[member.name] = str(value)
    return values


def merge(
    config: InstanceConfig,
    overrides: Mapping[str, str | None] | None = None,
) -> dict[str, str]:
    """Return the effective environment for *config*."""
    merged = defaults()
    merged.update(from_config(config))
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        merged[key] = str(value)
    ordered = {member.name: merged.pop(member.name) for member in EnvVar if member.name in merged}
    ordered.update(merged)
    return ordered


def source_of(
    name: str,
    config: InstanceConfig,
    overrides: Mapping[str, str | None] | None = None,
) -> str:
    """Return ``override``, ``config`` or ``default`` for where *name* comes from."""
    if overrides and overrides.get(name) is not None:
        return "override"
    if name in from_config(config):
        return "config"
    return "default"


@dataclass(frozen=True, slots=True)
class EnvEntry:
    """Effective value of one variable and where it came from."""

    name: str
    value: str | None
    source: str
    description: str
    sensitive: bool = False
    required: bool = False
    generateable: bool = False

    def display_value(self, *, reveal: bool = False) -> str:
        """Return the value for display, masking secrets unless *reveal*."""
        if not self.value:
            return ""
        if self.sensitive and not reveal:
            return REDACTED
        return self.value

    def to_dict(self, *, reveal: bool = False) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "value": self.display_value(reveal=reveal) or None,
            "source": self.source,
            "description": self.description,
            "sensitive": self.sensitive,
            "required": self.required,
            "generateable": self.generateable,
        }


def describe(
    config: InstanceConfig,
    overrides: Mapping[str, str | None] | None = None,
) -> list[EnvEntry]:
    """Return one :class:`EnvEntry` per table member, in table order."""
    if overrides is None:
        overrides = config.addon.environment
    effective = merge(config, overrides)
    entries: list[EnvEntry] = []
    for member in EnvVar:
        meta = member.descriptor
        entries.append(
            EnvEntry(
                name=member.name,
                value=effective.get(member.name),
                source=source_of(member.name, config, overrides),
                description=meta.description,
                sensitive=meta.sensitive,
                required=meta.required,
                generateable=meta.generateable,
            )
        )
    return entries


def validate(name: str, value: str | None) -> str:
    """Validate *value* for variable *name* and return it stripped.

    Raises :class:`ValidationError` with ``field`` set to *name*.
    """
    meta = descriptor(name)
    text = "" if value is None else str(value).strip()
    if not text:
        if meta.required:
            raise ValidationError(f"{name} is required. {meta.description}.", field=name)
        return text

    if meta.kind == "integer":
        try:
            number = int(text)
        except ValueError:
            raise ValidationError(
                f"{name} must be an integer number. Received: '{text}'.", field=name
            ) from None
        if meta.minimum is not None and number < meta.minimum:
            raise ValidationError(
                f"{name} must be at least {meta.minimum} (received: {number}).", field=name
            )
        if meta.maximum is not None and number > meta.maximum:
            raise ValidationError(
                f"{name} must be at most {meta.maximum} (received: {number}).", field=name
            )
    elif meta.min_length is not None and len(text) < meta.min_length:
        raise ValidationError(
            f"{name} must be at least {meta.min_length} characters long.",
            field=name,
        )

    if meta.pattern is not None and not re.match(meta.pattern, text):
        raise ValidationError(f"{name} has an invalid format: '{text}'.", field=name)
    return text


def validate_all(values: Mapping[str, str | None]) -> dict[str, str]:
    """Validate every entry of *values*; return a mapping of name to error message."""
    errors: dict[str, str] = {}
    for name, value in values.items():
        try:
            validate(name, value)
        except ValidationError as exc:
            errors[name] = str(exc)
    return errors


def missing_required(values: Mapping[str, str]) -> list[str]:
    """Return required variable names absent from *values*."""
    return [
        member.name
        for member in EnvVar
        if member.descriptor.required and not values.get(member.name)
    ]


def generate(name: str) -> str:
    """Generate a value for *name*; only generateable variables are accepted."""
    meta = descriptor(name)
    if meta.generator is None:
        raise ValidationError(f"{name} cannot be generated.", field=name)
    return meta.generator()


def redact(values: Mapping[str, str | None]) -> dict[str, str | None]:
    """Return a copy of *values* with sensitive entries masked."""
    masked: dict[str, str | None] = {}
    for key, value in values.items():
        member = EnvVar.__members__.get(key)
        if member is not None and member.descriptor.sensitive and value:
            masked[key] = REDACTED
        else:
            masked[key] = value
    return masked


def unit_environment(values: Mapping[str, str]) -> list[str]:
    """Return ``KEY=value`` lines for a service unit, in table order."""
    return [f"{key}={value}" for key, value in values.items()]


def _resolve(config: InstanceConfig, path: str) -> object:
    current: object = config
    for part in path.split("."):
        current = getattr(current, part, None)
        if current is None:
            return None
    return current


__all__ = [
    "EnvEntry",
    "EnvVar",
    "EnvVarDescriptor",
    "PASSWORD_LENGTH",
    "defaults",
    "describe",
    "descriptor",
    "from_config",
    "generate",
    "generate_password",
    "merge",
    "missing_required",
    "redact",
    "source_of",
    "unit_environment",
    "validate",
    "validate_all",
]
