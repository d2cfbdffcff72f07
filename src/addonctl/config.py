"""Configuration loader for addonctl.

Configuration values are merged from several sources, lowest priority first:

1. Built-in defaults.
2. ``~/.addonctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``ADDONCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export ADDONCTL_PORTS__BASE=7100
    export ADDONCTL_VERIFICATION__PORT_TIMEOUT=45

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "ADDONCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    f"{ENV_PREFIX}RESOURCES_PATH",
    f"{ENV_PREFIX}APP_PATH",
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Port allocation defaults."""

    base: int = 7000
    search_limit: int = 10

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"base": self.base, "search_limit": self.search_limit}


@dataclass(frozen=True)
class PayloadConfig:
    """Where the deployable addon server comes from and how it is laid out."""

    repo_url: str | None = None
    branch: str = "main"
    descriptor: str = "package.json"
    build_dir: str = "dist"
    entry_point: str = "server.js"
    install_root: Path = Path("/opt/addonctl")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "repo_url": self.repo_url,
            "branch": self.branch,
            "descriptor": self.descriptor,
            "build_dir": self.build_dir,
            "entry_point": self.entry_point,
            "install_root": str(self.install_root),
        }


@dataclass(frozen=True)
class VerificationConfig:
    """Bounded waits used by the liveness checks."""

    active_timeout: float = 15.0
    port_timeout: float = 20.0
    poll_interval: float = 1.0
    journal_lines: int = 50

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "active_timeout": self.active_timeout,
            "port_timeout": self.port_timeout,
            "poll_interval": self.poll_interval,
            "journal_lines": self.journal_lines,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup archive defaults."""

    compression: str = "gzip"
    retention: int = 7

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"compression": self.compression, "retention": self.retention}


@dataclass(frozen=True)
class SSHConfig:
    """Remote transport defaults."""

    port: int = 22
    connect_timeout: float = 15.0
    host_key_policy: str = "auto-add"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "port": self.port,
            "connect_timeout": self.connect_timeout,
            "host_key_policy": self.host_key_policy,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for addonctl."""

    config_file: Path
    state_dir: Path
    registry_file: Path
    instances_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    required_disk_mb: int
    payload: PayloadConfig
    ports: PortsConfig
    verification: VerificationConfig
    backups: BackupConfig
    ssh: SSHConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_file": str(self.registry_file),
            "instances_dir": str(self.instances_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "required_disk_mb": self.required_disk_mb,
            "payload": self.payload.to_dict(),
            "ports": self.ports.to_dict(),
            "verification": self.verification.to_dict(),
            "backups": self.backups.to_dict(),
            "ssh": self.ssh.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.addonctl/config.yml",
    "state_dir": "~/.addonctl",
    "registry_file": None,  # derived from state_dir when absent
    "instances_dir": None,
    "logs_dir": None,
    "runtime_dir": None,
    "templates_dir": None,
    "lock_timeout": 30.0,
    "required_disk_mb": 100,
    "payload": {
        "repo_url": None,
        "branch": "main",
        "descriptor": "package.json",
        "build_dir": "dist",
        "entry_point": "server.js",
        "install_root": "/opt/addonctl",
    },
    "ports": {
        "base": 7000,
        "search_limit": 10,
    },
    "verification": {
        "active_timeout": 15.0,
        "port_timeout": 20.0,
        "poll_interval": 1.0,
        "journal_lines": 50,
    },
    "backups": {
        "compression": "gzip",
        "retention": 7,
    },
    "ssh": {
        "port": 22,
        "connect_timeout": 15.0,
        "host_key_policy": "auto-add",
    },
}


ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "payload": {"repo_url", "branch", "descriptor", "build_dir", "entry_point", "install_root"},
    "ports": {"base", "search_limit"},
    "verification": {"active_timeout", "port_timeout", "poll_interval", "journal_lines"},
    "backups": {"compression", "retention"},
    "ssh": {"port", "connect_timeout", "host_key_policy"},
}
ALLOWED_BACKUP_COMPRESSION = {"gzip", "none"}
ALLOWED_HOST_KEY_POLICIES = {"auto-add", "reject", "warn"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    backups = _as_dict(raw.get("backups"), "backups")
    compression = str(backups.get("compression", "gzip"))
    if compression not in ALLOWED_BACKUP_COMPRESSION:
        allowed_values = ", ".join(sorted(ALLOWED_BACKUP_COMPRESSION))
        raise ConfigError(
            f"Unsupported backup compression '{compression}'. Allowed: {allowed_values}."
        )

    ssh = _as_dict(raw.get("ssh"), "ssh")
    policy = str(ssh.get("host_key_policy", "auto-add"))
    if policy not in ALLOWED_HOST_KEY_POLICIES:
        allowed_values = ", ".join(sorted(ALLOWED_HOST_KEY_POLICIES))
        raise ConfigError(f"Unsupported ssh.host_key_policy '{policy}'. Allowed: {allowed_values}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    registry_file = _derived_path(raw.get("registry_file"), state_dir / "registry.json")
    instances_dir = _derived_path(raw.get("instances_dir"), state_dir / "instances")
    logs_dir = _derived_path(raw.get("logs_dir"), state_dir / "logs")
    runtime_dir = _derived_path(raw.get("runtime_dir"), state_dir / "run")
    templates_dir = _derived_path(raw.get("templates_dir"), state_dir / "templates")
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    payload_mapping = _as_dict(raw.get("payload"), "payload")
    repo_url_value = payload_mapping.get("repo_url")
    repo_url = str(repo_url_value).strip() if repo_url_value else ""
    payload = PayloadConfig(
        repo_url=repo_url or None,
        branch=str(payload_mapping.get("branch", "main")),
        descriptor=str(payload_mapping.get("descriptor", "package.json")),
        build_dir=str(payload_mapping.get("build_dir", "dist")),
        entry_point=str(payload_mapping.get("entry_point", "server.js")),
        install_root=_to_path(payload_mapping.get("install_root", "/opt/addonctl")),
    )

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        base=_expect_port(ports_mapping.get("base"), "ports.base", default=7000),
        search_limit=_expect_int(
            ports_mapping.get("search_limit"), "ports.search_limit", default=10
        ),
    )

    verification_mapping = _as_dict(raw.get("verification"), "verification")
    verification = VerificationConfig(
        active_timeout=_expect_positive_float(
            verification_mapping.get("active_timeout"),
            "verification.active_timeout",
            default=15.0,
        ),
        port_timeout=_expect_positive_float(
            verification_mapping.get("port_timeout"),
            "verification.port_timeout",
            default=20.0,
        ),
        poll_interval=_expect_positive_float(
            verification_mapping.get("poll_interval"),
            "verification.poll_interval",
            default=1.0,
        ),
        journal_lines=_expect_int(
            verification_mapping.get("journal_lines"),
            "verification.journal_lines",
            default=50,
        ),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups = BackupConfig(
        compression=str(backups_mapping.get("compression", "gzip")),
        retention=_expect_int(backups_mapping.get("retention"), "backups.retention", default=7),
    )

    ssh_mapping = _as_dict(raw.get("ssh"), "ssh")
    ssh = SSHConfig(
        port=_expect_port(ssh_mapping.get("port"), "ssh.port", default=22),
        connect_timeout=_expect_positive_float(
            ssh_mapping.get("connect_timeout"), "ssh.connect_timeout", default=15.0
        ),
        host_key_policy=str(ssh_mapping.get("host_key_policy", "auto-add")),
    )

    required_disk_mb = _expect_int(raw.get("required_disk_mb"), "required_disk_mb", default=100)
    if required_disk_mb < 0:
        raise ConfigError("required_disk_mb must be non-negative.")

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_file=registry_file,
        instances_dir=instances_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        required_disk_mb=required_disk_mb,
        payload=payload,
        ports=ports,
        verification=verification,
        backups=backups,
        ssh=ssh,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _derived_path(value: object | None, fallback: Path) -> Path:
    if value in (None, ""):
        return fallback
    return _to_path(value)


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_port(value: object | None, label: str, *, default: int) -> int:
    port = _expect_int(value, label, default=default)
    if not 1 <= port <= 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "PayloadConfig",
    "PortsConfig",
    "SSHConfig",
    "VerificationConfig",
    "load_config",
]
