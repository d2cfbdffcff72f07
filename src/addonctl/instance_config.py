"""Per-instance configuration documents.

Each managed instance owns a YAML file (referenced by ``Instance.config_path``)
describing how and where it is installed, which hardening features are enabled
and which secrets the payload needs. :class:`InstanceConfigStore` reads the file
merged over defaults and writes it back atomically; saving can optionally
re-render the service unit through a caller supplied hook.
"""
from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .errors import AddonctlError, ValidationError

LOGGER = logging.getLogger(__name__)

INSTALLATION_TYPES = frozenset({"local", "remote"})
ACCESS_METHODS = frozenset({"custom_domain", "duckdns", "static_ip_domain", "local_network"})


@dataclass(slots=True)
class TargetConfig:
    """Connection details for a remote installation."""

    host: str | None = None
    port: int = 22
    username: str | None = None
    key_path: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "key_path": self.key_path,
        }


@dataclass(slots=True)
class InstallationSettings:
    """Where the instance is installed and how it is reached."""

    type: str = "local"
    access_method: str = "custom_domain"
    target: TargetConfig = field(default_factory=TargetConfig)

    @property
    def is_remote(self) -> bool:
        """``True`` for SSH installations."""
        return self.type == "remote"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "type": self.type,
            "access_method": self.access_method,
            "target": self.target.to_dict(),
        }


@dataclass(slots=True)
class AddonSettings:
    """Payload level settings, most of which become service environment."""

    name: str = "My Private Addon"
    version: str | None = None
    domain: str = ""
    password: str = ""
    provider: str = "real-debrid"
    port: int = 7000
    torrent_limit: int = 15
    availability_check_limit: int = 15
    max_streams: int = 5
    max_concurrency: int = 3
    environment: dict[str, str | None] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "version": self.version,
            "domain": self.domain,
            "password": self.password,
            "provider": self.provider,
            "port": self.port,
            "torrent_limit": self.torrent_limit,
            "availability_check_limit": self.availability_check_limit,
            "max_streams": self.max_streams,
            "max_concurrency": self.max_concurrency,
            "environment": dict(self.environment),
        }


@dataclass(slots=True)
class FeatureSettings:
    """Optional provisioning steps."""

    firewall: bool = True
    intrusion_prevention: bool = True
    tls: bool = True
    dynamic_dns: bool = False
    backups: bool = True
    auto_start: bool = True
    rate_limiting: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "firewall": self.firewall,
            "intrusion_prevention": self.intrusion_prevention,
            "tls": self.tls,
            "dynamic_dns": self.dynamic_dns,
            "backups": self.backups,
            "auto_start": self.auto_start,
            "rate_limiting": self.rate_limiting,
        }


@dataclass(slots=True)
class PathSettings:
    """Target host locations; empty values are derived at install time."""

    addon_directory: str = ""
    nginx_config: str = ""
    service_file: str = ""
    backups: str = ""
    ssh_key: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "addon_directory": self.addon_directory,
            "nginx_config": self.nginx_config,
            "service_file": self.service_file,
            "backups": self.backups,
            "ssh_key": self.ssh_key,
        }


@dataclass(slots=True)
class SecretSettings:
    """Credentials stored alongside the instance (file mode 0600)."""

    real_debrid_token: str | None = None
    duckdns_token: str | None = None
    ssh_password: str | None = None
    sudo_password: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "real_debrid_token": self.real_debrid_token,
            "duckdns_token": self.duckdns_token,
            "ssh_password": self.ssh_password,
            "sudo_password": self.sudo_password,
        }


@dataclass(slots=True)
class InstanceConfig:
    """Complete configuration of one instance."""

    installation: InstallationSettings = field(default_factory=InstallationSettings)
    addon: AddonSettings = field(default_factory=AddonSettings)
    features: FeatureSettings = field(default_factory=FeatureSettings)
    paths: PathSettings = field(default_factory=PathSettings)
    secrets: SecretSettings = field(default_factory=SecretSettings)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "installation": self.installation.to_dict(),
            "addon": self.addon.to_dict(),
            "features": self.features.to_dict(),
            "paths": self.paths.to_dict(),
            "secrets": self.secrets.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object] | None) -> InstanceConfig:
        """Build a configuration from *data* merged over the defaults."""
        data = data or {}
        installation = _section(data, "installation")
        addon = _section(data, "addon")
        features = _section(data, "features")
        paths = _section(data, "paths")
        secrets = _section(data, "secrets")
        target = _section(installation, "target")

        install_type = str(installation.get("type", "local"))
        if install_type not in INSTALLATION_TYPES:
            raise ValidationError(
                f"Unsupported installation type '{install_type}'.",
                field="installation.type",
                suggestion="Use 'local' or 'remote'.",
            )
        access_method = str(installation.get("access_method", "custom_domain"))
        if access_method not in ACCESS_METHODS:
            raise ValidationError(
                f"Unsupported access method '{access_method}'.",
                field="installation.access_method",
            )

        defaults = AddonSettings()
        environment_raw = addon.get("environment")
        environment: dict[str, str | None] = {}
        if isinstance(environment_raw, Mapping):
            for key, value in environment_raw.items():
                environment[str(key)] = None if value is None else str(value)

        feature_defaults = FeatureSettings()
        return cls(
            installation=InstallationSettings(
                type=install_type,
                access_method=access_method,
                target=TargetConfig(
                    host=_optional_str(target.get("host")),
                    port=_int(target.get("port"), 22, "installation.target.port"),
                    username=_optional_str(target.get("username")),
                    key_path=_optional_str(target.get("key_path")),
                ),
            ),
            addon=AddonSettings(
                name=str(addon.get("name", defaults.name)),
                version=_optional_str(addon.get("version")),
                domain=str(addon.get("domain") or ""),
                password=str(addon.get("password") or ""),
                provider=str(addon.get("provider", defaults.provider)),
                port=_int(addon.get("port"), defaults.port, "addon.port"),
                torrent_limit=_int(
                    addon.get("torrent_limit"), defaults.torrent_limit, "addon.torrent_limit"
                ),
                availability_check_limit=_int(
                    addon.get("availability_check_limit"),
                    defaults.availability_check_limit,
                    "addon.availability_check_limit",
                ),
                max_streams=_int(
                    addon.get("max_streams"), defaults.max_streams, "addon.max_streams"
                ),
                max_concurrency=_int(
                    addon.get("max_concurrency"), defaults.max_concurrency, "addon.max_concurrency"
                ),
                environment=environment,
            ),
            features=FeatureSettings(
                **{
                    name: bool(features.get(name, getattr(feature_defaults, name)))
                    for name in feature_defaults.to_dict()
                }
            ),
            paths=PathSettings(
                addon_directory=str(paths.get("addon_directory") or ""),
                nginx_config=str(paths.get("nginx_config") or ""),
                service_file=str(paths.get("service_file") or ""),
                backups=str(paths.get("backups") or ""),
                ssh_key=_optional_str(paths.get("ssh_key")),
            ),
            secrets=SecretSettings(
                real_debrid_token=_optional_str(secrets.get("real_debrid_token")),
                duckdns_token=_optional_str(secrets.get("duckdns_token")),
                ssh_password=_optional_str(secrets.get("ssh_password")),
                sudo_password=_optional_str(secrets.get("sudo_password")),
            ),
        )


UnitSyncHook = Callable[[InstanceConfig, bool], None]


@dataclass(slots=True)
class InstanceConfigStore:
    """Read and write one instance configuration file."""

    path: Path
    sync_hook: UnitSyncHook | None = None

    def exists(self) -> bool:
        """Return ``True`` when the configuration file is present."""
        return self.path.exists()

    def load(self) -> InstanceConfig:
        """Return the stored configuration merged with defaults.

        A missing file yields the defaults.
        """
        if not self.path.exists():
            LOGGER.debug("Instance configuration %s not found; using defaults", self.path)
            return InstanceConfig()
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise AddonctlError(
                f"Failed to read instance configuration {self.path}: {exc}"
            ) from exc
        if data is not None and not isinstance(data, Mapping):
            raise AddonctlError(f"Instance configuration {self.path} must contain a mapping.")
        return InstanceConfig.from_dict(data)

    def save(
        self,
        config: InstanceConfig,
        *,
        sync_service_unit: bool = False,
        restart: bool = False,
    ) -> None:
        """Atomically persist *config*.

        With *sync_service_unit* the service unit is re-rendered from the new
        values through the configured hook, restarting the service when
        *restart* is set.
        """
        try:
            self._write(config)
        except OSError as exc:
            raise AddonctlError(
                f"Failed to write instance configuration {self.path}: {exc}"
            ) from exc
        LOGGER.info("Saved instance configuration %s", self.path)

        if sync_service_unit:
            if self.sync_hook is None:
                raise AddonctlError("Service unit sync requested but no sync hook is configured.")
            self.sync_hook(config, restart)

    def _write(self, config: InstanceConfig) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(config.to_dict(), handle, sort_keys=False)
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o600)
        finally:
            tmp_path.unlink(missing_ok=True)

    def delete(self) -> bool:
        """Remove the configuration file; return ``True`` when one existed."""
        if not self.path.exists():
            return False
        self.path.unlink()
        return True


EDITABLE_SECTIONS = ("addon", "features", "secrets")
FIXED_KEYS = frozenset({"addon.domain", "addon.port", "addon.version", "addon.environment"})


def get_value(config: InstanceConfig, key: str) -> object:
    """Return the value stored under dotted *key*, e.g. ``addon.max_streams``."""
    current: object = config.to_dict()
    for part in key.split("."):
        if not isinstance(current, Mapping) or part not in current:
            raise ValidationError(f"Unknown configuration key: {key}.", field=key)
        current = current[part]
    return current


def set_value(config: InstanceConfig, key: str, raw: str) -> InstanceConfig:
    """Return a validated copy of *config* with dotted *key* set to *raw*.

    Only leaves of the ``addon``, ``features`` and ``secrets`` sections can be
    changed; domain, port and version are fixed once an instance is installed.
    """
    section = key.split(".", 1)[0]
    if section not in EDITABLE_SECTIONS or key in FIXED_KEYS:
        raise ValidationError(
            f"Configuration key {key} cannot be changed on an installed instance.",
            field=key,
            suggestion=(
                "Use 'addonctl env' for service variables; reinstall to move domain or port."
            ),
        )
    current = get_value(config, key)
    if isinstance(current, Mapping):
        raise ValidationError(f"Configuration key {key} is a section, not a value.", field=key)

    value: object = raw
    if isinstance(current, bool):
        parsed = yaml.safe_load(raw) if raw.strip() else None
        if not isinstance(parsed, bool):
            raise ValidationError(f"{key} must be true or false.", field=key)
        value = parsed

    data = config.to_dict()
    parent = data
    *path, leaf = key.split(".")
    for part in path:
        parent = parent[part]  # type: ignore[assignment]
    parent[leaf] = value
    return InstanceConfig.from_dict(data)


def _section(data: Mapping[str, object], key: str) -> Mapping[str, object]:
    value = data.get(key)
    return value if isinstance(value, Mapping) else {}


def _optional_str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _int(value: object, default: int, label: str) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be an integer.", field=label)
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise ValidationError(f"{label} must be an integer.", field=label) from exc


__all__ = [
    "ACCESS_METHODS",
    "EDITABLE_SECTIONS",
    "FIXED_KEYS",
    "AddonSettings",
    "FeatureSettings",
    "INSTALLATION_TYPES",
    "InstallationSettings",
    "InstanceConfig",
    "InstanceConfigStore",
    "PathSettings",
    "SecretSettings",
    "TargetConfig",
    "UnitSyncHook",
    "get_value",
    "set_value",
]
