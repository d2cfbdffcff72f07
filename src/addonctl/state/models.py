"""Records persisted in the instance registry."""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime

SERVICE_PREFIX = "addonctl"
BACKUP_TYPES = frozenset({"pre-update", "manual", "initial"})

_SLUG_STRIP = re.compile(r"[^\w\s-]")
_SLUG_COLLAPSE = re.compile(r"[\s_-]+")
_SERVICE_SAFE = re.compile(r"[^a-z0-9-]")


def now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with microseconds."""
    return datetime.now(tz=UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def slugify(name: str) -> str:
    """Return the URL/filesystem friendly slug for *name*."""
    lowered = _SLUG_STRIP.sub("", name.strip().lower())
    return _SLUG_COLLAPSE.sub("-", lowered).strip("-")


def service_name_for(instance_id: str) -> str:
    """Return the host service identifier for *instance_id*."""
    return f"{SERVICE_PREFIX}-{_SERVICE_SAFE.sub('-', instance_id.lower())}"


@dataclass(slots=True)
class BackupEntry:
    """A payload archive stored on the target host."""

    id: str
    timestamp: str
    type: str
    version: str
    path: str
    compression: str = "gzip"
    size_bytes: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.type,
            "version": self.version,
            "path": self.path,
            "compression": self.compression,
            "size_bytes": self.size_bytes,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> BackupEntry:
        """Build an entry from its serialised form."""
        size = data.get("size_bytes")
        return cls(
            id=str(data["id"]),
            timestamp=str(data.get("timestamp", "")),
            type=str(data.get("type", "manual")),
            version=str(data.get("version", "")),
            path=str(data.get("path", "")),
            compression=str(data.get("compression", "gzip")),
            size_bytes=size if isinstance(size, int) and not isinstance(size, bool) else None,
        )


@dataclass(slots=True)
class UpdateHistoryEntry:
    """One version transition (update or rollback) of an instance."""

    timestamp: str
    from_version: str
    to_version: str
    success: bool
    duration_ms: int
    backup_id: str | None = None
    rollback_id: str | None = None
    error: str | None = None
    initiated_by: str = "user"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timestamp": self.timestamp,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "backup_id": self.backup_id,
            "rollback_id": self.rollback_id,
            "error": self.error,
            "initiated_by": self.initiated_by,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> UpdateHistoryEntry:
        """Build an entry from its serialised form."""
        duration = data.get("duration_ms", 0)
        return cls(
            timestamp=str(data.get("timestamp", "")),
            from_version=str(data.get("from_version", "")),
            to_version=str(data.get("to_version", "")),
            success=bool(data.get("success", False)),
            duration_ms=int(duration) if isinstance(duration, (int, float)) else 0,
            backup_id=_optional_str(data.get("backup_id")),
            rollback_id=_optional_str(data.get("rollback_id")),
            error=_optional_str(data.get("error")),
            initiated_by=str(data.get("initiated_by", "user")),
        )


@dataclass(slots=True)
class Instance:
    """One managed deployment."""

    id: str
    name: str
    config_path: str
    port: int
    domain: str
    version: str | None = None
    created_at: str = ""
    updated_at: str = ""
    update_history: list[UpdateHistoryEntry] = field(default_factory=list)
    backups: list[BackupEntry] = field(default_factory=list)

    @property
    def slug(self) -> str:
        """Slug derived from the display name."""
        return slugify(self.name)

    @property
    def service_name(self) -> str:
        """Service unit identifier derived from the id."""
        return service_name_for(self.id)

    def latest_backup(self) -> BackupEntry | None:
        """Return the most recent backup entry, if any."""
        if not self.backups:
            return None
        return max(reversed(self.backups), key=lambda entry: entry.timestamp)

    def find_backup(self, backup_id: str) -> BackupEntry | None:
        """Return the backup entry with *backup_id*, if present."""
        return next((entry for entry in self.backups if entry.id == backup_id), None)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (slug and service name are informational)."""
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "config_path": self.config_path,
            "service_name": self.service_name,
            "port": self.port,
            "domain": self.domain,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "update_history": [entry.to_dict() for entry in self.update_history],
            "backups": [entry.to_dict() for entry in self.backups],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Instance:
        """Build an instance from its serialised form."""
        history = data.get("update_history")
        backups = data.get("backups")
        port = data["port"]
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            config_path=str(data["config_path"]),
            port=int(port) if isinstance(port, (int, str)) else 0,
            domain=str(data["domain"]),
            version=_optional_str(data.get("version")),
            created_at=str(data.get("created_at", "")),
            updated_at=str(data.get("updated_at", "")),
            update_history=[
                UpdateHistoryEntry.from_dict(item)
                for item in (history if isinstance(history, list) else [])
                if isinstance(item, Mapping)
            ],
            backups=[
                BackupEntry.from_dict(item)
                for item in (backups if isinstance(backups, list) else [])
                if isinstance(item, Mapping) and item.get("id")
            ],
        )


def is_valid_instance_record(data: object) -> bool:
    """Return ``True`` when *data* carries every required instance field."""
    if not isinstance(data, Mapping):
        return False
    for key in ("id", "name", "config_path", "domain"):
        value = data.get(key)
        if not isinstance(value, str) or not value.strip():
            return False
    port = data.get("port")
    if isinstance(port, bool) or not isinstance(port, int):
        return False
    return 1 <= port <= 65535


def _optional_str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


__all__ = [
    "BACKUP_TYPES",
    "BackupEntry",
    "Instance",
    "SERVICE_PREFIX",
    "UpdateHistoryEntry",
    "is_valid_instance_record",
    "now_iso",
    "service_name_for",
    "slugify",
]
