"""Persistent catalog of managed instances.

The registry is a single JSON document (``~/.addonctl/registry.json`` by
default)::

    {"version": "1.0.0", "default_instance_id": "alpha", "instances": [...]}

Loading is forgiving: a missing file yields an empty registry, a corrupt file
is copied aside with a timestamp suffix and replaced by an empty registry, and
entries missing required fields are dropped (the filtered document is written
back). Writes are atomic and every load-mutate-save cycle runs under the
registry file lock when a :class:`~addonctl.locking.LockManager` is supplied.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar, cast

from ..errors import NotFoundError, RegistryError
from ..locking import LockManager, LockTimeoutError
from .models import Instance, is_valid_instance_record, now_iso, slugify

LOGGER = logging.getLogger(__name__)

REGISTRY_FORMAT_VERSION = "1.0.0"

_T = TypeVar("_T")


@dataclass(slots=True)
class RegistryDocument:
    """In-memory form of the registry file."""

    version: str = REGISTRY_FORMAT_VERSION
    default_instance_id: str | None = None
    instances: list[Instance] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return the serialisable document."""
        return {
            "version": self.version,
            "default_instance_id": self.default_instance_id,
            "instances": [instance.to_dict() for instance in self.instances],
        }


@dataclass(slots=True)
class IntegrityIssue:
    """A problem found by :meth:`Registry.validate_integrity`."""

    kind: str
    message: str
    instance_id: str | None = None


@dataclass(slots=True)
class Registry:
    """Load, query and mutate the instance registry file."""

    path: Path
    locks: LockManager | None = None
    _document: RegistryDocument | None = field(default=None, init=False, repr=False)
    _in_transaction: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        """Normalise the registry path."""
        self.path = Path(self.path).expanduser()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def load(self) -> RegistryDocument:
        """Read the registry from disk, recovering from missing or corrupt files."""
        if not self.path.exists():
            LOGGER.info("Registry not found at %s; initialising an empty one", self.path)
            self._document = RegistryDocument()
            self.save()
            return self._document

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(raw, Mapping):
                raise ValueError("top-level value is not an object")
        except (ValueError, UnicodeDecodeError) as exc:
            backup = self._backup_corrupt_file()
            LOGGER.error(
                "Registry %s is corrupt (%s); preserved as %s and reinitialised",
                self.path,
                exc,
                backup,
            )
            self._document = RegistryDocument()
            self.save()
            return self._document
        except OSError as exc:
            raise RegistryError(f"Failed to read registry {self.path}: {exc}") from exc

        self._document = self._parse(raw)
        return self._document

    def save(self) -> None:
        """Atomically write the in-memory document."""
        document = self._require_document()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RegistryError(f"Failed to create {self.path.parent}: {exc}") from exc

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(document.to_dict(), handle, indent=2)
                handle.write("\n")
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o600)
        except OSError as exc:
            raise RegistryError(f"Failed to write registry {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    @contextmanager
    def transaction(self) -> Iterator[Registry]:
        """Lock, reload, yield for mutation, then save."""
        if self._in_transaction:
            yield self
            return
        lock = self.locks.registry_lock() if self.locks is not None else nullcontext()
        try:
            with lock:
                self.load()
                self._in_transaction = True
                try:
                    yield self
                finally:
                    self._in_transaction = False
                self.save()
        except LockTimeoutError as exc:
            raise RegistryError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list_instances(self) -> list[Instance]:
        """Return every registered instance."""
        return list(self._current().instances)

    def get(self, instance_id: str) -> Instance | None:
        """Return the instance with *instance_id*, if registered."""
        return next((item for item in self._current().instances if item.id == instance_id), None)

    def require(self, instance_id: str) -> Instance:
        """Return the instance with *instance_id* or raise :class:`NotFoundError`."""
        instance = self.get(instance_id)
        if instance is None:
            raise NotFoundError(f"Instance '{instance_id}' not found in registry")
        return instance

    def exists(self, instance_id: str) -> bool:
        """Return ``True`` when *instance_id* is registered."""
        return self.get(instance_id) is not None

    def get_by_name(self, name: str) -> Instance | None:
        """Case-insensitive lookup by display name."""
        wanted = name.strip().lower()
        return next(
            (item for item in self._current().instances if item.name.lower() == wanted),
            None,
        )

    def get_by_slug(self, slug: str) -> Instance | None:
        """Lookup by slug."""
        return next((item for item in self._current().instances if item.slug == slug), None)

    def name_exists(self, name: str, *, exclude_id: str | None = None) -> bool:
        """Return ``True`` when another instance already uses *name*."""
        wanted = name.strip().lower()
        return any(
            item.name.lower() == wanted and item.id != exclude_id
            for item in self._current().instances
        )

    def port_in_use(self, port: int, *, exclude_id: str | None = None) -> bool:
        """Return ``True`` when another instance already uses *port*."""
        return any(
            item.port == port and item.id != exclude_id for item in self._current().instances
        )

    def domain_in_use(self, domain: str, *, exclude_id: str | None = None) -> bool:
        """Return ``True`` when another instance already uses *domain*."""
        wanted = domain.strip().lower()
        return any(
            item.domain.lower() == wanted and item.id != exclude_id
            for item in self._current().instances
        )

    def used_ports(self) -> set[int]:
        """Return every port allocated to a registered instance."""
        return {item.port for item in self._current().instances}

    def get_default_id(self) -> str | None:
        """Return the default instance id, if set."""
        return self._current().default_instance_id

    def get_default(self) -> Instance | None:
        """Return the default instance, if set."""
        default_id = self.get_default_id()
        return self.get(default_id) if default_id else None

    def ensure_unique_id(self, base: str) -> str:
        """Return *base* or ``base-N`` so the id is unused."""
        candidate = slugify(base) or "addon"
        stem = candidate
        counter = 1
        while self.exists(candidate):
            candidate = f"{stem}-{counter}"
            counter += 1
        return candidate

    def validate_integrity(self) -> list[IntegrityIssue]:
        """Return problems with the registered instances (empty when healthy)."""
        issues: list[IntegrityIssue] = []
        instances = self._current().instances
        seen_ids: set[str] = set()
        for item in instances:
            if item.id in seen_ids:
                issues.append(
                    IntegrityIssue("duplicate_id", f"Duplicate instance id: {item.id}", item.id)
                )
            seen_ids.add(item.id)
            if not Path(item.config_path).expanduser().exists():
                issues.append(
                    IntegrityIssue(
                        "missing_config",
                        f"Config file not found: {item.config_path}",
                        item.id,
                    )
                )
            others = [other for other in instances if other.id != item.id]
            if any(other.port == item.port for other in others):
                issues.append(
                    IntegrityIssue(
                        "duplicate_port",
                        f"Port {item.port} is used by multiple instances",
                        item.id,
                    )
                )
            if any(other.domain.lower() == item.domain.lower() for other in others):
                issues.append(
                    IntegrityIssue(
                        "duplicate_domain",
                        f"Domain {item.domain} is used by multiple instances",
                        item.id,
                    )
                )
        default_id = self._current().default_instance_id
        if default_id and default_id not in seen_ids:
            issues.append(
                IntegrityIssue(
                    "dangling_default",
                    f"Default instance '{default_id}' is not registered",
                    default_id,
                )
            )
        return issues

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def create(self, instance: Instance) -> Instance:
        """Register *instance*; duplicate ids are rejected."""

        def apply(document: RegistryDocument) -> Instance:
            if any(item.id == instance.id for item in document.instances):
                raise RegistryError(f"Instance with id '{instance.id}' already exists")
            stamp = now_iso()
            instance.created_at = stamp
            instance.updated_at = stamp
            document.instances.append(instance)
            return instance

        created = self._mutate(apply)
        LOGGER.info("Registered instance %s (%s)", created.id, created.name)
        return created

    def update(self, instance_id: str, mutator: Callable[[Instance], None]) -> Instance:
        """Apply *mutator* to the instance and refresh ``updated_at``."""

        def apply(document: RegistryDocument) -> Instance:
            for item in document.instances:
                if item.id == instance_id:
                    mutator(item)
                    item.id = instance_id
                    item.updated_at = max(now_iso(), item.updated_at, item.created_at)
                    return item
            raise NotFoundError(f"Instance '{instance_id}' not found in registry")

        return self._mutate(apply)

    def delete(self, instance_id: str) -> bool:
        """Remove the instance; clears the default pointer when it referenced it."""

        def apply(document: RegistryDocument) -> bool:
            remaining = [item for item in document.instances if item.id != instance_id]
            if len(remaining) == len(document.instances):
                return False
            document.instances = remaining
            if document.default_instance_id == instance_id:
                document.default_instance_id = None
            return True

        removed = self._mutate(apply)
        if removed:
            LOGGER.info("Removed instance %s from registry", instance_id)
        return removed

    def set_default(self, instance_id: str | None) -> None:
        """Point the default at an existing instance (or clear it with ``None``)."""

        def apply(document: RegistryDocument) -> None:
            if instance_id is not None and not any(
                item.id == instance_id for item in document.instances
            ):
                raise NotFoundError(f"Instance '{instance_id}' not found in registry")
            document.default_instance_id = instance_id

        self._mutate(apply)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _mutate(self, apply: Callable[[RegistryDocument], _T]) -> _T:
        with self.transaction():
            return apply(self._require_document())

    def _current(self) -> RegistryDocument:
        if self._document is None:
            return self.load()
        return self._document

    def _require_document(self) -> RegistryDocument:
        if self._document is None:
            raise RegistryError("Registry not loaded; call load() first")
        return self._document

    def _parse(self, raw: Mapping[str, object]) -> RegistryDocument:
        version = raw.get("version")
        entries = raw.get("instances")
        if not isinstance(entries, list):
            entries = []
        valid: list[Instance] = []
        for entry in entries:
            if is_valid_instance_record(entry):
                valid.append(Instance.from_dict(cast(Mapping[str, object], entry)))
            else:
                LOGGER.warning("Dropping invalid registry entry: %r", entry)
        default_id = raw.get("default_instance_id")
        document = RegistryDocument(
            version=version if isinstance(version, str) and version else REGISTRY_FORMAT_VERSION,
            default_instance_id=default_id if isinstance(default_id, str) and default_id else None,
            instances=valid,
        )
        if len(valid) != len(entries) or not isinstance(raw.get("instances"), list):
            LOGGER.warning(
                "Filtered %d invalid entries from %s", len(entries) - len(valid), self.path
            )
            self._document = document
            self.save()
        return document

    def _backup_corrupt_file(self) -> Path | None:
        suffix = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%S%f")
        backup = self.path.with_name(f"{self.path.name}.backup.{suffix}")
        try:
            shutil.copy2(self.path, backup)
        except OSError as exc:
            LOGGER.warning("Could not preserve corrupt registry %s: %s", self.path, exc)
            return None
        return backup


__all__ = [
    "IntegrityIssue",
    "REGISTRY_FORMAT_VERSION",
    "Registry",
    "RegistryDocument",
]
