"""Payload backup archives created and restored on the target host."""
from __future__ import annotations

import logging
import secrets
import shlex
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import PurePosixPath

from .archive import compression_extension, infer_algorithm, tar_create_command, tar_extract_command
from .errors import ExecutionError, ValidationError
from .runner import CommandRunner
from .state.models import BACKUP_TYPES, BackupEntry, now_iso

LOGGER = logging.getLogger(__name__)


def generate_backup_id() -> str:
    """Return a sortable, collision resistant backup identifier."""
    timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
    return f"backup-{timestamp}-{secrets.token_hex(3)}"


@dataclass(slots=True)
class BackupStore:
    """Create, restore and prune payload archives for one instance."""

    runner: CommandRunner
    directory: str
    compression: str = "gzip"

    def archive_path(self, backup_id: str) -> str:
        """Return the archive path for *backup_id*."""
        name = f"{backup_id}.{compression_extension(self.compression)}"
        return str(PurePosixPath(self.directory) / name)

    def create(
        self,
        payload_dir: str,
        *,
        version: str,
        backup_type: str = "manual",
    ) -> BackupEntry:
        """Archive *payload_dir* and return the new entry.

        ``node_modules`` is excluded; dependencies are reinstalled on restore.
        """
        if backup_type not in BACKUP_TYPES:
            allowed = ", ".join(sorted(BACKUP_TYPES))
            raise ValidationError(f"Unknown backup type '{backup_type}' (allowed: {allowed}).")
        if not self.runner.path_exists(payload_dir):
            raise ExecutionError(f"Cannot back up {payload_dir}: directory does not exist.")

        backup_id = generate_backup_id()
        path = self.archive_path(backup_id)
        command = tar_create_command(
            payload_dir, path, self.compression, exclude=("./node_modules",)
        )
        self.runner.execute_privileged(
            f"mkdir -p {shlex.quote(self.directory)} && {command}"
        ).check(f"Creating backup {backup_id}")

        entry = BackupEntry(
            id=backup_id,
            timestamp=now_iso(),
            type=backup_type,
            version=version,
            path=path,
            compression=self.compression,
            size_bytes=self._size_of(path),
        )
        LOGGER.info("Created %s backup %s of %s", backup_type, backup_id, payload_dir)
        return entry

    def exists(self, entry: BackupEntry) -> bool:
        """Return ``True`` when the archive for *entry* is still on disk."""
        return self.runner.path_exists(entry.path)

    def restore(self, entry: BackupEntry, payload_dir: str) -> None:
        """Replace *payload_dir* with the contents of *entry*."""
        if not self.exists(entry):
            raise ExecutionError(f"Backup archive {entry.path} is missing on {self.runner.target}.")
        algorithm = entry.compression or infer_algorithm(entry.path)
        self.runner.execute_privileged(
            f"rm -rf {shlex.quote(payload_dir)} && "
            f"{tar_extract_command(entry.path, payload_dir, algorithm)}"
        ).check(f"Restoring backup {entry.id}")
        LOGGER.info("Restored backup %s into %s", entry.id, payload_dir)

    def remove(self, entry: BackupEntry) -> None:
        """Delete the archive of *entry* (best effort)."""
        result = self.runner.remove_path(entry.path)
        if not result.ok:
            LOGGER.warning("Failed to remove backup %s: %s", entry.path, result.output)

    def prune(self, entries: Iterable[BackupEntry], retention: int) -> list[BackupEntry]:
        """Remove archives beyond the newest *retention* entries; return survivors."""
        ordered = sorted(entries, key=lambda item: item.timestamp, reverse=True)
        if retention <= 0:
            return ordered
        keep, drop = ordered[:retention], ordered[retention:]
        for entry in drop:
            self.remove(entry)
        return keep

    def _size_of(self, path: str) -> int | None:
        result = self.runner.execute_privileged(f"stat -c %s {shlex.quote(path)}")
        text = result.stdout.strip()
        return int(text) if result.ok and text.isdigit() else None


__all__ = ["BackupStore", "generate_backup_id"]
