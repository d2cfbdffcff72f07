"""Structured operation logging for addonctl.

Every user-facing operation (install, update, rollback, registry mutation)
produces a single JSON record appended to ``operations.jsonl`` under the logs
directory. Records carry the command, its arguments, the target, the step log
and a ``result`` block. Values are coerced to JSON-safe forms and known secret
keys are redacted before they hit the disk.

The logger never raises: when the directory cannot be created or a write
fails it disables itself and later operations become no-ops.
"""
from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "passphrase",
        "token",
        "secret",
        "rd_api_token",
        "addon_password",
        "real_debrid_token",
        "duckdns_token",
        "ssh_password",
        "sudo_password",
    }
)
REDACTED = "***"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value* with secrets redacted."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        result: dict[str, object] = {}
        for key, item in value.items():
            name = str(key)
            if name.lower() in SENSITIVE_KEYS and item not in (None, ""):
                result[name] = REDACTED
            else:
                result[name] = sanitize(item)
        return result
    if isinstance(value, (list, tuple)):
        return [sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Mutable state for a single logged operation."""

    logger: StructuredLogger
    command: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    started: float = field(default_factory=time.monotonic)
    started_at: str = field(default_factory=_now_iso)
    steps: list[dict[str, object]] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a sub-step of the operation."""
        entry: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail:
            entry["detail"] = detail
        self.steps.append(entry)

    def set_lock_wait_ms(self, value: int) -> None:
        """Remember how long the operation waited on locks."""
        self.lock_wait_ms = int(value)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self.result = _result_block(
            "success",
            message,
            changed=changed,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        changed: int = 0,
        backups: Sequence[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self.result = _result_block(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self.result = _result_block(
            "error",
            message,
            errors=list(errors) if errors else [message],
            context=context,
        )
        self.result["rc"] = rc


def _result_block(
    status: str,
    message: str,
    *,
    changed: int = 0,
    warnings: Iterable[str] = (),
    errors: Iterable[str] = (),
    backups: Sequence[str] = (),
    context: Mapping[str, object] | None = None,
) -> dict[str, object]:
    return {
        "status": status,
        "message": message,
        "changed": changed,
        "warnings": [str(item) for item in warnings],
        "errors": [str(item) for item in errors],
        "backups": [str(item) for item in backups],
        "context": sanitize(dict(context or {})),
    }


class StructuredLogger:
    """Append JSON operation records to ``operations.jsonl``."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare the log directory, disabling the logger on failure."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / "operations.jsonl"
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled (%s): %s", self._log_dir, exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(
            logger=self,
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
        )
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"{type(exc).__name__}: {exc}", rc=1)
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record: dict[str, object] = {
            "timestamp": scope.started_at,
            "command": scope.command,
            "args": sanitize(scope.args),
            "target": sanitize(scope.target),
            "duration_ms": int((time.monotonic() - scope.started) * 1000),
            "steps": scope.steps,
            "result": scope.result,
            "pid": os.getpid(),
        }
        if scope.lock_wait_ms is not None:
            record["lock_wait_ms"] = scope.lock_wait_ms
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError as exc:
            LOGGER.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "sanitize"]
