"""Advisory file locks guarding registry and per-instance mutations."""
from __future__ import annotations

import errno
import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import AbstractContextManager, ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path

GLOBAL_LOCK_NAME = "addonctl.lock"
REGISTRY_LOCK_NAME = "registry.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout elapses."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting across all locks."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Create ``fcntl`` locks under the runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Remember where lock files live and how long to wait by default."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    def registry_lock(
        self, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Serialise load-mutate-save cycles on the instance registry."""
        return self._acquire(self.runtime_dir / REGISTRY_LOCK_NAME, timeout)

    def instance_lock(
        self, instance_id: str, *, timeout: float | None = None
    ) -> AbstractContextManager[LockHandle]:
        """Lock a single instance for the duration of a run."""
        return self._acquire(self.runtime_dir / f"{_safe_name(instance_id)}.lock", timeout)

    @contextmanager
    def mutate_instances(
        self,
        instance_ids: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock then each instance lock in sorted order."""
        handles: list[LockHandle] = []
        with ExitStack() as stack:
            handles.append(
                stack.enter_context(self._acquire(self.runtime_dir / GLOBAL_LOCK_NAME, timeout))
            )
            for instance_id in sorted(set(instance_ids)):
                lock = self.instance_lock(instance_id, timeout=timeout)
                handles.append(stack.enter_context(lock))
            yield LockBundle(handles)

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError as exc:
                    if exc.errno not in (errno.EAGAIN, errno.EACCES):
                        raise
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}"
                        ) from exc
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            metadata = json.dumps({"pid": os.getpid(), "path": str(path)})
            os.ftruncate(fd, 0)
            os.write(fd, metadata.encode("utf-8"))
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _safe_name(value: str) -> str:
    return "".join(char if char.isalnum() or char in {"-", "_", "."} else "-" for char in value)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
