"""Step records and the progress event stream shared by all orchestrators."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from ..state.models import now_iso

LOGGER = logging.getLogger(__name__)


class StepStatus(str, Enum):
    """Lifecycle of a single orchestration step."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        """``True`` for statuses a step never leaves."""
        return self in {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED}


@dataclass(slots=True)
class StepRecord:
    """Append-only audit entry for one step transition."""

    step: str
    status: StepStatus
    message: str = ""
    progress: int = 0
    error: str | None = None
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        data: dict[str, object] = {
            "step": self.step,
            "status": self.status.value,
            "message": self.message,
            "progress": self.progress,
            "timestamp": self.timestamp,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """A step record tagged with the operation and instance it belongs to."""

    operation: str
    record: StepRecord
    instance_id: str | None = None


Listener = Callable[[ProgressEvent], None]


class EventStream:
    """Typed fan-out of :class:`ProgressEvent` to independent subscribers."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* and return a callable that unsubscribes it."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        """Remove *listener*; unknown listeners are ignored."""
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def emit(self, event: ProgressEvent) -> None:
        """Deliver *event* to every subscriber.

        A failing listener is logged and does not affect the run or the
        remaining listeners.
        """
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Progress listener %r failed", listener)

    def __len__(self) -> int:
        return len(self._listeners)


__all__ = ["EventStream", "Listener", "ProgressEvent", "StepRecord", "StepStatus"]
