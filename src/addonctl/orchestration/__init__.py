"""Installation, update and rollback state machines."""
from __future__ import annotations

from .base import RunContext, StepFailure
from .events import EventStream, ProgressEvent, StepRecord, StepStatus
from .install import InstallationOrchestrator, InstallationResult, InstallOptions, InstallStep
from .rollback import RollbackEngine, RollbackMethod, RollbackOptions, RollbackResult
from .update import UpdateInfo, UpdateOptions, UpdateOrchestrator, UpdateResult, UpdateStep

__all__ = [
    "EventStream",
    "InstallOptions",
    "InstallStep",
    "InstallationOrchestrator",
    "InstallationResult",
    "ProgressEvent",
    "RollbackEngine",
    "RollbackMethod",
    "RollbackOptions",
    "RollbackResult",
    "RunContext",
    "StepFailure",
    "StepRecord",
    "StepStatus",
    "UpdateInfo",
    "UpdateOptions",
    "UpdateOrchestrator",
    "UpdateResult",
    "UpdateStep",
]
