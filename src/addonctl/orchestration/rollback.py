"""Revert an instance to its ``.old`` snapshot or to a stored backup."""
from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from functools import partial
from pathlib import Path

from ..config import AppConfig
from ..errors import AddonctlError, NotFoundError
from ..instance_config import InstanceConfig, InstanceConfigStore
from ..logging import OperationScope
from ..providers import PayloadProvider
from ..runner import CommandRunner
from ..state import Registry
from ..state.models import BackupEntry, Instance, UpdateHistoryEntry, now_iso
from ..templates import TemplateEngine
from .base import (
    HostProviders,
    RunContext,
    RunnerFactory,
    StepFailure,
    build_runner,
    elapsed_ms,
    load_instance_config,
)
from .events import EventStream, StepRecord

LOGGER = logging.getLogger(__name__)


class RollbackStep(StrEnum):
    """Ordered steps of a rollback run."""

    STOP_SERVICE = "STOP_SERVICE"
    RESTORE_FILES = "RESTORE_FILES"
    INSTALL_DEPENDENCIES = "INSTALL_DEPENDENCIES"
    RESTART_SERVICE = "RESTART_SERVICE"
    UPDATE_REGISTRY = "UPDATE_REGISTRY"


ROLLBACK_STEPS: tuple[str, ...] = tuple(step.value for step in RollbackStep)


class RollbackMethod(StrEnum):
    """How the previous payload is brought back."""

    FAST = "fast"
    BACKUP = "backup"


def generate_rollback_id() -> str:
    """Return a sortable identifier for a rollback run."""
    timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
    return f"rollback-{timestamp}-{secrets.token_hex(3)}"


@dataclass(slots=True)
class RollbackOptions:
    """Switches for a rollback run."""

    backup_id: str | None = None
    use_fast_rollback: bool = True
    restart_service: bool = True
    initiated_by: str = "user"


@dataclass(slots=True)
class RollbackResult:
    """Terminal outcome of a rollback run."""

    success: bool
    instance_id: str
    rollback_id: str
    method: RollbackMethod | None = None
    previous_version: str | None = None
    rolled_back_to_version: str | None = None
    backup_id: str | None = None
    steps: list[StepRecord] = field(default_factory=list)
    error: AddonctlError | None = None
    duration_ms: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable summary."""
        return {
            "success": self.success,
            "instance_id": self.instance_id,
            "rollback_id": self.rollback_id,
            "method": self.method.value if self.method else None,
            "previous_version": self.previous_version,
            "rolled_back_to_version": self.rolled_back_to_version,
            "backup_id": self.backup_id,
            "error": str(self.error) if self.error else None,
            "duration_ms": self.duration_ms,
            "warnings": list(self.warnings),
            "steps": [record.to_dict() for record in self.steps],
        }


@dataclass(frozen=True, slots=True)
class RollbackPlan:
    """Chosen strategy for a rollback."""

    method: RollbackMethod
    backup: BackupEntry | None = None


def select_strategy(
    instance: Instance,
    payload: PayloadProvider,
    options: RollbackOptions,
) -> RollbackPlan:
    """Prefer the ``.old`` snapshot, else the requested or most recent backup."""
    if options.use_fast_rollback and payload.has_snapshot():
        return RollbackPlan(RollbackMethod.FAST)
    if options.backup_id:
        entry = instance.find_backup(options.backup_id)
        if entry is None:
            raise NotFoundError(
                f"Backup '{options.backup_id}' not found for instance '{instance.id}'."
            )
        return RollbackPlan(RollbackMethod.BACKUP, entry)
    latest = instance.latest_backup()
    if latest is None:
        raise NotFoundError(
            f"Instance '{instance.id}' has neither a {payload.snapshot_dir} snapshot "
            "nor any backup to roll back to."
        )
    return RollbackPlan(RollbackMethod.BACKUP, latest)


class RollbackEngine:
    """Restore previous payloads of registered instances."""

    def __init__(
        self,
        app_config: AppConfig,
        registry: Registry,
        templates: TemplateEngine,
        *,
        events: EventStream | None = None,
        runner_factory: RunnerFactory | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Bind the collaborators used by every run."""
        self.app_config = app_config
        self.registry = registry
        self.templates = templates
        self.events = events or EventStream()
        self.runner_factory = runner_factory or partial(build_runner, app_config=app_config)
        self.sleep = sleep
        self.clock = clock

    def rollback(
        self,
        instance_id: str,
        options: RollbackOptions | None = None,
        *,
        runner: CommandRunner | None = None,
        scope: OperationScope | None = None,
    ) -> RollbackResult:
        """Roll *instance_id* back.

        When *runner* is given (an update rolling itself back) it is reused
        and left connected; otherwise a runner is created and closed here.
        """
        options = options or RollbackOptions()
        started = time.monotonic()
        ctx = RunContext(
            "rollback", ROLLBACK_STEPS, self.events, instance_id=instance_id, scope=scope
        )
        result = RollbackResult(
            success=False,
            instance_id=instance_id,
            rollback_id=generate_rollback_id(),
            steps=ctx.records,
            warnings=ctx.warnings,
        )
        owns_runner = runner is None
        try:
            self.registry.load()
            instance = self.registry.require(instance_id)
            config = load_instance_config(instance)
            if runner is None:
                runner = self.runner_factory(config)
                runner.connect()
            hosts = HostProviders.build(
                runner,
                app_config=self.app_config,
                templates=self.templates,
                instance_id=instance_id,
                config=config,
                sleep=self.sleep,
                clock=self.clock,
            )
            plan = select_strategy(instance, hosts.payload, options)
            result.method = plan.method
            result.previous_version = instance.version
            self._run(ctx, hosts, plan, options, result, config)
        except StepFailure as exc:
            result.error = exc.cause
        except AddonctlError as exc:
            LOGGER.error("Rollback of %s could not start: %s", instance_id, exc)
            result.error = exc
        else:
            result.success = True
        finally:
            if owns_runner and runner is not None:
                try:
                    runner.disconnect()
                except Exception as exc:  # noqa: BLE001
                    LOGGER.warning("Disconnect from %s failed: %s", runner.target, exc)
        result.duration_ms = elapsed_ms(started)
        return result

    def _run(
        self,
        ctx: RunContext,
        hosts: HostProviders,
        plan: RollbackPlan,
        options: RollbackOptions,
        result: RollbackResult,
        config: InstanceConfig,
    ) -> None:
        payload = hosts.payload
        systemd = hosts.systemd

        def stop() -> str:
            systemd.stop()
            return f"Stopped {systemd.unit_file}"

        def restore() -> str:
            if plan.method is RollbackMethod.FAST:
                version = payload.deployed_version(payload.snapshot_dir)
                payload.restore_snapshot()
                result.rolled_back_to_version = version or "0.0.0"
                return f"Restored {payload.snapshot_dir}"
            backup = plan.backup
            if backup is None:
                raise NotFoundError(f"No backup selected for {result.instance_id}.")
            hosts.backups.restore(backup, payload.directory)
            result.backup_id = backup.id
            result.rolled_back_to_version = backup.version
            return f"Restored backup {backup.id}"

        def reinstall() -> str:
            payload.install_dependencies()
            return "Dependencies reinstalled"

        def restart() -> str:
            systemd.restart()
            return f"Restarted {systemd.unit_file}"

        def record() -> str:
            target = result.rolled_back_to_version or "0.0.0"
            entry = UpdateHistoryEntry(
                timestamp=now_iso(),
                from_version=result.previous_version or "0.0.0",
                to_version=target,
                success=True,
                duration_ms=ctx.elapsed_ms(),
                backup_id=result.backup_id,
                rollback_id=result.rollback_id,
                initiated_by=options.initiated_by,
            )

            def apply(instance: Instance) -> None:
                instance.version = target
                instance.update_history.append(entry)

            instance = self.registry.update(result.instance_id, apply)
            config.addon.version = target
            store = InstanceConfigStore(Path(instance.config_path))
            try:
                if store.exists():
                    store.save(config)
            except (AddonctlError, OSError) as exc:
                ctx.warn(f"Instance configuration not updated: {exc}")
            return f"Registry now reports {target}"

        ctx.run(RollbackStep.STOP_SERVICE, stop)
        ctx.run(RollbackStep.RESTORE_FILES, restore)
        if plan.method is RollbackMethod.BACKUP:
            ctx.run(RollbackStep.INSTALL_DEPENDENCIES, reinstall)
        else:
            ctx.skip(RollbackStep.INSTALL_DEPENDENCIES, "Snapshot includes dependencies")
        if options.restart_service:
            ctx.run(RollbackStep.RESTART_SERVICE, restart)
        else:
            ctx.skip(RollbackStep.RESTART_SERVICE, "Restart not requested")
        ctx.run(RollbackStep.UPDATE_REGISTRY, record)
        LOGGER.info(
            "Rolled back %s to %s (%s)",
            result.instance_id,
            result.rolled_back_to_version,
            plan.method.value,
        )


__all__ = [
    "ROLLBACK_STEPS",
    "RollbackEngine",
    "RollbackMethod",
    "RollbackOptions",
    "RollbackPlan",
    "RollbackResult",
    "RollbackStep",
    "generate_rollback_id",
    "select_strategy",
]
