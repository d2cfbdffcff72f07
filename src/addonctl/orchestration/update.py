"""Check for and apply payload updates to registered instances.

An update snapshots the running payload to ``<dir>.old`` before deploying the
new one. Any failure once files have been touched rolls the instance back to
that snapshot before the failed result is returned.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from functools import partial
from pathlib import Path

from .. import env_vars
from ..config import AppConfig
from ..errors import (
    AddonctlError,
    ExecutionError,
    NotFoundError,
    ValidationError,
    VerificationError,
)
from ..guard import ConflictGuard
from ..instance_config import InstanceConfig, InstanceConfigStore
from ..locator import PayloadSource, ResourceLocator
from ..logging import OperationScope
from ..runner import CommandRunner
from ..state import Registry
from ..state.models import BackupEntry, Instance, UpdateHistoryEntry, now_iso
from ..templates import TemplateEngine
from ..versioning import changes_between, compare
from .base import (
    HostProviders,
    RunContext,
    RunnerFactory,
    StepFailure,
    build_runner,
    elapsed_ms,
    load_instance_config,
    unit_context,
)
from .events import EventStream, StepRecord
from .rollback import RollbackEngine, RollbackOptions, RollbackResult
from .verify import verify_service

LOGGER = logging.getLogger(__name__)

UNKNOWN_VERSION = "0.0.0"


class UpdateStep(StrEnum):
    """Ordered steps of an update run."""

    VALIDATE = "VALIDATE"
    CREATE_BACKUP = "CREATE_BACKUP"
    STOP_SERVICE = "STOP_SERVICE"
    UPDATE_FILES = "UPDATE_FILES"
    INSTALL_DEPENDENCIES = "INSTALL_DEPENDENCIES"
    UPDATE_CONFIG = "UPDATE_CONFIG"
    RESTART_SERVICE = "RESTART_SERVICE"
    VERIFY = "VERIFY"
    UPDATE_REGISTRY = "UPDATE_REGISTRY"
    CLEANUP = "CLEANUP"


UPDATE_STEPS: tuple[str, ...] = tuple(step.value for step in UpdateStep)


@dataclass(slots=True)
class UpdateOptions:
    """Switches for an update run."""

    target_version: str | None = None
    skip_backup: bool = False
    force_update: bool = False
    dry_run: bool = False
    keep_old_files: bool = False
    restart_service: bool = True
    environment: dict[str, str | None] = field(default_factory=dict)


@dataclass(slots=True)
class UpdateInfo:
    """What an update of one instance would change."""

    instance_id: str
    current_version: str
    latest_version: str
    available_versions: list[str]
    update_available: bool
    changes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "instance_id": self.instance_id,
            "current_version": self.current_version,
            "latest_version": self.latest_version,
            "available_versions": list(self.available_versions),
            "update_available": self.update_available,
            "changes": list(self.changes),
        }


@dataclass(slots=True)
class UpdateResult:
    """Terminal outcome of an update run."""

    success: bool
    instance_id: str
    previous_version: str | None = None
    new_version: str | None = None
    changes: list[str] = field(default_factory=list)
    backup_id: str | None = None
    rolled_back: bool = False
    rollback: RollbackResult | None = None
    steps: list[StepRecord] = field(default_factory=list)
    error: AddonctlError | None = None
    duration_ms: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable summary."""
        return {
            "success": self.success,
            "instance_id": self.instance_id,
            "previous_version": self.previous_version,
            "new_version": self.new_version,
            "changes": list(self.changes),
            "backup_id": self.backup_id,
            "rolled_back": self.rolled_back,
            "rollback": self.rollback.to_dict() if self.rollback else None,
            "error": str(self.error) if self.error else None,
            "duration_ms": self.duration_ms,
            "warnings": list(self.warnings),
            "steps": [record.to_dict() for record in self.steps],
        }


class UpdateOrchestrator:
    """Compare and apply payload versions for registered instances."""

    def __init__(
        self,
        app_config: AppConfig,
        registry: Registry,
        guard: ConflictGuard,
        templates: TemplateEngine,
        locator: ResourceLocator,
        rollback_engine: RollbackEngine,
        *,
        events: EventStream | None = None,
        runner_factory: RunnerFactory | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Bind the collaborators used by every run."""
        self.app_config = app_config
        self.registry = registry
        self.guard = guard
        self.templates = templates
        self.locator = locator
        self.rollback_engine = rollback_engine
        self.events = events or EventStream()
        self.runner_factory = runner_factory or partial(build_runner, app_config=app_config)
        self.sleep = sleep
        self.clock = clock

    # ------------------------------------------------------------------
    # Checking
    # ------------------------------------------------------------------
    def check_for_updates(self, instance_id: str) -> UpdateInfo:
        """Compare the deployed version of *instance_id* with the located payload."""
        self.registry.load()
        instance = self.registry.require(instance_id)
        current = instance.version or self._discover_version(instance) or UNKNOWN_VERSION

        source = self.locator.locate()
        try:
            latest = source.version(self.app_config.payload.descriptor) or UNKNOWN_VERSION
            changelog = source.read_changelog()
        finally:
            source.cleanup()

        comparison = compare(current, latest)
        changes = changes_between(changelog, current, latest) if comparison.is_newer else []
        LOGGER.info(
            "Instance %s: current %s, latest %s (%s)",
            instance_id,
            current,
            latest,
            comparison.verdict,
        )
        return UpdateInfo(
            instance_id=instance_id,
            current_version=current,
            latest_version=latest,
            available_versions=[latest],
            update_available=comparison.is_newer,
            changes=changes,
        )

    def _discover_version(self, instance: Instance) -> str | None:
        """Read the deployed descriptor and store its version in the registry."""
        config = load_instance_config(instance)
        try:
            runner = self.runner_factory(config)
            with runner.session():
                hosts = self.build_hosts(runner, instance.id, config)
                version = hosts.payload.deployed_version()
        except AddonctlError as exc:
            LOGGER.warning("Could not read deployed version of %s: %s", instance.id, exc)
            return None
        if version:

            def apply(item: Instance) -> None:
                item.version = version

            self.registry.update(instance.id, apply)
        return version

    def build_hosts(
        self, runner: CommandRunner, instance_id: str, config: InstanceConfig
    ) -> HostProviders:
        """Return providers for *instance_id* bound to *runner*."""
        return HostProviders.build(
            runner,
            app_config=self.app_config,
            templates=self.templates,
            instance_id=instance_id,
            config=config,
            sleep=self.sleep,
            clock=self.clock,
        )

    # ------------------------------------------------------------------
    # Updating
    # ------------------------------------------------------------------
    def update_addon(
        self,
        instance_id: str,
        options: UpdateOptions | None = None,
        *,
        scope: OperationScope | None = None,
    ) -> UpdateResult:
        """Update *instance_id* to the target (or latest) payload version."""
        options = options or UpdateOptions()
        started = time.monotonic()
        ctx = RunContext("update", UPDATE_STEPS, self.events, instance_id=instance_id, scope=scope)
        result = UpdateResult(
            success=False,
            instance_id=instance_id,
            steps=ctx.records,
            warnings=ctx.warnings,
        )
        run = _UpdateRun(self, instance_id, options, ctx, result)
        try:
            run.execute()
        except StepFailure as exc:
            result.error = exc.cause
            if ctx.reached(UpdateStep.UPDATE_FILES):
                run.roll_back()
            run.record_failure(exc.cause)
        else:
            result.success = True
        finally:
            run.close()
        result.duration_ms = elapsed_ms(started)
        LOGGER.info(
            "Update of %s %s in %d ms",
            instance_id,
            "succeeded" if result.success else "failed",
            result.duration_ms,
        )
        return result

    def update_many(
        self,
        instance_ids: Iterable[str],
        options: UpdateOptions | None = None,
    ) -> list[UpdateResult]:
        """Update each instance in turn and collect the results."""
        return [self.update_addon(instance_id, options) for instance_id in instance_ids]


class _UpdateRun:
    """State of one update run."""

    def __init__(
        self,
        owner: UpdateOrchestrator,
        instance_id: str,
        options: UpdateOptions,
        ctx: RunContext,
        result: UpdateResult,
    ) -> None:
        self.owner = owner
        self.instance_id = instance_id
        self.options = options
        self.ctx = ctx
        self.result = result
        self.instance: Instance | None = None
        self.config = InstanceConfig()
        self.runner: CommandRunner | None = None
        self._hosts: HostProviders | None = None
        self.source: PayloadSource | None = None
        self.previous = UNKNOWN_VERSION
        self.target = UNKNOWN_VERSION
        self.already_current = False
        self.backup: BackupEntry | None = None
        self.restarted = False

    @property
    def hosts(self) -> HostProviders:
        if self._hosts is None:
            raise ExecutionError("Not connected to the target.")
        return self._hosts

    def execute(self) -> None:
        ctx = self.ctx
        options = self.options
        ctx.run(UpdateStep.VALIDATE, self.validate)

        if self.already_current and not options.force_update:
            self.result.changes = ["Already on target version"]
            self._skip_rest("Already on target version")
            return
        if options.dry_run:
            self.result.changes = ["DRY RUN - No changes made", *self.result.changes]
            self._skip_rest("dry run")
            return

        if options.skip_backup:
            ctx.skip(UpdateStep.CREATE_BACKUP, "Backup skipped by request")
        else:
            ctx.run(UpdateStep.CREATE_BACKUP, self.create_backup)
        ctx.run(UpdateStep.STOP_SERVICE, self.stop_service)
        ctx.run(UpdateStep.UPDATE_FILES, self.update_files)
        ctx.run(UpdateStep.INSTALL_DEPENDENCIES, self.install_dependencies)
        ctx.run(UpdateStep.UPDATE_CONFIG, self.update_config)
        if options.restart_service:
            ctx.run(UpdateStep.RESTART_SERVICE, self.restart_service)
        else:
            ctx.skip(UpdateStep.RESTART_SERVICE, "Restart not requested")
        ctx.run(UpdateStep.VERIFY, self.verify)
        ctx.run(UpdateStep.UPDATE_REGISTRY, self.update_registry)
        ctx.run(UpdateStep.CLEANUP, self.cleanup)

    def _skip_rest(self, reason: str) -> None:
        for step in UPDATE_STEPS[1:]:
            self.ctx.skip(step, reason)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def validate(self) -> str:
        owner = self.owner
        owner.registry.load()
        instance = owner.registry.require(self.instance_id)
        self.instance = instance
        self.config = load_instance_config(instance)
        owner.guard.validate(instance.name, instance.port, instance.domain, exclude_id=instance.id)

        self.runner = owner.runner_factory(self.config)
        self.runner.connect()
        self._hosts = owner.build_hosts(self.runner, instance.id, self.config)

        available = self.hosts.payload.available_disk_mb()
        required = owner.app_config.required_disk_mb
        if available is None:
            self.ctx.warn("Could not determine free disk space on the target.")
        elif available < required:
            raise ValidationError(
                f"Insufficient disk space: {available} MB free, {required} MB required.",
                field="disk",
            )

        self.source = owner.locator.locate()
        latest = self.source.version(owner.app_config.payload.descriptor) or UNKNOWN_VERSION
        target = self.options.target_version or latest
        if not compare(latest, target).is_same:
            raise NotFoundError(
                f"Version {target} is not available (available: {latest}).",
            )

        self.previous = (
            instance.version or self.hosts.payload.deployed_version() or UNKNOWN_VERSION
        )
        self.target = target
        comparison = compare(self.previous, target)
        self.already_current = comparison.is_same
        self.result.previous_version = self.previous
        self.result.new_version = target
        if comparison.is_newer:
            changelog = self.source.read_changelog()
            self.result.changes = changes_between(changelog, self.previous, target)
        else:
            self.result.changes = [f"Updated from {self.previous} to {target}"]
        return f"{self.previous} -> {target} ({comparison.difference})"

    def create_backup(self) -> str:
        entry = self.hosts.backups.create(
            self.hosts.payload.directory,
            version=self.previous,
            backup_type="pre-update",
        )

        def apply(instance: Instance) -> None:
            instance.backups.append(entry)

        self.owner.registry.update(self.instance_id, apply)
        self.backup = entry
        self.result.backup_id = entry.id
        return f"Created backup {entry.id}"

    def stop_service(self) -> str:
        self.hosts.systemd.stop()
        return f"Stopped {self.hosts.systemd.unit_file}"

    def update_files(self) -> str:
        payload = self.hosts.payload
        if self.source is None:
            raise NotFoundError("No payload located for the update.")
        snapshotted = payload.exists()
        if snapshotted:
            payload.snapshot()
        try:
            payload.deploy(self.source)
        except AddonctlError:
            if snapshotted:
                self._undo_partial_deploy()
            raise
        return f"Deployed payload {self.target}"

    def _undo_partial_deploy(self) -> None:
        """Put the snapshot back when the deploy itself did not finish."""
        hosts = self.hosts
        try:
            hosts.payload.restore_snapshot()
            if self.options.restart_service:
                hosts.systemd.start()
        except AddonctlError as exc:
            LOGGER.error(
                "Restoring %s after a failed deploy failed: %s", hosts.payload.directory, exc
            )

    def install_dependencies(self) -> str:
        self.hosts.payload.install_dependencies()
        return "Dependencies installed"

    def update_config(self) -> str:
        overrides: dict[str, str | None] = dict(self.config.addon.environment)
        overrides.update(self.options.environment)
        environment = env_vars.merge(self.config, overrides)
        errors = env_vars.validate_all(environment)
        if errors:
            name, message = next(iter(errors.items()))
            raise ValidationError(message, field=name)
        if self.options.environment:
            self.config.addon.environment = _persistable(overrides)
        self.hosts.systemd.install_unit(unit_context(self.config, self.hosts.payload, overrides))
        return f"Unit {self.hosts.systemd.unit_file} regenerated"

    def restart_service(self) -> str:
        self.hosts.systemd.restart()
        self.restarted = True
        return f"Restarted {self.hosts.systemd.unit_file}"

    def verify(self) -> str:
        payload = self.hosts.payload
        deployed = payload.deployed_version()
        if deployed is None:
            raise VerificationError(
                f"Deployed descriptor {payload.descriptor_path} is missing or unreadable.",
                diagnostics={"path": payload.descriptor_path},
            )
        if not compare(deployed, self.target).is_same:
            raise VerificationError(
                f"Deployed version {deployed} does not match target {self.target}.",
                diagnostics={"deployed": deployed, "target": self.target},
            )
        if not self.restarted:
            return f"Version {deployed} deployed; service not restarted"
        return verify_service(
            self.hosts.systemd,
            self.config.addon.port,
            self.owner.app_config.verification,
        )

    def update_registry(self) -> str:
        entry = UpdateHistoryEntry(
            timestamp=now_iso(),
            from_version=self.previous,
            to_version=self.target,
            success=True,
            duration_ms=self.ctx.elapsed_ms(),
            backup_id=self.backup.id if self.backup else None,
        )

        def apply(instance: Instance) -> None:
            instance.version = self.target
            instance.update_history.append(entry)

        instance = self.owner.registry.update(self.instance_id, apply)
        self.config.addon.version = self.target
        store = InstanceConfigStore(Path(instance.config_path))
        try:
            if store.exists():
                store.save(self.config)
        except (AddonctlError, OSError) as exc:
            self.ctx.warn(f"Instance configuration not updated: {exc}")
        return f"Registry now reports {self.target}"

    def cleanup(self) -> str:
        hosts = self.hosts
        if not self.options.keep_old_files:
            result = hosts.payload.remove_snapshot()
            if not result.ok:
                self.ctx.warn(f"Could not remove {hosts.payload.snapshot_dir}: {result.output}")
        self._prune_backups()
        scratch = hosts.runner.remove_scratch()
        if scratch is not None and not scratch.ok:
            LOGGER.debug("Scratch cleanup failed: %s", scratch.output)
        if self.source is not None:
            self.source.cleanup()
        if self.options.keep_old_files:
            return f"Kept {hosts.payload.snapshot_dir}"
        return "Previous payload removed"

    def _prune_backups(self) -> None:
        registry = self.owner.registry
        instance = registry.require(self.instance_id)
        retention = self.owner.app_config.backups.retention
        if retention <= 0 or len(instance.backups) <= retention:
            return
        keep = {entry.id for entry in self.hosts.backups.prune(instance.backups, retention)}

        def apply(item: Instance) -> None:
            item.backups = [entry for entry in item.backups if entry.id in keep]

        registry.update(self.instance_id, apply)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------
    def roll_back(self) -> None:
        """Restore the pre-update payload; failures are logged only."""
        LOGGER.warning("Update of %s failed after files changed; rolling back", self.instance_id)
        options = RollbackOptions(
            use_fast_rollback=True,
            restart_service=self.options.restart_service,
            initiated_by="auto",
        )
        try:
            rollback = self.owner.rollback_engine.rollback(
                self.instance_id,
                options,
                runner=self.runner,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("Automatic rollback of %s raised: %s", self.instance_id, exc)
            return
        self.result.rollback = rollback
        self.result.rolled_back = rollback.success
        if not rollback.success:
            LOGGER.error("Automatic rollback of %s failed: %s", self.instance_id, rollback.error)

    def record_failure(self, error: AddonctlError) -> None:
        """Append a failed history entry; best effort."""
        if self.instance is None:
            return
        rollback = self.result.rollback
        entry = UpdateHistoryEntry(
            timestamp=now_iso(),
            from_version=self.previous,
            to_version=self.target,
            success=False,
            duration_ms=self.ctx.elapsed_ms(),
            backup_id=self.backup.id if self.backup else None,
            rollback_id=rollback.rollback_id if rollback and rollback.success else None,
            error=str(error),
        )

        def apply(instance: Instance) -> None:
            instance.update_history.append(entry)

        try:
            self.owner.registry.update(self.instance_id, apply)
        except AddonctlError as exc:
            LOGGER.warning("Could not record failed update of %s: %s", self.instance_id, exc)

    def close(self) -> None:
        if self.source is not None:
            self.source.cleanup()
        if self.runner is not None:
            try:
                self.runner.disconnect()
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Disconnect from %s failed: %s", self.runner.target, exc)


def _persistable(overrides: Mapping[str, str | None]) -> dict[str, str | None]:
    return {key: value for key, value in overrides.items() if value is not None}


__all__ = [
    "UPDATE_STEPS",
    "UpdateInfo",
    "UpdateOptions",
    "UpdateOrchestrator",
    "UpdateResult",
    "UpdateStep",
]
