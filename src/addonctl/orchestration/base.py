"""Run context, step executor and host wiring shared by the orchestrators."""
from __future__ import annotations

import getpass
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import NoReturn

from .. import env_vars
from ..backups import BackupStore
from ..config import AppConfig
from ..errors import AddonctlError, ExecutionError
from ..instance_config import InstanceConfig, InstanceConfigStore
from ..logging import OperationScope
from ..providers import (
    DynamicDnsProvider,
    FirewallProvider,
    IntrusionPreventionProvider,
    NginxProvider,
    PayloadProvider,
    PrerequisiteProvider,
    SystemdProvider,
)
from ..runner import CommandRunner, LocalCommandRunner, RemoteCommandRunner
from ..state.models import Instance, service_name_for
from ..templates import TemplateEngine
from ..tls import CertbotProvider
from .events import EventStream, ProgressEvent, StepRecord, StepStatus

LOGGER = logging.getLogger(__name__)

RunnerFactory = Callable[[InstanceConfig], CommandRunner]


class StepFailure(AddonctlError):
    """Wraps the error that aborted a step so the orchestrator can finish the run."""

    def __init__(self, step: str, cause: AddonctlError) -> None:
        """Remember the failing *step* and its *cause*."""
        super().__init__(str(cause))
        self.step = step
        self.cause = cause
        self.exit_code = cause.exit_code


class RunContext:
    """Step log and event emission for one orchestration run."""

    def __init__(
        self,
        operation: str,
        steps: Sequence[str],
        events: EventStream,
        *,
        instance_id: str | None = None,
        scope: OperationScope | None = None,
    ) -> None:
        """Prepare an empty log for the ordered *steps*."""
        self.operation = operation
        self.steps = list(steps)
        self.events = events
        self.instance_id = instance_id
        self.scope = scope
        self.records: list[StepRecord] = []
        self.warnings: list[str] = []
        self.started = time.monotonic()

    def elapsed_ms(self) -> int:
        """Return milliseconds since the run started."""
        return elapsed_ms(self.started)

    def progress_for(self, step: str, status: StepStatus) -> int:
        """Return the percentage reached once *step* enters *status*."""
        index = self.steps.index(step)
        position = index + 1 if status.terminal else index
        return round(position / len(self.steps) * 100)

    def record(
        self,
        step: str,
        status: StepStatus,
        message: str = "",
        *,
        error: str | None = None,
    ) -> StepRecord:
        """Append a record, publish it and mirror terminal states to the operation log."""
        entry = StepRecord(
            step=step,
            status=status,
            message=message,
            progress=self.progress_for(step, status),
            error=error,
        )
        self.records.append(entry)
        self.events.emit(ProgressEvent(self.operation, entry, instance_id=self.instance_id))
        if self.scope is not None and status.terminal:
            self.scope.add_step(
                f"{self.operation}.{step.lower()}",
                status=_SCOPE_STATUS[status],
                detail=error or message or None,
            )
        return entry

    def skip(self, step: str, reason: str) -> None:
        """Record *step* as skipped without running anything."""
        LOGGER.info("%s: %s skipped (%s)", self.operation, step, reason)
        self.record(step, StepStatus.SKIPPED, reason)

    def run(self, step: str, action: Callable[[], str | None], *, label: str | None = None) -> None:
        """Execute *action* as *step*.

        The step is recorded IN_PROGRESS, then COMPLETED with the message the
        action returns, or FAILED followed by :class:`StepFailure`.
        """
        self.record(step, StepStatus.IN_PROGRESS, label or f"{step.replace('_', ' ').title()}...")
        try:
            message = action()
        except AddonctlError as exc:
            self._fail(step, exc)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("%s: unexpected error during %s", self.operation, step)
            self._fail(step, ExecutionError(f"{type(exc).__name__}: {exc}"))
        self.record(step, StepStatus.COMPLETED, message or "Done")

    def warn(self, message: str) -> None:
        """Collect a non-fatal warning for the result."""
        LOGGER.warning("%s: %s", self.operation, message)
        self.warnings.append(message)

    def status_of(self, step: str) -> StepStatus:
        """Return the latest status recorded for *step*."""
        for entry in reversed(self.records):
            if entry.step == step:
                return entry.status
        return StepStatus.PENDING

    def reached(self, step: str) -> bool:
        """Return ``True`` when *step* completed successfully."""
        return self.status_of(step) is StepStatus.COMPLETED

    def _fail(self, step: str, exc: AddonctlError) -> NoReturn:
        LOGGER.error("%s: %s failed: %s", self.operation, step, exc)
        self.record(step, StepStatus.FAILED, str(exc), error=str(exc))
        raise StepFailure(step, exc) from exc


_SCOPE_STATUS = {
    StepStatus.COMPLETED: "success",
    StepStatus.FAILED: "error",
    StepStatus.SKIPPED: "skipped",
}


def elapsed_ms(started: float) -> int:
    """Return milliseconds since the ``time.monotonic`` value *started*."""
    return int((time.monotonic() - started) * 1000)


def build_runner(config: InstanceConfig, app_config: AppConfig) -> CommandRunner:
    """Return a local or SSH runner for *config*."""
    installation = config.installation
    secrets = config.secrets
    if not installation.is_remote:
        return LocalCommandRunner(sudo_password=secrets.sudo_password)
    target = installation.target
    if not target.host or not target.username:
        raise ExecutionError("Remote installation requires a target host and username.")
    key = config.paths.ssh_key or target.key_path
    return RemoteCommandRunner(
        target.host,
        username=target.username,
        port=target.port or app_config.ssh.port,
        password=secrets.ssh_password,
        sudo_password=secrets.sudo_password,
        key_path=Path(key) if key else None,
        connect_timeout=app_config.ssh.connect_timeout,
        host_key_policy=app_config.ssh.host_key_policy,
    )


def service_user_for(config: InstanceConfig) -> str:
    """Return the account the service unit runs as."""
    target = config.installation.target
    if config.installation.is_remote and target.username:
        return target.username
    return getpass.getuser()


def load_instance_config(instance: Instance) -> InstanceConfig:
    """Return the stored configuration of a registered *instance*."""
    return InstanceConfigStore(Path(instance.config_path)).load()


def unit_context(
    config: InstanceConfig,
    payload: PayloadProvider,
    overrides: Mapping[str, str | None] | None = None,
) -> dict[str, object]:
    """Return the template context of the service unit for *config*."""
    if overrides is None:
        overrides = config.addon.environment
    environment = env_vars.merge(config, overrides)
    LOGGER.debug("Service environment: %s", env_vars.redact(environment))
    return {
        "instance_name": config.addon.name,
        "service_user": service_user_for(config),
        "working_directory": payload.directory,
        "exec_start": payload.exec_start,
        "environment": env_vars.unit_environment(environment),
    }


def resolve_paths(config: InstanceConfig, app_config: AppConfig, instance_id: str) -> None:
    """Fill unset host paths in *config* with the defaults for *instance_id*."""
    root = PurePosixPath(str(app_config.payload.install_root))
    paths = config.paths
    service_name = service_name_for(instance_id)
    if not paths.addon_directory:
        paths.addon_directory = str(root / instance_id)
    if not paths.backups:
        paths.backups = str(root / "backups" / instance_id)
    if not paths.service_file:
        paths.service_file = f"/etc/systemd/system/{service_name}.service"
    if not paths.nginx_config:
        paths.nginx_config = f"/etc/nginx/sites-available/{service_name}"


@dataclass(slots=True)
class HostProviders:
    """Providers bound to one runner and one instance."""

    runner: CommandRunner
    systemd: SystemdProvider
    nginx: NginxProvider
    payload: PayloadProvider
    backups: BackupStore
    firewall: FirewallProvider
    intrusion: IntrusionPreventionProvider
    dyndns: DynamicDnsProvider
    prerequisites: PrerequisiteProvider
    certbot: CertbotProvider

    @classmethod
    def build(
        cls,
        runner: CommandRunner,
        *,
        app_config: AppConfig,
        templates: TemplateEngine,
        instance_id: str,
        config: InstanceConfig,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> HostProviders:
        """Wire every provider for *instance_id* using the paths in *config*."""
        resolve_paths(config, app_config, instance_id)
        service_name = service_name_for(instance_id)
        unit_path = PurePosixPath(config.paths.service_file)
        site_path = PurePosixPath(config.paths.nginx_config)
        return cls(
            runner=runner,
            systemd=SystemdProvider(
                runner,
                templates,
                service_name,
                systemd_dir=str(unit_path.parent),
                sleep=sleep,
                clock=clock,
            ),
            nginx=NginxProvider(
                runner,
                templates,
                site_path.name,
                sites_available=str(site_path.parent),
            ),
            payload=PayloadProvider(
                runner,
                config.paths.addon_directory,
                descriptor=app_config.payload.descriptor,
                entry_point=app_config.payload.entry_point,
            ),
            backups=BackupStore(
                runner,
                config.paths.backups,
                compression=app_config.backups.compression,
            ),
            firewall=FirewallProvider(runner),
            intrusion=IntrusionPreventionProvider(runner, templates),
            dyndns=DynamicDnsProvider(runner, templates),
            prerequisites=PrerequisiteProvider(runner),
            certbot=CertbotProvider(runner),
        )


__all__ = [
    "HostProviders",
    "RunContext",
    "RunnerFactory",
    "StepFailure",
    "build_runner",
    "elapsed_ms",
    "load_instance_config",
    "resolve_paths",
    "service_user_for",
    "unit_context",
]
