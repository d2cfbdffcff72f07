"""Provision a new addon instance on a local or remote Linux host.

The run is a fixed sequence of :class:`InstallStep` values. Every step is
recorded through :class:`~addonctl.orchestration.base.RunContext`; the first
failing step aborts the rest, triggers best-effort cleanup of what the run
created and becomes the error of the :class:`InstallationResult`.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from functools import partial

from .. import env_vars
from ..config import AppConfig
from ..errors import AddonctlError, ExecutionError, ValidationError
from ..guard import ConflictGuard, validate_domain, validate_name
from ..instance_config import InstanceConfig, InstanceConfigStore
from ..locator import PayloadSource, ResourceLocator
from ..logging import OperationScope
from ..osinfo import OperatingSystem, detect_system
from ..providers.dyndns import duckdns_subdomain
from ..providers.prerequisites import Prerequisite, PrerequisiteCheck, required_prerequisites
from ..runner import CommandRunner
from ..state import Registry
from ..state.models import BackupEntry, Instance, slugify
from ..templates import TemplateEngine
from .base import (
    HostProviders,
    RunContext,
    RunnerFactory,
    StepFailure,
    build_runner,
    elapsed_ms,
    resolve_paths,
    unit_context,
)
from .events import EventStream, StepRecord, StepStatus
from .verify import http_check, verify_service

LOGGER = logging.getLogger(__name__)


class InstallStep(StrEnum):
    """Ordered steps of an installation run."""

    CONNECT = "CONNECT"
    DETECT_OS = "DETECT_OS"
    CHECK_PREREQUISITES = "CHECK_PREREQUISITES"
    INSTALL_PREREQUISITES = "INSTALL_PREREQUISITES"
    SETUP_FIREWALL = "SETUP_FIREWALL"
    SETUP_INTRUSION_PREVENTION = "SETUP_INTRUSION_PREVENTION"
    DEPLOY_PAYLOAD = "DEPLOY_PAYLOAD"
    INSTALL_DEPENDENCIES = "INSTALL_DEPENDENCIES"
    SETUP_REVERSE_PROXY = "SETUP_REVERSE_PROXY"
    SETUP_TLS = "SETUP_TLS"
    CREATE_SERVICE_UNIT = "CREATE_SERVICE_UNIT"
    START_SERVICE = "START_SERVICE"
    CONFIGURE_DYNAMIC_DNS = "CONFIGURE_DYNAMIC_DNS"
    CREATE_INITIAL_BACKUP = "CREATE_INITIAL_BACKUP"
    VERIFY = "VERIFY"
    REGISTER_INSTANCE = "REGISTER_INSTANCE"
    CLEANUP = "CLEANUP"
    COMPLETE = "COMPLETE"


INSTALL_STEPS: tuple[str, ...] = tuple(step.value for step in InstallStep)


@dataclass(slots=True)
class InstallOptions:
    """Switches that change how an installation runs."""

    dry_run: bool = False
    skip_tls: bool = False
    email: str | None = None


@dataclass(slots=True)
class InstallationResult:
    """Terminal outcome of an installation run."""

    success: bool
    instance_id: str | None = None
    instance: Instance | None = None
    url: str | None = None
    manifest_url: str | None = None
    steps: list[StepRecord] = field(default_factory=list)
    error: AddonctlError | None = None
    duration_ms: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def failed_step(self) -> str | None:
        """Return the step that failed, if any."""
        return next(
            (record.step for record in self.steps if record.status is StepStatus.FAILED),
            None,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable summary."""
        return {
            "success": self.success,
            "instance_id": self.instance_id,
            "url": self.url,
            "manifest_url": self.manifest_url,
            "failed_step": self.failed_step,
            "error": str(self.error) if self.error else None,
            "duration_ms": self.duration_ms,
            "warnings": list(self.warnings),
            "steps": [record.to_dict() for record in self.steps],
        }


@dataclass(slots=True)
class _InstallPlan:
    instance_id: str
    config: InstanceConfig
    use_tls: bool
    url: str
    manifest_url: str

    @property
    def name(self) -> str:
        return self.config.addon.name

    @property
    def domain(self) -> str:
        return self.config.addon.domain

    @property
    def port(self) -> int:
        return self.config.addon.port


class InstallationOrchestrator:
    """Run installations against targets built by a runner factory."""

    def __init__(
        self,
        app_config: AppConfig,
        registry: Registry,
        guard: ConflictGuard,
        templates: TemplateEngine,
        locator: ResourceLocator,
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
        self.events = events or EventStream()
        self.runner_factory = runner_factory or partial(build_runner, app_config=app_config)
        self.sleep = sleep
        self.clock = clock

    def install(
        self,
        config: InstanceConfig,
        options: InstallOptions | None = None,
        *,
        scope: OperationScope | None = None,
    ) -> InstallationResult:
        """Install a new instance described by *config*.

        Pre-flight validation happens before any connection; its failure
        returns a result without step records.
        """
        options = options or InstallOptions()
        started = time.monotonic()
        try:
            plan = self.preflight(config, options)
        except AddonctlError as exc:
            LOGGER.error("Installation pre-flight failed: %s", exc)
            return InstallationResult(success=False, error=exc, duration_ms=elapsed_ms(started))

        ctx = RunContext(
            "install", INSTALL_STEPS, self.events, instance_id=plan.instance_id, scope=scope
        )
        result = InstallationResult(
            success=False,
            instance_id=plan.instance_id,
            url=plan.url,
            manifest_url=plan.manifest_url,
            steps=ctx.records,
            warnings=ctx.warnings,
        )

        if options.dry_run:
            for step in INSTALL_STEPS:
                ctx.skip(step, "dry run")
            result.success = True
            result.duration_ms = elapsed_ms(started)
            return result

        run = _InstallRun(self, plan, options, ctx)
        try:
            run.execute()
        except StepFailure as exc:
            result.error = exc.cause
            run.cleanup_after_failure()
        else:
            result.success = True
            result.instance = run.instance
        finally:
            run.close()
        result.duration_ms = elapsed_ms(started)
        LOGGER.info(
            "Installation of %s %s in %d ms",
            plan.instance_id,
            "succeeded" if result.success else "failed",
            result.duration_ms,
        )
        return result

    def preflight(self, config: InstanceConfig, options: InstallOptions) -> _InstallPlan:
        """Validate *config* against format rules and the registry; nothing is touched."""
        self.registry.load()
        addon = config.addon
        self.guard.validate(addon.name, addon.port, addon.domain)
        addon.name = validate_name(addon.name)
        addon.domain = validate_domain(addon.domain)

        installation = config.installation
        target = installation.target
        if installation.is_remote and not (target.host and target.username):
            raise ValidationError(
                "Remote installation requires a target host and username.",
                field="installation.target.host",
            )

        if not addon.password:
            addon.password = env_vars.generate("ADDON_PASSWORD")
            LOGGER.info("Generated an addon password for %s", addon.name)
        environment = env_vars.merge(config, addon.environment)
        errors = env_vars.validate_all(environment)
        if errors:
            name, message = next(iter(errors.items()))
            raise ValidationError(message, field=name)
        missing = env_vars.missing_required(environment)
        if missing:
            raise ValidationError(
                f"Missing required environment variable(s): {', '.join(missing)}.",
                field=missing[0],
                suggestion="Set secrets.real_debrid_token in the instance configuration.",
            )

        if config.features.dynamic_dns:
            duckdns_subdomain(addon.domain)
            if not config.secrets.duckdns_token:
                raise ValidationError(
                    "Dynamic DNS is enabled but no DuckDNS token is configured.",
                    field="duckdns_token",
                )

        instance_id = self.registry.ensure_unique_id(slugify(addon.name))
        resolve_paths(config, self.app_config, instance_id)
        use_tls = config.features.tls and not options.skip_tls
        url = f"{'https' if use_tls else 'http'}://{addon.domain}"
        return _InstallPlan(
            instance_id=instance_id,
            config=config,
            use_tls=use_tls,
            url=url,
            manifest_url=f"{url}/{addon.password}/manifest.json",
        )


class _InstallRun:
    """State of one non-dry installation run."""

    def __init__(
        self,
        owner: InstallationOrchestrator,
        plan: _InstallPlan,
        options: InstallOptions,
        ctx: RunContext,
    ) -> None:
        self.owner = owner
        self.plan = plan
        self.options = options
        self.ctx = ctx
        self.config = plan.config
        self.runner: CommandRunner | None = None
        self._hosts: HostProviders | None = None
        self.source: PayloadSource | None = None
        self.version = "0.0.0"
        self.prerequisites: list[Prerequisite] = []
        self.checks: list[PrerequisiteCheck] = []
        self.backup: BackupEntry | None = None
        self.instance: Instance | None = None
        self.payload_touched = False
        self.unit_written = False
        self.service_enabled = False
        self.service_started = False
        self.config_saved = False
        self.registered = False

    @property
    def hosts(self) -> HostProviders:
        if self._hosts is None:
            raise ExecutionError("Not connected to the target.")
        return self._hosts

    @property
    def ssh_port(self) -> int:
        installation = self.config.installation
        if installation.is_remote:
            return installation.target.port
        return self.owner.app_config.ssh.port

    def execute(self) -> None:
        features = self.config.features
        ctx = self.ctx
        ctx.run(InstallStep.CONNECT, self.connect)
        ctx.run(InstallStep.DETECT_OS, self.detect_os)
        ctx.run(InstallStep.CHECK_PREREQUISITES, self.check_prerequisites)
        ctx.run(InstallStep.INSTALL_PREREQUISITES, self.install_prerequisites)
        self._optional(InstallStep.SETUP_FIREWALL, features.firewall, self.setup_firewall)
        self._optional(
            InstallStep.SETUP_INTRUSION_PREVENTION,
            features.intrusion_prevention,
            self.setup_intrusion_prevention,
        )
        ctx.run(InstallStep.DEPLOY_PAYLOAD, self.deploy_payload)
        ctx.run(InstallStep.INSTALL_DEPENDENCIES, self.install_dependencies)
        ctx.run(InstallStep.SETUP_REVERSE_PROXY, self.setup_reverse_proxy)
        if self.options.skip_tls and features.tls:
            ctx.skip(InstallStep.SETUP_TLS, "TLS skipped by request")
        else:
            self._optional(InstallStep.SETUP_TLS, features.tls, self.setup_tls)
        ctx.run(InstallStep.CREATE_SERVICE_UNIT, self.create_service_unit)
        ctx.run(InstallStep.START_SERVICE, self.start_service)
        self._optional(
            InstallStep.CONFIGURE_DYNAMIC_DNS, features.dynamic_dns, self.configure_dynamic_dns
        )
        self._optional(
            InstallStep.CREATE_INITIAL_BACKUP, features.backups, self.create_initial_backup
        )
        ctx.run(InstallStep.VERIFY, self.verify)
        ctx.run(InstallStep.REGISTER_INSTANCE, self.register_instance)
        ctx.run(InstallStep.CLEANUP, self.cleanup)
        ctx.run(InstallStep.COMPLETE, lambda: f"Addon available at {self.plan.url}")

    def _optional(self, step: InstallStep, enabled: bool, action: Callable[[], str | None]) -> None:
        if enabled:
            self.ctx.run(step, action)
        else:
            self.ctx.skip(step, "Feature disabled")

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def connect(self) -> str:
        owner = self.owner
        self.runner = owner.runner_factory(self.config)
        self.runner.connect()
        self._hosts = HostProviders.build(
            self.runner,
            app_config=owner.app_config,
            templates=owner.templates,
            instance_id=self.plan.instance_id,
            config=self.config,
            sleep=owner.sleep,
            clock=owner.clock,
        )
        for unit in owner.guard.detect_orphaned_services(self.runner):
            self.ctx.warn(f"Service {unit} exists on the host but is not in the registry.")
        return f"Connected to {self.runner.target}"

    def detect_os(self) -> str:
        info = detect_system(self.hosts.runner)
        if info.os is not OperatingSystem.LINUX:
            raise ExecutionError(
                f"Unsupported operating system '{info.os.value}'; only Linux targets are supported."
            )
        self.hosts.prerequisites.distro = info.distro
        version = f" {info.distro_version}" if info.distro_version else ""
        return f"{info.distro.value}{version} ({info.arch})"

    def check_prerequisites(self) -> str:
        self.prerequisites = required_prerequisites(self.config.features, tls=self.plan.use_tls)
        self.checks = self.hosts.prerequisites.check(self.prerequisites)
        missing = [check.name for check in self.checks if not check.satisfied]
        if missing:
            return f"Missing: {', '.join(missing)}"
        return "All prerequisites present"

    def install_prerequisites(self) -> str:
        installed = self.hosts.prerequisites.install_missing(self.prerequisites, self.checks)
        return f"Installed {', '.join(installed)}" if installed else "Nothing to install"

    def setup_firewall(self) -> str:
        self.hosts.firewall.configure(self.plan.port, ssh_port=self.ssh_port)
        return f"Firewall enabled (ports {self.ssh_port}, 80, 443, {self.plan.port})"

    def setup_intrusion_prevention(self) -> str:
        self.hosts.intrusion.configure(ssh_port=self.ssh_port)
        return "fail2ban SSH jail active"

    def deploy_payload(self) -> str:
        self.source = self.owner.locator.locate()
        self.payload_touched = True
        self.hosts.payload.deploy(self.source)
        version = self.source.version(self.owner.app_config.payload.descriptor)
        if version:
            self.version = version
        return f"Deployed payload {self.version} ({self.source.origin})"

    def install_dependencies(self) -> str:
        self.hosts.payload.install_dependencies()
        return "Dependencies installed"

    def setup_reverse_proxy(self) -> str:
        result = self.hosts.nginx.configure(
            {
                "instance_name": self.plan.name,
                "domain": self.plan.domain,
                "port": self.plan.port,
                "rate_limiting": self.config.features.rate_limiting,
                "zone": self.plan.instance_id.replace("-", "_"),
            }
        )
        return "nginx site configured" if result.changed else "nginx site unchanged"

    def setup_tls(self) -> str:
        certbot = self.hosts.certbot
        certbot.issue(self.plan.domain, email=self.options.email)
        info = certbot.inspect(self.plan.domain)
        if info is None:
            return "Certificate issued"
        return f"Certificate valid until {info.not_valid_after:%Y-%m-%d}"

    def create_service_unit(self) -> str:
        self.unit_written = True
        self.hosts.systemd.install_unit(unit_context(self.config, self.hosts.payload))
        return f"Unit {self.hosts.systemd.unit_file} written"

    def start_service(self) -> str:
        systemd = self.hosts.systemd
        if self.config.features.auto_start:
            self.service_enabled = True
            systemd.enable()
        self.service_started = True
        systemd.start()
        if self.config.features.auto_start:
            return "Service started and enabled at boot"
        return "Service started"

    def configure_dynamic_dns(self) -> str:
        self.hosts.dyndns.configure(self.plan.domain, self.config.secrets.duckdns_token or "")
        return "DuckDNS updater scheduled"

    def create_initial_backup(self) -> str:
        try:
            self.backup = self.hosts.backups.create(
                self.hosts.payload.directory,
                version=self.version,
                backup_type="initial",
            )
        except AddonctlError as exc:
            message = f"Initial backup failed: {exc}"
            self.ctx.warn(message)
            return f"{message} (continuing)"
        return f"Created backup {self.backup.id}"

    def verify(self) -> str:
        message = verify_service(
            self.hosts.systemd,
            self.plan.port,
            self.owner.app_config.verification,
        )
        warning = http_check(self.hosts.runner, self.plan.port)
        if warning:
            self.ctx.warn(warning)
        return message

    def register_instance(self) -> str:
        owner = self.owner
        instance_id = self.plan.instance_id
        config_path = owner.app_config.instances_dir / f"{instance_id}.yml"
        instance = Instance(
            id=instance_id,
            name=self.plan.name,
            config_path=str(config_path),
            port=self.plan.port,
            domain=self.plan.domain,
            version=self.version,
            backups=[self.backup] if self.backup else [],
        )
        store = InstanceConfigStore(config_path)
        try:
            self.config.addon.version = self.version
            store.save(self.config)
            self.config_saved = True
            with owner.registry.transaction():
                owner.guard.validate(instance.name, instance.port, instance.domain)
                owner.registry.create(instance)
            self.registered = True
        except (AddonctlError, OSError) as exc:
            if self.config_saved:
                self._attempt("remove unregistered configuration", store.delete)
                self.config_saved = False
            message = f"Instance is running but could not be registered: {exc}"
            self.ctx.warn(message)
            return message
        self.instance = instance
        return f"Registered instance {instance_id}"

    def cleanup(self) -> str:
        result = self.hosts.runner.remove_scratch()
        if result is not None and not result.ok:
            LOGGER.debug("Scratch cleanup failed: %s", result.output)
        if self.source is not None:
            self.source.cleanup()
        return "Temporary files removed"

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------
    def cleanup_after_failure(self) -> None:
        """Undo what this run created; every action is isolated and logged."""
        owner = self.owner
        instance_id = self.plan.instance_id
        if self.registered:
            self._attempt("remove registry entry", lambda: owner.registry.delete(instance_id))
        if self.config_saved:
            store = InstanceConfigStore(owner.app_config.instances_dir / f"{instance_id}.yml")
            self._attempt("remove instance configuration", store.delete)
        if self._hosts is None:
            return
        systemd = self._hosts.systemd
        if self.service_started:
            self._attempt("stop service", systemd.stop)
        if self.service_enabled:
            self._attempt("disable service", systemd.disable)
        if self.unit_written:
            self._attempt(
                "remove unit file",
                lambda: self._hosts.runner.remove_path(systemd.unit_path).check(
                    f"Removing {systemd.unit_path}"
                ),
            )
        if self.payload_touched:
            self._attempt("remove incomplete payload", self._remove_incomplete_payload)

    def _remove_incomplete_payload(self) -> None:
        payload = self.hosts.payload
        if payload.has_entry_point():
            LOGGER.info("Keeping %s: entry point present", payload.directory)
            return
        payload.remove().check(f"Removing {payload.directory}")

    def _attempt(self, label: str, action: Callable[[], object]) -> None:
        try:
            action()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Cleanup action '%s' failed: %s", label, exc)
        else:
            LOGGER.info("Cleanup: %s", label)

    def close(self) -> None:
        if self.source is not None:
            self.source.cleanup()
        if self.runner is not None:
            try:
                self.runner.disconnect()
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Disconnect from %s failed: %s", self.runner.target, exc)


__all__ = [
    "INSTALL_STEPS",
    "InstallOptions",
    "InstallStep",
    "InstallationOrchestrator",
    "InstallationResult",
]
