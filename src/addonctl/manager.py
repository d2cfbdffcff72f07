"""Command surface used by the CLI and by library callers.

:class:`AddonManager` wires the registry, locks, templates, payload locator
and the three orchestrators from one :class:`~addonctl.config.AppConfig`.
Every mutating call runs inside a structured operation scope (supplied by the
caller or opened here) and under the appropriate file lock: installs take the
global lock, updates and rollbacks lock their instance only so different
instances can be worked on in parallel.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import AbstractContextManager, contextmanager
from functools import partial
from pathlib import Path
from typing import Any

from . import env_vars
from .config import AppConfig
from .env_vars import EnvEntry
from .errors import AddonctlError, RegistryError, ValidationError
from .guard import ConflictGuard
from .instance_config import InstanceConfig, InstanceConfigStore, get_value, set_value
from .locator import ResourceLocator
from .locking import LockManager, LockTimeoutError
from .logging import REDACTED, SENSITIVE_KEYS, OperationScope, StructuredLogger, sanitize
from .orchestration import (
    EventStream,
    InstallationOrchestrator,
    InstallationResult,
    InstallOptions,
    RollbackEngine,
    RollbackOptions,
    RollbackResult,
    UpdateInfo,
    UpdateOptions,
    UpdateOrchestrator,
    UpdateResult,
)
from .orchestration.base import (
    HostProviders,
    RunnerFactory,
    build_runner,
    load_instance_config,
    unit_context,
)
from .ports import PortAllocator
from .providers import ServiceInfo
from .runner import CommandRunner
from .state import Registry
from .state.models import Instance
from .state.registry import IntegrityIssue
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)


class AddonManager:
    """Install, update, roll back and catalogue addon instances."""

    def __init__(
        self,
        app_config: AppConfig,
        *,
        registry: Registry | None = None,
        locks: LockManager | None = None,
        runner_factory: RunnerFactory | None = None,
        locator: ResourceLocator | None = None,
        templates: TemplateEngine | None = None,
        events: EventStream | None = None,
        logger: StructuredLogger | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Build the collaborators, honouring any injected replacement."""
        self.app_config = app_config
        self.locks = locks or LockManager(app_config.runtime_dir, app_config.lock_timeout)
        self.registry = registry or Registry(app_config.registry_file, locks=self.locks)
        self.runner_factory = runner_factory or partial(build_runner, app_config=app_config)
        self.locator = locator or ResourceLocator(app_config.payload)
        self.templates = templates or TemplateEngine.with_overrides(app_config.templates_dir)
        self.events = events or EventStream()
        self.logger = logger or StructuredLogger(app_config.logs_dir)
        self.sleep = sleep
        self.clock = clock

        self.ports = PortAllocator(self.registry, base_port=app_config.ports.base)
        self.guard = ConflictGuard(
            self.registry,
            self.ports,
            port_search_limit=app_config.ports.search_limit,
        )
        shared: dict[str, Any] = {
            "events": self.events,
            "runner_factory": self.runner_factory,
            "sleep": sleep,
            "clock": clock,
        }
        self.installer = InstallationOrchestrator(
            app_config, self.registry, self.guard, self.templates, self.locator, **shared
        )
        self.rollback_engine = RollbackEngine(app_config, self.registry, self.templates, **shared)
        self.updater = UpdateOrchestrator(
            app_config,
            self.registry,
            self.guard,
            self.templates,
            self.locator,
            self.rollback_engine,
            **shared,
        )

    # ------------------------------------------------------------------
    # Orchestrated operations
    # ------------------------------------------------------------------
    def install(
        self,
        config: InstanceConfig,
        options: InstallOptions | None = None,
        *,
        scope: OperationScope | None = None,
    ) -> InstallationResult:
        """Provision a new instance from *config*."""
        options = options or InstallOptions()
        args = {
            "name": config.addon.name,
            "domain": config.addon.domain,
            "port": config.addon.port,
            "type": config.installation.type,
            "dry_run": options.dry_run,
            "skip_tls": options.skip_tls,
        }
        with self._scope("install", args, {"kind": "instance"}, scope) as op:
            with self._locked(self.locks.mutate_instances([]), op):
                result = self.installer.install(config, options, scope=op)
            context = {
                "instance_id": result.instance_id,
                "url": result.url,
                "duration_ms": result.duration_ms,
            }
            if result.success:
                message = "Installation dry run complete." if options.dry_run else (
                    f"Installed instance {result.instance_id}."
                )
                _finish(op, message, result.warnings, context, changed=int(not options.dry_run))
            else:
                op.error(
                    f"Installation failed: {result.error}",
                    rc=_rc(result.error),
                    context={**context, "failed_step": result.failed_step},
                )
            return result

    def check_updates(self, instance_id: str) -> UpdateInfo:
        """Compare the deployed and the available payload versions."""
        return self.updater.check_for_updates(instance_id)

    def update(
        self,
        instance_id: str,
        options: UpdateOptions | None = None,
        *,
        scope: OperationScope | None = None,
    ) -> UpdateResult:
        """Update *instance_id*; a failure after files changed rolls it back."""
        options = options or UpdateOptions()
        args = {
            "target_version": options.target_version,
            "skip_backup": options.skip_backup,
            "force": options.force_update,
            "dry_run": options.dry_run,
            "keep_old_files": options.keep_old_files,
        }
        target = {"kind": "instance", "id": instance_id}
        with self._scope("update", args, target, scope) as op:
            with self._locked(self.locks.instance_lock(instance_id), op):
                result = self.updater.update_addon(instance_id, options, scope=op)
            context = {
                "previous_version": result.previous_version,
                "new_version": result.new_version,
                "backup_id": result.backup_id,
                "rolled_back": result.rolled_back,
            }
            if result.success:
                _finish(op, f"Updated {instance_id}.", result.warnings, context, changed=1)
            else:
                op.error(f"Update failed: {result.error}", rc=_rc(result.error), context=context)
            return result

    def update_many(
        self,
        instance_ids: Iterable[str],
        options: UpdateOptions | None = None,
    ) -> list[UpdateResult]:
        """Update several instances one after another."""
        return [self.update(instance_id, options) for instance_id in instance_ids]

    def rollback(
        self,
        instance_id: str,
        options: RollbackOptions | None = None,
        *,
        scope: OperationScope | None = None,
    ) -> RollbackResult:
        """Restore the snapshot or a backup of *instance_id*."""
        options = options or RollbackOptions()
        args = {
            "backup_id": options.backup_id,
            "fast": options.use_fast_rollback,
            "restart": options.restart_service,
        }
        target = {"kind": "instance", "id": instance_id}
        with self._scope("rollback", args, target, scope) as op:
            with self._locked(self.locks.instance_lock(instance_id), op):
                result = self.rollback_engine.rollback(instance_id, options, scope=op)
            context = {
                "rollback_id": result.rollback_id,
                "method": result.method.value if result.method else None,
                "version": result.rolled_back_to_version,
            }
            if result.success:
                message = f"Rolled back {instance_id} to {result.rolled_back_to_version}."
                _finish(op, message, result.warnings, context, changed=1)
            else:
                op.error(f"Rollback failed: {result.error}", rc=_rc(result.error), context=context)
            return result

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    def list_instances(self) -> list[Instance]:
        """Return every registered instance."""
        self.registry.load()
        return self.registry.list_instances()

    def get_instance(self, instance_id: str) -> Instance:
        """Return *instance_id* or raise :class:`~addonctl.errors.NotFoundError`."""
        self.registry.load()
        return self.registry.require(instance_id)

    def set_default(self, instance_id: str | None, *, scope: OperationScope | None = None) -> None:
        """Make *instance_id* the default instance (``None`` clears it)."""
        with self._scope("default", {"id": instance_id}, {"kind": "registry"}, scope) as op:
            self.registry.set_default(instance_id)
            op.success(
                f"Default instance set to {instance_id}." if instance_id else "Default cleared.",
                changed=1,
            )

    def get_default(self) -> Instance | None:
        """Return the default instance, if one is set."""
        self.registry.load()
        return self.registry.get_default()

    def delete_instance(
        self,
        instance_id: str,
        *,
        purge: bool = False,
        scope: OperationScope | None = None,
    ) -> bool:
        """Unregister *instance_id* and remove its configuration file.

        With *purge* the service unit, reverse-proxy site and payload are
        removed from the host first. Host clean-up failures are recorded as
        warnings; the registry entry is removed regardless.
        """
        args = {"id": instance_id, "purge": purge}
        target = {"kind": "instance", "id": instance_id}
        with self._scope("delete", args, target, scope) as op:
            with self._locked(self.locks.mutate_instances([instance_id]), op):
                instance = self.get_instance(instance_id)
                warnings: list[str] = []
                if purge:
                    warnings.extend(self._purge_host(instance, op))
                else:
                    op.add_step("host.purge", status="skipped", detail="not requested")
                if InstanceConfigStore(Path(instance.config_path)).delete():
                    op.add_step("config.remove", status="success", detail=instance.config_path)
                removed = self.registry.delete(instance_id)
                op.add_step("registry.remove", status="success" if removed else "skipped")
            _finish(op, f"Deleted instance {instance_id}.", warnings, {}, changed=int(removed))
            return removed

    def integrity(self) -> list[IntegrityIssue]:
        """Return registry consistency problems (empty when healthy)."""
        self.registry.load()
        return self.registry.validate_integrity()

    # ------------------------------------------------------------------
    # Service
    # ------------------------------------------------------------------
    def status(self, instance_id: str) -> ServiceInfo:
        """Return the current service state of *instance_id*."""
        instance = self.get_instance(instance_id)
        config = load_instance_config(instance)
        with self.runner_factory(config).session() as runner:
            return self._hosts(runner, instance, config).systemd.status()

    def logs(
        self,
        instance_id: str,
        lines: int = 50,
        *,
        follow: bool = False,
    ) -> str | Iterator[str]:
        """Return recent journal lines, or a live line iterator with *follow*."""
        instance = self.get_instance(instance_id)
        config = load_instance_config(instance)
        if follow:
            return self._follow_logs(instance, config, lines)
        with self.runner_factory(config).session() as runner:
            output = self._hosts(runner, instance, config).systemd.logs(lines)
        return output if isinstance(output, str) else "\n".join(output)

    def start(self, instance_id: str, *, scope: OperationScope | None = None) -> ServiceInfo:
        """Start the service of *instance_id*; return its state afterwards."""
        return self._control(instance_id, "start", scope)

    def stop(self, instance_id: str, *, scope: OperationScope | None = None) -> ServiceInfo:
        """Stop the service of *instance_id*; return its state afterwards."""
        return self._control(instance_id, "stop", scope)

    def restart(self, instance_id: str, *, scope: OperationScope | None = None) -> ServiceInfo:
        """Restart the service of *instance_id*; return its state afterwards."""
        return self._control(instance_id, "restart", scope)

    def config_store(self, instance_id: str) -> InstanceConfigStore:
        """Return the configuration store of *instance_id* wired to re-render its unit."""
        instance = self.get_instance(instance_id)
        return InstanceConfigStore(
            Path(instance.config_path),
            sync_hook=partial(self._sync_unit, instance),
        )

    # ------------------------------------------------------------------
    # Environment and configuration
    # ------------------------------------------------------------------
    def env_list(self, instance_id: str) -> list[EnvEntry]:
        """Return the effective service environment of *instance_id*."""
        return env_vars.describe(self.config_store(instance_id).load())

    def env_get(self, instance_id: str, name: str) -> EnvEntry:
        """Return the effective value of variable *name* and where it comes from."""
        env_vars.descriptor(name)
        return next(entry for entry in self.env_list(instance_id) if entry.name == name)

    def env_set(
        self,
        instance_id: str,
        name: str,
        value: str,
        *,
        restart: bool = False,
        scope: OperationScope | None = None,
    ) -> EnvEntry:
        """Override *name* with *value* and re-render the service unit."""
        cleaned = env_vars.validate(name, value)
        args = {"name": name, "value": env_vars.redact({name: cleaned})[name]}
        self._edit_environment(
            "env.set",
            instance_id,
            args,
            lambda overrides: overrides.update({name: cleaned}),
            restart=restart,
            scope=scope,
        )
        return self.env_get(instance_id, name)

    def env_unset(
        self,
        instance_id: str,
        name: str,
        *,
        restart: bool = False,
        scope: OperationScope | None = None,
    ) -> EnvEntry:
        """Drop the override of *name* so the configured or default value applies."""
        env_vars.descriptor(name)
        self._edit_environment(
            "env.unset",
            instance_id,
            {"name": name},
            lambda overrides: overrides.pop(name, None),
            restart=restart,
            scope=scope,
        )
        return self.env_get(instance_id, name)

    def env_reset(
        self,
        instance_id: str,
        *,
        restart: bool = False,
        scope: OperationScope | None = None,
    ) -> list[EnvEntry]:
        """Drop every override of *instance_id*."""
        self._edit_environment(
            "env.reset",
            instance_id,
            {},
            lambda overrides: overrides.clear(),
            restart=restart,
            scope=scope,
        )
        return self.env_list(instance_id)

    def env_generate(
        self,
        instance_id: str,
        name: str,
        *,
        restart: bool = False,
        scope: OperationScope | None = None,
    ) -> str:
        """Store a freshly generated value for *name* and return it."""
        value = env_vars.generate(name)
        self._edit_environment(
            "env.generate",
            instance_id,
            {"name": name},
            lambda overrides: overrides.update({name: value}),
            restart=restart,
            scope=scope,
        )
        return value

    def env_sync(
        self,
        instance_id: str,
        *,
        restart: bool = False,
        scope: OperationScope | None = None,
    ) -> list[EnvEntry]:
        """Re-render the service unit from the stored configuration."""
        self._edit_environment("env.sync", instance_id, {}, None, restart=restart, scope=scope)
        return self.env_list(instance_id)

    def config_show(self, instance_id: str) -> dict[str, object]:
        """Return the stored configuration of *instance_id* with secrets masked."""
        data = sanitize(self.config_store(instance_id).load().to_dict())
        return data if isinstance(data, dict) else {}

    def config_get(self, instance_id: str, key: str) -> object:
        """Return the value under dotted *key*; secrets are masked."""
        return _masked(key, get_value(self.config_store(instance_id).load(), key))

    def config_set(
        self,
        instance_id: str,
        key: str,
        value: str,
        *,
        restart: bool = False,
        scope: OperationScope | None = None,
    ) -> None:
        """Change dotted *key* and re-render the service unit from the result."""
        args = {"id": instance_id, "key": key, "value": _masked(key, value), "restart": restart}
        target = {"kind": "instance", "id": instance_id}
        with self._scope("config.set", args, target, scope) as op:
            with self._locked(self.locks.mutate_instances([instance_id]), op):
                store = self.config_store(instance_id)
                updated = set_value(store.load(), key, value)
                _check_environment(updated)
                store.save(updated, sync_service_unit=True, restart=restart)
                op.add_step("config.save", status="success", detail=str(store.path))
                op.add_step("systemd.unit", status="success", detail=_unit_detail(restart))
            op.success(f"Set {key} on {instance_id}.", changed=1)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _scope(
        self,
        command: str,
        args: dict[str, object],
        target: dict[str, object],
        scope: OperationScope | None,
    ) -> Iterator[OperationScope]:
        if scope is not None:
            yield scope
            return
        with self.logger.operation(command, args=args, target=target) as op:
            yield op

    @contextmanager
    def _locked(
        self,
        lock: AbstractContextManager[object],
        op: OperationScope,
    ) -> Iterator[None]:
        try:
            with lock as handle:
                wait_ms = getattr(handle, "wait_ms", None)
                if isinstance(wait_ms, int):
                    op.set_lock_wait_ms(wait_ms)
                yield
        except LockTimeoutError as exc:
            raise RegistryError(str(exc)) from exc

    def _hosts(
        self,
        runner: CommandRunner,
        instance: Instance,
        config: InstanceConfig,
    ) -> HostProviders:
        return self.updater.build_hosts(runner, instance.id, config)

    def _control(
        self,
        instance_id: str,
        action: str,
        scope: OperationScope | None,
    ) -> ServiceInfo:
        target = {"kind": "instance", "id": instance_id}
        with self._scope(f"service.{action}", {"id": instance_id}, target, scope) as op:
            with self._locked(self.locks.mutate_instances([instance_id]), op):
                instance = self.get_instance(instance_id)
                config = load_instance_config(instance)
                with self.runner_factory(config).session() as runner:
                    systemd = self._hosts(runner, instance, config).systemd
                    actions = {
                        "start": systemd.start,
                        "stop": systemd.stop,
                        "restart": systemd.restart,
                    }
                    actions[action]()
                    op.add_step(f"systemd.{action}", status="success", detail=systemd.unit_file)
                    info = systemd.status()
            op.success(
                f"Service of {instance_id} is {info.state.value}.",
                changed=1,
                context=info.to_dict(),
            )
            return info

    def _edit_environment(
        self,
        command: str,
        instance_id: str,
        args: dict[str, object],
        update: Callable[[dict[str, str | None]], object] | None,
        *,
        restart: bool,
        scope: OperationScope | None,
    ) -> None:
        args = {"id": instance_id, **args, "restart": restart}
        target = {"kind": "instance", "id": instance_id}
        with self._scope(command, args, target, scope) as op:
            with self._locked(self.locks.mutate_instances([instance_id]), op):
                instance = self.get_instance(instance_id)
                store = self.config_store(instance_id)
                config = store.load()
                if update is None:
                    self._sync_unit(instance, config, restart)
                else:
                    update(config.addon.environment)
                    _check_environment(config)
                    store.save(config, sync_service_unit=True, restart=restart)
                    op.add_step("config.save", status="success", detail=str(store.path))
                op.add_step("systemd.unit", status="success", detail=_unit_detail(restart))
            op.success(f"Service environment of {instance_id} updated.", changed=1)

    def _follow_logs(
        self,
        instance: Instance,
        config: InstanceConfig,
        lines: int,
    ) -> Iterator[str]:
        with self.runner_factory(config).session() as runner:
            stream = self._hosts(runner, instance, config).systemd.logs(lines, follow=True)
            if isinstance(stream, str):
                yield stream
                return
            yield from stream

    def _sync_unit(self, instance: Instance, config: InstanceConfig, restart: bool) -> None:
        with self.runner_factory(config).session() as runner:
            hosts = self._hosts(runner, instance, config)
            changed = hosts.systemd.install_unit(unit_context(config, hosts.payload))
            LOGGER.info(
                "Service unit of %s %s",
                instance.id,
                "re-rendered" if changed else "already current",
            )
            if restart:
                hosts.systemd.restart()

    def _purge_host(self, instance: Instance, op: OperationScope) -> list[str]:
        warnings: list[str] = []
        try:
            config = load_instance_config(instance)
            with self.runner_factory(config).session() as runner:
                hosts = self._hosts(runner, instance, config)
                actions: list[tuple[str, Callable[[], object]]] = [
                    ("systemd.remove", hosts.systemd.remove),
                    ("nginx.remove", hosts.nginx.remove),
                    ("payload.remove", hosts.payload.remove),
                    ("payload.snapshot.remove", hosts.payload.remove_snapshot),
                ]
                for name, action in actions:
                    try:
                        action()
                    except AddonctlError as exc:
                        op.add_step(name, status="warning", detail=str(exc))
                        warnings.append(f"{name}: {exc}")
                    else:
                        op.add_step(name, status="success")
        except AddonctlError as exc:
            LOGGER.warning("Host clean-up of %s skipped: %s", instance.id, exc)
            op.add_step("host.purge", status="warning", detail=str(exc))
            warnings.append(f"Host clean-up skipped: {exc}")
        return warnings


def _finish(
    op: OperationScope,
    message: str,
    warnings: list[str],
    context: dict[str, object],
    *,
    changed: int,
) -> None:
    if warnings:
        op.warning(message, warnings=warnings, changed=changed, context=context)
    else:
        op.success(message, changed=changed, context=context)


def _rc(error: AddonctlError | None) -> int:
    return int(error.exit_code) if error is not None else 1


def _check_environment(config: InstanceConfig) -> None:
    merged = env_vars.merge(config, config.addon.environment)
    errors = env_vars.validate_all(
        {name: value for name, value in merged.items() if name in env_vars.EnvVar.__members__}
    )
    if errors:
        name, message = next(iter(errors.items()))
        raise ValidationError(message, field=name)


def _masked(key: str, value: object) -> object:
    leaf = key.rsplit(".", 1)[-1]
    if leaf.lower() in SENSITIVE_KEYS and value not in (None, ""):
        return REDACTED
    return sanitize(value)


def _unit_detail(restart: bool) -> str:
    return "re-rendered and restarted" if restart else "re-rendered"


__all__ = ["AddonManager"]
