"""Typer-powered command line for ``addonctl``.

The CLI is a presentation layer over :class:`~addonctl.manager.AddonManager`:
it loads configuration, opens a structured operation scope per command,
prints progress events as they arrive and maps failures to
:class:`~addonctl.exit_codes.ExitCode` values.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .env_vars import EnvEntry
from .errors import AddonctlError
from .exit_codes import ExitCode
from .instance_config import InstanceConfigStore
from .logging import OperationScope, StructuredLogger
from .manager import AddonManager
from .orchestration import (
    InstallOptions,
    ProgressEvent,
    RollbackOptions,
    StepRecord,
    StepStatus,
    UpdateOptions,
)
from .state.models import Instance

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to addonctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON instead of formatted text.",
)

DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Validate and report the steps without changing anything.",
)

INSTANCE_ARGUMENT = typer.Argument(
    None,
    help="Instance id (defaults to the default instance).",
)

NO_RESTART_OPTION = typer.Option(
    False,
    "--no-restart",
    help="Leave the service stopped after replacing files.",
)

INSTANCE_OPTION = typer.Option(
    None,
    "--instance",
    "-i",
    help="Instance id (defaults to the default instance).",
)

RESTART_OPTION = typer.Option(
    False,
    "--restart",
    help="Restart the service after re-rendering its unit.",
)

REVEAL_OPTION = typer.Option(
    False,
    "--reveal",
    help="Show sensitive values instead of masking them.",
)

_STATUS_STYLE = {
    StepStatus.IN_PROGRESS: "[cyan]...[/cyan]",
    StepStatus.COMPLETED: "[green]OK[/green]",
    StepStatus.FAILED: "[red]FAIL[/red]",
    StepStatus.SKIPPED: "[yellow]SKIP[/yellow]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Private addon server provisioning CLI.

        Installs, updates and rolls back addon instances on this machine or on
        a remote Linux host reached over SSH.
        """
    ).strip(),
)

env_app = typer.Typer(help="Inspect and change the service environment of an instance.")
config_app = typer.Typer(help="Inspect and change the stored configuration of an instance.")
app.add_typer(env_app, name="env")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    manager: AddonManager


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    logger = StructuredLogger(config.logs_dir)
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        manager=AddonManager(config, logger=logger),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the addonctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"addonctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _print_event(event: ProgressEvent) -> None:
    record = event.record
    if record.status is StepStatus.PENDING:
        return
    console.print(
        f"{_STATUS_STYLE[record.status]} [{record.progress:>3}%] "
        f"{record.step} {escape(record.message)}"
    )


@contextmanager
def _progress(runtime: RuntimeContext, *, enabled: bool = True) -> Iterator[None]:
    """Print progress events for the duration of the block."""
    if not enabled:
        yield
        return
    unsubscribe = runtime.manager.events.subscribe(_print_event)
    try:
        yield
    finally:
        unsubscribe()


def _resolve_instance(
    runtime: RuntimeContext,
    instance_id: str | None,
    op: OperationScope,
) -> Instance:
    try:
        if instance_id:
            return runtime.manager.get_instance(instance_id)
        default = runtime.manager.get_default()
    except AddonctlError as exc:
        _command_error(op, str(exc), rc=int(exc.exit_code))
    if default is None:
        _command_error(
            op,
            "No instance given and no default instance is set "
            "(use 'addonctl default <id>').",
            rc=int(ExitCode.VALIDATION),
        )
    return default


def _failed_steps(steps: Sequence[StepRecord]) -> list[str]:
    return [
        f"{record.step}: {record.error or record.message}"
        for record in steps
        if record.status is StepStatus.FAILED
    ]


def _render_diagnostics(error: AddonctlError | None) -> None:
    diagnostics = getattr(error, "diagnostics", None)
    if not diagnostics:
        return
    for key, value in diagnostics.items():
        console.print(f"[bold]{escape(str(key))}:[/bold]")
        console.print(escape(str(value)).rstrip() or "(empty)")


def _parse_env_pairs(pairs: Sequence[str], op: OperationScope) -> dict[str, str | None]:
    environment: dict[str, str | None] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            _command_error(
                op,
                f"Invalid --env value '{pair}'; expected KEY=VALUE (or KEY= to reset).",
                rc=int(ExitCode.VALIDATION),
            )
        environment[key.strip()] = value if value else None
    return environment


@app.command()
def install(
    ctx: typer.Context,
    instance_config: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        help="Instance configuration YAML describing the target and addon settings.",
    ),
    dry_run: bool = DRY_RUN_OPTION,
    skip_tls: bool = typer.Option(
        False,
        "--skip-tls",
        help="Serve plain HTTP even when TLS is enabled in the configuration.",
    ),
    email: str | None = typer.Option(
        None,
        "--email",
        help="Contact address passed to certbot (omit to register without one).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Provision a new addon instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "install",
        args={"config": str(instance_config), "dry_run": dry_run, "skip_tls": skip_tls},
        target={"kind": "instance"},
    ) as op:
        try:
            config = InstanceConfigStore(instance_config).load()
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))

        options = InstallOptions(dry_run=dry_run, skip_tls=skip_tls, email=email)
        try:
            with _progress(runtime, enabled=not json_output):
                result = runtime.manager.install(config, options, scope=op)
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))

        if json_output:
            console.print_json(data=result.to_dict())
        if not result.success:
            error = result.error
            if not json_output:
                _render_diagnostics(error)
            _command_error(
                op,
                f"Installation failed: {error}",
                rc=int(error.exit_code) if error else 1,
                errors=_failed_steps(result.steps) or None,
            )
        if json_output:
            return
        if dry_run:
            _dry_run_complete(
                op,
                f"instance '{result.instance_id}' would be installed at {result.url}.",
                context={"instance_id": result.instance_id},
            )
            return
        console.print(f"[green]Installed instance '{result.instance_id}'.[/green]")
        console.print(f"URL: {result.url}")
        console.print(f"Manifest: {result.manifest_url}")
        for warning in result.warnings:
            console.print(f"[yellow]Warning:[/yellow] {escape(warning)}")


@app.command("list")
def list_instances(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List registered instances."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        try:
            instances = runtime.manager.list_instances()
            default = runtime.manager.get_default()
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        default_id = default.id if default else None

        if json_output:
            console.print_json(
                data={
                    "default_instance_id": default_id,
                    "instances": [instance.to_dict() for instance in instances],
                }
            )
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Id", style="bold")
        table.add_column("Name")
        table.add_column("Version")
        table.add_column("Domain")
        table.add_column("Port")
        table.add_column("Default")

        if not instances:
            table.add_row("(none)", "", "", "", "", "")
        else:
            for instance in instances:
                table.add_row(
                    instance.id,
                    instance.name,
                    instance.version or "",
                    instance.domain,
                    str(instance.port),
                    "*" if instance.id == default_id else "",
                )

        console.print(table)
        op.success("Reported instance list.", changed=0)


@app.command()
def default(
    ctx: typer.Context,
    instance_id: str | None = typer.Argument(
        None,
        help="Instance id to make the default (omit to show the current default).",
    ),
    clear: bool = typer.Option(False, "--clear", help="Clear the default instance."),
) -> None:
    """Show or change the default instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "default",
        args={"id": instance_id, "clear": clear},
        target={"kind": "registry"},
    ) as op:
        try:
            if clear or instance_id:
                runtime.manager.set_default(None if clear else instance_id, scope=op)
                console.print(
                    "Default instance cleared."
                    if clear
                    else f"[green]Default instance set to '{instance_id}'.[/green]"
                )
                return
            current = runtime.manager.get_default()
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        console.print(current.id if current else "(none)")
        op.success("Reported default instance.", changed=0)


@app.command("check-updates")
def check_updates(
    ctx: typer.Context,
    instance_id: str | None = INSTANCE_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Compare the deployed payload version with the available one."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "check-updates",
        args={"id": instance_id, "json": json_output},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        instance = _resolve_instance(runtime, instance_id, op)
        try:
            info = runtime.manager.check_updates(instance.id)
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))

        if json_output:
            console.print_json(data=info.to_dict())
            op.success("Reported update status (JSON).", changed=0)
            return

        console.print(
            f"{instance.id}: installed {info.current_version}, available {info.latest_version}"
        )
        if info.update_available:
            console.print("[green]Update available.[/green]")
            for change in info.changes:
                console.print(f"  - {escape(change)}")
        else:
            console.print("[green]Instance is up to date.[/green]")
        op.success("Reported update status.", changed=0, context=info.to_dict())


@app.command()
def update(
    ctx: typer.Context,
    instance_id: str | None = INSTANCE_ARGUMENT,
    all_instances: bool = typer.Option(
        False,
        "--all",
        help="Update every registered instance in turn.",
    ),
    target_version: str | None = typer.Option(
        None,
        "--version",
        help="Version to deploy (must match the available payload).",
    ),
    skip_backup: bool = typer.Option(
        False,
        "--skip-backup",
        help="Do not archive the current payload before updating.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Redeploy even when the instance already runs the target version.",
    ),
    keep_old: bool = typer.Option(
        False,
        "--keep-old",
        help="Keep the <dir>.old snapshot after a successful update.",
    ),
    no_restart: bool = NO_RESTART_OPTION,
    env: list[str] = typer.Option(
        [],
        "--env",
        metavar="KEY=VALUE",
        help="Override a service environment variable (repeatable; KEY= resets it).",
    ),
    dry_run: bool = DRY_RUN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Update one instance (or all of them) to the available payload."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update",
        args={
            "id": instance_id,
            "all": all_instances,
            "version": target_version,
            "skip_backup": skip_backup,
            "force": force,
            "dry_run": dry_run,
        },
        target={"kind": "instance", "id": instance_id},
    ) as op:
        options = UpdateOptions(
            target_version=target_version,
            skip_backup=skip_backup,
            force_update=force,
            dry_run=dry_run,
            keep_old_files=keep_old,
            restart_service=not no_restart,
            environment=_parse_env_pairs(env, op),
        )
        if all_instances:
            try:
                targets = [item.id for item in runtime.manager.list_instances()]
            except AddonctlError as exc:
                _command_error(op, str(exc), rc=int(exc.exit_code))
        else:
            targets = [_resolve_instance(runtime, instance_id, op).id]

        failures: list[str] = []
        last_error: AddonctlError | None = None
        payloads: list[dict[str, object]] = []
        with _progress(runtime, enabled=not json_output):
            for target_id in targets:
                try:
                    result = runtime.manager.update(target_id, options)
                except AddonctlError as exc:
                    failures.append(f"{target_id}: {exc}")
                    last_error = exc
                    continue
                payloads.append(result.to_dict())
                if result.success:
                    if not json_output:
                        changes = ", ".join(result.changes) or "no changes"
                        console.print(
                            f"[green]{target_id}: {result.previous_version} -> "
                            f"{result.new_version or result.previous_version}[/green] "
                            f"({escape(changes)})"
                        )
                    continue
                failures.append(f"{target_id}: {result.error}")
                last_error = result.error
                if not json_output:
                    _render_diagnostics(result.error)
                    if result.rolled_back:
                        console.print(
                            f"[yellow]{target_id} was rolled back to "
                            f"{result.previous_version}.[/yellow]"
                        )

        if json_output:
            console.print_json(data={"results": payloads})
        if failures:
            _command_error(
                op,
                f"{len(failures)} of {len(targets)} update(s) failed.",
                rc=int(last_error.exit_code) if last_error else 1,
                errors=failures,
            )
        if dry_run:
            _dry_run_complete(op, f"{len(targets)} instance(s) checked.")
            return
        op.success(f"Updated {len(targets)} instance(s).", changed=len(targets))


@app.command()
def rollback(
    ctx: typer.Context,
    instance_id: str | None = INSTANCE_ARGUMENT,
    backup_id: str | None = typer.Option(
        None,
        "--backup",
        help="Restore this backup instead of the latest one.",
    ),
    no_fast: bool = typer.Option(
        False,
        "--no-fast",
        help="Ignore the <dir>.old snapshot and restore from a backup.",
    ),
    no_restart: bool = NO_RESTART_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Roll an instance back to its previous payload."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "rollback",
        args={"id": instance_id, "backup": backup_id, "fast": not no_fast},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        instance = _resolve_instance(runtime, instance_id, op)
        options = RollbackOptions(
            backup_id=backup_id,
            use_fast_rollback=not no_fast and backup_id is None,
            restart_service=not no_restart,
        )
        try:
            with _progress(runtime, enabled=not json_output):
                result = runtime.manager.rollback(instance.id, options, scope=op)
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))

        if json_output:
            console.print_json(data=result.to_dict())
        if not result.success:
            error = result.error
            _command_error(
                op,
                f"Rollback failed: {error}",
                rc=int(error.exit_code) if error else 1,
                errors=_failed_steps(result.steps) or None,
            )
        if not json_output:
            method = result.method.value if result.method else "unknown"
            console.print(
                f"[green]Rolled back '{instance.id}' to {result.rolled_back_to_version} "
                f"({method}).[/green]"
            )


@app.command()
def delete(
    ctx: typer.Context,
    instance_id: str = typer.Argument(..., help="Instance id to delete."),
    purge: bool = typer.Option(
        False,
        "--purge",
        help="Also remove the service unit, nginx site and payload from the host.",
    ),
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation."),
) -> None:
    """Unregister an instance and remove its configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "delete",
        args={"id": instance_id, "purge": purge},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        if not yes and not typer.confirm(
            f"Delete instance '{instance_id}'{' and purge it from the host' if purge else ''}?"
        ):
            _command_error(op, "Aborted.", rc=int(ExitCode.VALIDATION))
        try:
            removed = runtime.manager.delete_instance(instance_id, purge=purge, scope=op)
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        if removed:
            console.print(f"[yellow]Instance '{instance_id}' removed.[/yellow]")


@app.command()
def status(
    ctx: typer.Context,
    instance_id: str | None = INSTANCE_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the service state of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"id": instance_id},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        instance = _resolve_instance(runtime, instance_id, op)
        try:
            info = runtime.manager.status(instance.id)
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))

        if json_output:
            console.print_json(data={"id": instance.id, **info.to_dict()})
        else:
            table = Table(show_header=False)
            table.add_column("Field", style="bold")
            table.add_column("Value")
            for key, value in info.to_dict().items():
                table.add_row(key, "" if value is None else str(value))
            console.print(table)
        op.success("Reported service status.", changed=0, context=info.to_dict())


@app.command()
def logs(
    ctx: typer.Context,
    instance_id: str | None = INSTANCE_ARGUMENT,
    lines: int = typer.Option(50, "--lines", "-n", min=1, help="Number of journal lines."),
    follow: bool = typer.Option(False, "--follow", "-f", help="Stream new journal lines."),
) -> None:
    """Print the service journal of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "logs",
        args={"id": instance_id, "lines": lines, "follow": follow},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        instance = _resolve_instance(runtime, instance_id, op)
        try:
            output = runtime.manager.logs(instance.id, lines, follow=follow)
            if isinstance(output, str):
                console.print(escape(output), end="")
            else:
                for line in output:
                    console.print(escape(line))
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        except KeyboardInterrupt:
            console.print()
        op.success("Reported service logs.", changed=0)


def _control_service(
    ctx: typer.Context,
    action: str,
    instance_id: str | None,
    json_output: bool,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"service.{action}",
        args={"id": instance_id},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        instance = _resolve_instance(runtime, instance_id, op)
        controls = {
            "start": runtime.manager.start,
            "stop": runtime.manager.stop,
            "restart": runtime.manager.restart,
        }
        try:
            info = controls[action](instance.id, scope=op)
        except AddonctlError as exc:
            _command_error(op, f"Service {action} failed: {exc}", rc=int(exc.exit_code))
        if json_output:
            console.print_json(data={"id": instance.id, "action": action, **info.to_dict()})
        else:
            console.print(
                f"[green]Instance '{instance.id}': {action} done, "
                f"service is {info.state.value}.[/green]"
            )


@app.command()
def start(
    ctx: typer.Context,
    instance_id: str | None = INSTANCE_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Start the service of an instance."""
    _control_service(ctx, "start", instance_id, json_output)


@app.command()
def stop(
    ctx: typer.Context,
    instance_id: str | None = INSTANCE_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Stop the service of an instance."""
    _control_service(ctx, "stop", instance_id, json_output)


@app.command()
def restart(
    ctx: typer.Context,
    instance_id: str | None = INSTANCE_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Restart the service of an instance."""
    _control_service(ctx, "restart", instance_id, json_output)


def _print_env(entries: Sequence[EnvEntry], *, reveal: bool, json_output: bool) -> None:
    if json_output:
        console.print_json(data={"variables": [item.to_dict(reveal=reveal) for item in entries]})
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Variable", style="bold")
    table.add_column("Value")
    table.add_column("Source")
    table.add_column("Description")
    for item in entries:
        name = f"{item.name}*" if item.required else item.name
        table.add_row(
            name,
            escape(item.display_value(reveal=reveal)) or "[dim](unset)[/dim]",
            item.source,
            item.description,
        )
    console.print(table)


@env_app.command("list")
def env_list(
    ctx: typer.Context,
    instance_id: str | None = INSTANCE_OPTION,
    reveal: bool = REVEAL_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show every service variable, its effective value and its source."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env.list",
        args={"id": instance_id, "reveal": reveal},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        instance = _resolve_instance(runtime, instance_id, op)
        try:
            entries = runtime.manager.env_list(instance.id)
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        _print_env(entries, reveal=reveal, json_output=json_output)
        op.success("Reported service environment.", changed=0)


@env_app.command("get")
def env_get(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Variable name, e.g. MAX_STREAMS."),
    instance_id: str | None = INSTANCE_OPTION,
    reveal: bool = REVEAL_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show one service variable."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env.get",
        args={"id": instance_id, "name": name},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        instance = _resolve_instance(runtime, instance_id, op)
        try:
            entry = runtime.manager.env_get(instance.id, name.upper())
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        if json_output:
            console.print_json(data=entry.to_dict(reveal=reveal))
        else:
            console.print(escape(entry.display_value(reveal=reveal)))
        op.success(f"Reported {entry.name}.", changed=0)


@env_app.command("set")
def env_set(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Variable name, e.g. MAX_STREAMS."),
    value: str = typer.Argument(..., help="New value."),
    instance_id: str | None = INSTANCE_OPTION,
    restart: bool = RESTART_OPTION,
) -> None:
    """Override a service variable and re-render the service unit."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env.set",
        args={"id": instance_id, "name": name, "restart": restart},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        instance = _resolve_instance(runtime, instance_id, op)
        try:
            entry = runtime.manager.env_set(
                instance.id, name.upper(), value, restart=restart, scope=op
            )
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        console.print(f"[green]{entry.name}={escape(entry.display_value())}[/green]")
        _restart_hint(restart)


@env_app.command("unset")
def env_unset(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Variable name, e.g. MAX_STREAMS."),
    instance_id: str | None = INSTANCE_OPTION,
    restart: bool = RESTART_OPTION,
) -> None:
    """Drop an override so the configured or default value applies again."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env.unset",
        args={"id": instance_id, "name": name, "restart": restart},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        instance = _resolve_instance(runtime, instance_id, op)
        try:
            entry = runtime.manager.env_unset(instance.id, name.upper(), restart=restart, scope=op)
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        console.print(
            f"[green]{entry.name} now comes from {entry.source}: "
            f"{escape(entry.display_value()) or '(unset)'}[/green]"
        )
        _restart_hint(restart)


@env_app.command("reset")
def env_reset(
    ctx: typer.Context,
    instance_id: str | None = INSTANCE_OPTION,
    restart: bool = RESTART_OPTION,
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation."),
) -> None:
    """Drop every override of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env.reset",
        args={"id": instance_id, "restart": restart},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        instance = _resolve_instance(runtime, instance_id, op)
        if not yes and not typer.confirm(f"Drop every environment override of '{instance.id}'?"):
            _command_error(op, "Aborted.", rc=int(ExitCode.VALIDATION))
        try:
            runtime.manager.env_reset(instance.id, restart=restart, scope=op)
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        console.print(f"[green]Environment overrides of '{instance.id}' removed.[/green]")
        _restart_hint(restart)


@env_app.command("sync")
def env_sync(
    ctx: typer.Context,
    instance_id: str | None = INSTANCE_OPTION,
    restart: bool = RESTART_OPTION,
) -> None:
    """Re-render the service unit from the stored configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env.sync",
        args={"id": instance_id, "restart": restart},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        instance = _resolve_instance(runtime, instance_id, op)
        try:
            runtime.manager.env_sync(instance.id, restart=restart, scope=op)
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        console.print(f"[green]Service unit of '{instance.id}' synchronised.[/green]")
        _restart_hint(restart)


@env_app.command("generate")
def env_generate(
    ctx: typer.Context,
    name: str = typer.Argument("ADDON_PASSWORD", help="Variable to generate a value for."),
    instance_id: str | None = INSTANCE_OPTION,
    restart: bool = RESTART_OPTION,
) -> None:
    """Generate a new value (e.g. a password) and store it as an override."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "env.generate",
        args={"id": instance_id, "name": name, "restart": restart},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        instance = _resolve_instance(runtime, instance_id, op)
        try:
            value = runtime.manager.env_generate(
                instance.id, name.upper(), restart=restart, scope=op
            )
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        console.print(f"[green]Generated {name.upper()}:[/green] {escape(value)}")
        _restart_hint(restart)


def _restart_hint(restarted: bool) -> None:
    if not restarted:
        console.print("[yellow]Restart the service for the change to take effect.[/yellow]")


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    instance_id: str | None = INSTANCE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the stored configuration of an instance (secrets masked)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config.show",
        args={"id": instance_id, "json": json_output},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        instance = _resolve_instance(runtime, instance_id, op)
        try:
            data = runtime.manager.config_show(instance.id)
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))

        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for section, values in data.items():
            if isinstance(values, dict):
                for key, value in values.items():
                    rendered = json.dumps(value) if isinstance(value, dict) else str(value)
                    table.add_row(f"{section}.{key}", escape(rendered))
            else:
                table.add_row(section, escape(str(values)))
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@config_app.command("get")
def config_get(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Dotted key, e.g. addon.max_streams."),
    instance_id: str | None = INSTANCE_OPTION,
) -> None:
    """Print one configuration value."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config.get",
        args={"id": instance_id, "key": key},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        instance = _resolve_instance(runtime, instance_id, op)
        try:
            value = runtime.manager.config_get(instance.id, key)
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        if isinstance(value, dict):
            console.print_json(data=value)
        else:
            console.print(escape("" if value is None else str(value)))
        op.success(f"Reported {key}.", changed=0)


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    key: str = typer.Argument(..., help="Dotted key, e.g. addon.max_streams."),
    value: str = typer.Argument(..., help="New value."),
    instance_id: str | None = INSTANCE_OPTION,
    restart: bool = RESTART_OPTION,
) -> None:
    """Change one configuration value and re-render the service unit."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config.set",
        args={"id": instance_id, "key": key, "restart": restart},
        target={"kind": "instance", "id": instance_id},
    ) as op:
        instance = _resolve_instance(runtime, instance_id, op)
        try:
            runtime.manager.config_set(instance.id, key, value, restart=restart, scope=op)
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        console.print(f"[green]Updated {key} on '{instance.id}'.[/green]")
        _restart_hint(restart)


@app.command()
def doctor(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Check the registry for inconsistencies."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "doctor",
        args={"json": json_output},
        target={"kind": "registry"},
    ) as op:
        try:
            issues = runtime.manager.integrity()
        except AddonctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))

        if json_output:
            console.print_json(
                data={
                    "issues": [
                        {
                            "kind": item.kind,
                            "message": item.message,
                            "instance_id": item.instance_id,
                        }
                        for item in issues
                    ]
                }
            )
        elif not issues:
            console.print("[green]Registry is consistent.[/green]")
        else:
            for item in issues:
                console.print(f"[yellow]{item.kind}[/yellow] {escape(item.message)}")
        if issues:
            op.warning(
                "Registry inconsistencies found.",
                warnings=[item.message for item in issues],
            )
            raise typer.Exit(code=int(ExitCode.ENVIRONMENT))
        op.success("Registry is consistent.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
