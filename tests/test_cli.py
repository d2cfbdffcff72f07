"""CLI tests driven through Typer's runner with an injected runtime."""
from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest
from conftest import FakeRunner, make_instance_config, set_payload_version
from typer.testing import CliRunner, Result

from addonctl import __version__
from addonctl.cli import RuntimeContext, app
from addonctl.config import AppConfig
from addonctl.instance_config import InstanceConfigStore
from addonctl.manager import AddonManager

runner = CliRunner()


@pytest.fixture
def runtime(app_config: AppConfig, manager: AddonManager) -> RuntimeContext:
    """Runtime objects shared with the manager fixture."""
    return RuntimeContext(config=app_config, logger=manager.logger, manager=manager)


@pytest.fixture
def invoke(runtime: RuntimeContext) -> Callable[..., Result]:
    """Invoke the CLI with the injected runtime."""

    def _invoke(*args: str) -> Result:
        return runner.invoke(app, list(args), obj=runtime)

    return _invoke


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Instance configuration written to disk."""
    path = tmp_path / "alpha-instance.yml"
    InstanceConfigStore(path).save(make_instance_config())
    return path


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def test_version_flag() -> None:
    """``--version`` prints the package version without loading config."""
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert f"addonctl {__version__}" in result.stdout


def test_install_prints_urls(invoke: Callable[..., Result], config_file: Path) -> None:
    """A successful install reports the addon and manifest URLs."""
    result = invoke("install", str(config_file))

    assert result.exit_code == 0, result.stdout
    assert "Installed instance 'alpha'." in result.stdout
    assert "URL: https://alpha.example.com" in result.stdout
    assert "Manifest: https://alpha.example.com/s3cret-pass/manifest.json" in result.stdout
    assert "REGISTER_INSTANCE" in result.stdout


def test_install_json(invoke: Callable[..., Result], config_file: Path) -> None:
    """``--json`` emits the result document only."""
    result = invoke("install", str(config_file), "--json")

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["success"] is True
    assert payload["instance_id"] == "alpha"
    assert payload["steps"][-1]["step"] == "COMPLETE"


def test_install_dry_run(
    invoke: Callable[..., Result], config_file: Path, fake: FakeRunner
) -> None:
    """Dry runs describe the plan and do not touch the target."""
    result = invoke("install", str(config_file), "--dry-run")

    assert result.exit_code == 0, result.stdout
    assert "Dry run" in result.stdout
    assert fake.commands == []


def test_install_failure_exit_code(
    invoke: Callable[..., Result], config_file: Path, fake: FakeRunner
) -> None:
    """Provider failures exit with code 4 and name the failed step."""
    fake.fail("systemctl start", stderr="Job failed")

    result = invoke("install", str(config_file))

    assert result.exit_code == 4
    assert "Installation failed" in result.stdout


def test_list_json(
    invoke: Callable[..., Result],
    install_instance: Callable[..., str],
    manager: AddonManager,
) -> None:
    """The instance list includes the default pointer."""
    instance_id = install_instance()
    manager.set_default(instance_id)

    result = invoke("list", "--json")

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["default_instance_id"] == "alpha"
    assert [item["id"] for item in payload["instances"]] == ["alpha"]


def test_list_empty_table(invoke: Callable[..., Result]) -> None:
    """An empty registry renders a placeholder row."""
    result = invoke("list")

    assert result.exit_code == 0
    assert "(none)" in result.stdout


def test_default_set_show_and_clear(
    invoke: Callable[..., Result], install_instance: Callable[..., str]
) -> None:
    """``default`` sets, shows and clears the default instance."""
    install_instance()

    assert invoke("default", "alpha").exit_code == 0
    shown = invoke("default")
    assert shown.stdout.strip() == "alpha"
    assert invoke("default", "--clear").exit_code == 0
    assert invoke("default").stdout.strip() == "(none)"


def test_default_unknown_instance(invoke: Callable[..., Result]) -> None:
    """Unknown ids exit with the validation code."""
    result = invoke("default", "ghost")

    assert result.exit_code == 2


def test_status_without_default_fails(invoke: Callable[..., Result]) -> None:
    """Commands needing an instance fail when none is given or set as default."""
    result = invoke("status")

    assert result.exit_code == 2
    assert "no default instance" in result.stdout


def test_check_updates_and_update(
    invoke: Callable[..., Result],
    install_instance: Callable[..., str],
    payload_dir: Path,
) -> None:
    """``check-updates`` lists changes and ``update`` applies them."""
    install_instance()
    set_payload_version(payload_dir, "1.1.0")

    check = invoke("check-updates", "alpha", "--json")
    assert check.exit_code == 0, check.stdout
    assert _extract_json(check.stdout)["update_available"] is True

    result = invoke("update", "alpha")
    assert result.exit_code == 0, result.stdout
    assert "alpha: 1.0.0 -> 1.1.0" in result.stdout


def test_update_rejects_malformed_env(
    invoke: Callable[..., Result], install_instance: Callable[..., str]
) -> None:
    """``--env`` values must be KEY=VALUE pairs."""
    install_instance()

    result = invoke("update", "alpha", "--env", "MAX_STREAMS")

    assert result.exit_code == 2
    assert "expected KEY=VALUE" in result.stdout


def test_update_failure_reports_rollback(
    invoke: Callable[..., Result],
    install_instance: Callable[..., str],
    payload_dir: Path,
    fake: FakeRunner,
) -> None:
    """A failed update exits non-zero and says it was rolled back."""
    install_instance()
    set_payload_version(payload_dir, "1.1.0")
    fake.fail("npm install", stderr="npm ERR! network")

    result = invoke("update", "alpha")

    assert result.exit_code == 4
    assert "rolled back to 1.0.0" in result.stdout


def test_rollback_command(
    invoke: Callable[..., Result],
    install_instance: Callable[..., str],
    payload_dir: Path,
) -> None:
    """``rollback`` restores the kept snapshot."""
    install_instance()
    set_payload_version(payload_dir, "1.1.0")
    assert invoke("update", "alpha", "--keep-old").exit_code == 0

    result = invoke("rollback", "alpha")

    assert result.exit_code == 0, result.stdout
    assert "Rolled back 'alpha' to 1.0.0 (fast)." in result.stdout


def test_doctor_reports_issues(
    invoke: Callable[..., Result],
    install_instance: Callable[..., str],
    app_config: AppConfig,
) -> None:
    """Registry inconsistencies exit with the environment code."""
    install_instance()
    assert invoke("doctor").exit_code == 0

    (app_config.instances_dir / "alpha.yml").unlink()
    result = invoke("doctor", "--json")

    assert result.exit_code == 3
    issues = _extract_json(result.stdout)["issues"]
    assert issues[0]["kind"] == "missing_config"


def test_delete_requires_confirmation(
    invoke: Callable[..., Result],
    runtime: RuntimeContext,
    install_instance: Callable[..., str],
    manager: AddonManager,
) -> None:
    """Declining the prompt keeps the instance; ``--yes`` removes it."""
    install_instance()

    declined = runner.invoke(app, ["delete", "alpha"], input="n\n", obj=runtime)
    assert declined.exit_code == 2
    assert [item.id for item in manager.list_instances()] == ["alpha"]

    result = invoke("delete", "alpha", "--yes")
    assert result.exit_code == 0, result.stdout
    assert "Instance 'alpha' removed." in result.stdout
    assert manager.list_instances() == []


def test_service_control_commands(
    invoke: Callable[..., Result],
    install_instance: Callable[..., str],
    fake: FakeRunner,
) -> None:
    """``stop``, ``start`` and ``restart`` drive systemctl for the instance."""
    install_instance()

    stopped = invoke("stop", "alpha")
    started = invoke("start", "alpha", "--json")

    assert stopped.exit_code == 0, stopped.stdout
    assert "Instance 'alpha': stop done" in stopped.stdout
    assert started.exit_code == 0, started.stdout
    payload = _extract_json(started.stdout)
    assert payload["action"] == "start"
    assert payload["state"] == "active"
    assert fake.ran("systemctl stop addonctl-alpha.service")


def test_restart_failure_exit_code(
    invoke: Callable[..., Result],
    install_instance: Callable[..., str],
    fake: FakeRunner,
) -> None:
    """A failing systemctl call maps to the execution exit code."""
    install_instance()
    fake.fail("systemctl restart", stderr="Access denied")

    result = invoke("restart", "alpha")

    assert result.exit_code == 4
    assert "Service restart failed" in result.stdout


def test_env_set_list_and_unset(
    invoke: Callable[..., Result],
    install_instance: Callable[..., str],
    fake: FakeRunner,
) -> None:
    """``env`` commands edit overrides of the default instance."""
    install_instance()
    assert invoke("default", "alpha").exit_code == 0

    result = invoke("env", "set", "max_streams", "12")
    assert result.exit_code == 0, result.stdout
    assert "MAX_STREAMS=12" in result.stdout
    assert "Restart the service" in result.stdout
    unit = fake.files["/etc/systemd/system/addonctl-alpha.service"]
    assert 'Environment="MAX_STREAMS=12"' in unit

    listed = invoke("env", "list", "--json")
    variables = {item["name"]: item for item in _extract_json(listed.stdout)["variables"]}
    assert variables["MAX_STREAMS"]["source"] == "override"
    assert variables["RD_API_TOKEN"]["value"] == "***"

    shown = invoke("env", "get", "RD_API_TOKEN", "--reveal")
    assert shown.stdout.strip() == "rd-token-123"

    unset = invoke("env", "unset", "MAX_STREAMS", "--instance", "alpha", "--restart")
    assert unset.exit_code == 0, unset.stdout
    assert "MAX_STREAMS now comes from config: 5" in unset.stdout
    assert fake.ran("systemctl restart addonctl-alpha.service")


def test_env_set_invalid_value(
    invoke: Callable[..., Result], install_instance: Callable[..., str]
) -> None:
    """Validation errors exit with the validation code."""
    install_instance()

    result = invoke("env", "set", "PORT", "80", "-i", "alpha")

    assert result.exit_code == 2
    assert "at least 1024" in result.stdout


def test_env_generate_reset_and_sync(
    invoke: Callable[..., Result],
    install_instance: Callable[..., str],
    manager: AddonManager,
) -> None:
    """Generate stores a password, reset drops it and sync re-renders the unit."""
    install_instance()

    generated = invoke("env", "generate", "-i", "alpha")
    assert generated.exit_code == 0, generated.stdout
    assert "Generated ADDON_PASSWORD" in generated.stdout
    assert manager.env_get("alpha", "ADDON_PASSWORD").source == "override"

    reset = invoke("env", "reset", "-i", "alpha", "--yes")
    assert reset.exit_code == 0, reset.stdout
    assert manager.env_get("alpha", "ADDON_PASSWORD").source == "config"

    synced = invoke("env", "sync", "-i", "alpha")
    assert synced.exit_code == 0, synced.stdout
    assert "synchronised" in synced.stdout


def test_config_show_get_and_set(
    invoke: Callable[..., Result], install_instance: Callable[..., str]
) -> None:
    """``config`` shows masked values and edits dotted keys."""
    install_instance()

    shown = invoke("config", "show", "-i", "alpha", "--json")
    assert shown.exit_code == 0, shown.stdout
    assert _extract_json(shown.stdout)["addon"]["password"] == "***"

    updated = invoke("config", "set", "addon.torrent_limit", "25", "-i", "alpha")
    assert updated.exit_code == 0, updated.stdout
    value = invoke("config", "get", "addon.torrent_limit", "-i", "alpha")
    assert value.stdout.strip() == "25"

    refused = invoke("config", "set", "addon.domain", "beta.example.com", "-i", "alpha")
    assert refused.exit_code == 2
    assert "cannot be changed" in refused.stdout
