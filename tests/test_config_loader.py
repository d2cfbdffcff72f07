"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from addonctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.state_dir == Path("~/.addonctl").expanduser()
    assert config.registry_file == config.state_dir / "registry.json"
    assert config.instances_dir == config.state_dir / "instances"
    assert config.logs_dir == config.state_dir / "logs"
    assert config.runtime_dir == config.state_dir / "run"
    assert config.ports.base == 7000
    assert config.payload.repo_url is None
    assert config.payload.install_root == Path("/opt/addonctl")
    assert config.verification.port_timeout == 20.0
    assert config.backups.compression == "gzip"
    assert config.ssh.host_key_policy == "auto-add"


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file and derived paths follow state_dir."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(
        f"state_dir: {tmp_path / 'state'}\n"
        "ports:\n"
        "  base: 7100\n"
        "payload:\n"
        "  repo_url: https://example.com/addon.git\n"
        "  branch: release\n"
        "verification:\n"
        "  active_timeout: 5\n",
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.registry_file == tmp_path / "state" / "registry.json"
    assert config.ports.base == 7100
    assert config.payload.repo_url == "https://example.com/addon.git"
    assert config.payload.branch == "release"
    assert config.verification.active_timeout == 5.0
    assert config.verification.poll_interval == 1.0


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("ports:\n  base: 7100\n", encoding="utf-8")
    env = {
        "ADDONCTL_PORTS__BASE": "7200",
        "ADDONCTL_STATE_DIR": str(tmp_path / "state"),
        "ADDONCTL_LOCK_TIMEOUT": "45",
        "ADDONCTL_RESOURCES_PATH": "/ignored",
        "UNRELATED": "1",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.ports.base == 7200
    assert config.state_dir == tmp_path / "state"
    assert config.lock_timeout == 45.0


def test_config_file_env_var_selects_file(tmp_path: Path) -> None:
    """``ADDONCTL_CONFIG_FILE`` points at the config file when no path is given."""
    cfg = tmp_path / "custom.yml"
    cfg.write_text("required_disk_mb: 250\n", encoding="utf-8")

    config = load_config(env={"ADDONCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.required_disk_mb == 250


def test_programmatic_overrides_win(tmp_path: Path) -> None:
    """Explicit overrides beat the environment."""
    config = load_config(
        tmp_path / "missing.yml",
        env={"ADDONCTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 3},
    )

    assert config.lock_timeout == 3.0


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    """Typos in the config file surface as errors."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("portz:\n  base: 1\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="portz"):
        load_config(config_file=cfg, env={})


def test_unknown_section_keys_are_rejected(tmp_path: Path) -> None:
    """Unknown keys inside a section are reported with the section name."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("verification:\n  retries: 3\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="verification"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"verification": {"port_timeout": 0}}, "greater than zero"),
        ({"ports": {"base": 70000}}, "between 1 and 65535"),
        ({"backups": {"compression": "zstd"}}, "compression"),
        ({"ssh": {"host_key_policy": "trust-all"}}, "host_key_policy"),
        ({"required_disk_mb": -1}, "non-negative"),
        ({"lock_timeout": "soon"}, "Invalid number"),
    ],
)
def test_invalid_values_raise(
    tmp_path: Path, overrides: dict[str, object], message: str
) -> None:
    """Out-of-range or malformed values raise ConfigError."""
    with pytest.raises(ConfigError, match=message):
        load_config(tmp_path / "missing.yml", env={}, overrides=overrides)


def test_non_mapping_file_is_rejected(tmp_path: Path) -> None:
    """A config file must contain a mapping."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """The resolved config renders paths as strings."""
    config = load_config(tmp_path / "missing.yml", env={})

    data = config.to_dict()

    assert data["registry_file"] == str(config.registry_file)
    assert data["payload"]["install_root"] == "/opt/addonctl"  # type: ignore[index]
