"""Instance configuration document tests."""
from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from conftest import make_instance_config

from addonctl.errors import AddonctlError, ValidationError
from addonctl.instance_config import InstanceConfig, InstanceConfigStore, get_value, set_value


def test_from_dict_merges_over_defaults() -> None:
    """Missing sections fall back to defaults."""
    config = InstanceConfig.from_dict(
        {
            "installation": {"type": "remote", "target": {"host": "pi.local", "port": "2222"}},
            "addon": {"name": "Pi Addon", "port": "7100", "environment": {"DEBUG": 1}},
            "features": {"firewall": False},
        }
    )

    assert config.installation.is_remote
    assert config.installation.target.port == 2222
    assert config.addon.port == 7100
    assert config.addon.torrent_limit == 15
    assert config.addon.environment == {"DEBUG": "1"}
    assert config.features.firewall is False
    assert config.features.tls is True
    assert config.secrets.real_debrid_token is None


@pytest.mark.parametrize(
    ("data", "field"),
    [
        ({"installation": {"type": "cloud"}}, "installation.type"),
        ({"installation": {"access_method": "carrier-pigeon"}}, "installation.access_method"),
        ({"addon": {"port": "high"}}, "addon.port"),
        ({"addon": {"max_streams": True}}, "addon.max_streams"),
    ],
)
def test_from_dict_rejects_invalid_values(data: dict[str, object], field: str) -> None:
    """Invalid enums and integers name the offending field."""
    with pytest.raises(ValidationError) as excinfo:
        InstanceConfig.from_dict(data)

    assert excinfo.value.field == field


def test_store_roundtrip_is_private(tmp_path: Path) -> None:
    """Saved configurations reload intact with owner-only permissions."""
    store = InstanceConfigStore(tmp_path / "instances" / "alpha.yml")
    config = make_instance_config(tls=False)

    store.save(config)
    loaded = store.load()

    assert loaded == config
    assert (store.path.stat().st_mode & 0o777) == 0o600
    raw = yaml.safe_load(store.path.read_text(encoding="utf-8"))
    assert list(raw) == ["installation", "addon", "features", "paths", "secrets"]


def test_store_missing_file_yields_defaults(tmp_path: Path) -> None:
    """Loading a missing file returns the defaults."""
    store = InstanceConfigStore(tmp_path / "absent.yml")

    assert not store.exists()
    assert store.load() == InstanceConfig()
    assert store.delete() is False


def test_store_rejects_non_mapping(tmp_path: Path) -> None:
    """A list document is not a configuration."""
    path = tmp_path / "alpha.yml"
    path.write_text("- one\n", encoding="utf-8")

    with pytest.raises(AddonctlError, match="mapping"):
        InstanceConfigStore(path).load()


def test_save_with_sync_invokes_hook(tmp_path: Path) -> None:
    """Syncing the service unit calls the hook with the new config."""
    calls: list[tuple[InstanceConfig, bool]] = []
    store = InstanceConfigStore(
        tmp_path / "alpha.yml", sync_hook=lambda config, restart: calls.append((config, restart))
    )
    config = make_instance_config()

    store.save(config)
    store.save(config, sync_service_unit=True, restart=True)

    assert calls == [(config, True)]


def test_save_with_sync_requires_hook(tmp_path: Path) -> None:
    """Requesting a sync without a hook is an error after the file is written."""
    store = InstanceConfigStore(tmp_path / "alpha.yml")

    with pytest.raises(AddonctlError, match="sync hook"):
        store.save(make_instance_config(), sync_service_unit=True)

    assert store.exists()


def test_save_wraps_os_errors(tmp_path: Path) -> None:
    """A directory that cannot be created surfaces as an AddonctlError."""
    blocked = tmp_path / "instances"
    blocked.write_text("not a directory", encoding="utf-8")

    with pytest.raises(AddonctlError, match="Failed to write instance configuration"):
        InstanceConfigStore(blocked / "alpha.yml").save(make_instance_config())


def test_get_value_reads_dotted_keys() -> None:
    """Dotted keys address sections and leaves of the document."""
    config = make_instance_config()

    assert get_value(config, "addon.max_streams") == 5
    assert get_value(config, "features.tls") is True
    assert get_value(config, "installation.target.port") == 22
    with pytest.raises(ValidationError, match="Unknown configuration key"):
        get_value(config, "addon.colour")


def test_set_value_parses_by_current_type() -> None:
    """Integers and booleans are converted; strings are kept verbatim."""
    config = make_instance_config()

    updated = set_value(config, "addon.max_streams", "9")
    updated = set_value(updated, "features.backups", "false")
    updated = set_value(updated, "secrets.duckdns_token", "0123")

    assert updated.addon.max_streams == 9
    assert updated.features.backups is False
    assert updated.secrets.duckdns_token == "0123"
    assert config.addon.max_streams == 5


@pytest.mark.parametrize(
    ("key", "value", "message"),
    [
        ("addon.port", "7100", "cannot be changed"),
        ("addon.domain", "other.example.com", "cannot be changed"),
        ("installation.type", "remote", "cannot be changed"),
        ("addon.environment", "{}", "cannot be changed"),
        ("addon.max_streams", "many", "must be an integer"),
        ("features.tls", "maybe", "true or false"),
        ("features", "true", "section"),
    ],
)
def test_set_value_rejects(key: str, value: str, message: str) -> None:
    """Fixed keys, sections and badly typed values are refused."""
    with pytest.raises(ValidationError, match=message):
        set_value(make_instance_config(), key, value)
