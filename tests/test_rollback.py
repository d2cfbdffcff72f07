"""Rollback engine tests: snapshot first, then stored backups."""
from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest
from conftest import FakeRunner, set_payload_version

from addonctl.errors import NotFoundError
from addonctl.manager import AddonManager
from addonctl.orchestration import RollbackOptions, StepStatus, UpdateOptions
from addonctl.orchestration.rollback import (
    RollbackMethod,
    RollbackResult,
    generate_rollback_id,
    select_strategy,
)
from addonctl.providers import PayloadProvider
from addonctl.state.models import BackupEntry, Instance

PAYLOAD = "/opt/addonctl/alpha"
SNAPSHOT = "/opt/addonctl/alpha.old"


def _deployed_version(fake: FakeRunner) -> str:
    return json.loads(fake.files[f"{PAYLOAD}/package.json"])["version"]


def _status(result: RollbackResult, step: str) -> StepStatus:
    return [record for record in result.steps if record.step == step][-1].status


@pytest.fixture
def updated(
    manager: AddonManager,
    install_instance: Callable[..., str],
    fake: FakeRunner,
    payload_dir: Path,
) -> str:
    """An instance updated from 1.0.0 to 1.1.0 with its snapshot kept."""
    instance_id = install_instance()
    set_payload_version(payload_dir, "1.1.0")
    result = manager.update(instance_id, UpdateOptions(keep_old_files=True))
    assert result.success, result.error
    fake.commands.clear()
    return instance_id


def test_fast_rollback_swaps_snapshot(
    manager: AddonManager, updated: str, fake: FakeRunner
) -> None:
    """The ``.old`` snapshot is preferred and needs no dependency install."""
    result = manager.rollback(updated)

    assert result.success, result.error
    assert result.method is RollbackMethod.FAST
    assert result.previous_version == "1.1.0"
    assert result.rolled_back_to_version == "1.0.0"
    assert _status(result, "INSTALL_DEPENDENCIES") is StepStatus.SKIPPED
    assert _deployed_version(fake) == "1.0.0"
    assert not fake.exists(SNAPSHOT)
    assert not fake.ran("npm install")

    instance = manager.get_instance(updated)
    assert instance.version == "1.0.0"
    entry = instance.update_history[-1]
    assert entry.rollback_id == result.rollback_id
    assert entry.initiated_by == "user"


def test_backup_rollback_restores_latest(
    manager: AddonManager, updated: str, fake: FakeRunner
) -> None:
    """Without the fast path the newest backup is unpacked and dependencies reinstalled."""
    result = manager.rollback(updated, RollbackOptions(use_fast_rollback=False))

    assert result.success, result.error
    assert result.method is RollbackMethod.BACKUP
    instance = manager.get_instance(updated)
    pre_update = next(entry for entry in instance.backups if entry.type == "pre-update")
    assert result.backup_id == pre_update.id
    assert result.rolled_back_to_version == "1.0.0"
    assert _status(result, "INSTALL_DEPENDENCIES") is StepStatus.COMPLETED
    assert fake.ran("npm install --production")
    assert _deployed_version(fake) == "1.0.0"
    assert instance.version == "1.0.0"


def test_backup_rollback_to_requested_backup(
    manager: AddonManager, updated: str, fake: FakeRunner
) -> None:
    """An explicit backup id is honoured."""
    initial = next(
        entry for entry in manager.get_instance(updated).backups if entry.type == "initial"
    )

    result = manager.rollback(
        updated, RollbackOptions(backup_id=initial.id, use_fast_rollback=False)
    )

    assert result.success, result.error
    assert result.backup_id == initial.id
    assert result.to_dict()["method"] == "backup"


def test_unknown_backup_is_not_found(manager: AddonManager, updated: str) -> None:
    """Asking for a backup the instance does not have fails before any step."""
    result = manager.rollback(
        updated, RollbackOptions(backup_id="backup-missing", use_fast_rollback=False)
    )

    assert not result.success
    assert isinstance(result.error, NotFoundError)
    assert result.steps == []


def test_nothing_to_roll_back_to(
    manager: AddonManager, install_instance: Callable[..., str], fake: FakeRunner
) -> None:
    """No snapshot and no backups leaves nothing to restore."""
    instance_id = install_instance(backups=False)

    result = manager.rollback(instance_id)

    assert not result.success
    assert isinstance(result.error, NotFoundError)
    assert "neither" in str(result.error)
    assert not fake.ran("systemctl stop")


def test_restart_can_be_skipped(manager: AddonManager, updated: str, fake: FakeRunner) -> None:
    """``restart_service=False`` leaves the unit stopped."""
    result = manager.rollback(updated, RollbackOptions(restart_service=False))

    assert result.success, result.error
    assert _status(result, "RESTART_SERVICE") is StepStatus.SKIPPED
    assert fake.ran("systemctl stop addonctl-alpha.service")
    assert not fake.ran("systemctl restart")


def test_restore_failure_is_reported(manager: AddonManager, updated: str, fake: FakeRunner) -> None:
    """A failing step ends the run with its error recorded."""
    fake.fail(f"mv {SNAPSHOT}", stderr="Device busy")

    result = manager.rollback(updated)

    assert not result.success
    assert _status(result, "RESTORE_FILES") is StepStatus.FAILED
    assert "Device busy" in str(result.error)
    assert manager.get_instance(updated).version == "1.1.0"


def _instance(*backups: BackupEntry) -> Instance:
    return Instance(
        id="alpha",
        name="Alpha",
        config_path="/tmp/alpha.yml",
        port=7000,
        domain="alpha.example.com",
        backups=list(backups),
    )


def _backup(backup_id: str, timestamp: str) -> BackupEntry:
    return BackupEntry(
        id=backup_id,
        timestamp=timestamp,
        type="manual",
        version="1.0.0",
        path=f"/opt/addonctl/backups/alpha/{backup_id}.tar.gz",
    )


def test_select_strategy_prefers_snapshot() -> None:
    """The snapshot wins unless the fast path is disabled."""
    runner = FakeRunner()
    runner.dirs.add(SNAPSHOT)
    payload = PayloadProvider(runner, PAYLOAD)
    instance = _instance(_backup("backup-1", "2024-01-01T00:00:00Z"))

    assert select_strategy(instance, payload, RollbackOptions()).method is RollbackMethod.FAST
    plan = select_strategy(instance, payload, RollbackOptions(use_fast_rollback=False))
    assert plan.method is RollbackMethod.BACKUP
    assert plan.backup is not None and plan.backup.id == "backup-1"


def test_select_strategy_picks_newest_backup() -> None:
    """Without a snapshot the most recent backup is chosen."""
    payload = PayloadProvider(FakeRunner(), PAYLOAD)
    instance = _instance(
        _backup("backup-old", "2024-01-01T00:00:00Z"),
        _backup("backup-new", "2024-02-01T00:00:00Z"),
    )

    plan = select_strategy(instance, payload, RollbackOptions())

    assert plan.backup is not None and plan.backup.id == "backup-new"


def test_generate_rollback_id() -> None:
    """Rollback ids are prefixed and unique."""
    ids = {generate_rollback_id() for _ in range(10)}

    assert len(ids) == 10
    assert all(item.startswith("rollback-") for item in ids)
