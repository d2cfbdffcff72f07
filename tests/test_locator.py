"""Payload locator tests."""
from __future__ import annotations

import subprocess
from pathlib import Path

import pytest
from conftest import write_payload

from addonctl.config import PayloadConfig
from addonctl.errors import NotFoundError
from addonctl.locator import PayloadSource, ResourceLocator, read_descriptor_version


def _locator(tmp_path: Path, env: dict[str, str], **payload: object) -> ResourceLocator:
    return ResourceLocator(
        PayloadConfig(**payload),  # type: ignore[arg-type]
        env=env,
        cwd=tmp_path / "cwd",
        package_dir=tmp_path / "site" / "addonctl",
    )


def test_resources_env_wins(locator: ResourceLocator, payload_dir: Path) -> None:
    """The resources variable is the first place searched."""
    source = locator.locate()

    assert source.path == payload_dir
    assert source.origin == "resources-env"
    assert source.version() == "1.0.0"
    assert "Initial release" in (source.read_changelog() or "")


def test_cwd_checkout_is_found(tmp_path: Path) -> None:
    """A payload beside the working directory is found without any variables."""
    payload = write_payload(tmp_path / "cwd" / "packages" / "addon-server", "2.0.0")

    source = _locator(tmp_path, {}).locate()

    assert source.path == payload
    assert source.origin == "cwd"


def test_directory_without_build_output_is_skipped(tmp_path: Path) -> None:
    """A descriptor alone is not a deployable payload."""
    first = tmp_path / "app" / "resources" / "addon-server"
    first.mkdir(parents=True)
    (first / "package.json").write_text('{"version": "9.9.9"}', encoding="utf-8")
    fallback = write_payload(tmp_path / "site" / "addonctl" / "resources" / "addon-server")

    locator = _locator(tmp_path, {"ADDONCTL_APP_PATH": str(tmp_path / "app")})

    assert locator.locate().path == fallback


def test_missing_payload_without_repo_raises(tmp_path: Path) -> None:
    """Nothing local and no repository configured is a NotFoundError."""
    with pytest.raises(NotFoundError, match="repo_url"):
        _locator(tmp_path, {}).locate()


def test_clone_fallback(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """The repository is shallow-cloned into a temporary directory when configured."""
    calls: list[list[str]] = []

    def fake_run(command: list[str], **_kwargs: object) -> subprocess.CompletedProcess[str]:
        calls.append(command)
        write_payload(Path(command[-1]), "3.1.0")
        return subprocess.CompletedProcess(command, 0, "", "")

    monkeypatch.setattr("addonctl.locator.subprocess.run", fake_run)
    locator = _locator(tmp_path, {}, repo_url="https://example.com/addon.git", branch="stable")

    source = locator.locate()

    assert calls[0][:6] == ["git", "clone", "--depth", "1", "-b", "stable"]
    assert source.origin == "git-clone"
    assert source.temporary
    assert source.version() == "3.1.0"
    workdir = source.path.parent
    source.cleanup()
    assert not workdir.exists()


def test_clone_failure_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing clone raises NotFoundError with git's message."""

    def fake_run(command: list[str], **_kwargs: object) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(command, 128, "", "fatal: repository not found")

    monkeypatch.setattr("addonctl.locator.subprocess.run", fake_run)
    locator = _locator(tmp_path, {}, repo_url="https://example.com/missing.git")

    with pytest.raises(NotFoundError, match="repository not found"):
        locator.clone()


def test_local_source_cleanup_keeps_files(payload_dir: Path) -> None:
    """Cleaning up a bundled payload never deletes it."""
    PayloadSource(path=payload_dir, origin="cwd").cleanup()

    assert payload_dir.exists()


def test_read_descriptor_version_tolerates_bad_files(tmp_path: Path) -> None:
    """Unreadable or version-less descriptors yield ``None``."""
    broken = tmp_path / "package.json"
    broken.write_text("{oops", encoding="utf-8")
    empty = tmp_path / "empty.json"
    empty.write_text('{"version": "  "}', encoding="utf-8")

    assert read_descriptor_version(broken) is None
    assert read_descriptor_version(empty) is None
    assert read_descriptor_version(tmp_path / "absent.json") is None
