"""Locate the deployable payload across the known launch layouts.

The payload (a directory holding ``package.json`` and a compiled ``dist``
directory) can sit next to a packaged desktop app, inside the installed
Python package, or in a source checkout. All candidate locations are listed
once, in priority order, and checked by a single predicate. When nothing
matches, the payload repository is cloned into a temporary directory.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import sys
import tempfile
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path

from .config import ENV_PREFIX, PayloadConfig
from .errors import NotFoundError

LOGGER = logging.getLogger(__name__)

PAYLOAD_DIRNAME = "addon-server"
RESOURCES_ENV_VAR = f"{ENV_PREFIX}RESOURCES_PATH"
APP_PATH_ENV_VAR = f"{ENV_PREFIX}APP_PATH"


@dataclass(frozen=True, slots=True)
class Candidate:
    """A ``(root, relative)`` location that may hold the payload."""

    root: Path
    relative: str
    origin: str

    @property
    def path(self) -> Path:
        """Resolved candidate directory."""
        return self.root / self.relative if self.relative else self.root


@dataclass(slots=True)
class PayloadSource:
    """A located payload directory."""

    path: Path
    origin: str
    temporary: bool = False

    def version(self, descriptor: str = "package.json") -> str | None:
        """Return the version recorded in the payload descriptor."""
        return read_descriptor_version(self.path / descriptor)

    def read_changelog(self) -> str | None:
        """Return ``CHANGELOG.md`` contents when the payload ships one."""
        changelog = self.path / "CHANGELOG.md"
        if not changelog.is_file():
            return None
        return changelog.read_text(encoding="utf-8", errors="replace")

    def cleanup(self) -> None:
        """Remove the clone working directory when the payload was fetched for this run."""
        if self.temporary:
            shutil.rmtree(self.path.parent, ignore_errors=True)


def read_descriptor_version(path: Path) -> str | None:
    """Return ``version`` from a JSON descriptor file, or ``None``."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if isinstance(data, Mapping):
        version = data.get("version")
        if isinstance(version, str) and version.strip():
            return version.strip()
    return None


@dataclass(slots=True)
class ResourceLocator:
    """Search the candidate list for the payload; clone as a last resort."""

    payload: PayloadConfig
    env: Mapping[str, str] | None = None
    cwd: Path | None = None
    package_dir: Path | None = None

    def candidates(self) -> list[Candidate]:
        """Return candidate locations in priority order."""
        env = os.environ if self.env is None else self.env
        cwd = self.cwd or Path.cwd()
        package_dir = self.package_dir or Path(__file__).resolve().parent
        items: list[Candidate] = []

        resources = env.get(RESOURCES_ENV_VAR)
        if resources:
            root = Path(resources).expanduser()
            items.append(Candidate(root, PAYLOAD_DIRNAME, "resources-env"))
            items.append(Candidate(root, "", "resources-env"))
        app_path = env.get(APP_PATH_ENV_VAR)
        if app_path:
            root = Path(app_path).expanduser()
            items.append(Candidate(root, f"resources/{PAYLOAD_DIRNAME}", "app-env"))
            items.append(Candidate(root, PAYLOAD_DIRNAME, "app-env"))

        bundle_root = getattr(sys, "_MEIPASS", None)
        process_root = Path(bundle_root) if bundle_root else Path(sys.executable).resolve().parent
        items.append(Candidate(process_root, f"resources/{PAYLOAD_DIRNAME}", "process-resources"))

        items.append(Candidate(cwd, PAYLOAD_DIRNAME, "cwd"))
        items.append(Candidate(cwd, f"packages/{PAYLOAD_DIRNAME}", "cwd"))

        items.append(Candidate(package_dir, f"resources/{PAYLOAD_DIRNAME}", "package"))
        for depth, parent in enumerate(package_dir.parents):
            if depth > 3:
                break
            items.append(Candidate(parent, PAYLOAD_DIRNAME, "source-tree"))
            items.append(Candidate(parent, f"packages/{PAYLOAD_DIRNAME}", "source-tree"))
        return items

    def is_payload(self, path: Path) -> bool:
        """Return ``True`` when *path* holds the descriptor and build output."""
        descriptor = path / self.payload.descriptor
        return descriptor.is_file() and (path / self.payload.build_dir).is_dir()

    def iter_matches(self) -> Iterator[Candidate]:
        """Yield candidates that hold a payload, in priority order."""
        seen: set[Path] = set()
        for candidate in self.candidates():
            path = candidate.path
            if path in seen:
                continue
            seen.add(path)
            if self.is_payload(path):
                yield candidate

    def find_local(self) -> PayloadSource | None:
        """Return the first local payload, if any."""
        for candidate in self.iter_matches():
            LOGGER.debug("Payload found at %s (%s)", candidate.path, candidate.origin)
            return PayloadSource(path=candidate.path, origin=candidate.origin)
        return None

    def locate(self) -> PayloadSource:
        """Return a local payload or clone the payload repository."""
        found = self.find_local()
        if found is not None:
            return found
        LOGGER.info("No bundled payload found; falling back to git clone")
        return self.clone()

    def clone(self) -> PayloadSource:
        """Shallow-clone the configured repository into a temporary directory."""
        repo_url = self.payload.repo_url
        if not repo_url:
            raise NotFoundError(
                "Payload not found in any known location and no repository URL is configured "
                "(set payload.repo_url)."
            )
        workdir = Path(tempfile.mkdtemp(prefix="addonctl-payload-"))
        destination = workdir / PAYLOAD_DIRNAME
        command = [
            "git",
            "clone",
            "--depth",
            "1",
            "-b",
            self.payload.branch,
            repo_url,
            str(destination),
        ]
        try:
            result = subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            shutil.rmtree(workdir, ignore_errors=True)
            raise NotFoundError(f"Unable to run git to fetch the payload: {exc}") from exc
        if result.returncode != 0:
            shutil.rmtree(workdir, ignore_errors=True)
            detail = (result.stderr or result.stdout).strip()
            raise NotFoundError(f"Failed to clone payload repository {repo_url}: {detail}")
        if not (destination / self.payload.descriptor).is_file():
            shutil.rmtree(workdir, ignore_errors=True)
            raise NotFoundError(
                f"Cloned repository {repo_url} has no {self.payload.descriptor}."
            )
        return PayloadSource(path=destination, origin="git-clone", temporary=True)


__all__ = [
    "APP_PATH_ENV_VAR",
    "Candidate",
    "PAYLOAD_DIRNAME",
    "PayloadSource",
    "RESOURCES_ENV_VAR",
    "ResourceLocator",
    "read_descriptor_version",
]
