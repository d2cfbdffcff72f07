"""Deployed payload directory on the target host."""
from __future__ import annotations

import json
import logging
import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import PurePosixPath

from ..errors import ExecutionError
from ..locator import PayloadSource
from ..runner import CommandResult, CommandRunner

LOGGER = logging.getLogger(__name__)

SNAPSHOT_SUFFIX = ".old"


def parse_df_available_mb(output: str) -> int | None:
    """Return available megabytes from ``df -Pk`` output."""
    lines = [line for line in output.splitlines() if line.strip()]
    if len(lines) < 2:
        return None
    columns = lines[-1].split()
    if len(columns) < 4 or not columns[3].isdigit():
        return None
    return int(columns[3]) // 1024


@dataclass(slots=True)
class PayloadProvider:
    """Deploy, inspect and snapshot the payload directory of one instance."""

    runner: CommandRunner
    directory: str
    descriptor: str = "package.json"
    entry_point: str = "server.js"
    node_bin: str = "/usr/bin/node"
    npm_bin: str = "npm"

    @property
    def snapshot_dir(self) -> str:
        """Sibling directory holding the previous payload during an update."""
        return f"{self.directory}{SNAPSHOT_SUFFIX}"

    @property
    def descriptor_path(self) -> str:
        """Path of the deployed descriptor file."""
        return str(PurePosixPath(self.directory) / self.descriptor)

    @property
    def entry_path(self) -> str:
        """Path of the entry-point script."""
        return str(PurePosixPath(self.directory) / self.entry_point)

    @property
    def exec_start(self) -> str:
        """``ExecStart`` command line for the service unit."""
        return f"{self.node_bin} {self.entry_path}"

    def exists(self) -> bool:
        """Return ``True`` when the payload directory exists."""
        return self.runner.path_exists(self.directory)

    def has_entry_point(self) -> bool:
        """Return ``True`` when the entry-point script is present."""
        return self.runner.path_exists(self.entry_path)

    def has_snapshot(self) -> bool:
        """Return ``True`` when a ``.old`` snapshot exists."""
        return self.runner.path_exists(self.snapshot_dir)

    def deploy(self, source: PayloadSource) -> CommandResult:
        """Copy the located payload into the payload directory."""
        LOGGER.info(
            "Deploying payload from %s to %s:%s", source.path, self.runner.target, self.directory
        )
        return self.runner.put_directory(source.path, self.directory).check(
            f"Deploying payload to {self.directory}"
        )

    def install_dependencies(self) -> CommandResult:
        """Run ``npm install --production`` inside the payload directory."""
        return self.runner.execute_privileged(
            f"cd {shlex.quote(self.directory)} && {self.npm_bin} install --production"
        ).check("Installing payload dependencies")

    def deployed_version(self, directory: str | None = None) -> str | None:
        """Return the version from the deployed descriptor, if readable."""
        path = (
            self.descriptor_path
            if directory is None
            else str(PurePosixPath(directory) / self.descriptor)
        )
        text = self.runner.read_text(path, privileged=True)
        if not text:
            return None
        try:
            data = json.loads(text)
        except ValueError:
            LOGGER.warning("Descriptor %s is not valid JSON", path)
            return None
        if isinstance(data, Mapping):
            version = data.get("version")
            if isinstance(version, str) and version.strip():
                return version.strip()
        return None

    def snapshot(self) -> CommandResult:
        """Move the current payload aside as the ``.old`` snapshot."""
        return self.runner.execute_privileged(
            f"rm -rf {shlex.quote(self.snapshot_dir)} && "
            f"mv {shlex.quote(self.directory)} {shlex.quote(self.snapshot_dir)}"
        ).check(f"Snapshotting {self.directory}")

    def restore_snapshot(self) -> CommandResult:
        """Swap the ``.old`` snapshot back into place."""
        if not self.has_snapshot():
            raise ExecutionError(f"No snapshot at {self.snapshot_dir} to restore.")
        return self.runner.execute_privileged(
            f"rm -rf {shlex.quote(self.directory)} && "
            f"mv {shlex.quote(self.snapshot_dir)} {shlex.quote(self.directory)}"
        ).check(f"Restoring snapshot {self.snapshot_dir}")

    def remove(self) -> CommandResult:
        """Delete the payload directory."""
        return self.runner.remove_path(self.directory)

    def remove_snapshot(self) -> CommandResult:
        """Delete the ``.old`` snapshot."""
        return self.runner.remove_path(self.snapshot_dir)

    def available_disk_mb(self) -> int | None:
        """Return free space (MB) on the filesystem that holds the payload."""
        parent = str(PurePosixPath(self.directory).parent)
        result = self.runner.execute(
            f"df -Pk {shlex.quote(self.directory)} 2>/dev/null || df -Pk {shlex.quote(parent)}"
        )
        if not result.ok:
            return None
        return parse_df_available_mb(result.stdout)


__all__ = ["PayloadProvider", "SNAPSHOT_SUFFIX", "parse_df_available_mb"]
