"""Archive helpers shared by payload transfer and backup workflows."""
from __future__ import annotations

import hashlib
import os
import shlex
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path


class ArchiveError(RuntimeError):
    """Raised when a local archive cannot be produced."""


def compression_extension(algorithm: str) -> str:
    """Return the archive file extension for *algorithm*."""
    if algorithm == "gzip":
        return "tar.gz"
    return "tar"


def tar_create_command(
    source_dir: str,
    archive_path: str,
    algorithm: str,
    *,
    exclude: Sequence[str] = (),
) -> str:
    """Return the shell command archiving the contents of *source_dir*."""
    flags = "-czf" if algorithm == "gzip" else "-cf"
    excludes = "".join(f" --exclude {shlex.quote(item)}" for item in exclude)
    return f"tar {flags} {shlex.quote(archive_path)}{excludes} -C {shlex.quote(source_dir)} ."


def tar_extract_command(archive_path: str, destination: str, algorithm: str) -> str:
    """Return the shell command unpacking *archive_path* into *destination*."""
    flags = "-xzf" if algorithm == "gzip" else "-xf"
    quoted_dest = shlex.quote(destination)
    return (
        f"mkdir -p {quoted_dest} && "
        f"tar {flags} {shlex.quote(archive_path)} -C {quoted_dest}"
    )


def infer_algorithm(path: str) -> str:
    """Guess the compression algorithm from an archive filename."""
    if path.endswith((".tar.gz", ".tgz")):
        return "gzip"
    return "none"


def create_archive(source_dir: Path, archive_path: Path, algorithm: str = "gzip") -> None:
    """Create an archive of the contents of *source_dir* at *archive_path*."""
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to create archives.")

    cmd: list[str] = [tar_bin]
    if algorithm == "gzip":
        cmd.extend(["-czf", str(archive_path)])
    else:
        cmd.extend(["-cf", str(archive_path)])
    # Dependencies are installed on the target, never shipped.
    cmd.extend(["--exclude", "./node_modules", "-C", str(source_dir), "."])

    result = subprocess.run(  # noqa: S603, S607 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(message.strip())

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


__all__ = [
    "ArchiveError",
    "compression_extension",
    "compute_checksum",
    "create_archive",
    "infer_algorithm",
    "tar_create_command",
    "tar_extract_command",
]
