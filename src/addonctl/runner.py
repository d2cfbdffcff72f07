"""Command execution against the local host or a remote host over SSH.

Both runners share one contract: :meth:`CommandRunner.execute` and
:meth:`CommandRunner.execute_privileged` return a :class:`CommandResult` and
never raise because a command exited non-zero. Callers decide what a failure
means, usually through :meth:`CommandResult.check`. Only transport problems
(cannot connect, not connected) raise :class:`~addonctl.errors.ExecutionError`.
"""
from __future__ import annotations

import logging
import os
import secrets
import shlex
import subprocess
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import paramiko

from .archive import ArchiveError, compute_checksum, create_archive, tar_extract_command
from .errors import ExecutionError

LOGGER = logging.getLogger(__name__)

TEMP_PREFIX = "/tmp/addonctl-"  # noqa: S108 - scratch paths are tracked per runner
DEFAULT_KEY_NAMES: tuple[str, ...] = ("id_rsa", "id_ed25519", "id_ecdsa")


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Captured outcome of a single command."""

    stdout: str
    stderr: str
    exit_code: int
    command: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited zero."""
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Return stdout, falling back to stderr, stripped."""
        return (self.stdout.strip() or self.stderr.strip())

    def check(self, context: str) -> CommandResult:
        """Return ``self`` or raise :class:`ExecutionError` describing *context*."""
        if self.ok:
            return self
        detail = self.stderr.strip() or self.stdout.strip() or "no output"
        raise ExecutionError(
            f"{context} failed (exit {self.exit_code}): {detail}",
            command=self.command,
            exit_code=self.exit_code,
            stdout=self.stdout,
            stderr=self.stderr,
        )


class CommandRunner(ABC):
    """Execution-environment-agnostic command surface."""

    @property
    @abstractmethod
    def target(self) -> str:
        """Return a human readable label for the execution target."""

    @abstractmethod
    def connect(self) -> None:
        """Open the transport (no-op for local execution)."""

    @abstractmethod
    def disconnect(self) -> None:
        """Close the transport; safe to call repeatedly."""

    @abstractmethod
    def execute(self, command: str) -> CommandResult:
        """Run *command* through a POSIX shell."""

    @abstractmethod
    def execute_privileged(self, command: str) -> CommandResult:
        """Run *command* with root privileges."""

    @abstractmethod
    def put_file(self, source: Path, destination: str, *, mode: int = 0o644) -> CommandResult:
        """Copy a local file to *destination* on the target (privileged)."""

    @abstractmethod
    def put_directory(self, source: Path, destination: str) -> CommandResult:
        """Copy the contents of a local directory to *destination* (privileged)."""

    @abstractmethod
    def stream(self, command: str) -> Iterator[str]:
        """Yield output lines of a long-running *command* until it exits."""

    # ------------------------------------------------------------------
    # Shared helpers built on execute()
    # ------------------------------------------------------------------
    @contextmanager
    def session(self) -> Iterator[CommandRunner]:
        """Connect for the duration of a ``with`` block."""
        self.connect()
        try:
            yield self
        finally:
            self.disconnect()

    def path_exists(self, path: str) -> bool:
        """Return ``True`` when *path* exists on the target."""
        return self.execute(f"test -e {shlex.quote(path)}").ok

    def read_text(self, path: str, *, privileged: bool = False) -> str | None:
        """Return the contents of *path* or ``None`` when unreadable."""
        command = f"cat {shlex.quote(path)}"
        result = self.execute_privileged(command) if privileged else self.execute(command)
        return result.stdout if result.ok else None

    def write_text(
        self,
        path: str,
        content: str,
        *,
        mode: int | None = None,
        privileged: bool = True,
    ) -> CommandResult:
        """Write *content* to *path*, creating parent directories."""
        quoted = shlex.quote(path)
        parent = shlex.quote(str(Path(path).parent))
        command = f"mkdir -p {parent} && printf '%s' {shlex.quote(content)} > {quoted}"
        if mode is not None:
            command += f" && chmod {mode:o} {quoted}"
        return self.execute_privileged(command) if privileged else self.execute(command)

    def remove_path(self, path: str, *, privileged: bool = True) -> CommandResult:
        """Recursively remove *path* on the target."""
        command = f"rm -rf {shlex.quote(path)}"
        return self.execute_privileged(command) if privileged else self.execute(command)

    def scratch_path(self, name: str) -> str:
        """Return a unique temporary path on the target and remember it."""
        path = f"{TEMP_PREFIX}{secrets.token_hex(4)}-{name}"
        self.scratch_paths.append(path)
        return path

    @property
    def scratch_paths(self) -> list[str]:
        """Scratch paths handed out by this runner that may still exist."""
        return self.__dict__.setdefault("_scratch_paths", [])

    def remove_scratch(self) -> CommandResult | None:
        """Remove the scratch paths this runner handed out, and nothing else."""
        paths = self.scratch_paths
        if not paths:
            return None
        result = self.execute("rm -rf " + " ".join(shlex.quote(path) for path in paths))
        if result.ok:
            paths.clear()
        return result


def _sudo_wrap(command: str, *, with_password: bool) -> str:
    flag = "-S -p ''" if with_password else "-n"
    return f"sudo {flag} sh -c {shlex.quote(command)}"


class LocalCommandRunner(CommandRunner):
    """Run commands on this machine via :mod:`subprocess`."""

    def __init__(
        self,
        *,
        sudo_password: str | None = None,
        timeout: float | None = None,
        shell: str = "/bin/sh",
    ) -> None:
        """Configure optional sudo password and per-command timeout."""
        self.sudo_password = sudo_password
        self.timeout = timeout
        self.shell = shell
        self.connected = False

    @property
    def target(self) -> str:
        """Return the label for local execution."""
        return "local"

    def connect(self) -> None:
        """Mark the runner as active."""
        self.connected = True

    def disconnect(self) -> None:
        """Mark the runner as inactive."""
        self.connected = False

    def execute(self, command: str) -> CommandResult:
        """Run *command* through the configured shell."""
        return self._run(command)

    def execute_privileged(self, command: str) -> CommandResult:
        """Run *command* as root, using sudo when not already root."""
        if os.geteuid() == 0:
            return self._run(command)
        wrapped = _sudo_wrap(command, with_password=self.sudo_password is not None)
        stdin = f"{self.sudo_password}\n" if self.sudo_password is not None else None
        return self._run(wrapped, input_text=stdin, display=f"sudo {command}")

    def put_file(self, source: Path, destination: str, *, mode: int = 0o644) -> CommandResult:
        """Install *source* at *destination* with *mode*."""
        return self.execute_privileged(
            f"install -D -m {mode:o} {shlex.quote(str(source))} {shlex.quote(destination)}"
        )

    def put_directory(self, source: Path, destination: str) -> CommandResult:
        """Mirror *source* into *destination*."""
        quoted_dest = shlex.quote(destination)
        return self.execute_privileged(
            f"mkdir -p {quoted_dest} && cp -a {shlex.quote(str(source))}/. {quoted_dest}/"
        )

    def stream(self, command: str) -> Iterator[str]:
        """Yield merged stdout/stderr lines of *command* as they arrive."""
        LOGGER.debug("local$ %s (streaming)", command)
        process = subprocess.Popen(  # noqa: S602
            command,
            shell=True,
            executable=self.shell,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        try:
            if process.stdout is None:
                return
            for line in process.stdout:
                yield line.rstrip("\n")
        finally:
            if process.poll() is None:
                process.terminate()
            process.wait()

    # ------------------------------------------------------------------
    def _run(
        self,
        command: str,
        *,
        input_text: str | None = None,
        display: str | None = None,
    ) -> CommandResult:
        label = display or command
        LOGGER.debug("local$ %s", label)
        try:
            completed = subprocess.run(  # noqa: S602 - commands are built from quoted parts
                command,
                shell=True,
                executable=self.shell,
                input=input_text,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            return CommandResult(
                stdout=_as_text(exc.stdout),
                stderr=f"Timed out after {self.timeout}s",
                exit_code=124,
                command=label,
            )
        except OSError as exc:
            return CommandResult(stdout="", stderr=str(exc), exit_code=127, command=label)
        return CommandResult(
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            exit_code=completed.returncode,
            command=label,
        )


class RemoteCommandRunner(CommandRunner):
    """Run commands on a remote host through a Paramiko SSH session."""

    def __init__(
        self,
        host: str,
        *,
        username: str,
        port: int = 22,
        password: str | None = None,
        sudo_password: str | None = None,
        key_path: Path | None = None,
        passphrase: str | None = None,
        connect_timeout: float = 15.0,
        command_timeout: float | None = None,
        host_key_policy: str = "auto-add",
        key_search_dir: Path | None = None,
    ) -> None:
        """Store connection parameters; nothing is opened until :meth:`connect`."""
        self.host = host
        self.username = username
        self.port = port
        self.password = password
        self.sudo_password = sudo_password if sudo_password is not None else password
        self.key_path = key_path.expanduser() if key_path else None
        self.passphrase = passphrase
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.host_key_policy = host_key_policy
        self.key_search_dir = key_search_dir or Path.home() / ".ssh"
        self._client: paramiko.SSHClient | None = None

    @property
    def target(self) -> str:
        """Return ``user@host:port``."""
        return f"{self.username}@{self.host}:{self.port}"

    @property
    def connected(self) -> bool:
        """Return ``True`` while a transport is open and active."""
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def candidate_keys(self) -> list[str]:
        """Return private key files to try, explicit key first."""
        if self.key_path is not None:
            return [str(self.key_path)]
        return [
            str(self.key_search_dir / name)
            for name in DEFAULT_KEY_NAMES
            if (self.key_search_dir / name).exists()
        ]

    def connect(self) -> None:
        """Open the SSH connection."""
        if self.connected:
            return
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(_host_key_policy(self.host_key_policy))
        keys = self.candidate_keys() if self.password is None or self.key_path else []
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                key_filename=keys or None,
                passphrase=self.passphrase,
                timeout=self.connect_timeout,
                allow_agent=self.password is None,
                look_for_keys=False,
            )
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise ExecutionError(f"Failed to connect to {self.target}: {exc}") from exc
        LOGGER.info("Connected to %s", self.target)
        self._client = client

    def disconnect(self) -> None:
        """Close the SSH connection if open."""
        if self._client is not None:
            self._client.close()
            self._client = None
            LOGGER.info("Disconnected from %s", self.target)

    def execute(self, command: str) -> CommandResult:
        """Run *command* on the remote host."""
        return self._exec(command)

    def execute_privileged(self, command: str) -> CommandResult:
        """Run *command* as root, feeding the password to ``sudo -S`` when known."""
        if self.username == "root":
            return self._exec(command)
        with_password = self.sudo_password is not None
        wrapped = _sudo_wrap(command, with_password=with_password)
        stdin = f"{self.sudo_password}\n" if with_password else None
        return self._exec(wrapped, input_text=stdin, display=f"sudo {command}")

    def put_file(self, source: Path, destination: str, *, mode: int = 0o644) -> CommandResult:
        """Upload *source* via SFTP then move it into place as root."""
        scratch = self.scratch_path(source.name)
        self._upload(source, scratch)
        return self.execute_privileged(
            f"install -D -m {mode:o} {shlex.quote(scratch)} {shlex.quote(destination)} && "
            f"rm -f {shlex.quote(scratch)}"
        )

    def put_directory(self, source: Path, destination: str) -> CommandResult:
        """Pack *source*, upload it, verify the checksum and unpack it as root."""
        with tempfile.TemporaryDirectory(prefix="addonctl-bundle-") as tmp:
            bundle = Path(tmp) / "payload.tar.gz"
            try:
                create_archive(source, bundle, "gzip")
            except ArchiveError as exc:
                raise ExecutionError(f"Failed to pack {source}: {exc}") from exc
            checksum = compute_checksum(bundle)
            scratch = self.scratch_path(bundle.name)
            self._upload(bundle, scratch)

        remote_sum = self.execute(f"sha256sum {shlex.quote(scratch)}")
        if remote_sum.ok and remote_sum.stdout.split()[:1] != [checksum]:
            self.execute(f"rm -f {shlex.quote(scratch)}")
            return CommandResult(
                stdout="",
                stderr=f"Checksum mismatch after upload of {source.name}",
                exit_code=1,
                command=f"put_directory {source} {destination}",
            )
        return self.execute_privileged(
            f"{tar_extract_command(scratch, destination, 'gzip')} && rm -f {shlex.quote(scratch)}"
        )

    def stream(self, command: str) -> Iterator[str]:
        """Yield output lines of *command* from a PTY channel."""
        client = self._require_client()
        LOGGER.debug("%s$ %s (streaming)", self.target, command)
        try:
            _stdin, stdout, _stderr = client.exec_command(command, get_pty=True)
        except (paramiko.SSHException, OSError) as exc:
            raise ExecutionError(f"Failed to run {command} on {self.target}: {exc}") from exc
        try:
            for line in stdout:
                yield line.rstrip("\r\n")
        finally:
            stdout.channel.close()

    # ------------------------------------------------------------------
    def _require_client(self) -> paramiko.SSHClient:
        if self._client is None:
            raise ExecutionError(f"Not connected to {self.target}")
        return self._client

    def _upload(self, source: Path, destination: str) -> None:
        client = self._require_client()
        try:
            with client.open_sftp() as sftp:
                sftp.put(str(source), destination)
        except (paramiko.SSHException, OSError) as exc:
            raise ExecutionError(
                f"Failed to upload {source} to {self.target}:{destination}: {exc}"
            ) from exc

    def _exec(
        self,
        command: str,
        *,
        input_text: str | None = None,
        display: str | None = None,
    ) -> CommandResult:
        client = self._require_client()
        label = display or command
        LOGGER.debug("%s$ %s", self.target, label)
        try:
            stdin, stdout, stderr = client.exec_command(command, timeout=self.command_timeout)
            if input_text is not None:
                stdin.write(input_text)
                stdin.flush()
            stdin.channel.shutdown_write()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as exc:
            return CommandResult(stdout="", stderr=str(exc), exit_code=255, command=label)
        return CommandResult(stdout=out, stderr=err, exit_code=exit_code, command=label)


def _host_key_policy(name: str) -> paramiko.MissingHostKeyPolicy:
    if name == "reject":
        return paramiko.RejectPolicy()
    if name == "warn":
        return paramiko.WarningPolicy()
    return paramiko.AutoAddPolicy()


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = [
    "CommandResult",
    "CommandRunner",
    "LocalCommandRunner",
    "RemoteCommandRunner",
    "TEMP_PREFIX",
]
