"""Shared fixtures: a scripted command runner with a virtual filesystem."""
from __future__ import annotations

import json
import shlex
from collections.abc import Callable, Iterator
from pathlib import Path, PurePosixPath

import pytest

from addonctl.config import AppConfig, load_config
from addonctl.instance_config import InstanceConfig
from addonctl.locator import ResourceLocator
from addonctl.manager import AddonManager
from addonctl.runner import CommandResult, CommandRunner
from addonctl.state import Registry
from addonctl.templates import TemplateEngine

OS_RELEASE = 'NAME="Ubuntu"\nVERSION_ID="22.04"\nID=ubuntu\nID_LIKE=debian\n'
DF_OUTPUT = (
    "Filesystem     1024-blocks    Used Available Capacity Mounted on\n"
    "/dev/sda1        102400000 5120000  97280000       5% /\n"
)
CHANGELOG = """# Changelog

## [1.2.0] - 2024-03-01
- Added stream caching
- Faster availability checks

## [1.1.0] - 2024-02-01
- Fixed torrent parsing

## [1.0.0] - 2024-01-01
- Initial release
"""


class FakeRunner(CommandRunner):
    """In-memory target host.

    Commands are matched against scripted rules first (latest rule wins);
    otherwise a handful of coreutils-style commands act on a virtual
    filesystem and anything else succeeds silently.
    """

    def __init__(self, target: str = "fake-host") -> None:
        self._target = target
        self.commands: list[str] = []
        self.privileged: list[str] = []
        self.files: dict[str, str] = {}
        self.dirs: set[str] = set()
        self.links: dict[str, str] = {}
        self.archives: dict[str, dict[str, str]] = {}
        self.rules: list[tuple[str, CommandResult]] = []
        self.connected = False
        self.connect_count = 0

    # -- scripting -----------------------------------------------------
    def respond(
        self,
        fragment: str,
        stdout: str = "",
        *,
        stderr: str = "",
        exit_code: int = 0,
    ) -> None:
        """Answer every command containing *fragment* with a canned result."""
        self.rules.append((fragment, CommandResult(stdout, stderr, exit_code)))

    def fail(self, fragment: str, stderr: str = "boom", exit_code: int = 1) -> None:
        """Make every command containing *fragment* exit non-zero."""
        self.respond(fragment, stderr=stderr, exit_code=exit_code)

    def ran(self, fragment: str) -> bool:
        """Return ``True`` when a recorded command contains *fragment*."""
        return any(fragment in command for command in self.commands)

    def count(self, fragment: str) -> int:
        """Return how many recorded commands contain *fragment*."""
        return sum(fragment in command for command in self.commands)

    def healthy(self, *ports: int) -> FakeRunner:
        """Script a reachable Ubuntu host whose service listens on *ports*."""
        self.files["/etc/os-release"] = OS_RELEASE
        self.respond("uname -s", "Linux\n")
        self.respond("uname -m", "x86_64\n")
        self.respond("uname -r", "6.1.0\n")
        self.respond("node --version", "v18.19.0\n")
        self.respond("npm --version", "9.2.0\n")
        self.respond("git --version", "git version 2.43.0\n")
        self.respond("nginx -v", "nginx version: nginx/1.24.0\n")
        self.respond("df -Pk", DF_OUTPUT)
        self.respond("systemctl is-active", "active\n")
        self.respond("systemctl is-enabled", "enabled\n")
        self.respond("systemctl list-units", "")
        self.listen(*ports)
        self.respond("curl -sI", "HTTP/1.1 200 OK\r\n")
        return self

    def listen(self, *ports: int) -> None:
        """Make the port listing report *ports* as bound."""
        lines = ["State  Recv-Q Send-Q Local Address:Port Peer Address:Port"]
        lines.extend(f"LISTEN 0      511    0.0.0.0:{port}      0.0.0.0:*" for port in ports)
        self.respond("ss -ltn", "\n".join(lines) + "\n")

    def exists(self, path: str) -> bool:
        """Return ``True`` when *path* is a file, directory or symlink."""
        prefix = path.rstrip("/") + "/"
        return (
            path in self.files
            or path in self.dirs
            or path in self.links
            or any(key.startswith(prefix) for key in self.files)
        )

    # -- CommandRunner -------------------------------------------------
    @property
    def target(self) -> str:
        return self._target

    def connect(self) -> None:
        self.connected = True
        self.connect_count += 1

    def disconnect(self) -> None:
        self.connected = False

    def execute(self, command: str) -> CommandResult:
        self.commands.append(command)
        return self._dispatch(command)

    def execute_privileged(self, command: str) -> CommandResult:
        self.commands.append(command)
        self.privileged.append(command)
        return self._dispatch(command)

    def write_text(
        self,
        path: str,
        content: str,
        *,
        mode: int | None = None,
        privileged: bool = True,
    ) -> CommandResult:
        command = f"write {path}"
        self.commands.append(command)
        scripted = self._scripted(command)
        if scripted is not None:
            return scripted
        self.files[path] = content
        self._add_parents(path)
        return CommandResult("", "", 0, command)

    def put_file(self, source: Path, destination: str, *, mode: int = 0o644) -> CommandResult:
        command = f"put_file {source} {destination}"
        self.commands.append(command)
        scripted = self._scripted(command)
        if scripted is not None:
            return scripted
        self.files[destination] = source.read_text(encoding="utf-8")
        self._add_parents(destination)
        return CommandResult("", "", 0, command)

    def put_directory(self, source: Path, destination: str) -> CommandResult:
        command = f"put_directory {source} {destination}"
        self.commands.append(command)
        scripted = self._scripted(command)
        if scripted is not None:
            return scripted
        self.dirs.add(destination)
        for item in sorted(source.rglob("*")):
            target = str(PurePosixPath(destination) / item.relative_to(source).as_posix())
            if item.is_dir():
                self.dirs.add(target)
            else:
                self.files[target] = item.read_text(encoding="utf-8")
        return CommandResult("", "", 0, command)

    def stream(self, command: str) -> Iterator[str]:
        self.commands.append(command)
        result = self._scripted(command) or CommandResult("", "", 0, command)
        yield from result.stdout.splitlines()

    # -- internals -----------------------------------------------------
    def _scripted(self, command: str) -> CommandResult | None:
        for fragment, result in reversed(self.rules):
            if fragment in command:
                return CommandResult(result.stdout, result.stderr, result.exit_code, command)
        return None

    def _dispatch(self, command: str) -> CommandResult:
        scripted = self._scripted(command)
        if scripted is not None:
            return scripted
        output: list[str] = []
        for segment in command.split(" && "):
            try:
                argv = shlex.split(segment)
            except ValueError:
                continue
            code, stdout = self._builtin(argv)
            if code != 0:
                return CommandResult("".join(output), stdout, code, command)
            output.append(stdout)
        return CommandResult("".join(output), "", 0, command)

    def _builtin(self, argv: list[str]) -> tuple[int, str]:
        if not argv:
            return 0, ""
        name, args = argv[0], argv[1:]
        if name == "test" and len(args) == 2:
            flag, path = args
            if flag == "-L":
                return (0 if path in self.links else 1), ""
            return (0 if self.exists(path) else 1), ""
        if name == "cat" and args:
            if args[0] in self.files:
                return 0, self.files[args[0]]
            return 1, f"cat: {args[0]}: No such file or directory"
        if name == "rm":
            for path in (arg for arg in args if not arg.startswith("-")):
                self._remove(path)
            return 0, ""
        if name == "mkdir":
            for path in (arg for arg in args if not arg.startswith("-")):
                self.dirs.add(path)
            return 0, ""
        if name == "mv" and len(args) == 2:
            return self._move(*args)
        if name == "ln" and len(args) == 3:
            self.links[args[2]] = args[1]
            return 0, ""
        if name == "stat" and args:
            return (0, "2048\n") if self.exists(args[-1]) else (1, "stat: missing")
        if name == "tar" and len(args) >= 4:
            return self._tar(args)
        return 0, ""

    def _remove(self, path: str) -> None:
        self.files = {k: v for k, v in self.files.items() if not _covers(path, k)}
        self.dirs = {k for k in self.dirs if not _covers(path, k)}
        self.links = {k: v for k, v in self.links.items() if not _covers(path, k)}

    def _move(self, source: str, destination: str) -> tuple[int, str]:
        if not self.exists(source):
            return 1, f"mv: cannot stat '{source}'"
        self._remove(destination)
        inner = source.rstrip("/") + "/"

        def relocate(key: str) -> str:
            if key == source:
                return destination
            if key.startswith(inner):
                return destination + "/" + key[len(inner) :]
            return key

        self.files = {relocate(key): value for key, value in self.files.items()}
        self.dirs = {relocate(key) for key in self.dirs}
        return 0, ""

    def _tar(self, args: list[str]) -> tuple[int, str]:
        flags, archive = args[0], args[1]
        directory = args[args.index("-C") + 1] if "-C" in args else "."
        if "c" in flags:
            if not self.exists(directory):
                return 2, f"tar: {directory}: Cannot open"
            excluded = [args[i + 1] for i, arg in enumerate(args) if arg == "--exclude"]
            inner = directory.rstrip("/") + "/"
            snapshot = {
                key[len(inner) :]: value
                for key, value in self.files.items()
                if key.startswith(inner)
                and not any(
                    key[len(inner) :].startswith(item.removeprefix("./")) for item in excluded
                )
            }
            self.archives[archive] = snapshot
            self.files[archive] = f"<archive of {len(snapshot)} files>"
            return 0, ""
        if archive not in self.archives:
            return 2, f"tar: {archive}: Cannot open"
        for relative, value in self.archives[archive].items():
            self.files[f"{directory.rstrip('/')}/{relative}"] = value
        self.dirs.add(directory)
        return 0, ""

    def _add_parents(self, path: str) -> None:
        for parent in PurePosixPath(path).parents:
            if str(parent) != "/":
                self.dirs.add(str(parent))


def _covers(pattern: str, key: str) -> bool:
    """Return ``True`` when ``rm -rf pattern`` would delete *key*."""
    if pattern.endswith("*"):
        return key.startswith(pattern[:-1])
    return key == pattern or key.startswith(pattern.rstrip("/") + "/")


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def write_payload(directory: Path, version: str = "1.0.0") -> Path:
    """Create a deployable payload tree at *directory*."""
    (directory / "dist").mkdir(parents=True, exist_ok=True)
    (directory / "dist" / "index.js").write_text("module.exports = {};\n", encoding="utf-8")
    (directory / "server.js").write_text("require('./dist');\n", encoding="utf-8")
    (directory / "CHANGELOG.md").write_text(CHANGELOG, encoding="utf-8")
    set_payload_version(directory, version)
    return directory


def set_payload_version(directory: Path, version: str) -> None:
    """Rewrite the payload descriptor with *version*."""
    descriptor = {"name": "addon-server", "version": version, "main": "server.js"}
    (directory / "package.json").write_text(json.dumps(descriptor), encoding="utf-8")


def make_instance_config(
    name: str = "Alpha",
    domain: str = "alpha.example.com",
    port: int = 7000,
    **features: bool,
) -> InstanceConfig:
    """Return a local instance configuration with the secrets filled in."""
    return InstanceConfig.from_dict(
        {
            "addon": {
                "name": name,
                "domain": domain,
                "port": port,
                "password": "s3cret-pass",
            },
            "features": features,
            "secrets": {"real_debrid_token": "rd-token-123"},
        }
    )


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration rooted in the test's temporary directory."""
    return load_config(
        tmp_path / "config.yml",
        env={},
        overrides={
            "state_dir": str(tmp_path / "state"),
            "lock_timeout": 2.0,
            "required_disk_mb": 100,
            "verification": {
                "active_timeout": 1.0,
                "port_timeout": 1.0,
                "poll_interval": 0.5,
                "journal_lines": 20,
            },
        },
    )


@pytest.fixture
def payload_dir(tmp_path: Path) -> Path:
    """A bundled payload at version 1.0.0."""
    return write_payload(tmp_path / "resources" / "addon-server")


@pytest.fixture
def locator(app_config: AppConfig, payload_dir: Path, tmp_path: Path) -> ResourceLocator:
    """Locator that finds :func:`payload_dir` through the resources variable."""
    return ResourceLocator(
        app_config.payload,
        env={"ADDONCTL_RESOURCES_PATH": str(payload_dir.parent)},
        cwd=tmp_path / "cwd",
        package_dir=tmp_path / "site" / "addonctl",
    )


@pytest.fixture
def fake() -> FakeRunner:
    """A healthy target listening on the first two instance ports."""
    return FakeRunner().healthy(7000, 7001)


@pytest.fixture
def clock() -> FakeClock:
    """Instant clock for polling loops."""
    return FakeClock()


@pytest.fixture
def templates() -> TemplateEngine:
    """Template engine using only the built-in templates."""
    return TemplateEngine.with_overrides(None)


@pytest.fixture
def registry(app_config: AppConfig) -> Registry:
    """Loaded, empty registry."""
    registry = Registry(app_config.registry_file)
    registry.load()
    return registry


@pytest.fixture
def manager(
    app_config: AppConfig,
    fake: FakeRunner,
    locator: ResourceLocator,
    clock: FakeClock,
) -> AddonManager:
    """Manager whose every runner is :func:`fake`."""
    return AddonManager(
        app_config,
        runner_factory=lambda _config: fake,
        locator=locator,
        sleep=clock.sleep,
        clock=clock,
    )


@pytest.fixture
def install_instance(manager: AddonManager) -> Callable[..., str]:
    """Install an instance through the manager and return its id."""

    def _install(**kwargs: object) -> str:
        result = manager.install(make_instance_config(**kwargs))  # type: ignore[arg-type]
        assert result.success, result.error
        assert result.instance_id is not None
        return result.instance_id

    return _install
