"""Post-start liveness checks: unit active, then port bound."""
from __future__ import annotations

import logging
from collections.abc import Callable

from ..config import VerificationConfig
from ..errors import VerificationError
from ..ports import port_is_bound
from ..providers import SystemdProvider
from ..runner import CommandRunner

LOGGER = logging.getLogger(__name__)


def wait_for_port(
    runner: CommandRunner,
    port: int,
    *,
    timeout: float,
    poll_interval: float,
    sleep: Callable[[float], None],
    clock: Callable[[], float],
) -> tuple[bool, str]:
    """Poll until *port* is listening or *timeout* elapses; return the last listing output."""
    deadline = clock() + timeout
    while True:
        bound, output = port_is_bound(runner, port)
        if bound or clock() >= deadline:
            return bound, output
        sleep(poll_interval)


def verify_service(
    systemd: SystemdProvider,
    port: int,
    settings: VerificationConfig,
) -> str:
    """Confirm the unit is active and listening on *port*.

    Port binding is authoritative. Raises :class:`VerificationError` with the
    recent journal (and the port listing when the unit is up but silent).
    """
    if not systemd.wait_active(settings.active_timeout, settings.poll_interval):
        journal = systemd.logs(settings.journal_lines)
        raise VerificationError(
            f"Service {systemd.unit_file} did not become active within "
            f"{settings.active_timeout:g}s.",
            diagnostics={"state": systemd.status().state.value, "journal": journal},
        )

    bound, output = wait_for_port(
        systemd.runner,
        port,
        timeout=settings.port_timeout,
        poll_interval=settings.poll_interval,
        sleep=systemd.sleep,
        clock=systemd.clock,
    )
    if not bound:
        raise VerificationError(
            f"Service {systemd.unit_file} is active but not listening on port {port}.",
            diagnostics={
                "journal": systemd.logs(settings.journal_lines),
                "port_check": output,
            },
        )
    LOGGER.info("Service %s is active and listening on %d", systemd.unit_file, port)
    return f"Service active and listening on port {port}"


def http_check(runner: CommandRunner, port: int) -> str | None:
    """Return a warning when the HTTP endpoint does not answer; advisory only."""
    result = runner.execute(f"curl -sI --max-time 5 http://127.0.0.1:{int(port)}/")
    if result.ok and result.stdout.startswith("HTTP/"):
        return None
    return f"HTTP check of port {port} got no response; the service may still be starting."


__all__ = ["http_check", "verify_service", "wait_for_port"]
