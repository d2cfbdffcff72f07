"""Host firewall (ufw) rules for an instance."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..runner import CommandResult, CommandRunner

LOGGER = logging.getLogger(__name__)

BASE_RULES: tuple[str, ...] = ("22/tcp", "80/tcp", "443/tcp")


@dataclass(slots=True)
class FirewallProvider:
    """Open SSH, HTTP(S) and the instance port, then enable ufw."""

    runner: CommandRunner
    ufw_bin: str = "ufw"

    def rules_for(self, port: int, *, ssh_port: int = 22) -> list[str]:
        """Return the ``ufw allow`` arguments for *port*."""
        rules = list(BASE_RULES)
        if ssh_port != 22:
            rules.insert(1, f"{ssh_port}/tcp")
        rules.append(f"{port}/tcp")
        return rules

    def configure(self, port: int, *, ssh_port: int = 22) -> list[CommandResult]:
        """Apply the allow rules and enable the firewall."""
        results = [self._allow(rule) for rule in self.rules_for(port, ssh_port=ssh_port)]
        results.append(
            self.runner.execute_privileged(f"{self.ufw_bin} --force enable").check(
                "Enabling ufw"
            )
        )
        LOGGER.info("Firewall configured on %s for port %s", self.runner.target, port)
        return results

    def remove_port(self, port: int) -> CommandResult:
        """Delete the allow rule for an instance port (best effort)."""
        return self.runner.execute_privileged(f"{self.ufw_bin} delete allow {port}/tcp")

    def _allow(self, rule: str) -> CommandResult:
        return self.runner.execute_privileged(f"{self.ufw_bin} allow {rule}").check(
            f"Allowing {rule} through ufw"
        )


__all__ = ["BASE_RULES", "FirewallProvider"]
