"""fail2ban jail for the target's SSH daemon."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..runner import CommandRunner
from ..templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

JAIL_PATH = "/etc/fail2ban/jail.d/sshd.conf"


@dataclass(slots=True)
class IntrusionPreventionProvider:
    """Write the sshd jail and (re)start fail2ban."""

    runner: CommandRunner
    templates: TemplateEngine
    jail_path: str = JAIL_PATH
    max_retry: int = 5
    ban_time: int = 3600
    find_time: int = 600
    auth_log: str = "/var/log/auth.log"

    def render_jail(self, *, ssh_port: int = 22) -> str:
        """Return the jail configuration text."""
        return self.templates.render_to_string(
            "fail2ban/jail.local.j2",
            {
                "ssh_port": ssh_port,
                "auth_log": self.auth_log,
                "max_retry": self.max_retry,
                "ban_time": self.ban_time,
                "find_time": self.find_time,
            },
        )

    def configure(self, *, ssh_port: int = 22) -> None:
        """Install the jail and make sure fail2ban runs at boot."""
        jail = self.render_jail(ssh_port=ssh_port)
        self.runner.write_text(self.jail_path, jail, mode=0o644).check(f"Writing {self.jail_path}")
        self.runner.execute_privileged("systemctl restart fail2ban").check("Restarting fail2ban")
        self.runner.execute_privileged("systemctl enable fail2ban").check("Enabling fail2ban")
        LOGGER.info("fail2ban configured on %s", self.runner.target)


__all__ = ["IntrusionPreventionProvider", "JAIL_PATH"]
