"""DuckDNS updater script and cron entry."""
from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass

from ..errors import ValidationError
from ..runner import CommandRunner
from ..templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

DUCKDNS_SUFFIX = ".duckdns.org"
CRON_SCHEDULE = "*/5 * * * *"


def duckdns_subdomain(domain: str) -> str:
    """Return the DuckDNS label for *domain* (``foo.duckdns.org`` -> ``foo``)."""
    value = domain.strip().lower()
    if value.endswith(DUCKDNS_SUFFIX):
        value = value[: -len(DUCKDNS_SUFFIX)]
    if not value or "." in value:
        raise ValidationError(
            f"'{domain}' is not a DuckDNS domain.",
            field="domain",
            suggestion="Use a domain of the form '<name>.duckdns.org'.",
        )
    return value


@dataclass(slots=True)
class DynamicDnsProvider:
    """Install the DuckDNS refresh script and schedule it with cron."""

    runner: CommandRunner
    templates: TemplateEngine
    directory: str = "/opt/duckdns"

    @property
    def script_path(self) -> str:
        """Location of the refresh script on the target."""
        return f"{self.directory}/duck.sh"

    @property
    def log_path(self) -> str:
        """Location of the refresh log on the target."""
        return f"{self.directory}/duck.log"

    def cron_line(self) -> str:
        """Return the crontab entry running the script."""
        return f"{CRON_SCHEDULE} {self.script_path} >/dev/null 2>&1"

    def configure(self, domain: str, token: str) -> None:
        """Write the script, run it once and add the cron entry if missing."""
        if not token:
            raise ValidationError(
                "A DuckDNS token is required for dynamic DNS.", field="duckdns_token"
            )
        script = self.templates.render_to_string(
            "dyndns/duckdns.sh.j2",
            {
                "subdomain": duckdns_subdomain(domain),
                "token": token,
                "log_path": self.log_path,
            },
        )
        self.runner.write_text(self.script_path, script, mode=0o700).check(
            f"Writing {self.script_path}"
        )
        self.runner.execute_privileged(self.script_path).check("Refreshing DuckDNS record")
        line = self.cron_line()
        self.runner.execute_privileged(
            f"(crontab -l 2>/dev/null | grep -vF {shlex.quote(self.script_path)}; "
            f"echo {shlex.quote(line)}) | crontab -"
        ).check("Installing DuckDNS cron entry")
        LOGGER.info("DuckDNS updater installed on %s", self.runner.target)


__all__ = ["CRON_SCHEDULE", "DynamicDnsProvider", "duckdns_subdomain"]
