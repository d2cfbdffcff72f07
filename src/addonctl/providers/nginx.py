"""Nginx provider for the reverse-proxy virtual host of an instance."""
from __future__ import annotations

import logging
import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import PurePosixPath

from ..errors import ExecutionError
from ..runner import CommandResult, CommandRunner
from ..templates import TemplateEngine

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class NginxRenderResult:
    """Outcome of rendering a site configuration."""

    changed: bool
    validation: CommandResult | None = None
    reload: CommandResult | None = None


@dataclass(slots=True)
class NginxProvider:
    """Render, enable and remove the site configuration of one instance."""

    runner: CommandRunner
    templates: TemplateEngine
    site_name: str
    sites_available: str = "/etc/nginx/sites-available"
    sites_enabled: str = "/etc/nginx/sites-enabled"
    nginx_bin: str = "nginx"

    @property
    def site_path(self) -> str:
        """Return the site configuration path on the target."""
        return str(PurePosixPath(self.sites_available) / self.site_name)

    @property
    def enabled_path(self) -> str:
        """Return the sites-enabled symlink path."""
        return str(PurePosixPath(self.sites_enabled) / self.site_name)

    def render_site(self, context: Mapping[str, object]) -> str:
        """Return the virtual host text for *context*."""
        return self.templates.render_to_string("nginx/site.conf.j2", context)

    def configure(self, context: Mapping[str, object], *, reload: bool = True) -> NginxRenderResult:
        """Write and enable the site, validate with ``nginx -t`` and reload.

        A failed validation restores the previous file (or removes the new one)
        before raising, so nginx keeps a loadable configuration.
        """
        content = self.render_site(context)
        previous = self.runner.read_text(self.site_path, privileged=True)
        if previous == content and self.is_enabled():
            return NginxRenderResult(changed=False)

        self.runner.write_text(self.site_path, content, mode=0o644).check(
            f"Writing nginx site {self.site_path}"
        )
        self.enable()

        validation = self.test_config()
        if not validation.ok:
            if previous is None:
                self.remove()
            else:
                self.runner.write_text(self.site_path, previous, mode=0o644)
            raise ExecutionError(
                f"Nginx configuration test failed: {validation.output}",
                command=validation.command,
                exit_code=validation.exit_code,
                stdout=validation.stdout,
                stderr=validation.stderr,
            )

        reload_result = self.reload().check("Reloading nginx") if reload else None
        return NginxRenderResult(changed=True, validation=validation, reload=reload_result)

    def enable(self) -> CommandResult:
        """Symlink the site into sites-enabled."""
        return self.runner.execute_privileged(
            f"mkdir -p {shlex.quote(self.sites_enabled)} && "
            f"ln -sf {shlex.quote(self.site_path)} {shlex.quote(self.enabled_path)}"
        ).check(f"Enabling nginx site {self.site_name}")

    def is_enabled(self) -> bool:
        """Return ``True`` when the sites-enabled symlink exists."""
        return self.runner.execute(f"test -L {shlex.quote(self.enabled_path)}").ok

    def site_exists(self) -> bool:
        """Return ``True`` when the site file exists."""
        return self.runner.path_exists(self.site_path)

    def test_config(self) -> CommandResult:
        """Run ``nginx -t``."""
        return self.runner.execute_privileged(f"{self.nginx_bin} -t")

    def reload(self) -> CommandResult:
        """Reload nginx through systemd."""
        return self.runner.execute_privileged("systemctl reload nginx")

    def remove(self) -> None:
        """Remove the symlink and the site file."""
        self.runner.remove_path(self.enabled_path)
        self.runner.remove_path(self.site_path)


__all__ = ["NginxProvider", "NginxRenderResult"]
