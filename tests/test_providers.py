"""Host provider tests against the scripted runner."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeClock, FakeRunner

from addonctl.errors import ExecutionError, ValidationError
from addonctl.locator import PayloadSource
from addonctl.providers import (
    DynamicDnsProvider,
    FirewallProvider,
    IntrusionPreventionProvider,
    NginxProvider,
    PayloadProvider,
    SystemdProvider,
)
from addonctl.providers.dyndns import duckdns_subdomain
from addonctl.providers.payload import parse_df_available_mb
from addonctl.providers.systemd import ServiceState, format_rss, parse_status_details
from addonctl.templates import TemplateEngine

UNIT_CONTEXT = {
    "instance_name": "Alpha",
    "service_user": "root",
    "working_directory": "/opt/addonctl/alpha",
    "exec_start": "/usr/bin/node /opt/addonctl/alpha/server.js",
    "environment": ["NODE_ENV=production", "PORT=7000"],
}
SITE_CONTEXT = {
    "instance_name": "Alpha",
    "domain": "alpha.example.com",
    "port": 7000,
    "zone": "alpha",
    "rate_limiting": True,
}
STATUS_OUTPUT = """\
● addonctl-alpha.service - Addon server (Alpha)
     Loaded: loaded (/etc/systemd/system/addonctl-alpha.service; enabled)
     Active: active (running) since Mon 2024-01-01 10:00:00 UTC; 2h 5min ago
   Main PID: 4242 (node)
        CPU: 1.503s
"""


def _systemd(runner: FakeRunner, templates: TemplateEngine) -> SystemdProvider:
    return SystemdProvider(runner, templates, "addonctl-alpha")


def test_render_unit_includes_environment(templates: TemplateEngine) -> None:
    """The unit carries the environment lines and the unit name."""
    content = _systemd(FakeRunner(), templates).render_unit(UNIT_CONTEXT)

    assert 'Environment="PORT=7000"' in content
    assert "ExecStart=/usr/bin/node /opt/addonctl/alpha/server.js" in content
    assert "SyslogIdentifier=addonctl-alpha" in content
    assert "RestartSec=10" in content


def test_install_unit_is_idempotent(templates: TemplateEngine) -> None:
    """Unchanged units are not rewritten and do not trigger a reload."""
    runner = FakeRunner()
    provider = _systemd(runner, templates)

    assert provider.install_unit(UNIT_CONTEXT) is True
    assert runner.count("daemon-reload") == 1
    assert provider.install_unit(UNIT_CONTEXT) is False
    assert runner.count("daemon-reload") == 1
    assert provider.unit_exists()
    assert provider.unit_path == "/etc/systemd/system/addonctl-alpha.service"


def test_service_controls_raise_on_failure(templates: TemplateEngine) -> None:
    """Control verbs raise ExecutionError when systemctl fails."""
    runner = FakeRunner()
    runner.fail("systemctl start", stderr="Job failed")
    provider = _systemd(runner, templates)

    provider.enable()
    with pytest.raises(ExecutionError, match="Starting addonctl-alpha.service"):
        provider.start()
    assert "systemctl enable addonctl-alpha.service" in runner.privileged


def test_status_collects_details(templates: TemplateEngine) -> None:
    """Status combines state, enablement, pid, cpu, uptime and memory."""
    runner = FakeRunner().healthy()
    runner.respond("systemctl status", STATUS_OUTPUT)
    runner.respond("ps -p 4242", "153600\n")

    info = _systemd(runner, templates).status()

    assert info.is_active and info.enabled
    assert info.pid == 4242
    assert info.cpu == "1.503s"
    assert info.uptime == "2h 5min"
    assert info.memory == "150.0MB"
    assert info.to_dict()["state"] == "active"


def test_status_without_pid_skips_memory(templates: TemplateEngine) -> None:
    """An inactive service reports no process details."""
    runner = FakeRunner()
    runner.respond("systemctl is-active", "inactive\n", exit_code=3)

    info = _systemd(runner, templates).status()

    assert info.state is ServiceState.INACTIVE
    assert info.pid is None and info.memory is None
    assert not runner.ran("ps -p")


def test_wait_active_polls_until_deadline(templates: TemplateEngine, clock: FakeClock) -> None:
    """Polling stops at the deadline when the unit never comes up."""
    runner = FakeRunner()
    runner.respond("systemctl is-active", "activating\n")
    provider = SystemdProvider(
        runner, templates, "addonctl-alpha", sleep=clock.sleep, clock=clock
    )

    assert provider.wait_active(3.0, poll_interval=1.0) is False
    assert clock.sleeps == [1.0, 1.0, 1.0]

    runner.respond("systemctl is-active", "active\n")
    assert provider.wait_active(3.0) is True


def test_logs_tail_and_follow(templates: TemplateEngine) -> None:
    """Tail returns text; follow streams lines."""
    runner = FakeRunner()
    runner.respond("journalctl", "line one\nline two\n")
    provider = _systemd(runner, templates)

    assert provider.logs(20) == "line one\nline two\n"
    assert "-n 20 --no-pager" in runner.commands[-1]
    assert list(provider.logs(5, follow=True)) == ["line one", "line two"]
    assert runner.commands[-1].endswith("--follow")


def test_remove_unit(templates: TemplateEngine) -> None:
    """Removal stops, disables and deletes the unit."""
    runner = FakeRunner()
    provider = _systemd(runner, templates)
    provider.install_unit(UNIT_CONTEXT)

    provider.remove()

    assert not provider.unit_exists()
    assert runner.ran("systemctl stop addonctl-alpha.service")
    assert runner.ran("systemctl disable addonctl-alpha.service")


@pytest.mark.parametrize(
    ("output", "state"),
    [
        ("active\n", ServiceState.ACTIVE),
        ("failed", ServiceState.FAILED),
        ("reloading", ServiceState.ACTIVATING),
        ("", ServiceState.UNKNOWN),
    ],
)
def test_service_state_parse(output: str, state: ServiceState) -> None:
    """``is-active`` output maps onto coarse states."""
    assert ServiceState.parse(output) is state


def test_status_helpers() -> None:
    """RSS and status parsing tolerate odd input."""
    assert format_rss("2048") == "2.0MB"
    assert format_rss("n/a") is None
    assert parse_status_details("nothing useful") == {}


def test_nginx_configure_writes_and_enables(templates: TemplateEngine) -> None:
    """The site is written, linked, tested and nginx reloaded."""
    runner = FakeRunner()
    provider = NginxProvider(runner, templates, "addonctl-alpha")

    result = provider.configure(SITE_CONTEXT)

    site = runner.files["/etc/nginx/sites-available/addonctl-alpha"]
    assert result.changed
    assert site.index("limit_req_zone") < site.index("server {")
    assert "server_name alpha.example.com;" in site
    assert "proxy_pass http://127.0.0.1:7000;" in site
    assert "limit_req zone=addonctl_alpha" in site
    assert runner.links["/etc/nginx/sites-enabled/addonctl-alpha"] == provider.site_path
    assert runner.ran("nginx -t")
    assert runner.ran("systemctl reload nginx")

    assert provider.configure(SITE_CONTEXT).changed is False


def test_nginx_rate_limit_can_be_disabled(templates: TemplateEngine) -> None:
    """Without rate limiting no zone is declared."""
    provider = NginxProvider(FakeRunner(), templates, "addonctl-alpha")

    site = provider.render_site({**SITE_CONTEXT, "rate_limiting": False})

    assert "limit_req" not in site


def test_nginx_failed_test_removes_new_site(templates: TemplateEngine) -> None:
    """A failing ``nginx -t`` on a new site leaves nothing behind."""
    runner = FakeRunner()
    runner.fail("nginx -t", stderr="emerg: unexpected }")
    provider = NginxProvider(runner, templates, "addonctl-alpha")

    with pytest.raises(ExecutionError, match="unexpected"):
        provider.configure(SITE_CONTEXT)

    assert not provider.site_exists()
    assert provider.enabled_path not in runner.links
    assert not runner.ran("systemctl reload nginx")


def test_nginx_failed_test_restores_previous_site(templates: TemplateEngine) -> None:
    """A failing ``nginx -t`` on an existing site restores the old file."""
    runner = FakeRunner()
    provider = NginxProvider(runner, templates, "addonctl-alpha")
    runner.files[provider.site_path] = "# previous\n"
    runner.fail("nginx -t")

    with pytest.raises(ExecutionError):
        provider.configure(SITE_CONTEXT)

    assert runner.files[provider.site_path] == "# previous\n"


def test_firewall_rules_and_enable() -> None:
    """SSH, HTTP(S) and the instance port are allowed before ufw is enabled."""
    runner = FakeRunner()
    provider = FirewallProvider(runner)

    assert provider.rules_for(7000, ssh_port=2222) == [
        "22/tcp",
        "2222/tcp",
        "80/tcp",
        "443/tcp",
        "7000/tcp",
    ]
    provider.configure(7000)

    assert runner.privileged[-1] == "ufw --force enable"
    assert "ufw allow 7000/tcp" in runner.privileged
    provider.remove_port(7000)
    assert runner.privileged[-1] == "ufw delete allow 7000/tcp"


def test_firewall_failure_raises() -> None:
    """A rejected rule surfaces as ExecutionError."""
    runner = FakeRunner()
    runner.fail("ufw allow 80/tcp", stderr="ERROR: problem running")

    with pytest.raises(ExecutionError, match="80/tcp"):
        FirewallProvider(runner).configure(7000)


def test_intrusion_prevention_writes_jail(templates: TemplateEngine) -> None:
    """The sshd jail uses the SSH port and fail2ban is restarted."""
    runner = FakeRunner()

    IntrusionPreventionProvider(runner, templates).configure(ssh_port=2222)

    jail = runner.files["/etc/fail2ban/jail.d/sshd.conf"]
    assert "port = 2222" in jail
    assert "maxretry = 5" in jail
    assert runner.ran("systemctl restart fail2ban")
    assert runner.ran("systemctl enable fail2ban")


def test_duckdns_subdomain() -> None:
    """Only ``<name>.duckdns.org`` names are accepted."""
    assert duckdns_subdomain("MyAddon.duckdns.org") == "myaddon"
    with pytest.raises(ValidationError):
        duckdns_subdomain("addon.example.com")
    with pytest.raises(ValidationError):
        duckdns_subdomain(".duckdns.org")


def test_dynamic_dns_installs_script_and_cron(templates: TemplateEngine) -> None:
    """The refresh script is installed, run once and scheduled."""
    runner = FakeRunner()
    provider = DynamicDnsProvider(runner, templates)

    provider.configure("myaddon.duckdns.org", "tok-123")

    script = runner.files["/opt/duckdns/duck.sh"]
    assert "domains=myaddon&token=tok-123" in script
    assert "/opt/duckdns/duck.sh" in runner.privileged
    assert runner.ran("crontab -")
    assert provider.cron_line().startswith("*/5 * * * * /opt/duckdns/duck.sh")


def test_dynamic_dns_requires_token(templates: TemplateEngine) -> None:
    """A missing token is a validation error before anything is written."""
    runner = FakeRunner()

    with pytest.raises(ValidationError):
        DynamicDnsProvider(runner, templates).configure("myaddon.duckdns.org", "")

    assert runner.commands == []


def test_payload_deploy_and_version(payload_dir: Path) -> None:
    """The payload is copied to the target and its version read back."""
    runner = FakeRunner()
    provider = PayloadProvider(runner, "/opt/addonctl/alpha")

    provider.deploy(PayloadSource(payload_dir, "test"))

    assert provider.exists() and provider.has_entry_point()
    assert provider.deployed_version() == "1.0.0"
    assert provider.exec_start == "/usr/bin/node /opt/addonctl/alpha/server.js"
    provider.install_dependencies()
    assert runner.ran("cd /opt/addonctl/alpha && npm install --production")


def test_payload_snapshot_and_restore(payload_dir: Path) -> None:
    """The snapshot moves the payload aside and restore swaps it back."""
    runner = FakeRunner()
    provider = PayloadProvider(runner, "/opt/addonctl/alpha")
    provider.deploy(PayloadSource(payload_dir, "test"))

    provider.snapshot()
    assert provider.has_snapshot() and not provider.exists()
    assert provider.deployed_version(provider.snapshot_dir) == "1.0.0"

    provider.restore_snapshot()
    assert provider.exists() and not provider.has_snapshot()
    with pytest.raises(ExecutionError, match="No snapshot"):
        provider.restore_snapshot()


def test_payload_version_unreadable() -> None:
    """Missing or malformed descriptors give no version."""
    runner = FakeRunner()
    provider = PayloadProvider(runner, "/opt/addonctl/alpha")

    assert provider.deployed_version() is None
    runner.files[provider.descriptor_path] = "{broken"
    assert provider.deployed_version() is None


def test_available_disk(fake: FakeRunner) -> None:
    """Free space is read from ``df -Pk``."""
    provider = PayloadProvider(fake, "/opt/addonctl/alpha")

    assert provider.available_disk_mb() == 95000


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("Filesystem 1024-blocks Used Available Capacity Mounted\n/dev/x 100 50 2048 50% /\n", 2),
        ("header only\n", None),
        ("Filesystem 1024-blocks Used Available\n/dev/x 100 50 lots\n", None),
    ],
)
def test_parse_df_available_mb(output: str, expected: int | None) -> None:
    """The fourth column of the last line is kilobytes available."""
    assert parse_df_available_mb(output) == expected
