"""Conflict guard and port allocation tests."""
from __future__ import annotations

import pytest
from conftest import FakeRunner

from addonctl.errors import ValidationError
from addonctl.guard import ConflictGuard, validate_domain, validate_name, validate_port
from addonctl.ports import PortAllocator, parse_listening_ports, port_is_bound
from addonctl.state import Instance, Registry


def _register(registry: Registry, instance_id: str, name: str, port: int, domain: str) -> None:
    registry.create(
        Instance(
            id=instance_id,
            name=name,
            config_path=f"/tmp/{instance_id}.yml",
            port=port,
            domain=domain,
        )
    )


@pytest.fixture
def guard(registry: Registry) -> ConflictGuard:
    _register(registry, "alpha", "Alpha", 7000, "alpha.example.com")
    _register(registry, "beta", "Beta", 7001, "beta.example.com")
    return ConflictGuard(registry, PortAllocator(registry, base_port=7000))


def test_guard_accepts_fresh_values(guard: ConflictGuard) -> None:
    """Unique, well-formed values pass."""
    guard.validate("Gamma", 7005, "gamma.example.com")


def test_guard_rejects_duplicate_name_case_insensitively(guard: ConflictGuard) -> None:
    """Name lookups ignore case and the error suggests an alternative."""
    with pytest.raises(ValidationError) as excinfo:
        guard.validate("ALPHA", 7005, "gamma.example.com")

    assert excinfo.value.field == "name"
    assert "ALPHA 2" in (excinfo.value.suggestion or "")


def test_guard_suggests_next_free_port(guard: ConflictGuard) -> None:
    """A port collision suggests the next unallocated port."""
    with pytest.raises(ValidationError) as excinfo:
        guard.validate("Gamma", 7000, "gamma.example.com")

    assert excinfo.value.field == "port"
    assert "7002" in (excinfo.value.suggestion or "")
    assert "Suggestion:" in str(excinfo.value)


def test_guard_rejects_duplicate_domain_with_subdomain_hint(guard: ConflictGuard) -> None:
    """Domains must be unique and the hint proposes a subdomain."""
    with pytest.raises(ValidationError) as excinfo:
        guard.validate("Gamma", 7005, "Beta.Example.com")

    assert excinfo.value.field == "domain"
    assert "gamma.beta.example.com" in (excinfo.value.suggestion or "")


def test_guard_exclude_id_skips_own_entry(guard: ConflictGuard) -> None:
    """Re-validating an existing instance ignores its own registration."""
    guard.validate("Alpha", 7000, "alpha.example.com", exclude_id="alpha")


def test_guard_checks_name_before_port(guard: ConflictGuard) -> None:
    """The first failing field is reported."""
    with pytest.raises(ValidationError) as excinfo:
        guard.validate("Beta", 7000, "alpha.example.com")

    assert excinfo.value.field == "name"


@pytest.mark.parametrize(
    "name",
    ["", "   ", "x" * 51, "bad/name", "semi;colon"],
)
def test_validate_name_rejects_bad_input(name: str) -> None:
    """Names must be non-empty, short and use a restricted alphabet."""
    with pytest.raises(ValidationError) as excinfo:
        validate_name(name)

    assert excinfo.value.field == "name"


def test_validate_name_trims_whitespace() -> None:
    """Accepted names are returned trimmed."""
    assert validate_name("  My Addon_1 ") == "My Addon_1"


@pytest.mark.parametrize("port", [0, 65536, -1, True])
def test_validate_port_rejects_out_of_range(port: int) -> None:
    """Ports must be integers between 1 and 65535."""
    with pytest.raises(ValidationError):
        validate_port(port)


@pytest.mark.parametrize(
    "domain",
    ["Addon.Example.COM", "localhost", "192.168.1.10", "my-addon.duckdns.org"],
)
def test_validate_domain_accepts_hosts(domain: str) -> None:
    """Hostnames, localhost and IPv4 addresses are accepted and lowercased."""
    assert validate_domain(domain) == domain.lower()


@pytest.mark.parametrize("domain", ["", "no_underscores.com", "-bad.example.com", "example"])
def test_validate_domain_rejects_malformed(domain: str) -> None:
    """Malformed domains are rejected."""
    with pytest.raises(ValidationError):
        validate_domain(domain)


def test_detect_orphaned_services(guard: ConflictGuard) -> None:
    """Host units with our prefix that the registry does not know are reported."""
    runner = FakeRunner()
    runner.respond(
        "systemctl list-units",
        "addonctl-alpha.service loaded active running addonctl alpha\n"
        "addonctl-ghost.service loaded failed failed addonctl ghost\n"
        "ssh.service loaded active running OpenSSH\n",
    )

    assert guard.detect_orphaned_services(runner) == ["addonctl-ghost"]


def test_detect_orphaned_services_tolerates_listing_failure(guard: ConflictGuard) -> None:
    """A failing listing yields no orphans."""
    runner = FakeRunner()
    runner.fail("systemctl list-units")

    assert guard.detect_orphaned_services(runner) == []


def test_next_available_skips_allocated_ports(guard: ConflictGuard) -> None:
    """The allocator walks upward from the base past registered ports."""
    allocator = guard.ports

    assert allocator.next_available() == 7002
    assert allocator.next_available(7001, exclude_id="beta") == 7001


def test_next_available_gives_up(registry: Registry) -> None:
    """Exhausting the attempts raises ValidationError."""
    _register(registry, "alpha", "Alpha", 65535, "alpha.example.com")
    allocator = PortAllocator(registry, base_port=65535)

    with pytest.raises(ValidationError, match="No free port"):
        allocator.next_available(max_attempts=3)


def test_allocator_rejects_invalid_base(registry: Registry) -> None:
    """The base port is validated on construction."""
    with pytest.raises(ValidationError):
        PortAllocator(registry, base_port=0)


def test_parse_listening_ports_handles_ss_and_netstat() -> None:
    """Both ``ss`` and ``netstat`` layouts are understood."""
    ss_output = (
        "State  Recv-Q Send-Q Local Address:Port Peer Address:Port\n"
        "LISTEN 0      511    0.0.0.0:7000      0.0.0.0:*\n"
        "LISTEN 0      128    [::]:22           [::]:*\n"
    )
    netstat_output = (
        "Proto Recv-Q Send-Q Local Address           Foreign Address         State\n"
        "tcp        0      0 127.0.0.1:8080          0.0.0.0:*               LISTEN\n"
    )

    assert parse_listening_ports(ss_output) == {7000, 22}
    assert parse_listening_ports(netstat_output) == {8080}


def test_port_is_bound_reports_binding() -> None:
    """The listing reports whether the port is bound on the target."""
    runner = FakeRunner()
    runner.listen(7000)

    assert port_is_bound(runner, 7000)[0] is True
    assert port_is_bound(runner, 7001)[0] is False
