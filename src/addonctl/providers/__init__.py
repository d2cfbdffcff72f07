"""Target host providers used by the orchestrators."""
from __future__ import annotations

from .dyndns import DynamicDnsProvider
from .firewall import FirewallProvider
from .intrusion import IntrusionPreventionProvider
from .nginx import NginxProvider, NginxRenderResult
from .payload import PayloadProvider
from .prerequisites import PrerequisiteCheck, PrerequisiteProvider
from .systemd import ServiceInfo, ServiceState, SystemdProvider

__all__ = [
    "DynamicDnsProvider",
    "FirewallProvider",
    "IntrusionPreventionProvider",
    "NginxProvider",
    "NginxRenderResult",
    "PayloadProvider",
    "PrerequisiteCheck",
    "PrerequisiteProvider",
    "ServiceInfo",
    "ServiceState",
    "SystemdProvider",
]
