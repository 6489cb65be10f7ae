"""
TunnelGuard Collaborators

Thin host adapters used by the orchestrator: package installation, service
management, recursive resolver, public endpoint discovery, host probes and
the forwarding/firewall appliers.
"""

from .appliers import FirewallApplier, SysctlApplier
from .discovery import PublicEndpointDiscovery, is_private_address, resolve_endpoint
from .host import HostInspector
from .packages import PackageInstaller
from .resolver import RecursiveResolver
from .runner import CommandResult, CommandRunner
from .services import ServiceManager

__all__ = [
    "CommandResult",
    "CommandRunner",
    "FirewallApplier",
    "HostInspector",
    "PackageInstaller",
    "PublicEndpointDiscovery",
    "RecursiveResolver",
    "ServiceManager",
    "SysctlApplier",
    "is_private_address",
    "resolve_endpoint",
]
