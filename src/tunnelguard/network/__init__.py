"""
TunnelGuard Network Module

Deterministic rendering of the daemon configuration, firewall scripts and
forwarding sysctl for a provisioned server.
"""

from .renderer import (
    INTERFACE_PLACEHOLDER,
    DaemonConfig,
    FirewallRule,
    FirewallScript,
    NetworkArtifactSet,
    parse_firewall_script,
    render,
)

__all__ = [
    "INTERFACE_PLACEHOLDER",
    "DaemonConfig",
    "FirewallRule",
    "FirewallScript",
    "NetworkArtifactSet",
    "parse_firewall_script",
    "render",
]
