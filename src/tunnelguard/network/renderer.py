"""
Network Artifact Renderer

Pure rendering of the server-side artifacts that depend on the resolved
identity and network parameters:
- daemon configuration (typed directives)
- firewall add/remove scripts (typed rules; remove is the exact inverse)
- IP forwarding sysctl

Nothing here touches the file system or the host. Rendering is
deterministic: the same ProvisionConfig, server identity and group always
produce byte-identical artifacts.
"""

import shlex
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import logging

from ..identity.layout import CA_CERT_NAME, CRL_NAME, SERVER_CERT_NAME, SERVER_KEY_NAME
from ..identity.store import ServerIdentity
from ..schemas.provision import DnsMode, ProvisionConfig, TunnelProtocol

logger = logging.getLogger(__name__)

TUNNEL_DEVICE = "tun0"
CIPHER = "AES-128-GCM"
TLS_VERSION_MIN = "1.2"
EXTERNAL_RESOLVERS = ("1.1.1.1", "1.0.0.1")

# Written in place of the NAT interface when none was detected. The firewall
# scripts refuse to run until the operator substitutes a real interface.
INTERFACE_PLACEHOLDER = "__WAN_INTERFACE__"

ADD = "-A"
DELETE = "-D"


# === Daemon configuration ===

@dataclass(frozen=True)
class Directive:
    name: str
    args: Tuple[str, ...] = ()

    def render(self) -> str:
        return " ".join((self.name,) + self.args)


@dataclass(frozen=True)
class DaemonConfig:
    directives: Tuple[Directive, ...]

    def get(self, name: str) -> List[Directive]:
        return [d for d in self.directives if d.name == name]

    def value(self, name: str) -> Optional[str]:
        """Joined arguments of the first directive with this name."""
        found = self.get(name)
        return " ".join(found[0].args) if found else None

    def render(self) -> str:
        return "\n".join(d.render() for d in self.directives) + "\n"


# === Firewall ===

@dataclass(frozen=True)
class FirewallRule:
    chain: str
    match: Tuple[str, ...]
    target: str = "ACCEPT"
    table: Optional[str] = None

    def command(self, action: str) -> Tuple[str, ...]:
        argv: Tuple[str, ...] = ("iptables",)
        if self.table:
            argv += ("-t", self.table)
        return argv + (action, self.chain) + self.match + ("-j", self.target)


@dataclass(frozen=True)
class FirewallScript:
    action: str
    rules: Tuple[FirewallRule, ...]
    interface: str

    def commands(self) -> List[Tuple[str, ...]]:
        return [rule.command(self.action) for rule in self.rules]

    def render(self) -> str:
        lines = ["#!/bin/sh"]
        # Removal continues past rules that are already gone
        if self.action == ADD:
            lines.append("set -e")
        if self.interface == INTERFACE_PLACEHOLDER:
            lines += [
                f"# OPERATOR ACTION REQUIRED: replace {INTERFACE_PLACEHOLDER} with the public",
                "# network interface (e.g. eth0) before applying these rules.",
                f'case "{self.interface}" in',
                '    __*__) echo "public interface not configured in $0" >&2; exit 1 ;;',
                "esac",
            ]
        lines += [" ".join(shlex.quote(part) for part in cmd) for cmd in self.commands()]
        return "\n".join(lines) + "\n"


def parse_firewall_script(text: str) -> List[Tuple[str, ...]]:
    """Extract the iptables commands of a rendered script, in order."""
    commands = []
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("iptables "):
            commands.append(tuple(shlex.split(line)))
    return commands


# === Sysctl ===

@dataclass(frozen=True)
class SysctlSetting:
    key: str
    value: str

    def render(self) -> str:
        return f"{self.key}={self.value}\n"


FORWARDING_SYSCTL = SysctlSetting("net.ipv4.ip_forward", "1")


# === Artifact set ===

@dataclass(frozen=True)
class NetworkArtifactSet:
    daemon: DaemonConfig
    firewall_add: FirewallScript
    firewall_remove: FirewallScript
    forwarding: SysctlSetting
    requires_operator_completion: bool = False
    warnings: Tuple[str, ...] = field(default=())

    @property
    def daemon_config(self) -> str:
        return self.daemon.render()

    @property
    def firewall_add_script(self) -> str:
        return self.firewall_add.render()

    @property
    def firewall_remove_script(self) -> str:
        return self.firewall_remove.render()

    @property
    def forwarding_sysctl(self) -> str:
        return self.forwarding.render()


def dns_resolvers(config: ProvisionConfig) -> Tuple[Tuple[str, ...], Optional[str]]:
    """Resolvers pushed to peers for the configured DNS mode, plus an optional warning."""
    if config.dns_mode == DnsMode.RECURSIVE_LOCAL:
        return (config.gateway_address,), None
    if config.dns_mode == DnsMode.SYSTEM and config.system_resolvers:
        return tuple(config.system_resolvers), None
    if config.dns_mode == DnsMode.SYSTEM:
        return EXTERNAL_RESOLVERS, "No system resolvers found; pushing external resolvers"
    return EXTERNAL_RESOLVERS, None


def render_daemon_config(
    config: ProvisionConfig,
    resolvers: Tuple[str, ...],
    daemon_group: str = "nobody",
    server: Optional[ServerIdentity] = None,
) -> DaemonConfig:
    d = Directive
    directives = [
        d("port", (str(config.port),)),
        d("proto", (config.protocol.value,)),
        d("dev", ("tun",)),
        d("user", ("nobody",)),
        d("group", (daemon_group,)),
        d("persist-key"),
        d("persist-tun"),
        d("keepalive", ("10", "120")),
        d("topology", ("subnet",)),
        d("server", (config.subnet, config.netmask)),
        d("ifconfig-pool-persist", ("ipp.txt",)),
        d("push", ('"redirect-gateway def1 bypass-dhcp"',)),
    ]
    directives += [d("push", (f'"dhcp-option DNS {r}"',)) for r in resolvers]
    directives += [
        d("ca", (CA_CERT_NAME,)),
        d("cert", (SERVER_CERT_NAME,)),
        d("key", (SERVER_KEY_NAME,)),
        d("dh", ("none",)),
        d("crl-verify", (CRL_NAME,)),
        d("cipher", (CIPHER,)),
        d("data-ciphers", (CIPHER,)),
        d("tls-server"),
        d("tls-version-min", (TLS_VERSION_MIN,)),
        d("remote-cert-tls", ("client",)),
        d("verb", ("3",)),
    ]
    if config.protocol == TunnelProtocol.UDP:
        directives.append(d("explicit-exit-notify", ("1",)))
    if server is not None:
        directives.insert(0, d("#", ("server-serial", server.serial)))
    return DaemonConfig(tuple(directives))


def firewall_rules(config: ProvisionConfig, interface: str) -> Tuple[FirewallRule, ...]:
    """Rules in order of addition."""
    return (
        FirewallRule("POSTROUTING", ("-s", config.subnet_cidr, "-o", interface), "MASQUERADE", table="nat"),
        FirewallRule("INPUT", ("-i", TUNNEL_DEVICE)),
        FirewallRule("FORWARD", ("-i", interface, "-o", TUNNEL_DEVICE)),
        FirewallRule("FORWARD", ("-i", TUNNEL_DEVICE, "-o", interface)),
        FirewallRule("INPUT", ("-i", interface, "-p", config.protocol.value, "--dport", str(config.port))),
    )


def render(
    config: ProvisionConfig,
    server: Optional[ServerIdentity] = None,
    daemon_group: str = "nobody",
) -> NetworkArtifactSet:
    """
    Render the full artifact set.

    Args:
        config: Session configuration (port, protocol, interface, DNS mode, subnet)
        server: Server identity the daemon config is issued for
        daemon_group: Unprivileged group of the platform

    Returns:
        NetworkArtifactSet; requires_operator_completion is set when the
        NAT interface is unknown and the placeholder was rendered
    """
    warnings = []
    interface = config.interface
    if interface is None:
        interface = INTERFACE_PLACEHOLDER
        warnings.append(
            f"No public interface detected; firewall scripts contain {INTERFACE_PLACEHOLDER} "
            "and must be completed by the operator"
        )

    resolvers, dns_warning = dns_resolvers(config)
    if dns_warning:
        warnings.append(dns_warning)

    rules = firewall_rules(config, interface)
    artifacts = NetworkArtifactSet(
        daemon=render_daemon_config(config, resolvers, daemon_group, server),
        firewall_add=FirewallScript(ADD, rules, interface),
        firewall_remove=FirewallScript(DELETE, tuple(reversed(rules)), interface),
        forwarding=FORWARDING_SYSCTL,
        requires_operator_completion=config.interface is None,
        warnings=tuple(warnings),
    )
    for warning in warnings:
        logger.warning(warning)
    return artifacts
