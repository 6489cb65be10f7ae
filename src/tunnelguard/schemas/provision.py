"""
Provisioning Configuration Schemas

Defines the explicit configuration struct threaded through every
provisioning component. Nothing below the CLI reads environment variables
or other process state; it receives a ProvisionConfig instead.
"""

import ipaddress
import re
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..utils.config import TunnelGuardSettings


# === Enumerations ===

class TunnelProtocol(str, Enum):
    UDP = "udp"
    TCP = "tcp"


class DnsMode(str, Enum):
    SYSTEM = "system"
    RECURSIVE_LOCAL = "recursive-local"
    EXTERNAL = "external"


class KeyAlgorithm(str, Enum):
    RSA = "RSA"
    ECDSA = "ECDSA"


class ResolverFailurePolicy(str, Enum):
    WARN = "warn"
    FATAL = "fatal"


EC_KEY_SIZES = (256, 384, 521)
MIN_RSA_KEY_SIZE = 2048

_INTERFACE_RE = re.compile(r"^[A-Za-z0-9_.:@-]{1,15}$")


# === Key Specification ===

class KeySpec(BaseModel):
    """Key algorithm and size fixed at authority creation and inherited by every leaf."""
    model_config = ConfigDict(frozen=True)

    algorithm: KeyAlgorithm = KeyAlgorithm.ECDSA
    size: int = 256

    @model_validator(mode="after")
    def _check_size(self) -> "KeySpec":
        if self.algorithm == KeyAlgorithm.ECDSA and self.size not in EC_KEY_SIZES:
            raise ValueError(f"ECDSA key size must be one of {EC_KEY_SIZES}")
        if self.algorithm == KeyAlgorithm.RSA and self.size < MIN_RSA_KEY_SIZE:
            raise ValueError(f"RSA key size must be at least {MIN_RSA_KEY_SIZE}")
        return self


# === Session Configuration ===

class ProvisionConfig(BaseModel):
    """
    Per-session provisioning configuration.

    Built once (from prompts or unattended defaults) and passed to the
    renderer, the identity store and the orchestrator.
    """
    model_config = ConfigDict(frozen=True)

    endpoint: str = Field(min_length=1, description="Public address or hostname peers connect to")
    port: int = Field(default=1194, ge=1, le=65535)
    protocol: TunnelProtocol = TunnelProtocol.UDP
    dns_mode: DnsMode = DnsMode.SYSTEM
    interface: Optional[str] = Field(default=None, description="Public-facing interface used for NAT")

    subnet: str = "10.8.0.0"
    netmask: str = "255.255.255.0"
    system_resolvers: List[str] = Field(default_factory=list)

    key_spec: KeySpec = Field(default_factory=KeySpec)
    ca_validity_days: int = Field(default=3650, ge=1)
    cert_validity_days: int = Field(default=3650, ge=1)
    crl_validity_days: int = Field(default=3650, ge=1)

    resolver_failure_policy: ResolverFailurePolicy = ResolverFailurePolicy.WARN

    @field_validator("interface")
    @classmethod
    def _check_interface(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        if not _INTERFACE_RE.match(value):
            raise ValueError(f"invalid interface name {value!r}")
        return value

    @field_validator("system_resolvers")
    @classmethod
    def _check_resolvers(cls, value: List[str]) -> List[str]:
        for resolver in value:
            ipaddress.ip_address(resolver)
        return value

    @model_validator(mode="after")
    def _check_network(self) -> "ProvisionConfig":
        ipaddress.IPv4Network(f"{self.subnet}/{self.netmask}", strict=True)
        return self

    @property
    def network(self) -> ipaddress.IPv4Network:
        return ipaddress.IPv4Network(f"{self.subnet}/{self.netmask}")

    @property
    def subnet_cidr(self) -> str:
        return str(self.network)

    @property
    def gateway_address(self) -> str:
        """First host address of the tunnel subnet; the server side of the tunnel."""
        return str(next(self.network.hosts()))

    @classmethod
    def from_settings(cls, settings: TunnelGuardSettings, **overrides) -> "ProvisionConfig":
        """Build a config from host settings, letting explicit values win."""
        values = {
            "port": settings.DEFAULT_PORT,
            "protocol": settings.DEFAULT_PROTOCOL,
            "dns_mode": settings.DEFAULT_DNS_MODE,
            "subnet": settings.TUNNEL_SUBNET,
            "netmask": settings.TUNNEL_NETMASK,
            "key_spec": KeySpec(algorithm=settings.KEY_ALGORITHM, size=settings.KEY_SIZE),
            "ca_validity_days": settings.CA_VALIDITY_DAYS,
            "cert_validity_days": settings.CERT_VALIDITY_DAYS,
            "crl_validity_days": settings.CRL_VALIDITY_DAYS,
            "resolver_failure_policy": settings.RESOLVER_FAILURE_POLICY,
        }
        values.update(overrides)
        return cls(**values)
