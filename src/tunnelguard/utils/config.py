"""
TunnelGuard Configuration Module

Provides centralized configuration management with:
- Environment variable loading (TNG_ prefix)
- Type validation via Pydantic
- Documented defaults for unattended installs
- Development overrides via .env file

Environment Variable Naming Convention:
- All variables use the TNG_ prefix (e.g., TNG_INSTALL_ROOT, TNG_AUTO_INSTALL)
- List values are JSON encoded (e.g., TNG_DISCOVERY_ENDPOINTS='["https://api.ipify.org"]')

Settings only supply defaults. Per-session values are carried by
tunnelguard.schemas.provision.ProvisionConfig, which is built once by the CLI
and passed explicitly to every component.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List


class TunnelGuardSettings(BaseSettings):
    """
    TunnelGuard host settings.

    Usage:
        from tunnelguard.utils.config import get_settings

        settings = get_settings()
        layout_root = settings.INSTALL_ROOT
    """
    model_config = SettingsConfigDict(
        env_prefix='TNG_',
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore'
    )

    # ==========================================================================
    # GENERAL
    # ==========================================================================
    ENVIRONMENT: str = Field(default="development", description="Runtime environment: development, production")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level: DEBUG, INFO, WARNING, ERROR")
    AUTO_INSTALL: bool = Field(default=False, description="Unattended install with documented defaults")

    # ==========================================================================
    # PATHS
    # ==========================================================================
    INSTALL_ROOT: str = Field(default="/etc/openvpn", description="Server configuration and PKI root")
    BUNDLE_DIR: str = Field(default="/root", description="Directory receiving <peer>.ovpn bundles")
    FIREWALL_DIR: str = Field(default="/etc/iptables", description="Firewall add/remove script directory")
    SYSCTL_PATH: str = Field(default="/etc/sysctl.d/99-openvpn.conf", description="Forwarding sysctl drop-in")
    RESOLVER_CONFIG_PATH: str = Field(default="/etc/unbound/unbound.conf", description="Recursive resolver config")
    OS_RELEASE_PATH: str = Field(default="/etc/os-release", description="OS release metadata")
    ARCH_RELEASE_PATH: str = Field(default="/etc/arch-release", description="Arch Linux marker file")
    TUN_DEVICE_PATH: str = Field(default="/dev/net/tun", description="TUN device node")

    # ==========================================================================
    # PROVISIONING DEFAULTS (unattended mode)
    # ==========================================================================
    DEFAULT_PORT: int = Field(default=1194, description="Tunnel listen port")
    DEFAULT_PROTOCOL: str = Field(default="udp", description="Tunnel protocol: udp, tcp")
    DEFAULT_DNS_MODE: str = Field(default="system", description="DNS mode: system, recursive-local, external")
    DEFAULT_PEER_NAME: str = Field(default="client", description="First peer issued on install")
    TUNNEL_SUBNET: str = Field(default="10.8.0.0", description="Tunnel network address")
    TUNNEL_NETMASK: str = Field(default="255.255.255.0", description="Tunnel netmask")

    # ==========================================================================
    # PKI
    # ==========================================================================
    KEY_ALGORITHM: str = Field(default="ECDSA", description="Authority key algorithm: ECDSA, RSA")
    KEY_SIZE: int = Field(default=256, description="Curve size (256/384/521) or RSA modulus bits")
    CA_VALIDITY_DAYS: int = Field(default=3650, description="Authority certificate lifetime")
    CERT_VALIDITY_DAYS: int = Field(default=3650, description="Server/peer certificate lifetime")
    CRL_VALIDITY_DAYS: int = Field(default=3650, description="Revocation list next-update horizon")

    # ==========================================================================
    # COLLABORATORS
    # ==========================================================================
    RESOLVER_FAILURE_POLICY: str = Field(default="warn", description="Recursive resolver failure: warn, fatal")
    DISCOVERY_ENDPOINTS: List[str] = Field(
        default=["https://api.seeip.org", "https://ifconfig.me", "https://api.ipify.org"],
        description="Public IP discovery services, queried in order",
    )
    DISCOVERY_TIMEOUT_SECONDS: int = Field(default=5, description="Per-endpoint discovery timeout")


def get_settings() -> TunnelGuardSettings:
    """Load settings from the current environment."""
    return TunnelGuardSettings()
