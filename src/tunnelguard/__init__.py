"""
TunnelGuard: Tunnel Server Provisioning and Peer Credential Issuance

Provisions an OpenVPN-style server identity and issues client credentials:
- Platform detection and per-family package/service verbs
- Single-authority PKI with peer issuance, revocation and CRL publishing
- Deterministic daemon, firewall and sysctl artifact rendering
- Self-contained peer bundles (.ovpn)
- An idempotent, lock-guarded provisioning state machine
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
