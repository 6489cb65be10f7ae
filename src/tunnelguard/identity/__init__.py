"""
TunnelGuard Identity Module

Single-authority PKI for one tunnel server:
- Certificate authority and server identity (created exactly once)
- Peer issuance with unique names and interrupted-issuance recovery
- Revocation with CRL regeneration and publishing
- Hash-chained audit log of every identity operation
"""

from .audit import AuditAction, AuditLog
from .layout import PkiLayout
from .store import (
    CertificateAuthority,
    IdentityStore,
    PeerIdentity,
    PeerRecord,
    PeerStatus,
    ServerIdentity,
    validate_peer_name,
)

__all__ = [
    "AuditAction",
    "AuditLog",
    "PkiLayout",
    "CertificateAuthority",
    "IdentityStore",
    "PeerIdentity",
    "PeerRecord",
    "PeerStatus",
    "ServerIdentity",
    "validate_peer_name",
]
