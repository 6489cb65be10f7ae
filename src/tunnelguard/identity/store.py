"""
Identity Store - Host PKI

Owns the single certificate authority of an install, the server identity,
per-peer certificates and the revocation list. Backed by the directory
layout in tunnelguard.identity.layout.

Invariants enforced here:
- The authority exists iff the server identity exists. An authority is only
  created while no server marker exists; a marker without authority material
  is an IdentityConflictError, never a silent re-initialization.
- Peer names are unique within the authority (revoked names stay taken).
- Every artifact is written atomically; the server marker and the peer
  index entry are the commit points of their operations.

Callers are expected to hold the provisioning lock (see
tunnelguard.utils.files.ExclusiveLock) around mutating operations.
"""

import json
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from cryptography import x509

import logging

from ..errors import (
    DuplicatePeerError,
    IdentityConflictError,
    InvalidNameError,
    UnknownPeerError,
)
from ..schemas.provision import KeySpec, ProvisionConfig
from ..utils.files import atomic_write, write_private
from . import keys
from .audit import AuditAction, AuditLog
from .layout import (
    CA_CERT_NAME,
    CRL_NAME,
    RESERVED_NAMES,
    SERVER_CERT_NAME,
    SERVER_COMMON_NAME,
    SERVER_KEY_NAME,
    PkiLayout,
)

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class PeerStatus(str, Enum):
    VALID = "valid"
    REVOKED = "revoked"


@dataclass
class PeerRecord:
    """Index entry for an issued peer."""
    name: str
    serial: str
    status: PeerStatus
    issued_at: str
    revoked_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PeerRecord":
        return cls(
            name=data["name"],
            serial=data["serial"],
            status=PeerStatus(data["status"]),
            issued_at=data["issued_at"],
            revoked_at=data.get("revoked_at"),
        )


@dataclass
class CertificateAuthority:
    """The host's single signing identity."""
    certificate: x509.Certificate
    private_key: Any
    key_spec: KeySpec

    @property
    def fingerprint(self) -> str:
        return keys.fingerprint(self.certificate)

    @property
    def certificate_pem(self) -> str:
        return keys.certificate_pem(self.certificate).decode()


@dataclass
class ServerIdentity:
    """The tunnel daemon's certificate/key, signed by the authority."""
    certificate: x509.Certificate
    private_key: Any
    authority_fingerprint: str

    @property
    def serial(self) -> str:
        return keys.serial_hex(self.certificate)


@dataclass
class PeerIdentity:
    """A peer's issued certificate/key pair."""
    name: str
    certificate: x509.Certificate
    private_key: Any

    @property
    def serial(self) -> str:
        return keys.serial_hex(self.certificate)

    @property
    def certificate_pem(self) -> str:
        return keys.certificate_pem(self.certificate).decode()

    @property
    def private_key_pem(self) -> str:
        return keys.private_key_pem(self.private_key).decode()


def validate_peer_name(name: str) -> str:
    """
    Check a peer name against the naming pattern.

    Raises:
        InvalidNameError: on pattern mismatch or a reserved name
    """
    if not isinstance(name, str) or not NAME_PATTERN.fullmatch(name):
        raise InvalidNameError(str(name), NAME_PATTERN.pattern)
    if name in RESERVED_NAMES:
        raise InvalidNameError(name, NAME_PATTERN.pattern, reason="name is reserved for the server PKI")
    return name


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _read_json(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    atomic_write(path, json.dumps(data, indent=2, sort_keys=True) + "\n")


class IdentityStore:
    """
    Directory-backed PKI for one tunnel server.

    Usage:
        store = IdentityStore.from_config("/etc/openvpn", config)
        authority = store.ensure_authority()
        server = store.ensure_server_identity(authority)
        peer = store.issue_peer("alice", authority)
    """

    def __init__(
        self,
        layout: PkiLayout,
        key_spec: Optional[KeySpec] = None,
        ca_validity_days: int = 3650,
        cert_validity_days: int = 3650,
        crl_validity_days: int = 3650,
        on_revocation: Optional[Callable[[Path], None]] = None,
    ):
        self.layout = layout
        self.key_spec = key_spec or KeySpec()
        self.ca_validity_days = ca_validity_days
        self.cert_validity_days = cert_validity_days
        self.crl_validity_days = crl_validity_days
        self.on_revocation = on_revocation
        self.audit = AuditLog(layout.audit_log)

    @classmethod
    def from_config(
        cls,
        root: Union[str, Path],
        config: ProvisionConfig,
        on_revocation: Optional[Callable[[Path], None]] = None,
    ) -> "IdentityStore":
        return cls(
            PkiLayout.at(root),
            key_spec=config.key_spec,
            ca_validity_days=config.ca_validity_days,
            cert_validity_days=config.cert_validity_days,
            crl_validity_days=config.crl_validity_days,
            on_revocation=on_revocation,
        )

    # ------------------------------------------------------------------ #
    # inspection
    # ------------------------------------------------------------------ #

    def server_identity_exists(self) -> bool:
        """The server marker is the single source of truth for an existing identity."""
        return self.layout.server_marker.exists()

    def authority_exists(self) -> bool:
        return self.layout.ca_cert.exists() and self.layout.ca_key.exists()

    def list_peers(self, status: Optional[PeerStatus] = None) -> List[PeerRecord]:
        records = sorted(self._load_index().values(), key=lambda r: r.issued_at)
        if status is not None:
            records = [r for r in records if r.status == status]
        return records

    def get_peer(self, name: str) -> PeerRecord:
        record = self._load_index().get(name)
        if record is None:
            raise UnknownPeerError(name)
        return record

    def read_peer(self, name: str) -> PeerIdentity:
        """Load an issued peer's certificate and key from disk."""
        validate_peer_name(name)
        self.get_peer(name)
        return PeerIdentity(
            name=name,
            certificate=keys.load_certificate(self.layout.peer_cert(name).read_bytes()),
            private_key=keys.load_private_key(self.layout.peer_key(name).read_bytes()),
        )

    def load_revocation_list(self) -> x509.CertificateRevocationList:
        return keys.load_revocation_list(self.layout.crl.read_bytes())

    # ------------------------------------------------------------------ #
    # authority / server identity
    # ------------------------------------------------------------------ #

    def ensure_authority(self) -> CertificateAuthority:
        """
        Return the host authority, creating it only when no server identity exists.

        Raises:
            IdentityConflictError: server marker present but authority material missing
        """
        if self.authority_exists():
            authority = self._load_authority()
            if authority.key_spec != self.key_spec:
                logger.warning(
                    f"Authority uses {authority.key_spec.algorithm.value}-{authority.key_spec.size}; "
                    f"configured {self.key_spec.algorithm.value}-{self.key_spec.size} is ignored"
                )
            return authority

        if self.server_identity_exists():
            raise IdentityConflictError(
                "server identity exists but the certificate authority material is missing",
                {"ca_cert": str(self.layout.ca_cert), "ca_key": str(self.layout.ca_key)},
            )

        if self.layout.ca_cert.exists() or self.layout.ca_key.exists():
            # Remnant of an interrupted install: nothing was ever signed by it
            logger.warning("Discarding incomplete certificate authority from an interrupted install")
            self.layout.ca_cert.unlink(missing_ok=True)
            self.layout.ca_key.unlink(missing_ok=True)

        return self._create_authority()

    def ensure_server_identity(self, authority: CertificateAuthority) -> ServerIdentity:
        """
        Return the server identity, creating it (and the empty CRL) if absent.

        Raises:
            IdentityConflictError: existing server identity not signed by this authority
        """
        if self.server_identity_exists():
            server = self._load_server_identity(authority)
            self._publish_server_files(only_missing=True)
            return server

        if self._load_index():
            raise IdentityConflictError(
                "peers are recorded but no server identity exists",
                {"index": str(self.layout.index)},
            )

        key = keys.generate_private_key(authority.key_spec)
        cert = keys.build_leaf_certificate(
            SERVER_COMMON_NAME,
            key.public_key(),
            authority.certificate,
            authority.private_key,
            days=self.cert_validity_days,
            server=True,
        )
        write_private(self.layout.server_key, keys.private_key_pem(key))
        atomic_write(self.layout.server_cert, keys.certificate_pem(cert))
        self._save_index({})
        self.regenerate_revocation_list(authority)
        self._publish_server_files()

        # Commit point
        _write_json(self.layout.server_marker, {
            "serial": keys.serial_hex(cert),
            "fingerprint": keys.fingerprint(cert),
            "authority_fingerprint": authority.fingerprint,
            "created_at": _utcnow_iso(),
        })
        self.audit.log(AuditAction.SERVER_IDENTITY_CREATED, {"serial": keys.serial_hex(cert)})
        logger.info(f"Created server identity (serial {keys.serial_hex(cert)})")
        return ServerIdentity(certificate=cert, private_key=key, authority_fingerprint=authority.fingerprint)

    # ------------------------------------------------------------------ #
    # peers
    # ------------------------------------------------------------------ #

    def issue_peer(self, name: str, authority: CertificateAuthority) -> PeerIdentity:
        """
        Issue a peer certificate/key with the authority's key spec.

        An interrupted earlier issuance for the same name is completed when
        its certificate and key are consistent, and rejected otherwise.

        Raises:
            InvalidNameError: name fails the naming pattern
            DuplicatePeerError: name already issued under this authority
            IdentityConflictError: unrecoverable partial issuance on disk
        """
        validate_peer_name(name)
        if name in self._load_index():
            raise DuplicatePeerError(name)

        recovered = self._recover_partial_issue(name, authority)
        if recovered is not None:
            return recovered

        key = keys.generate_private_key(authority.key_spec)
        cert = keys.build_leaf_certificate(
            name,
            key.public_key(),
            authority.certificate,
            authority.private_key,
            days=self.cert_validity_days,
        )
        write_private(self.layout.peer_key(name), keys.private_key_pem(key))
        atomic_write(self.layout.peer_cert(name), keys.certificate_pem(cert))
        peer = PeerIdentity(name=name, certificate=cert, private_key=key)
        self._commit_peer(peer, AuditAction.PEER_ISSUED)
        logger.info(f"Issued peer '{name}' (serial {peer.serial})")
        return peer

    def revoke_peer(self, name: str, authority: CertificateAuthority) -> PeerRecord:
        """
        Revoke a peer, regenerate and publish the CRL, then notify the reload hook.

        Raises:
            UnknownPeerError: never issued, or already revoked
        """
        index = self._load_index()
        record = index.get(name)
        if record is None:
            raise UnknownPeerError(name)
        if record.status == PeerStatus.REVOKED:
            raise UnknownPeerError(name, reason="already revoked")

        record.status = PeerStatus.REVOKED
        record.revoked_at = _utcnow_iso()

        # CRL first; the index entry commits the revocation
        crl_path = self.regenerate_revocation_list(authority, index)
        self._save_index(index)
        self.audit.log(AuditAction.PEER_REVOKED, {"name": name, "serial": record.serial})
        logger.info(f"Revoked peer '{name}' (serial {record.serial})")

        if self.on_revocation is not None:
            self.on_revocation(crl_path)
        return record

    def regenerate_revocation_list(
        self,
        authority: CertificateAuthority,
        index: Optional[Dict[str, PeerRecord]] = None,
    ) -> Path:
        """Rebuild the CRL from the index and publish it under its stable name."""
        index = self._load_index() if index is None else index
        revoked = [
            (int(r.serial, 16), datetime.fromisoformat(r.revoked_at))
            for r in index.values()
            if r.status == PeerStatus.REVOKED
        ]
        crl = keys.build_revocation_list(
            authority.certificate, authority.private_key, revoked, days=self.crl_validity_days
        )
        pem = keys.revocation_list_pem(crl)
        atomic_write(self.layout.crl, pem)
        # crl-verify reads the published copy
        return atomic_write(self.layout.published(CRL_NAME), pem)

    # ------------------------------------------------------------------ #
    # private
    # ------------------------------------------------------------------ #

    def _create_authority(self) -> CertificateAuthority:
        key = keys.generate_private_key(self.key_spec)
        cert = keys.build_authority_certificate(key, days=self.ca_validity_days)
        write_private(self.layout.ca_key, keys.private_key_pem(key))
        atomic_write(self.layout.ca_cert, keys.certificate_pem(cert))
        authority = CertificateAuthority(certificate=cert, private_key=key, key_spec=self.key_spec)
        self._write_authority_meta(authority)
        self.audit.log(AuditAction.AUTHORITY_CREATED, {
            "fingerprint": authority.fingerprint,
            "algorithm": self.key_spec.algorithm.value,
            "size": self.key_spec.size,
        })
        logger.info(f"Created certificate authority ({self.key_spec.algorithm.value}-{self.key_spec.size})")
        return authority

    def _load_authority(self) -> CertificateAuthority:
        cert = keys.load_certificate(self.layout.ca_cert.read_bytes())
        key = keys.load_private_key(self.layout.ca_key.read_bytes())
        if not keys.key_matches_certificate(key, cert):
            raise IdentityConflictError(
                "authority certificate does not match the authority key",
                {"ca_cert": str(self.layout.ca_cert)},
            )
        authority = CertificateAuthority(certificate=cert, private_key=key, key_spec=keys.key_spec_of(key))
        if not self.layout.authority_meta.exists():
            self._write_authority_meta(authority)
        return authority

    def _write_authority_meta(self, authority: CertificateAuthority) -> None:
        _write_json(self.layout.authority_meta, {
            "fingerprint": authority.fingerprint,
            "key_algorithm": authority.key_spec.algorithm.value,
            "key_size": authority.key_spec.size,
            "created_at": _utcnow_iso(),
        })

    def _load_server_identity(self, authority: CertificateAuthority) -> ServerIdentity:
        marker = _read_json(self.layout.server_marker)
        if not (self.layout.server_cert.exists() and self.layout.server_key.exists()):
            raise IdentityConflictError(
                "server marker exists but the server certificate or key is missing",
                {"server_cert": str(self.layout.server_cert)},
            )
        cert = keys.load_certificate(self.layout.server_cert.read_bytes())
        key = keys.load_private_key(self.layout.server_key.read_bytes())

        if (
            marker.get("authority_fingerprint") != authority.fingerprint
            or not keys.is_signed_by(cert, authority.certificate)
        ):
            raise IdentityConflictError(
                "server certificate was not signed by the current certificate authority",
                {"server_serial": keys.serial_hex(cert), "authority_fingerprint": authority.fingerprint},
            )
        if not keys.key_matches_certificate(key, cert):
            raise IdentityConflictError("server certificate does not match the server key")
        return ServerIdentity(certificate=cert, private_key=key, authority_fingerprint=authority.fingerprint)

    def _publish_server_files(self, only_missing: bool = False) -> None:
        """Copy the files the daemon reads into the install root."""
        sources = [
            (CA_CERT_NAME, self.layout.ca_cert, False),
            (SERVER_CERT_NAME, self.layout.server_cert, False),
            (SERVER_KEY_NAME, self.layout.server_key, True),
            (CRL_NAME, self.layout.crl, False),
        ]
        for name, source, private in sources:
            target = self.layout.published(name)
            if only_missing and target.exists():
                continue
            data = source.read_bytes()
            if private:
                write_private(target, data)
            else:
                atomic_write(target, data)

    def _recover_partial_issue(self, name: str, authority: CertificateAuthority) -> Optional[PeerIdentity]:
        cert_path = self.layout.peer_cert(name)
        key_path = self.layout.peer_key(name)

        if not cert_path.exists():
            if key_path.exists():
                # No certificate was ever signed for this key
                logger.warning(f"Discarding orphan key for peer '{name}' from an interrupted issuance")
                key_path.unlink()
            return None

        if not key_path.exists():
            raise IdentityConflictError(
                f"certificate for peer '{name}' exists without its private key",
                {"peer": name},
            )

        cert = keys.load_certificate(cert_path.read_bytes())
        key = keys.load_private_key(key_path.read_bytes())
        if not (
            keys.is_signed_by(cert, authority.certificate)
            and keys.key_matches_certificate(key, cert)
            and keys.common_name(cert) == name
        ):
            raise IdentityConflictError(
                f"partially issued artifacts for peer '{name}' are inconsistent",
                {"peer": name},
            )

        peer = PeerIdentity(name=name, certificate=cert, private_key=key)
        logger.warning(f"Completing interrupted issuance for peer '{name}' (serial {peer.serial})")
        self._commit_peer(peer, AuditAction.PEER_ISSUE_RECOVERED)
        return peer

    def _commit_peer(self, peer: PeerIdentity, action: AuditAction) -> None:
        """Audit then index; the index entry is the commit point."""
        already_audited = any(
            self.audit.has_entry(a, name=peer.name, serial=peer.serial)
            for a in (AuditAction.PEER_ISSUED, AuditAction.PEER_ISSUE_RECOVERED)
        )
        if not already_audited:
            self.audit.log(action, {"name": peer.name, "serial": peer.serial})
        index = self._load_index()
        index[peer.name] = PeerRecord(
            name=peer.name,
            serial=peer.serial,
            status=PeerStatus.VALID,
            issued_at=_utcnow_iso(),
        )
        self._save_index(index)

    def _load_index(self) -> Dict[str, PeerRecord]:
        if not self.layout.index.exists():
            return {}
        data = _read_json(self.layout.index)
        return {name: PeerRecord.from_dict(entry) for name, entry in data.get("peers", {}).items()}

    def _save_index(self, index: Dict[str, PeerRecord]) -> None:
        _write_json(self.layout.index, {"peers": {name: r.to_dict() for name, r in sorted(index.items())}})
