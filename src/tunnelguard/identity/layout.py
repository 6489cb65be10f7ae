"""
On-disk layout of the identity store and the published server files.

The daemon configuration references the published names relative to the
install root, so the root directory is portable as a unit.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Union

# Stable names the daemon config references (relative to the install root)
CA_CERT_NAME = "ca.crt"
SERVER_CERT_NAME = "server.crt"
SERVER_KEY_NAME = "server.key"
CRL_NAME = "crl.pem"

SERVER_COMMON_NAME = "server"
AUTHORITY_COMMON_NAME = "ca"

# Names that would collide with authority or server files
RESERVED_NAMES = frozenset({SERVER_COMMON_NAME, AUTHORITY_COMMON_NAME})


@dataclass(frozen=True)
class PkiLayout:
    """Paths of every PKI artifact under one install root."""
    root: Path

    @classmethod
    def at(cls, root: Union[str, Path]) -> "PkiLayout":
        return cls(root=Path(root))

    @property
    def pki_dir(self) -> Path:
        return self.root / "pki"

    @property
    def private_dir(self) -> Path:
        return self.pki_dir / "private"

    @property
    def issued_dir(self) -> Path:
        return self.pki_dir / "issued"

    # --- authority ---
    @property
    def ca_cert(self) -> Path:
        return self.pki_dir / CA_CERT_NAME

    @property
    def ca_key(self) -> Path:
        return self.private_dir / "ca.key"

    @property
    def authority_meta(self) -> Path:
        return self.pki_dir / "authority.json"

    # --- server ---
    @property
    def server_cert(self) -> Path:
        return self.issued_dir / SERVER_CERT_NAME

    @property
    def server_key(self) -> Path:
        return self.private_dir / SERVER_KEY_NAME

    @property
    def server_marker(self) -> Path:
        return self.pki_dir / "server.json"

    # --- peers / revocation ---
    @property
    def index(self) -> Path:
        return self.pki_dir / "index.json"

    @property
    def crl(self) -> Path:
        return self.pki_dir / CRL_NAME

    @property
    def audit_log(self) -> Path:
        return self.pki_dir / "audit.jsonl"

    def peer_cert(self, name: str) -> Path:
        return self.issued_dir / f"{name}.crt"

    def peer_key(self, name: str) -> Path:
        return self.private_dir / f"{name}.key"

    # --- published copies the daemon reads ---
    def published(self, name: str) -> Path:
        return self.root / name
