"""
Peer Bundle Assembler

Builds the single-file client profile handed to a peer: connection
directives mirroring the server's cipher floor, followed by the CA
certificate, the peer certificate and the peer key in delimited blocks.

Each source must contribute exactly one PEM block; anything else is an
ArtifactRenderError rather than a silently truncated bundle.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Union

import logging

from ..errors import ArtifactRenderError
from ..network.renderer import CIPHER, TLS_VERSION_MIN
from ..schemas.provision import TunnelProtocol
from ..utils.files import write_private

logger = logging.getLogger(__name__)

BUNDLE_SUFFIX = ".ovpn"

# Fixed block order in every bundle
BLOCK_ORDER = ("ca", "cert", "key")

_PEM_RE = re.compile(
    r"-----BEGIN (?P<label>[A-Z0-9 ]+)-----\r?\n.*?-----END (?P=label)-----",
    re.DOTALL,
)
_BLOCK_RE = re.compile(r"<(?P<tag>ca|cert|key)>\n(?P<body>.*?)</(?P=tag)>", re.DOTALL)


@dataclass(frozen=True)
class PeerBundle:
    peer_name: str
    endpoint: str
    port: int
    protocol: TunnelProtocol
    ca_certificate: str
    certificate: str
    private_key: str

    def directives(self) -> List[str]:
        return [
            "client",
            f"proto {self.protocol.value}",
            f"remote {self.endpoint} {self.port}",
            "dev tun",
            "resolv-retry infinite",
            "nobind",
            "persist-key",
            "persist-tun",
            "remote-cert-tls server",
            f"cipher {CIPHER}",
            f"data-ciphers {CIPHER}",
            "tls-client",
            f"tls-version-min {TLS_VERSION_MIN}",
            "verb 3",
        ]

    def render(self) -> str:
        blocks = {"ca": self.ca_certificate, "cert": self.certificate, "key": self.private_key}
        lines = self.directives()
        for tag in BLOCK_ORDER:
            lines += [f"<{tag}>", blocks[tag], f"</{tag}>"]
        return "\n".join(lines) + "\n"


def _as_text(source: Union[str, bytes]) -> str:
    return source.decode("ascii") if isinstance(source, bytes) else source


def extract_pem_block(source: Union[str, bytes], artifact: str, label_suffix: str) -> str:
    """
    Return the single PEM block of a source whose label ends with label_suffix.

    Certificate files written by other tools often carry a human-readable
    dump before the block; only the block itself is kept.

    Raises:
        ArtifactRenderError: no matching block, or more than one
    """
    matches = [m.group(0) for m in _PEM_RE.finditer(_as_text(source)) if m.group("label").endswith(label_suffix)]
    if not matches:
        raise ArtifactRenderError(artifact, f"no {label_suffix} block found")
    if len(matches) > 1:
        raise ArtifactRenderError(artifact, f"expected one {label_suffix} block, found {len(matches)}")
    return matches[0]


def assemble(
    peer_name: str,
    ca_pem: Union[str, bytes],
    cert_pem: Union[str, bytes],
    key_pem: Union[str, bytes],
    endpoint: str,
    port: int,
    protocol: TunnelProtocol,
) -> PeerBundle:
    """
    Assemble a peer bundle from PEM sources.

    Args:
        peer_name: Peer the bundle is issued for
        ca_pem: Authority certificate
        cert_pem: Peer certificate
        key_pem: Peer private key
        endpoint: Public address or hostname peers connect to
        port: Listen port of the server
        protocol: udp or tcp

    Returns:
        PeerBundle ready to render or write
    """
    if not endpoint:
        raise ArtifactRenderError("endpoint", "no public endpoint configured")
    return PeerBundle(
        peer_name=peer_name,
        endpoint=endpoint,
        port=port,
        protocol=TunnelProtocol(protocol),
        ca_certificate=extract_pem_block(ca_pem, "ca", "CERTIFICATE"),
        certificate=extract_pem_block(cert_pem, "cert", "CERTIFICATE"),
        private_key=extract_pem_block(key_pem, "key", "PRIVATE KEY"),
    )


def extract_bundle_blocks(text: str) -> Dict[str, List[str]]:
    """Parse the delimited blocks of a rendered bundle back out, keyed by tag."""
    blocks: Dict[str, List[str]] = {tag: [] for tag in BLOCK_ORDER}
    for match in _BLOCK_RE.finditer(text):
        blocks[match.group("tag")].append(match.group("body").strip())
    return blocks


class BundleWriter:
    """Persists bundles as <bundle_dir>/<peer>.ovpn, readable by the owner only."""

    def __init__(self, bundle_dir: Union[str, Path]):
        self.bundle_dir = Path(bundle_dir)

    def path_for(self, peer_name: str) -> Path:
        return self.bundle_dir / f"{peer_name}{BUNDLE_SUFFIX}"

    def write(self, bundle: PeerBundle) -> Path:
        path = write_private(self.path_for(bundle.peer_name), bundle.render())
        logger.info(f"Wrote bundle for '{bundle.peer_name}' to {path}")
        return path
