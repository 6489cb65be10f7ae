"""
Peer Bundle Assembler Tests
"""

import pytest


@pytest.fixture
def issued(store, authority):
    peer = store.issue_peer("alice", authority)
    return authority, peer


def _assemble(authority, peer, **overrides):
    from tunnelguard.bundle.assembler import assemble

    args = dict(
        peer_name=peer.name,
        ca_pem=authority.certificate_pem,
        cert_pem=peer.certificate_pem,
        key_pem=peer.private_key_pem,
        endpoint="203.0.113.10",
        port=1194,
        protocol="udp",
    )
    args.update(overrides)
    return assemble(**args)


class TestAssemble:
    """Tests for assemble / extract_bundle_blocks."""

    def test_blocks_round_trip_without_truncation(self, issued):
        """Test the three parsed blocks reproduce the sources exactly."""
        from tunnelguard.bundle.assembler import extract_bundle_blocks

        authority, peer = issued
        blocks = extract_bundle_blocks(_assemble(authority, peer).render())

        assert blocks["ca"] == [authority.certificate_pem.strip()]
        assert blocks["cert"] == [peer.certificate_pem.strip()]
        assert blocks["key"] == [peer.private_key_pem.strip()]

    def test_block_order_is_fixed(self, issued):
        """Test ca, cert and key appear in that order after the directives."""
        authority, peer = issued
        text = _assemble(authority, peer).render()

        positions = [text.index(tag) for tag in ("<ca>", "<cert>", "<key>")]
        assert positions == sorted(positions)
        assert text.index("remote 203.0.113.10 1194") < positions[0]

    def test_client_directives_mirror_server_floor(self, issued):
        """Test the client profile pins the same cipher and TLS floor as the server."""
        authority, peer = issued
        lines = _assemble(authority, peer, protocol="tcp", port=443).render().splitlines()

        assert lines[0] == "client"
        assert "proto tcp" in lines
        assert "remote 203.0.113.10 443" in lines
        assert "cipher AES-128-GCM" in lines
        assert "tls-version-min 1.2" in lines
        assert "remote-cert-tls server" in lines

    def test_text_dump_before_certificate_is_dropped(self, issued):
        """Test only the PEM block of a certificate file is embedded."""
        from tunnelguard.bundle.assembler import extract_bundle_blocks

        authority, peer = issued
        dumped = "Certificate:\n    Data:\n        Version: 3 (0x2)\n" + peer.certificate_pem
        blocks = extract_bundle_blocks(_assemble(authority, peer, cert_pem=dumped).render())

        assert blocks["cert"] == [peer.certificate_pem.strip()]

    def test_missing_key_block(self, issued):
        """Test a source without its block raises MissingArtifact."""
        from tunnelguard.errors import MissingArtifactError

        authority, peer = issued
        with pytest.raises(MissingArtifactError) as exc_info:
            _assemble(authority, peer, key_pem="not a key")
        assert exc_info.value.details["artifact"] == "key"

    def test_truncated_block_is_missing(self, issued):
        """Test a block without its END line is not accepted."""
        from tunnelguard.errors import ArtifactRenderError

        authority, peer = issued
        truncated = peer.certificate_pem.split("-----END")[0]
        with pytest.raises(ArtifactRenderError):
            _assemble(authority, peer, cert_pem=truncated)

    def test_multiple_blocks_rejected(self, issued):
        """Test a source holding two certificates is rejected."""
        from tunnelguard.errors import ArtifactRenderError

        authority, peer = issued
        with pytest.raises(ArtifactRenderError):
            _assemble(authority, peer, ca_pem=authority.certificate_pem + peer.certificate_pem)

    def test_bytes_sources_accepted(self, issued):
        """Test PEM sources read from disk as bytes are accepted."""
        authority, peer = issued
        bundle = _assemble(authority, peer, ca_pem=authority.certificate_pem.encode())
        assert bundle.ca_certificate == authority.certificate_pem.strip()


class TestBundleWriter:
    """Tests for BundleWriter."""

    def test_writes_owner_only_file(self, tmp_path, issued):
        """Test the bundle lands at <dir>/<peer>.ovpn with mode 0600."""
        from tunnelguard.bundle.assembler import BundleWriter

        authority, peer = issued
        bundle = _assemble(authority, peer)
        path = BundleWriter(tmp_path / "bundles").write(bundle)

        assert path == tmp_path / "bundles" / "alice.ovpn"
        assert path.read_text() == bundle.render()
        assert path.stat().st_mode & 0o777 == 0o600
