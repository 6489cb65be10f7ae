"""
Provisioning Orchestrator Tests

State detection, idempotent install, ADD_PEER failures and revocation,
with every host interaction faked.
"""

import json
from unittest.mock import patch

import pytest


class TestStateDetection:
    """Tests for detect_state."""

    def test_fresh_host_is_uninitialized(self, orchestrator):
        from tunnelguard.provisioning.state import ProvisionState

        assert orchestrator.detect_state() == ProvisionState.UNINITIALIZED

    def test_server_marker_without_install_marker_is_installing(self, orchestrator, paths):
        """Test an interrupted install is detected."""
        from tunnelguard.identity.layout import PkiLayout
        from tunnelguard.identity.store import IdentityStore
        from tunnelguard.provisioning.state import ProvisionState

        store = IdentityStore(PkiLayout.at(paths.install_root))
        store.ensure_server_identity(store.ensure_authority())

        assert orchestrator.detect_state() == ProvisionState.INSTALLING

    def test_install_marker_without_identity_is_conflict(self, orchestrator, paths):
        from tunnelguard.errors import IdentityConflictError

        paths.install_marker.parent.mkdir(parents=True)
        paths.install_marker.write_text("{}")

        with pytest.raises(IdentityConflictError):
            orchestrator.detect_state()


class TestProvision:
    """Tests for the install path."""

    def test_debian_auto_install_scenario(self, orchestrator, paths, config, runner):
        """Test a fresh Debian install: identity, NAT rule, one bundle for 'client'."""
        from tunnelguard.identity.layout import PkiLayout
        from tunnelguard.provisioning.state import ProvisionState

        result = orchestrator.provision("client", config)

        assert result.installed
        assert result.state == ProvisionState.INSTALLED
        assert PkiLayout.at(paths.install_root).server_marker.exists()

        add_script = paths.firewall_add.read_text()
        assert "iptables -t nat -A POSTROUTING -s 10.8.0.0/24 -o eth0 -j MASQUERADE" in add_script
        assert paths.firewall_add.stat().st_mode & 0o777 == 0o755

        assert result.bundle_path == paths.bundle_dir / "client.ovpn"
        assert sorted(p.name for p in paths.bundle_dir.iterdir()) == ["client.ovpn"]

        assert runner.ran("apt-get update")
        assert runner.ran("apt-get install -y openvpn iptables openssl wget ca-certificates curl")
        assert runner.ran(f"sysctl -p {paths.sysctl_path}")
        assert runner.ran(f"sh {paths.firewall_add}")
        assert runner.ran("systemctl enable openvpn@server")
        assert runner.ran("systemctl start openvpn@server")
        assert result.warnings == []

    def test_second_provision_only_adds_peer(self, orchestrator, paths, config, runner):
        """Test re-provisioning keeps the authority and artifacts and adds one peer."""
        from tunnelguard.identity.audit import AuditAction
        from tunnelguard.identity.layout import PkiLayout
        from tunnelguard.identity.store import IdentityStore

        orchestrator.provision("client", config)
        layout = PkiLayout.at(paths.install_root)
        ca_before = layout.ca_cert.read_bytes()
        daemon_before = paths.daemon_config.stat().st_mtime_ns
        commands_before = len(runner.commands)

        result = orchestrator.provision("laptop", config)

        assert not result.installed
        assert layout.ca_cert.read_bytes() == ca_before
        assert paths.daemon_config.stat().st_mtime_ns == daemon_before
        assert len(runner.commands) == commands_before

        audit = IdentityStore(layout).audit
        assert len(audit.entries(AuditAction.AUTHORITY_CREATED)) == 1
        assert len(audit.entries(AuditAction.SERVER_IDENTITY_CREATED)) == 1
        assert [p.name for p in orchestrator.list_peers()] == ["client", "laptop"]

    def test_installed_config_wins_for_later_peers(self, orchestrator, config):
        """Test later bundles use the installed port even if the session asks otherwise."""
        from tunnelguard.schemas.provision import ProvisionConfig

        orchestrator.provision("client", config)
        other = ProvisionConfig(endpoint="198.51.100.1", port=443, protocol="tcp")

        result = orchestrator.provision("laptop", other)

        text = result.bundle_path.read_text()
        assert "remote 203.0.113.10 1194" in text
        assert "proto udp" in text

    def test_interrupted_install_resumes(self, orchestrator, paths, config):
        """Test a server identity without install marker completes the install."""
        from tunnelguard.identity.layout import PkiLayout
        from tunnelguard.identity.store import IdentityStore

        store = IdentityStore(PkiLayout.at(paths.install_root))
        authority = store.ensure_authority()
        store.ensure_server_identity(authority)

        result = orchestrator.provision("client", config)

        assert result.installed
        assert paths.install_marker.exists()
        assert store.ensure_authority().fingerprint == authority.fingerprint

    def test_missing_interface_requires_operator(self, orchestrator, paths, config, make_host, runner):
        """Test without a detected interface the placeholder is rendered and not applied."""
        from tunnelguard.network.renderer import INTERFACE_PLACEHOLDER
        from tunnelguard.schemas.provision import ProvisionConfig

        orchestrator.collaborators.host = make_host(interface=None)
        no_interface = ProvisionConfig(endpoint="203.0.113.10")

        result = orchestrator.provision("client", no_interface)

        assert result.requires_operator_completion
        assert INTERFACE_PLACEHOLDER in paths.firewall_add.read_text()
        assert not runner.ran("sh ")
        assert any("Firewall rules not applied" in w for w in result.warnings)

    def test_interface_and_resolvers_probed(self, orchestrator, paths):
        """Test missing interface and resolvers are filled from the host."""
        from tunnelguard.schemas.provision import ProvisionConfig

        orchestrator.provision("client", ProvisionConfig(endpoint="203.0.113.10"))

        daemon = paths.daemon_config.read_text()
        assert 'push "dhcp-option DNS 9.9.9.9"' in daemon
        assert "-o eth0" in paths.firewall_add.read_text()
        assert json.loads(paths.install_marker.read_text())["config"]["interface"] == "eth0"

    def test_service_failure_is_warning(self, orchestrator, config, make_runner, paths):
        """Test a failing service start does not fail the install."""
        orchestrator.collaborators.runner = make_runner({"systemctl start": 1})

        result = orchestrator.provision("client", config)

        assert paths.install_marker.exists()
        assert any("Could not start service" in w for w in result.warnings)

    def test_package_failure_is_fatal(self, orchestrator, config, make_runner, paths):
        """Test a package install failure stops before any identity is created."""
        from tunnelguard.errors import PackageInstallError
        from tunnelguard.provisioning.state import ProvisionState

        orchestrator.collaborators.runner = make_runner({"apt-get install": 100})

        with pytest.raises(PackageInstallError):
            orchestrator.provision("client", config)
        assert orchestrator.detect_state() == ProvisionState.UNINITIALIZED
        assert not paths.lock.exists()

    def test_recursive_local_configures_resolver(self, orchestrator, paths, runner):
        """Test recursive-local DNS installs and binds the resolver."""
        from tunnelguard.schemas.provision import ProvisionConfig

        config = ProvisionConfig(endpoint="203.0.113.10", interface="eth0", dns_mode="recursive-local")
        orchestrator.provision("client", config)

        assert runner.ran("apt-get install -y unbound")
        assert "interface: 10.8.0.1" in paths.resolver_config_path.read_text()
        assert runner.ran("systemctl restart unbound")

    def test_resolver_starts_after_tunnel_service(self, orchestrator, paths, runner):
        """Test the resolver is restarted only once the tunnel service is up, under the fatal policy."""
        from tunnelguard.schemas.provision import ProvisionConfig

        config = ProvisionConfig(
            endpoint="203.0.113.10",
            interface="eth0",
            dns_mode="recursive-local",
            resolver_failure_policy="fatal",
        )
        result = orchestrator.provision("client", config)

        lines = [" ".join(cmd) for cmd in runner.commands]
        assert lines.index("systemctl start openvpn@server") < lines.index("systemctl restart unbound")
        assert "ip-freebind: yes" in paths.resolver_config_path.read_text()
        assert paths.install_marker.exists()
        assert result.warnings == []

    def test_fatal_resolver_failure_resumes(self, orchestrator, paths, make_runner):
        """Test a fatal resolver failure leaves INSTALLING and a later run completes."""
        from tunnelguard.errors import ResolverSetupError
        from tunnelguard.provisioning.state import ProvisionState
        from tunnelguard.schemas.provision import ProvisionConfig

        config = ProvisionConfig(
            endpoint="203.0.113.10",
            interface="eth0",
            dns_mode="recursive-local",
            resolver_failure_policy="fatal",
        )
        orchestrator.collaborators.runner = make_runner({"systemctl restart unbound": 1})

        with pytest.raises(ResolverSetupError):
            orchestrator.provision("client", config)
        assert orchestrator.detect_state() == ProvisionState.INSTALLING

        orchestrator.collaborators.runner = make_runner()
        result = orchestrator.provision("client", config)

        assert result.installed
        assert orchestrator.detect_state() == ProvisionState.INSTALLED

    def test_invalid_first_peer_rejected_before_install(self, orchestrator, config, runner):
        from tunnelguard.errors import InvalidNameError

        with pytest.raises(InvalidNameError):
            orchestrator.provision("bad name", config)
        assert runner.commands == []

    def test_requires_root(self, orchestrator, config, make_host):
        from tunnelguard.errors import PrivilegeRequiredError

        orchestrator.collaborators.host = make_host(root=False)
        with pytest.raises(PrivilegeRequiredError):
            orchestrator.provision("client", config)

    def test_requires_tun(self, orchestrator, config, make_host):
        from tunnelguard.errors import CapabilityMissingError

        orchestrator.collaborators.host = make_host(tun=False)
        with pytest.raises(CapabilityMissingError):
            orchestrator.provision("client", config)

    def test_held_lock_blocks_session(self, orchestrator, config, paths):
        """Test a concurrent session is refused while the lock is held."""
        from tunnelguard.errors import ProvisioningLockedError
        from tunnelguard.utils.files import ExclusiveLock

        with ExclusiveLock(paths.lock):
            with pytest.raises(ProvisioningLockedError):
                orchestrator.provision("client", config)


class TestAddPeer:
    """Tests for ADD_PEER on an installed server."""

    @pytest.fixture
    def installed(self, orchestrator, config):
        orchestrator.provision("client", config)
        return orchestrator

    def test_add_peer_writes_bundle(self, installed, paths):
        from tunnelguard.provisioning.state import ProvisionState

        result = installed.add_peer("alice")

        assert result.state == ProvisionState.INSTALLED
        assert result.bundle_path == paths.bundle_dir / "alice.ovpn"
        assert "<key>" in result.bundle_path.read_text()

    def test_duplicate_peer(self, installed, paths):
        """Test a duplicate name fails and the first bundle is untouched."""
        from tunnelguard.errors import DuplicatePeerError

        first = installed.add_peer("alice").bundle_path.read_text()

        with pytest.raises(DuplicatePeerError):
            installed.add_peer("alice")
        assert (paths.bundle_dir / "alice.ovpn").read_text() == first

    def test_add_peer_requires_install(self, orchestrator):
        from tunnelguard.errors import NotInstalledError

        with pytest.raises(NotInstalledError):
            orchestrator.add_peer("alice")

    def test_bundle_failure_names_artifact(self, installed):
        """Test an assembly failure reports the bundle artifact and stays INSTALLED."""
        from tunnelguard.errors import ArtifactRenderError, PeerProvisioningError
        from tunnelguard.provisioning.state import ProvisionState

        with patch(
            "tunnelguard.provisioning.orchestrator.assemble",
            side_effect=ArtifactRenderError("ca", "no CERTIFICATE block found"),
        ):
            with pytest.raises(PeerProvisioningError) as exc_info:
                installed.add_peer("alice")

        assert exc_info.value.artifact == "bundle"
        assert exc_info.value.peer_name == "alice"
        assert installed.detect_state() == ProvisionState.INSTALLED

    def test_bundle_file_failure_names_artifact(self, installed):
        from tunnelguard.errors import PeerProvisioningError

        with patch.object(installed.bundles, "write", side_effect=PermissionError("read-only")):
            with pytest.raises(PeerProvisioningError) as exc_info:
                installed.add_peer("alice")
        assert exc_info.value.artifact == "bundle-file"

    def test_failed_bundle_write_is_exported_on_retry(self, installed, paths):
        """Test a peer issued without a bundle gets it on the next add, with the same certificate."""
        from tunnelguard.bundle.assembler import extract_bundle_blocks
        from tunnelguard.errors import PeerProvisioningError
        from tunnelguard.identity.layout import PkiLayout

        with patch.object(installed.bundles, "write", side_effect=OSError("No space left on device")):
            with pytest.raises(PeerProvisioningError):
                installed.add_peer("alice")
        assert not (paths.bundle_dir / "alice.ovpn").exists()

        result = installed.add_peer("alice")

        assert result.bundle_path == paths.bundle_dir / "alice.ovpn"
        cert = PkiLayout.at(paths.install_root).peer_cert("alice").read_text()
        assert extract_bundle_blocks(result.bundle_path.read_text())["cert"] == [cert.strip()]
        assert sorted(p.name for p in installed.list_peers()) == ["alice", "client"]

    def test_revoked_peer_without_bundle_stays_taken(self, installed, paths):
        from tunnelguard.errors import DuplicatePeerError

        installed.add_peer("alice")
        installed.revoke_peer("alice")
        (paths.bundle_dir / "alice.ovpn").unlink()

        with pytest.raises(DuplicatePeerError):
            installed.add_peer("alice")

    def test_certificate_failure_names_artifact(self, installed, paths):
        """Test an unrecoverable partial issuance reports the certificate artifact."""
        from tunnelguard.errors import PeerProvisioningError
        from tunnelguard.identity.layout import PkiLayout

        cert = PkiLayout.at(paths.install_root).peer_cert("alice")
        cert.write_text("garbage")

        with pytest.raises(PeerProvisioningError) as exc_info:
            installed.add_peer("alice")
        assert exc_info.value.artifact == "certificate"


class TestRevokePeer:
    """Tests for revoke_peer through the orchestrator."""

    def test_revoke_restarts_daemon(self, orchestrator, config, runner, paths):
        from tunnelguard.identity.store import PeerStatus

        orchestrator.provision("client", config)
        orchestrator.add_peer("bob")

        record = orchestrator.revoke_peer("bob")

        assert record.status == PeerStatus.REVOKED
        assert runner.ran("systemctl restart openvpn@server")
        assert [p.name for p in orchestrator.list_peers(PeerStatus.REVOKED)] == ["bob"]

    def test_revoke_unknown(self, orchestrator, config):
        from tunnelguard.errors import UnknownPeerError

        orchestrator.provision("client", config)
        with pytest.raises(UnknownPeerError):
            orchestrator.revoke_peer("ghost")

    def test_list_peers_on_fresh_host(self, orchestrator):
        assert orchestrator.list_peers() == []
