"""
Collaborator Tests

Package, service, resolver and applier adapters against a recording runner;
host probes against fixture files; endpoint discovery against a fake client.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest


ROUTE_TABLE = (
    "Iface\tDestination\tGateway \tFlags\tRefCnt\tUse\tMetric\tMask\n"
    "docker0\t000011AC\t00000000\t0001\t0\t0\t0\t0000FFFF\n"
    "ens3\t00000000\t0101A8C0\t0003\t0\t0\t100\t00000000\n"
)


class TestHostInspector:
    """Tests for host probes."""

    def test_parse_route_table(self):
        from tunnelguard.collaborators.host import parse_route_table

        assert parse_route_table(ROUTE_TABLE) == "ens3"
        assert parse_route_table(ROUTE_TABLE.splitlines()[0]) is None

    def test_parse_resolv_conf(self):
        """Test loopback stubs, IPv6 and duplicates are dropped."""
        from tunnelguard.collaborators.host import parse_resolv_conf

        text = "search lan\nnameserver 127.0.0.53\nnameserver 192.168.1.1\nnameserver ::1\n" \
               "nameserver 2001:db8::1\nnameserver 192.168.1.1\nnameserver 8.8.8.8\n"
        assert parse_resolv_conf(text) == ["192.168.1.1", "8.8.8.8"]

    def test_systemd_stub_falls_through(self, tmp_path):
        """Test a stub-only resolv.conf defers to the systemd-resolved upstream file."""
        from tunnelguard.collaborators.host import HostInspector

        stub = tmp_path / "resolv.conf"
        stub.write_text("nameserver 127.0.0.53\n")
        upstream = tmp_path / "upstream.conf"
        upstream.write_text("nameserver 10.0.0.2\n")

        host = HostInspector(resolv_conf_paths=[stub, upstream])
        assert host.system_resolvers() == ["10.0.0.2"]

    def test_default_interface_missing_table(self, tmp_path):
        from tunnelguard.collaborators.host import HostInspector

        assert HostInspector(route_table_path=tmp_path / "route").default_interface() is None

    def test_require_tun(self, tmp_path):
        from tunnelguard.collaborators.host import HostInspector
        from tunnelguard.errors import CapabilityMissingError

        with pytest.raises(CapabilityMissingError):
            HostInspector(tun_device_path=tmp_path / "tun").require_tun()

    def test_require_root(self):
        from tunnelguard.collaborators.host import HostInspector
        from tunnelguard.errors import PrivilegeRequiredError

        with patch("os.geteuid", return_value=1000):
            with pytest.raises(PrivilegeRequiredError):
                HostInspector().require_root()


class TestDiscovery:
    """Tests for public endpoint discovery."""

    def _client(self, answers):
        client = MagicMock()
        client.get_text.side_effect = lambda url, timeout: answers.get(url)
        return client

    def test_first_valid_answer_wins(self):
        from tunnelguard.collaborators.discovery import PublicEndpointDiscovery

        client = self._client({"https://b": "<html>error</html>", "https://c": "198.51.100.7"})
        discovery = PublicEndpointDiscovery(["https://a", "https://b", "https://c"], client=client)

        assert discovery.discover() == "198.51.100.7"
        assert [c.args[0] for c in client.get_text.call_args_list] == ["https://a", "https://b", "https://c"]

    def test_all_fail(self):
        from tunnelguard.collaborators.discovery import PublicEndpointDiscovery
        from tunnelguard.errors import NetworkDiscoveryError

        discovery = PublicEndpointDiscovery(["https://a", "https://b"], client=self._client({}))
        with pytest.raises(NetworkDiscoveryError) as exc_info:
            discovery.discover()
        assert exc_info.value.details["endpoints_tried"] == 2

    def test_public_local_address_used_directly(self):
        from tunnelguard.collaborators.discovery import resolve_endpoint

        discovery = MagicMock()
        assert resolve_endpoint("8.8.4.4", discovery) == "8.8.4.4"
        discovery.discover.assert_not_called()

    @pytest.mark.parametrize("local", ["10.0.0.5", "192.168.1.20", "172.16.4.4", None])
    def test_private_local_address_discovers(self, local):
        from tunnelguard.collaborators.discovery import resolve_endpoint

        discovery = MagicMock()
        discovery.discover.return_value = "198.51.100.7"
        assert resolve_endpoint(local, discovery) == "198.51.100.7"


class TestCommandRunner:
    """Tests for the subprocess seam."""

    def test_missing_binary(self):
        from tunnelguard.collaborators.runner import CommandRunner

        with patch("subprocess.run", side_effect=FileNotFoundError("apt-get")):
            result = CommandRunner().run(["apt-get", "update"])
        assert result.returncode == 127
        assert not result.success

    def test_timeout(self):
        from tunnelguard.collaborators.runner import CommandRunner

        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(["sleep"], 1)):
            result = CommandRunner(timeout=1).run(["sleep", "10"])
        assert result.returncode == 124

    def test_success(self):
        from tunnelguard.collaborators.runner import CommandRunner

        completed = subprocess.CompletedProcess(["true"], 0, stdout="ok", stderr="")
        with patch("subprocess.run", return_value=completed) as mock_run:
            result = CommandRunner().run(["true"], env={"DEBIAN_FRONTEND": "noninteractive"})

        assert result.success
        assert result.stdout == "ok"
        assert mock_run.call_args[1]["env"]["DEBIAN_FRONTEND"] == "noninteractive"


class TestPackagesAndServices:
    """Tests for PackageInstaller and ServiceManager."""

    def test_install_runs_prepare_first(self, runner, debian_profile):
        from tunnelguard.collaborators.packages import PackageInstaller

        PackageInstaller(debian_profile, runner).install()

        assert runner.commands[0] == ("apt-get", "update")
        assert runner.commands[1][:3] == ("apt-get", "install", "-y")
        assert "openvpn" in runner.commands[1]

    def test_install_failure(self, make_runner, debian_profile):
        from tunnelguard.collaborators.packages import PackageInstaller
        from tunnelguard.errors import PackageInstallError

        with pytest.raises(PackageInstallError) as exc_info:
            PackageInstaller(debian_profile, make_runner({"apt-get update": 100})).install()
        assert exc_info.value.code == "TNG_HOST_PACKAGE_INSTALL_FAILED"

    def test_service_failures_are_warnings(self, make_runner, debian_profile):
        from tunnelguard.collaborators.services import ServiceManager

        warnings = ServiceManager(debian_profile, make_runner({"systemctl": 1})).enable_and_start()

        assert warnings == [
            "Could not enable service openvpn@server",
            "Could not start service openvpn@server",
        ]


class TestRecursiveResolver:
    """Tests for the recursive-local resolver collaborator."""

    def _resolver(self, runner, profile, path):
        from tunnelguard.collaborators.packages import PackageInstaller
        from tunnelguard.collaborators.resolver import RecursiveResolver
        from tunnelguard.collaborators.services import ServiceManager

        return RecursiveResolver(PackageInstaller(profile, runner), ServiceManager(profile, runner), path)

    def test_snippet_appended_once(self, runner, debian_profile, config, tmp_path):
        path = tmp_path / "unbound.conf"
        path.write_text("server:\n    verbosity: 1")
        resolver = self._resolver(runner, debian_profile, path)

        assert resolver.configure(config) is None
        assert resolver.configure(config) is None

        text = path.read_text()
        assert text.startswith("server:\n    verbosity: 1\n")
        assert text.count("interface: 10.8.0.1") == 1
        assert "access-control: 10.8.0.0/24 allow" in text

    def test_failure_warns_by_default(self, make_runner, debian_profile, config, tmp_path):
        resolver = self._resolver(make_runner({"systemctl restart unbound": 1}), debian_profile, tmp_path / "u.conf")

        warning = resolver.configure(config)
        assert "cannot restart unbound" in warning

    def test_failure_fatal_policy(self, make_runner, debian_profile, config, tmp_path):
        from tunnelguard.errors import ResolverSetupError
        from tunnelguard.schemas.provision import ProvisionConfig

        fatal = ProvisionConfig(**{**config.model_dump(), "resolver_failure_policy": "fatal"})
        resolver = self._resolver(make_runner({"apt-get install": 100}), debian_profile, tmp_path / "u.conf")

        with pytest.raises(ResolverSetupError):
            resolver.configure(fatal)


class TestAppliers:
    """Tests for SysctlApplier and FirewallApplier."""

    def test_sysctl_linux(self, runner, debian_profile, tmp_path):
        from tunnelguard.collaborators.appliers import SysctlApplier

        assert SysctlApplier(debian_profile, runner).apply(tmp_path / "99-openvpn.conf") is None
        assert runner.commands == [("sysctl", "-p", str(tmp_path / "99-openvpn.conf"))]

    def test_sysctl_freebsd(self, runner, tmp_path):
        from tunnelguard.collaborators.appliers import SysctlApplier
        from tunnelguard.platform.profile import resolve_platform

        SysctlApplier(resolve_platform("freebsd"), runner).apply(tmp_path / "unused")
        assert runner.commands == [("sysrc", "gateway_enable=YES"), ("sysctl", "net.inet.ip.forwarding=1")]

    def test_firewall_failure_is_warning(self, make_runner, debian_profile, tmp_path):
        from tunnelguard.collaborators.appliers import FirewallApplier

        warning = FirewallApplier(debian_profile, make_runner({"sh": 2})).apply(tmp_path / "add.sh")
        assert "exited with 2" in warning

    def test_firewall_skipped_without_iptables(self, runner, tmp_path):
        from tunnelguard.collaborators.appliers import FirewallApplier
        from tunnelguard.platform.profile import resolve_platform

        warning = FirewallApplier(resolve_platform("freebsd"), runner).apply(tmp_path / "add.sh")

        assert "freebsd" in warning
        assert runner.commands == []
