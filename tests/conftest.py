"""
Pytest configuration and fixtures.

This file ensures proper path setup for imports and provides host fakes
so provisioning runs entirely inside tmp_path.
"""

import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

# Add src directory to Python path
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))


class RecordingRunner:
    """Command runner that records argv and returns canned results."""

    def __init__(self, failures: Optional[Dict[str, int]] = None):
        # failures: command-line prefix -> return code
        self.failures = failures or {}
        self.commands: List[Tuple[str, ...]] = []

    def run(self, argv, timeout=None, env=None):
        from tunnelguard.collaborators.runner import CommandResult

        argv = tuple(argv)
        self.commands.append(argv)
        line = " ".join(argv)
        for prefix, code in self.failures.items():
            if line.startswith(prefix):
                return CommandResult(argv, code, stderr="simulated failure")
        return CommandResult(argv, 0)

    def ran(self, prefix: str) -> bool:
        return any(" ".join(cmd).startswith(prefix) for cmd in self.commands)


class FakeHost:
    """Host inspector with fixed answers."""

    def __init__(self, interface: Optional[str] = "eth0", resolvers=None, root: bool = True, tun: bool = True):
        self.interface = interface
        self.resolvers = ["9.9.9.9"] if resolvers is None else resolvers
        self.root = root
        self.tun = tun

    def require_root(self):
        from tunnelguard.errors import PrivilegeRequiredError

        if not self.root:
            raise PrivilegeRequiredError(1000)

    def require_tun(self):
        from tunnelguard.errors import CapabilityMissingError

        if not self.tun:
            raise CapabilityMissingError("tun", "/dev/net/tun")

    def default_interface(self):
        return self.interface

    def local_address(self):
        return "203.0.113.10"

    def system_resolvers(self):
        return list(self.resolvers)


@pytest.fixture(autouse=True)
def _reset_tunnelguard_logging():
    """configure_logging() detaches the package logger; restore it after each test."""
    yield
    logger = logging.getLogger("tunnelguard")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def runner():
    return RecordingRunner()


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def debian_profile():
    from tunnelguard.platform.profile import resolve_platform

    return resolve_platform("debian")


@pytest.fixture
def config():
    from tunnelguard.schemas.provision import ProvisionConfig

    return ProvisionConfig(endpoint="203.0.113.10", interface="eth0", system_resolvers=["9.9.9.9"])


@pytest.fixture
def store(tmp_path):
    from tunnelguard.identity.layout import PkiLayout
    from tunnelguard.identity.store import IdentityStore

    return IdentityStore(PkiLayout.at(tmp_path / "openvpn"))


@pytest.fixture
def authority(store):
    authority = store.ensure_authority()
    store.ensure_server_identity(authority)
    return authority


@pytest.fixture
def paths(tmp_path):
    from tunnelguard.provisioning.state import InstallPaths

    return InstallPaths.at(tmp_path / "openvpn", bundle_dir=tmp_path / "bundles")


@pytest.fixture
def orchestrator(paths, runner, host, debian_profile):
    from tunnelguard.provisioning.orchestrator import Collaborators, ProvisioningOrchestrator

    collaborators = Collaborators(runner=runner, host=host, detect_platform=lambda: debian_profile)
    return ProvisioningOrchestrator(paths, collaborators)


@pytest.fixture
def make_runner():
    return RecordingRunner


@pytest.fixture
def make_host():
    return FakeHost
