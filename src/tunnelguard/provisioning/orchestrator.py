"""
Provisioning Orchestrator

Top-level state machine of a tunnel server install:

    UNINITIALIZED -> INSTALLING -> INSTALLED  (+ ADD_PEER self-loop)

- The server marker (pki/server.json) says an identity exists.
- The install marker (install.json) says the rendered artifacts were
  committed. It also records the session config, so later peers get bundles
  matching the installed server no matter what the current session asks for.

Network artifacts are rendered once, on the way into INSTALLED, and never
again. Every mutating entry point runs under the provisioning lock.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import logging

from ..bundle.assembler import BundleWriter, assemble
from ..collaborators.appliers import FirewallApplier, SysctlApplier
from ..collaborators.host import HostInspector
from ..collaborators.packages import PackageInstaller
from ..collaborators.resolver import RecursiveResolver
from ..collaborators.runner import CommandRunner
from ..collaborators.services import ServiceManager
from ..errors import (
    DuplicatePeerError,
    IdentityConflictError,
    InvalidNameError,
    NotInstalledError,
    PeerProvisioningError,
    TunnelGuardError,
)
from ..identity.layout import PkiLayout
from ..identity.store import IdentityStore, PeerIdentity, PeerRecord, PeerStatus, validate_peer_name
from ..network.renderer import NetworkArtifactSet, render
from ..platform.profile import PROFILES, PlatformFamily, PlatformProfile, detect_platform
from ..schemas.provision import DnsMode, ProvisionConfig
from ..utils.files import SCRIPT_MODE, ExclusiveLock, atomic_write
from .state import InstallPaths, ProvisionResult, ProvisionState

logger = logging.getLogger(__name__)


@dataclass
class Collaborators:
    """Host-facing adapters. The runner is the only seam that executes commands."""
    runner: CommandRunner = field(default_factory=CommandRunner)
    host: HostInspector = field(default_factory=HostInspector)
    detect_platform: Callable[[], PlatformProfile] = detect_platform


class ProvisioningOrchestrator:
    """
    Sequences platform resolution, identity, rendering and peer bundles.

    Usage:
        orchestrator = ProvisioningOrchestrator(InstallPaths.from_settings(settings))
        result = orchestrator.provision("client", config)
        orchestrator.add_peer("alice")
    """

    def __init__(self, paths: InstallPaths, collaborators: Optional[Collaborators] = None):
        self.paths = paths
        self.collaborators = collaborators or Collaborators()
        self.bundles = BundleWriter(paths.bundle_dir)

    # ------------------------------------------------------------------ #
    # state
    # ------------------------------------------------------------------ #

    def detect_state(self) -> ProvisionState:
        """
        Derive the state from the on-disk markers.

        Raises:
            IdentityConflictError: install marker present without a server identity
        """
        server_marker = PkiLayout.at(self.paths.install_root).server_marker
        has_server = server_marker.exists()
        has_install = self.paths.install_marker.exists()

        if has_install and not has_server:
            raise IdentityConflictError(
                "install marker present but the server identity is missing",
                {"install_marker": str(self.paths.install_marker), "server_marker": str(server_marker)},
            )
        if has_install:
            return ProvisionState.INSTALLED
        if has_server:
            return ProvisionState.INSTALLING
        return ProvisionState.UNINITIALIZED

    def installed_config(self) -> ProvisionConfig:
        """The config the server was installed with."""
        return ProvisionConfig(**self._read_install_marker()["config"])

    def installed_profile(self) -> PlatformProfile:
        return PROFILES[PlatformFamily(self._read_install_marker()["platform"])]

    # ------------------------------------------------------------------ #
    # entry points
    # ------------------------------------------------------------------ #

    def provision(self, peer_name: str, config: ProvisionConfig) -> ProvisionResult:
        """
        Install the server if needed, then issue exactly one peer.

        On an installed host the given config is ignored and only the
        peer is added.

        Args:
            peer_name: First (or next) peer to issue
            config: Session configuration used for a fresh install

        Returns:
            ProvisionResult
        """
        host = self.collaborators.host
        host.require_root()
        validate_peer_name(peer_name)

        with ExclusiveLock(self.paths.lock):
            state = self.detect_state()
            if state == ProvisionState.INSTALLED:
                logger.info("Server already installed; adding peer only")
                return self._add_peer(peer_name)

            if state == ProvisionState.INSTALLING:
                logger.warning("Resuming interrupted install")
            host.require_tun()
            warnings, needs_operator = self._install(config)
            result = self._add_peer(peer_name)
            result.installed = True
            result.requires_operator_completion = needs_operator
            result.warnings = warnings + result.warnings
            return result

    def add_peer(self, name: str) -> ProvisionResult:
        """
        ADD_PEER on an installed server.

        Raises:
            NotInstalledError: the server is not installed
            InvalidNameError / DuplicatePeerError: name rejected
            PeerProvisioningError: an artifact could not be produced
        """
        self.collaborators.host.require_root()
        with ExclusiveLock(self.paths.lock):
            state = self.detect_state()
            if state != ProvisionState.INSTALLED:
                raise NotInstalledError(state.value)
            return self._add_peer(name)

    def revoke_peer(self, name: str) -> PeerRecord:
        """Revoke a peer; the CRL is republished and the daemon restarted."""
        self.collaborators.host.require_root()
        with ExclusiveLock(self.paths.lock):
            state = self.detect_state()
            if state != ProvisionState.INSTALLED:
                raise NotInstalledError(state.value)

            services = ServiceManager(self.installed_profile(), self.collaborators.runner)

            def restart_daemon(crl_path: Path) -> None:
                if not services.restart():
                    logger.warning(f"Revocation list updated at {crl_path}; restart the tunnel service manually")

            store = self._store(self.installed_config(), on_revocation=restart_daemon)
            return store.revoke_peer(name, store.ensure_authority())

    def list_peers(self, status: Optional[PeerStatus] = None) -> List[PeerRecord]:
        if self.detect_state() == ProvisionState.UNINITIALIZED:
            return []
        return IdentityStore(PkiLayout.at(self.paths.install_root)).list_peers(status)

    # ------------------------------------------------------------------ #
    # transitions
    # ------------------------------------------------------------------ #

    def _install(self, config: ProvisionConfig) -> Tuple[List[str], bool]:
        """UNINITIALIZED/INSTALLING -> INSTALLED. Returns (warnings, requires_operator_completion)."""
        runner = self.collaborators.runner
        profile = self.collaborators.detect_platform()
        logger.info(f"Installing on {profile.family.value} (state: {ProvisionState.INSTALLING.value})")

        packages = PackageInstaller(profile, runner)
        services = ServiceManager(profile, runner)
        packages.install()

        config = self._complete_config(config)
        store = self._store(config)
        authority = store.ensure_authority()
        server = store.ensure_server_identity(authority)

        artifacts = render(config, server, profile.daemon_group)
        self._write_artifacts(artifacts)

        warnings = list(artifacts.warnings)
        forwarding_warning = SysctlApplier(profile, runner).apply(self.paths.sysctl_path)
        if forwarding_warning:
            warnings.append(forwarding_warning)
        if artifacts.requires_operator_completion:
            warnings.append(f"Firewall rules not applied; complete {self.paths.firewall_add} and run it")
        else:
            firewall_warning = FirewallApplier(profile, runner).apply(self.paths.firewall_add)
            if firewall_warning:
                warnings.append(firewall_warning)

        warnings.extend(services.enable_and_start())

        # The tunnel service brings up the gateway address the resolver binds to
        if config.dns_mode == DnsMode.RECURSIVE_LOCAL:
            resolver = RecursiveResolver(packages, services, self.paths.resolver_config_path)
            resolver_warning = resolver.configure(config)
            if resolver_warning:
                warnings.append(resolver_warning)

        self._write_install_marker(config, profile, artifacts)
        logger.info(f"Server installed (state: {ProvisionState.INSTALLED.value})")
        return warnings, artifacts.requires_operator_completion

    def _add_peer(self, name: str) -> ProvisionResult:
        """ADD_PEER; never leaves INSTALLED regardless of outcome."""
        config = self.installed_config()
        store = self._store(config)
        authority = store.ensure_authority()

        try:
            peer = store.issue_peer(name, authority)
        except DuplicatePeerError:
            peer = self._unexported_peer(store, name)
            if peer is None:
                raise
        except InvalidNameError:
            raise
        except (TunnelGuardError, OSError, ValueError) as e:
            raise PeerProvisioningError(name, "certificate", e) from e

        try:
            bundle = assemble(
                name,
                authority.certificate_pem,
                peer.certificate_pem,
                peer.private_key_pem,
                endpoint=config.endpoint,
                port=config.port,
                protocol=config.protocol,
            )
        except (TunnelGuardError, ValueError) as e:
            raise PeerProvisioningError(name, "bundle", e) from e

        try:
            bundle_path = self.bundles.write(bundle)
        except OSError as e:
            raise PeerProvisioningError(name, "bundle-file", e) from e

        logger.info(f"Peer '{name}' ready: {bundle_path}")
        return ProvisionResult(state=ProvisionState.INSTALLED, peer_name=name, bundle_path=bundle_path)

    # ------------------------------------------------------------------ #
    # private
    # ------------------------------------------------------------------ #

    def _store(self, config: ProvisionConfig, on_revocation=None) -> IdentityStore:
        return IdentityStore.from_config(self.paths.install_root, config, on_revocation=on_revocation)

    def _unexported_peer(self, store: IdentityStore, name: str) -> Optional[PeerIdentity]:
        """A valid peer whose bundle was never written, or None if the name is really taken."""
        if store.get_peer(name).status != PeerStatus.VALID or self.bundles.path_for(name).exists():
            return None
        logger.warning(f"Peer '{name}' was issued without a bundle; exporting it again")
        try:
            return store.read_peer(name)
        except (OSError, ValueError) as e:
            raise PeerProvisioningError(name, "certificate", e) from e

    def _complete_config(self, config: ProvisionConfig) -> ProvisionConfig:
        """Fill interface and system resolvers from host probes when not given."""
        host = self.collaborators.host
        updates: Dict[str, Any] = {}
        if config.interface is None:
            interface = host.default_interface()
            if interface:
                updates["interface"] = interface
        if config.dns_mode == DnsMode.SYSTEM and not config.system_resolvers:
            updates["system_resolvers"] = host.system_resolvers()
        if not updates:
            return config
        return ProvisionConfig(**{**config.model_dump(mode="json"), **updates})

    def _write_artifacts(self, artifacts: NetworkArtifactSet) -> None:
        atomic_write(self.paths.daemon_config, artifacts.daemon_config)
        atomic_write(self.paths.firewall_add, artifacts.firewall_add_script, mode=SCRIPT_MODE)
        atomic_write(self.paths.firewall_remove, artifacts.firewall_remove_script, mode=SCRIPT_MODE)
        atomic_write(self.paths.sysctl_path, artifacts.forwarding_sysctl)
        logger.info(f"Wrote network artifacts ({self.paths.daemon_config}, {self.paths.firewall_dir})")

    def _write_install_marker(
        self, config: ProvisionConfig, profile: PlatformProfile, artifacts: NetworkArtifactSet
    ) -> None:
        record = {
            "config": config.model_dump(mode="json"),
            "platform": profile.family.value,
            "requires_operator_completion": artifacts.requires_operator_completion,
            "installed_at": datetime.now(timezone.utc).isoformat(),
        }
        atomic_write(self.paths.install_marker, json.dumps(record, indent=2, sort_keys=True) + "\n")

    def _read_install_marker(self) -> Dict[str, Any]:
        try:
            with open(self.paths.install_marker, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            raise NotInstalledError(self.detect_state().value)

