"""
Provisioning state model.

UNINITIALIZED -> INSTALLING -> INSTALLED, with ADD_PEER as a self-loop on
INSTALLED. The state is never stored; it is derived from two on-disk
markers (see ProvisioningOrchestrator.detect_state).
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from ..utils.config import TunnelGuardSettings

INSTALL_MARKER_NAME = "install.json"
DAEMON_CONFIG_NAME = "server.conf"
LOCK_NAME = ".tunnelguard.lock"
FIREWALL_ADD_NAME = "add-openvpn-rules.sh"
FIREWALL_REMOVE_NAME = "rm-openvpn-rules.sh"


class ProvisionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INSTALLING = "installing"
    INSTALLED = "installed"


@dataclass
class ProvisionResult:
    """Outcome of a provisioning session or a single ADD_PEER."""
    state: ProvisionState
    installed: bool = False
    peer_name: Optional[str] = None
    bundle_path: Optional[Path] = None
    requires_operator_completion: bool = False
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class InstallPaths:
    """Where the orchestrator writes; the PKI layout lives under install_root."""
    install_root: Path
    bundle_dir: Path
    firewall_dir: Path
    sysctl_path: Path
    resolver_config_path: Path

    @classmethod
    def at(
        cls,
        install_root: Union[str, Path],
        bundle_dir: Optional[Union[str, Path]] = None,
        firewall_dir: Optional[Union[str, Path]] = None,
        sysctl_path: Optional[Union[str, Path]] = None,
        resolver_config_path: Optional[Union[str, Path]] = None,
    ) -> "InstallPaths":
        """Paths rooted at one directory; handy for tests and chroot-style installs."""
        root = Path(install_root)
        return cls(
            install_root=root,
            bundle_dir=Path(bundle_dir) if bundle_dir else root / "bundles",
            firewall_dir=Path(firewall_dir) if firewall_dir else root / "iptables",
            sysctl_path=Path(sysctl_path) if sysctl_path else root / "sysctl" / "99-openvpn.conf",
            resolver_config_path=Path(resolver_config_path) if resolver_config_path else root / "unbound.conf",
        )

    @classmethod
    def from_settings(cls, settings: TunnelGuardSettings) -> "InstallPaths":
        return cls(
            install_root=Path(settings.INSTALL_ROOT),
            bundle_dir=Path(settings.BUNDLE_DIR),
            firewall_dir=Path(settings.FIREWALL_DIR),
            sysctl_path=Path(settings.SYSCTL_PATH),
            resolver_config_path=Path(settings.RESOLVER_CONFIG_PATH),
        )

    @property
    def daemon_config(self) -> Path:
        return self.install_root / DAEMON_CONFIG_NAME

    @property
    def install_marker(self) -> Path:
        return self.install_root / INSTALL_MARKER_NAME

    @property
    def lock(self) -> Path:
        return self.install_root / LOCK_NAME

    @property
    def firewall_add(self) -> Path:
        return self.firewall_dir / FIREWALL_ADD_NAME

    @property
    def firewall_remove(self) -> Path:
        return self.firewall_dir / FIREWALL_REMOVE_NAME
