"""
Platform Profile Resolver

Maps OS release metadata to one PlatformProfile record carrying the
package-manager, service-manager and firewall capabilities of that family.
The profile is resolved once per session and passed everywhere.

Unrecognized identifiers are fatal. There is no ID_LIKE fallback: applying
the wrong family's package verbs can leave a host half-configured.
"""

import platform as _platform
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple

import logging

from ..errors import UnsupportedPlatformError

logger = logging.getLogger(__name__)


class PlatformFamily(str, Enum):
    DEBIAN = "debian"
    FEDORA = "fedora"
    CENTOS = "centos"
    ORACLE = "oracle"
    AMZN = "amzn"
    ARCH = "arch"
    FREEBSD = "freebsd"
    UNKNOWN = "unknown"


DEFAULT_PACKAGES = ("openvpn", "iptables", "openssl", "wget", "ca-certificates", "curl")


@dataclass(frozen=True)
class PlatformProfile:
    """Capabilities of one OS family."""
    family: PlatformFamily
    package_install_verb: Tuple[str, ...]
    service_enable_verb: Tuple[str, ...]
    service_start_verb: Tuple[str, ...]
    service_restart_verb: Tuple[str, ...]
    package_prepare_verbs: Tuple[Tuple[str, ...], ...] = ()
    firewall_available: bool = True
    daemon_group: str = "nobody"
    service_name: str = "openvpn@server"
    service_style: str = "systemd"
    packages: Tuple[str, ...] = DEFAULT_PACKAGES

    def service_command(self, action: str, service: Optional[str] = None) -> Tuple[str, ...]:
        """Build the service-manager argv for enable, start or restart."""
        service = service or self.service_name
        verbs = {
            "enable": self.service_enable_verb,
            "start": self.service_start_verb,
            "restart": self.service_restart_verb,
        }
        verb = verbs[action]
        if self.service_style == "rc":
            if action == "enable":
                return verb + (f"{service}_enable=YES",)
            return verb + (service, action)
        return verb + (service,)


@dataclass(frozen=True)
class OsMetadata:
    """Raw detection inputs: release ID and kernel name."""
    os_id: Optional[str]
    kernel_name: Optional[str]


# /etc/os-release ID -> family
OS_ID_FAMILIES: Dict[str, PlatformFamily] = {
    "debian": PlatformFamily.DEBIAN,
    "ubuntu": PlatformFamily.DEBIAN,
    "raspbian": PlatformFamily.DEBIAN,
    "fedora": PlatformFamily.FEDORA,
    "centos": PlatformFamily.CENTOS,
    "rocky": PlatformFamily.CENTOS,
    "almalinux": PlatformFamily.CENTOS,
    "ol": PlatformFamily.ORACLE,
    "amzn": PlatformFamily.AMZN,
    "arch": PlatformFamily.ARCH,
    "freebsd": PlatformFamily.FREEBSD,
}

KERNEL_FAMILIES: Dict[str, PlatformFamily] = {
    "FreeBSD": PlatformFamily.FREEBSD,
}

_SYSTEMD_ENABLE = ("systemctl", "enable")
_SYSTEMD_START = ("systemctl", "start")
_SYSTEMD_RESTART = ("systemctl", "restart")
_YUM_INSTALL = ("yum", "install", "-y")

PROFILES: Dict[PlatformFamily, PlatformProfile] = {
    PlatformFamily.DEBIAN: PlatformProfile(
        family=PlatformFamily.DEBIAN,
        package_install_verb=("apt-get", "install", "-y"),
        package_prepare_verbs=(("apt-get", "update"),),
        service_enable_verb=_SYSTEMD_ENABLE,
        service_start_verb=_SYSTEMD_START,
        service_restart_verb=_SYSTEMD_RESTART,
        daemon_group="nogroup",
    ),
    PlatformFamily.FEDORA: PlatformProfile(
        family=PlatformFamily.FEDORA,
        package_install_verb=("dnf", "install", "-y"),
        service_enable_verb=_SYSTEMD_ENABLE,
        service_start_verb=_SYSTEMD_START,
        service_restart_verb=_SYSTEMD_RESTART,
    ),
    PlatformFamily.CENTOS: PlatformProfile(
        family=PlatformFamily.CENTOS,
        package_install_verb=_YUM_INSTALL,
        package_prepare_verbs=(_YUM_INSTALL + ("epel-release",),),
        service_enable_verb=_SYSTEMD_ENABLE,
        service_start_verb=_SYSTEMD_START,
        service_restart_verb=_SYSTEMD_RESTART,
    ),
    PlatformFamily.ORACLE: PlatformProfile(
        family=PlatformFamily.ORACLE,
        package_install_verb=_YUM_INSTALL,
        package_prepare_verbs=(_YUM_INSTALL + ("epel-release",),),
        service_enable_verb=_SYSTEMD_ENABLE,
        service_start_verb=_SYSTEMD_START,
        service_restart_verb=_SYSTEMD_RESTART,
    ),
    PlatformFamily.AMZN: PlatformProfile(
        family=PlatformFamily.AMZN,
        package_install_verb=_YUM_INSTALL,
        service_enable_verb=_SYSTEMD_ENABLE,
        service_start_verb=_SYSTEMD_START,
        service_restart_verb=_SYSTEMD_RESTART,
    ),
    PlatformFamily.ARCH: PlatformProfile(
        family=PlatformFamily.ARCH,
        package_install_verb=("pacman", "-Syu", "--noconfirm"),
        service_enable_verb=_SYSTEMD_ENABLE,
        service_start_verb=_SYSTEMD_START,
        service_restart_verb=_SYSTEMD_RESTART,
    ),
    PlatformFamily.FREEBSD: PlatformProfile(
        family=PlatformFamily.FREEBSD,
        package_install_verb=("pkg", "install", "-y"),
        service_enable_verb=("sysrc",),
        service_start_verb=("service",),
        service_restart_verb=("service",),
        # iptables does not exist on FreeBSD; rules are rendered for the operator only
        firewall_available=False,
        service_name="openvpn",
        service_style="rc",
        packages=("openvpn", "openssl", "wget", "ca_root_nss", "curl"),
    ),
}


def parse_os_release(text: str) -> Dict[str, str]:
    """Parse KEY=value lines of an os-release file."""
    fields = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        fields[key.strip()] = value.strip().strip('"').strip("'")
    return fields


def read_os_metadata(
    os_release_path: str = "/etc/os-release",
    arch_release_path: str = "/etc/arch-release",
) -> OsMetadata:
    """
    Read the detection inputs once.

    Order: os-release ID, then the Arch marker file, then the kernel name.
    """
    os_release = Path(os_release_path)
    if os_release.is_file():
        fields = parse_os_release(os_release.read_text(encoding="utf-8", errors="replace"))
        return OsMetadata(os_id=fields.get("ID"), kernel_name=_platform.system())
    if Path(arch_release_path).exists():
        return OsMetadata(os_id="arch", kernel_name=_platform.system())
    return OsMetadata(os_id=None, kernel_name=_platform.system())


def classify(os_id: Optional[str], kernel_name: Optional[str] = None) -> PlatformFamily:
    """Pure classification into the closed family enum."""
    if os_id:
        return OS_ID_FAMILIES.get(os_id.strip().lower(), PlatformFamily.UNKNOWN)
    if kernel_name:
        return KERNEL_FAMILIES.get(kernel_name.strip(), PlatformFamily.UNKNOWN)
    return PlatformFamily.UNKNOWN


def resolve_platform(os_id: Optional[str], kernel_name: Optional[str] = None) -> PlatformProfile:
    """
    Resolve the platform profile for the given OS metadata.

    Raises:
        UnsupportedPlatformError: if the identifier is not in the known set
    """
    family = classify(os_id, kernel_name)
    if family == PlatformFamily.UNKNOWN:
        raise UnsupportedPlatformError(os_id, kernel_name)
    logger.info(f"Resolved platform family: {family.value}")
    return PROFILES[family]


def detect_platform(
    os_release_path: str = "/etc/os-release",
    arch_release_path: str = "/etc/arch-release",
) -> PlatformProfile:
    """Read OS metadata from the host and resolve it."""
    metadata = read_os_metadata(os_release_path, arch_release_path)
    return resolve_platform(metadata.os_id, metadata.kernel_name)
