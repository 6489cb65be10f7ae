"""
Host Inspector

Read-only probes of the local host: privilege, TUN device, default route
interface, local address and system resolvers. Every probe reads from
injectable paths so it can run against fixture files.
"""

import ipaddress
import os
import socket
from pathlib import Path
from typing import List, Optional, Union
import logging

from ..errors import CapabilityMissingError, PrivilegeRequiredError

logger = logging.getLogger(__name__)

# systemd-resolved stub listener; the real upstreams live in the runtime file
SYSTEMD_RESOLV_CONF = "/run/systemd/resolve/resolv.conf"


def parse_route_table(text: str) -> Optional[str]:
    """Interface of the default route in /proc/net/route format."""
    for line in text.splitlines()[1:]:
        fields = line.split()
        if len(fields) >= 2 and fields[1] == "00000000":
            return fields[0]
    return None


def parse_resolv_conf(text: str) -> List[str]:
    """IPv4 nameservers usable by peers (loopback stubs excluded)."""
    resolvers = []
    for line in text.splitlines():
        fields = line.split()
        if len(fields) < 2 or fields[0] != "nameserver":
            continue
        try:
            ip = ipaddress.ip_address(fields[1])
        except ValueError:
            continue
        if ip.version == 4 and not ip.is_loopback and fields[1] not in resolvers:
            resolvers.append(fields[1])
    return resolvers


class HostInspector:
    def __init__(
        self,
        tun_device_path: Union[str, Path] = "/dev/net/tun",
        route_table_path: Union[str, Path] = "/proc/net/route",
        resolv_conf_paths: Optional[List[Union[str, Path]]] = None,
    ):
        self.tun_device_path = Path(tun_device_path)
        self.route_table_path = Path(route_table_path)
        self.resolv_conf_paths = [
            Path(p) for p in (resolv_conf_paths or ["/etc/resolv.conf", SYSTEMD_RESOLV_CONF])
        ]

    def require_root(self) -> None:
        euid = os.geteuid()
        if euid != 0:
            raise PrivilegeRequiredError(euid)

    def require_tun(self) -> None:
        if not self.tun_device_path.exists():
            raise CapabilityMissingError("tun", str(self.tun_device_path))

    def default_interface(self) -> Optional[str]:
        try:
            interface = parse_route_table(self.route_table_path.read_text())
        except OSError as e:
            logger.warning(f"Cannot read route table {self.route_table_path}: {e}")
            return None
        if interface is None:
            logger.warning("No default route found")
        return interface

    def local_address(self) -> Optional[str]:
        """Source address the kernel would use for outbound traffic (no packet is sent)."""
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.connect(("1.1.1.1", 53))
                return sock.getsockname()[0]
        except OSError as e:
            logger.warning(f"Cannot determine local address: {e}")
            return None

    def system_resolvers(self) -> List[str]:
        """First resolv.conf in the search list that yields usable resolvers."""
        for path in self.resolv_conf_paths:
            if not path.is_file():
                continue
            resolvers = parse_resolv_conf(path.read_text(encoding="utf-8", errors="replace"))
            if resolvers:
                return resolvers
        logger.warning("No usable system resolvers found")
        return []
