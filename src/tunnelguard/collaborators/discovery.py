"""
Public Endpoint Discovery

Finds the address peers should connect to. A publicly routable local
address is used directly; otherwise (NAT, cloud instances) the public IP
is asked of external echo services, in order, first valid answer wins.
"""

import ipaddress
from typing import List, Optional, Sequence
import logging

from ..errors import NetworkDiscoveryError
from ..utils.http import DEFAULT_TIMEOUT, StandardClient, get_standard_client

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS = (
    "https://api.seeip.org",
    "https://ifconfig.me",
    "https://api.ipify.org",
)


def is_private_address(address: str) -> bool:
    """True for addresses peers on the internet cannot reach (RFC 1918, loopback, link-local...)."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return not ip.is_global


class PublicEndpointDiscovery:
    def __init__(
        self,
        endpoints: Sequence[str] = DEFAULT_ENDPOINTS,
        client: Optional[StandardClient] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.endpoints: List[str] = list(endpoints)
        self.client = client or get_standard_client()
        self.timeout = timeout

    def discover(self) -> str:
        """
        Query the echo services in order.

        Raises:
            NetworkDiscoveryError: no service returned a valid address
        """
        for url in self.endpoints:
            body = self.client.get_text(url, timeout=self.timeout)
            if not body:
                continue
            candidate = body.split()[0]
            try:
                ipaddress.ip_address(candidate)
            except ValueError:
                logger.warning(f"Ignoring non-address answer from {url}")
                continue
            logger.info(f"Public address {candidate} (via {url})")
            return candidate
        raise NetworkDiscoveryError(self.endpoints)


def resolve_endpoint(local_address: Optional[str], discovery: PublicEndpointDiscovery) -> str:
    """Prefer a public local address, fall back to discovery."""
    if local_address and not is_private_address(local_address):
        return local_address
    return discovery.discover()
