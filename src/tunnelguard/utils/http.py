import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from typing import Optional

from .. import __version__
from ..logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 5


class StandardClient:
    """
    Standard HTTP client for TunnelGuard collaborators.
    Enforces timeouts, retries and standard headers.
    """
    def __init__(self, retries: int = 1):
        self.session = requests.Session()

        retry = Retry(
            total=retries,
            backoff_factor=0.5,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["HEAD", "GET"],
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)

        self.session.headers.update({
            "User-Agent": f"TunnelGuard/{__version__}",
            "Accept": "text/plain",
        })

    def get_text(self, url: str, timeout: int = DEFAULT_TIMEOUT) -> Optional[str]:
        """GET a URL and return its stripped body, or None on any transport/HTTP error."""
        try:
            response = self.session.get(url, timeout=timeout)
            response.raise_for_status()
            return response.text.strip()
        except requests.exceptions.HTTPError as e:
            logger.warning(f"HTTP Error from {url}: {e.response.status_code}")
        except requests.exceptions.RequestException as e:
            logger.warning(f"Network Error from {url}: {e}")
        return None


def get_standard_client() -> StandardClient:
    return StandardClient()
