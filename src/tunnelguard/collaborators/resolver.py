"""
Local Recursive Resolver

Optional collaborator for the recursive-local DNS mode: installs unbound,
binds it to the tunnel gateway address and restarts it. A failure is a
warning or fatal depending on the configured ResolverFailurePolicy.
"""

from pathlib import Path
from typing import Optional, Union
import logging

from ..errors import PackageInstallError, ResolverSetupError
from ..schemas.provision import ProvisionConfig, ResolverFailurePolicy
from ..utils.files import atomic_write
from .packages import PackageInstaller
from .services import ServiceManager

logger = logging.getLogger(__name__)

RESOLVER_PACKAGE = "unbound"
RESOLVER_SERVICE = "unbound"


def render_resolver_snippet(config: ProvisionConfig) -> str:
    """Unbound server options restricting the resolver to the tunnel subnet."""
    return "\n".join([
        f"interface: {config.gateway_address}",
        # bind before the tunnel device holds the gateway address
        "ip-freebind: yes",
        f"access-control: {config.subnet_cidr} allow",
        "hide-identity: yes",
        "hide-version: yes",
        "use-caps-for-id: yes",
        "prefetch: yes",
    ]) + "\n"


class RecursiveResolver:
    def __init__(
        self,
        installer: PackageInstaller,
        services: ServiceManager,
        config_path: Union[str, Path] = "/etc/unbound/unbound.conf",
    ):
        self.installer = installer
        self.services = services
        self.config_path = Path(config_path)

    def configure(self, config: ProvisionConfig) -> Optional[str]:
        """
        Install and start the resolver.

        Returns:
            None on success, a warning message on failure under the warn policy

        Raises:
            ResolverSetupError: failure under the fatal policy
        """
        reason = self._setup(config)
        if reason is None:
            return None
        if config.resolver_failure_policy == ResolverFailurePolicy.FATAL:
            raise ResolverSetupError(reason)
        logger.warning(f"Recursive resolver not available: {reason}")
        return f"Recursive resolver not available: {reason}"

    def _setup(self, config: ProvisionConfig) -> Optional[str]:
        try:
            self.installer.install([RESOLVER_PACKAGE])
        except PackageInstallError as e:
            return e.message

        snippet = render_resolver_snippet(config)
        existing = self.config_path.read_text(encoding="utf-8") if self.config_path.exists() else ""
        if snippet not in existing:
            if existing and not existing.endswith("\n"):
                existing += "\n"
            try:
                atomic_write(self.config_path, existing + snippet)
            except OSError as e:
                return f"cannot write {self.config_path}: {e}"

        if not self.services.enable(RESOLVER_SERVICE):
            return f"cannot enable {RESOLVER_SERVICE}"
        if not self.services.restart(RESOLVER_SERVICE):
            return f"cannot restart {RESOLVER_SERVICE}"
        logger.info(f"Recursive resolver listening on {config.gateway_address}")
        return None
