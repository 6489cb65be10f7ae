"""Service enable/start/restart. Failures are reported, never raised."""

from typing import List, Optional
import logging

from ..platform.profile import PlatformProfile
from .runner import CommandRunner

logger = logging.getLogger(__name__)


class ServiceManager:
    def __init__(self, profile: PlatformProfile, runner: CommandRunner):
        self.profile = profile
        self.runner = runner

    def enable(self, service: Optional[str] = None) -> bool:
        return self._run("enable", service)

    def start(self, service: Optional[str] = None) -> bool:
        return self._run("start", service)

    def restart(self, service: Optional[str] = None) -> bool:
        return self._run("restart", service)

    def enable_and_start(self, service: Optional[str] = None) -> List[str]:
        """Enable then start; returns warnings for the steps that failed."""
        service = service or self.profile.service_name
        warnings = []
        if not self.enable(service):
            warnings.append(f"Could not enable service {service}")
        if not self.start(service):
            warnings.append(f"Could not start service {service}")
        return warnings

    def _run(self, action: str, service: Optional[str]) -> bool:
        argv = self.profile.service_command(action, service)
        result = self.runner.run(argv)
        if not result.success:
            logger.warning(f"Service {action} failed: '{result.command_line}' exited with {result.returncode}")
            return False
        logger.info(f"Service {action}: {result.command_line}")
        return True
