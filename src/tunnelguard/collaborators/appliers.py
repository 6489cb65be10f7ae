"""
Appliers for the rendered forwarding and firewall artifacts.

Both run after the artifacts are durable on disk; failures are returned as
warnings so the install can still be committed and the operator re-apply.
"""

from pathlib import Path
from typing import Optional, Union
import logging

from ..platform.profile import PlatformFamily, PlatformProfile
from .runner import CommandRunner

logger = logging.getLogger(__name__)


class SysctlApplier:
    def __init__(self, profile: PlatformProfile, runner: CommandRunner):
        self.profile = profile
        self.runner = runner

    def apply(self, sysctl_path: Union[str, Path]) -> Optional[str]:
        if self.profile.family == PlatformFamily.FREEBSD:
            commands = [("sysrc", "gateway_enable=YES"), ("sysctl", "net.inet.ip.forwarding=1")]
        else:
            commands = [("sysctl", "-p", str(sysctl_path))]
        for argv in commands:
            result = self.runner.run(argv)
            if not result.success:
                logger.warning(f"'{result.command_line}' exited with {result.returncode}")
                return f"IP forwarding not applied: '{result.command_line}' failed"
        logger.info("IP forwarding enabled")
        return None


class FirewallApplier:
    def __init__(self, profile: PlatformProfile, runner: CommandRunner):
        self.profile = profile
        self.runner = runner

    def apply(self, script_path: Union[str, Path]) -> Optional[str]:
        if not self.profile.firewall_available:
            return f"Firewall rules not applied on {self.profile.family.value}; see {script_path}"
        result = self.runner.run(("sh", str(script_path)))
        if not result.success:
            logger.warning(f"Firewall script failed ({result.returncode}): {result.stderr.strip()}")
            return f"Firewall rules not applied: {script_path} exited with {result.returncode}"
        logger.info(f"Applied firewall rules from {script_path}")
        return None
