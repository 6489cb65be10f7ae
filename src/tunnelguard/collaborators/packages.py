"""OS package installation through the platform's package manager."""

from typing import Sequence
import logging

from ..errors import PackageInstallError
from ..platform.profile import PlatformFamily, PlatformProfile
from .runner import CommandRunner

logger = logging.getLogger(__name__)

_NONINTERACTIVE_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class PackageInstaller:
    def __init__(self, profile: PlatformProfile, runner: CommandRunner):
        self.profile = profile
        self.runner = runner

    def install(self, packages: Sequence[str] = ()) -> None:
        """
        Run the prepare verbs, then install the given packages
        (the profile's tunnel packages when none are given).

        Raises:
            PackageInstallError: any package-manager command exits non-zero
        """
        packages = tuple(packages) or self.profile.packages
        env = _NONINTERACTIVE_ENV if self.profile.family == PlatformFamily.DEBIAN else None

        for verb in self.profile.package_prepare_verbs:
            self._run(verb, env)
        self._run(self.profile.package_install_verb + packages, env)
        logger.info(f"Installed packages: {', '.join(packages)}")

    def _run(self, argv, env) -> None:
        result = self.runner.run(argv, env=env)
        if not result.success:
            raise PackageInstallError(result.command_line, result.returncode)
