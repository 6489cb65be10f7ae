"""
Command Runner

Single seam through which collaborators touch the host's package and
service managers. Tests substitute a recording runner.
"""

import os
import subprocess
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple
import logging

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600


@dataclass
class CommandResult:
    """Result of a host command."""
    argv: Tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def command_line(self) -> str:
        return " ".join(self.argv)


class CommandRunner:
    """Runs argv lists with captured output and a timeout."""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT):
        self.timeout = timeout

    def run(
        self,
        argv: Sequence[str],
        timeout: Optional[int] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        argv = tuple(argv)
        run_env = None
        if env:
            run_env = dict(os.environ)
            run_env.update(env)

        logger.debug(f"Running: {' '.join(argv)}")
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
                env=run_env,
            )
        except FileNotFoundError:
            logger.warning(f"Command not found: {argv[0]}")
            return CommandResult(argv, 127, stderr=f"{argv[0]}: command not found")
        except subprocess.TimeoutExpired:
            logger.warning(f"Command timed out: {' '.join(argv)}")
            return CommandResult(argv, 124, stderr="timed out")

        if result.returncode != 0:
            logger.debug(f"'{' '.join(argv)}' exited with {result.returncode}: {result.stderr.strip()}")
        return CommandResult(argv, result.returncode, result.stdout, result.stderr)
