"""OS command execution.

Every system utility the daemon talks to (netstat, route, networksetup,
ping) goes through a :class:`CommandRunner`, so components never call
``subprocess`` directly and tests can substitute a scripted runner.
"""

import subprocess
from dataclasses import dataclass
from typing import Optional

from .logging import get_logger

logger = get_logger("utils.process")

# Return codes used when the utility never produced one
RC_NOT_FOUND = 127
RC_TIMEOUT = 124


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one utility invocation."""
    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, as the utility printed them."""
        return self.stdout + self.stderr


class CommandRunner:
    """Runs system utilities without a shell and captures their output."""

    def __init__(self, default_timeout: Optional[float] = 30.0):
        self._default_timeout = default_timeout

    def run(
        self,
        args: list[str],
        timeout: Optional[float] = None,
        sudo: bool = False,
    ) -> CommandResult:
        """Execute ``args`` and return its :class:`CommandResult`.

        A missing binary or an expired timeout is reported as a failed
        result rather than raised, so callers handle every failure the
        same way.
        """
        cmd = ["sudo", "-n"] + list(args) if sudo else list(args)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout if timeout is not None else self._default_timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning("command_timeout", cmd=" ".join(cmd))
            return CommandResult(tuple(cmd), RC_TIMEOUT, "", "timeout")
        except FileNotFoundError:
            logger.error("command_not_found", cmd=cmd[0])
            return CommandResult(tuple(cmd), RC_NOT_FOUND, "", f"{cmd[0]} not found")

        if result.returncode != 0:
            logger.debug(
                "command_failed",
                cmd=" ".join(cmd),
                returncode=result.returncode,
                stderr=result.stderr.strip(),
            )
        return CommandResult(tuple(cmd), result.returncode, result.stdout, result.stderr)
