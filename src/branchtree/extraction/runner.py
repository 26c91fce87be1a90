"""Subprocess wrapper for git and gh invocations."""

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Union

import structlog

from branchtree.errors import CommandError, CommandTimeoutError

logger = structlog.get_logger(__name__)

PathLike = Union[str, Path]


@dataclass
class CommandResult:
    """Captured outcome of one external command."""

    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    """Anything that can run a command in a directory and capture its output."""

    def run(
        self,
        args: Sequence[str],
        cwd: PathLike,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> CommandResult:
        ...


@dataclass
class ProcessRunner:
    """Runs external commands with a bounded timeout.

    Attributes:
        timeout: Default timeout in seconds for each command
        env: Extra environment variables (None keeps the inherited environment)
    """

    timeout: float = 30.0
    env: Optional[dict] = field(default=None)

    def run(
        self,
        args: Sequence[str],
        cwd: PathLike,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> CommandResult:
        """Execute a command and capture stdout/stderr/exit code.

        Args:
            args: Command and arguments (no shell interpolation)
            cwd: Working directory
            timeout: Override for the default timeout
            check: Raise CommandError on a non-zero exit code

        Returns:
            CommandResult

        Raises:
            CommandTimeoutError: If the command exceeded its timeout
            CommandError: If the command could not be started, or failed and check is set
        """
        cmd = list(args)
        limit = timeout if timeout is not None else self.timeout
        logger.debug("command_started", command=" ".join(cmd), cwd=str(cwd))

        try:
            completed = subprocess.run(
                cmd,
                cwd=str(cwd),
                capture_output=True,
                text=True,
                timeout=limit,
                env=self.env,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning("command_timed_out", command=" ".join(cmd), timeout=limit)
            raise CommandTimeoutError(cmd, limit) from e
        except OSError as e:
            # Missing binary or unusable working directory
            logger.warning("command_not_started", command=" ".join(cmd), error=str(e))
            raise CommandError(cmd, 127, stderr=str(e)) from e

        result = CommandResult(
            command=cmd,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

        if check and not result.ok:
            logger.debug(
                "command_failed",
                command=" ".join(cmd),
                returncode=result.returncode,
                stderr=result.stderr.strip()[:500],
            )
            raise CommandError(cmd, result.returncode, stderr=result.stderr, stdout=result.stdout)

        return result
