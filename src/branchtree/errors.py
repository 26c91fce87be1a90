"""Exception hierarchy for branchtree."""

from typing import List, Optional, Sequence


class BranchTreeError(Exception):
    """Base exception for branchtree errors"""
    pass


class ValidationError(BranchTreeError):
    """Raised when caller input is missing or malformed"""
    pass


class NotFoundError(BranchTreeError):
    """Raised when a pin, session, branch or path does not exist"""
    pass


class ConflictError(BranchTreeError):
    """Raised for rebase conflicts, push rejections and inconsistent designs"""
    pass


class CommandError(BranchTreeError):
    """Raised when an external command fails"""
    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        stderr: str = "",
        stdout: str = "",
        message: Optional[str] = None,
    ):
        self.command: List[str] = list(command)
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        super().__init__(
            message
            or f"Command {' '.join(self.command)} failed with code {returncode}: {self.detail}"
        )

    @property
    def detail(self) -> str:
        """The tool's own explanation of the failure."""
        return (self.stderr or self.stdout).strip()


class CommandTimeoutError(CommandError):
    """Raised when an external command exceeds its timeout"""
    def __init__(self, command: Sequence[str], timeout: float):
        self.timeout = timeout
        super().__init__(
            command,
            returncode=-1,
            stderr=f"timed out after {timeout}s",
            message=f"Command timed out after {timeout}s: {' '.join(command)}",
        )


class ScanFailedError(BranchTreeError):
    """Raised when a scan produced no snapshot at all"""
    pass
