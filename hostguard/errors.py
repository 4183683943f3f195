"""
Exception hierarchy for hostguard.

Library code raises these; the interactive menus catch HostGuardError,
report it and return to the menu loop.
"""

from typing import List, Optional


class HostGuardError(Exception):
    """Base exception for hostguard errors."""

    pass


class NotRootError(HostGuardError):
    """Raised when root privileges are required but missing."""

    pass


class UnsupportedPackageManagerError(HostGuardError):
    """Raised when none of apt-get, dnf or yum is available."""

    pass


class PackageInstallError(HostGuardError):
    """Raised when a package could not be installed or removed."""

    pass


class ConfigFileNotFoundError(HostGuardError):
    """Raised when a managed configuration file is missing."""

    pass


class ParseAmbiguousError(HostGuardError):
    """Raised when a line cannot be classified safely."""

    pass


class ValidationFailedError(HostGuardError):
    """Raised when a service's own config test rejects the configuration."""

    def __init__(self, service: str, output: str = "") -> None:
        self.service = service
        self.output = output
        message = f"Configuration test for {service} failed"
        if output:
            message += f": {output}"
        super().__init__(message)


class ServiceRestartFailedError(HostGuardError):
    """Raised when a service does not come back after a restart."""

    pass


class CommandFailedError(HostGuardError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(
        self, cmd: List[str], returncode: int, stdout: str = "", stderr: str = ""
    ) -> None:
        self.cmd = cmd
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"Command failed (code {returncode}): {' '.join(cmd)}"
        if stderr:
            message += f"\nError: {stderr.strip()}"
        super().__init__(message)


class CommandTimeoutError(HostGuardError):
    """Raised when an external command exceeds its timeout."""

    def __init__(self, cmd: List[str], timeout: float) -> None:
        self.cmd = cmd
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout} seconds: {' '.join(cmd)}")


class PartialMultiFileWriteError(HostGuardError):
    """
    Raised when a layered write changed one file but failed on the next.

    Attributes:
        completed: Paths that were written successfully.
        failed: Path of the write that failed.
        cause: The underlying exception.
    """

    def __init__(
        self, completed: List[str], failed: str, cause: Optional[BaseException] = None
    ) -> None:
        self.completed = completed
        self.failed = failed
        self.cause = cause
        message = (
            f"Partial write: updated {', '.join(completed)} "
            f"but failed to write {failed}"
        )
        if cause is not None:
            message += f" ({cause})"
        super().__init__(message)


class PreconditionError(HostGuardError):
    """Raised when a safety precondition for a destructive action is unmet."""

    pass


class InvalidInputError(HostGuardError):
    """Raised when operator input (port, key, hostname, token) is malformed."""

    pass
