"""
Exception hierarchy for the NLB test application.
"""
from typing import Optional


class NlbTestError(Exception):
    """Base class for all errors raised by the test application."""


class ConfigurationError(NlbTestError):
    """Configuration is missing or invalid. Fatal at startup."""


class RepositoryError(NlbTestError):
    """Base class for content-repository collaborator errors."""


class RepositoryNotFoundError(RepositoryError):
    """No repository is configured under the requested name."""

    def __init__(self, name: str):
        super().__init__(f"Repository '{name}' is not configured")
        self.name = name


class RepositoryOperationError(RepositoryError):
    """A request against a repository endpoint failed."""

    def __init__(self, operation: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.status_code = status_code


class DatabaseBackupError(NlbTestError):
    """The database backup statement could not be executed."""


class OperationCancelledError(NlbTestError):
    """Raised when the stop signal interrupts a pending operation.

    This is a graceful stop, never a failure.
    """
