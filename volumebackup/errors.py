"""
Exception hierarchy for volume-backup.

Errors are raised with added context (``raise ... from err``) as they
propagate, so the original cause stays reachable through ``__cause__``.
"""

from typing import Iterable, List, Optional


class VolumeBackupError(Exception):
    """Base class for all errors raised by volume-backup."""
    pass


class ConfigConflictError(VolumeBackupError):
    """Raised when two variables claim the same configuration value."""
    pass


class ConfigValidationError(VolumeBackupError):
    """Raised when a configuration value cannot be decoded."""
    pass


class LockTimeoutError(VolumeBackupError):
    """Raised when the run lock could not be acquired in time."""
    pass


class SchedulingError(VolumeBackupError):
    """Raised when a cron expression cannot be registered."""
    pass


class NotificationError(VolumeBackupError):
    """Raised when rendering or sending a notification fails."""
    pass


class ContainerError(VolumeBackupError):
    """Raised when stopping, restarting or exec-ing into containers fails."""
    pass


class ArchiveError(VolumeBackupError):
    """Raised when archive creation fails."""
    pass


class BackendError(VolumeBackupError):
    """
    Raised when a single storage backend fails.

    Args:
        backend: Name of the failing backend (e.g. ``S3``)
        message: Description of the failure
    """

    def __init__(self, backend: str, message: str):
        self.backend = backend
        super().__init__(f"{backend}: {message}")


class AggregateError(VolumeBackupError):
    """Collects several errors that occurred side by side."""

    def __init__(self, message: str, errors: Iterable[BaseException]):
        self.errors: List[BaseException] = list(errors)
        details = '; '.join(str(e) for e in self.errors)
        super().__init__(f"{message}: {details}" if details else message)


def root_cause(err: Optional[BaseException]) -> Optional[BaseException]:
    """
    Walk the ``__cause__`` chain of an exception down to its origin.

    Args:
        err: Exception to unwrap (may be None)

    Returns:
        The innermost exception, or None if err is None
    """
    while err is not None and err.__cause__ is not None:
        err = err.__cause__
    return err
