"""
Storage backends for backup archives.

Every backend offers the same capabilities:
- store: copy the local archive to the backend's location
- prune: remove stored backups older than a deadline

Backends never write log output themselves. They report through the log
callback handed in by the backup script so the run log captures everything.
"""

import abc
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from volumebackup.errors import BackendError
from volumebackup.config import LocalConfig
from volumebackup.backup.retention import PrunePolicy, PruneStats


class LogLevel(Enum):
    INFO = 'info'
    WARNING = 'warning'
    ERROR = 'error'


# (level, backend name, message, *args)
LogFunc = Callable[..., None]


class Backend(abc.ABC):
    """Base class of all storage backends."""

    name = 'Backend'

    def __init__(self, log_func: Optional[LogFunc] = None):
        self._log_func = log_func

    def log(self, level: LogLevel, message: str, *args):
        if self._log_func is not None:
            self._log_func(level, self.name, message, *args)

    @abc.abstractmethod
    def store(self, archive_path: str) -> str:
        """
        Copy the archive to the backend.

        Args:
            archive_path: Path to the local archive file

        Returns:
            Location of the stored copy

        Raises:
            BackendError: If the copy fails
        """

    @abc.abstractmethod
    def prune(self, deadline: datetime, prefix: str) -> PruneStats:
        """
        Remove stored backups last modified before the deadline.

        Args:
            deadline: Backups older than this are eligible
            prefix: Only backups whose name starts with prefix are considered

        Returns:
            PruneStats for the backend

        Raises:
            BackendError: If listing or removal fails
        """

    def close(self):
        """Release connections held by the backend."""
        pass

    def apply_prune_policy(self, policy: PrunePolicy, now: datetime) -> Optional[PruneStats]:
        """
        Prune according to a policy.

        Returns None without contacting the backend when pruning is disabled
        or the backend is excluded from pruning.
        """
        if not policy.applies_to(self.name):
            return None
        return self.prune(policy.deadline(now), policy.prefix)

    def do_prune(self, matches: int, candidates: int, description: str,
                 remove: Callable[[], None], deadline: datetime) -> PruneStats:
        """
        Remove matching backups unless that would delete every existing one.

        Args:
            matches: Number of backups older than the deadline
            candidates: Number of existing backups
            description: Human readable description of the backups
            remove: Callable deleting the matching backups
            deadline: Deadline used for matching

        Returns:
            PruneStats with the number of removed backups
        """
        if matches and matches != candidates:
            remove()
            self.log(
                LogLevel.INFO,
                "Pruned %d out of %d %s as they were older than the given deadline of %s.",
                matches, candidates, description, deadline.isoformat()
            )
            return PruneStats(total=candidates, pruned=matches)

        if matches and matches == candidates:
            self.log(LogLevel.WARNING, "The current configuration would delete all %d existing %s.", matches, description)
            self.log(LogLevel.WARNING, "Refusing to do so, please check your configuration.")
            return PruneStats(total=candidates, pruned=0)

        self.log(LogLevel.INFO, "None of %d existing %s were pruned.", candidates, description)
        return PruneStats(total=candidates, pruned=0)


def create_backends(config, log_func: LogFunc, archive_exists: Callable[[str], bool]) -> list:
    """
    Construct one backend per enabled storage target.

    Args:
        config: Config of the run
        log_func: Shared log callback
        archive_exists: Predicate telling whether the local archive directory exists

    Returns:
        List of backends in a fixed order

    Raises:
        BackendError: If a backend cannot be created
    """
    from .s3 import S3Backend
    from .webdav import WebDAVBackend
    from .ssh import SSHBackend
    from .local import LocalBackend
    from .azure import AzureBackend
    from .dropbox import DropboxBackend

    storage = config.storage
    backends = []

    try:
        if storage.aws is not None:
            backends.append(S3Backend(storage.aws, log_func))
        if storage.webdav is not None:
            backends.append(WebDAVBackend(storage.webdav, log_func))
        if storage.ssh is not None:
            backends.append(SSHBackend(storage.ssh, log_func))
        if archive_exists(config.backup.archive):
            local_config = LocalConfig(
                archive_path=config.backup.archive,
                latest_symlink=config.backup.latest_symlink,
            )
            backends.append(LocalBackend(local_config, log_func))
        if storage.azure is not None:
            backends.append(AzureBackend(storage.azure, log_func))
        if storage.dropbox is not None:
            backends.append(DropboxBackend(storage.dropbox, log_func))
    except BackendError:
        # Release the backends that were already connected
        for backend in backends:
            backend.close()
        raise

    return backends


__all__ = ['Backend', 'BackendError', 'LogLevel', 'LogFunc', 'create_backends']
