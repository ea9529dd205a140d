"""
Local filesystem backend.

Copies the archive into the archive directory, usually a bind mount on the
host, and optionally maintains a symlink pointing at the latest copy.
"""

import glob
import os
import shutil
from datetime import datetime, timezone
from operator import itemgetter

from volumebackup.config import LocalConfig
from volumebackup.errors import BackendError
from volumebackup.backup.retention import PruneStats, select_expired
from . import Backend, LogLevel


class LocalBackend(Backend):
    """
    Backend storing backups in a local directory.
    """

    name = 'Local'

    def __init__(self, config: LocalConfig, log_func=None):
        super().__init__(log_func)
        self.archive_path = config.archive_path
        self.latest_symlink = config.latest_symlink

    def store(self, archive_path: str) -> str:
        """
        Copy archive to the archive directory.

        Args:
            archive_path: Path to the local archive file

        Returns:
            Path of the stored copy

        Raises:
            BackendError: If copying or linking fails
        """
        if not os.path.exists(archive_path):
            raise BackendError(self.name, f"source file not found: {archive_path}")

        name = os.path.basename(archive_path)
        dest_path = os.path.join(self.archive_path, name)

        try:
            shutil.copy2(archive_path, dest_path)
        except PermissionError as e:
            raise BackendError(self.name, f"permission denied writing to {dest_path}: {e}") from e
        except OSError as e:
            raise BackendError(self.name, f"error copying file to archive: {e}") from e

        self.log(LogLevel.INFO, "Stored copy of backup `%s` in `%s`.", archive_path, self.archive_path)

        if self.latest_symlink:
            symlink = os.path.join(self.archive_path, self.latest_symlink)
            try:
                if os.path.lexists(symlink):
                    os.remove(symlink)
                # Relative target so the link survives a different mount point on the host
                os.symlink(name, symlink)
            except OSError as e:
                raise BackendError(self.name, f"error creating latest symlink: {e}") from e
            self.log(LogLevel.INFO, "Created/Updated symlink `%s` for latest backup.", self.latest_symlink)

        return dest_path

    def list_files(self, prefix: str) -> list:
        """
        List stored backups matching the prefix.

        Symlinks are never returned so the latest symlink is not pruned.

        Returns:
            List of dicts with 'path', 'modified', and 'size' keys
        """
        pattern = os.path.join(self.archive_path, glob.escape(prefix) + '*')
        files = []

        for path in glob.glob(pattern):
            if os.path.islink(path) or not os.path.isfile(path):
                continue
            stat = os.stat(path)
            files.append({
                'path': path,
                'modified': datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                'size': stat.st_size
            })

        return files

    def prune(self, deadline: datetime, prefix: str) -> PruneStats:
        try:
            candidates = self.list_files(prefix)
        except OSError as e:
            raise BackendError(self.name, f"error listing existing backups: {e}") from e

        matches = select_expired(candidates, itemgetter('modified'), deadline)

        def remove():
            failed = []
            for f in matches:
                try:
                    os.remove(f['path'])
                except OSError as e:
                    failed.append(f"{f['path']}: {e}")
            if failed:
                raise BackendError(
                    self.name,
                    f"{len(failed)} error(s) deleting files, starting with: {failed[0]}"
                )

        return self.do_prune(len(matches), len(candidates), 'local backup(s)', remove, deadline)
