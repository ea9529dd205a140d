"""
SSH backend uploading archives over SFTP.
"""

import os
import posixpath
import stat
from datetime import datetime, timezone
from operator import itemgetter
from pathlib import Path

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from volumebackup.config import SSHConfig
from volumebackup.errors import BackendError
from volumebackup.backup.retention import PruneStats, select_expired
from . import Backend, LogLevel


class SSHBackend(Backend):
    """
    Backend copying archives to a remote directory via SFTP.

    The connection is opened on construction and held until close().
    """

    name = 'SSH'

    def __init__(self, config: SSHConfig, log_func=None):
        super().__init__(log_func)
        self.host = config.host_name
        self.port = config.port
        self.remote_path = config.remote_path

        self.ssh_client = None
        self.sftp_client = None
        self._connect(config)

    def _connect(self, config: SSHConfig):
        """
        Establish SSH connection.

        Raises:
            BackendError: If connection fails
        """
        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': config.user,
            'timeout': 30
        }

        # Use password or private key
        if config.password:
            connect_kwargs['password'] = config.password
        else:
            key_path = Path(config.identity_file).expanduser()
            if not key_path.exists():
                raise BackendError(self.name, f"no password or identity file found: {config.identity_file}")
            connect_kwargs['key_filename'] = str(key_path)
            if config.identity_passphrase:
                connect_kwargs['passphrase'] = config.identity_passphrase

        self.ssh_client = SSHClient()
        self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        try:
            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            self.ssh_client.close()
            raise BackendError(self.name, f"authentication failed: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            self.ssh_client.close()
            raise BackendError(self.name, f"error connecting to {self.host}: {e}") from e

    def store(self, archive_path: str) -> str:
        name = os.path.basename(archive_path)
        remote = posixpath.join(self.remote_path, name)

        try:
            self.sftp_client.put(archive_path, remote)
        except (IOError, paramiko.SSHException) as e:
            raise BackendError(self.name, f"error uploading {name} to {self.host}: {e}") from e

        self.log(LogLevel.INFO, "Uploaded a copy of backup `%s` to `%s` at path `%s`.", archive_path, self.host, self.remote_path)
        return f"{self.host}:{remote}"

    def list_files(self, prefix: str) -> list:
        """List regular files in the remote directory whose name starts with prefix."""
        files = []
        for item in self.sftp_client.listdir_attr(self.remote_path):
            if stat.S_ISDIR(item.st_mode or 0):
                continue
            if not item.filename.startswith(prefix):
                continue
            files.append({
                'path': posixpath.join(self.remote_path, item.filename),
                'modified': datetime.fromtimestamp(item.st_mtime or 0, tz=timezone.utc),
                'size': item.st_size
            })
        return files

    def prune(self, deadline: datetime, prefix: str) -> PruneStats:
        try:
            candidates = self.list_files(prefix)
        except (IOError, paramiko.SSHException) as e:
            raise BackendError(self.name, f"error reading directory {self.remote_path}: {e}") from e

        matches = select_expired(candidates, itemgetter('modified'), deadline)

        def remove():
            for f in matches:
                try:
                    self.sftp_client.remove(f['path'])
                except (IOError, paramiko.SSHException) as e:
                    raise BackendError(self.name, f"error removing {f['path']}: {e}") from e

        return self.do_prune(len(matches), len(candidates), 'SSH backup(s)', remove, deadline)

    def close(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            self.sftp_client.close()
            self.sftp_client = None

        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None
