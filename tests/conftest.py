"""
Shared pytest fixtures for volume-backup tests.

This module provides fixtures for:
- Isolated process settings (lock file, temp and config directories)
- Source data directories to archive
- Config factories
- Fake storage backends
"""

import os
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from volumebackup.backup.retention import PruneStats
from volumebackup.backup.storage import Backend
from volumebackup.config import Config, BackupConfig, NotificationConfig, StorageConfig
from volumebackup.errors import BackendError
from volumebackup.settings import Settings


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """
    Point every process level path into the test's temp directory.

    Docker is reported as unavailable unless a test says otherwise.
    """
    runtime = tmp_path / 'runtime'
    (runtime / 'tmp').mkdir(parents=True)

    monkeypatch.setattr(Settings, 'LOCK_FILE', str(runtime / 'dockervolumebackup.lock'))
    monkeypatch.setattr(Settings, 'TEMP_DIR', str(runtime / 'tmp'))
    monkeypatch.setattr(Settings, 'CONFD_DIR', str(runtime / 'conf.d'))
    monkeypatch.setattr(Settings, 'NOTIFICATIONS_DIR', str(runtime / 'notifications.d'))
    monkeypatch.setattr(Settings, 'docker_available', classmethod(lambda cls: False))

    return runtime


@pytest.fixture
def source_dir(tmp_path):
    """
    Create a directory with test files to back up.

    Structure:
        backup/
            file1.txt
            file2.txt
            subdir/
                file3.txt
            cache/
                skip.tmp
    """
    base = tmp_path / 'backup'
    base.mkdir()

    (base / 'file1.txt').write_text('content of file 1')
    (base / 'file2.txt').write_text('content of file 2')

    subdir = base / 'subdir'
    subdir.mkdir()
    (subdir / 'file3.txt').write_text('content of file 3')

    cache = base / 'cache'
    cache.mkdir()
    (cache / 'skip.tmp').write_text('temporary')

    return base


@pytest.fixture
def archive_dir(tmp_path):
    """Directory acting as the local archive."""
    path = tmp_path / 'archive'
    path.mkdir()
    return path


@pytest.fixture
def make_config(source_dir, tmp_path):
    """
    Factory for Configs backing up source_dir.

    Keyword arguments override BackupConfig fields. The archive defaults
    to a path that does not exist, so no local backend is created.
    """
    def factory(notification=None, storage=None, environment=None, **backup):
        backup.setdefault('sources', str(source_dir))
        backup.setdefault('archive', str(tmp_path / 'no-archive'))
        return Config(
            source='test',
            backup=BackupConfig(**backup),
            notification=notification or NotificationConfig(),
            storage=storage or StorageConfig(),
            environment=environment or {},
        )

    return factory


class FakeBackend(Backend):
    """In-memory backend recording calls."""

    def __init__(self, name='Fake', fail_store=False, fail_prune=False):
        super().__init__(None)
        self.name = name
        self.fail_store = fail_store
        self.fail_prune = fail_prune
        self.stored = []
        self.pruned = []
        self.closed = False

    def store(self, archive_path):
        if self.fail_store:
            raise BackendError(self.name, 'store failed')
        self.stored.append(archive_path)
        return f"fake://{os.path.basename(archive_path)}"

    def prune(self, deadline: datetime, prefix: str):
        if self.fail_prune:
            raise BackendError(self.name, 'prune failed')
        self.pruned.append((deadline, prefix))
        return PruneStats(total=3, pruned=1)

    def close(self):
        self.closed = True


@pytest.fixture
def fake_backend_class():
    return FakeBackend


@pytest.fixture
def mock_docker_client():
    """Docker client mock with no containers."""
    client = MagicMock()
    client.containers.list.return_value = []
    return client
