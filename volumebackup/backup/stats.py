"""
Statistics collected during a backup run.

The stats are handed to notification templates, so field names double as
template variables (e.g. ``stats.backup_file.size``).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional


@dataclass
class ContainersStats:
    all: int = 0
    to_stop: int = 0
    stopped: int = 0
    start_errors: int = 0


@dataclass
class BackupFileStats:
    name: str = ''
    full_path: str = ''
    size: int = 0


@dataclass
class StorageStats:
    stored: bool = False
    location: str = ''
    total: int = 0
    pruned: int = 0
    error: Optional[str] = None


STORAGE_NAMES = ('S3', 'WebDAV', 'SSH', 'Local', 'Azure', 'Dropbox')


@dataclass
class Stats:
    start_time: datetime
    end_time: Optional[datetime] = None
    took_time: timedelta = timedelta(0)
    locked_time: timedelta = timedelta(0)
    log_output: str = ''
    containers: ContainersStats = field(default_factory=ContainersStats)
    backup_file: BackupFileStats = field(default_factory=BackupFileStats)
    storages: Dict[str, StorageStats] = field(
        default_factory=lambda: {name: StorageStats() for name in STORAGE_NAMES}
    )
