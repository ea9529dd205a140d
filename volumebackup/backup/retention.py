"""
Retention policy for stored backups.

A stored backup is eligible for pruning when it is older than
retention_days plus the pruning leeway. The leeway absorbs cron jitter so
a backup created exactly one retention period ago is not removed early.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Tuple


@dataclass(frozen=True)
class PrunePolicy:
    """
    Pruning settings of a backup run.

    Attributes:
        retention_days: Days to keep backups, negative disables pruning
        leeway: Grace period added on top of the retention period
        prefix: Only backups whose name starts with this are considered
        skip: Names of backends that must not be pruned
    """
    retention_days: int
    leeway: timedelta = timedelta(minutes=1)
    prefix: str = ''
    skip: Tuple[str, ...] = ()

    @classmethod
    def from_config(cls, backup_config) -> 'PrunePolicy':
        return cls(
            retention_days=backup_config.retention_days,
            leeway=backup_config.pruning_leeway,
            prefix=backup_config.pruning_prefix,
            skip=tuple(backup_config.skip_backends_from_prune),
        )

    @property
    def enabled(self) -> bool:
        return self.retention_days >= 0

    def deadline(self, now: datetime) -> datetime:
        """Backups last modified before the returned time are eligible."""
        return now - timedelta(days=self.retention_days) - self.leeway

    def applies_to(self, backend_name: str) -> bool:
        """Check whether the named backend takes part in pruning."""
        if not self.enabled:
            return False
        skipped = {name.lower() for name in self.skip}
        return backend_name.lower() not in skipped


@dataclass
class PruneStats:
    total: int = 0
    pruned: int = 0


def select_expired(items: Iterable, modified: Callable, deadline: datetime) -> list:
    """Return the items last modified before the deadline."""
    return [item for item in items if modified(item) < deadline]
