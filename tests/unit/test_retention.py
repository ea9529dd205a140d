"""
Unit tests for retention policy (volumebackup/backup/retention.py) and the
prune safety net of storage backends.
"""

from datetime import datetime, timedelta, timezone

import pytest

from volumebackup.backup.retention import PrunePolicy, PruneStats, select_expired
from volumebackup.backup.storage import Backend, LogLevel
from volumebackup.config import BackupConfig


NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class TestPrunePolicy:
    """Test eligibility and deadlines."""

    def expired(self, policy, modified):
        return select_expired([modified], lambda m: m, policy.deadline(NOW))

    def test_within_leeway_is_not_eligible(self):
        policy = PrunePolicy(retention_days=7)

        assert self.expired(policy, NOW - timedelta(days=7, seconds=30)) == []

    def test_beyond_leeway_is_eligible(self):
        policy = PrunePolicy(retention_days=7)
        modified = NOW - timedelta(days=7, seconds=90)

        assert self.expired(policy, modified) == [modified]

    def test_exactly_at_deadline_is_not_eligible(self):
        policy = PrunePolicy(retention_days=7)

        assert self.expired(policy, policy.deadline(NOW)) == []

    def test_negative_retention_disables_pruning(self):
        policy = PrunePolicy(retention_days=-1)

        assert policy.enabled is False
        assert policy.applies_to('S3') is False

    def test_zero_retention_keeps_leeway(self):
        policy = PrunePolicy(retention_days=0, leeway=timedelta(minutes=5))

        assert policy.deadline(NOW) == NOW - timedelta(minutes=5)

    def test_skip_is_case_insensitive(self):
        policy = PrunePolicy(retention_days=7, skip=('s3', 'LOCAL'))

        assert policy.applies_to('S3') is False
        assert policy.applies_to('Local') is False
        assert policy.applies_to('WebDAV') is True

    def test_from_config(self):
        backup = BackupConfig(
            retention_days=3,
            pruning_leeway=timedelta(minutes=10),
            pruning_prefix='backup-',
            skip_backends_from_prune=['SSH'],
        )

        policy = PrunePolicy.from_config(backup)

        assert policy == PrunePolicy(3, timedelta(minutes=10), 'backup-', ('SSH',))


def test_select_expired():
    items = [
        {'name': 'old', 'modified': NOW - timedelta(days=10)},
        {'name': 'new', 'modified': NOW - timedelta(days=1)},
    ]

    expired = select_expired(items, lambda item: item['modified'], NOW - timedelta(days=7))

    assert [item['name'] for item in expired] == ['old']


class RecordingBackend(Backend):
    """Backend pruning a fixed list of modification times."""

    name = 'Recording'

    def __init__(self, modified):
        self.messages = []
        super().__init__(lambda level, name, msg, *args: self.messages.append((level, msg % args)))
        self.modified = list(modified)
        self.removed = []

    def store(self, archive_path):
        return archive_path

    def prune(self, deadline, prefix):
        matches = select_expired(self.modified, lambda m: m, deadline)
        return self.do_prune(len(matches), len(self.modified), 'test backup(s)',
                             lambda: self.removed.extend(matches), deadline)


class TestDoPrune:
    """Test the shared prune behaviour of backends."""

    def test_prunes_expired_backups(self):
        backend = RecordingBackend([NOW - timedelta(days=10), NOW - timedelta(days=1)])

        stats = backend.apply_prune_policy(PrunePolicy(retention_days=7), NOW)

        assert stats == PruneStats(total=2, pruned=1)
        assert backend.removed == [NOW - timedelta(days=10)]

    def test_refuses_to_delete_everything(self):
        backend = RecordingBackend([NOW - timedelta(days=10), NOW - timedelta(days=9)])

        stats = backend.apply_prune_policy(PrunePolicy(retention_days=7), NOW)

        assert stats == PruneStats(total=2, pruned=0)
        assert backend.removed == []
        assert any(level is LogLevel.WARNING for level, _ in backend.messages)

    def test_nothing_expired(self):
        backend = RecordingBackend([NOW - timedelta(days=1)])

        stats = backend.apply_prune_policy(PrunePolicy(retention_days=7), NOW)

        assert stats == PruneStats(total=1, pruned=0)

    def test_disabled_policy_does_not_touch_backend(self):
        backend = RecordingBackend([NOW - timedelta(days=10)])
        backend.prune = None  # would fail if called

        assert backend.apply_prune_policy(PrunePolicy(retention_days=-1), NOW) is None

    def test_skipped_backend_is_not_pruned(self):
        backend = RecordingBackend([NOW - timedelta(days=10)])
        backend.prune = None

        assert backend.apply_prune_policy(PrunePolicy(retention_days=7, skip=('recording',)), NOW) is None
