"""
Run lock serializing backup runs on the same host.
"""

import fcntl
import os
import time
from contextlib import contextmanager
from datetime import timedelta

from volumebackup.errors import LockTimeoutError


LOCK_POLL_INTERVAL = 0.5


@contextmanager
def acquire_lock(path: str, timeout: timedelta, logger=None):
    """
    Hold an exclusive flock on path for the duration of the block.

    Args:
        path: Lock file, created if missing
        timeout: How long to wait for another run to release the lock
        logger: Optional logger used to report waiting

    Yields:
        Time spent waiting for the lock

    Raises:
        LockTimeoutError: If the lock is not released within timeout
    """
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    fd = os.open(path, os.O_CREAT | os.O_RDWR, 0o644)

    try:
        start = time.monotonic()
        deadline = start + timeout.total_seconds()
        reported = False

        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if not reported and logger is not None:
                    logger.info("Waiting for another backup run to release the lock.")
                    reported = True
                if time.monotonic() >= deadline:
                    raise LockTimeoutError(f"timed out waiting for lockfile after {timeout}")
                time.sleep(LOCK_POLL_INTERVAL)

        waited = timedelta(seconds=time.monotonic() - start)
        try:
            yield waited
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
