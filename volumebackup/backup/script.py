"""
Backup script - orchestrates a single backup run.

Workflow:
1. Acquire the run lock
2. init(): resolve the filename, connect to Docker, create storage
   backends and the notifier, register hooks
3. Stop labelled containers and create the archive
4. Copy the archive to every backend in parallel
5. Prune old backups on every backend that stored the archive
6. Run hooks: cleanup first, then failure or success notification
"""

import logging
import os
import re
import shutil
import tempfile
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import IntEnum
from io import StringIO
from typing import Callable, List, Optional
from urllib.parse import quote

import docker
from docker.errors import DockerException
from jinja2 import Environment, TemplateError

from volumebackup.config import Config
from volumebackup.errors import (
    AggregateError, BackendError, ConfigValidationError, ContainerError, NotificationError, root_cause
)
from volumebackup.settings import Settings
from volumebackup.utils.env import expand_env
from .compression import archive_extension, create_archive, get_archive_size
from .containers import labeled_commands, stopped_containers
from .lock import acquire_lock
from .notifications import Notifier
from .retention import PrunePolicy
from .stats import Stats, StorageStats
from .storage import LogLevel, create_backends


logger = logging.getLogger(__name__)

_GO_TEMPLATE_FIELD = re.compile(r'\{\{\s*\.(\w+)\s*\}\}')

_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class HookLevel(IntEnum):
    PLUMBING = 0
    ERROR = 1
    INFO = 2


HOOK_LEVELS = {
    'error': HookLevel.ERROR,
    'info': HookLevel.INFO,
}


@dataclass
class Hook:
    level: HookLevel
    action: Callable[[Optional[BaseException]], None]


class RunLogHandler(logging.Handler):
    """Captures the log records of one run into a buffer."""

    def __init__(self, run_id: str):
        super().__init__(level=logging.INFO)
        self.run_id = run_id
        self.buffer = StringIO()
        self.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s: %(message)s'))
        self.addFilter(lambda record: getattr(record, 'run_id', None) == run_id)

    def emit(self, record):
        self.buffer.write(self.format(record) + '\n')

    def getvalue(self) -> str:
        return self.buffer.getvalue()


def render_filename(template: str, compression: str) -> str:
    """
    Render the {{ Extension }} placeholder of a backup filename.

    The ``{{ .Extension }}`` spelling is accepted as well.

    Raises:
        ConfigValidationError: If the template is invalid
    """
    source = _GO_TEMPLATE_FIELD.sub(r'{{ \1 }}', template)
    try:
        return Environment().from_string(source).render(Extension=archive_extension(compression))
    except TemplateError as e:
        raise ConfigValidationError(f"unable to parse backup file extension template: {e}") from e


class Script:
    """
    Holds the state of a single backup run.

    The config is copied on construction, so changes made while running
    (filename expansion, deprecated e-mail settings) never leak back into
    the scheduled config.
    """

    def __init__(self, config: Config):
        self.config = config.copy()
        self.run_id = uuid.uuid4().hex
        self.logger = logging.LoggerAdapter(logger, {'run_id': self.run_id})
        self.stats = Stats(start_time=datetime.now().astimezone())

        self.hooks: List[Hook] = []
        self.hook_level = HookLevel.ERROR
        self.client = None
        self.backends = []
        self.notifier: Optional[Notifier] = None
        self.temp_dir: Optional[str] = None
        self.file: Optional[str] = None

    def register_hook(self, level: HookLevel, action: Callable[[Optional[BaseException]], None]):
        self.hooks.append(Hook(level, action))

    def run_hooks(self, error: Optional[BaseException]):
        """
        Run registered hooks, plumbing first, then by level.

        A hook only runs if its level does not exceed the configured
        notification level. Hook failures are raised when the run itself
        succeeded and only logged otherwise.
        """
        failures = []
        # sorted() is stable, so hooks of the same level keep their order
        for hook in sorted(self.hooks, key=lambda h: h.level):
            if hook.level > self.hook_level:
                continue
            try:
                hook.action(error)
            except Exception as e:
                failures.append(e)

        if not failures:
            return
        hook_error = AggregateError('error running hooks', failures)
        if error is None:
            raise hook_error
        self.logger.error(f"{hook_error}")

    def _log_storage(self, level: LogLevel, backend: str, message: str, *args):
        self.logger.log(_LOG_LEVELS[level], f"[{backend}] {message}", *args)

    def init(self):
        """
        Prepare everything the run needs.

        Raises:
            ConfigValidationError: On an invalid filename template or level
            ContainerError: If the docker client cannot be created
            BackendError: If a storage backend cannot be created
            NotificationError: If a notification URL is not supported
        """
        self.register_hook(HookLevel.PLUMBING, self._stamp_end_time)

        backup = self.config.backup

        filename = render_filename(backup.filename, backup.compression)
        if backup.filename_expand:
            filename = expand_env(filename, self.config.environment)
            backup.latest_symlink = expand_env(backup.latest_symlink, self.config.environment)
            backup.pruning_prefix = expand_env(backup.pruning_prefix, self.config.environment)
        filename = self.stats.start_time.strftime(filename)

        self.temp_dir = tempfile.mkdtemp(prefix='volumebackup-', dir=Settings.TEMP_DIR)
        self.register_hook(HookLevel.PLUMBING, self._remove_temp_dir)
        self.file = os.path.join(self.temp_dir, filename)

        if Settings.docker_available():
            try:
                self.client = docker.from_env()
            except DockerException as e:
                raise ContainerError(f"failed to create docker client: {e}") from e
            self.register_hook(HookLevel.PLUMBING, self._close_client)

        self.backends = create_backends(self.config, self._log_storage, os.path.exists)
        self.register_hook(HookLevel.PLUMBING, self._close_backends)

        email = self.config.notification.email
        if email is not None:
            email_url = (
                f"smtp://{quote(email.smtp_username, safe='')}:{quote(email.smtp_password, safe='')}"
                f"@{email.smtp_host}:{email.smtp_port}/?from={quote(email.sender)}&to={quote(email.recipient)}"
            )
            self.config.notification.urls.append(email_url)
            self.logger.warning(
                "Using EMAIL_* keys for providing notification configuration has been deprecated "
                "and will be removed in the next major version."
            )
            self.logger.warning("Please use NOTIFICATION_URLS instead. Refer to the docs for an upgrade guide.")

        level = self.config.notification.level
        if level not in HOOK_LEVELS:
            raise ConfigValidationError(f"unknown NOTIFICATION_LEVEL {level}")
        self.hook_level = HOOK_LEVELS[level]

        if self.config.notification.urls:
            try:
                self.notifier = Notifier(self.config.notification.urls, self.config.environment)
            except NotificationError as e:
                raise NotificationError(f"error creating sender: {e}") from e

            # Only one of both ever sends, depending on the outcome of the run
            self.register_hook(HookLevel.ERROR, self._notify_failure)
            self.register_hook(HookLevel.INFO, self._notify_success)

    def _stamp_end_time(self, error):
        self.stats.end_time = datetime.now().astimezone()
        self.stats.took_time = self.stats.end_time - self.stats.start_time

    def _remove_temp_dir(self, error):
        shutil.rmtree(self.temp_dir)
        self.logger.info(f"Removed temporary archive directory `{self.temp_dir}`.")

    def _close_client(self, error):
        try:
            self.client.close()
        except DockerException as e:
            raise ContainerError(f"failed to close docker client: {e}") from e

    def _close_backends(self, error):
        failures = []
        for backend in self.backends:
            try:
                backend.close()
            except Exception as e:
                failures.append(BackendError(backend.name, f"error closing backend: {e}"))
        if failures:
            raise AggregateError('error closing storage backends', failures)

    def _notify_failure(self, error):
        if error is None:
            return
        try:
            self.notifier.notify_failure(self.stats, error)
        except NotificationError as e:
            self.logger.error(f"Error sending failure notification: {e}")

    def _notify_success(self, error):
        if error is not None:
            return
        try:
            self.notifier.notify_success(self.stats)
        except NotificationError as e:
            self.logger.error(f"Error sending success notification: {e}")

    def create_archive(self):
        backup = self.config.backup
        self.logger.info(f"Creating archive of `{backup.sources}` (compression: {backup.compression})")
        create_archive(
            backup.sources,
            self.file,
            compression=backup.compression,
            exclude=backup.exclude_regexp,
            parallelism=backup.gzip_parallelism,
        )
        self.logger.info(f"Created backup of `{backup.sources}` at `{self.file}`.")

    def process_archive(self):
        size = get_archive_size(self.file)
        self.stats.backup_file.name = os.path.basename(self.file)
        self.stats.backup_file.full_path = self.file
        self.stats.backup_file.size = size

    def copy_archive(self) -> tuple:
        """
        Store the archive on every backend in parallel.

        Returns:
            Tuple of (backends that stored the archive, collected errors)
        """
        if not self.backends:
            return [], []

        with ThreadPoolExecutor(max_workers=len(self.backends)) as pool:
            futures = [(backend, pool.submit(backend.store, self.file)) for backend in self.backends]

        stored, errors = [], []
        for backend, future in futures:
            storage_stats = self.stats.storages.setdefault(backend.name, StorageStats())
            try:
                storage_stats.location = future.result()
            except Exception as e:
                error = e if isinstance(e, BackendError) else BackendError(backend.name, str(e))
                storage_stats.error = str(error)
                errors.append(error)
                continue
            storage_stats.stored = True
            stored.append(backend)

        if not errors:
            self.logger.info(f"Finished copying backup file to {len(stored)} storage backend(s).")
        return stored, errors

    def prune_backups(self, backends: list) -> list:
        """
        Prune old backups on the given backends in parallel.

        Returns:
            Collected errors
        """
        policy = PrunePolicy.from_config(self.config.backup)
        if not policy.enabled or not backends:
            return []

        now = datetime.now(timezone.utc)
        for backend in backends:
            if not policy.applies_to(backend.name):
                self.logger.info(f"Skipping pruning for backend `{backend.name}`.")

        with ThreadPoolExecutor(max_workers=len(backends)) as pool:
            futures = [(backend, pool.submit(backend.apply_prune_policy, policy, now)) for backend in backends]

        errors = []
        for backend, future in futures:
            storage_stats = self.stats.storages.setdefault(backend.name, StorageStats())
            try:
                prune_stats = future.result()
            except Exception as e:
                error = e if isinstance(e, BackendError) else BackendError(backend.name, str(e))
                storage_stats.error = str(error)
                errors.append(error)
                continue
            if prune_stats is not None:
                storage_stats.total = prune_stats.total
                storage_stats.pruned = prune_stats.pruned

        return errors

    def execute(self):
        """
        Archive, copy and prune.

        Raises:
            AggregateError: If one or more backends failed
        """
        backup = self.config.backup

        with labeled_commands(self.client, backup, 'archive', self.logger):
            with stopped_containers(self.client, backup, self.stats.containers, self.logger):
                self.create_archive()

        with labeled_commands(self.client, backup, 'process', self.logger):
            self.process_archive()

        with labeled_commands(self.client, backup, 'copy', self.logger):
            stored, copy_errors = self.copy_archive()

        with labeled_commands(self.client, backup, 'prune', self.logger):
            prune_errors = self.prune_backups(stored)

        errors = copy_errors + prune_errors
        if errors:
            raise AggregateError(f"{len(errors)} storage backend(s) failed", errors)

    def run(self):
        """
        Perform the backup run.

        Raises:
            LockTimeoutError: If another run holds the lock for too long
            VolumeBackupError: If the run failed
        """
        capture = RunLogHandler(self.run_id)
        package_logger = logging.getLogger('volumebackup')
        package_logger.addHandler(capture)

        try:
            with acquire_lock(Settings.LOCK_FILE, self.config.backup.lock_timeout, self.logger) as waited:
                self.stats.locked_time = waited

                error = None
                try:
                    self.init()
                    self.execute()
                except Exception as e:
                    error = e
                    self.logger.error(f"Fatal error running backup: {root_cause(e)}")
                else:
                    self.logger.info("Finished running backup tasks.")

                self.stats.log_output = capture.getvalue()
                self.run_hooks(error)

            if error is not None:
                raise error
        finally:
            package_logger.removeHandler(capture)


def run_script(config: Config):
    """Run a single backup for the given config."""
    Script(config).run()
