"""
APScheduler based scheduling of backup runs.

Manages:
- One scheduled job per Config, grouped by sourcing strategy
- Reloading the jobs of a strategy on SIGHUP
- An optional profiling job logging resource usage
"""

import logging
import signal
import sys
import time
from collections import deque
from typing import Dict, List, Optional

import psutil
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from volumebackup.backup.proxy import run_proxy
from volumebackup.backup.script import run_script
from volumebackup.config import FROM_ENVIRONMENT, ConfigStrategy, source_configuration
from volumebackup.errors import SchedulingError, VolumeBackupError, root_cause
from volumebackup.settings import Settings
from volumebackup.utils.cron import parse_cron_expression, will_ever_fire


logger = logging.getLogger(__name__)

PROFILE_JOB_ID = 'profile'


def create_scheduler() -> BackgroundScheduler:
    """
    Create the background scheduler running backup jobs.

    Jobs of different configs run side by side on the thread pool.
    """
    executors = {
        'default': ThreadPoolExecutor(max_workers=Settings.SCHEDULER_MAX_WORKERS)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    kwargs = {}
    if Settings.SCHEDULER_TIMEZONE:
        kwargs['timezone'] = Settings.SCHEDULER_TIMEZONE

    return BackgroundScheduler(executors=executors, job_defaults=job_defaults, **kwargs)


class Command:
    """
    Long running or one-shot entry point of volume-backup.

    Attributes:
        scheduler: APScheduler instance owning all jobs
        schedules: Job ids registered per strategy
    """

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None):
        self.scheduler = scheduler or create_scheduler()
        self.schedules: Dict[ConfigStrategy, List[str]] = {strategy: [] for strategy in ConfigStrategy}
        self.events = deque()

    def reload(self, strategy: ConfigStrategy):
        """
        Replace all jobs of a strategy with the currently sourced configs.

        All cron expressions are parsed before any job is added, so an
        invalid expression leaves the strategy without jobs rather than
        half registered.

        Raises:
            SchedulingError: If sourcing fails or a cron expression is invalid
        """
        strategy = ConfigStrategy(strategy)

        for job_id in self.schedules[strategy]:
            try:
                self.scheduler.remove_job(job_id)
            except JobLookupError:
                pass
        self.schedules[strategy] = []

        try:
            configs = source_configuration(strategy)
        except VolumeBackupError as e:
            raise SchedulingError(f"error sourcing configuration: {e}") from e

        entries = []
        for config in configs:
            expression = config.backup.cron_expression
            try:
                trigger = parse_cron_expression(expression, Settings.SCHEDULER_TIMEZONE)
            except SchedulingError as e:
                raise SchedulingError(f"error adding schedule {expression} for {config.source}: {e}") from e
            entries.append((config, trigger))

        for index, (config, trigger) in enumerate(entries):
            expression = config.backup.cron_expression
            if not will_ever_fire(trigger):
                logger.warning(f"Scheduled cron expression {expression} will never run, is this intentional?")

            job = self.scheduler.add_job(
                func=self._run_entry,
                args=[strategy, config],
                trigger=trigger,
                id=f"backup_{strategy.value}_{index}",
                name=f"Backup: {config.source}",
                replace_existing=True
            )
            self.schedules[strategy].append(job.id)
            logger.info(f"Successfully scheduled backup {config.source} with expression {expression}")

    def _run_entry(self, strategy: ConfigStrategy, config):
        """Execute a scheduled job. Errors are logged, the schedule stays."""
        expression = config.backup.cron_expression
        logger.info(f"Now running script on schedule {expression}")
        try:
            if strategy is ConfigStrategy.LABEL:
                run_proxy(config)
            else:
                run_script(config)
        except Exception as e:
            logger.error(f"Unexpected error running schedule {expression}: {root_cause(e)}")

    def profile(self):
        """Log resource usage of the process."""
        process = psutil.Process()
        memory = process.memory_info()
        logger.info(
            f"Collecting runtime information: rss={memory.rss} vms={memory.vms} "
            f"threads={process.num_threads()} jobs={len(self.scheduler.get_jobs())}"
        )

    def _handle_quit(self, signum, frame):
        self.events.append('quit')

    def _handle_reload(self, signum, frame):
        self.events.append('reload')

    def run_in_foreground(self, profile_cron: Optional[str] = None):
        """
        Schedule all confd and label configs and block until told to quit.

        SIGTERM and SIGINT stop the scheduler after in-flight runs finished.
        SIGHUP reloads the confd and label configs.

        Raises:
            SchedulingError: If scheduling or a reload fails
        """
        self.reload(ConfigStrategy.CONFD)
        self.reload(ConfigStrategy.LABEL)

        if profile_cron:
            trigger = parse_cron_expression(profile_cron, Settings.SCHEDULER_TIMEZONE)
            self.scheduler.add_job(func=self.profile, trigger=trigger, id=PROFILE_JOB_ID, replace_existing=True)

        signal.signal(signal.SIGTERM, self._handle_quit)
        signal.signal(signal.SIGINT, self._handle_quit)
        signal.signal(signal.SIGHUP, self._handle_reload)

        self.scheduler.start()
        logger.info(f"Scheduler started with {len(self.scheduler.get_jobs())} job(s)")

        while True:
            if not self.events:
                time.sleep(Settings.SCHEDULER_POLL_INTERVAL)
                continue

            event = self.events.popleft()
            if event == 'quit':
                logger.info("Received shutdown signal, waiting for running backups to finish")
                self.scheduler.shutdown(wait=True)
                return

            logger.info("Received reload signal, reloading configuration")
            try:
                self.reload(ConfigStrategy.CONFD)
                self.reload(ConfigStrategy.LABEL)
            except SchedulingError as e:
                self.scheduler.shutdown(wait=False)
                raise SchedulingError(f"error reloading configuration: {e}") from e

    def run_as_command(self, source: str = FROM_ENVIRONMENT):
        """
        Run a single backup for the config matching source, then return.

        Env configs run in this process, label configs through the proxy
        container.
        """
        for config in source_configuration(ConfigStrategy.ENV):
            if config.source == source:
                run_script(config)
                return

        for config in source_configuration(ConfigStrategy.LABEL):
            if config.source == source:
                run_proxy(config)
                return

        logger.warning(f"No configuration found for source {source}")

    def must(self, err: Optional[BaseException]):
        """Exit with status 1 when given an error. The only place the process exits forcefully."""
        if err is None:
            return
        logger.error(f"Fatal error running command: {root_cause(err)}")
        sys.exit(1)
