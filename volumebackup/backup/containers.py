"""
Docker interaction of a backup run.

- stopped_containers: stop labelled containers for the duration of a block
- labeled_commands: run pre/post commands declared as container labels
"""

from contextlib import contextmanager
from typing import List, Optional

from docker.errors import DockerException

from volumebackup.errors import AggregateError, ContainerError
from volumebackup.backup.stats import ContainersStats


LABEL_STOP_DURING_BACKUP = 'docker-volume-backup.stop-during-backup'
LABEL_EXEC = 'docker-volume-backup.exec-label'
LIFECYCLE_PHASES = ('archive', 'process', 'copy', 'prune')


def _name(container) -> str:
    return getattr(container, 'name', None) or container.id


@contextmanager
def stopped_containers(client, backup_config, stats: ContainersStats, logger):
    """
    Stop the containers labelled for the backup and restart them afterwards.

    Containers are restarted on every exit path. Restart failures are
    raised together with the error of the block, if any.

    Args:
        client: docker.DockerClient, None when Docker is not available
        backup_config: BackupConfig of the run
        stats: ContainersStats to fill in
        logger: Logger or adapter of the run

    Raises:
        ContainerError: If stopping or restarting fails
    """
    if client is None:
        yield
        return

    label = backup_config.stop_during_backup_label
    if backup_config.stop_container_label:
        logger.warning(
            "Using BACKUP_STOP_CONTAINER_LABEL has been deprecated and will be removed in the next major version."
        )
        logger.warning("Please use BACKUP_STOP_DURING_BACKUP_LABEL instead. Refer to the docs for an upgrade guide.")
        label = backup_config.stop_container_label

    try:
        all_containers = client.containers.list()
        to_stop = client.containers.list(filters={'label': f"{LABEL_STOP_DURING_BACKUP}={label}"})
    except DockerException as e:
        raise ContainerError(f"error querying for containers: {e}") from e

    stats.all = len(all_containers)
    stats.to_stop = len(to_stop)

    if not to_stop:
        yield
        return

    logger.info(
        f"Stopping {len(to_stop)} out of {len(all_containers)} running container(s) "
        f"as they were labeled {LABEL_STOP_DURING_BACKUP}={label}."
    )

    stopped = []
    stop_errors = []
    for container in to_stop:
        try:
            container.stop()
            stopped.append(container)
        except DockerException as e:
            stop_errors.append(f"{_name(container)}: {e}")
    stats.stopped = len(stopped)

    body_error: Optional[BaseException] = None
    try:
        if stop_errors:
            raise ContainerError(
                f"{len(stop_errors)} error(s) stopping containers: {'; '.join(stop_errors)}"
            )
        yield
    except Exception as e:
        body_error = e
    finally:
        restart_errors = _restart(stopped, stats, logger)

    if restart_errors:
        restart_error = ContainerError(
            f"{len(restart_errors)} error(s) restarting containers: {'; '.join(restart_errors)}"
        )
        if body_error is not None:
            raise AggregateError('backup failed and containers could not be restarted', [body_error, restart_error]) from body_error
        raise restart_error
    if body_error is not None:
        raise body_error


def _restart(containers: list, stats: ContainersStats, logger) -> List[str]:
    errors = []
    for container in containers:
        try:
            container.start()
        except DockerException as e:
            errors.append(f"{_name(container)}: {e}")
    stats.start_errors = len(errors)
    if containers and not errors:
        logger.info(f"Restarted {len(containers)} container(s).")
    return errors


def run_labeled_commands(client, backup_config, label: str, logger):
    """
    Execute the command stored in the given label of every container carrying it.

    Args:
        client: docker.DockerClient
        backup_config: BackupConfig of the run
        label: Full label name, e.g. docker-volume-backup.archive-pre
        logger: Logger or adapter of the run

    Raises:
        ContainerError: If a command cannot be run or exits non-zero
    """
    filters = [label]
    if backup_config.exec_label:
        filters.append(f"{LABEL_EXEC}={backup_config.exec_label}")

    try:
        containers = client.containers.list(filters={'label': filters})
    except DockerException as e:
        raise ContainerError(f"error querying for containers: {e}") from e

    if not containers:
        return

    logger.info(f"Running {label} command(s) in {len(containers)} container(s).")

    errors = []
    for container in containers:
        command = container.labels[label]
        try:
            exit_code, output = container.exec_run(['/bin/sh', '-c', command])
        except DockerException as e:
            errors.append(f"{_name(container)}: {e}")
            continue
        if backup_config.exec_forward_output and output:
            for line in output.decode(errors='replace').splitlines():
                logger.info(f"[{_name(container)}] {line}")
        if exit_code != 0:
            errors.append(f"{_name(container)}: command exited with code {exit_code}")

    if errors:
        raise ContainerError(f"error running {label} command(s): {'; '.join(errors)}")


@contextmanager
def labeled_commands(client, backup_config, phase: str, logger):
    """
    Run ``<phase>-pre`` commands, the block, then ``<phase>-post`` commands.

    Post commands only run when the block succeeded. Without a docker client
    the block runs on its own.
    """
    if client is None:
        yield
        return

    run_labeled_commands(client, backup_config, f"docker-volume-backup.{phase}-pre", logger)
    yield
    run_labeled_commands(client, backup_config, f"docker-volume-backup.{phase}-post", logger)
