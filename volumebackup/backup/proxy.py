"""
Run a backup of a labelled volume inside a disposable container.

Label-sourced configs describe volumes this process has no access to, so
the backup runs in a fresh container that mounts the volume at /backup.
"""

import logging
import os

import docker
from docker.errors import DockerException
from docker.types import Mount

from volumebackup.config import Config
from volumebackup.errors import ContainerError
from volumebackup.settings import Settings


logger = logging.getLogger(__name__)


def _container_environment(config: Config) -> dict:
    environment = config.to_env()
    hostname = os.environ.get('HOSTNAME')
    if hostname:
        environment['HOSTNAME'] = hostname
    return environment


def run_proxy(config: Config, client=None):
    """
    Back up the volume named by config.source in a disposable container.

    Args:
        config: Label-sourced config, its source is the volume name
        client: Optional docker client, created from the environment if omitted

    Raises:
        ContainerError: If the container cannot be run or exits non-zero
    """
    owns_client = client is None
    if owns_client:
        try:
            client = docker.from_env()
        except DockerException as e:
            raise ContainerError(f"failed to create docker client: {e}") from e

    try:
        _run_container(client, config)
    finally:
        if owns_client:
            client.close()


def _run_container(client, config: Config):
    image = Settings.PROXY_IMAGE

    try:
        logger.info(f"Pulling image {image}")
        client.images.pull(image)
        networks = client.networks.list(names=[Settings.PROXY_NETWORK])
    except DockerException as e:
        raise ContainerError(f"unable to pull image {image}: {e}") from e

    try:
        container = client.containers.create(
            image,
            entrypoint=Settings.PROXY_ENTRYPOINT,
            environment=_container_environment(config),
            mounts=[
                Mount(target='/backup', source=config.source, type='volume'),
                Mount(target=Settings.DOCKER_SOCKET, source=Settings.DOCKER_SOCKET, type='bind'),
            ],
            network=networks[0].name if networks else None,
            tty=True,
        )
    except DockerException as e:
        raise ContainerError(f"unable to create container: {e}") from e

    try:
        container.start()
        for line in container.logs(stream=True, follow=True, stdout=True, stderr=True):
            logger.info(f"[{config.source}] {line.decode(errors='replace').rstrip()}")
        result = container.wait()
    except DockerException as e:
        raise ContainerError(f"error running container: {e}") from e
    finally:
        try:
            container.remove(force=True)
        except DockerException as e:
            logger.error(f"Unable to remove container {container.id}: {e}")

    status = result.get('StatusCode', 0)
    if status != 0:
        raise ContainerError(f"backup container for volume {config.source} exited with status {status}")
