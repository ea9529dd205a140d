import os


class Settings:
    """Process level settings shared by every backup job"""

    # Configuration sources
    CONFD_DIR = os.environ.get('VOLUMEBACKUP_CONFD_DIR') or '/etc/dockervolumebackup/conf.d'
    NOTIFICATIONS_DIR = os.environ.get('VOLUMEBACKUP_NOTIFICATIONS_DIR') or '/etc/dockervolumebackup/notifications.d'

    # Runtime paths
    LOCK_FILE = os.environ.get('VOLUMEBACKUP_LOCK_FILE') or '/var/lock/dockervolumebackup.lock'
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/tmp'
    LOG_FILE = os.environ.get('VOLUMEBACKUP_LOG_FILE')

    # Docker
    DOCKER_SOCKET = '/var/run/docker.sock'
    PROXY_IMAGE = os.environ.get('VOLUMEBACKUP_PROXY_IMAGE') or 'offen/docker-volume-backup:v2.39.1'
    PROXY_ENTRYPOINT = ['backup']
    PROXY_NETWORK = os.environ.get('VOLUMEBACKUP_PROXY_NETWORK') or 'volumes_default'

    # Scheduler
    SCHEDULER_MAX_WORKERS = int(os.environ.get('VOLUMEBACKUP_MAX_WORKERS', 10))
    SCHEDULER_TIMEZONE = os.environ.get('VOLUMEBACKUP_TIMEZONE')  # None means local time
    SCHEDULER_POLL_INTERVAL = 0.5

    @classmethod
    def docker_available(cls) -> bool:
        """Check whether a Docker daemon is reachable from this process."""
        return os.path.exists(cls.DOCKER_SOCKET) or 'DOCKER_HOST' in os.environ
