"""
Backup job configuration.

A Config is decoded from a mapping of variables named after the OFFEN_
namespace, e.g. OFFEN_BACKUP_CRONEXPRESSION or OFFEN_STORAGE_AWS_BUCKETNAME.
Configs are sourced through one of three strategies:
- env: the process environment (single job)
- confd: one dotenv file per job in the conf.d directory
- label: one job per Docker volume carrying docker-volume-backup.* labels
"""

import logging
import os
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from enum import Enum
from typing import Dict, List, Mapping, Optional, Pattern

import docker
from docker.errors import DockerException
from cryptography import x509
from dotenv import dotenv_values

from volumebackup.errors import ConfigConflictError, ConfigValidationError
from volumebackup.settings import Settings
from volumebackup.utils.env import CANONICAL_PREFIX, LEGACY_MAPPING, environment_overrides
from volumebackup.utils.decoders import (
    setting, encode_value, decode_bool, decode_int, decode_list, decode_duration,
    decode_regexp, decode_certificate, decode_compression_type, decode_natural_number,
    decode_whole_number,
)


logger = logging.getLogger(__name__)

FROM_ENVIRONMENT = 'from environment'
LABEL_PREFIX = 'docker-volume-backup.'


class ConfigStrategy(str, Enum):
    ENV = 'env'
    CONFD = 'confd'
    LABEL = 'label'


@dataclass
class S3Config:
    bucket_name: str = setting('')
    remote_path: str = setting('')
    endpoint: str = setting('s3.amazonaws.com')
    endpoint_proto: str = setting('https')
    endpoint_insecure: bool = setting(False, decode_bool)
    endpoint_ca_cert: Optional[x509.Certificate] = setting(None, decode_certificate)
    region: str = setting('us-east-1')
    storage_class: str = setting('')
    access_key_id: str = setting('')
    secret_access_key: str = setting('')
    iam_role_endpoint: str = setting('')
    part_size: int = setting(0, decode_whole_number)  # MB, 0 picks the default


@dataclass
class WebDAVConfig:
    url: str = setting('')
    url_insecure: bool = setting(False, decode_bool)
    remote_path: str = setting('/')
    username: str = setting('')
    password: str = setting('')


@dataclass
class SSHConfig:
    host_name: str = setting('')
    port: int = setting(22, decode_natural_number)
    user: str = setting('')
    password: str = setting('')
    identity_file: str = setting('/root/.ssh/id_rsa')
    identity_passphrase: str = setting('')
    remote_path: str = setting('')


@dataclass
class AzureConfig:
    account_name: str = setting('')
    primary_account_key: str = setting('')
    connection_string: str = setting('')
    container_name: str = setting('')
    remote_path: str = setting('')
    endpoint: str = setting('https://{account_name}.blob.core.windows.net/')
    access_tier: str = setting('')


@dataclass
class DropboxConfig:
    endpoint: str = setting('https://api.dropboxapi.com/')
    content_endpoint: str = setting('https://content.dropboxapi.com/')
    oauth2_endpoint: str = setting('https://api.dropbox.com/')
    refresh_token: str = setting('')
    app_key: str = setting('')
    app_secret: str = setting('')
    remote_path: str = setting('')
    concurrency_level: int = setting(6, decode_natural_number)


@dataclass
class LocalConfig:
    archive_path: str
    latest_symlink: str = ''


@dataclass
class StorageConfig:
    """Remote targets. A sub-config that is not None is enabled."""
    aws: Optional[S3Config] = None
    webdav: Optional[WebDAVConfig] = None
    ssh: Optional[SSHConfig] = None
    azure: Optional[AzureConfig] = None
    dropbox: Optional[DropboxConfig] = None


@dataclass
class EmailNotification:
    recipient: str = setting('')
    sender: str = setting('noreply@nohost')
    smtp_host: str = setting('')
    smtp_port: int = setting(587, decode_natural_number)
    smtp_username: str = setting('')
    smtp_password: str = setting('')


@dataclass
class NotificationConfig:
    urls: List[str] = setting(decode=decode_list, factory=list)
    level: str = setting('error')
    email: Optional[EmailNotification] = None


@dataclass
class BackupConfig:
    sources: str = setting('/backup')
    filename: str = setting('backup-%Y-%m-%dT%H-%M-%S.{{ Extension }}')
    filename_expand: bool = setting(False, decode_bool)
    latest_symlink: str = setting('')
    archive: str = setting('/archive')
    compression: str = setting('gz', decode_compression_type)
    gzip_parallelism: int = setting(1, decode_whole_number)
    cron_expression: str = setting('@daily')
    retention_days: int = setting(-1, decode_int)
    pruning_leeway: timedelta = setting(timedelta(minutes=1), decode_duration)
    pruning_prefix: str = setting('')
    stop_container_label: str = setting('')
    stop_during_backup_label: str = setting('true')
    exclude_regexp: Optional[Pattern] = setting(None, decode_regexp)
    skip_backends_from_prune: List[str] = setting(decode=decode_list, factory=list)
    exec_label: str = setting('')
    exec_forward_output: bool = setting(False, decode_bool)
    lock_timeout: timedelta = setting(timedelta(minutes=60), decode_duration)


@dataclass
class Config:
    source: str = FROM_ENVIRONMENT
    backup: BackupConfig = field(default_factory=BackupConfig)
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    # Variables the config was decoded from, used for $VAR expansion.
    environment: Dict[str, str] = field(default_factory=dict, repr=False)

    def copy(self) -> 'Config':
        """Copy the parts of the config a backup run is allowed to modify."""
        return replace(
            self,
            backup=replace(self.backup),
            notification=replace(self.notification, urls=list(self.notification.urls)),
        )

    def to_env(self) -> Dict[str, str]:
        """Render the config back into canonical OFFEN_* variables."""
        variables = {}
        variables.update(_encode_section(self.backup, 'OFFEN_BACKUP_'))
        variables.update(_encode_section(self.notification, 'OFFEN_NOTIFICATION_'))
        if self.notification.email is not None:
            variables.update(_encode_section(self.notification.email, 'OFFEN_NOTIFICATION_EMAIL_'))
        for name, prefix in _STORAGE_SECTIONS.items():
            section = getattr(self.storage, name)
            if section is not None:
                variables.update(_encode_section(section, prefix))
        return variables


_STORAGE_SECTIONS = {
    'aws': 'OFFEN_STORAGE_AWS_',
    'webdav': 'OFFEN_STORAGE_WEBDAV_',
    'ssh': 'OFFEN_STORAGE_SSH_',
    'azure': 'OFFEN_STORAGE_AZURE_',
    'dropbox': 'OFFEN_STORAGE_DROPBOX_',
}

_STORAGE_CLASSES = {
    'aws': S3Config,
    'webdav': WebDAVConfig,
    'ssh': SSHConfig,
    'azure': AzureConfig,
    'dropbox': DropboxConfig,
}


def variable_name(name: str) -> str:
    return name.replace('_', '').upper()


def _decodable_fields(cls):
    return [f for f in fields(cls) if 'decode' in f.metadata]


def decode_section(cls, variables: Mapping[str, str], prefix: str):
    """
    Build a config section from the variables under the given prefix.

    Args:
        cls: Dataclass describing the section
        variables: Variable mapping
        prefix: Prefix of the section, e.g. ``OFFEN_BACKUP_``

    Returns:
        Instance of cls with defaults for unset fields

    Raises:
        ConfigValidationError: If a value cannot be decoded
    """
    values = {}
    for f in _decodable_fields(cls):
        key = prefix + variable_name(f.name)
        if key not in variables:
            continue
        try:
            values[f.name] = f.metadata['decode'](variables[key])
        except ConfigValidationError as e:
            raise ConfigValidationError(f"failed to decode {key}: {e}") from e
    return cls(**values)


def section_present(variables: Mapping[str, str], prefix: str) -> bool:
    """A section is enabled when any variable below its prefix is set."""
    if decode_optional_flag(variables.get(prefix.rstrip('_'))):
        return True
    return any(key.startswith(prefix) for key in variables)


def decode_optional_flag(value: Optional[str]) -> bool:
    if value is None:
        return False
    try:
        return decode_bool(value)
    except ConfigValidationError:
        return False


def _encode_section(section, prefix: str) -> Dict[str, str]:
    variables = {}
    for f in _decodable_fields(type(section)):
        value = encode_value(getattr(section, f.name))
        if value is not None:
            variables[prefix + variable_name(f.name)] = value
    return variables


def decode_config(variables: Mapping[str, str], source: str = FROM_ENVIRONMENT) -> Config:
    """Decode a Config from variables that already are in canonical form."""
    notification = decode_section(NotificationConfig, variables, 'OFFEN_NOTIFICATION_')
    if section_present(variables, 'OFFEN_NOTIFICATION_EMAIL_'):
        notification.email = decode_section(EmailNotification, variables, 'OFFEN_NOTIFICATION_EMAIL_')

    storage = StorageConfig()
    for name, prefix in _STORAGE_SECTIONS.items():
        if section_present(variables, prefix):
            setattr(storage, name, decode_section(_STORAGE_CLASSES[name], variables, prefix))

    return Config(
        source=source,
        backup=decode_section(BackupConfig, variables, 'OFFEN_BACKUP_'),
        notification=notification,
        storage=storage,
        environment=dict(variables),
    )


def load_config(variables: Mapping[str, str], source: str = FROM_ENVIRONMENT) -> Config:
    """
    Decode a Config after applying the legacy and file mappings.

    The mappings are applied to a private copy of the variables while
    holding the environment lock, and rolled back once decoding finished.

    Raises:
        ConfigConflictError: If legacy/file variables clash with canonical ones
        ConfigValidationError: If a value cannot be decoded
    """
    environ = dict(variables)
    with environment_overrides(environ):
        return decode_config(environ, source=source)


def load_config_from_environment() -> Config:
    """
    Decode the Config of the process environment.

    Raises:
        ConfigValidationError: If no OFFEN_ variable is set after mapping
    """
    environ = dict(os.environ)
    with environment_overrides(environ):
        if not any(key.startswith(CANONICAL_PREFIX) for key in environ):
            raise ConfigValidationError("failed to load environment variables")
        return decode_config(environ, source=FROM_ENVIRONMENT)


def load_configs_from_confd(directory: str = None, base: Mapping[str, str] = None) -> List[Config]:
    """
    Load one Config per file in the conf.d directory.

    Files are read as dotenv files and take precedence over the process
    environment. A missing directory yields no configs.
    """
    directory = directory or Settings.CONFD_DIR
    if not os.path.isdir(directory):
        logger.debug(f"Configuration directory {directory} does not exist, skipping")
        return []

    configs = []
    for entry in sorted(os.scandir(directory), key=lambda e: e.name):
        if not entry.is_file():
            continue

        variables = dict(os.environ if base is None else base)
        values = dotenv_values(entry.path, interpolate=True)
        variables.update({key: value for key, value in values.items() if value is not None})

        try:
            configs.append(load_config(variables, source=entry.path))
        except (ConfigConflictError, ConfigValidationError) as e:
            raise type(e)(f"error loading config file {entry.path}: {e}") from e

    return configs


def label_variables(labels: Mapping[str, str]) -> Dict[str, str]:
    """
    Translate docker-volume-backup.* labels into variables.

    The label suffix is the variable name without the OFFEN_ prefix
    (``docker-volume-backup.BACKUP_CRONEXPRESSION``); legacy names are
    kept as they are so the legacy mapping picks them up.
    """
    legacy_names = {legacy for legacy, _ in LEGACY_MAPPING}
    variables = {}
    for key, value in labels.items():
        if not key.startswith(LABEL_PREFIX):
            continue
        name = key[len(LABEL_PREFIX):].upper().replace('-', '_').replace('.', '_')
        if name in legacy_names or name.startswith(CANONICAL_PREFIX):
            variables[name] = value
        else:
            variables[CANONICAL_PREFIX + name] = value
    return variables


def load_configs_from_labels(client=None) -> List[Config]:
    """Load one Config per Docker volume carrying docker-volume-backup.* labels."""
    owns_client = client is None
    if owns_client:
        if not Settings.docker_available():
            logger.debug("Docker is not available, skipping label configuration")
            return []
        client = docker.from_env()

    try:
        volumes = client.volumes.list()
    except DockerException as e:
        raise ConfigValidationError(f"unable to list docker volumes: {e}") from e
    finally:
        if owns_client:
            client.close()

    configs = []
    for volume in volumes:
        labels = volume.attrs.get('Labels') or {}
        variables = label_variables(labels)
        if not variables:
            continue
        try:
            configs.append(load_config(variables, source=volume.name))
        except (ConfigConflictError, ConfigValidationError) as e:
            raise type(e)(f"error loading labels of volume {volume.name}: {e}") from e

    return configs


def source_configuration(strategy: ConfigStrategy) -> List[Config]:
    """
    Produce the Configs of the given sourcing strategy.

    Args:
        strategy: One of env, confd, label

    Returns:
        List of fully defaulted Configs
    """
    strategy = ConfigStrategy(strategy)
    if strategy is ConfigStrategy.ENV:
        return [load_config_from_environment()]
    if strategy is ConfigStrategy.CONFD:
        return load_configs_from_confd()
    return load_configs_from_labels()
