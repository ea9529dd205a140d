"""
Environment variable compatibility layer.

Rewrites the inputs that reach the configuration decoder:
- Legacy variable names (e.g. AWS_ACCESS_KEY_ID) become their canonical
  OFFEN_* counterpart
- FILE__OFFEN_* variables are replaced by the contents of the file they
  point to

Every change is recorded as an EnvVarSnapshot so it can be rolled back
exactly, including unsetting variables that did not exist before.
Both operations work on any mutable mapping, os.environ included.
"""

import os
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, List, Mapping, MutableMapping, Optional

from volumebackup.errors import ConfigConflictError, ConfigValidationError


CANONICAL_PREFIX = 'OFFEN_'
FILE_PREFIX = 'FILE__'

LEGACY_MAPPING = [
    ('AWS_ACCESS_KEY_ID', 'OFFEN_STORAGE_AWS_ACCESSKEYID'),
    ('AWS_SECRET_ACCESS_KEY', 'OFFEN_STORAGE_AWS_SECRETACCESSKEY'),
    ('AWS_SECRET_ACCESS_KEY_FILE', 'FILE__OFFEN_STORAGE_AWS_SECRETACCESSKEY'),
    ('AWS_ENDPOINT', 'OFFEN_STORAGE_AWS_ENDPOINT'),
    ('AWS_ENDPOINT_PROTO', 'OFFEN_STORAGE_AWS_ENDPOINTPROTO'),
    ('AWS_S3_BUCKET_NAME', 'OFFEN_STORAGE_AWS_BUCKETNAME'),
    ('BACKUP_FILENAME_EXPAND', 'OFFEN_BACKUP_FILENAMEEXPAND'),
    ('BACKUP_FILENAME', 'OFFEN_BACKUP_FILENAME'),
    ('BACKUP_CRON_EXPRESSION', 'OFFEN_BACKUP_CRONEXPRESSION'),
    ('BACKUP_RETENTION_DAYS', 'OFFEN_BACKUP_RETENTIONDAYS'),
    ('BACKUP_PRUNING_LEEWAY', 'OFFEN_BACKUP_PRUNINGLEEWAY'),
    ('BACKUP_PRUNING_PREFIX', 'OFFEN_BACKUP_PRUNINGPREFIX'),
]

# Only one snapshot -> override -> decode -> rollback sequence at a time.
ENVIRONMENT_LOCK = threading.RLock()

_EXPAND_PATTERN = re.compile(r'\$(?:\{([^}]*)\}|([A-Za-z_][A-Za-z0-9_]*))')


@dataclass(frozen=True)
class EnvVarSnapshot:
    """State of a single variable before it was overridden."""
    key: str
    was_present: bool
    previous_value: Optional[str] = None


class EnvOverrides:
    """
    Applies overrides to an environment mapping and remembers how to undo them.

    Exactly one snapshot is taken per override, so replaying the snapshots
    in reverse order restores the mapping to its original state.
    """

    def __init__(self, environ: MutableMapping[str, str]):
        self.environ = environ
        self.snapshots: List[EnvVarSnapshot] = []

    def _snapshot(self, key: str):
        self.snapshots.append(
            EnvVarSnapshot(key=key, was_present=key in self.environ, previous_value=self.environ.get(key))
        )

    def set(self, key: str, value: str):
        self._snapshot(key)
        self.environ[key] = value

    def unset(self, key: str):
        self._snapshot(key)
        self.environ.pop(key, None)

    def rollback(self):
        """Replay all snapshots in reverse order of application."""
        while self.snapshots:
            snapshot = self.snapshots.pop()
            if snapshot.was_present:
                self.environ[snapshot.key] = snapshot.previous_value
            else:
                self.environ.pop(snapshot.key, None)


def map_legacy_variables(environ: Optional[MutableMapping[str, str]] = None) -> Callable[[], None]:
    """
    Move legacy variables to their canonical names.

    Args:
        environ: Mapping to rewrite (defaults to os.environ)

    Returns:
        Rollback function restoring the mapping

    Raises:
        ConfigConflictError: If a legacy variable and its canonical
            counterpart are both set. Nothing is left applied in that case.
    """
    if environ is None:
        environ = os.environ

    overrides = EnvOverrides(environ)
    try:
        for legacy, canonical in LEGACY_MAPPING:
            if legacy not in environ:
                continue
            if canonical in environ:
                raise ConfigConflictError(
                    f"environment variable {canonical} is set, while its legacy option {legacy} is also set"
                )
            value = environ[legacy]
            overrides.unset(legacy)
            overrides.set(canonical, value)
    except ConfigConflictError:
        overrides.rollback()
        raise

    return overrides.rollback


def map_environment_files(environ: Optional[MutableMapping[str, str]] = None) -> Callable[[], None]:
    """
    Resolve FILE__OFFEN_* variables into the contents of the referenced file.

    Args:
        environ: Mapping to rewrite (defaults to os.environ)

    Returns:
        Rollback function restoring the mapping

    Raises:
        ConfigConflictError: If the target variable is also set directly
        ConfigValidationError: If the referenced file cannot be read
    """
    if environ is None:
        environ = os.environ

    overrides = EnvOverrides(environ)
    indirections = sorted(key for key in environ if key.startswith(FILE_PREFIX + CANONICAL_PREFIX))

    try:
        for key in indirections:
            path = environ[key]
            target = key[len(FILE_PREFIX):]
            if target in environ:
                raise ConfigConflictError(
                    f"environment variable {target} is set, while file option {key} is also set"
                )

            try:
                with open(path, 'r') as f:
                    contents = f.read()
            except OSError as e:
                raise ConfigValidationError(f"unable to read variable from file {path}") from e

            overrides.unset(key)
            overrides.set(target, contents)
    except (ConfigConflictError, ConfigValidationError):
        overrides.rollback()
        raise

    return overrides.rollback


@contextmanager
def environment_overrides(environ: Optional[MutableMapping[str, str]] = None) -> Iterator[MutableMapping[str, str]]:
    """
    Apply legacy and file mappings for the duration of the block.

    The global ENVIRONMENT_LOCK is held for the whole block and all
    overrides are rolled back on every exit path.
    """
    if environ is None:
        environ = os.environ

    with ENVIRONMENT_LOCK:
        unset_legacy = map_legacy_variables(environ)
        try:
            unset_files = map_environment_files(environ)
            try:
                yield environ
            finally:
                unset_files()
        finally:
            unset_legacy()


def expand_env(value: str, variables: Mapping[str, str]) -> str:
    """
    Replace $VAR and ${VAR} references using the given variables.

    Unknown variables expand to an empty string.
    """
    def replace(match):
        name = match.group(1) if match.group(1) is not None else match.group(2)
        return variables.get(name, '')

    return _EXPAND_PATTERN.sub(replace, value)
