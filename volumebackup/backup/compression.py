"""
Archive creation for backup sources.

Supports two formats:
- gz: Gzip compressed tar (tar.gz)
- zst: Zstandard compressed tar (tar.zst)
"""

import os
import tarfile
from pathlib import Path
from typing import Optional, Pattern

import zstandard

from volumebackup.errors import ArchiveError
from volumebackup.utils.decoders import COMPRESSION_TYPES


def archive_extension(compression: str) -> str:
    """
    Extension of an archive created with the given compression.

    Args:
        compression: Compression type ('gz' or 'zst')

    Returns:
        Extension without leading dot, e.g. 'tar.gz'
    """
    return f"tar.{compression}"


def create_archive(
    source_path: str,
    archive_path: str,
    compression: str = 'gz',
    exclude: Optional[Pattern] = None,
    parallelism: int = 1
) -> str:
    """
    Create a compressed tar archive of the source directory.

    Entries are stored below the basename of the source, e.g. the files of
    /backup end up as backup/... inside the archive.

    Args:
        source_path: File or directory to archive
        archive_path: Path of the archive to create
        compression: Compression type ('gz' or 'zst')
        exclude: Paths matching this pattern are left out
        parallelism: Worker threads for zstd, 0 picks one per CPU

    Returns:
        Path to the created archive file

    Raises:
        ArchiveError: If archive creation fails
    """
    if compression not in COMPRESSION_TYPES:
        raise ArchiveError(
            f"Invalid compression type: {compression}. "
            f"Valid options: {list(COMPRESSION_TYPES)}"
        )

    source = Path(source_path)
    if not source.exists():
        raise ArchiveError(f"Path does not exist: {source_path}")

    tar_filter = _exclude_filter(source, exclude)

    try:
        if compression == 'gz':
            _create_gzip_tar(source, archive_path, tar_filter)
        else:
            _create_zstd_tar(source, archive_path, tar_filter, parallelism)
        return archive_path
    except (OSError, tarfile.TarError, zstandard.ZstdError) as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            os.remove(archive_path)
        raise ArchiveError(f"Failed to create archive: {e}") from e


def _exclude_filter(source: Path, exclude: Optional[Pattern]):
    """
    Build a tarfile filter dropping members whose source path matches.

    tarfile does not descend into a member the filter returned None for, so
    an excluded directory is skipped along with its content.
    """
    if exclude is None:
        return None

    parent = source.parent

    def tar_filter(member: tarfile.TarInfo):
        full_path = str(parent / member.name)
        if exclude.search(full_path):
            return None
        return member

    return tar_filter


def _create_gzip_tar(source: Path, archive_path: str, tar_filter):
    with tarfile.open(archive_path, 'w:gz') as tar:
        tar.add(source, arcname=source.name, recursive=True, filter=tar_filter)


def _create_zstd_tar(source: Path, archive_path: str, tar_filter, parallelism: int):
    # zstandard uses -1 for "one thread per CPU"
    threads = parallelism if parallelism > 0 else -1
    compressor = zstandard.ZstdCompressor(threads=threads)

    with open(archive_path, 'wb') as f:
        with compressor.stream_writer(f, closefd=False) as writer:
            with tarfile.open(fileobj=writer, mode='w|') as tar:
                tar.add(source, arcname=source.name, recursive=True, filter=tar_filter)


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError as e:
        raise ArchiveError(f"Archive not found: {archive_path}") from e
    except OSError as e:
        raise ArchiveError(f"Failed to get archive size: {e}") from e
