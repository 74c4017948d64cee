"""
Archive handling for dump directories.

A dump directory is folded into a single gzip-compressed tar archive and
unfolded again on restore.
"""

import logging
import os
import shutil
import tarfile
import tempfile
import zlib
from datetime import datetime, timezone
from pathlib import Path


logger = logging.getLogger(__name__)

ARCHIVE_EXTENSION = 'tar.gz'


class ArchiveError(Exception):
    """Raised when an archive cannot be created or extracted."""
    pass


def compress(source_dir: str, dest_file: str) -> str:
    """
    Create a tar.gz archive of a directory.

    The directory is stored under its basename; tarfile adds directory
    entries in sorted order.

    Args:
        source_dir: Directory to archive
        dest_file: Archive path to create

    Returns:
        dest_file

    Raises:
        ArchiveError: If the source is missing or writing fails
    """
    source = Path(source_dir)
    if not source.is_dir():
        raise ArchiveError(f"Source directory does not exist: {source_dir}")

    logger.debug(f"Compressing {source_dir} -> {dest_file}")

    try:
        with tarfile.open(dest_file, 'w:gz') as tar:
            tar.add(source, arcname=source.name, recursive=True)
    except (OSError, tarfile.TarError) as e:
        # Clean up partial archive on failure
        if os.path.exists(dest_file):
            try:
                os.remove(dest_file)
            except OSError:
                logger.warning(f"Failed to remove partial archive {dest_file}")
        raise ArchiveError(f"Failed to create archive: {e}") from e

    return dest_file


def extract(archive_file: str, dest_dir: str) -> str:
    """
    Extract a tar.gz archive into a directory.

    Members are extracted into a staging directory first and moved into
    dest_dir only after the whole archive has been read, so a truncated
    or corrupt archive leaves no partial tree behind.

    Args:
        archive_file: Archive to extract
        dest_dir: Destination directory (created if needed)

    Returns:
        dest_dir

    Raises:
        ArchiveError: If the archive is missing, malformed or truncated
    """
    if not os.path.isfile(archive_file):
        raise ArchiveError(f"Archive not found: {archive_file}")

    dest = Path(dest_dir)
    dest.parent.mkdir(parents=True, exist_ok=True)
    staging = tempfile.mkdtemp(prefix='.extract-', dir=str(dest.parent))

    logger.debug(f"Extracting {archive_file} -> {dest_dir}")

    try:
        with tarfile.open(archive_file, 'r:gz') as tar:
            tar.extractall(staging, filter='data')

        dest.mkdir(parents=True, exist_ok=True)
        for entry in sorted(os.listdir(staging)):
            target = dest / entry
            if target.exists():
                raise ArchiveError(f"Refusing to overwrite existing path: {target}")
            shutil.move(os.path.join(staging, entry), str(target))

    except (OSError, EOFError, zlib.error, tarfile.TarError) as e:
        raise ArchiveError(f"Failed to extract {archive_file}: {e}") from e
    finally:
        shutil.rmtree(staging, ignore_errors=True)

    return dest_dir


def generate_archive_filename(prefix: str, extension: str = ARCHIVE_EXTENSION) -> str:
    """
    Generate a standardized archive filename.

    Format: {prefix}_{YYYYMMDD_HHMMSS}.{ext}

    Args:
        prefix: Name prefix (e.g. 'full_backup')
        extension: File extension without leading dot

    Returns:
        Filename (without path)
    """
    timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')

    # Sanitize prefix (replace spaces and special chars with underscores)
    safe_prefix = "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in prefix
    )

    return f"{safe_prefix}_{timestamp}.{extension}"


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        ArchiveError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise ArchiveError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise ArchiveError(f"Failed to get archive size: {e}")
