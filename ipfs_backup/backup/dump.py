"""
Database dump producer.

Runs mongodump to materialize either a full snapshot or an oplog range
into a local directory, then collects metadata about what was written.
"""

import json
import logging
import os
import subprocess
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from ipfs_backup.config import mask_uri
from ipfs_backup.models import DumpResult, utcnow


logger = logging.getLogger(__name__)

STDERR_EXCERPT_LENGTH = 2000

# mongodump reports progress on stderr; these lines are not warnings
_PROGRESS_MARKERS = ('writing', 'done dumping', 'dumping up to')


class DumpFailed(Exception):
    """Raised when the dump tool exits with a non-zero status."""

    def __init__(self, exit_code: int, stderr_excerpt: str = ''):
        self.exit_code = exit_code
        self.stderr_excerpt = stderr_excerpt
        message = f"Dump tool exited with code {exit_code}"
        if stderr_excerpt:
            message += f": {stderr_excerpt}"
        super().__init__(message)


def _excerpt(text: str) -> str:
    text = (text or '').strip()
    if len(text) > STDERR_EXCERPT_LENGTH:
        return text[-STDERR_EXCERPT_LENGTH:]
    return text


def oplog_query(since: datetime) -> str:
    """Build the oplog.rs query selecting entries at or after `since`."""
    seconds = int(since.timestamp())
    return json.dumps({'ts': {'$gte': {'$timestamp': {'t': seconds, 'i': 0}}}})


class MongoDumper:
    """
    Produces full and incremental dumps with mongodump.

    Full dumps cover every database (or the configured one). Incremental
    dumps capture only local.oplog.rs entries from a given time onward.
    """

    def __init__(self, uri: str, mongodump_path: str = 'mongodump', database: Optional[str] = None):
        """
        Initialize dump producer.

        Args:
            uri: MongoDB connection URI
            mongodump_path: mongodump executable
            database: Optional single database to dump (full dumps only)
        """
        self.uri = uri
        self.mongodump_path = mongodump_path
        self.database = database

    def build_dump_args(self, output_dir: str, since: Optional[datetime] = None) -> List[str]:
        """
        Build the mongodump command line.

        Args:
            output_dir: Directory mongodump writes into
            since: When given, dump only the oplog from this time onward

        Returns:
            Argument list (executable first)
        """
        args = [self.mongodump_path, '--uri', self.uri, '--out', output_dir]

        if since is not None:
            args += ['--db', 'local', '--collection', 'oplog.rs', '--query', oplog_query(since)]
        elif self.database:
            args += ['--db', self.database]

        # Compress collection files during the dump
        args.append('--gzip')
        return args

    def create_full_dump(self, output_dir: str) -> DumpResult:
        """
        Dump all configured databases.

        Args:
            output_dir: Directory to write the dump into

        Returns:
            DumpResult with duration and metadata

        Raises:
            DumpFailed: If mongodump exits non-zero or cannot be started
        """
        logger.info(f"Starting full dump into {output_dir}")
        return self._run_dump(output_dir, self.build_dump_args(output_dir))

    def create_incremental_dump(self, output_dir: str, since: datetime) -> DumpResult:
        """
        Dump the operation log from `since` onward.

        Args:
            output_dir: Directory to write the dump into
            since: Start of the oplog window

        Returns:
            DumpResult with duration and metadata

        Raises:
            DumpFailed: If mongodump exits non-zero or cannot be started
        """
        logger.info(f"Starting incremental dump into {output_dir} (oplog since {since.isoformat()})")
        return self._run_dump(output_dir, self.build_dump_args(output_dir, since=since))

    def _run_dump(self, output_dir: str, args: List[str]) -> DumpResult:
        Path(output_dir).mkdir(parents=True, exist_ok=True)

        safe_command = ' '.join(mask_uri(arg) for arg in args)
        logger.debug(f"Executing: {safe_command}")

        timestamp = utcnow()
        started = time.monotonic()

        try:
            completed = subprocess.run(args, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise DumpFailed(127, f"Dump tool not found: {self.mongodump_path}") from e
        except OSError as e:
            raise DumpFailed(126, f"Dump tool could not be started: {e}") from e

        duration = round(time.monotonic() - started, 2)

        # Exit code is authoritative, stderr only informs the log
        if completed.returncode != 0:
            logger.error(f"mongodump failed with exit code {completed.returncode}")
            raise DumpFailed(completed.returncode, _excerpt(completed.stderr))

        self._log_diagnostics(completed.stderr)
        logger.info(f"Dump completed in {duration}s")

        databases, size_bytes = self.collect_metadata(output_dir)

        return DumpResult(
            output_dir=output_dir,
            duration_seconds=duration,
            timestamp=timestamp,
            databases=databases,
            size_bytes=size_bytes,
        )

    def _log_diagnostics(self, stderr: str):
        for line in (stderr or '').splitlines():
            if line.strip() and not any(marker in line for marker in _PROGRESS_MARKERS):
                logger.warning(f"mongodump: {line.strip()}")

    def collect_metadata(self, output_dir: str):
        """
        Collect database names and total size of a dump directory.

        Metadata is best effort: any failure yields empty values.

        Args:
            output_dir: Dump directory

        Returns:
            Tuple of (database names, total size in bytes)
        """
        try:
            root = Path(output_dir)
            databases = sorted(entry.name for entry in root.iterdir() if entry.is_dir())
            size_bytes = sum(path.stat().st_size for path in root.rglob('*') if path.is_file())
        except OSError as e:
            logger.warning(f"Failed to collect dump metadata for {output_dir}: {e}")
            return [], 0

        return (databases or ['all']), size_bytes


def create_dumper(settings) -> MongoDumper:
    """Create a MongoDumper from configuration."""
    return MongoDumper(
        uri=settings.get('MONGODB_URI', ''),
        mongodump_path=settings.get('MONGODUMP_PATH', 'mongodump'),
        database=settings.get('MONGODB_DATABASE'),
    )
