"""
Restore pipeline.

download -> decrypt -> extract -> mongorestore

Each stage runs only if the previous one succeeded; a failure is raised as
RestoreError tagged with the stage name.
"""

import logging
import os
import shutil
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List

from ipfs_backup.config import mask_uri
from .compression import extract


logger = logging.getLogger(__name__)

STAGES = ('download', 'decrypt', 'extract', 'restore')
STDERR_EXCERPT_LENGTH = 2000


class RestoreToolFailed(Exception):
    """Raised when mongorestore exits with a non-zero status."""

    def __init__(self, exit_code: int, stderr_excerpt: str = ''):
        self.exit_code = exit_code
        self.stderr_excerpt = stderr_excerpt
        message = f"Restore tool exited with code {exit_code}"
        if stderr_excerpt:
            message += f": {stderr_excerpt}"
        super().__init__(message)


class RestoreError(Exception):
    """Raised when a restore stage fails."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"Restore failed at {stage} stage: {cause}")


class MongoRestorer:
    """Runs mongorestore against a dump directory."""

    def __init__(self, mongorestore_path: str = 'mongorestore'):
        self.mongorestore_path = mongorestore_path

    def build_restore_args(self, source_dir: str, uri: str, drop: bool = False,
                           oplog_replay: bool = False) -> List[str]:
        args = [self.mongorestore_path, '--uri', uri]
        if drop:
            args.append('--drop')
        if oplog_replay:
            args.append('--oplogReplay')
        args += ['--gzip', source_dir]
        return args

    def restore(self, source_dir: str, uri: str, drop: bool = False, oplog_replay: bool = False):
        """
        Restore a dump directory.

        Args:
            source_dir: Dump directory (as written by mongodump)
            uri: Target MongoDB connection URI
            drop: Drop each collection before restoring it
            oplog_replay: Replay oplog.bson at the dump root

        Raises:
            RestoreToolFailed: If mongorestore exits non-zero or cannot be started
        """
        args = self.build_restore_args(source_dir, uri, drop=drop, oplog_replay=oplog_replay)
        logger.debug(f"Executing: {' '.join(mask_uri(arg) for arg in args)}")

        try:
            completed = subprocess.run(args, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise RestoreToolFailed(127, f"Restore tool not found: {self.mongorestore_path}") from e
        except OSError as e:
            raise RestoreToolFailed(126, f"Restore tool could not be started: {e}") from e

        if completed.stderr:
            logger.debug(f"mongorestore output:\n{completed.stderr.strip()}")

        # Exit code decides; mongorestore writes progress to stderr
        if completed.returncode != 0:
            stderr = (completed.stderr or '').strip()
            raise RestoreToolFailed(completed.returncode, stderr[-STDERR_EXCERPT_LENGTH:])

        logger.info(f"mongorestore completed for {source_dir}")


def locate_dump_dir(extracted_dir: str) -> str:
    """
    Find the dump root inside an extracted archive.

    Archives hold a single top-level directory named after the backup.
    """
    entries = [entry for entry in os.scandir(extracted_dir) if not entry.name.startswith('.')]
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0].path
    return extracted_dir


def prepare_oplog_replay(dump_dir: str) -> str:
    """
    Move the dumped local.oplog.rs collection to oplog.bson at the dump
    root, where mongorestore --oplogReplay expects it.

    Returns:
        Path of the oplog file

    Raises:
        FileNotFoundError: If the dump holds no oplog
    """
    local_dir = Path(dump_dir) / 'local'
    for suffix in ('.bson.gz', '.bson'):
        source = local_dir / f'oplog.rs{suffix}'
        if source.exists():
            target = Path(dump_dir) / f'oplog{suffix}'
            shutil.move(str(source), str(target))
            # The rest of local/ must not be restored as a regular database
            shutil.rmtree(local_dir)
            return str(target)

    raise FileNotFoundError(f"No oplog found in {dump_dir}")


class RestorePipeline:
    """
    Restores a backup from the content store into a MongoDB deployment.
    """

    def __init__(self, store, cipher, restorer: MongoRestorer, work_dir: str = '/data/temp'):
        """
        Initialize restore pipeline.

        Args:
            store: ContentStoreClient to download from
            cipher: FileCipher to decrypt with
            restorer: MongoRestorer
            work_dir: Directory for downloaded and extracted files
        """
        self.store = store
        self.cipher = cipher
        self.restorer = restorer
        self.work_dir = work_dir

    def restore(self, content_address: str, uri: str, drop: bool = False, keep_files: bool = False,
                oplog_replay: bool = False) -> Dict[str, Any]:
        """
        Restore a single backup.

        Args:
            content_address: Address of the encrypted archive
            uri: Target MongoDB connection URI
            drop: Drop existing collections first
            keep_files: Keep downloaded and extracted files
            oplog_replay: Treat the backup as an oplog (incremental) dump

        Returns:
            Dict with contentAddress, dumpDir and durationSeconds

        Raises:
            RestoreError: Tagged with the failing stage
        """
        os.makedirs(self.work_dir, exist_ok=True)
        work = tempfile.mkdtemp(prefix='restore_', dir=self.work_dir)
        encrypted_path = os.path.join(work, 'backup.tar.gz.enc')
        archive_path = os.path.join(work, 'backup.tar.gz')
        extracted_dir = os.path.join(work, 'extracted')
        started = time.monotonic()
        stage = STAGES[0]

        logger.info(f"Restoring {content_address} into {mask_uri(uri)}")

        try:
            # Step 1: Download
            self.store.download(content_address, encrypted_path)

            # Step 2: Decrypt
            stage = 'decrypt'
            self.cipher.decrypt(encrypted_path, archive_path)

            # Step 3: Extract
            stage = 'extract'
            extract(archive_path, extracted_dir)
            dump_dir = locate_dump_dir(extracted_dir)
            if oplog_replay:
                prepare_oplog_replay(dump_dir)

            # Step 4: Restore
            stage = 'restore'
            self.restorer.restore(dump_dir, uri, drop=drop, oplog_replay=oplog_replay)

        except Exception as e:
            logger.error(f"Restore of {content_address} failed at {stage}: {e}")
            if not keep_files:
                shutil.rmtree(work, ignore_errors=True)
            raise RestoreError(stage, e) from e

        duration = round(time.monotonic() - started, 2)
        logger.info(f"Restore of {content_address} completed in {duration}s")

        if keep_files:
            logger.info(f"Restore files kept in {work}")
        else:
            shutil.rmtree(work, ignore_errors=True)

        return {
            'contentAddress': content_address,
            'dumpDir': dump_dir if keep_files else None,
            'durationSeconds': duration,
        }

    def restore_lineage(self, ledger, content_address: str, uri: str, drop: bool = False,
                        keep_files: bool = False) -> List[Dict[str, Any]]:
        """
        Restore a backup together with everything it builds on: the full
        backup first, then each incremental with oplog replay.

        Args:
            ledger: Loaded ManifestLedger
            content_address: Address of the backup to restore up to
            uri: Target MongoDB connection URI
            drop: Drop existing collections before the full restore
            keep_files: Keep downloaded and extracted files of every restore

        Returns:
            One result dict per restored backup, in restore order

        Raises:
            ManifestIOError: If the backup or its base is not in the manifest
            RestoreError: On the first failing restore
        """
        records = ledger.lineage(content_address)
        logger.info(f"Restoring lineage of {content_address}: {len(records)} backups")

        results = []
        for record in records:
            if record.is_full:
                results.append(self.restore(record.content_address, uri, drop=drop, keep_files=keep_files))
            else:
                results.append(self.restore(record.content_address, uri, keep_files=keep_files,
                                            oplog_replay=True))
        return results
