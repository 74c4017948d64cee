"""
Backup executor - orchestrates the complete backup workflow.

Workflow (identical for full and incremental runs):
1. Dump database (full snapshot or oplog since the end of the lineage)
2. Compress dump directory
3. Encrypt archive into the local storage directory
4. Mirror encrypted archive (if configured)
5. Upload and pin on the content store
6. Append record to the manifest
7. Publish the manifest
8. Notify and cleanup temporary files
"""

import enum
import logging
import os
import shutil
import time
from datetime import datetime, timezone
from typing import List, Optional

from ipfs_backup.models import BackupRecord, BackupResult, BackupType
from .compression import compress, generate_archive_filename, get_archive_size, ARCHIVE_EXTENSION
from .manifest import NoBaseBackup
from .storage import SecondaryMirrorError


logger = logging.getLogger(__name__)


class CleanupError(Exception):
    """Raised when temporary artifacts of a run cannot be removed."""
    pass


class RunState(enum.Enum):
    INIT = 'init'
    DUMPED = 'dumped'
    COMPRESSED = 'compressed'
    ENCRYPTED = 'encrypted'
    MIRRORED = 'mirrored'
    UPLOADED = 'uploaded'
    MANIFEST_UPDATED = 'manifest_updated'
    MANIFEST_PUBLISHED = 'manifest_published'
    DONE = 'done'
    FAILED = 'failed'


class BackupOrchestrator:
    """
    Runs one backup from dump to published manifest.

    A run either returns a BackupResult or raises the error of the step
    that failed, after removing every temporary artifact it created.
    """

    def __init__(self, dumper, cipher, store, ledger, notifier=None,
                 temp_dir: str = '/data/temp', storage_dir: str = '/data/backups', mirror=None):
        """
        Initialize orchestrator.

        Args:
            dumper: MongoDumper producing dump directories
            cipher: FileCipher used to encrypt archives
            store: ContentStoreClient holding the backups
            ledger: ManifestLedger tracking the backups
            notifier: Optional Notifier for run events
            temp_dir: Directory for dumps and unencrypted archives
            storage_dir: Directory where encrypted archives are kept
            mirror: Optional LocalMirror/S3Mirror for a secondary copy
        """
        self.dumper = dumper
        self.cipher = cipher
        self.store = store
        self.ledger = ledger
        self.notifier = notifier
        self.temp_dir = temp_dir
        self.storage_dir = storage_dir
        self.mirror = mirror

        self.state = RunState.INIT
        self.logs: List[str] = []
        self.dump_dir: Optional[str] = None
        self.archive_path: Optional[str] = None
        self.encrypted_path: Optional[str] = None
        self.record: Optional[BackupRecord] = None

    def run_full_backup(self) -> BackupResult:
        return self._run(BackupType.FULL)

    def run_incremental_backup(self) -> BackupResult:
        """
        Back up the oplog written since the newest backup of the latest
        full backup's lineage.

        Raises:
            NoBaseBackup: If the manifest holds no full backup (before any dump)
        """
        return self._run(BackupType.INCREMENTAL)

    def _run(self, backup_type: BackupType) -> BackupResult:
        self.state = RunState.INIT
        self.logs = []
        self.dump_dir = self.archive_path = self.encrypted_path = None
        self.record = None

        self._log(f"Starting {backup_type.value} backup")

        try:
            result = self._execute_workflow(backup_type, time.monotonic())
        except Exception as e:
            failed_after_manifest = self.state == RunState.MANIFEST_UPDATED
            self.state = RunState.FAILED
            self._log(f"Backup failed: {type(e).__name__}: {e}", level=logging.ERROR)
            if failed_after_manifest:
                self._rollback_record()
            if self.notifier:
                self.notifier.backup_failure(backup_type.value, e)
            self._cleanup(keep_encrypted=False)
            raise

        self.state = RunState.DONE
        self._log(f"Backup completed successfully: {result.content_address}")

        if self.notifier:
            self.notifier.backup_success(
                backup_type.value, result.content_address, result.size_bytes, result.duration_seconds
            )
        self._cleanup(keep_encrypted=True)
        return result

    def _execute_workflow(self, backup_type: BackupType, started: float) -> BackupResult:
        """Execute the main backup workflow steps."""
        base = None
        since = None

        if backup_type == BackupType.INCREMENTAL:
            self.ledger.load()
            base = self.ledger.latest_full()
            if base is None:
                raise NoBaseBackup("No full backup found. Run a full backup first.")
            newest = self.ledger.latest_in_lineage(base.content_address)
            since = newest.oplog_range_end if newest.is_incremental else newest.created_at
            self._log(f"Base backup: {base.content_address}, oplog since {since.isoformat()}")

        os.makedirs(self.temp_dir, exist_ok=True)
        os.makedirs(self.storage_dir, exist_ok=True)
        stem = self._unique_stem(backup_type)
        archive_name = f"{stem}.{ARCHIVE_EXTENSION}"

        # Step 1: Dump
        self.dump_dir = os.path.join(self.temp_dir, stem)
        if since is None:
            dump = self.dumper.create_full_dump(self.dump_dir)
        else:
            dump = self.dumper.create_incremental_dump(self.dump_dir, since)
        self.state = RunState.DUMPED
        self._log(f"Dump created in {dump.duration_seconds}s: {', '.join(dump.databases) or 'no databases'}")

        # Step 2: Compress
        self.archive_path = os.path.join(self.temp_dir, archive_name)
        compress(self.dump_dir, self.archive_path)
        self.state = RunState.COMPRESSED
        self._log(f"Archive created: {archive_name} ({get_archive_size(self.archive_path) / 1024 / 1024:.2f} MB)")

        # Step 3: Encrypt
        self.encrypted_path = os.path.join(self.storage_dir, f"{archive_name}.enc")
        self.cipher.encrypt(self.archive_path, self.encrypted_path)
        size_bytes = get_archive_size(self.encrypted_path)
        self.state = RunState.ENCRYPTED
        self._log(f"Archive encrypted: {os.path.basename(self.encrypted_path)} ({size_bytes} bytes)")

        # Step 4: Mirror (optional, never fatal)
        if self.mirror is not None:
            try:
                location = self.mirror.store(self.encrypted_path, backup_type.value)
                self._log(f"Mirrored to {location}")
            except SecondaryMirrorError as e:
                self._log(f"Warning: Mirror copy failed: {e}", level=logging.WARNING)
            self.state = RunState.MIRRORED
        else:
            self._log("Mirror not configured, skipping")

        # Step 5: Upload
        upload = self.store.upload(self.encrypted_path)
        self.state = RunState.UPLOADED
        self._log(f"Uploaded: {upload.content_address} (pinned on {upload.pinned_count}/{len(upload.pin_results)} nodes)")

        # Step 6: Manifest
        duration = round(time.monotonic() - started, 2)
        record = BackupRecord(
            type=backup_type,
            content_address=upload.content_address,
            created_at=dump.timestamp,
            size_bytes=size_bytes,
            duration_seconds=duration,
            databases=dump.databases,
            local_path=self.encrypted_path,
            encrypted=True,
        )
        if base is not None:
            record.base_backup_address = base.content_address
            record.oplog_range_start = since
            record.oplog_range_end = dump.timestamp

        self.ledger.append(record)
        self.record = record
        self.state = RunState.MANIFEST_UPDATED
        self._log("Manifest updated")

        # Step 7: Publish manifest
        manifest_address = self.ledger.publish()
        self.state = RunState.MANIFEST_PUBLISHED
        self._log(f"Manifest published: {manifest_address}")

        return BackupResult(
            backup_type=backup_type,
            content_address=upload.content_address,
            size_bytes=size_bytes,
            duration_seconds=duration,
        )

    def _rollback_record(self):
        """
        Take back the record of a run that failed after the manifest was
        updated, so no later incremental builds on it. Best-effort.
        """
        address = self.record.content_address
        try:
            self.ledger.remove(address)
            self._log(f"Removed {address} from manifest", level=logging.WARNING)
        except Exception as e:
            self._log(f"Warning: Failed to remove {address} from manifest: {e}", level=logging.ERROR)

        try:
            for pin_result in self.store.unpin(address):
                if not pin_result.success:
                    self._log(f"Warning: Failed to unpin {address} on {pin_result.endpoint}: {pin_result.error}",
                              level=logging.WARNING)
        except Exception as e:
            self._log(f"Warning: Failed to unpin {address}: {e}", level=logging.WARNING)

    def _unique_stem(self, backup_type: BackupType) -> str:
        """Timestamped base name not used by any kept archive."""
        filename = generate_archive_filename(f"{backup_type.value}_backup")
        base = filename[:-len(ARCHIVE_EXTENSION) - 1]
        stem = base
        counter = 1
        while os.path.exists(os.path.join(self.storage_dir, f"{stem}.{ARCHIVE_EXTENSION}.enc")):
            stem = f"{base}_{counter}"
            counter += 1
        return stem

    def _cleanup(self, keep_encrypted: bool):
        """Remove temporary artifacts. Failures are logged, never raised."""
        paths = [self.dump_dir, self.archive_path]
        if not keep_encrypted:
            paths.append(self.encrypted_path)

        for path in paths:
            if not path or not os.path.exists(path):
                continue
            try:
                if os.path.isdir(path):
                    shutil.rmtree(path)
                else:
                    os.remove(path)
                self._log(f"Cleaned up {os.path.basename(path)}", level=logging.DEBUG)
            except OSError as e:
                error = CleanupError(f"Failed to remove {path}: {e}")
                self._log(f"Warning: {error}", level=logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def run_backup(backup_type) -> BackupResult:
    """
    Run a backup with the services of the current application.

    Args:
        backup_type: 'full' or 'incremental'

    Returns:
        BackupResult of the run

    Raises:
        ValueError: If backup_type is unknown
    """
    from flask import current_app

    backup_type = BackupType(backup_type)
    orchestrator = current_app.extensions['ipfs_backup'].create_orchestrator()

    if backup_type == BackupType.FULL:
        return orchestrator.run_full_backup()
    return orchestrator.run_incremental_backup()
