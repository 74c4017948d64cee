"""
Retention policy enforcement for backups.

Removes backups older than the retention horizon from the content store,
the local storage directory and the manifest, then sweeps the local
storage directory against a separate, shorter local horizon.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import List

from ipfs_backup.models import SweepResult


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Enforces remote and local retention.

    Each expired record is unpinned, its local file deleted and its
    manifest entry removed; a failure in one step or one record never
    stops the others. Errors are collected in the SweepResult.
    """

    def __init__(self, ledger, store, storage_dir: str, retention_days: int = 90,
                 local_retention_days: int = 7, notifier=None):
        """
        Initialize retention manager.

        Args:
            ledger: ManifestLedger holding the records
            store: ContentStoreClient to unpin from
            storage_dir: Local directory with encrypted archives and the manifest
            retention_days: Remote horizon in days
            local_retention_days: Local file horizon in days
            notifier: Optional Notifier for the cleanup summary
        """
        self.ledger = ledger
        self.store = store
        self.storage_dir = storage_dir
        self.retention_days = retention_days
        self.local_retention_days = local_retention_days
        self.notifier = notifier
        self.logs = []

    def sweep(self) -> SweepResult:
        """
        Run remote and local retention.

        Returns:
            SweepResult with counts and collected errors
        """
        self.logs = []
        result = SweepResult()

        self._log(f"Starting retention sweep (remote: {self.retention_days} days, "
                  f"local: {self.local_retention_days} days)")

        self.ledger.load()
        expired = self.ledger.query(older_than_days=self.retention_days)
        self._log(f"Found {len(expired)} backups past retention")

        for record in expired:
            self._expire_record(record, result)

        reclaimed = self._sweep_local(result)
        if reclaimed:
            try:
                self.ledger.clear_local_paths(reclaimed)
            except Exception as e:
                result.errors.append(f"Failed to update local paths in manifest: {e}")

        try:
            result.manifest_address = self.ledger.publish()
        except Exception as e:
            error_msg = f"Failed to publish manifest: {e}"
            self._log(error_msg, level=logging.ERROR)
            result.errors.append(error_msg)

        self._log(
            f"Retention sweep complete. "
            f"Deleted: {result.deleted_count}, "
            f"Freed: {result.freed_bytes} bytes, "
            f"Local deleted: {result.local_deleted_count}, "
            f"Errors: {len(result.errors)}"
        )

        if self.notifier:
            self.notifier.retention_cleanup(result.deleted_count, result.freed_bytes, len(result.errors))

        return result

    def _expire_record(self, record, result: SweepResult):
        address = record.content_address
        self._log(f"Expiring {record.type.value} backup {address} from {record.created_at.isoformat()}")

        # Unpin
        try:
            for pin_result in self.store.unpin(address):
                if not pin_result.success:
                    result.errors.append(f"Failed to unpin {address} on {pin_result.endpoint}: {pin_result.error}")
        except Exception as e:
            result.errors.append(f"Failed to unpin {address}: {e}")

        # Local file
        if record.local_path:
            try:
                os.remove(record.local_path)
                self._log(f"Deleted local file {record.local_path}")
            except FileNotFoundError:
                pass
            except OSError as e:
                result.errors.append(f"Failed to delete {record.local_path}: {e}")

        # Manifest entry
        try:
            if self.ledger.remove(address) is not None:
                result.deleted_count += 1
                result.freed_bytes += record.size_bytes
        except Exception as e:
            result.errors.append(f"Failed to remove {address} from manifest: {e}")

    def _sweep_local(self, result: SweepResult) -> List[str]:
        """
        Delete local files older than the local horizon.

        Returns:
            Paths of deleted files
        """
        if not os.path.isdir(self.storage_dir):
            return []

        cutoff = datetime.now(timezone.utc) - timedelta(days=self.local_retention_days)
        protected = {self.ledger.manifest_path.name, self.ledger.temp_path.name}
        deleted = []

        for entry in os.scandir(self.storage_dir):
            if entry.name in protected or not entry.is_file(follow_symlinks=False):
                continue
            try:
                stat = entry.stat(follow_symlinks=False)
                if datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc) >= cutoff:
                    continue
                os.remove(entry.path)
            except FileNotFoundError:
                continue
            except OSError as e:
                result.errors.append(f"Failed to delete local file {entry.path}: {e}")
                continue

            deleted.append(entry.path)
            result.local_deleted_count += 1
            result.local_freed_bytes += stat.st_size
            self._log(f"Deleted local file {entry.name} ({stat.st_size} bytes)")

        return deleted

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def enforce_retention_policies() -> SweepResult:
    """
    Run the retention sweep with the services of the current application.

    Used by the scheduler, the CLI and the API.
    """
    from flask import current_app

    return current_app.extensions['ipfs_backup'].create_retention_manager().sweep()
