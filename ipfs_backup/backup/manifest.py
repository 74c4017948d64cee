"""
Manifest ledger.

The manifest is a JSON document listing every backup held in the content
store. It lives in the local storage directory and is itself published to
the content store after every run so it can be recovered from any node.
"""

import json
import logging
import os
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Tuple

from ipfs_backup.models import (
    BackupRecord, BackupType, ManifestStatistics, format_timestamp, parse_timestamp, utcnow
)


logger = logging.getLogger(__name__)

MANIFEST_VERSION = '1.0'


class ManifestIOError(Exception):
    """Raised when the manifest cannot be read, written or updated."""
    pass


class NoBaseBackup(Exception):
    """Raised when an incremental backup has no full backup to build on."""
    pass


class ManifestLedger:
    """
    Read-modify-write access to the backup manifest.

    Every mutation reloads the file first and saves immediately after, so
    the file on disk is the state shared between runs. Each reload,
    mutate and save cycle holds the ledger lock; readers that only look at
    the records use snapshot() instead of reloading the shared instance.
    """

    def __init__(self, manifest_path: str, store=None):
        """
        Initialize ledger.

        Args:
            manifest_path: Path of the manifest JSON file
            store: ContentStoreClient used by publish()
        """
        self.manifest_path = Path(manifest_path)
        self.store = store
        self.created_at = utcnow()
        self.last_updated = self.created_at
        self.manifest_content_address = None
        self.records: List[BackupRecord] = []
        self._lock = threading.RLock()

    def __repr__(self):
        return f'<ManifestLedger {self.manifest_path} ({len(self.records)} backups)>'

    @property
    def temp_path(self) -> Path:
        return self.manifest_path.with_name(self.manifest_path.name + '.tmp')

    def load(self) -> 'ManifestLedger':
        """
        Load the manifest from disk.

        A missing file yields a new, empty manifest.

        Raises:
            ManifestIOError: If the file exists but cannot be parsed
        """
        with self._lock:
            if not self.manifest_path.exists():
                logger.debug(f"No manifest at {self.manifest_path}, starting empty")
                self.created_at = utcnow()
                self.last_updated = self.created_at
                self.manifest_content_address = None
                self.records = []
                return self

            try:
                with open(self.manifest_path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                self.created_at = parse_timestamp(data.get('createdAt')) or utcnow()
                self.last_updated = parse_timestamp(data.get('lastUpdated')) or self.created_at
                self.manifest_content_address = data.get('manifestContentAddress')
                self.records = [BackupRecord.from_dict(item) for item in data.get('backups', [])]
            except (OSError, ValueError, KeyError, TypeError) as e:
                raise ManifestIOError(f"Failed to load manifest {self.manifest_path}: {e}") from e

            return self

    def snapshot(self) -> 'ManifestLedger':
        """
        Load a private read-only copy of the manifest.

        The copy shares the file but not the in-memory records, so reading
        it never disturbs a mutation in progress on this ledger.
        """
        with self._lock:
            return ManifestLedger(str(self.manifest_path)).load()

    def to_dict(self) -> dict:
        return {
            'version': MANIFEST_VERSION,
            'createdAt': format_timestamp(self.created_at),
            'lastUpdated': format_timestamp(self.last_updated),
            'manifestContentAddress': self.manifest_content_address,
            'backups': [record.to_dict() for record in self.records],
            'statistics': self.statistics().to_dict(),
        }

    def save(self):
        """
        Write the manifest atomically (temp file + rename).

        Raises:
            ManifestIOError: If writing fails
        """
        with self._lock:
            self.last_updated = utcnow()
            temp_path = self.temp_path

            try:
                self.manifest_path.parent.mkdir(parents=True, exist_ok=True)
                with open(temp_path, 'w', encoding='utf-8') as f:
                    json.dump(self.to_dict(), f, indent=2)
                os.replace(temp_path, self.manifest_path)
            except OSError as e:
                if temp_path.exists():
                    try:
                        temp_path.unlink()
                    except OSError:
                        logger.warning(f"Failed to remove {temp_path}")
                raise ManifestIOError(f"Failed to save manifest {self.manifest_path}: {e}") from e

    def publish(self) -> str:
        """
        Upload the manifest to the content store.

        The previously published manifest is unpinned once the new one is
        in place; failing to unpin it is only logged.

        Returns:
            Content address of the published manifest

        Raises:
            ManifestIOError: If saving fails
            StoreError: If the upload fails
        """
        if self.store is None:
            raise ManifestIOError("No content store configured for manifest publishing")

        with self._lock:
            previous = self.manifest_content_address

            self.save()
            result = self.store.upload(str(self.manifest_path))

            self.manifest_content_address = result.content_address
            self.save()

        logger.info(f"Manifest published: {result.content_address}")

        if previous and previous != result.content_address:
            self._unpin_previous(previous)

        return result.content_address

    def _unpin_previous(self, address: str):
        try:
            failed = [r.endpoint for r in self.store.unpin(address) if not r.success]
        except Exception as e:
            logger.warning(f"Failed to unpin previous manifest {address}: {e}")
            return

        if failed:
            logger.warning(f"Previous manifest {address} still pinned on {', '.join(failed)}")
        else:
            logger.debug(f"Unpinned previous manifest {address}")

    def append(self, record: BackupRecord):
        """
        Add a record and persist.

        Raises:
            ManifestIOError: If the address is already present or saving fails
            NoBaseBackup: If an incremental's base full backup is not in the manifest
        """
        with self._lock:
            self.load()

            if self.get(record.content_address) is not None:
                raise ManifestIOError(f"Backup {record.content_address} already in manifest")

            if record.is_incremental:
                base = self.get(record.base_backup_address) if record.base_backup_address else None
                if base is None or not base.is_full:
                    raise NoBaseBackup(
                        f"Base full backup {record.base_backup_address} not found in manifest"
                    )

            self.records.append(record)
            self.save()

        logger.info(f"Added {record.type.value} backup {record.content_address} to manifest")

    def remove(self, content_address: str) -> Optional[BackupRecord]:
        """Remove a record and persist. Unknown addresses return None."""
        with self._lock:
            self.load()

            record = self.get(content_address)
            if record is None:
                logger.warning(f"Backup {content_address} not in manifest, nothing to remove")
                return None

            self.records.remove(record)
            self.save()

        logger.info(f"Removed backup {content_address} from manifest")
        return record

    def clear_local_paths(self, paths: List[str]) -> int:
        """
        Blank the local path of records whose file was reclaimed.

        Returns:
            Number of records updated
        """
        if not paths:
            return 0

        reclaimed = {os.path.abspath(p) for p in paths}
        updated = 0

        with self._lock:
            self.load()

            for record in self.records:
                if record.local_path and os.path.abspath(record.local_path) in reclaimed:
                    record.local_path = ''
                    updated += 1

            if updated:
                self.save()
        return updated

    def query(self, backup_type: Optional[BackupType] = None, since: Optional[datetime] = None,
              until: Optional[datetime] = None, older_than_days: Optional[int] = None) -> List[BackupRecord]:
        """
        Filter records, newest first.

        Args:
            backup_type: Only records of this type
            since: Only records created at or after this time
            until: Only records created at or before this time
            older_than_days: Only records created more than N days ago
        """
        results = list(self.records)

        if backup_type is not None:
            backup_type = BackupType(backup_type)
            results = [r for r in results if r.type == backup_type]
        if since is not None:
            since = parse_timestamp(since)
            results = [r for r in results if r.created_at >= since]
        if until is not None:
            until = parse_timestamp(until)
            results = [r for r in results if r.created_at <= until]
        if older_than_days is not None:
            cutoff = utcnow() - timedelta(days=older_than_days)
            results = [r for r in results if r.created_at < cutoff]

        return sorted(results, key=lambda r: r.created_at, reverse=True)

    def get(self, content_address: str) -> Optional[BackupRecord]:
        for record in self.records:
            if record.content_address == content_address:
                return record
        return None

    def latest_full(self) -> Optional[BackupRecord]:
        fulls = self.query(backup_type=BackupType.FULL)
        return fulls[0] if fulls else None

    def latest_in_lineage(self, base_address: str) -> Optional[BackupRecord]:
        """Newest record that is the base full backup or builds on it."""
        members = [
            r for r in self.records
            if r.content_address == base_address or r.base_backup_address == base_address
        ]
        if not members:
            return None
        return max(members, key=lambda r: r.oplog_range_end or r.created_at)

    def statistics(self) -> ManifestStatistics:
        if not self.records:
            return ManifestStatistics()

        timestamps = [r.created_at for r in self.records]
        return ManifestStatistics(
            total_backups=len(self.records),
            total_size=sum(r.size_bytes for r in self.records),
            oldest=min(timestamps),
            newest=max(timestamps),
        )

    def lineage(self, content_address: str) -> List[BackupRecord]:
        """
        Records needed to restore a backup: its full backup followed by the
        incrementals up to and including it, in oplog order.

        Raises:
            ManifestIOError: If the backup or its base is not in the manifest
        """
        target = self.get(content_address)
        if target is None:
            raise ManifestIOError(f"Backup {content_address} not in manifest")

        if target.is_full:
            return [target]

        base = self.get(target.base_backup_address)
        if base is None:
            raise ManifestIOError(
                f"Base backup {target.base_backup_address} of {content_address} not in manifest"
            )

        incrementals = sorted(
            (r for r in self.records
             if r.is_incremental and r.base_backup_address == base.content_address
             and r.oplog_range_start <= target.oplog_range_start),
            key=lambda r: r.oplog_range_start,
        )
        return [base] + incrementals

    def find_chain_gaps(self, base_address: str) -> List[Tuple[datetime, datetime]]:
        """
        Report discontinuities in the oplog chain built on a full backup.

        Returns:
            (previous end, next start) pairs where the next incremental does
            not start where the previous one ended
        """
        base = self.get(base_address)
        if base is None:
            raise ManifestIOError(f"Backup {base_address} not in manifest")

        incrementals = sorted(
            (r for r in self.records if r.is_incremental and r.base_backup_address == base_address),
            key=lambda r: r.oplog_range_start,
        )

        gaps = []
        previous_end = base.created_at
        for record in incrementals:
            if record.oplog_range_start != previous_end:
                gaps.append((previous_end, record.oplog_range_start))
            previous_end = record.oplog_range_end

        return gaps


def create_ledger(settings, store=None) -> ManifestLedger:
    """Create and load the ledger from configuration."""
    path = os.path.join(settings.get('LOCAL_BACKUP_DIR', '/data/backups'),
                        settings.get('MANIFEST_FILENAME', 'manifest.json'))
    return ManifestLedger(path, store=store).load()
