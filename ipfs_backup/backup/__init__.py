"""
Backup module for ipfs-backup.

This module handles the core backup functionality including:
- Database dumps (mongodump)
- Compression
- Replicated storage on IPFS nodes (and an optional secondary mirror)
- Manifest bookkeeping
- Execution orchestration
- Retention policy enforcement
- Restore
"""

import os

from .dump import MongoDumper, DumpFailed, create_dumper
from .compression import compress, extract, ArchiveError
from .storage import (
    ContentStoreClient, StoreEndpoint, StoreError, InsufficientReplication, NotPinned,
    LocalMirror, S3Mirror, SecondaryMirrorError, create_content_store, create_mirror
)
from .manifest import ManifestLedger, ManifestIOError, NoBaseBackup
from .executor import BackupOrchestrator, CleanupError, RunState
from .retention import RetentionManager
from .restore import MongoRestorer, RestorePipeline, RestoreError, RestoreToolFailed


class BackupServices:
    """
    Long-lived collaborators built once from configuration.

    Stored in app.extensions['ipfs_backup'] and used to build a fresh
    orchestrator, sweeper or restore pipeline per operation.
    """

    def __init__(self, settings):
        from ipfs_backup.utils.crypto import FileCipher
        from ipfs_backup.utils.notifications import Notifier

        self.settings = settings
        self.temp_dir = settings.get('TEMP_DIR', '/data/temp')
        self.storage_dir = settings.get('LOCAL_BACKUP_DIR', '/data/backups')

        self.dumper = create_dumper(settings)
        self.store = create_content_store(settings)
        self.notifier = Notifier.from_config(settings)
        self.mirror = create_mirror(settings.get('MIRROR_TARGET'), settings)
        self.restorer = MongoRestorer(settings.get('MONGORESTORE_PATH', 'mongorestore'))
        self.ledger = ManifestLedger(
            os.path.join(self.storage_dir, settings.get('MANIFEST_FILENAME', 'manifest.json')),
            store=self.store,
        )
        self._cipher = None
        if settings.get('BACKUP_ENCRYPTION_KEY'):
            self._cipher = FileCipher.from_config(settings)

    @property
    def cipher(self):
        """FileCipher; raises ConfigurationError when no key is configured."""
        if self._cipher is None:
            from ipfs_backup.utils.crypto import FileCipher
            self._cipher = FileCipher.from_config(self.settings)
        return self._cipher

    def create_orchestrator(self) -> BackupOrchestrator:
        return BackupOrchestrator(
            dumper=self.dumper,
            cipher=self.cipher,
            store=self.store,
            ledger=self.ledger,
            notifier=self.notifier,
            temp_dir=self.temp_dir,
            storage_dir=self.storage_dir,
            mirror=self.mirror,
        )

    def create_retention_manager(self) -> RetentionManager:
        return RetentionManager(
            ledger=self.ledger,
            store=self.store,
            storage_dir=self.storage_dir,
            retention_days=self.settings.get('BACKUP_RETENTION_DAYS', 90),
            local_retention_days=self.settings.get('BACKUP_LOCAL_RETENTION_DAYS', 7),
            notifier=self.notifier,
        )

    def create_restore_pipeline(self) -> RestorePipeline:
        return RestorePipeline(self.store, self.cipher, self.restorer, work_dir=self.temp_dir)


__all__ = [
    'BackupServices',
    'MongoDumper',
    'DumpFailed',
    'compress',
    'extract',
    'ArchiveError',
    'ContentStoreClient',
    'StoreEndpoint',
    'StoreError',
    'InsufficientReplication',
    'NotPinned',
    'LocalMirror',
    'S3Mirror',
    'SecondaryMirrorError',
    'ManifestLedger',
    'ManifestIOError',
    'NoBaseBackup',
    'BackupOrchestrator',
    'CleanupError',
    'RunState',
    'RetentionManager',
    'MongoRestorer',
    'RestorePipeline',
    'RestoreError',
    'RestoreToolFailed',
]
