"""
Shared pytest fixtures for ipfs-backup tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Encryption key and cipher
- In-memory IPFS nodes and a content store client over them
- Manifest ledger and a fake dump producer
- Mock fixtures for external services (S3)
"""

import base64
import gzip
import hashlib
import os
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from ipfs_backup import create_app
from ipfs_backup.backup.executor import BackupOrchestrator
from ipfs_backup.backup.manifest import ManifestLedger
from ipfs_backup.backup.storage import ContentStoreClient, StoreError, NotPinned
from ipfs_backup.models import DumpResult, utcnow
from ipfs_backup.utils.crypto import FileCipher


TEST_KEY = base64.b64encode(bytes(range(32))).decode()


class FakeNetwork:
    """Blocks shared by every fake node, like a connected IPFS swarm."""

    def __init__(self):
        self.blocks = {}
        self.lock = threading.Lock()


class FakeEndpoint:
    """
    In-memory stand-in for StoreEndpoint.

    Set `fail` to make every call raise StoreError, or `fail_pin` to make
    only pin_add fail.
    """

    def __init__(self, name, network, fail=False, fail_pin=False):
        self.name = name
        self.url = f'http://{name}:5001'
        self.network = network
        self.fail = fail
        self.fail_pin = fail_pin
        self.pins = set()
        self.add_calls = 0

    def _check(self, command):
        if self.fail:
            raise StoreError(f"{self.name}: {command} request failed: connection refused")

    def add(self, file_path):
        self._check('add')
        self.add_calls += 1
        data = Path(file_path).read_bytes()
        cid = 'bafk' + hashlib.sha256(data).hexdigest()[:52]
        with self.network.lock:
            self.network.blocks[cid] = data
        return cid

    def pin_add(self, cid):
        self._check('pin/add')
        if self.fail_pin:
            raise StoreError(f"{self.name}: pin/add failed (500): context deadline exceeded")
        if cid not in self.network.blocks:
            raise StoreError(f"{self.name}: pin/add failed (500): block not found")
        self.pins.add(cid)

    def pin_ls(self, cid):
        self._check('pin/ls')
        return cid in self.pins

    def pin_rm(self, cid):
        self._check('pin/rm')
        if cid not in self.pins:
            raise NotPinned(f"{self.name}: pin/rm failed (500): not pinned or pinned indirectly")
        self.pins.remove(cid)

    def cat(self, cid, dest_path):
        self._check('cat')
        if cid not in self.network.blocks:
            raise StoreError(f"{self.name}: cat failed (500): block not found")
        data = self.network.blocks[cid]
        Path(dest_path).write_bytes(data)
        return len(data)

    def identity(self):
        self._check('id')
        return f'12D3KooW{self.name}'


class FakeDumper:
    """
    Writes a small mongodump-shaped tree instead of running mongodump.

    Full dumps contain admin/ and shop/; incremental dumps contain
    local/oplog.rs.bson.gz.
    """

    def __init__(self):
        self.full_calls = []
        self.incremental_calls = []

    def _write(self, path, payload):
        path.parent.mkdir(parents=True, exist_ok=True)
        with gzip.open(path, 'wb') as f:
            f.write(payload)

    def create_full_dump(self, output_dir):
        self.full_calls.append(output_dir)
        timestamp = utcnow()
        root = Path(output_dir)
        self._write(root / 'admin' / 'system.version.bson.gz', b'admin' * 20)
        self._write(root / 'shop' / 'orders.bson.gz', os.urandom(2048))
        (root / 'shop' / 'orders.metadata.json.gz').write_bytes(b'{}')
        return self._result(output_dir, timestamp, ['admin', 'shop'])

    def create_incremental_dump(self, output_dir, since):
        self.incremental_calls.append((output_dir, since))
        timestamp = utcnow()
        root = Path(output_dir)
        self._write(root / 'local' / 'oplog.rs.bson.gz', os.urandom(512))
        return self._result(output_dir, timestamp, ['local'])

    def _result(self, output_dir, timestamp, databases):
        size = sum(p.stat().st_size for p in Path(output_dir).rglob('*') if p.is_file())
        return DumpResult(
            output_dir=output_dir,
            duration_seconds=0.1,
            timestamp=timestamp,
            databases=databases,
            size_bytes=size,
        )


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Directories live under tmp_path; the scheduler is disabled.
    """
    app = create_app('testing', overrides={
        'TEMP_DIR': str(tmp_path / 'temp'),
        'LOCAL_BACKUP_DIR': str(tmp_path / 'backups'),
        'LOG_DIR': str(tmp_path / 'logs'),
        'BACKUP_ENCRYPTION_KEY': TEST_KEY,
    })

    yield app


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def encryption_key():
    return TEST_KEY


@pytest.fixture
def cipher():
    return FileCipher(base64.b64decode(TEST_KEY))


@pytest.fixture
def fake_network():
    return FakeNetwork()


@pytest.fixture
def fake_endpoints(fake_network):
    """Three healthy in-memory IPFS nodes sharing one network."""
    return [FakeEndpoint(f'node{i}', fake_network) for i in range(1, 4)]


@pytest.fixture
def store(fake_endpoints):
    """Content store client requiring 2 of 3 pins."""
    return ContentStoreClient(fake_endpoints, replication_factor=2)


@pytest.fixture
def ledger(tmp_path, store):
    storage_dir = tmp_path / 'backups'
    storage_dir.mkdir(exist_ok=True)
    return ManifestLedger(str(storage_dir / 'manifest.json'), store=store).load()


@pytest.fixture
def fake_dumper():
    return FakeDumper()


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def orchestrator(tmp_path, fake_dumper, cipher, store, ledger, notifier):
    """Orchestrator wired to in-memory collaborators."""
    return BackupOrchestrator(
        dumper=fake_dumper,
        cipher=cipher,
        store=store,
        ledger=ledger,
        notifier=notifier,
        temp_dir=str(tmp_path / 'temp'),
        storage_dir=str(tmp_path / 'backups'),
    )


@pytest.fixture
def app_services(app, fake_endpoints, fake_dumper, notifier):
    """
    The app's BackupServices with in-memory nodes and dumper swapped in.
    """
    services = app.extensions['ipfs_backup']
    services.store.endpoints = fake_endpoints
    services.store.primary = fake_endpoints[0]
    services.store.max_workers = len(fake_endpoints)
    services.dumper = fake_dumper
    services.notifier = notifier
    return services


@pytest.fixture
def dump_tree(tmp_path):
    """
    Create a mongodump-shaped directory.

    Creates:
    - dump/shop/orders.bson.gz
    - dump/shop/orders.metadata.json.gz
    - dump/admin/system.version.bson.gz
    """
    root = tmp_path / 'dump'
    (root / 'shop').mkdir(parents=True)
    (root / 'admin').mkdir()
    (root / 'shop' / 'orders.bson.gz').write_bytes(gzip.compress(b'orders' * 100))
    (root / 'shop' / 'orders.metadata.json.gz').write_bytes(gzip.compress(b'{"indexes": []}'))
    (root / 'admin' / 'system.version.bson.gz').write_bytes(gzip.compress(b'version'))
    return root


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('ipfs_backup.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
