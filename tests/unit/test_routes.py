"""
Unit tests for the JSON API (ipfs_backup/routes/).
"""

from unittest.mock import patch

import pytest
from apscheduler.jobstores.base import ConflictingIdError

from ipfs_backup.backup.executor import run_backup
from ipfs_backup.backup.manifest import ManifestLedger


@pytest.fixture
def backups(app, app_services):
    """A full and an incremental backup made through the app services."""
    with app.app_context():
        full = run_backup('full')
        incremental = run_backup('incremental')
    return full, incremental


class TestHealthRoutes:
    """Test health endpoints."""

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json() == {'status': 'healthy'}

    def test_store_health(self, client, app_services):
        response = client.get('/api/health/stores')

        data = response.get_json()
        assert response.status_code == 200
        assert data['healthyNodes'] == 3
        assert data['requiredNodes'] == 2
        assert data['scheduler']['running'] is False

    def test_store_health_degraded(self, client, app_services, fake_endpoints):
        fake_endpoints[0].fail = True
        fake_endpoints[1].fail = True

        response = client.get('/api/health/stores')

        assert response.status_code == 503
        assert response.get_json()['status'] == 'degraded'


class TestBackupRoutes:
    """Test manifest inspection endpoints."""

    def test_list_empty(self, client, app_services):
        response = client.get('/api/backups/')

        assert response.status_code == 200
        assert response.get_json() == {'backups': [], 'total': 0}

    def test_list_newest_first(self, client, backups):
        full, incremental = backups

        data = client.get('/api/backups/').get_json()

        assert data['total'] == 2
        assert [b['contentAddress'] for b in data['backups']] == [
            incremental.content_address, full.content_address
        ]

    def test_list_filter_type(self, client, backups):
        full, _ = backups

        data = client.get('/api/backups/?type=full').get_json()

        assert [b['contentAddress'] for b in data['backups']] == [full.content_address]

    def test_list_invalid_type(self, client, app_services):
        assert client.get('/api/backups/?type=weekly').status_code == 400

    def test_list_invalid_timestamp(self, client, app_services):
        assert client.get('/api/backups/?since=yesterday').status_code == 400

    def test_statistics(self, client, backups):
        data = client.get('/api/backups/statistics').get_json()

        assert data['totalBackups'] == 2
        assert data['totalSize'] == sum(b.size_bytes for b in backups)
        assert data['manifestContentAddress']

    def test_get_backup(self, client, backups):
        _, incremental = backups
        full = backups[0]

        data = client.get(f'/api/backups/{incremental.content_address}').get_json()

        assert data['type'] == 'incremental'
        assert data['baseBackupAddress'] == full.content_address

    def test_get_backup_not_found(self, client, app_services):
        assert client.get('/api/backups/bafkmissing').status_code == 404

    def test_verify(self, client, backups, fake_endpoints):
        full, _ = backups
        fake_endpoints[2].pins.discard(full.content_address)

        data = client.get(f'/api/backups/{full.content_address}/verify').get_json()

        assert data['allPinned'] is False
        assert [r['pinned'] for r in data['perEndpoint']] == [True, True, False]

    def test_lineage(self, client, backups):
        full, incremental = backups

        data = client.get(f'/api/backups/{incremental.content_address}/lineage').get_json()

        assert [b['contentAddress'] for b in data['backups']] == [
            full.content_address, incremental.content_address
        ]
        assert data['gaps'] == []

    def test_lineage_unknown(self, client, app_services):
        assert client.get('/api/backups/bafkmissing/lineage').status_code == 404

    @patch('ipfs_backup.scheduler.trigger_backup_now')
    def test_run_now(self, mock_trigger, client, app_services):
        mock_trigger.return_value = 'manual_full_1'

        response = client.post('/api/backups/run/full')

        assert response.status_code == 202
        assert response.get_json()['jobId'] == 'manual_full_1'
        mock_trigger.assert_called_once_with('full')

    @patch('ipfs_backup.scheduler.trigger_backup_now')
    def test_run_now_conflicting_job(self, mock_trigger, client, app_services):
        mock_trigger.side_effect = ConflictingIdError('manual_full_1')

        assert client.post('/api/backups/run/full').status_code == 409

    def test_run_now_invalid_type(self, client, app_services):
        assert client.post('/api/backups/run/weekly').status_code == 400

    def test_run_now_without_scheduler(self, client, app_services):
        assert client.post('/api/backups/run/full').status_code == 503

    def test_sweep(self, client, backups):
        response = client.post('/api/backups/retention/sweep')

        data = response.get_json()
        assert response.status_code == 200
        assert data['deletedCount'] == 0
        assert data['manifestAddress']


class TestApiToken:
    """Test the optional bearer token."""

    def test_token_required_when_configured(self, app, client, app_services):
        app.config['API_TOKEN'] = 's3cret-token'

        assert client.get('/api/backups/').status_code == 401
        assert client.get('/api/backups/', headers={'Authorization': 'Bearer wrong'}).status_code == 401
        ok = client.get('/api/backups/', headers={'Authorization': 'Bearer s3cret-token'})
        assert ok.status_code == 200

    def test_health_always_open(self, app, client):
        app.config['API_TOKEN'] = 's3cret-token'

        assert client.get('/health').status_code == 200


class TestConcurrentReads:
    """Test API reads while a run is updating the manifest."""

    def test_listing_during_manifest_save_keeps_run_record(self, app, client, app_services):
        ledger = app_services.ledger
        original_save = ledger.save
        statuses = []

        def save_with_request():
            if not statuses:
                statuses.append(client.get('/api/backups/').status_code)
            original_save()

        with patch.object(ledger, 'save', side_effect=save_with_request):
            with app.app_context():
                result = run_backup('full')

        assert statuses == [200]
        on_disk = ManifestLedger(str(ledger.manifest_path)).load()
        assert [r.content_address for r in on_disk.records] == [result.content_address]
