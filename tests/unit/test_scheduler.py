"""
Unit tests for scheduler (ipfs_backup/scheduler.py).

Tests APScheduler configuration, job wrappers and manual triggers.
"""

from unittest.mock import MagicMock, patch

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from freezegun import freeze_time

from ipfs_backup import scheduler as scheduler_module
from ipfs_backup.backup.manifest import NoBaseBackup
from ipfs_backup.models import BackupResult, BackupType, SweepResult


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    def teardown_method(self):
        """Reset global scheduler."""
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_init_scheduler(self, mock_scheduler, app):
        result = scheduler_module.init_scheduler(app)

        assert result == mock_scheduler
        assert scheduler_module.flask_app == app

        job_ids = [c[1]['id'] for c in mock_scheduler.add_job.call_args_list]
        assert job_ids == ['backup_full', 'backup_incremental', 'retention_cleanup']
        for c in mock_scheduler.add_job.call_args_list:
            assert isinstance(c[1]['trigger'], CronTrigger)

    @patch('ipfs_backup.scheduler.BackgroundScheduler')
    def test_single_worker_no_overlap(self, mock_scheduler_class, app):
        scheduler_module.init_scheduler(app)

        call_kwargs = mock_scheduler_class.call_args[1]
        assert call_kwargs['timezone'] == 'UTC'
        assert call_kwargs['job_defaults']['max_instances'] == 1
        assert call_kwargs['job_defaults']['coalesce'] is True
        assert call_kwargs['executors']['default']._pool._max_workers == 1

    def test_init_scheduler_only_once(self, mock_scheduler, app):
        result1 = scheduler_module.init_scheduler(app)
        result2 = scheduler_module.init_scheduler(app)

        assert result1 is result2
        assert mock_scheduler.add_job.call_count == 3

    def test_invalid_cron_raises(self, mock_scheduler, app):
        app.config['FULL_BACKUP_SCHEDULE'] = 'not a cron'

        with pytest.raises(ValueError):
            scheduler_module.init_scheduler(app)

    def test_start_requires_init(self):
        with pytest.raises(RuntimeError):
            scheduler_module.start_scheduler()

    def test_start_and_stop(self, mock_scheduler, app):
        scheduler_module.init_scheduler(app)

        scheduler_module.start_scheduler()
        mock_scheduler.start.assert_called_once()

        mock_scheduler.running = True
        scheduler_module.stop_scheduler()
        mock_scheduler.shutdown.assert_called_once()
        assert scheduler_module.scheduler is None


class TestJobWrappers:
    """Test the functions APScheduler calls."""

    def teardown_method(self):
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    @patch('ipfs_backup.scheduler.run_backup')
    def test_backup_wrapper_runs_in_app_context(self, mock_run_backup, app):
        from flask import current_app
        seen = {}

        def fake_run(backup_type):
            seen['app'] = current_app._get_current_object()
            return BackupResult(BackupType.FULL, 'bafkabc', 10, 1.0)

        mock_run_backup.side_effect = fake_run
        scheduler_module.flask_app = app

        scheduler_module._execute_backup_wrapper('full')

        mock_run_backup.assert_called_once_with('full')
        assert seen['app'] is app

    @patch('ipfs_backup.scheduler.run_backup')
    def test_backup_wrapper_logs_failures(self, mock_run_backup, app):
        mock_run_backup.side_effect = NoBaseBackup('no full backup')
        scheduler_module.flask_app = app

        with patch('ipfs_backup.scheduler.logger') as mock_logger:
            scheduler_module._execute_backup_wrapper('incremental')

        assert 'NoBaseBackup' in mock_logger.error.call_args[0][0]

    @patch('ipfs_backup.scheduler.enforce_retention_policies')
    def test_retention_wrapper(self, mock_enforce, app):
        mock_enforce.return_value = SweepResult(deleted_count=2)
        scheduler_module.flask_app = app

        scheduler_module._execute_retention_wrapper()

        mock_enforce.assert_called_once()


class TestManualTrigger:
    """Test run-now triggers."""

    def teardown_method(self):
        scheduler_module.scheduler = None
        scheduler_module.flask_app = None

    def test_trigger_backup_now(self, mock_scheduler, app):
        scheduler_module.init_scheduler(app)

        job_id = scheduler_module.trigger_backup_now('incremental')

        assert job_id.startswith('manual_incremental_')
        kwargs = mock_scheduler.add_job.call_args[1]
        assert kwargs['args'] == ['incremental']
        assert isinstance(kwargs['trigger'], DateTrigger)

    @freeze_time('2024-01-15 02:00:00')
    def test_triggers_within_one_second_get_distinct_ids(self, mock_scheduler, app):
        scheduler_module.init_scheduler(app)

        first = scheduler_module.trigger_backup_now('full')
        second = scheduler_module.trigger_backup_now('full')

        assert first != second
        job_ids = [c[1]['id'] for c in mock_scheduler.add_job.call_args_list[-2:]]
        assert job_ids == [first, second]

    def test_trigger_unknown_type(self, mock_scheduler, app):
        scheduler_module.init_scheduler(app)

        with pytest.raises(ValueError):
            scheduler_module.trigger_backup_now('differential')

    def test_trigger_without_scheduler(self):
        with pytest.raises(RuntimeError):
            scheduler_module.trigger_backup_now('full')

    def test_get_scheduled_jobs(self, mock_scheduler, app):
        job = MagicMock()
        job.id = 'backup_full'
        job.name = 'Full Backup'
        job.next_run_time = None
        job.trigger = 'cron[day_of_week=0]'
        mock_scheduler.get_jobs.return_value = [job]
        scheduler_module.init_scheduler(app)

        jobs = scheduler_module.get_scheduled_jobs()

        assert jobs == [{'id': 'backup_full', 'name': 'Full Backup', 'next_run': None,
                         'trigger': 'cron[day_of_week=0]'}]

    def test_get_scheduled_jobs_without_scheduler(self):
        assert scheduler_module.get_scheduled_jobs() == []
