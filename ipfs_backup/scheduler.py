"""
APScheduler configuration and job scheduling for ipfs-backup.

Manages:
- Scheduled full and incremental backups (cron expressions, UTC)
- Retention sweep
- Manual triggers
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from ipfs_backup.backup.executor import run_backup
from ipfs_backup.backup.retention import enforce_retention_policies
from ipfs_backup.models import BackupType


logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    A single worker thread runs every job, so a backup and a retention
    sweep never overlap.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    jobstores = {
        'default': MemoryJobStore()
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[BackupType.FULL.value],
        trigger=CronTrigger.from_crontab(app.config['FULL_BACKUP_SCHEDULE'], timezone='UTC'),
        id='backup_full',
        name='Full Backup',
        replace_existing=True
    )

    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[BackupType.INCREMENTAL.value],
        trigger=CronTrigger.from_crontab(app.config['INCREMENTAL_BACKUP_SCHEDULE'], timezone='UTC'),
        id='backup_incremental',
        name='Incremental Backup',
        replace_existing=True
    )

    scheduler.add_job(
        func=_execute_retention_wrapper,
        trigger=CronTrigger.from_crontab(app.config['RETENTION_SCHEDULE'], timezone='UTC'),
        id='retention_cleanup',
        name='Retention Cleanup',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info("APScheduler started successfully")

    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler, flask_app

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")

    scheduler = None
    flask_app = None


def _execute_backup_wrapper(backup_type: str):
    """
    Run a backup inside the application context.

    Errors are logged here; the orchestrator has already cleaned up and
    sent the failure notification.
    """
    with flask_app.app_context():
        try:
            logger.info(f"Scheduler executing {backup_type} backup")
            result = run_backup(backup_type)
            logger.info(f"Scheduled {backup_type} backup completed: {result.content_address}")
        except Exception as e:
            logger.error(f"Scheduled {backup_type} backup failed: {type(e).__name__}: {e}")


def _execute_retention_wrapper():
    with flask_app.app_context():
        try:
            result = enforce_retention_policies()
            logger.info(f"Scheduled retention sweep completed: {result.deleted_count} deleted, "
                        f"{len(result.errors)} errors")
        except Exception as e:
            logger.error(f"Scheduled retention sweep failed: {type(e).__name__}: {e}")


def trigger_backup_now(backup_type: str) -> str:
    """
    Manually trigger a backup immediately.

    Args:
        backup_type: 'full' or 'incremental'

    Returns:
        ID of the one-time scheduler job

    Raises:
        ValueError: If backup_type is unknown
        RuntimeError: If the scheduler is not running
    """
    backup_type = BackupType(backup_type).value

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    job_id = f"manual_{backup_type}_{int(now.timestamp())}_{uuid.uuid4().hex[:8]}"

    # 1 second delay to avoid racing the scheduler start
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[backup_type],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name=f"Manual: {backup_type} backup",
        replace_existing=False
    )

    logger.info(f"Manually triggered {backup_type} backup ({job_id})")
    return job_id


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []

    for job in scheduler.get_jobs():
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if getattr(job, 'next_run_time', None) else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
