# Gunicorn configuration for ipfs-backup
# Only one worker may run the backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:5000')
workers = int(os.environ.get('GUNICORN_WORKERS', '2'))
timeout = 120


def post_fork(server, worker):
    """
    Called in each worker before the application is loaded.

    The first spawned worker (age 1) owns the scheduler; every other
    worker serves HTTP only, so at most one backup run is active.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance (age counts spawned workers from 1)
    """
    if worker.age == 1:
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_ENABLED'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
