# Gunicorn configuration for pgbackup
# Only one worker may own the scheduler, otherwise every backup runs once per worker

import fcntl
import os
import logging
import tempfile

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('BIND', '0.0.0.0:5000')
workers = int(os.environ.get('WEB_CONCURRENCY', 2))

# Backups and restores stream through the scheduler worker; keep it alive
timeout = 0

# Held by the scheduler owner for its whole life; the kernel drops the lock
# when that worker exits, however it exits
scheduler_lock_file = os.environ.get(
    'SCHEDULER_LOCK_FILE',
    os.path.join(tempfile.gettempdir(), 'pgbackup-scheduler.lock')
)

_scheduler_lock = None


def post_fork(server, worker):
    """
    Called in the worker right after fork, before the app is loaded.

    The worker that takes the scheduler lock owns the scheduler. Every other
    worker serves HTTP only. A worker spawned to replace a dead owner finds
    the lock free and takes over.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance
    """
    global _scheduler_lock

    lock = open(scheduler_lock_file, 'a')
    try:
        fcntl.flock(lock.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        lock.close()
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): HTTP only, scheduler disabled")
        return

    _scheduler_lock = lock
    os.environ['SCHEDULER_WORKER'] = 'true'
    logger.info(f"Worker PID {worker.pid} (age={worker.age}): scheduler owner ({scheduler_lock_file})")


def worker_exit(server, worker):
    """Release the scheduler lock so the next spawned worker can take it."""
    global _scheduler_lock

    if _scheduler_lock is None:
        return

    fcntl.flock(_scheduler_lock.fileno(), fcntl.LOCK_UN)
    _scheduler_lock.close()
    _scheduler_lock = None
    logger.info(f"Worker PID {worker.pid}: released scheduler lock")
