"""
APScheduler configuration and job scheduling for pgbackup.

Manages:
- Scheduled backups (one job per cron expression in `schedule`)
- Scheduled restores (one job per enabled `restore_schedule` entry)
- Retention policy enforcement (`retention_cron`)
- Manual backup triggers

Jobs touching the same database never run at the same time: every job
takes the per-database lock from DatabaseLocks before it starts.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from pgbackup.settings import Settings, RestoreScheduleEntry
from pgbackup.backup.executor import execute_backup, execute_scheduled_restore
from pgbackup.backup.retention import enforce_retention_policies


logger = logging.getLogger(__name__)

# Global scheduler instance, Flask app reference and loaded settings
scheduler = None
flask_app = None
backup_settings = None


class DatabaseLocks:
    """Registry of one lock per database name."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, database: str) -> threading.Lock:
        with self._guard:
            if database not in self._locks:
                self._locks[database] = threading.Lock()
            return self._locks[database]

    def is_locked(self, database: str) -> bool:
        with self._guard:
            lock = self._locks.get(database)
        return lock is not None and lock.locked()


database_locks = DatabaseLocks()


def init_scheduler(app, settings: Settings):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
        settings: Loaded settings

    Returns:
        BackgroundScheduler instance
    """
    global scheduler, flask_app, backup_settings

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app
    backup_settings = settings

    executors = {
        'default': ThreadPoolExecutor(max_workers=3)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    )

    sync_jobs(settings)

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started successfully (state={scheduler.state}, running={scheduler.running})")

        jobs = scheduler.get_jobs()
        if jobs:
            logger.info(f"Loaded {len(jobs)} scheduled jobs:")
            for job in jobs:
                next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
                logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
        else:
            logger.info("No scheduled jobs loaded")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def sync_jobs(settings: Settings):
    """
    Register backup, restore and retention jobs from the settings.

    Jobs whose cron expression is invalid are logged and skipped so the
    remaining schedules still run.

    Args:
        settings: Loaded settings
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    timezone_name = flask_app.config.get('SCHEDULER_TIMEZONE', 'UTC') if flask_app else 'UTC'

    for job in scheduler.get_jobs():
        if job.id.startswith(('backup_', 'restore_')) or job.id == 'retention_cleanup':
            scheduler.remove_job(job.id)

    for index, cron in enumerate(settings.schedule):
        _add_cron_job(
            job_id=f"backup_{index}",
            name=f"Backup: {settings.database_name} ({cron})",
            cron=cron,
            func=_execute_backup_wrapper,
            args=[],
            timezone_name=timezone_name
        )

    for index, entry in enumerate(settings.restore_schedule):
        if not entry.enabled:
            logger.info(f"Restore schedule {index} into {entry.target_database} is disabled, skipping")
            continue
        _add_cron_job(
            job_id=f"restore_{index}",
            name=f"Restore: {entry.selection} -> {entry.target_database} ({entry.cron})",
            cron=entry.cron,
            func=_execute_restore_wrapper,
            args=[index],
            timezone_name=timezone_name
        )

    if settings.retention_cron:
        _add_cron_job(
            job_id='retention_cleanup',
            name='Retention Cleanup',
            cron=settings.retention_cron,
            func=_execute_retention_wrapper,
            args=[],
            timezone_name=timezone_name
        )


def _add_cron_job(job_id: str, name: str, cron: str, func, args: list, timezone_name: str):
    try:
        trigger = CronTrigger.from_crontab(cron, timezone=timezone_name)

        scheduler.add_job(
            func=func,
            args=args,
            trigger=trigger,
            id=job_id,
            name=name,
            replace_existing=True
        )

        logger.info(f"Scheduled {name}")

    except ValueError as e:
        logger.error(f"Failed to schedule {name}: invalid cron expression '{cron}': {e}")


def _run_locked(database: str, description: str, func, *args):
    """Run `func` while holding the lock of `database`."""
    lock = database_locks.lock_for(database)

    if not lock.acquire(blocking=False):
        logger.info(f"{description} waiting for another job on database {database}")
        lock.acquire()

    try:
        return func(*args)
    finally:
        lock.release()


def _execute_backup_wrapper():
    """
    Wrapper function for executing backups in scheduler context.

    Failures are logged; the scheduler keeps running future triggers.
    """
    settings = backup_settings
    database = settings.database_name

    with flask_app.app_context():
        try:
            logger.info(f"Scheduler executing backup of database: {database}")
            result = _run_locked(database, 'Backup', execute_backup, settings)
            logger.info(f"Backup of {database} completed with status: {result.status}")
        except Exception as e:
            logger.error(f"Scheduled backup of {database} failed: {e}")


def _execute_restore_wrapper(index: int):
    """
    Wrapper function for executing a restore schedule in scheduler context.

    Args:
        index: Position of the entry in settings.restore_schedule
    """
    settings = backup_settings
    entry: RestoreScheduleEntry = settings.restore_schedule[index]

    with flask_app.app_context():
        try:
            logger.info(f"Scheduler executing restore into database: {entry.target_database}")
            restored = _run_locked(
                entry.target_database, 'Restore',
                execute_scheduled_restore, settings, entry
            )
            logger.info(f"Restored {restored.name} into {entry.target_database}")
        except Exception as e:
            logger.error(f"Scheduled restore into {entry.target_database} failed: {e}")


def _execute_retention_wrapper():
    """Wrapper function for executing retention cleanup in scheduler context."""
    with flask_app.app_context():
        try:
            summary = enforce_retention_policies(backup_settings)
            logger.info(
                f"Retention cleanup removed {sum(summary['deleted'].values())} backups "
                f"({len(summary['errors'])} errors)"
            )
        except Exception as e:
            logger.error(f"Scheduled retention cleanup failed: {e}")


def trigger_backup_now() -> str:
    """
    Manually trigger a backup immediately.

    Returns:
        ID of the one-time scheduler job

    Raises:
        RuntimeError: If the scheduler is not initialized
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    job_id = f"manual_{int(now.timestamp())}"

    # 1 second delay to avoid race condition with scheduler start
    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name=f"Manual: Backup {backup_settings.database_name}",
        replace_existing=True
    )

    logger.info(f"Manually triggered backup of database: {backup_settings.database_name}")
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
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    """Check if scheduler is running."""
    return scheduler is not None and scheduler.running


def get_scheduler_diagnostics() -> dict:
    """
    Get detailed scheduler diagnostics for troubleshooting.

    Returns:
        Dict with scheduler state, jobs, and health info
    """
    if scheduler is None:
        return {
            'initialized': False,
            'running': False,
            'state': 'NOT_INITIALIZED'
        }

    jobs = get_scheduled_jobs()
    return {
        'initialized': True,
        'running': scheduler.running,
        'state': str(scheduler.state),
        'job_count': len(jobs),
        'jobs': jobs
    }
