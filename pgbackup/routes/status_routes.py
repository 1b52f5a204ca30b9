"""
Status routes - scheduler state, storage reachability and configured schedules.
"""

import os

from flask import Blueprint, jsonify, current_app

from pgbackup import get_settings
from pgbackup.backup.storage import StorageError, build_backends
from pgbackup.scheduler import get_scheduled_jobs, get_scheduler_diagnostics, is_scheduler_running


bp = Blueprint('status', __name__, url_prefix='/api')


@bp.route('/status', methods=['GET'])
def get_status():
    """
    Report scheduler diagnostics for this process and check every backend.

    Only one Gunicorn worker owns the scheduler; the others report it as
    not initialized and answer 503 to manual backup triggers.

    Returns:
        JSON with:
        - scheduler: Diagnostics of the scheduler in this process
        - scheduler_worker: Whether this process owns the scheduler
        - storage: One item per backend with 'ok' and 'error'
        200 when every backend is reachable, 503 otherwise
    """
    settings = get_settings()

    storage = []
    try:
        backends = build_backends(settings)
    except StorageError as e:
        current_app.logger.error(f"Failed to initialize storage backends: {e}")
        backends = []
        storage.append({'backend': None, 'location': None, 'ok': False, 'error': str(e)})

    for backend in backends:
        try:
            backend.test_connection()
            storage.append({'backend': backend.kind.value, 'location': backend.label, 'ok': True, 'error': None})
        except StorageError as e:
            current_app.logger.warning(f"Storage check failed for {backend.label}: {e}")
            storage.append({'backend': backend.kind.value, 'location': backend.label, 'ok': False, 'error': str(e)})

    healthy = all(item['ok'] for item in storage)

    return jsonify({
        'status': 'ok' if healthy else 'degraded',
        'scheduler': get_scheduler_diagnostics(),
        'scheduler_worker': os.environ.get('SCHEDULER_WORKER', '').lower() == 'true',
        'storage': storage
    }), 200 if healthy else 503


@bp.route('/schedules', methods=['GET'])
def get_schedules():
    """
    Get configured schedules and the jobs currently registered.

    Returns:
        JSON with:
        - scheduler_status: 'running' or 'stopped'
        - backup_schedule: Cron expressions for backups
        - restore_schedule: Configured restore schedules
        - retention_cron: Cron expression for retention cleanup
        - jobs: Registered scheduler jobs with next run time
    """
    settings = get_settings()

    restore_schedule = []
    for entry in settings.restore_schedule:
        restore_schedule.append({
            'cron': entry.cron,
            'target_database': entry.target_database,
            'selection': entry.selection,
            'pattern': entry.pattern,
            'backup_id': entry.backup_id,
            'include_s3': entry.include_s3,
            'include_local': entry.include_local,
            'enabled': entry.enabled
        })

    return jsonify({
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped',
        'backup_schedule': list(settings.schedule),
        'restore_schedule': restore_schedule,
        'retention_cron': settings.retention_cron,
        'jobs': get_scheduled_jobs()
    })
