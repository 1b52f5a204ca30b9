"""
Backup routes - catalog listing and manual backup trigger.
"""

from flask import Blueprint, jsonify, request, current_app

from pgbackup import get_settings
from pgbackup.auth import token_required
from pgbackup.backup.catalog import merged_catalog
from pgbackup.backup.storage import BackupEntry, StorageError, build_backends
from pgbackup.scheduler import trigger_backup_now, is_scheduler_running


bp = Blueprint('backups', __name__, url_prefix='/api/backups')

STORAGE_FILTERS = ('s3', 'local')


def serialize_entry(entry: BackupEntry) -> dict:
    return {
        'name': entry.name,
        'key': entry.key,
        'storage': entry.backend.value,
        'size_bytes': entry.size,
        'size_mb': round(entry.size / 1024 / 1024, 2),
        'last_modified': entry.last_modified.isoformat(),
        'timestamp': entry.parsed_timestamp.isoformat() if entry.parsed_timestamp else None
    }


@bp.route('', methods=['GET'])
def list_backups():
    """
    List stored backups, newest first.

    Query params:
        storage: Optional 's3' or 'local' to list a single backend

    Returns:
        JSON array of backups
    """
    storage = request.args.get('storage')
    if storage is not None and storage not in STORAGE_FILTERS:
        return jsonify({'error': f'Invalid storage. Valid options: {list(STORAGE_FILTERS)}'}), 400

    settings = get_settings()

    try:
        catalog = merged_catalog(
            build_backends(settings),
            include_s3=storage in (None, 's3'),
            include_local=storage in (None, 'local')
        )
    except StorageError as e:
        current_app.logger.error(f"Failed to list backups: {e}")
        return jsonify({'error': str(e)}), 502

    return jsonify([serialize_entry(entry) for entry in catalog])


@bp.route('/run', methods=['POST'])
@token_required
def run_backup_now():
    """
    Trigger a backup immediately through the scheduler.

    Returns:
        202 with the scheduler job id
    """
    if not is_scheduler_running():
        return jsonify({'error': 'Scheduler is not running in this process'}), 503

    job_id = trigger_backup_now()
    return jsonify({'message': 'Backup triggered successfully', 'job_id': job_id}), 202
