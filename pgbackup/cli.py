"""
Command line interface.

Commands are registered on the Flask app, so they run either through
`flask --app pgbackup <command>` or the `pgbackup` console script:

    pgbackup backup
    pgbackup restore --latest --to-database app_check
    pgbackup backups list --storage s3
    pgbackup retention cleanup
    pgbackup schedule run
"""

import threading

import click
from flask import current_app
from flask.cli import AppGroup, FlaskGroup, with_appcontext

from pgbackup import get_settings
from pgbackup.settings import ConfigurationError
from pgbackup.backup.catalog import merged_catalog
from pgbackup.backup.compression import CompressionError
from pgbackup.backup.executor import BackupExecutor, RestoreExecutor, NoSuitableBackupError
from pgbackup.backup.process import ProcessError
from pgbackup.backup.retention import enforce_retention_policies
from pgbackup.backup.storage import StorageError, build_backends
from pgbackup.scheduler import init_scheduler, start_scheduler, stop_scheduler, get_scheduled_jobs


STORAGE_CHOICES = click.Choice(['s3', 'local'])

backups_cli = AppGroup('backups', help='Inspect stored backups.')
retention_cli = AppGroup('retention', help='Apply retention policies.')
schedule_cli = AppGroup('schedule', help='Run the backup scheduler.')


def format_size(size: int) -> str:
    """Human readable byte count, e.g. '1.5 MB'."""
    value = float(size)
    for unit in ('B', 'KB', 'MB', 'GB'):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == 'B' else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


@click.command('backup')
@with_appcontext
def backup_command():
    """Dump the database and store it on every configured backend."""
    try:
        result = BackupExecutor(get_settings()).execute()
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    for outcome in result.outcomes:
        if outcome.succeeded:
            click.echo(f"{outcome.backend.kind.value}: {outcome.entry.key} ({format_size(outcome.entry.size)})")
        else:
            click.echo(f"{outcome.backend.kind.value}: FAILED ({outcome.error})", err=True)

    if not result.succeeded:
        raise click.ClickException(f"Backup failed: {result.error}")

    click.echo(f"Backup {result.status}")


@click.command('restore')
@with_appcontext
@click.option('--backup', 'backup_id', help='Backup name or part of it.')
@click.option('--latest', is_flag=True, help='Restore the newest backup (default).')
@click.option('--to-database', 'target_database', help='Database to restore into (defaults to the configured one).')
@click.option('--storage', type=STORAGE_CHOICES, help='Only look at one storage backend.')
def restore_command(backup_id, latest, target_database, storage):
    """Restore a stored backup through pg_restore."""
    if backup_id and latest:
        raise click.UsageError('--backup and --latest are mutually exclusive')

    settings = get_settings()
    target_database = target_database or settings.database_name
    executor = RestoreExecutor(settings)

    try:
        entry = executor.find_backup(
            backup_id or 'latest',
            include_s3=storage in (None, 's3'),
            include_local=storage in (None, 'local')
        )
        click.echo(f"Restoring {entry.name} from {entry.backend.value} into {target_database}")
        executor.restore(entry, target_database)
    except (ConfigurationError, NoSuitableBackupError, StorageError, CompressionError, ProcessError) as e:
        raise click.ClickException(str(e))

    click.echo(f"Restore of {entry.name} completed")


@backups_cli.command('list')
@click.option('--storage', type=STORAGE_CHOICES, help='Only list one storage backend.')
def list_command(storage):
    """List stored backups, newest first."""
    settings = get_settings()

    try:
        settings.require_storage()
        catalog = merged_catalog(
            build_backends(settings),
            include_s3=storage in (None, 's3'),
            include_local=storage in (None, 'local')
        )
    except (ConfigurationError, StorageError) as e:
        raise click.ClickException(str(e))

    if not catalog:
        click.echo('No backups found')
        return

    click.echo(f"{'NAME':<32} {'STORAGE':<8} {'SIZE':>10}  LAST MODIFIED")
    for entry in catalog:
        click.echo(
            f"{entry.name:<32} {entry.backend.value:<8} {format_size(entry.size):>10}  "
            f"{entry.last_modified.strftime('%Y-%m-%d %H:%M:%S')}"
        )


@retention_cli.command('cleanup')
def cleanup_command():
    """Apply retention policies to every configured backend."""
    settings = get_settings()

    try:
        settings.require_storage()
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    summary = enforce_retention_policies(settings)

    for kind, count in summary['deleted'].items():
        click.echo(f"{kind}: {count} backups removed")

    if summary['errors']:
        for error in summary['errors']:
            click.echo(error, err=True)
        raise click.ClickException(f"Retention cleanup finished with {len(summary['errors'])} error(s)")


@schedule_cli.command('run')
def run_command():
    """Run scheduled backups, restores and retention until interrupted."""
    settings = get_settings()
    init_scheduler(current_app._get_current_object(), settings)
    start_scheduler()

    jobs = get_scheduled_jobs()
    if not jobs:
        stop_scheduler()
        raise click.ClickException('No schedules configured')

    for job in jobs:
        click.echo(f"{job['name']} (next run: {job['next_run']})")

    try:
        _wait_for_shutdown()
    except KeyboardInterrupt:
        click.echo('Interrupted, stopping scheduler')
    finally:
        stop_scheduler()


def _wait_for_shutdown():
    threading.Event().wait()


def register_commands(app):
    """Attach all commands to the app's CLI."""
    app.cli.add_command(backup_command)
    app.cli.add_command(restore_command)
    app.cli.add_command(backups_cli)
    app.cli.add_command(retention_cli)
    app.cli.add_command(schedule_cli)


def _create_cli_app():
    from pgbackup import create_app
    return create_app(with_scheduler=False)


def main():
    """Entry point of the `pgbackup` console script."""
    cli = FlaskGroup(create_app=_create_cli_app, add_default_commands=False)
    cli()
