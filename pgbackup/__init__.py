import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, current_app

from pgbackup.settings import Settings, load_settings


EXTENSION_KEY = 'pgbackup'


def configure_logging(app, verbose: bool = False):
    """Configure application logging"""

    # Set log level based on environment
    debug = app.config.get('DEBUG', False) or verbose
    log_level = logging.DEBUG if debug else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler (disabled when LOG_DIR is empty)
    log_dir = app.config.get('LOG_DIR')
    file_error = None
    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(log_dir, 'pgbackup.log'),
                maxBytes=10485760,  # 10MB
                backupCount=10
            )
        except OSError as e:
            # Unprivileged CLI runs cannot write /var/log; keep console logging
            file_error = e
        else:
            file_handler.setLevel(log_level)
            file_formatter = logging.Formatter(
                '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
            )
            file_handler.setFormatter(file_formatter)
            handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    for handler in handlers:
        app.logger.addHandler(handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")
    if file_error is not None:
        app.logger.warning(f"File logging disabled, cannot write to {log_dir}: {file_error}")


def get_settings() -> Settings:
    """Settings of the current Flask app."""
    return current_app.extensions[EXTENSION_KEY]


def create_app(config_name=None, settings=None, with_scheduler=None):
    """
    Flask application factory

    Args:
        config_name: Key of pgbackup.config.config (defaults to FLASK_ENV)
        settings: Preloaded Settings; loaded from CONFIG_LOCATION when omitted
        with_scheduler: Start the scheduler in this process (defaults to
            SCHEDULER_ENABLED and the worker designation)
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from pgbackup.config import config
    app.config.from_object(config[config_name])

    # Load backup settings once; they are read-only from here on
    if settings is None:
        settings = load_settings(app.config['CONFIG_LOCATION'])
    app.extensions[EXTENSION_KEY] = settings

    # Configure logging
    configure_logging(app, verbose=settings.verbose)

    # Register blueprints
    from pgbackup.routes import backups_routes, status_routes
    app.register_blueprint(backups_routes.bp)
    app.register_blueprint(status_routes.bp)

    # Register CLI commands
    from pgbackup.cli import register_commands
    register_commands(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize and start scheduler (only in designated worker or development child process)
    if with_scheduler is None:
        with_scheduler = _should_init_scheduler(app)

    if with_scheduler:
        from pgbackup.scheduler import init_scheduler, start_scheduler, stop_scheduler
        import atexit

        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app, settings)
        start_scheduler()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process")

    return app


def _should_init_scheduler(app) -> bool:
    """
    Decide whether this process owns the scheduler.

    - Development mode: only the Flask reloader child process
    - Production mode: only the designated Gunicorn worker (SCHEDULER_WORKER=true)
    """
    if not app.config.get('SCHEDULER_ENABLED', True):
        return False

    if app.config.get('DEBUG', False):
        is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
        return is_reloader_child

    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'
    app.logger.info(f"Production mode: is_scheduler_worker={is_scheduler_worker}")
    return is_scheduler_worker
