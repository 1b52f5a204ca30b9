import os


class Config:
    """Base configuration"""

    # Backup configuration file (JSON)
    CONFIG_LOCATION = os.environ.get('CONFIG_LOCATION') or '/etc/pgbackup/config.json'

    # Logging; LOG_DIR='' disables the rotating file handler
    LOG_DIR = os.environ.get('LOG_DIR', '/var/log/pgbackup') or None

    # Bearer token required by POST /api/backups/run; unset disables the endpoint
    API_TOKEN = os.environ.get('API_TOKEN')

    # Scheduler
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    CONFIG_LOCATION = os.environ.get('CONFIG_LOCATION') or os.path.join(DATA_DIR, 'config.json')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    LOG_DIR = None
    SCHEDULER_ENABLED = False
    API_TOKEN = 'test-token'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
