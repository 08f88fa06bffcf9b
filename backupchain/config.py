import os


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


class Config:
    """Base configuration"""

    # Logging
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    LOG_DIR = os.environ.get('BACKUPCHAIN_LOG_DIR') or os.path.join(
        os.path.expanduser('~'), '.backupchain', 'logs'
    )
    LOG_LEVEL = os.environ.get('BACKUPCHAIN_LOG_LEVEL', 'INFO')
    DEBUG = False

    # Transform pipeline
    DEFAULT_COMPRESSION_LEVEL = _env_int('BACKUPCHAIN_COMPRESSION_LEVEL', 6)
    CHUNK_SIZE = _env_int('BACKUPCHAIN_CHUNK_SIZE', 16384)

    # Scheduler
    SCHEDULER_POLL_INTERVAL = _env_int('BACKUPCHAIN_POLL_INTERVAL', 10)
    SCHEDULER_RETRY_ATTEMPTS = _env_int('BACKUPCHAIN_RETRY_ATTEMPTS', 3)
    SCHEDULER_RETRY_DELAY = _env_int('BACKUPCHAIN_RETRY_DELAY', 60)
    SCHEDULER_ERROR_BACKOFF = _env_int('BACKUPCHAIN_ERROR_BACKOFF', 60)
    SCHEDULER_MAX_CONCURRENT = _env_int('BACKUPCHAIN_MAX_CONCURRENT', 1)
    SCHEDULE_FILE = os.environ.get('BACKUPCHAIN_SCHEDULE_FILE') or os.path.join(
        os.path.expanduser('~'), '.backupchain', 'schedules.json'
    )
    # Backup settings of each schedule; inline keys are never written here
    SCHEDULE_JOBS_FILE = os.environ.get('BACKUPCHAIN_SCHEDULE_JOBS_FILE') or os.path.join(
        os.path.expanduser('~'), '.backupchain', 'schedule_jobs.json'
    )


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'

    # Keep logs and schedules next to the checkout
    DATA_DIR = os.path.join(Config.BASE_DIR, 'data')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    SCHEDULE_FILE = os.path.join(DATA_DIR, 'schedules.json')
    SCHEDULE_JOBS_FILE = os.path.join(DATA_DIR, 'schedule_jobs.json')


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = True
    SCHEDULER_POLL_INTERVAL = 1
    SCHEDULER_RETRY_DELAY = 0
    SCHEDULER_ERROR_BACKOFF = 1


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def get_config(config_name: str = None):
    """Resolve a configuration class by name, falling back to BACKUPCHAIN_ENV."""
    if config_name is None:
        config_name = os.environ.get('BACKUPCHAIN_ENV', 'production')
    return config.get(config_name, config['default'])
