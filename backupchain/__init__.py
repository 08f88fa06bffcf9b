import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '1.0.0'


def configure_logging(config):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = config.LOG_DIR
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    if config.DEBUG:
        log_level = logging.DEBUG
    else:
        log_level = logging.getLevelName(str(config.LOG_LEVEL).upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'backupchain.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure package logger
    package_logger = logging.getLogger(__name__)
    package_logger.setLevel(log_level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.addHandler(console_handler)
    package_logger.addHandler(file_handler)

    package_logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_executor(config_name=None, progress_callback=None):
    """Build a BackupExecutor whose transform pipeline follows the named configuration."""
    from backupchain.config import get_config
    from backupchain.backup import BackupExecutor, Compressor, Encryptor, TransformPipeline

    config = get_config(config_name)
    pipeline = TransformPipeline(
        compressor=Compressor(chunk_size=config.CHUNK_SIZE),
        encryptor=Encryptor(chunk_size=config.CHUNK_SIZE),
    )
    return BackupExecutor(pipeline=pipeline, progress_callback=progress_callback)


def create_scheduler(config_name=None, backup_callback=None, error_callback=None):
    """Build a BackupScheduler from the named configuration and load its saved schedules."""
    from backupchain.config import get_config
    from backupchain.scheduler import BackupScheduler

    config = get_config(config_name)
    scheduler = BackupScheduler.from_config(config, backup_callback, error_callback)
    scheduler.load(config.SCHEDULE_FILE)
    return scheduler
