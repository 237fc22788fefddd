import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional


PACKAGE_LOGGER = 'projbackup'

CONSOLE_LOG_FORMAT = '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
FILE_LOG_FORMAT = '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
RUN_LOG_FORMAT = '[%(asctime)s] %(levelname)-5s %(message)s'
RUN_LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def configure_logging(level: str = 'INFO', log_file: Optional[str] = None):
    """
    Configure projbackup logging.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)
        log_file: Optional rotating log file shared by all runs
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_LOG_FORMAT))

    handlers = [console_handler]

    # File handler
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
        handlers.append(file_handler)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(log_level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
    for handler in handlers:
        package_logger.addHandler(handler)

    package_logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")
