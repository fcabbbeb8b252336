'''
Application logger for the billing backend.

A single named logger ('LS-billing') writing to stdout. The level comes from
settings.LOG_LEVEL; SQLAlchemy's statement log follows settings.SQL_ECHO.
'''
import logging
import sys

from .config import settings

LOGGER_NAME = 'LS-billing'
LOG_FORMAT = '%(asctime)s - %(module)s - %(levelname)s\n - %(message)s'


def setup_logger(level: str | None = None) -> logging.Logger:
    """
    Configures and returns the billing logger. Safe to call more than once.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel((level or settings.LOG_LEVEL).upper())

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    logging.getLogger('sqlalchemy.engine').setLevel(logging.INFO if settings.SQL_ECHO else logging.WARNING)
    return logger

# Create a single logger instance to be imported by other modules
log = setup_logger()
