"""
Shared helpers used across the application.
"""
import logging

from app.core import config


_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_configured = False


def get_logger(name: str) -> logging.Logger:
    """
    Return a module logger configured with the application log level.

    Usage:
        from app.utils import get_logger

        log = get_logger(__name__)
        log.info("Something happened")
    """
    global _configured
    if not _configured:
        logging.basicConfig(format=_LOG_FORMAT)
        _configured = True

    logger = logging.getLogger(name)
    logger.setLevel(config.LOG_LEVEL)
    return logger
