"""Logging setup for the analytics server."""

import logging
import os
from typing import Optional


APP_LOGGER_NAME = "claude_analytics"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Both log once per event at INFO: every polled request, every change batch.
CHATTY_LOGGERS = ("uvicorn.access", "watchfiles")


def setup_logger(
    name: str,
    log_level: str = "INFO",
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Configure a logger with one console handler and, optionally, one file handler.

    Safe to call again: the level is re-applied to the logger and its handlers,
    and a file handler is only added for a path not already attached.

    Args:
        name: Logger name
        log_level: Level name; unknown names mean INFO
        log_file: Optional path to a log file (parent directories are created)

    Returns:
        The configured logger
    """
    logger = logging.getLogger(name)
    level = getattr(logging, log_level.upper(), logging.INFO)
    logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if not any(type(handler) is logging.StreamHandler for handler in logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        path = os.path.abspath(log_file)
        attached = {
            handler.baseFilename for handler in logger.handlers if isinstance(handler, logging.FileHandler)
        }
        if path not in attached:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            file_handler = logging.FileHandler(path)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    for handler in logger.handlers:
        handler.setLevel(level)

    return logger


# Application logger instance
app_logger: Optional[logging.Logger] = None


def init_app_logger(settings) -> logging.Logger:
    """
    Initialize the application logger from settings.

    Module loggers created with ``logging.getLogger(__name__)`` inside the
    package are children of this logger and share its handlers. ``debug``
    forces DEBUG; otherwise the access log and watcher batches are limited to
    warnings.
    """
    global app_logger

    level = "DEBUG" if settings.debug else settings.log_level
    app_logger = setup_logger(
        name=APP_LOGGER_NAME,
        log_level=level,
        log_file=settings.log_file
    )

    chatty_level = logging.DEBUG if settings.debug else logging.WARNING
    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(chatty_level)

    return app_logger


def get_app_logger() -> logging.Logger:
    """
    Get the application logger.

    Returns:
        Application logger instance
    """
    if app_logger is None:
        # Return a default logger if not initialized
        return setup_logger(APP_LOGGER_NAME)

    return app_logger
