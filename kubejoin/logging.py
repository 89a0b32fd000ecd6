"""Logging configuration for the kubejoin package.

stdout is reserved for command results (the enrollment invocation line, the
provisioning summary), so every log record goes to stderr.
"""
import logging
import sys

from .config import Config

NOISY_LOGGERS = ("urllib3", "kubernetes", "requests")


def setup_logger(name: str, level: int = logging.INFO, quiet_libraries: bool = True) -> logging.Logger:
    """
    Set up the named logger with a stderr handler at ``level``.

    Calling it again only adjusts the level.

    Args:
        name: The name of the logger
        level: The logging level (default: logging.INFO)
        quiet_libraries: Raise HTTP client loggers to WARNING

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Don't add handlers if they're already configured
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(Config.LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        logger.addHandler(handler)
    for handler in logger.handlers:
        handler.setLevel(level)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING if quiet_libraries else level)

    return logger
