"""
Logging utilities.

Library modules log through ``logging.getLogger(__name__)`` and never attach
handlers themselves; ``configure_logging`` wires the ``cortexflow`` logger
to stderr once per process.
"""

import logging
import sys

ROOT_LOGGER = "cortexflow"
DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def get_logger(name: str, level: int | str | None = None) -> logging.Logger:
    """
    Get a logger with a stderr handler attached.

    Args:
        name: Logger name (usually __name__)
        level: Level to set (INFO when the handler is first attached)

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    if level is not None:
        logger.setLevel(_resolve_level(level))

    return logger


def configure_logging(level: int | str = "INFO") -> logging.Logger:
    """Attach the stderr handler to the package logger and set its level."""
    return get_logger(ROOT_LOGGER, level)


def set_log_level(level: int | str) -> None:
    """
    Set the log level for every cortexflow logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Raises:
        ValueError: Unknown level name
    """
    logging.getLogger(ROOT_LOGGER).setLevel(_resolve_level(level))
