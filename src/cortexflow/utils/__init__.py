"""Shared utilities: logging and settings."""

from cortexflow.utils.config import Config, Settings, load_settings
from cortexflow.utils.logging import configure_logging, get_logger, set_log_level

__all__ = [
    "Config",
    "Settings",
    "load_settings",
    "configure_logging",
    "get_logger",
    "set_log_level",
]
