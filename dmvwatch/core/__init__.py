"""
Core module - Configuration, constants, exceptions, and logging
"""

from dmvwatch.core.config import Settings, get_settings, reset_settings
from dmvwatch.core.constants import *
from dmvwatch.core.exceptions import *
from dmvwatch.core.logger import setup_logging, get_logger, log_exception, LogContext

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "reset_settings",
    # Logging
    "setup_logging",
    "get_logger",
    "log_exception",
    "LogContext",
]
