"""
Core Module

Provides foundational utilities used across the application:
- Configuration management
- Logging setup
"""

from .config import Settings, get_settings
from .logger import get_logger, parse_level, set_log_level, setup_logging

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Logging
    "setup_logging",
    "get_logger",
    "set_log_level",
    "parse_level",
]
