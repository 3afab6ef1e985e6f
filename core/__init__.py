"""
Core infrastructure module for Flat File Fusion.

This module provides the foundational components including configuration
management, logging setup, and custom exceptions.
"""

from .config import CacheConfig, HttpConfig, ParseConfig, LoggingConfig, Config
from .exceptions import (
    FlatFileFusionError,
    ConfigurationError,
    NetworkError,
    CacheWriteError,
    ParseError,
    MergeError,
)
from .logging_config import setup_logging, setup_logging_from_config, set_log_level

__all__ = [
    # Configuration
    'CacheConfig',
    'HttpConfig',
    'ParseConfig',
    'LoggingConfig',
    'Config',

    # Exceptions
    'FlatFileFusionError',
    'ConfigurationError',
    'NetworkError',
    'CacheWriteError',
    'ParseError',
    'MergeError',

    # Logging
    'setup_logging',
    'setup_logging_from_config',
    'set_log_level',
]

# Version info
__version__ = "1.0.0"
