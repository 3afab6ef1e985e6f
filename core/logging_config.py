"""
Logging configuration for Flat File Fusion.

Library modules only create module-level loggers; nothing here runs at import
time. Applications call setup_logging_from_config() with the [logging]
section (or setup_logging() directly) once at startup.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from .config import LoggingConfig

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Top-level packages whose loggers follow the configured level
PACKAGE_LOGGERS = ('core', 'file_handling', 'data_handling')

# urllib3 logs every connection at DEBUG; keep it quiet unless we are debugging
NOISY_LOGGERS = ('urllib3',)


def _to_level(level: str) -> int:
    return getattr(logging, level.upper(), logging.INFO)


def setup_logging(
    level: str = 'INFO',
    log_file: Optional[str] = None,
    log_dir: Optional[str] = None,
    format_string: Optional[str] = None
) -> None:
    """
    Configure the root logger with a console handler and an optional log file.

    Existing root handlers are replaced, so calling this twice does not
    duplicate output.

    Args:
        level: Logging level name ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')
        log_file: Name of a log file to write as well (optional)
        log_dir: Directory for the log file (defaults to 'logs')
        format_string: Custom format string (optional)
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(format_string or DEFAULT_FORMAT))
    root_logger.addHandler(console_handler)

    if log_file:
        add_file_handler(log_file, log_dir or 'logs', format_string)

    set_log_level(level)
    logging.info(f"Logging configured with level: {level}")


def setup_logging_from_config(logging_config: LoggingConfig) -> None:
    """Set up logging from the [logging] section of the configuration."""
    setup_logging(
        level=logging_config.level,
        log_file=logging_config.log_file,
        log_dir=logging_config.log_dir
    )


def set_log_level(level: str) -> None:
    """
    Change the level of the root logger, its handlers and the package loggers.

    Third-party connection logging stays at WARNING unless level is DEBUG.
    """
    numeric_level = _to_level(level)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers:
        handler.setLevel(numeric_level)

    for name in PACKAGE_LOGGERS:
        logging.getLogger(name).setLevel(numeric_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(numeric_level if numeric_level <= logging.DEBUG else logging.WARNING)


def add_file_handler(log_file: str, log_dir: str = 'logs', format_string: Optional[str] = None) -> str:
    """
    Add a file handler to the root logger.

    Returns:
        Path of the log file
    """
    Path(log_dir).mkdir(parents=True, exist_ok=True)
    log_path = os.path.join(log_dir, log_file)

    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter(format_string or DEFAULT_FORMAT))
    logging.getLogger().addHandler(file_handler)
    return log_path
