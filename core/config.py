"""
Configuration management for Flat File Fusion.

This module provides a split configuration system that separates the
cache, HTTP, parsing and logging concerns into focused configuration classes,
persisted together in a single TOML file.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import toml

from .exceptions import ConfigurationError

DEFAULT_USER_AGENT = 'flatfile-fusion/1.0 (set [http] user_agent to a contact email)'
DEFAULT_PRESENTATION_COLUMNS: Tuple[str, ...] = ('display_level', 'sort_sequence')


@dataclass
class CacheConfig:
    """Configuration for the local file cache."""

    cache_dir: str = os.path.join('~', '.cache', 'flatfile_fusion')

    def get_cache_root(self) -> str:
        """Get the cache directory with the user directory expanded."""
        return os.path.abspath(os.path.expanduser(self.cache_dir))

    def validate(self) -> List[str]:
        """Validate the cache configuration and return any errors."""
        errors = []

        if not self.cache_dir:
            errors.append("cache_dir cannot be empty")

        return errors


@dataclass
class HttpConfig:
    """Configuration for requests against the flat-file servers."""

    # The statistics agency rejects requests without an identifying agent
    user_agent: str = DEFAULT_USER_AGENT
    timeout_seconds: float = 30.0
    max_workers: int = 4
    chunk_size: int = 1024 * 1024

    def validate(self) -> List[str]:
        """Validate the HTTP configuration and return any errors."""
        errors = []

        if not self.user_agent:
            errors.append("user_agent cannot be empty")

        if self.timeout_seconds <= 0:
            errors.append("timeout_seconds must be positive")

        if self.max_workers <= 0:
            errors.append("max_workers must be positive")

        if self.chunk_size <= 0:
            errors.append("chunk_size must be positive")

        return errors


@dataclass
class ParseConfig:
    """Configuration for the tabular parser and merge engine."""

    spreadsheet_sheet: Optional[str] = None  # None selects the first sheet
    spreadsheet_header_row: int = 0
    presentation_columns: List[str] = field(
        default_factory=lambda: list(DEFAULT_PRESENTATION_COLUMNS)
    )

    def validate(self) -> List[str]:
        """Validate the parse configuration and return any errors."""
        errors = []

        if self.spreadsheet_header_row < 0:
            errors.append("spreadsheet_header_row cannot be negative")

        return errors


@dataclass
class LoggingConfig:
    """Configuration for log output."""

    level: str = 'INFO'
    log_file: Optional[str] = None
    log_dir: str = 'logs'

    def validate(self) -> List[str]:
        """Validate the logging configuration and return any errors."""
        errors = []

        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if self.level.upper() not in valid_levels:
            errors.append(f"level must be one of {valid_levels}")

        return errors


@dataclass
class Config:
    """Main configuration class that combines all configuration sections."""

    config_file_path: str = "config.toml"

    # Configuration sections
    cache: CacheConfig = field(default_factory=CacheConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    parse: ParseConfig = field(default_factory=ParseConfig)
    log: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        """Load configuration when an instance is created."""
        self.load_config()

    def save_config(self) -> None:
        """Save current configuration to TOML file."""
        config_data = {
            'cache': {
                'cache_dir': self.cache.cache_dir,
            },
            'http': {
                'user_agent': self.http.user_agent,
                'timeout_seconds': self.http.timeout_seconds,
                'max_workers': self.http.max_workers,
                'chunk_size': self.http.chunk_size,
            },
            'parse': {
                'spreadsheet_header_row': self.parse.spreadsheet_header_row,
                'presentation_columns': self.parse.presentation_columns,
            },
            'logging': {
                'level': self.log.level,
                'log_dir': self.log.log_dir,
            }
        }
        # TOML has no null; optional values are only written when set
        if self.parse.spreadsheet_sheet is not None:
            config_data['parse']['spreadsheet_sheet'] = self.parse.spreadsheet_sheet
        if self.log.log_file is not None:
            config_data['logging']['log_file'] = self.log.log_file

        try:
            with open(self.config_file_path, 'w') as f:
                toml.dump(config_data, f)
            logging.info(f"Configuration saved to {self.config_file_path}")
        except Exception as e:
            error_msg = f"Error saving configuration: {e}"
            logging.error(error_msg)
            raise ConfigurationError(error_msg, config_file=self.config_file_path)

    def load_config(self) -> None:
        """Load configuration from TOML file."""
        try:
            with open(self.config_file_path) as f:
                config_data = toml.load(f)

            if 'cache' in config_data:
                cache_config = config_data['cache']
                self.cache.cache_dir = cache_config.get('cache_dir', self.cache.cache_dir)

            if 'http' in config_data:
                http_config = config_data['http']
                self.http.user_agent = http_config.get('user_agent', self.http.user_agent)
                self.http.timeout_seconds = float(http_config.get('timeout_seconds', self.http.timeout_seconds))
                self.http.max_workers = int(http_config.get('max_workers', self.http.max_workers))
                self.http.chunk_size = int(http_config.get('chunk_size', self.http.chunk_size))

            if 'parse' in config_data:
                parse_config = config_data['parse']
                self.parse.spreadsheet_sheet = parse_config.get('spreadsheet_sheet', self.parse.spreadsheet_sheet)
                self.parse.spreadsheet_header_row = int(
                    parse_config.get('spreadsheet_header_row', self.parse.spreadsheet_header_row)
                )
                self.parse.presentation_columns = list(
                    parse_config.get('presentation_columns', self.parse.presentation_columns)
                )

            if 'logging' in config_data:
                logging_config = config_data['logging']
                self.log.level = logging_config.get('level', self.log.level)
                self.log.log_file = logging_config.get('log_file', self.log.log_file)
                self.log.log_dir = logging_config.get('log_dir', self.log.log_dir)

            logging.info(f"Configuration loaded from {self.config_file_path}")

        except FileNotFoundError:
            logging.info(f"{self.config_file_path} not found. Creating with default values.")
            self.save_config()
        except toml.TomlDecodeError as e:
            error_msg = f"Error decoding {self.config_file_path}: {e}"
            logging.error(error_msg)
            raise ConfigurationError(error_msg, config_file=self.config_file_path)
        except (TypeError, ValueError) as e:
            error_msg = f"Invalid value in {self.config_file_path}: {e}"
            logging.error(error_msg)
            raise ConfigurationError(error_msg, config_file=self.config_file_path)

    def validate(self) -> List[str]:
        """Validate all configuration sections and return any errors."""
        errors = []
        errors.extend(self.cache.validate())
        errors.extend(self.http.validate())
        errors.extend(self.parse.validate())
        errors.extend(self.log.validate())
        return errors
