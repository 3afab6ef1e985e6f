"""
Custom exceptions for Flat File Fusion.

This module defines application-specific exceptions that provide
clear error messages and context for the different failure points of the
retrieve, cache, parse and merge pipeline.
"""

from typing import Optional


class FlatFileFusionError(Exception):
    """Base exception for all Flat File Fusion errors."""

    def __init__(self, message: str, context: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} (Context: {context_str})"
        return self.message


class ConfigurationError(FlatFileFusionError):
    """Raised when there are issues with configuration loading or validation."""

    def __init__(self, message: str, config_file: Optional[str] = None, field: Optional[str] = None):
        context = {}
        if config_file:
            context['config_file'] = config_file
        if field:
            context['field'] = field
        super().__init__(message, context)


class NetworkError(FlatFileFusionError):
    """Raised when a metadata or content request against a file server fails."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        context = {}
        if url:
            context['url'] = url
        if status_code is not None:
            context['status_code'] = status_code
        super().__init__(message, context)
        self.url = url
        self.status_code = status_code


class CacheWriteError(FlatFileFusionError):
    """
    Raised when a successful download could not be persisted to the cache.

    The downloaded bytes travel with the exception so the current call can
    still use them; only later calls are affected by the missing cache entry.
    """

    def __init__(
        self,
        message: str,
        cache_key: Optional[str] = None,
        path: Optional[str] = None,
        content: Optional[bytes] = None
    ):
        context = {}
        if cache_key:
            context['cache_key'] = cache_key
        if path:
            context['path'] = path
        super().__init__(message, context)
        self.cache_key = cache_key
        self.content = content
        self.record = None  # FetchRecord of the download, filled in by the fetcher


class ParseError(FlatFileFusionError):
    """Raised when a fetched file is structurally unrecoverable."""

    def __init__(self, message: str, source: Optional[str] = None, line: Optional[int] = None):
        context = {}
        if source:
            context['source'] = source
        if line is not None:
            context['line'] = line
        super().__init__(message, context)
        self.line = line


class MergeError(FlatFileFusionError):
    """Raised when a single mapping table cannot be merged."""

    def __init__(self, message: str, table_name: Optional[str] = None):
        context = {}
        if table_name:
            context['table_name'] = table_name
        super().__init__(message, context)
