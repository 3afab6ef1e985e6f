"""
File handling module for Flat File Fusion.

This module provides everything that touches remote files and local bytes:
cache storage, freshness checks, downloads, and the tolerant tabular parser.
"""

from .remote_file import FileFormat, RemoteFileDescriptor
from .security import secure_cache_key
from .cache import (
    CacheEntry,
    MetadataStore,
    MemoryMetadataStore,
    JsonSidecarStore,
    FileCache
)
from .freshness import FreshnessDecision, check_freshness, parse_http_date
from .fetcher import FetchRecord, FetchResult, fetch
from .tabular_parser import RawTable, build_raw_table, parse

__all__ = [
    # Remote files
    'FileFormat',
    'RemoteFileDescriptor',

    # Cache
    'secure_cache_key',
    'CacheEntry',
    'MetadataStore',
    'MemoryMetadataStore',
    'JsonSidecarStore',
    'FileCache',

    # Freshness and downloads
    'FreshnessDecision',
    'check_freshness',
    'parse_http_date',
    'FetchRecord',
    'FetchResult',
    'fetch',

    # Parsing
    'RawTable',
    'build_raw_table',
    'parse',
]

# Version info
__version__ = "1.0.0"
