"""
File security functions for Flat File Fusion.

This module turns caller-supplied cache keys into filenames that are safe to
create under the cache root, preventing path traversal out of it.
"""

import hashlib
import os
import re

from core.exceptions import ConfigurationError

MAX_FILENAME_LENGTH = 200


def secure_cache_key(cache_key: str) -> str:
    """
    Map a cache key to a filename that stays inside the cache root.

    Keys that are already safe map to themselves. Keys that needed changes get
    a short digest of the original appended, so two different keys never
    collapse onto the same file.

    Args:
        cache_key: Caller-supplied cache key (e.g. 'cu.series' or 'oe/oe.data.1')

    Returns:
        Sanitized filename stem safe for filesystem operations

    Raises:
        ConfigurationError: If the cache key is empty
    """
    if not cache_key or not cache_key.strip():
        raise ConfigurationError("cache_key cannot be empty", field='cache_key')

    # Path separators never survive, the key always names a single file
    safe = re.sub(r'[\\/]+', '_', cache_key)

    # Remove null bytes and control characters
    safe = re.sub(r'[\x00-\x1f\x7f]', '', safe)

    # Replace whitespace with underscores
    safe = re.sub(r'\s+', '_', safe)

    # Collapse dot runs so '..' can never appear
    safe = re.sub(r'\.{2,}', '.', safe)

    # Remove all non-alphanumeric except safe characters
    safe = re.sub(r'[^a-zA-Z0-9._-]', '_', safe)

    # Consolidate underscores
    safe = re.sub(r'_+', '_', safe)

    # Strip leading/trailing underscores and dots
    safe = safe.strip('_.')

    if not safe:
        safe = "cache_entry"

    if len(safe) > MAX_FILENAME_LENGTH:
        safe = safe[:MAX_FILENAME_LENGTH]

    if safe != cache_key:
        digest = hashlib.sha1(cache_key.encode('utf-8')).hexdigest()[:10]
        safe = f"{safe}-{digest}"

    return safe


def ensure_within_directory(file_path: str, base_directory: str) -> str:
    """
    Ensure a file path resolves inside the specified base directory.

    Args:
        file_path: Path to validate
        base_directory: Directory that must contain the path

    Returns:
        Absolute, normalized file path

    Raises:
        ConfigurationError: If the path escapes the base directory
    """
    abs_file_path = os.path.abspath(file_path)
    abs_base_dir = os.path.abspath(base_directory)

    if os.path.commonpath([abs_file_path, abs_base_dir]) != abs_base_dir:
        raise ConfigurationError(
            f"Path outside cache root: {file_path}",
            field='cache_key'
        )

    return abs_file_path
