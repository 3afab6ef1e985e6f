"""
Cache freshness decisions for Flat File Fusion.

Before downloading a flat file we issue a HEAD request and compare the
server's Last-Modified header with the timestamp recorded for the cached copy.
Whenever the answer is uncertain we choose to fetch: serving stale data is
worse than one extra download.
"""

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Optional

import requests

from .cache import FileCache

logger = logging.getLogger(__name__)


class FreshnessDecision(Enum):
    """Outcome of a freshness check."""
    FETCH = 'fetch'
    USE_CACHED = 'use_cached'


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an HTTP date header into an aware UTC datetime.

    Returns None for a missing or unparseable value.
    """
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def fetch_remote_last_modified(
    url: str,
    session: requests.Session,
    timeout: float
) -> Optional[datetime]:
    """
    Ask the server when a file was last modified, without downloading it.

    Raises:
        requests.RequestException: If the HEAD request fails or returns an error status
    """
    response = session.head(url, timeout=timeout, allow_redirects=True)
    response.raise_for_status()
    return parse_http_date(response.headers.get('Last-Modified'))


def check_freshness(descriptor, cache: FileCache, session: requests.Session, timeout: float) -> FreshnessDecision:
    """
    Decide whether a remote file needs to be fetched.

    Never modifies the cache.

    Args:
        descriptor: RemoteFileDescriptor of the file
        cache: Cache holding any previous copy
        session: HTTP session used for the HEAD request
        timeout: Request timeout in seconds

    Returns:
        FreshnessDecision.USE_CACHED only when a cached copy exists and the
        remote file is known not to be newer; FreshnessDecision.FETCH otherwise
    """
    entry = cache.get_entry(descriptor.cache_key)
    if entry is None:
        logger.debug(f"No cache entry for '{descriptor.cache_key}', fetching")
        return FreshnessDecision.FETCH

    if entry.last_modified_remote is None:
        logger.debug(f"Cache entry for '{descriptor.cache_key}' has no remote timestamp, fetching")
        return FreshnessDecision.FETCH

    try:
        remote_modified = fetch_remote_last_modified(descriptor.url, session, timeout)
    except requests.RequestException as e:
        logger.warning(f"HEAD request for {descriptor.url} failed ({e}), fetching")
        return FreshnessDecision.FETCH

    if remote_modified is None:
        logger.debug(f"No usable Last-Modified for {descriptor.url}, fetching")
        return FreshnessDecision.FETCH

    if remote_modified > _as_utc(entry.last_modified_remote):
        logger.info(f"Remote copy of '{descriptor.cache_key}' is newer ({remote_modified.isoformat()}), fetching")
        return FreshnessDecision.FETCH

    return FreshnessDecision.USE_CACHED
