"""
Downloading flat files into the cache.

The full body is transferred before anything touches the cache directory, and
the cache then promotes it with an atomic rename, so a failed or interrupted
download leaves any previous entry intact.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import requests

from core.exceptions import CacheWriteError, NetworkError

from .cache import CacheEntry, FileCache
from .freshness import parse_http_date
from .remote_file import RemoteFileDescriptor

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class FetchRecord:
    """Diagnostics for one file of a retrieval."""
    url: str
    cache_key: str
    action: str  # 'downloaded' or 'cached'
    size_bytes: int
    elapsed_seconds: float
    content_length: Optional[int] = None  # as reported by the server, informational only
    last_modified: Optional[datetime] = None
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'url': self.url,
            'cache_key': self.cache_key,
            'action': self.action,
            'size_bytes': self.size_bytes,
            'elapsed_seconds': round(self.elapsed_seconds, 3),
            'content_length': self.content_length,
            'last_modified': self.last_modified.isoformat() if self.last_modified else None,
        }


@dataclass(frozen=True)
class FetchResult:
    """A completed download: the cache entry, the bytes, and their diagnostics."""
    entry: CacheEntry
    content: bytes
    record: FetchRecord


def _content_length(headers) -> Optional[int]:
    value = headers.get('Content-Length')
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def download(
    url: str,
    session: requests.Session,
    timeout: float,
    chunk_size: int = DEFAULT_CHUNK_SIZE
):
    """
    Download the complete body of url.

    Returns:
        Tuple of (content bytes, response headers)

    Raises:
        NetworkError: If the request fails or the server answers with an error status
    """
    try:
        response = session.get(url, stream=True, timeout=timeout)
    except requests.RequestException as e:
        raise NetworkError(f"Request for {url} failed: {e}", url=url) from e

    try:
        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise NetworkError(
                f"Server refused {url}: {e}",
                url=url,
                status_code=getattr(response, 'status_code', None)
            ) from e

        buffer = bytearray()
        try:
            for chunk in response.iter_content(chunk_size=chunk_size):
                if chunk:
                    buffer.extend(chunk)
        except requests.RequestException as e:
            raise NetworkError(f"Transfer of {url} was interrupted: {e}", url=url) from e

        return bytes(buffer), response.headers
    finally:
        response.close()


def fetch(
    descriptor: RemoteFileDescriptor,
    cache: FileCache,
    session: requests.Session,
    timeout: float,
    chunk_size: int = DEFAULT_CHUNK_SIZE
) -> FetchResult:
    """
    Download a remote file and update its cache entry.

    Callers are expected to hold cache.locked(descriptor.cache_key).

    Args:
        descriptor: RemoteFileDescriptor of the file
        cache: Cache receiving the content
        session: HTTP session used for the GET request
        timeout: Request timeout in seconds
        chunk_size: Streaming chunk size in bytes

    Returns:
        FetchResult with the new cache entry, the content and its diagnostics

    Raises:
        NetworkError: If the download fails; the cache is untouched
        CacheWriteError: If the download succeeded but could not be cached;
            the exception carries the content and a FetchRecord
    """
    started = time.monotonic()
    content, headers = download(descriptor.url, session, timeout, chunk_size)
    elapsed = time.monotonic() - started

    last_modified = parse_http_date(headers.get('Last-Modified'))
    fetched_at = datetime.now(timezone.utc)

    record = FetchRecord(
        url=descriptor.url,
        cache_key=descriptor.cache_key,
        action='downloaded',
        size_bytes=len(content),
        elapsed_seconds=elapsed,
        content_length=_content_length(headers),
        last_modified=last_modified,
        recorded_at=fetched_at
    )
    logger.info(f"Downloaded {descriptor.url} ({record.size_bytes} bytes in {elapsed:.2f}s)")

    try:
        entry = cache.store(descriptor.cache_key, content, last_modified, fetched_at)
    except CacheWriteError as e:
        e.record = record
        raise

    return FetchResult(entry=entry, content=content, record=record)

