"""
Local file cache for Flat File Fusion.

One data file per cache key lives under the cache root, next to a small JSON
sidecar recording when the remote file was last modified and when we last
fetched it. Content is always written to a temporary file first and promoted
with an atomic rename, so an interrupted write never damages a previously
valid entry.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, Optional

from core.exceptions import CacheWriteError

from .security import ensure_within_directory, secure_cache_key

logger = logging.getLogger(__name__)

DATA_SUFFIX = '.data'
METADATA_SUFFIX = '.meta.json'


@dataclass(frozen=True)
class CacheEntry:
    """A cached copy of one remote file."""
    local_path: str
    last_modified_remote: Optional[datetime]  # None when the server sent no Last-Modified
    last_fetched_at: datetime

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'local_path': self.local_path,
            'last_modified_remote': (
                self.last_modified_remote.isoformat() if self.last_modified_remote else None
            ),
            'last_fetched_at': self.last_fetched_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CacheEntry':
        """Create from dictionary for deserialization."""
        last_modified = data.get('last_modified_remote')
        return cls(
            local_path=data['local_path'],
            last_modified_remote=datetime.fromisoformat(last_modified) if last_modified else None,
            last_fetched_at=datetime.fromisoformat(data['last_fetched_at'])
        )


def _atomic_write_bytes(target: Path, content: bytes) -> None:
    """Write content to a temporary sibling of target, then rename over it."""
    fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix='.tmp')
    try:
        with os.fdopen(fd, 'wb') as tmp_file:
            tmp_file.write(content)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class MetadataStore(ABC):
    """Abstract base class for cache metadata storage."""

    @abstractmethod
    def get(self, cache_key: str) -> Optional[CacheEntry]:
        """Retrieve the entry for a cache key, or None"""
        pass

    @abstractmethod
    def set(self, cache_key: str, entry: CacheEntry) -> None:
        """Store the entry for a cache key"""
        pass

    @abstractmethod
    def delete(self, cache_key: str) -> bool:
        """Delete the entry for a cache key"""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove every entry"""
        pass


class MemoryMetadataStore(MetadataStore):
    """
    In-memory metadata store for testing and short-lived processes.
    Thread-safe.
    """

    def __init__(self):
        self._store: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()

    def get(self, cache_key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._store.get(cache_key)

    def set(self, cache_key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._store[cache_key] = entry

    def delete(self, cache_key: str) -> bool:
        with self._lock:
            return self._store.pop(cache_key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._store.clear()


class JsonSidecarStore(MetadataStore):
    """Metadata store keeping one JSON sidecar file per cache key."""

    def __init__(self, cache_root: str):
        self.cache_root = Path(cache_root)

    def _path_for(self, cache_key: str) -> Path:
        path = self.cache_root / f"{secure_cache_key(cache_key)}{METADATA_SUFFIX}"
        ensure_within_directory(str(path), str(self.cache_root))
        return path

    def get(self, cache_key: str) -> Optional[CacheEntry]:
        path = self._path_for(cache_key)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return CacheEntry.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            # An unreadable sidecar is treated as no entry, forcing a refetch
            logger.warning(f"Ignoring unreadable cache metadata {path}: {e}")
            return None

    def set(self, cache_key: str, entry: CacheEntry) -> None:
        path = self._path_for(cache_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(entry.to_dict(), indent=2).encode('utf-8')
        _atomic_write_bytes(path, payload)

    def delete(self, cache_key: str) -> bool:
        try:
            self._path_for(cache_key).unlink()
            return True
        except FileNotFoundError:
            return False

    def clear(self) -> None:
        if not self.cache_root.exists():
            return
        for path in self.cache_root.glob(f"*{METADATA_SUFFIX}"):
            path.unlink()


class FileCache:
    """
    Cache of remote flat files under a single cache root.

    Writers addressing the same cache key are serialized with a per-key lock;
    writers to distinct keys do not coordinate.
    """

    def __init__(self, cache_root: str, metadata_store: Optional[MetadataStore] = None):
        self.cache_root = Path(cache_root)
        self.metadata_store = metadata_store if metadata_store is not None else JsonSidecarStore(cache_root)
        self._key_locks: Dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

    @classmethod
    def from_config(cls, config) -> 'FileCache':
        """Create a cache rooted at the configured cache directory."""
        return cls(config.cache.get_cache_root())

    def data_path(self, cache_key: str) -> Path:
        """Get the canonical data file path for a cache key."""
        path = self.cache_root / f"{secure_cache_key(cache_key)}{DATA_SUFFIX}"
        ensure_within_directory(str(path), str(self.cache_root))
        return path

    @contextmanager
    def locked(self, cache_key: str) -> Iterator[None]:
        """Hold the per-key lock for cache_key."""
        with self._key_locks_guard:
            lock = self._key_locks.setdefault(cache_key, threading.Lock())
        with lock:
            yield

    def get_entry(self, cache_key: str) -> Optional[CacheEntry]:
        """Get the cache entry for a key, or None if nothing usable is cached."""
        entry = self.metadata_store.get(cache_key)
        if entry is None:
            return None
        if not os.path.exists(entry.local_path):
            logger.info(f"Cache entry for '{cache_key}' points at a missing file {entry.local_path}")
            return None
        return entry

    def read_content(self, entry: CacheEntry) -> bytes:
        """Read the cached bytes of an entry."""
        with open(entry.local_path, 'rb') as f:
            return f.read()

    def store(
        self,
        cache_key: str,
        content: bytes,
        last_modified_remote: Optional[datetime],
        fetched_at: datetime
    ) -> CacheEntry:
        """
        Persist freshly downloaded content and its metadata.

        Args:
            cache_key: Key the content belongs to
            content: Complete downloaded bytes
            last_modified_remote: Remote Last-Modified timestamp, if any
            fetched_at: When the download finished

        Returns:
            The new CacheEntry

        Raises:
            CacheWriteError: If the content or its metadata could not be written
        """
        path = self.data_path(cache_key)
        promoted = False
        try:
            self.cache_root.mkdir(parents=True, exist_ok=True)
            _atomic_write_bytes(path, content)
            promoted = True
            entry = CacheEntry(
                local_path=str(path),
                last_modified_remote=last_modified_remote,
                last_fetched_at=fetched_at
            )
            self.metadata_store.set(cache_key, entry)
        except OSError as e:
            if promoted:
                # New bytes must never sit under the previous entry's timestamps
                self._discard_data_file(cache_key, path)
            raise CacheWriteError(
                f"Could not write cache entry for '{cache_key}': {e}",
                cache_key=cache_key,
                path=str(path),
                content=content
            ) from e

        logger.debug(f"Cached {len(content)} bytes for '{cache_key}' at {path}")
        return entry

    def _discard_data_file(self, cache_key: str, path: Path) -> None:
        """
        Remove a data file whose metadata could not be recorded.

        Falls back to dropping the metadata when the file itself cannot be
        removed; either way get_entry() no longer pairs the file with stale
        timestamps.
        """
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Could not remove uncommitted cache file for '{cache_key}' at {path}: {e}")
            try:
                self.metadata_store.delete(cache_key)
            except OSError as delete_error:
                logger.error(f"Could not invalidate cache metadata for '{cache_key}': {delete_error}")
            return
        logger.warning(f"Discarded cache file for '{cache_key}' after its metadata write failed")

    def clear(self, cache_key: Optional[str] = None) -> None:
        """Remove one cache entry, or the whole cache when no key is given."""
        if cache_key is not None:
            with self.locked(cache_key):
                self.metadata_store.delete(cache_key)
                try:
                    self.data_path(cache_key).unlink()
                except FileNotFoundError:
                    pass
            return

        self.metadata_store.clear()
        if self.cache_root.exists():
            for path in self.cache_root.glob(f"*{DATA_SUFFIX}"):
                path.unlink()
        logger.info(f"Cleared cache at {self.cache_root}")
