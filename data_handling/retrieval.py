"""
Retrieval pipeline for Flat File Fusion.

A retrieval loads one primary flat file and any number of mapping files,
each through the same check-freshness, fetch-if-needed, parse sequence, then
folds the mapping tables into the primary table. Files are loaded
concurrently; the fold is sequential.

Failures on the primary file are raised to the caller. Failures on a
mapping file are recorded as warnings and that mapping table is left out.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Optional, Sequence

import pandas as pd
import requests

from config_manager import get_config
from core.config import Config
from core.exceptions import CacheWriteError, FlatFileFusionError, NetworkError
from file_handling.cache import FileCache
from file_handling.fetcher import FetchRecord, fetch
from file_handling.freshness import FreshnessDecision, check_freshness
from file_handling.remote_file import FileFormat, RemoteFileDescriptor
from file_handling.tabular_parser import parse

from .diagnostics import DiagnosticsRecorder, DiagnosticsSnapshot
from .merge_strategy import merge_all
from .models import DataCollection, MappingSource, MappingTable, unwrap_table

logger = logging.getLogger(__name__)


def create_session(config: Config) -> requests.Session:
    """Create an HTTP session identifying itself with the configured User-Agent."""
    session = requests.Session()
    session.headers.update({'User-Agent': config.http.user_agent})
    return session


def _read_or_fetch(
    descriptor: RemoteFileDescriptor,
    cache: FileCache,
    session: requests.Session,
    config: Config,
    recorder: DiagnosticsRecorder,
    timeout: Optional[float] = None
) -> bytes:
    """Get the bytes of a remote file, from the cache when it is still fresh."""
    timeout = _request_timeout(config, timeout)

    with cache.locked(descriptor.cache_key):
        decision = check_freshness(descriptor, cache, session, timeout)

        if decision is FreshnessDecision.USE_CACHED:
            entry = cache.get_entry(descriptor.cache_key)
            started = time.monotonic()
            try:
                if entry is None:
                    raise FileNotFoundError(f"cache entry for '{descriptor.cache_key}' disappeared")
                content = cache.read_content(entry)
            except OSError as e:
                recorder.append_warning(f"Cached copy of '{descriptor.cache_key}' unreadable ({e}), downloading again")
            else:
                recorder.append_download(FetchRecord(
                    url=descriptor.url,
                    cache_key=descriptor.cache_key,
                    action='cached',
                    size_bytes=len(content),
                    elapsed_seconds=time.monotonic() - started,
                    last_modified=entry.last_modified_remote
                ))
                recorder.append_step(f"Using cached copy of '{descriptor.cache_key}'")
                return content

        try:
            result = fetch(descriptor, cache, session, timeout, config.http.chunk_size)
        except CacheWriteError as e:
            if e.record is not None:
                recorder.append_download(e.record)
            recorder.append_warning(
                f"Downloaded '{descriptor.cache_key}' but could not cache it, "
                f"later retrievals will download it again: {e}"
            )
            return e.content

    recorder.append_download(result.record)
    recorder.append_step(f"Downloaded '{descriptor.cache_key}' from {descriptor.url}")
    return result.content


def _request_timeout(config: Config, timeout: Optional[float]) -> float:
    """Per-request HTTP timeout: the configured value, capped by a caller timeout."""
    if timeout is None:
        return config.http.timeout_seconds
    return min(config.http.timeout_seconds, timeout)


def load_table(
    descriptor: RemoteFileDescriptor,
    cache: FileCache,
    session: requests.Session,
    config: Config,
    recorder: Optional[DiagnosticsRecorder] = None,
    timeout: Optional[float] = None
) -> pd.DataFrame:
    """
    Retrieve and parse one remote file.

    Args:
        descriptor: RemoteFileDescriptor of the file
        cache: Cache consulted and updated for the file
        session: HTTP session
        config: Configuration supplying timeouts and spreadsheet defaults
        recorder: Diagnostics recorder (a disabled one when None)
        timeout: Upper bound in seconds for each HTTP request (config value when None)

    Returns:
        Typed DataFrame of the file

    Raises:
        NetworkError: If the file could not be downloaded
        ParseError: If the file is structurally unrecoverable
    """
    recorder = recorder or DiagnosticsRecorder(enabled=False)
    content = _read_or_fetch(descriptor, cache, session, config, recorder, timeout)

    sheet_name = None
    header_row = 0
    if descriptor.expected_format is FileFormat.SPREADSHEET:
        sheet_name = descriptor.sheet_name or config.parse.spreadsheet_sheet
        header_row = (
            descriptor.header_row if descriptor.header_row is not None
            else config.parse.spreadsheet_header_row
        )

    table, warnings = parse(
        content,
        descriptor.expected_format,
        sheet_name=sheet_name,
        header_row=header_row,
        source=descriptor.cache_key
    )
    for warning in warnings:
        recorder.append_warning(warning)
    recorder.append_step(
        f"Parsed '{descriptor.cache_key}': {len(table)} rows x {len(table.columns)} columns"
    )
    return table


@dataclass(frozen=True, eq=False)
class _LoadOutcome:
    """Result of loading one file with a private recorder."""
    table: Optional[pd.DataFrame]
    diagnostics: DiagnosticsSnapshot
    error: Optional[FlatFileFusionError] = None


def _load_isolated(
    descriptor: RemoteFileDescriptor,
    cache: FileCache,
    session: requests.Session,
    config: Config,
    enabled: bool,
    timeout: Optional[float] = None
) -> _LoadOutcome:
    """Run load_table with a private recorder so concurrent loads keep their own order."""
    recorder = DiagnosticsRecorder(enabled=enabled)
    try:
        table = load_table(descriptor, cache, session, config, recorder, timeout)
    except FlatFileFusionError as e:
        return _LoadOutcome(table=None, diagnostics=recorder.finalize(), error=e)
    return _LoadOutcome(table=table, diagnostics=recorder.finalize())


class _Deadline:
    """Time left for the loading phase of one retrieval; unbounded when timeout is None."""

    def __init__(self, timeout: Optional[float]):
        self.timeout = timeout
        self.expired = False
        self._expires = time.monotonic() + timeout if timeout is not None else None

    def remaining(self) -> Optional[float]:
        if self._expires is None:
            return None
        return max(0.0, self._expires - time.monotonic())

    def wait(self, future, descriptor: RemoteFileDescriptor) -> _LoadOutcome:
        """Wait for a load; a load still running at the deadline becomes a NetworkError outcome."""
        try:
            return future.result(timeout=self.remaining())
        except FutureTimeoutError:
            if not future.cancel():
                self.expired = True
            error = NetworkError(
                f"Retrieval of '{descriptor.cache_key}' did not finish within {self.timeout}s",
                url=descriptor.url
            )
            return _LoadOutcome(table=None, diagnostics=DiagnosticsSnapshot(), error=error)


def retrieve_collection(
    primary: RemoteFileDescriptor,
    mappings: Sequence[MappingSource] = (),
    *,
    cache: Optional[FileCache] = None,
    session: Optional[requests.Session] = None,
    config: Optional[Config] = None,
    diagnostics: bool = True,
    timeout: Optional[float] = None
) -> DataCollection:
    """
    Retrieve a primary dataset and merge its mapping tables into it.

    Args:
        primary: RemoteFileDescriptor of the primary data file
        mappings: Mapping table sources, in the order they are merged
        cache: File cache (built from config when None)
        session: HTTP session (a new one with the configured User-Agent when None)
        config: Configuration (the process-wide configuration when None)
        diagnostics: Whether to populate the diagnostic fields of the result
        timeout: Seconds allowed for loading the files. Each HTTP request is
            capped to it as well, and a mapping file still loading when it runs
            out is skipped with a warning. The merge that follows is never
            interrupted.

    Returns:
        DataCollection owning a fresh copy of the merged data

    Raises:
        NetworkError: If the primary file could not be downloaded in time
        ParseError: If the primary file is structurally unrecoverable
        ValueError: If timeout is not positive
    """
    if timeout is not None and timeout <= 0:
        raise ValueError("timeout must be positive")

    config = config or get_config()
    cache = cache or FileCache.from_config(config)
    owns_session = session is None
    session = session or create_session(config)

    deadline = _Deadline(timeout)
    recorder = DiagnosticsRecorder(enabled=diagnostics)
    executor = ThreadPoolExecutor(max_workers=config.http.max_workers)
    try:
        primary_future = executor.submit(_load_isolated, primary, cache, session, config, diagnostics, timeout)
        mapping_futures = [
            executor.submit(_load_isolated, mapping.source, cache, session, config, diagnostics, timeout)
            if mapping.needs_retrieval else None
            for mapping in mappings
        ]

        primary_outcome = deadline.wait(primary_future, primary)
        if primary_outcome.error is not None:
            for future in mapping_futures:
                if future is not None:
                    future.cancel()
            raise primary_outcome.error
        recorder.extend(primary_outcome.diagnostics)

        mapping_tables = []
        for mapping, future in zip(mappings, mapping_futures):
            table = _resolve_mapping(mapping, future, recorder, deadline)
            if table is None:
                continue
            presentation_only = (
                mapping.presentation_only if mapping.presentation_only is not None
                else frozenset(config.parse.presentation_columns)
            )
            mapping_tables.append(MappingTable(mapping.name, table, presentation_only))
    finally:
        # Loads abandoned at the deadline finish in the background under their cache locks
        executor.shutdown(wait=not deadline.expired)
        if owns_session and not deadline.expired:
            session.close()

    merged, _ = merge_all(primary_outcome.table, mapping_tables, recorder)
    snapshot = recorder.finalize()

    return DataCollection(
        data=merged.copy(),
        download_diagnostics=snapshot.download_diagnostics,
        processing_steps=snapshot.processing_steps,
        warnings=snapshot.warnings
    )


def _resolve_mapping(
    mapping: MappingSource,
    future,
    recorder: DiagnosticsRecorder,
    deadline: _Deadline
) -> Optional[pd.DataFrame]:
    """Get a mapping table, recording a warning and returning None when it failed to load."""
    if future is None:
        return unwrap_table(mapping.source)

    outcome = deadline.wait(future, mapping.source)
    recorder.extend(outcome.diagnostics)
    if outcome.error is not None:
        recorder.append_warning(f"Skipping mapping table '{mapping.name}': {outcome.error}")
        return None
    return outcome.table
