"""
Data model for Flat File Fusion retrievals.

This module holds the value types that flow between the retrieval pipeline,
the merge engine and callers: mapping tables, the final DataCollection, and
the two-case table source used wherever either an already-retrieved
collection or a plain DataFrame may be supplied.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple, Union

import pandas as pd

from core.config import DEFAULT_PRESENTATION_COLUMNS
from file_handling.fetcher import FetchRecord
from file_handling.remote_file import RemoteFileDescriptor


@dataclass(frozen=True, eq=False)
class MappingTable:
    """
    An auxiliary code table to merge into the primary data.

    presentation_only names columns that only control display (indentation
    level, sort order) and must never be used to match rows.
    """
    name: str
    table: pd.DataFrame
    presentation_only: FrozenSet[str] = frozenset(DEFAULT_PRESENTATION_COLUMNS)

    def __post_init__(self):
        object.__setattr__(self, 'presentation_only', frozenset(self.presentation_only))


@dataclass(frozen=True, eq=False)
class DataCollection:
    """
    Result of one top-level retrieval.

    The diagnostic fields are empty when the retrieval ran without diagnostics.
    """
    data: pd.DataFrame
    download_diagnostics: Tuple[FetchRecord, ...] = ()
    processing_steps: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    @property
    def status(self) -> str:
        """'complete' for a clean retrieval, 'with_caveats' when warnings were recorded."""
        return 'with_caveats' if self.warnings else 'complete'

    def summary(self) -> str:
        """Short human-readable description of the collection."""
        lines = [
            f"DataCollection: {len(self.data)} rows x {len(self.data.columns)} columns ({self.status})",
        ]
        if self.download_diagnostics:
            total = sum(record.size_bytes for record in self.download_diagnostics)
            downloaded = sum(1 for record in self.download_diagnostics if record.action == 'downloaded')
            lines.append(
                f"Files: {len(self.download_diagnostics)} "
                f"({downloaded} downloaded, {len(self.download_diagnostics) - downloaded} from cache, {total} bytes)"
            )
        if self.processing_steps:
            lines.append(f"Processing steps: {len(self.processing_steps)}")
        for warning in self.warnings:
            lines.append(f"Warning: {warning}")
        return "\n".join(lines)


@dataclass(frozen=True, eq=False)
class FetchedTable:
    """A table that was already retrieved as a DataCollection."""
    collection: DataCollection


@dataclass(frozen=True, eq=False)
class PassThroughTable:
    """A plain DataFrame supplied by the caller."""
    table: pd.DataFrame


TableSource = Union[FetchedTable, PassThroughTable]


def unwrap_table(source: TableSource) -> pd.DataFrame:
    """
    Get the DataFrame behind a table source.

    The returned frame is a copy and can be modified freely.

    Raises:
        TypeError: If source is neither a FetchedTable nor a PassThroughTable
    """
    if isinstance(source, FetchedTable):
        return source.collection.data.copy()
    if isinstance(source, PassThroughTable):
        return source.table.copy()
    raise TypeError(f"Expected FetchedTable or PassThroughTable, got {type(source).__name__}")


@dataclass(frozen=True)
class MappingSource:
    """
    Where one mapping table comes from.

    source is either a RemoteFileDescriptor to retrieve, or a table source
    the caller already holds. presentation_only falls back to the configured
    presentation columns when None.
    """
    name: str
    source: Union[RemoteFileDescriptor, FetchedTable, PassThroughTable]
    presentation_only: Optional[FrozenSet[str]] = field(default=None, hash=False)

    @property
    def needs_retrieval(self) -> bool:
        return isinstance(self.source, RemoteFileDescriptor)
