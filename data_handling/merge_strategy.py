"""
Join-key inference and multi-table merging for Flat File Fusion.

Mapping tables published next to a dataset never declare which columns they
join on. The key is inferred from column names instead: every column except
the last (which holds the label being added) is a candidate, and the ones the
accumulated table already has become the join key. Mapping tables are folded
into the primary table strictly in order with left outer joins, and a table
that cannot be merged is skipped without affecting the others.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from core.exceptions import MergeError

from .diagnostics import DiagnosticsRecorder
from .models import MappingTable

logger = logging.getLogger(__name__)

_ROW_ID = '__flatfile_fusion_row__'
_MATCH_INDICATOR = '__flatfile_fusion_match__'


class StepStatus(Enum):
    """Outcome of merging one mapping table."""
    MERGED = 'merged'
    SKIPPED = 'skipped'  # no shared key column; expected and not an error
    FAILED = 'failed'


@dataclass(frozen=True)
class StepResult:
    """What happened when one mapping table was folded in."""
    table_name: str
    status: StepStatus
    reason: str = ''
    join_keys: Tuple[str, ...] = ()
    new_columns: Tuple[str, ...] = ()
    matched: int = 0
    unmatched: int = 0
    rows_before: int = 0
    rows_after: int = 0

    @property
    def is_ambiguous(self) -> bool:
        """True when duplicate mapping keys multiplied rows."""
        return self.rows_after > self.rows_before

    def describe(self) -> str:
        if self.status is StepStatus.SKIPPED:
            return f"Skipped mapping table '{self.table_name}': {self.reason}"
        if self.status is StepStatus.FAILED:
            return f"Failed to merge mapping table '{self.table_name}', skipped: {self.reason}"

        text = (
            f"Merged mapping table '{self.table_name}' on {', '.join(self.join_keys)}: "
            f"{self.matched} matched, {self.unmatched} unmatched"
        )
        if self.is_ambiguous:
            text += (
                f"; duplicate keys in the mapping table expanded "
                f"{self.rows_before} rows to {self.rows_after}"
            )
        return text


def strip_presentation_columns(mapping: MappingTable) -> pd.DataFrame:
    """Drop the columns that must never take part in matching."""
    drop = [column for column in mapping.table.columns if column in mapping.presentation_only]
    return mapping.table.drop(columns=drop)


def infer_join_keys(mapping_columns: Sequence[str], accumulated_columns: Iterable[str]) -> List[str]:
    """
    Infer the join key of a mapping table.

    Every column except the last is a candidate; the key is the candidates
    present in the accumulated table, in mapping-table order. For a
    two-column mapping table this is its first column.

    Args:
        mapping_columns: Columns of the mapping table, presentation columns removed
        accumulated_columns: Columns of the table being merged into

    Returns:
        Join key columns, empty when the tables share none

    Raises:
        MergeError: If fewer than two columns remain
    """
    mapping_columns = list(mapping_columns)
    if len(mapping_columns) < 2:
        raise MergeError(
            f"Mapping table needs at least 2 columns after removing presentation columns, "
            f"found {len(mapping_columns)}"
        )

    available = set(accumulated_columns)
    return [column for column in mapping_columns[:-1] if column in available]


def _unique_name(name: str, taken: Iterable[str]) -> str:
    taken = set(taken)
    if name not in taken:
        return name
    counter = 2
    while f"{name}_{counter}" in taken:
        counter += 1
    return f"{name}_{counter}"


def left_join(
    accumulated: pd.DataFrame,
    mapping_frame: pd.DataFrame,
    join_keys: List[str],
    table_name: str
) -> Tuple[pd.DataFrame, int, Tuple[str, ...]]:
    """
    Left outer join mapping_frame onto accumulated.

    Every accumulated row is kept, in order; rows without a match get missing
    values in the new columns, and rows matching several mapping rows are
    repeated once per match. Non-key mapping columns whose names are already
    taken get a '_<table_name>' suffix.

    Returns:
        Tuple of (joined frame, number of accumulated rows matched, new column names)
    """
    left = accumulated.copy()
    left[_ROW_ID] = range(len(left))

    renames = {}
    taken = set(left.columns)
    for column in mapping_frame.columns:
        if column in join_keys:
            continue
        if column in taken:
            renamed = _unique_name(f"{column}_{table_name}", taken | set(mapping_frame.columns))
            renames[column] = renamed
            taken.add(renamed)
    right = mapping_frame.rename(columns=renames)
    new_columns = tuple(column for column in right.columns if column not in join_keys)

    merged = left.merge(right, how='left', on=join_keys, sort=False, indicator=_MATCH_INDICATOR)

    matched = int(merged.loc[merged[_MATCH_INDICATOR] == 'both', _ROW_ID].nunique())
    merged = merged.drop(columns=[_ROW_ID, _MATCH_INDICATOR]).reset_index(drop=True)

    # Restore the accumulated column order followed by the new columns
    merged = merged[list(accumulated.columns) + list(new_columns)]
    return merged, matched, new_columns


def merge_step(accumulated: pd.DataFrame, mapping: MappingTable) -> Tuple[pd.DataFrame, StepResult]:
    """
    Fold one mapping table into the accumulated table.

    Never raises for problems with the mapping table itself: a failure is
    returned as a FAILED StepResult and the accumulated table comes back
    unchanged.
    """
    rows_before = len(accumulated)
    try:
        mapping_frame = strip_presentation_columns(mapping)
        join_keys = infer_join_keys(list(mapping_frame.columns), accumulated.columns)

        if not join_keys:
            return accumulated, StepResult(
                table_name=mapping.name,
                status=StepStatus.SKIPPED,
                reason=(
                    f"none of its key columns ({', '.join(map(str, mapping_frame.columns[:-1]))}) "
                    f"exist in the data"
                ),
                rows_before=rows_before,
                rows_after=rows_before
            )

        merged, matched, new_columns = left_join(accumulated, mapping_frame, join_keys, mapping.name)
    except Exception as e:
        logger.debug(f"Merging '{mapping.name}' failed", exc_info=True)
        return accumulated, StepResult(
            table_name=mapping.name,
            status=StepStatus.FAILED,
            reason=f"{type(e).__name__}: {e}",
            rows_before=rows_before,
            rows_after=rows_before
        )

    result = StepResult(
        table_name=mapping.name,
        status=StepStatus.MERGED,
        join_keys=tuple(join_keys),
        new_columns=new_columns,
        matched=matched,
        unmatched=rows_before - matched,
        rows_before=rows_before,
        rows_after=len(merged)
    )
    if result.is_ambiguous:
        logger.info(f"Ambiguous join for '{mapping.name}': {rows_before} rows became {len(merged)}")
    return merged, result


def merge_all(
    primary: pd.DataFrame,
    mapping_tables: Sequence[MappingTable],
    recorder: Optional[DiagnosticsRecorder] = None
) -> Tuple[pd.DataFrame, List[StepResult]]:
    """
    Fold mapping tables into the primary table, left to right.

    The table produced by step i is the input of step i+1. Skipped and
    failed tables leave the accumulated table unchanged, and the fold always
    continues with the next table.

    Args:
        primary: Primary data table; never modified
        mapping_tables: Mapping tables in processing order
        recorder: Diagnostics recorder receiving one step per mapping table,
            plus a warning for every failed table

    Returns:
        Tuple of (merged table, list of StepResult in processing order)
    """
    recorder = recorder or DiagnosticsRecorder(enabled=False)
    accumulated = primary.copy()
    results = []

    for mapping in mapping_tables:
        accumulated, result = merge_step(accumulated, mapping)
        results.append(result)

        recorder.append_step(result.describe())
        if result.status is StepStatus.FAILED:
            recorder.append_warning(result.describe())

    return accumulated, results
