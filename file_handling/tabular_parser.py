"""
Tolerant tabular parser for Flat File Fusion.

The agency's tab-delimited files are not always rectangular: some rows carry
an extra trailing separator (a phantom column), others stop short. This
module turns raw bytes into a typed pandas DataFrame anyway, cutting rows
down or padding them out to the header width, and reports every recovery that
could have lost or invented data as a warning.
"""

import io
import logging
import re
import zipfile
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, List, Optional, Tuple

import openpyxl
import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException

from core.exceptions import ParseError

from .remote_file import FileFormat

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = '\t'

# Identifier codes such as '01' or '0000' keep their zeros and stay text
ZERO_PADDED_CODE = re.compile(r'^[+-]?0\d')

# float64 holds at most 15 significant decimal digits exactly
MAX_EXACT_FLOAT_DIGITS = 15

# Errors openpyxl raises for damaged workbooks. Malformed XML surfaces as
# SyntaxError subclasses from both ElementTree and lxml.
_WORKBOOK_ERRORS = (InvalidFileException, zipfile.BadZipFile, KeyError, IndexError, OSError, ValueError,
                    TypeError, SyntaxError)

NumberedLine = Tuple[int, List[str]]


@dataclass
class RawTable:
    """Header plus untyped rows; rows may not match the header width."""
    header: List[str]
    rows: List[List[Optional[str]]] = field(default_factory=list)


class _RecoveryLog:
    """Counts row recoveries so each kind is reported once with a total."""

    def __init__(self, source: str):
        self.source = source
        self._counts: 'OrderedDict[str, List[int]]' = OrderedDict()
        self.messages: List[str] = []

    def note(self, kind: str, line_number: int) -> None:
        if kind in self._counts:
            self._counts[kind][0] += 1
        else:
            self._counts[kind] = [1, line_number]

    def add(self, message: str) -> None:
        self.messages.append(f"{self.source}: {message}")

    def render(self, width: int) -> List[str]:
        templates = {
            'truncated': "{count} row(s) had non-empty fields beyond the {width} header columns; "
                         "the extra fields were discarded (first at line {line})",
            'padded': "{count} row(s) had fewer than {width} fields; "
                      "missing trailing fields were filled with missing values (first at line {line})",
        }
        rendered = list(self.messages)
        for kind, (count, line) in self._counts.items():
            rendered.append(f"{self.source}: " + templates[kind].format(count=count, width=width, line=line))
        return rendered


def decode_text(raw_bytes: bytes) -> str:
    """Decode file bytes as UTF-8, falling back to Latin-1."""
    try:
        return raw_bytes.decode('utf-8-sig')
    except UnicodeDecodeError:
        return raw_bytes.decode('latin-1')


def _is_blank(line: str) -> bool:
    # Tabs are separators, so a tab-only line is a row of empty fields, not a blank line
    return line.strip(' \r\n\x0c\x0b') == ''


def split_delimited_lines(raw_bytes: bytes) -> List[NumberedLine]:
    """Split tab-delimited bytes into numbered, whitespace-trimmed field lists."""
    lines = []
    for line_number, line in enumerate(decode_text(raw_bytes).splitlines(), start=1):
        if _is_blank(line):
            continue
        lines.append((line_number, [value.strip() for value in line.split(FIELD_SEPARATOR)]))
    return lines


def _cell_to_text(value) -> str:
    if value is None:
        return ''
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value).strip()


def read_spreadsheet_lines(
    raw_bytes: bytes,
    sheet_name: Optional[str] = None,
    header_row: int = 0,
    source: str = 'spreadsheet'
) -> List[NumberedLine]:
    """
    Read one worksheet into numbered field lists, starting at the header row.

    Args:
        raw_bytes: Workbook file content
        sheet_name: Worksheet to read (first worksheet when None)
        header_row: 0-based index of the header row within the sheet
        source: Name used in error messages

    Raises:
        ParseError: If the workbook cannot be read or the sheet does not exist
    """
    try:
        workbook = openpyxl.load_workbook(io.BytesIO(raw_bytes), read_only=True, data_only=True)
    except _WORKBOOK_ERRORS as e:
        raise ParseError(f"Cannot open spreadsheet: {e}", source=source) from e

    try:
        if sheet_name is None:
            if not workbook.worksheets:
                raise ParseError("Workbook contains no worksheets", source=source)
            worksheet = workbook.worksheets[0]
        elif sheet_name in workbook.sheetnames:
            worksheet = workbook[sheet_name]
        else:
            raise ParseError(
                f"Sheet '{sheet_name}' not found (available: {', '.join(workbook.sheetnames)})",
                source=source
            )

        lines = []
        for index, row in enumerate(worksheet.iter_rows(values_only=True)):
            if index < header_row:
                continue
            fields = [_cell_to_text(value) for value in row]
            if not any(fields):
                continue
            lines.append((index + 1, fields))
        return lines
    except _WORKBOOK_ERRORS as e:
        # Worksheet XML is only parsed while rows are read
        raise ParseError(f"Cannot read spreadsheet: {e}", source=source) from e
    finally:
        workbook.close()


def _normalize_header(fields: List[str], recovery: _RecoveryLog) -> List[str]:
    """Drop phantom trailing header fields, then name blanks and make names unique."""
    names = list(fields)
    while names and not names[-1]:
        names.pop()

    header = []
    seen = set()
    for position, name in enumerate(names, start=1):
        if not name:
            name = f"column_{position}"
        if name in seen:
            suffix = 1
            while f"{name}.{suffix}" in seen:
                suffix += 1
            renamed = f"{name}.{suffix}"
            recovery.add(f"duplicate column name '{name}' renamed to '{renamed}'")
            name = renamed
        seen.add(name)
        header.append(name)
    return header


def build_raw_table(lines: Iterable[NumberedLine], source: str = 'table') -> Tuple[RawTable, List[str]]:
    """
    Locate the header and fit every following row to its width.

    Args:
        lines: Numbered field lists, blank lines already removed
        source: Name used in warnings and errors

    Returns:
        Tuple of (RawTable with rectangular rows, list of warnings)

    Raises:
        ParseError: If no header can be located or a row has no usable fields
    """
    recovery = _RecoveryLog(source)
    iterator = iter(lines)

    header = []
    header_line = None
    for line_number, fields in iterator:
        header = _normalize_header(fields, recovery)
        header_line = line_number
        break

    if not header:
        raise ParseError("No header row could be located", source=source, line=header_line)

    width = len(header)
    table = RawTable(header=header)

    for line_number, fields in iterator:
        if len(fields) > width:
            if any(fields[width:]):
                recovery.note('truncated', line_number)
            kept = fields[:width]
        elif len(fields) < width:
            recovery.note('padded', line_number)
            kept = fields + [''] * (width - len(fields))
        else:
            kept = fields

        if not any(kept):
            raise ParseError("Row has no usable fields", source=source, line=line_number)

        table.rows.append([value if value else None for value in kept])

    return table, recovery.render(width)


def _significant_digits(text: str) -> int:
    """Count the significant decimal digits of a numeric string."""
    mantissa = re.split(r'[eE]', text, maxsplit=1)[0].lstrip('+-')
    if '.' in mantissa:
        mantissa = mantissa.rstrip('0')
    return len(mantissa.replace('.', '').lstrip('0'))


def _type_column(values: pd.Series) -> pd.Series:
    """Convert a text column to numbers when every present value is a plain number."""
    present = values.dropna()
    if present.empty:
        return values

    if present.str.match(ZERO_PADDED_CODE).any():
        return values

    numeric = pd.to_numeric(present, errors='coerce')
    if numeric.isna().any():
        return values

    converted = pd.to_numeric(values, errors='coerce')

    # Long identifiers that end up as float64 would collapse together
    if pd.api.types.is_float_dtype(converted) and present.map(_significant_digits).gt(MAX_EXACT_FLOAT_DIGITS).any():
        return values

    return converted


def to_typed_table(raw: RawTable) -> pd.DataFrame:
    """Build the typed DataFrame for a RawTable, inferring numeric vs. text per column."""
    frame = pd.DataFrame(raw.rows, columns=raw.header, dtype=object)
    for column in frame.columns:
        frame[column] = _type_column(frame[column])
    return frame


def parse(
    raw_bytes: bytes,
    file_format: FileFormat,
    *,
    sheet_name: Optional[str] = None,
    header_row: int = 0,
    source: Optional[str] = None
) -> Tuple[pd.DataFrame, List[str]]:
    """
    Parse raw file bytes into a typed table.

    Args:
        raw_bytes: File content
        file_format: FileFormat of the content
        sheet_name: Worksheet for spreadsheets (first when None)
        header_row: 0-based header row for spreadsheets
        source: Name used in warnings and errors

    Returns:
        Tuple of (typed DataFrame, list of warnings)

    Raises:
        ParseError: If the content is structurally unrecoverable
    """
    file_format = FileFormat(file_format)
    source = source or file_format.value

    if file_format is FileFormat.SPREADSHEET:
        lines = read_spreadsheet_lines(raw_bytes, sheet_name=sheet_name, header_row=header_row, source=source)
    else:
        lines = split_delimited_lines(raw_bytes)

    raw, warnings = build_raw_table(lines, source=source)
    frame = to_typed_table(raw)

    logger.debug(f"Parsed {source}: {len(frame)} rows x {len(frame.columns)} columns, {len(warnings)} warning(s)")
    for warning in warnings:
        logger.warning(warning)

    return frame, warnings
