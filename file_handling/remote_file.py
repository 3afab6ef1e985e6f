"""
Descriptions of the remote flat files Flat File Fusion retrieves.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class FileFormat(Enum):
    """Physical format of a published flat file."""
    DELIMITED_TEXT = 'delimited-text'
    SPREADSHEET = 'spreadsheet'


@dataclass(frozen=True)
class RemoteFileDescriptor:
    """
    One remote file, the format it is published in, and the key it is cached under.

    sheet_name and header_row only apply to spreadsheets; when left as None
    the configured defaults are used.
    """
    url: str
    cache_key: str
    expected_format: FileFormat = FileFormat.DELIMITED_TEXT
    sheet_name: Optional[str] = None
    header_row: Optional[int] = None

    def __post_init__(self):
        if not self.url:
            raise ValueError("url cannot be empty")
        if not self.cache_key:
            raise ValueError("cache_key cannot be empty")
        if not isinstance(self.expected_format, FileFormat):
            # Accept the plain string values as well
            object.__setattr__(self, 'expected_format', FileFormat(self.expected_format))
