"""
Data handling module for Flat File Fusion.

This module provides the data model, diagnostics recording, join-key
inference and merging, and the retrieval pipeline tying them together.
"""

from .models import (
    MappingTable,
    DataCollection,
    FetchedTable,
    PassThroughTable,
    TableSource,
    MappingSource,
    unwrap_table
)
from .diagnostics import DiagnosticsRecorder, DiagnosticsSnapshot
from .merge_strategy import StepStatus, StepResult, infer_join_keys, merge_step, merge_all
from .retrieval import create_session, load_table, retrieve_collection

__all__ = [
    # Models
    'MappingTable',
    'DataCollection',
    'FetchedTable',
    'PassThroughTable',
    'TableSource',
    'MappingSource',
    'unwrap_table',

    # Diagnostics
    'DiagnosticsRecorder',
    'DiagnosticsSnapshot',

    # Merging
    'StepStatus',
    'StepResult',
    'infer_join_keys',
    'merge_step',
    'merge_all',

    # Retrieval
    'create_session',
    'load_table',
    'retrieve_collection',
]

# Version info
__version__ = "1.0.0"
