"""
Tests for the diagnostics recorder and the retrieval data model.
"""

import os
import sys
import threading

import pandas as pd
import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from data_handling.diagnostics import DiagnosticsRecorder, DiagnosticsSnapshot
from data_handling.models import (
    DataCollection,
    FetchedTable,
    MappingSource,
    MappingTable,
    PassThroughTable,
    unwrap_table,
)
from file_handling.fetcher import FetchRecord
from file_handling.remote_file import FileFormat, RemoteFileDescriptor


def make_record(action='downloaded', size=10):
    return FetchRecord(
        url='https://example.gov/pub/cu/cu.series',
        cache_key='cu.series',
        action=action,
        size_bytes=size,
        elapsed_seconds=0.25
    )


class TestDiagnosticsRecorder:
    """Test collection of steps, warnings and download records."""

    def test_records_in_order(self):
        recorder = DiagnosticsRecorder()
        recorder.append_step('first')
        recorder.append_warning('careful')
        recorder.append_step('second')
        recorder.append_download(make_record())

        snapshot = recorder.finalize()

        assert snapshot.processing_steps == ('first', 'second')
        assert snapshot.warnings == ('careful',)
        assert len(snapshot.download_diagnostics) == 1

    def test_disabled_recorder_keeps_nothing(self):
        recorder = DiagnosticsRecorder(enabled=False)
        recorder.append_step('step')
        recorder.append_warning('warning')
        recorder.append_download(make_record())
        recorder.extend(DiagnosticsSnapshot(processing_steps=('other',)))

        assert recorder.finalize() == DiagnosticsSnapshot()

    def test_messages_are_logged_even_when_disabled(self, caplog):
        recorder = DiagnosticsRecorder(enabled=False)

        with caplog.at_level('INFO', logger='data_handling.diagnostics'):
            recorder.append_warning('mapping skipped')

        assert 'mapping skipped' in caplog.text

    def test_extend_appends_after_existing(self):
        recorder = DiagnosticsRecorder()
        recorder.append_step('mine')

        recorder.extend(DiagnosticsSnapshot(processing_steps=('theirs',), warnings=('w',)))

        snapshot = recorder.finalize()
        assert snapshot.processing_steps == ('mine', 'theirs')
        assert snapshot.warnings == ('w',)

    def test_snapshot_is_detached(self):
        recorder = DiagnosticsRecorder()
        recorder.append_step('one')
        snapshot = recorder.finalize()

        recorder.append_step('two')

        assert snapshot.processing_steps == ('one',)

    def test_concurrent_appends(self):
        recorder = DiagnosticsRecorder()

        def worker(n):
            for i in range(100):
                recorder.append_step(f"{n}-{i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(recorder.finalize().processing_steps) == 400


class TestDataCollection:
    """Test the retrieval result type."""

    def test_clean_collection(self):
        collection = DataCollection(data=pd.DataFrame({'a': [1, 2]}))

        assert collection.status == 'complete'
        assert not collection.has_warnings

    def test_collection_with_warnings(self):
        collection = DataCollection(data=pd.DataFrame({'a': [1]}), warnings=('mapping skipped',))

        assert collection.status == 'with_caveats'
        assert collection.has_warnings
        assert 'Warning: mapping skipped' in collection.summary()

    def test_summary_counts_downloads(self):
        collection = DataCollection(
            data=pd.DataFrame({'a': [1, 2, 3]}),
            download_diagnostics=(make_record('downloaded', 10), make_record('cached', 5)),
            processing_steps=('one', 'two')
        )

        summary = collection.summary()

        assert '3 rows x 1 columns' in summary
        assert '1 downloaded, 1 from cache, 15 bytes' in summary
        assert 'Processing steps: 2' in summary


class TestTableSource:
    """Test unwrapping the two table source cases."""

    def test_pass_through(self):
        frame = pd.DataFrame({'code': ['01']})

        table = unwrap_table(PassThroughTable(frame))

        pd.testing.assert_frame_equal(table, frame)
        assert table is not frame

    def test_fetched(self):
        frame = pd.DataFrame({'code': ['01']})

        table = unwrap_table(FetchedTable(DataCollection(data=frame)))

        pd.testing.assert_frame_equal(table, frame)
        assert table is not frame

    def test_other_types_rejected(self):
        with pytest.raises(TypeError):
            unwrap_table(pd.DataFrame())

    def test_mapping_source_needs_retrieval(self):
        remote = MappingSource('area', RemoteFileDescriptor(url='https://example.gov/cu.area', cache_key='cu.area'))
        local = MappingSource('area', PassThroughTable(pd.DataFrame()))

        assert remote.needs_retrieval
        assert not local.needs_retrieval


class TestMappingTable:
    """Test mapping table defaults."""

    def test_default_presentation_columns(self):
        mapping = MappingTable('area', pd.DataFrame())

        assert mapping.presentation_only == frozenset({'display_level', 'sort_sequence'})

    def test_presentation_columns_become_frozenset(self):
        mapping = MappingTable('area', pd.DataFrame(), ['selectable'])

        assert mapping.presentation_only == frozenset({'selectable'})


class TestRemoteFileDescriptor:
    """Test descriptor validation."""

    def test_defaults(self):
        descriptor = RemoteFileDescriptor(url='https://example.gov/cu.area', cache_key='cu.area')

        assert descriptor.expected_format is FileFormat.DELIMITED_TEXT
        assert descriptor.sheet_name is None

    def test_format_from_string(self):
        descriptor = RemoteFileDescriptor(
            url='https://example.gov/codes.xlsx', cache_key='codes', expected_format='spreadsheet'
        )

        assert descriptor.expected_format is FileFormat.SPREADSHEET
