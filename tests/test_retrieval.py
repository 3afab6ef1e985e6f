"""
End-to-end tests for the retrieval pipeline.

Files are served by the FakeFileServer from test_fetching, so every test can
check exactly how many HEAD and GET requests a retrieval made.
"""

import io
import os
import sys
import threading
import zipfile
from datetime import datetime, timezone

import openpyxl
import pandas as pd
import pytest
import requests

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import Config
from core.exceptions import NetworkError, ParseError
from data_handling.models import DataCollection, FetchedTable, MappingSource, PassThroughTable
from data_handling.retrieval import create_session, load_table, retrieve_collection
from file_handling.cache import FileCache
from file_handling.remote_file import FileFormat, RemoteFileDescriptor
from tests.test_fetching import FakeFileServer

JAN_1 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
FEB_1 = datetime(2024, 2, 1, 12, 0, tzinfo=timezone.utc)

BASE = 'https://example.gov/pub/time.series/cu'
DATA_URL = f'{BASE}/cu.data.0.Current'
AREA_URL = f'{BASE}/cu.area'
ITEM_URL = f'{BASE}/cu.item'

DATA_FILE = (
    b"series_id\tarea_code\titem_code\tvalue\t\n"
    b"CUUR0000SA0\t0000\tSA0\t299.170\t\n"
    b"CUUR0100SAF\t0100\tSAF\t310.500\t\n"
)
AREA_FILE = (
    b"area_code\tarea_name\tdisplay_level\tselectable\tsort_sequence\n"
    b"0000\tU.S. city average\t0\tT\t1\n"
    b"0100\tNortheast\t0\tT\t2\n"
)
ITEM_FILE = (
    b"item_code\titem_name\n"
    b"SA0\tAll items\n"
    b"SAF\tFood\n"
)


@pytest.fixture
def config(tmp_path):
    return Config(str(tmp_path / 'config.toml'))


@pytest.fixture
def cache(tmp_path):
    return FileCache(str(tmp_path / 'cache'))


@pytest.fixture
def server():
    server = FakeFileServer()
    server.publish(DATA_URL, DATA_FILE, JAN_1)
    server.publish(AREA_URL, AREA_FILE, JAN_1)
    server.publish(ITEM_URL, ITEM_FILE, JAN_1)
    return server


def primary():
    return RemoteFileDescriptor(url=DATA_URL, cache_key='cu.data.0.Current')


def area():
    return MappingSource('area', RemoteFileDescriptor(url=AREA_URL, cache_key='cu.area'))


def item():
    return MappingSource('item', RemoteFileDescriptor(url=ITEM_URL, cache_key='cu.item'))


def retrieve(server, cache, config, mappings=(), **kwargs):
    return retrieve_collection(
        primary(), mappings, cache=cache, session=server.session, config=config, **kwargs
    )


class TestRetrieveCollection:
    """Test retrieval of a primary file with its mapping files."""

    def test_merges_mapping_tables(self, server, cache, config):
        collection = retrieve(server, cache, config, [area(), item()])

        assert isinstance(collection, DataCollection)
        assert list(collection.data.columns) == [
            'series_id', 'area_code', 'item_code', 'value', 'area_name', 'selectable', 'item_name'
        ]
        assert collection.data['area_name'].tolist() == ['U.S. city average', 'Northeast']
        assert collection.data['item_name'].tolist() == ['All items', 'Food']
        assert collection.warnings == ()
        assert collection.status == 'complete'

    def test_processing_steps_are_in_deterministic_order(self, server, cache, config):
        collection = retrieve(server, cache, config, [area(), item()])

        assert collection.processing_steps == (
            f"Downloaded 'cu.data.0.Current' from {DATA_URL}",
            "Parsed 'cu.data.0.Current': 2 rows x 4 columns",
            f"Downloaded 'cu.area' from {AREA_URL}",
            "Parsed 'cu.area': 2 rows x 5 columns",
            f"Downloaded 'cu.item' from {ITEM_URL}",
            "Parsed 'cu.item': 2 rows x 2 columns",
            "Merged mapping table 'area' on area_code: 2 matched, 0 unmatched",
            "Merged mapping table 'item' on item_code: 2 matched, 0 unmatched",
        )
        assert [record.cache_key for record in collection.download_diagnostics] == [
            'cu.data.0.Current', 'cu.area', 'cu.item'
        ]

    def test_fresh_cache_makes_no_get_request(self, server, cache, config):
        retrieve(server, cache, config, [area()])
        assert server.get_count == 2

        collection = retrieve(server, cache, config, [area()])

        assert server.get_count == 2
        assert server.head_count == 2
        assert {record.action for record in collection.download_diagnostics} == {'cached'}
        assert collection.data['area_name'].tolist() == ['U.S. city average', 'Northeast']

    def test_stale_cache_fetches_once(self, server, cache, config):
        retrieve(server, cache, config)
        server.publish(DATA_URL, DATA_FILE + b"CUUR0000SAF\t0000\tSAF\t1.0\n", FEB_1)

        collection = retrieve(server, cache, config)

        assert server.get_count == 2
        assert len(collection.data) == 3
        assert collection.download_diagnostics[0].action == 'downloaded'

    def test_primary_network_error_is_raised(self, server, cache, config):
        del server.files[DATA_URL]

        with pytest.raises(NetworkError):
            retrieve(server, cache, config, [area()])

    def test_primary_parse_error_is_raised(self, server, cache, config):
        server.publish(DATA_URL, b"\n\n", JAN_1)

        with pytest.raises(ParseError):
            retrieve(server, cache, config)

    def test_failed_mapping_is_skipped_with_warning(self, server, cache, config):
        server.get_failures[AREA_URL] = requests.ConnectionError("connection refused")

        collection = retrieve(server, cache, config, [area(), item()])

        assert 'area_name' not in collection.data.columns
        assert collection.data['item_name'].tolist() == ['All items', 'Food']
        assert len(collection.warnings) == 1
        assert collection.warnings[0].startswith("Skipping mapping table 'area'")
        assert collection.status == 'with_caveats'

    def test_damaged_spreadsheet_mapping_is_skipped_with_warning(self, server, cache, config):
        workbook = openpyxl.Workbook()
        workbook.active.append(['area_code', 'region'])
        workbook.active.append(['0000', 'National'])
        buffer = io.BytesIO()
        workbook.save(buffer)

        damaged = io.BytesIO()
        with zipfile.ZipFile(io.BytesIO(buffer.getvalue())) as source, zipfile.ZipFile(damaged, 'w') as target:
            for info in source.infolist():
                data = source.read(info.filename)
                if info.filename == 'xl/workbook.xml':
                    data = data[:len(data) // 2]
                target.writestr(info, data)

        url = f'{BASE}/regions.xlsx'
        server.publish(url, damaged.getvalue(), JAN_1)
        regions = MappingSource('regions', RemoteFileDescriptor(
            url=url, cache_key='regions.xlsx', expected_format=FileFormat.SPREADSHEET
        ))

        collection = retrieve(server, cache, config, [area(), regions])

        assert collection.data['area_name'].tolist() == ['U.S. city average', 'Northeast']
        assert 'region' not in collection.data.columns
        assert len(collection.warnings) == 1
        assert collection.warnings[0].startswith("Skipping mapping table 'regions'")

    def test_cached_entry_vanishing_after_check_triggers_download(self, server, cache, config, monkeypatch):
        retrieve(server, cache, config)
        real_get_entry = cache.get_entry
        calls = []

        def get_entry_then_vanish(cache_key):
            calls.append(cache_key)
            return real_get_entry(cache_key) if len(calls) == 1 else None

        monkeypatch.setattr(cache, 'get_entry', get_entry_then_vanish)

        collection = retrieve(server, cache, config)

        assert server.head_count == 1
        assert server.get_count == 2
        assert len(collection.data) == 2
        assert 'downloading again' in collection.warnings[0]

    def test_parser_warnings_reach_the_collection(self, server, cache, config):
        server.publish(ITEM_URL, ITEM_FILE + b"SEHA\tRent\tstray\n", JAN_1)

        collection = retrieve(server, cache, config, [item()])

        assert len(collection.warnings) == 1
        assert collection.warnings[0].startswith('cu.item:')

    def test_cache_write_failure_still_returns_data(self, server, cache, config, monkeypatch):
        def refuse(*args, **kwargs):
            raise OSError("read-only file system")

        monkeypatch.setattr('file_handling.cache.os.replace', refuse)

        collection = retrieve(server, cache, config)

        assert len(collection.data) == 2
        assert len(collection.warnings) == 1
        assert "could not cache" in collection.warnings[0]
        assert collection.download_diagnostics[0].action == 'downloaded'

    def test_diagnostics_disabled(self, server, cache, config):
        server.get_failures[AREA_URL] = requests.ConnectionError("connection refused")

        collection = retrieve(server, cache, config, [area()], diagnostics=False)

        assert len(collection.data) == 2
        assert collection.download_diagnostics == ()
        assert collection.processing_steps == ()
        assert collection.warnings == ()

    def test_pass_through_and_fetched_mappings(self, server, cache, config):
        areas = pd.DataFrame({'area_code': ['0000', '0100'], 'area_name': ['US', 'NE']})
        items = DataCollection(data=pd.DataFrame({'item_code': ['SA0'], 'item_name': ['All items']}))

        collection = retrieve(server, cache, config, [
            MappingSource('area', PassThroughTable(areas)),
            MappingSource('item', FetchedTable(items)),
        ])

        assert collection.data['area_name'].tolist() == ['US', 'NE']
        assert collection.data['item_name'].tolist()[0] == 'All items'
        assert pd.isna(collection.data['item_name'].tolist()[1])
        assert server.get_count == 1

    def test_explicit_presentation_columns(self, server, cache, config):
        custom = MappingSource(
            'area',
            RemoteFileDescriptor(url=AREA_URL, cache_key='cu.area'),
            presentation_only=frozenset({'selectable'})
        )

        collection = retrieve(server, cache, config, [custom])

        assert 'selectable' not in collection.data.columns
        assert 'display_level' in collection.data.columns
        assert 'sort_sequence' in collection.data.columns

    def test_result_owns_its_data(self, server, cache, config):
        source = pd.DataFrame({'area_code': ['0000'], 'area_name': ['US']})

        collection = retrieve(server, cache, config, [MappingSource('area', PassThroughTable(source))])
        collection.data.loc[0, 'area_name'] = 'changed'

        assert source.loc[0, 'area_name'] == 'US'


class TestRetrievalTimeout:
    """Test the caller-supplied timeout of a retrieval."""

    def test_timeout_caps_each_request(self, server, cache, config):
        retrieve(server, cache, config, [area()], timeout=2)

        for _, kwargs in server.session.get.call_args_list:
            assert kwargs['timeout'] == 2

    def test_config_timeout_used_without_caller_timeout(self, server, cache, config):
        retrieve(server, cache, config)

        _, kwargs = server.session.get.call_args
        assert kwargs['timeout'] == config.http.timeout_seconds

    def test_timeout_must_be_positive(self, server, cache, config):
        with pytest.raises(ValueError):
            retrieve(server, cache, config, timeout=0)

    def test_slow_mapping_is_skipped_at_deadline(self, server, cache, config):
        release = threading.Event()
        serve = server.session.get.side_effect

        def slow_get(url, **kwargs):
            if url == AREA_URL:
                release.wait(timeout=10)
            return serve(url, **kwargs)

        server.session.get.side_effect = slow_get
        try:
            collection = retrieve(server, cache, config, [area(), item()], timeout=0.5)
        finally:
            release.set()

        assert 'area_name' not in collection.data.columns
        assert collection.data['item_name'].tolist() == ['All items', 'Food']
        assert len(collection.warnings) == 1
        assert "Skipping mapping table 'area'" in collection.warnings[0]
        assert 'did not finish' in collection.warnings[0]

    def test_slow_primary_raises_network_error(self, server, cache, config):
        release = threading.Event()
        serve = server.session.get.side_effect

        def slow_get(url, **kwargs):
            if url == DATA_URL:
                release.wait(timeout=10)
            return serve(url, **kwargs)

        server.session.get.side_effect = slow_get
        try:
            with pytest.raises(NetworkError):
                retrieve(server, cache, config, timeout=0.5)
        finally:
            release.set()


class TestLoadTable:
    """Test retrieval of a single file."""

    def test_spreadsheet_defaults_come_from_config(self, cache, config):
        workbook = openpyxl.Workbook()
        workbook.active.title = 'Intro'
        workbook.active.append(['Read me'])
        sheet = workbook.create_sheet('Codes')
        sheet.append(['Title row'])
        sheet.append(['state_code', 'state_name'])
        sheet.append(['01', 'Alabama'])
        buffer = io.BytesIO()
        workbook.save(buffer)

        server = FakeFileServer()
        server.publish('https://example.gov/codes.xlsx', buffer.getvalue(), JAN_1)
        config.parse.spreadsheet_sheet = 'Codes'
        config.parse.spreadsheet_header_row = 1
        descriptor = RemoteFileDescriptor(
            url='https://example.gov/codes.xlsx',
            cache_key='codes.xlsx',
            expected_format=FileFormat.SPREADSHEET
        )

        table = load_table(descriptor, cache, server.session, config)

        assert table['state_code'].tolist() == ['01']
        assert table['state_name'].tolist() == ['Alabama']


class TestCreateSession:
    """Test HTTP session setup."""

    def test_user_agent_is_set(self, config):
        config.http.user_agent = 'research-group contact@example.org'

        session = create_session(config)

        assert session.headers['User-Agent'] == 'research-group contact@example.org'
        session.close()
