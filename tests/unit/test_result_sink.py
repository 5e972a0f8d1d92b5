"""
Unit tests for the file result sink.
"""

import pytest
import json
import gzip
from datetime import datetime

import pandas as pd

from scrape_orchestrator.result_sink import FileResultSink, SinkConfig, create_result_sink


ITEMS = [
    {'name': 'alpha', 'price': 1.5},
    {'name': 'beta', 'price': 2.25},
]


@pytest.fixture
def sink(tmp_path):
    return FileResultSink(SinkConfig(
        base_directory=str(tmp_path / "results"),
        export_directory=str(tmp_path / "exports")
    ))


class TestSaveAndLoad:
    """Test persistence of results."""

    def test_save_and_get_latest(self, sink):
        path = sink.save_results("task-1", ITEMS)

        assert path.endswith(".json")
        assert sink.get_results("task-1") == ITEMS
        assert sink.get_stats()['total_saves'] == 1

    def test_unknown_task_has_no_results(self, sink):
        assert sink.get_results("missing") is None
        assert sink.get_results_history("missing") == []

    def test_latest_run_wins(self, sink):
        sink.save_results("task-1", ITEMS)
        sink.save_results("task-1", [{'name': 'gamma'}])

        assert sink.get_results("task-1") == [{'name': 'gamma'}]
        history = sink.get_results_history("task-1")
        assert len(history) == 2
        assert history[0]['timestamp'] < history[1]['timestamp']

    def test_large_payload_is_compressed(self, tmp_path):
        sink = FileResultSink(SinkConfig(base_directory=str(tmp_path / "results"), compression_threshold=10))

        path = sink.save_results("task-1", ITEMS)

        assert path.endswith(".json.gz")
        with gzip.open(path, 'rt', encoding='utf-8') as f:
            assert json.load(f) == ITEMS
        assert sink.get_results("task-1") == ITEMS
        assert sink.get_results_history("task-1")[0]['compressed'] is True

    def test_compression_can_be_disabled(self, tmp_path):
        sink = FileResultSink(SinkConfig(base_directory=str(tmp_path / "results"),
                                         compression_enabled=False, compression_threshold=10))

        assert sink.save_results("task-1", ITEMS).endswith(".json")

    def test_non_json_values_are_stringified(self, sink):
        sink.save_results("task-1", [{'seen': datetime(2024, 1, 2, 3, 4, 5)}])

        assert sink.get_results("task-1") == [{'seen': '2024-01-02 03:04:05'}]

    def test_remove_results(self, sink):
        sink.save_results("task-1", ITEMS)

        assert sink.remove_results("task-1") is True
        assert sink.get_results("task-1") is None
        assert sink.remove_results("task-1") is False


class TestExport:
    """Test exporting the latest results."""

    def test_export_json_to_default_directory(self, sink, tmp_path):
        sink.save_results("task-1", ITEMS)

        path = sink.export_results("task-1", "json")

        assert path == str(tmp_path / "exports" / "task-1.json")
        with open(path, encoding='utf-8') as f:
            assert json.load(f) == ITEMS

    def test_export_csv(self, sink, tmp_path):
        sink.save_results("task-1", ITEMS)
        output = tmp_path / "out.csv"

        sink.export_results("task-1", "csv", str(output))

        frame = pd.read_csv(output)
        assert list(frame.columns) == ['name', 'price']
        assert frame['name'].tolist() == ['alpha', 'beta']

    def test_export_xlsx(self, sink, tmp_path):
        sink.save_results("task-1", ITEMS)
        output = tmp_path / "out.xlsx"

        sink.export_results("task-1", "xlsx", str(output))

        frame = pd.read_excel(output, engine='openpyxl')
        assert frame['price'].tolist() == [1.5, 2.25]
        assert sink.get_stats()['exports'] == 1

    def test_export_rejects_unknown_format(self, sink):
        sink.save_results("task-1", ITEMS)

        with pytest.raises(ValueError, match="Unsupported export format"):
            sink.export_results("task-1", "parquet")

    def test_export_without_results(self, sink):
        with pytest.raises(ValueError, match="No results stored"):
            sink.export_results("missing", "json")


def test_create_result_sink(tmp_path):
    sink = create_result_sink(str(tmp_path / "store"))

    assert (tmp_path / "store").is_dir()
    assert sink.get_results("anything") is None
