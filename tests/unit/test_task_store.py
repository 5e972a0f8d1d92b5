"""
Unit tests for task definition persistence.
"""

import pytest
from datetime import datetime

from scrape_orchestrator.task_store import TaskStore


def definition(task_id, **extra):
    return {'id': task_id, 'name': f'Task {task_id}', 'config': {'target_url': 'https://example.com'}, **extra}


@pytest.fixture
def store(tmp_path):
    return TaskStore(str(tmp_path / "nested" / "tasks.json"))


class TestTaskStore:
    """Test saving, updating and removing definitions."""

    def test_empty_store(self, store):
        assert store.load_all() == []
        assert store.get("missing") is None

    def test_save_and_get(self, store):
        store.save(definition("a"))

        assert store.get("a")['name'] == 'Task a'
        assert store.file_path.exists()
        assert not store.file_path.with_suffix('.tmp').exists()

    def test_save_replaces_but_keeps_last_run(self, store):
        store.save(definition("a"))
        store.update_last_run("a", datetime(2024, 5, 1, 12, 0, 0))

        store.save(definition("a", name='Renamed'))

        stored = store.get("a")
        assert stored['name'] == 'Renamed'
        assert stored['last_run'] == '2024-05-01T12:00:00'

    def test_update_last_run_for_unknown_task_is_ignored(self, store):
        store.update_last_run("missing")

        assert store.load_all() == []

    def test_remove(self, store):
        store.save(definition("a"))
        store.save(definition("b"))

        assert store.remove("a") is True
        assert store.remove("a") is False
        assert [d['id'] for d in store.load_all()] == ["b"]

    def test_survives_new_instance(self, store):
        store.save(definition("a"))

        reopened = TaskStore(str(store.file_path))

        assert reopened.get("a")['config']['target_url'] == 'https://example.com'

    def test_corrupt_file_reads_as_empty(self, store):
        store.file_path.parent.mkdir(parents=True, exist_ok=True)
        store.file_path.write_text("{not json", encoding='utf-8')

        assert store.load_all() == []
        store.save(definition("a"))
        assert store.get("a") is not None
