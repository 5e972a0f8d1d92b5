"""
Task definition persistence.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Dict, Any


class TaskStore:
    """Keeps task definitions in a single JSON file so they survive restarts."""

    def __init__(self, file_path: str):
        self.file_path = Path(file_path)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.file_path.exists():
            return {}
        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.logger.error(f"Failed to read task store {self.file_path}: {e}")
            return {}

    def _write(self, definitions: Dict[str, Dict[str, Any]]) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.file_path.with_suffix('.tmp')
        with open(temp_file, 'w', encoding='utf-8') as f:
            json.dump(definitions, f, indent=2, ensure_ascii=False)
        temp_file.replace(self.file_path)

    def save(self, definition: Dict[str, Any]) -> None:
        """Insert or replace a task definition, keeping its last_run."""
        with self._lock:
            definitions = self._read()
            previous = definitions.get(definition['id'], {})
            if 'last_run' in previous and 'last_run' not in definition:
                definition = {**definition, 'last_run': previous['last_run']}
            definitions[definition['id']] = definition
            self._write(definitions)

    def update_last_run(self, task_id: str, when: Optional[datetime] = None) -> None:
        with self._lock:
            definitions = self._read()
            if task_id not in definitions:
                return
            definitions[task_id]['last_run'] = (when or datetime.now()).isoformat()
            self._write(definitions)

    def remove(self, task_id: str) -> bool:
        with self._lock:
            definitions = self._read()
            if definitions.pop(task_id, None) is None:
                return False
            self._write(definitions)
            return True

    def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._read().get(task_id)

    def load_all(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._read().values())
