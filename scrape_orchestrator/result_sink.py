"""
Result Sink Module

Persists task results keyed by task id plus a timestamp, with gzip
compression for large payloads and export to JSON, CSV or Excel.
"""

import gzip
import json
import logging
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Dict, Any

import pandas as pd


class ResultSink(ABC):
    """Where finished task results are handed off."""

    @abstractmethod
    def save_results(self, task_id: str, items: List[Dict[str, Any]]) -> str:
        """Persist items for a task and return the storage location."""

    @abstractmethod
    def get_results(self, task_id: str) -> Optional[List[Dict[str, Any]]]:
        """Latest persisted items for a task, or None."""

    def export_results(self, task_id: str, format: str = "json", output_path: Optional[str] = None) -> str:
        """Write the latest items of a task in another format and return the path."""
        raise NotImplementedError(f"{self.__class__.__name__} does not export results")


@dataclass
class SinkConfig:
    """Configuration for the file result sink."""
    base_directory: str = "data/results"
    compression_enabled: bool = True
    compression_threshold: int = 1024 * 1024  # bytes
    export_directory: str = "exports"


class FileResultSink(ResultSink):
    """
    File-based result sink.

    Layout: ``<base>/<task_id>/<timestamp>.json`` or ``.json.gz`` when the
    serialized payload exceeds the compression threshold.
    """

    def __init__(self, config: Optional[SinkConfig] = None):
        self.config = config or SinkConfig()
        self.logger = logging.getLogger(f"{__name__}.FileResultSink")

        self.base_path = Path(self.config.base_directory)
        self.base_path.mkdir(parents=True, exist_ok=True)

        self.stats = {
            'total_saves': 0,
            'total_loads': 0,
            'compressed_files': 0,
            'exports': 0,
            'errors': 0
        }

    def _task_directory(self, task_id: str) -> Path:
        return self.base_path / task_id

    def _serialize(self, items: List[Dict[str, Any]]) -> bytes:
        return json.dumps(items, default=str, indent=2, ensure_ascii=False).encode('utf-8')

    def _atomic_write(self, file_path: Path, data: bytes) -> None:
        """Write data atomically using temporary file."""
        temp_file = file_path.with_suffix(file_path.suffix + '.tmp')
        try:
            with open(temp_file, 'wb') as f:
                f.write(data)
            temp_file.replace(file_path)
        except Exception:
            if temp_file.exists():
                temp_file.unlink()
            raise

    def save_results(self, task_id: str, items: List[Dict[str, Any]]) -> str:
        """
        Save a task's items under a new timestamped file.

        Args:
            task_id: Owning task
            items: Extracted items

        Returns:
            Path to the saved file
        """
        directory = self._task_directory(task_id)
        directory.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%dT%H%M%S%f")
        data = self._serialize(items)

        if self.config.compression_enabled and len(data) >= self.config.compression_threshold:
            file_path = directory / f"{timestamp}.json.gz"
            data = gzip.compress(data)
            self.stats['compressed_files'] += 1
        else:
            file_path = directory / f"{timestamp}.json"

        try:
            self._atomic_write(file_path, data)
        except Exception as e:
            self.stats['errors'] += 1
            self.logger.error(f"Failed to save results for task {task_id}: {e}")
            raise

        self.stats['total_saves'] += 1
        self.logger.info(f"Saved {len(items)} items for task {task_id} to {file_path}")
        return str(file_path)

    def _result_files(self, task_id: str) -> List[Path]:
        directory = self._task_directory(task_id)
        if not directory.exists():
            return []
        files = [p for p in directory.iterdir() if p.name.endswith('.json') or p.name.endswith('.json.gz')]
        return sorted(files, key=lambda p: p.name)

    def _load_file(self, file_path: Path) -> List[Dict[str, Any]]:
        raw = file_path.read_bytes()
        if file_path.name.endswith('.gz'):
            raw = gzip.decompress(raw)
        self.stats['total_loads'] += 1
        return json.loads(raw.decode('utf-8'))

    def get_results(self, task_id: str) -> Optional[List[Dict[str, Any]]]:
        files = self._result_files(task_id)
        if not files:
            return None
        return self._load_file(files[-1])

    def get_results_history(self, task_id: str) -> List[Dict[str, Any]]:
        """One summary entry per saved run, oldest first."""
        history = []
        for file_path in self._result_files(task_id):
            history.append({
                'file': str(file_path),
                'timestamp': file_path.name.split('.')[0],
                'size': file_path.stat().st_size,
                'compressed': file_path.name.endswith('.gz')
            })
        return history

    def remove_results(self, task_id: str) -> bool:
        directory = self._task_directory(task_id)
        if not directory.exists():
            return False
        shutil.rmtree(directory)
        self.logger.info(f"Removed results for task {task_id}")
        return True

    def export_results(self, task_id: str, format: str = "json", output_path: Optional[str] = None) -> str:
        """
        Export the latest results of a task.

        Args:
            task_id: Task to export
            format: 'json', 'csv' or 'xlsx'
            output_path: Destination file (defaults to the export directory)

        Returns:
            Path of the exported file

        Raises:
            ValueError: Unknown format or no results for the task
        """
        if format not in ('json', 'csv', 'xlsx'):
            raise ValueError(f"Unsupported export format: {format}")

        items = self.get_results(task_id)
        if items is None:
            raise ValueError(f"No results stored for task {task_id}")

        if output_path is None:
            export_dir = Path(self.config.export_directory)
            export_dir.mkdir(parents=True, exist_ok=True)
            output_path = str(export_dir / f"{task_id}.{format}")

        df = pd.DataFrame(items)
        if format == "json":
            df.to_json(output_path, orient="records", indent=2, force_ascii=False)
        elif format == "csv":
            df.to_csv(output_path, index=False, encoding='utf-8')
        else:
            df.to_excel(output_path, index=False, engine='openpyxl')

        self.stats['exports'] += 1
        self.logger.info(f"Exported {len(items)} items for task {task_id} to {output_path}")
        return output_path

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)


def create_result_sink(base_directory: str = "data/results") -> FileResultSink:
    """Create a file result sink rooted at a directory."""
    return FileResultSink(SinkConfig(base_directory=base_directory))
