"""
Task State Machine Module

Owns a task's lifecycle transitions, progress accounting and the cooperative
pause/stop checkpoints polled by execution strategies.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Any

from .config import TaskState
from .exceptions import AlreadyRunning, CancellationRequested, OrchestratorError
from .models import ErrorLogEntry, Task


MAX_RUNNING_PROGRESS = 99.9

TRANSITIONS: Dict[TaskState, FrozenSet[TaskState]] = {
    TaskState.IDLE: frozenset({TaskState.RUNNING}),
    TaskState.RUNNING: frozenset({TaskState.PAUSED, TaskState.IDLE, TaskState.COMPLETED, TaskState.FAILED}),
    TaskState.PAUSED: frozenset({TaskState.RUNNING, TaskState.IDLE, TaskState.FAILED}),
    TaskState.COMPLETED: frozenset({TaskState.RUNNING}),
    TaskState.FAILED: frozenset({TaskState.RUNNING}),
}


class TaskStateMachine:
    """
    Drives one task through idle, running, paused, completed and failed.

    Progress never reaches 100 before ``complete()``.
    """

    def __init__(self, task: Task, progress_horizon: float = 600.0,
                 clock: Callable[[], float] = time.monotonic):
        self.task = task
        self.progress_horizon = progress_horizon
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._started_at: float = 0.0
        self._resume_event = asyncio.Event()
        self._resume_event.set()

    @property
    def state(self) -> TaskState:
        return self.task.status.state

    @property
    def is_active(self) -> bool:
        return self.state in (TaskState.RUNNING, TaskState.PAUSED)

    def _transition(self, target: TaskState) -> None:
        current = self.state
        if target not in TRANSITIONS[current]:
            raise OrchestratorError(
                f"Invalid transition for task {self.task.id}: {current.value} -> {target.value}",
                {'task_id': self.task.id, 'from': current.value, 'to': target.value}
            )
        self.task.status.state = target
        self.logger.debug(f"Task {self.task.id}: {current.value} -> {target.value}")

    # Transitions

    def start(self) -> None:
        """
        Move to running, resetting timestamps, counters and flags.

        Raises:
            AlreadyRunning: If the task is running or paused
        """
        if self.is_active:
            raise AlreadyRunning(self.task.id, self.state.value)

        self._transition(TaskState.RUNNING)
        status = self.task.status
        status.start_time = datetime.now()
        status.end_time = None
        status.progress = 0.0
        status.items_processed = 0
        status.last_error = None
        self.task.results = []
        self.task.errors = []
        self.task.stop_requested = False
        self.task.pause_requested = False
        self._resume_event.set()
        self._started_at = self.clock()

    def pause(self) -> bool:
        """Request a pause; returns False when the task is not running."""
        if self.state != TaskState.RUNNING:
            return False
        self.task.pause_requested = True
        self._resume_event.clear()
        self._transition(TaskState.PAUSED)
        return True

    def resume(self) -> bool:
        """Resume a paused task; returns False when the task is not paused."""
        if self.state != TaskState.PAUSED:
            return False
        self.task.pause_requested = False
        self._transition(TaskState.RUNNING)
        self._resume_event.set()
        return True

    def request_stop(self) -> bool:
        """Flag a running or paused task for cancellation."""
        if not self.is_active:
            return False
        self.task.stop_requested = True
        # wake a paused checkpoint so it can observe the stop
        self._resume_event.set()
        return True

    def mark_stopped(self) -> None:
        """Return a stopped task to idle. Not a failure."""
        if not self.is_active:
            return
        self._transition(TaskState.IDLE)
        self.task.status.end_time = datetime.now()
        self.task.pause_requested = False

    def complete(self, items: List[Dict[str, Any]]) -> None:
        """Finish successfully with the collected items."""
        if self.state == TaskState.PAUSED:
            self.resume()
        self._transition(TaskState.COMPLETED)
        status = self.task.status
        self.task.results = list(items)
        status.items_processed = len(self.task.results)
        status.progress = 100.0
        status.end_time = datetime.now()

    def fail(self, error: str) -> None:
        """Finish with a failure, recording the human-readable reason."""
        self._transition(TaskState.FAILED)
        status = self.task.status
        status.last_error = error or "unknown error"
        status.end_time = datetime.now()

    # Progress

    def record_items(self, count: int) -> None:
        """Account for newly processed items."""
        if count <= 0:
            return
        self.task.status.items_processed += count
        self.update_progress()

    def update_progress(self) -> float:
        """
        Refresh the progress estimate.

        Item-based when a total is declared, time-based otherwise. Both are
        monotonic and capped below 100 while the task is active.
        """
        status = self.task.status
        if not self.is_active:
            return status.progress

        if status.items_total:
            estimate = status.items_processed / status.items_total * 100
        else:
            elapsed = self.clock() - self._started_at
            estimate = elapsed / self.progress_horizon * 100 if self.progress_horizon > 0 else 0.0

        status.progress = max(status.progress, min(estimate, MAX_RUNNING_PROGRESS))
        return status.progress

    def record_error(self, message: str, method: str = None) -> ErrorLogEntry:
        entry = ErrorLogEntry(message=message, method=method)
        self.task.errors.append(entry)
        return entry

    # Checkpoints

    async def checkpoint(self) -> None:
        """
        Suspension point polled between actions.

        Blocks while paused and raises CancellationRequested once a stop has
        been requested.
        """
        if self.task.stop_requested:
            raise CancellationRequested(self.task.id)

        while self.task.pause_requested and not self.task.stop_requested:
            await self._resume_event.wait()

        if self.task.stop_requested:
            raise CancellationRequested(self.task.id)
