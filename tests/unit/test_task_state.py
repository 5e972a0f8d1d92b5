"""
Unit tests for the task state machine.
"""

import pytest
import asyncio

from scrape_orchestrator.config import ScrapingMethod, TaskState
from scrape_orchestrator.exceptions import AlreadyRunning, CancellationRequested, OrchestratorError
from scrape_orchestrator.models import Task, parse_task_options
from scrape_orchestrator.task_state import MAX_RUNNING_PROGRESS, TaskStateMachine


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def make_machine(items_total=None, horizon=100.0):
    options = {'name': 'State test', 'target_url': 'https://example.com'}
    if items_total:
        options['items_total'] = items_total
    task = Task.create(parse_task_options(options), ScrapingMethod.BROWSER_AUTOMATION)
    clock = FakeClock()
    return TaskStateMachine(task, progress_horizon=horizon, clock=clock), clock


class TestTransitions:
    """Test lifecycle transitions."""

    def test_start_resets_run_state(self):
        machine, _ = make_machine()
        machine.task.results = [{'old': True}]
        machine.task.status.last_error = "previous failure"

        machine.start()

        status = machine.task.status
        assert status.state == TaskState.RUNNING
        assert status.start_time is not None
        assert status.progress == 0.0
        assert status.last_error is None
        assert machine.task.results == []

    def test_start_while_running_raises(self):
        machine, _ = make_machine()
        machine.start()

        with pytest.raises(AlreadyRunning):
            machine.start()

        machine.pause()
        with pytest.raises(AlreadyRunning):
            machine.start()

    def test_pause_and_resume(self):
        machine, _ = make_machine()
        assert machine.pause() is False

        machine.start()
        assert machine.pause() is True
        assert machine.state == TaskState.PAUSED
        assert machine.pause() is False
        assert machine.resume() is True
        assert machine.state == TaskState.RUNNING
        assert machine.resume() is False

    def test_stop_returns_to_idle(self):
        machine, _ = make_machine()
        assert machine.request_stop() is False

        machine.start()
        assert machine.request_stop() is True
        machine.mark_stopped()

        assert machine.state == TaskState.IDLE
        assert machine.task.status.end_time is not None

    def test_complete_sets_results_and_full_progress(self):
        machine, _ = make_machine()
        machine.start()

        machine.complete([{'a': 1}, {'a': 2}])

        status = machine.task.status
        assert status.state == TaskState.COMPLETED
        assert status.progress == 100.0
        assert status.items_processed == 2
        assert machine.task.results == [{'a': 1}, {'a': 2}]

    def test_complete_from_paused(self):
        machine, _ = make_machine()
        machine.start()
        machine.pause()

        machine.complete([])

        assert machine.state == TaskState.COMPLETED

    def test_fail_records_reason(self):
        machine, _ = make_machine()
        machine.start()

        machine.fail("browser-automation failed: timeout")

        assert machine.state == TaskState.FAILED
        assert machine.task.status.last_error == "browser-automation failed: timeout"

    def test_invalid_transition_raises(self):
        machine, _ = make_machine()

        with pytest.raises(OrchestratorError, match="Invalid transition"):
            machine.complete([])

    def test_restart_after_completion(self):
        machine, _ = make_machine()
        machine.start()
        machine.complete([{'a': 1}])

        machine.start()

        assert machine.state == TaskState.RUNNING
        assert machine.task.status.progress == 0.0


class TestProgress:
    """Test progress accounting."""

    def test_time_based_progress_is_monotonic_and_capped(self):
        machine, clock = make_machine(horizon=100.0)
        machine.start()
        seen = []

        for now in (10.0, 50.0, 40.0, 250.0, 1000.0):
            clock.now = now
            seen.append(machine.update_progress())

        assert seen == sorted(seen)
        assert seen[1] == pytest.approx(50.0)
        assert seen[2] == pytest.approx(50.0)
        assert seen[-1] == MAX_RUNNING_PROGRESS

    def test_item_based_progress(self):
        machine, _ = make_machine(items_total=4)
        machine.start()

        machine.record_items(1)
        assert machine.task.status.progress == pytest.approx(25.0)

        machine.record_items(10)
        assert machine.task.status.progress == MAX_RUNNING_PROGRESS

    def test_progress_frozen_when_inactive(self):
        machine, clock = make_machine()
        machine.start()
        machine.fail("boom")
        before = machine.task.status.progress

        clock.now = 10_000.0

        assert machine.update_progress() == before


class TestCheckpoint:
    """Test cooperative pause/stop checkpoints."""

    @pytest.mark.asyncio
    async def test_checkpoint_passes_while_running(self):
        machine, _ = make_machine()
        machine.start()

        assert await machine.checkpoint() is True

    @pytest.mark.asyncio
    async def test_checkpoint_raises_after_stop(self):
        machine, _ = make_machine()
        machine.start()
        machine.request_stop()

        with pytest.raises(CancellationRequested):
            await machine.checkpoint()

    @pytest.mark.asyncio
    async def test_checkpoint_blocks_while_paused(self):
        machine, _ = make_machine()
        machine.start()
        machine.pause()

        waiter = asyncio.create_task(machine.checkpoint())
        await asyncio.sleep(0.01)
        assert not waiter.done()

        machine.resume()
        assert await asyncio.wait_for(waiter, timeout=1.0) is True

    @pytest.mark.asyncio
    async def test_stop_wakes_paused_checkpoint(self):
        machine, _ = make_machine()
        machine.start()
        machine.pause()

        waiter = asyncio.create_task(machine.checkpoint())
        await asyncio.sleep(0.01)
        machine.request_stop()

        with pytest.raises(CancellationRequested):
            await asyncio.wait_for(waiter, timeout=1.0)
