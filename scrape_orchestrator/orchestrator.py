"""
Scrape Orchestrator

Entry point tying the pools, the session lease manager, the fallback engine
and the task state machine together. Enforces the global concurrency cap
and exposes the task lifecycle operations.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Dict, Any, Callable

from .browser_provider import BrowserSessionProvider
from .config import BehaviorSettings, OrchestratorConfig, ScrapingMethod
from .exceptions import (
    AllMethodsExhausted, AlreadyRunning, AttemptFailure, CancellationRequested, ConcurrencyLimitExceeded,
    ConfigurationError, TaskNotFound, ValidationError, describe_error
)
from .identity_pool import IdentityPool
from .method_engine import FallbackEngine, resolve_method
from .models import StatusRecord, Task, TaskOptions, parse_task_options
from .proxy_pool import ProxyPool
from .result_sink import FileResultSink, ResultSink, SinkConfig
from .robots import RobotsPolicy
from .session_lease import Session, SessionEvent, SessionEventType, SessionLeaseManager
from .strategies import ExecutionContext, ExecutionStrategy, default_strategies
from .task_state import TaskStateMachine
from .task_store import TaskStore
from .vision import SafeVisionAdvisor, VisionAdvisor


MAX_MEMORY_EVENTS = 1000


class OrchestratorEvent(Enum):
    """Lifecycle notifications published to subscribers."""
    TASK_CREATED = "task-created"
    TASK_STARTED = "task-started"
    TASK_PAUSED = "task-paused"
    TASK_RESUMED = "task-resumed"
    TASK_COMPLETED = "task-completed"
    TASK_FAILED = "task-failed"
    TASK_STOPPED = "task-stopped"
    TASK_REMOVED = "task-removed"
    METHOD_CHANGED = "method-changed"
    ANTI_BOT_DETECTED = "anti-bot-detected"
    CAPTCHA_ENCOUNTERED = "captcha-encountered"


SESSION_EVENT_MAP = {
    SessionEventType.BOT_DETECTION: OrchestratorEvent.ANTI_BOT_DETECTED,
    SessionEventType.CAPTCHA_DETECTED: OrchestratorEvent.CAPTCHA_ENCOUNTERED,
}


@dataclass
class TaskRuntime:
    """Per-task execution bookkeeping."""
    task: Task
    machine: TaskStateMachine
    runner: Optional[asyncio.Task] = None
    session: Optional[Session] = None
    ran: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event)


EventListener = Callable[[Dict[str, Any]], None]


class ScrapeOrchestrator:
    """Creates, runs and supervises scraping tasks."""

    def __init__(self,
                 config: Optional[OrchestratorConfig] = None,
                 provider: Optional[BrowserSessionProvider] = None,
                 identity_pool: Optional[IdentityPool] = None,
                 proxy_pool: Optional[ProxyPool] = None,
                 vision_advisor: Optional[VisionAdvisor] = None,
                 result_sink: Optional[ResultSink] = None,
                 task_store: Optional[TaskStore] = None,
                 strategies: Optional[Dict[ScrapingMethod, ExecutionStrategy]] = None,
                 robots_policy: Optional[RobotsPolicy] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the orchestrator.

        Args:
            config: Global configuration (defaults to environment-derived config)
            provider: Browser session provider for browser-based methods
            identity_pool: Shared identity pool
            proxy_pool: Shared proxy pool
            vision_advisor: Optional screenshot advisor
            result_sink: Where finished results are persisted
            task_store: Where task definitions are persisted
            strategies: Strategy per method (defaults to the built-in strategies)
            robots_policy: robots.txt cache consulted when a task respects robots.txt
            rng: Random generator for human-like delays
            clock: Monotonic clock used for progress estimates
        """
        self.config = config or OrchestratorConfig.from_env()
        self.logger = logging.getLogger(__name__)
        self.clock = clock
        self.rng = rng or random.Random()

        data_dir = Path(self.config.data_directory)
        self.identity_pool = identity_pool or IdentityPool()
        self.proxy_pool = proxy_pool or ProxyPool(retest_cooldown=self.config.proxy_retest_cooldown)
        self.result_sink = result_sink or FileResultSink(SinkConfig(
            base_directory=str(data_dir / "results"),
            export_directory=str(data_dir / "exports")
        ))
        self.task_store = task_store or TaskStore(str(data_dir / "tasks.json"))
        self.vision = SafeVisionAdvisor(vision_advisor, timeout=self.config.network_timeout)
        self.robots = robots_policy or RobotsPolicy(timeout=self.config.network_timeout)
        self.provider = provider

        self.lease_manager = SessionLeaseManager(
            self.identity_pool, self.proxy_pool, provider,
            navigation_timeout=self.config.navigation_timeout
        )
        self.lease_manager.subscribe(self._on_session_event)

        self.engine = FallbackEngine(
            self.lease_manager,
            strategies or default_strategies(),
            self._context_for,
            on_method_changed=self._on_method_changed,
            on_session_changed=self._on_session_changed
        )

        self.tasks: Dict[str, TaskRuntime] = {}
        self.active_count = 0
        self.memory_events: List[Dict[str, Any]] = []
        self._listeners: List[EventListener] = []
        self._progress_task: Optional[asyncio.Task] = None
        self._closed = False

        self.stats = {
            'tasks_created': 0,
            'tasks_started': 0,
            'tasks_completed': 0,
            'tasks_failed': 0,
            'tasks_stopped': 0,
            'rejected_starts': 0
        }

    # Events

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """
        Register a listener for orchestrator events.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _log_event(self, event_type: OrchestratorEvent, task_id: Optional[str] = None,
                   details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Record an event for observability and notify listeners."""
        event = {
            'timestamp': datetime.now().isoformat(),
            'type': event_type.value,
            'task_id': task_id,
            'details': details or {}
        }
        self.memory_events.append(event)
        if len(self.memory_events) > MAX_MEMORY_EVENTS:
            del self.memory_events[:len(self.memory_events) - MAX_MEMORY_EVENTS]

        self.logger.info(f"OrchestratorEvent: {event_type.value} - Task: {task_id}, Details: {details}")
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                self.logger.error(f"Event listener failed for {event_type.value}: {e}")
        return event

    def _on_session_event(self, event: SessionEvent) -> None:
        mapped = SESSION_EVENT_MAP.get(event.type)
        if mapped is not None:
            self._log_event(mapped, event.task_id, {'session_id': event.session_id, **event.details})

    def _on_method_changed(self, task: Task, previous: Optional[ScrapingMethod], current: ScrapingMethod) -> None:
        self._log_event(OrchestratorEvent.METHOD_CHANGED, task.id, {
            'from': previous.value if previous else None,
            'to': current.value
        })

    def _on_session_changed(self, task: Task, session: Optional[Session]) -> None:
        runtime = self.tasks.get(task.id)
        if runtime is not None:
            runtime.session = session
        if session is None:
            task.session_id = None

    def _context_for(self, task: Task, session: Session) -> ExecutionContext:
        runtime = self.tasks[task.id]
        return ExecutionContext(
            task=task,
            session=session,
            lease_manager=self.lease_manager,
            state=runtime.machine,
            behavior=task.behavior or self.config.resolve_behavior(),
            vision=self.vision,
            network_timeout=task.options.timeout or self.config.network_timeout,
            action_timeout=task.options.timeout,
            robots=self.robots,
            rng=self.rng
        )

    # Task lifecycle

    def _require(self, task_id: str) -> TaskRuntime:
        runtime = self.tasks.get(task_id)
        if runtime is None:
            raise TaskNotFound(task_id)
        return runtime

    def _resolve_behavior(self, options: TaskOptions) -> BehaviorSettings:
        try:
            return self.config.resolve_behavior(options.behavior_settings.model_dump(exclude_none=True))
        except ConfigurationError as e:
            raise ValidationError(f"Invalid behavior settings: {e.message}", field="behavior_settings")

    def _register(self, task: Task) -> TaskRuntime:
        runtime = TaskRuntime(
            task=task,
            machine=TaskStateMachine(task, progress_horizon=self.config.progress_horizon, clock=self.clock)
        )
        self.tasks[task.id] = runtime
        return runtime

    def create_task(self, options: Any) -> str:
        """
        Validate options and store a new idle task.

        Returns:
            The new task id

        Raises:
            ValidationError: If the options are malformed
        """
        task_options = parse_task_options(options)
        behavior = self._resolve_behavior(task_options)
        task = Task.create(task_options, resolve_method(task_options, behavior))
        self._register(task)

        try:
            self.task_store.save(task.to_definition())
        except OSError as e:
            self.logger.error(f"Failed to persist task {task.id}: {e}")

        self.stats['tasks_created'] += 1
        self._log_event(OrchestratorEvent.TASK_CREATED, task.id, {
            'name': task.name,
            'target_url': task.target_url,
            'method': task.status.method.value
        })
        return task.id

    async def start_task(self, task_id: str) -> None:
        """
        Start a task. Returns once the task is running; execution continues
        in the background.

        Raises:
            TaskNotFound: Unknown task id
            AlreadyRunning: Task is running or paused
            ConcurrencyLimitExceeded: The global cap is saturated
        """
        runtime = self._require(task_id)
        task = runtime.task

        if runtime.machine.is_active:
            raise AlreadyRunning(task_id, task.state.value)

        if self.active_count >= self.config.max_concurrent_tasks:
            self.stats['rejected_starts'] += 1
            raise ConcurrencyLimitExceeded(self.config.max_concurrent_tasks, self.active_count)

        behavior = self._resolve_behavior(task.options)
        method = resolve_method(task.options, behavior, task.advice)

        # check-and-increment with no suspension point in between
        self.active_count += 1
        runtime.machine.start()
        task.behavior = behavior
        runtime.ran = True
        runtime.done = asyncio.Event()
        task.status.method = method
        task.status.last_run = datetime.now()

        try:
            self.task_store.update_last_run(task.id, task.status.last_run)
        except OSError as e:
            self.logger.error(f"Failed to record last run for task {task.id}: {e}")

        runtime.runner = asyncio.create_task(self._run_task(runtime, method))
        self.stats['tasks_started'] += 1
        self._log_event(OrchestratorEvent.TASK_STARTED, task.id, {'method': method.value})
        self._ensure_progress_loop()

    async def _run_task(self, runtime: TaskRuntime, method: ScrapingMethod) -> None:
        task = runtime.task
        machine = runtime.machine
        try:
            outcome = await self.engine.run(task, method)
            if task.stop_requested:
                raise CancellationRequested(task.id)

            machine.complete(outcome.items)
            self.stats['tasks_completed'] += 1
            self._hand_off_results(task)
            self._log_event(OrchestratorEvent.TASK_COMPLETED, task.id, {
                'method': outcome.method.value,
                'items': task.status.items_processed
            })

        except CancellationRequested:
            self._finish_stopped(runtime)

        except asyncio.CancelledError:
            self._finish_stopped(runtime)
            raise

        except (AttemptFailure, AllMethodsExhausted) as e:
            machine.fail(str(e))
            self.stats['tasks_failed'] += 1
            self._log_event(OrchestratorEvent.TASK_FAILED, task.id, {'error': str(e)})

        except Exception as e:
            self.logger.exception(f"Unexpected error running task {task.id}")
            machine.fail(describe_error(e))
            self.stats['tasks_failed'] += 1
            self._log_event(OrchestratorEvent.TASK_FAILED, task.id, {'error': describe_error(e)})

        finally:
            self.active_count -= 1
            runtime.session = None
            runtime.done.set()

    def _finish_stopped(self, runtime: TaskRuntime) -> None:
        if not runtime.machine.is_active:
            return
        runtime.machine.mark_stopped()
        self.stats['tasks_stopped'] += 1
        self._log_event(OrchestratorEvent.TASK_STOPPED, runtime.task.id)

    def _hand_off_results(self, task: Task) -> None:
        try:
            self.result_sink.save_results(task.id, task.results)
            if task.options.output_format != 'json':
                path = self.result_sink.export_results(task.id, task.options.output_format)
                self.logger.info(f"Exported results of task {task.id} to {path}")
        except Exception as e:
            self.logger.error(f"Failed to hand off results for task {task.id}: {e}")

    def pause_task(self, task_id: str) -> bool:
        """Pause a running task at its next checkpoint."""
        runtime = self._require(task_id)
        if not runtime.machine.pause():
            self.logger.warning(f"Pause ignored for task {task_id} in state {runtime.task.state.value}")
            return False
        self._log_event(OrchestratorEvent.TASK_PAUSED, task_id)
        return True

    def resume_task(self, task_id: str) -> bool:
        """Resume a paused task."""
        runtime = self._require(task_id)
        if not runtime.machine.resume():
            self.logger.warning(f"Resume ignored for task {task_id} in state {runtime.task.state.value}")
            return False
        self._log_event(OrchestratorEvent.TASK_RESUMED, task_id)
        return True

    async def stop_task(self, task_id: str) -> bool:
        """
        Stop a running or paused task and return it to idle.

        The leased session is closed immediately; the in-flight action is
        left to finish and no further actions start.
        """
        runtime = self._require(task_id)
        if not runtime.machine.request_stop():
            self.logger.warning(f"Stop ignored for task {task_id} in state {runtime.task.state.value}")
            return False

        if runtime.session is not None:
            await self.lease_manager.release_all(runtime.session)

        runner = runtime.runner
        if runner is not None and not runner.done():
            finished, _ = await asyncio.wait({runner}, timeout=self.config.navigation_timeout)
            if not finished:
                self.logger.warning(f"Task {task_id} did not reach a checkpoint in time; cancelling")
                runner.cancel()
                await asyncio.gather(runner, return_exceptions=True)

        self._finish_stopped(runtime)
        return True

    async def remove_task(self, task_id: str) -> bool:
        """Remove a task, stopping it first if it is active."""
        runtime = self.tasks.get(task_id)
        if runtime is None:
            return False

        if runtime.machine.is_active:
            await self.stop_task(task_id)

        del self.tasks[task_id]
        try:
            self.task_store.remove(task_id)
        except OSError as e:
            self.logger.error(f"Failed to remove stored task {task_id}: {e}")

        self._log_event(OrchestratorEvent.TASK_REMOVED, task_id)
        return True

    async def wait_for_task(self, task_id: str, timeout: Optional[float] = None) -> StatusRecord:
        """Wait until a started task leaves running/paused and return its status."""
        runtime = self._require(task_id)
        if runtime.ran and runtime.machine.is_active:
            await asyncio.wait_for(runtime.done.wait(), timeout=timeout)
        return runtime.task.status

    # Queries

    def get_task(self, task_id: str) -> Optional[Task]:
        runtime = self.tasks.get(task_id)
        return runtime.task if runtime else None

    def get_task_status(self, task_id: str) -> Optional[StatusRecord]:
        runtime = self.tasks.get(task_id)
        if runtime is None:
            return None
        runtime.machine.update_progress()
        return runtime.task.status

    def get_task_results(self, task_id: str) -> List[Dict[str, Any]]:
        """
        Results of a task.

        Served from memory when the task ran in this process, otherwise from
        the result sink.
        """
        runtime = self.tasks.get(task_id)
        if runtime is not None and runtime.ran:
            return list(runtime.task.results)
        return self.result_sink.get_results(task_id) or []

    def list_tasks(self) -> List[StatusRecord]:
        return [runtime.task.status for runtime in self.tasks.values()]

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics."""
        by_state: Dict[str, int] = {}
        for runtime in self.tasks.values():
            by_state[runtime.task.state.value] = by_state.get(runtime.task.state.value, 0) + 1
        return {
            **self.stats,
            'active_tasks': self.active_count,
            'max_concurrent_tasks': self.config.max_concurrent_tasks,
            'tasks_by_state': by_state,
            'sessions': self.lease_manager.get_stats(),
            'identities': self.identity_pool.get_stats(),
            'proxies': self.proxy_pool.get_stats()
        }

    # Persistence

    def load_saved_tasks(self) -> int:
        """
        Load persisted task definitions as idle tasks.

        Returns:
            Number of tasks loaded
        """
        loaded = 0
        for definition in self.task_store.load_all():
            task_id = definition.get('id')
            if not task_id or task_id in self.tasks:
                continue
            try:
                options = parse_task_options(definition.get('config') or {})
                behavior = self._resolve_behavior(options)
            except ValidationError as e:
                self.logger.warning(f"Skipping stored task {task_id}: {e}")
                continue

            task = Task.create(options, resolve_method(options, behavior), task_id=task_id)
            if definition.get('created_at'):
                task.created_at = datetime.fromisoformat(definition['created_at'])
            if definition.get('last_run'):
                task.status.last_run = datetime.fromisoformat(definition['last_run'])
            self._register(task)
            loaded += 1

        self.logger.info(f"Loaded {loaded} saved tasks")
        return loaded

    # Background progress refresh

    def _ensure_progress_loop(self) -> None:
        if self._progress_task is None or self._progress_task.done():
            self._progress_task = asyncio.create_task(self._progress_loop())

    async def _progress_loop(self) -> None:
        while not self._closed:
            active = [runtime for runtime in self.tasks.values() if runtime.machine.is_active]
            if not active:
                break
            for runtime in active:
                runtime.machine.update_progress()
            await asyncio.sleep(self.config.progress_interval)

    async def close(self) -> None:
        """Stop every active task and release all resources."""
        for task_id, runtime in list(self.tasks.items()):
            if runtime.machine.is_active:
                await self.stop_task(task_id)

        self._closed = True
        if self._progress_task is not None:
            self._progress_task.cancel()
            await asyncio.gather(self._progress_task, return_exceptions=True)

        await self.lease_manager.close_all()
        await self.proxy_pool.close()
        if self.provider is not None:
            await self.provider.close()
        self.logger.info("Orchestrator closed")


def create_orchestrator(config: Optional[OrchestratorConfig] = None, **kwargs) -> ScrapeOrchestrator:
    """Create an orchestrator instance."""
    return ScrapeOrchestrator(config=config, **kwargs)
