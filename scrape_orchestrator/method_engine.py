"""
Method Selection & Fallback Engine

Resolves which scraping method a task uses and runs the fallback cascade as
an explicit state machine: each attempt leases a fresh session, executes one
strategy and always releases the session before the next attempt.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict, Any, Callable, Tuple

from .config import BehaviorSettings, EvasionLevel, HYBRID_FALLBACK_ORDER, ScrapingMethod
from .exceptions import AllMethodsExhausted, AttemptFailure, CancellationRequested, classify_error, describe_error
from .models import ErrorLogEntry, Task, TaskOptions
from .session_lease import Session, SessionLeaseManager
from .strategies import ExecutionContext, ExecutionStrategy
from .vision import ContextAnalysis


logger = logging.getLogger(__name__)

ADVICE_MIN_CONFIDENCE = 0.7


def resolve_method(options: TaskOptions, behavior: BehaviorSettings,
                   advice: Optional[ContextAnalysis] = None) -> ScrapingMethod:
    """
    Pick the method for a task.

    1. Any visual selector -> visual-scraping.
    2. Evasion level maximum -> hybrid.
    3. Explicit method from the options.
    4. A confident vision advisor suggestion, if one is known.
    5. browser-automation.
    """
    if options.has_visual_selectors():
        return ScrapingMethod.VISUAL_SCRAPING
    if behavior.evasion_level == EvasionLevel.MAXIMUM:
        return ScrapingMethod.HYBRID
    if options.method is not None:
        return options.method
    if advice is not None and advice.confidence >= ADVICE_MIN_CONFIDENCE:
        suggested = advice.suggested_method()
        if suggested is not None:
            logger.info(f"Using advisor-suggested method {suggested.value}: {advice.reason}")
            return suggested
    return ScrapingMethod.BROWSER_AUTOMATION


def fallback_order(method: ScrapingMethod, options: TaskOptions) -> List[ScrapingMethod]:
    """Methods attempted, in order, for a resolved method."""
    if method != ScrapingMethod.HYBRID:
        return [method]
    return list(options.fallback_methods or HYBRID_FALLBACK_ORDER)


class EngineState(Enum):
    """States visited by one task attempt."""
    UNSELECTED = "unselected"
    METHOD_CHOSEN = "method-chosen"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    ATTEMPT_FAILED = "attempt-failed"
    EXHAUSTED = "exhausted"


@dataclass
class EngineOutcome:
    """Items and the method that produced them."""
    items: List[Dict[str, Any]]
    method: ScrapingMethod
    failures: List[Tuple[str, str]] = field(default_factory=list)


ContextFactory = Callable[[Task, Session], ExecutionContext]
MethodListener = Callable[[Task, Optional[ScrapingMethod], ScrapingMethod], None]
SessionListener = Callable[[Task, Optional[Session]], None]


class FallbackEngine:
    """Runs a task's method cascade."""

    def __init__(self, lease_manager: SessionLeaseManager,
                 strategies: Dict[ScrapingMethod, ExecutionStrategy],
                 context_factory: ContextFactory,
                 on_method_changed: Optional[MethodListener] = None,
                 on_session_changed: Optional[SessionListener] = None):
        """
        Initialize the engine.

        Args:
            lease_manager: Leases a session per attempt
            strategies: Strategy per concrete method
            context_factory: Builds the execution context for an attempt
            on_method_changed: Called when the cascade moves to another method
            on_session_changed: Called with the session owned by the current attempt (None when released)
        """
        self.lease_manager = lease_manager
        self.strategies = strategies
        self.context_factory = context_factory
        self.on_method_changed = on_method_changed
        self.on_session_changed = on_session_changed
        self.logger = logging.getLogger(__name__)

    async def run(self, task: Task, method: ScrapingMethod) -> EngineOutcome:
        """
        Execute the cascade for a resolved method.

        Returns:
            EngineOutcome of the first method that succeeded

        Raises:
            AttemptFailure: Single-method task failed
            AllMethodsExhausted: Every method of a hybrid cascade failed
            CancellationRequested: A stop was requested during an attempt
        """
        pending = fallback_order(method, task.options)
        failures: List[Tuple[str, str]] = []
        current: Optional[ScrapingMethod] = None
        state = EngineState.UNSELECTED
        outcome: Optional[EngineOutcome] = None

        while True:
            if state in (EngineState.UNSELECTED, EngineState.ATTEMPT_FAILED):
                if not pending:
                    state = EngineState.EXHAUSTED
                    continue
                previous, current = current, pending.pop(0)
                if previous is not None and self.on_method_changed:
                    self.on_method_changed(task, previous, current)
                state = EngineState.METHOD_CHOSEN

            elif state == EngineState.METHOD_CHOSEN:
                state = EngineState.EXECUTING

            elif state == EngineState.EXECUTING:
                try:
                    items = await self._attempt(task, current)
                except AttemptFailure as failure:
                    failures.append((failure.method, failure.reason))
                    task.errors.append(self._error_entry(failure))
                    task.status.last_error = str(failure)
                    self.logger.warning(f"Task {task.id}: {failure} [{classify_error(failure.cause or failure)}]")
                    if method != ScrapingMethod.HYBRID:
                        raise
                    state = EngineState.ATTEMPT_FAILED
                else:
                    outcome = EngineOutcome(items=items, method=current, failures=failures)
                    state = EngineState.SUCCEEDED

            elif state == EngineState.SUCCEEDED:
                return outcome

            elif state == EngineState.EXHAUSTED:
                raise AllMethodsExhausted(task.id, failures)

    def _error_entry(self, failure: AttemptFailure) -> ErrorLogEntry:
        return ErrorLogEntry(message=failure.reason, method=failure.method)

    async def _attempt(self, task: Task, method: ScrapingMethod) -> List[Dict[str, Any]]:
        """
        Lease, execute and release for one method.

        Any error other than a stop request becomes an AttemptFailure tagged
        with the method.
        """
        strategy = self.strategies.get(method)
        if strategy is None:
            raise AttemptFailure(method.value, "no strategy available")

        # items of an earlier failed attempt are not part of this one
        task.status.items_processed = 0

        session: Optional[Session] = None
        try:
            try:
                session = await self.lease_manager.lease(task, requires_browser=strategy.requires_browser)
            except Exception as e:
                self._raise_if_stopped(task)
                raise AttemptFailure(method.value, f"session lease failed: {describe_error(e)}", e)

            if self.on_session_changed:
                self.on_session_changed(task, session)

            self.logger.info(f"Task {task.id}: executing {method.value}")
            try:
                return await strategy.execute(self.context_factory(task, session))
            except CancellationRequested:
                raise
            except Exception as e:
                self._raise_if_stopped(task)
                raise AttemptFailure(method.value, describe_error(e), e)
        finally:
            if session is not None:
                await self.lease_manager.release_all(session)
                if self.on_session_changed:
                    self.on_session_changed(task, None)

    def _raise_if_stopped(self, task: Task) -> None:
        # errors caused by a stop tearing down the session are not failures
        if task.stop_requested:
            raise CancellationRequested(task.id)
