"""
Custom Exception Classes for Task Orchestration

This module defines the exception hierarchy raised by the orchestrator,
the resource pools, the session lease manager and the execution strategies.
"""

import asyncio
from typing import Optional, Dict, Any, List, Tuple


class OrchestratorError(Exception):
    """Base exception class for orchestrator errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(OrchestratorError):
    """Exception raised for malformed task options."""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.field = field
        super().__init__(message, details)


class ConfigurationError(OrchestratorError):
    """Exception raised for configuration-related errors."""
    pass


class TaskNotFound(OrchestratorError):
    """Exception raised when a task id is unknown."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found", {'task_id': task_id})


class AlreadyRunning(OrchestratorError):
    """Exception raised when starting a task that is already running or paused."""

    def __init__(self, task_id: str, state: str):
        self.task_id = task_id
        self.state = state
        super().__init__(f"Task {task_id} is already {state}", {'task_id': task_id, 'state': state})


class ConcurrencyLimitExceeded(OrchestratorError):
    """Exception raised when the global concurrency cap is saturated."""

    def __init__(self, limit: int, active: int):
        self.limit = limit
        self.active = active
        super().__init__(
            f"Concurrent task limit reached ({limit}). Currently have {active} active tasks.",
            {'limit': limit, 'active': active}
        )


class ResourceUnavailable(OrchestratorError):
    """Exception raised when a pooled resource cannot be leased."""

    def __init__(self, message: str, resource: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.resource = resource
        super().__init__(message, details)


class IdentityUnavailable(ResourceUnavailable):
    """Exception raised when no identity matches and the factory is exhausted."""

    def __init__(self, message: str, criteria: Optional[Dict[str, Any]] = None):
        self.criteria = criteria or {}
        super().__init__(message, resource="identity", details={'criteria': self.criteria})


class SessionError(OrchestratorError):
    """Exception raised for session-related errors."""

    def __init__(self, message: str, session_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.session_id = session_id
        super().__init__(message, details)


class SessionCreationError(SessionError):
    """Exception raised when the browser provider cannot open a session."""
    pass


class ActionError(SessionError):
    """Exception raised when a browser action fails."""

    def __init__(self, message: str, action: Optional[str] = None, session_id: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.action = action
        super().__init__(message, session_id, details)


class AttemptFailure(OrchestratorError):
    """Exception raised when a single execution method fails."""

    def __init__(self, method: str, reason: str, cause: Optional[BaseException] = None):
        self.method = method
        self.reason = reason
        self.cause = cause
        super().__init__(f"{method} failed: {reason}", {'method': method, 'reason': reason})


class AllMethodsExhausted(OrchestratorError):
    """Exception raised when every method of a fallback cascade failed."""

    def __init__(self, task_id: str, failures: List[Tuple[str, str]]):
        self.task_id = task_id
        self.failures = list(failures)
        summary = "; ".join(f"{method}: {reason}" for method, reason in self.failures)
        super().__init__(
            f"All methods failed for task {task_id}: {summary}",
            {'task_id': task_id, 'failures': [{'method': m, 'reason': r} for m, r in self.failures]}
        )


class CancellationRequested(OrchestratorError):
    """Raised at a suspension point after a stop was requested. Not a failure."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Stop requested for task {task_id}", {'task_id': task_id})


# Error classification helpers
def classify_error(error: BaseException) -> str:
    """Classify an error based on its type."""
    if isinstance(error, CancellationRequested):
        return "cancelled"
    elif isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    elif isinstance(error, ResourceUnavailable):
        return "resource"
    elif isinstance(error, SessionError):
        return "session"
    elif isinstance(error, AttemptFailure):
        return "attempt"
    elif isinstance(error, AllMethodsExhausted):
        return "exhausted"
    elif isinstance(error, ValidationError):
        return "validation"
    else:
        return "unknown"


def describe_error(error: BaseException) -> str:
    """Human-readable reason for an error, never empty."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)) and not str(error):
        return "timeout"
    text = str(error)
    return text if text else error.__class__.__name__
