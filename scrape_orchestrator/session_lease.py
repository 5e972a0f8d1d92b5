"""
Session Lease Manager Module

Binds one identity, one optional proxy and one browser handle into a
Session, drives actions through it, and guarantees that every resource of a
session is released together.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any, Callable, Tuple

from .browser_provider import BrowserSessionProvider, BrowserAction, ActionResult, ActionType, SessionHandle
from .config import BrowserType
from .exceptions import ActionError, SessionError, SessionCreationError, describe_error
from .identity_pool import Identity, IdentityCriteria, IdentityPool
from .models import Task
from .proxy_pool import Proxy, ProxyCriteria, ProxyPool


BOT_DETECTION_STATUSES = (403, 429)


class SessionStatus(Enum):
    """Lifecycle status of a session."""
    INITIALIZING = "initializing"
    READY = "ready"
    RUNNING = "running"
    ERROR = "error"
    CLOSED = "closed"


class SessionEventType(Enum):
    """Typed notifications emitted by sessions."""
    NAVIGATION = "navigation"
    ERROR = "error"
    BOT_DETECTION = "bot-detection"
    CAPTCHA_DETECTED = "captcha-detected"


@dataclass
class SessionEvent:
    """One entry of a session's event log."""
    type: SessionEventType
    session_id: str
    task_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class Session:
    """Live binding of identity, proxy and browser handle."""
    id: str
    task_id: Optional[str] = None
    status: SessionStatus = SessionStatus.INITIALIZING
    identity: Optional[Identity] = None
    proxy: Optional[Proxy] = None
    handle: Optional[SessionHandle] = None
    browser_type: BrowserType = BrowserType.CHROMIUM
    viewport: Tuple[int, int] = (1920, 1080)
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    events: List[SessionEvent] = field(default_factory=list)

    @property
    def is_closed(self) -> bool:
        return self.status == SessionStatus.CLOSED


SessionListener = Callable[[SessionEvent], None]


class SessionLeaseManager:
    """Leases and releases sessions composed from the identity and proxy pools."""

    def __init__(self, identity_pool: IdentityPool, proxy_pool: ProxyPool,
                 provider: Optional[BrowserSessionProvider] = None,
                 navigation_timeout: float = 30.0):
        """
        Initialize the lease manager.

        Args:
            identity_pool: Pool identities are leased from
            proxy_pool: Pool proxies are leased from
            provider: Browser session provider (required for browser methods)
            navigation_timeout: Default timeout for browser actions in seconds
        """
        self.identity_pool = identity_pool
        self.proxy_pool = proxy_pool
        self.provider = provider
        self.navigation_timeout = navigation_timeout
        self.logger = logging.getLogger(__name__)

        self.active_sessions: Dict[str, Session] = {}
        self._listeners: List[SessionListener] = []

        self.stats = {
            'leased': 0,
            'released': 0,
            'lease_failures': 0,
            'actions': 0,
            'action_failures': 0
        }

    # Events

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """
        Register a listener for session events.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, session: Session, event_type: SessionEventType, **details) -> SessionEvent:
        """Record an event on the session and notify listeners."""
        event = SessionEvent(type=event_type, session_id=session.id, task_id=session.task_id, details=details)
        session.events.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                self.logger.error(f"Session listener failed for {event_type.value}: {e}")
        return event

    # Leasing

    async def lease(self, task: Task, requires_browser: bool = True) -> Session:
        """
        Produce a ready session for a task.

        Acquires an identity, then a proxy when the task uses one, then a
        browser handle when the method needs one. Anything already acquired
        is released before an error propagates.

        Args:
            task: Task the session is leased for
            requires_browser: Whether the method drives a browser

        Returns:
            A Session in READY status

        Raises:
            IdentityUnavailable: If no identity can be leased
            SessionCreationError: If the browser provider fails
        """
        options = task.options
        settings = options.browser_settings
        session = Session(
            id=str(uuid.uuid4()),
            task_id=task.id,
            browser_type=settings.browser_type,
            viewport=(settings.viewport_width, settings.viewport_height)
        )
        self.active_sessions[session.id] = session

        try:
            criteria = IdentityCriteria(
                browser_type=settings.browser_type,
                device_type=settings.device_type,
                country=settings.country
            )
            # without user-agent randomization the task keeps its last identity
            fixed_agent = task.behavior is not None and not task.behavior.randomize_user_agent
            session.identity = self.identity_pool.acquire(
                task.id, criteria, sticky=options.sticky_identity or fixed_agent
            )

            if options.use_proxy:
                session.proxy = self.proxy_pool.acquire(session.id, ProxyCriteria(
                    country=options.proxy_country,
                    type=options.proxy_type,
                    pool=options.proxy_pool
                ))
                if session.proxy is None:
                    self.logger.info(f"Session {session.id} proceeding without proxy")

            if requires_browser:
                if self.provider is None:
                    raise SessionCreationError("No browser session provider configured", session_id=session.id)
                proxy_config = self.proxy_pool.browser_proxy_config(session.proxy) if session.proxy else None
                session.handle = await self.provider.open_session(
                    session.identity, proxy_config, session.browser_type, session.viewport
                )
        except BaseException:
            self.stats['lease_failures'] += 1
            await self.release_all(session)
            raise

        session.status = SessionStatus.READY
        session.last_activity = datetime.now()
        task.session_id = session.id
        task.identity_id = session.identity.id if session.identity else None
        task.proxy_id = session.proxy.id if session.proxy else None
        self.stats['leased'] += 1
        self.logger.info(
            f"Leased session {session.id} for task {task.id} "
            f"(identity={session.identity.name}, proxy={session.proxy.url if session.proxy else 'none'})"
        )
        return session

    async def release_all(self, session: Session) -> None:
        """
        Close the browser handle and release proxy and identity.

        Safe to call repeatedly and on partially-constructed sessions.
        """
        already_closed = session.status == SessionStatus.CLOSED
        session.status = SessionStatus.CLOSED

        handle, session.handle = session.handle, None
        if handle is not None and self.provider is not None:
            try:
                await self.provider.close_session(handle)
            except Exception as e:
                self.logger.warning(f"Error closing browser for session {session.id}: {e}")

        # pools were released by the first call
        if already_closed:
            return

        self.proxy_pool.release(session.id)
        if session.identity is not None:
            self.identity_pool.release(session.identity.id, owner=session.task_id)

        self.active_sessions.pop(session.id, None)
        self.stats['released'] += 1
        self.logger.info(f"Released session {session.id}")

    async def close_all(self) -> None:
        """Release every active session."""
        for session in list(self.active_sessions.values()):
            await self.release_all(session)

    # Actions

    async def perform(self, session: Session, action: BrowserAction, timeout: Optional[float] = None) -> ActionResult:
        """
        Run one browser action on a session.

        Raises:
            SessionError: If the session is closed or has no browser
            ActionError: If the action fails or times out
        """
        if session.is_closed:
            raise SessionError(f"Session {session.id} is closed", session_id=session.id)
        if session.handle is None or self.provider is None:
            raise SessionError(f"Session {session.id} has no browser", session_id=session.id)

        timeout = timeout or action.timeout or self.navigation_timeout
        session.status = SessionStatus.RUNNING
        session.last_activity = datetime.now()
        self.stats['actions'] += 1

        try:
            result = await asyncio.wait_for(self.provider.perform_action(session.handle, action), timeout=timeout)
        except asyncio.TimeoutError:
            error = ActionError(f"{action.describe()} timeout after {timeout:.0f}s",
                                action=action.type.value, session_id=session.id)
            self._record_failure(session, action, error)
            raise error
        except Exception as e:
            self._record_failure(session, action, e)
            raise

        if session.status != SessionStatus.CLOSED:
            session.status = SessionStatus.READY
        session.last_activity = datetime.now()

        if action.type == ActionType.NAVIGATE:
            self._record_navigation(session, result)
        return result

    def _record_failure(self, session: Session, action: BrowserAction, error: BaseException) -> None:
        self.stats['action_failures'] += 1
        if session.status != SessionStatus.CLOSED:
            session.status = SessionStatus.ERROR
        reason = describe_error(error)
        self.emit(session, SessionEventType.ERROR, action=action.type.value, error=reason)
        if action.type == ActionType.NAVIGATE and session.proxy is not None:
            self.proxy_pool.report_failure(session.proxy.id, error=reason)

    def _record_navigation(self, session: Session, result: ActionResult) -> None:
        data = result.data or {}
        status = data.get('status')
        self.emit(session, SessionEventType.NAVIGATION, url=data.get('final_url') or data.get('url'), status=status)

        if status in BOT_DETECTION_STATUSES:
            self.emit(session, SessionEventType.BOT_DETECTION, url=data.get('url'), status=status)
            if session.proxy is not None:
                self.proxy_pool.report_failure(session.proxy.id, error=f"HTTP {status}")
        elif session.proxy is not None:
            self.proxy_pool.report_success(session.proxy.id, response_time=result.duration * 1000)

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.active_sessions.get(session_id)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'active_sessions': len(self.active_sessions)
        }
