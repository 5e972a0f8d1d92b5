"""
Browser Session Provider Module

Defines the contract the orchestrator uses for low-level browser control and
a Browserbase-backed implementation that drives cloud browsers through
Playwright over CDP.
"""

import os
import base64
import logging
import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, Tuple

from browserbase import Browserbase
from browserbase.types.session_create_params import BrowserSettings
from playwright.async_api import async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from pydantic import TypeAdapter

from .config import BrowserType, DeviceType
from .exceptions import ActionError, ConfigurationError, SessionCreationError
from .identity_pool import Identity


class ActionType(Enum):
    """Kinds of browser actions."""
    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    SCROLL = "scroll"
    SCREENSHOT = "screenshot"
    EXTRACT_DATA = "extractData"
    EVALUATE = "evaluate"
    SET_VIEWPORT = "setViewport"
    WAIT = "wait"


@dataclass
class BrowserAction:
    """A single browser action."""
    type: ActionType
    url: Optional[str] = None
    selector: Optional[str] = None
    selector_type: str = "css"
    value: Optional[str] = None
    attribute: Optional[str] = None
    multiple: bool = False
    script: Optional[str] = None
    full_page: bool = False
    width: Optional[int] = None
    height: Optional[int] = None
    delay: Optional[float] = None  # milliseconds
    wait_until: str = "domcontentloaded"
    timeout: Optional[float] = None  # seconds

    def describe(self) -> str:
        target = self.url or self.selector or ""
        return f"{self.type.value} {target}".strip()


@dataclass
class ActionResult:
    """Result of a browser action."""
    success: bool
    action_type: ActionType
    data: Optional[Any] = None
    error: Optional[str] = None
    duration: float = 0.0  # seconds
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class SessionHandle:
    """Opaque handle to a live browser session."""
    id: str
    browser_type: BrowserType
    viewport: Tuple[int, int]
    provider_session_id: Optional[str] = None
    connect_url: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    closed: bool = False
    resources: Dict[str, Any] = field(default_factory=dict)


class BrowserSessionProvider(ABC):
    """Contract for opening, driving and closing browser sessions."""

    @abstractmethod
    async def open_session(self, identity: Identity, proxy: Optional[Dict[str, str]],
                           browser_type: BrowserType, viewport: Tuple[int, int]) -> SessionHandle:
        """
        Open a browser session configured with an identity and optional proxy.

        Raises:
            SessionCreationError: If the session cannot be opened
        """

    @abstractmethod
    async def perform_action(self, handle: SessionHandle, action: BrowserAction) -> ActionResult:
        """
        Perform one action on a session.

        Raises:
            ActionError: If the action fails
        """

    @abstractmethod
    async def close_session(self, handle: SessionHandle) -> None:
        """Close a session. Safe to call on an already-closed handle."""

    async def close(self) -> None:
        """Release provider-wide resources."""


class BrowserbaseSessionProvider(BrowserSessionProvider):
    """Browser sessions hosted on Browserbase, driven with Playwright over CDP."""

    def __init__(self, api_key: Optional[str] = None, project_id: Optional[str] = None,
                 navigation_timeout: float = 30.0, keep_alive: bool = False):
        """
        Initialize the provider.

        Args:
            api_key: Browserbase API key (defaults to BROWSERBASE_API_KEY env var)
            project_id: Browserbase project ID (defaults to BROWSERBASE_PROJECT_ID env var)
            navigation_timeout: Default action timeout in seconds
            keep_alive: Keep sessions alive after disconnect
        """
        self.api_key = api_key or os.getenv('BROWSERBASE_API_KEY')
        self.project_id = project_id or os.getenv('BROWSERBASE_PROJECT_ID')

        if not self.api_key:
            raise ConfigurationError("Browserbase API key is required. Set BROWSERBASE_API_KEY environment variable or pass api_key parameter.")

        if not self.project_id:
            raise ConfigurationError("Browserbase project ID is required. Set BROWSERBASE_PROJECT_ID environment variable or pass project_id parameter.")

        self.navigation_timeout = navigation_timeout
        self.keep_alive = keep_alive

        try:
            self.bb = Browserbase(api_key=self.api_key)
        except Exception as e:
            raise ConfigurationError(f"Failed to initialize Browserbase client: {e}")

        self.logger = logging.getLogger(__name__)
        self.handles: Dict[str, SessionHandle] = {}

        self.stats = {
            'sessions_opened': 0,
            'sessions_closed': 0,
            'actions_performed': 0,
            'actions_failed': 0
        }

    def _create_browser_settings(self, identity: Identity, viewport: Tuple[int, int]) -> BrowserSettings:
        """Create BrowserSettings from an identity fingerprint."""
        fingerprint = identity.fingerprint
        device = "mobile" if fingerprint.device_type != DeviceType.DESKTOP else "desktop"
        settings_dict = {
            'viewport': {'width': viewport[0], 'height': viewport[1]},
            'fingerprint': {
                'devices': [device],
                'locales': list(fingerprint.languages[:1])
            }
        }
        return TypeAdapter(BrowserSettings).validate_python(settings_dict)

    def _create_proxies(self, proxy: Optional[Dict[str, str]]) -> Any:
        if not proxy:
            return False
        external = {'type': 'external', 'server': proxy['server']}
        if proxy.get('username'):
            external['username'] = proxy['username']
        if proxy.get('password'):
            external['password'] = proxy['password']
        return [external]

    async def open_session(self, identity: Identity, proxy: Optional[Dict[str, str]],
                           browser_type: BrowserType, viewport: Tuple[int, int]) -> SessionHandle:
        self.logger.info(f"Creating Browserbase session for identity {identity.name}")

        try:
            session = await asyncio.to_thread(
                self.bb.sessions.create,
                project_id=self.project_id,
                browser_settings=self._create_browser_settings(identity, viewport),
                proxies=self._create_proxies(proxy),
                keep_alive=self.keep_alive
            )
        except Exception as e:
            raise SessionCreationError(f"Session creation failed: {e}")

        handle = SessionHandle(
            id=str(uuid.uuid4()),
            browser_type=browser_type,
            viewport=viewport,
            provider_session_id=session.id,
            connect_url=session.connect_url
        )

        playwright = None
        try:
            # Browserbase only exposes Chromium over CDP
            playwright = await async_playwright().start()
            browser = await playwright.chromium.connect_over_cdp(session.connect_url)
            context = browser.contexts[0]
            page = context.pages[0] if context.pages else await context.new_page()

            await page.set_extra_http_headers({
                'User-Agent': identity.user_agent,
                'Accept-Language': ",".join(identity.fingerprint.languages)
            })
            if identity.cookies:
                await context.add_cookies(identity.cookies)

            handle.resources = {'playwright': playwright, 'browser': browser, 'context': context, 'page': page}
        except Exception as e:
            if playwright:
                await playwright.stop()
            await self._release_remote(session.id)
            raise SessionCreationError(f"Failed to connect to session {session.id}: {e}")

        self.handles[handle.id] = handle
        self.stats['sessions_opened'] += 1
        self.logger.info(f"Successfully created session {session.id}")
        return handle

    async def perform_action(self, handle: SessionHandle, action: BrowserAction) -> ActionResult:
        if handle.closed or 'page' not in handle.resources:
            raise ActionError("Session is closed", action=action.type.value, session_id=handle.id)

        page = handle.resources['page']
        timeout_ms = (action.timeout or self.navigation_timeout) * 1000
        start_time = time.time()
        self.stats['actions_performed'] += 1

        try:
            data = await self._dispatch(page, action, timeout_ms)
        except PlaywrightTimeoutError as e:
            self.stats['actions_failed'] += 1
            raise ActionError(
                f"{action.describe()} timeout after {timeout_ms / 1000:.0f}s",
                action=action.type.value, session_id=handle.id, details={'error': str(e)}
            )
        except ActionError:
            self.stats['actions_failed'] += 1
            raise
        except Exception as e:
            self.stats['actions_failed'] += 1
            raise ActionError(f"{action.describe()} failed: {e}", action=action.type.value, session_id=handle.id)

        return ActionResult(
            success=True,
            action_type=action.type,
            data=data,
            duration=time.time() - start_time
        )

    def _locator_selector(self, action: BrowserAction) -> str:
        if action.selector_type == "xpath" and not action.selector.startswith("xpath="):
            return f"xpath={action.selector}"
        return action.selector

    async def _dispatch(self, page: Any, action: BrowserAction, timeout_ms: float) -> Any:
        if action.type == ActionType.NAVIGATE:
            response = await page.goto(action.url, wait_until=action.wait_until, timeout=timeout_ms)
            return {
                'url': action.url,
                'status': response.status if response else None,
                'final_url': page.url,
                'title': await page.title()
            }

        if action.type == ActionType.CLICK:
            await page.click(self._locator_selector(action), timeout=timeout_ms)
            return {'selector': action.selector}

        if action.type == ActionType.TYPE:
            await page.type(self._locator_selector(action), action.value or "",
                            delay=action.delay or 0, timeout=timeout_ms)
            return {'selector': action.selector}

        if action.type == ActionType.SCROLL:
            await page.mouse.wheel(0, int(action.value or 800))
            return {'scrolled': int(action.value or 800)}

        if action.type == ActionType.SCREENSHOT:
            image = await page.screenshot(full_page=action.full_page, timeout=timeout_ms)
            return {'screenshot': base64.b64encode(image).decode('ascii')}

        if action.type == ActionType.EXTRACT_DATA:
            locator = page.locator(self._locator_selector(action))
            if action.multiple:
                if action.attribute:
                    return await locator.evaluate_all(
                        "(els, attr) => els.map(e => e.getAttribute(attr))", action.attribute
                    )
                return await locator.all_inner_texts()
            if await locator.count() == 0:
                return None
            if action.attribute:
                return await locator.first.get_attribute(action.attribute, timeout=timeout_ms)
            return (await locator.first.inner_text(timeout=timeout_ms)).strip()

        if action.type == ActionType.EVALUATE:
            return await page.evaluate(action.script)

        if action.type == ActionType.SET_VIEWPORT:
            await page.set_viewport_size({'width': action.width, 'height': action.height})
            return {'width': action.width, 'height': action.height}

        if action.type == ActionType.WAIT:
            if action.selector:
                await page.wait_for_selector(self._locator_selector(action), timeout=timeout_ms)
                return {'selector': action.selector}
            await page.wait_for_timeout(action.delay or 1000)
            return {'waited': action.delay or 1000}

        raise ActionError(f"Unsupported action: {action.type.value}", action=action.type.value)

    async def _release_remote(self, provider_session_id: str) -> None:
        try:
            await asyncio.to_thread(
                self.bb.sessions.update,
                provider_session_id,
                project_id=self.project_id,
                status="REQUEST_RELEASE"
            )
        except Exception as e:
            self.logger.warning(f"Failed to release Browserbase session {provider_session_id}: {e}")

    async def close_session(self, handle: SessionHandle) -> None:
        if handle.closed:
            return
        handle.closed = True

        browser = handle.resources.get('browser')
        playwright = handle.resources.get('playwright')
        try:
            if browser:
                await browser.close()
        except Exception as e:
            self.logger.debug(f"Browser for session {handle.id} already closed: {e}")
        finally:
            if playwright:
                await playwright.stop()

        if handle.provider_session_id:
            await self._release_remote(handle.provider_session_id)

        handle.resources.clear()
        self.handles.pop(handle.id, None)
        self.stats['sessions_closed'] += 1
        self.logger.info(f"Closed session {handle.provider_session_id}")

    async def close(self) -> None:
        for handle in list(self.handles.values()):
            await self.close_session(handle)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'open_sessions': len(self.handles)
        }


def create_browserbase_provider(api_key: Optional[str] = None, project_id: Optional[str] = None,
                                navigation_timeout: float = 30.0) -> BrowserbaseSessionProvider:
    """Create a Browserbase-backed session provider."""
    return BrowserbaseSessionProvider(api_key=api_key, project_id=project_id,
                                      navigation_timeout=navigation_timeout)
