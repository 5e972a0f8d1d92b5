"""
Shared pytest configuration and fixtures for scrape_orchestrator tests.
"""

import pytest
import os
import asyncio
import random
import logging
import uuid
from typing import Optional, Dict, Any, List
from unittest.mock import patch

from scrape_orchestrator.browser_provider import (
    ActionResult, ActionType, BrowserAction, BrowserSessionProvider, SessionHandle
)
from scrape_orchestrator.config import OrchestratorConfig
from scrape_orchestrator.exceptions import ActionError, SessionCreationError
from scrape_orchestrator.identity_pool import IdentityFactory, IdentityPool
from scrape_orchestrator.logging_config import PACKAGE_LOGGER
from scrape_orchestrator.orchestrator import ScrapeOrchestrator
from scrape_orchestrator.proxy_pool import ProxyPool
from scrape_orchestrator.session_lease import SessionLeaseManager

# Configure test environment
os.environ.setdefault('TESTING', 'true')


class FakeBrowserProvider(BrowserSessionProvider):
    """
    In-memory browser provider with scripted outcomes.

    Args:
        extract: selector -> value returned by extractData
        fail_open: Raise SessionCreationError from open_session
        fail_navigations: Number of navigations that fail before they succeed
        status: HTTP status reported by navigations
    """

    def __init__(self, extract: Optional[Dict[str, Any]] = None, fail_open: bool = False,
                 fail_navigations: int = 0, status: int = 200):
        self.extract = extract or {}
        self.fail_open = fail_open
        self.fail_navigations = fail_navigations
        self.status = status
        self.hold: Optional[asyncio.Event] = None
        self.release_on_close = True
        self.opened: List[SessionHandle] = []
        self.closed: List[str] = []
        self.actions: List[BrowserAction] = []

    async def open_session(self, identity, proxy, browser_type, viewport) -> SessionHandle:
        if self.fail_open:
            raise SessionCreationError("Session creation failed: quota exceeded")
        handle = SessionHandle(id=str(uuid.uuid4()), browser_type=browser_type, viewport=viewport,
                               resources={'proxy': proxy, 'identity': identity.id})
        self.opened.append(handle)
        return handle

    async def perform_action(self, handle: SessionHandle, action: BrowserAction) -> ActionResult:
        self.actions.append(action)
        data: Any = {}

        if action.type == ActionType.NAVIGATE:
            if self.hold is not None:
                await self.hold.wait()
            if self.fail_navigations > 0:
                self.fail_navigations -= 1
                raise ActionError(f"navigate {action.url} failed: net::ERR_CONNECTION_RESET",
                                  action="navigate", session_id=handle.id)
            data = {'url': action.url, 'status': self.status, 'final_url': action.url, 'title': 'Fake page'}
        elif action.type == ActionType.EXTRACT_DATA:
            data = self.extract.get(action.selector)
        elif action.type == ActionType.SCREENSHOT:
            data = {'screenshot': 'aGVsbG8='}
        elif action.type == ActionType.EVALUATE:
            data = "<html><body>fake</body></html>"

        return ActionResult(success=True, action_type=action.type, data=data, duration=0.01)

    async def close_session(self, handle: SessionHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        self.closed.append(handle.id)
        if self.hold is not None and self.release_on_close:
            self.hold.set()

    def navigations(self) -> List[str]:
        return [action.url for action in self.actions if action.type == ActionType.NAVIGATE]


@pytest.fixture
def fake_provider():
    """Provider returning three list items and a heading."""
    return FakeBrowserProvider(extract={
        'h1': 'Catalogue',
        'li.product': ['alpha', 'beta', 'gamma'],
    })


@pytest.fixture
def identity_pool():
    return IdentityPool(IdentityFactory(rng=random.Random(7)), rng=random.Random(7))


@pytest.fixture
def proxy_pool():
    return ProxyPool(retest_cooldown=60.0, rng=random.Random(7))


@pytest.fixture
def lease_manager(identity_pool, proxy_pool, fake_provider):
    return SessionLeaseManager(identity_pool, proxy_pool, fake_provider, navigation_timeout=5.0)


@pytest.fixture
def orchestrator_config(tmp_path):
    """Fast configuration writing into a temporary data directory."""
    return OrchestratorConfig(
        data_directory=str(tmp_path / "data"),
        navigation_timeout=5.0,
        network_timeout=5.0,
        progress_interval=0.01,
        behavior_defaults={'human_like': False, 'respect_robots_txt': False}
    )


@pytest.fixture
def orchestrator(orchestrator_config, fake_provider):
    return ScrapeOrchestrator(config=orchestrator_config, provider=fake_provider, rng=random.Random(7))


@pytest.fixture
def sample_task_options() -> Dict[str, Any]:
    return {
        'name': 'Catalogue',
        'target_url': 'https://shop.example.com/catalogue',
        'selectors': [
            {'name': 'heading', 'selector': 'h1'},
            {'name': 'product', 'selector': 'li.product', 'multiple': True},
        ],
        'use_proxy': False,
    }


@pytest.fixture
def restore_package_logger():
    """Undo handlers and level changes made to the package logger."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    level, handlers = logger.level, list(logger.handlers)
    yield logger
    for handler in list(logger.handlers):
        if handler not in handlers:
            handler.close()
    logger.handlers[:] = handlers
    logger.setLevel(level)


@pytest.fixture
def mock_env_vars():
    """Mock environment variables for testing."""
    with patch.dict(os.environ, {
        'BROWSERBASE_API_KEY': 'test-api-key',
        'BROWSERBASE_PROJECT_ID': 'test-project-id',
        'TESTING': 'true'
    }):
        yield


# Test markers for different test types
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, isolated)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (require external resources)"
    )
    config.addinivalue_line(
        "markers", "browserbase: Tests requiring Browserbase API"
    )


# Skip integration tests if no credentials
def pytest_collection_modifyitems(config, items):
    """Skip integration tests if no Browserbase credentials."""
    skip_integration = pytest.mark.skip(reason="No Browserbase credentials")
    has_credentials = os.getenv('BROWSERBASE_API_KEY') and os.getenv('BROWSERBASE_PROJECT_ID')

    for item in items:
        if ("integration" in item.keywords or "browserbase" in item.keywords) and not has_credentials:
            item.add_marker(skip_integration)
