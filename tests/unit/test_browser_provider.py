"""
Unit tests for the Browserbase session provider.

The Browserbase client and Playwright are mocked; no network access.
"""

import pytest
import random
from unittest.mock import AsyncMock, Mock, patch

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from scrape_orchestrator.browser_provider import (
    ActionType, BrowserAction, BrowserbaseSessionProvider, SessionHandle, create_browserbase_provider
)
from scrape_orchestrator.config import BrowserType
from scrape_orchestrator.exceptions import ActionError, ConfigurationError, SessionCreationError
from scrape_orchestrator.identity_pool import IdentityFactory


@pytest.fixture
def mock_browserbase():
    with patch('scrape_orchestrator.browser_provider.Browserbase') as mock_bb_class:
        client = Mock()
        client.sessions.create.return_value = Mock(id="bb-session-1", connect_url="wss://connect.example/1")
        mock_bb_class.return_value = client
        yield client


@pytest.fixture
def provider(mock_env_vars, mock_browserbase):
    return BrowserbaseSessionProvider(navigation_timeout=5.0)


@pytest.fixture
def identity():
    return IdentityFactory(rng=random.Random(3)).create()


def make_page():
    page = Mock()
    page.url = "https://example.com/final"
    page.goto = AsyncMock(return_value=Mock(status=200))
    page.title = AsyncMock(return_value="Example")
    page.click = AsyncMock()
    page.type = AsyncMock()
    page.screenshot = AsyncMock(return_value=b"png-bytes")
    page.evaluate = AsyncMock(return_value="<html></html>")
    page.wait_for_selector = AsyncMock()
    page.wait_for_timeout = AsyncMock()
    page.mouse.wheel = AsyncMock()
    return page


def open_handle(page) -> SessionHandle:
    handle = SessionHandle(id="h1", browser_type=BrowserType.CHROMIUM, viewport=(1280, 720),
                           provider_session_id="bb-session-1")
    handle.resources = {'page': page}
    return handle


class TestConfiguration:
    """Test provider construction."""

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv('BROWSERBASE_API_KEY', raising=False)

        with pytest.raises(ConfigurationError, match="API key is required"):
            BrowserbaseSessionProvider(project_id="project")

    def test_missing_project_id(self, monkeypatch):
        monkeypatch.delenv('BROWSERBASE_PROJECT_ID', raising=False)

        with pytest.raises(ConfigurationError, match="project ID is required"):
            BrowserbaseSessionProvider(api_key="key")

    def test_credentials_from_environment(self, provider):
        assert provider.api_key == 'test-api-key'
        assert provider.project_id == 'test-project-id'

    def test_client_failure_is_configuration_error(self, mock_env_vars):
        with patch('scrape_orchestrator.browser_provider.Browserbase', side_effect=RuntimeError("bad key")):
            with pytest.raises(ConfigurationError, match="bad key"):
                create_browserbase_provider()


class TestSessionSettings:
    """Test translation of identities and proxies into Browserbase settings."""

    def test_browser_settings_from_identity(self, provider, identity):
        settings = provider._create_browser_settings(identity, (1280, 720))

        assert settings['viewport'] == {'width': 1280, 'height': 720}
        assert settings['fingerprint']['locales'] == identity.fingerprint.languages[:1]

    def test_no_proxy(self, provider):
        assert provider._create_proxies(None) is False

    def test_external_proxy(self, provider):
        proxies = provider._create_proxies({'server': 'http://10.0.0.1:8080', 'username': 'u', 'password': 'p'})

        assert proxies == [{'type': 'external', 'server': 'http://10.0.0.1:8080', 'username': 'u', 'password': 'p'}]


class TestOpenSession:
    """Test session creation."""

    @pytest.mark.asyncio
    async def test_create_failure(self, provider, mock_browserbase, identity):
        mock_browserbase.sessions.create.side_effect = RuntimeError("quota exceeded")

        with pytest.raises(SessionCreationError, match="quota exceeded"):
            await provider.open_session(identity, None, BrowserType.CHROMIUM, (1920, 1080))

    @pytest.mark.asyncio
    async def test_open_connects_over_cdp(self, provider, mock_browserbase, identity):
        page = make_page()
        page.set_extra_http_headers = AsyncMock()
        context = Mock(pages=[page])
        browser = Mock(contexts=[context])
        playwright = Mock()
        playwright.chromium.connect_over_cdp = AsyncMock(return_value=browser)
        starter = Mock()
        starter.start = AsyncMock(return_value=playwright)

        with patch('scrape_orchestrator.browser_provider.async_playwright', return_value=starter):
            handle = await provider.open_session(identity, None, BrowserType.CHROMIUM, (1920, 1080))

        playwright.chromium.connect_over_cdp.assert_awaited_once_with("wss://connect.example/1")
        headers = page.set_extra_http_headers.await_args.args[0]
        assert headers['User-Agent'] == identity.user_agent
        assert handle.provider_session_id == "bb-session-1"
        assert handle.resources['page'] is page
        assert provider.get_stats()['open_sessions'] == 1

    @pytest.mark.asyncio
    async def test_connect_failure_releases_remote_session(self, provider, mock_browserbase, identity):
        playwright = Mock()
        playwright.chromium.connect_over_cdp = AsyncMock(side_effect=RuntimeError("cdp refused"))
        playwright.stop = AsyncMock()
        starter = Mock()
        starter.start = AsyncMock(return_value=playwright)

        with patch('scrape_orchestrator.browser_provider.async_playwright', return_value=starter):
            with pytest.raises(SessionCreationError, match="cdp refused"):
                await provider.open_session(identity, None, BrowserType.CHROMIUM, (1920, 1080))

        playwright.stop.assert_awaited_once()
        mock_browserbase.sessions.update.assert_called_once()
        assert provider.handles == {}


class TestPerformAction:
    """Test action dispatch on a mocked page."""

    @pytest.mark.asyncio
    async def test_navigate(self, provider):
        page = make_page()

        result = await provider.perform_action(open_handle(page), BrowserAction(ActionType.NAVIGATE,
                                                                                url="https://example.com"))

        assert result.success is True
        assert result.data == {'url': "https://example.com", 'status': 200,
                               'final_url': "https://example.com/final", 'title': "Example"}
        page.goto.assert_awaited_once_with("https://example.com", wait_until="domcontentloaded", timeout=5000.0)

    @pytest.mark.asyncio
    async def test_extract_single_and_missing(self, provider):
        page = make_page()
        locator = Mock()
        locator.count = AsyncMock(return_value=1)
        locator.first.inner_text = AsyncMock(return_value="  Price  ")
        page.locator = Mock(return_value=locator)
        handle = open_handle(page)

        result = await provider.perform_action(handle, BrowserAction(ActionType.EXTRACT_DATA, selector=".price"))
        assert result.data == "Price"

        locator.count = AsyncMock(return_value=0)
        result = await provider.perform_action(handle, BrowserAction(ActionType.EXTRACT_DATA, selector=".price"))
        assert result.data is None

    @pytest.mark.asyncio
    async def test_extract_multiple_with_xpath(self, provider):
        page = make_page()
        locator = Mock()
        locator.all_inner_texts = AsyncMock(return_value=["a", "b"])
        page.locator = Mock(return_value=locator)

        result = await provider.perform_action(open_handle(page), BrowserAction(
            ActionType.EXTRACT_DATA, selector="//li", selector_type="xpath", multiple=True
        ))

        assert result.data == ["a", "b"]
        page.locator.assert_called_once_with("xpath=//li")

    @pytest.mark.asyncio
    async def test_screenshot_is_base64(self, provider):
        result = await provider.perform_action(open_handle(make_page()), BrowserAction(ActionType.SCREENSHOT))

        assert result.data == {'screenshot': 'cG5nLWJ5dGVz'}

    @pytest.mark.asyncio
    async def test_timeout_becomes_action_error(self, provider):
        page = make_page()
        page.click = AsyncMock(side_effect=PlaywrightTimeoutError("Timeout 5000ms exceeded"))

        with pytest.raises(ActionError, match="click #go timeout after 5s"):
            await provider.perform_action(open_handle(page), BrowserAction(ActionType.CLICK, selector="#go"))

        assert provider.get_stats()['actions_failed'] == 1

    @pytest.mark.asyncio
    async def test_other_errors_become_action_error(self, provider):
        page = make_page()
        page.goto = AsyncMock(side_effect=RuntimeError("net::ERR_NAME_NOT_RESOLVED"))

        with pytest.raises(ActionError, match="ERR_NAME_NOT_RESOLVED"):
            await provider.perform_action(open_handle(page), BrowserAction(ActionType.NAVIGATE,
                                                                           url="https://nowhere.invalid"))

    @pytest.mark.asyncio
    async def test_closed_handle(self, provider):
        handle = open_handle(make_page())
        handle.closed = True

        with pytest.raises(ActionError, match="closed"):
            await provider.perform_action(handle, BrowserAction(ActionType.SCREENSHOT))


class TestCloseSession:
    """Test session teardown."""

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, provider, mock_browserbase):
        browser = Mock()
        browser.close = AsyncMock()
        playwright = Mock()
        playwright.stop = AsyncMock()
        handle = open_handle(make_page())
        handle.resources.update({'browser': browser, 'playwright': playwright})
        provider.handles[handle.id] = handle

        await provider.close_session(handle)
        await provider.close_session(handle)

        browser.close.assert_awaited_once()
        playwright.stop.assert_awaited_once()
        mock_browserbase.sessions.update.assert_called_once_with(
            "bb-session-1", project_id='test-project-id', status="REQUEST_RELEASE"
        )
        assert provider.handles == {}
        assert provider.get_stats()['sessions_closed'] == 1

    @pytest.mark.asyncio
    async def test_release_failure_is_logged_not_raised(self, provider, mock_browserbase):
        mock_browserbase.sessions.update.side_effect = RuntimeError("already released")
        handle = open_handle(make_page())

        await provider.close_session(handle)

        assert handle.closed is True
