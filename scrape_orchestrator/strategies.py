"""
Execution Strategies

One strategy per scraping method. Browser-based strategies drive the leased
session through the lease manager; HTTP-based strategies use httpx with the
session's identity and proxy. Every strategy polls the task checkpoint
between actions.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from itertools import zip_longest
from typing import List, Optional, Dict, Any, Sequence
from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

import httpx
from bs4 import BeautifulSoup

from .browser_provider import ActionResult, ActionType, BrowserAction
from .config import BehaviorSettings, ScrapingMethod
from .exceptions import ActionError
from .models import AuthenticationSpec, PaginationSpec, SelectorSpec, Task
from .robots import RobotsPolicy
from .session_lease import BOT_DETECTION_STATUSES, Session, SessionEventType, SessionLeaseManager
from .task_state import TaskStateMachine
from .vision import SafeVisionAdvisor


logger = logging.getLogger(__name__)

HTML_SCRIPT = "document.documentElement.outerHTML"
JSON_LIST_KEYS = ('data', 'items', 'results', 'records')


@dataclass
class ExecutionContext:
    """Everything a strategy needs for one attempt."""
    task: Task
    session: Session
    lease_manager: SessionLeaseManager
    state: TaskStateMachine
    behavior: BehaviorSettings = field(default_factory=BehaviorSettings)
    vision: SafeVisionAdvisor = field(default_factory=SafeVisionAdvisor)
    network_timeout: float = 60.0
    action_timeout: Optional[float] = None  # seconds, None uses the lease manager default
    robots: Optional[RobotsPolicy] = None
    rng: random.Random = field(default_factory=random.Random)

    async def checkpoint(self) -> None:
        await self.state.checkpoint()

    async def perform(self, action: BrowserAction) -> ActionResult:
        """Checkpoint, then run one action on the leased session."""
        await self.checkpoint()
        return await self.lease_manager.perform(self.session, action, timeout=action.timeout or self.action_timeout)

    async def ensure_allowed(self, url: str) -> None:
        """Fail the attempt when robots.txt disallows the URL."""
        if self.robots is None or not self.behavior.respect_robots_txt:
            return
        identity = self.session.identity
        proxy = self.session.proxy
        proxy_url = self.lease_manager.proxy_pool.httpx_proxy_url(proxy) if proxy else None
        if not await self.robots.allowed(url, identity.user_agent if identity else None, proxy_url):
            raise ActionError(f"robots.txt disallows {url}", action="navigate")

    async def human_delay(self) -> None:
        if not self.behavior.human_like or self.behavior.max_delay <= 0:
            return
        delay = self.rng.uniform(self.behavior.min_delay, self.behavior.max_delay) / 1000
        await asyncio.sleep(delay)

    def record_items(self, count: int) -> None:
        self.state.record_items(count)

    def typing_delay(self) -> Optional[float]:
        if not self.behavior.human_like or self.session.identity is None:
            return None
        return self.session.identity.behavior.typing_mean


def check_required(values: Dict[str, Any], selectors: Sequence[SelectorSpec]) -> None:
    """Raise if a required selector produced nothing."""
    for spec in selectors:
        if spec.required and values.get(spec.name) in (None, "", []):
            raise ActionError(f"Required selector '{spec.name}' ({spec.selector}) not found", action="extractData")


def assemble_items(values: Dict[str, Any], selectors: Sequence[SelectorSpec]) -> List[Dict[str, Any]]:
    """
    Turn per-selector values into items.

    Multi-valued selectors are zipped into one item per index and
    single-valued fields are copied into every item.
    """
    multi = [spec.name for spec in selectors if spec.multiple and spec.name in values]
    single = {spec.name: values.get(spec.name) for spec in selectors if not spec.multiple and spec.name in values}

    if not multi:
        if all(value in (None, "") for value in single.values()):
            return []
        return [single]

    items = []
    for row in zip_longest(*(values[name] or [] for name in multi)):
        item = dict(single)
        item.update(zip(multi, row))
        items.append(item)
    return items


def with_page_param(url: str, page: int) -> str:
    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    query['page'] = [str(page)]
    return urlunparse(parsed._replace(query=urlencode(query, doseq=True)))


class ExecutionStrategy(ABC):
    """Base class for scraping methods."""

    method: ScrapingMethod
    requires_browser: bool = True

    @abstractmethod
    async def execute(self, ctx: ExecutionContext) -> List[Dict[str, Any]]:
        """Run the method and return the extracted items."""


class BrowserAutomationStrategy(ExecutionStrategy):
    """DOM extraction in a leased browser session, with login and pagination."""

    method = ScrapingMethod.BROWSER_AUTOMATION
    requires_browser = True

    async def execute(self, ctx: ExecutionContext) -> List[Dict[str, Any]]:
        options = ctx.task.options

        if options.authentication and options.authentication.required:
            await self._authenticate(ctx, options.authentication)

        landing = await self._open_target(ctx)
        selectors = [spec for spec in options.selectors if spec.selector_type != 'visual']

        pagination = options.pagination
        max_pages = pagination.max_pages if pagination else 1
        items: List[Dict[str, Any]] = []

        for page in range(1, max_pages + 1):
            page_items = await self._extract_page(ctx, selectors, landing)
            items.extend(page_items)
            ctx.record_items(len(page_items))

            if pagination is None or page == max_pages:
                break
            await ctx.human_delay()
            if not await self._next_page(ctx, pagination, page + 1):
                break

        return items

    async def _open_target(self, ctx: ExecutionContext) -> Dict[str, Any]:
        options = ctx.task.options
        await ctx.ensure_allowed(options.target_url)
        result = await ctx.perform(BrowserAction(ActionType.NAVIGATE, url=options.target_url))
        if options.wait_for_selector:
            await ctx.perform(BrowserAction(ActionType.WAIT, selector=options.wait_for_selector))
        await ctx.human_delay()
        return result.data or {}

    async def _extract_values(self, ctx: ExecutionContext, selectors: Sequence[SelectorSpec]) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for spec in selectors:
            result = await ctx.perform(BrowserAction(
                ActionType.EXTRACT_DATA,
                selector=spec.selector,
                selector_type=spec.selector_type,
                attribute=spec.attribute,
                multiple=spec.multiple
            ))
            values[spec.name] = result.data
        return values

    async def _extract_page(self, ctx: ExecutionContext, selectors: Sequence[SelectorSpec],
                            landing: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not selectors:
            return [{'url': landing.get('final_url') or ctx.task.target_url, 'title': landing.get('title')}]

        values = await self._extract_values(ctx, selectors)
        check_required(values, selectors)
        return assemble_items(values, selectors)

    async def _next_page(self, ctx: ExecutionContext, pagination: PaginationSpec, page: int) -> bool:
        try:
            if pagination.type == 'infinite-scroll':
                await ctx.perform(BrowserAction(ActionType.SCROLL, value="2000"))
                await ctx.perform(BrowserAction(ActionType.WAIT, delay=1000))
            elif pagination.type == 'button-click':
                if not pagination.selector:
                    return False
                await ctx.perform(BrowserAction(ActionType.CLICK, selector=pagination.selector))
                await ctx.perform(BrowserAction(ActionType.WAIT, delay=1000))
            else:
                if pagination.selector:
                    selector = pagination.selector.replace('{page}', str(page))
                    await ctx.perform(BrowserAction(ActionType.CLICK, selector=selector))
                    await ctx.perform(BrowserAction(ActionType.WAIT, delay=1000))
                else:
                    next_url = with_page_param(ctx.task.target_url, page)
                    await ctx.ensure_allowed(next_url)
                    await ctx.perform(BrowserAction(ActionType.NAVIGATE, url=next_url))
        except ActionError as e:
            logger.info(f"Pagination stopped at page {page - 1} for task {ctx.task.id}: {e}")
            return False
        return True

    async def _authenticate(self, ctx: ExecutionContext, auth: AuthenticationSpec) -> None:
        if auth.type != 'form':
            raise ActionError(f"Unsupported authentication type: {auth.type}", action="authenticate")
        if not (auth.username_selector and auth.password_selector):
            raise ActionError("Form authentication requires username and password selectors", action="authenticate")

        login_url = auth.login_url or ctx.task.target_url
        await ctx.ensure_allowed(login_url)
        await ctx.perform(BrowserAction(ActionType.NAVIGATE, url=login_url))
        await ctx.human_delay()
        await ctx.perform(BrowserAction(ActionType.TYPE, selector=auth.username_selector,
                                        value=auth.username or "", delay=ctx.typing_delay()))
        await ctx.perform(BrowserAction(ActionType.TYPE, selector=auth.password_selector,
                                        value=auth.password or "", delay=ctx.typing_delay()))
        if auth.submit_selector:
            await ctx.perform(BrowserAction(ActionType.CLICK, selector=auth.submit_selector))
        await ctx.perform(BrowserAction(ActionType.WAIT, delay=2000))
        logger.info(f"Authenticated for task {ctx.task.id}")


class VisualScrapingStrategy(BrowserAutomationStrategy):
    """Screenshot-first extraction with the vision advisor."""

    method = ScrapingMethod.VISUAL_SCRAPING
    requires_browser = True

    async def execute(self, ctx: ExecutionContext) -> List[Dict[str, Any]]:
        options = ctx.task.options
        landing = await self._open_target(ctx)

        shot = await ctx.perform(BrowserAction(ActionType.SCREENSHOT, full_page=True))
        screenshot = (shot.data or {}).get('screenshot', "")

        report = await ctx.vision.detect_challenges(screenshot)
        if report and report.has_challenges:
            ctx.lease_manager.emit(ctx.session, SessionEventType.CAPTCHA_DETECTED, challenges=list(report.challenges))
            raise ActionError(f"Challenge detected: {', '.join(report.challenges) or 'unknown'}", action="screenshot")

        if ctx.vision.available:
            html = (await ctx.perform(BrowserAction(ActionType.EVALUATE, script=HTML_SCRIPT))).data or ""
            analysis = await ctx.vision.analyze_context(screenshot, html, options.target_url)
            if analysis is not None:
                ctx.task.advice = analysis

        dom_selectors = [spec for spec in options.selectors if spec.selector_type != 'visual']
        visual_selectors = [spec for spec in options.selectors if spec.selector_type == 'visual']

        items = await self._extract_page(ctx, dom_selectors, landing) if dom_selectors or not visual_selectors else []

        if visual_selectors:
            rows = await ctx.vision.extract_fields(screenshot, {spec.name: spec.selector for spec in visual_selectors})
            if rows is None:
                raise ActionError("Visual selectors need a vision advisor", action="extractData")
            shared = items[0] if len(items) == 1 else {}
            items = [{**shared, **row} for row in rows]
            check_required(items[0] if items else {}, visual_selectors)

        ctx.record_items(len(items))
        return items


class HttpStrategy(ExecutionStrategy):
    """Shared httpx fetch using the session's identity and proxy."""

    requires_browser = False
    accept = "*/*"

    def _headers(self, ctx: ExecutionContext) -> Dict[str, str]:
        headers = {'Accept': self.accept}
        identity = ctx.session.identity
        if identity is not None:
            headers['User-Agent'] = identity.user_agent
            headers['Accept-Language'] = ",".join(identity.fingerprint.languages)
        return headers

    async def _fetch(self, ctx: ExecutionContext, url: str) -> httpx.Response:
        await ctx.checkpoint()
        await ctx.ensure_allowed(url)
        proxy_pool = ctx.lease_manager.proxy_pool
        proxy = ctx.session.proxy
        proxy_url = proxy_pool.httpx_proxy_url(proxy) if proxy else None

        try:
            async with httpx.AsyncClient(proxy=proxy_url, timeout=ctx.network_timeout,
                                         headers=self._headers(ctx), follow_redirects=True) as client:
                response = await client.get(url)
        except httpx.TimeoutException:
            if proxy:
                proxy_pool.report_failure(proxy.id, error="timeout")
            raise ActionError(f"request timeout after {ctx.network_timeout:.0f}s", action="request")
        except httpx.HTTPError as e:
            if proxy:
                proxy_pool.report_failure(proxy.id, error=str(e))
            raise ActionError(f"request failed: {e or e.__class__.__name__}", action="request")

        if response.status_code in BOT_DETECTION_STATUSES:
            ctx.lease_manager.emit(ctx.session, SessionEventType.BOT_DETECTION, url=url, status=response.status_code)
            if proxy:
                proxy_pool.report_failure(proxy.id, error=f"HTTP {response.status_code}")
        elif proxy:
            proxy_pool.report_success(proxy.id, response_time=response.elapsed.total_seconds() * 1000)

        if response.status_code >= 400:
            raise ActionError(f"HTTP {response.status_code} from {url}", action="request")

        ctx.lease_manager.emit(ctx.session, SessionEventType.NAVIGATION, url=str(response.url), status=response.status_code)
        return response


def pluck(record: Any, path: str) -> Any:
    """Follow a dotted key path into nested dicts and lists."""
    current = record
    for key in path.split('.'):
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return None
    return current


def json_records(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in JSON_LIST_KEYS:
            if isinstance(payload.get(key), list):
                return payload[key]
        return [payload]
    return [{'value': payload}]


class ApiClientStrategy(HttpStrategy):
    """Fetch the target as a JSON API; selectors are dotted key paths."""

    method = ScrapingMethod.API_CLIENT
    accept = "application/json"

    async def execute(self, ctx: ExecutionContext) -> List[Dict[str, Any]]:
        options = ctx.task.options
        response = await self._fetch(ctx, options.target_url)

        try:
            payload = response.json()
        except ValueError:
            raise ActionError(f"Response from {options.target_url} is not JSON", action="request")

        records = json_records(payload)
        if options.selectors:
            items = []
            for record in records:
                values = {spec.name: pluck(record, spec.selector) for spec in options.selectors}
                check_required(values, options.selectors)
                items.append(values)
        else:
            items = [record if isinstance(record, dict) else {'value': record} for record in records]

        ctx.record_items(len(items))
        return items


class DirectRequestStrategy(HttpStrategy):
    """Plain HTTP GET parsed with BeautifulSoup; CSS selectors only."""

    method = ScrapingMethod.DIRECT_REQUEST
    accept = "text/html,application/xhtml+xml"

    async def execute(self, ctx: ExecutionContext) -> List[Dict[str, Any]]:
        options = ctx.task.options
        response = await self._fetch(ctx, options.target_url)
        soup = BeautifulSoup(response.text, 'html.parser')

        selectors = []
        for spec in options.selectors:
            if spec.selector_type == 'css':
                selectors.append(spec)
            elif spec.required:
                raise ActionError(f"Selector '{spec.name}' needs a browser ({spec.selector_type})", action="extractData")
            else:
                logger.warning(f"Skipping {spec.selector_type} selector '{spec.name}' for direct request")

        if not selectors:
            title = soup.title.get_text(strip=True) if soup.title else None
            items = [{'url': str(response.url), 'title': title}]
        else:
            values = {spec.name: self._select(soup, spec) for spec in selectors}
            check_required(values, selectors)
            items = assemble_items(values, selectors)

        ctx.record_items(len(items))
        return items

    def _select(self, soup: BeautifulSoup, spec: SelectorSpec) -> Any:
        def value_of(element):
            if spec.attribute:
                return element.get(spec.attribute)
            return element.get_text(strip=True)

        if spec.multiple:
            return [value_of(element) for element in soup.select(spec.selector)]
        element = soup.select_one(spec.selector)
        return value_of(element) if element is not None else None


def default_strategies() -> Dict[ScrapingMethod, ExecutionStrategy]:
    """One strategy instance per concrete method."""
    strategies: List[ExecutionStrategy] = [
        BrowserAutomationStrategy(),
        VisualScrapingStrategy(),
        ApiClientStrategy(),
        DirectRequestStrategy(),
    ]
    return {strategy.method: strategy for strategy in strategies}
