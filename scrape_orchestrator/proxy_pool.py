"""
Proxy Pool Module

Manages network egress proxies: registration and import, health scoring
from success/failure reports, per-session leasing with pluggable selection
strategies, and scheduled re-tests of failing proxies.
"""

import asyncio
import logging
import random
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any, Callable
from urllib.parse import urlparse, quote

import httpx

from .config import ProxyType


logger = logging.getLogger(__name__)


DEFAULT_POOL = "default"
FAILURE_THRESHOLD = 5
MIN_SUCCESS_RATE = 30.0
HISTORY_WEIGHT = 0.9
IP_ECHO_URL = "https://api.ipify.org?format=json"
GEO_LOOKUP_URL = "https://ipapi.co/{ip}/json/"


class ProxyStatus(Enum):
    """Availability status of a proxy."""
    AVAILABLE = "available"
    IN_USE = "in-use"
    FAILING = "failing"
    BANNED = "banned"


class SelectionStrategy(Enum):
    """How a pool picks among matching proxies."""
    ROUND_ROBIN = "round-robin"
    RANDOM = "random"
    SMART = "smart"
    STICKY = "sticky"


@dataclass
class Proxy:
    """A network egress route with health metrics."""
    id: str
    url: str
    type: ProxyType = ProxyType.DATACENTER
    provider: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    country: Optional[str] = None
    success_count: int = 0
    failure_count: int = 0
    success_rate: float = 100.0
    response_time: Optional[float] = None  # milliseconds
    status: ProxyStatus = ProxyStatus.AVAILABLE
    sessions: int = 0
    last_used: Optional[datetime] = None
    last_tested: Optional[datetime] = None
    last_error: Optional[str] = None
    retest_at: Optional[float] = None

    @property
    def server(self) -> str:
        parsed = urlparse(self.url)
        return parsed.netloc or self.url

    @property
    def is_selectable(self) -> bool:
        return self.status == ProxyStatus.AVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'url': self.url,
            'type': self.type.value,
            'provider': self.provider,
            'country': self.country,
            'status': self.status.value,
            'success_count': self.success_count,
            'failure_count': self.failure_count,
            'success_rate': round(self.success_rate, 2),
            'response_time': self.response_time,
            'sessions': self.sessions,
            'last_used': self.last_used.isoformat() if self.last_used else None,
            'last_error': self.last_error
        }


@dataclass
class ProxyCriteria:
    """Filter used when acquiring a proxy."""
    country: Optional[str] = None
    type: Optional[ProxyType] = None
    pool: Optional[str] = None


@dataclass
class ProxyGroup:
    """Named group of proxies sharing a selection strategy."""
    name: str
    strategy: SelectionStrategy = SelectionStrategy.ROUND_ROBIN
    proxy_ids: List[str] = field(default_factory=list)


@dataclass
class ProxyTestResult:
    """Outcome of a connectivity probe."""
    proxy_id: str
    success: bool
    response_time: float = 0.0  # milliseconds
    external_ip: Optional[str] = None
    country: Optional[str] = None
    error: Optional[str] = None


def parse_proxy_line(line: str) -> Optional[Dict[str, Optional[str]]]:
    """
    Parse one ``host:port[:user:pass]`` line.

    Returns:
        Dict with url/username/password, or None for blank, comment or malformed lines
    """
    line = line.strip()
    if not line or line.startswith('#'):
        return None

    parts = line.split(':')
    if len(parts) >= 4:
        return {'url': f"http://{parts[0]}:{parts[1]}", 'username': parts[2], 'password': parts[3]}
    if len(parts) >= 2 and parts[1].isdigit():
        return {'url': f"http://{parts[0]}:{parts[1]}", 'username': None, 'password': None}
    return None


class ProxyPool:
    """
    Thread-safe proxy registry and leasing service.

    A proxy is leased to at most one session at a time. Selection and
    binding happen in one step under the pool lock.
    """

    def __init__(self,
                 retest_cooldown: float = 300.0,
                 probe_timeout: float = 10.0,
                 clock: Callable[[], float] = time.time,
                 rng: Optional[random.Random] = None):
        """
        Initialize the proxy pool.

        Args:
            retest_cooldown: Seconds before a failing proxy is re-tested
            probe_timeout: Timeout for connectivity probes in seconds
            clock: Time source in seconds, injectable for tests
            rng: Random generator, injectable for tests
        """
        self.retest_cooldown = retest_cooldown
        self.probe_timeout = probe_timeout
        self.clock = clock
        self.rng = rng or random.Random()

        self._lock = threading.RLock()
        self._proxies: Dict[str, Proxy] = {}
        self._groups: Dict[str, ProxyGroup] = {DEFAULT_POOL: ProxyGroup(name=DEFAULT_POOL)}
        self._bindings: Dict[str, str] = {}  # session_id -> proxy_id
        self._retest_tasks: Dict[str, asyncio.Task] = {}

        self.stats = {
            'leases': 0,
            'misses': 0,
            'failures_reported': 0,
            'retests': 0,
            'restored': 0
        }

    # Registration

    def add(self, proxy: Proxy, pool_name: str = DEFAULT_POOL) -> Proxy:
        """Register a proxy record without probing it."""
        with self._lock:
            self._proxies[proxy.id] = proxy
            group = self._groups.setdefault(pool_name, ProxyGroup(name=pool_name))
            if proxy.id not in group.proxy_ids:
                group.proxy_ids.append(proxy.id)
            if pool_name != DEFAULT_POOL and proxy.id not in self._groups[DEFAULT_POOL].proxy_ids:
                self._groups[DEFAULT_POOL].proxy_ids.append(proxy.id)
        logger.debug(f"Proxy {proxy.url} registered in pool {pool_name}")
        return proxy

    async def add_proxy(self, url: str,
                        proxy_type: ProxyType = ProxyType.DATACENTER,
                        provider: Optional[str] = None,
                        username: Optional[str] = None,
                        password: Optional[str] = None,
                        country: Optional[str] = None,
                        pool_name: str = DEFAULT_POOL,
                        probe: bool = True) -> Proxy:
        """
        Register a proxy, optionally probing it first.

        A failed probe leaves the proxy registered with status ``failing``.
        """
        proxy = Proxy(
            id=f"proxy-{uuid.uuid4().hex[:12]}",
            url=url,
            type=proxy_type,
            provider=provider,
            username=username,
            password=password,
            country=country
        )
        self.add(proxy, pool_name)

        if probe:
            result = await self.test_proxy(proxy.id)
            if not result.success:
                with self._lock:
                    proxy.status = ProxyStatus.FAILING
                    proxy.retest_at = self.clock() + self.retest_cooldown
                self._schedule_retest(proxy.id)
                logger.warning(f"Proxy {url} failed initial probe: {result.error}")
            elif result.country and not proxy.country:
                proxy.country = result.country

        logger.info(f"Proxy added: {url}")
        return proxy

    async def import_proxies(self, proxy_list: str,
                             proxy_type: ProxyType = ProxyType.DATACENTER,
                             provider: Optional[str] = None,
                             pool_name: str = DEFAULT_POOL,
                             probe: bool = False) -> int:
        """
        Import proxies from ``host:port[:user:pass]`` lines.

        Blank lines and lines starting with ``#`` are skipped; malformed lines
        are logged and skipped.

        Returns:
            Number of proxies imported
        """
        imported = 0
        for line in proxy_list.splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith('#'):
                continue

            parsed = parse_proxy_line(stripped)
            if parsed is None:
                logger.warning(f"Invalid proxy line skipped: {stripped}")
                continue

            await self.add_proxy(
                parsed['url'],
                proxy_type=proxy_type,
                provider=provider,
                username=parsed['username'],
                password=parsed['password'],
                pool_name=pool_name,
                probe=probe
            )
            imported += 1

        logger.info(f"Proxy import completed: {imported} proxies added")
        return imported

    def remove_proxy(self, proxy_id: str) -> bool:
        """Remove a proxy from every pool and drop its session bindings."""
        with self._lock:
            proxy = self._proxies.pop(proxy_id, None)
            if proxy is None:
                return False
            for group in self._groups.values():
                if proxy_id in group.proxy_ids:
                    group.proxy_ids.remove(proxy_id)
            for session_id, bound_id in list(self._bindings.items()):
                if bound_id == proxy_id:
                    del self._bindings[session_id]

        task = self._retest_tasks.pop(proxy_id, None)
        if task:
            task.cancel()
        logger.info(f"Proxy removed: {proxy.url}")
        return True

    def create_pool(self, name: str, strategy: SelectionStrategy = SelectionStrategy.ROUND_ROBIN) -> ProxyGroup:
        """Create (or reconfigure) a named pool."""
        with self._lock:
            group = self._groups.get(name)
            if group is None:
                group = ProxyGroup(name=name, strategy=strategy)
                self._groups[name] = group
            else:
                group.strategy = strategy
        logger.info(f"Proxy pool {name} created with strategy {strategy.value}")
        return group

    def add_proxy_to_pool(self, proxy_id: str, pool_name: str) -> bool:
        with self._lock:
            group = self._groups.get(pool_name)
            if group is None or proxy_id not in self._proxies:
                return False
            if proxy_id not in group.proxy_ids:
                group.proxy_ids.append(proxy_id)
            return True

    # Leasing

    def acquire(self, session_id: str, criteria: Optional[ProxyCriteria] = None) -> Optional[Proxy]:
        """
        Lease a proxy to a session.

        Args:
            session_id: Session that will use the proxy
            criteria: Optional country/type/pool filter

        Returns:
            The leased Proxy, or None when nothing matches (proceed without proxy)
        """
        criteria = criteria or ProxyCriteria()
        pool_name = criteria.pool or DEFAULT_POOL

        with self._lock:
            group = self._groups.get(pool_name)
            if group is None:
                logger.warning(f"Proxy pool {pool_name} not found")
                self.stats['misses'] += 1
                return None

            if group.strategy == SelectionStrategy.STICKY:
                bound = self._proxies.get(self._bindings.get(session_id, ""))
                if bound and bound.status in (ProxyStatus.AVAILABLE, ProxyStatus.IN_USE):
                    return bound

            self._release_locked(session_id)

            candidates = [
                self._proxies[proxy_id] for proxy_id in group.proxy_ids
                if proxy_id in self._proxies and self._proxies[proxy_id].is_selectable
            ]
            if criteria.country:
                candidates = [p for p in candidates if p.country == criteria.country]
            if criteria.type:
                candidates = [p for p in candidates if p.type == criteria.type]

            if not candidates:
                logger.warning(f"No proxy available in pool {pool_name} for the requested filters")
                self.stats['misses'] += 1
                return None

            selected = self._select(group.strategy, candidates)
            selected.sessions += 1
            selected.last_used = datetime.now()
            selected.status = ProxyStatus.IN_USE
            self._bindings[session_id] = selected.id
            self.stats['leases'] += 1

        logger.debug(f"Proxy {selected.url} leased to session {session_id}")
        return selected

    def _select(self, strategy: SelectionStrategy, candidates: List[Proxy]) -> Proxy:
        if strategy == SelectionStrategy.RANDOM:
            return self.rng.choice(candidates)
        if strategy == SelectionStrategy.SMART:
            return max(candidates, key=lambda p: p.success_rate * (1.0 / (p.response_time or 1000.0)))
        # round-robin, and sticky without a live binding
        index = int(self.clock() * 1000) % len(candidates)
        return candidates[index]

    def release(self, session_id: str) -> bool:
        """
        Release the proxy bound to a session.

        Decrements the session counter only when a binding exists, so a
        repeated release is a no-op. Failing/banned status is untouched.
        """
        with self._lock:
            return self._release_locked(session_id)

    def _release_locked(self, session_id: str) -> bool:
        proxy_id = self._bindings.pop(session_id, None)
        if proxy_id is None:
            return False
        proxy = self._proxies.get(proxy_id)
        if proxy:
            proxy.sessions = max(0, proxy.sessions - 1)
            if proxy.sessions == 0 and proxy.status == ProxyStatus.IN_USE:
                proxy.status = ProxyStatus.AVAILABLE
        logger.debug(f"Proxy released for session {session_id}")
        return True

    def rotate(self, session_id: str, criteria: Optional[ProxyCriteria] = None) -> Optional[Proxy]:
        """Release the session's proxy and lease a different one."""
        with self._lock:
            previous_id = self._bindings.get(session_id)
            self._release_locked(session_id)
            previous = self._proxies.get(previous_id) if previous_id else None
            # keep the old proxy out of this selection round
            if previous and previous.status == ProxyStatus.AVAILABLE:
                previous.status = ProxyStatus.IN_USE
                try:
                    proxy = self.acquire(session_id, criteria)
                finally:
                    if previous.sessions == 0 and previous.status == ProxyStatus.IN_USE:
                        previous.status = ProxyStatus.AVAILABLE
            else:
                proxy = self.acquire(session_id, criteria)

            if proxy is None and previous is not None:
                proxy = self.acquire(session_id, criteria)

        if proxy:
            logger.info(f"Proxy rotated for session {session_id}: {proxy.url}")
        return proxy

    def bound_proxy(self, session_id: str) -> Optional[Proxy]:
        with self._lock:
            return self._proxies.get(self._bindings.get(session_id, ""))

    # Health reporting

    def _update_rate(self, proxy: Proxy, success: bool) -> None:
        observation = 100.0 if success else 0.0
        rate = HISTORY_WEIGHT * proxy.success_rate + (1 - HISTORY_WEIGHT) * observation
        proxy.success_rate = min(100.0, max(0.0, rate))

    def report_success(self, proxy_id: str, response_time: Optional[float] = None) -> None:
        """Record a successful request through a proxy."""
        with self._lock:
            proxy = self._proxies.get(proxy_id)
            if proxy is None:
                return
            proxy.success_count += 1
            self._update_rate(proxy, True)
            if response_time is not None:
                proxy.response_time = response_time

    def report_failure(self, proxy_id: str, permanent: bool = False, error: Optional[str] = None) -> None:
        """
        Record a failed request through a proxy and re-derive its status.

        ``permanent`` bans the proxy; otherwise it becomes ``failing`` once
        the failure count reaches the threshold or the success rate drops
        below the minimum, and a re-test is scheduled after the cool-down.
        """
        with self._lock:
            proxy = self._proxies.get(proxy_id)
            if proxy is None:
                return
            proxy.failure_count += 1
            proxy.last_error = error
            self._update_rate(proxy, False)
            self.stats['failures_reported'] += 1

            previous = proxy.status
            if permanent or previous == ProxyStatus.BANNED:
                proxy.status = ProxyStatus.BANNED
            elif proxy.failure_count >= FAILURE_THRESHOLD or proxy.success_rate < MIN_SUCCESS_RATE:
                proxy.status = ProxyStatus.FAILING
            else:
                proxy.status = ProxyStatus.IN_USE if proxy.sessions > 0 else ProxyStatus.AVAILABLE

            became_failing = proxy.status == ProxyStatus.FAILING and previous != ProxyStatus.FAILING
            if became_failing:
                proxy.retest_at = self.clock() + self.retest_cooldown

        if proxy.status == ProxyStatus.BANNED and previous != ProxyStatus.BANNED:
            logger.warning(f"Proxy {proxy.url} banned: {error}")
        elif became_failing:
            logger.warning(
                f"Proxy {proxy.url} marked failing "
                f"(failures={proxy.failure_count}, rate={proxy.success_rate:.1f}%): {error}"
            )
            self._schedule_retest(proxy_id)

    def reset_failures(self, proxy_id: str) -> None:
        with self._lock:
            proxy = self._proxies.get(proxy_id)
            if proxy:
                proxy.failure_count = 0

    # Probing

    def httpx_proxy_url(self, proxy: Proxy) -> str:
        """Proxy URL with credentials embedded, as httpx expects."""
        parsed = urlparse(proxy.url)
        scheme = parsed.scheme or "http"
        if proxy.username and proxy.password:
            return f"{scheme}://{quote(proxy.username, safe='')}:{quote(proxy.password, safe='')}@{proxy.server}"
        return f"{scheme}://{proxy.server}"

    def browser_proxy_config(self, proxy: Proxy) -> Dict[str, str]:
        """Proxy descriptor in the ``{server, username, password}`` shape browsers take."""
        config = {"server": proxy.url if "://" in proxy.url else f"http://{proxy.url}"}
        if proxy.username:
            config["username"] = proxy.username
        if proxy.password:
            config["password"] = proxy.password
        return config

    async def _probe(self, proxy: Proxy) -> ProxyTestResult:
        started = time.monotonic()
        async with httpx.AsyncClient(proxy=self.httpx_proxy_url(proxy), timeout=self.probe_timeout) as client:
            response = await client.get(IP_ECHO_URL)
            elapsed = (time.monotonic() - started) * 1000
            if response.status_code != 200:
                return ProxyTestResult(proxy.id, False, elapsed, error=f"HTTP {response.status_code}")

            external_ip = response.json().get('ip')
            country = None
            if external_ip:
                try:
                    geo = await client.get(GEO_LOOKUP_URL.format(ip=external_ip), timeout=5.0)
                    country = geo.json().get('country')
                except (httpx.HTTPError, ValueError) as e:
                    logger.debug(f"Geo lookup failed for {external_ip}: {e}")
            return ProxyTestResult(proxy.id, True, elapsed, external_ip=external_ip, country=country)

    async def test_proxy(self, proxy_id: str) -> ProxyTestResult:
        """
        Probe a proxy against an IP echo service.

        A successful probe restores a failing or banned proxy. Probe errors are
        absorbed into the result and never raised.
        """
        proxy = self.get(proxy_id)
        if proxy is None:
            return ProxyTestResult(proxy_id, False, error="unknown proxy")

        try:
            result = await self._probe(proxy)
        except Exception as e:
            result = ProxyTestResult(proxy_id, False, error=str(e) or e.__class__.__name__)

        with self._lock:
            proxy.last_tested = datetime.now()
            if result.response_time:
                proxy.response_time = result.response_time
            if result.success:
                proxy.success_count += 1
                self._update_rate(proxy, True)
                if proxy.status in (ProxyStatus.FAILING, ProxyStatus.BANNED):
                    proxy.status = ProxyStatus.IN_USE if proxy.sessions > 0 else ProxyStatus.AVAILABLE
                    proxy.retest_at = None
                    self.stats['restored'] += 1
                    logger.info(f"Proxy {proxy.url} restored after successful re-test")
            else:
                proxy.last_error = result.error
                if proxy.status == ProxyStatus.FAILING:
                    proxy.retest_at = self.clock() + self.retest_cooldown

        return result

    def _schedule_retest(self, proxy_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: the retest_due() sweep picks it up
            return

        existing = self._retest_tasks.get(proxy_id)
        if existing and not existing.done():
            return
        self._retest_tasks[proxy_id] = loop.create_task(self._delayed_retest(proxy_id))

    async def _delayed_retest(self, proxy_id: str) -> None:
        try:
            await asyncio.sleep(self.retest_cooldown)
            proxy = self.get(proxy_id)
            if proxy and proxy.status == ProxyStatus.FAILING:
                self.stats['retests'] += 1
                await self.test_proxy(proxy_id)
        finally:
            self._retest_tasks.pop(proxy_id, None)

    async def retest_due(self) -> List[ProxyTestResult]:
        """Re-test every failing proxy whose cool-down has elapsed."""
        now = self.clock()
        with self._lock:
            due = [
                p.id for p in self._proxies.values()
                if p.status == ProxyStatus.FAILING and p.retest_at is not None and p.retest_at <= now
            ]
        results = []
        for proxy_id in due:
            self.stats['retests'] += 1
            results.append(await self.test_proxy(proxy_id))
        return results

    async def close(self) -> None:
        """Cancel pending re-tests."""
        tasks = list(self._retest_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._retest_tasks.clear()
        logger.info("Proxy pool closed")

    # Queries

    def get(self, proxy_id: str) -> Optional[Proxy]:
        with self._lock:
            return self._proxies.get(proxy_id)

    def get_all(self) -> List[Proxy]:
        with self._lock:
            return list(self._proxies.values())

    def get_pools(self) -> List[ProxyGroup]:
        with self._lock:
            return list(self._groups.values())

    def get_stats(self) -> Dict[str, Any]:
        """Get pool statistics."""
        with self._lock:
            by_status = {status.value: 0 for status in ProxyStatus}
            for proxy in self._proxies.values():
                by_status[proxy.status.value] += 1
            return {
                **self.stats,
                'total_proxies': len(self._proxies),
                'active_bindings': len(self._bindings),
                'by_status': by_status
            }
