"""
Robots Policy Module

Fetches robots.txt once per origin with httpx and answers can-fetch
questions with the standard library parser. An unreachable robots.txt, or
one answered with a 4xx other than 401/403, allows everything.
"""

import logging
import threading
from typing import Dict, Optional
from urllib import robotparser
from urllib.parse import urlparse

import httpx


logger = logging.getLogger(__name__)


class RobotsPolicy:
    """Per-origin robots.txt cache."""

    def __init__(self, timeout: float = 10.0):
        """
        Initialize the policy.

        Args:
            timeout: Timeout for robots.txt requests in seconds
        """
        self.timeout = timeout
        self._lock = threading.Lock()
        self._parsers: Dict[str, robotparser.RobotFileParser] = {}

    @staticmethod
    def origin(url: str) -> str:
        parsed = urlparse(url)
        return f"{parsed.scheme}://{parsed.netloc}"

    async def _load(self, origin: str, user_agent: Optional[str],
                    proxy_url: Optional[str]) -> Optional[robotparser.RobotFileParser]:
        robots_url = f"{origin}/robots.txt"
        headers = {'User-Agent': user_agent} if user_agent else None
        try:
            async with httpx.AsyncClient(proxy=proxy_url, timeout=self.timeout, headers=headers,
                                         follow_redirects=True) as client:
                response = await client.get(robots_url)
        except httpx.HTTPError as e:
            logger.warning(f"robots.txt unavailable for {origin}: {e or e.__class__.__name__}")
            return None

        parser = robotparser.RobotFileParser(robots_url)
        if response.status_code in (401, 403):
            parser.disallow_all = True
        elif 400 <= response.status_code < 500:
            parser.allow_all = True
        elif response.status_code >= 500:
            logger.warning(f"robots.txt for {origin} answered HTTP {response.status_code}")
            return None
        else:
            parser.parse(response.text.splitlines())
        return parser

    async def allowed(self, url: str, user_agent: Optional[str] = None, proxy_url: Optional[str] = None) -> bool:
        """
        Check whether robots.txt lets ``user_agent`` fetch ``url``.

        Only successful lookups are cached; a failed lookup allows the URL
        and is retried on the next call.
        """
        origin = self.origin(url)
        with self._lock:
            parser = self._parsers.get(origin)

        if parser is None:
            parser = await self._load(origin, user_agent, proxy_url)
            if parser is None:
                return True
            with self._lock:
                self._parsers[origin] = parser

        allowed = parser.can_fetch(user_agent or "*", url)
        if not allowed:
            logger.info(f"robots.txt disallows {url}")
        return allowed
