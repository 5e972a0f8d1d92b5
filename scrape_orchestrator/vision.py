"""
Vision Advisor Module

Contract for screenshot analysis (strategy suggestion, challenge detection
and visual field extraction) and a wrapper that makes every advisor call
advisory: failures and timeouts yield None instead of raising.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any

from .config import ScrapingMethod


logger = logging.getLogger(__name__)


@dataclass
class ContextAnalysis:
    """Advisor's suggested strategy for a page."""
    strategy: str
    confidence: float
    reason: str = ""

    def suggested_method(self) -> Optional[ScrapingMethod]:
        try:
            return ScrapingMethod(self.strategy)
        except ValueError:
            return None


@dataclass
class ChallengeReport:
    """Anti-bot challenges visible on a page."""
    has_challenges: bool
    challenges: List[str] = field(default_factory=list)


class VisionAdvisor(ABC):
    """Screenshot-based page analysis."""

    @abstractmethod
    async def analyze_context(self, screenshot: str, html: str, url: str) -> ContextAnalysis:
        """Suggest a scraping strategy for a page."""

    @abstractmethod
    async def detect_challenges(self, screenshot: str) -> ChallengeReport:
        """Detect captchas and other challenges in a screenshot."""

    async def extract_fields(self, screenshot: str, fields: Dict[str, str]) -> List[Dict[str, Any]]:
        """
        Extract fields described in natural language from a screenshot.

        Args:
            screenshot: Base64-encoded image
            fields: Field name -> visual description

        Returns:
            Extracted items
        """
        raise NotImplementedError("This advisor does not extract visual fields")


class SafeVisionAdvisor:
    """Wraps an optional advisor so that callers never see its errors."""

    def __init__(self, advisor: Optional[VisionAdvisor] = None, timeout: float = 60.0):
        self.advisor = advisor
        self.timeout = timeout
        self.stats = {
            'calls': 0,
            'failures': 0
        }

    @property
    def available(self) -> bool:
        return self.advisor is not None

    async def _call(self, name: str, coroutine) -> Any:
        self.stats['calls'] += 1
        try:
            return await asyncio.wait_for(coroutine, timeout=self.timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats['failures'] += 1
            logger.warning(f"Vision advisor {name} unavailable: {e or e.__class__.__name__}")
            return None

    async def analyze_context(self, screenshot: str, html: str, url: str) -> Optional[ContextAnalysis]:
        if not self.advisor:
            return None
        return await self._call("analyze_context", self.advisor.analyze_context(screenshot, html, url))

    async def detect_challenges(self, screenshot: str) -> Optional[ChallengeReport]:
        if not self.advisor:
            return None
        return await self._call("detect_challenges", self.advisor.detect_challenges(screenshot))

    async def extract_fields(self, screenshot: str, fields: Dict[str, str]) -> Optional[List[Dict[str, Any]]]:
        if not self.advisor:
            return None
        return await self._call("extract_fields", self.advisor.extract_fields(screenshot, fields))
