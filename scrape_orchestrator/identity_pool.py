"""
Identity Pool Module

Owns synthetic browsing identities (fingerprint + behavioral profile) and
leases them exclusively to sessions. Identities persist across tasks so a
task's retries can keep the same fingerprint.
"""

import logging
import random
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple

from .config import BrowserType, DeviceType
from .exceptions import IdentityUnavailable


logger = logging.getLogger(__name__)


USER_AGENT_DATABASE = [
    # Windows + Chrome
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
    # Windows + Firefox
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:119.0) Gecko/20100101 Firefox/119.0',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:120.0) Gecko/20100101 Firefox/120.0',
    # Windows + Edge
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0.0',
    # macOS + Safari
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15',
    # macOS + Chrome
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
    # Linux + Firefox
    'Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0',
    # Android + Chrome
    'Mozilla/5.0 (Linux; Android 14; SM-S921B) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/123.0.0.0 Mobile Safari/537.36',
    'Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Mobile Safari/537.36',
    # Android + Firefox
    'Mozilla/5.0 (Android 14; Mobile; rv:121.0) Gecko/121.0 Firefox/121.0',
    # iOS + Safari
    'Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1',
    'Mozilla/5.0 (iPad; CPU OS 17_4 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1',
]

COUNTRY_TIMEZONES = {
    'US': 'America/New_York',
    'BR': 'America/Sao_Paulo',
    'GB': 'Europe/London',
    'DE': 'Europe/Berlin',
    'FR': 'Europe/Paris',
    'JP': 'Asia/Tokyo',
}

COUNTRY_LOCALES = {
    'US': 'en-US',
    'BR': 'pt-BR',
    'GB': 'en-GB',
    'DE': 'de-DE',
    'FR': 'fr-FR',
    'JP': 'ja-JP',
}


def browser_type_from_user_agent(user_agent: str) -> BrowserType:
    """Infer the browser engine from a user agent string."""
    if 'Firefox' in user_agent:
        return BrowserType.FIREFOX
    if 'Chrome' in user_agent or 'CriOS' in user_agent:
        return BrowserType.CHROMIUM
    return BrowserType.WEBKIT


def device_type_from_user_agent(user_agent: str) -> DeviceType:
    """Infer the device class from a user agent string."""
    if 'iPad' in user_agent or ('Android' in user_agent and 'Mobile' not in user_agent):
        return DeviceType.TABLET
    if 'Mobile' in user_agent or 'iPhone' in user_agent:
        return DeviceType.MOBILE
    return DeviceType.DESKTOP


def platform_from_user_agent(user_agent: str) -> str:
    """Navigator platform string matching a user agent."""
    if 'Macintosh' in user_agent:
        return 'MacIntel'
    if 'Android' in user_agent:
        return 'Linux armv8l'
    if 'iPhone' in user_agent:
        return 'iPhone'
    if 'iPad' in user_agent:
        return 'iPad'
    if 'Linux' in user_agent or 'X11' in user_agent:
        return 'Linux x86_64'
    return 'Win32'


@dataclass
class IdentityCriteria:
    """Filter used when acquiring an identity."""
    browser_type: Optional[BrowserType] = None
    device_type: Optional[DeviceType] = None
    country: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'browser_type': self.browser_type.value if self.browser_type else None,
            'device_type': self.device_type.value if self.device_type else None,
            'country': self.country
        }


@dataclass
class BehaviorProfile:
    """Human-like interaction cadence for an identity."""
    typing_mean: float = 150.0  # ms between keys
    typing_variance: float = 40.0
    mouse_speed: float = 900.0  # px/s
    mouse_precision: float = 0.85
    mouse_jerkiness: float = 0.1
    scroll_speed: float = 600.0  # px/s
    dwell_time: float = 5000.0  # ms per page
    reading_pause: bool = True
    click_accuracy: float = 0.9
    error_click_probability: float = 0.05


@dataclass
class Fingerprint:
    """Browser fingerprint bundle."""
    user_agent: str
    platform: str
    browser_type: BrowserType
    device_type: DeviceType
    screen_width: int
    screen_height: int
    pixel_ratio: float
    languages: List[str]
    timezone: str
    plugins: List[str] = field(default_factory=list)
    fonts: List[str] = field(default_factory=list)
    webgl_vendor: Optional[str] = None
    webgl_renderer: Optional[str] = None
    hardware_concurrency: int = 8
    device_memory: int = 8
    do_not_track: bool = False


@dataclass
class Identity:
    """A reusable synthetic browsing identity."""
    id: str
    name: str
    fingerprint: Fingerprint
    behavior: BehaviorProfile = field(default_factory=BehaviorProfile)
    country: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    use_count: int = 0
    last_used: Optional[datetime] = None
    cookies: List[Dict[str, Any]] = field(default_factory=list)
    local_storage: Dict[str, str] = field(default_factory=dict)

    @property
    def user_agent(self) -> str:
        return self.fingerprint.user_agent

    def matches(self, criteria: Optional[IdentityCriteria]) -> bool:
        """Check the identity against acquisition criteria."""
        if criteria is None:
            return True
        if criteria.browser_type and self.fingerprint.browser_type != criteria.browser_type:
            return False
        if criteria.device_type and self.fingerprint.device_type != criteria.device_type:
            return False
        if criteria.country and self.country != criteria.country:
            return False
        return True


class IdentityFactory:
    """Synthesizes realistic identities on demand."""

    def __init__(self, user_agents: Optional[List[str]] = None, max_identities: Optional[int] = None,
                 rng: Optional[random.Random] = None):
        """
        Initialize the factory.

        Args:
            user_agents: User agent database (defaults to the built-in list)
            max_identities: Cap on identities this factory may create (None = unlimited)
            rng: Random generator, injectable for tests
        """
        self.user_agents = list(user_agents or USER_AGENT_DATABASE)
        self.max_identities = max_identities
        self.created_count = 0
        self.rng = rng or random.Random()

    def _candidate_user_agents(self, criteria: Optional[IdentityCriteria]) -> List[str]:
        candidates = self.user_agents
        if criteria and criteria.browser_type:
            candidates = [ua for ua in candidates if browser_type_from_user_agent(ua) == criteria.browser_type]
        if criteria and criteria.device_type:
            candidates = [ua for ua in candidates if device_type_from_user_agent(ua) == criteria.device_type]
        return candidates

    def create(self, criteria: Optional[IdentityCriteria] = None) -> Identity:
        """
        Create a new identity satisfying the criteria.

        Raises:
            IdentityUnavailable: If the factory is exhausted or no user agent fits
        """
        criteria_dict = criteria.to_dict() if criteria else {}

        if self.max_identities is not None and self.created_count >= self.max_identities:
            raise IdentityUnavailable(
                f"Identity factory exhausted ({self.max_identities} identities created)",
                criteria=criteria_dict
            )

        candidates = self._candidate_user_agents(criteria)
        if not candidates:
            raise IdentityUnavailable(f"No user agent satisfies criteria {criteria_dict}", criteria=criteria_dict)

        user_agent = self.rng.choice(candidates)
        platform = platform_from_user_agent(user_agent)
        browser_type = browser_type_from_user_agent(user_agent)
        device_type = device_type_from_user_agent(user_agent)
        country = criteria.country if criteria else None

        width, height, pixel_ratio = self._screen_resolution(device_type)
        fingerprint = Fingerprint(
            user_agent=user_agent,
            platform=platform,
            browser_type=browser_type,
            device_type=device_type,
            screen_width=width,
            screen_height=height,
            pixel_ratio=pixel_ratio,
            languages=[COUNTRY_LOCALES.get(country, 'en-US'), 'en'],
            timezone=COUNTRY_TIMEZONES.get(country, 'America/New_York'),
            plugins=self._plugins(browser_type),
            fonts=self._fonts(platform),
            webgl_vendor=self._webgl_vendor(platform),
            webgl_renderer=self._webgl_renderer(platform),
            hardware_concurrency=self.rng.choice([2, 4, 8, 12, 16]),
            device_memory=self.rng.choice([2, 4, 8, 16]),
            do_not_track=self.rng.random() > 0.8
        )

        self.created_count += 1
        return Identity(
            id=str(uuid.uuid4()),
            name=f"{browser_type.value.capitalize()} {device_type.value} profile {self.created_count}",
            fingerprint=fingerprint,
            behavior=self._behavior_profile(),
            country=country
        )

    def _screen_resolution(self, device_type: DeviceType):
        if device_type == DeviceType.MOBILE:
            return 375 + self.rng.randint(0, 100), 667 + self.rng.randint(0, 200), round(2 + self.rng.random(), 2)
        if device_type == DeviceType.TABLET:
            return 768 + self.rng.randint(0, 100), 1024 + self.rng.randint(0, 100), round(2 + self.rng.random() * 0.5, 2)
        width, height = self.rng.choice([
            (1366, 768), (1440, 900), (1536, 864), (1600, 900), (1920, 1080), (2560, 1440)
        ])
        return width, height, round(1 + self.rng.random(), 2)

    def _plugins(self, browser_type: BrowserType) -> List[str]:
        if browser_type == BrowserType.FIREFOX:
            return []
        if browser_type == BrowserType.WEBKIT:
            return ['WebKit built-in PDF']
        plugins = ['PDF Viewer', 'Chrome PDF Viewer', 'Chromium PDF Viewer', 'Microsoft Edge PDF Viewer', 'WebKit built-in PDF']
        return self.rng.sample(plugins, self.rng.randint(2, len(plugins)))

    def _fonts(self, platform: str) -> List[str]:
        common = ['Arial', 'Verdana', 'Helvetica', 'Times New Roman', 'Courier New']
        if platform.startswith('Win'):
            return common + ['Segoe UI', 'Calibri', 'Cambria', 'Consolas', 'Tahoma']
        if platform.startswith('Mac') or platform in ('iPhone', 'iPad'):
            return common + ['SF Pro', 'Helvetica Neue', 'Menlo', 'Monaco']
        return common + ['Ubuntu', 'DejaVu Sans', 'Liberation Sans', 'Noto Sans']

    def _webgl_vendor(self, platform: str) -> str:
        if platform.startswith('Win'):
            return self.rng.choice(['Google Inc. (NVIDIA)', 'Google Inc. (Intel)', 'Google Inc. (AMD)'])
        if platform.startswith('Mac') or platform in ('iPhone', 'iPad'):
            return 'Apple Inc.'
        return self.rng.choice(['Google Inc.', 'Mesa/X.org', 'Qualcomm'])

    def _webgl_renderer(self, platform: str) -> str:
        if platform.startswith('Win'):
            return self.rng.choice([
                'ANGLE (NVIDIA, NVIDIA GeForce RTX 3060 Direct3D11 vs_5_0 ps_5_0)',
                'ANGLE (Intel, Intel(R) UHD Graphics 630 Direct3D11 vs_5_0 ps_5_0)',
                'ANGLE (AMD, AMD Radeon RX 6600 Direct3D11 vs_5_0 ps_5_0)'
            ])
        if platform.startswith('Mac') or platform in ('iPhone', 'iPad'):
            return 'Apple GPU'
        return self.rng.choice(['Mesa Intel(R) UHD Graphics 620', 'Adreno (TM) 740'])

    def _behavior_profile(self) -> BehaviorProfile:
        return BehaviorProfile(
            typing_mean=100 + self.rng.random() * 150,
            typing_variance=20 + self.rng.random() * 40,
            mouse_speed=500 + self.rng.random() * 1000,
            mouse_precision=0.7 + self.rng.random() * 0.3,
            mouse_jerkiness=self.rng.random() * 0.3,
            scroll_speed=300 + self.rng.random() * 700,
            dwell_time=2000 + self.rng.random() * 8000,
            reading_pause=self.rng.random() > 0.3,
            click_accuracy=0.8 + self.rng.random() * 0.2,
            error_click_probability=self.rng.random() * 0.1
        )


class IdentityPool:
    """
    Thread-safe pool of identities.

    An identity is held by at most one owner (a task id) at a time. Every
    acquire/release is a single check-and-mark under the pool lock.
    """

    def __init__(self, factory: Optional[IdentityFactory] = None,
                 identities: Optional[List[Identity]] = None,
                 rng: Optional[random.Random] = None):
        self.factory = factory or IdentityFactory()
        self.rng = rng or random.Random()
        self._lock = threading.RLock()
        self._identities: Dict[str, Identity] = {}
        self._holders: Dict[str, str] = {}  # identity_id -> owner
        self._last_bound: Dict[str, str] = {}  # owner -> identity_id, kept after release for sticky reuse

        self.stats = {
            'acquired': 0,
            'released': 0,
            'synthesized': 0,
            'rotated': 0
        }

        for identity in identities or []:
            self.add(identity)

    def add(self, identity: Identity) -> Identity:
        """Add a pre-provisioned identity."""
        with self._lock:
            self._identities[identity.id] = identity
        return identity

    def acquire(self, owner: str, criteria: Optional[IdentityCriteria] = None, sticky: bool = False) -> Identity:
        """
        Lease an identity to an owner.

        Args:
            owner: Owner key (the task id)
            criteria: Optional browser/device/country filter
            sticky: Reuse the identity last bound to this owner if still present

        Returns:
            The leased Identity

        Raises:
            IdentityUnavailable: If nothing matches and the factory is exhausted
        """
        with self._lock:
            if sticky:
                previous_id = self._last_bound.get(owner)
                previous = self._identities.get(previous_id) if previous_id else None
                if previous and self._holders.get(previous.id, owner) == owner:
                    return self._bind(owner, previous)
            return self._acquire_locked(owner, criteria)

    def _acquire_locked(self, owner: str, criteria: Optional[IdentityCriteria],
                        exclude: Tuple[str, ...] = ()) -> Identity:
        candidates = [
            identity for identity in self._identities.values()
            if identity.id not in self._holders and identity.id not in exclude and identity.matches(criteria)
        ]

        if candidates:
            selected = self.rng.choice(candidates)
        else:
            selected = self.factory.create(criteria)
            self._identities[selected.id] = selected
            self.stats['synthesized'] += 1
            logger.info(f"Synthesized identity {selected.name} ({selected.id})")

        return self._bind(owner, selected)

    def _bind(self, owner: str, identity: Identity) -> Identity:
        self._holders[identity.id] = owner
        self._last_bound[owner] = identity.id
        self.report_usage(identity.id)
        self.stats['acquired'] += 1
        logger.debug(f"Identity {identity.name} ({identity.id}) leased to {owner}")
        return identity

    def release(self, identity_id: str, owner: Optional[str] = None) -> bool:
        """
        Clear the binding held on an identity. The identity stays in the pool.

        Args:
            identity_id: Identity to release
            owner: When given, only a hold by this owner is cleared

        Returns:
            True if a binding was cleared, False if the identity was not held
            (or is held by someone else)
        """
        with self._lock:
            holder = self._holders.get(identity_id)
            if holder is None or (owner is not None and holder != owner):
                return False
            del self._holders[identity_id]
            owner = holder
            self.stats['released'] += 1
            logger.debug(f"Identity {identity_id} released by {owner}")
            return True

    def report_usage(self, identity_id: str) -> None:
        """Increment the use count and refresh the last-used timestamp."""
        with self._lock:
            identity = self._identities.get(identity_id)
            if identity is None:
                return
            identity.use_count += 1
            identity.last_used = datetime.now()

    def rotate(self, owner: str, criteria: Optional[IdentityCriteria] = None) -> Identity:
        """Release whatever the owner holds and lease a fresh identity."""
        with self._lock:
            previous = tuple(identity_id for identity_id, holder in self._holders.items() if holder == owner)
            for identity_id in previous:
                self.release(identity_id, owner)
            self._last_bound.pop(owner, None)
            identity = self._acquire_locked(owner, criteria, exclude=previous)
            self.stats['rotated'] += 1
        logger.info(f"Identity rotated for {owner}: {identity.name} ({identity.id})")
        return identity

    def update_cookies(self, identity_id: str, cookies: List[Dict[str, Any]]) -> Identity:
        with self._lock:
            identity = self._require(identity_id)
            identity.cookies = list(cookies)
            return identity

    def update_local_storage(self, identity_id: str, local_storage: Dict[str, str]) -> Identity:
        with self._lock:
            identity = self._require(identity_id)
            identity.local_storage = dict(local_storage)
            return identity

    def remove(self, identity_id: str) -> bool:
        """Remove an identity and any binding on it."""
        with self._lock:
            identity = self._identities.pop(identity_id, None)
            if identity is None:
                return False
            self._holders.pop(identity_id, None)
            for owner, bound_id in list(self._last_bound.items()):
                if bound_id == identity_id:
                    del self._last_bound[owner]
            logger.info(f"Identity {identity.name} ({identity_id}) removed")
            return True

    def _require(self, identity_id: str) -> Identity:
        identity = self._identities.get(identity_id)
        if identity is None:
            raise KeyError(f"Identity {identity_id} not found")
        return identity

    def get(self, identity_id: str) -> Optional[Identity]:
        with self._lock:
            return self._identities.get(identity_id)

    def get_all(self) -> List[Identity]:
        with self._lock:
            return list(self._identities.values())

    def is_held(self, identity_id: str) -> bool:
        with self._lock:
            return identity_id in self._holders

    def get_stats(self) -> Dict[str, Any]:
        """Get pool statistics."""
        with self._lock:
            return {
                **self.stats,
                'total_identities': len(self._identities),
                'in_use': len(self._holders),
                'available': len(self._identities) - len(self._holders)
            }
