"""
Configuration Module

Enumerations shared across the orchestrator, layered behavior-settings
resolution and the global orchestrator configuration.
"""

import os
import logging
from dataclasses import dataclass, field, fields, replace
from typing import Optional, Dict, Any, Mapping
from enum import Enum

from .exceptions import ConfigurationError


logger = logging.getLogger(__name__)


class ScrapingMethod(Enum):
    """Execution strategies available to satisfy a task."""
    BROWSER_AUTOMATION = "browser-automation"
    API_CLIENT = "api-client"
    VISUAL_SCRAPING = "visual-scraping"
    HYBRID = "hybrid"
    DIRECT_REQUEST = "direct-request"


class EvasionLevel(Enum):
    """Detection evasion levels."""
    BASIC = "basic"
    STANDARD = "standard"
    ADVANCED = "advanced"
    MAXIMUM = "maximum"


class TaskState(Enum):
    """Lifecycle states of a task."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class BrowserType(Enum):
    """Browser engines."""
    CHROMIUM = "chromium"
    FIREFOX = "firefox"
    WEBKIT = "webkit"


class DeviceType(Enum):
    """Device classes an identity can impersonate."""
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


class ProxyType(Enum):
    """Proxy network types."""
    RESIDENTIAL = "residential"
    DATACENTER = "datacenter"
    MOBILE = "mobile"
    CUSTOM = "custom"


# Fixed cascade for the hybrid method
HYBRID_FALLBACK_ORDER = (
    ScrapingMethod.BROWSER_AUTOMATION,
    ScrapingMethod.VISUAL_SCRAPING,
    ScrapingMethod.API_CLIENT,
)

DEFAULT_MAX_CONCURRENT_TASKS = 5


@dataclass(frozen=True)
class BehaviorSettings:
    """Fully-populated behavior settings for one task."""
    human_like: bool = True
    randomize_user_agent: bool = True
    respect_robots_txt: bool = True
    evasion_level: EvasionLevel = EvasionLevel.STANDARD
    min_delay: int = 500  # milliseconds
    max_delay: int = 3000  # milliseconds


BUILTIN_BEHAVIOR_SETTINGS = BehaviorSettings()


def resolve_behavior_settings(task_override: Optional[Mapping[str, Any]] = None,
                              pool_default: Optional[Mapping[str, Any]] = None,
                              builtin_default: BehaviorSettings = BUILTIN_BEHAVIOR_SETTINGS) -> BehaviorSettings:
    """
    Resolve behavior settings from three layers.

    Each field comes from the first layer that sets it (task, then pool,
    then built-in). ``None`` in a layer means "unset".

    Args:
        task_override: Partial settings supplied by the task
        pool_default: Partial settings configured for the orchestrator
        builtin_default: Complete fallback settings

    Returns:
        BehaviorSettings with every field populated
    """
    resolved: Dict[str, Any] = {}
    for settings_field in fields(BehaviorSettings):
        name = settings_field.name
        for layer in (task_override, pool_default):
            if layer and layer.get(name) is not None:
                resolved[name] = layer[name]
                break

    if 'evasion_level' in resolved and not isinstance(resolved['evasion_level'], EvasionLevel):
        try:
            resolved['evasion_level'] = EvasionLevel(resolved['evasion_level'])
        except ValueError:
            raise ConfigurationError(f"Unsupported evasion level: {resolved['evasion_level']}")

    settings = replace(builtin_default, **resolved)
    if settings.min_delay > settings.max_delay:
        raise ConfigurationError(
            f"min_delay ({settings.min_delay}) must not exceed max_delay ({settings.max_delay})"
        )
    return settings


@dataclass
class OrchestratorConfig:
    """Global configuration for the orchestrator."""
    max_concurrent_tasks: int = DEFAULT_MAX_CONCURRENT_TASKS
    navigation_timeout: float = 30.0  # seconds
    network_timeout: float = 60.0  # seconds
    progress_interval: float = 5.0  # seconds
    progress_horizon: float = 600.0  # seconds assumed for time-based progress
    proxy_retest_cooldown: float = 300.0  # seconds
    data_directory: str = "data"
    behavior_defaults: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.max_concurrent_tasks <= 0:
            raise ConfigurationError("max_concurrent_tasks must be greater than 0")
        if self.navigation_timeout <= 0 or self.network_timeout <= 0:
            raise ConfigurationError("timeouts must be greater than 0")

    @classmethod
    def from_env(cls, **overrides) -> "OrchestratorConfig":
        """
        Build a configuration from environment variables.

        ``SCRAPER_MAX_CONCURRENT_TASKS`` and ``SCRAPER_DATA_DIR`` are read;
        explicit keyword overrides win over the environment.
        """
        values: Dict[str, Any] = {}

        env_max_tasks = os.getenv('SCRAPER_MAX_CONCURRENT_TASKS')
        if env_max_tasks:
            try:
                values['max_concurrent_tasks'] = int(env_max_tasks)
            except ValueError:
                logger.warning(
                    f"Invalid SCRAPER_MAX_CONCURRENT_TASKS value: {env_max_tasks}. "
                    f"Using {DEFAULT_MAX_CONCURRENT_TASKS}."
                )

        env_data_dir = os.getenv('SCRAPER_DATA_DIR')
        if env_data_dir:
            values['data_directory'] = env_data_dir

        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    def resolve_behavior(self, task_override: Optional[Mapping[str, Any]] = None) -> BehaviorSettings:
        """Resolve a task's behavior settings against this configuration's defaults."""
        return resolve_behavior_settings(task_override, self.behavior_defaults)
