"""
Scrape Orchestrator

Runs scraping tasks with pooled identities and proxies, leased browser
sessions and a method fallback cascade under a global concurrency cap.
"""

from .config import (
    BehaviorSettings, BrowserType, DeviceType, EvasionLevel, OrchestratorConfig, ProxyType,
    ScrapingMethod, TaskState, resolve_behavior_settings
)
from .exceptions import (
    AllMethodsExhausted, AlreadyRunning, AttemptFailure, CancellationRequested, ConcurrencyLimitExceeded,
    ConfigurationError, IdentityUnavailable, OrchestratorError, TaskNotFound, ValidationError
)
from .identity_pool import Identity, IdentityCriteria, IdentityFactory, IdentityPool
from .models import StatusRecord, Task, TaskOptions
from .orchestrator import OrchestratorEvent, ScrapeOrchestrator, create_orchestrator
from .proxy_pool import Proxy, ProxyCriteria, ProxyPool, ProxyStatus, SelectionStrategy
from .result_sink import FileResultSink, ResultSink
from .session_lease import Session, SessionLeaseManager
from .vision import ContextAnalysis, ChallengeReport, VisionAdvisor

__version__ = "0.1.0"

__all__ = [
    'AllMethodsExhausted', 'AlreadyRunning', 'AttemptFailure', 'BehaviorSettings', 'BrowserType',
    'CancellationRequested', 'ChallengeReport', 'ConcurrencyLimitExceeded', 'ConfigurationError',
    'ContextAnalysis', 'DeviceType', 'EvasionLevel', 'FileResultSink', 'Identity', 'IdentityCriteria',
    'IdentityFactory', 'IdentityPool', 'IdentityUnavailable', 'OrchestratorConfig', 'OrchestratorError',
    'OrchestratorEvent', 'Proxy', 'ProxyCriteria', 'ProxyPool', 'ProxyStatus', 'ProxyType', 'ResultSink',
    'ScrapeOrchestrator', 'ScrapingMethod', 'SelectionStrategy', 'Session', 'SessionLeaseManager',
    'StatusRecord', 'Task', 'TaskNotFound', 'TaskOptions', 'TaskState', 'ValidationError', 'VisionAdvisor',
    'create_orchestrator', 'resolve_behavior_settings',
]
