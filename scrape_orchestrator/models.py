"""
Task Data Model

Pydantic models for caller-supplied task options, plus the runtime Task
and StatusRecord structures owned by the orchestrator.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Dict, Any, Literal

import validators
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .config import ScrapingMethod, TaskState, BrowserType, DeviceType, EvasionLevel, ProxyType, BehaviorSettings
from .exceptions import ValidationError


class SelectorSpec(BaseModel):
    """Selector used to extract one field of data."""
    name: str
    selector: str
    selector_type: Literal['css', 'xpath', 'visual'] = 'css'
    multiple: bool = False
    attribute: Optional[str] = None
    required: bool = False


class PaginationSpec(BaseModel):
    """How to walk through result pages."""
    type: Literal['infinite-scroll', 'button-click', 'page-number']
    selector: Optional[str] = None
    max_pages: int = Field(default=5, ge=1)


class AuthenticationSpec(BaseModel):
    """Login performed before extraction."""
    required: bool = False
    type: Literal['form', 'oauth', 'basic', 'token'] = 'form'
    username: Optional[str] = None
    password: Optional[str] = None
    login_url: Optional[str] = None
    username_selector: Optional[str] = None
    password_selector: Optional[str] = None
    submit_selector: Optional[str] = None


class BrowserSettingsSpec(BaseModel):
    """Browser descriptors requested by a task."""
    browser_type: BrowserType = BrowserType.CHROMIUM
    device_type: Optional[DeviceType] = None
    country: Optional[str] = None
    viewport_width: int = 1920
    viewport_height: int = 1080


class BehaviorSettingsSpec(BaseModel):
    """Partial behavior settings; unset fields fall through to defaults."""
    human_like: Optional[bool] = None
    randomize_user_agent: Optional[bool] = None
    respect_robots_txt: Optional[bool] = None
    evasion_level: Optional[EvasionLevel] = None
    min_delay: Optional[int] = None
    max_delay: Optional[int] = None


class TaskOptions(BaseModel):
    """Options a caller supplies when creating a task."""
    name: str
    target_url: str
    description: Optional[str] = None
    method: Optional[ScrapingMethod] = None
    fallback_methods: Optional[List[ScrapingMethod]] = None
    selectors: List[SelectorSpec] = Field(default_factory=list)
    wait_for_selector: Optional[str] = None
    pagination: Optional[PaginationSpec] = None
    authentication: Optional[AuthenticationSpec] = None
    browser_settings: BrowserSettingsSpec = Field(default_factory=BrowserSettingsSpec)
    behavior_settings: BehaviorSettingsSpec = Field(default_factory=BehaviorSettingsSpec)
    use_proxy: bool = True
    proxy_country: Optional[str] = None
    proxy_type: Optional[ProxyType] = None
    proxy_pool: Optional[str] = None
    sticky_identity: bool = False
    items_total: Optional[int] = Field(default=None, ge=1)
    timeout: Optional[float] = Field(default=None, gt=0)
    output_format: Literal['json', 'csv', 'xlsx'] = 'json'

    @field_validator('name')
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Task name is required")
        return value.strip()

    @field_validator('target_url')
    @classmethod
    def target_url_valid(cls, value: str) -> str:
        if not value:
            raise ValueError("Target URL is required")
        if not validators.url(value):
            raise ValueError(f"Invalid target URL: {value}")
        return value

    @field_validator('fallback_methods')
    @classmethod
    def fallback_without_hybrid(cls, value: Optional[List[ScrapingMethod]]) -> Optional[List[ScrapingMethod]]:
        if value is not None:
            if not value:
                raise ValueError("fallback_methods must not be empty")
            if ScrapingMethod.HYBRID in value:
                raise ValueError("fallback_methods cannot contain hybrid")
        return value

    def has_visual_selectors(self) -> bool:
        return any(selector.selector_type == 'visual' for selector in self.selectors)


def parse_task_options(options: Any) -> TaskOptions:
    """
    Validate caller options into a TaskOptions model.

    Raises:
        ValidationError: If the options are malformed
    """
    if isinstance(options, TaskOptions):
        return options
    if not isinstance(options, dict):
        raise ValidationError("Task options must be a mapping")

    try:
        return TaskOptions.model_validate(options)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get('loc', ()))
        message = first.get('msg', str(e)).removeprefix("Value error, ")
        raise ValidationError(
            f"Invalid task options ({location}): {message}" if location else f"Invalid task options: {message}",
            field=location or None,
            details={'errors': [err.get('msg') for err in e.errors()]}
        )


@dataclass
class ErrorLogEntry:
    """One entry of a task's error log."""
    message: str
    method: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'method': self.method,
            'message': self.message,
            'timestamp': self.timestamp.isoformat()
        }


@dataclass
class StatusRecord:
    """Mutable status of a task."""
    id: str
    name: str
    target_url: str
    method: ScrapingMethod
    state: TaskState = TaskState.IDLE
    progress: float = 0.0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    last_error: Optional[str] = None
    last_run: Optional[datetime] = None
    items_processed: int = 0
    items_total: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'target_url': self.target_url,
            'method': self.method.value,
            'state': self.state.value,
            'progress': round(self.progress, 1),
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'last_error': self.last_error,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'items_processed': self.items_processed,
            'items_total': self.items_total
        }


@dataclass
class Task:
    """A unit of scraping work."""
    id: str
    options: TaskOptions
    status: StatusRecord
    results: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[ErrorLogEntry] = field(default_factory=list)
    stop_requested: bool = False
    pause_requested: bool = False
    session_id: Optional[str] = None
    identity_id: Optional[str] = None
    proxy_id: Optional[str] = None
    advice: Optional[Any] = None  # last vision advisor analysis
    behavior: Optional[BehaviorSettings] = None  # resolved at start
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def name(self) -> str:
        return self.options.name

    @property
    def target_url(self) -> str:
        return self.options.target_url

    @property
    def state(self) -> TaskState:
        return self.status.state

    @classmethod
    def create(cls, options: TaskOptions, method: ScrapingMethod, task_id: Optional[str] = None) -> "Task":
        """Build an idle task from validated options."""
        task_id = task_id or str(uuid.uuid4())
        status = StatusRecord(
            id=task_id,
            name=options.name,
            target_url=options.target_url,
            method=method,
            items_total=options.items_total
        )
        return cls(id=task_id, options=options, status=status)

    def to_definition(self) -> Dict[str, Any]:
        """Serializable task definition for persistence."""
        return {
            'id': self.id,
            'name': self.name,
            'description': self.options.description,
            'target_url': self.target_url,
            'created_at': self.created_at.isoformat(),
            'updated_at': datetime.now().isoformat(),
            'config': self.options.model_dump(mode='json')
        }
