"""
Pydantic models for scan configs, scan logs, sources, tasks, and briefings.
"""

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def coerce_date(value: Any) -> Optional[date]:
    """
    Best-effort conversion of an LLM- or API-provided value to a date.

    Accepts date/datetime objects and ISO strings ("2026-02-04" or
    "2026-02-04T10:00:00Z"). Anything unparseable becomes None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class EmailProvider(str, Enum):
    GMAIL = "gmail"
    OUTLOOK = "outlook"


class TaskStatus(str, Enum):
    INBOX = "inbox"
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"
    DONE = "done"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (TaskStatus.DONE, TaskStatus.CANCELLED)


class TaskPriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


PRIORITY_ORDER: List[TaskPriority] = [
    TaskPriority.URGENT,
    TaskPriority.HIGH,
    TaskPriority.MEDIUM,
    TaskPriority.LOW,
    TaskPriority.NONE,
]


class TaskSourceType(str, Enum):
    MANUAL = "manual"
    EMAIL = "email"
    MEETING = "meeting"
    BRIEFING = "briefing"


class ScanStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class NotificationType(str, Enum):
    SCAN_COMPLETE = "scan_complete"
    REVIEW_NEEDED = "review_needed"
    BRIEFING_READY = "briefing_ready"


class BriefingFeedback(str, Enum):
    THUMBS_UP = "thumbs_up"
    THUMBS_DOWN = "thumbs_down"


# ---------------------------------------------------------------------------
# Mailbox shapes
# ---------------------------------------------------------------------------


class NormalizedEmail(BaseModel):
    """
    Provider-independent view of one email.

    `date` is kept as the provider's raw string (RFC 2822 for Gmail, ISO 8601
    for Outlook); it is only passed through to the LLM and Source metadata.
    """

    id: str
    subject: str = "(No subject)"
    sender: str = ""
    date: str = ""
    body: str = ""
    snippet: str = ""

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=False,
    )


class EmailStub(BaseModel):
    """
    Identity of a recent message, enough to dedup before fetching detail.

    Providers that return full bodies in the list call attach the normalized
    email directly so no second round-trip is needed.
    """

    id: str
    thread_id: Optional[str] = None
    email: Optional[NormalizedEmail] = None


class OAuthTokens(BaseModel):
    """Result of exchanging an authorization code."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    email_address: str = ""


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------


class ScanConfig(BaseModel):
    """
    Email scanning configuration, one per (workspace, user, provider).
    """

    id: str = Field(default_factory=_new_id)
    workspace_id: str
    user_id: str
    provider: EmailProvider = EmailProvider.GMAIL
    enabled: bool = True
    scan_interval_hours: int = 3
    confidence_threshold: float = 0.7
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    weekend_scan: bool = False
    encrypted_access_token: Optional[str] = None
    encrypted_refresh_token: Optional[str] = None
    email_address: Optional[str] = None
    last_scan_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=False,
    )


class ScanLog(BaseModel):
    """
    Append-only record of one orchestrator run.
    """

    id: str = Field(default_factory=_new_id)
    config_id: str
    workspace_id: str
    emails_scanned: int = 0
    tasks_extracted: int = 0
    tasks_for_review: int = 0
    errors: List[str] = Field(default_factory=list)
    status: ScanStatus = ScanStatus.RUNNING
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=False,
    )


class Source(BaseModel):
    """
    Dedup anchor for an externally-identified item that produced tasks.
    """

    id: str = Field(default_factory=_new_id)
    workspace_id: str
    type: TaskSourceType = TaskSourceType.EMAIL
    external_id: Optional[str] = None
    title: str = ""
    content_preview: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class CandidateTask(BaseModel):
    """
    A task proposed by the LLM for one email.

    The validators coerce sloppy model output instead of rejecting it:
    unknown priorities become "none", out-of-range scores become 0.5.
    """

    title: str
    description: Optional[str] = None
    priority: TaskPriority = TaskPriority.NONE
    due_date: Optional[date] = None
    confidence_score: float = 0.5

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title must not be empty")
        return v

    @field_validator("description", mode="before")
    @classmethod
    def coerce_description(cls, v: Any) -> Optional[str]:
        if not v:
            return None
        return str(v)

    @field_validator("priority", mode="before")
    @classmethod
    def coerce_priority(cls, v: Any) -> TaskPriority:
        try:
            return TaskPriority(v)
        except ValueError:
            return TaskPriority.NONE

    @field_validator("due_date", mode="before")
    @classmethod
    def coerce_due_date(cls, v: Any) -> Optional[date]:
        return coerce_date(v)

    @field_validator("confidence_score", mode="before")
    @classmethod
    def coerce_confidence(cls, v: Any) -> float:
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return 0.5
        if not 0 <= v <= 1:
            return 0.5
        return round(float(v), 2)


class Task(BaseModel):
    """
    A task in a workspace backlog.
    """

    id: str = Field(default_factory=_new_id)
    workspace_id: str
    project_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.INBOX
    priority: TaskPriority = TaskPriority.NONE
    due_date: Optional[date] = None
    assignee_id: Optional[str] = None
    creator_id: Optional[str] = None
    source_type: TaskSourceType = TaskSourceType.MANUAL
    source_id: Optional[str] = None
    confidence_score: Optional[float] = None
    needs_review: bool = False
    tags: List[str] = Field(default_factory=list)
    position: int = 0
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("due_date", mode="before")
    @classmethod
    def coerce_due_date(cls, v: Any) -> Optional[date]:
        return coerce_date(v)

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=False,
    )


# ---------------------------------------------------------------------------
# Briefings
# ---------------------------------------------------------------------------


class BriefingFilters(BaseModel):
    projects: List[str] = Field(default_factory=list)
    priorities: List[TaskPriority] = Field(default_factory=list)


class BriefingPreference(BaseModel):
    """
    Per-user briefing delivery settings. Defaults apply when none is stored.
    """

    id: Optional[str] = None
    workspace_id: str
    user_id: str
    delivery_time: str = "08:00"
    timezone: str = "America/New_York"
    enabled: bool = False
    include_email: bool = False
    filters: BriefingFilters = Field(default_factory=BriefingFilters)
    created_at: Optional[datetime] = None

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=False,
    )


class TopOutcome(BaseModel):
    task_id: str
    title: str
    priority: TaskPriority = TaskPriority.NONE


class MustDoItem(BaseModel):
    task_id: str
    title: str
    due_date: Optional[date] = None
    priority: TaskPriority = TaskPriority.NONE


class DeferSuggestion(BaseModel):
    task_id: str
    title: str
    reason: str = ""


class WaitingOnItem(BaseModel):
    task_id: str
    title: str
    waiting_for: str


class OverdueItem(BaseModel):
    task_id: str
    title: str
    days_overdue: int
    priority: TaskPriority = TaskPriority.NONE


class BriefingSummary(BaseModel):
    total_tasks: int = 0
    urgent_count: int = 0
    completed_today: int = 0
    overview: str = ""


class BriefingContent(BaseModel):
    """
    Structured daily digest.
    """

    top_outcomes: List[TopOutcome] = Field(default_factory=list)
    must_do: List[MustDoItem] = Field(default_factory=list)
    defer_suggestions: List[DeferSuggestion] = Field(default_factory=list)
    waiting_on: List[WaitingOnItem] = Field(default_factory=list)
    overdue: List[OverdueItem] = Field(default_factory=list)
    summary: BriefingSummary = Field(default_factory=BriefingSummary)
    ai_generated: bool = False


class Briefing(BaseModel):
    """
    One generated briefing per (workspace, user, date).
    """

    id: str = Field(default_factory=_new_id)
    workspace_id: str
    user_id: str
    briefing_date: date
    content: BriefingContent
    feedback: Optional[BriefingFeedback] = None
    feedback_notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=False,
    )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Notification(BaseModel):
    id: str = Field(default_factory=_new_id)
    workspace_id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    read: bool = False
    action_url: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# File-level containers
# ---------------------------------------------------------------------------


class ScanConfigsFile(BaseModel):
    """
    Container for scan_configs.json.
    """

    configs: List[ScanConfig] = Field(default_factory=list)


class ScanLogsFile(BaseModel):
    logs: List[ScanLog] = Field(default_factory=list)


class SourcesFile(BaseModel):
    sources: List[Source] = Field(default_factory=list)


class TasksFile(BaseModel):
    """
    Container for tasks.json.
    """

    tasks: List[Task] = Field(default_factory=list)


class BriefingsFile(BaseModel):
    briefings: List[Briefing] = Field(default_factory=list)


class BriefingPreferencesFile(BaseModel):
    preferences: List[BriefingPreference] = Field(default_factory=list)


class NotificationsFile(BaseModel):
    notifications: List[Notification] = Field(default_factory=list)


__all__ = [
    "EmailProvider",
    "TaskStatus",
    "TaskPriority",
    "TaskSourceType",
    "ScanStatus",
    "NotificationType",
    "BriefingFeedback",
    "TERMINAL_STATUSES",
    "PRIORITY_ORDER",
    "coerce_date",
    "NormalizedEmail",
    "EmailStub",
    "OAuthTokens",
    "ScanConfig",
    "ScanLog",
    "Source",
    "CandidateTask",
    "Task",
    "BriefingFilters",
    "BriefingPreference",
    "TopOutcome",
    "MustDoItem",
    "DeferSuggestion",
    "WaitingOnItem",
    "OverdueItem",
    "BriefingSummary",
    "BriefingContent",
    "Briefing",
    "Notification",
    "ScanConfigsFile",
    "ScanLogsFile",
    "SourcesFile",
    "TasksFile",
    "BriefingsFile",
    "BriefingPreferencesFile",
    "NotificationsFile",
]
