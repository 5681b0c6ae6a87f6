"""Data models for the productivity agent."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

TASK_PRIORITIES = ("low", "medium", "high", "urgent")
TASK_STATUSES = ("todo", "in-progress", "completed", "cancelled")
OPEN_TASK_STATUSES = ("todo", "in-progress")
PROJECT_STATUSES = ("active", "completed", "archived")
MESSAGE_TYPES = ("user", "assistant")
AI_PERSONALITIES = ("professional", "casual", "friendly")


@dataclass
class Task:
    id: str
    user_id: str
    title: str
    description: str | None = None
    priority: str = "medium"
    status: str = "todo"
    due_date: datetime | None = None
    project_id: str | None = None
    tags: list[str] = field(default_factory=list)
    estimated_duration: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Project:
    id: str
    user_id: str
    name: str
    description: str | None = None
    status: str = "active"
    task_ids: list[str] = field(default_factory=list)
    deadline: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class ChatMessage:
    id: str
    user_id: str
    content: str
    timestamp: datetime
    type: str
    metadata: dict | None = None


@dataclass
class WorkingHours:
    start: str = "09:00"
    end: str = "17:00"


@dataclass
class PriorityWeights:
    urgency: float = 0.4
    importance: float = 0.3
    deadline: float = 0.3


@dataclass
class Preferences:
    working_hours: WorkingHours = field(default_factory=WorkingHours)
    timezone: str = "UTC"
    priority_weights: PriorityWeights = field(default_factory=PriorityWeights)
    ai_personality: str = "professional"


@dataclass
class UserProfile:
    user_id: str
    preferences: Preferences = field(default_factory=Preferences)
    latest_schedule: dict | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Notification:
    id: str
    user_id: str
    kind: str
    message: str
    data: dict | None = None
    created_at: datetime | None = None


# ── Timestamps ────────────────────────────────────────────────────────────────


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_dt(val: datetime | None) -> str | None:
    """Serialize a datetime as fixed-width UTC ISO-8601 so text order is time order."""
    if val is None:
        return None
    return to_utc(val).isoformat(timespec="microseconds")


def parse_dt(val: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 value into an aware UTC datetime. Naive values are taken as UTC."""
    if val is None or val == "":
        return None
    if isinstance(val, datetime):
        return to_utc(val)
    text = val.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise ValueError(f"Invalid timestamp: {val!r}") from e
    return to_utc(parsed)


def to_utc(val: datetime) -> datetime:
    if val.tzinfo is None:
        return val.replace(tzinfo=timezone.utc)
    return val.astimezone(timezone.utc)


def advance(previous: datetime | None) -> datetime:
    """Current time, nudged past ``previous`` so updated_at strictly increases."""
    now = utcnow()
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    return now
