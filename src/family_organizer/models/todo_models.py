"""
Pydantic models for tasks and meetings (todos).

A todo is a single entity discriminated by ``type``. Tasks and meetings
share the core fields; meetings additionally carry a time slot, link, agenda
and attendee list, and those fields are rejected on tasks. Every stored todo
keeps ``completed_at`` set exactly when ``status`` is completed and carries a
``version`` that increases on each mutation.

Request, filter and result models for the workflow and query managers live
here as well so the managers exchange typed data rather than loose dicts.
"""

from datetime import date, datetime
from enum import Enum
import re
from typing import Any, Dict, FrozenSet, List, Optional
from urllib.parse import urlparse
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from family_organizer.utils.datetime_utils import (
    combine_due,
    days_between,
    ensure_timezone_aware,
    utc_now,
)

TITLE_MAX_LENGTH = 200
DESCRIPTION_MAX_LENGTH = 1000
COMMENT_MAX_LENGTH = 500
TAG_MAX_LENGTH = 50
AGENDA_MAX_LENGTH = 2000
DEFAULT_CATEGORY = "general"

DUE_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):[0-5]\d$")


class TodoType(str, Enum):
    TASK = "task"
    MEETING = "meeting"


class TodoStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TodoPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class CommentType(str, Enum):
    USER = "user"
    SYSTEM = "system"


# Every status may move to every status, including itself.
STATUS_TRANSITIONS: Dict[TodoStatus, FrozenSet[TodoStatus]] = {
    status: frozenset(TodoStatus) for status in TodoStatus
}

MEETING_ONLY_FIELDS = ("start_time", "end_time", "meeting_link", "agenda", "attendees")
# Tasks have no fields a meeting lacks.
TASK_ONLY_FIELDS: tuple = ()


def is_transition_allowed(current: TodoStatus, new: TodoStatus) -> bool:
    return new in STATUS_TRANSITIONS.get(current, frozenset())


def new_todo_id() -> str:
    return str(uuid.uuid4())


def clean_tags(tags: List[str]) -> List[str]:
    """Strip, drop empties and de-duplicate while keeping first-seen order."""
    cleaned: List[str] = []
    for tag in tags or []:
        tag = str(tag).strip()
        if not tag:
            continue
        if len(tag) > TAG_MAX_LENGTH:
            raise ValueError(f"Tags must be at most {TAG_MAX_LENGTH} characters")
        if tag not in cleaned:
            cleaned.append(tag)
    return cleaned


def _has_value(value: Any) -> bool:
    return value not in (None, "", [], ())


class Comment(BaseModel):
    """A comment on a todo. Appended, never edited."""

    id: str = Field(default_factory=new_todo_id)
    text: str = Field(..., min_length=1, max_length=COMMENT_MAX_LENGTH)
    user_id: str
    type: CommentType = CommentType.USER
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("text", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v


class TodoFields(BaseModel):
    """Fields a caller may supply when creating a todo."""

    type: TodoType = TodoType.TASK
    title: str = Field(..., min_length=1, max_length=TITLE_MAX_LENGTH)
    description: str = Field("", max_length=DESCRIPTION_MAX_LENGTH)
    status: TodoStatus = TodoStatus.PENDING
    priority: TodoPriority = TodoPriority.MEDIUM
    category: str = Field(DEFAULT_CATEGORY, max_length=TAG_MAX_LENGTH)
    assigned_to: str = Field(..., min_length=1)
    due_date: Optional[date] = None
    due_time: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    # Meeting only
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    meeting_link: Optional[str] = None
    agenda: str = Field("", max_length=AGENDA_MAX_LENGTH)
    attendees: List[str] = Field(default_factory=list)

    @field_validator("title", "assigned_to", mode="before")
    @classmethod
    def strip_required_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("description", "agenda", mode="before")
    @classmethod
    def strip_optional_text(cls, v):
        if v is None:
            return ""
        return v.strip() if isinstance(v, str) else v

    @field_validator("category", mode="before")
    @classmethod
    def default_category(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return DEFAULT_CATEGORY
        return v.strip() if isinstance(v, str) else v

    @field_validator("due_time", mode="before")
    @classmethod
    def validate_due_time(cls, v):
        if v is None or v == "":
            return None
        if not DUE_TIME_PATTERN.match(str(v)):
            raise ValueError("Due time must be in HH:MM format")
        return str(v)

    @field_validator("tags", mode="before")
    @classmethod
    def validate_tags(cls, v):
        return clean_tags(v)

    @field_validator("attendees", mode="before")
    @classmethod
    def dedupe_attendees(cls, v):
        seen: List[str] = []
        for attendee in v or []:
            attendee = str(attendee).strip()
            if attendee and attendee not in seen:
                seen.append(attendee)
        return seen

    @field_validator("meeting_link", mode="before")
    @classmethod
    def validate_meeting_link(cls, v):
        if v is None or v == "":
            return None
        parsed = urlparse(str(v))
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("Meeting link must be a valid URL")
        return str(v)

    @field_validator("start_time", "end_time")
    @classmethod
    def aware_times(cls, v):
        return ensure_timezone_aware(v) if v is not None else v

    @model_validator(mode="after")
    def validate_discriminated_fields(self):
        if self.type == TodoType.TASK:
            present = [name for name in MEETING_ONLY_FIELDS if _has_value(getattr(self, name))]
            if present:
                raise ValueError(f"Fields only valid for meetings: {', '.join(present)}")
        else:
            present = [name for name in TASK_ONLY_FIELDS if _has_value(getattr(self, name))]
            if present:
                raise ValueError(f"Fields only valid for tasks: {', '.join(present)}")
            if self.start_time and self.end_time and self.end_time <= self.start_time:
                raise ValueError("End time must be after start time")
        return self


class CreateTodoRequest(TodoFields):
    """Request model for creating a task or meeting."""

    model_config = ConfigDict(extra="forbid")


class Todo(TodoFields):
    """Stored task or meeting."""

    id: str = Field(default_factory=new_todo_id)
    created_by: str
    family_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    comments: List[Comment] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = Field(1, ge=1)

    @model_validator(mode="after")
    def validate_completion_stamp(self):
        if self.status == TodoStatus.COMPLETED and self.completed_at is None:
            raise ValueError("Completed todos must have completed_at set")
        if self.status != TodoStatus.COMPLETED and self.completed_at is not None:
            raise ValueError("Only completed todos may have completed_at set")
        return self

    def due_at(self) -> Optional[datetime]:
        return combine_due(self.due_date, self.due_time)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        due = self.due_at()
        if due is None or self.status == TodoStatus.COMPLETED:
            return False
        return ensure_timezone_aware(now or utc_now()) > due

    def days_until_due(self, now: Optional[datetime] = None) -> Optional[int]:
        due = self.due_at()
        if due is None:
            return None
        return days_between(due, now)

    def involves(self, user_id: str) -> bool:
        """True when the user is the assignee or a meeting attendee."""
        return self.assigned_to == user_id or (self.type == TodoType.MEETING and user_id in self.attendees)

    def to_document(self) -> Dict[str, Any]:
        document = self.model_dump(mode="python")
        document["type"] = self.type.value
        document["status"] = self.status.value
        document["priority"] = self.priority.value
        # Calendar dates are not a BSON type; ISO strings keep ordering.
        document["due_date"] = self.due_date.isoformat() if self.due_date else None
        document["comments"] = [{**c, "type": c["type"].value} for c in document["comments"]]
        return document

    def api_view(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        view = self.model_dump(mode="json")
        view["is_overdue"] = self.is_overdue(now)
        view["days_until_due"] = self.days_until_due(now)
        return view


class UpdateTodoRequest(BaseModel):
    """Partial update of a todo. Only fields explicitly set are applied."""

    model_config = ConfigDict(extra="forbid")

    type: Optional[TodoType] = None
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TodoStatus] = None
    priority: Optional[TodoPriority] = None
    category: Optional[str] = None
    assigned_to: Optional[str] = None
    due_date: Optional[date] = None
    due_time: Optional[str] = None
    tags: Optional[List[str]] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    meeting_link: Optional[str] = None
    agenda: Optional[str] = None
    attendees: Optional[List[str]] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class BulkUpdatePatch(BaseModel):
    """Fields a bulk update may change. Anything else in the patch is ignored."""

    model_config = ConfigDict(extra="ignore")

    status: Optional[TodoStatus] = None
    priority: Optional[TodoPriority] = None
    category: Optional[str] = None
    assigned_to: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        return {k: v for k, v in self.model_dump(exclude_unset=True).items() if v is not None}


class BulkUpdateError(BaseModel):
    id: str
    reason: str


class BulkUpdateSummary(BaseModel):
    total: int
    successful: int
    failed: int


class BulkUpdateResult(BaseModel):
    updated: List[Dict[str, Any]] = Field(default_factory=list)
    errors: List[BulkUpdateError] = Field(default_factory=list)
    summary: BulkUpdateSummary


class TodoFilters(BaseModel):
    """Filters and paging for listing todos."""

    assigned_to: Optional[str] = None
    status: Optional[TodoStatus] = None
    type: Optional[TodoType] = None
    priority: Optional[TodoPriority] = None
    category: Optional[str] = None
    tag: Optional[str] = None
    due_date: Optional[date] = None
    search: Optional[str] = None
    family_id: Optional[str] = None
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1)

    @field_validator("assigned_to", mode="before")
    @classmethod
    def all_means_no_filter(cls, v):
        if v is None or (isinstance(v, str) and v.strip().lower() in ("", "all")):
            return None
        return v


class Pagination(BaseModel):
    """Paging metadata. `total` counts items on this page, `total_count` all matches."""

    page: int
    limit: int
    total: int
    total_count: int
    total_pages: int
    has_next: bool
    has_previous: bool


class PaginatedTodos(BaseModel):
    items: List[Todo]
    pagination: Pagination


class SearchResult(BaseModel):
    query: str
    results: List[Todo]
    count: int


class TodoStatistics(BaseModel):
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    cancelled: int = 0
    overdue: int = 0
    completion_rate: int = 0
    by_type: Dict[str, int] = Field(default_factory=lambda: {"tasks": 0, "meetings": 0})
    by_priority: Dict[str, int] = Field(default_factory=lambda: {p.value: 0 for p in TodoPriority})
    by_category: Dict[str, int] = Field(default_factory=dict)
    by_assignee: Dict[str, int] = Field(default_factory=dict)
    period: str = "all time"


class UpcomingTodos(BaseModel):
    todos: List[Todo]
    grouped_by_date: Dict[str, List[Todo]]
    period: str
    count: int
