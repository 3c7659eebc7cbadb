"""Task record, lifecycle status enum, and the ownership transition table."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Self

from pydantic import Field, field_validator, model_validator
from sqlmodel import SQLModel

from sprintboard.core.time import ensure_aware, utcnow

RUNTIME_ANNOTATION_TYPES = (datetime,)

# Ordering key for task records: server version first, then last update time.
TaskMarker = tuple[int, datetime]


class TaskStatus(str, Enum):
    """Lifecycle states for self-selected task ownership."""

    AVAILABLE = "available"
    OWNED = "owned"
    INPROGRESS = "inprogress"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, raw: str | TaskStatus) -> TaskStatus:
        if isinstance(raw, TaskStatus):
            return raw
        normalized = raw.strip().lower().replace("_", "")
        try:
            return cls(normalized)
        except ValueError:
            msg = f"Unknown task status: {raw!r}"
            raise ValueError(msg) from None

    @property
    def rank(self) -> int:
        return STATUS_ORDER.index(self)


# Fixed display order for status groups and filter controls.
STATUS_ORDER: tuple[TaskStatus, ...] = (
    TaskStatus.AVAILABLE,
    TaskStatus.OWNED,
    TaskStatus.INPROGRESS,
    TaskStatus.COMPLETED,
)


class TaskAction(str, Enum):
    """Ownership operations a contributor can request on a task."""

    CLAIM = "claim"
    RELEASE = "release"
    START = "start"
    COMPLETE = "complete"


# action -> (required current status, resulting status)
TASK_TRANSITIONS: dict[TaskAction, tuple[TaskStatus, TaskStatus]] = {
    TaskAction.CLAIM: (TaskStatus.AVAILABLE, TaskStatus.OWNED),
    TaskAction.RELEASE: (TaskStatus.OWNED, TaskStatus.AVAILABLE),
    TaskAction.START: (TaskStatus.OWNED, TaskStatus.INPROGRESS),
    TaskAction.COMPLETE: (TaskStatus.INPROGRESS, TaskStatus.COMPLETED),
}


class Task(SQLModel):
    """Sprint task as cached from the persistence service.

    Records are ordered by `marker`: the server-assigned `version` when the
    persistence service sends one, then `updated_at`. Services that only stamp
    `updated_at` leave `version` at 0 and are ordered by time alone.
    """

    id: str
    story_id: str
    title: str
    description: str | None = None
    status: TaskStatus = TaskStatus.AVAILABLE
    owner_user_id: str | None = None
    acceptance_criteria_refs: list[str] = Field(default_factory=list)
    estimated_hours: int | None = None
    version: int = Field(default=0, ge=0)
    owned_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value: object) -> object:
        if isinstance(value, str):
            return TaskStatus.parse(value)
        return value

    @field_validator("updated_at", mode="after")
    @classmethod
    def _aware_updated_at(cls, value: datetime) -> datetime:
        return ensure_aware(value)

    @field_validator("id", "story_id", "owner_user_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: object) -> object:
        # Upstream ids are UUIDs; the board treats them as opaque strings.
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @model_validator(mode="after")
    def _owner_matches_status(self) -> Self:
        has_owner = bool(self.owner_user_id)
        if self.status == TaskStatus.AVAILABLE and has_owner:
            msg = f"Task {self.id} is available but has owner {self.owner_user_id}"
            raise ValueError(msg)
        if self.status != TaskStatus.AVAILABLE and not has_owner:
            msg = f"Task {self.id} is {self.status.value} without an owner"
            raise ValueError(msg)
        return self

    @property
    def marker(self) -> TaskMarker:
        return (self.version, self.updated_at)

    @property
    def is_available(self) -> bool:
        return self.status == TaskStatus.AVAILABLE

    def describe_holder(self) -> str:
        """Short human description of who holds the task, for conflict messages."""
        if self.owner_user_id is None:
            return f"task is {self.status.value}"
        return f"task is {self.status.value} by {self.owner_user_id}"
