"""Push-channel payloads describing task changes made by any user."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import ValidationError, field_validator
from sqlmodel import SQLModel

from sprintboard.models.tasks import Task, TaskStatus

RUNTIME_ANNOTATION_TYPES = (datetime,)

TaskEventType = Literal[
    "task_updated",
    "ownership_taken",
    "ownership_released",
    "status_changed",
]


class ConnectionStatus(str, Enum):
    """Push channel connectivity signal."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class TaskChangeEvent(SQLModel):
    """Change notification as delivered by the push channel.

    `task_updated` carries the full record. The typed events carry only the
    fields they change and are folded onto the last confirmed record.
    """

    type: TaskEventType = "task_updated"
    task_id: str | None = None
    story_id: str | None = None
    version: int | None = None
    timestamp: datetime | None = None
    task: Task | None = None
    owner_user_id: str | None = None
    previous_owner_user_id: str | None = None
    old_status: TaskStatus | None = None
    new_status: TaskStatus | None = None
    changed_by_user_id: str | None = None

    @field_validator("old_status", "new_status", mode="before")
    @classmethod
    def _parse_status(cls, value: object) -> object:
        if isinstance(value, str):
            return TaskStatus.parse(value)
        return value

    @field_validator(
        "task_id",
        "story_id",
        "owner_user_id",
        "previous_owner_user_id",
        "changed_by_user_id",
        mode="before",
    )
    @classmethod
    def _stringify_ids(cls, value: object) -> object:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @property
    def resolved_task_id(self) -> str | None:
        if self.task is not None:
            return self.task.id
        return self.task_id

    @property
    def actor_user_id(self) -> str | None:
        """User whose action produced the event, when the payload says so."""
        if self.type == "ownership_taken":
            return self.owner_user_id
        if self.type == "ownership_released":
            return self.previous_owner_user_id
        if self.type == "status_changed":
            return self.changed_by_user_id
        return self.changed_by_user_id


class EventFoldError(ValueError):
    """A typed event cannot be turned into a full record without a fresh snapshot."""


def fold_event(event: TaskChangeEvent, base: Task | None) -> Task:
    """Return the full task record described by *event*.

    Raises `EventFoldError` when the event is partial and either the base record
    is unknown or the event carries neither a version nor a timestamp.
    """
    if event.type == "task_updated":
        if event.task is None:
            msg = "task_updated event without a task payload"
            raise EventFoldError(msg)
        return event.task

    if base is None:
        msg = f"{event.type} for unknown task {event.task_id}"
        raise EventFoldError(msg)
    if event.version is None and event.timestamp is None:
        msg = f"{event.type} for task {event.task_id} carries no version or timestamp"
        raise EventFoldError(msg)

    update: dict[str, object] = {
        "version": base.version if event.version is None else event.version,
    }
    if event.timestamp is not None:
        update["updated_at"] = event.timestamp
    if event.type == "ownership_taken":
        update.update(
            status=TaskStatus.OWNED,
            owner_user_id=event.owner_user_id,
            owned_at=event.timestamp or base.owned_at,
        )
    elif event.type == "ownership_released":
        update.update(
            status=TaskStatus.AVAILABLE,
            owner_user_id=None,
            owned_at=None,
            estimated_hours=None,
        )
    else:
        if event.new_status is None:
            msg = f"status_changed for task {event.task_id} without new_status"
            raise EventFoldError(msg)
        update["status"] = event.new_status
        if event.new_status == TaskStatus.AVAILABLE:
            update["owner_user_id"] = None
        elif base.owner_user_id is None:
            update["owner_user_id"] = event.changed_by_user_id
        if event.new_status == TaskStatus.COMPLETED:
            update["completed_at"] = event.timestamp or base.completed_at

    try:
        return Task.model_validate({**base.model_dump(), **update})
    except ValidationError as exc:
        msg = f"{event.type} for task {event.task_id} produced an invalid record"
        raise EventFoldError(msg) from exc
