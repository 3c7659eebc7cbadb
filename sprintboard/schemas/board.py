"""Read-model payloads for the sprint board view, metrics, and filter controls."""

from __future__ import annotations

from enum import Enum

from pydantic import Field
from sqlmodel import SQLModel

from sprintboard.models.tasks import Task, TaskStatus


class GroupBy(str, Enum):
    """Grouping modes supported by the board."""

    STORY = "story"
    STATUS = "status"


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class TaskCardRead(SQLModel):
    """Task as shown on the board, with flags relative to the acting user."""

    task: Task
    is_mine: bool = False
    is_claimable: bool = False
    is_pending: bool = False
    acceptance_criteria_count: int = 0


class TaskGroupRead(SQLModel):
    """One group of visible tasks (a story or a status)."""

    key: str
    label: str
    count: int
    count_label: str = Field(examples=["1 task", "3 tasks"])
    tasks: list[TaskCardRead] = Field(default_factory=list)


class BoardViewRead(SQLModel):
    """Filtered, grouped view of the sprint's tasks."""

    group_by: GroupBy
    selected_statuses: list[TaskStatus] = Field(default_factory=list)
    visible_tasks: list[TaskCardRead] = Field(default_factory=list)
    groups: list[TaskGroupRead] = Field(default_factory=list)
    status_counts: dict[TaskStatus, int] = Field(default_factory=dict)
    total_tasks: int = 0
    visible_count: int = 0
    orphaned_task_count: int = 0
    is_empty: bool = Field(
        default=False,
        description="True when the sprint has no tasks at all.",
    )
    has_no_matches: bool = Field(
        default=False,
        description="True when tasks exist but the status filter hides all of them.",
    )


class SprintMetricsRead(SQLModel):
    """Sprint header figures derived from dates and the current task set."""

    sprint_id: str
    sprint_name: str = ""
    days_remaining: int
    days_remaining_label: str
    total_tasks: int
    completed_tasks: int
    completion_percentage: int
    task_progress: str = Field(examples=["3 of 4 tasks"])
    story_count: int = 0
    points_completion_percentage: int = 0


class BoardNotificationRead(SQLModel):
    """Short peer-change notice surfaced by the UI as a toast."""

    title: str
    description: str
    task_id: str


class BoardRead(SQLModel):
    """Complete board payload for the UI."""

    ready: bool
    connection: ConnectionState
    view: BoardViewRead
    metrics: SprintMetricsRead | None = None
    pending_task_ids: list[str] = Field(default_factory=list)


class BoardFilterUpdate(SQLModel):
    """Status filter selection; an empty list means no filter."""

    statuses: list[TaskStatus] = Field(default_factory=list)


class BoardGroupByUpdate(SQLModel):
    group_by: GroupBy
