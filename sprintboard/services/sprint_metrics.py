"""Sprint header metrics: days remaining and completion figures."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sprintboard.core.time import ensure_aware, utcnow
from sprintboard.models.tasks import TaskStatus
from sprintboard.schemas.board import SprintMetricsRead

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sprintboard.models.sprints import Sprint
    from sprintboard.models.stories import Story
    from sprintboard.models.tasks import Task

_ONE_DAY = timedelta(days=1)


def days_remaining(now: datetime, end_date: datetime) -> int:
    """Whole days until `end_date`, rounded up and clamped at zero."""
    remaining = ensure_aware(end_date) - ensure_aware(now)
    return max(0, math.ceil(remaining / _ONE_DAY))


def days_remaining_label(days: int) -> str:
    return f"{days} day remaining" if days == 1 else f"{days} days remaining"


def completion_percentage(completed: int, total: int) -> int:
    """Integer percentage rounded half up (1/3 -> 33, 2/3 -> 67, 1/8 -> 13)."""
    if total <= 0:
        return 0
    # Integer arithmetic avoids float drift and Python's round-half-to-even.
    return (200 * completed + total) // (2 * total)


def task_progress(completed: int, total: int) -> str:
    return f"{completed} of {total} tasks"


def compute_sprint_metrics(
    sprint: Sprint,
    tasks: Sequence[Task],
    stories: Sequence[Story] = (),
    *,
    now: datetime | None = None,
) -> SprintMetricsRead:
    """Recompute every header figure from the sprint and the current task set."""
    total = len(tasks)
    completed = sum(1 for task in tasks if task.status == TaskStatus.COMPLETED)
    days = days_remaining(now or utcnow(), sprint.end_date)
    return SprintMetricsRead(
        sprint_id=sprint.id,
        sprint_name=sprint.name,
        days_remaining=days,
        days_remaining_label=days_remaining_label(days),
        total_tasks=total,
        completed_tasks=completed,
        completion_percentage=completion_percentage(completed, total),
        task_progress=task_progress(completed, total),
        story_count=len({story.id for story in stories}),
        points_completion_percentage=completion_percentage(
            sprint.completed_points,
            sprint.committed_points,
        ),
    )
