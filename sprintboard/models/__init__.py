"""Domain records cached by the board: tasks, stories, and sprints."""

from sprintboard.models.sprints import Sprint
from sprintboard.models.stories import Story
from sprintboard.models.tasks import STATUS_ORDER, Task, TaskAction, TaskStatus

__all__ = [
    "STATUS_ORDER",
    "Sprint",
    "Story",
    "Task",
    "TaskAction",
    "TaskStatus",
]
