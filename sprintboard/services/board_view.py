"""Filter, group, and aggregate the sprint's tasks into the board read model.

Everything here is a pure function of its inputs; nothing is cached.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable, Sequence
from typing import TYPE_CHECKING

from sprintboard.core.logging import get_logger
from sprintboard.models.tasks import STATUS_ORDER, TaskStatus
from sprintboard.schemas.board import BoardViewRead, GroupBy, TaskCardRead, TaskGroupRead

if TYPE_CHECKING:
    from sprintboard.models.stories import Story
    from sprintboard.models.tasks import Task

logger = get_logger(__name__)

_STATUS_LABELS = {
    TaskStatus.AVAILABLE: "Available",
    TaskStatus.OWNED: "Owned",
    TaskStatus.INPROGRESS: "In Progress",
    TaskStatus.COMPLETED: "Completed",
}


def task_count_label(count: int) -> str:
    """Return `1 task` / `N tasks`."""
    return f"{count} task" if count == 1 else f"{count} tasks"


def status_label(status: TaskStatus) -> str:
    return _STATUS_LABELS[status]


def filter_tasks(tasks: Iterable[Task], selected: Collection[TaskStatus]) -> list[Task]:
    """Keep tasks whose status is selected; an empty selection keeps everything."""
    if not selected:
        return list(tasks)
    wanted = set(selected)
    return [task for task in tasks if task.status in wanted]


def count_by_status(tasks: Iterable[Task]) -> dict[TaskStatus, int]:
    counts = dict.fromkeys(STATUS_ORDER, 0)
    for task in tasks:
        counts[task.status] += 1
    return counts


def drop_orphans(tasks: Iterable[Task], stories: Sequence[Story]) -> tuple[list[Task], int]:
    """Split off tasks whose story is not in the loaded story list."""
    story_ids = {story.id for story in stories}
    kept: list[Task] = []
    orphaned = 0
    for task in tasks:
        if task.story_id in story_ids:
            kept.append(task)
        else:
            orphaned += 1
    return kept, orphaned


def _card(task: Task, *, acting_user_id: str | None, pending_ids: Collection[str]) -> TaskCardRead:
    return TaskCardRead(
        task=task,
        is_mine=acting_user_id is not None and task.owner_user_id == acting_user_id,
        is_claimable=task.is_available,
        is_pending=task.id in pending_ids,
        acceptance_criteria_count=len(task.acceptance_criteria_refs),
    )


def _group(key: str, label: str, cards: list[TaskCardRead]) -> TaskGroupRead:
    return TaskGroupRead(
        key=key,
        label=label,
        count=len(cards),
        count_label=task_count_label(len(cards)),
        tasks=cards,
    )


def group_by_story(cards: Sequence[TaskCardRead], stories: Sequence[Story]) -> list[TaskGroupRead]:
    by_story: dict[str, list[TaskCardRead]] = {}
    for card in cards:
        by_story.setdefault(card.task.story_id, []).append(card)
    groups: list[TaskGroupRead] = []
    seen: set[str] = set()
    for story in stories:
        if story.id in seen:
            continue
        seen.add(story.id)
        story_cards = by_story.get(story.id)
        if story_cards:
            groups.append(_group(story.id, story.title, story_cards))
    return groups


def group_by_status(cards: Sequence[TaskCardRead]) -> list[TaskGroupRead]:
    by_status: dict[TaskStatus, list[TaskCardRead]] = {}
    for card in cards:
        by_status.setdefault(card.task.status, []).append(card)
    return [
        _group(status.value, status_label(status), by_status[status])
        for status in STATUS_ORDER
        if by_status.get(status)
    ]


def build_board_view(
    tasks: Iterable[Task],
    stories: Sequence[Story],
    *,
    selected_statuses: Collection[TaskStatus] = (),
    group_by: GroupBy = GroupBy.STORY,
    acting_user_id: str | None = None,
    pending_ids: Collection[str] = (),
) -> BoardViewRead:
    """Derive visible tasks, groups, and counts from the current task set.

    Tasks referencing a story outside `stories` are dropped and counted in
    `orphaned_task_count`; they never fail the computation.
    """
    sprint_tasks, orphaned = drop_orphans(tasks, stories)
    if orphaned:
        logger.debug("board.view.orphaned_tasks", extra={"count": orphaned})

    selected = [status for status in STATUS_ORDER if status in set(selected_statuses)]
    visible = filter_tasks(sprint_tasks, selected)
    cards = [_card(task, acting_user_id=acting_user_id, pending_ids=pending_ids) for task in visible]
    if group_by == GroupBy.STATUS:
        groups = group_by_status(cards)
    else:
        groups = group_by_story(cards, stories)

    return BoardViewRead(
        group_by=group_by,
        selected_statuses=selected,
        visible_tasks=cards,
        groups=groups,
        status_counts=count_by_status(sprint_tasks),
        total_tasks=len(sprint_tasks),
        visible_count=len(cards),
        orphaned_task_count=orphaned,
        is_empty=not sprint_tasks,
        has_no_matches=bool(sprint_tasks) and not cards,
    )
