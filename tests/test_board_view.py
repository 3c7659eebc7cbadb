# ruff: noqa: INP001
"""Filtering, grouping, and counting of the sprint board."""

from __future__ import annotations

import pytest

from sprintboard.models.tasks import TaskStatus
from sprintboard.schemas.board import GroupBy
from sprintboard.services.board_view import build_board_view, filter_tasks, task_count_label
from tests.factories import make_story, make_task

STORIES = [make_story("story-1", "Login"), make_story("story-2", "Checkout")]


def _tasks():
    return [
        make_task("t1", story_id="story-1"),
        make_task("t2", story_id="story-1", status=TaskStatus.OWNED, owner="user-a"),
        make_task("t3", story_id="story-2", status=TaskStatus.COMPLETED, owner="user-b"),
        make_task("t4", story_id="story-2", status=TaskStatus.INPROGRESS, owner="user-a", refs=[]),
    ]


def test_empty_selection_means_no_filter() -> None:
    tasks = _tasks()

    view = build_board_view(tasks, STORIES, selected_statuses=[])

    assert [card.task for card in view.visible_tasks] == tasks
    assert filter_tasks(tasks, set()) == tasks


@pytest.mark.parametrize("group_by", list(GroupBy))
@pytest.mark.parametrize(
    "selected",
    [[], [TaskStatus.AVAILABLE], [TaskStatus.OWNED, TaskStatus.COMPLETED], list(TaskStatus)],
)
def test_group_counts_sum_to_visible_count(group_by: GroupBy, selected: list[TaskStatus]) -> None:
    view = build_board_view(_tasks(), STORIES, selected_statuses=selected, group_by=group_by)

    assert sum(group.count for group in view.groups) == len(view.visible_tasks)
    assert view.visible_count == len(view.visible_tasks)


def test_story_groups_follow_story_order_and_drop_empty_stories() -> None:
    tasks = [
        make_task("t1", story_id="story-1"),
        make_task("t3", story_id="story-2", status=TaskStatus.COMPLETED, owner="user-b"),
    ]

    view = build_board_view(
        tasks,
        STORIES,
        selected_statuses=[TaskStatus.AVAILABLE],
        group_by=GroupBy.STORY,
    )

    assert [group.key for group in view.groups] == ["story-1"]
    assert view.groups[0].label == "Login"
    assert view.groups[0].count_label == "1 task"


def test_status_groups_use_lifecycle_order_and_skip_empty() -> None:
    tasks = list(reversed(_tasks()))

    view = build_board_view(tasks, STORIES, group_by=GroupBy.STATUS)

    assert [group.key for group in view.groups] == [
        "available",
        "owned",
        "inprogress",
        "completed",
    ]
    completed_only = build_board_view(
        tasks,
        STORIES,
        selected_statuses=[TaskStatus.COMPLETED],
        group_by=GroupBy.STATUS,
    )
    assert [group.label for group in completed_only.groups] == ["Completed"]


def test_status_counts_ignore_the_filter() -> None:
    view = build_board_view(_tasks(), STORIES, selected_statuses=[TaskStatus.COMPLETED])

    assert view.status_counts == {
        TaskStatus.AVAILABLE: 1,
        TaskStatus.OWNED: 1,
        TaskStatus.INPROGRESS: 1,
        TaskStatus.COMPLETED: 1,
    }
    assert view.total_tasks == 4


def test_no_tasks_and_no_matches_are_distinct_signals() -> None:
    empty = build_board_view([], STORIES)
    assert empty.is_empty
    assert not empty.has_no_matches
    assert empty.groups == []

    filtered = build_board_view(
        [make_task("t1")],
        STORIES,
        selected_statuses=[TaskStatus.COMPLETED],
    )
    assert not filtered.is_empty
    assert filtered.has_no_matches
    assert filtered.groups == []


def test_orphaned_tasks_are_dropped_without_error() -> None:
    tasks = [*_tasks(), make_task("ghost", story_id="story-gone")]

    view = build_board_view(tasks, STORIES, group_by=GroupBy.STORY)

    assert view.orphaned_task_count == 1
    assert "ghost" not in {card.task.id for card in view.visible_tasks}
    assert view.total_tasks == 4


def test_cards_flag_current_user_and_claimable_tasks() -> None:
    view = build_board_view(
        _tasks(),
        STORIES,
        acting_user_id="user-a",
        pending_ids={"t1"},
    )
    cards = {card.task.id: card for card in view.visible_tasks}

    assert cards["t1"].is_claimable
    assert cards["t1"].is_pending
    assert cards["t2"].is_mine
    assert not cards["t3"].is_mine
    assert cards["t4"].acceptance_criteria_count == 0
    assert cards["t1"].acceptance_criteria_count == 1


def test_selected_statuses_are_normalized_to_lifecycle_order() -> None:
    view = build_board_view(
        _tasks(),
        STORIES,
        selected_statuses={TaskStatus.COMPLETED, TaskStatus.AVAILABLE},
    )

    assert view.selected_statuses == [TaskStatus.AVAILABLE, TaskStatus.COMPLETED]


@pytest.mark.parametrize(("count", "label"), [(0, "0 tasks"), (1, "1 task"), (2, "2 tasks")])
def test_task_count_label(count: int, label: str) -> None:
    assert task_count_label(count) == label
