# ruff: noqa: INP001
"""Sprint header metrics."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from sprintboard.models.tasks import TaskStatus
from sprintboard.services.sprint_metrics import (
    completion_percentage,
    compute_sprint_metrics,
    days_remaining,
    days_remaining_label,
    task_progress,
)
from tests.factories import NOW, make_sprint, make_story, make_task


@pytest.mark.parametrize(
    ("completed", "total", "expected"),
    [(1, 3, 33), (2, 3, 67), (0, 0, 0), (3, 4, 75), (1, 8, 13), (4, 4, 100), (0, 5, 0)],
)
def test_completion_percentage_rounds_half_up(completed: int, total: int, expected: int) -> None:
    assert completion_percentage(completed, total) == expected


def test_days_remaining_rounds_partial_days_up() -> None:
    assert days_remaining(NOW, NOW + timedelta(days=2, hours=1)) == 3
    assert days_remaining(NOW, NOW + timedelta(days=2)) == 2


@pytest.mark.parametrize("offset", [timedelta(days=-1), timedelta(seconds=-1), timedelta(days=-30)])
def test_days_remaining_clamps_at_zero_after_end(offset: timedelta) -> None:
    assert days_remaining(NOW, NOW + offset) == 0


def test_days_remaining_treats_naive_dates_as_utc() -> None:
    naive_end = datetime(2025, 10, 8, 12, 0)
    assert days_remaining(NOW, naive_end) == 2
    assert NOW.tzinfo is UTC


def test_labels() -> None:
    assert task_progress(3, 4) == "3 of 4 tasks"
    assert days_remaining_label(1) == "1 day remaining"
    assert days_remaining_label(0) == "0 days remaining"


def test_sprint_metrics_for_two_stories_four_tasks() -> None:
    tasks = [
        make_task("t1", story_id="story-1", status=TaskStatus.COMPLETED, owner="u"),
        make_task("t2", story_id="story-1", status=TaskStatus.COMPLETED, owner="u"),
        make_task("t3", story_id="story-2", status=TaskStatus.COMPLETED, owner="u"),
        make_task("t4", story_id="story-2", status=TaskStatus.INPROGRESS, owner="u"),
    ]
    stories = [make_story("story-1"), make_story("story-2"), make_story("story-2")]

    metrics = compute_sprint_metrics(make_sprint(days_left=5), tasks, stories, now=NOW)

    assert metrics.task_progress == "3 of 4 tasks"
    assert metrics.completion_percentage == 75
    assert metrics.days_remaining == 5
    assert metrics.story_count == 2
    assert metrics.points_completion_percentage == 33


def test_sprint_metrics_after_end_date() -> None:
    metrics = compute_sprint_metrics(make_sprint(days_left=-1), [], now=NOW)

    assert metrics.days_remaining == 0
    assert metrics.completion_percentage == 0
    assert metrics.task_progress == "0 of 0 tasks"
