# ruff: noqa: INP001
"""Marker-ordered merging of optimistic, confirmed, and pushed task records."""

from __future__ import annotations

import asyncio
import itertools
from datetime import timedelta

import pytest

from sprintboard.models.tasks import Task, TaskStatus
from sprintboard.schemas.events import TaskChangeEvent
from sprintboard.services.reconciliation import (
    ApplyResult,
    OptimisticWrite,
    PeerChange,
    PushEvent,
    ReconciliationWorker,
    Reconciler,
    ServerConfirmation,
    SnapshotLoaded,
    StoreChange,
    WriteRejected,
)
from sprintboard.services.task_store import TaskRecordStore
from tests.factories import NOW, make_task


def _reconciler(*tasks) -> Reconciler:
    reconciler = Reconciler(TaskRecordStore())
    reconciler.apply(SnapshotLoaded(records=tuple(tasks), replace=True, source="load"))
    return reconciler


def test_peer_change_applied_twice_is_idempotent() -> None:
    reconciler = _reconciler(make_task(version=1))
    event = PeerChange(record=make_task(status=TaskStatus.OWNED, owner="user-a", version=2))

    assert reconciler.apply(event) == ApplyResult.APPLIED
    once = reconciler.store.get("task-1")
    revision = reconciler.store.revision
    assert reconciler.apply(event) == ApplyResult.STALE

    assert reconciler.store.get("task-1") == once
    assert reconciler.store.revision == revision


@pytest.mark.parametrize("order", list(itertools.permutations([1, 2, 3])))
def test_store_ends_at_newest_marker_for_any_arrival_order(order: tuple[int, ...]) -> None:
    records = {
        1: make_task(status=TaskStatus.OWNED, owner="user-a", version=1),
        2: make_task(status=TaskStatus.INPROGRESS, owner="user-a", version=2),
        3: make_task(status=TaskStatus.COMPLETED, owner="user-a", version=3),
    }
    reconciler = Reconciler(TaskRecordStore())

    for version in order:
        reconciler.apply(PeerChange(record=records[version]))

    assert reconciler.store.get("task-1") == records[3]


def test_older_event_after_newer_does_not_regress() -> None:
    reconciler = _reconciler(make_task(version=5, status=TaskStatus.OWNED, owner="user-a"))

    result = reconciler.apply(PeerChange(record=make_task(version=4)))

    assert result == ApplyResult.STALE
    assert reconciler.store.get("task-1").status == TaskStatus.OWNED


def test_optimistic_write_is_provisional() -> None:
    reconciler = _reconciler(make_task(version=1))
    optimistic = make_task(status=TaskStatus.OWNED, owner="user-a", version=1)

    assert reconciler.apply(OptimisticWrite(op_id="op-1", record=optimistic)) == ApplyResult.APPLIED

    assert reconciler.store.get("task-1") == optimistic
    assert reconciler.store.confirmed("task-1").status == TaskStatus.AVAILABLE
    assert reconciler.store.pending_ids() == ["task-1"]


def test_optimistic_write_for_unknown_task_is_ignored() -> None:
    reconciler = _reconciler()

    result = reconciler.apply(
        OptimisticWrite(op_id="op-1", record=make_task(status=TaskStatus.OWNED, owner="u")),
    )

    assert result == ApplyResult.IGNORED
    assert len(reconciler.store) == 0


def test_confirmation_replaces_pending_record() -> None:
    reconciler = _reconciler(make_task(version=1))
    reconciler.apply(
        OptimisticWrite(op_id="op-1", record=make_task(status=TaskStatus.OWNED, owner="user-a")),
    )
    confirmed = make_task(status=TaskStatus.OWNED, owner="user-a", version=2)

    assert reconciler.apply(ServerConfirmation(op_id="op-1", record=confirmed)) == ApplyResult.APPLIED

    assert reconciler.store.get("task-1") == confirmed
    assert not reconciler.store.is_pending("task-1")


def test_confirmation_after_newer_push_is_discarded() -> None:
    reconciler = _reconciler(make_task(status=TaskStatus.OWNED, owner="user-a", version=1))
    reconciler.apply(
        OptimisticWrite(
            op_id="op-1",
            record=make_task(status=TaskStatus.INPROGRESS, owner="user-a", version=1),
        ),
    )
    pushed = make_task(status=TaskStatus.COMPLETED, owner="user-a", version=3)
    reconciler.apply(PeerChange(record=pushed))
    assert not reconciler.store.is_pending("task-1")

    late = make_task(status=TaskStatus.INPROGRESS, owner="user-a", version=2)
    result = reconciler.apply(ServerConfirmation(op_id="op-1", record=late))

    assert result == ApplyResult.STALE
    assert reconciler.store.get("task-1") == pushed


def test_rejection_reverts_to_confirmed_state() -> None:
    reconciler = _reconciler(make_task(version=1))
    reconciler.apply(
        OptimisticWrite(op_id="op-1", record=make_task(status=TaskStatus.OWNED, owner="user-b")),
    )

    result = reconciler.apply(WriteRejected(task_id="task-1", op_id="op-1", reason="conflict"))

    assert result == ApplyResult.APPLIED
    assert reconciler.store.get("task-1").status == TaskStatus.AVAILABLE
    assert reconciler.store.get("task-1").owner_user_id is None


def test_rejection_of_superseded_write_changes_nothing() -> None:
    reconciler = _reconciler(make_task(version=1))
    reconciler.apply(
        OptimisticWrite(op_id="op-1", record=make_task(status=TaskStatus.OWNED, owner="user-b")),
    )
    winner = make_task(status=TaskStatus.OWNED, owner="user-a", version=2)
    reconciler.apply(PeerChange(record=winner))

    result = reconciler.apply(WriteRejected(task_id="task-1", op_id="op-1", reason="conflict"))

    assert result == ApplyResult.SUPERSEDED
    assert reconciler.store.get("task-1") == winner


def test_rejection_carrying_current_record_adopts_it() -> None:
    reconciler = _reconciler(make_task(version=1))
    reconciler.apply(
        OptimisticWrite(op_id="op-1", record=make_task(status=TaskStatus.OWNED, owner="user-b")),
    )
    current = make_task(status=TaskStatus.OWNED, owner="user-a", version=2)

    reconciler.apply(
        WriteRejected(task_id="task-1", op_id="op-1", reason="conflict", current=current),
    )

    assert reconciler.store.get("task-1") == current


def test_snapshot_supersedes_pending_write_with_newer_marker() -> None:
    reconciler = _reconciler(make_task(version=1), make_task("task-2", version=1))
    reconciler.apply(
        OptimisticWrite(op_id="op-1", record=make_task(status=TaskStatus.OWNED, owner="user-a")),
    )
    reconciler.apply(
        OptimisticWrite(
            op_id="op-2",
            record=make_task("task-2", status=TaskStatus.OWNED, owner="user-a"),
        ),
    )
    snapshot = (
        make_task(status=TaskStatus.OWNED, owner="user-c", version=2),
        make_task("task-2", version=1),
    )

    reconciler.apply(SnapshotLoaded(records=snapshot, source="reconnect"))

    assert reconciler.store.get("task-1").owner_user_id == "user-c"
    assert not reconciler.store.is_pending("task-1")
    # Same marker as the write's base: the write is still in flight.
    assert reconciler.store.is_pending("task-2")


def test_snapshot_never_regresses_newer_records() -> None:
    reconciler = _reconciler(make_task(version=1))
    newer = make_task(status=TaskStatus.OWNED, owner="user-a", version=4)
    reconciler.apply(PeerChange(record=newer))

    result = reconciler.apply(SnapshotLoaded(records=(make_task(version=3),)))

    assert result == ApplyResult.STALE
    assert reconciler.store.get("task-1") == newer


def test_snapshot_drops_tasks_deleted_upstream() -> None:
    reconciler = _reconciler(make_task(version=1), make_task("task-2", version=1))

    reconciler.apply(SnapshotLoaded(records=(make_task(version=1),)))

    assert "task-2" not in reconciler.store
    assert "task-1" in reconciler.store


def test_listeners_only_hear_applied_changes() -> None:
    reconciler = _reconciler(make_task(version=2))
    heard: list[StoreChange] = []
    reconciler.add_listener(heard.append)

    reconciler.apply(PeerChange(record=make_task(version=1)))
    reconciler.apply(PeerChange(record=make_task(version=3)))

    assert [change.task_ids for change in heard] == [("task-1",)]


def test_failing_listener_does_not_block_others() -> None:
    reconciler = _reconciler(make_task(version=1))
    heard: list[StoreChange] = []

    def _boom(change: StoreChange) -> None:
        raise RuntimeError("listener failed")

    reconciler.add_listener(_boom)
    reconciler.add_listener(heard.append)

    assert reconciler.apply(PeerChange(record=make_task(version=2))) == ApplyResult.APPLIED
    assert len(heard) == 1


def test_unsupported_message_type_raises() -> None:
    with pytest.raises(TypeError, match="Unsupported reconciliation message"):
        _reconciler().apply(object())  # type: ignore[arg-type]


def test_worker_drain_applies_queued_messages_in_order() -> None:
    reconciler = _reconciler(make_task(version=1))
    worker = ReconciliationWorker(reconciler)
    worker.submit(PeerChange(record=make_task(status=TaskStatus.OWNED, owner="u", version=3)))
    worker.submit(PeerChange(record=make_task(version=2)))

    assert worker.drain() == 2
    assert reconciler.store.get("task-1").version == 3
    assert worker.backlog == 0


@pytest.mark.asyncio
async def test_worker_run_processes_until_stopped() -> None:
    reconciler = _reconciler(make_task(version=1))
    worker = ReconciliationWorker(reconciler)
    runner = asyncio.create_task(worker.run())

    worker.submit(PeerChange(record=make_task(status=TaskStatus.OWNED, owner="u", version=2)))
    worker.submit(object())  # type: ignore[arg-type]
    worker.submit(PeerChange(record=make_task(status=TaskStatus.INPROGRESS, owner="u", version=3)))
    worker.stop()
    await asyncio.wait_for(runner, timeout=1)

    assert reconciler.store.get("task-1").status == TaskStatus.INPROGRESS


def _unversioned(updated_at, **fields) -> Task:
    return Task.model_validate(
        {"id": "task-1", "story_id": "story-1", "title": "Title", "updated_at": updated_at, **fields},
    )


def test_records_without_version_are_ordered_by_updated_at() -> None:
    reconciler = _reconciler(_unversioned(NOW))
    later = _unversioned(NOW + timedelta(seconds=30), status="owned", owner_user_id="bob")
    earlier = _unversioned(NOW - timedelta(seconds=30), status="completed", owner_user_id="carol")

    assert reconciler.store.get("task-1").version == 0
    assert reconciler.apply(PeerChange(record=later)) == ApplyResult.APPLIED
    assert reconciler.apply(PeerChange(record=earlier)) == ApplyResult.STALE
    assert reconciler.store.get("task-1").owner_user_id == "bob"


def test_confirmation_with_equal_marker_is_adopted() -> None:
    reconciler = _reconciler(make_task(version=1))
    reconciler.apply(
        OptimisticWrite(op_id="op-1", record=make_task(status=TaskStatus.OWNED, owner="user-a", version=1)),
    )
    server = make_task(status=TaskStatus.OWNED, owner="user-a", version=1).model_copy(
        update={"title": "Server title"},
    )

    assert reconciler.apply(ServerConfirmation(op_id="op-1", record=server)) == ApplyResult.APPLIED
    assert not reconciler.store.is_pending("task-1")
    assert reconciler.store.get("task-1").title == "Server title"
    assert reconciler.store.get("task-1").owner_user_id == "user-a"


def test_other_users_confirmation_supersedes_pending_write() -> None:
    reconciler = _reconciler(make_task(version=1))
    reconciler.apply(
        OptimisticWrite(
            op_id="op-a",
            record=make_task(status=TaskStatus.OWNED, owner="user-a"),
            user_id="user-a",
        ),
    )

    winner = make_task(status=TaskStatus.OWNED, owner="user-b", version=2)
    assert reconciler.apply(ServerConfirmation(op_id="op-b", record=winner)) == ApplyResult.APPLIED

    assert not reconciler.store.is_pending("task-1")
    assert reconciler.store.get("task-1").owner_user_id == "user-b"


def test_push_events_queued_together_fold_onto_each_other() -> None:
    reconciler = _reconciler(make_task(version=1))
    worker = ReconciliationWorker(reconciler)
    taken_at = NOW + timedelta(minutes=1)
    worker.submit(
        PushEvent(
            event=TaskChangeEvent(
                type="ownership_taken",
                task_id="task-1",
                owner_user_id="bob",
                version=2,
                timestamp=taken_at,
            ),
        ),
    )
    worker.submit(
        PushEvent(
            event=TaskChangeEvent(
                type="status_changed",
                task_id="task-1",
                old_status=TaskStatus.OWNED,
                new_status=TaskStatus.INPROGRESS,
                changed_by_user_id="bob",
                version=3,
            ),
        ),
    )

    assert worker.drain() == 2
    stored = reconciler.store.get("task-1")
    assert stored.status == TaskStatus.INPROGRESS
    assert stored.owner_user_id == "bob"
    assert stored.owned_at == taken_at
    assert stored.version == 3


def test_unfoldable_push_event_is_unresolved_and_reported() -> None:
    reconciler = _reconciler(make_task(version=1))
    heard: list[StoreChange] = []
    reconciler.add_listener(heard.append)
    event = TaskChangeEvent(type="ownership_taken", task_id="task-9", owner_user_id="bob", version=1)

    assert reconciler.apply(PushEvent(event=event)) == ApplyResult.UNRESOLVED
    assert [change.result for change in heard] == [ApplyResult.UNRESOLVED]
    assert "task-9" not in reconciler.store
