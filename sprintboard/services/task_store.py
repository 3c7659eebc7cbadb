"""In-memory task record store for the open sprint.

The store only holds state. Every mutation goes through the reconciliation layer
(`sprintboard.services.reconciliation.Reconciler`), which is the single place
where marker ordering is enforced. Readers use `get`, `visible_tasks`, and
`confirmed`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

    from sprintboard.models.tasks import Task, TaskMarker


@dataclass(frozen=True)
class PendingWrite:
    """Optimistic record awaiting confirmation from the persistence service.

    `base_marker` is the confirmed marker the write was planned against; any
    strictly newer confirmed record supersedes it.
    """

    op_id: str
    record: Task
    base_marker: TaskMarker
    user_id: str | None = None


@dataclass
class TaskEntry:
    """Last server-confirmed record plus at most one in-flight optimistic write."""

    confirmed: Task
    pending: PendingWrite | None = None

    @property
    def visible(self) -> Task:
        if self.pending is not None:
            return self.pending.record
        return self.confirmed

    @property
    def marker(self) -> TaskMarker:
        return self.confirmed.marker


class TaskRecordStore:
    """One entry per task id, in the order tasks were first seen."""

    def __init__(self) -> None:
        self._entries: dict[str, TaskEntry] = {}
        self._revision = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    @property
    def revision(self) -> int:
        """Counter bumped on every mutation; lets readers detect change cheaply."""
        return self._revision

    def entry(self, task_id: str) -> TaskEntry | None:
        return self._entries.get(task_id)

    def get(self, task_id: str) -> Task | None:
        """Return the record the UI should show for *task_id* (optimistic if pending)."""
        entry = self._entries.get(task_id)
        return entry.visible if entry is not None else None

    def confirmed(self, task_id: str) -> Task | None:
        entry = self._entries.get(task_id)
        return entry.confirmed if entry is not None else None

    def is_pending(self, task_id: str) -> bool:
        entry = self._entries.get(task_id)
        return entry is not None and entry.pending is not None

    def visible_tasks(self) -> list[Task]:
        return [entry.visible for entry in self._entries.values()]

    def pending_ids(self) -> list[str]:
        return [task_id for task_id, entry in self._entries.items() if entry.pending is not None]

    # Mutators below are reserved for the reconciliation layer.

    def put_confirmed(self, record: Task) -> None:
        entry = self._entries.get(record.id)
        if entry is None:
            self._entries[record.id] = TaskEntry(confirmed=record)
        else:
            entry.confirmed = record
        self._revision += 1

    def set_pending(self, task_id: str, pending: PendingWrite | None) -> None:
        entry = self._entries.get(task_id)
        if entry is None:
            msg = f"Cannot track a pending write for unknown task {task_id}"
            raise KeyError(msg)
        entry.pending = pending
        self._revision += 1

    def discard(self, task_id: str) -> None:
        if self._entries.pop(task_id, None) is not None:
            self._revision += 1

    def clear(self) -> None:
        self._entries.clear()
        self._revision += 1
