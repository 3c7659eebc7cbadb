"""Reconciliation layer: the single mutation funnel into the task record store.

Three sources feed the store, each keyed by task id and ordered by the task
marker (server `version`, then `updated_at`):

- optimistic local writes (applied immediately, marker "pending"),
- confirmations or rejections of those writes from the persistence service,
- push events describing changes by any user, plus full snapshots on (re)load.

A stored confirmed record is only replaced by a strictly newer marker, so the
store never regresses regardless of delivery order. The one exception is a
confirmation of the pending write itself, which wins ties: an equal marker is
the same server state the write produced.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from sprintboard.core.logging import TRACE_LEVEL, get_logger
from sprintboard.schemas.events import EventFoldError, TaskChangeEvent, fold_event
from sprintboard.services.task_store import PendingWrite, TaskRecordStore

if TYPE_CHECKING:
    from sprintboard.models.tasks import Task

logger = get_logger(__name__)


class ApplyResult(str, Enum):
    """How a reconciliation message affected the store."""

    APPLIED = "applied"
    STALE = "stale"
    SUPERSEDED = "superseded"
    IGNORED = "ignored"
    # The message could not be resolved against the store; a snapshot is needed.
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class OptimisticWrite:
    """Local intent applied before the persistence service answers."""

    op_id: str
    record: Task
    user_id: str | None = None

    @property
    def task_id(self) -> str:
        return self.record.id


@dataclass(frozen=True)
class ServerConfirmation:
    """Persistence service accepted the write identified by `op_id`."""

    op_id: str
    record: Task

    @property
    def task_id(self) -> str:
        return self.record.id


@dataclass(frozen=True)
class WriteRejected:
    """Persistence service refused (or never answered) the write `op_id`.

    `current` is the server's view of the task when the rejection carried one.
    """

    task_id: str
    op_id: str
    reason: str
    current: Task | None = None


@dataclass(frozen=True)
class PeerChange:
    """Full task record from the push channel (changed by any user)."""

    record: Task
    origin_user_id: str | None = None

    @property
    def task_id(self) -> str:
        return self.record.id


@dataclass(frozen=True)
class PushEvent:
    """Raw push-channel event, folded onto the confirmed record when applied."""

    event: TaskChangeEvent

    @property
    def task_id(self) -> str | None:
        return self.event.resolved_task_id

    @property
    def origin_user_id(self) -> str | None:
        return self.event.actor_user_id


@dataclass(frozen=True)
class SnapshotLoaded:
    """Full task list for the sprint, fetched on load, reconnect, or refresh."""

    records: tuple[Task, ...]
    replace: bool = False
    source: str = "refresh"


ReconcileMessage = (
    OptimisticWrite
    | ServerConfirmation
    | WriteRejected
    | PeerChange
    | PushEvent
    | SnapshotLoaded
)


@dataclass(frozen=True)
class StoreChange:
    """Notification sent to listeners after a message changed the store."""

    message: ReconcileMessage
    result: ApplyResult
    task_ids: tuple[str, ...] = field(default_factory=tuple)


ChangeListener = Callable[[StoreChange], None]

_NOTIFY_RESULTS = frozenset({ApplyResult.APPLIED, ApplyResult.UNRESOLVED})


def _is_newer(incoming: Task, current: Task | None) -> bool:
    return current is None or incoming.marker > current.marker


class Reconciler:
    """Applies reconciliation messages to a `TaskRecordStore`.

    All methods are synchronous: on a single event loop each message is applied
    atomically with respect to every other source.
    """

    def __init__(self, store: TaskRecordStore) -> None:
        self.store = store
        self._listeners: list[ChangeListener] = []
        self._handlers: dict[type, Callable[[object], tuple[ApplyResult, tuple[str, ...]]]] = {
            OptimisticWrite: self._apply_optimistic,  # type: ignore[dict-item]
            ServerConfirmation: self._apply_confirmation,  # type: ignore[dict-item]
            WriteRejected: self._apply_rejection,  # type: ignore[dict-item]
            PeerChange: self._apply_peer_change,  # type: ignore[dict-item]
            PushEvent: self._apply_push_event,  # type: ignore[dict-item]
            SnapshotLoaded: self._apply_snapshot,  # type: ignore[dict-item]
        }

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def apply(self, message: ReconcileMessage) -> ApplyResult:
        """Apply one message; the only entry point that mutates the store."""
        handler = self._handlers.get(type(message))
        if handler is None:
            msg = f"Unsupported reconciliation message: {type(message).__name__}"
            raise TypeError(msg)
        result, task_ids = handler(message)
        logger.log(
            TRACE_LEVEL,
            "reconcile.apply",
            extra={
                "message_type": type(message).__name__,
                "result": result.value,
                "task_count": len(task_ids),
            },
        )
        if result in _NOTIFY_RESULTS:
            self._notify(StoreChange(message=message, result=result, task_ids=task_ids))
        return result

    def _notify(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception(
                    "reconcile.listener_failed",
                    extra={"message_type": type(change.message).__name__},
                )

    def _supersede_pending(self, task_id: str, record: Task) -> bool:
        """Drop the pending write for *task_id* if *record* is newer than its base."""
        entry = self.store.entry(task_id)
        if entry is None or entry.pending is None:
            return False
        if record.marker <= entry.pending.base_marker:
            return False
        logger.info(
            "reconcile.pending.superseded",
            extra={
                "task_id": task_id,
                "op_id": entry.pending.op_id,
                "incoming_version": record.version,
            },
        )
        self.store.set_pending(task_id, None)
        return True

    def _apply_optimistic(self, message: OptimisticWrite) -> tuple[ApplyResult, tuple[str, ...]]:
        entry = self.store.entry(message.task_id)
        if entry is None:
            logger.warning(
                "reconcile.optimistic.unknown_task",
                extra={"task_id": message.task_id, "op_id": message.op_id},
            )
            return ApplyResult.IGNORED, ()
        if entry.pending is not None:
            logger.info(
                "reconcile.optimistic.already_pending",
                extra={
                    "task_id": message.task_id,
                    "op_id": message.op_id,
                    "pending_op_id": entry.pending.op_id,
                },
            )
            return ApplyResult.IGNORED, ()
        self.store.set_pending(
            message.task_id,
            PendingWrite(
                op_id=message.op_id,
                record=message.record,
                base_marker=entry.confirmed.marker,
                user_id=message.user_id,
            ),
        )
        return ApplyResult.APPLIED, (message.task_id,)

    def _apply_confirmation(
        self,
        message: ServerConfirmation,
    ) -> tuple[ApplyResult, tuple[str, ...]]:
        entry = self.store.entry(message.task_id)
        if entry is None:
            self.store.put_confirmed(message.record)
            return ApplyResult.APPLIED, (message.task_id,)

        owns_pending = entry.pending is not None and entry.pending.op_id == message.op_id
        if owns_pending:
            self.store.set_pending(message.task_id, None)
            if entry.confirmed.marker > message.record.marker:
                # A newer push event landed while the write was in flight.
                logger.info(
                    "reconcile.confirmation.superseded",
                    extra={
                        "task_id": message.task_id,
                        "op_id": message.op_id,
                        "incoming_version": message.record.version,
                        "stored_version": entry.confirmed.version,
                    },
                )
                return ApplyResult.APPLIED, (message.task_id,)
            self.store.put_confirmed(message.record)
            return ApplyResult.APPLIED, (message.task_id,)

        if _is_newer(message.record, entry.confirmed):
            self.store.put_confirmed(message.record)
            # Another user's write won upstream; their in-flight view is outdated.
            self._supersede_pending(message.task_id, message.record)
            return ApplyResult.APPLIED, (message.task_id,)

        logger.info(
            "reconcile.confirmation.stale",
            extra={
                "task_id": message.task_id,
                "op_id": message.op_id,
                "incoming_version": message.record.version,
                "stored_version": entry.confirmed.version,
            },
        )
        return ApplyResult.STALE, ()

    def _apply_rejection(self, message: WriteRejected) -> tuple[ApplyResult, tuple[str, ...]]:
        entry = self.store.entry(message.task_id)
        if entry is None:
            return ApplyResult.IGNORED, ()

        changed = False
        if entry.pending is not None and entry.pending.op_id == message.op_id:
            # Revert to the last confirmed record, which may include peer changes
            # that arrived while the write was in flight.
            self.store.set_pending(message.task_id, None)
            changed = True
        if message.current is not None and _is_newer(message.current, entry.confirmed):
            self.store.put_confirmed(message.current)
            self._supersede_pending(message.task_id, message.current)
            changed = True

        logger.info(
            "reconcile.rejection",
            extra={
                "task_id": message.task_id,
                "op_id": message.op_id,
                "reason": message.reason,
                "reverted": changed,
            },
        )
        if not changed:
            return ApplyResult.SUPERSEDED, ()
        return ApplyResult.APPLIED, (message.task_id,)

    def _apply_peer_change(self, message: PeerChange) -> tuple[ApplyResult, tuple[str, ...]]:
        return self._apply_peer_record(message.record)

    def _apply_peer_record(self, record: Task) -> tuple[ApplyResult, tuple[str, ...]]:
        entry = self.store.entry(record.id)
        if entry is None:
            self.store.put_confirmed(record)
            return ApplyResult.APPLIED, (record.id,)
        if not _is_newer(record, entry.confirmed):
            return ApplyResult.STALE, ()

        self.store.put_confirmed(record)
        self._supersede_pending(record.id, record)
        return ApplyResult.APPLIED, (record.id,)

    def _apply_push_event(self, message: PushEvent) -> tuple[ApplyResult, tuple[str, ...]]:
        task_id = message.task_id
        base = self.store.confirmed(task_id) if task_id else None
        try:
            record = fold_event(message.event, base)
        except EventFoldError as exc:
            logger.info(
                "reconcile.push.unresolved",
                extra={"task_id": task_id, "event_type": message.event.type, "reason": str(exc)},
            )
            return ApplyResult.UNRESOLVED, ()
        return self._apply_peer_record(record)

    def _apply_snapshot(self, message: SnapshotLoaded) -> tuple[ApplyResult, tuple[str, ...]]:
        incoming_ids = {record.id for record in message.records}
        changed: list[str] = []

        if message.replace:
            self.store.clear()
        else:
            # Tasks missing from a full snapshot were deleted upstream.
            for task_id in list(self.store):
                if task_id not in incoming_ids and not self.store.is_pending(task_id):
                    self.store.discard(task_id)
                    changed.append(task_id)

        for record in message.records:
            entry = self.store.entry(record.id)
            if entry is None:
                self.store.put_confirmed(record)
                changed.append(record.id)
                continue
            if _is_newer(record, entry.confirmed):
                self.store.put_confirmed(record)
                changed.append(record.id)
            if self._supersede_pending(record.id, record) and record.id not in changed:
                changed.append(record.id)

        logger.info(
            "reconcile.snapshot.applied",
            extra={
                "source": message.source,
                "task_count": len(message.records),
                "changed": len(changed),
                "replace": message.replace,
            },
        )
        if not changed and not message.replace:
            return ApplyResult.STALE, ()
        return ApplyResult.APPLIED, tuple(changed)


_WORKER_STOP = object()


class ReconciliationWorker:
    """Drains queued push-channel messages into the reconciler one at a time."""

    def __init__(self, reconciler: Reconciler, *, maxsize: int = 0) -> None:
        self.reconciler = reconciler
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)

    def submit(self, message: ReconcileMessage) -> None:
        self._queue.put_nowait(message)

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def stop(self) -> None:
        self._queue.put_nowait(_WORKER_STOP)

    def drain(self) -> int:
        """Apply every message already queued without waiting; returns the count."""
        processed = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return processed
            self._queue.task_done()
            if item is _WORKER_STOP:
                continue
            self._apply_one(item)  # type: ignore[arg-type]
            processed += 1

    async def run(self) -> None:
        logger.info("reconcile.worker.started")
        try:
            while True:
                item = await self._queue.get()
                self._queue.task_done()
                if item is _WORKER_STOP:
                    break
                self._apply_one(item)  # type: ignore[arg-type]
        finally:
            logger.info("reconcile.worker.stopped", extra={"backlog": self.backlog})

    def _apply_one(self, message: ReconcileMessage) -> None:
        try:
            self.reconciler.apply(message)
        except Exception as exc:
            logger.exception(
                "reconcile.worker.failed",
                extra={"message_type": type(message).__name__, "error": str(exc)},
            )
