"""Sprint board session: wires the store, reconciler, transitions, and push channel.

One session serves one open sprint. UI intents and push events are handled on
the same event loop; lifecycle calls suspend only their own coroutine.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

from pydantic import ValidationError

from sprintboard.core.config import settings
from sprintboard.core.logging import get_logger
from sprintboard.models.tasks import TaskStatus
from sprintboard.schemas.board import (
    BoardNotificationRead,
    BoardRead,
    BoardViewRead,
    ConnectionState,
    GroupBy,
    SprintMetricsRead,
)
from sprintboard.schemas.events import ConnectionStatus, TaskChangeEvent
from sprintboard.services.board_view import build_board_view, drop_orphans, status_label
from sprintboard.services.persistence_client import PersistenceError
from sprintboard.services.push_channel import PushChannel
from sprintboard.services.reconciliation import (
    ApplyResult,
    PeerChange,
    PushEvent,
    ReconciliationWorker,
    Reconciler,
    SnapshotLoaded,
    StoreChange,
)
from sprintboard.services.sprint_metrics import compute_sprint_metrics
from sprintboard.services.task_store import TaskRecordStore
from sprintboard.services.transitions import OwnershipService, TransitionOutcome

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sprintboard.models.sprints import Sprint
    from sprintboard.models.stories import Story
    from sprintboard.models.tasks import Task
    from sprintboard.services.persistence_client import PersistenceClient

logger = get_logger(__name__)

_SUBSCRIBER_QUEUE_SIZE = 100

BoardUpdateKind = Literal["board", "notification", "connection"]


@dataclass(frozen=True)
class BoardUpdate:
    """Item delivered to UI stream subscribers."""

    kind: BoardUpdateKind
    notification: BoardNotificationRead | None = None
    origin_user_id: str | None = None


@dataclass
class ViewPreferences:
    """Per-viewer filter and grouping; an empty selection shows every status."""

    selected_statuses: list[TaskStatus] = field(default_factory=list)
    group_by: GroupBy = GroupBy.STORY


def peer_notification(record: Task) -> BoardNotificationRead:
    """Describe a change made by another user in toast form."""
    if record.status == TaskStatus.OWNED:
        return BoardNotificationRead(
            title="Task claimed",
            description="A team member has taken ownership of a task",
            task_id=record.id,
        )
    if record.status == TaskStatus.AVAILABLE:
        return BoardNotificationRead(
            title="Task released",
            description="A task has been released back to available",
            task_id=record.id,
        )
    return BoardNotificationRead(
        title="Task status changed",
        description=f"A task moved to {status_label(record.status)}",
        task_id=record.id,
    )


class SprintBoardSession:
    """Read model and intent surface for one sprint."""

    def __init__(
        self,
        client: PersistenceClient,
        *,
        sprint_id: str | None = None,
        store: TaskRecordStore | None = None,
        lifecycle_timeout_seconds: float | None = None,
        snapshot_poll_seconds: float | None = None,
    ) -> None:
        self.client = client
        self.sprint_id = sprint_id or settings.sprint_id
        self.store = store or TaskRecordStore()
        self.reconciler = Reconciler(self.store)
        self.worker = ReconciliationWorker(self.reconciler)
        self.ownership = OwnershipService(
            self.reconciler,
            client,
            timeout_seconds=lifecycle_timeout_seconds,
        )
        self.snapshot_poll_seconds = (
            settings.snapshot_poll_seconds
            if snapshot_poll_seconds is None
            else snapshot_poll_seconds
        )

        self.sprint: Sprint | None = None
        self.stories: list[Story] = []
        self._preferences: dict[str | None, ViewPreferences] = {}
        self.connection = ConnectionState.RECONNECTING
        self.ready = False

        self.push_channel: PushChannel | None = None
        self._subscribers: set[asyncio.Queue[BoardUpdate]] = set()
        self._refresh_lock = asyncio.Lock()
        self._background: list[asyncio.Task[Any]] = []
        self._poll_task: asyncio.Task[None] | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self.reconciler.add_listener(self._on_store_change)

    # ------------------------------------------------------------------
    # Loading and refresh
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Fetch sprint, stories, and tasks, replacing whatever was cached."""
        sprint, stories, tasks = await asyncio.gather(
            self.client.fetch_sprint(self.sprint_id),
            self.client.fetch_stories(self.sprint_id),
            self.client.fetch_tasks(self.sprint_id),
        )
        self.sprint = sprint
        self.stories = stories
        self.reconciler.apply(SnapshotLoaded(records=tuple(tasks), replace=True, source="load"))
        self.ready = True
        logger.info(
            "board.loaded",
            extra={
                "sprint_id": self.sprint_id,
                "stories": len(stories),
                "tasks": len(tasks),
            },
        )

    async def refresh(self, *, source: str = "refresh") -> bool:
        """Merge a fresh task snapshot; returns False when the fetch failed."""
        async with self._refresh_lock:
            try:
                if not self.ready:
                    await self.load()
                    return True
                tasks = await self.client.fetch_tasks(self.sprint_id)
            except PersistenceError as exc:
                logger.warning(
                    "board.refresh.failed",
                    extra={"sprint_id": self.sprint_id, "source": source, "error": str(exc)},
                )
                return False
            self.reconciler.apply(SnapshotLoaded(records=tuple(tasks), source=source))
            return True

    def request_refresh(self, *, source: str) -> None:
        """Schedule a snapshot refresh unless one is already queued."""
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.create_task(self.refresh(source=source))

    # ------------------------------------------------------------------
    # Push channel inputs
    # ------------------------------------------------------------------

    def handle_push_payload(self, payload: dict[str, Any]) -> None:
        """Queue a push payload for the worker, which folds it at apply time."""
        try:
            event = TaskChangeEvent.model_validate(payload)
        except ValidationError as exc:
            logger.warning("board.push.malformed_event", extra={"error": str(exc)})
            return
        self.worker.submit(PushEvent(event=event))

    async def handle_connection_status(self, status: ConnectionStatus) -> None:
        if status == ConnectionStatus.CONNECTED:
            self.connection = ConnectionState.CONNECTED
            self._cancel_poll()
            # Events may have been missed while disconnected.
            self.request_refresh(source="reconnect")
        else:
            self.connection = ConnectionState.RECONNECTING
            self._start_poll()
        self._broadcast(BoardUpdate(kind="connection"))

    def _start_poll(self) -> None:
        if self.snapshot_poll_seconds <= 0:
            return
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.create_task(self._poll_while_disconnected())

    def _cancel_poll(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll_while_disconnected(self) -> None:
        while self.connection == ConnectionState.RECONNECTING:
            await asyncio.sleep(self.snapshot_poll_seconds)
            if self.connection != ConnectionState.RECONNECTING:
                break
            await self.refresh(source="poll")

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    async def claim(self, task_id: str, user_id: str) -> TransitionOutcome:
        return await self.ownership.claim(task_id, user_id)

    async def release(self, task_id: str, user_id: str) -> TransitionOutcome:
        return await self.ownership.release(task_id, user_id)

    async def start(self, task_id: str, user_id: str) -> TransitionOutcome:
        return await self.ownership.start(task_id, user_id)

    async def complete(self, task_id: str, user_id: str) -> TransitionOutcome:
        return await self.ownership.complete(task_id, user_id)

    def preferences(self, user_id: str | None = None) -> ViewPreferences:
        """Return the viewer's filter and grouping, creating defaults on first use."""
        return self._preferences.setdefault(user_id, ViewPreferences())

    def set_filter(
        self,
        statuses: Iterable[TaskStatus | str],
        user_id: str | None = None,
    ) -> list[TaskStatus]:
        parsed = {TaskStatus.parse(status) for status in statuses}
        prefs = self.preferences(user_id)
        prefs.selected_statuses = [status for status in TaskStatus if status in parsed]
        self._broadcast(BoardUpdate(kind="board", origin_user_id=user_id))
        return prefs.selected_statuses

    def set_group_by(self, group_by: GroupBy | str, user_id: str | None = None) -> GroupBy:
        prefs = self.preferences(user_id)
        prefs.group_by = GroupBy(group_by)
        self._broadcast(BoardUpdate(kind="board", origin_user_id=user_id))
        return prefs.group_by

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    def view(self, acting_user_id: str | None = None) -> BoardViewRead:
        prefs = self._preferences.get(acting_user_id) or ViewPreferences()
        return build_board_view(
            self.store.visible_tasks(),
            self.stories,
            selected_statuses=prefs.selected_statuses,
            group_by=prefs.group_by,
            acting_user_id=acting_user_id,
            pending_ids=self.store.pending_ids(),
        )

    def metrics(self, *, now: datetime | None = None) -> SprintMetricsRead | None:
        if self.sprint is None:
            return None
        sprint_tasks, _ = drop_orphans(self.store.visible_tasks(), self.stories)
        return compute_sprint_metrics(self.sprint, sprint_tasks, self.stories, now=now)

    def board(self, acting_user_id: str | None = None) -> BoardRead:
        return BoardRead(
            ready=self.ready,
            connection=self.connection,
            view=self.view(acting_user_id),
            metrics=self.metrics(),
            pending_task_ids=self.store.pending_ids(),
        )

    # ------------------------------------------------------------------
    # UI stream subscribers
    # ------------------------------------------------------------------

    def subscribe(self) -> asyncio.Queue[BoardUpdate]:
        queue: asyncio.Queue[BoardUpdate] = asyncio.Queue(maxsize=_SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[BoardUpdate]) -> None:
        self._subscribers.discard(queue)

    def _broadcast(self, update: BoardUpdate) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(update)
            except asyncio.QueueFull:
                logger.warning("board.stream.subscriber_lagging", extra={"kind": update.kind})

    def _on_store_change(self, change: StoreChange) -> None:
        if change.result == ApplyResult.UNRESOLVED:
            self.request_refresh(source="push_gap")
            return
        self._broadcast(BoardUpdate(kind="board"))
        message = change.message
        if not isinstance(message, PeerChange | PushEvent) or not change.task_ids:
            return
        record = self.store.confirmed(change.task_ids[0])
        if record is None:
            return
        self._broadcast(
            BoardUpdate(
                kind="notification",
                notification=peer_notification(record),
                origin_user_id=message.origin_user_id,
            ),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_background(self, *, push_url: str | None = None) -> None:
        """Start the reconciliation worker and the push channel subscription."""
        self._background.append(asyncio.create_task(self.worker.run()))
        self.push_channel = PushChannel(
            push_url or settings.resolved_push_channel_url(self.sprint_id),
            client=self.client.http,
            on_event=self.handle_push_payload,
            on_status=self.handle_connection_status,
        )
        self._background.append(asyncio.create_task(self.push_channel.run()))
        self._start_poll()

    async def aclose(self) -> None:
        if self.push_channel is not None:
            self.push_channel.stop()
        self.worker.stop()
        self._cancel_poll()
        tasks = [*self._background]
        if self._refresh_task is not None:
            tasks.append(self._refresh_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self.reconciler.remove_listener(self._on_store_change)
