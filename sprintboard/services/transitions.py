"""Ownership transition engine for claim/release/start/complete.

Each operation is validated against the visible record, applied optimistically
through the reconciler, and dispatched to the persistence service. The service
is the system of record: concurrent claims are decided there, and this engine
only reacts to its answer.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING
from uuid import uuid4

from sprintboard.core.config import settings
from sprintboard.core.logging import get_logger
from sprintboard.core.time import utcnow
from sprintboard.models.tasks import TASK_TRANSITIONS, Task, TaskAction, TaskStatus
from sprintboard.services.persistence_client import (
    PersistenceTransportError,
    TaskConflictError,
    TaskNotFoundError,
)
from sprintboard.services.reconciliation import (
    ApplyResult,
    OptimisticWrite,
    ServerConfirmation,
    WriteRejected,
)

if TYPE_CHECKING:
    from sprintboard.services.persistence_client import PersistenceClient
    from sprintboard.services.reconciliation import Reconciler

logger = get_logger(__name__)


class TransitionRejected(Exception):
    """Local precondition failure; the request is never sent upstream."""

    def __init__(self, message: str, *, current: Task | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.current = current


class OutcomeKind(str, Enum):
    APPLIED = "applied"
    CONFLICT = "conflict"
    REJECTED = "rejected"
    TRANSPORT_ERROR = "transport_error"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of an ownership intent, returned instead of raising."""

    kind: OutcomeKind
    action: TaskAction
    task_id: str
    message: str
    task: Task | None = None

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.APPLIED

    @property
    def retryable(self) -> bool:
        return self.kind == OutcomeKind.TRANSPORT_ERROR


_SUCCESS_MESSAGES = {
    TaskAction.CLAIM: "You are now responsible for this task",
    TaskAction.RELEASE: "The task is now available for others to claim",
    TaskAction.START: "Work on the task has started",
    TaskAction.COMPLETE: "The task has been marked as complete",
}


def plan_transition(record: Task, action: TaskAction, user_id: str) -> Task:
    """Return the record *action* would produce, or raise `TransitionRejected`.

    Completed tasks have no outgoing transition here; reopening is an
    administrative operation handled elsewhere.
    """
    required, target = TASK_TRANSITIONS[action]
    if record.status != required:
        if action == TaskAction.CLAIM and record.owner_user_id:
            msg = f"Task already claimed by {record.owner_user_id}"
        else:
            msg = (
                f"Cannot {action.value} task: current status is {record.status.value}, "
                f"expected {required.value}"
            )
        raise TransitionRejected(msg, current=record)
    if action != TaskAction.CLAIM and record.owner_user_id != user_id:
        msg = f"Only the task owner can {action.value} it; {record.describe_holder()}"
        raise TransitionRejected(msg, current=record)

    now = utcnow()
    update: dict[str, object] = {"status": target, "updated_at": now}
    if target == TaskStatus.OWNED:
        update["owner_user_id"] = user_id
        update["owned_at"] = now
    elif target == TaskStatus.AVAILABLE:
        update.update(owner_user_id=None, owned_at=None, estimated_hours=None)
    elif target == TaskStatus.COMPLETED:
        update["completed_at"] = now
    # model_copy skips validation, so re-validate to keep owner/status consistent.
    return Task.model_validate({**record.model_dump(), **update})


class OwnershipService:
    """Runs lifecycle intents: optimistic apply, bounded upstream call, reconcile."""

    def __init__(
        self,
        reconciler: Reconciler,
        client: PersistenceClient,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.client = client
        self.timeout_seconds = timeout_seconds or settings.lifecycle_timeout_seconds

    async def claim(self, task_id: str, user_id: str) -> TransitionOutcome:
        return await self.run(TaskAction.CLAIM, task_id, user_id)

    async def release(self, task_id: str, user_id: str) -> TransitionOutcome:
        return await self.run(TaskAction.RELEASE, task_id, user_id)

    async def start(self, task_id: str, user_id: str) -> TransitionOutcome:
        return await self.run(TaskAction.START, task_id, user_id)

    async def complete(self, task_id: str, user_id: str) -> TransitionOutcome:
        return await self.run(TaskAction.COMPLETE, task_id, user_id)

    async def run(self, action: TaskAction, task_id: str, user_id: str) -> TransitionOutcome:
        store = self.reconciler.store
        entry = store.entry(task_id)
        if entry is None:
            return TransitionOutcome(
                kind=OutcomeKind.NOT_FOUND,
                action=action,
                task_id=task_id,
                message="Task is not part of the current sprint",
            )
        pending = entry.pending
        if pending is not None and pending.user_id == user_id:
            return TransitionOutcome(
                kind=OutcomeKind.REJECTED,
                action=action,
                task_id=task_id,
                message="Another update to this task is still in progress",
                task=pending.record,
            )
        # Another user's in-flight write is not yet a fact: check against the
        # confirmed record and let the persistence service decide.
        current = entry.confirmed
        try:
            optimistic = plan_transition(current, action, user_id)
        except TransitionRejected as exc:
            logger.info(
                "transition.rejected",
                extra={"task_id": task_id, "action": action.value, "reason": exc.message},
            )
            return TransitionOutcome(
                kind=OutcomeKind.REJECTED,
                action=action,
                task_id=task_id,
                message=exc.message,
                task=current,
            )

        op_id = uuid4().hex
        # The pending slot holds one user's write; a concurrent second user is
        # dispatched without an optimistic record.
        tracked = pending is None
        if tracked:
            self.reconciler.apply(
                OptimisticWrite(op_id=op_id, record=optimistic, user_id=user_id),
            )
        logger.info(
            "transition.dispatched",
            extra={
                "task_id": task_id,
                "action": action.value,
                "op_id": op_id,
                "optimistic": tracked,
            },
        )

        try:
            confirmed = await asyncio.wait_for(
                self.client.transition(action, task_id, acting_user_id=user_id),
                timeout=self.timeout_seconds,
            )
        except TaskConflictError as exc:
            self.reconciler.apply(
                WriteRejected(task_id=task_id, op_id=op_id, reason=exc.message, current=exc.current),
            )
            latest = store.get(task_id)
            message = self._conflict_message(exc.message, latest)
            logger.info(
                "transition.conflict",
                extra={"task_id": task_id, "action": action.value, "reason": exc.message},
            )
            return TransitionOutcome(
                kind=OutcomeKind.CONFLICT,
                action=action,
                task_id=task_id,
                message=message,
                task=latest,
            )
        except TaskNotFoundError as exc:
            self.reconciler.apply(WriteRejected(task_id=task_id, op_id=op_id, reason=str(exc)))
            return TransitionOutcome(
                kind=OutcomeKind.NOT_FOUND,
                action=action,
                task_id=task_id,
                message="Task no longer exists",
                task=store.get(task_id),
            )
        except (PersistenceTransportError, TimeoutError) as exc:
            reason = str(exc) or "Persistence service timed out"
            self.reconciler.apply(WriteRejected(task_id=task_id, op_id=op_id, reason=reason))
            logger.warning(
                "transition.transport_failed",
                extra={"task_id": task_id, "action": action.value, "error": reason},
            )
            return TransitionOutcome(
                kind=OutcomeKind.TRANSPORT_ERROR,
                action=action,
                task_id=task_id,
                message=f"Unable to {action.value} task right now; please retry",
                task=store.get(task_id),
            )

        result = self.reconciler.apply(ServerConfirmation(op_id=op_id, record=confirmed))
        if result == ApplyResult.STALE:
            logger.info(
                "transition.confirmation_superseded",
                extra={"task_id": task_id, "action": action.value, "op_id": op_id},
            )
        return TransitionOutcome(
            kind=OutcomeKind.APPLIED,
            action=action,
            task_id=task_id,
            message=_SUCCESS_MESSAGES[action],
            task=store.get(task_id),
        )

    @staticmethod
    def _conflict_message(reason: str, latest: Task | None) -> str:
        if latest is None:
            return reason
        if latest.owner_user_id:
            return f"{reason} (task is {latest.status.value}, owned by {latest.owner_user_id})"
        return f"{reason} (task is {latest.status.value})"
