"""Payloads returned by ownership intent routes."""

from __future__ import annotations

from sqlmodel import SQLModel

from sprintboard.models.tasks import Task, TaskAction
from sprintboard.services.transitions import OutcomeKind, TransitionOutcome


class IntentResultRead(SQLModel):
    """Outcome of a claim/release/start/complete request."""

    ok: bool
    outcome: OutcomeKind
    action: TaskAction
    task_id: str
    message: str
    retryable: bool = False
    task: Task | None = None

    @classmethod
    def from_outcome(cls, outcome: TransitionOutcome) -> IntentResultRead:
        return cls(
            ok=outcome.ok,
            outcome=outcome.kind,
            action=outcome.action,
            task_id=outcome.task_id,
            message=outcome.message,
            retryable=outcome.retryable,
            task=outcome.task,
        )
