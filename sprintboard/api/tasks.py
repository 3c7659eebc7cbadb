"""Ownership intent endpoints: claim, release, start, complete."""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from sprintboard.api.deps import BOARD_DEP, USER_REQUIRED_DEP
from sprintboard.core.error_handling import error_response
from sprintboard.schemas.errors import ErrorResponse
from sprintboard.schemas.intents import IntentResultRead
from sprintboard.services.board_session import SprintBoardSession
from sprintboard.services.transitions import OutcomeKind, TransitionOutcome

router = APIRouter(prefix="/tasks", tags=["tasks"])

_INTENT_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse},
    status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}

# outcome -> (HTTP status, error code)
_OUTCOME_ERRORS: dict[OutcomeKind, tuple[int, str]] = {
    OutcomeKind.CONFLICT: (status.HTTP_409_CONFLICT, "task_conflict"),
    OutcomeKind.REJECTED: (status.HTTP_409_CONFLICT, "task_conflict"),
    OutcomeKind.NOT_FOUND: (status.HTTP_404_NOT_FOUND, "task_not_found"),
    OutcomeKind.TRANSPORT_ERROR: (status.HTTP_503_SERVICE_UNAVAILABLE, "persistence_unavailable"),
}


def _respond(request: Request, outcome: TransitionOutcome) -> IntentResultRead | JSONResponse:
    result = IntentResultRead.from_outcome(outcome)
    if outcome.ok:
        return result
    status_code, code = _OUTCOME_ERRORS[outcome.kind]
    return error_response(
        request,
        status_code=status_code,
        detail=result.model_dump(mode="json"),
        code=code,
        retryable=outcome.retryable,
    )


@router.post("/{task_id}/claim", response_model=IntentResultRead, responses=_INTENT_RESPONSES)
async def claim_task(
    task_id: str,
    request: Request,
    board: SprintBoardSession = BOARD_DEP,
    user_id: str = USER_REQUIRED_DEP,
) -> IntentResultRead | JSONResponse:
    """Take ownership of an available task ("I'm on it")."""
    return _respond(request, await board.claim(task_id, user_id))


@router.post("/{task_id}/release", response_model=IntentResultRead, responses=_INTENT_RESPONSES)
async def release_task(
    task_id: str,
    request: Request,
    board: SprintBoardSession = BOARD_DEP,
    user_id: str = USER_REQUIRED_DEP,
) -> IntentResultRead | JSONResponse:
    """Give an owned task back to the pool."""
    return _respond(request, await board.release(task_id, user_id))


@router.post("/{task_id}/start", response_model=IntentResultRead, responses=_INTENT_RESPONSES)
async def start_task(
    task_id: str,
    request: Request,
    board: SprintBoardSession = BOARD_DEP,
    user_id: str = USER_REQUIRED_DEP,
) -> IntentResultRead | JSONResponse:
    return _respond(request, await board.start(task_id, user_id))


@router.post("/{task_id}/complete", response_model=IntentResultRead, responses=_INTENT_RESPONSES)
async def complete_task(
    task_id: str,
    request: Request,
    board: SprintBoardSession = BOARD_DEP,
    user_id: str = USER_REQUIRED_DEP,
) -> IntentResultRead | JSONResponse:
    return _respond(request, await board.complete(task_id, user_id))

