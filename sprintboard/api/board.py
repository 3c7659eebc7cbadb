"""Board read model, filter controls, refresh, and live stream endpoints."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, Request, status
from sse_starlette.sse import EventSourceResponse

from sprintboard.api.deps import BOARD_DEP, USER_OPTIONAL_DEP
from sprintboard.core.config import settings
from sprintboard.schemas.board import (
    BoardFilterUpdate,
    BoardGroupByUpdate,
    BoardRead,
    SprintMetricsRead,
)
from sprintboard.services.board_session import SprintBoardSession

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sprintboard.services.board_session import BoardUpdate

router = APIRouter(prefix="/board", tags=["board"])

STREAM_IDLE_SECONDS = 1.0


@router.get("", response_model=BoardRead)
def get_board(
    board: SprintBoardSession = BOARD_DEP,
    user_id: str | None = USER_OPTIONAL_DEP,
) -> BoardRead:
    """Return the filtered, grouped board with sprint metrics."""
    return board.board(user_id)


@router.get("/metrics", response_model=SprintMetricsRead)
def get_board_metrics(board: SprintBoardSession = BOARD_DEP) -> SprintMetricsRead:
    metrics = board.metrics()
    if metrics is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sprint has not been loaded yet.",
        )
    return metrics


@router.put("/filters", response_model=BoardRead)
async def update_board_filters(
    payload: BoardFilterUpdate,
    board: SprintBoardSession = BOARD_DEP,
    user_id: str | None = USER_OPTIONAL_DEP,
) -> BoardRead:
    """Replace the caller's status filter; an empty list shows every task."""
    board.set_filter(payload.statuses, user_id)
    return board.board(user_id)


@router.put("/group-by", response_model=BoardRead)
async def update_board_grouping(
    payload: BoardGroupByUpdate,
    board: SprintBoardSession = BOARD_DEP,
    user_id: str | None = USER_OPTIONAL_DEP,
) -> BoardRead:
    board.set_group_by(payload.group_by, user_id)
    return board.board(user_id)


@router.post("/refresh", response_model=BoardRead)
async def refresh_board(
    board: SprintBoardSession = BOARD_DEP,
    user_id: str | None = USER_OPTIONAL_DEP,
) -> BoardRead:
    """Re-fetch the task snapshot from the persistence service."""
    if not await board.refresh(source="manual"):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Unable to refresh the board right now; please retry.",
        )
    return board.board(user_id)


def _drain(queue: asyncio.Queue[BoardUpdate], first: BoardUpdate) -> list[BoardUpdate]:
    updates = [first]
    while True:
        try:
            updates.append(queue.get_nowait())
        except asyncio.QueueEmpty:
            return updates


@router.get("/stream")
async def stream_board(
    request: Request,
    board: SprintBoardSession = BOARD_DEP,
    user_id: str | None = USER_OPTIONAL_DEP,
) -> EventSourceResponse:
    """Stream board snapshots and peer-change notifications via server-sent events."""
    queue = board.subscribe()

    async def event_generator() -> AsyncIterator[dict[str, str]]:
        try:
            yield {"event": "board", "data": board.board(user_id).model_dump_json()}
            while True:
                if await request.is_disconnected():
                    break
                try:
                    first = await asyncio.wait_for(queue.get(), timeout=STREAM_IDLE_SECONDS)
                except TimeoutError:
                    continue
                updates = _drain(queue, first)
                for update in updates:
                    if update.kind != "notification" or update.notification is None:
                        continue
                    if user_id is not None and update.origin_user_id == user_id:
                        continue
                    yield {
                        "event": "notification",
                        "data": json.dumps(update.notification.model_dump()),
                    }
                yield {"event": "board", "data": board.board(user_id).model_dump_json()}
        finally:
            board.unsubscribe(queue)

    return EventSourceResponse(event_generator(), ping=settings.stream_ping_seconds)
