"""Reusable FastAPI dependencies for the board session and acting user.

The identity provider sits in front of this service and forwards the acting
user's id in `X-User-Id`; `ACTING_USER_ID` is only a fallback for single-user
deployments.
"""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status

from sprintboard.core.config import settings
from sprintboard.services.board_session import SprintBoardSession

USER_ID_HEADER = "X-User-Id"


def get_board_session(request: Request) -> SprintBoardSession:
    """Return the process-wide board session created at startup."""
    board = getattr(request.app.state, "board", None)
    if not isinstance(board, SprintBoardSession):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Board session is not initialized.",
        )
    return board


def get_acting_user_id_optional(
    x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER),
) -> str | None:
    user_id = (x_user_id or "").strip() or settings.acting_user_id.strip()
    return user_id or None


def require_acting_user_id(
    user_id: str | None = Depends(get_acting_user_id_optional),
) -> str:
    """Require an identity for intents that change task ownership."""
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {USER_ID_HEADER} header.",
        )
    return user_id


BOARD_DEP = Depends(get_board_session)
USER_OPTIONAL_DEP = Depends(get_acting_user_id_optional)
USER_REQUIRED_DEP = Depends(require_acting_user_id)
