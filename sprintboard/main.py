"""FastAPI application entrypoint and router wiring for the board service."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import APIRouter, FastAPI, Request

from sprintboard.api.board import router as board_router
from sprintboard.api.tasks import router as tasks_router
from sprintboard.core.config import settings
from sprintboard.core.error_handling import install_error_handling
from sprintboard.core.logging import configure_logging, get_logger
from sprintboard.schemas.health import HealthStatusResponse
from sprintboard.services.board_session import SprintBoardSession
from sprintboard.services.persistence_client import PersistenceClient, PersistenceError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

configure_logging()
logger = get_logger(__name__)

OPENAPI_TAGS = [
    {
        "name": "health",
        "description": "Service liveness/readiness probes used by infrastructure and runtime checks.",
    },
    {
        "name": "board",
        "description": "Sprint board read model, filters, grouping, metrics, and live stream.",
    },
    {
        "name": "tasks",
        "description": "Task ownership intents: claim, release, start, and complete.",
    },
]


async def _start_board(app: FastAPI) -> SprintBoardSession:
    client = PersistenceClient()
    board = SprintBoardSession(client)
    try:
        await board.load()
    except PersistenceError as exc:
        # Not fatal: the reconnect/poll path retries the initial load.
        logger.warning(
            "app.startup.board_load_failed",
            extra={"sprint_id": board.sprint_id, "error": str(exc)},
        )
    await board.start_background()
    app.state.board = board
    return board


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Load the sprint, start background consumers, and close them on shutdown."""
    owned = getattr(app.state, "board", None) is None
    board = await _start_board(app) if owned else None
    logger.info(
        "app.lifecycle.started",
        extra={"environment": settings.environment, "sprint_id": settings.sprint_id},
    )
    try:
        yield
    finally:
        if board is not None:
            await board.aclose()
            await board.client.aclose()
        logger.info("app.lifecycle.stopped")


def create_app(*, board: SprintBoardSession | None = None) -> FastAPI:
    """Build the application; tests pass a pre-built board to skip network startup."""
    app = FastAPI(
        title="Sprint Board API",
        version="0.1.0",
        lifespan=lifespan,
        openapi_tags=OPENAPI_TAGS,
    )
    if board is not None:
        app.state.board = board
    install_error_handling(app)

    @app.get("/healthz", tags=["health"], response_model=HealthStatusResponse)
    def healthz() -> HealthStatusResponse:
        return HealthStatusResponse(ok=True)

    @app.get("/readyz", tags=["health"], response_model=HealthStatusResponse)
    def readyz(request: Request) -> HealthStatusResponse:
        current = getattr(request.app.state, "board", None)
        return HealthStatusResponse(ok=bool(current is not None and current.ready))

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(board_router)
    api_v1.include_router(tasks_router)
    app.include_router(api_v1)
    return app


app = create_app()
