"""Structured error payload schemas used by API responses."""

from __future__ import annotations

from pydantic import Field
from sqlmodel import SQLModel


class ErrorResponse(SQLModel):
    """Standardized error payload returned by every route."""

    detail: str | dict[str, object] | list[object] = Field(
        description="Error payload. Clients should rely on `code` when present.",
        examples=["Task already claimed by user-42", {"message": "Task not found."}],
    )
    request_id: str | None = Field(
        default=None,
        description="Request correlation identifier injected by middleware.",
    )
    code: str | None = Field(
        default=None,
        description="Optional machine-readable error code.",
        examples=["task_conflict", "persistence_unavailable"],
    )
    retryable: bool | None = Field(
        default=None,
        description="Whether the client may retry the same call unchanged.",
    )
