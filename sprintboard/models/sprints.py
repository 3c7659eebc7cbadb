"""Sprint time box used by the metrics calculator."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field, field_validator
from sqlmodel import SQLModel

from sprintboard.core.time import ensure_aware

RUNTIME_ANNOTATION_TYPES = (datetime,)


class Sprint(SQLModel):
    """Sprint metadata and point totals."""

    id: str
    name: str = ""
    goal: str | None = None
    start_date: datetime
    end_date: datetime
    capacity_points: int = Field(default=0, ge=0)
    committed_points: int = Field(default=0, ge=0)
    completed_points: int = Field(default=0, ge=0)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: object) -> object:
        return value if isinstance(value, str) else str(value)

    @field_validator("start_date", "end_date", mode="after")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return ensure_aware(value)
