"""Story grouping container for tasks."""

from __future__ import annotations

from pydantic import field_validator
from sqlmodel import SQLModel


class Story(SQLModel):
    """Story as listed for the open sprint; never mutated by the board."""

    id: str
    title: str
    status: str = "ready"
    position: int | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: object) -> object:
        return value if isinstance(value, str) else str(value)
