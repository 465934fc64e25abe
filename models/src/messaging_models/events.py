"""Row-change notification models."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ChangeKind(str, Enum):
    """Operation that produced a row change."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """A single insert/update/delete notification for one row."""

    kind: ChangeKind = Field(..., description="Operation kind")
    table: str = Field(..., description="Relation the row belongs to")
    new: dict[str, Any] | None = Field(None, description="Row after the change")
    old: dict[str, Any] | None = Field(None, description="Row before the change")

    @property
    def row(self) -> dict[str, Any] | None:
        """New values when present, otherwise the old ones (deletes)."""
        return self.new or self.old

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChangeEvent":
        """Parse the `{type, table, record, old_record}` notification shape."""
        return cls(
            kind=ChangeKind(str(payload.get("type") or payload.get("kind")).lower()),
            table=payload["table"],
            new=payload.get("record") or payload.get("new"),
            old=payload.get("old_record") or payload.get("old"),
        )


class ChangeFilter(BaseModel):
    """Equality predicate selecting which events a subscriber receives."""

    table: str
    column: str | None = None
    value: str | None = None

    model_config = {"frozen": True}

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if self.column is None:
            return True
        row = event.row or {}
        return str(row.get(self.column)) == str(self.value)

    def __str__(self) -> str:
        if self.column is None:
            return self.table
        return f"{self.table}:{self.column}=eq.{self.value}"
