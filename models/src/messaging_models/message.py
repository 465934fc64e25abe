"""Message models.

A thread holds two kinds of message. ``ConfirmedMessage`` mirrors a row the
server has persisted and is identified by the server id. ``PendingMessage``
is the optimistic copy the client shows while a send is in flight or after it
failed; it is identified by a local id that can never collide with a server id.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, Field, field_validator

from messaging_models.conversation import MessagingRole, ensure_aware

LOCAL_ID_PREFIX = "local-"


def new_local_id() -> str:
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


def is_local_id(message_id: str) -> bool:
    return message_id.startswith(LOCAL_ID_PREFIX)


class MessageStatus(str, Enum):
    """Server-owned delivery status."""

    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class ClientState(str, Enum):
    """Client-only optimistic state, never persisted."""

    SENDING = "sending"
    FAILED = "failed"
    NONE = "none"


class MessageBase(BaseModel):
    """Fields shared by confirmed and pending messages."""

    id: str = Field(..., description="Server id or local id")
    conversation_id: str = Field(..., description="Parent conversation ID")
    body: str = Field("", description="Message text")
    sender_type: MessagingRole = Field(..., description="Which side sent the message")
    sender_user_id: str | None = Field(None, description="Account that sent the message")
    sender_business_id: str | None = Field(None, description="Business that sent the message, if any")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Creation timestamp",
    )
    status: MessageStatus = Field(MessageStatus.SENT, description="Delivery status")
    delivered_at: datetime | None = Field(None, description="When the counterpart received it")
    read_at: datetime | None = Field(None, description="When the counterpart read it")

    @field_validator("created_at", "delivered_at", "read_at")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value is not None else None


class ConfirmedMessage(MessageBase):
    """A message acknowledged by the server."""

    kind: Literal["confirmed"] = "confirmed"

    @field_validator("id")
    @classmethod
    def _server_id(cls, value: str) -> str:
        if is_local_id(value):
            raise ValueError(f"Local id {value} cannot identify a confirmed message")
        return value

    @property
    def client_state(self) -> ClientState:
        return ClientState.NONE

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ConfirmedMessage":
        """Build from an API payload or a `messages` row."""
        return cls(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            body=row.get("body") or row.get("content") or "",
            sender_type=row.get("sender_type") or MessagingRole.USER,
            sender_user_id=row.get("sender_user_id"),
            sender_business_id=row.get("sender_business_id"),
            created_at=row["created_at"],
            status=row.get("status") or MessageStatus.SENT,
            delivered_at=row.get("delivered_at"),
            read_at=row.get("read_at"),
        )


class PendingMessage(MessageBase):
    """An optimistic message that has not been confirmed yet."""

    kind: Literal["pending"] = "pending"
    id: str = Field(default_factory=new_local_id, description="Local id")
    client_state: Literal[ClientState.SENDING, ClientState.FAILED] = ClientState.SENDING

    @field_validator("id")
    @classmethod
    def _local_id(cls, value: str) -> str:
        if not is_local_id(value):
            raise ValueError(f"Pending message id {value} must be a local id")
        return value


ThreadMessage = Union[ConfirmedMessage, PendingMessage]


class MessagePage(BaseModel):
    """A contiguous slice of history, ascending by created_at."""

    conversation_id: str
    messages: list[ThreadMessage] = Field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None
