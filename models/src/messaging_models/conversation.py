"""Conversation models."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, computed_field, field_validator

PREVIEW_MAX_LENGTH = 160


class MessagingRole(str, Enum):
    """Which side of a conversation the viewer is on."""

    USER = "user"
    BUSINESS = "business"

    @property
    def counterpart(self) -> "MessagingRole":
        return MessagingRole.BUSINESS if self is MessagingRole.USER else MessagingRole.USER


def ensure_aware(value: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def truncate_preview(text: str, limit: int = PREVIEW_MAX_LENGTH) -> str:
    """Trim a message body down to a list preview."""
    return (text or "").strip()[:limit]


class BusinessSummary(BaseModel):
    """Business shown as the counterpart in a user's inbox."""

    id: str
    name: str | None = None
    slug: str | None = None
    image_url: str | None = None
    category: str | None = None
    verified: bool | None = None


class ParticipantSummary(BaseModel):
    """End user shown as the counterpart in a business inbox."""

    user_id: str
    display_name: str = "Customer"
    username: str | None = None
    avatar_url: str | None = None


class ConversationRow(BaseModel):
    """Raw `conversations` row as carried by row-change events."""

    id: str = Field(..., description="Conversation ID")
    user_id: str | None = Field(None, description="End user side of the thread")
    business_id: str | None = Field(None, description="Business side, briefly null while provisioning")
    owner_id: str | None = Field(None, description="Owning account for multi-owner businesses")
    last_message_at: datetime | None = Field(None, description="Timestamp of the newest message")
    last_message_preview: str | None = Field(None, description="Truncated newest message body")
    user_unread_count: int | None = Field(None, description="Unread counter for the user side")
    business_unread_count: int | None = Field(None, description="Unread counter for the business side")

    @field_validator("last_message_at")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value is not None else None

    def unread_for(self, role: MessagingRole) -> int:
        """Return the one counter relevant to a viewer of the given role."""
        if role is MessagingRole.BUSINESS:
            count = self.business_unread_count
        else:
            count = self.user_unread_count
        return max(int(count or 0), 0)


class ConversationSummary(BaseModel):
    """A conversation as listed in a viewer's inbox."""

    id: str = Field(..., description="Unique conversation ID")
    user_id: str = Field(..., description="End user participating in the thread")
    business_id: str | None = Field(None, description="Business participating in the thread")
    owner_id: str | None = Field(None, description="Business owner account, if any")
    last_message_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Timestamp of the newest message",
    )
    last_message_preview: str = Field("", description="Truncated newest message body")
    unread_count: int = Field(0, ge=0, description="Unread counter for the viewer's role")
    created_at: datetime | None = Field(None, description="Creation timestamp")
    business: BusinessSummary | None = Field(None, description="Business display data")
    participant: ParticipantSummary | None = Field(None, description="Participant display data")

    @field_validator("last_message_at", "created_at")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value is not None else None

    @field_validator("last_message_preview", mode="before")
    @classmethod
    def _preview(cls, value: str | None) -> str:
        return value or ""


def sort_conversations(conversations: list[ConversationSummary]) -> list[ConversationSummary]:
    """Newest activity first; ties keep their existing order."""
    return sorted(conversations, key=lambda c: c.last_message_at, reverse=True)


class ConversationListing(BaseModel):
    """Cached value behind one conversation list key."""

    role: MessagingRole
    business_id: str | None = None
    conversations: list[ConversationSummary] = Field(default_factory=list)

    @computed_field
    @property
    def unread_total(self) -> int:
        """Sum of the listed role-relevant unread counters."""
        return sum(c.unread_count for c in self.conversations)

    def get(self, conversation_id: str) -> ConversationSummary | None:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None
