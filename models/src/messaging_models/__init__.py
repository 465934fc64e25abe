"""Shared Pydantic models for threadsync."""

from messaging_models.conversation import (
    BusinessSummary,
    ConversationListing,
    ConversationRow,
    ConversationSummary,
    MessagingRole,
    ParticipantSummary,
    sort_conversations,
    truncate_preview,
)
from messaging_models.message import (
    ClientState,
    ConfirmedMessage,
    MessagePage,
    MessageStatus,
    PendingMessage,
    ThreadMessage,
    is_local_id,
    new_local_id,
)
from messaging_models.events import ChangeEvent, ChangeFilter, ChangeKind

__all__ = [
    # Conversations
    "BusinessSummary",
    "ConversationListing",
    "ConversationRow",
    "ConversationSummary",
    "MessagingRole",
    "ParticipantSummary",
    "sort_conversations",
    "truncate_preview",
    # Messages
    "ClientState",
    "ConfirmedMessage",
    "MessagePage",
    "MessageStatus",
    "PendingMessage",
    "ThreadMessage",
    "is_local_id",
    "new_local_id",
    # Row-change events
    "ChangeEvent",
    "ChangeFilter",
    "ChangeKind",
]
