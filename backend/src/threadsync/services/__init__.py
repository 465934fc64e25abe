"""Conversation, message thread and read-receipt stores."""

from threadsync.services.conversations import ConversationStore, ConversationsState
from threadsync.services.message_thread import MessageThreadStore, SendResult
from threadsync.services.read_receipts import ReadReceiptCoordinator

__all__ = [
    "ConversationStore",
    "ConversationsState",
    "MessageThreadStore",
    "SendResult",
    "ReadReceiptCoordinator",
]
