"""Unit tests for the shared messaging models."""

from datetime import datetime

import pytest
from pydantic import ValidationError

from messaging_models import (
    ChangeEvent,
    ChangeKind,
    ClientState,
    ConfirmedMessage,
    ConversationRow,
    MessagingRole,
    PendingMessage,
    is_local_id,
    truncate_preview,
)


class TestMessageIdentity:
    """Test that local and server ids never mix."""

    def test_pending_messages_get_local_ids(self):
        """Test the default id of an optimistic message."""
        message = PendingMessage(conversation_id="c-1", body="hi", sender_type=MessagingRole.USER)

        assert is_local_id(message.id)
        assert message.client_state is ClientState.SENDING

    def test_confirmed_message_rejects_local_id(self):
        """Test that a server message cannot carry a local id."""
        with pytest.raises(ValidationError):
            ConfirmedMessage(id="local-abc", conversation_id="c-1", sender_type=MessagingRole.USER)

    def test_pending_message_rejects_server_id(self):
        """Test that an optimistic message cannot carry a server id."""
        with pytest.raises(ValidationError):
            PendingMessage(id="m-1", conversation_id="c-1", sender_type=MessagingRole.USER)

    def test_naive_timestamps_are_utc(self):
        """Test that rows without a zone are read as UTC."""
        message = ConfirmedMessage.from_row(
            {"id": "m-1", "conversation_id": "c-1", "created_at": datetime(2026, 1, 1, 9, 0)}
        )

        assert message.created_at.tzinfo is not None
        assert message.sender_type is MessagingRole.USER
        assert message.client_state is ClientState.NONE


class TestConversationRow:
    """Test role-relevant counters."""

    def test_unread_for_picks_the_role_counter(self):
        """Test that each role sees only its own counter."""
        row = ConversationRow(id="c-1", user_unread_count=2, business_unread_count=5)

        assert row.unread_for(MessagingRole.USER) == 2
        assert row.unread_for(MessagingRole.BUSINESS) == 5

    def test_unread_never_negative(self):
        """Test that a bad counter is clamped at zero."""
        row = ConversationRow(id="c-1", user_unread_count=-4)

        assert row.unread_for(MessagingRole.USER) == 0
        assert row.unread_for(MessagingRole.BUSINESS) == 0

    def test_preview_truncation(self):
        """Test trimming a body down to a preview."""
        assert truncate_preview("  hello  ") == "hello"
        assert len(truncate_preview("x" * 500)) == 160
        assert truncate_preview(None) == ""


class TestChangeEvent:
    """Test change event parsing."""

    def test_from_payload_accepts_both_shapes(self):
        """Test the trigger shape and the kind/new/old shape."""
        trigger = ChangeEvent.from_payload({"type": "INSERT", "table": "messages", "record": {"id": "m-1"}})
        direct = ChangeEvent.from_payload({"kind": "delete", "table": "messages", "old": {"id": "m-1"}})

        assert trigger.kind is ChangeKind.INSERT
        assert trigger.row == {"id": "m-1"}
        assert direct.kind is ChangeKind.DELETE
        assert direct.row == {"id": "m-1"}
