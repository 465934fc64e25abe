"""End-to-end flow of a business owner answering a customer."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from helpers import at, conversation_event, message_event, settle
from messaging_models import ClientState, MessagingRole, PendingMessage
from threadsync.services import ConversationStore, MessageThreadStore, ReadReceiptCoordinator


@pytest.mark.asyncio
async def test_business_owner_reads_replies_and_receives(business_server, cache, feed, config):
    """Test inbox and thread staying in step through read, send and receive."""
    business_server.add_conversation("c-1", user_id="user-1", business_id="biz-1")
    business_server.add_message("c-1", "Hello", MessagingRole.USER, "user-1", at(0))
    business_server.add_message("c-1", "Are you open today?", MessagingRole.USER, "user-1", at(1))
    business_server.add_message("c-1", "Hi", MessagingRole.USER, "user-1", at(2))

    inbox = ConversationStore(business_server, cache, feed, "owner-1", config)
    state = await inbox.load(MessagingRole.BUSINESS)
    assert state.conversations[0].unread_count == 3
    assert state.conversations[0].last_message_preview == "Hi"

    thread = MessageThreadStore(business_server, feed, inbox, "owner-1", config)
    await thread.open("c-1", MessagingRole.BUSINESS)
    assert [m.body for m in thread.messages] == ["Hello", "Are you open today?", "Hi"]
    assert thread.business_id == "biz-1"

    receipts = ReadReceiptCoordinator(thread, delay=config.read_receipt_delay)
    receipts.set_visible(True)
    await asyncio.sleep(config.read_receipt_delay * 3)
    await receipts.wait()
    await cache.drain()
    assert inbox.listing.get("c-1").unread_count == 0

    # Reply
    business_server.send_gate = asyncio.Event()
    sending = asyncio.create_task(thread.send("Thanks!"))
    await settle()
    assert len(thread.messages) == 4
    assert isinstance(thread.latest_message, PendingMessage)
    assert thread.latest_message.client_state is ClientState.SENDING

    business_server.send_gate.set()
    result = await sending
    assert result.ok
    assert thread.latest_message.id == result.message.id
    assert inbox.listing.get("c-1").last_message_preview == "Thanks!"
    assert inbox.listing.get("c-1").unread_count == 0
    assert not receipts.pending

    # Customer answers
    reply = business_server.add_message(
        "c-1",
        "You're welcome",
        MessagingRole.USER,
        "user-1",
        datetime.now(timezone.utc) + timedelta(seconds=1),
    )
    await feed.publish(message_event(reply))
    await feed.publish(conversation_event(business_server.row("c-1")))
    await settle()

    assert [m.body for m in thread.messages][-2:] == ["Thanks!", "You're welcome"]
    assert len(thread.messages) == 5
    assert inbox.listing.get("c-1").last_message_preview == "You're welcome"
    assert receipts.pending

    await asyncio.sleep(config.read_receipt_delay * 3)
    await receipts.wait()
    await cache.drain()

    assert inbox.listing.get("c-1").unread_count == 0
    assert inbox.unread_count == 0
    assert business_server.count("read") == 2

    receipts.close()
    await thread.close()
    await inbox.close()
    await cache.drain()
