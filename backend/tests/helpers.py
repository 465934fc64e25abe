"""In-memory message API and event builders for store tests."""

import asyncio
import itertools
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from messaging_models import (
    ChangeEvent,
    ChangeKind,
    ConfirmedMessage,
    ConversationListing,
    ConversationRow,
    ConversationSummary,
    MessagePage,
    MessageStatus,
    MessagingRole,
    sort_conversations,
    truncate_preview,
)
from threadsync.cursors import decode_cursor, encode_cursor
from threadsync.errors import MessagingError, TransportError

BASE_TIME = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


async def settle(rounds: int = 10):
    """Let background consumers and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeMessagingServer:
    """Implements the transport protocol against in-memory tables."""

    def __init__(self, viewer_id: str = "user-1", viewer_role: MessagingRole = MessagingRole.USER):
        self.viewer_id = viewer_id
        self.viewer_role = viewer_role
        self.owned_business_ids: set[str] = set()
        self.conversations: dict[str, dict] = {}
        self.messages: dict[str, list[ConfirmedMessage]] = defaultdict(list)
        self.calls: list[tuple] = []
        self.page_size = 30

        self.fail_sends = 0
        self.list_error: MessagingError | None = None
        self.send_gate: asyncio.Event | None = None
        self.fetch_gate: asyncio.Event | None = None
        self._ids = itertools.count(1)

    # ============= Seeding =============

    def add_conversation(
        self,
        conversation_id: str,
        user_id: str = "user-1",
        business_id: str | None = "biz-1",
        last_message_at: datetime | None = None,
    ) -> dict:
        self.conversations[conversation_id] = {
            "id": conversation_id,
            "user_id": user_id,
            "business_id": business_id,
            "owner_id": None,
            "last_message_at": last_message_at or BASE_TIME,
            "last_message_preview": "",
            "user_unread_count": 0,
            "business_unread_count": 0,
        }
        return self.conversations[conversation_id]

    def add_message(
        self,
        conversation_id: str,
        body: str,
        sender_type: MessagingRole,
        sender_user_id: str,
        created_at: datetime,
        status: MessageStatus = MessageStatus.DELIVERED,
    ) -> ConfirmedMessage:
        conversation = self.conversations[conversation_id]
        message = ConfirmedMessage(
            id=f"m-{next(self._ids):04d}",
            conversation_id=conversation_id,
            body=body,
            sender_type=sender_type,
            sender_user_id=sender_user_id,
            sender_business_id=conversation["business_id"] if sender_type is MessagingRole.BUSINESS else None,
            created_at=created_at,
            status=status,
        )
        self.messages[conversation_id].append(message)
        self._rollup(conversation_id)
        return message

    def _rollup(self, conversation_id: str):
        conversation = self.conversations[conversation_id]
        messages = sorted(self.messages[conversation_id], key=lambda m: (m.created_at, m.id))
        if messages:
            conversation["last_message_at"] = messages[-1].created_at
            conversation["last_message_preview"] = truncate_preview(messages[-1].body)
        conversation["user_unread_count"] = sum(
            1 for m in messages
            if m.sender_type is MessagingRole.BUSINESS and m.status is not MessageStatus.READ
        )
        conversation["business_unread_count"] = sum(
            1 for m in messages
            if m.sender_type is MessagingRole.USER and m.status is not MessageStatus.READ
        )

    def row(self, conversation_id: str) -> dict:
        return dict(self.conversations[conversation_id])

    # ============= Transport protocol =============

    async def list_conversations(
        self, role: MessagingRole, business_id: str | None = None
    ) -> ConversationListing:
        self.calls.append(("list", role, business_id))
        if self.list_error is not None:
            raise self.list_error

        rows = list(self.conversations.values())
        if role is MessagingRole.USER:
            rows = [r for r in rows if r["user_id"] == self.viewer_id]
        elif business_id:
            rows = [r for r in rows if r["business_id"] == business_id]
        else:
            rows = [r for r in rows if r["business_id"] in self.owned_business_ids]

        summaries = [
            ConversationSummary(
                id=r["id"],
                user_id=r["user_id"],
                business_id=r["business_id"],
                last_message_at=r["last_message_at"],
                last_message_preview=r["last_message_preview"],
                unread_count=ConversationRow.model_validate(r).unread_for(role),
            )
            for r in rows
        ]
        return ConversationListing(
            role=role,
            business_id=business_id if role is MessagingRole.BUSINESS else None,
            conversations=sort_conversations(summaries),
        )

    async def fetch_messages(
        self, conversation_id: str, cursor: str | None = None, limit: int | None = None
    ) -> MessagePage:
        self.calls.append(("fetch", conversation_id, cursor))

        ordered = sorted(
            self.messages[conversation_id], key=lambda m: (m.created_at, m.id), reverse=True
        )
        decoded = decode_cursor(cursor)
        if decoded is not None:
            boundary = datetime.fromisoformat(decoded.created_at)
            ordered = [
                m for m in ordered
                if m.created_at < boundary or (m.created_at == boundary and m.id < decoded.id)
            ]

        limit = limit or self.page_size
        rows = ordered[: limit + 1]
        has_more = len(rows) > limit
        page_rows = rows[:limit]
        next_cursor = (
            encode_cursor(page_rows[-1].created_at.isoformat(), page_rows[-1].id)
            if has_more
            else None
        )
        page = MessagePage(
            conversation_id=conversation_id,
            messages=list(reversed(page_rows)),
            has_more=has_more,
            next_cursor=next_cursor,
        )
        # The response is built before the gate, like a reply already on the wire
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        return page

    async def send_message(self, conversation_id: str, body: str) -> ConfirmedMessage:
        self.calls.append(("send", conversation_id, body))
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.fail_sends:
            self.fail_sends -= 1
            raise TransportError("Failed to send message (503)", status_code=503)
        return self.add_message(
            conversation_id,
            body,
            sender_type=self.viewer_role,
            sender_user_id=self.viewer_id,
            created_at=datetime.now(timezone.utc),
            status=MessageStatus.SENT,
        )

    async def mark_read(self, conversation_id: str) -> None:
        self.calls.append(("read", conversation_id))
        now = datetime.now(timezone.utc)
        self.messages[conversation_id] = [
            m.model_copy(update={"status": MessageStatus.READ, "read_at": now})
            if m.sender_type is not self.viewer_role
            else m
            for m in self.messages[conversation_id]
        ]
        self._rollup(conversation_id)

    async def create_conversation(
        self, business_id: str, user_id: str | None = None
    ) -> tuple[ConversationSummary, bool]:
        self.calls.append(("create", business_id, user_id))
        target_user = user_id or self.viewer_id
        for row in self.conversations.values():
            if row["business_id"] == business_id and row["user_id"] == target_user:
                return ConversationSummary(id=row["id"], user_id=target_user, business_id=business_id), False
        conversation_id = f"conv-{next(self._ids):04d}"
        self.add_conversation(conversation_id, user_id=target_user, business_id=business_id)
        return ConversationSummary(id=conversation_id, user_id=target_user, business_id=business_id), True

    def count(self, kind: str) -> int:
        return sum(1 for call in self.calls if call[0] == kind)


def message_event(message: ConfirmedMessage, kind: ChangeKind = ChangeKind.INSERT) -> ChangeEvent:
    return ChangeEvent(kind=kind, table="messages", new=message.model_dump(mode="json"))


def conversation_event(row: dict, kind: ChangeKind = ChangeKind.UPDATE) -> ChangeEvent:
    if kind is ChangeKind.DELETE:
        return ChangeEvent(kind=kind, table="conversations", old=row)
    return ChangeEvent(kind=kind, table="conversations", new=row)
