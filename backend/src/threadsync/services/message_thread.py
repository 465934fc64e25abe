"""Message history for the open conversation.

Handles backward pagination, optimistic sends with retry, and merging of
messages and status changes pushed by the other party.

Outgoing message lifecycle:

    none -> sending -> confirmed
                    -> failed -> (retry) -> sending -> ...

A failed message only goes back to sending through an explicit retry.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from pydantic import ValidationError

from messaging_models import (
    ChangeEvent,
    ChangeFilter,
    ChangeKind,
    ClientState,
    ConfirmedMessage,
    MessagePage,
    MessagingRole,
    PendingMessage,
    ThreadMessage,
)
from threadsync.client import MessagingTransport
from threadsync.config import Settings, settings as default_settings
from threadsync.errors import (
    BusinessScopePendingError,
    InvalidInputError,
    MessagingError,
    TransportError,
)
from threadsync.realtime import ChangeFeed, Subscription, start_consumer
from threadsync.services.conversations import ConversationStore
from threadsync.services.message_pages import (
    append_message,
    find_message,
    flatten,
    merge_incoming,
    patch_status,
    rebase_on_page,
    replace_message,
)

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"

ThreadListener = Callable[["MessageThreadStore"], None]


@dataclass
class SendResult:
    """Outcome of a send or retry."""

    ok: bool
    message: ThreadMessage | None = None
    error: MessagingError | None = None
    local_id: str | None = None


class MessageThreadStore:
    """History of one open conversation for one viewer."""

    def __init__(
        self,
        transport: MessagingTransport,
        feed: ChangeFeed,
        conversations: ConversationStore,
        viewer_id: str,
        config: Settings | None = None,
    ):
        self._transport = transport
        self._feed = feed
        self._conversations = conversations
        self.viewer_id = viewer_id
        self._settings = config or default_settings

        self.conversation_id: str | None = None
        self.role: MessagingRole = MessagingRole.USER
        self.business_id: str | None = None
        # Bumped on every open/close; responses from an older generation are discarded
        self.generation = 0

        self._pages: list[MessagePage] = []
        self._is_loading = False
        self._is_loading_older = False
        self._loaded_at: float | None = None
        self.error: MessagingError | None = None

        self._subscription: Subscription | None = None
        self._consumer: asyncio.Task | None = None
        self._listeners: list[ThreadListener] = []

    # ============= Read-only views =============

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def pages(self) -> list[MessagePage]:
        return list(self._pages)

    @property
    def messages(self) -> list[ThreadMessage]:
        return flatten(self._pages)

    @property
    def latest_message(self) -> ThreadMessage | None:
        for page in reversed(self._pages):
            if page.messages:
                return page.messages[-1]
        return None

    @property
    def has_more(self) -> bool:
        return bool(self._pages) and self._pages[0].has_more

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def is_loading_older(self) -> bool:
        return self._is_loading_older

    def add_listener(self, listener: ThreadListener) -> Callable[[], None]:
        """Call `listener(store)` after every state change."""
        self._listeners.append(listener)

        def remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return remove

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def _set_pages(self, pages: list[MessagePage]) -> None:
        if pages is not self._pages:
            self._pages = pages
            self._notify()

    # ============= Binding =============

    async def open(
        self,
        conversation_id: str,
        role: MessagingRole,
        business_scope_id: str | None = None,
    ) -> None:
        """Bind to a conversation and load its newest page.

        Switching to another conversation drops all loaded history and the
        previous feed subscription.
        """
        if conversation_id == self.conversation_id and role is self.role:
            if business_scope_id:
                self.business_id = business_scope_id
            if self._loaded_at is not None and (
                time.monotonic() - self._loaded_at < self._settings.messages_dedupe_interval
            ):
                return
            await self.reload()
            return

        await self._unsubscribe()
        self.generation += 1
        self.conversation_id = conversation_id
        self.role = role
        self.business_id = business_scope_id or self._known_business_id(conversation_id)
        self._pages = []
        self._loaded_at = None
        self._is_loading = False
        self._is_loading_older = False
        self.error = None

        self._subscription = await self._feed.subscribe(
            ChangeFilter(table=MESSAGES_TABLE, column="conversation_id", value=conversation_id)
        )
        self._consumer = start_consumer(self._subscription, self.apply_change)
        logger.info(f"Opened conversation {conversation_id} as {role.value}")
        self._notify()
        await self.reload()

    async def close(self) -> None:
        """Unbind from the conversation and drop the feed subscription."""
        await self._unsubscribe()
        self.generation += 1
        self.conversation_id = None
        self.business_id = None
        self._pages = []
        self._loaded_at = None
        self._is_loading = False
        self._is_loading_older = False
        self._notify()

    async def _unsubscribe(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

    def _known_business_id(self, conversation_id: str) -> str | None:
        summary = self._conversations.find(conversation_id)
        return summary.business_id if summary else None

    # ============= Pagination =============

    async def reload(self) -> None:
        """Fetch the newest page again.

        Messages that arrived or were confirmed while the fetch was in flight
        and pending messages are kept.
        """
        conversation_id = self.conversation_id
        if conversation_id is None:
            return
        generation = self.generation
        self._is_loading = True
        try:
            page = await self._transport.fetch_messages(conversation_id)
        except MessagingError as e:
            if generation == self.generation:
                logger.warning(f"Failed to load messages for {conversation_id}: {e}")
                self.error = e
                self._notify()
            return
        finally:
            if generation == self.generation:
                self._is_loading = False

        if generation != self.generation or page.conversation_id != conversation_id:
            logger.info(f"Discarding stale page for {page.conversation_id}")
            return

        self.error = None
        self._loaded_at = time.monotonic()
        self._set_pages(rebase_on_page(page, self.messages))

    async def load_older(self) -> None:
        """Prepend the next older page. No-op while a fetch is in flight."""
        if not self.has_more or self._is_loading_older:
            return
        conversation_id = self.conversation_id
        cursor = self._pages[0].next_cursor
        generation = self.generation

        self._is_loading_older = True
        self._notify()
        try:
            page = await self._transport.fetch_messages(conversation_id, cursor=cursor)
        except MessagingError as e:
            if generation == self.generation:
                logger.warning(f"Failed to load older messages for {conversation_id}: {e}")
                self.error = e
            return
        finally:
            if generation == self.generation:
                self._is_loading_older = False
                self._notify()

        if generation != self.generation or page.conversation_id != conversation_id:
            logger.info(f"Discarding stale older page for {page.conversation_id}")
            return
        if not self._pages or self._pages[0].next_cursor != cursor:
            # history was reloaded underneath this fetch
            logger.info(f"Discarding older page for {conversation_id} fetched before a reload")
            return
        self._set_pages([page] + self._pages)

    # ============= Sending =============

    def _optimistic_timestamp(self) -> datetime:
        now = datetime.now(timezone.utc)
        latest = self.latest_message
        if latest is not None and latest.created_at > now:
            return latest.created_at
        return now

    async def send(self, body: str, retry_of_id: str | None = None) -> SendResult:
        """Send a message optimistically.

        The message shows up as `sending` immediately and is swapped for the
        server copy on success, or flagged `failed` (and left in place) on
        error. Passing `retry_of_id` resends a failed message under its
        existing local id.
        """
        conversation_id = self.conversation_id
        if not conversation_id or not self.viewer_id:
            return SendResult(ok=False, error=InvalidInputError("Missing conversation context"))

        trimmed = (body or "").strip()
        if not trimmed:
            return SendResult(ok=False, error=InvalidInputError("Message body is required"))

        generation = self.generation
        business_id = self.business_id
        if self.role is MessagingRole.BUSINESS and not business_id:
            business_id = await self._conversations.await_business_id(conversation_id)
            if generation != self.generation:
                return SendResult(ok=False, error=InvalidInputError("Conversation changed while sending"))
            if not business_id:
                logger.warning(f"Deferring send: conversation {conversation_id} has no business yet")
                return SendResult(
                    ok=False,
                    error=BusinessScopePendingError(
                        f"Conversation {conversation_id} is still being set up"
                    ),
                )
            self.business_id = business_id

        if retry_of_id:
            existing = find_message(self._pages, retry_of_id)
            if not isinstance(existing, PendingMessage) or existing.client_state is not ClientState.FAILED:
                return SendResult(
                    ok=False,
                    error=InvalidInputError(f"Message {retry_of_id} is not a failed message"),
                )
            pending = existing.model_copy(update={"client_state": ClientState.SENDING, "body": trimmed})
            self._set_pages(replace_message(self._pages, retry_of_id, pending))
        else:
            pending = PendingMessage(
                conversation_id=conversation_id,
                body=trimmed,
                sender_type=self.role,
                sender_user_id=self.viewer_id,
                sender_business_id=business_id if self.role is MessagingRole.BUSINESS else None,
                created_at=self._optimistic_timestamp(),
                client_state=ClientState.SENDING,
            )
            self._set_pages(append_message(self._pages, conversation_id, pending))

        self._conversations.touch_conversation(
            conversation_id, trimmed, pending.created_at, business_id
        )

        try:
            server_message = await self._transport.send_message(conversation_id, trimmed)
        except (MessagingError, asyncio.TimeoutError) as e:
            error = e if isinstance(e, MessagingError) else TransportError("Send timed out")
            logger.warning(f"Send failed in conversation {conversation_id}: {error}")
            failed = pending.model_copy(update={"client_state": ClientState.FAILED})
            if generation == self.generation:
                self._set_pages(replace_message(self._pages, pending.id, failed))
            return SendResult(ok=False, message=failed, error=error, local_id=pending.id)

        if generation == self.generation and server_message.conversation_id == conversation_id:
            self._set_pages(replace_message(self._pages, pending.id, server_message))
        else:
            logger.info(f"Send confirmed after leaving conversation {conversation_id}")
        return SendResult(ok=True, message=server_message, local_id=pending.id)

    async def retry(self, message: ThreadMessage) -> SendResult:
        """Resend a failed message in place."""
        if not isinstance(message, PendingMessage) or message.client_state is not ClientState.FAILED:
            return SendResult(ok=False, error=InvalidInputError("Only failed messages can be retried"))
        return await self.send(message.body, retry_of_id=message.id)

    # ============= Read receipts =============

    async def mark_as_read(self) -> MessagingError | None:
        """Mark the conversation read and clear the viewer's unread counters.

        Safe to call repeatedly; returns the error if the request failed.
        """
        conversation_id = self.conversation_id
        if not conversation_id:
            return InvalidInputError("Missing conversation context")
        generation = self.generation
        try:
            await self._transport.mark_read(conversation_id)
        except MessagingError as e:
            logger.warning(f"Failed to mark {conversation_id} read: {e}")
            return e

        business_id = self.business_id if generation == self.generation else None
        self._conversations.mark_conversation_read(
            conversation_id, self.role, business_id or self._known_business_id(conversation_id)
        )
        return None

    # ============= Real-time merge =============

    def apply_change(self, event: ChangeEvent) -> None:
        """Merge a pushed `messages` row change into the loaded history."""
        row = event.row
        if event.table != MESSAGES_TABLE or not row:
            return
        conversation_id = self.conversation_id
        if conversation_id is None or str(row.get("conversation_id")) != conversation_id:
            return

        if event.kind is ChangeKind.INSERT:
            if row.get("sender_user_id") == self.viewer_id:
                return
            try:
                message = ConfirmedMessage.from_row(row)
            except (ValidationError, KeyError) as e:
                logger.warning(f"Ignoring malformed message row: {e}")
                return
            pages = merge_incoming(self._pages, conversation_id, message)
            if pages is self._pages:
                return
            self._set_pages(pages)
            self._conversations.touch_conversation(
                conversation_id,
                message.body,
                message.created_at,
                self.business_id or message.sender_business_id,
            )
        elif event.kind is ChangeKind.UPDATE:
            try:
                self._set_pages(patch_status(self._pages, row))
            except ValidationError as e:
                logger.warning(f"Ignoring malformed status update: {e}")
        else:
            logger.debug(f"Ignoring {event.kind.value} on message {row.get('id')}")
