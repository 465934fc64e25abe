"""Conversation list store.

Keeps every cached conversation list (the user inbox, the all-businesses inbox
and each business-scoped inbox) coherent as changes arrive from the row-change
feed, from the message thread store, or from a refresh.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from urllib.parse import urlencode

from pydantic import ValidationError

from messaging_models import (
    ChangeEvent,
    ChangeFilter,
    ChangeKind,
    ConversationListing,
    ConversationRow,
    ConversationSummary,
    MessagingRole,
    sort_conversations,
    truncate_preview,
)
from threadsync.cache import CacheStore
from threadsync.client import MessagingTransport
from threadsync.config import Settings, settings as default_settings
from threadsync.errors import MessagingError
from threadsync.realtime import ChangeFeed, Subscription, start_consumer

logger = logging.getLogger(__name__)

CONVERSATIONS_TABLE = "conversations"
KEY_PREFIX = "conversations?"


def conversations_key(role: MessagingRole, business_id: str | None = None) -> str:
    """Cache key for one conversation list scope."""
    params = {"role": role.value}
    if role is MessagingRole.BUSINESS and business_id:
        params["business_id"] = business_id
    return f"{KEY_PREFIX}{urlencode(params)}"


def related_conversation_keys(business_id: str | None = None) -> list[str]:
    """Every list key whose scope could contain a conversation of this business."""
    keys = [
        conversations_key(MessagingRole.USER),
        conversations_key(MessagingRole.BUSINESS),
    ]
    if business_id:
        keys.append(conversations_key(MessagingRole.BUSINESS, business_id))
    return keys


def _replace(listing: ConversationListing, updated: ConversationSummary) -> ConversationListing:
    conversations = [updated if c.id == updated.id else c for c in listing.conversations]
    return listing.model_copy(update={"conversations": sort_conversations(conversations)})


def apply_conversation_change(
    listing: ConversationListing, event: ChangeEvent
) -> tuple[ConversationListing, bool]:
    """Merge one `conversations` row change into a listing.

    Returns the next listing and whether the scope must be refetched because
    the event alone cannot say what the list should contain.
    """
    raw = event.row
    if not raw or event.table != CONVERSATIONS_TABLE:
        return listing, False
    try:
        row = ConversationRow.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Ignoring malformed conversation row: {e}")
        return listing, False

    if listing.business_id and row.business_id and row.business_id != listing.business_id:
        return listing, False

    existing = listing.get(row.id)

    if event.kind is ChangeKind.DELETE:
        if existing is None:
            return listing, False
        remaining = [c for c in listing.conversations if c.id != row.id]
        return listing.model_copy(update={"conversations": remaining}), True

    if existing is None:
        return listing, True

    updates: dict = {"unread_count": row.unread_for(listing.role)}
    # last_message_at never moves backwards; the preview travels with it
    stale = row.last_message_at is not None and row.last_message_at < existing.last_message_at
    if not stale:
        if row.last_message_at is not None:
            updates["last_message_at"] = row.last_message_at
        if row.last_message_preview is not None:
            updates["last_message_preview"] = row.last_message_preview
    if row.business_id and not existing.business_id:
        updates["business_id"] = row.business_id

    updated = existing.model_copy(update=updates)
    if updated == existing:
        return listing, False
    return _replace(listing, updated), False


def touch_listing(
    listing: ConversationListing, conversation_id: str, preview: str, at: datetime
) -> ConversationListing:
    """Move a conversation's preview/timestamp forward. Idempotent."""
    existing = listing.get(conversation_id)
    if existing is None or at < existing.last_message_at:
        return listing
    if existing.last_message_at == at and existing.last_message_preview == preview:
        return listing
    updated = existing.model_copy(update={"last_message_at": at, "last_message_preview": preview})
    return _replace(listing, updated)


def zero_unread_listing(
    listing: ConversationListing, conversation_id: str, role: MessagingRole
) -> ConversationListing:
    """Clear the viewer's unread counter for one conversation. Idempotent."""
    if listing.role is not role:
        return listing
    existing = listing.get(conversation_id)
    if existing is None or existing.unread_count == 0:
        return listing
    return _replace(listing, existing.model_copy(update={"unread_count": 0}))


@dataclass
class ConversationsState:
    """What a conversation list view renders."""

    conversations: list[ConversationSummary] = field(default_factory=list)
    unread_total: int = 0
    is_loading: bool = False
    error: MessagingError | None = None


class ConversationStore:
    """Conversation list for one viewer, bound to one scope at a time."""

    def __init__(
        self,
        transport: MessagingTransport,
        cache: CacheStore,
        feed: ChangeFeed,
        viewer_id: str,
        config: Settings | None = None,
    ):
        self._transport = transport
        self._cache = cache
        self._feed = feed
        self.viewer_id = viewer_id
        self._settings = config or default_settings

        self.role: MessagingRole | None = None
        self.business_id: str | None = None
        self.key: str | None = None
        self._fetcher = None
        self._subscription: Subscription | None = None
        self._consumer: asyncio.Task | None = None
        self._is_loading = False
        self._error: MessagingError | None = None

    @property
    def listing(self) -> ConversationListing | None:
        return self._cache.get(self.key) if self.key else None

    @property
    def conversations(self) -> list[ConversationSummary]:
        listing = self.listing
        return list(listing.conversations) if listing else []

    @property
    def unread_count(self) -> int:
        """Aggregate unread badge for the bound scope."""
        listing = self.listing
        return listing.unread_total if listing else 0

    @property
    def state(self) -> ConversationsState:
        return ConversationsState(
            conversations=self.conversations,
            unread_total=self.unread_count,
            is_loading=self._is_loading,
            error=self._error,
        )

    async def load(
        self, role: MessagingRole, business_id: str | None = None
    ) -> ConversationsState:
        """Bind to a scope and return its conversations.

        A cached value younger than the dedupe interval is reused. Failures
        are returned in `error` and the last known list is kept.
        """
        if role is MessagingRole.USER:
            business_id = None
        key = conversations_key(role, business_id)
        if key != self.key:
            await self._bind(key, role, business_id)
        return await self._load(force=False)

    async def refresh(self) -> ConversationsState:
        """Revalidate the bound scope, bypassing the cached value."""
        if self.key is None:
            return self.state
        return await self._load(force=True)

    async def _load(self, force: bool) -> ConversationsState:
        self._is_loading = True
        try:
            if force:
                await self._cache.revalidate(self.key)
            else:
                await self._cache.fetch(
                    self.key, self._fetcher, self._settings.conversations_dedupe_interval
                )
            self._error = None
        except MessagingError as e:
            logger.warning(f"Failed to load {self.key}: {e}")
            self._error = e
        finally:
            self._is_loading = False
        return self.state

    async def _bind(self, key: str, role: MessagingRole, business_id: str | None):
        await self._unbind()
        self.key = key
        self.role = role
        self.business_id = business_id

        async def fetcher() -> ConversationListing:
            return await self._transport.list_conversations(role, business_id)

        self._fetcher = fetcher
        self._cache.register(key, fetcher)

        if role is MessagingRole.USER:
            change_filter = ChangeFilter(table=CONVERSATIONS_TABLE, column="user_id", value=self.viewer_id)
        elif business_id:
            change_filter = ChangeFilter(table=CONVERSATIONS_TABLE, column="business_id", value=business_id)
        else:
            change_filter = ChangeFilter(table=CONVERSATIONS_TABLE)
        self._subscription = await self._feed.subscribe(change_filter)
        self._consumer = start_consumer(self._subscription, self.apply_change)

    async def _unbind(self):
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
        if self.key is not None:
            self._cache.unregister(self.key, self._fetcher)
        self.key = None
        self._fetcher = None

    async def close(self):
        """Drop the feed subscription."""
        await self._unbind()

    def apply_change(self, event: ChangeEvent) -> bool:
        """Patch the cached lists with a row change.

        Returns True when the change could not be applied locally and a
        refresh of the bound scope was scheduled instead.
        """
        if self.key is None:
            return False

        row = event.row or {}
        for key in related_conversation_keys(row.get("business_id")):
            if key != self.key:
                self._cache.patch(key, lambda current: apply_conversation_change(current, event)[0])

        if self._cache.get(self.key) is None:
            return False

        needs_refresh = False

        def patch(current: ConversationListing) -> ConversationListing:
            nonlocal needs_refresh
            next_listing, refresh = apply_conversation_change(current, event)
            needs_refresh = needs_refresh or refresh
            return next_listing

        self._cache.patch(self.key, patch)

        if needs_refresh:
            logger.info(f"Conversation {row.get('id')} {event.kind.value} needs refresh of {self.key}")
            self._cache.invalidate(self.key)
        else:
            logger.debug(f"Patched conversation {row.get('id')} in place")
        return needs_refresh

    def touch_conversation(
        self,
        conversation_id: str,
        text: str,
        at: datetime,
        business_id: str | None = None,
    ) -> None:
        """Reflect a sent or received message in every related list."""
        preview = truncate_preview(text, self._settings.preview_max_length)
        for key in related_conversation_keys(business_id):
            self._cache.patch(key, lambda current: touch_listing(current, conversation_id, preview, at))

    def mark_conversation_read(
        self,
        conversation_id: str,
        role: MessagingRole,
        business_id: str | None = None,
    ) -> None:
        """Zero the viewer's unread counter everywhere and revalidate."""
        keys = related_conversation_keys(business_id)
        for key in keys:
            self._cache.patch(key, lambda current: zero_unread_listing(current, conversation_id, role))
        for key in keys:
            self._cache.invalidate(key)

    def find(self, conversation_id: str) -> ConversationSummary | None:
        """Look a conversation up across every cached list."""
        for key in self._cache.keys():
            if not key.startswith(KEY_PREFIX):
                continue
            listing = self._cache.get(key)
            found = listing.get(conversation_id) if listing else None
            if found is not None:
                return found
        return None

    async def await_business_id(self, conversation_id: str) -> str | None:
        """Resolve a conversation's business id, riding out the provisioning race.

        Retries with exponential backoff, refreshing the bound scope between
        attempts. Returns None if the id is still unknown afterwards.
        """
        delay = self._settings.business_scope_retry_backoff
        attempts = self._settings.business_scope_retry_attempts
        for attempt in range(attempts):
            found = self.find(conversation_id)
            if found is not None and found.business_id:
                return found.business_id
            if attempt == attempts - 1:
                break
            logger.info(
                f"Business id for conversation {conversation_id} not known yet, "
                f"retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            delay *= 2
            if self.key is not None:
                await self.refresh()
        return None
