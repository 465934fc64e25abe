"""Row-change notification feed.

The feed is an in-process fan-out of `ChangeEvent`s. Producers (the Postgres
listener in production, tests directly) publish events; each subscriber gets
its own queue filtered by relation name and an optional equality predicate.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable

from messaging_models import ChangeEvent, ChangeFilter

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeEvent], Awaitable[None] | None]


class Subscription:
    """A cancellable stream of events matching one filter."""

    def __init__(self, feed: "ChangeFeed", change_filter: ChangeFilter):
        self.feed = feed
        self.filter = change_filter
        self.queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()
        self.closed = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed:
            raise StopAsyncIteration
        event = await self.queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.queue.put_nowait(None)
        await self.feed.unsubscribe(self)


class ChangeFeed:
    """In-process fan-out of row-change events.

    For cross-process delivery, feed it from `PostgresChangeListener`.
    """

    def __init__(self):
        # table -> subscriptions
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def subscribe(self, change_filter: ChangeFilter) -> Subscription:
        """Subscribe to events matching a filter."""
        subscription = Subscription(self, change_filter)
        async with self._lock:
            self._subscriptions[change_filter.table].append(subscription)
        logger.info(f"Subscribed to {change_filter}")
        return subscription

    async def unsubscribe(self, subscription: Subscription):
        """Remove a subscription."""
        table = subscription.filter.table
        async with self._lock:
            if table in self._subscriptions:
                try:
                    self._subscriptions[table].remove(subscription)
                    if not self._subscriptions[table]:
                        del self._subscriptions[table]
                except ValueError:
                    pass
        logger.info(f"Unsubscribed from {subscription.filter}")

    async def publish(self, event: ChangeEvent):
        """Deliver an event to every matching subscriber."""
        async with self._lock:
            subscriptions = list(self._subscriptions.get(event.table, []))
        for subscription in subscriptions:
            if subscription.closed or not subscription.filter.matches(event):
                continue
            try:
                subscription.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Queue full for {subscription.filter}, dropping event")

    def subscriber_count(self, table: str | None = None) -> int:
        if table is not None:
            return len(self._subscriptions.get(table, []))
        return sum(len(subs) for subs in self._subscriptions.values())


def start_consumer(subscription: Subscription, handler: ChangeHandler) -> asyncio.Task:
    """Run `handler` for every event on a subscription in a background task.

    A failing handler is logged and the stream keeps going.
    """

    async def _consume() -> None:
        async for event in subscription:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning(f"Failed to apply {event.kind.value} on {event.table}: {e}")

    return asyncio.create_task(_consume())
