"""Process-wide keyed cache shared by the messaging stores.

Each key maps to the last known value for one scope (for example a viewer's
conversation list). Writers may patch any key without locking: a patch is a
synchronous function of the previous value, keyed by entity id, so applying
the same patch twice yields the same result and patches to different keys
commute.
"""

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]
Listener = Callable[[str, Any], None]


@dataclass
class CacheEntry:
    """Value stored under a key plus its freshness bookkeeping."""

    value: Any
    updated_at: float
    stale: bool = False


class CacheStore:
    """Keyed cache with optimistic patches and forced revalidation."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        # key -> loader used to revalidate it
        self._fetchers: dict[str, Fetcher] = {}
        # key -> in-flight revalidation
        self._inflight: dict[str, asyncio.Task] = {}
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._background: set[asyncio.Task] = set()

    def keys(self) -> list[str]:
        return list(self._entries)

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        return entry.value if entry else None

    def is_fresh(self, key: str, max_age: float) -> bool:
        entry = self._entries.get(key)
        if entry is None or entry.stale:
            return False
        return self._clock() - entry.updated_at < max_age

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = CacheEntry(value=value, updated_at=self._clock())
        self._notify(key, value)

    def patch(self, key: str, update: Callable[[Any], Any]) -> Any | None:
        """Apply an optimistic, non-revalidating mutation to a cached value.

        Keys with no cached value are left alone. Freshness is not reset.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        value = update(entry.value)
        if value is not entry.value:
            entry.value = value
            self._notify(key, value)
        return value

    def register(self, key: str, fetcher: Fetcher) -> None:
        """Attach the loader used to revalidate a key."""
        self._fetchers[key] = fetcher

    def unregister(self, key: str, fetcher: Fetcher | None = None) -> None:
        if fetcher is None or self._fetchers.get(key) is fetcher:
            self._fetchers.pop(key, None)

    def has_fetcher(self, key: str) -> bool:
        return key in self._fetchers

    async def revalidate(self, key: str) -> Any:
        """Reload a key from its registered loader.

        Concurrent calls for the same key share one request. On failure the
        last known value is kept and the error propagates to the caller.
        """
        fetcher = self._fetchers.get(key)
        if fetcher is None:
            raise KeyError(f"No loader registered for {key}")

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fetcher())
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        value = await asyncio.shield(task)
        self.set(key, value)
        return value

    async def fetch(self, key: str, fetcher: Fetcher, max_age: float) -> Any:
        """Return the cached value if fresh, otherwise load it."""
        self.register(key, fetcher)
        if self.is_fresh(key, max_age):
            return self.get(key)
        return await self.revalidate(key)

    def invalidate(self, key: str) -> None:
        """Mark a key stale and, if it has a loader, reload it in the background."""
        entry = self._entries.get(key)
        if entry is not None:
            entry.stale = True
        if key in self._fetchers:
            task = asyncio.ensure_future(self._revalidate_quietly(key))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _revalidate_quietly(self, key: str) -> None:
        try:
            await self.revalidate(key)
        except Exception as e:
            logger.warning(f"Background revalidation failed for {key}: {e}")

    async def drain(self) -> None:
        """Wait for scheduled background revalidations to settle."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def subscribe(self, key: str, listener: Listener) -> Callable[[], None]:
        """Call `listener(key, value)` whenever the key's value changes."""
        self._listeners[key].append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners[key].remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def _notify(self, key: str, value: Any) -> None:
        for listener in list(self._listeners.get(key, [])):
            listener(key, value)
