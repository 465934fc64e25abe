"""Debounced read-receipt policy for the visible thread."""

import asyncio
import logging

from messaging_models import ConfirmedMessage, MessageStatus
from threadsync.config import Settings
from threadsync.services.message_thread import MessageThreadStore

logger = logging.getLogger(__name__)


class ReadReceiptCoordinator:
    """Decides when the open thread gets marked read.

    Fires once the thread is visible, its newest message came from the
    counterpart and something from the counterpart is still unread, and that
    has held for `delay` seconds. Any change that breaks the condition in the
    meantime cancels the pending fire. Each (conversation, newest message)
    pair is marked at most once.

    Must be driven from inside the running event loop.
    """

    def __init__(
        self,
        thread: MessageThreadStore,
        delay: float | None = None,
        config: Settings | None = None,
    ):
        self._thread = thread
        self._settings = config or thread.settings
        self._delay = self._settings.read_receipt_delay if delay is None else delay
        self._visible = False
        self._timer: asyncio.TimerHandle | None = None
        self._armed_for: tuple[str, str] | None = None
        self._fired_for: tuple[str, str] | None = None
        self._inflight: asyncio.Task | None = None
        self._remove_listener = thread.add_listener(lambda _thread: self.evaluate())

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def pending(self) -> bool:
        """Whether a mark-as-read is scheduled but has not fired."""
        return self._timer is not None

    def set_visible(self, visible: bool) -> None:
        self._visible = visible
        self.evaluate()

    def _target(self) -> tuple[str, str] | None:
        thread = self._thread
        if not self._visible or not thread.conversation_id:
            return None
        latest = thread.latest_message
        if latest is None or latest.sender_type is thread.role:
            return None
        has_unread = any(
            isinstance(message, ConfirmedMessage)
            and message.sender_type is not thread.role
            and message.status is not MessageStatus.READ
            for message in thread.messages
        )
        if not has_unread:
            return None
        return thread.conversation_id, latest.id

    def evaluate(self) -> None:
        """Arm, keep, or cancel the pending mark-as-read."""
        target = self._target()
        if target is None or target == self._fired_for:
            self._cancel()
            return
        if target == self._armed_for and self._timer is not None:
            return
        self._cancel()
        self._armed_for = target
        self._timer = asyncio.get_running_loop().call_later(self._delay, self._fire, target)

    def _cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            logger.debug(f"Cancelled read receipt for {self._armed_for}")
        self._timer = None
        self._armed_for = None

    def _fire(self, target: tuple[str, str]) -> None:
        self._timer = None
        self._armed_for = None
        if self._target() != target:
            return
        self._fired_for = target
        self._inflight = asyncio.ensure_future(self._mark(target))

    async def _mark(self, target: tuple[str, str]) -> None:
        error = await self._thread.mark_as_read()
        if error is not None:
            logger.warning(f"Read receipt for conversation {target[0]} failed: {error}")
            if self._fired_for == target:
                self._fired_for = None

    async def wait(self) -> None:
        """Wait for an in-flight mark-as-read to finish."""
        if self._inflight is not None:
            await self._inflight

    def close(self) -> None:
        self._cancel()
        self._remove_listener()
