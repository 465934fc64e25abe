"""PostgreSQL LISTEN/NOTIFY bridge feeding the row-change feed."""

import asyncio
import json
import logging

import asyncpg
from pydantic import ValidationError

from messaging_models import ChangeEvent
from threadsync.config import Settings, settings as default_settings
from threadsync.realtime import ChangeFeed

logger = logging.getLogger(__name__)


# Trigger publishing row changes for the messaging relations
TRIGGER_SQL = """
CREATE OR REPLACE FUNCTION notify_row_change() RETURNS TRIGGER AS $$
BEGIN
    PERFORM pg_notify(
        TG_ARGV[0],
        json_build_object(
            'type', lower(TG_OP),
            'table', TG_TABLE_NAME,
            'record', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE row_to_json(NEW) END,
            'old_record', CASE WHEN TG_OP = 'INSERT' THEN NULL ELSE row_to_json(OLD) END
        )::text
    );
    RETURN NULL;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS conversations_notify_row_change ON conversations;
CREATE TRIGGER conversations_notify_row_change
    AFTER INSERT OR UPDATE OR DELETE ON conversations
    FOR EACH ROW EXECUTE FUNCTION notify_row_change('{channel}');

DROP TRIGGER IF EXISTS messages_notify_row_change ON messages;
CREATE TRIGGER messages_notify_row_change
    AFTER INSERT OR UPDATE OR DELETE ON messages
    FOR EACH ROW EXECUTE FUNCTION notify_row_change('{channel}');
"""


class PostgresChangeListener:
    """Listens on a NOTIFY channel and republishes payloads to a ChangeFeed.

    Connection loss is handled here: the listener reconnects after a delay and
    subscribers never see the gap. Events missed while disconnected are picked
    up by the next explicit load or refresh.
    """

    def __init__(self, feed: ChangeFeed, config: Settings | None = None):
        self._feed = feed
        self._settings = config or default_settings
        self._conn: asyncpg.Connection | None = None
        self._runner: asyncio.Task | None = None
        self._lost = asyncio.Event()
        self._stopping = False
        self._pending: set[asyncio.Task] = set()

    @property
    def channel(self) -> str:
        return self._settings.notify_channel

    async def connect(self):
        """Open the listening connection."""
        self._conn = await asyncpg.connect(self._settings.database_url)
        self._lost.clear()
        self._conn.add_termination_listener(self._on_termination)
        await self._conn.add_listener(self.channel, self._on_notification)
        logger.info(f"Listening for row changes on {self.channel}")

    async def disconnect(self):
        """Stop listening and close the connection."""
        self._stopping = True
        if self._runner:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        if self._conn and not self._conn.is_closed():
            await self._conn.remove_listener(self.channel, self._on_notification)
            await self._conn.close()
        self._conn = None
        logger.info(f"Stopped listening on {self.channel}")

    async def ensure_triggers_exist(self):
        """Install the NOTIFY triggers on the messaging tables."""
        if not self._conn:
            return
        await self._conn.execute(TRIGGER_SQL.format(channel=self.channel))

    def start(self) -> asyncio.Task:
        """Run the listener in the background, reconnecting on loss."""
        self._stopping = False
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._run())
        return self._runner

    async def _run(self):
        while not self._stopping:
            try:
                if self._conn is None or self._conn.is_closed():
                    await self.connect()
                await self._lost.wait()
                logger.warning(f"Lost connection listening on {self.channel}, reconnecting")
            except (OSError, asyncpg.PostgresError) as e:
                logger.warning(f"Row-change listener connect failed: {e}")
            self._conn = None
            await asyncio.sleep(self._settings.listener_reconnect_delay)

    def _on_termination(self, connection: asyncpg.Connection):
        self._lost.set()

    def _on_notification(self, connection: asyncpg.Connection, pid: int, channel: str, payload: str):
        event = parse_notification(payload)
        if event is None:
            return
        task = asyncio.ensure_future(self._feed.publish(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


def parse_notification(payload: str) -> ChangeEvent | None:
    """Parse a NOTIFY payload, returning None if it is not a row change."""
    try:
        return ChangeEvent.from_payload(json.loads(payload))
    except (ValueError, KeyError, TypeError, ValidationError) as e:
        logger.warning(f"Ignoring malformed row-change payload: {e}")
        return None
