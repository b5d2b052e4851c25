"""
PostgreSQL LISTEN/NOTIFY subscription for execution and level changes.

Each notification payload is a JSON object shaped like a row-change webhook::

    {"type": "UPDATE", "table": "grid_executions",
     "record": {...new row...}, "old_record": {...old row...}}

``record`` is absent/null on DELETE and ``old_record`` on INSERT. The
listener turns each payload into a ChangeEvent tagged with its logical
channel and hands it to a single sink callable, in arrival order.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from api.metrics import metrics


logger = logging.getLogger(__name__)

EVENT_TYPES = ('INSERT', 'UPDATE', 'DELETE')


class ChangeParseError(ValueError):
    pass


@dataclass
class ChangeEvent:
    channel: str
    type: str
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    table: Optional[str] = None

    def field(self, name: str) -> Any:
        """Value of ``name`` from the new snapshot, falling back to the old one."""
        for snapshot in (self.new, self.old):
            if snapshot and snapshot.get(name) is not None:
                return snapshot[name]
        return None


def parse_change_payload(channel: str, payload: Any) -> ChangeEvent:
    try:
        data = json.loads(payload) if isinstance(payload, (str, bytes)) else payload
    except ValueError as exc:
        raise ChangeParseError(f"invalid JSON payload: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ChangeParseError("payload is not an object")

    event_type = str(data.get('type') or data.get('eventType') or '').upper()
    if event_type not in EVENT_TYPES:
        raise ChangeParseError(f"unknown event type {event_type!r}")

    new = data.get('record', data.get('new'))
    old = data.get('old_record', data.get('old'))
    new = dict(new) if isinstance(new, Mapping) and new else None
    old = dict(old) if isinstance(old, Mapping) and old else None
    if new is None and old is None:
        raise ChangeParseError("payload carries neither new nor old record")
    return ChangeEvent(channel=channel, type=event_type, new=new, old=old, table=data.get('table'))


class ChangeFeedListener:
    """
    Keeps one LISTEN connection open for all change channels.

    ``channels`` maps a logical channel name to the PostgreSQL NOTIFY
    channel. When the connection drops the listener waits
    ``reconnect_delay_s`` and subscribes again; ``on_reconnect`` runs after
    every re-subscription so missed notifications can be reconciled.
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[Any]],
        channels: Mapping[str, str],
        on_event: Callable[[ChangeEvent], None],
        on_reconnect: Optional[Callable[[], Awaitable[None]]] = None,
        reconnect_delay_s: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._connect = connect
        self.channels = dict(channels)
        self.on_event = on_event
        self.on_reconnect = on_reconnect
        self.reconnect_delay_s = reconnect_delay_s
        self._sleep = sleep

        self.running = False
        self.connections = 0
        self.subscribed = asyncio.Event()
        self._conn = None
        self._closed: Optional[asyncio.Event] = None
        self._callbacks: Dict[str, Callable] = {}

    def _make_callback(self, logical: str) -> Callable:
        def _callback(connection, pid, pg_channel, payload):
            try:
                event = parse_change_payload(logical, payload)
            except ChangeParseError as exc:
                metrics.record_drop('change_payload')
                logger.warning("Dropping %s notification: %s", pg_channel, exc)
                return
            self.on_event(event)

        return _callback

    async def _subscribe(self, conn) -> None:
        self._closed = asyncio.Event()
        closed = self._closed
        conn.add_termination_listener(lambda _conn: closed.set())
        self._callbacks = {}
        for logical, pg_channel in self.channels.items():
            callback = self._make_callback(logical)
            await conn.add_listener(pg_channel, callback)
            self._callbacks[pg_channel] = callback
        logger.info("Subscribed to change channels: %s", ", ".join(self.channels.values()))

    async def run(self) -> None:
        self.running = True
        while self.running:
            try:
                self._conn = await self._connect()
                await self._subscribe(self._conn)
                self.connections += 1
                self.subscribed.set()
                if self.connections > 1 and self.on_reconnect is not None:
                    await self.on_reconnect()
                await self._closed.wait()
                if self.running:
                    logger.warning("Change feed connection lost")
            except asyncio.CancelledError:
                await self._release()
                raise
            except Exception as e:
                logger.error("Change feed error: %s", e)
            await self._release()

            if not self.running:
                break
            metrics.record_change_feed_reconnect()
            logger.info("Re-subscribing to change feed in %.1fs", self.reconnect_delay_s)
            await self._sleep(self.reconnect_delay_s)

    async def _release(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            if not conn.is_closed():
                for pg_channel, callback in self._callbacks.items():
                    await conn.remove_listener(pg_channel, callback)
                await conn.close()
        except Exception as e:
            logger.debug("Change feed connection cleanup failed: %s", e)
        self._callbacks = {}

    async def stop(self) -> None:
        self.running = False
        if self._closed is not None:
            self._closed.set()
        await self._release()
