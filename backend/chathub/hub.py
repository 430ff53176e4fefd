import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, Protocol

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    async def send_json(self, data: Any) -> None: ...


class LiveConnection:
    """One connected client. Sends are serialized so events arrive in publish order."""

    def __init__(self, sink: EventSink, user_id: int, name: str = "") -> None:
        self.sink = sink
        self.user_id = user_id
        self.name = name
        self._send_lock = asyncio.Lock()

    async def send(self, event: dict) -> None:
        async with self._send_lock:
            await self.sink.send_json(event)

    def __repr__(self) -> str:
        return f"<LiveConnection user={self.user_id} id={id(self):#x}>"


class BroadcastHub:
    """Channel name -> live connections, with fire-and-forget fan-out.

    Delivery is at most once and only to connections subscribed when the event is
    published. A connection whose send fails is dropped from every channel.
    """

    def __init__(self) -> None:
        self.channels: Dict[str, set[LiveConnection]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def subscribe(self, conn: LiveConnection, channel: str) -> bool:
        async with self._lock:
            if conn in self.channels[channel]:
                return False
            self.channels[channel].add(conn)
        logger.debug("%r subscribed to %s", conn, channel)
        return True

    async def unsubscribe(self, conn: LiveConnection, channel: str) -> bool:
        async with self._lock:
            return self._remove(conn, channel)

    async def disconnect(self, conn: LiveConnection) -> list[str]:
        async with self._lock:
            left = [channel for channel, conns in self.channels.items() if conn in conns]
            for channel in left:
                self._remove(conn, channel)
        if left:
            logger.debug("%r left %s on disconnect", conn, ", ".join(left))
        return left

    async def evict(self, channel: str, user_id: int | None = None) -> list[LiveConnection]:
        """Remove ``user_id``'s connections from ``channel``, or every connection when no user is given."""
        async with self._lock:
            evicted = [
                conn for conn in self.channels.get(channel, ())
                if user_id is None or conn.user_id == user_id
            ]
            for conn in evicted:
                self._remove(conn, channel)
        if evicted:
            logger.debug("Evicted %d connection(s) from %s", len(evicted), channel)
        return evicted

    def _remove(self, conn: LiveConnection, channel: str) -> bool:
        conns = self.channels.get(channel)
        if not conns or conn not in conns:
            return False
        conns.discard(conn)
        if not conns:
            self.channels.pop(channel, None)
        return True

    def subscribers(self, channel: str) -> list[LiveConnection]:
        return list(self.channels.get(channel, ()))

    def present_users(self, channel: str) -> list[int]:
        return sorted({conn.user_id for conn in self.channels.get(channel, ())})

    def channels_of(self, conn: LiveConnection) -> list[str]:
        return sorted(channel for channel, conns in self.channels.items() if conn in conns)

    async def publish(self, channel: str, event: dict, exclude: Iterable[LiveConnection] = ()) -> int:
        skip = set(exclude)
        async with self._lock:
            targets = [conn for conn in self.channels.get(channel, ()) if conn not in skip]

        delivered = 0
        dead = []
        for conn in targets:
            try:
                await conn.send(event)
                delivered += 1
            except Exception as exc:
                logger.warning("Dropping %r after failed send on %s: %s", conn, channel, exc)
                dead.append(conn)

        for conn in dead:
            await self.disconnect(conn)
        logger.debug("Published %s to %d/%d connection(s) on %s", event.get("type"), delivered, len(targets), channel)
        return delivered


hub = BroadcastHub()


def get_hub() -> BroadcastHub:
    return hub
