"""Connection registry for live-channel fan-out.

Maps a room id to the set of open connections bound to it. Room id 0 is the
global channel, which receives room-creation and invitation notifications
regardless of room membership.

Architecture:
    - ConnectionRegistry ABC defines the interface (swappable for a pub/sub
      backed implementation without touching handlers)
    - InMemoryConnectionRegistry keeps buckets in process memory
    - Connection wraps one WebSocket and carries the (user_id, room_id) it is
      bound to, used for targeted delivery

Bucket mutations are synchronous, so they are atomic with respect to the event
loop. Broadcasts iterate a snapshot of the bucket and send concurrently, so a
slow socket in one room never holds up another room.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable

from starlette.websockets import WebSocket, WebSocketState

from .metrics import metrics
from .schemas import GLOBAL_ROOM_ID

logger = logging.getLogger(__name__)


class Connection:
    """A live-channel connection and the identity it is bound to."""

    def __init__(self, websocket: WebSocket, user_id: int | None = None) -> None:
        self.websocket = websocket
        # Authenticated at handshake; room is set once the session binds.
        self.user_id = user_id
        self.room_id: int | None = None

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send(self, event: dict[str, Any]) -> None:
        await self.websocket.send_json(event)

    def __repr__(self) -> str:
        return f"Connection(user_id={self.user_id}, room_id={self.room_id})"


class ConnectionRegistry(ABC):
    """Abstract registry of live connections keyed by room id."""

    @abstractmethod
    def register(self, room_id: int, connection: Connection) -> None:
        """Add a connection to a room's bucket."""

    @abstractmethod
    def unregister(self, room_id: int, connection: Connection) -> None:
        """Remove a connection from a room's bucket. Empty buckets are dropped."""

    def register_global(self, connection: Connection) -> None:
        """Add a connection to the global notification channel."""
        self.register(GLOBAL_ROOM_ID, connection)

    @abstractmethod
    def unregister_all(self, connection: Connection) -> None:
        """Remove a connection from every bucket it is in."""

    @abstractmethod
    async def broadcast(
        self,
        room_id: int,
        event: dict[str, Any],
        exclude: Connection | None = None,
    ) -> int:
        """Send an event to every open connection in a room.

        Connections whose transport is closed are skipped, and a failed send
        never aborts delivery to the rest of the room.

        Args:
            room_id: Bucket to deliver to (0 = global channel)
            event: JSON-serializable event
            exclude: Optional connection to skip (sender echo suppression)

        Returns:
            Number of connections the event was delivered to.
        """

    @abstractmethod
    async def send_to_user(self, user_id: int, event: dict[str, Any]) -> int:
        """Deliver an event to every connection bound to a user, once each.

        Returns:
            Number of connections the event was delivered to.
        """

    @abstractmethod
    def connection_count(self, room_id: int | None = None) -> int:
        """Connections in one bucket, or distinct connections overall."""


class InMemoryConnectionRegistry(ConnectionRegistry):
    """In-process registry for single-instance deployments."""

    def __init__(self) -> None:
        self._buckets: dict[int, set[Connection]] = {}

    def register(self, room_id: int, connection: Connection) -> None:
        self._buckets.setdefault(room_id, set()).add(connection)
        logger.debug(f"Registered {connection!r} in room {room_id}")

    def unregister(self, room_id: int, connection: Connection) -> None:
        bucket = self._buckets.get(room_id)
        if bucket is None:
            return
        bucket.discard(connection)
        if not bucket:
            del self._buckets[room_id]

    def unregister_all(self, connection: Connection) -> None:
        for room_id in [rid for rid, bucket in self._buckets.items() if connection in bucket]:
            self.unregister(room_id, connection)

    def rooms(self) -> list[int]:
        """Room ids that currently have at least one connection."""
        return list(self._buckets)

    async def broadcast(
        self,
        room_id: int,
        event: dict[str, Any],
        exclude: Connection | None = None,
    ) -> int:
        targets = [
            conn
            for conn in list(self._buckets.get(room_id, ()))
            if conn is not exclude
        ]
        metrics.increment("broadcasts")
        return await self._deliver(targets, event)

    async def send_to_user(self, user_id: int, event: dict[str, Any]) -> int:
        seen: set[Connection] = set()
        for bucket in list(self._buckets.values()):
            for conn in list(bucket):
                if conn.user_id == user_id:
                    seen.add(conn)
        return await self._deliver(seen, event)

    def connection_count(self, room_id: int | None = None) -> int:
        if room_id is not None:
            return len(self._buckets.get(room_id, ()))
        distinct: set[Connection] = set()
        for bucket in self._buckets.values():
            distinct.update(bucket)
        return len(distinct)

    async def _deliver(self, connections: Iterable[Connection], event: dict[str, Any]) -> int:
        open_conns = [conn for conn in connections if conn.is_open]
        if not open_conns:
            return 0
        results = await asyncio.gather(
            *(self._safe_send(conn, event) for conn in open_conns),
        )
        delivered = sum(results)
        metrics.increment("events_sent", delivered)
        return delivered

    async def _safe_send(self, connection: Connection, event: dict[str, Any]) -> bool:
        try:
            await connection.send(event)
        except Exception as e:
            # The socket closed between the open check and the send.
            logger.debug(f"Send to {connection!r} failed: {e}")
            metrics.increment("send_failures")
            return False
        return True


# --- Global singleton ---

_registry: ConnectionRegistry | None = None


def get_registry() -> ConnectionRegistry:
    """Get the global connection registry.

    Creates an InMemoryConnectionRegistry on first call. Use set_registry()
    to swap in a different implementation.
    """
    global _registry
    if _registry is None:
        _registry = InMemoryConnectionRegistry()
    return _registry


def set_registry(registry: ConnectionRegistry) -> None:
    """Replace the global connection registry."""
    global _registry
    _registry = registry


def reset_registry() -> None:
    """Reset the global registry (for testing)."""
    global _registry
    _registry = None
