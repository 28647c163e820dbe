"""Per-connection session protocol handler.

Each live-channel connection runs one ``SessionHandler``:

    UNBOUND --init(userId, roomId)--> BOUND --transport close--> CLOSED

While UNBOUND only ``init`` is accepted. Once BOUND, ``message`` and
``reaction`` frames are gated, persisted and broadcast to the room with the
store-assigned id, so receivers can deduplicate against copies that arrive via
the request surface. A bad frame yields an ``error`` event to the sender and
never ends the connection.

Frames from one connection are handled in arrival order: the receive loop
awaits each frame before reading the next.
"""

from __future__ import annotations

import logging
from enum import Enum

from fastapi import WebSocketDisconnect

from . import access, db
from .config import Settings, get_settings
from .errors import AuthorizationError, RoomsError, ValidationError
from .metrics import metrics
from .protocol import (
    InitFrame,
    MessageFrame,
    ReactionFrame,
    error_event,
    init_event,
    message_event,
    parse_frame,
    reaction_event,
)
from .registry import Connection, ConnectionRegistry, get_registry
from .schemas import GLOBAL_ROOM_ID
from .sweeper import announce_status_change

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNBOUND = "unbound"
    BOUND = "bound"
    CLOSED = "closed"


class SessionHandler:
    """State machine for one authenticated live-channel connection."""

    def __init__(
        self,
        connection: Connection,
        registry: ConnectionRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        if connection.user_id is None:
            raise ValueError("Session requires an authenticated connection")
        self.connection = connection
        self.registry = registry or get_registry()
        self.settings = settings or get_settings()
        self.state = SessionState.UNBOUND

    @property
    def user_id(self) -> int:
        assert self.connection.user_id is not None
        return self.connection.user_id

    @property
    def room_id(self) -> int | None:
        return self.connection.room_id

    async def run(self) -> None:
        """Receive and handle frames until the transport closes."""
        websocket = self.connection.websocket
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await self.handle_frame(raw)
        except WebSocketDisconnect:
            pass
        finally:
            self.close()

    async def handle_frame(self, raw: str | bytes) -> None:
        """Validate and dispatch one frame, reporting any failure to the sender."""
        metrics.increment("frames_received")
        try:
            frame = parse_frame(raw)
            if isinstance(frame, InitFrame):
                await self._on_init(frame)
            elif self.state != SessionState.BOUND:
                raise ValidationError("Connection not initialized; send an init frame first")
            elif isinstance(frame, MessageFrame):
                await self._on_message(frame)
            elif isinstance(frame, ReactionFrame):
                await self._on_reaction(frame)
        except RoomsError as e:
            metrics.increment("frame_errors")
            logger.debug(f"Frame rejected for user {self.user_id}: {e.message}")
            if e.status_change is not None:
                await self._announce(e.status_change)
            await self._send(error_event(e.message, getattr(e, "errors", None)))
        except Exception:
            metrics.increment("frame_errors")
            logger.exception(f"Unexpected error handling frame for user {self.user_id}")
            await self._send(error_event("Internal error"))

    def close(self) -> None:
        if self.state == SessionState.CLOSED:
            return
        self.registry.unregister_all(self.connection)
        self.state = SessionState.CLOSED
        logger.debug(f"Session closed for user {self.user_id}")

    # --- Frame handlers ---

    async def _on_init(self, frame: InitFrame) -> None:
        if frame.user_id != self.user_id:
            raise AuthorizationError("userId does not match the authenticated user")

        if frame.room_id != GLOBAL_ROOM_ID:
            result, _ = await db.run_sync(access.view_room, frame.room_id, self.user_id)
            if result.status_changed:
                await self._announce(result.room)

        # Re-binding moves the connection out of its previous bucket
        if self.state == SessionState.BOUND and self.room_id is not None:
            self.registry.unregister(self.room_id, self.connection)

        self.connection.room_id = frame.room_id
        if frame.room_id == GLOBAL_ROOM_ID:
            self.registry.register_global(self.connection)
        else:
            self.registry.register(frame.room_id, self.connection)
        self.state = SessionState.BOUND

        logger.info(f"User {self.user_id} bound to room {frame.room_id}")
        await self._send(init_event())

    def _require_room(self) -> int:
        if self.room_id is None or self.room_id == GLOBAL_ROOM_ID:
            raise ValidationError("Bind to a room before sending messages or reactions")
        return self.room_id

    async def _on_message(self, frame: MessageFrame) -> None:
        room_id = self._require_room()
        result = await db.run_sync(access.post_message, room_id, self.user_id, frame.content)
        if result.status_changed:
            await self._announce(result.room)

        metrics.increment("messages")
        await self.registry.broadcast(room_id, message_event(result.row), exclude=self._echo_exclude())

    async def _on_reaction(self, frame: ReactionFrame) -> None:
        room_id = self._require_room()
        result = await db.run_sync(
            access.post_reaction, room_id, self.user_id, frame.reaction_type
        )
        if result.status_changed:
            await self._announce(result.room)

        metrics.increment("reactions")
        await self.registry.broadcast(
            room_id, reaction_event(result.row), exclude=self._echo_exclude()
        )

    # --- Helpers ---

    def _echo_exclude(self) -> Connection | None:
        return self.connection if self.settings.suppress_sender_echo else None

    async def _announce(self, room: dict) -> None:
        await announce_status_change(
            room,
            registry=self.registry,
            to_global=self.settings.broadcast_status_to_global,
        )

    async def _send(self, event: dict) -> None:
        if not self.connection.is_open:
            return
        try:
            await self.connection.send(event)
        except Exception as e:
            logger.debug(f"Could not reply to user {self.user_id}: {e}")
