"""Access control gate.

Predicates over a room, a user id and freshly loaded ``AccessFacts``. Facts are
read from the store on every request or frame and never cached, so a join or an
accepted invitation takes effect on the very next check.

The gated operations (``join_room``, ``post_message``, ``post_reaction``) are
synchronous store transactions meant to run on the DB worker thread. Each one
reloads and reconciles the room first, so the gate always sees the status the
time window implies.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator

from . import db
from .errors import AuthorizationError, ConflictError, NotFoundError, RoomsError, ValidationError
from .lifecycle import load_room
from .schemas import RoomStatus

logger = logging.getLogger(__name__)


@dataclass
class AccessFacts:
    """Relationship between one user and one room at the time of the check."""

    is_participant: bool
    invitation: dict | None
    participant_count: int


def load_facts(room: dict, user_id: int, conn: sqlite3.Connection | None = None) -> AccessFacts:
    return AccessFacts(
        is_participant=db.is_room_participant(room["id"], user_id, conn=conn),
        invitation=db.get_user_invitation_for_room(room["id"], user_id, conn=conn),
        participant_count=db.count_room_participants(room["id"], conn=conn),
    )


def _is_live(room: dict) -> bool:
    return RoomStatus(room["status"]) == RoomStatus.LIVE


def _has_capacity(room: dict, facts: AccessFacts) -> bool:
    cap = room.get("max_participants")
    return cap is None or facts.participant_count < cap


def can_view(room: dict, user_id: int, facts: AccessFacts) -> bool:
    return room["creator_id"] == user_id or facts.is_participant or room["type"] == "public"


def can_join(room: dict, user_id: int, facts: AccessFacts) -> bool:
    if not _is_live(room):
        return False
    allowed = room["type"] == "public" or facts.is_participant or facts.invitation is not None
    return allowed and _has_capacity(room, facts)


def can_chat(room: dict, user_id: int, facts: AccessFacts) -> bool:
    return _is_live(room) and facts.is_participant


def can_react(room: dict, user_id: int, facts: AccessFacts) -> bool:
    return _is_live(room) and facts.is_participant


def user_access(room: dict, user_id: int, facts: AccessFacts) -> dict:
    """The per-user access summary shown alongside room details."""
    return {
        "is_creator": room["creator_id"] == user_id,
        "is_participant": facts.is_participant,
        "can_join": can_join(room, user_id, facts),
        "can_chat": can_chat(room, user_id, facts),
    }


# --- Gated operations ---


@dataclass
class GateResult:
    """Outcome of a gated operation.

    ``status_changed`` is True when loading the room moved its status, so the
    caller can announce the transition.
    """

    room: dict
    status_changed: bool = False
    already_joined: bool = False
    row: dict | None = None


def _load_or_404(
    room_id: int,
    now: datetime | None,
    conn: sqlite3.Connection | None,
) -> tuple[dict, bool]:
    room, changed = load_room(room_id, now=now, conn=conn)
    if room is None:
        raise NotFoundError("Room not found")
    return room, changed


@contextmanager
def _carry_transition(room: dict, changed: bool) -> Iterator[None]:
    """Attach a transition found while loading the room to any rejection."""
    try:
        yield
    except RoomsError as e:
        if changed:
            e.status_change = room
        raise


def view_room(
    room_id: int,
    user_id: int,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> tuple[GateResult, AccessFacts]:
    """Load a room the user may view.

    Raises:
        NotFoundError: Unknown room.
        AuthorizationError: Private room the user neither created nor joined.
    """
    room, changed = _load_or_404(room_id, now, conn)
    with _carry_transition(room, changed):
        facts = load_facts(room, user_id, conn=conn)
        if not can_view(room, user_id, facts):
            raise AuthorizationError("You don't have access to this room")
    return GateResult(room=room, status_changed=changed), facts


def join_room(
    room_id: int,
    user_id: int,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> GateResult:
    """Join a live room.

    Re-joining is not an error: the result has ``already_joined=True``. A
    rejection raised after the room's status moved carries the room in
    ``status_change``.

    Raises:
        NotFoundError: Unknown room.
        ValidationError: Room not live, or at capacity.
        AuthorizationError: Private room without an invitation for the user.
    """
    room, changed = _load_or_404(room_id, now, conn)
    with _carry_transition(room, changed):
        if not _is_live(room):
            raise ValidationError(f"Room is not live (status: {room['status']})")

        facts = load_facts(room, user_id, conn=conn)
        if facts.is_participant:
            return GateResult(room=room, status_changed=changed, already_joined=True)

        if not _has_capacity(room, facts):
            raise ValidationError("Room is full")

        invitation = facts.invitation
        if room["type"] == "private" and invitation is None:
            raise AuthorizationError("You need an invitation to join this private room")

    if invitation is not None:
        db.accept_room_invitation(invitation["id"], conn=conn)
        logger.info(f"User {user_id} accepted invitation {invitation['id']} to room {room_id}")
        return GateResult(room=room, status_changed=changed)

    try:
        db.add_room_participant(room_id, user_id, conn=conn)
    except ConflictError:
        # Lost a race with a concurrent join by the same user.
        return GateResult(room=room, status_changed=changed, already_joined=True)

    logger.info(f"User {user_id} joined room {room_id}")
    return GateResult(room=room, status_changed=changed)


def _require_live_participant(room: dict, user_id: int, conn: sqlite3.Connection | None) -> None:
    if not _is_live(room):
        raise ValidationError(f"Room is not live (status: {room['status']})")
    facts = load_facts(room, user_id, conn=conn)
    if not facts.is_participant:
        raise AuthorizationError("You must join the room first")


def post_message(
    room_id: int,
    user_id: int,
    content: str,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> GateResult:
    """Persist a message if the room is live and the author is a participant."""
    room, changed = _load_or_404(room_id, now, conn)
    with _carry_transition(room, changed):
        _require_live_participant(room, user_id, conn)
    message = db.create_message(room_id, user_id, content, conn=conn)
    return GateResult(room=room, status_changed=changed, row=message)


def post_reaction(
    room_id: int,
    user_id: int,
    reaction_type: str,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> GateResult:
    """Persist a reaction, replacing the user's previous one of the same type."""
    room, changed = _load_or_404(room_id, now, conn)
    with _carry_transition(room, changed):
        _require_live_participant(room, user_id, conn)
    reaction = db.create_reaction(room_id, user_id, reaction_type, conn=conn)
    return GateResult(room=room, status_changed=changed, row=reaction)
