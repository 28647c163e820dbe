"""Room lifecycle: status derived from the room's time window.

A room is ``scheduled`` before its start, ``live`` inside its window and
``closed`` once the end has passed. Stored status can go stale between checks,
so every read path reconciles before returning (``load_room``): the computed
status is persisted when it is ahead of the stored one and the caller is told
that a transition happened so it can announce it.

Transitions only move forward. A room may go straight from scheduled to closed
when no check happened during its live window.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from . import db
from .schemas import RoomStatus

logger = logging.getLogger(__name__)


def compute_status(
    start_time: datetime | str,
    end_time: datetime | str,
    now: datetime | None = None,
) -> RoomStatus:
    """Status implied by a time window at ``now``."""
    now = db.parse_timestamp(now) if now is not None else db.utcnow()
    if now < db.parse_timestamp(start_time):
        return RoomStatus.SCHEDULED
    if now < db.parse_timestamp(end_time):
        return RoomStatus.LIVE
    return RoomStatus.CLOSED


def reconcile(
    room: dict,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict, bool]:
    """Bring a room's stored status in line with its window.

    Returns:
        (room, changed) where ``room`` reflects the persisted status.
    """
    stored = RoomStatus(room["status"])
    computed = compute_status(room["start_time"], room["end_time"], now)

    if computed == stored:
        return room, False

    if computed.rank < stored.rank:
        # e.g. a room closed by hand before its end time
        logger.warning(
            f"Room {room['id']} stored as {stored.value} but window implies "
            f"{computed.value}; not moving status backwards"
        )
        return room, False

    updated = db.update_room_status(room["id"], computed, conn=conn)
    if updated is None:
        return room, False

    logger.info(f"Room {room['id']} reconciled: {stored.value} -> {computed.value}")
    return updated, True


def load_room(
    room_id: int,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict | None, bool]:
    """Fetch a room and reconcile its status.

    Returns:
        (room, changed), or (None, False) if the room does not exist.
    """
    room = db.get_room(room_id, conn=conn)
    if room is None:
        return None, False
    return reconcile(room, now=now, conn=conn)


def reconcile_all(
    rooms: list[dict],
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> tuple[list[dict], list[dict]]:
    """Reconcile a batch of rooms.

    Returns:
        (rooms, changed) with every room reconciled, plus the subset whose
        status moved.
    """
    result = []
    changed = []
    for room in rooms:
        room, did_change = reconcile(room, now=now, conn=conn)
        result.append(room)
        if did_change:
            changed.append(room)
    return result, changed
