"""Database layer for liverooms - SQLite with thread-local connections.

This module is the durable store behind the room-session engine. It persists
users, rooms, invitations, participants, messages and reactions and exposes
atomic create/read/update operations as plain functions.

Connection Management:
    # Global thread-local connection (configured by LIVEROOMS_DB)
    init_db()
    room = create_room(...)

    # Scoped connection
    with scoped_connection("/path/to/rooms.db") as conn:
        init_db_with_conn(conn)
        room = create_room(..., conn=conn)

    # In-memory for testing
    with scoped_connection(":memory:") as conn:
        init_db_with_conn(conn)
        ...

Timestamps are stored as ISO-8601 UTC strings with microsecond precision so
that string comparison in SQL matches chronological order.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from .auth import generate_secret, hash_secret
from .errors import ConflictError, NotFoundError, TransientStoreError, ValidationError
from .schemas import (
    REACTION_TYPES,
    ROOM_TAGS,
    ROOM_TYPES,
    Invitee,
    InviteeByEmail,
    InviteeByUser,
    RoomStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Thread-local storage for per-thread connections
# Each thread gets its own SQLite connection; FastAPI and the DB executor
# run store calls off the event loop thread.
_local = threading.local()


# --- Time helpers ---


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Normalize a datetime to the stored ISO format. Naive values are UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse a stored timestamp back into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# --- Connection Management ---


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get or create database connection.

    Uses thread-local storage to give each thread its own connection.

    Args:
        db_path: Optional explicit database path. If None, uses the thread-local
                 connection configured by LIVEROOMS_DB. ":memory:" creates a
                 private in-memory database.

    Returns:
        SQLite connection with row_factory set to sqlite3.Row.
    """
    # If explicit path provided, create a new connection (not thread-local)
    if db_path is not None:
        if str(db_path) == ":memory:":
            conn = sqlite3.connect(":memory:", check_same_thread=False)
        else:
            conn = sqlite3.connect(str(db_path), check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    if getattr(_local, "conn", None) is None:
        db_path_env = os.environ.get("LIVEROOMS_DB", ":memory:")

        if db_path_env == ":memory:":
            # Shared cache so every thread sees the same in-memory data.
            # The name includes the PID so parallel test processes don't collide.
            _local.conn = sqlite3.connect(
                f"file:liverooms_{os.getpid()}?mode=memory&cache=shared",
                uri=True,
                check_same_thread=False,
            )
        else:
            _local.conn = sqlite3.connect(db_path_env, check_same_thread=False)
            _local.conn.execute("PRAGMA journal_mode=WAL")

        _local.conn.execute("PRAGMA busy_timeout=5000")
        _local.conn.execute("PRAGMA foreign_keys=ON")
        _local.conn.row_factory = sqlite3.Row

    return _local.conn


@contextmanager
def scoped_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Context manager for a connection that is closed when the context exits."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def close_db() -> None:
    """Close the connection for the current thread."""
    if getattr(_local, "conn", None) is not None:
        _local.conn.close()
        _local.conn = None


def _get_conn(conn: sqlite3.Connection | None) -> sqlite3.Connection:
    """Helper to get connection - uses provided conn or falls back to global."""
    if conn is not None:
        return conn
    return get_connection()


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    return dict(row)


def _rows_to_dicts(rows: list[sqlite3.Row]) -> list[dict]:
    return [dict(row) for row in rows]


# --- Schema ---


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        secret_hash TEXT NOT NULL UNIQUE,
        created_at TIMESTAMP NOT NULL
    );

    CREATE TABLE IF NOT EXISTS rooms (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        description TEXT,
        type TEXT NOT NULL,
        tag TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'scheduled',
        start_time TIMESTAMP NOT NULL,
        end_time TIMESTAMP NOT NULL,
        max_participants INTEGER,
        creator_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        created_at TIMESTAMP NOT NULL,
        CHECK (end_time > start_time)
    );

    CREATE INDEX IF NOT EXISTS idx_rooms_status ON rooms(status, start_time, end_time);
    CREATE INDEX IF NOT EXISTS idx_rooms_creator ON rooms(creator_id);

    CREATE TABLE IF NOT EXISTS room_invitations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        room_id INTEGER NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
        user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
        email TEXT,
        accepted INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP NOT NULL,
        CHECK ((user_id IS NULL) != (email IS NULL)),
        UNIQUE (room_id, user_id),
        UNIQUE (room_id, email)
    );

    CREATE INDEX IF NOT EXISTS idx_room_invitations_user ON room_invitations(user_id);

    CREATE TABLE IF NOT EXISTS room_participants (
        room_id INTEGER NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        joined_at TIMESTAMP NOT NULL,
        PRIMARY KEY (room_id, user_id)
    );

    CREATE INDEX IF NOT EXISTS idx_room_participants_user ON room_participants(user_id);

    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        room_id INTEGER NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        content TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id, created_at);

    CREATE TABLE IF NOT EXISTS reactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        room_id INTEGER NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        UNIQUE (room_id, user_id, type)
    );
"""

TABLES = (
    "reactions",
    "messages",
    "room_participants",
    "room_invitations",
    "rooms",
    "users",
)


def init_db_with_conn(conn: sqlite3.Connection) -> None:
    """Initialize database schema with an explicit connection."""
    conn.executescript(SCHEMA_SQL)
    conn.commit()


def init_db() -> None:
    """Initialize database schema using the thread-local connection."""
    init_db_with_conn(get_connection())


def reset_db(conn: sqlite3.Connection | None = None) -> None:
    """Drop and recreate every table (for testing)."""
    conn = _get_conn(conn)
    conn.execute("PRAGMA foreign_keys=OFF")
    conn.executescript("".join(f"DROP TABLE IF EXISTS {table};\n" for table in TABLES))
    conn.commit()
    conn.execute("PRAGMA foreign_keys=ON")
    init_db_with_conn(conn)


# --- User Operations ---

_USER_COLUMNS = "id, username, email, created_at"


def create_user(
    username: str,
    email: str,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a user.

    Returns:
        User dict including the plain ``secret``. The secret is not stored and
        cannot be recovered later.

    Raises:
        ConflictError: If the username or email is taken.
    """
    conn = _get_conn(conn)
    secret = generate_secret()
    now = to_iso(utcnow())

    try:
        cursor = conn.execute(
            """INSERT INTO users (username, email, secret_hash, created_at)
               VALUES (?, ?, ?, ?)""",
            (username, email, hash_secret(secret), now),
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        raise ConflictError("Username or email already in use") from None

    return {
        "id": cursor.lastrowid,
        "username": username,
        "email": email,
        "created_at": now,
        "secret": secret,
    }


def get_user(user_id: int, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get user by ID."""
    conn = _get_conn(conn)
    cursor = conn.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,))
    return _row_to_dict(cursor.fetchone())


def get_user_by_username(username: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get user by username."""
    conn = _get_conn(conn)
    cursor = conn.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE username = ?", (username,))
    return _row_to_dict(cursor.fetchone())


def get_user_by_email(email: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get user by email."""
    conn = _get_conn(conn)
    cursor = conn.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?", (email,))
    return _row_to_dict(cursor.fetchone())


def get_user_by_secret(secret: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Resolve a bearer secret to its user, or None."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"SELECT {_USER_COLUMNS} FROM users WHERE secret_hash = ?",
        (hash_secret(secret),),
    )
    return _row_to_dict(cursor.fetchone())


# --- Room Operations ---

_ROOM_COLUMNS = """id, title, description, type, tag, status, start_time, end_time,
                   max_participants, creator_id, created_at"""


def create_room(
    title: str,
    type: str,
    tag: str,
    start_time: datetime,
    end_time: datetime,
    creator_id: int,
    description: str | None = None,
    max_participants: int | None = None,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a room.

    The initial status is computed from the time window at creation, and the
    creator is added as the first participant in the same transaction.

    Raises:
        ValidationError: On bad type/tag, ``end_time <= start_time`` or a
            participant cap below 2.
        NotFoundError: If the creator does not exist.
    """
    from .lifecycle import compute_status

    conn = _get_conn(conn)

    errors = []
    if type not in ROOM_TYPES:
        errors.append({"field": "type", "message": f"Must be one of {', '.join(ROOM_TYPES)}"})
    if tag not in ROOM_TAGS:
        errors.append({"field": "tag", "message": f"Must be one of {', '.join(ROOM_TAGS)}"})
    if parse_timestamp(end_time) <= parse_timestamp(start_time):
        errors.append({"field": "endTime", "message": "End time must be after start time"})
    if max_participants is not None and max_participants < 2:
        errors.append({"field": "maxParticipants", "message": "Must be at least 2"})
    if errors:
        raise ValidationError("Invalid room data", errors)

    if get_user(creator_id, conn=conn) is None:
        raise NotFoundError(f"User {creator_id} not found")

    now = now or utcnow()
    status = compute_status(start_time, end_time, now)
    created_at = to_iso(now)

    cursor = conn.execute(
        """INSERT INTO rooms (title, description, type, tag, status, start_time, end_time,
                              max_participants, creator_id, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            title,
            description,
            type,
            tag,
            status.value,
            to_iso(start_time),
            to_iso(end_time),
            max_participants,
            creator_id,
            created_at,
        ),
    )
    room_id = cursor.lastrowid

    # Add creator as first participant
    conn.execute(
        "INSERT INTO room_participants (room_id, user_id, joined_at) VALUES (?, ?, ?)",
        (room_id, creator_id, created_at),
    )
    conn.commit()

    room = get_room(room_id, conn=conn)
    assert room is not None
    return room


def get_room(room_id: int, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get room by ID, as stored (no status reconciliation)."""
    conn = _get_conn(conn)
    cursor = conn.execute(f"SELECT {_ROOM_COLUMNS} FROM rooms WHERE id = ?", (room_id,))
    return _row_to_dict(cursor.fetchone())


def get_rooms_by_creator(creator_id: int, conn: sqlite3.Connection | None = None) -> list[dict]:
    """Rooms created by a user, ordered by start time."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"SELECT {_ROOM_COLUMNS} FROM rooms WHERE creator_id = ? ORDER BY start_time, id",
        (creator_id,),
    )
    return _rows_to_dicts(cursor.fetchall())


def get_rooms_by_participant(user_id: int, conn: sqlite3.Connection | None = None) -> list[dict]:
    """Rooms a user participates in, ordered by start time."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT r.id, r.title, r.description, r.type, r.tag, r.status, r.start_time,
                  r.end_time, r.max_participants, r.creator_id, r.created_at
           FROM rooms r
           JOIN room_participants p ON p.room_id = r.id
           WHERE p.user_id = ?
           ORDER BY r.start_time, r.id""",
        (user_id,),
    )
    return _rows_to_dicts(cursor.fetchall())


def get_rooms_by_invitation(user_id: int, conn: sqlite3.Connection | None = None) -> list[dict]:
    """Rooms with a pending (unaccepted) invitation for a user."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT r.id, r.title, r.description, r.type, r.tag, r.status, r.start_time,
                  r.end_time, r.max_participants, r.creator_id, r.created_at
           FROM rooms r
           JOIN room_invitations i ON i.room_id = r.id
           WHERE i.user_id = ? AND i.accepted = 0
           ORDER BY r.start_time, r.id""",
        (user_id,),
    )
    return _rows_to_dicts(cursor.fetchall())


def get_public_rooms(conn: sqlite3.Connection | None = None) -> list[dict]:
    """All public rooms, ordered by start time."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"SELECT {_ROOM_COLUMNS} FROM rooms WHERE type = 'public' ORDER BY start_time, id"
    )
    return _rows_to_dicts(cursor.fetchall())


def list_rooms(conn: sqlite3.Connection | None = None) -> list[dict]:
    """All rooms, ordered by start time."""
    conn = _get_conn(conn)
    cursor = conn.execute(f"SELECT {_ROOM_COLUMNS} FROM rooms ORDER BY start_time, id")
    return _rows_to_dicts(cursor.fetchall())


def update_room_status(
    room_id: int,
    status: RoomStatus | str,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Set a room's status. Returns the updated room, or None if not found."""
    conn = _get_conn(conn)
    status = RoomStatus(status)
    cursor = conn.execute("UPDATE rooms SET status = ? WHERE id = ?", (status.value, room_id))
    conn.commit()
    if cursor.rowcount == 0:
        return None
    return get_room(room_id, conn=conn)


def update_room_statuses(
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict[str, list[dict]]:
    """Bulk status sweep.

    - scheduled rooms whose window has begun (and not ended) go live
    - scheduled or live rooms whose window has ended are closed

    Returns:
        {"going_live": [...], "going_closed": [...]} with the updated rooms.
    """
    conn = _get_conn(conn)
    now_iso = to_iso(now or utcnow())

    cursor = conn.execute(
        """SELECT id FROM rooms
           WHERE status = 'scheduled' AND start_time <= ? AND end_time > ?""",
        (now_iso, now_iso),
    )
    live_ids = [row[0] for row in cursor.fetchall()]

    cursor = conn.execute(
        """SELECT id FROM rooms
           WHERE status IN ('scheduled', 'live') AND end_time <= ?""",
        (now_iso,),
    )
    closed_ids = [row[0] for row in cursor.fetchall()]

    if live_ids:
        placeholders = ",".join("?" * len(live_ids))
        conn.execute(
            f"UPDATE rooms SET status = 'live' WHERE status = 'scheduled' AND id IN ({placeholders})",
            live_ids,
        )
    if closed_ids:
        placeholders = ",".join("?" * len(closed_ids))
        conn.execute(
            f"UPDATE rooms SET status = 'closed' WHERE status != 'closed' AND id IN ({placeholders})",
            closed_ids,
        )
    conn.commit()

    return {
        "going_live": [r for r in (get_room(i, conn=conn) for i in live_ids) if r],
        "going_closed": [r for r in (get_room(i, conn=conn) for i in closed_ids) if r],
    }


# --- Invitation Operations ---

_INVITATION_COLUMNS = "id, room_id, user_id, email, accepted, created_at"


def _invitation_from_row(row: sqlite3.Row | None) -> dict | None:
    data = _row_to_dict(row)
    if data is not None:
        data["accepted"] = bool(data["accepted"])
    return data


def create_room_invitation(
    room_id: int,
    invitee: Invitee,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Invite a known user or a bare email address to a room.

    Raises:
        ValidationError: If the invitee is neither ByUser nor ByEmail.
        NotFoundError: If the room or invited user does not exist.
        ConflictError: If the user/email is already invited to the room.
    """
    conn = _get_conn(conn)

    if isinstance(invitee, InviteeByUser):
        user_id, email = invitee.user_id, None
        if get_user(user_id, conn=conn) is None:
            raise NotFoundError(f"User {user_id} not found")
    elif isinstance(invitee, InviteeByEmail):
        user_id, email = None, invitee.email
    else:
        raise ValidationError("Invitation must target exactly one of a user or an email")

    if get_room(room_id, conn=conn) is None:
        raise NotFoundError(f"Room {room_id} not found")

    now = to_iso(utcnow())
    try:
        cursor = conn.execute(
            """INSERT INTO room_invitations (room_id, user_id, email, accepted, created_at)
               VALUES (?, ?, ?, 0, ?)""",
            (room_id, user_id, email, now),
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        raise ConflictError("Invitation already exists for this room") from None

    return {
        "id": cursor.lastrowid,
        "room_id": room_id,
        "user_id": user_id,
        "email": email,
        "accepted": False,
        "created_at": now,
    }


def get_room_invitation(invitation_id: int, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get invitation by ID."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"SELECT {_INVITATION_COLUMNS} FROM room_invitations WHERE id = ?", (invitation_id,)
    )
    return _invitation_from_row(cursor.fetchone())


def get_room_invitations_by_room(room_id: int, conn: sqlite3.Connection | None = None) -> list[dict]:
    """All invitations for a room."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"SELECT {_INVITATION_COLUMNS} FROM room_invitations WHERE room_id = ? ORDER BY id",
        (room_id,),
    )
    return [_invitation_from_row(row) for row in cursor.fetchall()]  # type: ignore[misc]


def get_room_invitations_by_user(user_id: int, conn: sqlite3.Connection | None = None) -> list[dict]:
    """All invitations addressed to a user ID."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"SELECT {_INVITATION_COLUMNS} FROM room_invitations WHERE user_id = ? ORDER BY id",
        (user_id,),
    )
    return [_invitation_from_row(row) for row in cursor.fetchall()]  # type: ignore[misc]


def get_user_invitation_for_room(
    room_id: int,
    user_id: int,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """The invitation matching (room, user ID), if any."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"SELECT {_INVITATION_COLUMNS} FROM room_invitations WHERE room_id = ? AND user_id = ?",
        (room_id, user_id),
    )
    return _invitation_from_row(cursor.fetchone())


def accept_room_invitation(
    invitation_id: int,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Mark an invitation accepted and add the invited user as a participant.

    Accepting twice is harmless. Email invitations are only marked accepted.

    Returns:
        The updated invitation, or None if not found.
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        "UPDATE room_invitations SET accepted = 1 WHERE id = ?", (invitation_id,)
    )
    if cursor.rowcount == 0:
        conn.rollback()
        return None

    invitation = get_room_invitation(invitation_id, conn=conn)
    assert invitation is not None
    if invitation["user_id"] is not None:
        conn.execute(
            """INSERT OR IGNORE INTO room_participants (room_id, user_id, joined_at)
               VALUES (?, ?, ?)""",
            (invitation["room_id"], invitation["user_id"], to_iso(utcnow())),
        )
    conn.commit()
    return invitation


# --- Participant Operations ---


def add_room_participant(
    room_id: int,
    user_id: int,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Add a participant.

    Raises:
        ConflictError: If the user is already a participant.
    """
    conn = _get_conn(conn)
    now = to_iso(utcnow())
    try:
        conn.execute(
            "INSERT INTO room_participants (room_id, user_id, joined_at) VALUES (?, ?, ?)",
            (room_id, user_id, now),
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        raise ConflictError("User is already a participant in this room") from None

    return {"room_id": room_id, "user_id": user_id, "joined_at": now}


def get_room_participants(room_id: int, conn: sqlite3.Connection | None = None) -> list[dict]:
    """Participants of a room as user summaries, in join order."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT u.id, u.username, p.joined_at
           FROM room_participants p
           JOIN users u ON u.id = p.user_id
           WHERE p.room_id = ?
           ORDER BY p.joined_at, u.id""",
        (room_id,),
    )
    return _rows_to_dicts(cursor.fetchall())


def count_room_participants(room_id: int, conn: sqlite3.Connection | None = None) -> int:
    conn = _get_conn(conn)
    cursor = conn.execute("SELECT COUNT(*) FROM room_participants WHERE room_id = ?", (room_id,))
    return cursor.fetchone()[0]


def is_room_participant(
    room_id: int,
    user_id: int,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Check if a user is a participant of a room."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT 1 FROM room_participants WHERE room_id = ? AND user_id = ?",
        (room_id, user_id),
    )
    return cursor.fetchone() is not None


# --- Message Operations ---


def _with_user(row: dict) -> dict:
    """Fold joined username columns into a nested ``user`` summary."""
    row["user"] = {"id": row["user_id"], "username": row.pop("username")}
    return row


def create_message(
    room_id: int,
    user_id: int,
    content: str,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Append a message. Returns the stored row with its durable id and author."""
    conn = _get_conn(conn)
    now = to_iso(utcnow())
    cursor = conn.execute(
        "INSERT INTO messages (room_id, user_id, content, created_at) VALUES (?, ?, ?, ?)",
        (room_id, user_id, content, now),
    )
    conn.commit()

    message = get_message(cursor.lastrowid, conn=conn)
    assert message is not None
    return message


def get_message(message_id: int, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT m.id, m.room_id, m.user_id, m.content, m.created_at, u.username
           FROM messages m JOIN users u ON u.id = m.user_id
           WHERE m.id = ?""",
        (message_id,),
    )
    row = _row_to_dict(cursor.fetchone())
    return _with_user(row) if row else None


def get_room_messages(room_id: int, conn: sqlite3.Connection | None = None) -> list[dict]:
    """Messages of a room ordered by creation time ascending."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT m.id, m.room_id, m.user_id, m.content, m.created_at, u.username
           FROM messages m JOIN users u ON u.id = m.user_id
           WHERE m.room_id = ?
           ORDER BY m.created_at, m.id""",
        (room_id,),
    )
    return [_with_user(row) for row in _rows_to_dicts(cursor.fetchall())]


# --- Reaction Operations ---


def create_reaction(
    room_id: int,
    user_id: int,
    type: str,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Record a reaction, replacing any same-type reaction from the same user.

    ``INSERT OR REPLACE`` deletes the conflicting row and inserts a new one in a
    single statement, so near-simultaneous reactions cannot leave duplicates.

    Raises:
        ValidationError: If the reaction type is not in the fixed emoji set.
    """
    if type not in REACTION_TYPES:
        raise ValidationError(
            "Invalid reaction data",
            [{"field": "type", "message": f"Must be one of {' '.join(REACTION_TYPES)}"}],
        )

    conn = _get_conn(conn)
    now = to_iso(utcnow())
    cursor = conn.execute(
        """INSERT OR REPLACE INTO reactions (room_id, user_id, type, created_at)
           VALUES (?, ?, ?, ?)""",
        (room_id, user_id, type, now),
    )
    conn.commit()

    reaction = get_reaction(cursor.lastrowid, conn=conn)
    assert reaction is not None
    return reaction


def get_reaction(reaction_id: int, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT r.id, r.room_id, r.user_id, r.type, r.created_at, u.username
           FROM reactions r JOIN users u ON u.id = r.user_id
           WHERE r.id = ?""",
        (reaction_id,),
    )
    row = _row_to_dict(cursor.fetchone())
    return _with_user(row) if row else None


def remove_reaction(
    room_id: int,
    user_id: int,
    type: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Remove a user's reaction of one type. Returns True if a row was removed."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "DELETE FROM reactions WHERE room_id = ? AND user_id = ? AND type = ?",
        (room_id, user_id, type),
    )
    conn.commit()
    return cursor.rowcount > 0


def get_room_reactions(room_id: int, conn: sqlite3.Connection | None = None) -> list[dict]:
    """Current reactions of a room (one per user per type)."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT r.id, r.room_id, r.user_id, r.type, r.created_at, u.username
           FROM reactions r JOIN users u ON u.id = r.user_id
           WHERE r.room_id = ?
           ORDER BY r.created_at, r.id""",
        (room_id,),
    )
    return [_with_user(row) for row in _rows_to_dicts(cursor.fetchall())]


def count_rows(table: str, conn: sqlite3.Connection | None = None, **where: Any) -> int:
    """Count rows in a table matching equality filters."""
    if table not in TABLES:
        raise ValueError(f"Unknown table: {table}")
    conn = _get_conn(conn)
    query = f"SELECT COUNT(*) FROM {table}"
    if where:
        query += " WHERE " + " AND ".join(f"{column} = ?" for column in where)
    cursor = conn.execute(query, tuple(where.values()))
    return cursor.fetchone()[0]


# --- Async access ---
# All async callers (request handlers, live sessions, the sweeper) go through a
# single worker thread, so store writes are serialized.

_db_executor: ThreadPoolExecutor | None = None


def _get_db_executor() -> ThreadPoolExecutor:
    global _db_executor
    if _db_executor is None:
        _db_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="liverooms-db")
        logger.debug("Started serialized DB executor")
    return _db_executor


def shutdown_executor() -> None:
    """Stop the DB worker thread, closing its connection first."""
    global _db_executor
    if _db_executor is not None:
        _db_executor.submit(close_db).result()
        _db_executor.shutdown(wait=True)
        _db_executor = None


async def run_sync(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a synchronous store function on the DB worker thread.

    Raises:
        TransientStoreError: If SQLite reports an operational failure
            (locked database, disk I/O). Domain errors propagate unchanged.
    """
    from .metrics import timed_store_call

    name = getattr(fn, "__name__", repr(fn))
    loop = asyncio.get_running_loop()
    try:
        with timed_store_call(name):
            return await loop.run_in_executor(
                _get_db_executor(), functools.partial(fn, *args, **kwargs)
            )
    except sqlite3.OperationalError as e:
        logger.error(f"Store operation {name} failed: {e}")
        raise TransientStoreError("Storage temporarily unavailable") from e
