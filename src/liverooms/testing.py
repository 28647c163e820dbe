"""Pytest fixtures for testing against liverooms.

Usage in conftest.py:
    pytest_plugins = ["liverooms.testing"]

Available fixtures:
    - rooms_db: Fresh schema on the in-memory store, registry and settings reset
    - rooms_client: FastAPI TestClient for the app (sweeper not started)
    - alice, bob, carol: Users with their bearer secrets

Utility functions:
    - auth_headers(user): Authorization header for a user
    - FakeConnection: Registry connection that records sent events
    - make_room(creator, ...): Create a room relative to now
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Generator

import pytest
from fastapi.testclient import TestClient

from . import db
from .config import Settings, reset_settings, set_settings
from .metrics import metrics
from .registry import Connection, reset_registry


@pytest.fixture
def rooms_db() -> Generator[Any, None, None]:
    """Fresh database schema plus a clean registry, settings and metrics.

    Settings disable the background sweeper; tests drive ``Sweeper.tick``.

    Example:
        def test_store(rooms_db):
            user = db.create_user("alice", "alice@example.com")
            ...
    """
    conn = db.get_connection()
    db.reset_db(conn)
    reset_registry()
    set_settings(Settings(sweep_enabled=False))
    metrics.reset()
    yield conn
    reset_registry()
    reset_settings()


@pytest.fixture
def rooms_client(rooms_db: Any) -> Generator[TestClient, None, None]:
    """TestClient bound to the liverooms app.

    Example:
        def test_health(rooms_client):
            assert rooms_client.get("/health").json() == {"status": "ok"}
    """
    from .api import app

    yield TestClient(app)


def _user_fixture(username: str) -> dict[str, Any]:
    return db.create_user(username, f"{username}@example.com")


@pytest.fixture
def alice(rooms_db: Any) -> dict[str, Any]:
    """User "alice" including her ``secret``."""
    return _user_fixture("alice")


@pytest.fixture
def bob(rooms_db: Any) -> dict[str, Any]:
    """User "bob" including his ``secret``."""
    return _user_fixture("bob")


@pytest.fixture
def carol(rooms_db: Any) -> dict[str, Any]:
    """User "carol" including her ``secret``."""
    return _user_fixture("carol")


# --- Utility Functions ---


def auth_headers(user: dict[str, Any]) -> dict[str, str]:
    """Bearer auth header for a user created with ``db.create_user``."""
    return {"Authorization": f"Bearer {user['secret']}"}


def make_room(
    creator: dict[str, Any],
    type: str = "public",
    starts_in: timedelta = timedelta(minutes=-1),
    lasts: timedelta = timedelta(hours=1),
    title: str = "Test Room",
    tag: str = "hangout",
    max_participants: int | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Create a room whose window is placed relative to ``now``.

    The defaults give a room that is live right now.

    Args:
        creator: User dict (only ``id`` is used)
        starts_in: Offset of the start from now (negative = already started)
        lasts: Window length
    """
    now = now or db.utcnow()
    start = now + starts_in
    return db.create_room(
        title=title,
        type=type,
        tag=tag,
        start_time=start,
        end_time=start + lasts,
        max_participants=max_participants,
        creator_id=creator["id"],
        now=now,
    )


class FakeConnection(Connection):
    """Connection double that records the events sent to it.

    Example:
        conn = FakeConnection(user_id=alice["id"])
        registry.register(room["id"], conn)
        ...
        assert conn.sent[-1]["type"] == "message"
    """

    def __init__(self, user_id: int | None = None, open: bool = True, fail: bool = False) -> None:
        super().__init__(websocket=None, user_id=user_id)  # type: ignore[arg-type]
        self.sent: list[dict[str, Any]] = []
        self._open = open
        self._fail = fail

    @property
    def is_open(self) -> bool:
        return self._open

    async def send(self, event: dict[str, Any]) -> None:
        if self._fail:
            raise RuntimeError("socket went away")
        self.sent.append(event)

    def events(self, type: str) -> list[dict[str, Any]]:
        return [event for event in self.sent if event.get("type") == type]
