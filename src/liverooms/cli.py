"""CLI for liverooms.

Runs the server and offers a few local administration commands that operate
directly on the database configured by LIVEROOMS_DB (or the config file).
"""

from __future__ import annotations

import json
import logging
import os
import sys

import cyclopts

from .config import LiveroomsConfigError, Settings, set_settings

app = cyclopts.App(
    name="liverooms",
    help="Scheduled, time-boxed rooms with live chat",
)

user_app = cyclopts.App(name="user", help="User management")
room_app = cyclopts.App(name="room", help="Room inspection")

app.command(user_app)
app.command(room_app)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def load_settings(config: str | None = None) -> Settings:
    """Load settings or exit with an error."""
    if config:
        os.environ["LIVEROOMS_CONFIG"] = config
    try:
        settings = Settings.load(config)
    except LiveroomsConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    # The store reads its location from the environment
    os.environ.setdefault("LIVEROOMS_DB", settings.db_path)
    set_settings(settings)
    return settings


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


# --- Server Command ---


@app.command
def serve(
    *,
    host: str | None = None,
    port: int | None = None,
    reload: bool = False,
    config: str | None = None,
):
    """Run the liverooms server.

    Host and port default to the configured values (0.0.0.0:8000).
    The status sweeper runs inside the server process.
    """
    import uvicorn

    settings = load_settings(config)
    configure_logging(settings.log_level)

    if os.environ["LIVEROOMS_DB"] == ":memory:":
        print("WARNING: Using an in-memory database. Data is lost on restart.\n")

    uvicorn.run(
        "liverooms.api:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


# --- Sweep Command ---


@app.command
def sweep(*, config: str | None = None):
    """Reconcile every room's status once.

    Connected clients are only notified by the sweeper running inside the
    server; this command updates the database.
    """
    from . import db

    settings = load_settings(config)
    configure_logging(settings.log_level)
    db.init_db()

    result = db.update_room_statuses()
    print(f"{len(result['going_live'])} room(s) went live")
    print(f"{len(result['going_closed'])} room(s) closed")


# --- User Commands ---


@user_app.command(name="create")
def user_create(username: str, email: str, *, config: str | None = None, json_output: bool = False):
    """Create a user and print its secret.

    The secret is shown once. Use it as ``Authorization: Bearer <secret>``.
    """
    from . import db
    from .errors import ConflictError

    load_settings(config)
    db.init_db()

    try:
        user = db.create_user(username, email)
    except ConflictError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)

    if json_output:
        print(json.dumps(user, indent=2))
        return

    print(f"Created user {user['username']} (id {user['id']})")
    print(f"Secret: {user['secret']}")
    print("\nSave this secret - it cannot be recovered.")


# --- Room Commands ---


@room_app.command(name="list")
def room_list(*, status: str | None = None, config: str | None = None, json_output: bool = False):
    """List rooms, optionally filtered by status.

    Statuses are reconciled before filtering.
    """
    from . import db
    from .lifecycle import reconcile_all
    from .schemas import RoomStatus

    if status is not None and status not in {s.value for s in RoomStatus}:
        print(f"Error: unknown status {status!r}", file=sys.stderr)
        sys.exit(1)

    load_settings(config)
    db.init_db()

    rooms, _ = reconcile_all(db.list_rooms())
    if status is not None:
        rooms = [room for room in rooms if room["status"] == status]

    if json_output:
        print(json.dumps(rooms, indent=2))
        return

    if not rooms:
        print("No rooms.")
        return

    for room in rooms:
        print(
            f"{room['id']:>5}  {room['status']:<9}  {room['type']:<7}  "
            f"{room['start_time']} -> {room['end_time']}  {room['title']}"
        )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
