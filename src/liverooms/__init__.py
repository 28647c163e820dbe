"""liverooms - Scheduled, time-boxed rooms with live chat and reactions.

Usage:
    from liverooms import RoomsClient, Transcript

    client = RoomsClient("http://localhost:8000", secret="...")
    listing = client.list_rooms()
    room = listing["public"][0]

    client.join_room(room["id"])
    transcript = client.transcript(room["id"])
    client.send_message(room["id"], "Hello!", transcript=transcript)

Run the server with ``liverooms serve``; the live channel is at ``/ws``.
"""

from liverooms.client import RoomsClient
from liverooms.config import LiveroomsConfigError, Settings
from liverooms.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    RoomsError,
    TransientStoreError,
    ValidationError,
)
from liverooms.schemas import RoomStatus
from liverooms.transcript import Transcript

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "RoomsClient",
    "Transcript",
    "RoomStatus",
    "Settings",
    "LiveroomsConfigError",
    "RoomsError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "TransientStoreError",
]
