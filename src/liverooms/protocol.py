"""Wire protocol for the live channel.

Client frames form a tagged union discriminated by ``type``::

    {"type": "init", "userId": 1, "roomId": 7}
    {"type": "message", "content": "hi"}
    {"type": "reaction", "reactionType": "👍"}

Frames are validated at the boundary with ``parse_frame``; anything malformed
(bad JSON, unknown tag, schema violation) raises ``ValidationError`` and is
reported to the sender as an ``error`` event.

Server events are plain dicts built by the ``*_event`` helpers below.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

import pydantic
from pydantic import Field, TypeAdapter, field_validator

from .errors import ValidationError
from .schemas import (
    MAX_MESSAGE_LENGTH,
    REACTION_TYPES,
    CamelModel,
    MessageInfo,
    ReactionInfo,
    RoomInfo,
    RoomStatusInfo,
)


def clean_content(value: str) -> str:
    """Trim message content and enforce its length bounds."""
    value = value.strip()
    if not value:
        raise ValueError("Message content cannot be empty")
    if len(value) > MAX_MESSAGE_LENGTH:
        raise ValueError(f"Message content cannot exceed {MAX_MESSAGE_LENGTH} characters")
    return value


def check_reaction_type(value: str) -> str:
    if value not in REACTION_TYPES:
        raise ValueError(f"Reaction must be one of {' '.join(REACTION_TYPES)}")
    return value


# --- Client frames ---


class InitFrame(CamelModel):
    type: Literal["init"]
    user_id: int
    room_id: int = Field(ge=0)


class MessageFrame(CamelModel):
    type: Literal["message"]
    content: str

    @field_validator("content")
    @classmethod
    def _content(cls, value: str) -> str:
        return clean_content(value)


class ReactionFrame(CamelModel):
    type: Literal["reaction"]
    reaction_type: str

    @field_validator("reaction_type")
    @classmethod
    def _reaction_type(cls, value: str) -> str:
        return check_reaction_type(value)


ClientFrame = Annotated[
    Union[InitFrame, MessageFrame, ReactionFrame],
    Field(discriminator="type"),
]

_frame_adapter: TypeAdapter[ClientFrame] = TypeAdapter(ClientFrame)

FRAME_TYPES = ("init", "message", "reaction")


def parse_frame(raw: str | bytes) -> InitFrame | MessageFrame | ReactionFrame:
    """Decode and validate one client frame.

    Raises:
        ValidationError: On invalid JSON, an unknown ``type`` or bad fields.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Malformed frame: invalid JSON") from None

    if not isinstance(data, dict):
        raise ValidationError("Malformed frame: expected a JSON object")

    frame_type = data.get("type")
    if frame_type not in FRAME_TYPES:
        raise ValidationError(f"Unknown frame type: {frame_type!r}")

    try:
        return _frame_adapter.validate_python(data)
    except pydantic.ValidationError as e:
        error = ValidationError.from_pydantic(f"Invalid {frame_type} frame", e)
        # Locations are prefixed with the union tag
        for item in error.errors:
            item["field"] = item["field"].removeprefix(f"{frame_type}.")
        raise error from None


# --- Server events ---


def init_event() -> dict[str, Any]:
    return {"type": "init", "success": True}


def message_event(message: dict) -> dict[str, Any]:
    """Broadcast payload for a persisted message (carries its durable id)."""
    return {"type": "message", "message": MessageInfo.model_validate(message).to_wire()}


def reaction_event(reaction: dict) -> dict[str, Any]:
    return {"type": "reaction", "reaction": ReactionInfo.model_validate(reaction).to_wire()}


def room_status_event(room: dict) -> dict[str, Any]:
    return {
        "type": "room_status_update",
        "roomId": room["id"],
        "room": RoomStatusInfo.model_validate(room).to_wire(),
    }


def room_created_event(room: dict) -> dict[str, Any]:
    return {"type": "room_created", "room": RoomInfo.model_validate(room).to_wire()}


def room_invitation_event(room: dict, message: str | None = None) -> dict[str, Any]:
    event: dict[str, Any] = {
        "type": "room_invitation",
        "room": RoomInfo.model_validate(room).to_wire(),
    }
    if message is not None:
        event["message"] = message
    return event


def error_event(message: str, errors: list[dict] | None = None) -> dict[str, Any]:
    event: dict[str, Any] = {"type": "error", "message": message}
    if errors:
        event["errors"] = errors
    return event
