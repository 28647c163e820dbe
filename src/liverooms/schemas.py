"""Shared domain types and outbound models for liverooms.

Outbound models use camelCase aliases on the wire (``startTime``,
``maxParticipants``) while keeping snake_case attribute names in Python.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

ROOM_TYPES = ("private", "public")
ROOM_TAGS = ("hangout", "work", "brainstorm", "wellness", "other")
REACTION_TYPES = ("👍", "🎉", "❤️", "😂", "😮", "🙏")

# Reserved registry bucket for cross-room notifications
GLOBAL_ROOM_ID = 0

MAX_MESSAGE_LENGTH = 5000


class RoomStatus(str, Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    CLOSED = "closed"

    @property
    def rank(self) -> int:
        """Position in the forward-only lifecycle."""
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = (RoomStatus.SCHEDULED, RoomStatus.LIVE, RoomStatus.CLOSED)


# --- Invitation target ---


@dataclass(frozen=True)
class InviteeByUser:
    """Invitation addressed to a registered user."""

    user_id: int


@dataclass(frozen=True)
class InviteeByEmail:
    """Invitation addressed to a bare email address."""

    email: str


Invitee = Union[InviteeByUser, InviteeByEmail]


# --- Outbound models ---


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class UserSummary(CamelModel):
    id: int
    username: str


class UserInfo(CamelModel):
    id: int
    username: str
    email: str
    created_at: str


class ParticipantInfo(CamelModel):
    id: int
    username: str
    joined_at: str


class RoomInfo(CamelModel):
    id: int
    title: str
    description: str | None = None
    type: str
    tag: str
    status: RoomStatus
    start_time: str
    end_time: str
    max_participants: int | None = None
    creator_id: int
    created_at: str


class RoomStatusInfo(CamelModel):
    """Minimal room view carried by status-change events."""

    id: int
    title: str
    status: RoomStatus


class MessageInfo(CamelModel):
    id: int
    room_id: int
    user_id: int
    content: str
    created_at: str
    user: UserSummary


class ReactionInfo(CamelModel):
    id: int
    room_id: int
    user_id: int
    type: str
    created_at: str
    user: UserSummary


class InvitationInfo(CamelModel):
    id: int
    room_id: int
    user_id: int | None = None
    email: str | None = None
    accepted: bool
    created_at: str


class UserAccess(CamelModel):
    is_creator: bool
    is_participant: bool
    can_join: bool
    can_chat: bool


class RoomDetail(CamelModel):
    room: RoomInfo
    participants: list[ParticipantInfo]
    messages: list[MessageInfo]
    reactions: list[ReactionInfo]
    user_access: UserAccess


class RoomListing(CamelModel):
    created: list[RoomInfo]
    participating: list[RoomInfo]
    invited: list[RoomInfo]
    public: list[RoomInfo]


class JoinResponse(CamelModel):
    room: RoomInfo
    already_joined: bool
