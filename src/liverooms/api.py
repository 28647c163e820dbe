"""FastAPI application for liverooms."""

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from fastapi import FastAPI, Header, Query, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import Field, field_validator, model_validator

from . import access, db
from .auth import extract_bearer_token
from .config import get_settings
from .errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    RoomsError,
    ValidationError,
)
from .lifecycle import reconcile_all
from .metrics import metrics
from .protocol import (
    check_reaction_type,
    clean_content,
    message_event,
    reaction_event,
    room_created_event,
    room_invitation_event,
)
from .registry import Connection, get_registry
from .schemas import (
    GLOBAL_ROOM_ID,
    CamelModel,
    InvitationInfo,
    Invitee,
    InviteeByEmail,
    InviteeByUser,
    JoinResponse,
    MessageInfo,
    ReactionInfo,
    RoomDetail,
    RoomInfo,
    RoomListing,
    UserInfo,
)
from .session import SessionHandler
from .sweeper import Sweeper, announce_status_change

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database and run the status sweeper."""
    settings = get_settings()
    # The store reads its location from the environment
    os.environ.setdefault("LIVEROOMS_DB", settings.db_path)
    db.init_db()

    sweeper = Sweeper(
        interval=settings.sweep_interval,
        broadcast_to_global=settings.broadcast_status_to_global,
        enabled=settings.sweep_enabled,
    )
    app.state.sweeper = sweeper
    sweeper.start()

    yield

    await sweeper.stop()
    db.shutdown_executor()
    db.close_db()


app = FastAPI(
    title="liverooms",
    description="Scheduled, time-boxed rooms with live chat and reactions",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Request Timing Middleware ---


@app.middleware("http")
async def add_timing_middleware(request: Request, call_next):
    """Middleware to track request timing for metrics."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000

    # Normalize IDs out of the path for aggregation
    # /api/rooms/{id}/messages -> rooms/messages
    parts = [p for p in request.url.path.split("/") if p]
    if len(parts) >= 2 and parts[0] == "api":
        resource = parts[1]
        if len(parts) == 2:
            endpoint = f"{resource}/{request.method.lower()}"
        elif len(parts) == 3:
            endpoint = f"{resource}/detail"
        else:
            endpoint = f"{resource}/{parts[3]}"
    elif request.url.path in ("/health", "/metrics"):
        endpoint = request.url.path[1:]
    else:
        endpoint = "other"

    metrics.record_request(endpoint, duration_ms)

    # Add timing header for debugging
    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"

    return response


# --- Error Handlers ---


@app.exception_handler(RoomsError)
async def rooms_error_handler(request: Request, exc: RoomsError) -> JSONResponse:
    if exc.status_change is not None:
        await _announce([exc.status_change])
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        message = str(err.get("msg", "Invalid value")).removeprefix("Value error, ")
        errors.append({"field": ".".join(loc), "message": message})
    error = ValidationError("Invalid request data", errors)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


# --- Request Models ---


class InvitationTarget(CamelModel):
    """Invite by username or by email, exactly one."""

    username: str | None = None
    email: str | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "InvitationTarget":
        if (self.username is None) == (self.email is None):
            raise ValueError("Provide exactly one of username or email")
        return self


class CreateRoomRequest(CamelModel):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    type: Literal["private", "public"]
    tag: Literal["hangout", "work", "brainstorm", "wellness", "other"]
    start_time: datetime
    end_time: datetime
    max_participants: int | None = Field(default=None, ge=2)
    invitations: list[InvitationTarget] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Title cannot be empty")
        return value

    @field_validator("start_time", "end_time")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # Naive times are UTC, as in the store
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _window(self) -> "CreateRoomRequest":
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")
        return self


class PostMessageRequest(CamelModel):
    content: str

    @field_validator("content")
    @classmethod
    def _content(cls, value: str) -> str:
        return clean_content(value)


class PostReactionRequest(CamelModel):
    type: str

    @field_validator("type")
    @classmethod
    def _type(cls, value: str) -> str:
        return check_reaction_type(value)


# --- Auth helpers ---


async def _require_user(authorization: str | None) -> dict:
    """Resolve the bearer secret to a user. Raises AuthenticationError."""
    token = extract_bearer_token(authorization)
    if not token:
        raise AuthenticationError("Authorization: Bearer <secret> header required")
    user = await db.run_sync(db.get_user_by_secret, token)
    if user is None:
        raise AuthenticationError("Invalid credentials")
    return user


# --- Broadcast helpers ---


async def _announce(rooms: list[dict]) -> None:
    """Announce lazily discovered status transitions."""
    to_global = get_settings().broadcast_status_to_global
    for room in rooms:
        await announce_status_change(room, to_global=to_global)


async def _notify_invited(room: dict, user_ids: list[int], inviter: dict) -> None:
    registry = get_registry()
    event = room_invitation_event(room, f"{inviter['username']} invited you to {room['title']}")
    for user_id in user_ids:
        await registry.send_to_user(user_id, event)


# --- Store transactions (run on the DB worker) ---


def _resolve_invitee(target: InvitationTarget) -> Invitee:
    """Map a username/email target to an invitee.

    An email that belongs to a registered user becomes a user invitation.
    An unknown username raises ValidationError.
    """
    if target.username is not None:
        user = db.get_user_by_username(target.username)
        if user is None:
            raise ValidationError(
                "Invalid invitation",
                [{"field": "username", "message": f"Unknown user: {target.username}"}],
            )
        return InviteeByUser(user["id"])

    assert target.email is not None
    user = db.get_user_by_email(target.email)
    if user is not None:
        return InviteeByUser(user["id"])
    return InviteeByEmail(target.email)


def _list_rooms(user_id: int) -> tuple[dict[str, list[dict]], list[dict]]:
    created = db.get_rooms_by_creator(user_id)
    participating = db.get_rooms_by_participant(user_id)
    invited = db.get_rooms_by_invitation(user_id)
    member_ids = {room["id"] for room in created + participating}
    public = [room for room in db.get_public_rooms() if room["id"] not in member_ids]

    listing: dict[str, list[dict]] = {}
    changed: dict[int, dict] = {}
    reconciled: dict[int, dict] = {}
    for name, rooms in (
        ("created", created),
        ("participating", participating),
        ("invited", invited),
        ("public", public),
    ):
        # A room can appear in several groups; reconcile it once
        pending = [room for room in rooms if room["id"] not in reconciled]
        fresh, moved = reconcile_all(pending)
        reconciled.update({room["id"]: room for room in fresh})
        changed.update({room["id"]: room for room in moved})
        listing[name] = [reconciled[room["id"]] for room in rooms]
    return listing, list(changed.values())


def _create_room(user: dict, request: CreateRoomRequest) -> tuple[dict, list[int]]:
    invitees: list[Invitee] = []
    for target in request.invitations:
        try:
            invitee = _resolve_invitee(target)
        except ValidationError:
            logger.warning(f"Skipping invitation to unknown user {target.username}")
            continue
        if invitee == InviteeByUser(user["id"]) or invitee in invitees:
            continue
        invitees.append(invitee)

    room = db.create_room(
        title=request.title,
        description=request.description,
        type=request.type,
        tag=request.tag,
        start_time=request.start_time,
        end_time=request.end_time,
        max_participants=request.max_participants,
        creator_id=user["id"],
    )
    for invitee in invitees:
        db.create_room_invitation(room["id"], invitee)

    invited_user_ids = [i.user_id for i in invitees if isinstance(i, InviteeByUser)]
    logger.info(
        f"User {user['id']} created {room['type']} room {room['id']} "
        f"({room['status']}, {len(invitees)} invitation(s))"
    )
    return room, invited_user_ids


def _sees_history(room: dict, user_id: int, facts: access.AccessFacts) -> bool:
    """Members always see the history; others only while the room is live."""
    return room["status"] == "live" or room["creator_id"] == user_id or facts.is_participant


def _room_detail(room_id: int, user_id: int) -> tuple[dict, bool]:
    result, facts = access.view_room(room_id, user_id)
    room = result.room
    detail = {
        "room": room,
        "participants": db.get_room_participants(room_id),
        "messages": db.get_room_messages(room_id) if _sees_history(room, user_id, facts) else [],
        "reactions": db.get_room_reactions(room_id),
        "user_access": access.user_access(room, user_id, facts),
    }
    return detail, result.status_changed


def _invite(room_id: int, user: dict, target: InvitationTarget) -> tuple[dict, dict]:
    room = db.get_room(room_id)
    if room is None:
        raise NotFoundError("Room not found")
    if room["creator_id"] != user["id"]:
        raise AuthorizationError("Only the room creator can invite")
    invitee = _resolve_invitee(target)
    if invitee == InviteeByUser(user["id"]):
        raise ConflictError("The creator is already a participant")
    return db.create_room_invitation(room_id, invitee), room


def _accept_invitation(invitation_id: int, user: dict) -> dict:
    invitation = db.get_room_invitation(invitation_id)
    if invitation is None:
        raise NotFoundError("Invitation not found")

    if invitation["user_id"] is not None:
        if invitation["user_id"] != user["id"]:
            raise AuthorizationError("This invitation is for another user")
    elif invitation["email"] != user["email"]:
        raise AuthorizationError("This invitation is for another email address")

    accepted = db.accept_room_invitation(invitation_id)
    assert accepted is not None
    if invitation["user_id"] is None and not db.is_room_participant(
        invitation["room_id"], user["id"]
    ):
        db.add_room_participant(invitation["room_id"], user["id"])
    return accepted


# --- Endpoints ---


@app.get("/api/user", response_model=UserInfo)
async def get_current_user(authorization: Annotated[str | None, Header()] = None):
    """The authenticated user."""
    return await _require_user(authorization)


@app.get("/api/rooms", response_model=RoomListing)
async def list_rooms(authorization: Annotated[str | None, Header()] = None):
    """Rooms grouped by the caller's relationship to them.

    ``public`` excludes rooms the caller created or already joined. Every room
    returned is reconciled first; transitions found here are announced.
    """
    user = await _require_user(authorization)
    listing, changed = await db.run_sync(_list_rooms, user["id"])
    await _announce(changed)
    return listing


@app.post("/api/rooms", response_model=RoomInfo, status_code=201)
async def create_room(
    request: CreateRoomRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    """Create a room. The creator joins it immediately.

    Public rooms are announced on the global channel; invited users who are
    connected get a targeted ``room_invitation``.
    """
    user = await _require_user(authorization)
    room, invited_user_ids = await db.run_sync(_create_room, user, request)

    if room["type"] == "public":
        await get_registry().broadcast(GLOBAL_ROOM_ID, room_created_event(room))
    await _notify_invited(room, invited_user_ids, user)
    return room


@app.get("/api/rooms/{room_id}", response_model=RoomDetail)
async def get_room(room_id: int, authorization: Annotated[str | None, Header()] = None):
    """Room details with participants, history and the caller's access.

    Reading reconciles the room's status and persists any change.
    """
    user = await _require_user(authorization)
    detail, changed = await db.run_sync(_room_detail, room_id, user["id"])
    if changed:
        await _announce([detail["room"]])
    return detail


@app.post("/api/rooms/{room_id}/join", response_model=JoinResponse)
async def join_room(room_id: int, authorization: Annotated[str | None, Header()] = None):
    """Join a live room. Joining again is a success with ``alreadyJoined``."""
    user = await _require_user(authorization)
    result = await db.run_sync(access.join_room, room_id, user["id"])
    if result.status_changed:
        await _announce([result.room])
    return {"room": result.room, "already_joined": result.already_joined}


@app.post("/api/rooms/{room_id}/messages", response_model=MessageInfo, status_code=201)
async def post_message(
    room_id: int,
    request: PostMessageRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    """Send a message without the live channel. It is broadcast like a live one."""
    user = await _require_user(authorization)
    result = await db.run_sync(access.post_message, room_id, user["id"], request.content)
    if result.status_changed:
        await _announce([result.room])

    metrics.increment("messages")
    await get_registry().broadcast(room_id, message_event(result.row))
    return result.row


@app.post("/api/rooms/{room_id}/reactions", response_model=ReactionInfo, status_code=201)
async def post_reaction(
    room_id: int,
    request: PostReactionRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    """React to a room. Repeating a reaction type replaces the earlier one."""
    user = await _require_user(authorization)
    result = await db.run_sync(access.post_reaction, room_id, user["id"], request.type)
    if result.status_changed:
        await _announce([result.room])

    metrics.increment("reactions")
    await get_registry().broadcast(room_id, reaction_event(result.row))
    return result.row


@app.post("/api/rooms/{room_id}/invitations", response_model=InvitationInfo, status_code=201)
async def create_invitation(
    room_id: int,
    request: InvitationTarget,
    authorization: Annotated[str | None, Header()] = None,
):
    """Invite a user (by username or email) to a room. Creator only."""
    user = await _require_user(authorization)
    invitation, room = await db.run_sync(_invite, room_id, user, request)
    if invitation["user_id"] is not None:
        await _notify_invited(room, [invitation["user_id"]], user)
    return invitation


@app.post("/api/invitations/{invitation_id}/accept", response_model=InvitationInfo)
async def accept_invitation(
    invitation_id: int,
    authorization: Annotated[str | None, Header()] = None,
):
    """Accept an invitation addressed to the caller (by id or email)."""
    user = await _require_user(authorization)
    return await db.run_sync(_accept_invitation, invitation_id, user)


# --- Live channel ---


@app.websocket("/ws")
async def live_channel(websocket: WebSocket, token: str | None = Query(default=None)):
    """Live channel: authenticate the handshake, then run the session.

    The secret comes from ``Authorization: Bearer`` or the ``token`` query
    parameter. Invalid credentials close the socket with code 4401.
    """
    await websocket.accept()

    secret = extract_bearer_token(websocket.headers.get("authorization")) or token
    user = await db.run_sync(db.get_user_by_secret, secret) if secret else None
    if user is None:
        await websocket.close(code=4401, reason="Authentication required")
        return

    metrics.increment("connections")
    connection = Connection(websocket, user_id=user["id"])
    await SessionHandler(connection).run()


# --- Health & Metrics ---


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/metrics")
def get_metrics() -> dict[str, Any]:
    """Request, store and broadcast metrics."""
    data = metrics.to_dict()
    data["connections"] = get_registry().connection_count()
    return data
