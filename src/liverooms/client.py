"""HTTP client for the liverooms request surface.

The request surface is the fallback path when the live channel is not open.
Results can be merged into a ``Transcript``, which collapses them with copies
that also arrive on the live channel.

Usage:
    client = RoomsClient("http://localhost:8000", secret="...")
    room = client.create_room(
        title="Standup", type="public", tag="work",
        start_time=now, end_time=now + timedelta(minutes=15),
    )

    transcript = client.transcript(room["id"])
    client.send_message(room["id"], "hi", transcript=transcript)

    # Against an in-process app (tests)
    client = RoomsClient(secret=secret, http_client=TestClient(app))
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx

from .errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    RoomsError,
    TransientStoreError,
    ValidationError,
)
from .transcript import Transcript

_ERRORS_BY_STATUS: dict[int, type[RoomsError]] = {
    401: AuthenticationError,
    403: AuthorizationError,
    404: NotFoundError,
    409: ConflictError,
}


class RoomsClient:
    """Synchronous client for the liverooms HTTP API."""

    def __init__(
        self,
        url: str = "",
        secret: str | None = None,
        http_client: httpx.Client | None = None,
        timeout: float = 30.0,
    ):
        """Initialize the client.

        Args:
            url: Base URL of the server. Leave empty when ``http_client``
                 already has one.
            secret: Bearer secret of the acting user
            http_client: Optional pre-built client (e.g. FastAPI TestClient)
            timeout: Request timeout in seconds
        """
        self._url = url.rstrip("/")
        self._secret = secret
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "RoomsClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _headers(self) -> dict[str, str]:
        if not self._secret:
            return {}
        return {"Authorization": f"Bearer {self._secret}"}

    def _request(self, method: str, path: str, *, json: dict[str, Any] | None = None) -> Any:
        """Make an HTTP request, raising the matching RoomsError on failure."""
        response = self._client.request(
            method,
            f"{self._url}{path}",
            json=json,
            headers=self._headers(),
        )

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {"message": response.text}
            message = body.get("message", f"API error {response.status_code}")
            if response.status_code == 400:
                raise ValidationError(message, body.get("errors"))
            if response.status_code >= 500:
                raise TransientStoreError(message)
            raise _ERRORS_BY_STATUS.get(response.status_code, RoomsError)(message)

        if response.status_code == 204 or not response.content:
            return None

        return response.json()

    # --- Users ---

    def me(self) -> dict:
        return self._request("GET", "/api/user")

    # --- Rooms ---

    def list_rooms(self) -> dict[str, list[dict]]:
        """Rooms grouped as created, participating, invited and public."""
        return self._request("GET", "/api/rooms")

    def create_room(
        self,
        title: str,
        type: str,
        tag: str,
        start_time: datetime,
        end_time: datetime,
        description: str | None = None,
        max_participants: int | None = None,
        invitations: list[dict[str, str]] | None = None,
    ) -> dict:
        """Create a room.

        Args:
            invitations: Targets like ``{"username": "bob"}`` or
                ``{"email": "carol@example.com"}``
        """
        payload: dict[str, Any] = {
            "title": title,
            "type": type,
            "tag": tag,
            "startTime": start_time.isoformat(),
            "endTime": end_time.isoformat(),
        }
        if description is not None:
            payload["description"] = description
        if max_participants is not None:
            payload["maxParticipants"] = max_participants
        if invitations:
            payload["invitations"] = invitations
        return self._request("POST", "/api/rooms", json=payload)

    def get_room(self, room_id: int) -> dict:
        """Room details: room, participants, messages, reactions, userAccess."""
        return self._request("GET", f"/api/rooms/{room_id}")

    def join_room(self, room_id: int) -> dict:
        return self._request("POST", f"/api/rooms/{room_id}/join")

    def invite(
        self,
        room_id: int,
        username: str | None = None,
        email: str | None = None,
    ) -> dict:
        """Invite a user to a room by username or email."""
        payload = {"username": username} if username is not None else {"email": email}
        return self._request("POST", f"/api/rooms/{room_id}/invitations", json=payload)

    def accept_invitation(self, invitation_id: int) -> dict:
        return self._request("POST", f"/api/invitations/{invitation_id}/accept")

    # --- Messages & Reactions ---

    def send_message(
        self,
        room_id: int,
        content: str,
        transcript: Transcript | None = None,
    ) -> dict:
        """Post a message.

        With a transcript, a pending echo is recorded before the request and
        replaced by the stored row once it returns.
        """
        if transcript is not None:
            me = self.me()
            transcript.add_pending(me["id"], content.strip())
        message = self._request("POST", f"/api/rooms/{room_id}/messages", json={"content": content})
        if transcript is not None:
            transcript.add_message(message)
        return message

    def send_reaction(
        self,
        room_id: int,
        reaction_type: str,
        transcript: Transcript | None = None,
    ) -> dict:
        reaction = self._request(
            "POST", f"/api/rooms/{room_id}/reactions", json={"type": reaction_type}
        )
        if transcript is not None:
            transcript.add_reaction(reaction)
        return reaction

    def transcript(self, room_id: int) -> Transcript:
        """Fetch a room's history into a new transcript."""
        return self.refresh(Transcript(room_id))

    def refresh(self, transcript: Transcript) -> Transcript:
        """Merge the room's current history into an existing transcript."""
        assert transcript.room_id is not None
        detail = self.get_room(transcript.room_id)
        transcript.extend(detail["messages"])
        for reaction in detail["reactions"]:
            transcript.add_reaction(reaction)
        return transcript

    # --- Service ---

    def health(self) -> dict:
        return self._request("GET", "/health")
