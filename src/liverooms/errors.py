"""Error taxonomy for liverooms.

Every error carries the HTTP status it maps to on the request surface. On the
live channel the same errors are reported as ``error`` frames.
"""

from __future__ import annotations

from typing import Any


class RoomsError(Exception):
    """Base class for errors surfaced to clients.

    ``status_change`` holds a room whose status moved while the failing
    operation loaded it. The transition is already persisted and still has to
    be announced.
    """

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
        self.status_change: dict | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message}


class ValidationError(RoomsError):
    """Malformed payload: bad enum values, empty content, end <= start."""

    status_code = 400

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.errors:
            data["errors"] = self.errors
        return data

    @classmethod
    def from_pydantic(cls, message: str, exc: Any) -> "ValidationError":
        """Build from a pydantic ValidationError, keeping per-field detail only."""
        errors = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ())),
                "message": str(err.get("msg", "Invalid value")).removeprefix("Value error, "),
            }
            for err in exc.errors()
        ]
        return cls(message, errors)


class AuthenticationError(RoomsError):
    """Missing or invalid credentials."""

    status_code = 401


class AuthorizationError(RoomsError):
    """Authenticated, but not allowed (not creator/participant/invited)."""

    status_code = 403


class NotFoundError(RoomsError):
    """Unknown room, user or invitation."""

    status_code = 404


class ConflictError(RoomsError):
    """Uniqueness violation (duplicate participant or invitation)."""

    status_code = 409


class TransientStoreError(RoomsError):
    """A persistence call failed. Retrying later may succeed."""

    status_code = 500
