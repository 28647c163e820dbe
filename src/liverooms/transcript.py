"""Receiver-side transcript with duplicate collapsing.

A client can see the same message twice: once on the live channel and once in
the response of the request surface (or its own optimistic echo before either
arrives). ``Transcript`` keeps one entry per message:

- rows with a durable ``id`` are keyed by that id
- pending echoes (no id yet) are keyed by
  ``(authorId, content[:32], createdAt truncated to the second)``
- a durable row replaces a pending echo from the same author with the same
  content prefix

Reactions are keyed by id. A newer reaction from the same user with the same
type supersedes the older one.

Entries are dicts in wire format (camelCase keys), as delivered by the live
channel and ``RoomsClient``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from .db import parse_timestamp, to_iso, utcnow

CONTENT_PREFIX_LENGTH = 32


def _author_of(message: dict) -> int:
    if message.get("userId") is not None:
        return message["userId"]
    return message["user"]["id"]


def _prefix(content: str) -> str:
    return content[:CONTENT_PREFIX_LENGTH]


def pending_key(message: dict) -> tuple[int, str, str]:
    """Composite identity for a message that has no durable id yet."""
    created = parse_timestamp(message["createdAt"]).replace(microsecond=0)
    return (_author_of(message), _prefix(message["content"]), created.isoformat())


def _sort_key(entry: dict) -> tuple[datetime, float]:
    entry_id = entry.get("id")
    return (
        parse_timestamp(entry["createdAt"]),
        float(entry_id) if entry_id is not None else float("inf"),
    )


class Transcript:
    """Ordered, deduplicated view of one room's messages and reactions."""

    def __init__(self, room_id: int | None = None) -> None:
        self.room_id = room_id
        self._messages: dict[int, dict] = {}
        self._pending: dict[tuple[int, str, str], dict] = {}
        self._reactions: dict[int, dict] = {}

    # --- Messages ---

    def add_pending(self, user_id: int, content: str, created_at: datetime | None = None) -> dict:
        """Record an optimistic local echo for a message being sent."""
        echo = {
            "id": None,
            "roomId": self.room_id,
            "userId": user_id,
            "content": content,
            "createdAt": to_iso(created_at or utcnow()),
            "pending": True,
        }
        self._pending.setdefault(pending_key(echo), echo)
        return echo

    def add_message(self, message: dict[str, Any]) -> bool:
        """Merge a message from any delivery path.

        Returns:
            True if the transcript changed, False for a duplicate.
        """
        message_id = message.get("id")
        if message_id is None:
            key = pending_key(message)
            if key in self._pending:
                return False
            if any(pending_key(m) == key for m in self._messages.values()):
                return False
            self._pending[key] = dict(message, pending=True)
            return True

        if message_id in self._messages:
            return False

        self._messages[message_id] = message
        self._drop_matching_echo(message)
        return True

    def _drop_matching_echo(self, message: dict) -> None:
        author = _author_of(message)
        prefix = _prefix(message["content"])
        for key in sorted(self._pending, key=lambda k: k[2]):
            if key[0] == author and key[1] == prefix:
                del self._pending[key]
                return

    def extend(self, messages: list[dict]) -> int:
        """Merge a batch (e.g. a fetched room history). Returns how many were new."""
        return sum(1 for message in messages if self.add_message(message))

    @property
    def messages(self) -> list[dict]:
        """Durable and pending messages ordered by createdAt, then id."""
        return sorted([*self._messages.values(), *self._pending.values()], key=_sort_key)

    @property
    def pending(self) -> list[dict]:
        return sorted(self._pending.values(), key=_sort_key)

    # --- Reactions ---

    def add_reaction(self, reaction: dict[str, Any]) -> bool:
        """Merge a reaction. Returns True if the transcript changed."""
        reaction_id = reaction["id"]
        if reaction_id in self._reactions:
            return False

        user_id = reaction.get("userId", reaction.get("user", {}).get("id"))
        for existing_id, existing in list(self._reactions.items()):
            existing_user = existing.get("userId", existing.get("user", {}).get("id"))
            if existing_user == user_id and existing["type"] == reaction["type"]:
                if _sort_key(existing) > _sort_key(reaction):
                    # Late delivery of a superseded reaction
                    return False
                del self._reactions[existing_id]

        self._reactions[reaction_id] = reaction
        return True

    @property
    def reactions(self) -> list[dict]:
        return sorted(self._reactions.values(), key=_sort_key)

    def reaction_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for reaction in self._reactions.values():
            counts[reaction["type"]] = counts.get(reaction["type"], 0) + 1
        return counts

    # --- Events ---

    def apply_event(self, event: dict[str, Any]) -> bool:
        """Merge a live-channel event. Non-transcript events are ignored."""
        if event.get("type") == "message":
            return self.add_message(event["message"])
        if event.get("type") == "reaction":
            return self.add_reaction(event["reaction"])
        return False

    def __len__(self) -> int:
        return len(self._messages) + len(self._pending)
