"""Tests for the HTTP client against the in-process app."""

from datetime import timedelta

import pytest

from liverooms import RoomsClient, db
from liverooms.errors import AuthenticationError, AuthorizationError, ConflictError, ValidationError
from liverooms.testing import make_room


@pytest.fixture
def client_for(rooms_client):
    def build(user):
        return RoomsClient(secret=user["secret"], http_client=rooms_client)

    return build


class TestRoomsClient:
    def test_me(self, client_for, alice):
        assert client_for(alice).me()["id"] == alice["id"]

    def test_create_and_fetch(self, client_for, alice):
        client = client_for(alice)
        now = db.utcnow()

        room = client.create_room(
            title="Standup",
            type="public",
            tag="work",
            start_time=now - timedelta(minutes=1),
            end_time=now + timedelta(minutes=15),
            max_participants=5,
        )
        detail = client.get_room(room["id"])

        assert room["status"] == "live"
        assert detail["room"]["maxParticipants"] == 5
        assert detail["userAccess"]["isCreator"] is True

    def test_private_room_invitation_flow(self, client_for, alice, bob):
        now = db.utcnow()
        room = client_for(alice).create_room(
            title="Secret",
            type="private",
            tag="brainstorm",
            start_time=now - timedelta(minutes=1),
            end_time=now + timedelta(hours=1),
            invitations=[{"username": "bob"}],
        )

        bob_client = client_for(bob)
        assert [r["id"] for r in bob_client.list_rooms()["invited"]] == [room["id"]]
        assert bob_client.join_room(room["id"])["alreadyJoined"] is False
        assert bob_client.join_room(room["id"])["alreadyJoined"] is True

    def test_invite_then_accept(self, client_for, alice, bob):
        room = make_room(alice, type="private")

        invitation = client_for(alice).invite(room["id"], username="bob")
        accepted = client_for(bob).accept_invitation(invitation["id"])

        assert accepted["accepted"] is True
        assert db.is_room_participant(room["id"], bob["id"])

    def test_send_message_into_transcript(self, client_for, alice):
        room = make_room(alice)
        client = client_for(alice)
        transcript = client.transcript(room["id"])

        message = client.send_message(room["id"], "hello", transcript=transcript)
        # The same row arriving again (e.g. over the live channel) is a duplicate
        assert transcript.add_message(message) is False

        assert transcript.pending == []
        assert [m["id"] for m in transcript.messages] == [message["id"]]

    def test_refresh_merges_history(self, client_for, alice):
        room = make_room(alice)
        client = client_for(alice)
        transcript = client.transcript(room["id"])

        client.send_message(room["id"], "one")
        client.send_reaction(room["id"], "👍")
        client.refresh(transcript)

        assert [m["content"] for m in transcript.messages] == ["one"]
        assert transcript.reaction_counts() == {"👍": 1}

    def test_health(self, client_for, alice):
        assert client_for(alice).health() == {"status": "ok"}


class TestErrors:
    def test_bad_secret(self, rooms_client, alice):
        client = RoomsClient(secret="wrong", http_client=rooms_client)
        with pytest.raises(AuthenticationError):
            client.me()

    def test_validation_error_carries_fields(self, client_for, alice):
        now = db.utcnow()
        with pytest.raises(ValidationError) as exc_info:
            client_for(alice).create_room(
                title="Bad",
                type="public",
                tag="party",
                start_time=now,
                end_time=now + timedelta(hours=1),
            )
        assert exc_info.value.errors[0]["field"] == "tag"

    def test_forbidden(self, client_for, alice, bob):
        room = make_room(alice, type="private")
        with pytest.raises(AuthorizationError):
            client_for(bob).get_room(room["id"])

    def test_conflict(self, client_for, alice, bob):
        room = make_room(alice, type="private")
        client = client_for(alice)
        client.invite(room["id"], email="dana@example.com")
        with pytest.raises(ConflictError):
            client.invite(room["id"], email="dana@example.com")
