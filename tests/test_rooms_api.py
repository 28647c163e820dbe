"""Tests for the room HTTP API."""

from datetime import timedelta

import pytest

from liverooms import db
from liverooms.schemas import InviteeByEmail, InviteeByUser
from liverooms.registry import get_registry
from liverooms.testing import FakeConnection, auth_headers, make_room


def room_payload(**overrides):
    now = db.utcnow()
    payload = {
        "title": "Friday hangout",
        "type": "public",
        "tag": "hangout",
        "startTime": db.to_iso(now - timedelta(minutes=1)),
        "endTime": db.to_iso(now + timedelta(hours=1)),
    }
    payload.update(overrides)
    return payload


class TestAuth:
    def test_missing_header(self, rooms_client):
        response = rooms_client.get("/api/rooms")
        assert response.status_code == 401

    def test_unknown_secret(self, rooms_client):
        response = rooms_client.get("/api/rooms", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json() == {"message": "Invalid credentials"}

    def test_current_user(self, rooms_client, alice):
        response = rooms_client.get("/api/user", headers=auth_headers(alice))
        assert response.status_code == 200
        body = response.json()
        assert body["username"] == "alice"
        assert "secret" not in body


class TestCreateRoom:
    def test_public_room_is_live_with_creator(self, rooms_client, alice):
        response = rooms_client.post("/api/rooms", json=room_payload(), headers=auth_headers(alice))
        assert response.status_code == 201
        room = response.json()
        assert room["status"] == "live"
        assert room["creatorId"] == alice["id"]

        detail = rooms_client.get(f"/api/rooms/{room['id']}", headers=auth_headers(alice)).json()
        assert detail["room"]["status"] == "live"
        assert [p["username"] for p in detail["participants"]] == ["alice"]
        assert detail["userAccess"] == {
            "isCreator": True,
            "isParticipant": True,
            "canJoin": True,
            "canChat": True,
        }

    def test_future_room_is_scheduled(self, rooms_client, alice):
        now = db.utcnow()
        payload = room_payload(
            startTime=db.to_iso(now + timedelta(hours=1)),
            endTime=db.to_iso(now + timedelta(hours=2)),
        )
        response = rooms_client.post("/api/rooms", json=payload, headers=auth_headers(alice))
        assert response.json()["status"] == "scheduled"

    def test_end_before_start(self, rooms_client, alice):
        now = db.utcnow()
        payload = room_payload(startTime=db.to_iso(now), endTime=db.to_iso(now))
        response = rooms_client.post("/api/rooms", json=payload, headers=auth_headers(alice))

        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "Invalid request data"
        assert body["errors"][0]["message"] == "End time must be after start time"

    @pytest.mark.parametrize(
        "overrides, field",
        [
            ({"type": "secret"}, "type"),
            ({"tag": "party"}, "tag"),
            ({"title": "   "}, "title"),
            ({"maxParticipants": 1}, "maxParticipants"),
        ],
    )
    def test_invalid_fields(self, rooms_client, alice, overrides, field):
        response = rooms_client.post(
            "/api/rooms", json=room_payload(**overrides), headers=auth_headers(alice)
        )
        assert response.status_code == 400
        assert [e["field"] for e in response.json()["errors"]] == [field]

    def test_invitations_by_username_and_email(self, rooms_client, alice, bob):
        payload = room_payload(
            type="private",
            invitations=[
                {"username": "bob"},
                {"email": "dana@example.com"},
                # Self-invites and repeats are ignored
                {"username": "alice"},
                {"email": "bob@example.com"},
            ],
        )
        response = rooms_client.post("/api/rooms", json=payload, headers=auth_headers(alice))
        assert response.status_code == 201

        invitations = db.get_room_invitations_by_room(response.json()["id"])
        assert {(i["user_id"], i["email"]) for i in invitations} == {
            (bob["id"], None),
            (None, "dana@example.com"),
        }

    def test_unknown_invited_username_is_skipped(self, rooms_client, alice, bob):
        payload = room_payload(
            type="private", invitations=[{"username": "bob"}, {"username": "nobody"}]
        )
        response = rooms_client.post("/api/rooms", json=payload, headers=auth_headers(alice))

        assert response.status_code == 201
        invitations = db.get_room_invitations_by_room(response.json()["id"])
        assert [i["user_id"] for i in invitations] == [bob["id"]]

    def test_mixed_naive_and_offset_times(self, rooms_client, alice):
        payload = room_payload(startTime="2030-01-01T00:00:00Z", endTime="2030-01-01T01:00:00")
        response = rooms_client.post("/api/rooms", json=payload, headers=auth_headers(alice))

        assert response.status_code == 201
        assert response.json()["status"] == "scheduled"

    def test_mixed_times_end_before_start(self, rooms_client, alice):
        payload = room_payload(startTime="2030-01-01T01:00:00", endTime="2030-01-01T00:30:00+00:00")
        response = rooms_client.post("/api/rooms", json=payload, headers=auth_headers(alice))

        assert response.status_code == 400
        assert response.json()["errors"][0]["message"] == "End time must be after start time"

    def test_invitation_needs_exactly_one_target(self, rooms_client, alice):
        payload = room_payload(invitations=[{"username": "bob", "email": "bob@example.com"}])
        response = rooms_client.post("/api/rooms", json=payload, headers=auth_headers(alice))
        assert response.status_code == 400


class TestPrivateRoomFlow:
    def test_invited_user_joins(self, rooms_client, alice, bob):
        payload = room_payload(type="private", invitations=[{"username": "bob"}])
        room = rooms_client.post("/api/rooms", json=payload, headers=auth_headers(alice)).json()

        listing = rooms_client.get("/api/rooms", headers=auth_headers(bob)).json()
        assert [r["id"] for r in listing["invited"]] == [room["id"]]
        assert listing["public"] == []

        response = rooms_client.post(f"/api/rooms/{room['id']}/join", headers=auth_headers(bob))
        assert response.status_code == 200
        assert response.json()["alreadyJoined"] is False

        [invitation] = db.get_room_invitations_by_room(room["id"])
        assert invitation["accepted"] is True
        detail = rooms_client.get(f"/api/rooms/{room['id']}", headers=auth_headers(bob)).json()
        assert {p["username"] for p in detail["participants"]} == {"alice", "bob"}

        listing = rooms_client.get("/api/rooms", headers=auth_headers(bob)).json()
        assert listing["invited"] == []
        assert [r["id"] for r in listing["participating"]] == [room["id"]]

    def test_outsider_cannot_view_or_join(self, rooms_client, alice, carol):
        room = make_room(alice, type="private")

        assert rooms_client.get(f"/api/rooms/{room['id']}", headers=auth_headers(carol)).status_code == 403
        response = rooms_client.post(f"/api/rooms/{room['id']}/join", headers=auth_headers(carol))
        assert response.status_code == 403


    def test_closed_room_history_hidden_from_outsiders(self, rooms_client, alice, bob):
        room = make_room(alice, now=db.utcnow() - timedelta(hours=2))
        db.create_message(room["id"], alice["id"], "members only")
        url = f"/api/rooms/{room['id']}"

        outsider = rooms_client.get(url, headers=auth_headers(bob)).json()
        creator = rooms_client.get(url, headers=auth_headers(alice)).json()

        assert outsider["room"]["status"] == "closed"
        assert outsider["messages"] == []
        assert [m["content"] for m in creator["messages"]] == ["members only"]

    def test_live_room_history_visible_to_viewers(self, rooms_client, alice, bob):
        room = make_room(alice)
        db.create_message(room["id"], alice["id"], "hello")

        detail = rooms_client.get(f"/api/rooms/{room['id']}", headers=auth_headers(bob)).json()

        assert detail["userAccess"]["isParticipant"] is False
        assert [m["content"] for m in detail["messages"]] == ["hello"]


class TestListRooms:
    def test_groups(self, rooms_client, alice, bob):
        own = make_room(alice, title="Mine")
        other = make_room(bob, title="Bob's")
        hidden = make_room(bob, type="private", title="Hidden")

        listing = rooms_client.get("/api/rooms", headers=auth_headers(alice)).json()

        assert [r["id"] for r in listing["created"]] == [own["id"]]
        assert [r["id"] for r in listing["participating"]] == [own["id"]]
        assert [r["id"] for r in listing["public"]] == [other["id"]]
        all_ids = {r["id"] for group in listing.values() for r in group}
        assert hidden["id"] not in all_ids

    def test_listing_reconciles_statuses(self, rooms_client, alice):
        past = db.utcnow() - timedelta(hours=2)
        room = make_room(alice, now=past)

        listing = rooms_client.get("/api/rooms", headers=auth_headers(alice)).json()

        assert listing["created"][0]["status"] == "closed"
        assert db.get_room(room["id"])["status"] == "closed"


class TestJoin:
    def test_join_twice(self, rooms_client, alice, bob):
        room = make_room(alice)
        url = f"/api/rooms/{room['id']}/join"

        first = rooms_client.post(url, headers=auth_headers(bob))
        second = rooms_client.post(url, headers=auth_headers(bob))

        assert first.json()["alreadyJoined"] is False
        assert second.status_code == 200
        assert second.json()["alreadyJoined"] is True
        assert db.count_rows("room_participants", room_id=room["id"], user_id=bob["id"]) == 1

    def test_join_scheduled_room(self, rooms_client, alice, bob):
        room = make_room(alice, starts_in=timedelta(hours=1))
        response = rooms_client.post(f"/api/rooms/{room['id']}/join", headers=auth_headers(bob))
        assert response.status_code == 400

    def test_join_full_room(self, rooms_client, alice, bob, carol):
        room = make_room(alice, max_participants=2)
        rooms_client.post(f"/api/rooms/{room['id']}/join", headers=auth_headers(bob))

        response = rooms_client.post(f"/api/rooms/{room['id']}/join", headers=auth_headers(carol))
        assert response.status_code == 400
        assert response.json()["message"] == "Room is full"

    def test_unknown_room(self, rooms_client, bob):
        response = rooms_client.post("/api/rooms/999/join", headers=auth_headers(bob))
        assert response.status_code == 404


class TestMessagesAndReactions:
    def test_post_message(self, rooms_client, alice):
        room = make_room(alice)
        response = rooms_client.post(
            f"/api/rooms/{room['id']}/messages",
            json={"content": "hello"},
            headers=auth_headers(alice),
        )

        assert response.status_code == 201
        message = response.json()
        assert isinstance(message["id"], int)
        assert message["user"] == {"id": alice["id"], "username": "alice"}

        detail = rooms_client.get(f"/api/rooms/{room['id']}", headers=auth_headers(alice)).json()
        assert [m["content"] for m in detail["messages"]] == ["hello"]

    def test_message_to_scheduled_room_not_persisted(self, rooms_client, alice):
        room = make_room(alice, starts_in=timedelta(hours=1))
        response = rooms_client.post(
            f"/api/rooms/{room['id']}/messages",
            json={"content": "too early"},
            headers=auth_headers(alice),
        )
        assert response.status_code == 400
        assert db.count_rows("messages") == 0

    def test_rejected_message_announces_closing(self, rooms_client, alice, bob):
        # Stored as live, window ended a minute ago
        room = make_room(alice, now=db.utcnow() - timedelta(minutes=61))
        watcher = FakeConnection(bob["id"])
        get_registry().register(room["id"], watcher)

        response = rooms_client.post(
            f"/api/rooms/{room['id']}/messages",
            json={"content": "still here?"},
            headers=auth_headers(alice),
        )

        assert response.status_code == 400
        assert response.json() == {"message": "Room is not live (status: closed)"}
        [update] = watcher.events("room_status_update")
        assert update["roomId"] == room["id"]
        assert update["room"]["status"] == "closed"

    def test_message_from_non_participant(self, rooms_client, alice, bob):
        room = make_room(alice)
        response = rooms_client.post(
            f"/api/rooms/{room['id']}/messages",
            json={"content": "hi"},
            headers=auth_headers(bob),
        )
        assert response.status_code == 403

    def test_empty_message(self, rooms_client, alice):
        room = make_room(alice)
        response = rooms_client.post(
            f"/api/rooms/{room['id']}/messages",
            json={"content": "  "},
            headers=auth_headers(alice),
        )
        assert response.status_code == 400
        assert response.json()["errors"][0]["message"] == "Message content cannot be empty"

    def test_repeat_reaction_keeps_one_row(self, rooms_client, alice):
        room = make_room(alice)
        url = f"/api/rooms/{room['id']}/reactions"

        first = rooms_client.post(url, json={"type": "❤️"}, headers=auth_headers(alice))
        second = rooms_client.post(url, json={"type": "❤️"}, headers=auth_headers(alice))

        assert first.status_code == second.status_code == 201
        assert db.count_rows("reactions", room_id=room["id"], user_id=alice["id"]) == 1

    def test_unknown_reaction(self, rooms_client, alice):
        room = make_room(alice)
        response = rooms_client.post(
            f"/api/rooms/{room['id']}/reactions",
            json={"type": "🦄"},
            headers=auth_headers(alice),
        )
        assert response.status_code == 400


class TestInvitations:
    def test_creator_invites(self, rooms_client, alice, bob):
        room = make_room(alice, type="private")
        response = rooms_client.post(
            f"/api/rooms/{room['id']}/invitations",
            json={"username": "bob"},
            headers=auth_headers(alice),
        )
        assert response.status_code == 201
        assert response.json()["userId"] == bob["id"]
        assert response.json()["accepted"] is False

    def test_duplicate_invitation(self, rooms_client, alice, bob):
        room = make_room(alice, type="private")
        db.create_room_invitation(room["id"], InviteeByUser(bob["id"]))

        response = rooms_client.post(
            f"/api/rooms/{room['id']}/invitations",
            json={"username": "bob"},
            headers=auth_headers(alice),
        )
        assert response.status_code == 409

    def test_non_creator_cannot_invite(self, rooms_client, alice, bob, carol):
        room = make_room(alice)
        response = rooms_client.post(
            f"/api/rooms/{room['id']}/invitations",
            json={"username": "carol"},
            headers=auth_headers(bob),
        )
        assert response.status_code == 403

    def test_accept_email_invitation(self, rooms_client, alice, bob):
        room = make_room(alice, type="private")
        invitation = db.create_room_invitation(room["id"], InviteeByEmail("bob@example.com"))

        response = rooms_client.post(
            f"/api/invitations/{invitation['id']}/accept", headers=auth_headers(bob)
        )

        assert response.status_code == 200
        assert response.json()["accepted"] is True
        assert db.is_room_participant(room["id"], bob["id"])

    def test_accept_someone_elses_invitation(self, rooms_client, alice, bob, carol):
        room = make_room(alice, type="private")
        invitation = db.create_room_invitation(room["id"], InviteeByUser(bob["id"]))

        response = rooms_client.post(
            f"/api/invitations/{invitation['id']}/accept", headers=auth_headers(carol)
        )
        assert response.status_code == 403


class TestOperational:
    def test_health(self, rooms_client):
        assert rooms_client.get("/health").json() == {"status": "ok"}

    def test_metrics(self, rooms_client, alice):
        rooms_client.get("/api/rooms", headers=auth_headers(alice))

        data = rooms_client.get("/metrics").json()

        assert data["connections"] == 0
        assert "rooms/get" in data["requests"]

    def test_timing_header(self, rooms_client):
        response = rooms_client.get("/health")
        assert "X-Response-Time-Ms" in response.headers
