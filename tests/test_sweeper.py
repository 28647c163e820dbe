"""Tests for the background status sweeper."""

import asyncio
import sqlite3
import time
from datetime import timedelta

import pytest

from liverooms import db
from liverooms.metrics import metrics
from liverooms.registry import InMemoryConnectionRegistry
from liverooms.sweeper import Sweeper, announce_status_change
from liverooms.testing import FakeConnection, make_room


@pytest.fixture
def registry():
    return InMemoryConnectionRegistry()


def ended_live_room(creator):
    """A room stored as live whose window ended an hour ago."""
    past = db.utcnow() - timedelta(hours=2)
    room = make_room(creator, now=past)
    assert room["status"] == "live"
    return room


class TestTick:
    @pytest.mark.asyncio
    async def test_closes_ended_room_and_notifies(self, alice, bob, registry):
        room = ended_live_room(alice)
        in_room, lobby = FakeConnection(alice["id"]), FakeConnection(bob["id"])
        registry.register(room["id"], in_room)
        registry.register_global(lobby)

        result = await Sweeper(registry=registry).tick()

        assert [r["id"] for r in result["going_closed"]] == [room["id"]]
        assert db.get_room(room["id"])["status"] == "closed"
        for conn in (in_room, lobby):
            [update] = conn.events("room_status_update")
            assert update["roomId"] == room["id"]
            assert update["room"]["status"] == "closed"

    @pytest.mark.asyncio
    async def test_starts_scheduled_room(self, alice, registry):
        past = db.utcnow() - timedelta(minutes=10)
        room = make_room(alice, starts_in=timedelta(minutes=5), now=past)

        result = await Sweeper(registry=registry).tick()

        assert [r["id"] for r in result["going_live"]] == [room["id"]]
        assert result["going_closed"] == []

    @pytest.mark.asyncio
    async def test_global_broadcast_can_be_disabled(self, alice, bob, registry):
        ended_live_room(alice)
        lobby = FakeConnection(bob["id"])
        registry.register_global(lobby)

        await Sweeper(registry=registry, broadcast_to_global=False).tick()

        assert lobby.sent == []

    @pytest.mark.asyncio
    async def test_noop_tick(self, alice, registry):
        make_room(alice)
        result = await Sweeper(registry=registry).tick()
        assert result == {"going_live": [], "going_closed": []}
        assert metrics.get_counter("sweeps") == 1

    @pytest.mark.asyncio
    async def test_second_tick_sees_nothing_new(self, alice, registry):
        ended_live_room(alice)
        sweeper = Sweeper(registry=registry)

        await sweeper.tick()
        result = await sweeper.tick()

        assert result["going_closed"] == []

    @pytest.mark.asyncio
    async def test_store_failure_skips_tick(self, alice, registry, monkeypatch):
        ended_live_room(alice)

        def broken(now=None):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(db, "update_room_statuses", broken)

        result = await Sweeper(registry=registry).tick()

        assert result == {"going_live": [], "going_closed": []}
        assert metrics.get_counter("sweep_failures") == 1

    @pytest.mark.asyncio
    async def test_failed_announcement_does_not_stop_tick(self, alice, registry, monkeypatch):
        first, second = ended_live_room(alice), ended_live_room(alice)
        watcher = FakeConnection(alice["id"])
        registry.register(second["id"], watcher)
        real = registry.broadcast

        async def flaky(room_id, event, exclude=None):
            if room_id == first["id"]:
                raise RuntimeError("registry unavailable")
            return await real(room_id, event, exclude=exclude)

        monkeypatch.setattr(registry, "broadcast", flaky)

        result = await Sweeper(registry=registry).tick()

        assert {r["id"] for r in result["going_closed"]} == {first["id"], second["id"]}
        assert len(watcher.events("room_status_update")) == 1
        assert metrics.get_counter("announce_failures") == 1
        assert metrics.get_counter("sweeps") == 1

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, registry, monkeypatch):
        real = db.update_room_statuses

        def slow(now=None):
            time.sleep(0.2)
            return real(now)

        monkeypatch.setattr(db, "update_room_statuses", slow)
        sweeper = Sweeper(registry=registry)

        await asyncio.gather(sweeper.tick(), sweeper.tick())

        assert metrics.get_counter("sweeps_skipped") == 1
        assert metrics.get_counter("sweeps") == 1


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, alice, registry):
        room = ended_live_room(alice)
        sweeper = Sweeper(interval=0.05, registry=registry)

        sweeper.start()
        assert sweeper.running
        await asyncio.sleep(0.2)
        await sweeper.stop()

        assert not sweeper.running
        assert metrics.get_counter("sweeps") >= 2
        assert db.get_room(room["id"])["status"] == "closed"

    @pytest.mark.asyncio
    async def test_disabled_sweeper_does_not_start(self, registry):
        sweeper = Sweeper(registry=registry, enabled=False)
        sweeper.start()
        assert not sweeper.running
        await sweeper.stop()

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            Sweeper(interval=0)


class TestAnnounce:
    @pytest.mark.asyncio
    async def test_counts_room_and_global_deliveries(self, alice, bob, registry):
        room = make_room(alice)
        registry.register(room["id"], FakeConnection(alice["id"]))
        registry.register_global(FakeConnection(bob["id"]))

        assert await announce_status_change(room, registry=registry) == 2
        assert await announce_status_change(room, registry=registry, to_global=False) == 1
