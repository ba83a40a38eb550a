"""Tests for the in-memory broadcast hub.

The hub only enqueues; every test awaits ``hub.flush()`` before inspecting
what a fake socket received, and closes the hub so writer tasks finish.
"""
import asyncio

import pytest

from conftest import FakeWebSocket
from fileshare.hub import manager
from fileshare.hub.manager import BroadcastHub, HubEvent, make_event


class StalledWebSocket(FakeWebSocket):
    """A peer whose sends never complete."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def send_json(self, message: dict) -> None:
        await self.release.wait()
        self.sent.append(message)


async def _connect(hub: BroadcastHub, fail: bool = False):
    ws = FakeWebSocket(fail=fail)
    cid = await hub.connect(ws)
    return cid, ws


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_sends_connection_id(self, hub):
        cid, ws = await _connect(hub)
        await hub.flush()

        assert ws.accepted
        assert ws.sent == [{"type": "connected", "data": {"connectionId": cid}}]
        assert hub.connection_count == 1
        await hub.close()

    @pytest.mark.asyncio
    async def test_connection_ids_are_unique(self, hub):
        ids = {(await _connect(hub))[0] for _ in range(5)}
        assert len(ids) == 5
        await hub.close()

    def test_make_event_envelope(self):
        assert make_event(HubEvent.NEW_FILES, {"files": []}) == {
            "type": "new-files",
            "data": {"files": []},
        }


class TestMembership:
    @pytest.mark.asyncio
    async def test_join_notifies_members_and_replies_member_list(self, hub):
        c1, ws1 = await _connect(hub)
        c2, ws2 = await _connect(hub)

        assert hub.join(c1, "AB12CD") == [c1]
        assert hub.join(c2, "AB12CD") == [c1, c2]
        await hub.flush()

        assert ws1.of_type("users-in-room")[0]["data"] == [c1]
        assert ws1.of_type("user-joined") == [{"type": "user-joined", "data": c2}]
        assert ws2.of_type("users-in-room")[0]["data"] == [c1, c2]
        assert ws2.of_type("user-joined") == []
        await hub.close()

    @pytest.mark.asyncio
    async def test_join_other_room_leaves_previous(self, hub):
        c1, ws1 = await _connect(hub)
        c2, _ = await _connect(hub)
        hub.join(c1, "AB12CD")
        hub.join(c2, "AB12CD")
        hub.join(c2, "XY99ZZ")
        await hub.flush()

        assert hub.members("AB12CD") == [c1]
        assert hub.members("XY99ZZ") == [c2]
        assert hub.room_of(c2) == "XY99ZZ"
        assert ws1.of_type("user-left") == [{"type": "user-left", "data": c2}]
        await hub.close()

    @pytest.mark.asyncio
    async def test_rejoin_same_room_is_not_announced_twice(self, hub):
        c1, ws1 = await _connect(hub)
        c2, _ = await _connect(hub)
        hub.join(c1, "AB12CD")
        hub.join(c2, "AB12CD")
        hub.join(c2, "AB12CD")
        await hub.flush()

        assert len(ws1.of_type("user-joined")) == 1
        assert hub.members("AB12CD") == [c1, c2]
        await hub.close()

    @pytest.mark.asyncio
    async def test_join_unknown_connection(self, hub):
        with pytest.raises(KeyError):
            hub.join("ghost", "AB12CD")

    @pytest.mark.asyncio
    async def test_leave(self, hub):
        c1, ws1 = await _connect(hub)
        c2, _ = await _connect(hub)
        hub.join(c1, "AB12CD")
        hub.join(c2, "AB12CD")

        assert hub.leave(c2, "AB12CD") is True
        assert hub.leave(c2, "AB12CD") is False
        await hub.flush()

        assert hub.members("AB12CD") == [c1]
        assert hub.room_of(c2) is None
        assert ws1.of_type("user-left")[0]["data"] == c2
        await hub.close()

    @pytest.mark.asyncio
    async def test_last_member_leaving_drops_room(self, hub):
        c1, _ = await _connect(hub)
        hub.join(c1, "AB12CD")
        hub.leave(c1, "AB12CD")
        assert "AB12CD" not in hub.rooms
        await hub.close()

    @pytest.mark.asyncio
    async def test_disconnect_leaves_room(self, hub):
        c1, ws1 = await _connect(hub)
        c2, _ = await _connect(hub)
        hub.join(c1, "AB12CD")
        hub.join(c2, "AB12CD")

        await hub.disconnect(c2)
        await hub.flush()

        assert hub.connection_count == 1
        assert hub.members("AB12CD") == [c1]
        assert ws1.of_type("user-left")[0]["data"] == c2
        await hub.close()


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_room_broadcast_excludes_sender_and_other_rooms(self, hub):
        c1, ws1 = await _connect(hub)
        c2, ws2 = await _connect(hub)
        c3, ws3 = await _connect(hub)
        hub.join(c1, "QQ11RR")
        hub.join(c2, "QQ11RR")
        hub.join(c3, "XY99ZZ")

        count = hub.broadcast_to_room(
            "QQ11RR", HubEvent.RECEIVE_TEXT, {"roomCode": "QQ11RR", "text": "hello"}, exclude=c1
        )
        await hub.flush()

        assert count == 1
        assert ws2.of_type("receive-text")[0]["data"]["text"] == "hello"
        assert ws1.of_type("receive-text") == []
        assert ws3.of_type("receive-text") == []
        await hub.close()

    @pytest.mark.asyncio
    async def test_broadcast_to_empty_room(self, hub):
        assert hub.broadcast_to_room("NOPE00", HubEvent.NEW_FILES, {"files": []}) == 0

    @pytest.mark.asyncio
    async def test_global_broadcast_reaches_everyone(self, hub):
        c1, ws1 = await _connect(hub)
        c2, ws2 = await _connect(hub)
        hub.join(c1, "AB12CD")

        assert hub.broadcast_global(HubEvent.ALL_FILES_CLEARED) == 2
        await hub.flush()

        assert ws1.of_type("all-files-cleared") == [{"type": "all-files-cleared", "data": None}]
        assert len(ws2.of_type("all-files-cleared")) == 1
        await hub.close()

    @pytest.mark.asyncio
    async def test_events_arrive_in_enqueue_order(self, hub):
        c1, ws1 = await _connect(hub)
        c2, _ = await _connect(hub)
        hub.join(c1, "AB12CD")
        hub.join(c2, "AB12CD")

        for i in range(20):
            hub.broadcast_to_room("AB12CD", HubEvent.RECEIVE_TEXT, {"text": str(i)}, exclude=c2)
        await hub.flush()

        texts = [m["data"]["text"] for m in ws1.of_type("receive-text")]
        assert texts == [str(i) for i in range(20)]
        await hub.close()

    @pytest.mark.asyncio
    async def test_send_to(self, hub):
        c1, ws1 = await _connect(hub)
        assert hub.send_to(c1, HubEvent.ERROR, {"error": "bad"}) is True
        assert hub.send_to("ghost", HubEvent.ERROR, {"error": "bad"}) is False
        await hub.flush()
        assert ws1.of_type("error") == [{"type": "error", "data": {"error": "bad"}}]
        await hub.close()


class TestDeadConnections:
    @pytest.mark.asyncio
    async def test_failed_send_removes_connection(self, hub):
        c1, ws1 = await _connect(hub)
        c2, _ = await _connect(hub, fail=True)
        hub.join(c1, "AB12CD")
        hub.join(c2, "AB12CD")
        await hub.flush()

        assert hub.connection_count == 1
        assert hub.members("AB12CD") == [c1]
        assert ws1.of_type("user-left")[-1]["data"] == c2

        # Other members keep receiving after the failure
        hub.broadcast_to_room("AB12CD", HubEvent.NEW_FILES, {"files": []})
        await hub.flush()
        assert len(ws1.of_type("new-files")) == 1
        await hub.close()

    @pytest.mark.asyncio
    async def test_stalled_connection_dropped_when_backlog_full(self, hub, monkeypatch):
        monkeypatch.setattr(manager, "MAX_PENDING_EVENTS", 5)
        c1, ws1 = await _connect(hub)
        stalled = StalledWebSocket()
        c2 = await hub.connect(stalled)
        hub.join(c1, "AB12CD")
        hub.join(c2, "AB12CD")
        await asyncio.sleep(0)

        for i in range(10):
            hub.broadcast_to_room("AB12CD", HubEvent.RECEIVE_TEXT, {"text": str(i)}, exclude=c1)

        assert hub.connection_count == 1
        assert hub.members("AB12CD") == [c1]
        await hub.flush()
        assert ws1.of_type("user-left")[-1]["data"] == c2

        # Later broadcasts skip the dropped connection without raising
        assert hub.broadcast_to_room("AB12CD", HubEvent.NEW_FILES, {"files": []}) == 1
        await hub.disconnect(c2)
        await hub.close()

    @pytest.mark.asyncio
    async def test_close_disconnects_everyone(self, hub):
        c1, _ = await _connect(hub)
        c2, _ = await _connect(hub)
        hub.join(c1, "AB12CD")
        hub.join(c2, "AB12CD")

        await hub.close()

        assert hub.connection_count == 0
        assert hub.rooms == {}
