"""
Tests for the WebSocket connection manager.
"""

import asyncio
import json

import pytest

from flowbridge.api.websocket import ConnectionManager, emit_output, emit_status


class FakeSocket:
    """Records what the manager sends."""

    def __init__(self):
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, data):
        self.sent.append(json.loads(data))


class BrokenSocket(FakeSocket):
    async def send_text(self, data):
        raise ConnectionResetError("gone")


class StalledSocket(FakeSocket):
    async def send_text(self, data):
        await asyncio.Event().wait()


async def _connected(manager, *sockets):
    for ws in sockets:
        await manager.connect(ws)
    return sockets


class TestBroadcast:
    """Tests for fan-out to clients."""

    @pytest.mark.asyncio
    async def test_subscription_filters_devices(self):
        manager = ConnectionManager()
        everything, lamp_only = await _connected(manager, FakeSocket(), FakeSocket())
        await manager.subscribe(lamp_only, ["lamp"])

        await manager.broadcast({"type": "output", "device": "door"}, "door")
        await manager.broadcast({"type": "output", "device": "lamp"}, "lamp")
        await manager.broadcast({"type": "bridge"})

        assert [m.get("device") for m in everything.sent] == ["door", "lamp", None]
        assert [m.get("device") for m in lamp_only.sent] == ["lamp", None]

        await manager.subscribe(lamp_only, None)
        await manager.broadcast({"type": "output", "device": "door"}, "door")
        assert lamp_only.sent[-1]["device"] == "door"

    @pytest.mark.asyncio
    async def test_dead_client_dropped(self):
        manager = ConnectionManager()
        good, broken = await _connected(manager, FakeSocket(), BrokenSocket())

        await manager.broadcast({"type": "output"}, "lamp")

        assert len(good.sent) == 1
        assert broken not in manager.active_connections
        assert good in manager.active_connections

    @pytest.mark.asyncio
    async def test_stalled_client_does_not_hold_others(self):
        manager = ConnectionManager(send_timeout_seconds=0.05)
        good, stalled = await _connected(manager, FakeSocket(), StalledSocket())

        await asyncio.wait_for(manager.broadcast({"type": "output"}, "lamp"), 1.0)

        assert len(good.sent) == 1
        assert stalled not in manager.active_connections

    @pytest.mark.asyncio
    async def test_disconnect(self):
        manager = ConnectionManager()
        (ws,) = await _connected(manager, FakeSocket())
        assert ws.accepted

        await manager.disconnect(ws)
        await manager.broadcast({"type": "output"}, "lamp")

        assert ws.sent == []
        assert manager.active_connections == {}


class TestPublish:
    """Tests for the non-blocking event outbox."""

    @pytest.mark.asyncio
    async def test_events_sent_in_order(self):
        manager = ConnectionManager()
        (ws,) = await _connected(manager, FakeSocket())

        await emit_output(manager, "lamp", {"payload": True})
        await emit_status(manager, "lamp", {"state": "active", "error": None})
        await emit_output(manager, "lamp", {"payload": False})
        await manager.flush()

        assert [m["type"] for m in ws.sent] == ["output", "status", "output"]
        assert ws.sent[0] == {"type": "output", "device": "lamp", "msg": {"payload": True}}
        assert ws.sent[2]["msg"] == {"payload": False}
        await manager.close()

    @pytest.mark.asyncio
    async def test_publish_does_not_wait_on_clients(self):
        manager = ConnectionManager(send_timeout_seconds=0.05)
        good, stalled = await _connected(manager, FakeSocket(), StalledSocket())

        manager.publish({"type": "output", "device": "lamp"}, "lamp")
        assert good.sent == []

        await asyncio.wait_for(manager.flush(), 1.0)
        assert len(good.sent) == 1
        assert stalled not in manager.active_connections
        await manager.close()

    @pytest.mark.asyncio
    async def test_full_backlog_drops_events(self):
        manager = ConnectionManager(max_backlog=2)
        (ws,) = await _connected(manager, FakeSocket())

        for i in range(5):
            manager.publish({"type": "output", "n": i}, "lamp")
        await manager.flush()

        assert [m["n"] for m in ws.sent] == [0, 1]
        await manager.close()

    @pytest.mark.asyncio
    async def test_no_clients_no_sender(self):
        manager = ConnectionManager()

        manager.publish({"type": "output"}, "lamp")
        await manager.flush()
        await manager.close()

        assert manager.active_connections == {}
