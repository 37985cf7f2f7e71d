import asyncio
import json

import pytest
from fakes import FakePgConnection, open_connection
from relay_server import listener as listener_module
from relay_server.broadcast import Broadcaster
from relay_server.connection_manager import ConnectionRegistry
from relay_server.listener import UpstreamListener
from relay_shared.config import Settings
from relay_shared.errors import MalformedPayload, UpstreamSubscriptionError


class RecordingMirror:
    def __init__(self, gate: asyncio.Event | None = None):
        self.events = []
        self.gate = gate

    async def sync_change(self, event):
        if self.gate is not None:
            await self.gate.wait()
        self.events.append(event)

    async def aclose(self):
        pass


def make_listener(registry=None, mirror=None, **overrides):
    registry = ConnectionRegistry() if registry is None else registry
    return UpstreamListener(Broadcaster(registry), mirror or RecordingMirror(), Settings(**overrides))


@pytest.fixture
def fake_pg(monkeypatch):
    connections = []

    async def connect(**kwargs):
        connection = FakePgConnection()
        connections.append(connection)
        return connection

    monkeypatch.setattr(listener_module.asyncpg, "connect", connect)
    monkeypatch.setattr(listener_module, "backoff_delay", lambda *args: 0)
    return connections


@pytest.mark.asyncio
async def test_start_listens_on_both_channels(fake_pg):
    listener = make_listener()

    await listener.start()

    assert set(fake_pg[0].listeners) == {"contact_changes", "contact_locks"}
    await listener.stop()
    assert fake_pg[0].closed
    assert fake_pg[0].listeners == {}


@pytest.mark.asyncio
async def test_start_failure_is_raised(monkeypatch):
    async def connect(**kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(listener_module.asyncpg, "connect", connect)

    with pytest.raises(UpstreamSubscriptionError):
        await make_listener().start()


@pytest.mark.asyncio
async def test_change_feed_notification_is_mirrored_and_broadcast(fake_pg):
    registry = ConnectionRegistry()
    connection, ws = await open_connection(registry)
    mirror = RecordingMirror()
    listener = make_listener(registry, mirror)
    await listener.start()

    fake_pg[0].notify("contact_changes", json.dumps({"id": "1", "action": "insert"}))
    await connection.drain()
    await listener.stop()

    assert [e.payload for e in mirror.events] == [{"id": "1", "action": "insert"}]
    assert ws.frames[0]["channel"] == "contact_changes"
    assert listener.events_relayed == 1
    await connection.close()


@pytest.mark.asyncio
async def test_lock_channel_is_broadcast_but_not_mirrored(fake_pg):
    registry = ConnectionRegistry()
    connection, ws = await open_connection(registry)
    mirror = RecordingMirror()
    listener = make_listener(registry, mirror)
    await listener.start()

    fake_pg[0].notify("contact_locks", json.dumps({"contact_id": "1", "locked_by": "bob@example.com"}))
    await connection.drain()
    await listener.stop()

    assert mirror.events == []
    assert ws.frames == [
        {
            "channel": "contact_locks",
            "payload": {"contact_id": "1", "locked_by": "bob@example.com"},
            "timestamp": ws.frames[0]["timestamp"],
        }
    ]
    await connection.close()


@pytest.mark.asyncio
async def test_malformed_payload_is_dropped_and_listening_continues(fake_pg):
    registry = ConnectionRegistry()
    connection, ws = await open_connection(registry)
    listener = make_listener(registry)
    await listener.start()

    fake_pg[0].notify("contact_locks", "{not json")
    fake_pg[0].notify("contact_locks", json.dumps({"ok": True}))
    await connection.drain()
    await listener.stop()

    assert listener.malformed_payloads == 1
    assert [f["payload"] for f in ws.frames] == [{"ok": True}]
    await connection.close()


def test_decode():
    assert UpstreamListener.decode("contact_locks", "") is None
    assert UpstreamListener.decode("contact_locks", None) is None
    assert UpstreamListener.decode("contact_locks", '{"a": 1}') == {"a": 1}
    with pytest.raises(MalformedPayload):
        UpstreamListener.decode("contact_locks", "nope")


@pytest.mark.asyncio
async def test_slow_mirror_does_not_delay_broadcast(fake_pg):
    registry = ConnectionRegistry()
    connection, ws = await open_connection(registry)
    gate = asyncio.Event()
    mirror = RecordingMirror(gate)
    listener = make_listener(registry, mirror)
    await listener.start()

    listener.dispatch("contact_changes", json.dumps({"id": "1", "action": "update"}))
    listener.dispatch("contact_changes", json.dumps({"id": "2", "action": "update"}))
    await connection.drain()

    assert [f["payload"]["id"] for f in ws.frames] == ["1", "2"]
    assert mirror.events == []
    assert listener.pending_syncs == 2

    gate.set()
    await listener.stop()
    assert [e.payload["id"] for e in mirror.events] == ["1", "2"]
    assert listener.pending_syncs == 0
    await connection.close()


@pytest.mark.asyncio
async def test_lost_connection_reconnects(fake_pg):
    listener = make_listener(UPSTREAM_RECONNECT_ATTEMPTS=2)
    await listener.start()

    fake_pg[0].terminate()
    await asyncio.wait_for(listener._reconnect_task, timeout=1)

    assert len(fake_pg) == 2
    assert listener.connection is fake_pg[1]
    assert set(fake_pg[1].listeners) == {"contact_changes", "contact_locks"}
    await listener.stop()


@pytest.mark.asyncio
async def test_lost_connection_is_fatal_when_reconnects_fail(fake_pg, monkeypatch):
    listener = make_listener(UPSTREAM_RECONNECT_ATTEMPTS=2)
    await listener.start()

    async def refuse(**kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(listener_module.asyncpg, "connect", refuse)
    fake_pg[0].terminate()

    error = await asyncio.wait_for(listener.wait_failed(), timeout=1)
    assert isinstance(error, UpstreamSubscriptionError)
    assert "2 reconnect attempt(s)" in str(error)
    await listener.stop()


@pytest.mark.asyncio
async def test_lost_connection_is_fatal_immediately_without_reconnects(fake_pg):
    listener = make_listener(UPSTREAM_RECONNECT_ATTEMPTS=0)
    await listener.start()

    fake_pg[0].terminate()

    error = await asyncio.wait_for(listener.wait_failed(), timeout=1)
    assert isinstance(error, UpstreamSubscriptionError)
    await listener.stop()


@pytest.mark.asyncio
async def test_stop_does_not_count_as_connection_loss(fake_pg):
    listener = make_listener()
    await listener.start()
    pg = fake_pg[0]

    await listener.stop()
    pg.terminate()

    assert listener._reconnect_task is None
