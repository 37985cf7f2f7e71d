import json

import pytest
import respx
from fakes import FakeWebSocket, OfflineListener, make_token
from relay_server.main import build_relay
from relay_shared.config import Settings
from relay_shared.errors import MissingToken

MEILI = "http://meili.test"


def make_relay():
    settings = Settings(MEILI_URL=MEILI)
    return build_relay(settings, listener_cls=OfflineListener)


@pytest.mark.asyncio
@respx.mock
async def test_change_notification_reaches_every_subscriber_and_the_index():
    route = respx.post(f"{MEILI}/indexes/contacts/documents").respond(202, json={"taskUid": 1})
    relay = make_relay()
    await relay.lifecycle.start()

    alice_ws = FakeWebSocket(make_token(email="alice@example.com", name="Alice"))
    bob_ws = FakeWebSocket(make_token(email="bob@example.com", preferred_username="bob"))
    alice = await relay.admission.admit(alice_ws)
    bob = await relay.admission.admit(bob_ws)
    assert alice.identity != bob.identity

    payload = {"id": "123", "action": "update", "data": {"name": "X"}}
    relay.listener.dispatch("contact_changes", json.dumps(payload))
    await alice.drain()
    await bob.drain()
    # let the detached index sync finish
    await relay.listener.stop()

    for ws in (alice_ws, bob_ws):
        welcome, change = ws.frames
        assert welcome["type"] == "connection"
        assert change["channel"] == "contact_changes"
        assert change["payload"] == payload
    assert alice_ws.sent[1] == bob_ws.sent[1]

    assert route.call_count == 1
    assert json.loads(route.calls[0].request.content) == [{"id": "123"}]

    await relay.lifecycle.shutdown()


@pytest.mark.asyncio
async def test_rejected_admission_leaves_registry_unchanged():
    relay = make_relay()
    await relay.lifecycle.start()
    member_ws = FakeWebSocket(make_token(email="member@example.com"))
    await relay.admission.admit(member_ws)

    stranger_ws = FakeWebSocket()
    with pytest.raises(MissingToken):
        await relay.admission.admit(stranger_ws)

    assert stranger_ws.closes == [(1008, "No token provided")]
    assert len(relay.registry) == 1
    await relay.lifecycle.shutdown()


@pytest.mark.asyncio
async def test_shutdown_with_three_subscribers():
    relay = make_relay()
    await relay.lifecycle.start()
    sockets = [FakeWebSocket(make_token(email=f"user{i}@example.com")) for i in range(3)]
    for ws in sockets:
        await relay.admission.admit(ws)

    await relay.lifecycle.shutdown()

    for ws in sockets:
        assert ws.closes == [(1001, "Server shutting down")]
        assert ws.frames[0]["type"] == "connection"
    assert relay.listener._stopping
    assert len(relay.registry) == 0
