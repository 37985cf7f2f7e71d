import json

import pytest
from fakes import open_connection
from relay_server.connection_manager import ConnectionRegistry
from relay_server.message_handler import MessageHandler
from relay_shared.config import Settings
from relay_shared.errors import InvalidFormat, PayloadDecodeError


@pytest.mark.asyncio
async def test_ping_gets_exactly_one_pong():
    connection, ws = await open_connection()

    result = MessageHandler().handle(connection, json.dumps({"type": "ping"}))
    await connection.drain()

    assert result == {"type": "ping"}
    assert len(ws.frames) == 1
    assert ws.frames[0]["type"] == "pong"
    assert ws.frames[0]["timestamp"]
    await connection.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("action", ["lock", "unlock"])
async def test_lock_actions_are_rejected_with_hint(action):
    registry = ConnectionRegistry()
    connection, ws = await open_connection(registry)
    settings = Settings(LOCK_RPC_HINT="POST /rpc/custom_lock")

    result = MessageHandler(settings).handle(connection, json.dumps({"action": action, "entityId": "123"}))
    await connection.drain()

    assert result is None
    assert ws.frames == [
        {
            "type": "error",
            "message": "Please use PostgREST RPC endpoints for lock/unlock operations",
            "hint": "POST /rpc/custom_lock",
        }
    ]
    assert list(registry) == [connection]
    await connection.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["invalid json", "{'single': 'quotes'}", b"\xff\xfe", "[1, 2, 3]", "42"])
async def test_malformed_message_replies_once_and_raises(raw):
    connection, ws = await open_connection()

    with pytest.raises(InvalidFormat):
        MessageHandler().handle(connection, raw)
    await connection.drain()

    assert ws.frames == [{"type": "error", "message": "Invalid message format"}]
    assert connection.is_open
    await connection.close()


def test_invalid_format_is_a_decode_error():
    assert issubclass(InvalidFormat, PayloadDecodeError)


@pytest.mark.asyncio
async def test_other_messages_are_returned_unmodified():
    connection, ws = await open_connection()
    message = {"type": "subscribe", "data": {"contact": 7}}

    result = MessageHandler().handle(connection, json.dumps(message).encode())
    await connection.drain()

    assert result == message
    assert ws.sent == []
    await connection.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("action", [["lock"], {}, {"kind": "lock"}, 1])
async def test_non_string_action_is_returned_unmodified(action):
    connection, ws = await open_connection()
    message = {"action": action, "type": "subscribe"}

    result = MessageHandler().handle(connection, json.dumps(message))
    await connection.drain()

    assert result == message
    assert ws.sent == []
    await connection.close()
