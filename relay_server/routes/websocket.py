"""
MODULE OVERVIEW:
The subscriber WebSocket route.

WHAT IS HAPPENING HERE:
Admission upgrades the connection and registers it; from then on broadcasts
reach it through its writer task without involving this handler. The loop
below only reads what the client sends us and deregisters the connection
when the client goes away. If reading fails on our side the socket is closed
with 1011, so a connection is never left open without being registered.
"""
from fastapi import APIRouter, WebSocket
from loguru import logger

from relay_shared.errors import AuthenticationError, InvalidFormat
from relay_shared.route_utils import log_connection

INTERNAL_ERROR = 1011


async def relay_endpoint(websocket: WebSocket):
    relay = websocket.app.state.relay

    try:
        connection = await relay.admission.admit(websocket)
    except AuthenticationError as e:
        log_connection("reject", websocket.client.host if websocket.client else "unknown", {"reason": f"'{e}'"})
        return

    identity = connection.identity
    log_connection("connect", identity.email, {"name": f"'{identity.display_name}'", "session": identity.session_id})

    failed = False
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            try:
                relay.handler.handle(connection, raw)
            except InvalidFormat:
                logger.warning(f"client={identity.email} event=invalid_message")
    except Exception as e:
        logger.error(f"client={identity.email} event=receive_failed reason='{e}'")
        failed = True
    finally:
        if failed:
            await connection.close(INTERNAL_ERROR, "Internal error")
        connection.mark_disconnected()
        log_connection("disconnect", identity.email)


def build_router(path: str = "/") -> APIRouter:
    router = APIRouter()
    router.add_api_websocket_route(path, relay_endpoint)
    return router
