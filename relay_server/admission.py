"""
MODULE OVERVIEW:
Decides whether an incoming WebSocket becomes a registered subscriber.

WHAT IS HAPPENING HERE:
We accept the handshake first and only then look at the token. Closing before
`accept()` would make the ASGI server answer with a bare HTTP 403, and the
client would never see the 1008 code or the reason string. Every attempt ends
in exactly one frame from us: a welcome or a close.
"""
from typing import Callable
from fastapi import WebSocket
from loguru import logger

from relay_shared.config import Settings, settings as default_settings
from relay_shared.errors import AdmissionClosed, AuthenticationError
from relay_shared.models import WelcomeFrame

from .claims import extract_identity
from .connection_manager import Connection, ConnectionRegistry

POLICY_VIOLATION = 1008
GOING_AWAY = 1001


class Admission:
    def __init__(
        self,
        registry: ConnectionRegistry,
        settings: Settings | None = None,
        is_accepting: Callable[[], bool] = lambda: True,
    ):
        self.registry = registry
        self.settings = settings or default_settings
        self.is_accepting = is_accepting

    async def admit(self, websocket: WebSocket) -> Connection:
        await websocket.accept()

        if not self.is_accepting():
            error = AdmissionClosed()
            await websocket.close(code=GOING_AWAY, reason=str(error))
            raise error

        try:
            identity = extract_identity(websocket.query_params.get("token"))
        except AuthenticationError as e:
            logger.warning(f"event=auth_failed reason='{e}'")
            await websocket.close(code=POLICY_VIOLATION, reason=str(e))
            raise

        connection = Connection(
            websocket,
            identity,
            max_queue=self.settings.WS_SEND_QUEUE_SIZE,
            on_closed=self.registry.remove,
        )
        connection.start()
        # No await between registering and queueing the welcome, so no
        # broadcast can get in front of it.
        self.registry.add(connection)
        connection.deliver(WelcomeFrame(user=identity.email).model_dump_json())
        return connection
