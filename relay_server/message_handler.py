"""
Per-connection inbound frames.

The relay only answers pings. Lock and unlock requests are refused with a
pointer to the RPC endpoints that own lock state; nothing here writes to it.
"""
import json
from typing import Any
from loguru import logger

from relay_shared.config import Settings, settings as default_settings
from relay_shared.errors import DeliveryError, InvalidFormat
from relay_shared.models import ErrorFrame, PongFrame

from .connection_manager import Connection

LOCK_ACTIONS = frozenset({"lock", "unlock"})


class MessageHandler:
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings

    def handle(self, connection: Connection, raw: str | bytes) -> dict[str, Any] | None:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            self._reply(connection, ErrorFrame(message="Invalid message format").to_json())
            raise InvalidFormat() from e
        if not isinstance(data, dict):
            self._reply(connection, ErrorFrame(message="Invalid message format").to_json())
            raise InvalidFormat()

        logger.debug(f"client={connection.identity.email} event=message data={data}")

        action = data.get("action")
        if isinstance(action, str) and action in LOCK_ACTIONS:
            self._reply(
                connection,
                ErrorFrame(message=self.settings.LOCK_RPC_MESSAGE, hint=self.settings.LOCK_RPC_HINT).to_json(),
            )
            return None

        if data.get("type") == "ping":
            self._reply(connection, PongFrame().model_dump_json())

        return data

    def _reply(self, connection: Connection, text: str) -> None:
        try:
            connection.deliver(text)
        except DeliveryError as e:
            logger.warning(f"client={connection.identity.email} event=reply_failed reason='{e}'")
