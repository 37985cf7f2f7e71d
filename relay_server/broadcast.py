"""
MODULE OVERVIEW:
The fan-out mechanism. One `ChangeEvent` comes in from the upstream listener and
goes out to every subscriber that is open right now.

WHAT IS HAPPENING HERE:
The frame is serialized exactly once, so every recipient gets the same bytes.
We then walk a snapshot of the registry and `deliver()` to each open
connection. A failure on one connection is logged and skipped; closing that
connection is left to its own writer/receive path, which keeps this loop
short and free of awaits.
"""

from loguru import logger

from relay_shared.errors import DeliveryError
from relay_shared.models import ChangeEvent

from .connection_manager import ConnectionRegistry


class Broadcaster:
    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    def broadcast(self, event: ChangeEvent) -> int:
        serialized_json = event.to_frame().model_dump_json()
        delivered = 0

        for connection in self.registry.open_connections():
            try:
                connection.deliver(serialized_json)
                delivered += 1
            except DeliveryError as e:
                logger.warning(f"client={connection.identity.email} conn={connection.id} event=delivery_failed reason='{e}'")

        return delivered
