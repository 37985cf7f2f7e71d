"""
MODULE OVERVIEW:
The central state registry of the relay.
Holds every admitted WebSocket subscriber and the per-connection machinery that
actually writes frames to the socket.

WHAT IS HAPPENING HERE:
A `Connection` owns one Starlette `WebSocket`, the `Identity` it authenticated
with, and an outbound queue drained by a single writer task. Everybody else
(the broadcaster, the message handler, the welcome frame) only ever calls
`deliver()`, which is a non-blocking `put_nowait`. That keeps the fan-out loop
from waiting on any one socket: a slow subscriber fills its own queue and
nobody else notices.

The `ConnectionRegistry` is the set of live connections. It is an explicit
object handed to admission, broadcast and the lifecycle, never a module global,
so a test can build as many independent relays as it likes. Readers iterate a
`snapshot()`, so admissions and disconnects that happen mid-broadcast cannot
break the loop or cause a second delivery.
"""

import asyncio
from itertools import count
from typing import Callable, Dict, Iterator
from fastapi.websockets import WebSocket, WebSocketState
from loguru import logger

from relay_shared.errors import DeliveryError
from relay_shared.models import Identity

_CLOSE = object()
_ids = count(1)


class Connection:
    def __init__(
        self,
        websocket: WebSocket,
        identity: Identity,
        max_queue: int = 256,
        on_closed: Callable[["Connection"], None] | None = None,
    ):
        self.id = next(_ids)
        self.websocket = websocket
        self.identity = identity
        self._max_queue = max_queue
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._writer: asyncio.Task | None = None
        self._on_closed = on_closed
        self._closing = False
        self.closed = False

    def __repr__(self) -> str:
        return f"Connection(id={self.id}, user={self.identity.email})"

    @property
    def is_open(self) -> bool:
        return (
            not self._closing
            and not self.closed
            and self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        )

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())

    def deliver(self, text: str) -> None:
        """Hand one serialized frame to the writer. Never waits."""
        if not self.is_open:
            raise DeliveryError(f"{self!r} is not open")
        if self._outbox.qsize() >= self._max_queue:
            raise DeliveryError(f"{self!r} send queue full ({self._max_queue})")
        self._outbox.put_nowait(text)

    async def drain(self) -> None:
        """Wait until every frame queued so far has been written (or dropped)."""
        await self._outbox.join()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """
        Queue a close frame behind whatever is already queued and wait for the
        writer to send it. Safe to call more than once.
        """
        if self._closing or self.closed:
            if self._writer is not None:
                await asyncio.wait({self._writer})
            return
        self._closing = True
        if self._writer is not None and not self._writer.done():
            self._outbox.put_nowait((_CLOSE, code, reason))
            await asyncio.wait({self._writer})
        else:
            await self._send_close(code, reason)
            self._mark_closed()

    def mark_disconnected(self) -> None:
        """The client went away on its own. Stop the writer and deregister."""
        self._closing = True
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
        self._mark_closed()

    async def _write_loop(self) -> None:
        try:
            while True:
                item = await self._outbox.get()
                try:
                    if isinstance(item, tuple) and item[0] is _CLOSE:
                        await self._send_close(item[1], item[2])
                        return
                    await self.websocket.send_text(item)
                finally:
                    self._outbox.task_done()
        except Exception as e:
            # The transport's error path: this connection is finished.
            logger.warning(f"client={self.identity.email} conn={self.id} event=send_failed reason='{e}'")
        finally:
            self._discard_pending()
            self._mark_closed()

    async def _send_close(self, code: int, reason: str) -> None:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"client={self.identity.email} conn={self.id} event=close_failed reason='{e}'")

    def _discard_pending(self) -> None:
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()

    def _mark_closed(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_closed is not None:
            self._on_closed(self)


class ConnectionRegistry:
    def __init__(self):
        self._connections: Dict[int, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection: Connection) -> bool:
        return self._connections.get(connection.id) is connection

    def __iter__(self) -> Iterator[Connection]:
        return iter(self.snapshot())

    def add(self, connection: Connection) -> None:
        self._connections[connection.id] = connection
        logger.debug(f"client={connection.identity.email} conn={connection.id} event=registered total={len(self)}")

    def remove(self, connection: Connection) -> None:
        if self._connections.pop(connection.id, None) is not None:
            logger.debug(f"client={connection.identity.email} conn={connection.id} event=deregistered total={len(self)}")

    def snapshot(self) -> tuple[Connection, ...]:
        """Point-in-time view, safe to iterate while others add or remove."""
        return tuple(self._connections.values())

    def open_connections(self) -> list[Connection]:
        return [c for c in self.snapshot() if c.is_open]
