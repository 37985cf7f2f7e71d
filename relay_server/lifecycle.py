"""
MODULE OVERVIEW:
Startup and shutdown ordering for the relay.

WHAT IS HAPPENING HERE:
    STOPPED -> CONNECTING -> LISTENING -> DRAINING -> STOPPED

We subscribe upstream before admitting anybody: a subscriber connected to a
relay with no event source would just sit there silently. On shutdown we stop
admitting, tell every subscriber we are going away (1001), close the upstream
subscription, and only then release the listening socket.

`shutdown()` may be called from several places (the uvicorn server subclass,
the FastAPI lifespan, a test); the first call does the work and every caller
awaits the same task.
"""

import asyncio
import os
import signal
from enum import Enum
from typing import Awaitable, Callable
from loguru import logger

from relay_shared.errors import UpstreamSubscriptionError
from relay_shared.timeutil import utc_now

from .connection_manager import ConnectionRegistry
from .listener import UpstreamListener
from .search_mirror import SearchMirror

GOING_AWAY = 1001
SHUTDOWN_REASON = "Server shutting down"


class LifecycleState(str, Enum):
    STOPPED = "stopped"
    CONNECTING = "connecting"
    LISTENING = "listening"
    DRAINING = "draining"


def _terminate_process(error: UpstreamSubscriptionError) -> None:
    os.kill(os.getpid(), signal.SIGTERM)


class Lifecycle:
    def __init__(
        self,
        registry: ConnectionRegistry,
        listener: UpstreamListener,
        mirror: SearchMirror | None = None,
        on_fatal: Callable[[UpstreamSubscriptionError], None] = _terminate_process,
    ):
        self.registry = registry
        self.listener = listener
        self.mirror = mirror
        self.on_fatal = on_fatal
        # Set by whoever owns the listening socket (see serve.RelayServer).
        self.release_transport: Callable[[], Awaitable[None]] | None = None

        self.state = LifecycleState.STOPPED
        self.fatal_error: UpstreamSubscriptionError | None = None
        self.started_at = None
        self._watchdog: asyncio.Task | None = None
        self._shutdown_task: asyncio.Task | None = None

    @property
    def accepting(self) -> bool:
        return self.state is LifecycleState.LISTENING

    async def start(self) -> None:
        if self.state is not LifecycleState.STOPPED:
            raise RuntimeError(f"Cannot start relay in state {self.state.value}")
        self._shutdown_task = None
        self.fatal_error = None
        self._set_state(LifecycleState.CONNECTING)
        try:
            await self.listener.start()
        except BaseException:
            self._set_state(LifecycleState.STOPPED)
            raise
        self._set_state(LifecycleState.LISTENING)
        self.started_at = utc_now()
        self._watchdog = asyncio.create_task(self._watch_upstream())

    async def _watch_upstream(self) -> None:
        error = await self.listener.wait_failed()
        self.fatal_error = error
        logger.critical(f"event=relay_fatal state={self.state.value} reason='{error}'")
        self.on_fatal(error)

    async def shutdown(self) -> None:
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self._drain())
        await asyncio.shield(self._shutdown_task)

    async def _drain(self) -> None:
        if self.state is LifecycleState.STOPPED:
            return
        self._set_state(LifecycleState.DRAINING)

        if self._watchdog is not None and not self._watchdog.done():
            self._watchdog.cancel()

        connections = self.registry.snapshot()
        logger.info(f"event=draining connections={len(connections)}")
        results = await asyncio.gather(
            *(c.close(GOING_AWAY, SHUTDOWN_REASON) for c in connections),
            return_exceptions=True,
        )
        for connection, result in zip(connections, results):
            if isinstance(result, Exception):
                logger.warning(f"client={connection.identity.email} event=close_failed reason='{result}'")
            self.registry.remove(connection)

        try:
            await self.listener.stop()
        except Exception as e:
            logger.error(f"event=upstream_close_failed reason='{e}'")

        if self.mirror is not None:
            await self.mirror.aclose()

        if self.release_transport is not None:
            await self.release_transport()

        self._set_state(LifecycleState.STOPPED)
        logger.info("Shutdown complete.")

    def _set_state(self, state: LifecycleState) -> None:
        logger.debug(f"event=state_change from={self.state.value} to={state.value}")
        self.state = state
