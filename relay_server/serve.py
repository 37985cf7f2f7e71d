"""
MODULE OVERVIEW:
Runs the relay under uvicorn with our own shutdown ordering.

WHAT IS HAPPENING HERE:
Left alone, uvicorn closes open WebSockets itself (code 1012) before the
FastAPI lifespan gets to run. `RelayServer.shutdown` runs the relay's drain
first, so subscribers get 1001 "going away", the PostgreSQL subscription is
closed, and the listening sockets are released by the lifecycle itself.
uvicorn's own teardown then finds nothing left to do.

A lost upstream subscription flips `should_exit` and `serve()` reports a
non-zero exit code, as does a relay that never finished starting.
"""

import asyncio
import uvicorn
from loguru import logger

from relay_shared.config import Settings, settings as default_settings
from relay_shared.errors import UpstreamSubscriptionError

from .main import Relay, build_relay, create_app

EXIT_OK = 0
EXIT_FATAL = 1


class RelayServer(uvicorn.Server):
    def __init__(self, config: uvicorn.Config, relay: Relay):
        super().__init__(config)
        self.relay = relay
        self.exit_code = EXIT_OK
        relay.lifecycle.release_transport = self.release_listeners
        relay.lifecycle.on_fatal = self.on_fatal

    async def release_listeners(self) -> None:
        # uvicorn's own shutdown closes these again; close() is idempotent.
        for server in getattr(self, "servers", []):
            server.close()
        logger.info("event=listener_released")

    def on_fatal(self, error: UpstreamSubscriptionError) -> None:
        self.exit_code = EXIT_FATAL
        self.should_exit = True

    async def shutdown(self, sockets=None) -> None:
        await self.relay.lifecycle.shutdown()
        await super().shutdown(sockets=sockets)


def serve(settings: Settings | None = None) -> int:
    settings = settings or default_settings
    relay = build_relay(settings)
    config = uvicorn.Config(
        create_app(relay),
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        ws="auto",
    )
    server = RelayServer(config, relay)
    asyncio.run(server.serve())
    if not server.started:
        return EXIT_FATAL
    return server.exit_code
