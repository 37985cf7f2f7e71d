"""
MODULE OVERVIEW:
The FastAPI application factory.

WHAT IS HAPPENING HERE:
`build_relay()` wires the components together around one explicit
`ConnectionRegistry`. `create_app()` puts that relay on `app.state` and hands
its lifecycle to a `lifespan` context manager: on startup we subscribe to
PostgreSQL (a failure here aborts the server), on exit we drain. Tests pass in
their own listener class or mirror so no database or search index is needed.
"""

from dataclasses import dataclass
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from relay_shared.config import Settings, settings as default_settings

from .admission import Admission
from .broadcast import Broadcaster
from .connection_manager import ConnectionRegistry
from .lifecycle import Lifecycle
from .listener import UpstreamListener
from .message_handler import MessageHandler
from .middleware import TimingMiddleware
from .routes import ops, websocket
from .search_mirror import SearchMirror


@dataclass
class Relay:
    settings: Settings
    registry: ConnectionRegistry
    broadcaster: Broadcaster
    mirror: SearchMirror
    listener: UpstreamListener
    admission: Admission
    handler: MessageHandler
    lifecycle: Lifecycle


def build_relay(
    settings: Settings | None = None,
    mirror: SearchMirror | None = None,
    listener_cls: type[UpstreamListener] = UpstreamListener,
) -> Relay:
    settings = settings or default_settings
    registry = ConnectionRegistry()
    broadcaster = Broadcaster(registry)
    mirror = mirror or SearchMirror(settings)
    listener = listener_cls(broadcaster, mirror, settings)
    lifecycle = Lifecycle(registry, listener, mirror)
    admission = Admission(registry, settings, is_accepting=lambda: lifecycle.accepting)
    return Relay(
        settings=settings,
        registry=registry,
        broadcaster=broadcaster,
        mirror=mirror,
        listener=listener,
        admission=admission,
        handler=MessageHandler(settings),
        lifecycle=lifecycle,
    )


def create_app(relay: Relay | None = None) -> FastAPI:
    relay = relay or build_relay()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # STARTUP
        logger.info("Contact relay starting up...")
        await relay.lifecycle.start()
        logger.info(f"Relay listening on channels {', '.join(relay.listener.channels)}.")

        yield

        # SHUTDOWN
        logger.info("Relay shutting down. Draining connections...")
        await relay.lifecycle.shutdown()

    app = FastAPI(
        title="Contact Relay",
        description="Relays PostgreSQL change notifications to WebSocket subscribers",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.relay = relay

    # Add Middlewares
    app.add_middleware(TimingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(ops.router, tags=["Ops"])
    app.include_router(websocket.build_router(relay.settings.WS_PATH), tags=["Relay"])
    return app
