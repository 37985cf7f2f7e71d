from abc import ABC, abstractmethod
import asyncio
from typing import Any, Callable, Awaitable
from relay_shared.client_utils import make_client_stats, with_reconnect

class BaseRelayClient(ABC):
    def __init__(self, server_base_url: str, token: str):
        self.server_base_url = server_base_url.rstrip('/')
        self.token = token

        self.on_frame_callback: Callable[[dict[str, Any]], Awaitable[None]] | None = None
        self.on_status_change_callback: Callable[[str], Awaitable[None]] | None = None

        self.stats = make_client_stats()
        self._is_running = False

    @property
    def frames_received(self): return self.stats["frames_received"]

    @property
    def reconnect_count(self): return self.stats["reconnect_count"]

    def set_callbacks(self, on_frame, on_status_change=None):
        self.on_frame_callback = on_frame
        self.on_status_change_callback = on_status_change

    async def _emit_status(self, status: str):
        if self.on_status_change_callback:
            await self.on_status_change_callback(status)

    async def on_frame(self, frame: dict[str, Any]):
        self.stats["frames_received"] += 1
        if "channel" in frame:
            self.stats["broadcasts_received"] += 1
        if self.on_frame_callback:
            await self.on_frame_callback(frame)

    @abstractmethod
    async def connect(self) -> None:
        """The actual protocol loop runs here."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    async def run(self, duration_s: float | None = None) -> None:
        self._is_running = True
        try:
            await with_reconnect(self.connect, self.stats, duration_s, client=self.server_base_url)
        except asyncio.CancelledError:
            pass
        finally:
            self._is_running = False
            await self.disconnect()
            await self._emit_status("CLOSED")
