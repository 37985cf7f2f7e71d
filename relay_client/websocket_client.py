"""
MODULE OVERVIEW:
A subscriber for the relay, used by `runner.py tail`.

WHAT IS HAPPENING HERE:
We use the `websockets` library. One task reads frames, a second sends an
application-level `ping` every few seconds so we notice a dead relay.
A 1008 close means the relay rejected our token; that is not worth retrying,
so it surfaces as `AuthenticationError` instead of going through the
reconnect loop.
"""

import asyncio
import json
from urllib.parse import urlencode
import websockets
from loguru import logger

from relay_client.base_client import BaseRelayClient
from relay_shared.errors import AuthenticationError

POLICY_VIOLATION = 1008

class WebSocketRelayClient(BaseRelayClient):
    def __init__(self, server_base_url: str, token: str, path: str = "/", ping_interval_s: float = 20.0):
        super().__init__(server_base_url, token)
        base = self.server_base_url.replace('http://', 'ws://').replace('https://', 'wss://')
        self.ws_url = f"{base}{path}?{urlencode({'token': token})}"
        self.ping_interval_s = ping_interval_s
        self._ws = None

    async def disconnect(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    async def connect(self) -> None:
        async with websockets.connect(self.ws_url, ping_interval=None) as ws:
            self._ws = ws
            await self._emit_status("ACTIVE")
            pinger = asyncio.create_task(self._ping_loop())
            try:
                async for message in ws:
                    try:
                        frame = json.loads(message)
                    except json.JSONDecodeError:
                        logger.warning(f"event=invalid_frame raw={message[:200]!r}")
                        continue
                    self.stats["bytes_received"] += len(message)
                    self.stats["last_frame_at"] = frame.get("timestamp")
                    await self.on_frame(frame)
            except websockets.ConnectionClosed as e:
                if e.rcvd is not None and e.rcvd.code == POLICY_VIOLATION:
                    raise AuthenticationError(e.rcvd.reason or "Rejected by relay") from e
                raise
            finally:
                pinger.cancel()
                self._ws = None

            # `async for` ends quietly on a clean close; check why the relay hung up.
            if ws.close_code == POLICY_VIOLATION:
                raise AuthenticationError(ws.close_reason or "Rejected by relay")
            raise ConnectionError(f"Relay closed the connection (code={ws.close_code} reason='{ws.close_reason}')")

    async def _ping_loop(self) -> None:
        while True:
            await asyncio.sleep(self.ping_interval_s)
            await self.send({"type": "ping"})

    async def send(self, message: dict) -> None:
        if self._ws is None:
            raise ConnectionError("Not connected")
        await self._ws.send(json.dumps(message))
