import asyncio
from typing import Callable, Awaitable
from loguru import logger

from .backoff import backoff_delay
from .timeutil import iso_now


def make_client_stats() -> dict:
    """
    Returns a fresh stats dictionary with zeroed counters.
    Every client calls this once in __init__.
    Keys: frames_received, broadcasts_received, reconnect_count,
          bytes_received, last_frame_at, connected_at.
    """
    return {
        "frames_received": 0,
        "broadcasts_received": 0,
        "reconnect_count": 0,
        "bytes_received": 0,
        "last_frame_at": None,
        "connected_at": iso_now(),
    }


async def with_reconnect(
    connect_fn: Callable[[], Awaitable[None]],
    stats: dict,
    duration_s: float | None,
    base_delay_s: float = 1.0,
    max_delay_s: float = 32.0,
    client: str = "unknown",
) -> None:
    """
    Wraps an async connect function with automatic reconnection.

    `duration_s=None` runs until the connect function raises something that is
    not a transport error (an authentication rejection, for instance).
    """
    import httpx
    import websockets
    attempt = 0
    loop = asyncio.get_running_loop()
    start_time = loop.time()

    while True:
        remaining = None
        if duration_s is not None:
            remaining = duration_s - (loop.time() - start_time)
            if remaining <= 0:
                break

        try:
            # We want to wait for connect_fn, but cap it at the remaining duration
            await asyncio.wait_for(connect_fn(), timeout=remaining)
            attempt = 0
        except asyncio.TimeoutError:
            # Reached max duration normally
            break
        except (ConnectionError, OSError, websockets.WebSocketException, httpx.HTTPError) as e:
            attempt += 1
            delay = backoff_delay(attempt, base_delay_s, max_delay_s)
            stats["reconnect_count"] += 1
            logger.warning(f"client={client} attempt={attempt} delay={delay:.2f}s error='{e}'")
            if duration_s is not None:
                remaining = duration_s - (loop.time() - start_time)
                if remaining <= 0:
                    break
                delay = min(delay, remaining)
            await asyncio.sleep(delay)
