"""
MODULE OVERVIEW:
The single upstream subscription: one dedicated asyncpg connection that
LISTENs on the change-feed and record-lock channels.

WHAT IS HAPPENING HERE:
asyncpg calls `_on_notification` for every NOTIFY, one at a time and in the
order PostgreSQL delivered them. The callback is deliberately synchronous:
  1. decode the JSON payload (a bad one is logged and dropped),
  2. for the change-feed channel, spawn the search sync as a detached task,
  3. hand the event to the broadcaster, which only enqueues.
Nothing in that path awaits, so one slow consumer can never hold up the next
notification.

If the connection dies underneath us we try to reconnect a few times. When that
fails the error is parked in `wait_failed()` for the lifecycle to escalate; the
relay is useless without its event source.
"""

import asyncio
import json
from typing import Set
import asyncpg
from loguru import logger

from relay_shared.backoff import backoff_delay
from relay_shared.config import Settings, settings as default_settings
from relay_shared.errors import MalformedPayload, UpstreamSubscriptionError
from relay_shared.models import ChangeEvent
from relay_shared.timeutil import utc_now

from .broadcast import Broadcaster
from .search_mirror import SearchMirror


class UpstreamListener:
    def __init__(
        self,
        broadcaster: Broadcaster,
        mirror: SearchMirror,
        settings: Settings | None = None,
    ):
        self.broadcaster = broadcaster
        self.mirror = mirror
        self.settings = settings or default_settings
        self.connection: asyncpg.Connection | None = None

        self._stopping = False
        self._sync_tasks: Set[asyncio.Task] = set()
        self._reconnect_task: asyncio.Task | None = None
        self._failed: asyncio.Future | None = None

        self.events_relayed = 0
        self.malformed_payloads = 0

    @property
    def channels(self) -> tuple[str, str]:
        return (self.settings.CHANGE_CHANNEL, self.settings.LOCK_CHANNEL)

    @property
    def pending_syncs(self) -> int:
        return len(self._sync_tasks)

    # ==========================
    # SUBSCRIPTION
    # ==========================
    async def start(self) -> None:
        self._stopping = False
        self._failed = asyncio.get_running_loop().create_future()
        try:
            await self._subscribe()
        except Exception as e:
            logger.error(f"event=upstream_connect_failed reason='{e}'")
            raise UpstreamSubscriptionError(f"Could not subscribe to {', '.join(self.channels)}: {e}") from e

    async def _subscribe(self) -> None:
        connection = await asyncpg.connect(**self.settings.pg_connect_kwargs())
        try:
            for channel in self.channels:
                await connection.add_listener(channel, self._on_notification)
            connection.add_termination_listener(self._on_termination)
            rows = await connection.fetch("SELECT pg_listening_channels() AS channel")
        except BaseException:
            await connection.close()
            raise
        self.connection = connection
        logger.info(f"event=upstream_listening channels={[r['channel'] for r in rows]}")

    async def stop(self) -> None:
        """Close the subscription, then let in-flight index syncs finish."""
        self._stopping = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            await asyncio.gather(self._reconnect_task, return_exceptions=True)

        connection, self.connection = self.connection, None
        if connection is not None and not connection.is_closed():
            try:
                for channel in self.channels:
                    await connection.remove_listener(channel, self._on_notification)
            except Exception as e:
                logger.warning(f"event=upstream_unlisten_failed reason='{e}'")
            finally:
                await connection.close()

        if self._sync_tasks:
            await asyncio.gather(*self._sync_tasks, return_exceptions=True)
        logger.info("event=upstream_closed")

    async def wait_failed(self) -> UpstreamSubscriptionError:
        """Resolves only if the subscription is lost for good."""
        if self._failed is None:
            self._failed = asyncio.get_running_loop().create_future()
        return await asyncio.shield(self._failed)

    # ==========================
    # NOTIFICATIONS
    # ==========================
    def _on_notification(self, connection, pid: int, channel: str, payload: str) -> None:
        try:
            self.dispatch(channel, payload)
        except MalformedPayload as e:
            self.malformed_payloads += 1
            logger.error(f"channel={channel} pid={pid} event=payload_dropped reason='{e}' raw={e.raw[:200]!r}")

    def dispatch(self, channel: str, raw_payload: str | None) -> ChangeEvent:
        event = ChangeEvent(
            source_channel=channel,
            payload=self.decode(channel, raw_payload),
            observed_at=utc_now(),
        )
        logger.debug(f"channel={channel} event=notification")

        if channel == self.settings.CHANGE_CHANNEL:
            self._spawn_sync(event)

        count = self.broadcaster.broadcast(event)
        self.events_relayed += 1
        logger.info(f"channel={channel} event=broadcast recipients={count}")
        return event

    @staticmethod
    def decode(channel: str, raw_payload: str | None):
        if not raw_payload:
            return None
        try:
            return json.loads(raw_payload)
        except json.JSONDecodeError as e:
            raise MalformedPayload(channel, raw_payload) from e

    def _spawn_sync(self, event: ChangeEvent) -> None:
        # Detached: the notification path neither awaits nor inspects it.
        task = asyncio.get_running_loop().create_task(self.mirror.sync_change(event))
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_tasks.discard)

    # ==========================
    # CONNECTION LOSS
    # ==========================
    def _on_termination(self, connection) -> None:
        if self._stopping or connection is not self.connection:
            return
        logger.error("event=upstream_lost reason='connection terminated'")
        self.connection = None
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        attempts = self.settings.UPSTREAM_RECONNECT_ATTEMPTS
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            delay = backoff_delay(
                attempt,
                self.settings.UPSTREAM_RECONNECT_BASE_DELAY_S,
                self.settings.UPSTREAM_RECONNECT_MAX_DELAY_S,
            )
            logger.warning(f"event=upstream_reconnect attempt={attempt}/{attempts} delay={delay:.2f}s")
            await asyncio.sleep(delay)
            if self._stopping:
                return
            try:
                await self._subscribe()
                logger.info(f"event=upstream_reconnected attempt={attempt}")
                return
            except Exception as e:
                last_error = e
                logger.warning(f"event=upstream_reconnect_failed attempt={attempt} reason='{e}'")

        self._fail(UpstreamSubscriptionError(f"Upstream subscription lost after {attempts} reconnect attempt(s): {last_error}"))

    def _fail(self, error: UpstreamSubscriptionError) -> None:
        logger.critical(f"event=upstream_failed reason='{error}'")
        if self._failed is not None and not self._failed.done():
            self._failed.set_result(error)
