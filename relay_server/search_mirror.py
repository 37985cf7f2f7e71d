"""
MODULE OVERVIEW:
Keeps the Meilisearch `contacts` index in step with the change-feed channel.

WHAT IS HAPPENING HERE:
This is a side channel. Real-time delivery must never wait for it or fail
because of it, so `sync()` and `sync_change()` swallow every error after
logging it and bumping `failures`. The listener runs them as detached tasks.

We talk to Meilisearch's REST API directly with httpx:
  upsert -> POST   /indexes/{index}/documents?primaryKey=id   (add or replace)
  delete -> DELETE /indexes/{index}/documents/{id}
"""

from enum import Enum
from urllib.parse import quote
from typing import Any, Mapping
import httpx
from loguru import logger
from pydantic import ValidationError

from relay_shared.config import Settings, settings as default_settings
from relay_shared.errors import IndexSyncError
from relay_shared.models import ChangeEvent, ContactRecord


class SyncAction(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


# Trigger payloads carry the SQL operation, in whatever case the trigger wrote it.
_ACTIONS = {
    "insert": SyncAction.UPSERT,
    "update": SyncAction.UPSERT,
    "upsert": SyncAction.UPSERT,
    "delete": SyncAction.DELETE,
}


def resolve_action(value: Any) -> SyncAction | None:
    if isinstance(value, SyncAction):
        return value
    if not isinstance(value, str):
        return None
    return _ACTIONS.get(value.lower())


class SearchMirror:
    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None):
        self.settings = settings or default_settings
        self._owns_client = client is None
        if client is None:
            headers = {}
            if self.settings.MEILI_API_KEY:
                headers["Authorization"] = f"Bearer {self.settings.MEILI_API_KEY}"
            client = httpx.AsyncClient(
                base_url=self.settings.MEILI_URL,
                headers=headers,
                timeout=self.settings.MEILI_TIMEOUT_S,
            )
        self.client = client
        self.synced = 0
        self.failures = 0

    @property
    def documents_path(self) -> str:
        return f"/indexes/{self.settings.MEILI_INDEX}/documents"

    async def sync_change(self, event: ChangeEvent) -> None:
        """Translate one change-feed event into an index call."""
        payload = event.payload
        if not isinstance(payload, Mapping):
            logger.warning(f"channel={event.source_channel} event=index_sync_skipped reason='payload is not an object'")
            return

        raw_action = payload.get("action") or payload.get("operation")
        record = payload.get("data")
        record = dict(record) if isinstance(record, Mapping) else {}
        if record.get("id") is None and payload.get("id") is not None:
            record["id"] = payload["id"]

        action = resolve_action(raw_action)
        if action is None:
            logger.warning(f"channel={event.source_channel} event=index_sync_skipped reason='unknown action {raw_action!r}'")
            return
        await self.sync(action, record)

    async def sync(self, action: SyncAction | str, record: Mapping[str, Any]) -> None:
        resolved = resolve_action(action)
        if resolved is None:
            logger.warning(f"event=index_sync_skipped reason='unknown action {action!r}'")
            return

        try:
            contact = ContactRecord.model_validate(record)
            if resolved is SyncAction.UPSERT:
                await self._upsert(contact)
            else:
                await self._delete(contact)
        except ValidationError as e:
            self.failures += 1
            logger.error(f"action={resolved.value} event=index_sync_failed reason='malformed record: {e.error_count()} error(s)'")
            return
        except Exception as e:
            self.failures += 1
            logger.error(f"action={resolved.value} event=index_sync_failed reason='{e}'")
            return

        self.synced += 1
        logger.info(f"action={resolved.value} id={contact.id} event=index_synced")

    async def _upsert(self, contact: ContactRecord) -> None:
        document = contact.model_dump(exclude_unset=True)
        resp = await self.client.post(self.documents_path, params={"primaryKey": "id"}, json=[document])
        self._check(resp)

    async def _delete(self, contact: ContactRecord) -> None:
        resp = await self.client.delete(f"{self.documents_path}/{quote(str(contact.id), safe='')}")
        self._check(resp)

    @staticmethod
    def _check(resp: httpx.Response) -> None:
        if resp.is_error:
            raise IndexSyncError(f"{resp.request.method} {resp.request.url.path} returned {resp.status_code}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
