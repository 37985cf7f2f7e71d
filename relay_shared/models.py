"""
MODULE OVERVIEW:
This module defines the strictly typed data structures used by the relay server
and the bundled subscriber client, powered by Pydantic v2.

WHAT IS HAPPENING HERE:
Anything that crosses a boundary has a model here: the identity decoded from a
token, the event decoded from a PostgreSQL NOTIFY, the contact document we push
into the search index, and every JSON frame we put on a WebSocket.
"""
from typing import Any, Literal
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from .timeutil import isoformat, iso_now

# WHAT IS HAPPENING HERE:
# Built once per connection from the token claims and never changed afterwards.
class Identity(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    display_name: str
    session_id: str | None = None

# WHAT IS HAPPENING HERE:
# One PostgreSQL notification, decoded. The same instance is read by the search
# mirror and the broadcaster, so it must not be mutated.
class ChangeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_channel: str
    payload: Any = None
    observed_at: datetime

    def to_frame(self) -> "BroadcastFrame":
        return BroadcastFrame(
            channel=self.source_channel,
            payload=self.payload,
            timestamp=isoformat(self.observed_at),
        )

# The row shape published on the change-feed channel. Only `id` is needed to
# address the search document; the rest is copied through verbatim when present,
# whatever its column type.
class ContactRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | int
    given_name: Any = None
    sur_name: Any = None
    email: Any = None
    phone: Any = None
    mobile: Any = None
    salutation: Any = None
    gender: Any = None
    birth_date: Any = None
    created: Any = None
    modified: Any = None

# ==========================
# WIRE FRAMES
# ==========================
class BroadcastFrame(BaseModel):
    channel: str
    payload: Any = None
    timestamp: str

class WelcomeFrame(BaseModel):
    type: Literal["connection"] = "connection"
    message: str = "Connected to realtime notifications"
    user: str
    timestamp: str = Field(default_factory=iso_now)

class PongFrame(BaseModel):
    type: Literal["pong"] = "pong"
    timestamp: str = Field(default_factory=iso_now)

class ErrorFrame(BaseModel):
    type: Literal["error"] = "error"
    message: str
    hint: str | None = None

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)

# ==========================
# HTTP RESPONSES
# ==========================
class HealthResponse(BaseModel):
    status: Literal["ok", "error"]
    connections: int
    timestamp: str

class RelayStats(BaseModel):
    state: str
    connections: int
    events_relayed: int
    malformed_payloads: int
    pending_index_syncs: int
    failed_index_syncs: int
    uptime_s: float
    server_time: str
