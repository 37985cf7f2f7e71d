"""
MODULE OVERVIEW:
Plain HTTP introspection: the liveness probe and a stats snapshot.
"""
from fastapi import APIRouter, Request

from relay_shared.models import HealthResponse, RelayStats
from relay_shared.timeutil import iso_now, utc_now

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    relay = request.app.state.relay
    return HealthResponse(status="ok", connections=len(relay.registry), timestamp=iso_now())


@router.get("/stats", response_model=RelayStats)
async def get_stats(request: Request):
    relay = request.app.state.relay
    started_at = relay.lifecycle.started_at
    return RelayStats(
        state=relay.lifecycle.state.value,
        connections=len(relay.registry),
        events_relayed=relay.listener.events_relayed,
        malformed_payloads=relay.listener.malformed_payloads,
        pending_index_syncs=relay.listener.pending_syncs,
        failed_index_syncs=relay.mirror.failures,
        uptime_s=(utc_now() - started_at).total_seconds() if started_at else 0.0,
        server_time=iso_now(),
    )
