"""Server-sent event stream of cache-invalidation notices."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Header
from fastapi.responses import StreamingResponse

from relay_api.dependencies import ClaimsDep, SessionFactoryDep, SettingsDep
from relay_api.services.invalidation_relay import InvalidationRelay

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/events", tags=["events"])

_STREAM_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/stream")
async def event_stream(
    settings: SettingsDep,
    session_factory: SessionFactoryDep,
    claims: ClaimsDep,
    last_event_id: Annotated[str | None, Header(alias="Last-Event-ID")] = None,
) -> StreamingResponse:
    """Tail the domain event log as ``text/event-stream``.

    A numeric ``Last-Event-ID`` resumes after that id; otherwise the stream
    starts at the current end of the log.  When a session secret is
    configured a valid session is required, and a session bound to a
    tenant only receives that tenant's notices.
    """
    relay_tenant = claims.tenant_id if claims is not None else None
    relay = InvalidationRelay(
        session_factory,
        poll_interval=settings.relay_poll_interval_seconds,
        heartbeat_interval=settings.relay_heartbeat_interval_seconds,
        max_lifetime=settings.relay_max_connection_seconds,
        batch_size=settings.relay_batch_size,
        tenant_id=relay_tenant,
    )
    cursor = await relay.open(last_event_id)
    logger.info(
        "Invalidation stream opened cursor=%d sub=%s",
        cursor,
        claims.sub if claims is not None else "anonymous",
        extra={"cursor": cursor, "tenant_id": relay_tenant},
    )
    return StreamingResponse(relay.stream(), media_type="text/event-stream", headers=_STREAM_HEADERS)
