"""Per-connection relay tailing ``domain_events`` into SSE invalidation frames.

Lifecycle: ``connecting`` (cursor resolved) -> ``streaming`` -> ``closed``.

While streaming, three tasks feed one queue:

* poll -- every ``poll_interval`` seconds, read up to ``batch_size``
  processed rows with ``id > cursor`` and emit one ``invalidate`` frame per
  affected notify table, advancing the cursor row by row.
* heartbeat -- every ``heartbeat_interval`` seconds.
* lifetime -- closes the stream after ``max_lifetime`` seconds.

Client disconnect or lifetime expiry cancels all three together.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from enum import Enum
from typing import TYPE_CHECKING, Any

from relay_core.invalidation import InvalidationNotice, notices_for_event
from relay_core.state.repository import DomainEventRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


class RelayState(str, Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    CLOSED = "closed"


def format_sse(event: str, data: Any, event_id: int | str | None = None) -> str:
    """Encode one server-sent event frame."""
    frame = f"event: {event}\n"
    if event_id is not None:
        frame += f"id: {event_id}\n"
    frame += f"data: {json.dumps(data, separators=(',', ':'))}\n\n"
    return frame


def parse_last_event_id(value: str | None) -> int | None:
    """Return a positive cursor from a ``Last-Event-ID`` header, else ``None``."""
    if not value:
        return None
    try:
        cursor = int(value.strip())
    except ValueError:
        return None
    return cursor if cursor > 0 else None


class InvalidationRelay:
    """Stream cache-invalidation notices for one client connection.

    Parameters
    ----------
    session_factory:
        Factory for the short-lived sessions used by each poll.
    poll_interval:
        Seconds between event-log polls.
    heartbeat_interval:
        Seconds between heartbeat frames.
    max_lifetime:
        Seconds after which the stream closes and the client reconnects.
    batch_size:
        Maximum rows read per poll.
    tenant_id:
        When set, only rows for this tenant are relayed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        poll_interval: float = 3.0,
        heartbeat_interval: float = 30.0,
        max_lifetime: float = 300.0,
        batch_size: int = 50,
        tenant_id: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._poll_interval = poll_interval
        self._heartbeat_interval = heartbeat_interval
        self._max_lifetime = max_lifetime
        self._batch_size = batch_size
        self._tenant_id = tenant_id
        self._cursor: int | None = None
        self._state = RelayState.CONNECTING

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def cursor(self) -> int | None:
        return self._cursor

    async def open(self, last_event_id: str | None = None) -> int:
        """Resolve the starting cursor.

        A numeric ``Last-Event-ID`` resumes from that id.  Otherwise the
        relay starts at the current end of the log and does not replay
        history.
        """
        cursor = parse_last_event_id(last_event_id)
        if cursor is None:
            async with self._session_factory() as session:
                cursor = await DomainEventRepository(session).max_id()
        self._cursor = cursor
        logger.debug("Relay opened at cursor=%d tenant=%s", cursor, self._tenant_id)
        return cursor

    async def poll_once(self) -> list[InvalidationNotice]:
        """Read the next batch past the cursor and return its notices.

        Rows whose event type maps to no notify table yield no notice but
        still advance the cursor.
        """
        if self._cursor is None:
            await self.open()
        assert self._cursor is not None

        async with self._session_factory() as session:
            rows = await DomainEventRepository(session).list_processed_after(
                self._cursor,
                limit=self._batch_size,
                tenant_id=self._tenant_id,
            )

        notices: list[InvalidationNotice] = []
        for row in rows:
            notices.extend(notices_for_event(row.id, row.event_type, row.payload))
            self._cursor = row.id
        return notices

    async def stream(self) -> AsyncIterator[str]:
        """Yield SSE frames until the lifetime cap or until the consumer stops."""
        if self._cursor is None:
            await self.open()

        queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._state = RelayState.STREAMING
        tasks = [
            asyncio.create_task(self._poll_loop(queue)),
            asyncio.create_task(self._heartbeat_loop(queue)),
            asyncio.create_task(self._lifetime(queue)),
        ]
        try:
            yield format_sse("connected", {"cursor": self._cursor})
            while True:
                frame = await queue.get()
                if frame is None:
                    break
                yield frame
        finally:
            self._state = RelayState.CLOSED
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug(
                "Relay closed at cursor=%s",
                self._cursor,
                extra={"cursor": self._cursor, "tenant_id": self._tenant_id},
            )

    async def _poll_loop(self, queue: asyncio.Queue[str | None]) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                notices = await self.poll_once()
            except Exception:
                logger.exception(
                    "Relay poll failed at cursor=%s",
                    self._cursor,
                    extra={"cursor": self._cursor, "tenant_id": self._tenant_id},
                )
                continue
            for notice in notices:
                await queue.put(format_sse("invalidate", notice.model_dump(mode="json"), event_id=notice.cursor))

    async def _heartbeat_loop(self, queue: asyncio.Queue[str | None]) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            await queue.put(
                format_sse("heartbeat", {"type": "heartbeat", "timestamp": int(time.time() * 1000)})
            )

    async def _lifetime(self, queue: asyncio.Queue[str | None]) -> None:
        await asyncio.sleep(self._max_lifetime)
        await queue.put(None)
