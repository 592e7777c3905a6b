"""Reconnecting consumer of the invalidation event stream.

Connects to ``/api/v1/events/stream``, reads server-sent events and evicts
cached queries for every ``invalidate`` notice, using
:data:`relay_core.invalidation.TABLE_INVALIDATION_MAP` unless a per-table
handler overrides it.

Reconnects with exponential backoff (1 s doubling to 16 s), reset to 1 s
whenever the server sends ``connected``.  Reconnects carry the last seen
cursor in ``Last-Event-ID`` so no notice is replayed.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import ValidationError
from relay_core.invalidation import TABLE_INVALIDATION_MAP, InvalidationNotice, NotifyTable

from relay_client.cache import QueryCache

logger = logging.getLogger(__name__)

INITIAL_RETRY_SECONDS = 1.0
MAX_RETRY_SECONDS = 16.0

TableHandler = Callable[[QueryCache, InvalidationNotice], Awaitable[None] | None]
NoticeCallback = Callable[[InvalidationNotice], None]


# ---------------------------------------------------------------------------
# SSE decoding
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SSEMessage:
    event: str
    data: str
    id: str | None = None


class SSEDecoder:
    """Incremental decoder turning stream lines into :class:`SSEMessage` objects."""

    def __init__(self) -> None:
        self._event = ""
        self._data: list[str] = []
        self._id: str | None = None

    def decode(self, line: str) -> SSEMessage | None:
        """Feed one line (without its terminator).  Returns a message on a blank line."""
        line = line.rstrip("\r\n")
        if not line:
            if not self._event and not self._data:
                return None
            message = SSEMessage(event=self._event or "message", data="\n".join(self._data), id=self._id)
            self._event = ""
            self._data = []
            self._id = None
            return message

        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id" and "\0" not in value:
            self._id = value
        return None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class InvalidationClient:
    """Keep a :class:`QueryCache` in step with the server's invalidation stream.

    Parameters
    ----------
    base_url:
        Root URL of the API (e.g. ``http://localhost:8000``).
    cache:
        Cache whose keys are evicted.
    path:
        Stream path under *base_url*.
    handlers:
        Per-table overrides called instead of the static key map.
    on_notice:
        Called with every applied notice.
    headers:
        Extra request headers, e.g. ``Authorization``.
    last_event_id:
        Cursor to resume after on the first connection.
    transport:
        Optional httpx transport, used by tests.
    sleep:
        Coroutine used to wait between reconnects.
    """

    def __init__(
        self,
        base_url: str,
        cache: QueryCache,
        *,
        path: str = "/api/v1/events/stream",
        handlers: Mapping[NotifyTable | str, TableHandler] | None = None,
        on_notice: NoticeCallback | None = None,
        headers: Mapping[str, str] | None = None,
        last_event_id: str | None = None,
        initial_retry: float = INITIAL_RETRY_SECONDS,
        max_retry: float = MAX_RETRY_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._cache = cache
        self._path = path
        self._handlers = {NotifyTable(table): handler for table, handler in (handlers or {}).items()}
        self._on_notice = on_notice
        self._initial_retry = initial_retry
        self._max_retry = max_retry
        self._retry = initial_retry
        self._sleep = sleep
        self._last_event_id: str | None = last_event_id or None
        self._closed = False
        self._task: asyncio.Task[None] | None = None
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=dict(headers or {}),
            timeout=httpx.Timeout(10.0, read=None),
            transport=transport,
        )

    @property
    def retry_delay(self) -> float:
        """Delay before the next reconnect attempt."""
        return self._retry

    @property
    def last_event_id(self) -> str | None:
        return self._last_event_id

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> asyncio.Task[None]:
        """Run the reconnect loop as a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def run(self) -> None:
        """Consume the stream until :meth:`close` is called."""
        while not self._closed:
            try:
                await self._consume()
            except httpx.HTTPError as exc:
                logger.warning("Invalidation stream error: %s", exc)
            if self._closed:
                break
            delay = self._retry
            self._retry = min(self._retry * 2, self._max_retry)
            logger.info("Reconnecting invalidation stream in %.1fs", delay)
            await self._sleep(delay)

    async def close(self) -> None:
        """Stop reconnecting, cancel the loop and close the HTTP client."""
        self._closed = True
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._client.aclose()

    async def _consume(self) -> None:
        headers = {"Accept": "text/event-stream"}
        if self._last_event_id:
            headers["Last-Event-ID"] = self._last_event_id

        async with self._client.stream("GET", self._path, headers=headers) as response:
            response.raise_for_status()
            decoder = SSEDecoder()
            async for line in response.aiter_lines():
                message = decoder.decode(line)
                if message is not None:
                    await self.handle_message(message)
                if self._closed:
                    return

    async def handle_message(self, message: SSEMessage) -> None:
        """Apply one decoded stream message."""
        if message.event == "connected":
            self._retry = self._initial_retry
            self._remember_cursor(message.data)
            logger.debug("Invalidation stream connected: %s", message.data)
        elif message.event == "invalidate":
            if message.id:
                self._last_event_id = message.id
            try:
                notice = InvalidationNotice.model_validate_json(message.data)
            except ValidationError:
                logger.debug("Ignoring malformed invalidation notice: %r", message.data)
                return
            try:
                await self._apply(notice)
            except Exception:
                logger.exception("Invalidation handler failed for table=%s", notice.table.value)
        elif message.event == "heartbeat":
            logger.debug("Invalidation stream heartbeat")

    def _remember_cursor(self, data: str) -> None:
        # The connected cursor is the resume point until a notice id arrives.
        if self._last_event_id is not None:
            return
        try:
            cursor = int(json.loads(data).get("cursor", 0))
        except (ValueError, TypeError, AttributeError):
            return
        if cursor > 0:
            self._last_event_id = str(cursor)

    async def _apply(self, notice: InvalidationNotice) -> None:
        handler = self._handlers.get(notice.table)
        if handler is not None:
            result = handler(self._cache, notice)
            if inspect.isawaitable(result):
                await result
        else:
            for key in TABLE_INVALIDATION_MAP.get(notice.table, ()):
                self._cache.invalidate(key)
        if self._on_notice is not None:
            self._on_notice(notice)
