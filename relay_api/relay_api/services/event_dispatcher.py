"""Dispatch domain events through the event log.

Every dispatch writes a ``pending`` row to ``domain_events`` in its own
short transaction, runs the handler for the event type, and then moves the
row to ``processed`` (storing the handler result, or null when the result
is not JSON-serialisable) or ``failed`` (storing the error message).  If the
``processed`` write itself fails, the row is marked ``failed`` instead.
Handler errors are always re-raised to the caller.

Usage::

    dispatcher = get_event_dispatcher()
    order = await dispatcher.dispatch("order.created", {"tenant_id": "t1", "time_zone": "UTC"})
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from fastapi.encoders import jsonable_encoder
from relay_core.events import DomainActions, DomainEventType, EventPayload, parse_payload, resolve_handler
from relay_core.state.repository import DomainEventRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class EventDispatcher:
    """Persist-then-handle dispatcher for the closed set of domain events.

    Parameters
    ----------
    session_factory:
        Factory for the short-lived sessions used to write the event row.
    actions:
        Storage operations invoked by the handlers.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        actions: DomainActions,
    ) -> None:
        self._session_factory = session_factory
        self._actions = actions

    async def dispatch(
        self,
        event_type: DomainEventType | str,
        payload: dict[str, Any] | EventPayload,
    ) -> Any:
        """Record, handle and finalise one domain event.

        Parameters
        ----------
        event_type:
            A :class:`DomainEventType` member or its string value.
        payload:
            Raw payload dict or an already-built payload model.

        Returns
        -------
        Any
            Whatever the handler returned.

        Raises
        ------
        ValueError
            If *event_type* is unknown or *payload* fails validation.  No
            row is written in that case.
        Exception
            Any error raised by the handler, or by the ``processed`` write,
            after the row is marked ``failed``.
        """
        event_type = DomainEventType(event_type)
        model = parse_payload(event_type, payload)
        event_id = await self._append(event_type, model)

        handler = resolve_handler(event_type, self._actions)
        try:
            result = await handler(model)
        except BaseException as exc:
            # Shield so a cancelled caller still leaves a terminal row.
            try:
                await asyncio.shield(self._mark_failed(event_id, event_type, exc))
            except Exception:
                logger.exception("Could not mark domain event %d failed", event_id)
            raise

        try:
            await asyncio.shield(self._mark_processed(event_id, event_type, self._encode_result(event_id, result)))
        except Exception as exc:
            logger.exception("Could not mark domain event %d processed", event_id)
            try:
                await asyncio.shield(self._mark_failed(event_id, event_type, exc))
            except Exception:
                logger.exception("Could not mark domain event %d failed", event_id)
            raise
        return result

    @staticmethod
    def _encode_result(event_id: int, result: Any) -> Any:
        try:
            return jsonable_encoder(result)
        except (TypeError, ValueError):
            logger.warning("Result of domain event %d is not JSON-serialisable; storing null", event_id)
            return None

    async def _append(self, event_type: DomainEventType, model: EventPayload) -> int:
        async with self._session_factory() as session:
            repo = DomainEventRepository(session)
            event_id = await repo.append(
                event_type.value,
                model.model_dump(mode="json"),
                tenant_id=model.tenant_id,
            )
            await session.commit()
        logger.debug(
            "Domain event %d recorded (%s)",
            event_id,
            event_type.value,
            extra={"event_id": event_id, "event_type": event_type.value, "tenant_id": model.tenant_id},
        )
        return event_id

    async def _mark_processed(self, event_id: int, event_type: DomainEventType, result: Any) -> None:
        async with self._session_factory() as session:
            await DomainEventRepository(session).mark_processed(event_id, result)
            await session.commit()
        logger.info(
            "Domain event %d processed (%s)",
            event_id,
            event_type.value,
            extra={"event_id": event_id, "event_type": event_type.value},
        )

    async def _mark_failed(self, event_id: int, event_type: DomainEventType, exc: BaseException) -> None:
        message = _error_message(exc)
        async with self._session_factory() as session:
            await DomainEventRepository(session).mark_failed(event_id, message)
            await session.commit()
        logger.warning(
            "Domain event %d failed (%s): %s",
            event_id,
            event_type.value,
            message,
            extra={"event_id": event_id, "event_type": event_type.value},
        )


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_dispatcher: EventDispatcher | None = None


def init_event_dispatcher(
    session_factory: async_sessionmaker[AsyncSession],
    actions: DomainActions,
) -> EventDispatcher:
    """Create the global dispatcher.  Called by the host application at startup."""
    global _dispatcher  # noqa: PLW0603
    _dispatcher = EventDispatcher(session_factory, actions)
    logger.info("Event dispatcher initialised")
    return _dispatcher


def get_event_dispatcher() -> EventDispatcher:
    """Return the global dispatcher.

    Raises
    ------
    RuntimeError
        If :func:`init_event_dispatcher` has not been called.
    """
    if _dispatcher is None:
        raise RuntimeError("Event dispatcher has not been initialised. Call init_event_dispatcher() at startup.")
    return _dispatcher
