"""Shared fixtures for relay_api unit tests.

Each test gets its own file-backed SQLite store under ``tmp_path``.  The
``make_client`` factory builds an application with the settings, session
factory, entitlement gate and provider client dependencies overridden; the
lifespan is not run by ``ASGITransport``.  The provider client talks to an
``httpx.MockTransport`` serving the ``provider_api`` routes.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from relay_core.state.repository import CredentialRepository, DomainEventRepository
from relay_core.state.sqlite_adapter import create_local_tables, get_local_engine
from relay_core.state.tables import DomainEventTable, PaymentAttemptTable
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from relay_api.config import APISettings
from relay_api.dependencies import get_session_factory, get_settings
from relay_api.main import create_app
from relay_api.services.entitlement_service import EntitlementGate, get_entitlement_gate
from relay_api.services.provider_client import ProviderClient, get_provider_client

ClientFactory = Callable[..., Awaitable[AsyncClient]]


@pytest.fixture
def settings(tmp_path) -> APISettings:
    return APISettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        relay_poll_interval_seconds=0.02,
        relay_heartbeat_interval_seconds=60.0,
        relay_max_connection_seconds=0.3,
    )


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    eng = get_local_engine(tmp_path / "api.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


ProviderRoutes = dict[str, tuple[int, Any]]


@pytest.fixture
def provider_api() -> ProviderRoutes:
    """Canned provider responses keyed by ``"METHOD /path"``; unknown routes return 404."""
    return {}


@pytest.fixture
def provider_requests() -> list[httpx.Request]:
    return []


@pytest_asyncio.fixture
async def provider_client(
    provider_api: ProviderRoutes,
    provider_requests: list[httpx.Request],
) -> AsyncGenerator[ProviderClient, None]:
    def handler(request: httpx.Request) -> httpx.Response:
        provider_requests.append(request)
        route = provider_api.get(f"{request.method} {request.url.path}")
        if route is None:
            return httpx.Response(404, json={"message": "not_found"})
        status_code, body = route
        return httpx.Response(status_code, json=body)

    client = ProviderClient(
        api_url="https://api.provider.test",
        auth_url="https://auth.provider.test",
        client_id="app-1",
        client_secret="app-secret",
        redirect_uri="https://pos.example/api/v1/payments/oauth/callback",
        transport=httpx.MockTransport(handler),
    )
    yield client
    await client.close()


@pytest_asyncio.fixture
async def make_client(
    settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
    provider_client: ProviderClient,
) -> AsyncGenerator[ClientFactory, None]:
    clients: list[AsyncClient] = []

    async def _make(
        app_settings: APISettings | None = None,
        overrides: dict[Callable[..., Any], Callable[..., Any]] | None = None,
    ) -> AsyncClient:
        active = app_settings or settings
        app = create_app()
        app.dependency_overrides[get_settings] = lambda: active
        app.dependency_overrides[get_session_factory] = lambda: session_factory
        gate = EntitlementGate(session_factory, enabled=active.entitlement_enabled)
        app.dependency_overrides[get_entitlement_gate] = lambda: gate
        app.dependency_overrides[get_provider_client] = lambda: provider_client
        app.dependency_overrides.update(overrides or {})
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
        clients.append(client)
        return client

    yield _make

    for client in clients:
        await client.aclose()


async def _insert_event(
    session_factory: async_sessionmaker[AsyncSession],
    event_type: str,
    payload: dict[str, Any],
    *,
    event_id: int | None = None,
    status: str = "processed",
    tenant_id: str | None = "t1",
) -> int:
    """Write one event-log row directly, bypassing the dispatcher."""
    async with session_factory() as session:
        if event_id is None:
            repo = DomainEventRepository(session)
            event_id = await repo.append(event_type, payload, tenant_id=tenant_id)
            if status == "processed":
                await repo.mark_processed(event_id)
            elif status == "failed":
                await repo.mark_failed(event_id, "failed")
        else:
            session.add(
                DomainEventTable(
                    id=event_id,
                    event_type=event_type,
                    payload=payload,
                    status=status,
                    tenant_id=tenant_id,
                )
            )
            await session.flush()
        await session.commit()
    return event_id


EventWriter = Callable[..., Awaitable[int]]


@pytest.fixture
def write_event(session_factory: async_sessionmaker[AsyncSession]) -> EventWriter:
    """Return a coroutine function writing event-log rows into the test store."""

    async def _write(event_type: str, payload: dict[str, Any], **kwargs: Any) -> int:
        return await _insert_event(session_factory, event_type, payload, **kwargs)

    return _write


@pytest.fixture
def seed_account(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[None]]:
    """Return a coroutine function storing an active provider credential."""

    async def _seed(
        tenant_id: str = "t1",
        *,
        provider_user_id: str = "44444",
        access_token: str = "seller-token",
        contact_email: str | None = None,
    ) -> None:
        async with session_factory() as session:
            await CredentialRepository(session).replace(
                tenant_id,
                provider_user_id=provider_user_id,
                app_id="app-1",
                access_token=access_token,
                contact_email=contact_email,
            )
            await session.commit()

    return _seed


@pytest.fixture
def seed_attempt(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[int]]:
    """Return a coroutine function inserting a payment attempt and returning its id."""

    async def _seed(order_id: str, *, tenant_id: str = "t1", status: str = "pending", **columns: Any) -> int:
        async with session_factory() as session:
            row = PaymentAttemptTable(
                tenant_id=tenant_id, order_id=order_id, status=status, amount_cents=1500, **columns
            )
            session.add(row)
            await session.commit()
            return row.id

    return _seed


@pytest.fixture
def get_attempt(session_factory: async_sessionmaker[AsyncSession]) -> Callable[[int], Awaitable[PaymentAttemptTable]]:
    async def _get(attempt_id: int) -> PaymentAttemptTable:
        async with session_factory() as session:
            row = await session.get(PaymentAttemptTable, attempt_id)
            assert row is not None
            return row

    return _get
