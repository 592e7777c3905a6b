"""FastAPI dependency injection for settings, database sessions and session auth."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from relay_core.state.database import get_engine, set_tenant_context
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from relay_api.config import APISettings, load_api_settings
from relay_api.security import (
    CredentialVault,
    SessionClaims,
    SessionError,
    SessionTokenManager,
    build_credential_vault,
)
from relay_api.services.entitlement_service import EntitlementGate, get_entitlement_gate
from relay_api.services.provider_client import ProviderClient, get_provider_client

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that open their own short-lived sessions, such as
    the invalidation relay and the entitlement gate.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session(factory: SessionFactoryDep) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` without tenant RLS context.

    Used by the health checks, which run outside any tenant.  The session
    commits on clean exit and rolls back on exception.
    """
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


PublicSessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Session auth
# ---------------------------------------------------------------------------


def _extract_token(request: Request, cookie_name: str) -> str | None:
    token = request.cookies.get(cookie_name)
    if token:
        return token
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip() or None
    return None


def get_session_claims(request: Request, settings: SettingsDep) -> SessionClaims | None:
    """Verify the caller's session token.

    Returns ``None`` when no session secret is configured (dev mode, no
    auth).  Otherwise the token is read from the session cookie or a
    ``Bearer`` header.

    Raises
    ------
    SessionError
        If the token is missing or fails verification.
    """
    secret = settings.session_secret.get_secret_value()
    if not secret:
        return None

    token = _extract_token(request, settings.session_cookie_name)
    if token is None:
        raise SessionError("Missing session token")
    claims = SessionTokenManager(secret, ttl_seconds=settings.session_ttl_seconds).verify_token(token)
    request.state.sub = claims.sub
    request.state.tenant_id = claims.tenant_id
    return claims


ClaimsDep = Annotated[SessionClaims | None, Depends(get_session_claims)]


def get_tenant_id(request: Request, claims: ClaimsDep) -> str:
    """Resolve the tenant of the caller.

    With auth enabled the tenant comes from the verified session.  In dev
    mode the ``X-Tenant-ID`` header stands in for it.
    """
    tenant_id = claims.tenant_id if claims is not None else request.headers.get("x-tenant-id")
    if not tenant_id:
        raise HTTPException(status_code=401, detail="Tenant context required")
    return tenant_id


TenantDep = Annotated[str, Depends(get_tenant_id)]


async def get_tenant_session(
    tenant_id: TenantDep,
    factory: SessionFactoryDep,
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` with the RLS tenant context set."""
    session = factory()
    try:
        await set_tenant_context(session, tenant_id)
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_tenant_session)]

# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

EntitlementGateDep = Annotated[EntitlementGate, Depends(get_entitlement_gate)]
ProviderClientDep = Annotated[ProviderClient, Depends(get_provider_client)]


def get_credential_vault(settings: SettingsDep) -> CredentialVault | None:
    """Return the vault for stored provider tokens, or ``None`` when no key is set."""
    return build_credential_vault(
        settings.credential_encryption_key.get_secret_value(),
        settings.session_secret.get_secret_value(),
    )


CredentialVaultDep = Annotated[CredentialVault | None, Depends(get_credential_vault)]
