"""Connect a tenant's payment provider account through OAuth.

``/authorize`` checks the tenant's entitlement, stores the CSRF ``state``,
tenant and contact email in short-lived httponly cookies and redirects to
the provider.  ``/callback`` checks the state, exchanges the code, fetches
the connected account and stores its credentials, replacing any earlier
connection.  Both finish by redirecting to ``oauth_return_url`` with an
``mp_oauth`` status query parameter.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Annotated
from urllib.parse import urlencode

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from relay_core.state.repository import CredentialRepository

from relay_api.config import APISettings, PlatformEnv
from relay_api.dependencies import (
    CredentialVaultDep,
    EntitlementGateDep,
    ProviderClientDep,
    SessionFactoryDep,
    SettingsDep,
    TenantDep,
)
from relay_api.services.entitlement_service import entitlement_message
from relay_api.services.provider_client import ProviderError, generate_oauth_state

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments/oauth", tags=["oauth"])

STATE_COOKIE = "provider_oauth_state"
TENANT_COOKIE = "provider_oauth_tenant"
EMAIL_COOKIE = "provider_oauth_email"
_COOKIE_MAX_AGE = 600


def _return_redirect(settings: APISettings, status: str, message: str | None = None) -> RedirectResponse:
    params = {"mp_oauth": status}
    if message:
        params["message"] = message
    separator = "&" if "?" in settings.oauth_return_url else "?"
    response = RedirectResponse(f"{settings.oauth_return_url}{separator}{urlencode(params)}", status_code=302)
    for name in (STATE_COOKIE, TENANT_COOKIE, EMAIL_COOKIE):
        response.delete_cookie(name)
    return response


@router.get("/authorize")
async def authorize(
    settings: SettingsDep,
    tenant_id: TenantDep,
    gate: EntitlementGateDep,
    provider: ProviderClientDep,
    email: Annotated[str, Query(min_length=3, max_length=320)],
) -> RedirectResponse:
    """Start the authorization-code flow for the caller's tenant."""
    decision = await gate.check_entitlement(tenant_id)
    if not decision.allowed:
        logger.info(
            "OAuth connect refused: tenant not entitled (%s)",
            decision.reason,
            extra={"tenant_id": tenant_id},
        )
        return _return_redirect(settings, "entitlement_error", entitlement_message(decision.reason))

    if not provider.oauth_configured:
        logger.error("OAuth connect requested but provider OAuth is not configured", extra={"tenant_id": tenant_id})
        return _return_redirect(settings, "error", "Payment provider connection is not configured")

    state = generate_oauth_state()
    response = RedirectResponse(provider.authorize_url(state), status_code=302)
    secure = settings.platform_env != PlatformEnv.DEV
    for name, value in ((STATE_COOKIE, state), (TENANT_COOKIE, tenant_id), (EMAIL_COOKIE, email)):
        response.set_cookie(name, value, max_age=_COOKIE_MAX_AGE, httponly=True, samesite="lax", secure=secure)
    return response


@router.get("/callback")
async def callback(
    request: Request,
    settings: SettingsDep,
    session_factory: SessionFactoryDep,
    provider: ProviderClientDep,
    vault: CredentialVaultDep,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
) -> RedirectResponse:
    """Finish the flow: exchange the code and store the connected account."""
    if error:
        logger.warning("Provider returned OAuth error: %s", error)
        return _return_redirect(settings, "error", error)
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")
    if state != request.cookies.get(STATE_COOKIE):
        raise HTTPException(status_code=400, detail="Invalid OAuth state")

    tenant_id = request.cookies.get(TENANT_COOKIE)
    contact_email = request.cookies.get(EMAIL_COOKIE)
    if not tenant_id or not contact_email:
        raise HTTPException(status_code=400, detail="OAuth session expired")

    try:
        tokens = await provider.exchange_code(code)
        account = await provider.get_user_info(tokens.access_token)
    except ProviderError as exc:
        logger.warning("OAuth code exchange failed: %s", exc, extra={"tenant_id": tenant_id})
        return _return_redirect(settings, "error", str(exc))

    def seal(value: str) -> str:
        return vault.encrypt(value) if vault is not None else value

    expires_at = datetime.now(UTC) + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None
    async with session_factory() as session:
        try:
            await CredentialRepository(session).replace(
                tenant_id,
                provider_user_id=str(account.id),
                app_id=provider.client_id,
                access_token=seal(tokens.access_token),
                refresh_token=seal(tokens.refresh_token) if tokens.refresh_token else None,
                token_expires_at=expires_at,
                contact_email=contact_email,
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise

    logger.info(
        "Provider account %s connected (%s)",
        account.id,
        account.nickname or contact_email,
        extra={"tenant_id": tenant_id},
    )
    return _return_redirect(settings, "success")
