"""HTTP client for the payment provider's OAuth 2.0, account and payment endpoints.

Implements the authorization-code grant: build the authorize URL with a
CSRF ``state``, exchange the returned code for tokens, refresh tokens, and
fetch the connected account.  Payment lookups use a connected account's
access token.  Every call is bounded by the configured timeout (20 s by
default).
"""

from __future__ import annotations

import logging
import secrets
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict

from relay_api.config import APISettings

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when a provider call fails, returns non-2xx or returns a non-JSON body."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class OAuthTokenResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    access_token: str
    token_type: str = "bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str | None = None
    user_id: int | None = None
    public_key: str | None = None


class OAuthUserInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    nickname: str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class PaymentDetails(BaseModel):
    """The subset of a provider payment the webhook processor reads."""

    model_config = ConfigDict(extra="allow")

    id: int | str
    status: str
    status_detail: str | None = None
    external_reference: str | None = None
    transaction_amount: float | None = None


def generate_oauth_state() -> str:
    """Return a random hex string for the OAuth ``state`` parameter."""
    return secrets.token_hex(32)


class ProviderClient:
    """Async wrapper around the provider's OAuth and user endpoints.

    Parameters
    ----------
    api_url:
        Root URL for token and account calls.
    auth_url:
        Root URL of the hosted authorization page.
    client_id, client_secret, redirect_uri:
        OAuth application credentials.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        *,
        api_url: str,
        auth_url: str,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._auth_url = auth_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={"Accept": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: APISettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ProviderClient:
        """Build a client from the ``provider_*`` settings.

        The client is usable for payment lookups even when the OAuth
        application is not configured; check :attr:`oauth_configured`
        before starting the authorization flow.
        """
        return cls(
            api_url=settings.provider_api_url,
            auth_url=settings.provider_auth_url,
            client_id=settings.provider_client_id,
            client_secret=settings.provider_client_secret.get_secret_value(),
            redirect_uri=settings.provider_redirect_uri,
            timeout=settings.provider_timeout_seconds,
            transport=transport,
        )

    @property
    def missing_oauth_settings(self) -> list[str]:
        """Names of the OAuth settings that are still empty."""
        return [
            name
            for name, value in (
                ("provider_client_id", self._client_id),
                ("provider_client_secret", self._client_secret),
                ("provider_redirect_uri", self._redirect_uri),
            )
            if not value
        ]

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def oauth_configured(self) -> bool:
        return not self.missing_oauth_settings

    def authorize_url(self, state: str) -> str:
        """Return the hosted authorization URL for *state*.

        Raises
        ------
        ProviderError
            If the OAuth application is not configured.
        """
        if not self.oauth_configured:
            raise ProviderError(f"Provider OAuth is not configured: missing {', '.join(self.missing_oauth_settings)}")
        query = urlencode(
            {
                "client_id": self._client_id,
                "response_type": "code",
                "platform_id": "mp",
                "redirect_uri": self._redirect_uri,
                "state": state,
            }
        )
        return f"{self._auth_url}/authorization?{query}"

    async def exchange_code(self, code: str) -> OAuthTokenResponse:
        """Exchange an authorization *code* for tokens."""
        data = await self._request(
            "POST",
            "/oauth/token",
            action="exchange code",
            data={
                "grant_type": "authorization_code",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "code": code,
                "redirect_uri": self._redirect_uri,
            },
        )
        return OAuthTokenResponse.model_validate(data)

    async def refresh_token(self, refresh_token: str) -> OAuthTokenResponse:
        """Exchange a refresh token for a new access token."""
        data = await self._request(
            "POST",
            "/oauth/token",
            action="refresh token",
            data={
                "grant_type": "refresh_token",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": refresh_token,
            },
        )
        return OAuthTokenResponse.model_validate(data)

    async def get_user_info(self, access_token: str) -> OAuthUserInfo:
        """Fetch the account that owns *access_token*."""
        data = await self._request(
            "GET",
            "/users/me",
            action="fetch user info",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return OAuthUserInfo.model_validate(data)

    async def get_payment(self, access_token: str, payment_id: str) -> PaymentDetails:
        """Fetch payment *payment_id* on behalf of a connected account."""
        data = await self._request(
            "GET",
            f"/v1/payments/{payment_id}",
            action="fetch payment",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return PaymentDetails.model_validate(data)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _request(self, method: str, path: str, *, action: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Provider %s timed out", action)
            raise ProviderError(f"Failed to {action}: timeout") from exc
        except httpx.RequestError as exc:
            logger.warning("Provider %s failed: %s", action, exc)
            raise ProviderError(f"Failed to {action}: {exc}") from exc

        if response.is_error:
            detail = response.text or "Unknown error"
            logger.warning("Provider %s returned %d", action, response.status_code)
            raise ProviderError(f"Failed to {action}: {detail}", status_code=response.status_code)
        try:
            return response.json()
        except ValueError as exc:
            logger.warning("Provider %s returned a non-JSON body", action)
            raise ProviderError(f"Failed to {action}: invalid JSON response", status_code=response.status_code) from exc


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_provider_client: ProviderClient | None = None


def init_provider_client(settings: APISettings) -> ProviderClient:
    """Create the global client.  Called during application startup."""
    global _provider_client  # noqa: PLW0603
    _provider_client = ProviderClient.from_settings(settings)
    if not _provider_client.oauth_configured:
        logger.warning(
            "Provider OAuth not configured (missing %s); account connection is disabled",
            ", ".join(_provider_client.missing_oauth_settings),
        )
    return _provider_client


async def close_provider_client() -> None:
    global _provider_client  # noqa: PLW0603
    if _provider_client is not None:
        await _provider_client.close()
        _provider_client = None


def get_provider_client() -> ProviderClient:
    """Return the global client.

    Raises
    ------
    RuntimeError
        If :func:`init_provider_client` has not been called.
    """
    if _provider_client is None:
        raise RuntimeError("Provider client has not been initialised. Call init_provider_client() at startup.")
    return _provider_client
