"""HMAC-signed session tokens.

Token format: ``base64url(payload_json).base64url(hmac_sha256(secret, payload_b64))``
with padding stripped.  The payload carries ``sub``, ``iat`` and ``exp``
(epoch seconds) plus optional claims such as ``tenant_id`` and ``role``.
Tokens are issued by the host application's login flow; this module only
needs to verify them, but also issues them for tests and tooling.

Also holds :class:`CredentialVault`, the Fernet wrapper that encrypts
provider OAuth tokens at rest.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, ConfigDict, ValidationError


class SessionError(Exception):
    """Raised when a session token is missing, malformed, forged or expired."""


class SessionClaims(BaseModel):
    """Verified claims of a session token."""

    model_config = ConfigDict(extra="allow")

    sub: str
    iat: int
    exp: int
    tenant_id: str | None = None
    role: str | None = None


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


class SessionTokenManager:
    """Issue and verify session tokens signed with a shared secret.

    Parameters
    ----------
    secret:
        HMAC key.  Must be non-empty.
    ttl_seconds:
        Lifetime of issued tokens.
    """

    def __init__(self, secret: str, *, ttl_seconds: int = 7 * 24 * 3600) -> None:
        if not secret:
            raise ValueError("Session secret must not be empty")
        self._secret = secret.encode("utf-8")
        self._ttl_seconds = ttl_seconds

    def _sign(self, payload_b64: str) -> str:
        digest = hmac.new(self._secret, payload_b64.encode("ascii"), hashlib.sha256).digest()
        return _b64url_encode(digest)

    def create_token(self, sub: str, **claims: Any) -> str:
        """Return a signed token for *sub* carrying *claims*."""
        now = int(time.time())
        payload = {"sub": sub, "iat": now, "exp": now + self._ttl_seconds, **claims}
        payload_b64 = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return f"{payload_b64}.{self._sign(payload_b64)}"

    def verify_token(self, token: str) -> SessionClaims:
        """Validate *token* and return its claims.

        Raises
        ------
        SessionError
            If the token is malformed, the signature does not match, the
            signature encoding is not canonical, or the token has expired.
        """
        parts = token.split(".")
        if len(parts) != 2:
            raise SessionError("Malformed session token")
        payload_b64, sig_b64 = parts

        try:
            sig_bytes = _b64url_decode(sig_b64)
        except (binascii.Error, ValueError) as exc:
            raise SessionError("Malformed session signature") from exc
        if _b64url_encode(sig_bytes) != sig_b64:
            raise SessionError("Non-canonical session signature")
        try:
            expected = self._sign(payload_b64)
        except UnicodeEncodeError as exc:
            raise SessionError("Malformed session payload") from exc
        if not hmac.compare_digest(expected, sig_b64):
            raise SessionError("Invalid session signature")

        try:
            raw = json.loads(_b64url_decode(payload_b64))
            claims = SessionClaims.model_validate(raw)
        except (binascii.Error, ValueError, ValidationError) as exc:
            raise SessionError("Malformed session payload") from exc

        if claims.exp <= int(time.time()):
            raise SessionError("Session expired")
        return claims


# ---------------------------------------------------------------------------
# Credential encryption
# ---------------------------------------------------------------------------


class CredentialVault:
    """Fernet encryption for credentials stored in the database.

    The Fernet key is derived from *secret* with SHA-256, so any non-empty
    string works as configuration.  Ciphertexts are prefixed with
    ``enc:v1:``; :meth:`decrypt` passes values without the prefix through
    unchanged so rows written before a key was configured stay readable.
    """

    PREFIX = "enc:v1:"

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Credential encryption key must not be empty")
        key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        return self.PREFIX + self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, stored: str) -> str:
        """Return the plaintext of a value produced by :meth:`encrypt`.

        Raises
        ------
        ValueError
            If the value carries the prefix but was not encrypted with this
            key or has been tampered with.
        """
        if not stored.startswith(self.PREFIX):
            return stored
        try:
            return self._fernet.decrypt(stored[len(self.PREFIX) :].encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise ValueError("Stored credential could not be decrypted") from exc


def build_credential_vault(encryption_key: str, fallback_secret: str = "") -> CredentialVault | None:
    """Return a vault keyed by *encryption_key*, else *fallback_secret*.

    Returns ``None`` when neither is set; credentials are then stored in
    plaintext.
    """
    secret = encryption_key or fallback_secret
    if not secret:
        return None
    return CredentialVault(secret)
