"""Provider webhook receivers: platform billing and per-tenant payments.

Both receivers read the raw body first so the ``x-signature`` HMAC is
checked before any parsing, and both always answer HTTP 200 with
``{"received": true}`` so the provider does not retry.  Failures are
reported in the ``error`` field and logged.  Each receiver has its own
secret; an empty secret disables signature checking.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Request

from relay_api.dependencies import CredentialVaultDep, ProviderClientDep, SessionFactoryDep, SettingsDep
from relay_api.schemas import WebhookAck
from relay_api.services.billing_webhook_service import BillingWebhookService
from relay_api.services.payment_webhook_service import (
    PaymentNotification,
    PaymentWebhookService,
    canonical_id_for,
)
from relay_api.services.signature_verifier import verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

_SIGNATURE_HEADER = "x-signature"
_REQUEST_ID_HEADER = "x-request-id"


def _signature_valid(request: Request, raw_body: bytes, canonical_id: str, secret: str) -> bool:
    return verify_signature(
        request.headers.get(_SIGNATURE_HEADER, ""),
        request.headers.get(_REQUEST_ID_HEADER, ""),
        raw_body,
        canonical_id,
        secret,
    )


def _parse_json(raw_body: bytes) -> Any:
    return json.loads(raw_body)


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


@router.post("/billing/webhook", response_model=WebhookAck, response_model_exclude_none=True)
async def billing_webhook(
    request: Request,
    settings: SettingsDep,
    session_factory: SessionFactoryDep,
) -> WebhookAck:
    """Receive subscription lifecycle events from the billing provider."""
    raw_body = await request.body()

    secret = settings.billing_webhook_secret.get_secret_value()
    if secret:
        if not _signature_valid(request, raw_body, "", secret):
            logger.error("Billing webhook signature validation failed")
            return WebhookAck(error="invalid_signature")
    else:
        logger.warning("Billing webhook secret not configured; signature check skipped")

    try:
        payload = _parse_json(raw_body)
    except ValueError:
        logger.error("Billing webhook body is not valid JSON")
        return WebhookAck(error="invalid_json")

    try:
        async with session_factory() as session:
            try:
                await BillingWebhookService(session, settings).process_billing_event(payload)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
    except Exception:
        logger.exception("Billing webhook processing error")
        return WebhookAck(error="processing_error")

    return WebhookAck()


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@router.post("/payments/webhook", response_model=WebhookAck, response_model_exclude_none=True)
async def payment_webhook(
    request: Request,
    settings: SettingsDep,
    session_factory: SessionFactoryDep,
    provider: ProviderClientDep,
    vault: CredentialVaultDep,
) -> WebhookAck:
    """Receive per-tenant payment notifications."""
    raw_body = await request.body()

    try:
        body = _parse_json(raw_body)
    except ValueError:
        logger.error("Payment webhook body is not valid JSON")
        return WebhookAck(error="invalid_json")

    secret = settings.payment_webhook_secret.get_secret_value()
    if secret:
        if not _signature_valid(request, raw_body, canonical_id_for(body), secret):
            logger.error("Payment webhook signature validation failed")
            return WebhookAck(error="invalid_signature")
    else:
        logger.warning("Payment webhook secret not configured; signature check skipped")

    try:
        notification = PaymentNotification.model_validate(body)
        async with session_factory() as session:
            try:
                result = await PaymentWebhookService(session, provider, vault=vault).process(notification)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
    except Exception:
        logger.exception("Payment webhook processing error")
        return WebhookAck(error="processing_error")

    if not result.ok:
        logger.warning(
            "Payment notification not fully processed: %s (type=%s action=%s)",
            result.detail,
            notification.type,
            notification.action,
            extra={"tenant_id": result.tenant_id, "event_type": notification.type},
        )
    return WebhookAck()
