"""Per-tenant payment notifications from the provider.

The receiver verifies the ``x-signature`` header against the canonical
manifest, whose ``id`` segment is the notification's ``data.id``, then
hands the parsed notification to :class:`PaymentWebhookService`, which

1. resolves the owning tenant from the notification's ``user_id`` (the
   connected provider account), and
2. routes by ``type``:

   * ``payment`` -- fetch the payment, map its status and update the open
     attempt for the order in ``external_reference``;
   * ``point_integration_wh`` / ``order`` -- terminal actions on a
     payment intent update the attempt carrying that intent id;
   * ``mp-connect`` -- ``application.deauthorized`` deactivates the
     tenant's credentials;
   * ``claim`` -- critical tenant alert, warning admin alert, and the
     linked attempt is marked ``error``;
   * ``subscription_preapproval`` / ``subscription_authorized_payment``
     -- informational tenant alert, or a warning for a failed charge.

Other types are acknowledged without action.  Attempt updates record the
notification id, and a redelivered notification is skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, field_validator
from relay_core.state.database import set_tenant_context
from relay_core.state.repository import CredentialRepository, PaymentAttemptRepository
from relay_core.state.tables import PaymentAttemptTable, ProviderCredentialTable
from sqlalchemy.ext.asyncio import AsyncSession

from relay_api.security import CredentialVault
from relay_api.services.alert_service import AlertService
from relay_api.services.provider_client import ProviderClient, ProviderError

logger = logging.getLogger(__name__)


class PaymentNotificationData(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return "" if value is None else str(value)


class PaymentNotification(BaseModel):
    """Provider notification envelope."""

    model_config = ConfigDict(extra="allow")

    id: int | str | None = None
    live_mode: bool = False
    type: str = ""
    date_created: str | None = None
    user_id: int | str | None = None
    api_version: str | None = None
    action: str | None = None
    data: PaymentNotificationData = PaymentNotificationData()

    @property
    def notification_id(self) -> str:
        return "" if self.id is None else str(self.id)


@dataclass(frozen=True)
class PaymentProcessResult:
    """Outcome reported to the receiver; ``ok=False`` is logged, never retried."""

    ok: bool
    detail: str | None = None
    tenant_id: str | None = None


def canonical_id_for(body: Any) -> str:
    """Return ``data.id`` from a raw notification body, or ``""``."""
    if not isinstance(body, dict):
        return ""
    data = body.get("data")
    if not isinstance(data, dict):
        return ""
    value = data.get("id")
    return "" if value is None else str(value)


# ---------------------------------------------------------------------------
# Status mapping
# ---------------------------------------------------------------------------

# Provider payment status to attempt status; anything else maps to "error".
PAYMENT_STATUS_MAP: dict[str, str] = {
    "approved": "approved",
    "authorized": "approved",
    "in_process": "processing",
    "in_mediation": "processing",
    "pending": "pending",
    "rejected": "rejected",
    "cancelled": "canceled",
    "refunded": "canceled",
    "charged_back": "error",
}

# Terminal point/order actions; other actions are acknowledged and ignored.
POINT_ACTION_MAP: dict[str, str] = {
    "state_FINISHED": "approved",
    "state_CANCELED": "canceled",
    "state_ERROR": "error",
}

_FAILED_CHARGE_MARKERS: tuple[str, ...] = ("fail", "reject", "cancel")


def map_payment_status(provider_status: str) -> str:
    return PAYMENT_STATUS_MAP.get(provider_status, "error")


# ---------------------------------------------------------------------------
# Tenant resolution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResolvedTenant:
    tenant_id: str
    credential: ProviderCredentialTable


class PaymentTenantResolver(Protocol):
    """Maps a provider account to the tenant that connected it."""

    async def resolve(self, provider_user_id: str, contact_email: str | None = None) -> ResolvedTenant | None: ...


class CredentialTenantResolver:
    """Resolve through active ``provider_credentials`` rows.

    Matches on the provider account id first and falls back to the contact
    email when one is given.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._repo = CredentialRepository(session)

    async def resolve(self, provider_user_id: str, contact_email: str | None = None) -> ResolvedTenant | None:
        row = await self._repo.find_active_by_user(provider_user_id) if provider_user_id else None
        if row is None and contact_email:
            row = await self._repo.find_active_by_email(contact_email)
        if row is None:
            return None
        return ResolvedTenant(tenant_id=row.tenant_id, credential=row)


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


class PaymentWebhookService:
    """Route one verified payment notification to its handler.

    Parameters
    ----------
    session:
        Active database session; the caller commits.
    provider:
        Client used to fetch payment details.
    vault:
        Decrypts stored access tokens.  ``None`` when tokens are stored in
        plaintext.
    resolver:
        Tenant resolver; defaults to :class:`CredentialTenantResolver`.
    """

    def __init__(
        self,
        session: AsyncSession,
        provider: ProviderClient,
        *,
        vault: CredentialVault | None = None,
        resolver: PaymentTenantResolver | None = None,
    ) -> None:
        self._session = session
        self._provider = provider
        self._vault = vault
        self._resolver = resolver or CredentialTenantResolver(session)
        self._alerts = AlertService(session)

    async def process(self, notification: PaymentNotification) -> PaymentProcessResult:
        """Resolve the tenant and dispatch on ``notification.type``."""
        provider_user_id = "" if notification.user_id is None else str(notification.user_id)
        resolved = await self._resolver.resolve(provider_user_id)
        if resolved is None:
            return PaymentProcessResult(ok=False, detail=f"No tenant found for provider user_id={provider_user_id}")

        tenant_id = resolved.tenant_id
        await set_tenant_context(self._session, tenant_id)

        kind = notification.type
        if kind == "payment":
            ok, detail = await self._handle_payment(notification, resolved)
        elif kind in ("point_integration_wh", "order"):
            ok, detail = await self._handle_point_action(notification, tenant_id)
        elif kind == "mp-connect":
            ok, detail = await self._handle_connect(notification, tenant_id)
        elif kind == "claim":
            ok, detail = await self._handle_claim(notification, tenant_id)
        elif kind in ("subscription_preapproval", "subscription_authorized_payment"):
            ok, detail = await self._handle_subscription(notification, tenant_id)
        else:
            ok, detail = True, f"Acknowledged unhandled type: {kind}"

        logger.info(
            "Payment notification %s type=%s action=%s: %s",
            notification.notification_id,
            notification.type,
            notification.action,
            detail,
            extra={"tenant_id": tenant_id, "event_type": notification.type},
        )
        return PaymentProcessResult(ok=ok, detail=detail, tenant_id=tenant_id)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_payment(self, notification: PaymentNotification, resolved: ResolvedTenant) -> tuple[bool, str]:
        payment_id = notification.data.id
        access_token = self._access_token(resolved.credential)
        try:
            payment = await self._provider.get_payment(access_token, payment_id)
        except ProviderError as exc:
            logger.warning(
                "Payment %s lookup failed for notification %s: %s",
                payment_id,
                notification.notification_id,
                exc,
                extra={"tenant_id": resolved.tenant_id},
            )
            return False, f"Failed to fetch payment {payment_id}: {exc}"

        order_id = payment.external_reference
        if not order_id:
            return False, "No external_reference in payment"

        attempts = PaymentAttemptRepository(self._session, tenant_id=resolved.tenant_id)
        attempt = await attempts.find_open_by_order(order_id)
        if attempt is None:
            return False, f"No active attempt for order {order_id}"
        if self._already_applied(attempt, notification):
            return True, f"Duplicate payment notification {notification.notification_id} skipped"

        status = map_payment_status(payment.status)
        await attempts.apply_notification(
            attempt,
            status,
            notification_id=notification.notification_id,
            response_data=payment.model_dump(mode="json"),
            provider_transaction_id=str(payment.id),
        )
        return True, f"Payment {payment.id} -> {status}"

    async def _handle_point_action(self, notification: PaymentNotification, tenant_id: str) -> tuple[bool, str]:
        action = notification.action or ""
        status = POINT_ACTION_MAP.get(action)
        if status is None:
            return True, f"Ignored point action: {action}"

        intent_id = notification.data.id
        attempts = PaymentAttemptRepository(self._session, tenant_id=tenant_id)
        attempt = await attempts.find_open_by_transaction(intent_id)
        if attempt is None:
            return False, f"No active attempt for intent {intent_id}"
        if self._already_applied(attempt, notification):
            return True, f"Duplicate point notification {notification.notification_id} skipped"

        await attempts.apply_notification(
            attempt,
            status,
            notification_id=notification.notification_id,
            response_data=notification.model_dump(mode="json"),
        )
        return True, f"Point intent {intent_id} -> {status}"

    async def _handle_connect(self, notification: PaymentNotification, tenant_id: str) -> tuple[bool, str]:
        if notification.action == "application.deauthorized":
            count = await CredentialRepository(self._session).deactivate(tenant_id)
            logger.warning(
                "Provider account deauthorized; %d credential(s) deactivated",
                count,
                extra={"tenant_id": tenant_id},
            )
            return True, "Credentials deauthorized"
        return True, f"mp-connect action: {notification.action}"

    async def _handle_claim(self, notification: PaymentNotification, tenant_id: str) -> tuple[bool, str]:
        claim_id = notification.data.id
        action = notification.action or "created"
        suffix = "" if action == "created" else f" ({action})"

        await self._alerts.create_alert(
            tenant_id=tenant_id,
            scope="tenant",
            alert_type="payment",
            severity="critical",
            title=f"Payment claim received{suffix}",
            body=(
                "The provider registered a buyer claim on a payment of this account. "
                "Review it in the provider dashboard and respond before the deadline."
            ),
            source_type="provider_claim",
            source_id=claim_id,
            metadata={"notification_id": notification.id, "action": action, "user_id": notification.user_id},
        )
        await self._alerts.create_alert(
            tenant_id=tenant_id,
            scope="admin",
            alert_type="payment",
            severity="warning",
            title=f"Payment claim for tenant {tenant_id}{suffix}",
            body=f"Claim ID: {claim_id}. Action: {action}.",
            source_type="provider_claim",
            source_id=claim_id,
            metadata={"tenant_id": tenant_id, "notification_id": notification.id, "action": action},
        )

        # The claim's data.id is the disputed payment id.
        attempts = PaymentAttemptRepository(self._session, tenant_id=tenant_id)
        attempt = await attempts.find_open_by_transaction(claim_id)
        if attempt is not None:
            await attempts.apply_notification(
                attempt,
                "error",
                notification_id=notification.notification_id,
                response_data=notification.model_dump(mode="json"),
            )
        marked = ", attempt marked error" if attempt is not None else ""
        return True, f"Claim {claim_id} (action={action}) alert created{marked}"

    async def _handle_subscription(self, notification: PaymentNotification, tenant_id: str) -> tuple[bool, str]:
        action = notification.action or ""
        is_charge = notification.type == "subscription_authorized_payment"
        failed = is_charge and any(marker in action for marker in _FAILED_CHARGE_MARKERS)

        if failed:
            title = "Subscription charge failed"
            body = "A subscription charge could not be processed. Check its status in the provider dashboard."
        elif is_charge:
            title = "Subscription charge processed"
            body = "A subscription charge was processed successfully."
        else:
            title = "Subscription updated"
            body = f"Subscription status updated ({action or notification.type})."

        await self._alerts.create_alert(
            tenant_id=tenant_id,
            scope="tenant",
            alert_type="subscription",
            severity="warning" if failed else "info",
            title=title,
            body=body,
            source_type="provider_subscription",
            source_id=notification.data.id,
            metadata={
                "notification_id": notification.id,
                "event_type": notification.type,
                "action": action,
                "user_id": notification.user_id,
            },
        )
        return True, f"Subscription event {notification.type}/{action} alert created"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _access_token(self, credential: ProviderCredentialTable) -> str:
        if self._vault is None:
            return credential.access_token
        return self._vault.decrypt(credential.access_token)

    @staticmethod
    def _already_applied(attempt: PaymentAttemptTable, notification: PaymentNotification) -> bool:
        return bool(notification.notification_id) and attempt.last_notification_id == notification.notification_id
