"""Entitlement gate decision for the calling tenant."""

from __future__ import annotations

from fastapi import APIRouter

from relay_api.dependencies import EntitlementGateDep, TenantDep
from relay_api.schemas import EntitlementResponse
from relay_api.services.entitlement_service import entitlement_message

router = APIRouter(prefix="/entitlements", tags=["entitlements"])


@router.get("/me", response_model=EntitlementResponse)
async def my_entitlement(tenant_id: TenantDep, gate: EntitlementGateDep) -> EntitlementResponse:
    """Return whether the caller's tenant may use the payment features."""
    decision = await gate.check_entitlement(tenant_id)
    return EntitlementResponse(
        tenant_id=tenant_id,
        allowed=decision.allowed,
        reason=decision.reason,
        message=entitlement_message(decision.reason),
    )
