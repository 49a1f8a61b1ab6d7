"""
Entitlement summary for the current tenant.

GET /api/entitlements returns the tenant's subscription, plan limits,
features and rate limits so clients can hide or disable gated UI.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from tenant_entitlements.api.dependencies.entitlements import entitlements_summary

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


@router.get("")
def get_current_entitlements(
    summary: Dict[str, Any] = Depends(entitlements_summary),
) -> Dict[str, Any]:
    return summary
