"""
Billing provider webhook endpoint.

Events are reconciled through EntitlementEngine.reconcile. Signature
verification happens upstream, at the edge that terminates the provider's
webhook connection.

The response carries the outcome and event id only, never subscription
state.

Response codes follow the provider's retry semantics:
- 200 for applied, duplicate, stale, ignored, unmatched and invalid events
  (redelivering them cannot change the outcome)
- 503 when persistence is unavailable or the subscription kept changing
  underneath us, so the provider retries later
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from tenant_entitlements.api.dependencies.entitlements import get_engine
from tenant_entitlements.billing.reconciler import ReconcileOutcome
from tenant_entitlements.entitlements.engine import EntitlementEngine
from tenant_entitlements.entitlements.errors import (
    StaleSubscriptionError,
    TransientPersistenceError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks/billing", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    outcome: str
    message: str
    event_id: Optional[str] = None


@router.post("", response_model=WebhookResponse)
async def handle_billing_event(
    request: Request,
    engine: EntitlementEngine = Depends(get_engine),
) -> WebhookResponse:
    body = await request.body()
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Invalid JSON in billing webhook body")
        return WebhookResponse(outcome=ReconcileOutcome.INVALID.value, message="Invalid JSON body")

    if not isinstance(payload, dict):
        logger.warning("Billing webhook body is not an object")
        return WebhookResponse(outcome=ReconcileOutcome.INVALID.value, message="Body must be a JSON object")

    try:
        result = await run_in_threadpool(engine.reconcile, payload)
    except (TransientPersistenceError, StaleSubscriptionError) as e:
        logger.error("Billing webhook could not be processed, provider will retry", extra={"error": str(e)})
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())

    logger.info(
        "Billing webhook processed",
        extra={"event_id": result.event_id, "outcome": result.outcome.value},
    )
    return WebhookResponse(
        outcome=result.outcome.value,
        message=result.reason,
        event_id=result.event_id,
    )
