"""
Entitlement check dependencies.

Provides reusable FastAPI dependencies that run EntitlementEngine.authorize
for a route and translate denials into HTTP responses:

- 402 Payment Required: no subscription, inactive, trial expired, upgrade required
- 403 Forbidden: plan limit reached, tenant scope violation
- 429 Too Many Requests: rate limited (with Retry-After)
- 503 Service Unavailable: audit or persistence unavailable

Allowed and rate-limited responses carry X-RateLimit-Limit, -Remaining and
-Reset (epoch seconds) for the capability's endpoint class.

The tenant scope is built only from request.state.identity, which the
authentication layer sets from the verified token.
"""

import logging
import math
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, HTTPException, Request, Response, status

from tenant_entitlements.entitlements.catalog import is_unlimited
from tenant_entitlements.entitlements.decision import Decision, DenyReason
from tenant_entitlements.entitlements.engine import EntitlementEngine
from tenant_entitlements.entitlements.errors import (
    NotFoundError,
    TenantIsolationError,
    TransientPersistenceError,
)
from tenant_entitlements.platform.tenant_guard import TenantScope

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


def get_engine(request: Request) -> EntitlementEngine:
    """Engine attached to the application by create_app."""
    engine = getattr(request.app.state, "entitlement_engine", None)
    if engine is None:
        logger.error("Entitlement engine not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Entitlement engine not configured",
        )
    return engine


def get_tenant_scope(
    request: Request,
    engine: EntitlementEngine = Depends(get_engine),
) -> TenantScope:
    """
    Resolve the tenant scope for this request.

    Raises 401 Unauthorized if no tenant was resolved upstream.
    """
    identity = getattr(request.state, "identity", None)
    try:
        return engine.guard.scope_from_identity(
            identity,
            correlation_id=request.headers.get(CORRELATION_HEADER),
        )
    except TenantIsolationError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Tenant context is required",
        )


def rate_limit_headers(decision: Decision) -> Dict[str, str]:
    """X-RateLimit-* headers for decisions that went through the rate window."""
    if decision.reset_at is None or decision.remaining is None:
        return {}
    if decision.limit is None or is_unlimited(decision.limit):
        return {}
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(math.floor(decision.reset_at.timestamp())),
    }


def decision_to_http_exception(decision: Decision) -> HTTPException:
    """Build the HTTPException for a non-allow decision."""
    headers: Dict[str, str] = {}
    if decision.reason == DenyReason.RATE_LIMITED:
        headers.update(rate_limit_headers(decision))
        if decision.retry_after is not None:
            headers["Retry-After"] = str(max(1, math.ceil(decision.retry_after)))
    if decision.correlation_id:
        headers[CORRELATION_HEADER] = decision.correlation_id
    return HTTPException(
        status_code=decision.http_status,
        detail=decision.to_error_response(),
        headers=headers or None,
    )


def require_capability(
    capability: str,
    limit_key: Optional[str] = None,
    usage_getter: Optional[Callable[[Request, TenantScope], int]] = None,
) -> Callable:
    """
    Factory function to create an entitlement check dependency.

    Args:
        capability: Capability name from the catalog (e.g. "createLibrary")
        limit_key: Numeric limit to enforce (defaults to the capability's own)
        usage_getter: Returns the tenant's current usage for that limit;
            without it no limit is checked

    Returns:
        A FastAPI dependency that returns the allow Decision
    """

    def check_capability(
        request: Request,
        response: Response,
        scope: TenantScope = Depends(get_tenant_scope),
        engine: EntitlementEngine = Depends(get_engine),
    ) -> Decision:
        current_usage = usage_getter(request, scope) if usage_getter else None
        try:
            decision = engine.authorize(
                scope,
                capability,
                resource_limit_key=limit_key,
                current_usage=current_usage,
                resource=request.url.path,
            )
        except TransientPersistenceError as e:
            logger.error(
                "Entitlement check unavailable",
                extra={"tenant_id": scope.tenant_id, "capability": capability, "error": str(e)},
            )
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=e.to_dict(),
            )
        except TenantIsolationError as e:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.to_dict())

        if not decision.allowed:
            logger.warning(
                "Capability denied",
                extra={
                    "tenant_id": scope.tenant_id,
                    "capability": capability,
                    "reason": decision.reason.value if decision.reason else None,
                    "correlation_id": decision.correlation_id,
                },
            )
            raise decision_to_http_exception(decision)

        response.headers.update(rate_limit_headers(decision))
        return decision

    return check_capability


def entitlements_summary(
    scope: TenantScope = Depends(get_tenant_scope),
    engine: EntitlementEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Dependency returning the scoped tenant's plan, limits and features."""
    try:
        return engine.get_entitlements(scope)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_dict())
    except TransientPersistenceError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())
