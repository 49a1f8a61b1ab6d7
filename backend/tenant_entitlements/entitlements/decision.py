"""
Authorization decision returned by the entitlement engine.

Denials are values, not exceptions. Every decision carries a
machine-readable reason code plus a human-readable hint so API layers can
render consistent error responses.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from tenant_entitlements.models.subscription import SubscriptionTier


class DecisionOutcome(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    ERROR = "error"


class DenyReason(str, Enum):
    """Reason codes, in the order the engine evaluates them."""
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    UPGRADE_REQUIRED = "UPGRADE_REQUIRED"
    LIMIT_REACHED = "LIMIT_REACHED"
    RATE_LIMITED = "RATE_LIMITED"
    AUDIT_UNAVAILABLE = "AUDIT_UNAVAILABLE"


# HTTP status codes for each reason
HTTP_STATUS_FOR_REASON = {
    DenyReason.NO_SUBSCRIPTION: 402,
    DenyReason.SUBSCRIPTION_INACTIVE: 402,
    DenyReason.TRIAL_EXPIRED: 402,
    DenyReason.UPGRADE_REQUIRED: 402,
    DenyReason.LIMIT_REACHED: 403,
    DenyReason.RATE_LIMITED: 429,
    DenyReason.AUDIT_UNAVAILABLE: 503,
}


@dataclass(frozen=True)
class Decision:
    """
    Result of an authorization check.

    Attributes:
        outcome: allow, deny or error
        capability: Capability that was checked
        reason: Reason code for deny/error outcomes
        message: Human-readable hint
        retry_after: Seconds until a rate-limited call may succeed
        required_tier: Minimum tier granting the capability
        current_tier: Tier the decision was made against
        limit / current_usage / remaining: Quota context where relevant
        reset_at: End of the current rate window
        correlation_id: Ties the decision to its audit entry
    """
    outcome: DecisionOutcome
    capability: str
    reason: Optional[DenyReason] = None
    message: Optional[str] = None
    retry_after: Optional[float] = None
    required_tier: Optional[SubscriptionTier] = None
    current_tier: Optional[SubscriptionTier] = None
    limit: Optional[Any] = None
    current_usage: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None
    correlation_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.outcome == DecisionOutcome.ALLOW

    @property
    def http_status(self) -> int:
        if self.allowed:
            return 200
        if self.reason is None:
            return 503
        return HTTP_STATUS_FOR_REASON[self.reason]

    @classmethod
    def allow(cls, capability: str, **kwargs) -> "Decision":
        return cls(outcome=DecisionOutcome.ALLOW, capability=capability, **kwargs)

    @classmethod
    def deny(cls, capability: str, reason: DenyReason, message: str, **kwargs) -> "Decision":
        return cls(
            outcome=DecisionOutcome.DENY,
            capability=capability,
            reason=reason,
            message=message,
            **kwargs,
        )

    @classmethod
    def error(cls, capability: str, message: str, **kwargs) -> "Decision":
        return cls(
            outcome=DecisionOutcome.ERROR,
            capability=capability,
            reason=DenyReason.AUDIT_UNAVAILABLE,
            message=message,
            **kwargs,
        )

    def with_correlation_id(self, correlation_id: str) -> "Decision":
        return replace(self, correlation_id=correlation_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for audit metadata."""
        return {
            "outcome": self.outcome.value,
            "capability": self.capability,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "retry_after": self.retry_after,
            "required_tier": self.required_tier.value if self.required_tier else None,
            "current_tier": self.current_tier.value if self.current_tier else None,
            "limit": str(self.limit) if self.limit is not None else None,
            "current_usage": self.current_usage,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
        }

    def to_error_response(self) -> Dict[str, Any]:
        """Convert to API error response format."""
        response = {
            "error": "entitlement_denied" if self.outcome == DecisionOutcome.DENY else "entitlement_error",
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "capability": self.capability,
            "correlation_id": self.correlation_id,
        }
        if self.required_tier:
            response["required_tier"] = self.required_tier.value
            response["upgrade_url"] = "/billing/upgrade"
        if self.current_tier:
            response["current_tier"] = self.current_tier.value
        if self.limit is not None:
            response["limit"] = str(self.limit)
            response["current_usage"] = self.current_usage
        if self.retry_after is not None:
            response["retry_after"] = self.retry_after
        return response
