"""
Database models for the entitlement engine.

Importing this package registers every table on Base.metadata.
"""

from tenant_entitlements.models.base import (
    TimestampMixin,
    TenantScopedMixin,
    UTCDateTime,
    generate_uuid,
    utc_now,
)
from tenant_entitlements.models.subscription import (
    Subscription,
    SubscriptionState,
    SubscriptionStatus,
    SubscriptionTier,
)
from tenant_entitlements.models.tenant import Tenant, TenantRecord, TenantStatus
from tenant_entitlements.models.processed_billing_event import ProcessedBillingEvent

__all__ = [
    "TimestampMixin",
    "TenantScopedMixin",
    "UTCDateTime",
    "generate_uuid",
    "utc_now",
    "Subscription",
    "SubscriptionState",
    "SubscriptionStatus",
    "SubscriptionTier",
    "Tenant",
    "TenantRecord",
    "TenantStatus",
    "ProcessedBillingEvent",
]
