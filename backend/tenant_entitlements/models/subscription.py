"""
Subscription model for tracking tenant subscriptions.

CRITICAL: Exactly one current subscription per tenant.
Subscription status is driven by billing webhooks and expiry sweeps; it is
never written directly by request handlers.

Provides:
- SubscriptionTier: Totally ordered plan tiers
- SubscriptionStatus: Lifecycle states
- SubscriptionState: Immutable domain snapshot used by the engine
- Subscription: SQLAlchemy model
"""

import enum
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import (
    Boolean, Column, Enum, Index, Integer, String, UniqueConstraint,
)

from tenant_entitlements.db_base import Base
from tenant_entitlements.models.base import (
    TimestampMixin, TenantScopedMixin, UTCDateTime, generate_uuid,
)


class SubscriptionTier(str, enum.Enum):
    """
    Plan tiers, declared lowest first.

    Ordering comparisons use declaration order, not string order.
    """
    STARTER = "starter"
    PROFESSIONAL = "professional"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)

    def __lt__(self, other):
        if not isinstance(other, SubscriptionTier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, SubscriptionTier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, SubscriptionTier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, SubscriptionTier):
            return NotImplemented
        return self.rank >= other.rank

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @classmethod
    def parse(cls, value: str) -> "SubscriptionTier":
        """Case-insensitive lookup by value or display name."""
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        for tier in cls:
            if tier.value == normalized:
                return tier
        raise ValueError(f"Unknown subscription tier: {value!r}")


class SubscriptionStatus(str, enum.Enum):
    """Subscription lifecycle states."""
    TRIAL = "trial"
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"    # Payment failed, access retained
    CANCELLED = "cancelled"          # Explicitly cancelled, access until period end
    EXPIRED = "expired"              # Trial or grace period lapsed

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


@dataclass(frozen=True)
class SubscriptionState:
    """
    Immutable snapshot of a subscription.

    The state machine produces new snapshots with dataclasses.replace;
    the store persists them with an optimistic version check.
    """
    id: str
    tenant_id: str
    tier: SubscriptionTier
    status: SubscriptionStatus
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    trial_expiry: Optional[datetime] = None
    grace_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    billing_customer_id: Optional[str] = None
    billing_subscription_id: Optional[str] = None
    billing_price_id: Optional[str] = None
    last_event_at: Optional[datetime] = None
    is_current: bool = True
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def trial_expired(self, now: datetime, grace: timedelta = timedelta(0)) -> bool:
        if self.status != SubscriptionStatus.TRIAL or self.trial_expiry is None:
            return False
        return now > self.trial_expiry + grace

    def grace_expired(self, now: datetime) -> bool:
        if self.status != SubscriptionStatus.GRACE_PERIOD or self.grace_period_end is None:
            return False
        return now > self.grace_period_end

    def within_paid_period(self, now: datetime) -> bool:
        """True while a cancelled subscription still has paid-up time left."""
        return self.end_date is not None and now < self.end_date

    def with_changes(self, **changes) -> "SubscriptionState":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "tier": self.tier.value,
            "status": self.status.value,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "trial_expiry": _iso(self.trial_expiry),
            "grace_period_end": _iso(self.grace_period_end),
            "cancelled_at": _iso(self.cancelled_at),
            "billing_customer_id": self.billing_customer_id,
            "billing_subscription_id": self.billing_subscription_id,
            "last_event_at": _iso(self.last_event_at),
            "version": self.version,
        }


class Subscription(Base, TimestampMixin, TenantScopedMixin):
    """
    Tracks the subscription of each tenant.

    CRITICAL DESIGN:
    - ONE current subscription per tenant (is_current); reactivation
      supersedes the old row instead of mutating it back to life
    - last_event_at is the last-write-wins watermark for webhook ordering
    - version guards concurrent writers (compare-and-swap on save)
    """

    __tablename__ = "subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    tier = Column(
        Enum(
            *[t.value for t in SubscriptionTier],
            name="subscription_tier"
        ),
        nullable=False,
        default=SubscriptionTier.STARTER.value,
        comment="Current plan tier"
    )

    status = Column(
        Enum(
            *[s.value for s in SubscriptionStatus],
            name="subscription_status"
        ),
        nullable=False,
        default=SubscriptionStatus.TRIAL.value,
        index=True,
        comment="Current subscription status"
    )

    is_current = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Exactly one current subscription per tenant"
    )

    # Billing provider references
    billing_customer_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Billing provider customer ID"
    )
    billing_subscription_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Billing provider subscription ID"
    )
    billing_price_id = Column(
        String(255),
        nullable=True,
        comment="Billing provider price ID"
    )

    # Lifecycle dates
    start_date = Column(UTCDateTime(), nullable=True, comment="Start of current period")
    end_date = Column(UTCDateTime(), nullable=True, comment="End of current period")
    trial_expiry = Column(UTCDateTime(), nullable=True, comment="Set only while status=trial")
    grace_period_end = Column(
        UTCDateTime(),
        nullable=True,
        comment="Set only while status=grace_period"
    )
    cancelled_at = Column(UTCDateTime(), nullable=True)

    last_event_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="Timestamp of the newest billing event applied (provider clock)"
    )

    version = Column(
        Integer,
        nullable=False,
        default=1,
        comment="Optimistic concurrency counter"
    )

    __table_args__ = (
        Index("ix_subscriptions_tenant_current", "tenant_id", "is_current"),
        Index(
            "uq_subscriptions_tenant_current",
            "tenant_id",
            unique=True,
            postgresql_where=is_current,
            sqlite_where=is_current,
        ),
        Index("ix_subscriptions_trial_expiry", "status", "trial_expiry"),
        Index("ix_subscriptions_grace_period", "status", "grace_period_end"),
        UniqueConstraint("billing_subscription_id", name="uq_subscriptions_billing_subscription"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, tenant_id={self.tenant_id}, "
            f"tier={self.tier}, status={self.status}, version={self.version})>"
        )

    def to_domain(self) -> SubscriptionState:
        """Convert to domain snapshot."""
        return SubscriptionState(
            id=self.id,
            tenant_id=self.tenant_id,
            tier=SubscriptionTier(self.tier),
            status=SubscriptionStatus(self.status),
            start_date=self.start_date,
            end_date=self.end_date,
            trial_expiry=self.trial_expiry,
            grace_period_end=self.grace_period_end,
            cancelled_at=self.cancelled_at,
            billing_customer_id=self.billing_customer_id,
            billing_subscription_id=self.billing_subscription_id,
            billing_price_id=self.billing_price_id,
            last_event_at=self.last_event_at,
            is_current=bool(self.is_current),
            version=self.version,
        )

    def apply_state(self, state: SubscriptionState) -> None:
        """Copy mutable fields from a domain snapshot. tenant_id is never copied."""
        self.tier = state.tier.value
        self.status = state.status.value
        self.start_date = state.start_date
        self.end_date = state.end_date
        self.trial_expiry = state.trial_expiry
        self.grace_period_end = state.grace_period_end
        self.cancelled_at = state.cancelled_at
        self.billing_customer_id = state.billing_customer_id
        self.billing_subscription_id = state.billing_subscription_id
        self.billing_price_id = state.billing_price_id
        self.last_event_at = state.last_event_at
        self.is_current = state.is_current
