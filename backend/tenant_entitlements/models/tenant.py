"""
Tenant model for the multi-tenant platform.

Tenant represents a customer organization. Tenant.id IS the tenant_id used
across all tenant-scoped models for data isolation, billing and auditing.

SECURITY: tenant_id is ONLY taken from the server-resolved identity, never
from client input.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, String, Enum

from tenant_entitlements.db_base import Base
from tenant_entitlements.models.base import TimestampMixin, generate_uuid
from tenant_entitlements.models.subscription import SubscriptionStatus


class TenantStatus(str, enum.Enum):
    """Tenant lifecycle status."""
    PENDING = "pending"          # Created, onboarding not finished
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"      # Administrative hold, never set by billing
    CHURNED = "churned"          # Subscription cancelled or expired

    @classmethod
    def for_subscription_status(cls, status: SubscriptionStatus) -> "TenantStatus":
        """Tenant status implied by the current subscription status."""
        mapping = {
            SubscriptionStatus.TRIAL: cls.TRIAL,
            SubscriptionStatus.ACTIVE: cls.ACTIVE,
            SubscriptionStatus.GRACE_PERIOD: cls.ACTIVE,
            SubscriptionStatus.CANCELLED: cls.CHURNED,
            SubscriptionStatus.EXPIRED: cls.CHURNED,
        }
        return mapping[status]


@dataclass(frozen=True)
class TenantRecord:
    """Detached snapshot of a tenant row."""
    id: str
    status: TenantStatus
    name: Optional[str] = None
    created_at: Optional[datetime] = None


class Tenant(Base, TimestampMixin):
    """
    Root aggregate for a customer organization.

    A tenant is never deleted when its subscription ends; reactivation
    creates a fresh subscription for the same tenant.
    """

    __tablename__ = "tenants"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key - this IS the tenant_id used across all models"
    )

    name = Column(
        String(255),
        nullable=True,
        comment="Display name of the tenant"
    )

    status = Column(
        Enum(
            *[s.value for s in TenantStatus],
            name="tenant_status"
        ),
        nullable=False,
        default=TenantStatus.PENDING.value,
        index=True,
        comment="Tenant lifecycle status"
    )

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, status={self.status})>"

    @property
    def is_suspended(self) -> bool:
        return self.status == TenantStatus.SUSPENDED.value

    def to_domain(self) -> TenantRecord:
        return TenantRecord(
            id=self.id,
            status=TenantStatus(self.status),
            name=self.name,
            created_at=self.created_at,
        )
