"""
ProcessedBillingEvent model for tracking applied billing webhooks.

Used for idempotency - ensures each provider event is applied at most once,
across restarts and across application instances.
"""

from sqlalchemy import Column, String, Index

from tenant_entitlements.db_base import Base
from tenant_entitlements.models.base import UTCDateTime, generate_uuid, utc_now


class ProcessedBillingEvent(Base):
    """
    Ledger of billing provider event IDs that have been reconciled.

    The billing provider delivers at-least-once. The unique constraint on
    event_id is the cross-instance guard; a second insert of the same event
    fails and is treated as a duplicate delivery.
    """

    __tablename__ = "processed_billing_events"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Billing provider event ID"
    )

    event_type = Column(
        String(100),
        nullable=False,
        comment="Normalised event type (e.g., invoice.payment_failed)"
    )

    subscription_id = Column(
        String(36),
        nullable=True,
        index=True,
        comment="Internal subscription the event resolved to"
    )

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )

    processed_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
        comment="When the event was reconciled"
    )

    __table_args__ = (
        Index("idx_processed_billing_events_processed", "processed_at"),
    )

    def __repr__(self) -> str:
        return f"<ProcessedBillingEvent(event_id={self.event_id}, type={self.event_type})>"
