"""
Base mixins for database models.

Provides common functionality:
- TimestampMixin: created_at, updated_at timestamps
- TenantScopedMixin: tenant_id for multi-tenant isolation
- generate_uuid: UUID generation for primary keys
- UTCDateTime: Timezone-aware datetime type that round-trips through SQLite
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, TypeDecorator
from sqlalchemy.orm import declared_attr


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Platform-independent timezone-aware datetime.

    PostgreSQL stores TIMESTAMPTZ natively. SQLite drops tzinfo, so values are
    normalised to UTC on the way in and re-tagged as UTC on the way out.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
        comment="Timestamp when record was last updated"
    )


class TenantScopedMixin:
    """
    Mixin that adds tenant_id column for multi-tenant isolation.

    SECURITY: tenant_id is ONLY taken from the server-resolved identity.
    NEVER accept tenant_id from client input (body/query/path/headers).
    """

    @declared_attr
    def tenant_id(cls):
        return Column(
            String(255),
            nullable=False,
            index=True,
            comment="Tenant identifier from server-resolved identity. NEVER from client input."
        )
