"""
Audit logging for entitlement decisions and subscription transitions.

CRITICAL SECURITY REQUIREMENTS:
- Audit logs MUST be append-only (no UPDATE/DELETE)
- Every authorization decision writes exactly one entry
- Every subscription transition (or ignored duplicate) writes an entry
- PII fields MUST be redacted before persistence
- Failed writes are retried, then buffered and sent to the fallback logger

Provides:
- AuditAction / AuditOutcome: closed vocabularies
- PIIRedactor: strips secrets and masks emails in entry detail
- AuditLog: SQLAlchemy model (append-only table)
- AuditEntry: immutable entry built before persistence
- AuditWriter: bounded retry with exponential backoff, local buffer,
  optional fail-closed mode
"""

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, FrozenSet, List, Optional

from sqlalchemy import Column, Index, JSON, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from tenant_entitlements.db_base import Base
from tenant_entitlements.entitlements.errors import AuditWriteError, TransientPersistenceError
from tenant_entitlements.models.base import UTCDateTime, generate_uuid, utc_now

# Use JSON with PostgreSQL variant for JSONB - allows SQLite in tests
JSONType = JSON().with_variant(JSONB(), "postgresql")

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("audit.fallback")


class AuditAction(str, Enum):
    """Enumeration of all auditable actions."""
    # Enforcement decisions
    ENTITLEMENT_ALLOWED = "entitlement.allowed"
    ENTITLEMENT_DENIED = "entitlement.denied"
    ENTITLEMENT_ERROR = "entitlement.error"

    # Subscription lifecycle
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_TRANSITIONED = "subscription.transitioned"
    SUBSCRIPTION_REACTIVATED = "subscription.reactivated"
    SUBSCRIPTION_EXPIRED = "subscription.expired"

    # Billing reconciliation
    BILLING_EVENT_APPLIED = "billing.event_applied"
    BILLING_DUPLICATE_IGNORED = "billing.duplicate_ignored"
    BILLING_STALE_IGNORED = "billing.stale_ignored"
    BILLING_EVENT_IGNORED = "billing.event_ignored"
    BILLING_CUSTOMER_LINKED = "billing.customer_linked"

    # Tenant events
    TENANT_ONBOARDED = "tenant.onboarded"

    # Security events
    SECURITY_CROSS_TENANT_DENIED = "security.cross_tenant_denied"


class AuditOutcome(str, Enum):
    """Outcome of the audited action."""
    SUCCESS = "success"
    DENIED = "denied"
    FAILED = "failed"


class PIIRedactor:
    """
    Redacts PII and secrets from audit detail before persistence.

    Emails keep their domain so support can still see which organisation
    an external user belongs to; everything else becomes "[REDACTED]".
    """

    EMAIL_FIELDS: FrozenSet[str] = frozenset({
        "email",
        "user_email",
        "actor_email",
        "guest_email",
        "invited_email",
    })

    REDACTED_FIELDS: FrozenSet[str] = frozenset({
        "token",
        "access_token",
        "refresh_token",
        "id_token",
        "api_key",
        "client_secret",
        "secret",
        "password",
        "webhook_secret",
        "signature",
        "authorization",
        "card_number",
        "phone",
        "phone_number",
    })

    REDACTION_MARKER = "[REDACTED]"

    @classmethod
    def redact(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Recursively redact a dictionary.

        Returns a new dictionary; the input is never modified.
        """
        if not isinstance(data, dict):
            return data
        return cls._redact_dict(data)

    @classmethod
    def mask_email(cls, value: Any) -> str:
        if isinstance(value, str) and "@" in value:
            return f"***@{value.rsplit('@', 1)[1]}"
        return cls.REDACTION_MARKER

    @classmethod
    def _redact_dict(cls, d: Dict[str, Any]) -> Dict[str, Any]:
        result = {}
        for key, value in d.items():
            lower_key = str(key).lower()
            if lower_key in cls.EMAIL_FIELDS:
                result[key] = cls.mask_email(value)
            elif lower_key in cls.REDACTED_FIELDS:
                result[key] = cls.REDACTION_MARKER
            elif isinstance(value, dict):
                result[key] = cls._redact_dict(value)
            elif isinstance(value, list):
                result[key] = cls._redact_list(value)
            else:
                result[key] = value
        return result

    @classmethod
    def _redact_list(cls, lst: List[Any]) -> List[Any]:
        result = []
        for item in lst:
            if isinstance(item, dict):
                result.append(cls._redact_dict(item))
            elif isinstance(item, list):
                result.append(cls._redact_list(item))
            else:
                result.append(item)
        return result


class AuditLog(Base):
    """
    Audit log database model.

    CRITICAL: This table is append-only. No UPDATE or DELETE operations are
    issued by this package; retention is handled outside the engine.
    """
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(255), nullable=False, index=True)
    timestamp = Column(UTCDateTime(), nullable=False, default=utc_now)
    correlation_id = Column(String(64), nullable=False)
    action = Column(String(100), nullable=False, index=True)
    resource = Column(Text, nullable=True)
    actor = Column(String(255), nullable=True)  # NULL for system events
    outcome = Column(String(20), nullable=False, default=AuditOutcome.SUCCESS.value)
    detail = Column(JSONType, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_audit_logs_tenant_timestamp", "tenant_id", "timestamp"),
        Index("ix_audit_logs_tenant_action", "tenant_id", "action"),
        Index("ix_audit_logs_correlation", "correlation_id"),
    )


@dataclass(frozen=True)
class AuditEntry:
    """
    Immutable audit entry.

    Build one per decision or transition; PII in detail is redacted when
    the entry is converted for persistence.
    """
    tenant_id: str
    action: AuditAction
    outcome: AuditOutcome
    correlation_id: str = field(default_factory=generate_uuid)
    timestamp: datetime = field(default_factory=utc_now)
    resource: Optional[str] = None
    actor: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_uuid)

    def to_record(self) -> Dict[str, Any]:
        """Column values for AuditLog, with detail redacted."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "timestamp": self.timestamp,
            "correlation_id": self.correlation_id,
            "action": self.action.value,
            "resource": self.resource,
            "actor": self.actor,
            "outcome": self.outcome.value,
            "detail": PIIRedactor.redact(self.detail),
        }

    def to_log_dict(self) -> Dict[str, Any]:
        record = self.to_record()
        record["timestamp"] = self.timestamp.isoformat()
        return record

    @classmethod
    def from_record(cls, row: AuditLog) -> "AuditEntry":
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            action=AuditAction(row.action),
            outcome=AuditOutcome(row.outcome),
            correlation_id=row.correlation_id,
            timestamp=row.timestamp,
            resource=row.resource,
            actor=row.actor,
            detail=dict(row.detail or {}),
        )


class AuditWriter:
    """
    Writes audit entries through the persistence collaborator.

    Retry strategy:
    - Up to max_retries retries on TransientPersistenceError
    - Exponential backoff: base_delay * 2^attempt, capped at max_delay
    - On exhaustion the entry is buffered locally (bounded) and written to
      the fallback logger; flush_buffer() replays the buffer later

    With fail_closed=True an exhausted write raises AuditWriteError and
    buffers nothing: the caller refuses the operation and records that
    refusal with buffer(). Writers of facts that already happened pass
    fail_closed=False per call.
    """

    def __init__(
        self,
        sink: Callable[[AuditEntry], None],
        max_retries: int = 3,
        base_delay: float = 0.05,
        max_delay: float = 1.0,
        buffer_size: int = 1000,
        fail_closed: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._sink = sink
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.fail_closed = fail_closed
        self._sleep = sleep
        self._buffer: Deque[AuditEntry] = deque(maxlen=buffer_size)
        self._buffer_lock = threading.Lock()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def calculate_delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def write(self, entry: AuditEntry, fail_closed: Optional[bool] = None) -> bool:
        """
        Persist an entry.

        Args:
            entry: Entry to persist
            fail_closed: Overrides the writer default for this call

        Returns:
            True if persisted, False if buffered for later

        Raises:
            AuditWriteError: If persistence failed and fail-closed applies
        """
        if fail_closed is None:
            fail_closed = self.fail_closed
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                self._sink(entry)
                return True
            except TransientPersistenceError as e:
                last_error = e
                if attempt < self.max_retries:
                    delay = self.calculate_delay(attempt)
                    logger.warning(
                        "Audit write failed, retrying",
                        extra={
                            "tenant_id": entry.tenant_id,
                            "correlation_id": entry.correlation_id,
                            "attempt": attempt + 1,
                            "delay_seconds": delay,
                        },
                    )
                    self._sleep(delay)

        if fail_closed:
            raise AuditWriteError(
                f"Audit entry could not be persisted: {last_error}",
                correlation_id=entry.correlation_id,
            )
        self.buffer(entry, str(last_error))
        return False

    def buffer(self, entry: AuditEntry, error_reason: str) -> None:
        """Queue an entry for flush_buffer() and copy it to the fallback logger."""
        with self._buffer_lock:
            if len(self._buffer) == self._buffer.maxlen:
                dropped = self._buffer[0]
                logger.error(
                    "Audit buffer full, dropping oldest entry",
                    extra={"dropped_correlation_id": dropped.correlation_id},
                )
            self._buffer.append(entry)

        fallback_entry = entry.to_log_dict()
        fallback_entry["fallback_reason"] = error_reason
        fallback_logger.error(
            "Audit log fallback",
            extra={"audit_entry": json.dumps(fallback_entry, default=str)},
        )

    def flush_buffer(self) -> int:
        """
        Replay buffered entries in order. Stops at the first failure.

        Returns:
            Number of entries persisted
        """
        flushed = 0
        while True:
            with self._buffer_lock:
                if not self._buffer:
                    break
                entry = self._buffer[0]
            try:
                self._sink(entry)
            except TransientPersistenceError:
                logger.warning(
                    "Audit buffer flush interrupted",
                    extra={"flushed": flushed, "pending": self.pending},
                )
                break
            with self._buffer_lock:
                if self._buffer and self._buffer[0] is entry:
                    self._buffer.popleft()
            flushed += 1

        if flushed:
            logger.info("Flushed buffered audit entries", extra={"flushed": flushed})
        return flushed
