"""
Structured error classes for entitlement enforcement.

Enforcement denials are NOT exceptions - they are Decision values.
These classes cover conditions that are genuinely exceptional:
- ConfigurationError: catalog invariant violated (fatal at startup)
- NotFoundError: tenant/subscription lookups outside the authorize path
- ConflictError: duplicate onboarding, stale optimistic version
- TransientPersistenceError: store unavailable (retried with bounded backoff)
- InvalidEventError: malformed or unresolvable billing webhook
- TenantIsolationError: cross-tenant access attempt
- AuditWriteError: audit could not be recorded in fail-closed mode
"""

from typing import Optional


class EntitlementError(Exception):
    """Base exception for entitlement engine errors."""

    code = "entitlement_error"

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.code,
            "message": str(self),
        }


class ConfigurationError(EntitlementError):
    """Raised when the entitlement catalog or settings are invalid."""

    code = "configuration_error"


class NotFoundError(EntitlementError):
    """Raised when a tenant or subscription does not exist."""

    code = "not_found"

    def __init__(self, message: str, tenant_id: Optional[str] = None):
        self.tenant_id = tenant_id
        super().__init__(message)


class ConflictError(EntitlementError):
    """Raised on duplicate onboarding."""

    code = "conflict"

    def __init__(self, message: str, tenant_id: Optional[str] = None):
        self.tenant_id = tenant_id
        super().__init__(message)


class StaleSubscriptionError(ConflictError):
    """Raised when a subscription changed between read and save."""

    code = "stale_subscription"

    def __init__(self, subscription_id: str, expected_version: int):
        self.subscription_id = subscription_id
        self.expected_version = expected_version
        super().__init__(
            f"Subscription {subscription_id} was modified concurrently "
            f"(expected version {expected_version})"
        )


class DuplicateEventError(ConflictError):
    """Raised when another writer already recorded the same billing event."""

    code = "duplicate_event"

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Billing event {event_id} was already processed")


class TransientPersistenceError(EntitlementError):
    """Raised when the persistence collaborator is temporarily unavailable."""

    code = "persistence_unavailable"

    def __init__(self, message: str, operation: Optional[str] = None):
        self.operation = operation
        super().__init__(message)


class InvalidEventError(EntitlementError):
    """Raised for malformed or unsupported billing events."""

    code = "invalid_event"

    def __init__(self, message: str, event_id: Optional[str] = None):
        self.event_id = str(event_id) if event_id is not None else None
        super().__init__(message)


class TenantIsolationError(EntitlementError):
    """Raised when tenant isolation would be violated."""

    code = "tenant_isolation_violation"


class AuditWriteError(EntitlementError):
    """Raised when an audit entry cannot be persisted and auditing is fail-closed."""

    code = "audit_unavailable"

    def __init__(self, message: str, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id
        super().__init__(message)
