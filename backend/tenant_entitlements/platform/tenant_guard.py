"""
Tenant isolation guard.

Every engine operation runs inside a TenantScope built from the
server-resolved identity {tenant_id, user_id, user_email}. Client-supplied
tenant identifiers (body/query/path/headers) are never consulted.

SECURITY REQUIREMENTS:
- Reject operations without a resolved tenant
- Reject any read or write whose target belongs to another tenant
- Emit an audit entry on every violation
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from tenant_entitlements.entitlements.errors import TenantIsolationError
from tenant_entitlements.models.base import generate_uuid
from tenant_entitlements.platform.audit import (
    AuditAction,
    AuditEntry,
    AuditOutcome,
    AuditWriter,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class TenantScope:
    """
    Tenant context for a single operation.

    Only TenantIsolationGuard (or trusted system jobs via for_system) should
    construct one.
    """
    tenant_id: str
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    correlation_id: str = field(default_factory=generate_uuid)

    @property
    def actor(self) -> str:
        return self.user_id or SYSTEM_ACTOR

    @classmethod
    def for_system(cls, tenant_id: str, correlation_id: Optional[str] = None) -> "TenantScope":
        """Scope for background jobs and webhooks acting on a known tenant."""
        if not tenant_id:
            raise TenantIsolationError("tenant_id is required and cannot be empty")
        return cls(tenant_id=tenant_id, correlation_id=correlation_id or generate_uuid())


class TenantIsolationGuard:
    """
    Builds tenant scopes from resolved identities and checks that every
    record an operation touches belongs to the scoped tenant.
    """

    def __init__(self, audit_writer: Optional[AuditWriter] = None):
        self._audit_writer = audit_writer

    def scope_from_identity(
        self,
        identity: Optional[Mapping[str, Any]],
        correlation_id: Optional[str] = None,
    ) -> TenantScope:
        """
        Build a scope from the identity collaborator's output.

        Raises:
            TenantIsolationError: If no tenant was resolved
        """
        if not identity or not identity.get("tenant_id"):
            logger.warning("Operation attempted without tenant context")
            raise TenantIsolationError("Tenant context is required")

        return TenantScope(
            tenant_id=str(identity["tenant_id"]),
            user_id=identity.get("user_id"),
            user_email=identity.get("user_email"),
            correlation_id=correlation_id or generate_uuid(),
        )

    def ensure_same_tenant(
        self,
        scope: TenantScope,
        tenant_id: Optional[str],
        operation: str,
    ) -> None:
        """
        Raise if a record's tenant_id differs from the scope's.

        Raises:
            TenantIsolationError: On mismatch
        """
        if tenant_id == scope.tenant_id:
            return

        logger.error(
            "Tenant ID mismatch detected",
            extra={
                "scope_tenant_id": scope.tenant_id,
                "record_tenant_id": tenant_id,
                "operation": operation,
                "correlation_id": scope.correlation_id,
            },
        )
        if self._audit_writer is not None:
            self._audit_writer.write(AuditEntry(
                tenant_id=scope.tenant_id,
                action=AuditAction.SECURITY_CROSS_TENANT_DENIED,
                outcome=AuditOutcome.DENIED,
                correlation_id=scope.correlation_id,
                actor=scope.actor,
                resource=operation,
                detail={
                    "record_tenant_id": tenant_id,
                    "user_email": scope.user_email,
                },
            ), fail_closed=False)
        raise TenantIsolationError(
            f"Tenant ID mismatch: scope is {scope.tenant_id}, "
            f"but {operation} touched {tenant_id}"
        )
