"""
Tenant isolation tests.

CRITICAL: Tenant scope comes only from the server-resolved identity, and
any cross-tenant access is refused and audited.
"""

from unittest.mock import Mock

import pytest

from tenant_entitlements.entitlements.errors import TenantIsolationError
from tenant_entitlements.platform.audit import AuditAction, AuditOutcome
from tenant_entitlements.platform.tenant_guard import (
    SYSTEM_ACTOR,
    TenantIsolationGuard,
    TenantScope,
)


@pytest.fixture
def audit_writer():
    return Mock()


@pytest.fixture
def guard(audit_writer):
    return TenantIsolationGuard(audit_writer)


class TestScopeFromIdentity:

    def test_scope_built_from_identity(self, guard):
        scope = guard.scope_from_identity(
            {"tenant_id": "tenant-a", "user_id": "user-1", "user_email": "alice@contoso.com"},
            correlation_id="corr-1",
        )
        assert scope == TenantScope("tenant-a", "user-1", "alice@contoso.com", "corr-1")
        assert scope.actor == "user-1"

    def test_correlation_id_generated_when_absent(self, guard):
        scope = guard.scope_from_identity({"tenant_id": "tenant-a"})
        assert len(scope.correlation_id) == 36
        assert scope.actor == SYSTEM_ACTOR

    @pytest.mark.parametrize("identity", [None, {}, {"tenant_id": ""}, {"user_id": "user-1"}])
    def test_missing_tenant_rejected(self, guard, identity):
        with pytest.raises(TenantIsolationError):
            guard.scope_from_identity(identity)

    def test_system_scope_requires_tenant(self):
        assert TenantScope.for_system("tenant-a").tenant_id == "tenant-a"
        with pytest.raises(TenantIsolationError):
            TenantScope.for_system("")


class TestEnsureSameTenant:

    def test_same_tenant_passes(self, guard, audit_writer):
        scope = TenantScope(tenant_id="tenant-a")
        guard.ensure_same_tenant(scope, "tenant-a", "authorize")
        audit_writer.write.assert_not_called()

    def test_cross_tenant_access_rejected_and_audited(self, guard, audit_writer):
        scope = TenantScope(tenant_id="tenant-a", user_id="user-1", correlation_id="corr-1")

        with pytest.raises(TenantIsolationError, match="tenant-b"):
            guard.ensure_same_tenant(scope, "tenant-b", "authorize:createLibrary")

        entry = audit_writer.write.call_args.args[0]
        assert entry.action == AuditAction.SECURITY_CROSS_TENANT_DENIED
        assert entry.outcome == AuditOutcome.DENIED
        assert entry.tenant_id == "tenant-a"
        assert entry.correlation_id == "corr-1"
        assert entry.detail["record_tenant_id"] == "tenant-b"

    def test_guard_without_writer_still_rejects(self):
        with pytest.raises(TenantIsolationError):
            TenantIsolationGuard().ensure_same_tenant(TenantScope("tenant-a"), "tenant-b", "read")
