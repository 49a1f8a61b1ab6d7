"""
Read access to the audit log.

All queries are scoped by tenant_id; there is no cross-tenant listing.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tenant_entitlements.entitlements.errors import TransientPersistenceError
from tenant_entitlements.platform.audit import AuditAction, AuditEntry, AuditLog

logger = logging.getLogger(__name__)


class AuditRepository:
    """Tenant-scoped audit log queries."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def _query(self, session: Session, tenant_id: str, action: Optional[AuditAction], since: Optional[datetime]):
        if not tenant_id:
            raise ValueError("tenant_id is required and cannot be empty")
        query = session.query(AuditLog).filter(AuditLog.tenant_id == tenant_id)
        if action is not None:
            query = query.filter(AuditLog.action == action.value)
        if since is not None:
            query = query.filter(AuditLog.timestamp >= since)
        return query

    def list_for_tenant(
        self,
        tenant_id: str,
        action: Optional[AuditAction] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        """Newest entries first."""
        session = self._session_factory()
        try:
            rows = self._query(session, tenant_id, action, since).order_by(
                AuditLog.timestamp.desc()
            ).limit(limit).all()
            return [AuditEntry.from_record(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error("Audit query failed", extra={"tenant_id": tenant_id, "error": str(e)})
            raise TransientPersistenceError(str(e), operation="list_audit") from e
        finally:
            session.close()

    def count(
        self,
        tenant_id: str,
        action: Optional[AuditAction] = None,
        since: Optional[datetime] = None,
    ) -> int:
        session = self._session_factory()
        try:
            return self._query(session, tenant_id, action, since).count()
        except SQLAlchemyError as e:
            logger.error("Audit count failed", extra={"tenant_id": tenant_id, "error": str(e)})
            raise TransientPersistenceError(str(e), operation="count_audit") from e
        finally:
            session.close()

    def by_correlation_id(self, tenant_id: str, correlation_id: str) -> List[AuditEntry]:
        session = self._session_factory()
        try:
            rows = self._query(session, tenant_id, None, None).filter(
                AuditLog.correlation_id == correlation_id
            ).order_by(AuditLog.timestamp).all()
            return [AuditEntry.from_record(row) for row in rows]
        except SQLAlchemyError as e:
            raise TransientPersistenceError(str(e), operation="audit_by_correlation") from e
        finally:
            session.close()
