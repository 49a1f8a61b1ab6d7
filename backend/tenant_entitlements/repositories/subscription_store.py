"""
Subscription store - the persistence collaborator for the engine.

Encapsulates all database operations for tenants, subscriptions, the
processed billing event ledger and audit entries with:
- One short-lived session per operation
- Optimistic concurrency (version compare-and-swap) on subscription saves
- Ledger row and subscription change committed in one transaction
- SQLAlchemy errors wrapped as TransientPersistenceError

Returns detached domain snapshots (SubscriptionState, TenantRecord), never
live ORM objects.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tenant_entitlements.entitlements.errors import (
    ConflictError,
    DuplicateEventError,
    EntitlementError,
    StaleSubscriptionError,
    TransientPersistenceError,
)
from tenant_entitlements.models.processed_billing_event import ProcessedBillingEvent
from tenant_entitlements.models.subscription import (
    Subscription,
    SubscriptionState,
    SubscriptionStatus,
)
from tenant_entitlements.models.tenant import Tenant, TenantRecord, TenantStatus
from tenant_entitlements.platform.audit import AuditEntry, AuditLog

logger = logging.getLogger(__name__)


def _state_values(state: SubscriptionState) -> dict:
    """Mutable column values of a snapshot. tenant_id and id are never included."""
    return {
        "tier": state.tier.value,
        "status": state.status.value,
        "is_current": state.is_current,
        "start_date": state.start_date,
        "end_date": state.end_date,
        "trial_expiry": state.trial_expiry,
        "grace_period_end": state.grace_period_end,
        "cancelled_at": state.cancelled_at,
        "billing_customer_id": state.billing_customer_id,
        "billing_subscription_id": state.billing_subscription_id,
        "billing_price_id": state.billing_price_id,
        "last_event_at": state.last_event_at,
    }


class SqlAlchemySubscriptionStore:
    """
    SQLAlchemy-backed persistence collaborator.

    Args:
        session_factory: Callable returning a new Session (a sessionmaker)
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except EntitlementError:
            session.rollback()
            raise
        except IntegrityError as e:
            session.rollback()
            logger.warning(
                "Integrity conflict in subscription store",
                extra={"operation": operation, "error": str(e.orig)},
            )
            raise ConflictError(f"{operation} conflicted with existing data") from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(
                "Subscription store operation failed",
                extra={"operation": operation, "error": str(e)},
            )
            raise TransientPersistenceError(str(e), operation=operation) from e
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    def get_tenant(self, tenant_id: str) -> Optional[TenantRecord]:
        with self._transaction("get_tenant") as session:
            tenant = session.query(Tenant).filter(Tenant.id == tenant_id).first()
            return tenant.to_domain() if tenant else None

    def create_tenant(
        self,
        tenant_id: str,
        name: Optional[str] = None,
        status: TenantStatus = TenantStatus.PENDING,
    ) -> TenantRecord:
        with self._transaction("create_tenant") as session:
            tenant = Tenant(id=tenant_id, name=name, status=status.value)
            session.add(tenant)
            session.flush()
            return tenant.to_domain()

    def _sync_tenant_status(self, session: Session, state: SubscriptionState) -> None:
        """Tenant status follows the current subscription, except administrative suspension."""
        if not state.is_current:
            return
        tenant = session.query(Tenant).filter(Tenant.id == state.tenant_id).first()
        if tenant is None or tenant.is_suspended:
            return
        target = TenantStatus.for_subscription_status(state.status).value
        if tenant.status != target:
            tenant.status = target

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def get_subscription(self, tenant_id: str) -> Optional[SubscriptionState]:
        """Current subscription for a tenant."""
        with self._transaction("get_subscription") as session:
            row = session.query(Subscription).filter(
                Subscription.tenant_id == tenant_id,
                Subscription.is_current == True,  # noqa: E712
            ).first()
            return row.to_domain() if row else None

    def get_subscription_by_id(self, subscription_id: str) -> Optional[SubscriptionState]:
        with self._transaction("get_subscription_by_id") as session:
            row = session.query(Subscription).filter(Subscription.id == subscription_id).first()
            return row.to_domain() if row else None

    def find_subscription_by_billing_subscription_id(
        self,
        billing_subscription_id: str,
    ) -> Optional[SubscriptionState]:
        with self._transaction("find_subscription_by_billing_subscription_id") as session:
            row = session.query(Subscription).filter(
                Subscription.billing_subscription_id == billing_subscription_id
            ).first()
            return row.to_domain() if row else None

    def find_subscription_by_billing_customer_id(
        self,
        billing_customer_id: str,
    ) -> Optional[SubscriptionState]:
        """Most relevant subscription for a customer: the current one, else the newest."""
        with self._transaction("find_subscription_by_billing_customer_id") as session:
            row = session.query(Subscription).filter(
                Subscription.billing_customer_id == billing_customer_id
            ).order_by(
                Subscription.is_current.desc(),
                Subscription.created_at.desc(),
            ).first()
            return row.to_domain() if row else None

    def _current_subscription_id(self, session: Session, tenant_id: str) -> Optional[str]:
        row = session.query(Subscription.id).filter(
            Subscription.tenant_id == tenant_id,
            Subscription.is_current == True,  # noqa: E712
        ).first()
        return row.id if row else None

    def create_subscription(self, state: SubscriptionState) -> SubscriptionState:
        """
        Insert a new current subscription.

        Raises:
            ConflictError: If the tenant already has a current subscription
        """
        with self._transaction("create_subscription") as session:
            if self._current_subscription_id(session, state.tenant_id) is not None:
                raise ConflictError(
                    f"Tenant {state.tenant_id} already has a current subscription",
                    tenant_id=state.tenant_id,
                )
            row = Subscription(id=state.id, tenant_id=state.tenant_id, version=1)
            row.apply_state(state)
            session.add(row)
            try:
                session.flush()
            except IntegrityError as e:
                # Lost the race with a concurrent insert for the same tenant
                raise ConflictError(
                    f"Tenant {state.tenant_id} already has a current subscription",
                    tenant_id=state.tenant_id,
                ) from e
            self._sync_tenant_status(session, state)
            return row.to_domain()

    def save_subscription(
        self,
        state: SubscriptionState,
        processed_event: Optional[ProcessedBillingEvent] = None,
    ) -> SubscriptionState:
        """
        Persist a snapshot if nobody else changed the row since it was read.

        Args:
            state: Snapshot whose version is the one originally read
            processed_event: Ledger row committed in the same transaction

        Returns:
            The saved snapshot with its new version

        Raises:
            StaleSubscriptionError: Version mismatch
            DuplicateEventError: The ledger already holds processed_event
        """
        with self._transaction("save_subscription") as session:
            self._record_event(session, processed_event)
            updated = session.query(Subscription).filter(
                Subscription.id == state.id,
                Subscription.tenant_id == state.tenant_id,
                Subscription.version == state.version,
            ).update(
                {**_state_values(state), "version": Subscription.version + 1},
                synchronize_session=False,
            )
            if updated != 1:
                raise StaleSubscriptionError(state.id, state.version)
            self._sync_tenant_status(session, state)
            return state.with_changes(version=state.version + 1)

    def replace_subscription(
        self,
        old: SubscriptionState,
        new: SubscriptionState,
        processed_event: Optional[ProcessedBillingEvent] = None,
    ) -> SubscriptionState:
        """
        Supersede old with a fresh current subscription (reactivation).

        The old row keeps its terminal status and is marked not current.
        """
        if old.tenant_id != new.tenant_id:
            raise ConflictError("Replacement subscription must belong to the same tenant")

        with self._transaction("replace_subscription") as session:
            self._record_event(session, processed_event)
            updated = session.query(Subscription).filter(
                Subscription.id == old.id,
                Subscription.version == old.version,
            ).update(
                {
                    "is_current": False,
                    "billing_subscription_id": None,
                    "version": Subscription.version + 1,
                },
                synchronize_session=False,
            )
            if updated != 1:
                raise StaleSubscriptionError(old.id, old.version)
            # Release the unique billing id before the new row claims it
            session.flush()
            row = Subscription(id=new.id, tenant_id=new.tenant_id, version=1)
            row.apply_state(new.with_changes(is_current=True))
            session.add(row)
            session.flush()
            self._sync_tenant_status(session, new)
            return row.to_domain()

    def list_due_for_expiry(
        self,
        now: datetime,
        trial_grace: timedelta = timedelta(0),
        limit: int = 100,
        after_id: Optional[str] = None,
    ) -> List[SubscriptionState]:
        """
        Current subscriptions whose trial or grace period has lapsed.

        Ordered by id so a sweep can resume after the last id it handled.
        """
        with self._transaction("list_due_for_expiry") as session:
            query = session.query(Subscription).filter(
                Subscription.is_current == True,  # noqa: E712
                or_(
                    and_(
                        Subscription.status == SubscriptionStatus.TRIAL.value,
                        Subscription.trial_expiry.isnot(None),
                        Subscription.trial_expiry < now - trial_grace,
                    ),
                    and_(
                        Subscription.status == SubscriptionStatus.GRACE_PERIOD.value,
                        Subscription.grace_period_end.isnot(None),
                        Subscription.grace_period_end < now,
                    ),
                ),
            )
            if after_id is not None:
                query = query.filter(Subscription.id > after_id)
            rows = query.order_by(Subscription.id).limit(limit).all()
            return [row.to_domain() for row in rows]

    # ------------------------------------------------------------------
    # Processed billing events
    # ------------------------------------------------------------------

    def _record_event(self, session: Session, processed_event: Optional[ProcessedBillingEvent]) -> None:
        if processed_event is None:
            return
        session.add(processed_event)
        try:
            session.flush()
        except IntegrityError as e:
            raise DuplicateEventError(processed_event.event_id) from e

    def has_processed_event(self, event_id: str) -> bool:
        with self._transaction("has_processed_event") as session:
            return session.query(ProcessedBillingEvent.id).filter(
                ProcessedBillingEvent.event_id == event_id
            ).first() is not None

    def record_processed_event(self, processed_event: ProcessedBillingEvent) -> None:
        """
        Record an event that changed nothing.

        Raises:
            DuplicateEventError: If the event was already recorded
        """
        with self._transaction("record_processed_event") as session:
            self._record_event(session, processed_event)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> None:
        """Append-only insert. Never updates an existing entry."""
        with self._transaction("append_audit") as session:
            session.add(AuditLog(**entry.to_record()))
