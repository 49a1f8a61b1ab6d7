"""
Entitlement Engine - decides whether a tenant may perform an operation.

Evaluation order (short-circuits on the first denial):
1. No current subscription             -> NO_SUBSCRIPTION
2. Cancelled/expired (or lapsed grace)  -> SUBSCRIPTION_INACTIVE
   unless still inside a cancelled subscription's paid period, or the
   capability is read-only and read-only access after cancellation is on
3. Trial past trial_expiry (live)       -> TRIAL_EXPIRED, status flipped to expired
4. Feature not granted by the tier      -> UPGRADE_REQUIRED (with minimum tier)
5. Caller-supplied usage at the limit   -> LIMIT_REACHED
6. Rate window exhausted                -> RATE_LIMITED (with retry_after)
7. Otherwise                            -> ALLOW

Every authorize() call writes exactly one decision audit entry before it
returns. A failed opportunistic transition is logged and never fails the call.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from tenant_entitlements.billing.reconciler import ReconcileResult, WebhookReconciler
from tenant_entitlements.billing.state_machine import (
    SubscriptionStateMachine,
    TransitionContext,
    Trigger,
)
from tenant_entitlements.config.settings import EngineSettings, get_settings
from tenant_entitlements.entitlements.catalog import (
    Capability,
    EntitlementCatalog,
    LIMIT_KEYS,
    get_entitlement_catalog,
    limit_allows,
    normalize_limit_key,
)
from tenant_entitlements.entitlements.decision import Decision, DenyReason
from tenant_entitlements.entitlements.errors import (
    AuditWriteError,
    ConflictError,
    EntitlementError,
    NotFoundError,
    StaleSubscriptionError,
    TransientPersistenceError,
)
from tenant_entitlements.entitlements.rate_limiter import (
    InMemoryWindowStore,
    RateLimiter,
    RedisWindowStore,
)
from tenant_entitlements.models.base import generate_uuid, utc_now
from tenant_entitlements.models.subscription import (
    SubscriptionState,
    SubscriptionStatus,
    SubscriptionTier,
)
from tenant_entitlements.models.tenant import TenantStatus
from tenant_entitlements.platform.audit import AuditAction, AuditEntry, AuditOutcome, AuditWriter
from tenant_entitlements.platform.tenant_guard import SYSTEM_ACTOR, TenantIsolationGuard, TenantScope

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Statistics for one expiry sweep."""
    checked: int = 0
    expired: int = 0
    errors: int = 0
    batches: int = 0
    last_subscription_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "expired": self.expired,
            "errors": self.errors,
            "batches": self.batches,
            "last_subscription_id": self.last_subscription_id,
        }


class EntitlementEngine:
    """
    Orchestrates catalog, rate limiter, state machine, reconciler and audit.

    Usage:
        engine = EntitlementEngine(store)
        decision = engine.authorize(scope, "createLibrary",
                                    resource_limit_key="max_libraries", current_usage=25)
        if not decision.allowed:
            return decision.to_error_response()
    """

    def __init__(
        self,
        store,
        catalog: Optional[EntitlementCatalog] = None,
        settings: Optional[EngineSettings] = None,
        rate_limiter: Optional[RateLimiter] = None,
        audit_writer: Optional[AuditWriter] = None,
        reconciler: Optional[WebhookReconciler] = None,
        guard: Optional[TenantIsolationGuard] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self._catalog = catalog
        self.settings = settings or get_settings()
        self._clock = clock
        self._sleep = sleep

        self.audit_writer = audit_writer or AuditWriter(
            store.append_audit,
            max_retries=self.settings.audit_max_retries,
            base_delay=self.settings.audit_retry_base_delay,
            max_delay=self.settings.audit_retry_max_delay,
            buffer_size=self.settings.audit_buffer_size,
            fail_closed=self.settings.audit_fail_closed,
            sleep=sleep,
        )
        if rate_limiter is None:
            window_store = (
                RedisWindowStore.from_url(self.settings.redis_url)
                if self.settings.redis_url
                else InMemoryWindowStore()
            )
            rate_limiter = RateLimiter(
                store=window_store,
                catalog=catalog,
                window_seconds=self.settings.rate_limit_window_seconds,
                clock=clock,
            )
        self.rate_limiter = rate_limiter
        self.reconciler = reconciler or WebhookReconciler(
            store,
            self.audit_writer,
            state_machine=SubscriptionStateMachine(grace_period=self.settings.grace_period),
            price_tiers=self.settings.resolved_price_tiers(),
        )
        self.guard = guard or TenantIsolationGuard(self.audit_writer)

    @property
    def catalog(self) -> EntitlementCatalog:
        return self._catalog or get_entitlement_catalog(self.settings.catalog_path)

    # ------------------------------------------------------------------
    # Persistence reads with bounded retry
    # ------------------------------------------------------------------

    def _calculate_backoff_delay(self, attempt: int) -> float:
        delay = self.settings.persistence_retry_base_delay * (2 ** attempt)
        return min(delay, self.settings.persistence_retry_max_delay)

    def _read_subscription(self, tenant_id: str) -> Optional[SubscriptionState]:
        max_retries = self.settings.persistence_max_retries
        for attempt in range(max_retries + 1):
            try:
                return self.store.get_subscription(tenant_id)
            except TransientPersistenceError:
                if attempt == max_retries:
                    logger.error(
                        "Subscription read failed after retries",
                        extra={"tenant_id": tenant_id, "attempts": attempt + 1},
                    )
                    raise
                delay = self._calculate_backoff_delay(attempt)
                logger.warning(
                    "Subscription read failed, retrying",
                    extra={"tenant_id": tenant_id, "attempt": attempt + 1, "delay_seconds": delay},
                )
                self._sleep(delay)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def authorize(
        self,
        scope: TenantScope,
        capability: str,
        resource_limit_key: Optional[str] = None,
        current_usage: Optional[int] = None,
        resource: Optional[str] = None,
    ) -> Decision:
        """
        Decide whether the scoped tenant may perform capability.

        Args:
            scope: Server-resolved tenant scope
            capability: Operation name from the catalog capability map
            resource_limit_key: Numeric limit to check (defaults to the
                capability's own limit key when current_usage is given)
            current_usage: Caller-supplied current usage for that limit
            resource: Resource identifier recorded in the audit entry

        Raises:
            ValueError: resource_limit_key is not a catalog limit
            TransientPersistenceError: Subscription could not be read within
                the retry budget
        """
        if resource_limit_key is not None and normalize_limit_key(resource_limit_key) not in LIMIT_KEYS:
            raise ValueError(
                f"Unknown resource limit {resource_limit_key!r}; expected one of {list(LIMIT_KEYS)}"
            )
        now = self._clock()
        cap = self.catalog.capability(capability)
        limit_key = resource_limit_key
        if limit_key is None and current_usage is not None:
            limit_key = cap.limit_key

        decision = self._evaluate(scope, cap, limit_key, current_usage, now)
        decision = decision.with_correlation_id(scope.correlation_id)

        entry = AuditEntry(
            tenant_id=scope.tenant_id,
            action=AuditAction.ENTITLEMENT_ALLOWED if decision.allowed else AuditAction.ENTITLEMENT_DENIED,
            outcome=AuditOutcome.SUCCESS if decision.allowed else AuditOutcome.DENIED,
            correlation_id=scope.correlation_id,
            timestamp=now,
            resource=resource or capability,
            actor=scope.actor,
            detail={**decision.to_dict(), "user_email": scope.user_email},
        )
        try:
            self.audit_writer.write(entry)
        except AuditWriteError as e:
            logger.error(
                "Decision could not be audited, failing closed",
                extra={"tenant_id": scope.tenant_id, "capability": capability, "correlation_id": e.correlation_id},
            )
            refused = Decision.error(
                capability,
                "Audit log unavailable; operation refused",
                correlation_id=scope.correlation_id,
            )
            # The buffered entry must record the refusal, not the evaluated decision
            self.audit_writer.buffer(AuditEntry(
                tenant_id=scope.tenant_id,
                action=AuditAction.ENTITLEMENT_ERROR,
                outcome=AuditOutcome.FAILED,
                correlation_id=scope.correlation_id,
                timestamp=now,
                resource=resource or capability,
                actor=scope.actor,
                detail={
                    **refused.to_dict(),
                    "evaluated_outcome": decision.outcome.value,
                    "user_email": scope.user_email,
                },
            ), str(e))
            return refused

        logger.debug(
            "Entitlement decision",
            extra={
                "tenant_id": scope.tenant_id,
                "capability": capability,
                "outcome": decision.outcome.value,
                "reason": decision.reason.value if decision.reason else None,
                "correlation_id": scope.correlation_id,
            },
        )
        return decision

    def _evaluate(
        self,
        scope: TenantScope,
        cap: Capability,
        limit_key: Optional[str],
        current_usage: Optional[int],
        now: datetime,
    ) -> Decision:
        state = self._read_subscription(scope.tenant_id)
        if state is None:
            return Decision.deny(
                cap.name, DenyReason.NO_SUBSCRIPTION,
                "No active subscription. Start a trial or subscribe to continue.",
            )
        self.guard.ensure_same_tenant(scope, state.tenant_id, f"authorize:{cap.name}")

        if state.grace_expired(now):
            state = self._expire_live(scope, state, Trigger.GRACE_EXPIRED, now)

        if state.is_terminal and not self._terminal_access(state, cap, now):
            return Decision.deny(
                cap.name, DenyReason.SUBSCRIPTION_INACTIVE,
                f"Subscription is {state.status.value}. Reactivate to continue.",
                current_tier=state.tier,
            )

        if state.trial_expired(now, self.settings.trial_expiry_grace):
            state = self._expire_live(scope, state, Trigger.TRIAL_EXPIRED, now)
            if state.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD):
                return Decision.deny(
                    cap.name, DenyReason.TRIAL_EXPIRED,
                    "Your trial has ended. Subscribe to continue.",
                    current_tier=state.tier,
                )
            # A payment landed concurrently; evaluate the fresh state
            return self._evaluate_entitlements(scope, state, cap, limit_key, current_usage)

        return self._evaluate_entitlements(scope, state, cap, limit_key, current_usage)

    def _evaluate_entitlements(
        self,
        scope: TenantScope,
        state: SubscriptionState,
        cap: Capability,
        limit_key: Optional[str],
        current_usage: Optional[int],
    ) -> Decision:
        catalog = self.catalog
        tier = state.tier

        if not catalog.has_feature(tier, cap.name):
            required = catalog.minimum_tier_for(cap.name)
            return Decision.deny(
                cap.name, DenyReason.UPGRADE_REQUIRED,
                f"{cap.name} is not included in the {tier.display_name} plan."
                + (f" Upgrade to {required.display_name}." if required else ""),
                required_tier=required,
                current_tier=tier,
            )

        if limit_key is not None and current_usage is not None:
            limit = catalog.limit_value(tier, limit_key)
            if not limit_allows(limit, current_usage):
                required = self._minimum_tier_for_usage(limit_key, current_usage)
                return Decision.deny(
                    cap.name, DenyReason.LIMIT_REACHED,
                    f"{tier.display_name} plan limit reached for {limit_key} ({limit}).",
                    limit=limit,
                    current_usage=current_usage,
                    required_tier=required,
                    current_tier=tier,
                )

        result = self.rate_limiter.check_and_increment(scope.tenant_id, cap.endpoint_class, tier)
        if not result.allowed:
            return Decision.deny(
                cap.name, DenyReason.RATE_LIMITED,
                f"Rate limit exceeded for {cap.endpoint_class} requests. Retry later.",
                retry_after=result.retry_after,
                reset_at=result.reset_at,
                limit=result.limit,
                remaining=0,
                current_tier=tier,
            )

        return Decision.allow(
            cap.name,
            current_tier=tier,
            limit=result.limit,
            remaining=result.remaining,
            reset_at=result.reset_at,
        )

    def _terminal_access(self, state: SubscriptionState, cap: Capability, now: datetime) -> bool:
        if state.status == SubscriptionStatus.CANCELLED and state.within_paid_period(now):
            return True
        return cap.read_only and self.settings.cancelled_read_only_access

    def _minimum_tier_for_usage(self, limit_key: str, current_usage: int) -> Optional[SubscriptionTier]:
        for tier in self.catalog.tiers():
            if limit_allows(self.catalog.limit_value(tier, limit_key), current_usage):
                return tier
        return None

    def _expire_live(
        self,
        scope: TenantScope,
        state: SubscriptionState,
        trigger: Trigger,
        now: datetime,
    ) -> SubscriptionState:
        """
        Apply an expiry transition found during authorize.

        Returns the state to evaluate against. If persisting fails the
        decision is still made as if the subscription had expired.
        """
        try:
            result = self.reconciler.transition(
                state, trigger, TransitionContext(at=now),
                actor=scope.actor, correlation_id=scope.correlation_id,
            )
            return result.state
        except EntitlementError as e:
            logger.warning(
                "Opportunistic expiry failed, evaluating as expired",
                extra={
                    "tenant_id": state.tenant_id,
                    "subscription_id": state.id,
                    "trigger": trigger.value,
                    "error": str(e),
                },
            )
            return state.with_changes(
                status=SubscriptionStatus.EXPIRED,
                trial_expiry=None,
                grace_period_end=None,
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def onboard(
        self,
        tenant_id: str,
        name: Optional[str] = None,
        billing_customer_id: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> SubscriptionState:
        """
        Create the tenant (if needed) and its Starter trial subscription.

        Raises:
            ConflictError: If the tenant already has a current subscription
        """
        if not tenant_id:
            raise ValueError("tenant_id is required and cannot be empty")
        if self.store.get_subscription(tenant_id) is not None:
            raise ConflictError(f"Tenant {tenant_id} is already onboarded", tenant_id=tenant_id)

        if self.store.get_tenant(tenant_id) is None:
            try:
                self.store.create_tenant(tenant_id, name=name, status=TenantStatus.PENDING)
            except ConflictError:
                logger.info("Tenant created concurrently", extra={"tenant_id": tenant_id})

        now = self._clock()
        state = self.store.create_subscription(SubscriptionState(
            id=generate_uuid(),
            tenant_id=tenant_id,
            tier=SubscriptionTier.STARTER,
            status=SubscriptionStatus.TRIAL,
            start_date=now,
            trial_expiry=now + self.settings.trial_period,
            billing_customer_id=billing_customer_id,
        ))

        self.audit_writer.write(AuditEntry(
            tenant_id=tenant_id,
            action=AuditAction.TENANT_ONBOARDED,
            outcome=AuditOutcome.SUCCESS,
            timestamp=now,
            resource=f"subscription:{state.id}",
            actor=actor or SYSTEM_ACTOR,
            detail={
                "tier": state.tier.value,
                "status": state.status.value,
                "trial_expiry": state.trial_expiry.isoformat(),
            },
        ), fail_closed=False)
        logger.info(
            "Tenant onboarded",
            extra={"tenant_id": tenant_id, "subscription_id": state.id, "trial_expiry": state.trial_expiry.isoformat()},
        )
        return state

    def link_billing_customer(
        self,
        scope: TenantScope,
        billing_customer_id: str,
        billing_subscription_id: Optional[str] = None,
    ) -> SubscriptionState:
        """
        Attach billing provider ids to the tenant's current subscription.

        Called by server-side checkout code before the first webhook so the
        reconciler can resolve the subscription.

        Raises:
            NotFoundError: If the tenant has no current subscription
        """
        for attempt in range(self.reconciler.max_conflict_retries + 1):
            state = self._read_subscription(scope.tenant_id)
            if state is None:
                raise NotFoundError(f"Tenant {scope.tenant_id} has no subscription", tenant_id=scope.tenant_id)
            self.guard.ensure_same_tenant(scope, state.tenant_id, "link_billing_customer")

            with self.reconciler.locks.hold(state.id):
                updated = state.with_changes(
                    billing_customer_id=billing_customer_id,
                    billing_subscription_id=billing_subscription_id or state.billing_subscription_id,
                )
                if updated == state:
                    return state
                try:
                    saved = self.store.save_subscription(updated)
                except StaleSubscriptionError:
                    if attempt == self.reconciler.max_conflict_retries:
                        raise
                    continue

            self.audit_writer.write(AuditEntry(
                tenant_id=scope.tenant_id,
                action=AuditAction.BILLING_CUSTOMER_LINKED,
                outcome=AuditOutcome.SUCCESS,
                correlation_id=scope.correlation_id,
                resource=f"subscription:{saved.id}",
                actor=scope.actor,
                detail={
                    "billing_customer_id": billing_customer_id,
                    "billing_subscription_id": saved.billing_subscription_id,
                },
            ), fail_closed=False)
            return saved

    def reconcile(self, event) -> ReconcileResult:
        """Apply a billing webhook event. See WebhookReconciler.reconcile."""
        return self.reconciler.reconcile(event)

    def get_entitlements(self, scope: TenantScope) -> Dict[str, Any]:
        """Summary of what the scoped tenant currently has, for API responses."""
        state = self._read_subscription(scope.tenant_id)
        if state is None:
            raise NotFoundError(f"Tenant {scope.tenant_id} has no subscription", tenant_id=scope.tenant_id)
        self.guard.ensure_same_tenant(scope, state.tenant_id, "get_entitlements")
        entry = self.catalog.entry(state.tier)
        return {
            "tenant_id": scope.tenant_id,
            "subscription": state.to_dict(),
            "catalog_version": self.catalog.version,
            **entry.to_dict(),
        }

    def expire_due_subscriptions(
        self,
        now: Optional[datetime] = None,
        batch_size: Optional[int] = None,
        after_id: Optional[str] = None,
        max_batches: Optional[int] = None,
    ) -> SweepResult:
        """
        Expire lapsed trials and grace periods in batches.

        Each subscription is transitioned independently, so a failure on
        one never blocks the rest. Pass the previous run's
        last_subscription_id as after_id to resume.
        """
        now = now or self._clock()
        batch_size = batch_size or self.settings.sweep_batch_size
        result = SweepResult(last_subscription_id=after_id)

        while max_batches is None or result.batches < max_batches:
            batch = self.store.list_due_for_expiry(
                now,
                trial_grace=self.settings.trial_expiry_grace,
                limit=batch_size,
                after_id=result.last_subscription_id,
            )
            if not batch:
                break
            result.batches += 1

            for state in batch:
                result.checked += 1
                trigger = (
                    Trigger.TRIAL_EXPIRED
                    if state.status == SubscriptionStatus.TRIAL
                    else Trigger.GRACE_EXPIRED
                )
                try:
                    transition = self.reconciler.transition(state, trigger, TransitionContext(at=now))
                    if transition.changed:
                        result.expired += 1
                except EntitlementError as e:
                    result.errors += 1
                    logger.error(
                        "Failed to expire subscription",
                        extra={"tenant_id": state.tenant_id, "subscription_id": state.id, "error": str(e)},
                    )
                result.last_subscription_id = state.id

            if len(batch) < batch_size:
                break

        logger.info("Expiry sweep finished", extra=result.to_dict())
        return result
