"""
Billing webhook reconciler.

Reconciles unordered, at-least-once billing events with internal
subscription state.

CRITICAL DESIGN:
- Subscriptions are resolved ONLY through provider identifiers
  (billing_subscription_id first, then billing_customer_id), never
  through tenant ids in the payload
- Idempotent: the processed-event ledger and the subscription change
  commit in one transaction; redelivery yields one "duplicate ignored"
  audit entry and no state change
- Last-write-wins on the event's own timestamp: events older than the
  subscription's last_event_at are ignored
- Transitions for one subscription are serialised (per-key lock in process,
  version check in the store); different tenants run in parallel
- Invalid and unmatched events are logged and dropped, never raised
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from tenant_entitlements.billing.events import BillingEvent
from tenant_entitlements.billing.state_machine import (
    EVENT_TRIGGERS,
    SubscriptionStateMachine,
    TransitionContext,
    TransitionOutcome,
    TransitionResult,
    Trigger,
)
from tenant_entitlements.entitlements.errors import (
    DuplicateEventError,
    InvalidEventError,
    StaleSubscriptionError,
)
from tenant_entitlements.models.processed_billing_event import ProcessedBillingEvent
from tenant_entitlements.models.subscription import SubscriptionState, SubscriptionStatus, SubscriptionTier
from tenant_entitlements.platform.audit import AuditAction, AuditEntry, AuditOutcome, AuditWriter
from tenant_entitlements.platform.keyed_lock import KeyedLocks
from tenant_entitlements.platform.tenant_guard import SYSTEM_ACTOR

logger = logging.getLogger(__name__)

WEBHOOK_ACTOR = "billing-webhook"


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    REACTIVATED = "reactivated"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"
    UNMATCHED = "unmatched"
    INVALID = "invalid"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of reconciling one billing event."""
    applied: bool
    outcome: ReconcileOutcome
    reason: str
    new_state: Optional[SubscriptionState] = None
    event_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "event_id": self.event_id,
            "subscription": self.new_state.to_dict() if self.new_state else None,
        }


class WebhookReconciler:
    """
    Applies billing events to subscriptions.

    Usage:
        reconciler = WebhookReconciler(store, audit_writer)
        result = reconciler.reconcile(payload)
    """

    def __init__(
        self,
        store,
        audit_writer: AuditWriter,
        state_machine: Optional[SubscriptionStateMachine] = None,
        locks: Optional[KeyedLocks] = None,
        price_tiers: Optional[Mapping[str, SubscriptionTier]] = None,
        max_conflict_retries: int = 3,
    ):
        self.store = store
        self.audit_writer = audit_writer
        self.state_machine = state_machine or SubscriptionStateMachine()
        self.locks = locks or KeyedLocks()
        self.price_tiers = dict(price_tiers or {})
        self.max_conflict_retries = max_conflict_retries

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def parse(self, payload: Union[BillingEvent, Mapping[str, Any]]) -> BillingEvent:
        """
        Raises:
            InvalidEventError: Malformed payload or unsupported type
        """
        if isinstance(payload, BillingEvent):
            return payload
        if isinstance(payload, Mapping) and "data" in payload and "event_id" not in payload:
            return BillingEvent.from_provider_payload(payload, self.price_tiers)
        return BillingEvent.parse(payload)

    def reconcile(self, payload: Union[BillingEvent, Mapping[str, Any]]) -> ReconcileResult:
        try:
            event = self.parse(payload)
        except InvalidEventError as e:
            logger.warning(
                "Dropping invalid billing event",
                extra={"event_id": e.event_id, "error": str(e)},
            )
            return ReconcileResult(False, ReconcileOutcome.INVALID, str(e), event_id=e.event_id)

        trigger = EVENT_TRIGGERS[event.type]
        state = self._resolve(event)
        if state is None:
            # Not recorded in the ledger: a redelivery after linking can still apply
            logger.info("No subscription matches billing event, dropping", extra=event.log_context())
            return ReconcileResult(
                False, ReconcileOutcome.UNMATCHED, "no matching subscription", event_id=event.event_id
            )

        with self.locks.hold(state.id):
            for attempt in range(self.max_conflict_retries + 1):
                state = self.store.get_subscription_by_id(state.id) or state
                try:
                    return self._reconcile_locked(event, trigger, state)
                except StaleSubscriptionError:
                    if attempt == self.max_conflict_retries:
                        logger.error(
                            "Giving up on billing event after repeated version conflicts",
                            extra=event.log_context(),
                        )
                        raise
                    logger.info(
                        "Subscription changed concurrently, re-reading",
                        extra={**event.log_context(), "attempt": attempt + 1},
                    )

    def _resolve(self, event: BillingEvent) -> Optional[SubscriptionState]:
        if event.billing_subscription_id:
            state = self.store.find_subscription_by_billing_subscription_id(event.billing_subscription_id)
            if state is not None:
                return state
        if event.billing_customer_id:
            return self.store.find_subscription_by_billing_customer_id(event.billing_customer_id)
        return None

    def _ledger_row(self, event: BillingEvent, subscription_id: str) -> ProcessedBillingEvent:
        return ProcessedBillingEvent(
            event_id=event.event_id,
            event_type=event.type.value,
            subscription_id=subscription_id,
            payload_hash=event.payload_hash(),
        )

    def _reconcile_locked(
        self,
        event: BillingEvent,
        trigger: Trigger,
        state: SubscriptionState,
    ) -> ReconcileResult:
        if self.store.has_processed_event(event.event_id):
            return self._duplicate(event, state, "event already processed")

        if state.last_event_at is not None and event.timestamp < state.last_event_at:
            try:
                self.store.record_processed_event(self._ledger_row(event, state.id))
            except DuplicateEventError:
                return self._duplicate(event, state, "event already processed")
            self._audit(state, AuditAction.BILLING_STALE_IGNORED, AuditOutcome.SUCCESS, event, {
                "last_event_at": state.last_event_at.isoformat(),
            })
            logger.info("Ignoring out-of-order billing event", extra=event.log_context())
            return ReconcileResult(
                False, ReconcileOutcome.STALE, "older than last applied event",
                new_state=state, event_id=event.event_id,
            )

        result = self.state_machine.apply(state, trigger, TransitionContext.from_event(event))
        ledger = self._ledger_row(event, state.id)

        try:
            if result.outcome == TransitionOutcome.APPLIED:
                saved = self.store.save_subscription(
                    result.state.with_changes(last_event_at=event.timestamp), ledger
                )
                self._audit_transition(result, saved, event)
                return ReconcileResult(True, ReconcileOutcome.APPLIED, result.reason, saved, event.event_id)

            if result.outcome == TransitionOutcome.REACTIVATED:
                saved = self.store.replace_subscription(
                    state, result.state.with_changes(last_event_at=event.timestamp), ledger
                )
                self._audit(saved, AuditAction.SUBSCRIPTION_REACTIVATED, AuditOutcome.SUCCESS, event, {
                    "previous_subscription_id": state.id,
                    "previous_status": state.status.value,
                    "tier": saved.tier.value,
                })
                logger.info(
                    "Subscription reactivated",
                    extra={**event.log_context(), "tenant_id": saved.tenant_id, "subscription_id": saved.id},
                )
                return ReconcileResult(True, ReconcileOutcome.REACTIVATED, result.reason, saved, event.event_id)

            if result.outcome == TransitionOutcome.NO_CHANGE:
                saved = self.store.save_subscription(
                    state.with_changes(last_event_at=event.timestamp), ledger
                )
                return self._duplicate(event, saved, result.reason)

            self.store.record_processed_event(ledger)
        except DuplicateEventError:
            return self._duplicate(event, state, "event already processed")

        self._audit(state, AuditAction.BILLING_EVENT_IGNORED, AuditOutcome.SUCCESS, event, {
            "reason": result.reason,
        })
        return ReconcileResult(False, ReconcileOutcome.IGNORED, result.reason, state, event.event_id)

    def _duplicate(self, event: BillingEvent, state: SubscriptionState, reason: str) -> ReconcileResult:
        self._audit(state, AuditAction.BILLING_DUPLICATE_IGNORED, AuditOutcome.SUCCESS, event, {
            "reason": reason,
        })
        logger.info("Duplicate billing event ignored", extra=event.log_context())
        return ReconcileResult(False, ReconcileOutcome.DUPLICATE, reason, state, event.event_id)

    def _audit(
        self,
        state: SubscriptionState,
        action: AuditAction,
        outcome: AuditOutcome,
        event: BillingEvent,
        detail: Dict[str, Any],
    ) -> None:
        self.audit_writer.write(AuditEntry(
            tenant_id=state.tenant_id,
            action=action,
            outcome=outcome,
            correlation_id=event.event_id,
            resource=f"subscription:{state.id}",
            actor=WEBHOOK_ACTOR,
            detail={
                "event_id": event.event_id,
                "event_type": event.type.value,
                "status": state.status.value,
                **detail,
            },
        ), fail_closed=False)

    def _audit_transition(
        self,
        result: TransitionResult,
        saved: SubscriptionState,
        event: BillingEvent,
    ) -> None:
        self._audit(saved, AuditAction.SUBSCRIPTION_TRANSITIONED, AuditOutcome.SUCCESS, event, {
            "trigger": result.trigger.value,
            "from_status": result.previous.status.value,
            "to_status": saved.status.value,
            "from_tier": result.previous.tier.value,
            "to_tier": saved.tier.value,
        })
        logger.info(
            "Billing event applied",
            extra={
                **event.log_context(),
                "tenant_id": saved.tenant_id,
                "subscription_id": saved.id,
                "from_status": result.previous.status.value,
                "to_status": saved.status.value,
            },
        )

    # ------------------------------------------------------------------
    # Time-driven transitions (sweeps and live checks)
    # ------------------------------------------------------------------

    def transition(
        self,
        state: SubscriptionState,
        trigger: Trigger,
        context: TransitionContext,
        actor: str = SYSTEM_ACTOR,
        correlation_id: Optional[str] = None,
    ) -> TransitionResult:
        """
        Apply a time-driven trigger under the subscription lock.

        Re-reads the subscription inside the lock so a concurrent webhook or
        sweep is never overwritten. Returns the result against the fresh state.
        """
        with self.locks.hold(state.id):
            for attempt in range(self.max_conflict_retries + 1):
                fresh = self.store.get_subscription_by_id(state.id) or state
                result = self.state_machine.apply(fresh, trigger, context)
                if result.outcome != TransitionOutcome.APPLIED:
                    return result
                try:
                    saved = self.store.save_subscription(result.state)
                except StaleSubscriptionError:
                    if attempt == self.max_conflict_retries:
                        raise
                    continue

                action = (
                    AuditAction.SUBSCRIPTION_EXPIRED
                    if saved.status == SubscriptionStatus.EXPIRED
                    else AuditAction.SUBSCRIPTION_TRANSITIONED
                )
                entry_kwargs = {}
                if correlation_id:
                    entry_kwargs["correlation_id"] = correlation_id
                self.audit_writer.write(AuditEntry(
                    tenant_id=saved.tenant_id,
                    action=action,
                    outcome=AuditOutcome.SUCCESS,
                    resource=f"subscription:{saved.id}",
                    actor=actor,
                    detail={
                        "trigger": trigger.value,
                        "from_status": fresh.status.value,
                        "to_status": saved.status.value,
                        "at": context.at.isoformat(),
                    },
                    **entry_kwargs,
                ), fail_closed=False)
                logger.info(
                    "Subscription transitioned",
                    extra={
                        "tenant_id": saved.tenant_id,
                        "subscription_id": saved.id,
                        "trigger": trigger.value,
                        "from_status": fresh.status.value,
                        "to_status": saved.status.value,
                    },
                )
                return TransitionResult(result.outcome, trigger, fresh, saved, result.reason)
