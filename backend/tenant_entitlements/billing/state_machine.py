"""
Subscription state machine.

Transition graph:
    trial        -> active | expired | cancelled
    active       -> grace_period | cancelled
    grace_period -> active | cancelled | expired
    cancelled, expired: terminal (checkout creates a fresh subscription)

TRANSITION_TABLE is explicit and total: every (status, trigger) pair maps to
APPLY (with a target status), IGNORE, or REACTIVATE. The machine is pure; it
never touches storage. Serialisation per subscription is the caller's job.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional, Tuple

from tenant_entitlements.billing.events import BillingEvent, BillingEventType
from tenant_entitlements.models.base import generate_uuid
from tenant_entitlements.models.subscription import (
    SubscriptionState,
    SubscriptionStatus,
    SubscriptionTier,
)

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = timedelta(days=7)


class Trigger(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    CANCELLATION_REQUESTED = "cancellation_requested"
    TRIAL_EXPIRED = "trial_expired"
    GRACE_EXPIRED = "grace_expired"


EVENT_TRIGGERS = {
    BillingEventType.CHECKOUT_COMPLETED: Trigger.CHECKOUT_COMPLETED,
    BillingEventType.INVOICE_PAID: Trigger.PAYMENT_SUCCEEDED,
    BillingEventType.PAYMENT_FAILED: Trigger.PAYMENT_FAILED,
    BillingEventType.SUBSCRIPTION_UPDATED: Trigger.SUBSCRIPTION_UPDATED,
    BillingEventType.SUBSCRIPTION_CANCELLED: Trigger.CANCELLATION_REQUESTED,
}


class RuleAction(str, Enum):
    APPLY = "apply"
    IGNORE = "ignore"
    REACTIVATE = "reactivate"


@dataclass(frozen=True)
class Rule:
    action: RuleAction
    target: Optional[SubscriptionStatus] = None


_ignore = Rule(RuleAction.IGNORE)
_reactivate = Rule(RuleAction.REACTIVATE)


def _to(status: SubscriptionStatus) -> Rule:
    return Rule(RuleAction.APPLY, status)


S = SubscriptionStatus
T = Trigger

TRANSITION_TABLE: Dict[Tuple[SubscriptionStatus, Trigger], Rule] = {
    (S.TRIAL, T.CHECKOUT_COMPLETED): _to(S.ACTIVE),
    (S.TRIAL, T.PAYMENT_SUCCEEDED): _to(S.ACTIVE),
    (S.TRIAL, T.PAYMENT_FAILED): _ignore,
    (S.TRIAL, T.SUBSCRIPTION_UPDATED): _to(S.ACTIVE),
    (S.TRIAL, T.CANCELLATION_REQUESTED): _to(S.CANCELLED),
    (S.TRIAL, T.TRIAL_EXPIRED): _to(S.EXPIRED),
    (S.TRIAL, T.GRACE_EXPIRED): _ignore,

    (S.ACTIVE, T.CHECKOUT_COMPLETED): _to(S.ACTIVE),
    (S.ACTIVE, T.PAYMENT_SUCCEEDED): _to(S.ACTIVE),
    (S.ACTIVE, T.PAYMENT_FAILED): _to(S.GRACE_PERIOD),
    (S.ACTIVE, T.SUBSCRIPTION_UPDATED): _to(S.ACTIVE),
    (S.ACTIVE, T.CANCELLATION_REQUESTED): _to(S.CANCELLED),
    (S.ACTIVE, T.TRIAL_EXPIRED): _ignore,
    (S.ACTIVE, T.GRACE_EXPIRED): _ignore,

    (S.GRACE_PERIOD, T.CHECKOUT_COMPLETED): _to(S.ACTIVE),
    (S.GRACE_PERIOD, T.PAYMENT_SUCCEEDED): _to(S.ACTIVE),
    (S.GRACE_PERIOD, T.PAYMENT_FAILED): _to(S.GRACE_PERIOD),
    (S.GRACE_PERIOD, T.SUBSCRIPTION_UPDATED): _to(S.GRACE_PERIOD),
    (S.GRACE_PERIOD, T.CANCELLATION_REQUESTED): _to(S.CANCELLED),
    (S.GRACE_PERIOD, T.TRIAL_EXPIRED): _ignore,
    (S.GRACE_PERIOD, T.GRACE_EXPIRED): _to(S.EXPIRED),

    (S.CANCELLED, T.CHECKOUT_COMPLETED): _reactivate,
    (S.CANCELLED, T.PAYMENT_SUCCEEDED): _ignore,
    (S.CANCELLED, T.PAYMENT_FAILED): _ignore,
    (S.CANCELLED, T.SUBSCRIPTION_UPDATED): _ignore,
    (S.CANCELLED, T.CANCELLATION_REQUESTED): _ignore,
    (S.CANCELLED, T.TRIAL_EXPIRED): _ignore,
    (S.CANCELLED, T.GRACE_EXPIRED): _ignore,

    (S.EXPIRED, T.CHECKOUT_COMPLETED): _reactivate,
    (S.EXPIRED, T.PAYMENT_SUCCEEDED): _ignore,
    (S.EXPIRED, T.PAYMENT_FAILED): _ignore,
    (S.EXPIRED, T.SUBSCRIPTION_UPDATED): _ignore,
    (S.EXPIRED, T.CANCELLATION_REQUESTED): _ignore,
    (S.EXPIRED, T.TRIAL_EXPIRED): _ignore,
    (S.EXPIRED, T.GRACE_EXPIRED): _ignore,
}

# Allowed status changes, derived from the table
VALID_TRANSITIONS = {
    status: frozenset(
        rule.target for (source, _), rule in TRANSITION_TABLE.items()
        if source == status and rule.action == RuleAction.APPLY and rule.target != status
    )
    for status in SubscriptionStatus
}

_missing = [(s, t) for s in SubscriptionStatus for t in Trigger if (s, t) not in TRANSITION_TABLE]
if _missing:
    raise RuntimeError(f"Transition table is not total: {_missing}")


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    NO_CHANGE = "no_change"      # Effect already present; semantic duplicate
    IGNORED = "ignored"          # Not meaningful in the current status
    REACTIVATED = "reactivated"  # Fresh subscription supersedes a terminal one


@dataclass(frozen=True)
class TransitionContext:
    """
    Inputs for a transition.

    at is the event's own timestamp for billing triggers and the sweep time
    for expiry triggers.
    """
    at: datetime
    tier: Optional[SubscriptionTier] = None
    price_id: Optional[str] = None
    period_end: Optional[datetime] = None
    billing_customer_id: Optional[str] = None
    billing_subscription_id: Optional[str] = None

    @classmethod
    def from_event(cls, event: BillingEvent) -> "TransitionContext":
        return cls(
            at=event.timestamp,
            tier=event.tier,
            price_id=event.price_id,
            period_end=event.period_end,
            billing_customer_id=event.billing_customer_id,
            billing_subscription_id=event.billing_subscription_id,
        )


@dataclass(frozen=True)
class TransitionResult:
    outcome: TransitionOutcome
    trigger: Trigger
    previous: SubscriptionState
    state: SubscriptionState
    reason: str = ""

    @property
    def changed(self) -> bool:
        return self.outcome in (TransitionOutcome.APPLIED, TransitionOutcome.REACTIVATED)


class SubscriptionStateMachine:
    """
    Applies triggers to subscription snapshots.

    Usage:
        machine = SubscriptionStateMachine(grace_period=timedelta(days=7))
        result = machine.apply(state, Trigger.PAYMENT_FAILED, TransitionContext(at=now))
        if result.changed:
            store.save_subscription(result.state)
    """

    def __init__(self, grace_period: timedelta = DEFAULT_GRACE_PERIOD):
        self.grace_period = grace_period

    @staticmethod
    def rule_for(status: SubscriptionStatus, trigger: Trigger) -> Rule:
        return TRANSITION_TABLE[(status, trigger)]

    @staticmethod
    def is_valid_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
        return target in VALID_TRANSITIONS[current]

    def apply(
        self,
        state: SubscriptionState,
        trigger: Trigger,
        context: TransitionContext,
    ) -> TransitionResult:
        rule = self.rule_for(state.status, trigger)

        if rule.action == RuleAction.IGNORE:
            return TransitionResult(
                TransitionOutcome.IGNORED, trigger, state, state,
                reason=f"{trigger.value} has no effect on a {state.status.value} subscription",
            )

        if rule.action == RuleAction.REACTIVATE:
            return TransitionResult(
                TransitionOutcome.REACTIVATED, trigger, state, self._reactivated(state, context),
                reason="checkout on a terminal subscription",
            )

        if (
            state.status == SubscriptionStatus.GRACE_PERIOD
            and rule.target == SubscriptionStatus.ACTIVE
            and state.grace_period_end is not None
            and context.at > state.grace_period_end
        ):
            return TransitionResult(
                TransitionOutcome.IGNORED, trigger, state, state,
                reason="payment arrived after the grace window closed",
            )

        new_state = self._effect(state, rule.target, context)
        if new_state == state:
            return TransitionResult(
                TransitionOutcome.NO_CHANGE, trigger, state, state,
                reason="effect already applied",
            )
        return TransitionResult(
            TransitionOutcome.APPLIED, trigger, state, new_state,
            reason=f"{state.status.value} -> {new_state.status.value}",
        )

    def _with_billing(self, state: SubscriptionState, context: TransitionContext, **changes) -> SubscriptionState:
        return state.with_changes(
            tier=context.tier or state.tier,
            billing_price_id=context.price_id or state.billing_price_id,
            end_date=context.period_end or state.end_date,
            billing_customer_id=state.billing_customer_id or context.billing_customer_id,
            billing_subscription_id=state.billing_subscription_id or context.billing_subscription_id,
            **changes,
        )

    def _effect(
        self,
        state: SubscriptionState,
        target: SubscriptionStatus,
        context: TransitionContext,
    ) -> SubscriptionState:
        if target == SubscriptionStatus.ACTIVE:
            start_date = context.at if state.status == SubscriptionStatus.TRIAL else state.start_date
            return self._with_billing(
                state, context,
                status=SubscriptionStatus.ACTIVE,
                start_date=start_date,
                trial_expiry=None,
                grace_period_end=None,
            )

        if target == SubscriptionStatus.GRACE_PERIOD:
            if state.status == SubscriptionStatus.GRACE_PERIOD:
                # Repeated failures never extend the window
                return self._with_billing(state, context)
            return state.with_changes(
                status=SubscriptionStatus.GRACE_PERIOD,
                grace_period_end=context.at + self.grace_period,
            )

        if target == SubscriptionStatus.CANCELLED:
            return state.with_changes(
                status=SubscriptionStatus.CANCELLED,
                cancelled_at=context.at,
                end_date=context.period_end or state.end_date,
                trial_expiry=None,
                grace_period_end=None,
            )

        if target == SubscriptionStatus.EXPIRED:
            return state.with_changes(
                status=SubscriptionStatus.EXPIRED,
                end_date=state.end_date or context.at,
                trial_expiry=None,
                grace_period_end=None,
            )

        raise ValueError(f"Unhandled target status {target}")

    def _reactivated(self, old: SubscriptionState, context: TransitionContext) -> SubscriptionState:
        return SubscriptionState(
            id=generate_uuid(),
            tenant_id=old.tenant_id,
            tier=context.tier or old.tier,
            status=SubscriptionStatus.ACTIVE,
            start_date=context.at,
            end_date=context.period_end,
            billing_customer_id=context.billing_customer_id or old.billing_customer_id,
            billing_subscription_id=context.billing_subscription_id or old.billing_subscription_id,
            billing_price_id=context.price_id,
            is_current=True,
            version=1,
        )
