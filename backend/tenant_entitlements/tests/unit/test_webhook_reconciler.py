"""
Billing webhook reconciliation tests.

CRITICAL: The provider delivers at-least-once and out of order. These tests
verify that redelivery never re-applies an event, that older events never
overwrite newer state, and that unresolvable events are dropped safely.
"""

from datetime import timedelta

import pytest

from tenant_entitlements.billing.reconciler import ReconcileOutcome
from tenant_entitlements.models.subscription import SubscriptionStatus, SubscriptionTier
from tenant_entitlements.models.tenant import TenantStatus
from tenant_entitlements.platform.audit import AuditAction

T = SubscriptionTier


@pytest.fixture
def trial(engine):
    return engine.onboard("tenant-a", name="Contoso", billing_customer_id="cus_a")


@pytest.fixture
def active(engine, trial, make_event):
    result = engine.reconcile(make_event("invoice.paid", offset=timedelta(hours=1), event_id="evt_paid"))
    assert result.new_state.status == SubscriptionStatus.ACTIVE
    return result.new_state


class TestIdempotency:

    def test_event_applied_once(self, engine, trial, make_event, audit_repo):
        event = make_event("checkout.completed", tier="professional", billing_subscription_id="sub_x")

        first = engine.reconcile(event)
        second = engine.reconcile(event)

        assert first.applied
        assert first.outcome == ReconcileOutcome.APPLIED
        assert first.new_state.tier == T.PROFESSIONAL
        assert not second.applied
        assert second.outcome == ReconcileOutcome.DUPLICATE
        assert second.new_state.version == first.new_state.version
        assert audit_repo.count("tenant-a", AuditAction.BILLING_DUPLICATE_IGNORED) == 1
        assert audit_repo.count("tenant-a", AuditAction.SUBSCRIPTION_TRANSITIONED) == 1

    def test_semantic_duplicate_is_not_reapplied(self, engine, active, make_event, audit_repo):
        result = engine.reconcile(make_event("invoice.paid", offset=timedelta(hours=2)))

        assert result.outcome == ReconcileOutcome.DUPLICATE
        assert result.new_state.status == SubscriptionStatus.ACTIVE
        assert result.new_state.last_event_at == active.last_event_at + timedelta(hours=1)
        assert audit_repo.count("tenant-a", AuditAction.BILLING_DUPLICATE_IGNORED) == 1

    def test_audit_correlates_with_event_id(self, engine, trial, make_event, audit_repo):
        engine.reconcile(make_event("invoice.paid", event_id="evt_corr"))

        entries = audit_repo.by_correlation_id("tenant-a", "evt_corr")
        assert [e.action for e in entries] == [AuditAction.SUBSCRIPTION_TRANSITIONED]
        assert entries[0].detail["from_status"] == "trial"
        assert entries[0].detail["to_status"] == "active"


class TestOrdering:

    def test_older_event_never_overwrites_newer_state(self, engine, trial, make_event, audit_repo, store):
        newer = make_event(
            "subscription.updated", offset=timedelta(hours=2),
            tier="business", billing_subscription_id="sub_x",
        )
        older = make_event("checkout.completed", offset=timedelta(hours=1), tier="professional")

        assert engine.reconcile(newer).outcome == ReconcileOutcome.APPLIED
        result = engine.reconcile(older)

        assert result.outcome == ReconcileOutcome.STALE
        current = store.get_subscription("tenant-a")
        assert current.tier == T.BUSINESS
        assert current.status == SubscriptionStatus.ACTIVE
        assert store.has_processed_event(older["event_id"])
        assert audit_repo.count("tenant-a", AuditAction.BILLING_STALE_IGNORED) == 1

    def test_stale_redelivery_is_duplicate(self, engine, trial, make_event):
        engine.reconcile(make_event("invoice.paid", offset=timedelta(hours=2)))
        older = make_event("subscription.updated", offset=timedelta(hours=1), tier="business")

        assert engine.reconcile(older).outcome == ReconcileOutcome.STALE
        assert engine.reconcile(older).outcome == ReconcileOutcome.DUPLICATE


class TestGracePeriod:

    def test_failure_then_recovery(self, engine, active, make_event, store):
        failed = engine.reconcile(make_event("invoice.payment_failed", offset=timedelta(hours=2)))

        assert failed.new_state.status == SubscriptionStatus.GRACE_PERIOD
        assert failed.new_state.grace_period_end is not None
        assert store.get_tenant("tenant-a").status == TenantStatus.ACTIVE

        paid = make_event("invoice.paid", offset=timedelta(hours=3))
        recovered = engine.reconcile(paid)
        assert recovered.outcome == ReconcileOutcome.APPLIED
        assert recovered.new_state.status == SubscriptionStatus.ACTIVE
        assert recovered.new_state.grace_period_end is None

        assert engine.reconcile(paid).outcome == ReconcileOutcome.DUPLICATE
        assert store.get_subscription("tenant-a").status == SubscriptionStatus.ACTIVE

    def test_payment_failure_during_trial_is_recorded_and_ignored(self, engine, trial, make_event, store, audit_repo):
        event = make_event("invoice.payment_failed")

        result = engine.reconcile(event)

        assert result.outcome == ReconcileOutcome.IGNORED
        assert store.get_subscription("tenant-a").status == SubscriptionStatus.TRIAL
        assert store.has_processed_event(event["event_id"])
        assert audit_repo.count("tenant-a", AuditAction.BILLING_EVENT_IGNORED) == 1


class TestUnresolvableEvents:

    def test_unmatched_event_dropped_and_not_recorded(self, engine, trial, make_event, store):
        event = make_event("invoice.paid", billing_customer_id="cus_unknown")

        result = engine.reconcile(event)

        assert result.outcome == ReconcileOutcome.UNMATCHED
        assert not result.applied
        assert not store.has_processed_event(event["event_id"])

    def test_unmatched_event_applies_after_customer_linked(self, engine, trial, make_event, scope):
        event = make_event("invoice.paid", billing_customer_id="cus_late")
        assert engine.reconcile(event).outcome == ReconcileOutcome.UNMATCHED

        engine.link_billing_customer(scope, "cus_late")

        assert engine.reconcile(event).outcome == ReconcileOutcome.APPLIED

    @pytest.mark.parametrize("payload", [
        {"event_id": "evt_bad", "type": "invoice.exploded", "timestamp": "2026-03-01T12:00:00Z",
         "billing_customer_id": "cus_a"},
        {"event_id": "evt_bad", "type": "invoice.paid", "timestamp": "2026-03-01T12:00:00Z"},
        {"type": "invoice.paid", "timestamp": "2026-03-01T12:00:00Z", "billing_customer_id": "cus_a"},
    ])
    def test_invalid_event_dropped(self, engine, trial, payload, store):
        result = engine.reconcile(payload)

        assert result.outcome == ReconcileOutcome.INVALID
        assert store.get_subscription("tenant-a").status == SubscriptionStatus.TRIAL

    @pytest.mark.parametrize("payload", [
        {"id": "evt_bad", "type": "invoice.paid", "data": "oops"},
        {"id": "evt_bad", "type": "invoice.paid", "data": {"object": {"customer": "cus_a", "metadata": "x"}}},
        {"id": "evt_bad", "type": "invoice.paid", "created": 10 ** 20, "data": {"object": {"customer": "cus_a"}}},
    ])
    def test_malformed_envelope_dropped(self, engine, trial, payload, store):
        result = engine.reconcile(payload)

        assert result.outcome == ReconcileOutcome.INVALID
        assert result.event_id == "evt_bad"
        assert not store.has_processed_event("evt_bad")
        assert store.get_subscription("tenant-a").status == SubscriptionStatus.TRIAL


class TestReactivation:

    def test_checkout_after_cancellation_creates_new_subscription(self, engine, trial, make_event, store, audit_repo):
        cancelled = engine.reconcile(make_event("subscription.cancelled", offset=timedelta(hours=1)))
        assert cancelled.new_state.status == SubscriptionStatus.CANCELLED
        assert store.get_tenant("tenant-a").status == TenantStatus.CHURNED

        result = engine.reconcile(make_event(
            "checkout.completed", offset=timedelta(days=10),
            tier="business", billing_subscription_id="sub_new",
        ))

        assert result.outcome == ReconcileOutcome.REACTIVATED
        assert result.new_state.id != trial.id
        assert result.new_state.status == SubscriptionStatus.ACTIVE
        assert result.new_state.tier == T.BUSINESS

        current = store.get_subscription("tenant-a")
        assert current.id == result.new_state.id
        old = store.get_subscription_by_id(trial.id)
        assert old.status == SubscriptionStatus.CANCELLED
        assert old.is_current is False
        assert store.get_tenant("tenant-a").status == TenantStatus.ACTIVE
        assert audit_repo.count("tenant-a", AuditAction.SUBSCRIPTION_REACTIVATED) == 1

    def test_events_for_terminal_subscription_ignored(self, engine, trial, make_event, store):
        engine.reconcile(make_event("subscription.cancelled", offset=timedelta(hours=1)))

        result = engine.reconcile(make_event("invoice.paid", offset=timedelta(hours=2)))

        assert result.outcome == ReconcileOutcome.IGNORED
        assert store.get_subscription("tenant-a").status == SubscriptionStatus.CANCELLED


class TestProviderEnvelope:

    def test_provider_payload_reconciled(self, engine, trial, store):
        created = int((trial.start_date + timedelta(hours=1)).timestamp())
        raw = {
            "id": "evt_provider",
            "type": "customer.subscription.updated",
            "created": created,
            "data": {"object": {
                "id": "sub_provider",
                "customer": "cus_a",
                "items": {"data": [{"price": {"id": "price_business_monthly"}}]},
            }},
        }

        result = engine.reconcile(raw)

        assert result.outcome == ReconcileOutcome.APPLIED
        current = store.get_subscription("tenant-a")
        assert current.tier == T.BUSINESS
        assert current.billing_subscription_id == "sub_provider"
        assert current.billing_price_id == "price_business_monthly"
        assert store.find_subscription_by_billing_subscription_id("sub_provider").id == trial.id
