"""
Integration tests for POST /api/webhooks/billing.

The provider retries on non-2xx, so every outcome that redelivery cannot
change must answer 200, and only transient failures answer 503.
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from tenant_entitlements.api.app import create_app
from tenant_entitlements.entitlements.errors import StaleSubscriptionError, TransientPersistenceError
from tenant_entitlements.models.subscription import SubscriptionStatus, SubscriptionTier
from tenant_entitlements.platform.audit import AuditAction

WEBHOOK_URL = "/api/webhooks/billing"


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine))


@pytest.fixture
def onboarded(engine):
    return engine.onboard("tenant-a", billing_customer_id="cus_a")


class TestBillingWebhookRoute:

    def test_applied(self, client, onboarded, make_event, store):
        response = client.post(WEBHOOK_URL, json=make_event("checkout.completed", tier="professional"))

        assert response.status_code == 200
        body = response.json()
        assert body["received"] is True
        assert body["outcome"] == "applied"
        current = store.get_subscription("tenant-a")
        assert current.status == SubscriptionStatus.ACTIVE
        assert current.tier == SubscriptionTier.PROFESSIONAL

    def test_response_carries_no_subscription_state(self, client, onboarded, make_event):
        response = client.post(WEBHOOK_URL, json=make_event("invoice.paid", event_id="evt_quiet"))

        assert set(response.json()) == {"received", "outcome", "message", "event_id"}
        assert "tenant-a" not in response.text

    def test_redelivery_is_duplicate(self, client, onboarded, make_event, audit_repo):
        event = make_event("invoice.paid", event_id="evt_redelivered")

        first = client.post(WEBHOOK_URL, json=event)
        second = client.post(WEBHOOK_URL, json=event)

        assert first.json()["outcome"] == "applied"
        assert second.status_code == 200
        assert second.json()["outcome"] == "duplicate"
        assert second.json()["event_id"] == "evt_redelivered"
        assert audit_repo.count("tenant-a", AuditAction.BILLING_DUPLICATE_IGNORED) == 1

    def test_out_of_order_delivery(self, client, onboarded, make_event, store):
        newer = make_event("subscription.updated", offset=timedelta(hours=3), tier="business")
        older = make_event("invoice.payment_failed", offset=timedelta(hours=2))

        assert client.post(WEBHOOK_URL, json=newer).json()["outcome"] == "applied"
        response = client.post(WEBHOOK_URL, json=older)

        assert response.json()["outcome"] == "stale"
        assert store.get_subscription("tenant-a").status == SubscriptionStatus.ACTIVE

    def test_unmatched_event_acknowledged(self, client, onboarded, make_event):
        response = client.post(WEBHOOK_URL, json=make_event("invoice.paid", billing_customer_id="cus_nobody"))

        assert response.status_code == 200
        assert response.json()["outcome"] == "unmatched"
        assert response.json()["event_id"] is not None

    def test_invalid_event_acknowledged(self, client, onboarded, make_event):
        response = client.post(WEBHOOK_URL, json=make_event("invoice.exploded"))

        assert response.status_code == 200
        assert response.json()["outcome"] == "invalid"

    def test_invalid_json_acknowledged(self, client):
        response = client.post(
            WEBHOOK_URL,
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "invalid"

    def test_non_object_body_acknowledged(self, client):
        response = client.post(WEBHOOK_URL, json=["evt_1"])

        assert response.status_code == 200
        assert response.json()["outcome"] == "invalid"

    @pytest.mark.parametrize("raw", [
        {"id": "evt_bad", "type": "invoice.paid", "data": "oops"},
        {"id": "evt_bad", "type": "invoice.paid", "data": {"object": {"customer": "cus_a", "items": "x"}}},
        {"id": "evt_bad", "type": "invoice.paid", "created": 10 ** 20, "data": {"object": {"customer": "cus_a"}}},
    ])
    def test_malformed_envelope_acknowledged(self, client, onboarded, raw):
        response = client.post(WEBHOOK_URL, json=raw)

        assert response.status_code == 200
        assert response.json()["outcome"] == "invalid"
        assert response.json()["event_id"] == "evt_bad"

    def test_provider_envelope(self, client, onboarded, store):
        raw = {
            "id": "evt_provider",
            "type": "checkout.session.completed",
            "created": int((onboarded.start_date + timedelta(minutes=5)).timestamp()),
            "data": {"object": {
                "customer": "cus_a",
                "subscription": "sub_provider",
                "metadata": {"tier": "business"},
            }},
        }

        response = client.post(WEBHOOK_URL, json=raw)

        assert response.json()["outcome"] == "applied"
        assert store.get_subscription("tenant-a").billing_subscription_id == "sub_provider"

    @pytest.mark.parametrize("error", [
        TransientPersistenceError("db down", operation="save_subscription"),
        StaleSubscriptionError("sub-1", 3),
    ])
    def test_transient_failure_asks_provider_to_retry(self, client, engine, onboarded, make_event, error):
        engine.reconciler.reconcile = Mock(side_effect=error)

        response = client.post(WEBHOOK_URL, json=make_event("invoice.paid"))

        assert response.status_code == 503
        assert response.json()["detail"]["error"] == error.code
