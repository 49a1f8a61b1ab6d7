"""
Audit logging tests.

CRITICAL: Every decision and transition must leave an audit entry. These
tests verify PII redaction, bounded retry, local buffering when the store
is down, and fail-closed behaviour.
"""

import json
import logging
from unittest.mock import Mock

import pytest

from tenant_entitlements.entitlements.errors import AuditWriteError, TransientPersistenceError
from tenant_entitlements.platform.audit import (
    AuditAction,
    AuditEntry,
    AuditOutcome,
    AuditWriter,
    PIIRedactor,
)


def _entry(**kwargs):
    defaults = dict(
        tenant_id="tenant-a",
        action=AuditAction.ENTITLEMENT_ALLOWED,
        outcome=AuditOutcome.SUCCESS,
        resource="createLibrary",
        actor="user-1",
        detail={"user_email": "alice@contoso.com"},
    )
    defaults.update(kwargs)
    return AuditEntry(**defaults)


def _flaky_sink(failures):
    """Sink that raises TransientPersistenceError for the first `failures` calls."""
    sink = Mock()
    errors = [TransientPersistenceError("db down")] * failures
    sink.side_effect = errors + [None] * 100
    return sink


# ============================================================================
# TEST SUITE: PII REDACTION
# ============================================================================

class TestPIIRedactor:

    def test_email_keeps_domain_only(self):
        assert PIIRedactor.redact({"user_email": "alice@contoso.com"}) == {"user_email": "***@contoso.com"}

    def test_secrets_redacted(self):
        redacted = PIIRedactor.redact({"api_key": "sk_live_1", "Authorization": "Bearer x", "tier": "starter"})
        assert redacted["api_key"] == "[REDACTED]"
        assert redacted["Authorization"] == "[REDACTED]"
        assert redacted["tier"] == "starter"

    def test_nested_structures_redacted(self):
        redacted = PIIRedactor.redact({
            "invite": {"invited_email": "bob@fabrikam.com", "phone": "+44 20 7946 0000"},
            "guests": [{"email": "carol@fabrikam.com"}],
        })
        assert redacted["invite"]["invited_email"] == "***@fabrikam.com"
        assert redacted["invite"]["phone"] == "[REDACTED]"
        assert redacted["guests"][0]["email"] == "***@fabrikam.com"

    def test_input_not_modified(self):
        detail = {"user_email": "alice@contoso.com"}
        PIIRedactor.redact(detail)
        assert detail == {"user_email": "alice@contoso.com"}

    def test_malformed_email_fully_redacted(self):
        assert PIIRedactor.mask_email("not-an-email") == "[REDACTED]"


# ============================================================================
# TEST SUITE: AUDIT ENTRY
# ============================================================================

class TestAuditEntry:

    def test_defaults_generated(self):
        entry = _entry()
        assert len(entry.correlation_id) == 36
        assert entry.timestamp.tzinfo is not None

    def test_to_record_redacts_detail(self):
        record = _entry().to_record()
        assert record["action"] == "entitlement.allowed"
        assert record["outcome"] == "success"
        assert record["detail"] == {"user_email": "***@contoso.com"}


# ============================================================================
# TEST SUITE: WRITER
# ============================================================================

class TestAuditWriter:

    def test_successful_write(self):
        sink = Mock()
        writer = AuditWriter(sink)

        assert writer.write(_entry()) is True
        sink.assert_called_once()
        assert writer.pending == 0

    def test_transient_failure_retried_with_backoff(self):
        sink = _flaky_sink(2)
        sleep = Mock()
        writer = AuditWriter(sink, max_retries=3, base_delay=0.05, sleep=sleep)

        assert writer.write(_entry()) is True
        assert sink.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [0.05, 0.1]

    def test_backoff_capped(self):
        writer = AuditWriter(Mock(), base_delay=0.5, max_delay=1.0)
        assert writer.calculate_delay(0) == 0.5
        assert writer.calculate_delay(1) == 1.0
        assert writer.calculate_delay(5) == 1.0

    def test_exhausted_retries_buffer_entry(self, caplog):
        sink = _flaky_sink(10)
        writer = AuditWriter(sink, max_retries=2, sleep=Mock())

        with caplog.at_level(logging.ERROR, logger="audit.fallback"):
            assert writer.write(_entry()) is False

        assert sink.call_count == 3
        assert writer.pending == 1
        fallback = [r for r in caplog.records if r.name == "audit.fallback"]
        assert len(fallback) == 1
        logged = json.loads(fallback[0].audit_entry)
        assert logged["tenant_id"] == "tenant-a"
        assert logged["detail"]["user_email"] == "***@contoso.com"

    def test_fail_closed_raises(self):
        sink = Mock(side_effect=TransientPersistenceError("db down"))
        writer = AuditWriter(sink, max_retries=1, fail_closed=True, sleep=Mock())
        entry = _entry()

        with pytest.raises(AuditWriteError) as exc_info:
            writer.write(entry)

        assert exc_info.value.correlation_id == entry.correlation_id
        assert writer.pending == 0

    def test_fail_closed_overridden_per_call(self):
        sink = Mock(side_effect=TransientPersistenceError("db down"))
        writer = AuditWriter(sink, max_retries=0, fail_closed=True, sleep=Mock())

        assert writer.write(_entry(), fail_closed=False) is False
        assert writer.pending == 1

    def test_explicit_buffer_is_flushed(self, caplog):
        sink = Mock()
        writer = AuditWriter(sink, sleep=Mock())
        entry = _entry(action=AuditAction.ENTITLEMENT_ERROR, outcome=AuditOutcome.FAILED)

        with caplog.at_level(logging.ERROR, logger="audit.fallback"):
            writer.buffer(entry, "db down")

        assert writer.pending == 1
        assert any(r.name == "audit.fallback" for r in caplog.records)
        assert writer.flush_buffer() == 1
        sink.assert_called_once_with(entry)

    def test_non_transient_errors_propagate(self):
        writer = AuditWriter(Mock(side_effect=RuntimeError("bug")), sleep=Mock())
        with pytest.raises(RuntimeError):
            writer.write(_entry())

    def test_flush_replays_in_order(self):
        persisted = []
        healthy = {"up": False}

        def sink(entry):
            if not healthy["up"]:
                raise TransientPersistenceError("db down")
            persisted.append(entry.resource)

        writer = AuditWriter(sink, max_retries=0, sleep=Mock())
        writer.write(_entry(resource="first"))
        writer.write(_entry(resource="second"))
        assert writer.pending == 2

        healthy["up"] = True
        assert writer.flush_buffer() == 2
        assert persisted == ["first", "second"]
        assert writer.pending == 0

    def test_flush_stops_at_first_failure(self):
        writer = AuditWriter(Mock(side_effect=TransientPersistenceError("db down")), max_retries=0, sleep=Mock())
        writer.write(_entry())

        assert writer.flush_buffer() == 0
        assert writer.pending == 1

    def test_buffer_bounded_drops_oldest(self):
        sink = Mock(side_effect=TransientPersistenceError("db down"))
        writer = AuditWriter(sink, max_retries=0, buffer_size=2, sleep=Mock())

        for resource in ("a", "b", "c"):
            writer.write(_entry(resource=resource))

        assert writer.pending == 2
        sink.side_effect = None
        writer.flush_buffer()
        assert [c.args[0].resource for c in sink.call_args_list[-2:]] == ["b", "c"]
