"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection and integrity
verification.
"""

import pytest
from datetime import datetime, timezone, timedelta
from decimal import Decimal

from investment_core.storage import InMemoryStorage
from investment_core.audit import AuditTrail, AuditEvent, AuditEventType


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        """Decimals and datetimes in metadata are stored as strings"""
        now = datetime(2024, 3, 1, tzinfo=timezone.utc)
        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.PAYOUT_PROCESSED,
            entity_type="investment",
            entity_id="INV001",
            previous_hash="",
            current_hash="",
            metadata={"amount": Decimal("50.00"), "due_date": now}
        )
        assert event.metadata == {"amount": "50.00", "due_date": now.isoformat()}

    def test_hash_changes_with_content(self):
        now = datetime(2024, 3, 1, tzinfo=timezone.utc)
        kwargs = dict(id="A", created_at=now, updated_at=now,
                      event_type=AuditEventType.PLAN_CREATED, entity_type="plan",
                      entity_id="P1", previous_hash="", current_hash="")
        first = AuditEvent(metadata={"rate": "6"}, **kwargs)
        second = AuditEvent(metadata={"rate": "7"}, **kwargs)
        assert first.calculate_hash() != second.calculate_hash()
        assert len(first.calculate_hash()) == 64


class TestAuditTrail:
    """Test chaining, queries and integrity checks"""

    def test_events_are_chained(self, audit_trail):
        first = audit_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "P1", {"name": "Fixed"})
        second = audit_trail.log_event(AuditEventType.PLAN_UPDATED, "plan", "P1", {"version": 2})

        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert audit_trail.verify_integrity()["valid"] is True
        assert audit_trail.count_events() == 2

    def test_events_for_entity(self, audit_trail):
        audit_trail.log_event(AuditEventType.INVESTMENT_CREATED, "investment", "I1")
        audit_trail.log_event(AuditEventType.INVESTMENT_CREATED, "investment", "I2")
        audit_trail.log_event(AuditEventType.INVESTMENT_APPROVED, "investment", "I1", user_id="admin")

        events = audit_trail.get_events_for_entity("investment", "I1")
        assert [e.event_type for e in events] == [
            AuditEventType.INVESTMENT_CREATED, AuditEventType.INVESTMENT_APPROVED
        ]
        assert events[-1].user_id == "admin"
        assert len(audit_trail.get_events_for_entity("investment", "I1", limit=1)) == 1

    def test_events_by_type_with_time_range(self, audit_trail):
        audit_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "P1")
        audit_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "P2")
        assert len(audit_trail.get_events_by_type(AuditEventType.PLAN_CREATED)) == 2

        future = datetime.now(timezone.utc) + timedelta(days=1)
        assert audit_trail.get_events_by_type(AuditEventType.PLAN_CREATED, start_time=future) == []

    def test_tampered_metadata_is_detected(self, storage, audit_trail):
        event = audit_trail.log_event(AuditEventType.PAYOUT_PROCESSED, "investment", "I1",
                                      {"amount": "50.00"})
        audit_trail.log_event(AuditEventType.PAYOUT_PROCESSED, "investment", "I1",
                              {"amount": "50.00"})

        stored = storage.load("audit_events", event.id)
        stored["metadata"]["amount"] = "5000.00"
        storage.save("audit_events", event.id, stored)

        result = audit_trail.verify_integrity()
        assert result["valid"] is False
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_broken_chain_is_detected(self, storage, audit_trail):
        audit_trail.log_event(AuditEventType.PLAN_CREATED, "plan", "P1")
        second = audit_trail.log_event(AuditEventType.PLAN_UPDATED, "plan", "P1")

        stored = storage.load("audit_events", second.id)
        stored["previous_hash"] = "0" * 64
        storage.save("audit_events", second.id, stored)

        result = audit_trail.verify_integrity()
        assert result["valid"] is False
        assert result["chain_breaks"]

    def test_event_rolls_back_with_transaction(self, storage, audit_trail):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                audit_trail.log_event(AuditEventType.INVESTMENT_CREATED, "investment", "I1")
                raise RuntimeError("ledger failure")
        assert audit_trail.count_events() == 0
