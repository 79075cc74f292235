"""
Tests for engine wiring and persistence across restarts
"""

from decimal import Decimal

from investment_core.audit import AuditEventType
from investment_core.config import EngineConfig
from investment_core.currency import Currency, Money
from investment_core.engine import InvestmentEngine, build_notifier
from investment_core.investments import InvestmentStatus
from investment_core.notifications import WebhookNotificationSink, InAppNotificationSink
from investment_core.plans import PlanType, PayoutFrequency
from investment_core.payouts import add_months

from conftest import START


def test_build_notifier_respects_config():
    config = EngineConfig(notification_webhook_url="https://hooks.example.com/invest",
                          enable_in_app_notifications=False)
    notifier = build_notifier(config, storage=None)
    kinds = [type(sink) for sink in notifier.sinks]
    assert WebhookNotificationSink in kinds
    assert InAppNotificationSink not in kinds


def test_calculate_returns_uses_default_currency(engine):
    quote = engine.calculate_returns(Decimal("1000"), 12, Decimal("6"), PayoutFrequency.AT_MATURITY)
    assert quote.currency == Currency.USD
    assert quote.final_value == Decimal("1060.00")
    assert quote.schedule[0].date == add_months(START, 12)


def test_start_and_shutdown_are_audited(config, clock):
    engine = InvestmentEngine(config=config, clock=clock, configure_logging=False)
    engine.start()
    assert engine.batch.is_running()

    events = engine.audit_trail.get_events_by_type(AuditEventType.SYSTEM_START)
    assert events[0].metadata["payout_batch_enabled"] is True

    engine.shutdown()
    assert not engine.batch.is_running()


def test_state_survives_restart(tmp_path, clock):
    config = EngineConfig(database_url=f"sqlite:///{tmp_path}/investments.db",
                          ledger_retry_backoff_seconds=0.0, payout_batch_enabled=False,
                          notification_webhook_url="")

    first = InvestmentEngine(config=config, clock=clock, configure_logging=False)
    plan = first.plans.create_plan("Fixed Income 6", PlanType.FIXED_DEPOSIT, Currency.USD,
                                   Decimal("1000"), Decimal("100000"), Decimal("6.00"), 1, 36)
    first.ledger.open_account("alice", Currency.USD, Decimal("50000.00"), account_id="acct-alice")
    investment = first.lifecycle.create_investment("alice", plan.id, Decimal("10000"), 12, "acct-alice")
    clock.set(add_months(START, 1))
    first.lifecycle.process_payout(investment.id)
    first.shutdown()

    second = InvestmentEngine(config=config, clock=clock, configure_logging=False)
    try:
        restored = second.repository.get(investment.id)
        assert restored.status == InvestmentStatus.ACTIVE
        assert restored.total_paid_out == Decimal("50.00")
        assert restored.version == 2
        assert second.ledger.get_balance("acct-alice").amount == Decimal("40050.00")
        assert second.audit_trail.verify_integrity()["valid"] is True
        # the period already paid before the restart is not paid again
        assert second.lifecycle.process_payout(investment.id) is None
    finally:
        second.storage.close()


def test_records_are_stamped_with_the_engine_clock(engine, clock, fixed_plan, alice_account):
    assert fixed_plan.created_at == START

    later = clock.advance(days=2)
    updated = engine.plans.update_plan(fixed_plan.id, updated_by="admin", description="Six percent fixed")
    engine.ledger.credit("acct-alice", Money(Decimal("10.00"), Currency.USD), reference="ADJ-1")

    assert updated.updated_at == later
    assert engine.plans.get_plan(fixed_plan.id).updated_at == later
    assert engine.ledger.get_account("acct-alice").created_at == START
    adjustment = [e for e in engine.ledger.get_entries("acct-alice") if e.reference == "ADJ-1"]
    assert [e.created_at for e in adjustment] == [later]

    plan_events = engine.audit_trail.get_events_for_entity("plan", fixed_plan.id)
    assert [e.created_at for e in plan_events] == [START, later]
