"""
Tests for batch and recurring payout processing
"""

import pytest
from decimal import Decimal
from datetime import timedelta

from investment_core.audit import AuditEventType
from investment_core.errors import TransientLedgerError
from investment_core.investments import InvestmentStatus
from investment_core.payouts import add_months

from conftest import START


@pytest.fixture
def portfolio(engine, fixed_plan, alice_account, bob_account):
    """Two monthly investments for alice and one for bob"""
    lifecycle = engine.lifecycle
    return [
        lifecycle.create_investment("alice", fixed_plan.id, Decimal("10000"), 12, "acct-alice"),
        lifecycle.create_investment("alice", fixed_plan.id, Decimal("4000"), 12, "acct-alice"),
        lifecycle.create_investment("bob", fixed_plan.id, Decimal("5000"), 12, "acct-bob"),
    ]


class TestBatchProcessing:
    """One pass over every active investment"""

    def test_processes_due_payouts(self, engine, clock, portfolio):
        clock.set(add_months(START, 1))
        result = engine.batch.batch_process_due_payouts()

        assert result.skipped is False
        assert result.investments_checked == 3
        assert result.investments_paid == 3
        assert result.payouts_processed == 3
        assert result.total_paid == Decimal("95.00")
        assert result.failed == 0
        assert engine.batch.last_result is result

        completed = engine.audit_trail.get_events_by_type(AuditEventType.PAYOUT_BATCH_COMPLETED)
        assert completed[-1].metadata["payouts_processed"] == 3
        assert completed[-1].metadata["total_paid"] == "95.00"

    def test_second_pass_pays_nothing(self, engine, clock, portfolio):
        clock.set(add_months(START, 1))
        engine.batch.batch_process_due_payouts()
        again = engine.batch.batch_process_due_payouts()

        assert again.payouts_processed == 0
        assert again.total_paid == Decimal("0")
        assert engine.repository.get(portfolio[0].id).total_paid_out == Decimal("50.00")

    def test_nothing_due_before_first_period(self, engine, portfolio):
        result = engine.batch.batch_process_due_payouts()
        assert result.investments_checked == 3
        assert result.investments_paid == 0
        assert not engine.batch.is_due(portfolio[0], START)

    def test_pending_investments_are_ignored(self, engine, clock, approval_plan, alice_account):
        engine.lifecycle.create_investment("alice", approval_plan.id, Decimal("6000"), 12, "acct-alice")
        clock.set(add_months(START, 4))
        result = engine.batch.batch_process_due_payouts()
        assert result.investments_checked == 0

    def test_concurrent_pass_is_skipped(self, engine, clock, portfolio):
        clock.set(add_months(START, 1))
        engine.batch._run_guard.acquire()
        try:
            result = engine.batch.batch_process_due_payouts()
        finally:
            engine.batch._run_guard.release()

        assert result.skipped is True
        assert result.payouts_processed == 0
        assert engine.repository.get(portfolio[0].id).total_paid_out == Decimal("0")

    def test_failure_is_isolated(self, engine, clock, portfolio, monkeypatch):
        failing_id = portfolio[1].id
        original = engine.lifecycle.process_due_payouts

        def flaky(investment_id, now=None):
            if investment_id == failing_id:
                raise TransientLedgerError("ledger timeout")
            return original(investment_id, now)

        monkeypatch.setattr(engine.lifecycle, "process_due_payouts", flaky)
        clock.set(add_months(START, 1))
        result = engine.batch.batch_process_due_payouts()

        assert result.failed == 1
        assert "ledger timeout" in result.errors[failing_id]
        assert result.payouts_processed == 2
        assert engine.repository.get(failing_id).last_payout_date is None

        failures = engine.audit_trail.get_events_by_type(AuditEventType.PAYOUT_FAILED)
        assert [e.entity_id for e in failures] == [failing_id]
        assert failures[0].metadata["error_type"] == "TransientLedgerError"

    def test_maturity_and_renewal_are_counted(self, engine, clock, fixed_plan, alice_account):
        lifecycle = engine.lifecycle
        closing = lifecycle.create_investment("alice", fixed_plan.id, Decimal("2000"), 3, "acct-alice")
        rolling = lifecycle.create_investment("alice", fixed_plan.id, Decimal("3000"), 3, "acct-alice",
                                              auto_renew=True)
        clock.set(add_months(START, 3) + timedelta(hours=1))

        result = engine.batch.batch_process_due_payouts()

        assert result.payouts_processed == 6
        assert result.matured == 1
        assert result.renewed == 1
        assert engine.repository.get(closing.id).status == InvestmentStatus.MATURED
        assert engine.repository.get(rolling.id).renewal_count == 1
        # 3 x 10.00 + 3 x 15.00 interest plus 2000.00 principal
        assert result.total_paid == Decimal("2075.00")

    def test_periods_paid_before_a_failure_are_counted(self, engine, clock, fixed_plan, alice_account,
                                                      monkeypatch):
        investment = engine.lifecycle.create_investment("alice", fixed_plan.id, Decimal("10000"),
                                                        12, "acct-alice")
        first_period = add_months(START, 1).date().isoformat()
        credit = engine.ledger.credit

        def second_period_fails(account_id, amount, reference="", description=""):
            if not reference.endswith(first_period):
                raise TransientLedgerError("ledger unavailable")
            return credit(account_id, amount, reference, description)

        monkeypatch.setattr(engine.ledger, "credit", second_period_fails)
        clock.set(add_months(START, 2))
        result = engine.batch.batch_process_due_payouts()

        assert result.failed == 1
        assert result.investments_paid == 1
        assert result.payouts_processed == 1
        assert result.total_paid == Decimal("50.00")
        assert engine.repository.get(investment.id).last_payout_date == add_months(START, 1)

        completed = engine.audit_trail.get_events_by_type(AuditEventType.PAYOUT_BATCH_COMPLETED)
        assert completed[-1].metadata["payouts_processed"] == 1
        assert completed[-1].metadata["total_paid"] == "50.00"


@pytest.mark.parametrize("config", ["memory", "sqlite"], indirect=True)
class TestLedgerOutage:
    """A credit that keeps failing leaves no trace of the payout"""

    def test_failed_credit_rolls_back_payout(self, engine, clock, fixed_plan, alice_account, monkeypatch):
        investment = engine.lifecycle.create_investment("alice", fixed_plan.id, Decimal("10000"),
                                                        12, "acct-alice")
        calls = []

        def unavailable(account_id, amount, reference="", description=""):
            calls.append(reference)
            raise TransientLedgerError("ledger unavailable")

        monkeypatch.setattr(engine.ledger, "credit", unavailable)
        clock.set(add_months(START, 1))
        result = engine.batch.batch_process_due_payouts()

        assert result.failed == 1
        assert result.payouts_processed == 0
        assert len(calls) == 3

        stored = engine.repository.get(investment.id)
        assert stored.last_payout_date is None
        assert stored.total_paid_out == Decimal("0")
        assert stored.version == investment.version
        assert engine.repository.list_payouts(investment.id) == []
        assert engine.audit_trail.get_events_by_type(AuditEventType.PAYOUT_PROCESSED) == []
        assert engine.ledger.get_balance("acct-alice").amount == Decimal("40000.00")

        monkeypatch.undo()
        retried = engine.batch.batch_process_due_payouts()
        assert retried.payouts_processed == 1
        assert retried.total_paid == Decimal("50.00")
        assert engine.batch.batch_process_due_payouts().payouts_processed == 0
        assert engine.ledger.get_balance("acct-alice").amount == Decimal("40050.00")
        assert engine.lifecycle._locks == {}


class TestRecurringWorker:

    def test_start_and_stop(self, engine):
        engine.batch.start(interval_seconds=3600)
        try:
            assert engine.batch.is_running()
            engine.batch.start(interval_seconds=3600)
        finally:
            engine.batch.stop()
        assert not engine.batch.is_running()

    def test_result_to_dict(self, engine, clock, portfolio):
        clock.set(add_months(START, 1))
        data = engine.batch.batch_process_due_payouts().to_dict()
        assert data["run_at"] == add_months(START, 1).isoformat()
        assert data["total_paid"] == "95.00"
        assert data["errors"] == {}
