"""
Shared fixtures for the investment engine test suite
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone

from investment_core.config import EngineConfig
from investment_core.clock import FixedClock
from investment_core.currency import Currency
from investment_core.engine import InvestmentEngine
from investment_core.notifications import InAppNotificationSink
from investment_core.investments import Investment, InvestmentStatus
from investment_core.payouts import add_months, simple_projected_return
from investment_core.plans import PlanType, PayoutFrequency, RiskLevel, TierBracket


START = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


def make_investment(amount="10000.00", rate="6.00", term_months=12,
                    frequency=PayoutFrequency.MONTHLY, start=START,
                    status=InvestmentStatus.ACTIVE, projected_return=None):
    """Unsaved ACTIVE investment for calculator tests"""
    amount = Decimal(amount)
    if projected_return is None:
        projected_return = simple_projected_return(amount, Decimal(rate), term_months, Currency.USD)
    return Investment(
        id="inv-1",
        created_at=start,
        updated_at=start,
        user_id="alice",
        plan_id="plan-1",
        amount=amount,
        currency=Currency.USD,
        base_rate=Decimal(rate),
        effective_rate=Decimal(rate),
        term_months=term_months,
        payout_frequency=frequency,
        status=status,
        start_date=start,
        maturity_date=add_months(start, term_months),
        minimum_balance=amount,
        projected_return=Decimal(projected_return),
        source_account_id="acct-alice",
        payout_account_id="acct-alice",
    )


@pytest.fixture
def config(request, tmp_path):
    """In-memory by default; parametrize indirectly with "sqlite" for a database file"""
    backend = getattr(request, "param", "memory")
    database_url = f"sqlite:///{tmp_path}/engine.db" if backend == "sqlite" else "memory://"
    return EngineConfig(
        database_url=database_url,
        ledger_retry_backoff_seconds=0.0,
        payout_worker_count=2,
        notification_webhook_url="",
    )


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def engine(config, clock):
    engine = InvestmentEngine(config=config, clock=clock, configure_logging=False)
    yield engine
    engine.storage.close()


@pytest.fixture
def inbox(engine):
    """In-app notifications written by the engine's default notifier"""
    return InAppNotificationSink(engine.storage)


@pytest.fixture
def fixed_plan(engine):
    """12-36 month fixed deposit at 6%, monthly payouts, no approval"""
    return engine.plans.create_plan(
        name="Fixed Income 6",
        plan_type=PlanType.FIXED_DEPOSIT,
        currency=Currency.USD,
        min_amount=Decimal("1000"),
        max_amount=Decimal("100000"),
        base_rate=Decimal("6.00"),
        min_term_months=1,
        max_term_months=36,
        default_payout_frequency=PayoutFrequency.MONTHLY,
        early_withdrawal_penalty=Decimal("5.00"),
        risk_level=RiskLevel.LOW,
        volatility_index=Decimal("10"),
        created_by="admin",
    )


@pytest.fixture
def approval_plan(engine):
    """Growth plan that requires admin approval"""
    return engine.plans.create_plan(
        name="Growth Fund",
        plan_type=PlanType.MUTUAL_FUND,
        currency=Currency.USD,
        min_amount=Decimal("500"),
        max_amount=Decimal("50000"),
        base_rate=Decimal("8.00"),
        min_term_months=6,
        max_term_months=24,
        default_payout_frequency=PayoutFrequency.QUARTERLY,
        requires_approval=True,
        early_withdrawal_penalty=Decimal("10.00"),
        risk_level=RiskLevel.HIGH,
        volatility_index=Decimal("60"),
        tiers=[
            TierBracket(Decimal("500"), Decimal("4999.99"), Decimal("8.00")),
            TierBracket(Decimal("5000"), Decimal("50000"), Decimal("9.00")),
        ],
        created_by="admin",
    )


@pytest.fixture
def alice_account(engine):
    return engine.ledger.open_account("alice", Currency.USD, Decimal("50000.00"),
                                      name="Alice Checking", account_id="acct-alice")


@pytest.fixture
def bob_account(engine):
    return engine.ledger.open_account("bob", Currency.USD, Decimal("20000.00"),
                                      name="Bob Checking", account_id="acct-bob")
