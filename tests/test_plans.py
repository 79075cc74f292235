"""
Test suite for investment plans

Covers plan validation, tier bracket lookup and admin maintenance.
"""

import pytest
from decimal import Decimal

from investment_core.audit import AuditEventType
from investment_core.currency import Currency
from investment_core.errors import PlanNotFound, InvalidInvestmentRequest
from investment_core.plans import (
    PlanType, PayoutFrequency, RiskLevel, TierBracket, find_overlapping_brackets
)


class TestPayoutFrequency:

    def test_months(self):
        assert PayoutFrequency.MONTHLY.months == 1
        assert PayoutFrequency.QUARTERLY.months == 3
        assert PayoutFrequency.SEMI_ANNUALLY.months == 6
        assert PayoutFrequency.ANNUALLY.months == 12
        assert PayoutFrequency.AT_MATURITY.months is None
        assert not PayoutFrequency.AT_MATURITY.is_periodic

    def test_unknown_value_rejected(self):
        with pytest.raises(ValueError):
            PayoutFrequency("weekly")


class TestTierBracket:

    def test_contains_is_inclusive(self):
        tier = TierBracket(Decimal("0"), Decimal("5000"), Decimal("4"))
        assert tier.contains(Decimal("0"))
        assert tier.contains(Decimal("5000"))
        assert not tier.contains(Decimal("5000.01"))

    def test_inverted_bracket_rejected(self):
        with pytest.raises(InvalidInvestmentRequest):
            TierBracket(Decimal("100"), Decimal("50"), Decimal("4"))

    def test_overlap_detection(self):
        tiers = [
            TierBracket(Decimal("0"), Decimal("5000"), Decimal("4")),
            TierBracket(Decimal("5000"), Decimal("20000"), Decimal("6")),
            TierBracket(Decimal("20001"), Decimal("50000"), Decimal("7")),
        ]
        assert find_overlapping_brackets(tiers) == [(0, 1)]


class TestPlanManager:
    """Plan creation, lookup and admin maintenance"""

    def test_create_and_get(self, engine, approval_plan):
        plan = engine.plans.get_plan(approval_plan.id)
        assert plan.name == "Growth Fund"
        assert plan.currency == Currency.USD
        assert plan.risk_level == RiskLevel.HIGH
        assert plan.requires_approval is True
        assert [t.rate for t in plan.tiers] == [Decimal("8.00"), Decimal("9.00")]

        events = engine.audit_trail.get_events_for_entity("plan", plan.id)
        assert events[0].event_type == AuditEventType.PLAN_CREATED

    def test_unknown_plan(self, engine):
        with pytest.raises(PlanNotFound):
            engine.plans.get_plan("missing")

    def test_invalid_limits_rejected(self, engine):
        with pytest.raises(InvalidInvestmentRequest, match="amount range"):
            engine.plans.create_plan("Broken", PlanType.BONDS, Currency.USD,
                                     Decimal("1000"), Decimal("500"), Decimal("3"), 1, 12)
        with pytest.raises(InvalidInvestmentRequest, match="term range"):
            engine.plans.create_plan("Broken", PlanType.BONDS, Currency.USD,
                                     Decimal("100"), Decimal("500"), Decimal("3"), 12, 6)

    def test_tier_rate_lookup(self, engine):
        plan = engine.plans.create_plan(
            "Tiered", PlanType.FIXED_DEPOSIT, Currency.USD, Decimal("100"), Decimal("50000"),
            Decimal("3.00"), 3, 24,
            tiers=[TierBracket(Decimal("0"), Decimal("5000"), Decimal("4")),
                   TierBracket(Decimal("5000"), Decimal("20000"), Decimal("6"))]
        )
        assert plan.tier_rate_for(Decimal("8000")) == Decimal("6")
        assert plan.tier_rate_for(Decimal("2500")) == Decimal("4")
        # first match wins on the shared boundary
        assert plan.tier_rate_for(Decimal("5000")) == Decimal("4")
        assert plan.tier_rate_for(Decimal("30000")) == Decimal("3.00")

    def test_overlapping_tiers_warn(self, engine, caplog):
        with caplog.at_level("WARNING", logger="investment_core.plans"):
            engine.plans.create_plan(
                "Overlap", PlanType.FIXED_DEPOSIT, Currency.USD, Decimal("100"), Decimal("50000"),
                Decimal("3.00"), 3, 24,
                tiers=[TierBracket(Decimal("0"), Decimal("5000"), Decimal("4")),
                       TierBracket(Decimal("5000"), Decimal("20000"), Decimal("6"))]
            )
        assert "overlapping tier brackets" in caplog.text

    def test_update_plan_bumps_version(self, engine, fixed_plan):
        updated = engine.plans.update_plan(fixed_plan.id, updated_by="admin",
                                           base_rate=Decimal("6.50"),
                                           default_payout_frequency=PayoutFrequency.QUARTERLY)
        assert updated.version == fixed_plan.version + 1
        assert updated.base_rate == Decimal("6.50")
        assert engine.plans.get_plan(fixed_plan.id).default_payout_frequency == PayoutFrequency.QUARTERLY

    def test_update_plan_normalizes_values(self, engine, fixed_plan):
        updated = engine.plans.update_plan(
            fixed_plan.id, updated_by="admin", base_rate=6.1, min_amount="1500",
            tiers=[{"min_amount": "1000", "max_amount": "4999.99", "rate": 5.5}]
        )
        stored = engine.plans.get_plan(fixed_plan.id)

        assert str(updated.base_rate) == "6.1000"
        assert str(stored.base_rate) == "6.1000"
        assert stored.min_amount == Decimal("1500")
        assert stored.tiers == [TierBracket(Decimal("1000"), Decimal("4999.99"), Decimal("5.5"))]
        assert stored.tier_rate_for(Decimal("2000")) == Decimal("5.5")

    def test_update_rejects_unknown_fields(self, engine, fixed_plan):
        with pytest.raises(InvalidInvestmentRequest, match="cannot be updated"):
            engine.plans.update_plan(fixed_plan.id, currency="EUR")

    def test_deactivate_refused_while_referenced(self, engine, fixed_plan, alice_account):
        engine.lifecycle.create_investment("alice", fixed_plan.id, Decimal("5000"), 12, "acct-alice")
        with pytest.raises(InvalidInvestmentRequest, match="Cannot deactivate"):
            engine.plans.deactivate_plan(fixed_plan.id, updated_by="admin")
        assert engine.plans.get_plan(fixed_plan.id).is_active

    def test_deactivate_and_list(self, engine, fixed_plan, approval_plan):
        engine.plans.deactivate_plan(approval_plan.id, updated_by="admin")
        assert [p.id for p in engine.plans.list_plans(active_only=True)] == [fixed_plan.id]
        assert len(engine.plans.list_plans()) == 2
        assert [p.id for p in engine.plans.list_plans(plan_type=PlanType.MUTUAL_FUND)] == [approval_plan.id]
