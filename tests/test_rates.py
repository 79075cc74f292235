"""
Test suite for rate overrides and rate resolution
"""

import pytest
from decimal import Decimal
from datetime import timedelta

from investment_core.currency import Currency
from investment_core.errors import PlanNotFound, PlanInactive, InvalidInvestmentRequest
from investment_core.plans import PlanType, TierBracket
from investment_core.rates import RateType, RateOverride, rank_key

from conftest import START


@pytest.fixture
def tiered_plan(engine):
    return engine.plans.create_plan(
        "Tiered Deposit", PlanType.FIXED_DEPOSIT, Currency.USD, Decimal("100"), Decimal("20000"),
        Decimal("3.00"), 3, 24,
        tiers=[TierBracket(Decimal("0"), Decimal("4999.99"), Decimal("4")),
               TierBracket(Decimal("5000"), Decimal("20000"), Decimal("6"))]
    )


class TestRateOverride:

    def test_specificity(self):
        def override(user_id=None, plan_id=None):
            return RateOverride(id="o", created_at=START, updated_at=START,
                                rate_type=RateType.OVERRIDE, rate=Decimal("5"),
                                effective_from=START, user_id=user_id, plan_id=plan_id)

        assert override("u", "p").specificity == 3
        assert override("u").specificity == 2
        assert override(plan_id="p").specificity == 1
        assert override().specificity == 0
        assert override("u", "p").scope_label == "user_plan"

    def test_rank_prefers_higher_rate_within_scope(self):
        low = RateOverride(id="a", created_at=START, updated_at=START, rate_type=RateType.OVERRIDE,
                           rate=Decimal("5"), effective_from=START, plan_id="p")
        high = RateOverride(id="b", created_at=START, updated_at=START, rate_type=RateType.OVERRIDE,
                            rate=Decimal("7"), effective_from=START, user_id="u")
        higher_same_scope = RateOverride(id="c", created_at=START, updated_at=START,
                                         rate_type=RateType.BONUS, rate=Decimal("9"),
                                         effective_from=START, plan_id="p")
        assert sorted([low, higher_same_scope, high], key=rank_key) == [high, higher_same_scope, low]


class TestRateResolver:
    """Layered resolution: base, tier, override"""

    def test_bracket_and_base_rate(self, engine, tiered_plan):
        resolver = engine.rate_resolver
        assert resolver.resolve(tiered_plan.id, Decimal("8000"), "alice") == Decimal("6.0000")
        assert resolver.resolve(tiered_plan.id, Decimal("2500"), "alice") == Decimal("4.0000")
        assert resolver.resolve(tiered_plan.id, Decimal("25000"), "alice") == Decimal("3.0000")

    def test_user_plan_override_beats_global_bonus(self, engine, tiered_plan):
        engine.overrides.set_override(RateType.BONUS, Decimal("3"))
        engine.overrides.set_override(RateType.OVERRIDE, Decimal("5"),
                                      user_id="alice", plan_id=tiered_plan.id)

        resolution = engine.rate_resolver.resolve_detailed(tiered_plan.id, Decimal("8000"), "alice")
        assert resolution.effective_rate == Decimal("5.0000")
        assert resolution.override.scope_label == "user_plan"
        # other investors still get the global bonus on top of the tier rate
        assert engine.rate_resolver.resolve(tiered_plan.id, Decimal("8000"), "bob") == Decimal("9.0000")

    def test_user_plan_override_beats_global_bonus_inserted_later(self, engine, tiered_plan):
        engine.overrides.set_override(RateType.OVERRIDE, Decimal("5"),
                                      user_id="alice", plan_id=tiered_plan.id)
        engine.overrides.set_override(RateType.BONUS, Decimal("3"))

        assert engine.rate_resolver.resolve(tiered_plan.id, Decimal("8000"), "alice") == Decimal("5.0000")

    def test_bonus_adds_to_tier_rate(self, engine, tiered_plan):
        engine.overrides.set_override(RateType.BONUS, Decimal("0.75"), plan_id=tiered_plan.id)
        resolution = engine.rate_resolver.resolve_detailed(tiered_plan.id, Decimal("2500"), "alice")
        assert resolution.tier_rate == Decimal("4")
        assert resolution.effective_rate == Decimal("4.7500")
        assert resolution.to_metadata()["override_type"] == "bonus"

    def test_time_window(self, engine, clock, tiered_plan):
        engine.overrides.set_override(RateType.OVERRIDE, Decimal("7"), user_id="alice",
                                      effective_from=START + timedelta(days=10),
                                      effective_to=START + timedelta(days=20))
        resolver = engine.rate_resolver

        assert resolver.resolve(tiered_plan.id, Decimal("8000"), "alice") == Decimal("6.0000")
        assert resolver.resolve(tiered_plan.id, Decimal("8000"), "alice",
                                now=START + timedelta(days=15)) == Decimal("7.0000")
        assert resolver.resolve(tiered_plan.id, Decimal("8000"), "alice",
                                now=START + timedelta(days=21)) == Decimal("6.0000")

    def test_inactive_and_missing_plan(self, engine, tiered_plan):
        engine.plans.deactivate_plan(tiered_plan.id)
        with pytest.raises(PlanInactive):
            engine.rate_resolver.resolve(tiered_plan.id, Decimal("8000"), "alice")
        with pytest.raises(PlanNotFound):
            engine.rate_resolver.resolve("missing", Decimal("8000"), "alice")


class TestRateOverrideManager:
    """Close-out on write, bulk writes and deactivation"""

    def test_new_override_closes_out_same_scope(self, engine, clock, tiered_plan):
        first = engine.overrides.set_override(RateType.OVERRIDE, Decimal("5"),
                                              user_id="alice", plan_id=tiered_plan.id)
        clock.advance(days=1)
        second = engine.overrides.set_override(RateType.OVERRIDE, Decimal("5.5"),
                                               user_id="alice", plan_id=tiered_plan.id)

        overrides = {o.id: o for o in engine.overrides.list_overrides(user_id="alice")}
        assert overrides[first.id].is_active is False
        assert overrides[first.id].effective_to == second.effective_from
        assert overrides[second.id].is_active is True
        assert [o.id for o in engine.overrides.list_overrides(active_only=True)] == [second.id]

    def test_different_rate_type_is_a_different_scope(self, engine, tiered_plan):
        engine.overrides.set_override(RateType.OVERRIDE, Decimal("5"), user_id="alice")
        engine.overrides.set_override(RateType.BONUS, Decimal("1"), user_id="alice")
        assert len(engine.overrides.list_overrides(active_only=True)) == 2

    def test_invalid_window_rejected(self, engine):
        with pytest.raises(InvalidInvestmentRequest, match="ends before it starts"):
            engine.overrides.set_override(RateType.BONUS, Decimal("1"),
                                          effective_from=START, effective_to=START - timedelta(days=1))

    def test_bulk_is_all_or_nothing(self, engine):
        events_before = engine.audit_trail.count_events()
        with pytest.raises(InvalidInvestmentRequest):
            engine.overrides.bulk_set_overrides([
                {"rate_type": RateType.BONUS, "rate": Decimal("1"), "user_id": "alice"},
                {"rate_type": RateType.OVERRIDE, "rate": Decimal("-2"), "user_id": "bob"},
            ], created_by="admin")
        assert engine.overrides.list_overrides() == []
        assert engine.audit_trail.count_events() == events_before

    def test_bulk_records_every_entry(self, engine):
        created = engine.overrides.bulk_set_overrides([
            {"rate_type": RateType.BONUS, "rate": Decimal("1"), "user_id": "alice"},
            {"rate_type": RateType.BONUS, "rate": Decimal("2"), "user_id": "bob"},
        ], created_by="admin")
        assert {o.created_by for o in created} == {"admin"}
        assert len(engine.overrides.list_overrides(active_only=True)) == 2

    def test_deactivate_override(self, engine, tiered_plan):
        override = engine.overrides.set_override(RateType.BONUS, Decimal("2"), plan_id=tiered_plan.id)
        engine.overrides.deactivate_override(override.id, updated_by="admin")
        assert engine.rate_resolver.resolve(tiered_plan.id, Decimal("8000"), "alice") == Decimal("6.0000")
