"""
Payout Scheduling Module

Computes when the next payout of an investment falls due and how much it is,
and produces side-effect-free schedules and return quotes for prospective
placements.

Two growth models coexist and are kept apart on purpose:

* ``projected_return`` (stored on the investment at creation) uses simple
  interest: ``principal * (1 + rate/100 * years)``.
* the single at-maturity payout uses compound growth:
  ``principal * (1 + rate/100) ** years``.

Periodic payouts are ``principal * rate/12/100 * months_in_period``. Payout
dates are anchored on the start date (start + k periods) so month-end clamping
never drifts, and no periodic date falls after maturity.
"""

import calendar
from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from .currency import (
    Currency, ZERO, ONE, HUNDRED, MONTHS_PER_YEAR,
    quantize_money, quantize_rate, to_decimal
)
from .plans import PayoutFrequency, PlanStore
from .errors import PlanInactive
from .investments import Investment, InvestmentStatus
from .config import EngineConfig, get_config


def add_months(start: datetime, months: int) -> datetime:
    """Add months to a datetime, clamping the day to the end of the target month"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def years_for(term_months: int) -> Decimal:
    return Decimal(term_months) / MONTHS_PER_YEAR


def simple_projected_return(amount: Decimal, rate: Decimal, term_months: int,
                            currency: Currency) -> Decimal:
    """Principal plus simple interest over the term"""
    value = to_decimal(amount) * (ONE + to_decimal(rate) / HUNDRED * years_for(term_months))
    return quantize_money(value, currency)


def compound_maturity_value(amount: Decimal, rate: Decimal, term_months: int,
                            currency: Currency) -> Decimal:
    """Principal grown at ``rate`` compounded annually over the term"""
    growth = (ONE + to_decimal(rate) / HUNDRED) ** years_for(term_months)
    return quantize_money(to_decimal(amount) * growth, currency)


def periodic_interest(amount: Decimal, rate: Decimal, months: int, currency: Currency) -> Decimal:
    value = to_decimal(amount) * to_decimal(rate) / MONTHS_PER_YEAR / HUNDRED * Decimal(months)
    return quantize_money(value, currency)


def effective_annual_rate(rate: Decimal, periods_per_year: int) -> Decimal:
    """Annual percent yield of ``rate`` compounded ``periods_per_year`` times"""
    n = Decimal(periods_per_year)
    return quantize_rate(((ONE + to_decimal(rate) / n / HUNDRED) ** periods_per_year - ONE) * HUNDRED)


@dataclass
class ScheduleEntry:
    period: int
    date: datetime
    principal: Decimal
    interest: Decimal
    total: Decimal
    balance: Decimal


@dataclass
class YearlyBreakdown:
    label: str  # "Year 1", ... or "Total"
    months: int
    interest: Decimal
    cumulative_interest: Decimal


@dataclass
class BenchmarkComparison:
    name: str
    rate: Decimal
    final_value: Decimal
    difference: Decimal  # plan final value minus benchmark final value


@dataclass
class ReturnCalculation:
    """Quote for a prospective placement"""
    amount: Decimal
    currency: Currency
    rate: Decimal
    term_months: int
    frequency: PayoutFrequency
    payout_per_period: Decimal
    number_of_payouts: int
    total_interest: Decimal
    total_payout: Decimal
    final_value: Decimal
    projected_return: Decimal
    effective_annual_rate: Decimal
    schedule: List[ScheduleEntry] = field(default_factory=list)
    yearly_breakdown: List[YearlyBreakdown] = field(default_factory=list)
    comparisons: List[BenchmarkComparison] = field(default_factory=list)
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None


class PayoutScheduler:
    """
    Payout dates, amounts, schedules and return quotes
    """

    def __init__(self, plan_store: Optional[PlanStore] = None,
                 config: Optional[EngineConfig] = None):
        self.plan_store = plan_store
        self.config = config or get_config()

    def payout_dates(self, investment: Investment) -> List[datetime]:
        """All scheduled payout dates over the current term"""
        months = investment.payout_frequency.months
        if months is None:
            return [investment.maturity_date]
        dates = []
        k = 1
        while True:
            due = add_months(investment.start_date, k * months)
            if due > investment.maturity_date:
                return dates
            dates.append(due)
            k += 1

    def next_payout_date(self, investment: Investment) -> Optional[datetime]:
        """
        Date the next payout falls due, or None when nothing further is
        scheduled (not active, or every payout of the term is done).
        """
        if investment.status != InvestmentStatus.ACTIVE:
            return None
        anchor = investment.last_payout_date
        for due in self.payout_dates(investment):
            if anchor is None or due > anchor:
                return due
        return None

    def payout_amount(self, investment: Investment) -> Decimal:
        """Amount of the next scheduled payout at the current principal and rate"""
        months = investment.payout_frequency.months
        if months is None:
            maturity_value = compound_maturity_value(
                investment.amount, investment.effective_rate,
                investment.term_months, investment.currency
            )
            return maturity_value - investment.amount
        return periodic_interest(investment.amount, investment.effective_rate,
                                 months, investment.currency)

    def unpaid_stub_months(self, investment: Investment) -> int:
        """
        Months at the end of the term not covered by a whole periodic payout.

        A 10-month term paid quarterly has payouts at months 3, 6 and 9 and one
        stub month settled at maturity.
        """
        months = investment.payout_frequency.months
        if months is None:
            return 0
        return investment.term_months - len(self.payout_dates(investment)) * months

    def is_term_complete(self, investment: Investment, now: datetime) -> bool:
        """Maturity has passed and no periodic payout remains due"""
        return now >= investment.maturity_date and self.next_payout_date(investment) is None

    def generate_preview_schedule(self, amount: Decimal, term_months: int, rate: Decimal,
                                  frequency: PayoutFrequency, start: datetime,
                                  currency: Currency = Currency.USD) -> List[ScheduleEntry]:
        """
        Ordered payout schedule for a prospective placement

        Periodic plans pay interest each period and return the principal with
        the last row (a final stub row covers any months left over). An
        at-maturity plan has a single row with compound growth.
        """
        amount = quantize_money(amount, currency)
        rate = to_decimal(rate)
        maturity = add_months(start, term_months)
        months = frequency.months

        if months is None:
            value = compound_maturity_value(amount, rate, term_months, currency)
            interest = value - amount
            return [ScheduleEntry(1, maturity, amount, interest, value, ZERO)]

        periods = term_months // months
        stub = term_months - periods * months
        schedule = []
        for period in range(1, periods + 1):
            interest = periodic_interest(amount, rate, months, currency)
            last = period == periods and stub == 0
            principal = amount if last else ZERO
            schedule.append(ScheduleEntry(
                period=period,
                date=add_months(start, period * months),
                principal=principal,
                interest=interest,
                total=principal + interest,
                balance=ZERO if last else amount
            ))
        if stub:
            interest = periodic_interest(amount, rate, stub, currency)
            schedule.append(ScheduleEntry(periods + 1, maturity, amount, interest,
                                          amount + interest, ZERO))
        return schedule

    def yearly_breakdown(self, amount: Decimal, term_months: int, rate: Decimal,
                         currency: Currency = Currency.USD) -> List[YearlyBreakdown]:
        """Simple-interest earnings per year of the term plus a Total line"""
        annual_return = to_decimal(amount) * to_decimal(rate) / HUNDRED
        rows = []
        cumulative = ZERO
        remaining = term_months
        year = 1
        while remaining > 0:
            months = min(12, remaining)
            interest = quantize_money(annual_return * Decimal(months) / MONTHS_PER_YEAR, currency)
            cumulative += interest
            rows.append(YearlyBreakdown(f"Year {year}", months, interest, cumulative))
            remaining -= months
            year += 1
        rows.append(YearlyBreakdown("Total", term_months, cumulative, cumulative))
        return rows

    def benchmark_comparisons(self, amount: Decimal, term_months: int, final_value: Decimal,
                              currency: Currency = Currency.USD) -> List[BenchmarkComparison]:
        benchmarks = [
            ("savings_account", Decimal(self.config.savings_benchmark_rate)),
            ("inflation", Decimal(self.config.inflation_benchmark_rate)),
            ("stock_market", Decimal(self.config.stock_market_benchmark_rate)),
        ]
        comparisons = []
        for name, rate in benchmarks:
            value = compound_maturity_value(amount, rate, term_months, currency)
            comparisons.append(BenchmarkComparison(name, rate, value, final_value - value))
        return comparisons

    def calculate_returns(self, amount: Decimal, term_months: int, rate: Decimal,
                          frequency: PayoutFrequency, start: datetime,
                          currency: Currency = Currency.USD) -> ReturnCalculation:
        """
        Full return quote: per-period payout, totals, effective yield,
        schedule, yearly breakdown and benchmark comparison
        """
        amount = quantize_money(amount, currency)
        rate = to_decimal(rate)
        schedule = self.generate_preview_schedule(amount, term_months, rate, frequency, start, currency)
        total_interest = sum((row.interest for row in schedule), ZERO)
        final_value = amount + total_interest

        months = frequency.months
        periods_per_year = 12 // months if months else 1

        return ReturnCalculation(
            amount=amount,
            currency=currency,
            rate=rate,
            term_months=term_months,
            frequency=frequency,
            payout_per_period=schedule[0].interest if schedule else ZERO,
            number_of_payouts=len(schedule),
            total_interest=total_interest,
            total_payout=final_value,
            final_value=final_value,
            projected_return=simple_projected_return(amount, rate, term_months, currency),
            effective_annual_rate=effective_annual_rate(rate, periods_per_year),
            schedule=schedule,
            yearly_breakdown=self.yearly_breakdown(amount, term_months, rate, currency),
            comparisons=self.benchmark_comparisons(amount, term_months, final_value, currency)
        )

    def compare_plans(self, amount: Decimal, term_months: int, plan_ids: List[str],
                      start: datetime) -> List[ReturnCalculation]:
        """
        Quote the same placement against several plans, best final value first.

        Each plan is quoted at its tier rate for the amount and its default
        payout frequency. Inactive or unknown plans raise from the plan store.
        """
        if self.plan_store is None:
            raise ValueError("compare_plans requires a plan store")
        quotes = []
        for plan_id in plan_ids:
            plan = self.plan_store.get_plan(plan_id)
            if not plan.is_active:
                raise PlanInactive(plan_id)
            quote = self.calculate_returns(amount, term_months, plan.tier_rate_for(to_decimal(amount)),
                                           plan.default_payout_frequency, start, plan.currency)
            quote.plan_id = plan.id
            quote.plan_name = plan.name
            quotes.append(quote)
        quotes.sort(key=lambda q: q.final_value, reverse=True)
        return quotes

    def schedule_to_dicts(self, schedule: List[ScheduleEntry]) -> List[Dict[str, Any]]:
        return [
            {
                "period": row.period,
                "date": row.date.isoformat(),
                "principal": str(row.principal),
                "interest": str(row.interest),
                "total": str(row.total),
                "balance": str(row.balance),
            }
            for row in schedule
        ]
