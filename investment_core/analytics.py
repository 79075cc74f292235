"""
Portfolio Analytics Module

Read-only aggregation over investments: per-investor summaries,
distribution, performance, projections and risk, plus the fund-level views
used by administrators (funds under management, approval queue, alerts,
payout outlook, period reports and per-investor overviews).

Nothing here mutates state. An investor with no investments gets zeros and an
"Unknown" risk band, never a division error.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from .currency import (
    ZERO, ONE, HUNDRED, MONTHS_PER_YEAR,
    quantize_rate, quantize_ratio, safe_divide, decimal_sqrt, to_decimal
)
from .plans import InvestmentPlan, PlanStore
from .investments import Investment, InvestmentStatus, InvestmentRepository, PayoutType
from .payouts import PayoutScheduler, add_months, simple_projected_return
from .penalties import WithdrawalPenaltyCalculator
from .errors import PlanNotFound
from .storage import serialize_value
from .clock import Clock, SystemClock, ensure_utc
from .config import EngineConfig, get_config
from .logging_config import get_logger, log_action

logger = get_logger("investment_core.analytics")

MONEY_PLACES = Decimal("0.01")
DAYS_PER_YEAR = Decimal("365")
PROJECTION_HORIZONS = (1, 3, 6, 12, 60)
UNKNOWN = "Unknown"


def _money(value: Decimal) -> Decimal:
    # cross-currency aggregates use cent precision
    return to_decimal(value).quantize(MONEY_PLACES)


def risk_band(average_risk: Optional[Decimal]) -> str:
    """Qualitative band for an average 1-5 risk level"""
    if average_risk is None:
        return UNKNOWN
    if average_risk < 2:
        return "Conservative"
    if average_risk < 3:
        return "Moderate"
    if average_risk < 4:
        return "Balanced"
    if average_risk < 5:
        return "Growth"
    return "Aggressive"


class MarketDataFeed(ABC):
    """Source of market reference rates"""

    @abstractmethod
    def risk_free_rate(self) -> Decimal:
        """Annual risk-free rate in percent"""
        pass


class StaticMarketDataFeed(MarketDataFeed):
    """Risk-free rate taken from configuration"""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or get_config()

    def risk_free_rate(self) -> Decimal:
        return Decimal(self.config.risk_free_rate)


@dataclass
class PortfolioSummary:
    total_investments: int
    active_investments: int
    total_invested: Decimal
    current_value: Decimal
    total_returns: Decimal
    average_rate: Decimal
    weighted_average_rate: Decimal
    investments_by_currency: Dict[str, Decimal] = field(default_factory=dict)
    investments_by_status: Dict[str, int] = field(default_factory=dict)


@dataclass
class PortfolioDistribution:
    by_plan_type: Dict[str, Decimal] = field(default_factory=dict)
    by_risk_level: Dict[str, Decimal] = field(default_factory=dict)
    by_term: Dict[str, Decimal] = field(default_factory=dict)
    by_currency: Dict[str, Decimal] = field(default_factory=dict)


@dataclass
class PerformanceMetrics:
    """Expected earnings per period at the weighted rate, plus realized all-time return"""
    daily_return: Decimal
    weekly_return: Decimal
    monthly_return: Decimal
    quarterly_return: Decimal
    yearly_return: Decimal
    all_time_return: Decimal
    all_time_return_pct: Decimal


@dataclass
class Projections:
    horizons: Dict[int, Decimal] = field(default_factory=dict)  # months ahead -> projected value
    monthly: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def one_month(self) -> Decimal:
        return self.horizons.get(1, ZERO)

    @property
    def one_year(self) -> Decimal:
        return self.horizons.get(12, ZERO)

    @property
    def five_years(self) -> Decimal:
        return self.horizons.get(60, ZERO)


@dataclass
class RiskAnalysis:
    overall_risk_level: str
    risk_score: Decimal
    volatility: Decimal
    sharpe_ratio: Decimal
    max_drawdown: Decimal
    risk_factors: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


@dataclass
class PortfolioAnalyticsReport:
    user_id: str
    generated_at: datetime
    summary: PortfolioSummary
    distribution: PortfolioDistribution
    performance: PerformanceMetrics
    projections: Projections
    risk: RiskAnalysis


@dataclass
class FundSummary:
    total_funds_under_management: Decimal
    total_active_investments: int
    total_investors: int
    average_investment_size: Decimal
    total_payouts_due: Decimal
    total_payouts_this_month: Decimal
    funds_by_plan: Dict[str, Decimal] = field(default_factory=dict)
    investments_by_status: Dict[str, int] = field(default_factory=dict)


@dataclass
class PendingApproval:
    investment_id: str
    user_id: str
    amount: Decimal
    currency: str
    plan_name: str
    term_months: int
    requested_rate: Decimal
    application_date: datetime
    days_pending: int


@dataclass
class InvestmentAlert:
    alert_type: str  # payment, approval, maturity
    severity: str    # high, medium, low
    message: str
    count: int
    timestamp: datetime


@dataclass
class UpcomingPayout:
    investment_id: str
    user_id: str
    amount: Decimal
    currency: str
    scheduled_date: datetime
    frequency: str


@dataclass
class PayoutSummary:
    today_payouts: Decimal
    this_week_payouts: Decimal
    this_month_payouts: Decimal
    next_month_projected: Decimal
    upcoming_payouts: List[UpcomingPayout] = field(default_factory=list)


@dataclass
class InvestorOverview:
    """One investor as seen from the fund: amounts cover ACTIVE holdings, returns cover all"""
    user_id: str
    total_investments: int
    total_invested: Decimal
    current_value: Decimal
    average_rate: Decimal
    weighted_average_rate: Decimal
    total_returns: Decimal
    risk_profile: str


@dataclass
class PeriodReport:
    """
    Fund activity between ``start`` and ``end`` inclusive. New investments
    are counted by creation time and payouts by processing time; the
    performance and investor totals describe the fund at ``generated_at``.
    """
    start: datetime
    end: datetime
    generated_at: datetime
    new_investments: int
    new_investment_total: Decimal
    new_investment_average: Decimal
    payouts_count: int
    payouts_total: Decimal
    interest_paid: Decimal
    principal_returned: Decimal
    average_rate: Decimal
    weighted_average_rate: Decimal
    total_under_management: Decimal
    new_investors: int
    active_investors: int


class PortfolioAnalytics:
    """
    Investor and fund analytics over the investment repository
    """

    def __init__(
        self,
        repository: InvestmentRepository,
        plan_store: PlanStore,
        scheduler: PayoutScheduler,
        penalty_calculator: WithdrawalPenaltyCalculator,
        market_data: Optional[MarketDataFeed] = None,
        clock: Optional[Clock] = None,
        config: Optional[EngineConfig] = None
    ):
        self.repository = repository
        self.plan_store = plan_store
        self.scheduler = scheduler
        self.penalty_calculator = penalty_calculator
        self.config = config or get_config()
        self.market_data = market_data or StaticMarketDataFeed(self.config)
        self.clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Investor views
    # ------------------------------------------------------------------

    def portfolio_report(self, user_id: str, now: Optional[datetime] = None) -> PortfolioAnalyticsReport:
        """All investor views computed from a single snapshot of the investor's holdings"""
        now = self._now(now)
        investments = self.repository.list_investments(user_id=user_id)
        plans = self._plans_for(investments)
        return PortfolioAnalyticsReport(
            user_id=user_id,
            generated_at=now,
            summary=self._summary(investments, now),
            distribution=self._distribution(investments, plans),
            performance=self._performance(investments),
            projections=self._projections(investments),
            risk=self._risk(investments, plans, now)
        )

    def summary(self, user_id: str, now: Optional[datetime] = None) -> PortfolioSummary:
        return self._summary(self.repository.list_investments(user_id=user_id), self._now(now))

    def distribution(self, user_id: str) -> PortfolioDistribution:
        investments = self.repository.list_investments(user_id=user_id)
        return self._distribution(investments, self._plans_for(investments))

    def performance(self, user_id: str) -> PerformanceMetrics:
        return self._performance(self.repository.list_investments(user_id=user_id))

    def projections(self, user_id: str) -> Projections:
        return self._projections(self.repository.list_investments(user_id=user_id))

    def risk_analysis(self, user_id: str, now: Optional[datetime] = None) -> RiskAnalysis:
        investments = self.repository.list_investments(user_id=user_id)
        return self._risk(investments, self._plans_for(investments), self._now(now))

    @staticmethod
    def weighted_average_rate(investments: List[Investment]) -> Decimal:
        """Σ(rate × amount) / Σ amount, zero for an empty or zero-principal list"""
        total = sum((i.amount for i in investments), ZERO)
        weighted = sum((i.effective_rate * i.amount for i in investments), ZERO)
        return quantize_rate(safe_divide(weighted, total))

    def current_value(self, investment: Investment, now: datetime) -> Decimal:
        """Principal plus interest accrued in the current term and not yet paid out"""
        if investment.status != InvestmentStatus.ACTIVE:
            return ZERO
        term_interest = simple_projected_return(
            investment.amount, investment.effective_rate, investment.term_months, investment.currency
        ) - investment.amount
        fraction = self.penalty_calculator.completion_fraction(investment, now)
        accrued = term_interest * fraction - investment.term_paid_out
        return investment.amount + max(ZERO, accrued)

    def _summary(self, investments: List[Investment], now: datetime) -> PortfolioSummary:
        active = self._active(investments)
        by_currency: Dict[str, Decimal] = {}
        for inv in active:
            by_currency[inv.currency.code] = by_currency.get(inv.currency.code, ZERO) + inv.amount
        by_status: Dict[str, int] = {}
        for inv in investments:
            by_status[inv.status.value] = by_status.get(inv.status.value, 0) + 1

        average_rate = safe_divide(sum((i.effective_rate for i in active), ZERO), Decimal(len(active)))
        return PortfolioSummary(
            total_investments=len(investments),
            active_investments=len(active),
            total_invested=_money(sum((i.amount for i in active), ZERO)),
            current_value=_money(sum((self.current_value(i, now) for i in active), ZERO)),
            total_returns=_money(sum((i.total_paid_out for i in investments), ZERO)),
            average_rate=quantize_rate(average_rate),
            weighted_average_rate=self.weighted_average_rate(active),
            investments_by_currency=by_currency,
            investments_by_status=by_status
        )

    def _distribution(self, investments: List[Investment],
                      plans: Dict[str, InvestmentPlan]) -> PortfolioDistribution:
        distribution = PortfolioDistribution()
        for inv in self._active(investments):
            plan = plans.get(inv.plan_id)
            plan_type = plan.plan_type.value if plan else UNKNOWN
            risk = plan.risk_level.name.lower() if plan else UNKNOWN
            for bucket, key in ((distribution.by_plan_type, plan_type),
                                (distribution.by_risk_level, risk),
                                (distribution.by_term, inv.term_bucket.value),
                                (distribution.by_currency, inv.currency.code)):
                bucket[key] = bucket.get(key, ZERO) + inv.amount
        return distribution

    def _performance(self, investments: List[Investment]) -> PerformanceMetrics:
        active = self._active(investments)
        invested = sum((i.amount for i in active), ZERO)
        yearly = invested * self.weighted_average_rate(active) / HUNDRED
        all_time = sum((i.total_paid_out for i in investments), ZERO)
        return PerformanceMetrics(
            daily_return=_money(yearly / DAYS_PER_YEAR),
            weekly_return=_money(yearly * Decimal(7) / DAYS_PER_YEAR),
            monthly_return=_money(yearly / MONTHS_PER_YEAR),
            quarterly_return=_money(yearly / Decimal(4)),
            yearly_return=_money(yearly),
            all_time_return=_money(all_time),
            all_time_return_pct=quantize_rate(safe_divide(all_time, invested) * HUNDRED)
        )

    def _projections(self, investments: List[Investment]) -> Projections:
        active = self._active(investments)
        invested = sum((i.amount for i in active), ZERO)
        rate = self.weighted_average_rate(active)

        def value_after(months: int) -> Decimal:
            return _money(invested * (ONE + rate / HUNDRED * Decimal(months) / MONTHS_PER_YEAR))

        return Projections(
            horizons={months: value_after(months) for months in PROJECTION_HORIZONS},
            monthly={f"Month {m}": value_after(m) for m in range(1, 13)}
        )

    def _risk(self, investments: List[Investment], plans: Dict[str, InvestmentPlan],
              now: datetime) -> RiskAnalysis:
        active = [i for i in self._active(investments) if i.plan_id in plans]
        if not active:
            return RiskAnalysis(UNKNOWN, ZERO, ZERO, ZERO, ZERO)

        count = Decimal(len(active))
        average_risk = sum((Decimal(plans[i.plan_id].risk_level.value) for i in active), ZERO) / count
        volatility = sum((plans[i.plan_id].volatility_index for i in active), ZERO) / count

        rates = [i.effective_rate for i in active]
        mean_rate = sum(rates, ZERO) / count
        stddev = decimal_sqrt(sum(((r - mean_rate) ** 2 for r in rates), ZERO) / count)
        sharpe = safe_divide(mean_rate - self.market_data.risk_free_rate(), stddev)

        invested = sum((i.amount for i in active), ZERO)
        exposure = sum((i.amount * self.penalty_calculator.base_penalty_pct(plans[i.plan_id])
                        for i in active), ZERO)
        drawdown = safe_divide(exposure, invested)

        band = risk_band(average_risk)
        factors, recommendations = self._risk_commentary(active, plans, band, volatility, invested, now)
        return RiskAnalysis(
            overall_risk_level=band,
            risk_score=quantize_ratio(average_risk),
            volatility=quantize_rate(volatility),
            sharpe_ratio=quantize_ratio(sharpe),
            max_drawdown=quantize_rate(drawdown),
            risk_factors=factors,
            recommendations=recommendations
        )

    def _risk_commentary(self, active: List[Investment], plans: Dict[str, InvestmentPlan],
                         band: str, volatility: Decimal, invested: Decimal, now: datetime) -> tuple:
        factors = []
        recommendations = []

        by_type: Dict[str, Decimal] = {}
        for inv in active:
            key = plans[inv.plan_id].plan_type.value
            by_type[key] = by_type.get(key, ZERO) + inv.amount
        top_type, top_amount = max(by_type.items(), key=lambda item: item[1])
        if len(active) > 1 and safe_divide(top_amount, invested) > Decimal("0.5"):
            factors.append(f"More than half of the portfolio is in {top_type} plans")
            recommendations.append("Diversify across plan types to reduce concentration")
        elif len(active) == 1:
            factors.append("Portfolio holds a single investment")
            recommendations.append("Spread new placements over more than one plan")

        if volatility > Decimal("50"):
            factors.append("Holdings have high average volatility")
        if band in ("Growth", "Aggressive"):
            recommendations.append("Balance high-risk holdings with fixed-income plans")
        elif band == "Conservative":
            recommendations.append("Consider a moderate-risk plan for higher long-term returns")

        if len({inv.currency for inv in active}) > 1:
            factors.append("Holdings are exposed to currency movements")

        window_end = now + timedelta(days=self.config.maturity_alert_window_days)
        maturing = [inv for inv in active if inv.maturity_date <= window_end]
        if maturing:
            factors.append(f"{len(maturing)} investment(s) mature within "
                           f"{self.config.maturity_alert_window_days} days")
            if not all(inv.auto_renew for inv in maturing):
                recommendations.append("Plan reinvestment of maturing principal")
        return factors, recommendations

    # ------------------------------------------------------------------
    # Fund views
    # ------------------------------------------------------------------

    def fund_summary(self, now: Optional[datetime] = None) -> FundSummary:
        now = self._now(now)
        investments = self.repository.list_investments()
        active = self._active(investments)
        plans = self._plans_for(active)

        funds_by_plan: Dict[str, Decimal] = {}
        for inv in active:
            name = plans[inv.plan_id].name if inv.plan_id in plans else UNKNOWN
            funds_by_plan[name] = funds_by_plan.get(name, ZERO) + inv.amount
        by_status: Dict[str, int] = {}
        for inv in investments:
            by_status[inv.status.value] = by_status.get(inv.status.value, 0) + 1

        total = sum((i.amount for i in active), ZERO)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        return FundSummary(
            total_funds_under_management=_money(total),
            total_active_investments=len(active),
            total_investors=len({i.user_id for i in active}),
            average_investment_size=_money(safe_divide(total, Decimal(len(active)))),
            total_payouts_due=_money(sum((u.amount for u in self._upcoming(active, add_months(now, 1))), ZERO)),
            total_payouts_this_month=_money(self._paid_between(month_start, now)),
            funds_by_plan=funds_by_plan,
            investments_by_status=by_status
        )

    def pending_approvals(self, now: Optional[datetime] = None) -> List[PendingApproval]:
        """Pending investments, oldest application first"""
        now = self._now(now)
        pending = self.repository.list_investments(status=InvestmentStatus.PENDING)
        plans = self._plans_for(pending)
        return [
            PendingApproval(
                investment_id=inv.id,
                user_id=inv.user_id,
                amount=inv.amount,
                currency=inv.currency.code,
                plan_name=plans[inv.plan_id].name if inv.plan_id in plans else UNKNOWN,
                term_months=inv.term_months,
                requested_rate=inv.effective_rate,
                application_date=inv.created_at,
                days_pending=max(0, (now - inv.created_at).days)
            )
            for inv in pending
        ]

    def investment_alerts(self, now: Optional[datetime] = None) -> List[InvestmentAlert]:
        """
        Operational alerts: overdue payouts (high), approval backlog above the
        configured threshold (medium), and investments maturing soon (low)
        """
        now = self._now(now)
        investments = self.repository.list_investments()
        active = self._active(investments)
        alerts = []

        overdue = [inv for inv in active
                   if (self.scheduler.next_payout_date(inv) or now) < now]
        if overdue:
            alerts.append(InvestmentAlert("payment", "high",
                                          f"{len(overdue)} overdue payouts require attention",
                                          len(overdue), now))

        pending = sum(1 for inv in investments if inv.status == InvestmentStatus.PENDING)
        if pending > self.config.pending_approval_alert_threshold:
            alerts.append(InvestmentAlert("approval", "medium",
                                          f"{pending} investments awaiting approval",
                                          pending, now))

        window_days = self.config.maturity_alert_window_days
        maturing = sum(1 for inv in active if inv.maturity_date <= now + timedelta(days=window_days))
        if maturing:
            alerts.append(InvestmentAlert("maturity", "low",
                                          f"{maturing} investments maturing in the next {window_days} days",
                                          maturing, now))

        if alerts:
            log_action(logger, "info", f"{len(alerts)} investment alerts raised",
                       action="investment_alerts",
                       extra={"types": [a.alert_type for a in alerts]})
        return alerts

    def payout_summary(self, now: Optional[datetime] = None,
                       horizon_end: Optional[datetime] = None) -> PayoutSummary:
        """Paid amounts for today, the last seven days and this month, and the upcoming outlook"""
        now = self._now(now)
        horizon_end = ensure_utc(horizon_end) if horizon_end else add_months(now, 1)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        upcoming = self._upcoming(self._active(self.repository.list_investments()), horizon_end)
        return PayoutSummary(
            today_payouts=_money(self._paid_between(day_start, now)),
            this_week_payouts=_money(self._paid_between(now - timedelta(days=7), now)),
            this_month_payouts=_money(self._paid_between(day_start.replace(day=1), now)),
            next_month_projected=_money(sum((u.amount for u in upcoming), ZERO)),
            upcoming_payouts=upcoming[:10]
        )

    def period_report(self, start: datetime, end: datetime,
                      now: Optional[datetime] = None) -> PeriodReport:
        """
        New business, payouts, performance and investor activity for a period.

        Args:
            start: First instant of the period
            end: Last instant of the period
            now: Report time; defaults to the engine clock

        Returns:
            PeriodReport; an empty period reports zeros
        """
        start, end = ensure_utc(start), ensure_utc(end)
        if end < start:
            raise ValueError(f"Report period ends before it starts: {start} > {end}")
        now = self._now(now)

        investments = self.repository.list_investments()
        created = [i for i in investments if start <= i.created_at <= end]
        new_total = sum((i.amount for i in created), ZERO)

        # penalty charges are negative and are not payouts
        paid = [p for p in self.repository.list_payouts()
                if p.payout_type != PayoutType.PENALTY
                and p.processed_date is not None and start <= p.processed_date <= end]

        active = self._active(investments)
        average_rate = safe_divide(sum((i.effective_rate for i in active), ZERO), Decimal(len(active)))
        report = PeriodReport(
            start=start,
            end=end,
            generated_at=now,
            new_investments=len(created),
            new_investment_total=_money(new_total),
            new_investment_average=_money(safe_divide(new_total, Decimal(len(created)))),
            payouts_count=len(paid),
            payouts_total=_money(sum((p.amount for p in paid), ZERO)),
            interest_paid=_money(sum((p.interest_component for p in paid), ZERO)),
            principal_returned=_money(sum((p.principal_component for p in paid), ZERO)),
            average_rate=quantize_rate(average_rate),
            weighted_average_rate=self.weighted_average_rate(active),
            total_under_management=_money(sum((i.amount for i in active), ZERO)),
            new_investors=len({i.user_id for i in created}),
            active_investors=len({i.user_id for i in active})
        )
        log_action(logger, "info", f"Period report {start.date()} to {end.date()} generated",
                   action="period_report",
                   extra={"new_investments": report.new_investments,
                          "payouts_count": report.payouts_count})
        return report

    def user_rois(self) -> Dict[str, Decimal]:
        """Amount-weighted rate of each investor's ACTIVE holdings; investors with none are absent"""
        by_user: Dict[str, List[Investment]] = {}
        for inv in self._active(self.repository.list_investments()):
            by_user.setdefault(inv.user_id, []).append(inv)
        return {user_id: self.weighted_average_rate(held) for user_id, held in by_user.items()}

    def investor_overview(self, user_id: str, now: Optional[datetime] = None) -> InvestorOverview:
        investments = self.repository.list_investments(user_id=user_id)
        return self._overview(user_id, investments, self._plans_for(investments), self._now(now))

    def all_investors(self, now: Optional[datetime] = None) -> List[InvestorOverview]:
        """Every investor with at least one investment, largest active holding first"""
        now = self._now(now)
        investments = self.repository.list_investments()
        plans = self._plans_for(investments)
        by_user: Dict[str, List[Investment]] = {}
        for inv in investments:
            by_user.setdefault(inv.user_id, []).append(inv)
        overviews = [self._overview(user_id, held, plans, now) for user_id, held in by_user.items()]
        overviews.sort(key=lambda o: (-o.total_invested, o.user_id))
        return overviews

    def _overview(self, user_id: str, investments: List[Investment],
                  plans: Dict[str, InvestmentPlan], now: datetime) -> InvestorOverview:
        active = self._active(investments)
        rated = [i for i in active if i.plan_id in plans]
        average_risk = None
        if rated:
            average_risk = sum((Decimal(plans[i.plan_id].risk_level.value) for i in rated), ZERO) \
                / Decimal(len(rated))
        average_rate = safe_divide(sum((i.effective_rate for i in active), ZERO), Decimal(len(active)))
        return InvestorOverview(
            user_id=user_id,
            total_investments=len(investments),
            total_invested=_money(sum((i.amount for i in active), ZERO)),
            current_value=_money(sum((self.current_value(i, now) for i in active), ZERO)),
            average_rate=quantize_rate(average_rate),
            weighted_average_rate=self.weighted_average_rate(active),
            total_returns=_money(sum((i.total_paid_out for i in investments), ZERO)),
            risk_profile=risk_band(average_risk)
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now else self.clock.now()

    @staticmethod
    def _active(investments: List[Investment]) -> List[Investment]:
        return [i for i in investments if i.status == InvestmentStatus.ACTIVE]

    def _plans_for(self, investments: List[Investment]) -> Dict[str, InvestmentPlan]:
        plans = {}
        for plan_id in {i.plan_id for i in investments}:
            try:
                plans[plan_id] = self.plan_store.get_plan(plan_id)
            except PlanNotFound:
                log_action(logger, "warning", f"Plan {plan_id} referenced by investments not found",
                           action="analytics_plan_lookup", resource=plan_id)
        return plans

    def _upcoming(self, active: List[Investment], until: datetime) -> List[UpcomingPayout]:
        upcoming = []
        for inv in active:
            due = self.scheduler.next_payout_date(inv)
            if due is not None and due <= until:
                upcoming.append(UpcomingPayout(
                    investment_id=inv.id,
                    user_id=inv.user_id,
                    amount=self.scheduler.payout_amount(inv),
                    currency=inv.currency.code,
                    scheduled_date=due,
                    frequency=inv.payout_frequency.value
                ))
        upcoming.sort(key=lambda u: u.scheduled_date)
        return upcoming

    def _paid_between(self, start: datetime, end: datetime) -> Decimal:
        """Interest and bonus payouts processed in [start, end]"""
        return sum(
            (p.amount for p in self.repository.list_payouts()
             if p.payout_type in (PayoutType.INTEREST, PayoutType.BONUS)
             and p.processed_date is not None and start <= p.processed_date <= end),
            ZERO
        )


def report_to_dict(value: Any) -> Any:
    """JSON-safe view of any analytics dataclass"""
    return serialize_value(value)
