"""
Early Withdrawal Penalty Module

Prices an exit before maturity. The plan's penalty percentage decays linearly
with the elapsed share of the term and reaches zero at maturity; on top of it
the investor forfeits a fixed fraction of the interest that was projected but
not yet paid out.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, Any, Optional

from .currency import ZERO, ONE, HUNDRED, quantize_money, quantize_ratio, quantize_rate, clamp, to_decimal
from .investments import Investment
from .plans import InvestmentPlan
from .config import EngineConfig, get_config


@dataclass
class PenaltyQuote:
    withdrawal_amount: Decimal
    completion_fraction: Decimal
    base_penalty_pct: Decimal
    adjusted_penalty_pct: Decimal
    penalty_amount: Decimal
    lost_interest: Decimal
    total_penalty: Decimal
    net_amount: Decimal
    requires_review: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "withdrawal_amount": str(self.withdrawal_amount),
            "completion_fraction": str(self.completion_fraction),
            "base_penalty_pct": str(self.base_penalty_pct),
            "adjusted_penalty_pct": str(self.adjusted_penalty_pct),
            "penalty_amount": str(self.penalty_amount),
            "lost_interest": str(self.lost_interest),
            "total_penalty": str(self.total_penalty),
            "net_amount": str(self.net_amount),
            "requires_review": self.requires_review,
        }


class WithdrawalPenaltyCalculator:
    """Time-decayed early withdrawal pricing"""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or get_config()

    def completion_fraction(self, investment: Investment, now: datetime) -> Decimal:
        """Elapsed share of the term, clamped to [0, 1]"""
        total = (investment.maturity_date - investment.start_date).total_seconds()
        if total <= 0:
            return ONE
        elapsed = (now - investment.start_date).total_seconds()
        fraction = to_decimal(elapsed) / to_decimal(total)
        return quantize_ratio(clamp(fraction, ZERO, ONE))

    def base_penalty_pct(self, plan: Optional[InvestmentPlan]) -> Decimal:
        if plan is None or plan.early_withdrawal_penalty is None:
            return Decimal(self.config.default_early_withdrawal_penalty)
        return plan.early_withdrawal_penalty

    def calculate(self, investment: Investment, plan: Optional[InvestmentPlan],
                  withdrawal_amount: Decimal, now: datetime) -> PenaltyQuote:
        """
        Price a withdrawal of ``withdrawal_amount`` at ``now``

        When the total penalty exceeds the amount, the net credit is clamped
        to zero and the quote is flagged for review.
        """
        currency = investment.currency
        amount = quantize_money(withdrawal_amount, currency)
        fraction = self.completion_fraction(investment, now)
        base_pct = self.base_penalty_pct(plan)
        adjusted_pct = quantize_rate(base_pct * (ONE - fraction))

        penalty_amount = quantize_money(amount * adjusted_pct / HUNDRED, currency)
        forfeit = Decimal(self.config.lost_interest_forfeit_fraction)
        lost_interest = quantize_money(max(ZERO, investment.unrealized_interest * forfeit), currency)
        total_penalty = penalty_amount + lost_interest

        net = amount - total_penalty
        requires_review = net < ZERO
        return PenaltyQuote(
            withdrawal_amount=amount,
            completion_fraction=fraction,
            base_penalty_pct=base_pct,
            adjusted_penalty_pct=adjusted_pct,
            penalty_amount=penalty_amount,
            lost_interest=lost_interest,
            total_penalty=total_penalty,
            net_amount=max(ZERO, net),
            requires_review=requires_review
        )
