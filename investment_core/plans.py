"""
Investment Plan Module

Plans are the product templates investors place money into: amount and term
limits, a base annual rate with optional amount-tiered brackets, payout
cadence, approval policy and early-withdrawal terms. Plans are versioned on
every admin update and are only ever soft-deleted (deactivated); a plan that
still has pending or active investments cannot be deactivated.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import Currency, Money, quantize_rate, to_decimal, ZERO
from .storage import StorageInterface, StorageRecord, parse_datetime, serialize_value
from .audit import AuditTrail, AuditEventType
from .errors import PlanNotFound, InvalidInvestmentRequest
from .clock import Clock, SystemClock
from .logging_config import get_logger, log_action

logger = get_logger("investment_core.plans")


class PlanType(Enum):
    FIXED_DEPOSIT = "fixed_deposit"
    MUTUAL_FUND = "mutual_fund"
    STOCKS = "stocks"
    BONDS = "bonds"
    REAL_ESTATE = "real_estate"
    CRYPTO = "crypto"
    MIXED = "mixed"
    CUSTOM = "custom"


class RiskLevel(Enum):
    """Plan risk level, 1 (very low) through 5 (very high)"""
    VERY_LOW = 1
    LOW = 2
    MEDIUM = 3
    HIGH = 4
    VERY_HIGH = 5


class PayoutFrequency(Enum):
    """Payout cadence and the number of months between payouts"""
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUALLY = "semi_annually"
    ANNUALLY = "annually"
    AT_MATURITY = "at_maturity"

    @property
    def months(self) -> Optional[int]:
        """Months per payout period; None for a single payout at maturity"""
        return {
            PayoutFrequency.MONTHLY: 1,
            PayoutFrequency.QUARTERLY: 3,
            PayoutFrequency.SEMI_ANNUALLY: 6,
            PayoutFrequency.ANNUALLY: 12,
            PayoutFrequency.AT_MATURITY: None,
        }[self]

    @property
    def is_periodic(self) -> bool:
        return self is not PayoutFrequency.AT_MATURITY


@dataclass
class TierBracket:
    """Amount range (inclusive on both ends) mapped to an annual rate in percent"""
    min_amount: Decimal
    max_amount: Decimal
    rate: Decimal

    def __post_init__(self):
        self.min_amount = to_decimal(self.min_amount)
        self.max_amount = to_decimal(self.max_amount)
        self.rate = to_decimal(self.rate)
        if self.max_amount < self.min_amount:
            raise InvalidInvestmentRequest(
                f"Tier bracket max {self.max_amount} is below min {self.min_amount}"
            )

    def contains(self, amount: Decimal) -> bool:
        return self.min_amount <= amount <= self.max_amount

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TierBracket':
        return cls(
            min_amount=Decimal(data['min_amount']),
            max_amount=Decimal(data['max_amount']),
            rate=Decimal(data['rate'])
        )


def find_overlapping_brackets(tiers: List[TierBracket]) -> List[tuple]:
    """Index pairs of brackets whose ranges overlap, in table order"""
    overlaps = []
    for i, first in enumerate(tiers):
        for j in range(i + 1, len(tiers)):
            second = tiers[j]
            if first.min_amount <= second.max_amount and second.min_amount <= first.max_amount:
                overlaps.append((i, j))
    return overlaps


@dataclass
class InvestmentPlan(StorageRecord):
    """Investment product template"""
    name: str
    plan_type: PlanType
    currency: Currency
    min_amount: Decimal
    max_amount: Decimal
    base_rate: Decimal  # annual, percent
    min_term_months: int
    max_term_months: int
    default_payout_frequency: PayoutFrequency = PayoutFrequency.MONTHLY
    requires_approval: bool = False
    early_withdrawal_penalty: Optional[Decimal] = None  # percent of withdrawn amount
    risk_level: RiskLevel = RiskLevel.MEDIUM
    volatility_index: Decimal = ZERO  # 0-100
    tiers: List[TierBracket] = field(default_factory=list)
    description: str = ""
    is_active: bool = True
    version: int = 1
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    def validate(self) -> None:
        """
        Check internal consistency of the plan.

        Raises:
            InvalidInvestmentRequest: If limits are inconsistent
        """
        if self.min_amount <= ZERO or self.max_amount < self.min_amount:
            raise InvalidInvestmentRequest(
                f"Plan amount range {self.min_amount}-{self.max_amount} is invalid"
            )
        if self.min_term_months <= 0 or self.max_term_months < self.min_term_months:
            raise InvalidInvestmentRequest(
                f"Plan term range {self.min_term_months}-{self.max_term_months} months is invalid"
            )
        if self.base_rate < ZERO:
            raise InvalidInvestmentRequest("Plan base rate must not be negative")
        if not ZERO <= self.volatility_index <= Decimal("100"):
            raise InvalidInvestmentRequest("Volatility index must be between 0 and 100")

    def tier_rate_for(self, amount: Decimal) -> Decimal:
        """
        Rate from the first bracket containing ``amount``, else the base rate.

        Brackets are scanned in table order. When a table contains overlapping
        brackets the first match wins.
        """
        for tier in self.tiers:
            if tier.contains(amount):
                return tier.rate
        return self.base_rate

    def money(self, amount: Decimal) -> Money:
        return Money(amount, self.currency)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InvestmentPlan':
        penalty = data.get('early_withdrawal_penalty')
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            name=data['name'],
            plan_type=PlanType(data['plan_type']),
            currency=Currency[data['currency']],
            min_amount=Decimal(data['min_amount']),
            max_amount=Decimal(data['max_amount']),
            base_rate=Decimal(data['base_rate']),
            min_term_months=int(data['min_term_months']),
            max_term_months=int(data['max_term_months']),
            default_payout_frequency=PayoutFrequency(data['default_payout_frequency']),
            requires_approval=bool(data.get('requires_approval', False)),
            early_withdrawal_penalty=Decimal(penalty) if penalty is not None else None,
            risk_level=RiskLevel(int(data['risk_level'])),
            volatility_index=Decimal(data.get('volatility_index', "0")),
            tiers=[TierBracket.from_dict(t) for t in data.get('tiers', [])],
            description=data.get('description', ""),
            is_active=bool(data.get('is_active', True)),
            version=int(data.get('version', 1)),
            created_by=data.get('created_by'),
            updated_by=data.get('updated_by')
        )


class PlanStore(ABC):
    """Read interface to investment plans"""

    @abstractmethod
    def get_plan(self, plan_id: str) -> InvestmentPlan:
        """
        Raises:
            PlanNotFound: If no plan with this id exists
        """
        pass


# Fields an admin update may change; identity, currency and version are managed here
UPDATABLE_PLAN_FIELDS = {
    'name', 'description', 'plan_type', 'min_amount', 'max_amount', 'base_rate',
    'min_term_months', 'max_term_months', 'default_payout_frequency',
    'requires_approval', 'early_withdrawal_penalty', 'risk_level',
    'volatility_index', 'tiers'
}


def normalize_plan_value(key: str, value: Any) -> Any:
    """Coerce an updated plan field the same way create_plan does"""
    if key == 'base_rate':
        return quantize_rate(to_decimal(value))
    if key in ('min_amount', 'max_amount', 'volatility_index'):
        return to_decimal(value)
    if key == 'early_withdrawal_penalty':
        return to_decimal(value) if value is not None else None
    if key == 'tiers':
        return [t if isinstance(t, TierBracket) else TierBracket(**t) for t in value]
    return value


class PlanManager(PlanStore):
    """
    Storage-backed plan catalogue with admin maintenance operations
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 investments_table: str = "investments", clock: Optional[Clock] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock or SystemClock()
        self.table_name = "investment_plans"
        self.investments_table = investments_table

    def create_plan(
        self,
        name: str,
        plan_type: PlanType,
        currency: Currency,
        min_amount: Decimal,
        max_amount: Decimal,
        base_rate: Decimal,
        min_term_months: int,
        max_term_months: int,
        default_payout_frequency: PayoutFrequency = PayoutFrequency.MONTHLY,
        requires_approval: bool = False,
        early_withdrawal_penalty: Optional[Decimal] = None,
        risk_level: RiskLevel = RiskLevel.MEDIUM,
        volatility_index: Decimal = ZERO,
        tiers: Optional[List[TierBracket]] = None,
        description: str = "",
        created_by: Optional[str] = None
    ) -> InvestmentPlan:
        """
        Create a new investment plan

        Args:
            name: Display name
            plan_type: Product category
            currency: Plan currency
            min_amount: Smallest allowed placement
            max_amount: Largest allowed placement
            base_rate: Annual rate in percent when no tier or override applies
            min_term_months: Shortest allowed term
            max_term_months: Longest allowed term
            default_payout_frequency: Cadence used when the investor does not choose one
            requires_approval: New placements wait for admin approval
            early_withdrawal_penalty: Penalty percent before maturity
            risk_level: 1 (very low) to 5 (very high)
            volatility_index: 0-100
            tiers: Ordered amount brackets
            description: Free text
            created_by: Admin user id

        Returns:
            Created InvestmentPlan

        Raises:
            InvalidInvestmentRequest: If limits are inconsistent
        """
        now = self.clock.now()
        plan = InvestmentPlan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            plan_type=plan_type,
            currency=currency,
            min_amount=to_decimal(min_amount),
            max_amount=to_decimal(max_amount),
            base_rate=quantize_rate(base_rate),
            min_term_months=min_term_months,
            max_term_months=max_term_months,
            default_payout_frequency=default_payout_frequency,
            requires_approval=requires_approval,
            early_withdrawal_penalty=(
                to_decimal(early_withdrawal_penalty) if early_withdrawal_penalty is not None else None
            ),
            risk_level=risk_level,
            volatility_index=to_decimal(volatility_index),
            tiers=list(tiers or []),
            description=description,
            created_by=created_by,
            updated_by=created_by
        )
        plan.validate()
        self._warn_on_overlaps(plan)

        with self.storage.atomic():
            self.storage.save(self.table_name, plan.id, plan.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.PLAN_CREATED,
                entity_type="plan",
                entity_id=plan.id,
                user_id=created_by,
                metadata={
                    "name": name,
                    "plan_type": plan_type.value,
                    "base_rate": plan.base_rate,
                    "tiers": len(plan.tiers),
                    "requires_approval": requires_approval
                }
            )

        log_action(logger, "info", f"Investment plan {plan.name} created",
                   user_id=created_by, action="create_plan", resource=plan.id)
        return plan

    def update_plan(self, plan_id: str, updated_by: Optional[str] = None, **changes) -> InvestmentPlan:
        """
        Apply an admin update to a plan and bump its version.

        Existing investments keep their rate snapshot; only new placements see
        the change.

        Raises:
            PlanNotFound: If the plan does not exist
            InvalidInvestmentRequest: If a field is not updatable or the result is inconsistent
        """
        unknown = set(changes) - UPDATABLE_PLAN_FIELDS
        if unknown:
            raise InvalidInvestmentRequest(f"Plan fields cannot be updated: {sorted(unknown)}")

        with self.storage.atomic():
            current = self.get_plan(plan_id)
            data = current.to_dict()
            for key, value in changes.items():
                data[key] = serialize_value(normalize_plan_value(key, value))
            data['version'] = current.version + 1
            data['updated_at'] = self.clock.now().isoformat()
            data['updated_by'] = updated_by

            plan = InvestmentPlan.from_dict(data)
            plan.validate()
            self._warn_on_overlaps(plan)
            self.storage.save(self.table_name, plan.id, plan.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.PLAN_UPDATED,
                entity_type="plan",
                entity_id=plan_id,
                user_id=updated_by,
                metadata={
                    "old_version": current.version,
                    "new_version": plan.version,
                    "changes": {k: data[k] for k in changes}
                }
            )
        return plan

    def deactivate_plan(self, plan_id: str, updated_by: Optional[str] = None) -> InvestmentPlan:
        """
        Soft-delete a plan.

        Raises:
            PlanNotFound: If the plan does not exist
            InvalidInvestmentRequest: If pending or active investments reference the plan
        """
        with self.storage.atomic():
            plan = self.get_plan(plan_id)
            live = self.count_live_investments(plan_id)
            if live:
                raise InvalidInvestmentRequest(
                    f"Cannot deactivate plan {plan_id}: {live} pending or active investments reference it"
                )
            plan.is_active = False
            plan.version += 1
            plan.updated_at = self.clock.now()
            plan.updated_by = updated_by
            self.storage.save(self.table_name, plan.id, plan.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.PLAN_DEACTIVATED,
                entity_type="plan",
                entity_id=plan_id,
                user_id=updated_by,
                metadata={"version": plan.version}
            )
        return plan

    def count_live_investments(self, plan_id: str) -> int:
        references = self.storage.find(self.investments_table, {"plan_id": plan_id})
        return sum(1 for r in references if r.get("status") in ("pending", "active"))

    def get_plan(self, plan_id: str) -> InvestmentPlan:
        data = self.storage.load(self.table_name, plan_id)
        if not data:
            raise PlanNotFound(plan_id)
        return InvestmentPlan.from_dict(data)

    def list_plans(self, active_only: bool = False,
                   plan_type: Optional[PlanType] = None) -> List[InvestmentPlan]:
        """List plans ordered by name"""
        filters: Dict[str, Any] = {}
        if active_only:
            filters['is_active'] = True
        if plan_type:
            filters['plan_type'] = plan_type.value
        plans = [InvestmentPlan.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        plans.sort(key=lambda p: p.name)
        return plans

    def _warn_on_overlaps(self, plan: InvestmentPlan) -> None:
        overlaps = find_overlapping_brackets(plan.tiers)
        if overlaps:
            log_action(logger, "warning",
                       f"Plan {plan.name} has overlapping tier brackets; first match wins",
                       action="plan_tier_overlap", resource=plan.id,
                       extra={"overlapping_pairs": overlaps})
