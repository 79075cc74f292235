"""
Investment Records Module

The Investment record, its append-only PayoutRecord history, and the
repository that persists both. Every load returns a fresh snapshot; updates
go through ``save`` which enforces the optimistic ``version`` token so two
writers racing on the same investment cannot silently overwrite each other.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum

from .currency import Currency, Money, ZERO
from .plans import PayoutFrequency
from .storage import StorageInterface, StorageRecord, parse_datetime, parse_decimal
from .errors import InvestmentNotFound, ConcurrencyConflict


class InvestmentStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    MATURED = "matured"

    @property
    def is_terminal(self) -> bool:
        return self in (InvestmentStatus.REJECTED, InvestmentStatus.WITHDRAWN,
                        InvestmentStatus.MATURED)


class TermBucket(Enum):
    SHORT = "short"    # up to 6 months
    MEDIUM = "medium"  # up to 12 months
    LONG = "long"

    @classmethod
    def for_term(cls, term_months: int) -> 'TermBucket':
        if term_months <= 6:
            return cls.SHORT
        if term_months <= 12:
            return cls.MEDIUM
        return cls.LONG


class PayoutType(Enum):
    INTEREST = "interest"
    BONUS = "bonus"
    PENALTY = "penalty"
    CAPITAL = "capital"


class PayoutStatus(Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"


@dataclass
class Investment(StorageRecord):
    """A single placement of principal into a plan"""
    user_id: str
    plan_id: str
    amount: Decimal  # current principal
    currency: Currency
    base_rate: Decimal
    effective_rate: Decimal
    term_months: int
    payout_frequency: PayoutFrequency
    status: InvestmentStatus
    start_date: datetime
    maturity_date: datetime
    minimum_balance: Decimal
    projected_return: Decimal
    source_account_id: str
    payout_account_id: str
    auto_renew: bool = False
    last_payout_date: Optional[datetime] = None
    total_paid_out: Decimal = ZERO
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    withdrawn_at: Optional[datetime] = None
    matured_at: Optional[datetime] = None
    renewal_count: int = 0
    prior_terms_paid_out: Decimal = ZERO  # part of total_paid_out earned in earlier terms
    notes: str = ""
    version: int = 1

    @property
    def term_bucket(self) -> TermBucket:
        return TermBucket.for_term(self.term_months)

    @property
    def principal(self) -> Money:
        return Money(self.amount, self.currency)

    @property
    def term_paid_out(self) -> Decimal:
        return self.total_paid_out - self.prior_terms_paid_out

    @property
    def unrealized_interest(self) -> Decimal:
        """Projected interest of the current term not yet paid out"""
        return self.projected_return - self.amount - self.term_paid_out

    def money(self, amount: Decimal) -> Money:
        return Money(amount, self.currency)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        result['term_bucket'] = self.term_bucket.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Investment':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            user_id=data['user_id'],
            plan_id=data['plan_id'],
            amount=Decimal(data['amount']),
            currency=Currency[data['currency']],
            base_rate=Decimal(data['base_rate']),
            effective_rate=Decimal(data['effective_rate']),
            term_months=int(data['term_months']),
            payout_frequency=PayoutFrequency(data['payout_frequency']),
            status=InvestmentStatus(data['status']),
            start_date=parse_datetime(data['start_date']),
            maturity_date=parse_datetime(data['maturity_date']),
            minimum_balance=Decimal(data['minimum_balance']),
            projected_return=Decimal(data['projected_return']),
            source_account_id=data['source_account_id'],
            payout_account_id=data['payout_account_id'],
            auto_renew=bool(data.get('auto_renew', False)),
            last_payout_date=parse_datetime(data.get('last_payout_date')),
            total_paid_out=parse_decimal(data.get('total_paid_out', "0")),
            approved_by=data.get('approved_by'),
            approved_at=parse_datetime(data.get('approved_at')),
            rejected_by=data.get('rejected_by'),
            rejected_at=parse_datetime(data.get('rejected_at')),
            rejection_reason=data.get('rejection_reason'),
            withdrawn_at=parse_datetime(data.get('withdrawn_at')),
            matured_at=parse_datetime(data.get('matured_at')),
            renewal_count=int(data.get('renewal_count', 0)),
            prior_terms_paid_out=parse_decimal(data.get('prior_terms_paid_out', "0")),
            notes=data.get('notes', ""),
            version=int(data.get('version', 1))
        )


@dataclass
class PayoutRecord(StorageRecord):
    """
    Append-only entry for everything paid to or charged against an investment.
    Positive amounts are payouts, negative amounts are penalty charges.
    """
    investment_id: str
    user_id: str
    amount: Decimal
    currency: str
    payout_type: PayoutType
    status: PayoutStatus
    scheduled_date: datetime
    principal_component: Decimal = ZERO
    interest_component: Decimal = ZERO
    processed_date: Optional[datetime] = None
    idempotency_key: Optional[str] = None
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PayoutRecord':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            investment_id=data['investment_id'],
            user_id=data['user_id'],
            amount=Decimal(data['amount']),
            currency=data['currency'],
            payout_type=PayoutType(data['payout_type']),
            status=PayoutStatus(data['status']),
            scheduled_date=parse_datetime(data['scheduled_date']),
            principal_component=Decimal(data.get('principal_component', "0")),
            interest_component=Decimal(data.get('interest_component', "0")),
            processed_date=parse_datetime(data.get('processed_date')),
            idempotency_key=data.get('idempotency_key'),
            description=data.get('description', "")
        )


class InvestmentRepository:
    """Persistence for investments and their payout history"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.investments_table = "investments"
        self.payouts_table = "investment_payouts"

    def add(self, investment: Investment) -> Investment:
        self.storage.save(self.investments_table, investment.id, investment.to_dict())
        return investment

    def get(self, investment_id: str) -> Investment:
        data = self.storage.load(self.investments_table, investment_id)
        if not data:
            raise InvestmentNotFound(investment_id)
        return Investment.from_dict(data)

    def save(self, investment: Investment) -> Investment:
        """
        Persist an updated investment if nobody else changed it since it was loaded.

        The stored version must equal ``investment.version``; the saved copy
        carries ``version + 1``.

        Raises:
            InvestmentNotFound: If the investment no longer exists
            ConcurrencyConflict: If the stored version differs
        """
        with self.storage.atomic():
            current = self.storage.load(self.investments_table, investment.id)
            if not current:
                raise InvestmentNotFound(investment.id)
            stored_version = int(current.get('version', 1))
            if stored_version != investment.version:
                raise ConcurrencyConflict(investment.id, investment.version, stored_version)
            investment.version += 1
            try:
                self.storage.save(self.investments_table, investment.id, investment.to_dict())
            except Exception:
                investment.version -= 1
                raise
        return investment

    def list_investments(self, user_id: Optional[str] = None, status: Optional[InvestmentStatus] = None,
             plan_id: Optional[str] = None) -> List[Investment]:
        """Investments matching the filters, oldest first"""
        filters: Dict[str, Any] = {}
        if user_id:
            filters['user_id'] = user_id
        if status:
            filters['status'] = status.value
        if plan_id:
            filters['plan_id'] = plan_id
        investments = [Investment.from_dict(d) for d in self.storage.find(self.investments_table, filters)]
        investments.sort(key=lambda i: i.created_at)
        return investments

    def add_payout(self, payout: PayoutRecord) -> PayoutRecord:
        self.storage.save(self.payouts_table, payout.id, payout.to_dict())
        return payout

    def find_payout_by_key(self, idempotency_key: str) -> Optional[PayoutRecord]:
        found = self.storage.find(self.payouts_table, {'idempotency_key': idempotency_key})
        return PayoutRecord.from_dict(found[0]) if found else None

    def list_payouts(self, investment_id: Optional[str] = None,
                     user_id: Optional[str] = None,
                     payout_type: Optional[PayoutType] = None) -> List[PayoutRecord]:
        filters: Dict[str, Any] = {}
        if investment_id:
            filters['investment_id'] = investment_id
        if user_id:
            filters['user_id'] = user_id
        if payout_type:
            filters['payout_type'] = payout_type.value
        payouts = [PayoutRecord.from_dict(d) for d in self.storage.find(self.payouts_table, filters)]
        payouts.sort(key=lambda p: (p.scheduled_date, p.created_at))
        return payouts

    def realized_total(self, investment_id: str) -> Decimal:
        """Sum of completed positive payouts, recomputed from the payout history"""
        return sum(
            (p.amount for p in self.list_payouts(investment_id)
             if p.status == PayoutStatus.COMPLETED and p.amount > ZERO
             and p.payout_type != PayoutType.CAPITAL),
            ZERO
        )
