"""
Rate Resolution Module

Resolves the annual rate applied to a placement from three layers:

1. the plan base rate,
2. the first amount bracket in the plan's tier table that contains the amount,
3. the single best time-windowed override for the investor and plan.

Overrides are scoped by optional user and optional plan (None means "all").
Candidates are ranked by specificity (user+plan, user only, plan only,
global), then by rate value (highest first), then by creation time (newest
first). A BONUS override adds to the tier rate, an OVERRIDE replaces it.

Writing an override for a scope first closes out the active override in that
exact (user, plan, rate type) scope, so at most one is active per scope.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import quantize_rate, to_decimal, ZERO
from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType
from .plans import InvestmentPlan, PlanStore
from .errors import PlanInactive, InvalidInvestmentRequest
from .clock import Clock, SystemClock, ensure_utc
from .logging_config import get_logger, log_action

logger = get_logger("investment_core.rates")


class RateType(Enum):
    OVERRIDE = "override"  # replaces the tier rate
    BONUS = "bonus"        # added on top of the tier rate


@dataclass
class RateOverride(StorageRecord):
    """Time-windowed rate exception scoped to a user and/or a plan"""
    rate_type: RateType
    rate: Decimal
    effective_from: datetime
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    effective_to: Optional[datetime] = None
    is_active: bool = True
    notes: str = ""
    created_by: Optional[str] = None

    @property
    def specificity(self) -> int:
        """3 = user+plan, 2 = user only, 1 = plan only, 0 = global"""
        if self.user_id and self.plan_id:
            return 3
        if self.user_id:
            return 2
        if self.plan_id:
            return 1
        return 0

    @property
    def scope_label(self) -> str:
        return {3: "user_plan", 2: "user", 1: "plan", 0: "global"}[self.specificity]

    def is_effective_at(self, moment: datetime) -> bool:
        if not self.is_active or self.effective_from > moment:
            return False
        return self.effective_to is None or moment <= self.effective_to

    def applies_to(self, user_id: Optional[str], plan_id: Optional[str]) -> bool:
        return (self.user_id is None or self.user_id == user_id) and \
               (self.plan_id is None or self.plan_id == plan_id)

    def apply(self, tier_rate: Decimal) -> Decimal:
        if self.rate_type == RateType.BONUS:
            return tier_rate + self.rate
        return self.rate

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RateOverride':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            rate_type=RateType(data['rate_type']),
            rate=Decimal(data['rate']),
            effective_from=parse_datetime(data['effective_from']),
            user_id=data.get('user_id'),
            plan_id=data.get('plan_id'),
            effective_to=parse_datetime(data.get('effective_to')),
            is_active=bool(data.get('is_active', True)),
            notes=data.get('notes', ""),
            created_by=data.get('created_by')
        )


def rank_key(override: RateOverride) -> tuple:
    """Sort key putting the winning override first"""
    return (-override.specificity, -override.rate, -override.created_at.timestamp())


class RateOverrideStore(ABC):
    """Read interface to rate overrides"""

    @abstractmethod
    def query_active(self, user_id: Optional[str], plan_id: Optional[str],
                     now: datetime) -> List[RateOverride]:
        """Overrides whose scope covers (user_id, plan_id) and whose window contains ``now``"""
        pass


class RateOverrideManager(RateOverrideStore):
    """Storage-backed override table with close-out on write"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 clock: Optional[Clock] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock or SystemClock()
        self.table_name = "rate_overrides"

    def set_override(
        self,
        rate_type: RateType,
        rate: Decimal,
        user_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        effective_from: Optional[datetime] = None,
        effective_to: Optional[datetime] = None,
        notes: str = "",
        created_by: Optional[str] = None
    ) -> RateOverride:
        """
        Record a new override, closing out the active one in the same exact scope.

        Args:
            rate_type: OVERRIDE replaces the tier rate, BONUS adds to it
            rate: Annual percent
            user_id: Investor the override is limited to, None for all investors
            plan_id: Plan the override is limited to, None for all plans
            effective_from: Start of the window, defaults to now
            effective_to: Optional end of the window
            notes: Reason shown in admin views
            created_by: Admin user id

        Returns:
            The new RateOverride
        """
        now = self.clock.now()
        effective_from = ensure_utc(effective_from) if effective_from else now
        effective_to = ensure_utc(effective_to) if effective_to else None
        if effective_to is not None and effective_to < effective_from:
            raise InvalidInvestmentRequest("Override window ends before it starts")
        rate = quantize_rate(rate)
        if rate_type == RateType.OVERRIDE and rate < ZERO:
            raise InvalidInvestmentRequest("Override rate must not be negative")

        with self.storage.atomic():
            for existing in self._active_in_scope(user_id, plan_id, rate_type):
                existing.is_active = False
                existing.effective_to = effective_from
                existing.updated_at = now
                self.storage.save(self.table_name, existing.id, existing.to_dict())
                self.audit_trail.log_event(
                    event_type=AuditEventType.RATE_OVERRIDE_CLOSED,
                    entity_type="rate_override",
                    entity_id=existing.id,
                    user_id=created_by,
                    metadata={"closed_at": effective_from, "rate": existing.rate}
                )

            override = RateOverride(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                rate_type=rate_type,
                rate=rate,
                effective_from=effective_from,
                user_id=user_id,
                plan_id=plan_id,
                effective_to=effective_to,
                notes=notes,
                created_by=created_by
            )
            self.storage.save(self.table_name, override.id, override.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.RATE_OVERRIDE_SET,
                entity_type="rate_override",
                entity_id=override.id,
                user_id=created_by,
                metadata={
                    "rate_type": rate_type.value,
                    "rate": rate,
                    "scope": override.scope_label,
                    "target_user_id": user_id,
                    "plan_id": plan_id,
                    "effective_from": effective_from,
                    "effective_to": effective_to
                }
            )

        log_action(logger, "info", f"Rate {rate_type.value} of {rate}% set for {override.scope_label} scope",
                   user_id=created_by, action="set_rate_override", resource=override.id)
        return override

    def bulk_set_overrides(self, entries: List[Dict[str, Any]],
                           created_by: Optional[str] = None) -> List[RateOverride]:
        """
        Apply several overrides in one transaction.

        Each entry holds the keyword arguments of ``set_override``. Either all
        entries are recorded or none are.
        """
        with self.storage.atomic():
            return [self.set_override(created_by=created_by, **entry) for entry in entries]

    def deactivate_override(self, override_id: str, updated_by: Optional[str] = None) -> RateOverride:
        data = self.storage.load(self.table_name, override_id)
        if not data:
            raise InvalidInvestmentRequest(f"Rate override {override_id} not found")
        override = RateOverride.from_dict(data)
        now = self.clock.now()
        with self.storage.atomic():
            override.is_active = False
            override.effective_to = override.effective_to or now
            override.updated_at = now
            self.storage.save(self.table_name, override.id, override.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.RATE_OVERRIDE_CLOSED,
                entity_type="rate_override",
                entity_id=override.id,
                user_id=updated_by,
                metadata={"closed_at": override.effective_to}
            )
        return override

    def query_active(self, user_id: Optional[str], plan_id: Optional[str],
                     now: datetime) -> List[RateOverride]:
        now = ensure_utc(now)
        return [
            o for o in self.list_overrides(active_only=True)
            if o.applies_to(user_id, plan_id) and o.is_effective_at(now)
        ]

    def list_overrides(self, user_id: Optional[str] = None, plan_id: Optional[str] = None,
                       active_only: bool = False) -> List[RateOverride]:
        filters: Dict[str, Any] = {}
        if user_id:
            filters['user_id'] = user_id
        if plan_id:
            filters['plan_id'] = plan_id
        if active_only:
            filters['is_active'] = True
        overrides = [RateOverride.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        overrides.sort(key=lambda o: o.created_at)
        return overrides

    def _active_in_scope(self, user_id: Optional[str], plan_id: Optional[str],
                         rate_type: RateType) -> List[RateOverride]:
        return [
            RateOverride.from_dict(d) for d in self.storage.find(self.table_name, {
                'user_id': user_id,
                'plan_id': plan_id,
                'rate_type': rate_type.value,
                'is_active': True
            })
        ]


@dataclass
class RateResolution:
    """Breakdown of how an effective rate was reached"""
    base_rate: Decimal
    tier_rate: Decimal
    effective_rate: Decimal
    override: Optional[RateOverride] = None

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "base_rate": str(self.base_rate),
            "tier_rate": str(self.tier_rate),
            "effective_rate": str(self.effective_rate),
            "override_id": self.override.id if self.override else None,
            "override_type": self.override.rate_type.value if self.override else None,
            "override_scope": self.override.scope_label if self.override else None,
        }


class RateResolver:
    """
    Pure rate resolution: (plan, amount, user, time) to an effective annual rate
    """

    def __init__(self, plan_store: PlanStore, override_store: RateOverrideStore,
                 clock: Optional[Clock] = None):
        self.plan_store = plan_store
        self.override_store = override_store
        self.clock = clock or SystemClock()

    def resolve_detailed(self, plan_id: str, amount: Decimal, user_id: Optional[str],
                         now: Optional[datetime] = None) -> RateResolution:
        """
        Resolve the effective rate and report which layer produced it

        Raises:
            PlanNotFound: If the plan does not exist
            PlanInactive: If the plan has been deactivated
        """
        plan = self.plan_store.get_plan(plan_id)
        if not plan.is_active:
            raise PlanInactive(plan_id)
        return self.resolve_for_plan(plan, amount, user_id, now)

    def resolve_for_plan(self, plan: InvestmentPlan, amount: Decimal, user_id: Optional[str],
                         now: Optional[datetime] = None) -> RateResolution:
        moment = ensure_utc(now) if now else self.clock.now()
        amount = to_decimal(amount)
        tier_rate = plan.tier_rate_for(amount)

        candidates = self.override_store.query_active(user_id, plan.id, moment)
        if not candidates:
            return RateResolution(plan.base_rate, tier_rate, quantize_rate(tier_rate))

        winner = sorted(candidates, key=rank_key)[0]
        return RateResolution(
            base_rate=plan.base_rate,
            tier_rate=tier_rate,
            effective_rate=quantize_rate(winner.apply(tier_rate)),
            override=winner
        )

    def resolve(self, plan_id: str, amount: Decimal, user_id: Optional[str],
                now: Optional[datetime] = None) -> Decimal:
        return self.resolve_detailed(plan_id, amount, user_id, now).effective_rate
