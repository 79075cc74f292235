"""
Investment Lifecycle Module

Owns the investment state machine and every transition that moves money.

    pending --approve--> active --withdraw (full)--> withdrawn
       |                   |  \\--mature-----------> matured
       \\--reject--> rejected  \\--renew (auto_renew)--> active (new term)

Money-moving transitions (create, approve, withdraw, payout, maturity) write
the status change, the payout history and the audit entry inside one storage
transaction and call the ledger last, so a ledger failure rolls everything
back. Transitions on the same investment are serialized by an in-process lock
and guarded by the record's optimistic version token. Notifications are sent
after commit and never affect the outcome.
"""

import threading
from contextlib import contextmanager
from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional
import uuid

from .currency import ZERO, Money, quantize_money, quantize_rate, to_decimal
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .plans import InvestmentPlan, PlanStore, PayoutFrequency
from .rates import RateResolver, RateOverrideManager, RateType
from .investments import (
    Investment, InvestmentStatus, InvestmentRepository,
    PayoutRecord, PayoutType, PayoutStatus
)
from .payouts import PayoutScheduler, add_months, periodic_interest, simple_projected_return
from .penalties import WithdrawalPenaltyCalculator, PenaltyQuote
from .ledger import Ledger, call_with_retry
from .notifications import NotificationSink, NotificationCategory, notify_safely
from .clock import Clock, SystemClock, ensure_utc
from .config import EngineConfig, get_config
from .errors import (
    PlanNotFound, PlanInactive, InvalidStateTransition, InsufficientPrincipal, Unauthorized,
    InvalidInvestmentRequest, LedgerDebitFailed, LedgerError
)
from .logging_config import get_logger, log_action

logger = get_logger("investment_core.lifecycle")


@dataclass
class WithdrawalResult:
    investment_id: str
    withdrawn_amount: Decimal
    penalty_amount: Decimal
    lost_interest: Decimal
    total_penalty: Decimal
    net_amount: Decimal
    remaining_balance: Decimal
    status: InvestmentStatus
    full_withdrawal: bool
    requires_review: bool
    message: str


class InvestmentLifecycleManager:
    """
    State machine and money movement for investments
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        repository: InvestmentRepository,
        plan_store: PlanStore,
        rate_resolver: RateResolver,
        ledger: Ledger,
        scheduler: PayoutScheduler,
        penalty_calculator: WithdrawalPenaltyCalculator,
        override_manager: Optional[RateOverrideManager] = None,
        notifier: Optional[NotificationSink] = None,
        clock: Optional[Clock] = None,
        config: Optional[EngineConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.repository = repository
        self.plan_store = plan_store
        self.rate_resolver = rate_resolver
        self.ledger = ledger
        self.scheduler = scheduler
        self.penalty_calculator = penalty_calculator
        self.override_manager = override_manager
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.config = config or get_config()

        # investment id -> [lock, number of callers holding or waiting on it]
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def investment_lock(self, investment_id: str):
        """
        Serialize transitions on one investment within this process

        An entry exists only while some caller holds or waits on its lock.
        """
        with self._locks_guard:
            entry = self._locks.setdefault(investment_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[investment_id]

    # ------------------------------------------------------------------
    # Create / approve / reject
    # ------------------------------------------------------------------

    def create_investment(
        self,
        user_id: str,
        plan_id: str,
        amount: Decimal,
        term_months: int,
        source_account_id: str,
        payout_account_id: Optional[str] = None,
        payout_frequency: Optional[PayoutFrequency] = None,
        auto_renew: bool = False,
        minimum_balance: Optional[Decimal] = None,
        notes: str = ""
    ) -> Investment:
        """
        Place principal into a plan

        Plans that require approval create a pending investment and move no
        money. Otherwise the investment is active immediately and the source
        account is debited in the same transaction as the insert.

        Args:
            user_id: Investor
            plan_id: Plan to invest in
            amount: Principal
            term_months: Term length
            source_account_id: Account debited for the principal
            payout_account_id: Account credited with payouts, defaults to the source account
            payout_frequency: Defaults to the plan's default frequency
            auto_renew: Roll into a new term at maturity
            minimum_balance: Principal floor while active, defaults to the full principal
            notes: Free text

        Returns:
            The created Investment

        Raises:
            PlanNotFound, PlanInactive: If the plan cannot accept placements
            InvalidInvestmentRequest: If amount or term is outside the plan limits
            Unauthorized: If an account does not belong to the investor
            LedgerDebitFailed: If the principal could not be debited; nothing is persisted
        """
        now = self.clock.now()
        plan = self.plan_store.get_plan(plan_id)
        if not plan.is_active:
            raise PlanInactive(plan_id)

        amount = quantize_money(amount, plan.currency)
        self._validate_placement(plan, amount, term_months)
        payout_account_id = payout_account_id or source_account_id
        self._check_account_owner(source_account_id, user_id)
        if payout_account_id != source_account_id:
            self._check_account_owner(payout_account_id, user_id)

        floor = amount if minimum_balance is None else quantize_money(minimum_balance, plan.currency)
        if floor < ZERO or floor > amount:
            raise InvalidInvestmentRequest("Minimum balance must be between zero and the principal")

        resolution = self.rate_resolver.resolve_for_plan(plan, amount, user_id, now)
        status = InvestmentStatus.PENDING if plan.requires_approval else InvestmentStatus.ACTIVE

        investment = Investment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            plan_id=plan.id,
            amount=amount,
            currency=plan.currency,
            base_rate=plan.base_rate,
            effective_rate=resolution.effective_rate,
            term_months=term_months,
            payout_frequency=payout_frequency or plan.default_payout_frequency,
            status=status,
            start_date=now,
            maturity_date=add_months(now, term_months),
            minimum_balance=floor,
            projected_return=simple_projected_return(amount, resolution.effective_rate,
                                                     term_months, plan.currency),
            source_account_id=source_account_id,
            payout_account_id=payout_account_id,
            auto_renew=auto_renew,
            notes=notes
        )

        with self.storage.atomic():
            self.repository.add(investment)
            self.audit_trail.log_event(
                event_type=AuditEventType.INVESTMENT_CREATED,
                entity_type="investment",
                entity_id=investment.id,
                user_id=user_id,
                metadata={
                    "plan_id": plan.id,
                    "amount": investment.principal.to_string(),
                    "term_months": term_months,
                    "status": status.value,
                    "payout_frequency": investment.payout_frequency.value,
                    "projected_return": investment.projected_return,
                    "rate_resolution": resolution.to_metadata()
                }
            )
            if status == InvestmentStatus.ACTIVE:
                self._debit(source_account_id, investment.principal,
                            reference=f"INV-{investment.id[:8]}",
                            description=f"Investment in {plan.name}")

        log_action(logger, "info", f"Investment {investment.id} created as {status.value}",
                   user_id=user_id, action="create_investment", resource=investment.id,
                   extra={"amount": str(amount), "rate": str(investment.effective_rate)})
        if status == InvestmentStatus.PENDING:
            self._notify(investment, "Investment submitted",
                         f"Your investment of {investment.principal.to_string()} in {plan.name} "
                         f"is awaiting approval.", NotificationCategory.INVESTMENT)
        else:
            self._notify(investment, "Investment active",
                         f"Your investment of {investment.principal.to_string()} in {plan.name} "
                         f"is active at {investment.effective_rate}% per year.",
                         NotificationCategory.INVESTMENT)
        return investment

    def approve_investment(
        self,
        investment_id: str,
        approved_by: str,
        disbursement_account_id: Optional[str] = None,
        rate_override: Optional[Decimal] = None,
        notes: Optional[str] = None
    ) -> Investment:
        """
        Approve a pending investment and debit the principal

        The term is re-anchored to the approval time. A supplied rate override
        becomes the effective rate and is audited as an explicit rate change.

        Raises:
            InvalidStateTransition: If the investment is not pending
            Unauthorized: If the disbursement account does not belong to the investor
            LedgerDebitFailed: If the debit failed; the investment stays pending
        """
        with self.investment_lock(investment_id):
            investment = self.repository.get(investment_id)
            if investment.status != InvestmentStatus.PENDING:
                raise InvalidStateTransition(investment_id, investment.status.value, "approve")

            account_id = disbursement_account_id or investment.source_account_id
            self._check_account_owner(account_id, investment.user_id)
            now = self.clock.now()
            old_rate = investment.effective_rate

            if rate_override is not None:
                investment.effective_rate = self._valid_rate(rate_override)
            investment.status = InvestmentStatus.ACTIVE
            investment.source_account_id = account_id
            investment.start_date = now
            investment.maturity_date = add_months(now, investment.term_months)
            investment.projected_return = simple_projected_return(
                investment.amount, investment.effective_rate,
                investment.term_months, investment.currency
            )
            investment.approved_by = approved_by
            investment.approved_at = now
            investment.updated_at = now
            if notes:
                investment.notes = notes

            with self.storage.atomic():
                self.repository.save(investment)
                if rate_override is not None and investment.effective_rate != old_rate:
                    self._audit_rate_change(investment, old_rate, approved_by, "Rate set at approval")
                self.audit_trail.log_event(
                    event_type=AuditEventType.INVESTMENT_APPROVED,
                    entity_type="investment",
                    entity_id=investment.id,
                    user_id=approved_by,
                    metadata={
                        "disbursement_account_id": account_id,
                        "effective_rate": investment.effective_rate,
                        "maturity_date": investment.maturity_date
                    }
                )
                self._debit(account_id, investment.principal,
                            reference=f"INV-{investment.id[:8]}",
                            description="Approved investment")

        log_action(logger, "info", f"Investment {investment.id} approved",
                   user_id=approved_by, action="approve_investment", resource=investment.id)
        self._notify(investment, "Investment approved",
                     f"Your investment of {investment.principal.to_string()} has been approved "
                     f"at {investment.effective_rate}% per year.", NotificationCategory.INVESTMENT)
        return investment

    def reject_investment(self, investment_id: str, rejected_by: str, reason: str) -> Investment:
        """
        Reject a pending investment (terminal, no funds movement)

        Raises:
            InvalidStateTransition: If the investment is not pending
        """
        with self.investment_lock(investment_id):
            investment = self.repository.get(investment_id)
            if investment.status != InvestmentStatus.PENDING:
                raise InvalidStateTransition(investment_id, investment.status.value, "reject")

            now = self.clock.now()
            investment.status = InvestmentStatus.REJECTED
            investment.rejected_by = rejected_by
            investment.rejected_at = now
            investment.rejection_reason = reason
            investment.updated_at = now

            with self.storage.atomic():
                self.repository.save(investment)
                self.audit_trail.log_event(
                    event_type=AuditEventType.INVESTMENT_REJECTED,
                    entity_type="investment",
                    entity_id=investment.id,
                    user_id=rejected_by,
                    metadata={"reason": reason}
                )

        log_action(logger, "info", f"Investment {investment.id} rejected",
                   user_id=rejected_by, action="reject_investment", resource=investment.id)
        self._notify(investment, "Investment rejected",
                     f"Your investment request was rejected: {reason}",
                     NotificationCategory.INVESTMENT)
        return investment

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    def withdraw(
        self,
        investment_id: str,
        user_id: str,
        amount: Optional[Decimal] = None,
        destination_account_id: Optional[str] = None
    ) -> WithdrawalResult:
        """
        Withdraw principal from an active investment

        ``amount=None`` or the full principal closes the investment. A partial
        amount must fit within the margin above the minimum balance; when the
        remainder would sit at or below that floor the withdrawal becomes a
        full one. The penalty is charged as a negative payout record and the
        net amount is credited to the destination account.

        Raises:
            Unauthorized: If the investment or destination account is not the caller's
            InvalidStateTransition: If the investment is not active
            InsufficientPrincipal: If a partial amount exceeds the available margin
        """
        with self.investment_lock(investment_id):
            investment = self.repository.get(investment_id)
            if investment.user_id != user_id:
                raise Unauthorized(f"Investment {investment_id} does not belong to user {user_id}")
            if investment.status != InvestmentStatus.ACTIVE:
                raise InvalidStateTransition(investment_id, investment.status.value, "withdraw")

            destination = destination_account_id or investment.payout_account_id
            self._check_account_owner(destination, user_id)

            principal = investment.amount
            requested = principal if amount is None else quantize_money(amount, investment.currency)
            if requested <= ZERO:
                raise InvalidInvestmentRequest("Withdrawal amount must be positive")
            if requested > principal:
                raise InsufficientPrincipal(
                    f"Requested {requested} exceeds principal {principal} of investment {investment_id}"
                )

            full = requested == principal
            if not full:
                available = principal - investment.minimum_balance
                if requested > available:
                    raise InsufficientPrincipal(
                        f"Requested {requested} exceeds available {available} above the minimum "
                        f"balance of investment {investment_id}"
                    )
                if principal - requested <= investment.minimum_balance:
                    full = True
            gross = principal if full else requested

            now = self.clock.now()
            plan = self._plan_or_none(investment.plan_id)
            quote = self.penalty_calculator.calculate(investment, plan, gross, now)

            investment.amount = principal - gross
            investment.updated_at = now
            if full:
                investment.status = InvestmentStatus.WITHDRAWN
                investment.withdrawn_at = now
            else:
                investment.projected_return = simple_projected_return(
                    investment.amount, investment.effective_rate,
                    investment.term_months, investment.currency
                ) + investment.term_paid_out

            with self.storage.atomic():
                self.repository.save(investment)
                if quote.total_penalty > ZERO:
                    self.repository.add_payout(self._payout_record(
                        investment, -quote.total_penalty, PayoutType.PENALTY, now,
                        principal_component=-quote.penalty_amount,
                        interest_component=-quote.lost_interest,
                        description="Early withdrawal penalty"
                    ))
                self.audit_trail.log_event(
                    event_type=(AuditEventType.INVESTMENT_WITHDRAWN if full
                                else AuditEventType.INVESTMENT_PARTIAL_WITHDRAWAL),
                    entity_type="investment",
                    entity_id=investment.id,
                    user_id=user_id,
                    metadata={
                        "gross_amount": gross,
                        "destination_account_id": destination,
                        "remaining_principal": investment.amount,
                        "penalty": quote.to_dict()
                    }
                )
                if quote.net_amount > ZERO:
                    self._credit(destination, investment.money(quote.net_amount),
                                 reference=f"WDR-{investment.id[:8]}",
                                 description="Investment withdrawal")

        if quote.requires_review:
            log_action(logger, "warning",
                       f"Withdrawal penalty exceeded amount on investment {investment.id}; flagged for review",
                       user_id=user_id, action="withdrawal_review", resource=investment.id,
                       extra=quote.to_dict())
        log_action(logger, "info", f"Withdrawal of {gross} from investment {investment.id}",
                   user_id=user_id, action="withdraw", resource=investment.id,
                   extra={"full": full, "net": str(quote.net_amount)})

        message = self._withdrawal_message(investment, quote, full)
        self._notify(investment, "Withdrawal processed", message, NotificationCategory.WITHDRAWAL)
        return WithdrawalResult(
            investment_id=investment.id,
            withdrawn_amount=gross,
            penalty_amount=quote.penalty_amount,
            lost_interest=quote.lost_interest,
            total_penalty=quote.total_penalty,
            net_amount=quote.net_amount,
            remaining_balance=investment.amount,
            status=investment.status,
            full_withdrawal=full,
            requires_review=quote.requires_review,
            message=message
        )

    def quote_withdrawal(self, investment_id: str, amount: Optional[Decimal] = None,
                         now: Optional[datetime] = None) -> PenaltyQuote:
        """Price a withdrawal without performing it"""
        investment = self.repository.get(investment_id)
        gross = investment.amount if amount is None else quantize_money(amount, investment.currency)
        return self.penalty_calculator.calculate(
            investment, self._plan_or_none(investment.plan_id), gross,
            ensure_utc(now) if now else self.clock.now()
        )

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    def process_payout(self, investment_id: str, due_date: Optional[datetime] = None,
                       now: Optional[datetime] = None) -> Optional[PayoutRecord]:
        """
        Pay the next due payout of an active investment

        Each due period is paid at most once: the payout carries the key
        ``"{investment_id}:{due date}"`` and a repeat call for an already-paid
        period returns the existing record without moving money.

        Args:
            investment_id: Investment to pay
            due_date: Period to pay; defaults to the next due date
            now: Processing time; defaults to the clock

        Returns:
            The payout record, or None when nothing is due yet

        Raises:
            InvalidStateTransition: If the investment is not active
            InvalidInvestmentRequest: If ``due_date`` is not the next unpaid period
        """
        now = ensure_utc(now) if now else self.clock.now()
        with self.investment_lock(investment_id):
            investment = self.repository.get(investment_id)

            if due_date is not None:
                existing = self.repository.find_payout_by_key(self.payout_key(investment_id, due_date))
                if existing:
                    return existing

            if investment.status != InvestmentStatus.ACTIVE:
                raise InvalidStateTransition(investment_id, investment.status.value, "pay out")

            next_due = self.scheduler.next_payout_date(investment)
            if next_due is None or next_due > now:
                return None
            if due_date is not None and ensure_utc(due_date).date() != next_due.date():
                raise InvalidInvestmentRequest(
                    f"Payout for {due_date.date()} is not the next due period ({next_due.date()})"
                )

            key = self.payout_key(investment_id, next_due)
            existing = self.repository.find_payout_by_key(key)
            if existing:
                return existing

            amount = self.scheduler.payout_amount(investment)
            payout = self._payout_record(
                investment, amount, PayoutType.INTEREST, next_due,
                interest_component=amount, processed_date=now, idempotency_key=key,
                description=f"{investment.payout_frequency.value} interest payout"
            )
            investment.last_payout_date = next_due
            investment.total_paid_out += amount
            investment.updated_at = now

            with self.storage.atomic():
                self.repository.add_payout(payout)
                self.repository.save(investment)
                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYOUT_PROCESSED,
                    entity_type="investment",
                    entity_id=investment.id,
                    metadata={
                        "payout_id": payout.id,
                        "amount": amount,
                        "due_date": next_due,
                        "total_paid_out": investment.total_paid_out
                    }
                )
                if amount > ZERO:
                    self._credit(investment.payout_account_id, investment.money(amount),
                                 reference=key, description="Investment payout")

        log_action(logger, "info", f"Payout of {amount} for investment {investment.id}",
                   user_id=investment.user_id, action="process_payout", resource=investment.id,
                   extra={"due_date": next_due.date().isoformat(), "idempotency_key": key})
        self._notify(investment, "Payout received",
                     f"{investment.money(amount).to_string()} was paid from your investment.",
                     NotificationCategory.PAYOUT)
        return payout

    def process_due_payouts(self, investment_id: str,
                            now: Optional[datetime] = None) -> List[PayoutRecord]:
        """
        Pay every period due up to ``now`` and settle maturity when the term is over

        Returns:
            Payout records created by this call, including the capital return at maturity
        """
        now = ensure_utc(now) if now else self.clock.now()
        paid = []
        while True:
            payout = self.process_payout(investment_id, now=now)
            if payout is None or (paid and payout.id == paid[-1].id):
                break
            paid.append(payout)

        investment = self.repository.get(investment_id)
        if investment.status == InvestmentStatus.ACTIVE and self.scheduler.is_term_complete(investment, now):
            paid.extend(self.mature_investment(investment_id, now=now))
        return paid

    def manual_payout(self, investment_id: str, amount: Decimal, paid_by: str,
                      description: str = "Bonus payout") -> PayoutRecord:
        """
        Admin bonus payout outside the schedule

        Raises:
            InvalidStateTransition: If the investment is not active
            InvalidInvestmentRequest: If the amount is not positive
        """
        with self.investment_lock(investment_id):
            investment = self.repository.get(investment_id)
            if investment.status != InvestmentStatus.ACTIVE:
                raise InvalidStateTransition(investment_id, investment.status.value, "pay a bonus on")
            amount = quantize_money(amount, investment.currency)
            if amount <= ZERO:
                raise InvalidInvestmentRequest("Manual payout amount must be positive")

            now = self.clock.now()
            payout = self._payout_record(investment, amount, PayoutType.BONUS, now,
                                         interest_component=amount, processed_date=now,
                                         description=description)
            investment.total_paid_out += amount
            investment.updated_at = now

            with self.storage.atomic():
                self.repository.add_payout(payout)
                self.repository.save(investment)
                self.audit_trail.log_event(
                    event_type=AuditEventType.MANUAL_PAYOUT,
                    entity_type="investment",
                    entity_id=investment.id,
                    user_id=paid_by,
                    metadata={"payout_id": payout.id, "amount": amount, "description": description}
                )
                self._credit(investment.payout_account_id, investment.money(amount),
                             reference=f"BONUS-{payout.id[:8]}", description=description)

        log_action(logger, "info", f"Manual payout of {amount} for investment {investment.id}",
                   user_id=paid_by, action="manual_payout", resource=investment.id)
        self._notify(investment, "Bonus payout",
                     f"{investment.money(amount).to_string()} bonus was paid to your account.",
                     NotificationCategory.PAYOUT)
        return payout

    # ------------------------------------------------------------------
    # Rate changes
    # ------------------------------------------------------------------

    def change_effective_rate(self, investment_id: str, new_rate: Decimal, changed_by: str,
                              reason: str, record_override: bool = False) -> Investment:
        """
        Explicit, audited change of an investment's effective rate

        The projected return is recomputed for the current term. With
        ``record_override`` an OVERRIDE is also stored for the investor and
        plan so future placements resolve to the same rate.

        Raises:
            InvalidStateTransition: If the investment is in a terminal state
        """
        with self.investment_lock(investment_id):
            investment = self.repository.get(investment_id)
            if investment.status.is_terminal:
                raise InvalidStateTransition(investment_id, investment.status.value, "change the rate of")

            old_rate = investment.effective_rate
            investment.effective_rate = self._valid_rate(new_rate)
            investment.projected_return = simple_projected_return(
                investment.amount, investment.effective_rate,
                investment.term_months, investment.currency
            ) + investment.term_paid_out
            investment.updated_at = self.clock.now()

            with self.storage.atomic():
                self.repository.save(investment)
                self._audit_rate_change(investment, old_rate, changed_by, reason)
                if record_override:
                    if self.override_manager is None:
                        raise InvalidInvestmentRequest("No rate override store configured")
                    self.override_manager.set_override(
                        RateType.OVERRIDE, investment.effective_rate,
                        user_id=investment.user_id, plan_id=investment.plan_id,
                        notes=reason, created_by=changed_by
                    )

        log_action(logger, "info",
                   f"Effective rate of investment {investment.id} changed from {old_rate} to {investment.effective_rate}",
                   user_id=changed_by, action="change_effective_rate", resource=investment.id)
        return investment

    # ------------------------------------------------------------------
    # Maturity
    # ------------------------------------------------------------------

    def mature_investment(self, investment_id: str,
                          now: Optional[datetime] = None) -> List[PayoutRecord]:
        """
        Settle an investment whose term is complete

        Any stub interest left by a term that is not a whole number of payout
        periods is paid first. With ``auto_renew`` the investment rolls into a
        new term at the same effective rate; otherwise the principal is
        returned as a capital payout and the investment becomes matured.

        Raises:
            InvalidStateTransition: If the investment is not active or its term is not complete
        """
        now = ensure_utc(now) if now else self.clock.now()
        with self.investment_lock(investment_id):
            investment = self.repository.get(investment_id)
            if investment.status != InvestmentStatus.ACTIVE or \
                    not self.scheduler.is_term_complete(investment, now):
                raise InvalidStateTransition(investment_id, investment.status.value, "mature")

            maturity = investment.maturity_date
            records = []
            stub_months = self.scheduler.unpaid_stub_months(investment)
            if stub_months:
                stub = periodic_interest(investment.amount, investment.effective_rate,
                                         stub_months, investment.currency)
                if stub > ZERO:
                    records.append(self._payout_record(
                        investment, stub, PayoutType.INTEREST, maturity,
                        interest_component=stub, processed_date=now,
                        idempotency_key=f"{self.payout_key(investment.id, maturity)}:stub",
                        description=f"Interest for final {stub_months} month(s)"
                    ))
                    investment.total_paid_out += stub
                    investment.last_payout_date = maturity

            renewing = investment.auto_renew
            if renewing:
                investment.renewal_count += 1
                investment.prior_terms_paid_out = investment.total_paid_out
                investment.start_date = maturity
                investment.maturity_date = add_months(maturity, investment.term_months)
                investment.last_payout_date = None
                investment.projected_return = simple_projected_return(
                    investment.amount, investment.effective_rate,
                    investment.term_months, investment.currency
                )
            else:
                records.append(self._payout_record(
                    investment, investment.amount, PayoutType.CAPITAL, maturity,
                    principal_component=investment.amount, processed_date=now,
                    idempotency_key=f"{self.payout_key(investment.id, maturity)}:capital",
                    description="Principal returned at maturity"
                ))
                investment.status = InvestmentStatus.MATURED
                investment.matured_at = now
            investment.updated_at = now

            credit_total = sum((r.amount for r in records), ZERO)
            with self.storage.atomic():
                for record in records:
                    self.repository.add_payout(record)
                self.repository.save(investment)
                self.audit_trail.log_event(
                    event_type=(AuditEventType.INVESTMENT_RENEWED if renewing
                                else AuditEventType.INVESTMENT_MATURED),
                    entity_type="investment",
                    entity_id=investment.id,
                    metadata={
                        "maturity_date": maturity,
                        "stub_interest_months": stub_months,
                        "credited": credit_total,
                        "effective_rate": investment.effective_rate,
                        "new_maturity_date": investment.maturity_date if renewing else None,
                        "renewal_count": investment.renewal_count
                    }
                )
                if credit_total > ZERO:
                    self._credit(investment.payout_account_id, investment.money(credit_total),
                                 reference=f"MAT-{investment.id[:8]}",
                                 description="Investment maturity settlement")

        log_action(logger, "info",
                   f"Investment {investment.id} {'renewed' if renewing else 'matured'}",
                   user_id=investment.user_id, action="mature_investment", resource=investment.id,
                   extra={"credited": str(credit_total)})
        if renewing:
            self._notify(investment, "Investment renewed",
                         f"Your investment has rolled into a new {investment.term_months}-month term "
                         f"at {investment.effective_rate}%.", NotificationCategory.MATURITY)
        else:
            self._notify(investment, "Investment matured",
                         f"Your investment matured and {investment.money(credit_total).to_string()} "
                         f"was credited to your account.", NotificationCategory.MATURITY)
        return records

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def payout_key(investment_id: str, due_date: datetime) -> str:
        return f"{investment_id}:{ensure_utc(due_date).date().isoformat()}"

    def _validate_placement(self, plan: InvestmentPlan, amount: Decimal, term_months: int) -> None:
        if amount < plan.min_amount or amount > plan.max_amount:
            raise InvalidInvestmentRequest(
                f"Amount {amount} is outside the plan range {plan.min_amount}-{plan.max_amount}"
            )
        if term_months < plan.min_term_months or term_months > plan.max_term_months:
            raise InvalidInvestmentRequest(
                f"Term of {term_months} months is outside the plan range "
                f"{plan.min_term_months}-{plan.max_term_months}"
            )

    def _valid_rate(self, rate: Decimal) -> Decimal:
        rate = quantize_rate(to_decimal(rate))
        if rate < ZERO:
            raise InvalidInvestmentRequest("Rate must not be negative")
        return rate

    def _check_account_owner(self, account_id: str, user_id: str) -> None:
        owner = self.ledger.get_account_owner(account_id)
        if owner != user_id:
            raise Unauthorized(f"Account {account_id} does not belong to user {user_id}")

    def _plan_or_none(self, plan_id: str) -> Optional[InvestmentPlan]:
        try:
            return self.plan_store.get_plan(plan_id)
        except PlanNotFound as e:
            log_action(logger, "warning", f"Plan {plan_id} unavailable for penalty pricing: {e}",
                       action="plan_lookup", resource=plan_id)
            return None

    def _debit(self, account_id: str, amount: Money, reference: str, description: str) -> None:
        try:
            call_with_retry(
                lambda: self.ledger.debit(account_id, amount, reference, description),
                attempts=self.config.ledger_retry_attempts,
                backoff_seconds=self.config.ledger_retry_backoff_seconds,
                description=f"debit of {account_id}"
            )
        except LedgerError as e:
            raise LedgerDebitFailed(account_id, str(e)) from e

    def _credit(self, account_id: str, amount: Money, reference: str, description: str) -> None:
        call_with_retry(
            lambda: self.ledger.credit(account_id, amount, reference, description),
            attempts=self.config.ledger_retry_attempts,
            backoff_seconds=self.config.ledger_retry_backoff_seconds,
            description=f"credit of {account_id}"
        )

    def _payout_record(self, investment: Investment, amount: Decimal, payout_type: PayoutType,
                       scheduled_date: datetime, principal_component: Decimal = ZERO,
                       interest_component: Decimal = ZERO,
                       processed_date: Optional[datetime] = None,
                       idempotency_key: Optional[str] = None,
                       description: str = "") -> PayoutRecord:
        now = self.clock.now()
        return PayoutRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            investment_id=investment.id,
            user_id=investment.user_id,
            amount=amount,
            currency=investment.currency.code,
            payout_type=payout_type,
            status=PayoutStatus.COMPLETED,
            scheduled_date=scheduled_date,
            principal_component=principal_component,
            interest_component=interest_component,
            processed_date=processed_date or now,
            idempotency_key=idempotency_key,
            description=description
        )

    def _audit_rate_change(self, investment: Investment, old_rate: Decimal,
                           changed_by: str, reason: str) -> None:
        self.audit_trail.log_event(
            event_type=AuditEventType.EFFECTIVE_RATE_CHANGED,
            entity_type="investment",
            entity_id=investment.id,
            user_id=changed_by,
            metadata={
                "old_rate": old_rate,
                "new_rate": investment.effective_rate,
                "reason": reason,
                "projected_return": investment.projected_return
            }
        )

    def _withdrawal_message(self, investment: Investment, quote: PenaltyQuote, full: bool) -> str:
        net = investment.money(quote.net_amount).to_string()
        if full:
            message = f"Investment closed. {net} was credited after a penalty of " \
                      f"{investment.money(quote.total_penalty).to_string()}."
        else:
            message = f"{net} was credited. Remaining principal " \
                      f"{investment.principal.to_string()}."
        if quote.requires_review:
            message += " The penalty exceeded the withdrawn amount and is under review."
        return message

    def _notify(self, investment: Investment, title: str, message: str,
                category: NotificationCategory) -> None:
        notify_safely(self.notifier, investment.user_id, title, message, category,
                      {"investment_id": investment.id, "status": investment.status.value})
