"""
Ledger Collaborator Module

The ledger is the external account-balance authority. The engine only ever
debits a customer account when principal is placed and credits one when money
is paid back out. ``Ledger`` is the interface the engine consumes;
``StorageLedger`` is a reference implementation that keeps balances and an
append-only entry log in the engine's own storage, so a debit made inside an
``atomic()`` block rolls back with the transition that requested it.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, TypeVar, Any
from enum import Enum
import time
import uuid

from .currency import Money, Currency, ZERO
from .storage import StorageInterface, StorageRecord, parse_datetime
from .errors import InsufficientFunds, TransientLedgerError, LedgerError
from .clock import Clock, SystemClock
from .logging_config import get_logger, log_action

logger = get_logger("investment_core.ledger")

T = TypeVar("T")


class EntryDirection(Enum):
    DEBIT = "debit"
    CREDIT = "credit"


@dataclass
class LedgerAccount(StorageRecord):
    """Customer account as seen by the ledger"""
    owner_id: str
    currency: Currency
    balance: Decimal
    name: str = ""

    @property
    def balance_money(self) -> Money:
        return Money(self.balance, self.currency)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerAccount':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            owner_id=data['owner_id'],
            currency=Currency[data['currency']],
            balance=Decimal(data['balance']),
            name=data.get('name', "")
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result


@dataclass
class LedgerEntry(StorageRecord):
    """Append-only record of a single balance movement"""
    account_id: str
    direction: EntryDirection
    amount: Decimal
    currency: str
    balance_after: Decimal
    reference: str = ""
    description: str = ""


class Ledger(ABC):
    """Interface to the account-balance authority"""

    @abstractmethod
    def debit(self, account_id: str, amount: Money, reference: str = "",
              description: str = "") -> Money:
        """
        Remove funds from an account.

        Returns:
            New account balance

        Raises:
            InsufficientFunds: If the account cannot cover the amount
            TransientLedgerError: If the call may succeed on retry
        """
        pass

    @abstractmethod
    def credit(self, account_id: str, amount: Money, reference: str = "",
               description: str = "") -> Money:
        """Add funds to an account and return the new balance"""
        pass

    @abstractmethod
    def get_account_owner(self, account_id: str) -> Optional[str]:
        """Owner of the account, or None when the account does not exist"""
        pass


def call_with_retry(operation: Callable[[], T], attempts: int = 3,
                    backoff_seconds: float = 0.2, description: str = "ledger call") -> T:
    """
    Run a ledger operation, retrying only on TransientLedgerError.

    Backoff doubles after every failed attempt. Any other error propagates
    immediately; the last transient error propagates once attempts run out.
    """
    attempts = max(1, attempts)
    delay = backoff_seconds
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except TransientLedgerError as e:
            if attempt == attempts:
                raise
            log_action(logger, "warning", f"Transient failure in {description}, retrying",
                       action="ledger_retry",
                       extra={"attempt": attempt, "max_attempts": attempts, "error": str(e)})
            if delay > 0:
                time.sleep(delay)
            delay *= 2
    raise AssertionError("unreachable")


class StorageLedger(Ledger):
    """Ledger implementation backed by the engine's StorageInterface"""

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.accounts_table = "ledger_accounts"
        self.entries_table = "ledger_entries"

    def open_account(self, owner_id: str, currency: Currency,
                     opening_balance: Decimal = ZERO, name: str = "",
                     account_id: Optional[str] = None) -> LedgerAccount:
        now = self.clock.now()
        account = LedgerAccount(
            id=account_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            currency=currency,
            balance=Money(opening_balance, currency).amount,
            name=name
        )
        self.storage.save(self.accounts_table, account.id, account.to_dict())
        return account

    def get_account(self, account_id: str) -> LedgerAccount:
        data = self.storage.load(self.accounts_table, account_id)
        if not data:
            raise LedgerError(f"Ledger account {account_id} not found")
        return LedgerAccount.from_dict(data)

    def get_balance(self, account_id: str) -> Money:
        return self.get_account(account_id).balance_money

    def get_account_owner(self, account_id: str) -> Optional[str]:
        data = self.storage.load(self.accounts_table, account_id)
        return data['owner_id'] if data else None

    def get_entries(self, account_id: str) -> List[LedgerEntry]:
        entries = []
        for data in self.storage.find(self.entries_table, {'account_id': account_id}):
            entries.append(LedgerEntry(
                id=data['id'],
                created_at=parse_datetime(data['created_at']),
                updated_at=parse_datetime(data['updated_at']),
                account_id=data['account_id'],
                direction=EntryDirection(data['direction']),
                amount=Decimal(data['amount']),
                currency=data['currency'],
                balance_after=Decimal(data['balance_after']),
                reference=data.get('reference', ""),
                description=data.get('description', "")
            ))
        entries.sort(key=lambda e: e.created_at)
        return entries

    def debit(self, account_id: str, amount: Money, reference: str = "",
              description: str = "") -> Money:
        with self.storage.atomic():
            account = self.get_account(account_id)
            self._check_currency(account, amount)
            if account.balance < amount.amount:
                raise InsufficientFunds(
                    account_id,
                    f"Insufficient funds in account {account_id}: balance "
                    f"{account.balance_money.to_string()}, requested {amount.to_string()}"
                )
            return self._post(account, EntryDirection.DEBIT, amount, reference, description)

    def credit(self, account_id: str, amount: Money, reference: str = "",
               description: str = "") -> Money:
        with self.storage.atomic():
            account = self.get_account(account_id)
            self._check_currency(account, amount)
            return self._post(account, EntryDirection.CREDIT, amount, reference, description)

    def _check_currency(self, account: LedgerAccount, amount: Money) -> None:
        if amount.currency != account.currency:
            raise LedgerError(
                f"Account {account.id} is denominated in {account.currency.code}, "
                f"not {amount.currency.code}"
            )
        if amount.is_negative():
            raise LedgerError("Ledger amounts must not be negative")

    def _post(self, account: LedgerAccount, direction: EntryDirection, amount: Money,
              reference: str, description: str) -> Money:
        now = self.clock.now()
        if direction == EntryDirection.DEBIT:
            account.balance = account.balance - amount.amount
        else:
            account.balance = account.balance + amount.amount
        account.updated_at = now
        self.storage.save(self.accounts_table, account.id, account.to_dict())

        entry = LedgerEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account.id,
            direction=direction,
            amount=amount.amount,
            currency=amount.currency.code,
            balance_after=account.balance,
            reference=reference,
            description=description
        )
        self.storage.save(self.entries_table, entry.id, entry.to_dict())
        return account.balance_money
