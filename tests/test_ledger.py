"""
Tests for the ledger collaborator and the retry helper
"""

import pytest
from decimal import Decimal
from unittest.mock import Mock

from investment_core.currency import Currency, Money
from investment_core.storage import InMemoryStorage
from investment_core.ledger import StorageLedger, EntryDirection, call_with_retry
from investment_core.errors import InsufficientFunds, TransientLedgerError, LedgerError


def usd(amount):
    return Money(Decimal(amount), Currency.USD)


class TestStorageLedger:
    """Test balances and the entry log"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.ledger = StorageLedger(self.storage)
        self.account = self.ledger.open_account("alice", Currency.USD, Decimal("1000.00"),
                                                name="Checking", account_id="acct-1")

    def test_open_account(self):
        assert self.ledger.get_account_owner("acct-1") == "alice"
        assert self.ledger.get_account_owner("missing") is None
        assert self.ledger.get_balance("acct-1") == usd("1000.00")

    def test_debit_and_credit(self):
        assert self.ledger.debit("acct-1", usd("250.00"), reference="INV-1") == usd("750.00")
        assert self.ledger.credit("acct-1", usd("10.50")) == usd("760.50")

        entries = self.ledger.get_entries("acct-1")
        assert [e.direction for e in entries] == [EntryDirection.DEBIT, EntryDirection.CREDIT]
        assert entries[0].reference == "INV-1"
        assert entries[-1].balance_after == Decimal("760.50")

    def test_insufficient_funds(self):
        with pytest.raises(InsufficientFunds) as exc_info:
            self.ledger.debit("acct-1", usd("1000.01"))
        assert exc_info.value.account_id == "acct-1"
        assert self.ledger.get_balance("acct-1") == usd("1000.00")
        assert self.ledger.get_entries("acct-1") == []

    def test_currency_mismatch(self):
        with pytest.raises(LedgerError, match="denominated in USD"):
            self.ledger.credit("acct-1", Money(Decimal("5"), Currency.EUR))

    def test_unknown_account(self):
        with pytest.raises(LedgerError, match="not found"):
            self.ledger.debit("missing", usd("1.00"))

    def test_debit_rolls_back_with_outer_transaction(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.ledger.debit("acct-1", usd("100.00"))
                raise RuntimeError("state write failed")
        assert self.ledger.get_balance("acct-1") == usd("1000.00")


class TestCallWithRetry:
    """Retries apply to transient failures only"""

    def test_retries_transient_errors(self):
        operation = Mock(side_effect=[TransientLedgerError("timeout"), usd("5.00")])
        assert call_with_retry(operation, attempts=3, backoff_seconds=0) == usd("5.00")
        assert operation.call_count == 2

    def test_gives_up_after_attempts(self):
        operation = Mock(side_effect=TransientLedgerError("timeout"))
        with pytest.raises(TransientLedgerError):
            call_with_retry(operation, attempts=3, backoff_seconds=0)
        assert operation.call_count == 3

    def test_other_errors_are_not_retried(self):
        operation = Mock(side_effect=InsufficientFunds("acct-1"))
        with pytest.raises(InsufficientFunds):
            call_with_retry(operation, attempts=3, backoff_seconds=0)
        assert operation.call_count == 1
