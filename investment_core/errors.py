"""
Investment Engine Errors

Typed error kinds raised by the engine. Every error derives from
InvestmentError, which is a ValueError, so callers that already guard
business operations with ``except ValueError`` keep working.
"""

from typing import Optional


class InvestmentError(ValueError):
    """Base class for all investment engine errors"""


class PlanNotFound(InvestmentError):
    def __init__(self, plan_id: str):
        super().__init__(f"Investment plan {plan_id} not found")
        self.plan_id = plan_id


class PlanInactive(InvestmentError):
    def __init__(self, plan_id: str):
        super().__init__(f"Investment plan {plan_id} is not active")
        self.plan_id = plan_id


class InvestmentNotFound(InvestmentError):
    def __init__(self, investment_id: str):
        super().__init__(f"Investment {investment_id} not found")
        self.investment_id = investment_id


class InvalidStateTransition(InvestmentError):
    """Raised when an operation is not allowed from the investment's current status"""

    def __init__(self, investment_id: str, current: str, operation: str):
        super().__init__(
            f"Cannot {operation} investment {investment_id} in status {current}"
        )
        self.investment_id = investment_id
        self.current = current
        self.operation = operation


class InsufficientPrincipal(InvestmentError):
    """Withdrawal exceeds the margin available above the minimum-balance floor"""


class Unauthorized(InvestmentError):
    """Ownership mismatch between the caller and the investment or account"""


class InvalidInvestmentRequest(InvestmentError):
    """Amount, term or plan parameters outside the allowed range"""


class LedgerError(InvestmentError):
    """Base class for failures reported by the ledger collaborator"""


class InsufficientFunds(LedgerError):
    def __init__(self, account_id: str, message: Optional[str] = None):
        super().__init__(message or f"Insufficient funds in account {account_id}")
        self.account_id = account_id


class TransientLedgerError(LedgerError):
    """A ledger call failed in a way that may succeed on retry"""


class LedgerDebitFailed(LedgerError):
    """Debit of the source account failed; the enclosing transition was rolled back"""

    def __init__(self, account_id: str, reason: str):
        super().__init__(f"Debit of account {account_id} failed: {reason}")
        self.account_id = account_id
        self.reason = reason


class ConcurrencyConflict(InvestmentError):
    """The record was modified by another writer since it was loaded"""

    def __init__(self, entity_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Record {entity_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
