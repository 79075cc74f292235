"""
Currency and Decimal Math Module

ISO 4217 currency codes with their minor-unit precision, an immutable Money
value type, and the quantization helpers used by every rate and return
calculation. NEVER uses float for monetary values or rates.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext, InvalidOperation
from dataclasses import dataclass
from enum import Enum
from typing import Union

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")
MONTHS_PER_YEAR = Decimal("12")

RATE_PLACES = Decimal("0.0001")     # annual rates in percent, 4 dp
RATIO_PLACES = Decimal("0.000001")  # fractions such as completion


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    JPY = ("JPY", 0)
    CAD = ("CAD", 2)
    CHF = ("CHF", 2)
    ZAR = ("ZAR", 2)
    NGN = ("NGN", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        return Decimal("0.1") ** self.precision

    @classmethod
    def from_code(cls, code: str) -> "Currency":
        """Look up a currency by ISO code, raising ValueError for unknown codes"""
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency code: {code}")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', to_decimal(self.amount))
        rounded = self.amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        return Money(self.amount * to_decimal(multiplier), self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == ZERO

    def is_positive(self) -> bool:
        return self.amount > ZERO

    def is_negative(self) -> bool:
        return self.amount < ZERO

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(ZERO, currency)


def to_decimal(value: Union[Decimal, int, str, float, None]) -> Decimal:
    """
    Convert a value to Decimal without going through binary float.

    Floats are converted via their string representation. None becomes zero.

    Raises:
        ValueError: If the value cannot be interpreted as a number
    """
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def quantize_money(value: Decimal, currency: Currency) -> Decimal:
    """Round to currency precision with ROUND_HALF_UP"""
    return to_decimal(value).quantize(currency.quantum, rounding=ROUND_HALF_UP)


def quantize_rate(value: Decimal) -> Decimal:
    """Round an annual percentage rate to four decimal places"""
    return to_decimal(value).quantize(RATE_PLACES, rounding=ROUND_HALF_UP)


def quantize_ratio(value: Decimal) -> Decimal:
    return to_decimal(value).quantize(RATIO_PLACES, rounding=ROUND_HALF_UP)


def safe_divide(numerator: Decimal, denominator: Decimal) -> Decimal:
    """Divide, returning zero instead of raising when the denominator is zero"""
    denominator = to_decimal(denominator)
    if denominator == ZERO:
        return ZERO
    return to_decimal(numerator) / denominator


def clamp(value: Decimal, lower: Decimal, upper: Decimal) -> Decimal:
    return max(lower, min(upper, value))


def decimal_sqrt(value: Decimal) -> Decimal:
    """Square root in Decimal arithmetic; non-positive input yields zero"""
    value = to_decimal(value)
    if value <= ZERO:
        return ZERO
    return value.sqrt()
