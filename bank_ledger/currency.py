"""
Currency and Money Module

Handles ISO 4217 currency codes and exact Decimal amounts for all balance
arithmetic. NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from typing import Any, Optional
from enum import Enum

from .errors import InvalidAmountError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable unit, e.g. 0.01"""
        return Decimal('0.1') ** self.precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        # Round to currency precision
        rounded = self.amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def __add__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot add {self.currency.code} and {other.currency.code}")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot subtract {other.currency.code} from {self.currency.code}")
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def __lt__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        if self.currency != other.currency:
            raise ValueError(f"Cannot compare {self.currency.code} and {other.currency.code}")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        return other < self

    def __ge__(self, other: 'Money') -> bool:
        return other <= self

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def parse_amount(value: Any, currency: Currency,
                 max_amount: Optional[Decimal] = None) -> Money:
    """
    Validate a caller-supplied amount and convert it to Money.

    Accepts Decimal, int, float (via its string form), a numeric string or
    Money already in the target currency.
    Rejects booleans, NaN/Infinity, zero, negatives, amounts finer than the
    currency precision and amounts above max_amount.

    Raises:
        InvalidAmountError: If the amount is not acceptable
    """
    if isinstance(value, Money):
        if value.currency != currency:
            raise InvalidAmountError(
                f"Amount currency {value.currency.code} does not match {currency.code}"
            )
        value = value.amount

    if value is None or isinstance(value, bool):
        raise InvalidAmountError()

    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        try:
            amount = Decimal(value.strip())
        except InvalidOperation:
            raise InvalidAmountError()
    else:
        raise InvalidAmountError()

    if not amount.is_finite() or amount <= 0:
        raise InvalidAmountError()

    try:
        quantized = amount.quantize(currency.quantum, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmountError()

    if amount != quantized:
        raise InvalidAmountError(
            f"Amount cannot have more than {currency.precision} decimal places"
        )

    if max_amount is not None and amount > max_amount:
        raise InvalidAmountError(f"Amount exceeds the maximum of {max_amount}")

    return Money(amount, currency)
