"""
Currency Module

Decimal money values with fixed currency precision. Every amount in the
lending core (principal, EMI, interest, late fees, payments) is a Money
rounded ROUND_HALF_UP to its currency's minor unit. NEVER uses float.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 currency codes with precision info"""
    INR = ("INR", 2)  # Indian Rupee, 2 decimal places (paise)
    USD = ("USD", 2)
    EUR = ("EUR", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def minor_unit(self) -> Decimal:
        return Decimal('0.1') ** self.precision


def parse_decimal(value: Any, field: str) -> Decimal:
    """Parse a finite Decimal; NaN and Infinity are rejected like any other garbage"""
    try:
        parsed = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValidationError(f"Invalid {field}: {value!r}", {"field": field}) from e
    if not parsed.is_finite():
        raise ValidationError(f"Invalid {field}: {value!r}", {"field": field})
    return parsed


def round_amount(value: Union[Decimal, int, str], currency: Currency = Currency.INR) -> Decimal:
    """Quantize a raw Decimal to currency precision using ROUND_HALF_UP"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(currency.minor_unit, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency = Currency.INR

    def __post_init__(self):
        object.__setattr__(self, 'amount', round_amount(self.amount, self.currency))

    @classmethod
    def zero(cls, currency: Currency = Currency.INR) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check(self, other: 'Money') -> None:
        if self.currency != other.currency:
            raise ValueError(f"Currency mismatch: {self.currency.code} vs {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def to_minor_units(self) -> int:
        """Amount in the smallest currency unit (paise for INR)"""
        return int(self.amount * (Decimal(10) ** self.currency.precision))

    @classmethod
    def from_minor_units(cls, units: int, currency: Currency = Currency.INR) -> 'Money':
        return cls(Decimal(int(units)) / (Decimal(10) ** currency.precision), currency)

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"

    def __str__(self) -> str:
        return self.to_string()
