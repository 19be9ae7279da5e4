"""
Amortization Module

Reducing-balance EMI schedules. Pure functions, no storage access.

Rounding policy: ROUND_HALF_UP to the currency's minor unit, applied to the
EMI, to every interest component and to every principal component. The final
row absorbs accumulated drift: its principal is exactly the remaining balance
and its payment is principal + interest.
"""

import calendar
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Union

from .currency import Money, Currency, parse_decimal, round_amount
from .errors import ValidationError


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass
class AmortizationEntry:
    """Single row of an EMI schedule"""
    installment: int
    payment_date: date
    payment_amount: Money
    principal: Money
    interest: Money
    remaining_balance: Money

    def __post_init__(self):
        if self.principal + self.interest != self.payment_amount:
            raise ValidationError(
                f"Installment {self.installment}: payment {self.payment_amount} does not equal "
                f"principal {self.principal} + interest {self.interest}"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Persisted row shape read by schedule/agreement renderers"""
        return {
            'installment': self.installment,
            'payment_date': self.payment_date.isoformat(),
            'payment_amount': str(self.payment_amount.amount),
            'principal': str(self.principal.amount),
            'interest': str(self.interest.amount),
            'remaining_balance': str(self.remaining_balance.amount),
        }


@dataclass
class AmortizationSchedule:
    principal: Money
    annual_rate_percent: Decimal
    tenure_months: int
    emi_amount: Money
    rows: List[AmortizationEntry] = field(default_factory=list)

    @property
    def total_interest(self) -> Money:
        total = Money.zero(self.principal.currency)
        for row in self.rows:
            total = total + row.interest
        return total

    @property
    def total_payment(self) -> Money:
        total = Money.zero(self.principal.currency)
        for row in self.rows:
            total = total + row.payment_amount
        return total

    @property
    def first_payment_date(self) -> date:
        return self.rows[0].payment_date

    @property
    def last_payment_date(self) -> date:
        return self.rows[-1].payment_date

    def to_dict(self) -> Dict[str, Any]:
        return {
            'emi_amount': str(self.emi_amount.amount),
            'total_interest': str(self.total_interest.amount),
            'total_payment': str(self.total_payment.amount),
            'rows': [row.to_dict() for row in self.rows],
        }


def _to_decimal(value: Union[Decimal, int, str, float], name: str) -> Decimal:
    return parse_decimal(value, name)


def monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    return annual_rate_percent / Decimal('100') / Decimal('12')


def calculate_emi(principal: Union[Decimal, int, str],
                  annual_rate_percent: Union[Decimal, int, str],
                  tenure_months: int,
                  currency: Currency = Currency.INR) -> Money:
    """
    Fixed monthly installment for a reducing-balance loan.

    EMI = P * r * (1 + r)^n / ((1 + r)^n - 1), or P / n when r is zero.
    """
    p = _to_decimal(principal, "principal")
    rate = _to_decimal(annual_rate_percent, "annual rate")
    _validate_terms(p, rate, tenure_months)

    r = monthly_rate(rate)
    if r == 0:
        return Money(p / Decimal(tenure_months), currency)

    growth = (Decimal('1') + r) ** tenure_months
    return Money(p * r * growth / (growth - Decimal('1')), currency)


def _validate_terms(principal: Decimal, annual_rate_percent: Decimal, tenure_months: int) -> None:
    if principal <= 0:
        raise ValidationError("Principal must be positive", {"principal": str(principal)})
    if not isinstance(tenure_months, int) or isinstance(tenure_months, bool) or tenure_months <= 0:
        raise ValidationError("Tenure must be a positive number of months", {"tenure_months": tenure_months})
    if annual_rate_percent < 0:
        raise ValidationError("Interest rate cannot be negative", {"annual_rate_percent": str(annual_rate_percent)})


def calculate_schedule(principal: Union[Decimal, int, str],
                       annual_rate_percent: Union[Decimal, int, str],
                       tenure_months: int,
                       first_payment_date: date,
                       currency: Currency = Currency.INR) -> AmortizationSchedule:
    """
    Build the full EMI schedule.

    Raises:
        ValidationError: on non-positive principal or tenure, negative rate,
            or if the principal components fail to sum to the principal.
    """
    p = round_amount(_to_decimal(principal, "principal"), currency)
    rate = _to_decimal(annual_rate_percent, "annual rate")
    _validate_terms(p, rate, tenure_months)

    r = monthly_rate(rate)
    emi = calculate_emi(p, rate, tenure_months, currency)
    zero = Money.zero(currency)
    balance = Money(p, currency)
    rows: List[AmortizationEntry] = []

    for installment in range(1, tenure_months + 1):
        interest = Money(balance.amount * r, currency)
        if installment == tenure_months:
            principal_part = balance
        else:
            principal_part = emi - interest
            if principal_part > balance:
                principal_part = balance
            if principal_part < zero:
                principal_part = zero
        balance = balance - principal_part

        rows.append(AmortizationEntry(
            installment=installment,
            payment_date=add_months(first_payment_date, installment - 1),
            payment_amount=principal_part + interest,
            principal=principal_part,
            interest=interest,
            remaining_balance=balance,
        ))

    schedule = AmortizationSchedule(
        principal=Money(p, currency),
        annual_rate_percent=rate,
        tenure_months=tenure_months,
        emi_amount=emi,
        rows=rows,
    )

    principal_sum = sum((row.principal.amount for row in rows), Decimal('0'))
    if principal_sum != p or len(rows) != tenure_months:
        raise ValidationError(
            "Schedule principal components do not sum to the principal",
            {"principal": str(p), "sum": str(principal_sum), "rows": len(rows)},
        )

    return schedule
