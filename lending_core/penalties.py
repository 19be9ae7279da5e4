"""
Penalty Calculation Module

Late-payment charges accrued onto installments when a payment order is
created:

- Overdue penalty: one-time percentage (default 4%) of every earlier unpaid
  installment that has crossed the grace period.
- Late payment penalty: daily percentage (default 0.01%/day) of the current
  installment, counted from its due date with no grace.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional, Union, TYPE_CHECKING

from .currency import Money, Currency

if TYPE_CHECKING:
    from .loans import EMIInstallment


DEFAULT_PENALTY_RATE_PERCENT = Decimal('4')
DEFAULT_DAILY_RATE_PERCENT = Decimal('0.01')
DEFAULT_GRACE_PERIOD_DAYS = 30

DateLike = Union[date, datetime]


def _as_date(value: DateLike) -> date:
    return value.date() if isinstance(value, datetime) else value


def calculate_days_late(due_date: DateLike, payment_date: Optional[DateLike] = None) -> int:
    """Whole days between due date and payment date; 0 if not late"""
    payment = _as_date(payment_date) if payment_date else date.today()
    return max(0, (payment - _as_date(due_date)).days)


def calculate_days_overdue(due_date: DateLike, payment_date: Optional[DateLike] = None,
                           grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS) -> int:
    """Days late beyond the grace period; 0 while still inside it"""
    return max(0, calculate_days_late(due_date, payment_date) - grace_period_days)


def calculate_penalty(overdue_amount: Money,
                      penalty_rate_percent: Decimal = DEFAULT_PENALTY_RATE_PERCENT) -> Money:
    if not overdue_amount.is_positive():
        return Money.zero(overdue_amount.currency)
    return Money(overdue_amount.amount * penalty_rate_percent / Decimal('100'), overdue_amount.currency)


def calculate_late_payment_penalty(emi_amount: Money, days_late: int,
                                   daily_rate_percent: Decimal = DEFAULT_DAILY_RATE_PERCENT) -> Money:
    if days_late <= 0 or not emi_amount.is_positive():
        return Money.zero(emi_amount.currency)
    return Money(emi_amount.amount * daily_rate_percent * Decimal(days_late) / Decimal('100'),
                 emi_amount.currency)


def is_emi_overdue(due_date: DateLike, paid: bool, grace_period_days: int = 0,
                   today: Optional[DateLike] = None) -> bool:
    if paid:
        return False
    return calculate_days_late(due_date, today) > grace_period_days


@dataclass
class EMIBreakdown:
    """Amount due for one installment including accrued penalties"""
    principal: Money
    interest: Money
    emi_amount: Money
    overdue: Money
    overdue_emi_penalty: Money
    days_late: int
    late_payment_penalty: Money

    @property
    def penalty(self) -> Money:
        return self.overdue_emi_penalty + self.late_payment_penalty

    @property
    def late_fee(self) -> Money:
        return self.penalty

    @property
    def total_due(self) -> Money:
        return self.principal + self.interest + self.penalty

    def to_dict(self):
        return {
            'principal': str(self.principal.amount),
            'interest': str(self.interest.amount),
            'emi_amount': str(self.emi_amount.amount),
            'overdue': str(self.overdue.amount),
            'overdue_emi_penalty': str(self.overdue_emi_penalty.amount),
            'days_late': self.days_late,
            'late_payment_penalty': str(self.late_payment_penalty.amount),
            'penalty': str(self.penalty.amount),
            'total_due': str(self.total_due.amount),
        }


def calculate_emi_breakdown(current: "EMIInstallment",
                            all_installments: Iterable["EMIInstallment"],
                            penalty_rate_percent: Decimal = DEFAULT_PENALTY_RATE_PERCENT,
                            daily_rate_percent: Decimal = DEFAULT_DAILY_RATE_PERCENT,
                            payment_date: Optional[DateLike] = None,
                            grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
                            currency: Currency = Currency.INR) -> EMIBreakdown:
    """
    Penalty breakdown for paying `current` on `payment_date`.

    Earlier unpaid installments past the grace period contribute their
    scheduled amount to the overdue base; the current installment accrues the
    daily late charge from its due date.
    """
    overdue = Money.zero(currency)
    for installment in all_installments:
        if installment.sequence >= current.sequence or not installment.is_unpaid:
            continue
        if calculate_days_overdue(installment.due_date, payment_date, grace_period_days) > 0:
            overdue = overdue + installment.scheduled_amount

    days_late = calculate_days_late(current.due_date, payment_date)

    return EMIBreakdown(
        principal=current.principal,
        interest=current.interest,
        emi_amount=current.scheduled_amount,
        overdue=overdue,
        overdue_emi_penalty=calculate_penalty(overdue, penalty_rate_percent),
        days_late=days_late,
        late_payment_penalty=calculate_late_payment_penalty(
            current.scheduled_amount, days_late, daily_rate_percent
        ),
    )
