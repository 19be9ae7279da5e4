"""
Test suite for penalty calculations
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from lending_core.currency import Money
from lending_core.penalties import (
    calculate_days_late, calculate_days_overdue, calculate_emi_breakdown, calculate_late_payment_penalty,
    calculate_penalty, is_emi_overdue,
)


def installment(sequence, due, amount="1000.00", unpaid=True):
    scheduled = Money(Decimal(amount))
    return SimpleNamespace(
        sequence=sequence,
        due_date=due,
        scheduled_amount=scheduled,
        principal=Money(Decimal(amount) - Decimal("100")),
        interest=Money(Decimal("100")),
        is_unpaid=unpaid,
    )


class TestDayCounts:

    def test_days_late(self):
        assert calculate_days_late(date(2025, 1, 1), date(2025, 1, 11)) == 10

    def test_early_payment_is_not_late(self):
        assert calculate_days_late(date(2025, 1, 10), date(2025, 1, 1)) == 0

    def test_accepts_datetimes(self):
        due = datetime(2025, 1, 1, 23, 59, tzinfo=timezone.utc)
        assert calculate_days_late(due, datetime(2025, 1, 3, 0, 1, tzinfo=timezone.utc)) == 2

    def test_days_overdue_subtracts_grace(self):
        assert calculate_days_overdue(date(2025, 1, 1), date(2025, 2, 10), grace_period_days=30) == 10
        assert calculate_days_overdue(date(2025, 1, 1), date(2025, 1, 20), grace_period_days=30) == 0

    def test_is_emi_overdue(self):
        assert is_emi_overdue(date(2025, 1, 1), paid=False, today=date(2025, 1, 2))
        assert not is_emi_overdue(date(2025, 1, 1), paid=True, today=date(2025, 3, 1))
        assert not is_emi_overdue(date(2025, 1, 1), paid=False, grace_period_days=30, today=date(2025, 1, 31))


class TestAmounts:

    def test_overdue_penalty(self):
        assert calculate_penalty(Money(Decimal("1000"))) == Money(Decimal("40.00"))

    def test_no_penalty_on_zero(self):
        assert calculate_penalty(Money.zero()).is_zero()

    def test_late_payment_penalty(self):
        # 0.01% per day for 30 days
        assert calculate_late_payment_penalty(Money(Decimal("10000")), 30) == Money(Decimal("30.00"))

    def test_late_payment_rounds_half_up(self):
        assert calculate_late_payment_penalty(Money(Decimal("3998.20")), 10) == Money(Decimal("4.00"))

    def test_no_late_penalty_when_on_time(self):
        assert calculate_late_payment_penalty(Money(Decimal("1000")), 0).is_zero()


class TestBreakdown:

    def test_on_time(self):
        current = installment(1, date(2025, 2, 1))
        breakdown = calculate_emi_breakdown(current, [current], payment_date=date(2025, 2, 1))

        assert breakdown.penalty.is_zero()
        assert breakdown.total_due == Money(Decimal("1000.00"))

    def test_earlier_overdue_installments_add_penalty(self):
        first = installment(1, date(2025, 1, 1))
        second = installment(2, date(2025, 2, 1))
        current = installment(3, date(2025, 3, 1))

        breakdown = calculate_emi_breakdown(current, [first, second, current], payment_date=date(2025, 3, 1))

        # Only the first is past the 30-day grace on 03-01
        assert breakdown.overdue == Money(Decimal("1000.00"))
        assert breakdown.overdue_emi_penalty == Money(Decimal("40.00"))
        assert breakdown.days_late == 0
        assert breakdown.total_due == Money(Decimal("1040.00"))

    def test_paid_and_later_installments_ignored(self):
        paid = installment(1, date(2024, 11, 1), unpaid=False)
        current = installment(2, date(2025, 1, 1))
        later = installment(3, date(2024, 12, 1))

        breakdown = calculate_emi_breakdown(current, [paid, current, later], payment_date=date(2025, 3, 1))

        assert breakdown.overdue.is_zero()
        assert breakdown.days_late == 59

    def test_custom_rates(self):
        current = installment(1, date(2025, 1, 1))
        breakdown = calculate_emi_breakdown(current, [current], daily_rate_percent=Decimal("0.1"),
                                            payment_date=date(2025, 1, 11))
        assert breakdown.late_payment_penalty == Money(Decimal("10.00"))

    def test_serialization(self):
        current = installment(1, date(2025, 1, 1))
        data = calculate_emi_breakdown(current, [current], payment_date=date(2025, 1, 1)).to_dict()

        assert data['total_due'] == "1000.00"
        assert data['days_late'] == 0

    @pytest.mark.parametrize("days,expected", [(1, "0.10"), (15, "1.50"), (100, "10.00")])
    def test_late_fee_scales_with_days(self, days, expected):
        assert calculate_late_payment_penalty(Money(Decimal("1000")), days) == Money(Decimal(expected))
