"""
Payment Order Module

Creates gateway checkouts for installments. The expected amount is always
recomputed from stored installments (scheduled amount plus accrued late fee);
a caller-supplied amount is only compared against it, never trusted.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
import logging
import uuid

from .currency import Money, parse_decimal
from .errors import (
    AmountMismatchError, ForbiddenError, NotFoundError, NothingToApplyError, ValidationError,
)
from .gateway import PhonePeClient
from .loan_requests import RequestRepository
from .loans import EMIInstallment, LoanRepository, LoanStatus, PaymentOrder
from .logging_config import log_action
from .penalties import EMIBreakdown, calculate_emi_breakdown
from .storage import StorageInterface, run_in_transaction


logger = logging.getLogger("lending.payment_orders")


@dataclass
class PaymentQuote:
    """Installments an order would pay and what each costs today"""
    loan_id: str
    installments: List[EMIInstallment]
    breakdowns: Dict[str, EMIBreakdown] = field(default_factory=dict)

    @property
    def expected_amount(self) -> Money:
        total = Money.zero(self.installments[0].scheduled_amount.currency)
        for installment in self.installments:
            total = total + self.breakdowns[installment.id].total_due
        return total

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'expected_amount': str(self.expected_amount.amount),
            'installments': [
                {'installment_id': i.id, 'sequence': i.sequence, 'due_date': i.due_date.isoformat(),
                 **self.breakdowns[i.id].to_dict()}
                for i in self.installments
            ],
        }


def new_merchant_transaction_id(customer_id: str) -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"TXN_{stamp}_{customer_id[:8]}_{uuid.uuid4().hex[:8]}"


class PaymentOrderService:
    """Validates create-order requests and records payment orders"""

    def __init__(self, storage: StorageInterface,
                 client: Optional[PhonePeClient] = None,
                 penalty_rate_percent: Decimal = Decimal('4'),
                 late_fee_daily_rate_percent: Decimal = Decimal('0.01'),
                 grace_period_days: int = 30,
                 amount_tolerance: Decimal = Decimal('0.01'),
                 transaction_retries: int = 3):
        self.storage = storage
        self.loans = LoanRepository(storage)
        self.requests = RequestRepository(storage)
        self.client = client
        self.penalty_rate_percent = Decimal(str(penalty_rate_percent))
        self.late_fee_daily_rate_percent = Decimal(str(late_fee_daily_rate_percent))
        self.grace_period_days = grace_period_days
        self.amount_tolerance = Decimal(str(amount_tolerance))
        self.transaction_retries = transaction_retries

    def quote(self, loan_id: str, installment_id: str, pay_ahead_count: int,
              customer_id: str, as_of: Optional[date] = None) -> PaymentQuote:
        """
        Select and price the installments an order would cover.

        Raises:
            NotFoundError, ForbiddenError, ValidationError, NothingToApplyError
        """
        if not isinstance(pay_ahead_count, int) or pay_ahead_count < 1:
            raise ValidationError("pay_ahead_count must be at least 1", {"pay_ahead_count": pay_ahead_count})

        loan = self.loans.get_loan(loan_id)
        request = self.requests.get(loan.request_id)
        if request.customer_id != customer_id:
            raise ForbiddenError("Loan does not belong to this customer", {"loan_id": loan_id})
        if loan.status != LoanStatus.ACTIVE:
            raise ValidationError(f"Loan is {loan.status.value}, not active", {"loan_id": loan_id})

        all_installments = self.loans.installments(loan_id)
        if installment_id not in {i.id for i in all_installments}:
            raise NotFoundError(f"Installment {installment_id} not found on loan {loan_id}",
                                {"installment_id": installment_id})

        unpaid = self.loans.unpaid_installments(loan_id)
        if not unpaid:
            raise NothingToApplyError("All installments on this loan are already paid", {"loan_id": loan_id})
        if unpaid[0].id != installment_id:
            raise ValidationError(
                f"Installments must be paid in order; pay EMI #{unpaid[0].sequence} first",
                {"next_installment_id": unpaid[0].id, "next_sequence": unpaid[0].sequence},
            )
        if pay_ahead_count > len(unpaid):
            raise ValidationError(
                f"Only {len(unpaid)} installment(s) remain unpaid",
                {"pay_ahead_count": pay_ahead_count, "remaining": len(unpaid)},
            )

        selected = unpaid[:pay_ahead_count]
        selected_ids = {i.id for i in selected}
        # Installments paid by this same order do not count as overdue for each other
        others = [i for i in all_installments if i.id not in selected_ids]
        payment_date = as_of or datetime.now(timezone.utc).date()

        quote = PaymentQuote(loan_id=loan_id, installments=selected)
        for installment in selected:
            quote.breakdowns[installment.id] = calculate_emi_breakdown(
                installment, others + [installment],
                penalty_rate_percent=self.penalty_rate_percent,
                daily_rate_percent=self.late_fee_daily_rate_percent,
                payment_date=payment_date,
                grace_period_days=self.grace_period_days,
                currency=loan.currency,
            )
        return quote

    def create_order(self, loan_id: str, installment_id: str, pay_ahead_count: int,
                     claimed_amount: Union[Money, Decimal, str], customer_id: str,
                     as_of: Optional[date] = None, mobile_number: Optional[str] = None) -> PaymentOrder:
        """
        Accrue late fees, check the claimed amount and record the order.

        Raises:
            AmountMismatchError: claimed amount differs from the recomputed
                total by more than the tolerance; details carry the expected
                amount. Nothing is persisted in that case.
        """
        claimed = claimed_amount.amount if isinstance(claimed_amount, Money) \
            else parse_decimal(claimed_amount, "amount")

        def create() -> PaymentOrder:
            quote = self.quote(loan_id, installment_id, pay_ahead_count, customer_id, as_of)
            for installment in quote.installments:
                installment.late_fee = quote.breakdowns[installment.id].late_fee
                installment.touch()
                self.loans.save_installment(installment)

            expected = sum((i.amount_due for i in quote.installments),
                           Money.zero(quote.installments[0].scheduled_amount.currency))
            if abs(expected.amount - claimed) > self.amount_tolerance:
                raise AmountMismatchError(
                    f"Amount must equal total due: {expected}",
                    {"expected_amount": str(expected.amount), "claimed_amount": str(claimed)},
                )

            now = datetime.now(timezone.utc)
            order = PaymentOrder(
                id=new_merchant_transaction_id(customer_id),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                customer_id=customer_id,
                installment_ids=[i.id for i in quote.installments],
                pay_ahead_count=pay_ahead_count,
                expected_amount=expected,
                installment_amounts={i.id: str(i.amount_due.amount) for i in quote.installments},
            )
            self.loans.save_order(order)
            return order

        order = run_in_transaction(self.storage, create, self.transaction_retries)
        log_action(logger, "info", f"Payment order {order.id} created for {order.expected_amount}",
                   user_id=customer_id, action="create-order", resource=f"loan:{loan_id}",
                   extra={'installments': order.installment_ids})

        if self.client:
            order.redirect_url = self.client.create_payment(order, mobile_number)
            order.touch()
            self.loans.save_order(order)
        return order
