"""
Payment Reconciliation Module

Applies gateway-confirmed amounts to a loan's installments exactly once.
The external reference is the idempotency key: a second delivery of the same
confirmation returns the payments recorded by the first.

Allocation is whole-installment, earliest due first. A confirmed amount is
expected to match an exact count of obligations; mismatches are rejected
upstream when the payment order is created.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import logging

from .currency import Money, parse_decimal
from .errors import ValidationError
from .events import DomainEvent, EventDispatcher
from .loan_requests import RequestRepository
from .loans import (
    InstallmentStatus, Loan, LoanBook, LoanRepository, LoanStatus, Payment, PaymentMethod,
)
from .logging_config import log_action
from .notifications import NotificationQueue, EMI_PAYMENT_RECEIVED
from .storage import StorageInterface, run_in_transaction
from .workflow_policy import RequestStatus
from .workflows import WorkflowEngine


logger = logging.getLogger("lending.reconciliation")


class ReconciliationOutcome(Enum):
    APPLIED = "applied"
    ALREADY_PROCESSED = "already_processed"
    NOTHING_TO_APPLY = "nothing_to_apply"


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    loan: Loan
    applied_payments: List[Payment] = field(default_factory=list)
    unallocated: Optional[Money] = None

    @property
    def success(self) -> bool:
        return self.outcome != ReconciliationOutcome.NOTHING_TO_APPLY

    def to_dict(self) -> Dict[str, Any]:
        return {
            'outcome': self.outcome.value,
            'loan': self.loan.to_dict(),
            'applied_payments': [p.to_dict() for p in self.applied_payments],
            'unallocated': str(self.unallocated.amount) if self.unallocated else None,
        }


class PaymentReconciler:
    """Exactly-once application of confirmed payments"""

    def __init__(self, storage: StorageInterface,
                 workflow: Optional[WorkflowEngine] = None,
                 queue: Optional[NotificationQueue] = None,
                 dispatcher: Optional[EventDispatcher] = None,
                 company_name: str = "FundifyHub",
                 transaction_retries: int = 3):
        self.storage = storage
        self.loans = LoanRepository(storage)
        self.loan_book = LoanBook(self.loans)
        self.requests = RequestRepository(storage)
        self.workflow = workflow
        self.queue = queue
        self.dispatcher = dispatcher
        self.company_name = company_name
        self.transaction_retries = transaction_retries

    def apply_payment(self, loan_id: str, external_reference: str,
                      confirmed_amount: Union[Money, Decimal, str],
                      up_to_installments_count: Optional[int] = None,
                      payment_method: PaymentMethod = PaymentMethod.GATEWAY,
                      processed_by: str = "system",
                      installment_amounts: Optional[Dict[str, Money]] = None) -> ReconciliationResult:
        """
        Apply a confirmed amount to the loan's unpaid installments.

        installment_amounts pins the payment to specific installments at the
        dues they were priced at (a payment order). Installments outside it
        are left alone, and late fees accrued after pricing are waived.

        Raises:
            ValidationError: non-positive amount, empty reference or count.
            NotFoundError: unknown loan.
        """
        if not external_reference:
            raise ValidationError("External reference is required")
        if up_to_installments_count is not None and up_to_installments_count <= 0:
            raise ValidationError("Installment count must be positive",
                                  {"up_to_installments_count": up_to_installments_count})

        def reconcile() -> ReconciliationResult:
            loan = self.loans.get_loan(loan_id)
            amount = confirmed_amount if isinstance(confirmed_amount, Money) \
                else Money(parse_decimal(confirmed_amount, "amount"), loan.currency)
            if not amount.is_positive():
                raise ValidationError("Confirmed amount must be positive", {"amount": str(amount.amount)})

            prior = self.loans.payments_by_reference(external_reference)
            if prior:
                return ReconciliationResult(ReconciliationOutcome.ALREADY_PROCESSED, loan, prior)

            unpaid = self.loans.unpaid_installments(loan_id)
            if installment_amounts is not None:
                unpaid = [i for i in unpaid if i.id in installment_amounts]
            if up_to_installments_count is not None:
                unpaid = unpaid[:up_to_installments_count]

            now = datetime.now(timezone.utc)
            remaining = amount
            applied: List[Payment] = []
            for installment in unpaid:
                due = installment.amount_due
                if installment_amounts is not None:
                    due = installment_amounts[installment.id]
                if remaining < due:
                    break
                if installment_amounts is not None and due >= installment.scheduled_amount:
                    installment.late_fee = due - installment.scheduled_amount
                installment.status = InstallmentStatus.PAID
                installment.paid_date = now.date()
                installment.paid_amount = due
                installment.touch()
                self.loans.save_installment(installment)

                payment = Payment(
                    id=Payment.record_id(external_reference, installment.id),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan_id,
                    installment_id=installment.id,
                    amount=due,
                    payment_method=payment_method,
                    external_reference=external_reference,
                    processed_by=processed_by,
                    remarks=f"EMI #{installment.sequence}",
                )
                self.loans.save_payment(payment)
                applied.append(payment)
                remaining = remaining - due

            if not applied:
                return ReconciliationResult(ReconciliationOutcome.NOTHING_TO_APPLY, loan, [], amount)

            loan = self.loan_book.recompute_aggregates(loan_id)
            return ReconciliationResult(ReconciliationOutcome.APPLIED, loan, applied,
                                        remaining if remaining.is_positive() else None)

        result = run_in_transaction(self.storage, reconcile, self.transaction_retries)

        if result.outcome == ReconciliationOutcome.APPLIED:
            log_action(logger, "info",
                       f"Applied {len(result.applied_payments)} installment(s) to loan {loan_id}",
                       user_id=processed_by, action="apply-payment", resource=f"loan:{loan_id}",
                       extra={'external_reference': external_reference,
                              'paid_count': result.loan.paid_count,
                              'total_paid': str(result.loan.total_paid.amount)})
            if result.unallocated:
                logger.warning(f"Payment {external_reference} left {result.unallocated} unallocated on loan {loan_id}")
            self._publish(result, external_reference)
        elif result.outcome == ReconciliationOutcome.ALREADY_PROCESSED:
            logger.info(f"Payment {external_reference} already processed for loan {loan_id}")
        else:
            logger.warning(f"Nothing to apply for payment {external_reference} on loan {loan_id}")

        if result.outcome != ReconciliationOutcome.NOTHING_TO_APPLY:
            self._cascade(result.loan)
        return result

    def _publish(self, result: ReconciliationResult, external_reference: str) -> None:
        loan = result.loan
        total = sum((p.amount for p in result.applied_payments), Money.zero(loan.currency))
        if self.dispatcher:
            self.dispatcher.emit(DomainEvent.PAYMENT_APPLIED, "loan", loan.id, {
                'external_reference': external_reference,
                'installment_ids': [p.installment_id for p in result.applied_payments],
                'amount': str(total.amount),
            })
            if loan.status == LoanStatus.COMPLETED:
                self.dispatcher.emit(DomainEvent.LOAN_COMPLETED, "loan", loan.id, {'request_id': loan.request_id})

        if self.queue:
            try:
                self.queue.enqueue(EMI_PAYMENT_RECEIVED, {
                    'recipient_id': loan.customer_id,
                    'loan_id': loan.id,
                    'amount': str(total.amount),
                    'installments_paid': len(result.applied_payments),
                    'company_name': self.company_name,
                })
            except Exception as e:
                logger.error(f"Failed to enqueue payment receipt for loan {loan.id}: {e}")

    def _cascade(self, loan: Loan) -> None:
        """
        Move the parent request to match the loan.

        Runs after every applied or repeated confirmation, so a delivery that
        committed but crashed before cascading is completed by the retry.
        """
        if self.workflow is None:
            return
        request = self.requests.find(loan.request_id)
        if request is None:
            return
        repayment_statuses = (RequestStatus.ACTIVE, RequestStatus.PAYMENT_OVERDUE)
        if loan.status == LoanStatus.COMPLETED and request.status in repayment_statuses:
            self.workflow.apply_system_action(request.id, "auto-complete")
        elif loan.overdue_count == 0 and request.status == RequestStatus.PAYMENT_OVERDUE:
            self.workflow.apply_system_action(request.id, "auto-clear-overdue")
