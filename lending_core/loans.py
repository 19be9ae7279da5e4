"""
Loan Module

Loans opened from disbursed requests, their EMI installments, the payment
ledger and gateway payment orders. Aggregates on a Loan (paid count, overdue
count, total paid, remaining balance) are always re-derived from the
installment and payment rows, never incremented in place.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import uuid

from .amortization import calculate_schedule, add_months
from .currency import Money, Currency
from .errors import NotFoundError, ValidationError
from .storage import StorageInterface, StorageRecord
from .loan_requests import LoanRequest


logger = logging.getLogger("lending.loans")


class LoanStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"


class InstallmentStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    DEFAULTED = "defaulted"


UNPAID_STATUSES = (InstallmentStatus.PENDING, InstallmentStatus.OVERDUE)


class PaymentMethod(Enum):
    GATEWAY = "gateway"
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"
    MANUAL = "manual"


class PaymentOrderStatus(Enum):
    CREATED = "created"
    PAID = "paid"
    FAILED = "failed"
    UNAPPLIED = "unapplied"  # Money captured, but its installments were already settled


def _money(data: Dict[str, Any], key: str, currency: Currency) -> Money:
    return Money(Decimal(data[key]), currency)


def _optional_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


@dataclass
class Loan(StorageRecord):
    """A disbursed loan; one per request"""
    request_id: str
    customer_id: str
    principal: Money
    tenure_months: int
    annual_rate: Decimal
    emi_amount: Money
    total_interest: Money
    total_amount: Money
    disbursed_date: date
    first_emi_date: date
    last_emi_date: date
    status: LoanStatus = LoanStatus.ACTIVE
    total_paid: Money = None
    paid_count: int = 0
    overdue_count: int = 0
    remaining_balance: Money = None

    def __post_init__(self):
        currency = self.principal.currency
        if self.total_paid is None:
            self.total_paid = Money.zero(currency)
        if self.remaining_balance is None:
            self.remaining_balance = self.total_amount

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def remaining_count(self) -> int:
        return self.tenure_months - self.paid_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'request_id': self.request_id,
            'customer_id': self.customer_id,
            'currency': self.currency.code,
            'principal': str(self.principal.amount),
            'tenure_months': self.tenure_months,
            'annual_rate': str(self.annual_rate),
            'emi_amount': str(self.emi_amount.amount),
            'total_interest': str(self.total_interest.amount),
            'total_amount': str(self.total_amount.amount),
            'disbursed_date': self.disbursed_date.isoformat(),
            'first_emi_date': self.first_emi_date.isoformat(),
            'last_emi_date': self.last_emi_date.isoformat(),
            'status': self.status.value,
            'total_paid': str(self.total_paid.amount),
            'paid_count': self.paid_count,
            'overdue_count': self.overdue_count,
            'remaining_balance': str(self.remaining_balance.amount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            request_id=data['request_id'],
            customer_id=data['customer_id'],
            principal=_money(data, 'principal', currency),
            tenure_months=data['tenure_months'],
            annual_rate=Decimal(data['annual_rate']),
            emi_amount=_money(data, 'emi_amount', currency),
            total_interest=_money(data, 'total_interest', currency),
            total_amount=_money(data, 'total_amount', currency),
            disbursed_date=date.fromisoformat(data['disbursed_date']),
            first_emi_date=date.fromisoformat(data['first_emi_date']),
            last_emi_date=date.fromisoformat(data['last_emi_date']),
            status=LoanStatus(data['status']),
            total_paid=_money(data, 'total_paid', currency),
            paid_count=data['paid_count'],
            overdue_count=data['overdue_count'],
            remaining_balance=_money(data, 'remaining_balance', currency),
        )


@dataclass
class EMIInstallment(StorageRecord):
    """One scheduled monthly repayment"""
    loan_id: str
    sequence: int
    due_date: date
    scheduled_amount: Money
    principal: Money
    interest: Money
    remaining_balance: Money
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[date] = None
    paid_amount: Optional[Money] = None
    late_fee: Money = None

    def __post_init__(self):
        if self.late_fee is None:
            self.late_fee = Money.zero(self.scheduled_amount.currency)

    @property
    def is_unpaid(self) -> bool:
        return self.status in UNPAID_STATUSES

    @property
    def amount_due(self) -> Money:
        """Scheduled amount plus any accrued late fee"""
        return self.scheduled_amount + self.late_fee

    def to_row(self) -> Dict[str, Any]:
        """Schedule row as consumed by agreement/statement renderers"""
        return {
            'installment': self.sequence,
            'payment_date': self.due_date.isoformat(),
            'payment_amount': str(self.scheduled_amount.amount),
            'principal': str(self.principal.amount),
            'interest': str(self.interest.amount),
            'remaining_balance': str(self.remaining_balance.amount),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'sequence': self.sequence,
            'due_date': self.due_date.isoformat(),
            'currency': self.scheduled_amount.currency.code,
            'scheduled_amount': str(self.scheduled_amount.amount),
            'principal': str(self.principal.amount),
            'interest': str(self.interest.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'status': self.status.value,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
            'paid_amount': str(self.paid_amount.amount) if self.paid_amount else None,
            'late_fee': str(self.late_fee.amount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EMIInstallment':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            sequence=data['sequence'],
            due_date=date.fromisoformat(data['due_date']),
            scheduled_amount=_money(data, 'scheduled_amount', currency),
            principal=_money(data, 'principal', currency),
            interest=_money(data, 'interest', currency),
            remaining_balance=_money(data, 'remaining_balance', currency),
            status=InstallmentStatus(data['status']),
            paid_date=_optional_date(data.get('paid_date')),
            paid_amount=_money(data, 'paid_amount', currency) if data.get('paid_amount') else None,
            late_fee=_money(data, 'late_fee', currency),
        )


@dataclass
class Payment(StorageRecord):
    """Immutable ledger entry; (external_reference, installment_id) is unique"""
    loan_id: str
    installment_id: str
    amount: Money
    payment_method: PaymentMethod
    external_reference: str
    processed_by: str
    remarks: str = ""

    @staticmethod
    def record_id(external_reference: str, installment_id: str) -> str:
        return f"{external_reference}:{installment_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'installment_id': self.installment_id,
            'currency': self.amount.currency.code,
            'amount': str(self.amount.amount),
            'payment_method': self.payment_method.value,
            'external_reference': self.external_reference,
            'processed_by': self.processed_by,
            'remarks': self.remarks,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            installment_id=data['installment_id'],
            amount=_money(data, 'amount', Currency[data['currency']]),
            payment_method=PaymentMethod(data['payment_method']),
            external_reference=data['external_reference'],
            processed_by=data['processed_by'],
            remarks=data.get('remarks', ''),
        )


@dataclass
class PaymentOrder(StorageRecord):
    """
    A gateway checkout for one or more installments.

    The id is the merchant transaction id sent to the gateway; callbacks
    carry only that id, so the order is how a callback finds its loan.
    """
    loan_id: str
    customer_id: str
    installment_ids: List[str]
    pay_ahead_count: int
    expected_amount: Money
    installment_amounts: Dict[str, str] = field(default_factory=dict)
    status: PaymentOrderStatus = PaymentOrderStatus.CREATED
    gateway_transaction_id: Optional[str] = None
    redirect_url: Optional[str] = None

    @property
    def merchant_transaction_id(self) -> str:
        return self.id

    def frozen_amounts(self) -> Dict[str, Money]:
        """Per-installment dues as priced when the order was created"""
        currency = self.expected_amount.currency
        return {installment_id: Money(Decimal(amount), currency)
                for installment_id, amount in self.installment_amounts.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'customer_id': self.customer_id,
            'installment_ids': list(self.installment_ids),
            'pay_ahead_count': self.pay_ahead_count,
            'currency': self.expected_amount.currency.code,
            'expected_amount': str(self.expected_amount.amount),
            'installment_amounts': dict(self.installment_amounts),
            'status': self.status.value,
            'gateway_transaction_id': self.gateway_transaction_id,
            'redirect_url': self.redirect_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentOrder':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            customer_id=data['customer_id'],
            installment_ids=list(data['installment_ids']),
            pay_ahead_count=data['pay_ahead_count'],
            expected_amount=_money(data, 'expected_amount', Currency[data['currency']]),
            installment_amounts=data.get('installment_amounts') or {},
            status=PaymentOrderStatus(data['status']),
            gateway_transaction_id=data.get('gateway_transaction_id'),
            redirect_url=data.get('redirect_url'),
        )


def due_order_key(installment: EMIInstallment):
    """Earliest due first, sequence as tie-break"""
    return (installment.due_date, installment.sequence)


class LoanRepository:
    """Storage access for loans, installments, payments and payment orders"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.loans_table = "loans"
        self.installments_table = "emi_installments"
        self.payments_table = "payments"
        self.orders_table = "payment_orders"

    # Loans

    def save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def find_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def get_loan(self, loan_id: str) -> Loan:
        loan = self.find_loan(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found", {"loan_id": loan_id})
        return loan

    def find_loan_by_request(self, request_id: str) -> Optional[Loan]:
        rows = self.storage.find(self.loans_table, {'request_id': request_id})
        return Loan.from_dict(rows[0]) if rows else None

    # Installments

    def save_installment(self, installment: EMIInstallment) -> None:
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def installments(self, loan_id: str) -> List[EMIInstallment]:
        rows = self.storage.find(self.installments_table, {'loan_id': loan_id})
        return sorted((EMIInstallment.from_dict(r) for r in rows), key=lambda i: i.sequence)

    def unpaid_installments(self, loan_id: str) -> List[EMIInstallment]:
        """Pending and overdue installments, earliest due first"""
        rows = self.storage.find(self.installments_table, {
            'loan_id': loan_id,
            'status': [s.value for s in UNPAID_STATUSES],
        })
        return sorted((EMIInstallment.from_dict(r) for r in rows), key=due_order_key)

    def count_installments(self, loan_id: str, status: InstallmentStatus) -> int:
        return self.storage.count(self.installments_table, {'loan_id': loan_id, 'status': status.value})

    def pending_installments_due_before(self, cutoff: date) -> List[EMIInstallment]:
        rows = self.storage.find(self.installments_table, {'status': InstallmentStatus.PENDING.value})
        due = [EMIInstallment.from_dict(r) for r in rows]
        return sorted((i for i in due if i.due_date < cutoff), key=lambda i: (i.loan_id, i.sequence))

    # Payments

    def save_payment(self, payment: Payment) -> None:
        self.storage.save(self.payments_table, payment.id, payment.to_dict())

    def payments_by_reference(self, external_reference: str) -> List[Payment]:
        rows = self.storage.find(self.payments_table, {'external_reference': external_reference})
        return sorted((Payment.from_dict(r) for r in rows), key=lambda p: p.created_at)

    def payments_for_loan(self, loan_id: str) -> List[Payment]:
        rows = self.storage.find(self.payments_table, {'loan_id': loan_id})
        return sorted((Payment.from_dict(r) for r in rows), key=lambda p: p.created_at)

    # Payment orders

    def save_order(self, order: PaymentOrder) -> None:
        self.storage.save(self.orders_table, order.id, order.to_dict())

    def find_order(self, merchant_transaction_id: str) -> Optional[PaymentOrder]:
        data = self.storage.load(self.orders_table, merchant_transaction_id)
        return PaymentOrder.from_dict(data) if data else None

    def get_order(self, merchant_transaction_id: str) -> PaymentOrder:
        order = self.find_order(merchant_transaction_id)
        if order is None:
            raise NotFoundError(f"Payment order {merchant_transaction_id} not found",
                                {"merchant_transaction_id": merchant_transaction_id})
        return order


class LoanBook:
    """
    Opens loans and keeps their aggregates consistent.

    Callers must hold a storage transaction; nothing here commits on its own.
    """

    def __init__(self, repository: LoanRepository):
        self.repository = repository

    def open_loan(self, request: LoanRequest, disbursed_date: Optional[date] = None,
                  first_payment_date: Optional[date] = None) -> Loan:
        """
        Create the loan and its full EMI schedule from the request's offer.

        Idempotent per request: an existing loan is returned unchanged.
        """
        existing = self.repository.find_loan_by_request(request.id)
        if existing:
            logger.info(f"Loan already open for request {request.id}: {existing.id}")
            return existing

        if not request.has_offer:
            raise ValidationError("Cannot open a loan without an offer", {"request_id": request.id})

        disbursed = disbursed_date or datetime.now(timezone.utc).date()
        first_due = first_payment_date or add_months(disbursed, 1)
        schedule = calculate_schedule(
            principal=request.offered_amount.amount,
            annual_rate_percent=request.offered_interest_rate,
            tenure_months=request.offered_tenure_months,
            first_payment_date=first_due,
            currency=request.offered_amount.currency,
        )

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            request_id=request.id,
            customer_id=request.customer_id,
            principal=schedule.principal,
            tenure_months=schedule.tenure_months,
            annual_rate=schedule.annual_rate_percent,
            emi_amount=schedule.emi_amount,
            total_interest=schedule.total_interest,
            total_amount=schedule.total_payment,
            disbursed_date=disbursed,
            first_emi_date=schedule.first_payment_date,
            last_emi_date=schedule.last_payment_date,
        )
        self.repository.save_loan(loan)

        for row in schedule.rows:
            self.repository.save_installment(EMIInstallment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                sequence=row.installment,
                due_date=row.payment_date,
                scheduled_amount=row.payment_amount,
                principal=row.principal,
                interest=row.interest,
                remaining_balance=row.remaining_balance,
            ))

        logger.info(f"Opened loan {loan.id} for request {request.id}: "
                    f"{loan.principal} over {loan.tenure_months} months, EMI {loan.emi_amount}")
        return loan

    def recompute_aggregates(self, loan_id: str) -> Loan:
        """Re-derive counters from the rows and persist them"""
        loan = self.repository.get_loan(loan_id)
        installments = self.repository.installments(loan_id)
        payments = self.repository.payments_for_loan(loan_id)

        zero = Money.zero(loan.currency)
        loan.paid_count = sum(1 for i in installments if i.status == InstallmentStatus.PAID)
        loan.overdue_count = sum(1 for i in installments if i.status == InstallmentStatus.OVERDUE)
        loan.total_paid = sum((p.amount for p in payments), zero)
        loan.remaining_balance = sum((i.scheduled_amount for i in installments if i.is_unpaid), zero)

        if installments and loan.paid_count == len(installments):
            loan.status = LoanStatus.COMPLETED

        loan.touch()
        self.repository.save_loan(loan)
        return loan
