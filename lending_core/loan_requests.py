"""
Loan Request Module

Loan requests (a customer's pledge application) and their append-only
transition history. Requests are never deleted: cancellation and rejection
are terminal statuses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .workflow_policy import RequestStatus, UserRole
from .errors import NotFoundError, ValidationError


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class LoanRequest(StorageRecord):
    """A customer's application to borrow against a pledged asset"""
    customer_id: str
    district: str
    requested_amount: Money
    asset_description: str
    status: RequestStatus = RequestStatus.PENDING
    request_number: str = ""
    asset_type: str = ""

    # Offer (all None until an offer is made)
    offered_amount: Optional[Money] = None
    offered_tenure_months: Optional[int] = None
    offered_interest_rate: Optional[Decimal] = None

    agent_id: Optional[str] = None
    inspection_scheduled_at: Optional[datetime] = None
    bank_details: Optional[Dict[str, str]] = None
    disbursement_reference: Optional[str] = None
    notes: Optional[str] = None

    @property
    def has_offer(self) -> bool:
        return (
            self.offered_amount is not None
            and self.offered_tenure_months is not None
            and self.offered_interest_rate is not None
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'customer_id': self.customer_id,
            'district': self.district,
            'requested_amount': str(self.requested_amount.amount),
            'currency': self.requested_amount.currency.code,
            'asset_description': self.asset_description,
            'asset_type': self.asset_type,
            'status': self.status.value,
            'request_number': self.request_number,
            'offered_amount': str(self.offered_amount.amount) if self.offered_amount else None,
            'offered_tenure_months': self.offered_tenure_months,
            'offered_interest_rate': str(self.offered_interest_rate) if self.offered_interest_rate is not None else None,
            'agent_id': self.agent_id,
            'inspection_scheduled_at': self.inspection_scheduled_at.isoformat() if self.inspection_scheduled_at else None,
            'bank_details': self.bank_details,
            'disbursement_reference': self.disbursement_reference,
            'notes': self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanRequest':
        currency = Currency[data.get('currency', 'INR')]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            customer_id=data['customer_id'],
            district=data['district'],
            requested_amount=Money(Decimal(data['requested_amount']), currency),
            asset_description=data['asset_description'],
            asset_type=data.get('asset_type', ''),
            status=RequestStatus(data['status']),
            request_number=data.get('request_number', ''),
            offered_amount=Money(Decimal(data['offered_amount']), currency) if data.get('offered_amount') else None,
            offered_tenure_months=data.get('offered_tenure_months'),
            offered_interest_rate=(
                Decimal(data['offered_interest_rate']) if data.get('offered_interest_rate') is not None else None
            ),
            agent_id=data.get('agent_id'),
            inspection_scheduled_at=_parse_dt(data.get('inspection_scheduled_at')),
            bank_details=data.get('bank_details'),
            disbursement_reference=data.get('disbursement_reference'),
            notes=data.get('notes'),
        )


@dataclass
class HistoryEntry(StorageRecord):
    """One accepted transition; written in the same transaction as the status change"""
    request_id: str
    action_id: str
    actor_id: str
    actor_role: UserRole
    from_status: RequestStatus
    to_status: RequestStatus
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def timestamp(self) -> datetime:
        return self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'request_id': self.request_id,
            'action_id': self.action_id,
            'actor_id': self.actor_id,
            'actor_role': self.actor_role.value,
            'from_status': self.from_status.value,
            'to_status': self.to_status.value,
            'metadata': self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HistoryEntry':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            request_id=data['request_id'],
            action_id=data['action_id'],
            actor_id=data['actor_id'],
            actor_role=UserRole(data['actor_role']),
            from_status=RequestStatus(data['from_status']),
            to_status=RequestStatus(data['to_status']),
            metadata=data.get('metadata') or {},
        )


class RequestRepository:
    """Storage access for loan requests and their history"""

    REQUEST_NUMBER_BASE = 1000

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.requests_table = "loan_requests"
        self.history_table = "request_history"

    def create(self, customer_id: str, district: str, requested_amount: Money,
               asset_description: str, asset_type: str = "", notes: Optional[str] = None) -> LoanRequest:
        if not requested_amount.is_positive():
            raise ValidationError("Requested amount must be positive",
                                  {"requested_amount": str(requested_amount.amount)})
        if not district:
            raise ValidationError("District is required")
        if not asset_description or not asset_description.strip():
            raise ValidationError("Asset description is required")

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            number = self.REQUEST_NUMBER_BASE + self.storage.count(self.requests_table) + 1
            request = LoanRequest(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                customer_id=customer_id,
                district=district,
                requested_amount=requested_amount,
                asset_description=asset_description.strip(),
                asset_type=asset_type,
                request_number=f"REQ{number}",
                notes=notes,
            )
            self.save(request)
        return request

    def save(self, request: LoanRequest) -> None:
        self.storage.save(self.requests_table, request.id, request.to_dict())

    def find(self, request_id: str) -> Optional[LoanRequest]:
        data = self.storage.load(self.requests_table, request_id)
        return LoanRequest.from_dict(data) if data else None

    def get(self, request_id: str) -> LoanRequest:
        request = self.find(request_id)
        if request is None:
            raise NotFoundError(f"Loan request {request_id} not found", {"request_id": request_id})
        return request

    def list_for_customer(self, customer_id: str) -> List[LoanRequest]:
        rows = self.storage.find(self.requests_table, {'customer_id': customer_id})
        return sorted((LoanRequest.from_dict(r) for r in rows), key=lambda r: r.created_at)

    def append_history(self, entry: HistoryEntry) -> None:
        self.storage.save(self.history_table, entry.id, entry.to_dict())

    def history(self, request_id: str) -> List[HistoryEntry]:
        rows = self.storage.find(self.history_table, {'request_id': request_id})
        return sorted((HistoryEntry.from_dict(r) for r in rows), key=lambda e: e.created_at)
