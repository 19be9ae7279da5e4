"""
Workflow Engine Module

Applies actions to loan requests according to the workflow policy table.
A transition is validated (vocabulary, guards, inputs) before any write, then
committed in one transaction together with its effect and history entry.
Events and notification jobs go out only after the commit.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging
import uuid

from .currency import Money
from .errors import ErrorKind, LendingError, TransactionConflictError, ValidationError
from .events import DomainEvent, EventDispatcher
from .loan_requests import HistoryEntry, LoanRequest, RequestRepository
from .loans import Loan, LoanBook, LoanRepository, LoanStatus
from .logging_config import log_action
from .notifications import NotificationQueue, REQUEST_STATUS_CHANGED, REQUEST_SUBMITTED
from .storage import StorageInterface, run_in_transaction
from .workflow_policy import (
    Actor, Effect, RequestStatus, WorkflowAction, WorkflowState, WORKFLOW_MATRIX,
    check_guards, find_action, first_missing_input, get_available_actions, get_status_description,
)


logger = logging.getLogger("lending.workflows")


class _StaleRequest(Exception):
    """Request status moved between validation and commit"""


@dataclass
class TransitionResult:
    success: bool
    new_status: Optional[RequestStatus] = None
    history_entry: Optional[HistoryEntry] = None
    loan: Optional[Loan] = None
    error: Optional[ErrorKind] = None
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: ErrorKind, message: str, **details) -> 'TransitionResult':
        return cls(success=False, error=error, message=message, details=details)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'success': self.success,
            'new_status': self.new_status.value if self.new_status else None,
            'message': self.message,
        }
        if self.history_entry:
            result['history_entry'] = self.history_entry.to_dict()
        if self.loan:
            result['loan_id'] = self.loan.id
        if self.error:
            result['error'] = self.error.value
        if self.details:
            result['details'] = self.details
        return result


@dataclass
class ActionAvailability:
    """One vocabulary entry and whether this actor may run it right now"""
    action: WorkflowAction
    permitted: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = self.action.to_dict()
        result['permitted'] = self.permitted
        if self.reason:
            result['reason'] = self.reason
        return result


@dataclass
class RequestState:
    request: LoanRequest
    history: List[HistoryEntry]
    loan: Optional[Loan] = None

    @property
    def status_description(self) -> str:
        return get_status_description(self.request.status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'request': self.request.to_dict(),
            'status_description': self.status_description,
            'history': [entry.to_dict() for entry in self.history],
            'loan': self.loan.to_dict() if self.loan else None,
        }


def _parse_date(value: Any, name: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as e:
        raise ValidationError(f"Invalid date for {name}: {value!r}", {"field": name}) from e


def _history_metadata(inputs: Dict[str, Any]) -> Dict[str, Any]:
    """Inputs as recorded in history; account numbers are masked"""
    metadata = {}
    for key, value in inputs.items():
        if key == "account_number":
            value = f"****{str(value)[-4:]}"
        elif isinstance(value, (date, datetime, Decimal)):
            value = value.isoformat() if not isinstance(value, Decimal) else str(value)
        metadata[key] = value
    return metadata


class WorkflowEngine:
    """Role-gated state machine for loan requests"""

    def __init__(self, storage: StorageInterface,
                 queue: Optional[NotificationQueue] = None,
                 dispatcher: Optional[EventDispatcher] = None,
                 matrix: Optional[Dict[RequestStatus, WorkflowState]] = None,
                 company_name: str = "FundifyHub",
                 transaction_retries: int = 3):
        self.storage = storage
        self.requests = RequestRepository(storage)
        self.loans = LoanRepository(storage)
        self.loan_book = LoanBook(self.loans)
        self.queue = queue
        self.dispatcher = dispatcher
        self.matrix = matrix or WORKFLOW_MATRIX
        self.company_name = company_name
        self.transaction_retries = transaction_retries

    # ------------------------------------------------------------------
    # Submission and queries
    # ------------------------------------------------------------------

    def submit_request(self, customer_id: str, district: str, requested_amount: Money,
                       asset_description: str, asset_type: str = "",
                       notes: Optional[str] = None) -> LoanRequest:
        request = self.requests.create(customer_id, district, requested_amount,
                                       asset_description, asset_type, notes)
        log_action(logger, "info", f"Request {request.request_number} submitted",
                   user_id=customer_id, action="submit-request", resource=f"request:{request.id}")

        if self.dispatcher:
            self.dispatcher.emit(DomainEvent.REQUEST_SUBMITTED, "loan_request", request.id, {
                'request_number': request.request_number,
                'district': district,
                'amount': str(requested_amount.amount),
            })
        self._notify(REQUEST_SUBMITTED, {
            'recipient_id': customer_id,
            'request_id': request.id,
            'request_number': request.request_number,
            'amount': str(requested_amount.amount),
            'district': district,
            'company_name': self.company_name,
        })
        return request

    def available_actions(self, request_id: str, actor: Actor) -> List[ActionAvailability]:
        """The actor's full vocabulary for the request's status, with guard outcomes"""
        request = self.requests.get(request_id)
        result = []
        for action in get_available_actions(request.status, actor.role, self.matrix):
            reason = check_guards(action, request, actor)
            result.append(ActionAvailability(action=action, permitted=reason is None, reason=reason))
        return result

    def get_request_state(self, request_id: str) -> RequestState:
        request = self.requests.get(request_id)
        return RequestState(
            request=request,
            history=self.requests.history(request_id),
            loan=self.loans.find_loan_by_request(request_id),
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def apply(self, request_id: str, action_id: str, actor: Actor,
              inputs: Optional[Dict[str, Any]] = None,
              correlation_id: Optional[str] = None) -> TransitionResult:
        """
        Apply an action to a request.

        Failures are returned, not raised: UNKNOWN_ACTION when the action is
        outside the role's vocabulary for the current status, FORBIDDEN on the
        first failing guard, MISSING_INPUT naming the field, NOT_FOUND,
        VALIDATION from an effect, TRANSACTION_CONFLICT on a concurrent change.
        """
        inputs = dict(inputs or {})
        request = self.requests.find(request_id)
        if request is None:
            return TransitionResult.failure(ErrorKind.NOT_FOUND, f"Loan request {request_id} not found")

        action = find_action(request.status, actor.role, action_id, self.matrix)
        if action is None:
            return TransitionResult.failure(
                ErrorKind.UNKNOWN_ACTION,
                f"Action '{action_id}' is not available for this request",
                action_id=action_id,
            )

        reason = check_guards(action, request, actor)
        if reason:
            return TransitionResult.failure(ErrorKind.FORBIDDEN, reason, action_id=action_id)

        missing = first_missing_input(action, inputs)
        if missing:
            return TransitionResult.failure(
                ErrorKind.MISSING_INPUT,
                f"Missing or invalid input: {missing}",
                field=missing,
            )

        expected_status = request.status
        target = action.target_status

        def transition():
            current = self.requests.get(request_id)
            if current.status != expected_status:
                raise _StaleRequest(current.status)
            loan = self._apply_effect(action, current, inputs)
            current.status = target
            current.touch()
            self.requests.save(current)

            entry = HistoryEntry(
                id=str(uuid.uuid4()),
                created_at=current.updated_at,
                updated_at=current.updated_at,
                request_id=current.id,
                action_id=action.id,
                actor_id=actor.id,
                actor_role=actor.role,
                from_status=expected_status,
                to_status=target,
                metadata=_history_metadata(inputs),
            )
            self.requests.append_history(entry)
            return current, entry, loan

        try:
            updated, entry, loan = run_in_transaction(self.storage, transition, self.transaction_retries)
        except _StaleRequest as e:
            return TransitionResult.failure(
                ErrorKind.TRANSACTION_CONFLICT,
                f"Request changed to {e.args[0].value} while applying '{action_id}'; reload and retry",
            )
        except TransactionConflictError as e:
            return TransitionResult.failure(ErrorKind.TRANSACTION_CONFLICT, e.message)
        except LendingError as e:
            return TransitionResult.failure(e.kind, e.message, **e.details)

        log_action(logger, "info",
                   f"{updated.request_number}: {expected_status.value} -> {target.value} via {action.id}",
                   user_id=actor.id, action=action.id, resource=f"request:{updated.id}",
                   correlation_id=correlation_id)
        self._after_commit(updated, entry, loan)

        return TransitionResult(
            success=True,
            new_status=target,
            history_entry=entry,
            loan=loan,
            message=f"Request moved to {target.value}",
        )

    def apply_system_action(self, request_id: str, action_id: str,
                            inputs: Optional[Dict[str, Any]] = None) -> TransitionResult:
        """Cascade an automated action; failures are logged, not raised"""
        result = self.apply(request_id, action_id, Actor.system(), inputs)
        if not result.success:
            logger.info(f"System action {action_id} not applied to request {request_id}: "
                        f"{result.error.value if result.error else ''} {result.message}")
        return result

    def _apply_effect(self, action: WorkflowAction, request: LoanRequest,
                      inputs: Dict[str, Any]) -> Optional[Loan]:
        if action.effect == Effect.RECORD_OFFER:
            request.offered_amount = Money(Decimal(str(inputs['amount'])), request.requested_amount.currency)
            request.offered_tenure_months = int(Decimal(str(inputs['tenure_months'])))
            request.offered_interest_rate = Decimal(str(inputs['interest_rate']))
        elif action.effect == Effect.ASSIGN_AGENT:
            request.agent_id = str(inputs['agent_id'])
            scheduled_at = inputs.get('scheduled_at')
            if scheduled_at:
                try:
                    request.inspection_scheduled_at = (
                        scheduled_at if isinstance(scheduled_at, datetime)
                        else datetime.fromisoformat(str(scheduled_at))
                    )
                except ValueError as e:
                    raise ValidationError(f"Invalid scheduled_at: {scheduled_at!r}",
                                          {"field": "scheduled_at"}) from e
        elif action.effect == Effect.RECORD_BANK_DETAILS:
            account_number = str(inputs['account_number'])
            request.bank_details = {
                'account_holder_name': str(inputs['account_holder_name']),
                'account_number_last4': account_number[-4:],
                'ifsc_code': str(inputs['ifsc_code']).upper(),
            }
        elif action.effect == Effect.RECORD_DISBURSEMENT:
            request.disbursement_reference = str(inputs['transaction_reference'])
        elif action.effect == Effect.OPEN_LOAN:
            return self.loan_book.open_loan(
                request,
                disbursed_date=_parse_date(inputs.get('disbursed_date'), 'disbursed_date'),
                first_payment_date=_parse_date(inputs.get('first_payment_date'), 'first_payment_date'),
            )
        elif action.effect == Effect.REQUIRE_LOAN_COMPLETED:
            loan = self._require_loan(request)
            if loan.status != LoanStatus.COMPLETED:
                raise ValidationError(
                    f"Loan {loan.id} still has {loan.remaining_balance} outstanding",
                    {"loan_id": loan.id, "loan_status": loan.status.value},
                )
        elif action.effect == Effect.REQUIRE_OVERDUE_CLEARED:
            loan = self._require_loan(request)
            if loan.overdue_count:
                raise ValidationError(
                    f"Loan {loan.id} still has {loan.overdue_count} overdue installment(s)",
                    {"loan_id": loan.id, "overdue_count": loan.overdue_count},
                )
        return None

    def _require_loan(self, request: LoanRequest) -> Loan:
        loan = self.loans.find_loan_by_request(request.id)
        if loan is None:
            raise ValidationError(f"Request {request.request_number} has no loan",
                                  {"request_id": request.id})
        return loan

    def _after_commit(self, request: LoanRequest, entry: HistoryEntry, loan: Optional[Loan]) -> None:
        if self.dispatcher:
            self.dispatcher.emit(DomainEvent.REQUEST_TRANSITIONED, "loan_request", request.id, {
                'action_id': entry.action_id,
                'actor_id': entry.actor_id,
                'from_status': entry.from_status.value,
                'to_status': entry.to_status.value,
                'history_entry_id': entry.id,
            })
            if loan:
                self.dispatcher.emit(DomainEvent.LOAN_OPENED, "loan", loan.id, {
                    'request_id': request.id,
                    'emi_amount': str(loan.emi_amount.amount),
                    'tenure_months': loan.tenure_months,
                })

        self._notify(REQUEST_STATUS_CHANGED, {
            'recipient_id': request.customer_id,
            'request_id': request.id,
            'request_number': request.request_number,
            'previous_status': entry.from_status.value,
            'new_status': entry.to_status.value,
            'status_description': get_status_description(entry.to_status),
            'company_name': self.company_name,
        })

    def _notify(self, template_name: str, variables: Dict[str, Any]) -> None:
        """Fire-and-forget enqueue; a failure never affects the committed transition"""
        if self.queue is None:
            return
        try:
            self.queue.enqueue(template_name, variables)
        except Exception as e:
            logger.error(f"Failed to enqueue {template_name} notification: {e}")
