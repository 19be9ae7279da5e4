"""
Workflow Policy Module

Static table of what each role may do to a loan request in each status.
Every action is a data value carrying its target, guards, required inputs and
effect, so the permitted-action set can be listed, filtered and tested
without executing anything.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


class RequestStatus(Enum):
    # Submission & review
    PENDING = "PENDING"
    UNDER_REVIEW = "UNDER_REVIEW"
    MORE_INFO_REQUIRED = "MORE_INFO_REQUIRED"

    # Offer
    OFFER_MADE = "OFFER_MADE"
    OFFER_ACCEPTED = "OFFER_ACCEPTED"
    OFFER_DECLINED = "OFFER_DECLINED"
    OFFER_EXPIRED = "OFFER_EXPIRED"

    # Inspection
    INSPECTION_SCHEDULED = "INSPECTION_SCHEDULED"
    INSPECTION_RESCHEDULE_REQUESTED = "INSPECTION_RESCHEDULE_REQUESTED"
    INSPECTION_IN_PROGRESS = "INSPECTION_IN_PROGRESS"
    INSPECTION_COMPLETED = "INSPECTION_COMPLETED"
    CUSTOMER_NOT_AVAILABLE = "CUSTOMER_NOT_AVAILABLE"
    ASSET_MISMATCH = "ASSET_MISMATCH"
    AGENT_NOT_AVAILABLE = "AGENT_NOT_AVAILABLE"

    # Agreement & disbursement
    APPROVED = "APPROVED"
    PENDING_SIGNATURE = "PENDING_SIGNATURE"
    PENDING_BANK_DETAILS = "PENDING_BANK_DETAILS"
    BANK_DETAILS_SUBMITTED = "BANK_DETAILS_SUBMITTED"
    PROCESSING_LOAN = "PROCESSING_LOAN"
    TRANSFERRING_AMOUNT = "TRANSFERRING_AMOUNT"
    TRANSFER_FAILED = "TRANSFER_FAILED"
    AMOUNT_DISBURSED = "AMOUNT_DISBURSED"

    # Repayment
    ACTIVE = "ACTIVE"
    PAYMENT_OVERDUE = "PAYMENT_OVERDUE"

    # Terminal
    DEFAULTED = "DEFAULTED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES: FrozenSet[RequestStatus] = frozenset({
    RequestStatus.CANCELLED,
    RequestStatus.REJECTED,
    RequestStatus.COMPLETED,
    RequestStatus.DEFAULTED,
})


class UserRole(Enum):
    CUSTOMER = "CUSTOMER"
    DISTRICT_ADMIN = "DISTRICT_ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"
    AGENT = "AGENT"
    SYSTEM = "SYSTEM"


class Guard(Enum):
    """Eligibility predicates; evaluated in declaration order"""
    OWNERSHIP = "ownership"
    ASSIGNMENT = "assignment"
    DISTRICT = "district"


GUARD_ORDER: Tuple[Guard, ...] = (Guard.OWNERSHIP, Guard.ASSIGNMENT, Guard.DISTRICT)


class Effect(Enum):
    """Side effects and loan checks applied inside the transition's transaction"""
    RECORD_OFFER = "record_offer"
    ASSIGN_AGENT = "assign_agent"
    RECORD_BANK_DETAILS = "record_bank_details"
    RECORD_DISBURSEMENT = "record_disbursement"
    OPEN_LOAN = "open_loan"
    REQUIRE_LOAN_COMPLETED = "require_loan_completed"
    REQUIRE_OVERDUE_CLEARED = "require_overdue_cleared"


@dataclass(frozen=True)
class Actor:
    """Whoever is asking: identity, role and managed districts"""
    id: str
    role: UserRole
    districts: FrozenSet[str] = frozenset()

    @classmethod
    def system(cls) -> 'Actor':
        return cls(id="system", role=UserRole.SYSTEM)

    def manages(self, district: str) -> bool:
        if self.role == UserRole.SUPER_ADMIN:
            return True
        return self.role == UserRole.DISTRICT_ADMIN and district in self.districts


@dataclass(frozen=True)
class WorkflowAction:
    """A named operation on a request and the status it moves the request to"""
    id: str
    label: str
    target_status: RequestStatus
    guards: Tuple[Guard, ...] = ()
    required_inputs: Tuple[str, ...] = ()
    effect: Optional[Effect] = None
    priority: int = 99
    requires_confirmation: bool = False
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'label': self.label,
            'target_status': self.target_status.value,
            'guards': [g.value for g in self.guards],
            'required_inputs': list(self.required_inputs),
            'priority': self.priority,
            'requires_confirmation': self.requires_confirmation,
            'description': self.description,
        }


@dataclass(frozen=True)
class WorkflowState:
    description: str
    customer_actions: Tuple[WorkflowAction, ...] = ()
    admin_actions: Tuple[WorkflowAction, ...] = ()
    agent_actions: Tuple[WorkflowAction, ...] = ()
    system_actions: Tuple[WorkflowAction, ...] = ()

    def actions_for(self, role: UserRole) -> Tuple[WorkflowAction, ...]:
        if role == UserRole.CUSTOMER:
            return self.customer_actions
        if role in (UserRole.DISTRICT_ADMIN, UserRole.SUPER_ADMIN):
            return self.admin_actions
        if role == UserRole.AGENT:
            return self.agent_actions
        if role == UserRole.SYSTEM:
            return self.system_actions
        return ()


# ============================================
# Input validation
# ============================================

OFFER_INPUTS = ("amount", "tenure_months", "interest_rate")
BANK_DETAIL_INPUTS = ("account_holder_name", "account_number", "ifsc_code")

POSITIVE_DECIMAL_INPUTS = frozenset({"amount", "interest_rate"})
POSITIVE_INTEGER_INPUTS = frozenset({"tenure_months"})


def _finite_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return parsed if parsed.is_finite() else None


def validate_input(name: str, value: Any) -> bool:
    """True when an input is present and, for numeric inputs, finite and positive"""
    if value is None:
        return False
    if name in POSITIVE_DECIMAL_INPUTS:
        as_decimal = _finite_decimal(value)
        return as_decimal is not None and as_decimal > 0
    if name in POSITIVE_INTEGER_INPUTS:
        as_decimal = _finite_decimal(value)
        return as_decimal is not None and as_decimal > 0 and as_decimal == as_decimal.to_integral_value()
    if isinstance(value, str):
        return bool(value.strip())
    return True


def first_missing_input(action: WorkflowAction, inputs: Dict[str, Any]) -> Optional[str]:
    for name in action.required_inputs:
        if not validate_input(name, inputs.get(name)):
            return name
    return None


def check_guards(action: WorkflowAction, request: Any, actor: Actor) -> Optional[str]:
    """Reason for the first failing guard, or None when all pass"""
    for guard in GUARD_ORDER:
        if guard not in action.guards:
            continue
        if guard == Guard.OWNERSHIP and actor.id != request.customer_id:
            return "Only the customer who owns this request can perform this action"
        if guard == Guard.ASSIGNMENT and actor.id != request.agent_id:
            return "Only the agent assigned to this request can perform this action"
        if guard == Guard.DISTRICT and not actor.manages(request.district):
            return f"You do not manage district {request.district}"
    return None


# ============================================
# Action constructors
# ============================================

_S = RequestStatus
_OWN = (Guard.OWNERSHIP,)
_ASSIGNED = (Guard.ASSIGNMENT,)
_DISTRICT = (Guard.DISTRICT,)


def _customer(id: str, label: str, target: RequestStatus, priority: int, **kwargs) -> WorkflowAction:
    return WorkflowAction(id=id, label=label, target_status=target, guards=_OWN, priority=priority, **kwargs)


def _admin(id: str, label: str, target: RequestStatus, priority: int, **kwargs) -> WorkflowAction:
    return WorkflowAction(id=id, label=label, target_status=target, guards=_DISTRICT, priority=priority, **kwargs)


def _agent(id: str, label: str, target: RequestStatus, priority: int, **kwargs) -> WorkflowAction:
    return WorkflowAction(id=id, label=label, target_status=target, guards=_ASSIGNED, priority=priority, **kwargs)


def _system(id: str, label: str, target: RequestStatus, priority: int = 99, **kwargs) -> WorkflowAction:
    return WorkflowAction(id=id, label=label, target_status=target, priority=priority, **kwargs)


_REASON = ("reason",)
_LOAN_SETTLED = Effect.REQUIRE_LOAN_COMPLETED
_OVERDUE_CLEARED = Effect.REQUIRE_OVERDUE_CLEARED


def _admin_reject() -> WorkflowAction:
    return _admin("reject", "Reject", _S.REJECTED, 5, required_inputs=_REASON, requires_confirmation=True)


def _admin_cancel() -> WorkflowAction:
    return _admin("cancel", "Cancel Request", _S.CANCELLED, 10, required_inputs=_REASON, requires_confirmation=True)


def _offer(id: str, label: str, priority: int) -> WorkflowAction:
    return _admin(id, label, _S.OFFER_MADE, priority, required_inputs=OFFER_INPUTS, effect=Effect.RECORD_OFFER)


def _assign(id: str, label: str, priority: int) -> WorkflowAction:
    return _admin(id, label, _S.INSPECTION_SCHEDULED, priority, required_inputs=("agent_id",),
                  effect=Effect.ASSIGN_AGENT)


# ============================================
# Complete workflow matrix
# ============================================

WORKFLOW_MATRIX: Dict[RequestStatus, WorkflowState] = {
    _S.PENDING: WorkflowState(
        description="Customer submitted request, waiting for admin to review",
        customer_actions=(
            _customer("withdraw-request", "Withdraw Request", _S.CANCELLED, 10, requires_confirmation=True),
        ),
        admin_actions=(
            _admin("start-review", "Start Review", _S.UNDER_REVIEW, 1),
            _admin_reject(),
        ),
    ),
    _S.UNDER_REVIEW: WorkflowState(
        description="Admin is reviewing the request",
        admin_actions=(
            _offer("make-offer", "Make Offer", 1),
            _admin("request-more-info", "Request More Info", _S.MORE_INFO_REQUIRED, 2, required_inputs=_REASON),
            _admin_reject(),
        ),
    ),
    _S.MORE_INFO_REQUIRED: WorkflowState(
        description="Admin needs additional documents from customer",
        customer_actions=(
            _customer("submit-info", "Submit Additional Info", _S.PENDING, 1, required_inputs=("notes",)),
            _customer("withdraw", "Withdraw Request", _S.CANCELLED, 10, requires_confirmation=True),
        ),
        admin_actions=(
            _admin("resume-review", "Resume Review", _S.UNDER_REVIEW, 2),
            _admin_cancel(),
        ),
    ),
    _S.OFFER_MADE: WorkflowState(
        description="Offer sent to customer, awaiting response",
        customer_actions=(
            _customer("accept-offer", "Accept Offer", _S.OFFER_ACCEPTED, 1),
            _customer("decline-offer", "Decline Offer", _S.OFFER_DECLINED, 2, required_inputs=_REASON),
        ),
        admin_actions=(
            _offer("revise-offer", "Revise Offer", 2),
            _admin("cancel-offer", "Cancel Offer", _S.CANCELLED, 10, required_inputs=_REASON,
                   requires_confirmation=True),
        ),
        system_actions=(
            _system("expire-offer", "Expire Offer", _S.OFFER_EXPIRED),
        ),
    ),
    _S.OFFER_ACCEPTED: WorkflowState(
        description="Customer accepted offer, admin must assign an inspection agent",
        admin_actions=(
            _assign("assign-agent", "Assign Agent", 1),
            _admin_cancel(),
        ),
    ),
    _S.OFFER_DECLINED: WorkflowState(
        description="Customer declined the offer",
        admin_actions=(
            _offer("make-new-offer", "Make New Offer", 1),
            _admin("close-request", "Close Request", _S.CANCELLED, 5),
        ),
    ),
    _S.OFFER_EXPIRED: WorkflowState(
        description="Offer expired without a customer response",
        admin_actions=(
            _admin("resend-offer", "Resend Offer", _S.OFFER_MADE, 1),
            _admin("close-request", "Close Request", _S.CANCELLED, 5),
        ),
    ),
    _S.INSPECTION_SCHEDULED: WorkflowState(
        description="Agent assigned, inspection scheduled",
        customer_actions=(
            _customer("request-reschedule", "Request Reschedule", _S.INSPECTION_RESCHEDULE_REQUESTED, 5,
                      required_inputs=_REASON),
            _customer("withdraw", "Withdraw Request", _S.CANCELLED, 10, requires_confirmation=True),
        ),
        admin_actions=(
            _assign("reassign-agent", "Reassign Agent", 5),
            _admin_cancel(),
        ),
        agent_actions=(
            _agent("start-inspection", "Start Inspection", _S.INSPECTION_IN_PROGRESS, 1),
            _agent("customer-not-available", "Customer Not Available", _S.CUSTOMER_NOT_AVAILABLE, 5,
                   required_inputs=_REASON),
            _agent("cancel-agent", "Cannot Attend", _S.AGENT_NOT_AVAILABLE, 10, required_inputs=_REASON),
        ),
    ),
    _S.INSPECTION_RESCHEDULE_REQUESTED: WorkflowState(
        description="Customer asked to reschedule the inspection",
        customer_actions=(
            _customer("withdraw", "Withdraw Request", _S.CANCELLED, 10, requires_confirmation=True),
        ),
        admin_actions=(
            _assign("reassign-agent", "Reassign Agent", 1),
            _admin_cancel(),
        ),
    ),
    _S.INSPECTION_IN_PROGRESS: WorkflowState(
        description="Agent is inspecting the asset",
        agent_actions=(
            _agent("complete-inspection", "Complete Inspection", _S.INSPECTION_COMPLETED, 1,
                   required_inputs=("notes",)),
            _agent("asset-mismatch", "Report Asset Mismatch", _S.ASSET_MISMATCH, 5, required_inputs=("notes",)),
        ),
    ),
    _S.INSPECTION_COMPLETED: WorkflowState(
        description="Inspection finished, agent must approve or reject",
        agent_actions=(
            _agent("approve", "Approve", _S.APPROVED, 1),
            _agent("reject", "Reject", _S.REJECTED, 2, required_inputs=_REASON),
        ),
    ),
    _S.CUSTOMER_NOT_AVAILABLE: WorkflowState(
        description="Customer was not available for the inspection",
        customer_actions=(
            _customer("reschedule", "Reschedule Inspection", _S.INSPECTION_SCHEDULED, 1),
        ),
        admin_actions=(
            _admin("reschedule", "Reschedule Inspection", _S.INSPECTION_SCHEDULED, 1),
            _admin_reject(),
            _admin_cancel(),
        ),
    ),
    _S.ASSET_MISMATCH: WorkflowState(
        description="Inspected asset does not match the description",
        customer_actions=(
            _customer("provide-explanation", "Provide Explanation", _S.ASSET_MISMATCH, 5,
                      required_inputs=("notes",)),
        ),
        admin_actions=(
            _offer("revise-offer", "Revise Offer", 1),
            _admin("reject", "Reject", _S.REJECTED, 2, required_inputs=_REASON, requires_confirmation=True),
            _assign("reschedule-inspection", "Reschedule Inspection", 5),
        ),
    ),
    _S.AGENT_NOT_AVAILABLE: WorkflowState(
        description="Assigned agent cannot attend, a new agent is needed",
        admin_actions=(
            _assign("reassign-agent", "Reassign Agent", 1),
            _admin_cancel(),
        ),
    ),
    _S.APPROVED: WorkflowState(
        description="Asset approved, agreement signature will be requested",
        system_actions=(
            _system("auto-request-signature", "Request Signature", _S.PENDING_SIGNATURE, 1),
        ),
    ),
    _S.PENDING_SIGNATURE: WorkflowState(
        description="Waiting for the customer to sign the loan agreement",
        customer_actions=(
            _customer("sign-agreement", "Sign Agreement", _S.PENDING_BANK_DETAILS, 1),
            _customer("refuse-signature", "Refuse to Sign", _S.CANCELLED, 10, required_inputs=_REASON,
                      requires_confirmation=True),
        ),
        system_actions=(
            _system("auto-cancel-signature", "Cancel Unsigned Agreement", _S.CANCELLED),
        ),
    ),
    _S.PENDING_BANK_DETAILS: WorkflowState(
        description="Waiting for the customer's bank account details",
        customer_actions=(
            _customer("submit-bank-details", "Submit Bank Details", _S.BANK_DETAILS_SUBMITTED, 1,
                      required_inputs=BANK_DETAIL_INPUTS, effect=Effect.RECORD_BANK_DETAILS),
        ),
        system_actions=(
            _system("auto-cancel-bank-details", "Cancel Missing Bank Details", _S.CANCELLED),
        ),
    ),
    _S.BANK_DETAILS_SUBMITTED: WorkflowState(
        description="Bank details received, ready for loan processing",
        admin_actions=(
            _admin("process-loan", "Process Loan", _S.PROCESSING_LOAN, 1),
            _admin("request-different-details", "Request Different Details", _S.PENDING_BANK_DETAILS, 5,
                   required_inputs=_REASON),
        ),
    ),
    _S.PROCESSING_LOAN: WorkflowState(
        description="Loan is being processed for disbursement",
        admin_actions=(
            _admin("transfer-amount", "Transfer Amount", _S.TRANSFERRING_AMOUNT, 1),
        ),
    ),
    _S.TRANSFERRING_AMOUNT: WorkflowState(
        description="Disbursement transfer in progress",
        admin_actions=(
            _admin("confirm-transfer", "Confirm Transfer", _S.AMOUNT_DISBURSED, 1,
                   required_inputs=("transaction_reference",), effect=Effect.RECORD_DISBURSEMENT),
            _admin("transfer-failed", "Transfer Failed", _S.TRANSFER_FAILED, 5, required_inputs=_REASON),
        ),
    ),
    _S.TRANSFER_FAILED: WorkflowState(
        description="Disbursement failed, customer must update bank details",
        customer_actions=(
            _customer("update-bank-details", "Update Bank Details", _S.BANK_DETAILS_SUBMITTED, 1,
                      required_inputs=BANK_DETAIL_INPUTS, effect=Effect.RECORD_BANK_DETAILS),
        ),
        admin_actions=(
            _admin_cancel(),
        ),
    ),
    _S.AMOUNT_DISBURSED: WorkflowState(
        description="Amount disbursed, EMI schedule must be created",
        admin_actions=(
            _admin("create-emi-schedule", "Create EMI Schedule", _S.ACTIVE, 1, effect=Effect.OPEN_LOAN),
        ),
        system_actions=(
            _system("auto-activate", "Activate Loan", _S.ACTIVE, 2, effect=Effect.OPEN_LOAN),
        ),
    ),
    _S.ACTIVE: WorkflowState(
        description="Loan active, EMIs being collected",
        admin_actions=(
            _admin("mark-overdue", "Mark Overdue", _S.PAYMENT_OVERDUE, 5),
            _admin("mark-completed", "Mark Completed", _S.COMPLETED, 10, requires_confirmation=True,
                   effect=_LOAN_SETTLED),
        ),
        system_actions=(
            _system("auto-overdue", "Flag Overdue", _S.PAYMENT_OVERDUE),
            _system("auto-complete", "Complete Loan", _S.COMPLETED, effect=_LOAN_SETTLED),
        ),
    ),
    _S.PAYMENT_OVERDUE: WorkflowState(
        description="One or more EMIs are overdue",
        admin_actions=(
            _admin("mark-paid", "Mark Paid", _S.ACTIVE, 1, effect=_OVERDUE_CLEARED),
            _admin("mark-defaulted", "Mark Defaulted", _S.DEFAULTED, 5, required_inputs=_REASON,
                   requires_confirmation=True),
        ),
        system_actions=(
            _system("auto-default", "Default Loan", _S.DEFAULTED),
            _system("auto-complete", "Complete Loan", _S.COMPLETED, effect=_LOAN_SETTLED),
            _system("auto-clear-overdue", "Clear Overdue", _S.ACTIVE, effect=_OVERDUE_CLEARED),
        ),
    ),
    _S.DEFAULTED: WorkflowState(description="Loan defaulted"),
    _S.COMPLETED: WorkflowState(description="Loan fully repaid"),
    _S.REJECTED: WorkflowState(description="Request rejected"),
    _S.CANCELLED: WorkflowState(description="Request cancelled"),
}


# ============================================
# Queries
# ============================================

def get_available_actions(status: RequestStatus, role: UserRole,
                          matrix: Optional[Dict[RequestStatus, WorkflowState]] = None) -> List[WorkflowAction]:
    """Every action in the role's vocabulary for a status, highest priority first"""
    state = (matrix or WORKFLOW_MATRIX).get(status)
    if state is None:
        return []
    return sorted(state.actions_for(role), key=lambda a: a.priority)


def find_action(status: RequestStatus, role: UserRole, action_id: str,
                matrix: Optional[Dict[RequestStatus, WorkflowState]] = None) -> Optional[WorkflowAction]:
    for action in get_available_actions(status, role, matrix):
        if action.id == action_id:
            return action
    return None


def get_status_description(status: RequestStatus) -> str:
    state = WORKFLOW_MATRIX.get(status)
    return state.description if state else status.value
