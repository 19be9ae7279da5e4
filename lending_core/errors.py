"""
Error taxonomy for the lending core.

Every error carries an ErrorKind so callers (API layer, job handlers) can
render a role-appropriate message without matching on exception classes.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    VALIDATION = "validation_error"
    UNKNOWN_ACTION = "unknown_action"
    FORBIDDEN = "forbidden"
    MISSING_INPUT = "missing_input"
    AMOUNT_MISMATCH = "amount_mismatch"
    SIGNATURE_INVALID = "signature_invalid"
    NOTHING_TO_APPLY = "nothing_to_apply"
    TRANSACTION_CONFLICT = "transaction_conflict"
    NOT_FOUND = "not_found"


class LendingError(Exception):
    """Base class for lending core errors"""
    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        result = {"error": self.kind.value, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(LendingError):
    """Malformed or out-of-range input"""
    kind = ErrorKind.VALIDATION


class ForbiddenError(LendingError):
    """A workflow guard (ownership, assignment, district) failed"""
    kind = ErrorKind.FORBIDDEN


class AmountMismatchError(LendingError):
    """Claimed amount disagrees with the amount computed from installments"""
    kind = ErrorKind.AMOUNT_MISMATCH


class SignatureInvalidError(LendingError):
    """Gateway callback signature did not verify"""
    kind = ErrorKind.SIGNATURE_INVALID


class NothingToApplyError(LendingError):
    """No pending or overdue installments remain"""
    kind = ErrorKind.NOTHING_TO_APPLY


class TransactionConflictError(LendingError):
    """Storage-level contention; safe to retry"""
    kind = ErrorKind.TRANSACTION_CONFLICT


class NotFoundError(LendingError):
    kind = ErrorKind.NOT_FOUND


class NotificationValidationError(ValidationError):
    """Template variables or channel-required fields are missing"""

    def __init__(self, message: str, missing: Optional[list] = None):
        super().__init__(message, {"missing": missing or []})
        self.missing = missing or []
