"""
Shared API dependencies: the wired system, the calling actor, and the
mapping from lending error kinds to HTTP status codes.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from ..errors import ErrorKind, ForbiddenError
from ..loan_requests import LoanRequest
from ..system import LendingSystem
from ..workflow_policy import Actor, UserRole


ERROR_STATUS = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.MISSING_INPUT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.AMOUNT_MISMATCH: status.HTTP_400_BAD_REQUEST,
    ErrorKind.SIGNATURE_INVALID: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.UNKNOWN_ACTION: status.HTTP_409_CONFLICT,
    ErrorKind.NOTHING_TO_APPLY: status.HTTP_409_CONFLICT,
    ErrorKind.TRANSACTION_CONFLICT: status.HTTP_503_SERVICE_UNAVAILABLE,
}

ADMIN_ROLES = (UserRole.DISTRICT_ADMIN, UserRole.SUPER_ADMIN)


def http_status_for(kind: ErrorKind) -> int:
    return ERROR_STATUS.get(kind, status.HTTP_400_BAD_REQUEST)


def get_system(request: Request) -> LendingSystem:
    return request.app.state.system


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
    x_actor_districts: Optional[str] = Header(None),
) -> Actor:
    """Identity asserted by the upstream authentication layer"""
    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="X-Actor-Id and X-Actor-Role headers are required")
    try:
        role = UserRole(x_actor_role.upper())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST,
                            detail=f"Unknown role: {x_actor_role}")
    if role == UserRole.SYSTEM:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN,
                            detail="The SYSTEM role cannot be used over the API")
    districts = frozenset(d.strip() for d in (x_actor_districts or "").split(",") if d.strip())
    return Actor(id=x_actor_id, role=role, districts=districts)


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if actor.role not in ADMIN_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return actor


def ensure_can_view(actor: Actor, request: LoanRequest) -> None:
    """Customers see their own requests, agents their assignments, admins their districts"""
    if actor.role == UserRole.CUSTOMER and actor.id == request.customer_id:
        return
    if actor.role == UserRole.AGENT and actor.id == request.agent_id:
        return
    if actor.role in ADMIN_ROLES and actor.manages(request.district):
        return
    raise ForbiddenError("Not allowed to view this request", {"request_id": request.id})
