"""
Loan request endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, status

from .dependencies import ensure_can_view, get_actor, get_system, http_status_for
from .schemas import ApplyActionRequest, SubmitLoanRequest, to_decimal
from ..currency import Money
from ..system import LendingSystem
from ..workflow_policy import Actor, UserRole


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_request(
    body: SubmitLoanRequest,
    actor: Actor = Depends(get_actor),
    system: LendingSystem = Depends(get_system)
):
    """Submit a new loan request (customers only)"""
    if actor.role != UserRole.CUSTOMER:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only customers can submit requests")

    request = system.workflow.submit_request(
        customer_id=actor.id,
        district=body.district,
        requested_amount=Money(to_decimal(body.amount, "amount"), system.currency),
        asset_description=body.asset_description,
        asset_type=body.asset_type,
        notes=body.notes,
    )
    return request.to_dict()


@router.get("")
async def list_my_requests(
    actor: Actor = Depends(get_actor),
    system: LendingSystem = Depends(get_system)
):
    """The calling customer's requests, oldest first"""
    if actor.role != UserRole.CUSTOMER:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only customers have their own requests")
    return {"requests": [r.to_dict() for r in system.requests.list_for_customer(actor.id)]}


@router.get("/{request_id}")
async def get_request(
    request_id: str,
    actor: Actor = Depends(get_actor),
    system: LendingSystem = Depends(get_system)
):
    """Current state: request, history and loan summary"""
    state = system.workflow.get_request_state(request_id)
    ensure_can_view(actor, state.request)
    return state.to_dict()


@router.get("/{request_id}/actions")
async def list_actions(
    request_id: str,
    actor: Actor = Depends(get_actor),
    system: LendingSystem = Depends(get_system)
):
    """Actions in the caller's vocabulary, each with whether it is permitted"""
    ensure_can_view(actor, system.requests.get(request_id))
    availability = system.workflow.available_actions(request_id, actor)
    return {
        "request_id": request_id,
        "actions": [a.to_dict() for a in availability],
    }


@router.post("/{request_id}/actions/{action_id}")
async def apply_action(
    request_id: str,
    action_id: str,
    body: ApplyActionRequest = ApplyActionRequest(),
    actor: Actor = Depends(get_actor),
    system: LendingSystem = Depends(get_system)
):
    """Apply a workflow action"""
    result = system.workflow.apply(request_id, action_id, actor, body.inputs)
    if not result.success:
        raise HTTPException(status_code=http_status_for(result.error), detail=result.to_dict())
    return result.to_dict()
