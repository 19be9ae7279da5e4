"""
Payment endpoints: checkout orders and the PhonePe callback
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status

from .dependencies import get_actor, get_system
from .schemas import CreatePaymentOrderRequest, to_decimal
from ..system import LendingSystem
from ..workflow_policy import Actor, UserRole


router = APIRouter()


@router.post("/orders", status_code=status.HTTP_201_CREATED)
async def create_payment_order(
    body: CreatePaymentOrderRequest,
    actor: Actor = Depends(get_actor),
    system: LendingSystem = Depends(get_system)
):
    """Create a checkout for one or more consecutive installments"""
    if actor.role != UserRole.CUSTOMER:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only customers can pay installments")

    order = system.payment_orders.create_order(
        loan_id=body.loan_id,
        installment_id=body.installment_id,
        pay_ahead_count=body.pay_ahead_count,
        claimed_amount=to_decimal(body.amount, "amount"),
        customer_id=actor.id,
        mobile_number=body.mobile_number,
    )
    return order.to_dict()


@router.post("/phonepe/webhook")
async def phonepe_webhook(
    request: Request,
    system: LendingSystem = Depends(get_system)
):
    """Gateway server-to-server callback; authenticated by X-VERIFY only"""
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Callback body must be JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Callback body must be an object")

    ack = system.callbacks.handle(body, dict(request.headers))
    return ack.to_dict()
