"""
Loan endpoints: summary, schedule, payments and current dues
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from .dependencies import ensure_can_view, get_actor, get_system
from ..system import LendingSystem
from ..workflow_policy import Actor


router = APIRouter()


def _load_visible_loan(loan_id: str, actor: Actor, system: LendingSystem):
    loan = system.loans.get_loan(loan_id)
    ensure_can_view(actor, system.requests.get(loan.request_id))
    return loan


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    actor: Actor = Depends(get_actor),
    system: LendingSystem = Depends(get_system)
):
    return _load_visible_loan(loan_id, actor, system).to_dict()


@router.get("/{loan_id}/schedule")
async def get_schedule(
    loan_id: str,
    actor: Actor = Depends(get_actor),
    system: LendingSystem = Depends(get_system)
):
    """Installment rows in sequence order"""
    loan = _load_visible_loan(loan_id, actor, system)
    return {
        "loan_id": loan.id,
        "emi_amount": str(loan.emi_amount.amount),
        "installments": [i.to_dict() for i in system.loans.installments(loan.id)],
    }


@router.get("/{loan_id}/payments")
async def get_payments(
    loan_id: str,
    actor: Actor = Depends(get_actor),
    system: LendingSystem = Depends(get_system)
):
    loan = _load_visible_loan(loan_id, actor, system)
    return {
        "loan_id": loan.id,
        "payments": [p.to_dict() for p in system.loans.payments_for_loan(loan.id)],
    }


@router.get("/{loan_id}/dues")
async def get_dues(
    loan_id: str,
    installment_id: str,
    pay_ahead_count: int = Query(1, ge=1),
    as_of: Optional[date] = None,
    actor: Actor = Depends(get_actor),
    system: LendingSystem = Depends(get_system)
):
    """Price what a payment order for these installments would cost today"""
    quote = system.payment_orders.quote(loan_id, installment_id, pay_ahead_count, actor.id, as_of)
    return quote.to_dict()
