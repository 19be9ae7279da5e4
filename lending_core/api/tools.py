"""
Stateless calculators
"""

from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends

from .dependencies import get_system
from .schemas import EMICalculatorRequest, to_decimal
from ..amortization import add_months, calculate_schedule
from ..errors import ValidationError
from ..system import LendingSystem


router = APIRouter()


@router.post("/emi-calculator")
async def emi_calculator(
    body: EMICalculatorRequest,
    system: LendingSystem = Depends(get_system)
):
    """Full amortization schedule for the given terms"""
    if body.first_payment_date:
        try:
            first = date.fromisoformat(body.first_payment_date)
        except ValueError:
            raise ValidationError(f"Invalid date: {body.first_payment_date}", {"field": "first_payment_date"})
    else:
        first = add_months(datetime.now(timezone.utc).date(), 1)

    schedule = calculate_schedule(
        to_decimal(body.principal, "principal"),
        to_decimal(body.annual_rate, "annual_rate"),
        body.tenure_months,
        first,
        currency=system.currency,
    )
    return schedule.to_dict()
