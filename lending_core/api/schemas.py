"""
Pydantic request schemas
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..currency import parse_decimal


def to_decimal(value: str, field: str) -> Decimal:
    return parse_decimal(value, field)


# Request schemas
class SubmitLoanRequest(BaseModel):
    amount: str = Field(..., description="Requested amount as decimal string")
    district: str
    asset_description: str
    asset_type: str = ""
    notes: Optional[str] = None


class ApplyActionRequest(BaseModel):
    inputs: Dict[str, Any] = Field(default_factory=dict)


# Payment schemas
class CreatePaymentOrderRequest(BaseModel):
    loan_id: str
    installment_id: str
    pay_ahead_count: int = Field(1, ge=1)
    amount: str = Field(..., description="Amount the customer expects to pay")
    mobile_number: Optional[str] = None


# Tools
class EMICalculatorRequest(BaseModel):
    principal: str
    annual_rate: str = Field(..., description="Annual interest rate in percent")
    tenure_months: int
    first_payment_date: Optional[str] = None  # ISO date string
