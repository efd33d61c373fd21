"""Account schemas for request/response validation."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class AccountCreate(BaseModel):
    name: str
    type: str = "checking"  # checking, savings, credit
    currency: str = "USD"
    balance: Decimal = Decimal("0.00")


class AccountResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    currency: str
    balance: Decimal
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}
