"""
Pydantic schemas for API requests

Required business fields are declared optional so that a missing customer
id or amount is reported by the ledger as a 400, not as a schema error.
"""

from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field


class CreateAccountRequest(BaseModel):
    customer_id: Optional[int] = None
    account_type: Optional[str] = None
    balance: Optional[Decimal] = Field(None, description="Opening balance, defaults to 0.00")
    currency_code: Optional[str] = Field(None, description="3-letter currency code")
    status: Optional[str] = Field(None, description="active, inactive or closed")


class UpdateAccountRequest(BaseModel):
    account_type: Optional[str] = None
    status: Optional[str] = Field(None, description="active, inactive or closed")


class AmountRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, description="Positive amount, two decimal places")
