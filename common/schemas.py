from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Annotated, Optional
from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator

CENT = Decimal("0.01")

# amounts leave the service as JSON numbers, not strings
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

class Credentials(BaseModel):
    login: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

class WithdrawRequest(BaseModel):
    order: str = Field(..., min_length=1)
    sum: Money

    @field_validator("sum")
    @classmethod
    def round_to_cents(cls, value: Decimal) -> Decimal:
        try:
            value = value.quantize(CENT, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise ValueError("sum is out of range")
        if value <= 0:
            raise ValueError("sum must be positive")
        return value

class OrderOut(BaseModel):
    number: str
    status: str
    accrual: Optional[Money] = None
    uploaded_at: datetime

class BalanceOut(BaseModel):
    current: Money
    withdrawn: Money

class WithdrawalOut(BaseModel):
    order: str
    sum: Money
    processed_at: datetime

class AccrualResponse(BaseModel):
    """Body of a 200 answer from the accrual system"""
    model_config = ConfigDict(extra="ignore")

    order: str
    status: str
    accrual: Optional[Decimal] = None
