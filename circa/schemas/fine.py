from pydantic import BaseModel, Field
from typing import Optional, List
from decimal import Decimal
from datetime import datetime
from circa.core.status import FineStatus, FineReason, PaymentMethod


class FineCreate(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=50)
    amount: Decimal = Field(..., gt=0)
    item_id: Optional[int] = None
    notes: Optional[str] = None


class PaymentCreate(BaseModel):
    amount: Decimal
    method: PaymentMethod
    reference: Optional[str] = Field(None, max_length=100)


class Waiver(BaseModel):
    reason: str = Field(..., min_length=1)


class Payment(BaseModel):
    id: int
    amount: Decimal
    method: PaymentMethod
    reference: Optional[str] = None
    paid_at: datetime

    class Config:
        from_attributes = True


class Fine(BaseModel):
    id: int
    user_id: str
    item_id: Optional[int] = None
    loan_id: Optional[int] = None
    reason: FineReason
    status: FineStatus
    amount_incurred: Decimal
    amount_paid: Decimal
    outstanding_amount: Decimal
    date_incurred: datetime
    date_settled: Optional[datetime] = None
    notes: Optional[str] = None
    waiver_reason: Optional[str] = None
    payments: List[Payment] = []

    class Config:
        from_attributes = True


class FineSummary(BaseModel):
    user_id: str
    outstanding_total: Decimal
    fines: List[Fine]
