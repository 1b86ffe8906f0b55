from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from circa.core.status import RenewalStatus


class RenewalCreate(BaseModel):
    new_due_date: datetime
    reason: Optional[str] = None


class RenewalDecision(BaseModel):
    approved_due_date: Optional[datetime] = None
    notes: Optional[str] = None


class RenewalRequest(BaseModel):
    id: int
    loan_id: int
    user_id: str
    item_id: int
    current_due_date: datetime
    requested_due_date: datetime
    approved_due_date: Optional[datetime] = None
    reason: Optional[str] = None
    status: RenewalStatus
    admin_notes: Optional[str] = None
    requested_at: datetime
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True
