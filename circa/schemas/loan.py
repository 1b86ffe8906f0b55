from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from circa.core.status import LoanStatus, ReturnCondition
from circa.schemas.fine import Fine


class IssueRequest(BaseModel):
    item_id: int
    user_id: str = Field(..., min_length=1, max_length=50)


class ReturnRequest(BaseModel):
    condition: ReturnCondition = ReturnCondition.GOOD
    notes: Optional[str] = None


class ExtendRequest(BaseModel):
    new_due_date: Optional[datetime] = None
    reason: Optional[str] = None


class Loan(BaseModel):
    id: int
    item_id: int
    copy_id: int
    user_id: str
    status: LoanStatus
    issued_at: Optional[datetime] = None
    due_date: datetime
    returned_at: Optional[datetime] = None
    return_condition: Optional[ReturnCondition] = None
    extension_count: int
    max_extension_allowed: int
    notes: Optional[str] = None

    class Config:
        from_attributes = True

    @classmethod
    def at(cls, loan, now):
        """Serializes a loan with Overdue derived from `now`."""
        return cls.model_validate(loan).model_copy(update={"status": loan.status_at(now)})


class ReturnOutcome(BaseModel):
    loan: Loan
    fines: List[Fine] = []
    allocated: Optional[Loan] = None
