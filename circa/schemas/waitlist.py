from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from circa.schemas.loan import Loan


class QueueJoin(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=50)


class QueueEntry(BaseModel):
    id: int
    item_id: int
    user_id: str
    position: int
    date_joined: datetime

    class Config:
        from_attributes = True


class RequestOutcome(BaseModel):
    issued: bool
    loan: Optional[Loan] = None
    queue_entry: Optional[QueueEntry] = None
