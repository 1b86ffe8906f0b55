from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class SweepFailure(BaseModel):
    loan_id: int
    error: str


class SweepReport(BaseModel):
    kind: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    processed: int = 0
    created: int = 0
    updated: int = 0
    notified: int = 0
    skipped: bool = False
    failures: List[SweepFailure] = Field(default_factory=list)

    def finish(self, now, skipped=False):
        self.finished_at = now
        self.skipped = skipped
        return self

    def summary(self):
        return (f"processed={self.processed} created={self.created} updated={self.updated} "
                f"notified={self.notified} failed={len(self.failures)}")


class SweepRun(BaseModel):
    id: int
    kind: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    processed: int
    created: int
    updated: int
    notified: int
    failed: int
    manual: bool

    class Config:
        from_attributes = True
