from pydantic import BaseModel, Field
from typing import Optional
from decimal import Decimal


class PolicyUpdate(BaseModel):
    grace_period_days: Optional[int] = Field(None, ge=0)
    daily_fine_rate: Optional[Decimal] = Field(None, ge=0)
    max_concurrent_items: Optional[int] = Field(None, ge=1)
    max_concurrent_queues: Optional[int] = Field(None, ge=0)
    max_period_extensions: Optional[int] = Field(None, ge=0)
    extension_period_days: Optional[int] = Field(None, ge=1)
    damaged_item_base_fine: Optional[Decimal] = Field(None, ge=0)
    lost_item_base_fine: Optional[Decimal] = Field(None, ge=0)
    fine_block_threshold: Optional[Decimal] = Field(None, ge=0)
    reminder_lookahead_days: Optional[int] = Field(None, ge=0)
    default_return_period: Optional[int] = Field(None, ge=1)
    auto_allocate: Optional[bool] = None
