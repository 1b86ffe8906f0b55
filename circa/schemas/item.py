#!/usr/bin/env python
"""
    Item Schema for Circa,
    including the definition of the Item model and its copies.

    :copyright: (c) 2025 by AUTHORS
    :license: see LICENSE for more details
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Set
from datetime import datetime
from circa.core.status import CopyStatus, CopyCondition


class ItemCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    quantity: int = Field(1, ge=0)
    default_return_period: Optional[int] = Field(None, ge=1)


class CopiesCreate(BaseModel):
    count: int = Field(..., ge=1)


class BulkStatus(BaseModel):
    from_statuses: Set[CopyStatus]
    to_status: CopyStatus


class Copy(BaseModel):
    id: int
    copy_number: int
    status: CopyStatus
    condition: CopyCondition
    last_issued_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class Item(BaseModel):
    id: int
    title: str
    quantity: int
    available_copies: int
    default_return_period: int
    copies: List[Copy] = []

    class Config:
        from_attributes = True
        json_schema_extra = {
            "example": {
                "id": 1,
                "title": "The Left Hand of Darkness",
                "quantity": 2,
                "available_copies": 1,
                "default_return_period": 14,
                "copies": [
                    {"id": 1, "copy_number": 1, "status": "Issued", "condition": "Good"},
                    {"id": 2, "copy_number": 2, "status": "Available", "condition": "New"}
                ]
            }
        }
