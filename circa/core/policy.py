#!/usr/bin/env python

"""
    Circulation policy for Circa.

    Deployment defaults come from `circa.configs.POLICY_DEFAULTS`; an
    administrator may override any of them in the `settings` table. The
    policy is read afresh for every operation.

    :copyright: (c) 2025 by AUTHORS
    :license: see LICENSE for more details
"""

import logging
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from circa.configs import POLICY_DEFAULTS
from circa.core.db import atomic
from circa.core.exceptions import ValidationError
from circa.core.models import Setting

logger = logging.getLogger(__name__)

GROUPS = {
    'grace_period_days': 'fineRates',
    'daily_fine_rate': 'fineRates',
    'damaged_item_base_fine': 'fineRates',
    'lost_item_base_fine': 'fineRates',
    'fine_block_threshold': 'fineRates',
    'max_concurrent_items': 'borrowingLimits',
    'max_concurrent_queues': 'borrowingLimits',
    'max_period_extensions': 'borrowingLimits',
    'extension_period_days': 'borrowingLimits',
    'reminder_lookahead_days': 'notifications',
    'default_return_period': 'general',
    'auto_allocate': 'general',
}


class Policy(BaseModel):
    grace_period_days: int = Field(2, ge=0)
    daily_fine_rate: Decimal = Field(Decimal("1.00"), ge=0)
    max_concurrent_items: int = Field(5, ge=1)
    max_concurrent_queues: int = Field(3, ge=0)
    max_period_extensions: int = Field(2, ge=0)
    extension_period_days: int = Field(7, ge=1)
    damaged_item_base_fine: Decimal = Field(Decimal("10.00"), ge=0)
    lost_item_base_fine: Decimal = Field(Decimal("15.00"), ge=0)
    fine_block_threshold: Optional[Decimal] = Field(None, ge=0)
    reminder_lookahead_days: int = Field(2, ge=0)
    default_return_period: int = Field(14, ge=1)
    auto_allocate: bool = True

    @classmethod
    def load(cls, db, defaults=None):
        values = dict(POLICY_DEFAULTS if defaults is None else defaults)
        for setting in db.query(Setting).filter(Setting.key.in_(list(GROUPS))).all():
            values[setting.key] = setting.value
        try:
            return cls(**values)
        except PydanticValidationError as e:
            logger.error(f"Stored circulation policy is invalid, using defaults: {e}")
            return cls(**dict(POLICY_DEFAULTS if defaults is None else defaults))

    @classmethod
    def update(cls, db, defaults=None, **changes):
        """Persists overrides and returns the resulting policy."""
        unknown = set(changes) - set(GROUPS)
        if unknown:
            raise ValidationError(f"Unknown policy settings: {', '.join(sorted(unknown))}.")
        current = cls.load(db, defaults=defaults)
        try:
            policy = cls(**dict(current.model_dump(), **changes))
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid policy settings: {e}")
        stored = policy.model_dump(mode='json')
        with atomic(db):
            for key in changes:
                setting = db.query(Setting).filter(Setting.key == key).first()
                if setting is None:
                    setting = Setting(key=key, group=GROUPS[key])
                    db.add(setting)
                setting.value = stored[key]
        return policy
