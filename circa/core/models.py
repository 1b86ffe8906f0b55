#!/usr/bin/env python

"""
    Circulation models for Circa,
    including items, their physical copies, loans, waitlists and fines.

    All timestamps are naive UTC.

    :copyright: (c) 2025 by AUTHORS
    :license: see LICENSE for more details
"""

import math
import datetime
from decimal import Decimal
from sqlalchemy import (
    Column, String, Integer, BigInteger, Boolean, DateTime, Numeric, Text, JSON,
    ForeignKey, Index, UniqueConstraint, Enum as SQLAlchemyEnum, text
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from sqlalchemy.ext.hybrid import hybrid_property
from circa.core.db import Base
from circa.core.exceptions import ValidationError
from circa.core.status import (
    CopyStatus, CopyCondition, ReturnCondition, LoanStatus, FineStatus, FineReason,
    PaymentMethod, RenewalStatus, LOAN_TRANSITIONS, FINE_TRANSITIONS,
    RENEWAL_TRANSITIONS, check_transition
)

Money = Numeric(10, 2)
ZERO = Decimal("0.00")
ONE_DAY = datetime.timedelta(days=1)


def to_money(value) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"))
    except ArithmeticError:
        raise ValidationError(f"Invalid amount: {value!r}.")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}.")
    return amount


def days_overdue(due_date, now, grace_period_days=0):
    """Whole days past `due_date` at `now`, less the grace period.

    A partial day counts as a full one, so a loan one hour late is one
    day late. Never negative.
    """
    late = now - due_date
    if late <= datetime.timedelta(0):
        return 0
    return max(0, math.ceil(late / ONE_DAY) - grace_period_days)


class Item(Base):
    __tablename__ = 'items'

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    title = Column(String(255), nullable=False)
    quantity = Column(Integer, default=0, nullable=False)
    available_copies = Column(Integer, default=0, nullable=False)
    default_return_period = Column(Integer, default=14, nullable=False)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    copies = relationship('Copy', back_populates='item', cascade='all, delete-orphan',
                          order_by='Copy.copy_number')

    @hybrid_property
    def is_borrowable(self):
        return self.available_copies > 0

    def __repr__(self):
        return f"<Item {self.id} {self.title!r} {self.available_copies}/{self.quantity}>"


class Copy(Base):
    __tablename__ = 'copies'

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    item_id = Column(BigInteger, ForeignKey('items.id', ondelete='CASCADE'), nullable=False)
    copy_number = Column(Integer, nullable=False)
    status = Column(SQLAlchemyEnum(CopyStatus), default=CopyStatus.AVAILABLE, nullable=False)
    condition = Column(SQLAlchemyEnum(CopyCondition), default=CopyCondition.NEW, nullable=False)
    notes = Column(Text)
    last_issued_at = Column(DateTime)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    item = relationship('Item', back_populates='copies')

    __table_args__ = (
        UniqueConstraint('item_id', 'copy_number', name='unique_copy_number'),
        Index('ix_copies_item_status', 'item_id', 'status'),
    )


class Loan(Base):
    __tablename__ = 'loans'

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    item_id = Column(BigInteger, ForeignKey('items.id', ondelete='CASCADE'), nullable=False)
    copy_id = Column(BigInteger, ForeignKey('copies.id', ondelete='CASCADE'), nullable=False)
    user_id = Column(String(50), nullable=False, index=True)
    status = Column(SQLAlchemyEnum(LoanStatus), default=LoanStatus.PENDING, nullable=False)
    issued_at = Column(DateTime)
    due_date = Column(DateTime, nullable=False, index=True)
    returned_at = Column(DateTime)
    return_condition = Column(SQLAlchemyEnum(ReturnCondition))
    extension_count = Column(Integer, default=0, nullable=False)
    max_extension_allowed = Column(Integer, default=2, nullable=False)
    last_extended_at = Column(DateTime)
    last_reminded_at = Column(DateTime)
    notes = Column(Text)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    copy = relationship('Copy')

    __table_args__ = (
        # One open loan per member and item, and per physical copy
        Index('uq_open_loan_user_item', 'user_id', 'item_id', unique=True,
              sqlite_where=text('returned_at IS NULL'),
              postgresql_where=text('returned_at IS NULL')),
        Index('uq_open_loan_copy', 'copy_id', unique=True,
              sqlite_where=text('returned_at IS NULL'),
              postgresql_where=text('returned_at IS NULL')),
    )

    @property
    def is_open(self):
        return self.status == LoanStatus.ISSUED

    def is_overdue(self, now):
        return self.is_open and now > self.due_date

    def status_at(self, now):
        """The status a reader sees at `now`; Overdue is never persisted."""
        if self.is_overdue(now):
            return LoanStatus.OVERDUE
        return self.status

    def transition(self, target):
        self.status = check_transition(LOAN_TRANSITIONS, self.status, target, "loan")
        return self

    def add_note(self, note):
        self.notes = f"{self.notes}\n\n{note}" if self.notes else note


class QueueEntry(Base):
    __tablename__ = 'queue_entries'

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    item_id = Column(BigInteger, ForeignKey('items.id', ondelete='CASCADE'), nullable=False)
    user_id = Column(String(50), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    date_joined = Column(DateTime, nullable=False)
    __table_args__ = (
        UniqueConstraint('item_id', 'user_id', name='unique_queue_entry'),
        Index('ix_queue_item_position', 'item_id', 'position'),
    )


class Fine(Base):
    __tablename__ = 'fines'

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    user_id = Column(String(50), nullable=False, index=True)
    item_id = Column(BigInteger, ForeignKey('items.id', ondelete='SET NULL'))
    loan_id = Column(BigInteger, ForeignKey('loans.id', ondelete='SET NULL'), index=True)
    reason = Column(SQLAlchemyEnum(FineReason), nullable=False)
    status = Column(SQLAlchemyEnum(FineStatus), default=FineStatus.OUTSTANDING, nullable=False)
    amount_incurred = Column(Money, default=ZERO, nullable=False)
    amount_paid = Column(Money, default=ZERO, nullable=False)
    outstanding_amount = Column(Money, default=ZERO, nullable=False)
    date_incurred = Column(DateTime, nullable=False)
    date_settled = Column(DateTime)
    notes = Column(Text)
    waiver_reason = Column(Text)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    payments = relationship('Payment', back_populates='fine', cascade='all, delete-orphan',
                            order_by='Payment.id')

    @classmethod
    def incur(cls, user_id, reason, amount, now, item_id=None, loan_id=None, notes=None):
        fine = cls(user_id=user_id, item_id=item_id, loan_id=loan_id, reason=reason,
                   status=FineStatus.OUTSTANDING, amount_incurred=to_money(amount),
                   amount_paid=ZERO, date_incurred=now, notes=notes)
        fine._recompute()
        return fine

    @property
    def is_settled(self):
        return self.status in (FineStatus.PAID, FineStatus.WAIVED)

    def _recompute(self):
        if self.status == FineStatus.WAIVED:
            self.outstanding_amount = ZERO
        else:
            self.outstanding_amount = to_money(self.amount_incurred) - to_money(self.amount_paid)

    def reassess(self, amount):
        """Raises the incurred amount; a fine never shrinks on re-assessment."""
        amount = max(to_money(amount), to_money(self.amount_incurred))
        self.status = check_transition(FINE_TRANSITIONS, self.status, self.status, "fine")
        self.amount_incurred = amount
        self._recompute()
        return self

    def apply_payment(self, amount, now):
        amount = to_money(amount)
        paid = to_money(self.amount_paid) + amount
        target = FineStatus.PAID if paid >= to_money(self.amount_incurred) else FineStatus.PARTIAL_PAID
        self.status = check_transition(FINE_TRANSITIONS, self.status, target, "fine")
        self.amount_paid = paid
        self._recompute()
        if self.status == FineStatus.PAID:
            self.date_settled = now
        return self

    def waive(self, reason, now):
        self.status = check_transition(FINE_TRANSITIONS, self.status, FineStatus.WAIVED, "fine")
        self.waiver_reason = reason
        self.date_settled = now
        self._recompute()
        return self


class Payment(Base):
    __tablename__ = 'payments'

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    fine_id = Column(BigInteger, ForeignKey('fines.id', ondelete='CASCADE'), nullable=False)
    amount = Column(Money, nullable=False)
    method = Column(SQLAlchemyEnum(PaymentMethod), nullable=False)
    reference = Column(String(100))
    paid_at = Column(DateTime, nullable=False)

    fine = relationship('Fine', back_populates='payments')


class RenewalRequest(Base):
    __tablename__ = 'renewal_requests'

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    loan_id = Column(BigInteger, ForeignKey('loans.id', ondelete='CASCADE'), nullable=False, index=True)
    user_id = Column(String(50), nullable=False)
    item_id = Column(BigInteger, ForeignKey('items.id', ondelete='CASCADE'), nullable=False)
    current_due_date = Column(DateTime, nullable=False)
    requested_due_date = Column(DateTime, nullable=False)
    approved_due_date = Column(DateTime)
    reason = Column(Text, default='Standard renewal request')
    status = Column(SQLAlchemyEnum(RenewalStatus), default=RenewalStatus.PENDING, nullable=False)
    admin_notes = Column(Text)
    requested_at = Column(DateTime, nullable=False)
    resolved_at = Column(DateTime)

    def resolve(self, target, now, notes=None):
        self.status = check_transition(RENEWAL_TRANSITIONS, self.status, target, "renewal request")
        self.resolved_at = now
        self.admin_notes = notes
        return self


class Setting(Base):
    __tablename__ = 'settings'

    id = Column(Integer, primary_key=True)
    key = Column(String(100), nullable=False, unique=True)
    group = Column(String(50), nullable=False, default='general')
    value = Column(JSON, nullable=False)
    description = Column(Text)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class SweepRun(Base):
    __tablename__ = 'sweep_runs'

    id = Column(Integer, primary_key=True)
    kind = Column(String(20), nullable=False, index=True)
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime)
    processed = Column(Integer, default=0, nullable=False)
    created = Column(Integer, default=0, nullable=False)
    updated = Column(Integer, default=0, nullable=False)
    notified = Column(Integer, default=0, nullable=False)
    failed = Column(Integer, default=0, nullable=False)
    manual = Column(Boolean, default=False, nullable=False)
