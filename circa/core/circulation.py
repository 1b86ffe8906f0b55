#!/usr/bin/env python

"""
    Circulation Manager for Circa,
    issuing, returning and extending loans against the Copy Ledger.

    :copyright: (c) 2025 by AUTHORS
    :license: see LICENSE for more details
"""

import datetime
import logging
from typing import NamedTuple, Optional
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from circa.core.clock import to_utc
from circa.core.db import atomic
from circa.core.exceptions import (
    CircaError, NotFoundError, ConflictError, Conflict, LimitExceeded, ValidationError,
    StateError
)
from circa.core.models import Loan, QueueEntry, RenewalRequest, Fine, to_money
from circa.core.notifications import Outbox, NotificationKind
from circa.core.status import (
    LoanStatus, FineStatus, ReturnCondition, RenewalStatus
)

logger = logging.getLogger(__name__)


class ReturnResult(NamedTuple):
    loan: Loan
    fines: list
    allocated: Optional[Loan] = None

    @property
    def fine(self):
        return self.fines[0] if self.fines else None


class CirculationManager:

    def __init__(self, db, ledger, fines, locks, clock, policy, notifier, is_eligible=None):
        self.db = db
        self.ledger = ledger
        self.fines = fines
        self.locks = locks
        self.clock = clock
        self.policy = policy
        self.notifier = notifier
        self.is_eligible = is_eligible or (lambda user_id: True)

    def get_loan(self, loan_id, refresh=False):
        loan = self.db.get(Loan, loan_id, populate_existing=refresh)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found.")
        return loan

    def open_loan(self, item_id, user_id):
        return self.db.scalar(
            select(Loan).where(
                Loan.item_id == item_id,
                Loan.user_id == user_id,
                Loan.returned_at.is_(None),
            )
        )

    def open_loans(self, user_id):
        return self.db.scalars(
            select(Loan)
            .where(Loan.user_id == user_id, Loan.returned_at.is_(None))
            .order_by(Loan.due_date)
        ).all()

    def _queue_length(self, item_id):
        return self.db.scalar(
            select(func.count(QueueEntry.id)).where(QueueEntry.item_id == item_id)
        )

    def _outstanding(self, user_id):
        return self.db.scalar(
            select(func.coalesce(func.sum(Fine.outstanding_amount), 0)).where(
                Fine.user_id == user_id,
                Fine.status.in_([FineStatus.OUTSTANDING, FineStatus.PARTIAL_PAID]),
            )
        )

    def check_eligible(self, user_id, policy):
        """Raises unless `user_id` may take another loan right now."""
        if not self.is_eligible(user_id):
            raise StateError(f"User {user_id} is not active.")
        borrowed = len(self.open_loans(user_id))
        if borrowed >= policy.max_concurrent_items:
            raise LimitExceeded(
                f"User {user_id} already has {borrowed} items issued.",
                limit=policy.max_concurrent_items,
            )
        threshold = policy.fine_block_threshold
        if threshold is not None and to_money(self._outstanding(user_id)) > threshold:
            raise LimitExceeded(
                f"User {user_id} has outstanding fines above {threshold}.", limit=threshold
            )

    def _issue(self, item_id, user_id, from_queue=False, note=None):
        """Issues within the caller's transaction."""
        policy = self.policy()
        item = self.ledger.get_item(item_id)
        if self.open_loan(item_id, user_id):
            raise ConflictError(Conflict.ALREADY_ISSUED,
                                f"User {user_id} already has item {item_id} issued.")
        self.check_eligible(user_id, policy)
        if not from_queue and self._queue_length(item_id):
            raise ConflictError(Conflict.NO_COPY_AVAILABLE,
                                f"Copies of item {item_id} are held for queued members.")
        copy = self.ledger.claim(item_id)
        now = self.clock.now()
        loan = Loan(
            item_id=item_id, copy_id=copy.id, user_id=user_id,
            status=LoanStatus.PENDING,
            due_date=now + datetime.timedelta(days=item.default_return_period),
            extension_count=0, max_extension_allowed=policy.max_period_extensions,
            notes=note,
        )
        loan.transition(LoanStatus.ISSUED)
        loan.issued_at = now
        self.db.add(loan)
        try:
            self.db.flush()
        except IntegrityError:
            raise ConflictError(Conflict.ALREADY_ISSUED,
                                f"User {user_id} already has item {item_id} issued.")
        logger.info(f"Issued copy {copy.copy_number} of item {item_id} to {user_id}")
        return loan

    def issue(self, item_id, user_id):
        with Outbox(self.notifier) as outbox:
            with self.locks.hold(item_id):
                with atomic(self.db):
                    loan = self._issue(item_id, user_id)
                outbox.add(user_id, NotificationKind.ITEM_ISSUED,
                           {'loan_id': loan.id, 'item_id': item_id, 'due_date': loan.due_date})
        return loan

    def return_loan(self, loan_id, condition=ReturnCondition.GOOD, note=None):
        """Takes a loan back, settles fines, and hands a freed copy to the queue."""
        condition = ReturnCondition(condition)
        item_id = self.get_loan(loan_id).item_id
        with Outbox(self.notifier) as outbox:
            with self.locks.hold(item_id):
                with atomic(self.db):
                    loan = self.get_loan(loan_id, refresh=True)
                    if not loan.is_open:
                        raise StateError(f"Loan {loan_id} has already been returned.")
                    now = self.clock.now()
                    freed = self.ledger.mark_returned(loan.copy_id, condition, note=note)
                    loan.transition(LoanStatus.RETURNED)
                    loan.returned_at = now
                    loan.return_condition = condition
                    if note:
                        loan.add_note(f"Return notes: {note}")
                    fines = []
                    if fine := self.fines.settle_on_return(loan, now):
                        fines.append(fine)
                    if condition in (ReturnCondition.DAMAGED, ReturnCondition.LOST):
                        fines.append(self.fines.charge_condition(loan, condition, now))
                for fine in fines:
                    outbox.add(fine.user_id, NotificationKind.FINE_APPLIED,
                               {'fine_id': fine.id, 'reason': fine.reason.value,
                                'amount': fine.outstanding_amount})
                logger.info(f"Loan {loan_id} returned in {condition.value} condition")
                # the return is committed; its notices go out whatever the hand-off does
                outbox.flush()
                allocated = None
                if freed:
                    try:
                        handed = [issued for loans in self.ledger.signal_freed(item_id, outbox)
                                  for issued in loans or []]
                    except CircaError as e:
                        logger.error(f"Hand-off of item {item_id} after returning loan "
                                     f"{loan_id} failed; the copy stays on the shelf: {e.message}")
                        handed = []
                    allocated = handed[0] if handed else None
        return ReturnResult(loan, fines, allocated)

    def _check_extension(self, loan, policy):
        if not loan.is_open:
            raise StateError(f"Loan {loan.id} has already been returned.")
        limit = min(loan.max_extension_allowed, policy.max_period_extensions)
        if loan.extension_count >= limit:
            raise LimitExceeded(
                f"Loan {loan.id} has reached its {limit} extensions.", limit=limit
            )

    def _extend(self, loan, new_due_date, reason=None):
        policy = self.policy()
        now = self.clock.now()
        new_due_date = to_utc(new_due_date)
        if new_due_date is None:
            new_due_date = loan.due_date + datetime.timedelta(days=policy.extension_period_days)
        if new_due_date <= now:
            raise ValidationError("New due date must be in the future.")
        self._check_extension(loan, policy)
        old_due_date = loan.due_date
        loan.due_date = new_due_date
        loan.extension_count += 1
        loan.last_extended_at = now
        loan.add_note(
            f"Due date extended from {old_due_date.date().isoformat()} to "
            f"{new_due_date.date().isoformat()}. Reason: {reason or 'Not provided'}"
        )
        return loan

    def extend(self, loan_id, new_due_date=None, reason=None):
        """Moves the due date; accrued fines are left as they are."""
        item_id = self.get_loan(loan_id).item_id
        with self.locks.hold(item_id):
            with atomic(self.db):
                loan = self._extend(self.get_loan(loan_id, refresh=True), new_due_date, reason)
        logger.info(f"Loan {loan_id} extended to {loan.due_date.isoformat()}")
        return loan

    def get_renewal(self, request_id, refresh=False):
        request = self.db.get(RenewalRequest, request_id, populate_existing=refresh)
        if request is None:
            raise NotFoundError(f"Renewal request {request_id} not found.")
        return request

    def request_renewal(self, loan_id, new_due_date, reason=None):
        now = self.clock.now()
        new_due_date = to_utc(new_due_date)
        if new_due_date is None or new_due_date <= now:
            raise ValidationError("Requested due date must be in the future.")
        loan = self.get_loan(loan_id)
        with self.locks.hold(loan.item_id):
            with atomic(self.db):
                loan = self.get_loan(loan_id, refresh=True)
                self._check_extension(loan, self.policy())
                pending = self.db.scalar(
                    select(RenewalRequest).where(
                        RenewalRequest.loan_id == loan_id,
                        RenewalRequest.status == RenewalStatus.PENDING,
                    )
                )
                if pending:
                    raise ConflictError(Conflict.RENEWAL_PENDING,
                                        f"Loan {loan_id} already has a pending renewal request.")
                request = RenewalRequest(
                    loan_id=loan.id, user_id=loan.user_id, item_id=loan.item_id,
                    current_due_date=loan.due_date, requested_due_date=new_due_date,
                    reason=reason or 'Standard renewal request',
                    status=RenewalStatus.PENDING, requested_at=now,
                )
                self.db.add(request)
        return request

    def _resolve_renewal(self, request_id, target, approved_due_date=None, notes=None):
        request = self.get_renewal(request_id)
        loan = self.get_loan(request.loan_id)
        with Outbox(self.notifier) as outbox:
            with self.locks.hold(loan.item_id):
                with atomic(self.db):
                    request = self.get_renewal(request_id, refresh=True)
                    if request.status != RenewalStatus.PENDING:
                        raise ConflictError(Conflict.ALREADY_PROCESSED,
                                            f"Renewal request {request_id} was already processed.")
                    now = self.clock.now()
                    if target == RenewalStatus.APPROVED:
                        due = to_utc(approved_due_date) or request.requested_due_date
                        self._extend(self.get_loan(request.loan_id, refresh=True), due,
                                     reason=request.reason)
                        request.approved_due_date = due
                        kind = NotificationKind.RENEWAL_APPROVED
                    else:
                        notes = notes or 'Renewal request rejected'
                        kind = NotificationKind.RENEWAL_REJECTED
                    request.resolve(target, now, notes)
                outbox.add(request.user_id, kind,
                           {'request_id': request.id, 'loan_id': request.loan_id,
                            'due_date': request.approved_due_date or request.current_due_date})
        return request

    def approve_renewal(self, request_id, approved_due_date=None, notes=None):
        return self._resolve_renewal(request_id, RenewalStatus.APPROVED,
                                     approved_due_date=approved_due_date, notes=notes)

    def reject_renewal(self, request_id, notes=None):
        return self._resolve_renewal(request_id, RenewalStatus.REJECTED, notes=notes)
