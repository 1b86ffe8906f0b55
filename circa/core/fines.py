#!/usr/bin/env python

"""
    Fine Accrual Engine for Circa.

    Overdue fines are always recomputed from the number of days a loan is
    late, never incremented, so sweeps can be re-run freely: a second run
    on the same day charges nothing extra. The amount of an open fine only
    ever goes up.

    :copyright: (c) 2025 by AUTHORS
    :license: see LICENSE for more details
"""

import math
import datetime
import logging
import threading
from sqlalchemy import select
from circa.core.db import atomic
from circa.core.exceptions import (
    CircaError, NotFoundError, ConflictError, Conflict, ValidationError
)
from circa.core.models import (
    Loan, Fine, Payment, SweepRun, to_money, days_overdue, ZERO, ONE_DAY
)
from circa.core.notifications import Outbox, NotificationKind, deliver, Notice
from circa.core.status import (
    LoanStatus, FineStatus, FineReason, PaymentMethod, ReturnCondition
)
from circa.schemas.sweep import SweepReport, SweepFailure

logger = logging.getLogger(__name__)

OVERDUE = 'overdue'
REMINDERS = 'reminders'


class FineAccrualEngine:

    def __init__(self, db, locks, clock, policy, notifier):
        self.db = db
        self.locks = locks
        self.clock = clock
        self.policy = policy
        self.notifier = notifier
        self._running = {OVERDUE: threading.Lock(), REMINDERS: threading.Lock()}

    def get_fine(self, fine_id, refresh=False):
        fine = self.db.get(Fine, fine_id, populate_existing=refresh)
        if fine is None:
            raise NotFoundError(f"Fine {fine_id} not found.")
        return fine

    def fines_for(self, user_id, open_only=False):
        query = select(Fine).where(Fine.user_id == user_id)
        if open_only:
            query = query.where(Fine.status.in_([FineStatus.OUTSTANDING, FineStatus.PARTIAL_PAID]))
        return self.db.scalars(query.order_by(Fine.date_incurred)).all()

    def outstanding_total(self, user_id):
        return sum((to_money(f.outstanding_amount) for f in self.fines_for(user_id, True)), ZERO)

    def overdue_amount(self, loan, now, policy=None):
        policy = policy or self.policy()
        days = days_overdue(loan.due_date, now, policy.grace_period_days)
        return days, to_money(days * policy.daily_fine_rate)

    def _overdue_fine(self, loan_id):
        return self.db.scalar(
            select(Fine).where(Fine.loan_id == loan_id, Fine.reason == FineReason.OVERDUE)
        )

    def _accrue(self, loan, now, policy=None):
        """Brings the overdue fine of `loan` up to date as of `now`.

        Returns `(fine, outcome)` with outcome one of created, updated,
        unchanged, settled or None when nothing is owed.
        """
        days, amount = self.overdue_amount(loan, now, policy)
        if days <= 0:
            return None, None
        fine = self._overdue_fine(loan.id)
        if fine is None:
            fine = Fine.incur(
                loan.user_id, FineReason.OVERDUE, amount, now,
                item_id=loan.item_id, loan_id=loan.id,
                notes=f"Overdue by {days} days beyond the grace period.",
            )
            self.db.add(fine)
            self.db.flush()
            return fine, 'created'
        if fine.is_settled:
            return fine, 'settled'
        if amount > to_money(fine.amount_incurred):
            fine.reassess(amount)
            fine.notes = f"Overdue by {days} days beyond the grace period."
            return fine, 'updated'
        return fine, 'unchanged'

    def settle_on_return(self, loan, now):
        """Final overdue fine for a loan returned at `now`, inside the return."""
        fine, outcome = self._accrue(loan, now)
        if outcome in ('created', 'updated'):
            logger.info(f"Loan {loan.id} returned late; fine {fine.id} now {fine.amount_incurred}")
            return fine
        return None

    def charge_condition(self, loan, condition, now):
        policy = self.policy()
        if condition == ReturnCondition.LOST:
            reason, amount = FineReason.LOST, policy.lost_item_base_fine
        else:
            reason, amount = FineReason.DAMAGED, policy.damaged_item_base_fine
        fine = Fine.incur(loan.user_id, reason, amount, now,
                          item_id=loan.item_id, loan_id=loan.id,
                          notes=f"Item returned {condition.value.lower()}.")
        self.db.add(fine)
        self.db.flush()
        return fine

    def assess(self, user_id, amount, notes=None, item_id=None):
        """Administrator-issued fine with reason Manual."""
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Fine amount must be positive.")
        with atomic(self.db):
            fine = Fine.incur(user_id, FineReason.MANUAL, amount, self.clock.now(),
                              item_id=item_id, notes=notes)
            self.db.add(fine)
        with Outbox(self.notifier) as outbox:
            outbox.add(user_id, NotificationKind.FINE_APPLIED,
                       {'fine_id': fine.id, 'reason': fine.reason.value, 'amount': amount})
        return fine

    def _lock_key(self, fine):
        return fine.item_id if fine.item_id is not None else ('fine', fine.id)

    def record_payment(self, fine_id, amount, method, reference=None):
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be positive.")
        try:
            method = PaymentMethod(method)
        except ValueError:
            raise ValidationError(
                f"Invalid payment method. Must be one of: "
                f"{', '.join(m.value for m in PaymentMethod)}"
            )
        with self.locks.hold(self._lock_key(self.get_fine(fine_id))):
            with atomic(self.db):
                fine = self.get_fine(fine_id, refresh=True)
                if fine.is_settled:
                    raise ConflictError(Conflict.ALREADY_PROCESSED,
                                        f"Fine {fine_id} is already {fine.status.value.lower()}.")
                if amount > to_money(fine.outstanding_amount):
                    raise ValidationError(
                        f"Payment of {amount} exceeds the outstanding {fine.outstanding_amount}."
                    )
                now = self.clock.now()
                fine.apply_payment(amount, now)
                self.db.add(Payment(fine_id=fine.id, amount=amount, method=method,
                                    reference=reference, paid_at=now))
        logger.info(f"Recorded {method.value} payment of {amount} on fine {fine_id}")
        return fine

    def waive(self, fine_id, reason):
        if not reason or not reason.strip():
            raise ValidationError("A waiver needs a reason.")
        with self.locks.hold(self._lock_key(self.get_fine(fine_id))):
            with atomic(self.db):
                fine = self.get_fine(fine_id, refresh=True)
                if fine.is_settled:
                    raise ConflictError(Conflict.ALREADY_PROCESSED,
                                        f"Fine {fine_id} is already {fine.status.value.lower()}.")
                fine.waive(reason.strip(), self.clock.now())
        logger.info(f"Fine {fine_id} waived: {reason}")
        return fine

    def _record_run(self, report, manual):
        try:
            with atomic(self.db):
                self.db.add(SweepRun(
                    kind=report.kind, started_at=report.started_at,
                    finished_at=report.finished_at, processed=report.processed,
                    created=report.created, updated=report.updated,
                    notified=report.notified, failed=len(report.failures), manual=manual,
                ))
        except CircaError as e:
            logger.error(f"Could not record {report.kind} sweep run: {e}")

    def last_runs(self, kind=None, limit=10):
        query = select(SweepRun)
        if kind:
            query = query.where(SweepRun.kind == kind)
        return self.db.scalars(query.order_by(SweepRun.started_at.desc(), SweepRun.id.desc())
                               .limit(limit)).all()

    def run_overdue_sweep(self, manual=False):
        """Creates or raises the overdue fine of every loan past its grace period.

        Loans are handled one at a time; a failure on one is recorded in
        the report and the sweep moves on.
        """
        now = self.clock.now()
        report = SweepReport(kind=OVERDUE, started_at=now)
        run_lock = self._running[OVERDUE]
        if not run_lock.acquire(blocking=False):
            logger.warning("Overdue sweep already running; skipped")
            return report.finish(now, skipped=True)
        notices = []
        try:
            policy = self.policy()
            cutoff = now - datetime.timedelta(days=policy.grace_period_days)
            candidates = self.db.execute(
                select(Loan.id, Loan.item_id).where(
                    Loan.status == LoanStatus.ISSUED, Loan.due_date < cutoff
                ).order_by(Loan.due_date)
            ).all()
            self.db.commit()
            for loan_id, item_id in candidates:
                report.processed += 1
                try:
                    with self.locks.hold(item_id):
                        with atomic(self.db):
                            loan = self.db.get(Loan, loan_id, populate_existing=True)
                            if loan is None or loan.status != LoanStatus.ISSUED:
                                continue
                            fine, outcome = self._accrue(loan, now, policy)
                    if outcome == 'updated':
                        report.updated += 1
                    elif outcome == 'created':
                        # members hear about a fine once, when it first appears
                        report.created += 1
                        notices.append(Notice(fine.user_id, NotificationKind.FINE_APPLIED, {
                            'fine_id': fine.id, 'loan_id': loan_id,
                            'amount': fine.outstanding_amount,
                        }))
                except CircaError as e:
                    logger.warning(f"Overdue sweep failed on loan {loan_id}: {e}")
                    report.failures.append(SweepFailure(loan_id=loan_id, error=str(e)))
        finally:
            run_lock.release()
        report.notified = sum(1 for notice in notices if deliver(self.notifier, notice))
        report.finish(self.clock.now())
        self._record_run(report, manual)
        logger.info(f"Overdue sweep: {report.summary()}")
        return report

    def run_reminder_sweep(self, manual=False):
        """Sends a due-soon notice for loans due within the look-ahead window.

        A loan gets at most one reminder per day. A loan whose notice could
        not be delivered stays unmarked and is tried on the next run.
        """
        now = self.clock.now()
        report = SweepReport(kind=REMINDERS, started_at=now)
        run_lock = self._running[REMINDERS]
        if not run_lock.acquire(blocking=False):
            logger.warning("Reminder sweep already running; skipped")
            return report.finish(now, skipped=True)
        try:
            policy = self.policy()
            horizon = now + datetime.timedelta(days=policy.reminder_lookahead_days)
            today = now.replace(hour=0, minute=0, second=0, microsecond=0)
            loans = self.db.scalars(
                select(Loan).where(
                    Loan.status == LoanStatus.ISSUED,
                    Loan.due_date >= now,
                    Loan.due_date <= horizon,
                    (Loan.last_reminded_at.is_(None)) | (Loan.last_reminded_at < today),
                ).order_by(Loan.due_date)
            ).all()
            pending = [(loan.id, loan.user_id, loan.item_id, loan.due_date) for loan in loans]
            self.db.commit()
            for loan_id, user_id, item_id, due_date in pending:
                report.processed += 1
                days_left = max(1, math.ceil((due_date - now) / ONE_DAY))
                notice = Notice(user_id, NotificationKind.DUE_REMINDER, {
                    'loan_id': loan_id, 'item_id': item_id,
                    'due_date': due_date, 'days_until_due': days_left,
                })
                if not deliver(self.notifier, notice):
                    report.failures.append(SweepFailure(loan_id=loan_id,
                                                        error="notification not delivered"))
                    continue
                report.notified += 1
                try:
                    with atomic(self.db):
                        loan = self.db.get(Loan, loan_id, populate_existing=True)
                        loan.last_reminded_at = now
                except CircaError as e:
                    logger.warning(f"Could not mark loan {loan_id} as reminded: {e}")
                    report.failures.append(SweepFailure(loan_id=loan_id, error=str(e)))
        finally:
            run_lock.release()
        report.finish(self.clock.now())
        self._record_run(report, manual)
        logger.info(f"Reminder sweep: {report.summary()}")
        return report
