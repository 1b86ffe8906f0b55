#!/usr/bin/env python

"""
    Circulation API for Circa,
    the one object the HTTP routes, scripts and scheduler talk to.

    Wires the Copy Ledger, Circulation Manager, Waitlist Allocator and
    Fine Accrual Engine around one session, one clock, one lock registry
    and one notifier.

    :copyright: (c) 2025 by AUTHORS
    :license: see LICENSE for more details
"""

import logging
from circa.configs import (
    POLICY_DEFAULTS, SCHEDULER_POLL_SECONDS, OVERDUE_SWEEP_AT, REMINDER_SWEEP_AT
)
from circa.core import db as database
from circa.core.db import atomic
from circa.core.clock import SystemClock
from circa.core.locks import LockRegistry
from circa.core.ledger import CopyLedger
from circa.core.circulation import CirculationManager
from circa.core.waitlist import WaitlistAllocator
from circa.core.fines import FineAccrualEngine, OVERDUE, REMINDERS
from circa.core.notifications import default_notifier
from circa.core.models import Item
from circa.core.policy import Policy
from circa.core.scheduler import SweepScheduler
from circa.core.status import CopyStatus, ReturnCondition

logger = logging.getLogger(__name__)


class CirculationAPI:

    def __init__(self, db=None, clock=None, notifier=None, is_eligible=None,
                 policy_defaults=None):
        self.db = db if db is not None else database.session
        self.clock = clock or SystemClock()
        self.notifier = notifier or default_notifier()
        self.policy_defaults = dict(POLICY_DEFAULTS if policy_defaults is None else policy_defaults)
        self.locks = LockRegistry()
        self.ledger = CopyLedger(self.db, self.clock)
        self.fines = FineAccrualEngine(self.db, self.locks, self.clock, self.policy, self.notifier)
        self.circulation = CirculationManager(
            self.db, self.ledger, self.fines, self.locks, self.clock,
            self.policy, self.notifier, is_eligible=is_eligible,
        )
        self.waitlist = WaitlistAllocator(
            self.db, self.ledger, self.circulation, self.locks, self.clock,
            self.policy, self.notifier,
        )

    def now(self):
        return self.clock.now()

    def policy(self):
        return Policy.load(self.db, defaults=self.policy_defaults)

    def update_policy(self, **changes):
        policy = Policy.update(self.db, defaults=self.policy_defaults, **changes)
        logger.info(f"Circulation policy updated: {', '.join(sorted(changes))}")
        return policy

    def release(self):
        """Drops the session's state at the end of a request or thread."""
        database.release(self.db)

    # Catalogue

    def items(self, offset=None, limit=None):
        return Item.get_many(self.db, offset=offset, limit=limit)

    def get_item(self, item_id):
        return self.ledger.get_item(item_id, refresh=True)

    def register_item(self, title, quantity, default_return_period=None):
        if default_return_period is None:
            default_return_period = self.policy().default_return_period
        with atomic(self.db):
            item = self.ledger.register_item(title, quantity, default_return_period)
        logger.info(f"Registered item {item.id} '{title}' with {quantity} copies")
        return item

    def add_copies(self, item_id, count):
        with self.locks.hold(item_id):
            with atomic(self.db):
                self.ledger.add_copies(item_id, count)
        self.waitlist.release_held(item_id)
        return self.get_item(item_id)

    def set_bulk_status(self, item_id, from_statuses, to_status):
        to_status = CopyStatus(to_status)
        with self.locks.hold(item_id):
            with atomic(self.db):
                changed = self.ledger.set_bulk_status(
                    item_id, [CopyStatus(s) for s in from_statuses], to_status
                )
        if changed and to_status == CopyStatus.AVAILABLE:
            self.waitlist.release_held(item_id)
        return changed

    def remove_item(self, item_id):
        with self.locks.hold(item_id):
            with atomic(self.db):
                self.ledger.remove_item(item_id)
        logger.info(f"Removed item {item_id}")

    # Loans

    def get_loan(self, loan_id):
        return self.circulation.get_loan(loan_id, refresh=True)

    def open_loans(self, user_id):
        return self.circulation.open_loans(user_id)

    def issue(self, item_id, user_id):
        return self.circulation.issue(item_id, user_id)

    def return_loan(self, loan_id, condition=ReturnCondition.GOOD, notes=None):
        return self.circulation.return_loan(loan_id, condition, note=notes)

    def extend(self, loan_id, new_due_date=None, reason=None):
        return self.circulation.extend(loan_id, new_due_date, reason)

    def request_renewal(self, loan_id, new_due_date, reason=None):
        return self.circulation.request_renewal(loan_id, new_due_date, reason)

    def approve_renewal(self, request_id, approved_due_date=None, notes=None):
        return self.circulation.approve_renewal(request_id, approved_due_date, notes)

    def reject_renewal(self, request_id, notes=None):
        return self.circulation.reject_renewal(request_id, notes)

    # Waiting lists

    def queue(self, item_id):
        self.ledger.get_item(item_id)
        return self.waitlist.entries(item_id)

    def join_queue(self, item_id, user_id):
        return self.waitlist.join(item_id, user_id)

    def leave_queue(self, item_id, user_id):
        return self.waitlist.leave(item_id, user_id)

    def request_item(self, item_id, user_id):
        return self.waitlist.request(item_id, user_id)

    def allocate(self, item_id, user_id):
        return self.waitlist.allocate(item_id, user_id)

    # Fines

    def fines_for(self, user_id, open_only=False):
        return self.fines.fines_for(user_id, open_only)

    def outstanding_total(self, user_id):
        return self.fines.outstanding_total(user_id)

    def assess_fine(self, user_id, amount, notes=None, item_id=None):
        return self.fines.assess(user_id, amount, notes=notes, item_id=item_id)

    def record_payment(self, fine_id, amount, method, reference=None):
        return self.fines.record_payment(fine_id, amount, method, reference)

    def waive_fine(self, fine_id, reason):
        return self.fines.waive(fine_id, reason)

    # Sweeps

    def run_overdue_sweep(self, manual=False):
        try:
            return self.fines.run_overdue_sweep(manual=manual)
        finally:
            if not manual:
                self.release()

    def run_reminder_sweep(self, manual=False):
        try:
            return self.fines.run_reminder_sweep(manual=manual)
        finally:
            if not manual:
                self.release()

    def last_runs(self, kind=None, limit=10):
        return self.fines.last_runs(kind, limit)

    def scheduler(self, poll_interval=SCHEDULER_POLL_SECONDS, overdue_at=OVERDUE_SWEEP_AT,
                  reminders_at=REMINDER_SWEEP_AT, threaded=True):
        """A scheduler running both daily sweeps; not started."""
        scheduler = SweepScheduler(self.clock, poll_interval=poll_interval, threaded=threaded)
        scheduler.daily(OVERDUE, overdue_at, self.run_overdue_sweep)
        scheduler.daily(REMINDERS, reminders_at, self.run_reminder_sweep)
        return scheduler
