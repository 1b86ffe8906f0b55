#!/usr/bin/env python

"""
    Waitlist Allocator for Circa,
    first-come first-served queues of members waiting for an item.

    Positions within an item's queue always run 1..n without gaps. A copy
    coming back to the shelf goes to the head of the queue; members who
    can no longer borrow are dropped and the next one is tried.

    :copyright: (c) 2025 by AUTHORS
    :license: see LICENSE for more details
"""

import logging
from typing import Union
from sqlalchemy import select, update, func
from circa.core.db import atomic
from circa.core.exceptions import (
    NotFoundError, ConflictError, Conflict, LimitExceeded, StateError
)
from circa.core.models import Loan, QueueEntry
from circa.core.notifications import Outbox, NotificationKind

logger = logging.getLogger(__name__)

# Failures that disqualify one member without saying anything about the copy
SKIPPABLE = (LimitExceeded, StateError)


class WaitlistAllocator:

    def __init__(self, db, ledger, circulation, locks, clock, policy, notifier):
        self.db = db
        self.ledger = ledger
        self.circulation = circulation
        self.locks = locks
        self.clock = clock
        self.policy = policy
        self.notifier = notifier
        ledger.subscribe(self.on_copy_freed)

    def entries(self, item_id):
        return self.db.scalars(
            select(QueueEntry)
            .where(QueueEntry.item_id == item_id)
            .order_by(QueueEntry.position)
        ).all()

    def entry(self, item_id, user_id):
        return self.db.scalar(
            select(QueueEntry).where(
                QueueEntry.item_id == item_id, QueueEntry.user_id == user_id
            )
        )

    def head(self, item_id):
        return self.db.scalar(
            select(QueueEntry)
            .where(QueueEntry.item_id == item_id)
            .order_by(QueueEntry.position)
            .limit(1)
        )

    def _remove(self, entry):
        """Deletes an entry and closes the gap it leaves behind."""
        self.ledger.lock_item(entry.item_id)
        self.db.refresh(entry)
        item_id, position = entry.item_id, entry.position
        self.db.delete(entry)
        self.db.flush()
        self.db.execute(
            update(QueueEntry)
            .where(QueueEntry.item_id == item_id, QueueEntry.position > position)
            .values(position=QueueEntry.position - 1)
            .execution_options(synchronize_session=False)
        )
        for remaining in self.db.scalars(
                select(QueueEntry).where(QueueEntry.item_id == item_id)).all():
            self.db.refresh(remaining)

    def _join(self, item_id, user_id):
        policy = self.policy()
        item = self.ledger.lock_item(item_id)
        if self.entry(item_id, user_id):
            raise ConflictError(Conflict.ALREADY_QUEUED,
                                f"User {user_id} is already in the queue for item {item_id}.")
        if self.circulation.open_loan(item_id, user_id):
            raise ConflictError(Conflict.ALREADY_ISSUED,
                                f"User {user_id} already has item {item_id} issued.")
        if item.is_borrowable and self.head(item_id) is None:
            raise ConflictError(Conflict.COPY_AVAILABLE,
                                f"Item {item_id} has a copy available; issue it instead.")
        queued = self.db.scalar(
            select(func.count(QueueEntry.id)).where(QueueEntry.user_id == user_id)
        )
        if queued >= policy.max_concurrent_queues:
            raise LimitExceeded(f"User {user_id} is already waiting for {queued} items.",
                                limit=policy.max_concurrent_queues)
        last = self.db.scalar(
            select(func.max(QueueEntry.position)).where(QueueEntry.item_id == item_id)
        ) or 0
        entry = QueueEntry(item_id=item_id, user_id=user_id, position=last + 1,
                           date_joined=self.clock.now())
        self.db.add(entry)
        self.db.flush()
        logger.info(f"User {user_id} joined the queue for item {item_id} at {entry.position}")
        return entry

    def join(self, item_id, user_id):
        with self.locks.hold(item_id):
            with atomic(self.db):
                entry = self._join(item_id, user_id)
        return entry

    def leave(self, item_id, user_id):
        with self.locks.hold(item_id):
            with atomic(self.db):
                entry = self.entry(item_id, user_id)
                if entry is None:
                    raise NotFoundError(f"User {user_id} is not in the queue for item {item_id}.")
                self._remove(entry)
        logger.info(f"User {user_id} left the queue for item {item_id}")

    def request(self, item_id, user_id) -> Union[Loan, QueueEntry]:
        """Issues straight away when a walk-in may take a copy, queues otherwise."""
        with Outbox(self.notifier) as outbox:
            with self.locks.hold(item_id):
                item = self.ledger.get_item(item_id, refresh=True)
                if item.is_borrowable and self.head(item_id) is None:
                    with atomic(self.db):
                        loan = self.circulation._issue(item_id, user_id)
                    outbox.add(user_id, NotificationKind.ITEM_ISSUED,
                               {'loan_id': loan.id, 'item_id': item_id,
                                'due_date': loan.due_date})
                    return loan
                with atomic(self.db):
                    return self._join(item_id, user_id)

    def _drop(self, entry_id, item_id, user_id, error, outbox):
        with atomic(self.db):
            entry = self.db.get(QueueEntry, entry_id, populate_existing=True)
            if entry is not None:
                self._remove(entry)
        logger.warning(f"Skipped {user_id} in the queue for item {item_id}: {error.message}")
        outbox.add(user_id, NotificationKind.QUEUE_SKIPPED,
                   {'item_id': item_id, 'reason': error.message})

    def on_copy_freed(self, item_id, outbox):
        """Hands available copies to the head of the queue, in order.

        Runs until the item has no available copy or nobody is left
        waiting. Returns the loans created.
        """
        allocated = []
        if not self.policy().auto_allocate:
            return allocated
        with self.locks.hold(item_id):
            while True:
                try:
                    with atomic(self.db):
                        self.ledger.lock_item(item_id)
                        entry = self.head(item_id)
                        # only the member a copy is offered to may be skipped
                        if entry is None or not self.ledger.count_available(item_id):
                            break
                        entry_id, user_id = entry.id, entry.user_id
                        self._remove(entry)
                        loan = self.circulation._issue(
                            item_id, user_id, from_queue=True,
                            note="Issued from the waiting list",
                        )
                except ConflictError as e:
                    if e.reason == Conflict.NO_COPY_AVAILABLE:
                        break
                    self._drop(entry_id, item_id, user_id, e, outbox)
                    continue
                except SKIPPABLE as e:
                    self._drop(entry_id, item_id, user_id, e, outbox)
                    continue
                allocated.append(loan)
                outbox.add(user_id, NotificationKind.ITEM_ALLOCATED,
                           {'loan_id': loan.id, 'item_id': item_id, 'due_date': loan.due_date})
                logger.info(f"Allocated item {item_id} to {user_id} from the queue")
        return allocated

    def allocate(self, item_id, user_id):
        """Administrator override: issue to `user_id` regardless of position."""
        with Outbox(self.notifier) as outbox:
            with self.locks.hold(item_id):
                with atomic(self.db):
                    entry = self.entry(item_id, user_id)
                    if entry is None:
                        raise NotFoundError(
                            f"User {user_id} is not in the queue for item {item_id}.")
                    self._remove(entry)
                    loan = self.circulation._issue(
                        item_id, user_id, from_queue=True,
                        note="Manually allocated from the waiting list",
                    )
                outbox.add(user_id, NotificationKind.ITEM_ALLOCATED,
                           {'loan_id': loan.id, 'item_id': item_id, 'due_date': loan.due_date})
        logger.info(f"Item {item_id} manually allocated to {user_id}")
        return loan

    def release_held(self, item_id):
        """Offers any available copies of an item to its queue."""
        with Outbox(self.notifier) as outbox:
            allocated = self.on_copy_freed(item_id, outbox)
        return allocated
