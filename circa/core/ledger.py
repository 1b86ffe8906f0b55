#!/usr/bin/env python

"""
    Copy Ledger for Circa,
    the single owner of copy status and of `Item.available_copies`.

    Status writes are compare-and-swap updates (`WHERE status = <expected>`)
    and every one of them is followed, in the same transaction, by a
    recount of the item's available copies. Methods never commit; callers
    wrap them in `atomic()`.

    :copyright: (c) 2025 by AUTHORS
    :license: see LICENSE for more details
"""

import logging
from sqlalchemy import select, update, func
from circa.core.exceptions import (
    NotFoundError, ConflictError, Conflict, StateError, ValidationError
)
from circa.core.models import Item, Copy
from circa.core.status import (
    CopyStatus, CopyCondition, ReturnCondition, COPY_TRANSITIONS, sources_of
)

logger = logging.getLogger(__name__)


class CopyLedger:

    def __init__(self, db, clock):
        self.db = db
        self.clock = clock
        self._listeners = []

    def subscribe(self, listener):
        """Registers `listener(item_id, outbox)` for copies returning to the shelf."""
        self._listeners.append(listener)

    def signal_freed(self, item_id, outbox):
        return [listener(item_id, outbox) for listener in self._listeners]

    def get_item(self, item_id, refresh=False):
        item = self.db.get(Item, item_id, populate_existing=refresh)
        if item is None:
            raise NotFoundError(f"Item {item_id} not found.")
        return item

    def lock_item(self, item_id):
        """Loads the item row under `SELECT ... FOR UPDATE`.

        Holds other processes off the item's queue until the caller's
        transaction ends. SQLite has no row locks and ignores the clause.
        """
        item = self.db.scalar(
            select(Item)
            .where(Item.id == item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if item is None:
            raise NotFoundError(f"Item {item_id} not found.")
        return item

    def get_copy(self, copy_id, refresh=False):
        copy = self.db.get(Copy, copy_id, populate_existing=refresh)
        if copy is None:
            raise NotFoundError(f"Copy {copy_id} not found.")
        return copy

    def count_available(self, item_id):
        return self.db.scalar(
            select(func.count(Copy.id)).where(
                Copy.item_id == item_id, Copy.status == CopyStatus.AVAILABLE
            )
        )

    def _sync_available(self, item_id):
        self.db.flush()
        available = (
            select(func.count(Copy.id))
            .where(Copy.item_id == Item.id, Copy.status == CopyStatus.AVAILABLE)
            .correlate(Item)
            .scalar_subquery()
        )
        self.db.execute(
            update(Item)
            .where(Item.id == item_id)
            .values(available_copies=available, updated_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        return self.get_item(item_id, refresh=True)

    def _swap(self, copy_id, expected, target, **values):
        """Moves a copy to `target` only if it is still in one of `expected`."""
        result = self.db.execute(
            update(Copy)
            .where(Copy.id == copy_id, Copy.status.in_(list(expected)))
            .values(status=target, updated_at=self.clock.now(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def register_item(self, title, quantity, default_return_period=14):
        if quantity < 0:
            raise ValidationError("Quantity cannot be negative.")
        if default_return_period < 1:
            raise ValidationError("Return period must be at least one day.")
        item = Item(title=title, quantity=0, available_copies=0,
                    default_return_period=default_return_period)
        self.db.add(item)
        self.db.flush()
        if quantity:
            self.add_copies(item.id, quantity)
        return self.get_item(item.id, refresh=True)

    def add_copies(self, item_id, count):
        if count < 1:
            raise ValidationError("At least one copy must be added.")
        self.get_item(item_id)
        last = self.db.scalar(
            select(func.max(Copy.copy_number)).where(Copy.item_id == item_id)
        ) or 0
        for number in range(last + 1, last + count + 1):
            self.db.add(Copy(item_id=item_id, copy_number=number,
                             status=CopyStatus.AVAILABLE, condition=CopyCondition.NEW))
        self.db.flush()
        self.db.execute(
            update(Item)
            .where(Item.id == item_id)
            .values(quantity=Item.quantity + count)
            .execution_options(synchronize_session=False)
        )
        return self._sync_available(item_id)

    def remove_item(self, item_id):
        item = self.get_item(item_id)
        issued = self.db.scalar(
            select(func.count(Copy.id)).where(
                Copy.item_id == item_id, Copy.status == CopyStatus.ISSUED
            )
        )
        if issued:
            raise StateError(f"Item {item_id} has {issued} issued copies and cannot be removed.")
        self.db.delete(item)
        self.db.flush()

    def claim(self, item_id):
        """Claims one Available copy of the item, or fails.

        Candidates are tried in copy-number order; a candidate taken by a
        concurrent claim between the read and the swap is skipped.
        """
        self.get_item(item_id)
        candidates = self.db.scalars(
            select(Copy.id)
            .where(Copy.item_id == item_id, Copy.status == CopyStatus.AVAILABLE)
            .order_by(Copy.copy_number)
        ).all()
        for copy_id in candidates:
            if self.mark_issued(copy_id, strict=False):
                return self.get_copy(copy_id, refresh=True)
        raise ConflictError(Conflict.NO_COPY_AVAILABLE,
                            f"No available copies of item {item_id}.")

    def mark_issued(self, copy_id, strict=True):
        copy = self.get_copy(copy_id)
        item_id = copy.item_id
        if not self._swap(copy_id, {CopyStatus.AVAILABLE}, CopyStatus.ISSUED,
                          last_issued_at=self.clock.now()):
            if strict:
                raise ConflictError(Conflict.NO_COPY_AVAILABLE,
                                    f"Copy {copy_id} is not available.")
            return False
        self._sync_available(item_id)
        return True

    def mark_returned(self, copy_id, condition=ReturnCondition.GOOD, note=None):
        """Takes an issued copy back; returns True when it is back on the shelf."""
        copy = self.get_copy(copy_id)
        item_id = copy.item_id
        target = condition.copy_status
        values = {}
        if condition is ReturnCondition.DAMAGED:
            values['condition'] = CopyCondition.DAMAGED
        elif condition is not ReturnCondition.LOST:
            values['condition'] = CopyCondition(condition.value)
        if note:
            values['notes'] = f"{copy.notes}\n\n{note}" if copy.notes else note
        if not self._swap(copy_id, {CopyStatus.ISSUED}, target, **values):
            raise StateError(f"Copy {copy_id} is not issued.")
        self._sync_available(item_id)
        self.get_copy(copy_id, refresh=True)
        return target == CopyStatus.AVAILABLE

    def set_bulk_status(self, item_id, from_statuses, to_status):
        """Administrative status change for an item's copies.

        Issued copies are never touched, and no copy can be moved into
        Issued this way. Returns the number of copies changed.
        """
        self.get_item(item_id)
        if to_status == CopyStatus.ISSUED:
            raise StateError("Copies can only be issued through a loan.")
        allowed = (set(from_statuses) & sources_of(COPY_TRANSITIONS, to_status)) - {CopyStatus.ISSUED}
        if not allowed:
            return 0
        result = self.db.execute(
            update(Copy)
            .where(Copy.item_id == item_id, Copy.status.in_(list(allowed)))
            .values(status=to_status, updated_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        self._sync_available(item_id)
        for copy in self.get_item(item_id).copies:
            self.db.refresh(copy)
        logger.info(f"Moved {result.rowcount} copies of item {item_id} to {to_status.value}")
        return result.rowcount

    def check(self, item_id):
        """True when the cached count and quantity agree with the copies."""
        item = self.get_item(item_id, refresh=True)
        total = self.db.scalar(select(func.count(Copy.id)).where(Copy.item_id == item_id))
        return item.available_copies == self.count_available(item_id) and item.quantity == total
