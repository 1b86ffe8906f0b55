#!/usr/bin/env python

"""
    Status vocabularies for Circa,
    with the single table of legal transitions for each entity.

    :copyright: (c) 2025 by AUTHORS
    :license: see LICENSE for more details
"""

import enum
from circa.core.exceptions import StateError


class CopyStatus(str, enum.Enum):
    AVAILABLE = "Available"
    ISSUED = "Issued"
    MISPLACED = "Misplaced"
    UNDER_REPAIR = "Under Repair"
    LOST = "Lost"


class CopyCondition(str, enum.Enum):
    NEW = "New"
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"
    DAMAGED = "Damaged"


class ReturnCondition(str, enum.Enum):
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"
    DAMAGED = "Damaged"
    LOST = "Lost"

    @property
    def copy_status(self):
        """Where the copy goes once it is back on the desk."""
        if self is ReturnCondition.DAMAGED:
            return CopyStatus.UNDER_REPAIR
        if self is ReturnCondition.LOST:
            return CopyStatus.LOST
        return CopyStatus.AVAILABLE


class LoanStatus(str, enum.Enum):
    PENDING = "Pending"
    ISSUED = "Issued"
    RETURNED = "Returned"
    # Never stored: derived from the due date by Loan.status_at
    OVERDUE = "Overdue"


class FineStatus(str, enum.Enum):
    OUTSTANDING = "Outstanding"
    PARTIAL_PAID = "Partial Paid"
    PAID = "Paid"
    WAIVED = "Waived"


class FineReason(str, enum.Enum):
    OVERDUE = "Overdue"
    DAMAGED = "Damaged"
    LOST = "Lost"
    MANUAL = "Manual"


class PaymentMethod(str, enum.Enum):
    CASH = "Cash"
    CARD = "Card"
    ONLINE_TRANSFER = "Online Transfer"


class RenewalStatus(str, enum.Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


COPY_TRANSITIONS = {
    CopyStatus.AVAILABLE: {CopyStatus.ISSUED, CopyStatus.MISPLACED,
                           CopyStatus.UNDER_REPAIR, CopyStatus.LOST},
    CopyStatus.ISSUED: {CopyStatus.AVAILABLE, CopyStatus.UNDER_REPAIR, CopyStatus.LOST},
    CopyStatus.MISPLACED: {CopyStatus.AVAILABLE, CopyStatus.UNDER_REPAIR, CopyStatus.LOST},
    CopyStatus.UNDER_REPAIR: {CopyStatus.AVAILABLE, CopyStatus.MISPLACED, CopyStatus.LOST},
    CopyStatus.LOST: {CopyStatus.AVAILABLE, CopyStatus.UNDER_REPAIR},
}

LOAN_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.ISSUED},
    LoanStatus.ISSUED: {LoanStatus.RETURNED},
    LoanStatus.RETURNED: set(),
}

FINE_TRANSITIONS = {
    FineStatus.OUTSTANDING: {FineStatus.OUTSTANDING, FineStatus.PARTIAL_PAID,
                             FineStatus.PAID, FineStatus.WAIVED},
    FineStatus.PARTIAL_PAID: {FineStatus.PARTIAL_PAID, FineStatus.PAID, FineStatus.WAIVED},
    FineStatus.PAID: set(),
    FineStatus.WAIVED: set(),
}

RENEWAL_TRANSITIONS = {
    RenewalStatus.PENDING: {RenewalStatus.APPROVED, RenewalStatus.REJECTED},
    RenewalStatus.APPROVED: set(),
    RenewalStatus.REJECTED: set(),
}


def can_transition(table, current, target) -> bool:
    return target in table.get(current, set())


def check_transition(table, current, target, entity="record"):
    if not can_transition(table, current, target):
        raise StateError(
            f"Cannot move {entity} from {current.value} to {target.value}."
        )
    return target


def sources_of(table, target):
    """Every status from which `target` may legally be reached."""
    return {status for status, targets in table.items() if target in targets}
