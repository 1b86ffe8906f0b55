#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
    tests.test_circulation
    ~~~~~~~~~~~~~~~~~~~~~~

    Issuing, returning, extending and renewing loans.

    :copyright: (c) 2025 by Authors.
    :license: see LICENSE for more details.
"""

import datetime
import pytest
from decimal import Decimal
from circa.core.api import CirculationAPI
from circa.core.exceptions import (
    ConflictError, Conflict, LimitExceeded, StateError, ValidationError, NotFoundError
)
from circa.core.notifications import NotificationKind
from circa.core.status import (
    CopyStatus, LoanStatus, FineReason, FineStatus, ReturnCondition, RenewalStatus
)
from tests.conftest import START, sent


def test_issue_sets_due_date_from_return_period(api, item, notifier):
    loan = api.issue(item.id, "alice")
    assert loan.status == LoanStatus.ISSUED
    assert loan.issued_at == START
    assert loan.due_date == START + datetime.timedelta(days=14)
    assert loan.extension_count == 0
    assert loan.max_extension_allowed == 2
    assert api.get_item(item.id).available_copies == 0
    assert sent(notifier, NotificationKind.ITEM_ISSUED) == ["alice"]


def test_issue_last_copy_twice(api, item):
    api.issue(item.id, "alice")
    with pytest.raises(ConflictError) as e:
        api.issue(item.id, "bob")
    assert e.value.reason == Conflict.NO_COPY_AVAILABLE
    assert api.get_item(item.id).available_copies == 0
    assert api.ledger.check(item.id)


def test_issue_same_item_twice_to_one_user(api):
    item = api.register_item("Kindred", 2)
    api.issue(item.id, "alice")
    with pytest.raises(ConflictError) as e:
        api.issue(item.id, "alice")
    assert e.value.reason == Conflict.ALREADY_ISSUED
    assert api.get_item(item.id).available_copies == 1


def test_issue_unknown_item(api):
    with pytest.raises(NotFoundError):
        api.issue(404, "alice")


def test_borrowing_limit(api):
    api.update_policy(max_concurrent_items=2)
    items = [api.register_item(f"Volume {n}", 1) for n in range(3)]
    api.issue(items[0].id, "alice")
    api.issue(items[1].id, "alice")
    with pytest.raises(LimitExceeded) as e:
        api.issue(items[2].id, "alice")
    assert e.value.limit == 2
    assert api.get_item(items[2].id).available_copies == 1


def test_fine_threshold_blocks_issue(api, item):
    api.update_policy(fine_block_threshold="5.00")
    api.assess_fine("alice", "7.50", notes="Lost library card")
    with pytest.raises(LimitExceeded):
        api.issue(item.id, "alice")
    api.issue(item.id, "bob")


def test_ineligible_user(db_session, clock, notifier, item):
    api = CirculationAPI(db=db_session, clock=clock, notifier=notifier,
                         is_eligible=lambda user_id: user_id != "mallory")
    with pytest.raises(StateError):
        api.issue(item.id, "mallory")
    assert api.issue(item.id, "alice")


def test_return_on_time(api, item, clock):
    loan = api.issue(item.id, "alice")
    clock.advance(days=10)
    result = api.return_loan(loan.id)
    assert result.loan.status == LoanStatus.RETURNED
    assert result.loan.returned_at == clock.now()
    assert result.fines == []
    assert result.fine is None
    assert result.allocated is None
    item = api.get_item(item.id)
    assert item.available_copies == 1
    assert item.copies[0].status == CopyStatus.AVAILABLE


def test_return_twice(api, item):
    loan = api.issue(item.id, "alice")
    api.return_loan(loan.id)
    with pytest.raises(StateError):
        api.return_loan(loan.id)
    assert api.get_item(item.id).available_copies == 1


def test_late_return_settles_overdue_fine(api, item, clock):
    api.update_policy(grace_period_days=2, daily_fine_rate="5")
    loan = api.issue(item.id, "alice")
    clock.advance(days=14 + 5)
    result = api.return_loan(loan.id)
    assert result.fine.reason == FineReason.OVERDUE
    assert result.fine.amount_incurred == Decimal("15.00")
    assert result.fine.outstanding_amount == Decimal("15.00")


def test_damaged_late_return_yields_two_fines(api, item, clock):
    api.update_policy(grace_period_days=0, daily_fine_rate="1", damaged_item_base_fine="10")
    loan = api.issue(item.id, "alice")
    clock.advance(days=15)
    result = api.return_loan(loan.id, ReturnCondition.DAMAGED, notes="Water damage")
    assert [f.reason for f in result.fines] == [FineReason.OVERDUE, FineReason.DAMAGED]
    assert [f.amount_incurred for f in result.fines] == [Decimal("1.00"), Decimal("10.00")]
    item = api.get_item(item.id)
    assert item.copies[0].status == CopyStatus.UNDER_REPAIR
    assert item.available_copies == 0
    assert "Water damage" in api.get_loan(loan.id).notes


def test_lost_return(api, item):
    loan = api.issue(item.id, "alice")
    result = api.return_loan(loan.id, "Lost")
    assert result.fine.reason == FineReason.LOST
    assert result.fine.amount_incurred == Decimal("15.00")
    assert result.loan.return_condition == ReturnCondition.LOST
    assert api.get_item(item.id).copies[0].status == CopyStatus.LOST


def test_overdue_is_derived(api, item, clock):
    loan = api.issue(item.id, "alice")
    clock.advance(days=15)
    loan = api.get_loan(loan.id)
    assert loan.status == LoanStatus.ISSUED
    assert loan.status_at(clock.now()) == LoanStatus.OVERDUE
    result = api.return_loan(loan.id)
    assert result.loan.status_at(clock.now()) == LoanStatus.RETURNED


def test_extension_limit(api, item, clock):
    loan = api.issue(item.id, "alice")
    first = START + datetime.timedelta(days=20)
    assert api.extend(loan.id, first).extension_count == 1
    assert api.extend(loan.id, first + datetime.timedelta(days=7)).extension_count == 2
    with pytest.raises(LimitExceeded) as e:
        api.extend(loan.id, first + datetime.timedelta(days=14))
    assert e.value.limit == 2
    loan = api.get_loan(loan.id)
    assert loan.extension_count == 2
    assert loan.due_date == first + datetime.timedelta(days=7)


def test_system_cap_below_loan_allowance(api, item):
    loan = api.issue(item.id, "alice")
    api.update_policy(max_period_extensions=1)
    api.extend(loan.id)
    with pytest.raises(LimitExceeded) as e:
        api.extend(loan.id)
    assert e.value.limit == 1


def test_extend_without_date_adds_extension_period(api, item):
    loan = api.issue(item.id, "alice")
    due = loan.due_date
    loan = api.extend(loan.id, reason="Exams")
    assert loan.due_date == due + datetime.timedelta(days=7)
    assert "Exams" in loan.notes


def test_extend_rejects_past_date(api, item, clock):
    loan = api.issue(item.id, "alice")
    with pytest.raises(ValidationError):
        api.extend(loan.id, clock.now() - datetime.timedelta(days=1))
    assert api.get_loan(loan.id).extension_count == 0


def test_extend_keeps_accrued_fine(api, item, clock):
    api.update_policy(grace_period_days=0, daily_fine_rate="2")
    loan = api.issue(item.id, "alice")
    clock.advance(days=17)
    api.run_overdue_sweep(manual=True)
    api.extend(loan.id, clock.now() + datetime.timedelta(days=7))
    fines = api.fines_for("alice")
    assert len(fines) == 1
    assert fines[0].amount_incurred == Decimal("6.00")
    assert fines[0].status == FineStatus.OUTSTANDING


def test_renewal_approved(api, item, notifier):
    loan = api.issue(item.id, "alice")
    wanted = loan.due_date + datetime.timedelta(days=10)
    request = api.request_renewal(loan.id, wanted, reason="Research")
    assert request.status == RenewalStatus.PENDING
    assert request.current_due_date == loan.due_date

    with pytest.raises(ConflictError) as e:
        api.request_renewal(loan.id, wanted)
    assert e.value.reason == Conflict.RENEWAL_PENDING

    request = api.approve_renewal(request.id)
    assert request.status == RenewalStatus.APPROVED
    assert request.approved_due_date == wanted
    loan = api.get_loan(loan.id)
    assert loan.due_date == wanted
    assert loan.extension_count == 1
    assert sent(notifier, NotificationKind.RENEWAL_APPROVED) == ["alice"]

    with pytest.raises(ConflictError) as e:
        api.reject_renewal(request.id)
    assert e.value.reason == Conflict.ALREADY_PROCESSED


def test_renewal_rejected(api, item, notifier):
    loan = api.issue(item.id, "alice")
    request = api.request_renewal(loan.id, loan.due_date + datetime.timedelta(days=3))
    request = api.reject_renewal(request.id, notes="Item is in demand")
    assert request.status == RenewalStatus.REJECTED
    assert request.admin_notes == "Item is in demand"
    assert api.get_loan(loan.id).extension_count == 0
    assert sent(notifier, NotificationKind.RENEWAL_REJECTED) == ["alice"]


def test_renewal_respects_extension_limit(api, item):
    loan = api.issue(item.id, "alice")
    api.extend(loan.id)
    api.extend(loan.id)
    with pytest.raises(LimitExceeded):
        api.request_renewal(loan.id, loan.due_date + datetime.timedelta(days=30))


def test_notification_failure_does_not_undo_issue(api, item, notifier):
    notifier.send.side_effect = RuntimeError("smtp down")
    loan = api.issue(item.id, "alice")
    assert api.get_loan(loan.id).status == LoanStatus.ISSUED
