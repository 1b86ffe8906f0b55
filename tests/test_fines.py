#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
    tests.test_fines
    ~~~~~~~~~~~~~~~~

    Overdue and reminder sweeps, payments and waivers.

    :copyright: (c) 2025 by Authors.
    :license: see LICENSE for more details.
"""

import pytest
from decimal import Decimal
from unittest.mock import patch
from circa.core.exceptions import (
    ConflictError, Conflict, ValidationError, NotFoundError, ExternalServiceError
)
from circa.core.notifications import NotificationKind
from circa.core.status import FineStatus, FineReason, PaymentMethod
from tests.conftest import sent


@pytest.fixture
def overdue_loan(api, item, clock):
    """A loan due five days ago under a grace period of 2 and a rate of 5."""
    api.update_policy(grace_period_days=2, daily_fine_rate="5")
    loan = api.issue(item.id, "alice")
    clock.advance(days=14 + 5)
    return loan


@pytest.fixture
def fine(api):
    return api.assess_fine("alice", "100", notes="Replacement cost")


def test_overdue_sweep_computes_fine(api, overdue_loan, notifier):
    report = api.run_overdue_sweep(manual=True)
    assert report.processed == 1
    assert report.created == 1
    assert report.failures == []
    fines = api.fines_for("alice")
    assert len(fines) == 1
    assert fines[0].reason == FineReason.OVERDUE
    assert fines[0].loan_id == overdue_loan.id
    assert fines[0].amount_incurred == Decimal("15.00")
    assert fines[0].outstanding_amount == Decimal("15.00")
    assert sent(notifier, NotificationKind.FINE_APPLIED) == ["alice"]


def test_overdue_sweep_is_idempotent(api, overdue_loan):
    api.run_overdue_sweep(manual=True)
    report = api.run_overdue_sweep(manual=True)
    assert report.created == 0
    assert report.updated == 0
    fines = api.fines_for("alice")
    assert len(fines) == 1
    assert fines[0].amount_incurred == Decimal("15.00")


def test_overdue_fine_grows_day_by_day(api, overdue_loan, clock):
    api.run_overdue_sweep(manual=True)
    clock.advance(days=1)
    report = api.run_overdue_sweep(manual=True)
    assert report.updated == 1
    assert api.fines_for("alice")[0].amount_incurred == Decimal("20.00")


def test_growing_fine_is_announced_once(api, overdue_loan, clock, notifier):
    api.run_overdue_sweep(manual=True)
    for _ in range(3):
        clock.advance(days=1)
        assert api.run_overdue_sweep(manual=True).updated == 1
    assert sent(notifier, NotificationKind.FINE_APPLIED) == ["alice"]


def test_fine_never_shrinks(api, overdue_loan):
    api.run_overdue_sweep(manual=True)
    api.update_policy(daily_fine_rate="1")
    api.run_overdue_sweep(manual=True)
    assert api.fines_for("alice")[0].amount_incurred == Decimal("15.00")


def test_sweep_ignores_loans_inside_grace(api, item, clock):
    api.update_policy(grace_period_days=2)
    api.issue(item.id, "alice")
    clock.advance(days=15)
    report = api.run_overdue_sweep(manual=True)
    assert report.processed == 0
    assert api.fines_for("alice") == []


def test_returned_loans_are_excluded(api, overdue_loan, clock):
    result = api.return_loan(overdue_loan.id)
    assert result.fine.amount_incurred == Decimal("15.00")
    clock.advance(days=3)
    report = api.run_overdue_sweep(manual=True)
    assert report.processed == 0
    assert api.fines_for("alice")[0].amount_incurred == Decimal("15.00")


def test_return_after_sweep_raises_existing_fine(api, overdue_loan, clock):
    api.run_overdue_sweep(manual=True)
    clock.advance(days=2)
    result = api.return_loan(overdue_loan.id)
    fines = api.fines_for("alice")
    assert len(fines) == 1
    assert result.fine.id == fines[0].id
    assert fines[0].amount_incurred == Decimal("25.00")


def test_paid_fine_is_not_reopened(api, overdue_loan, clock):
    api.run_overdue_sweep(manual=True)
    fine = api.fines_for("alice")[0]
    api.record_payment(fine.id, "15", PaymentMethod.CASH)
    clock.advance(days=1)
    report = api.run_overdue_sweep(manual=True)
    assert report.updated == 0
    fine = api.fines.get_fine(fine.id, refresh=True)
    assert fine.status == FineStatus.PAID
    assert fine.amount_incurred == Decimal("15.00")


def test_sweep_records_failures_and_continues(api, clock):
    api.update_policy(grace_period_days=0)
    first, second = api.register_item("Volume 1", 1), api.register_item("Volume 2", 1)
    bad = api.issue(first.id, "alice")
    api.issue(second.id, "bob")
    clock.advance(days=20)
    accrue = api.fines._accrue

    def flaky(loan, now, policy=None):
        if loan.id == bad.id:
            raise ValidationError("corrupt loan")
        return accrue(loan, now, policy)

    with patch.object(api.fines, '_accrue', side_effect=flaky):
        report = api.run_overdue_sweep(manual=True)
    assert report.processed == 2
    assert report.created == 1
    assert [f.loan_id for f in report.failures] == [bad.id]
    assert [f.user_id for f in api.fines_for("bob")] == ["bob"]
    assert api.fines_for("alice") == []


def test_concurrent_sweep_is_skipped(api, overdue_loan):
    lock = api.fines._running['overdue']
    lock.acquire()
    try:
        report = api.run_overdue_sweep(manual=True)
    finally:
        lock.release()
    assert report.skipped is True
    assert report.processed == 0
    assert api.fines_for("alice") == []


def test_sweep_runs_are_recorded(api, overdue_loan):
    api.run_overdue_sweep(manual=True)
    api.run_reminder_sweep(manual=True)
    runs = api.last_runs()
    assert {run.kind for run in runs} == {"overdue", "reminders"}
    overdue = api.last_runs("overdue")[0]
    assert overdue.created == 1
    assert overdue.manual is True


def test_payments(api, fine, clock):
    fine = api.record_payment(fine.id, "40", "Cash")
    assert fine.amount_paid == Decimal("40.00")
    assert fine.outstanding_amount == Decimal("60.00")
    assert fine.status == FineStatus.PARTIAL_PAID
    assert fine.date_settled is None

    clock.advance(hours=2)
    fine = api.record_payment(fine.id, "60", PaymentMethod.CARD, reference="txn-42")
    assert fine.outstanding_amount == Decimal("0.00")
    assert fine.status == FineStatus.PAID
    assert fine.date_settled == clock.now()
    assert [(p.amount, p.method) for p in fine.payments] == [
        (Decimal("40.00"), PaymentMethod.CASH), (Decimal("60.00"), PaymentMethod.CARD)
    ]

    with pytest.raises(ConflictError) as e:
        api.record_payment(fine.id, "1", "Cash")
    assert e.value.reason == Conflict.ALREADY_PROCESSED


@pytest.mark.parametrize("amount, method", [
    ("0", "Cash"),
    ("-5", "Cash"),
    ("100.01", "Cash"),
    ("10", "Cheque"),
    ("ten", "Cash"),
])
def test_invalid_payment(api, fine, amount, method):
    with pytest.raises(ValidationError):
        api.record_payment(fine.id, amount, method)
    fine = api.fines.get_fine(fine.id, refresh=True)
    assert fine.amount_paid == Decimal("0.00")
    assert fine.status == FineStatus.OUTSTANDING


def test_payment_on_unknown_fine(api):
    with pytest.raises(NotFoundError):
        api.record_payment(404, "1", "Cash")


def test_waive(api, fine):
    api.record_payment(fine.id, "30", "Cash")
    fine = api.waive_fine(fine.id, "Hardship")
    assert fine.status == FineStatus.WAIVED
    assert fine.outstanding_amount == Decimal("0.00")
    assert fine.amount_paid == Decimal("30.00")
    assert fine.waiver_reason == "Hardship"
    with pytest.raises(ConflictError) as e:
        api.waive_fine(fine.id, "Again")
    assert e.value.reason == Conflict.ALREADY_PROCESSED
    with pytest.raises(ConflictError):
        api.record_payment(fine.id, "10", "Cash")


def test_waive_needs_reason(api, fine):
    with pytest.raises(ValidationError):
        api.waive_fine(fine.id, "  ")


def test_outstanding_total(api, fine):
    api.assess_fine("alice", "2.50")
    api.record_payment(fine.id, "40", "Cash")
    assert api.outstanding_total("alice") == Decimal("62.50")
    assert len(api.fines_for("alice", open_only=True)) == 2


def test_reminder_sweep(api, clock, notifier):
    api.update_policy(reminder_lookahead_days=2)
    soon = api.register_item("Due soon", 1)
    later = api.register_item("Due later", 1)
    api.issue(soon.id, "alice")
    clock.advance(days=3)
    api.issue(later.id, "bob")
    clock.advance(days=10)

    report = api.run_reminder_sweep(manual=True)

    assert report.processed == 1
    assert report.notified == 1
    assert sent(notifier, NotificationKind.DUE_REMINDER) == ["alice"]
    assert api.open_loans("alice")[0].last_reminded_at == clock.now()


def test_reminder_sent_once_a_day(api, item, clock, notifier):
    api.issue(item.id, "alice")
    clock.advance(days=12)
    assert api.run_reminder_sweep(manual=True).notified == 1
    clock.advance(hours=1)
    assert api.run_reminder_sweep(manual=True).processed == 0
    clock.advance(days=1)
    assert api.run_reminder_sweep(manual=True).notified == 1
    assert sent(notifier, NotificationKind.DUE_REMINDER) == ["alice", "alice"]


def test_failed_reminder_is_retried(api, item, clock, notifier):
    api.issue(item.id, "alice")
    clock.advance(days=13)
    notifier.send.side_effect = ExternalServiceError("gateway down")
    report = api.run_reminder_sweep(manual=True)
    assert report.notified == 0
    assert len(report.failures) == 1
    assert api.open_loans("alice")[0].last_reminded_at is None

    notifier.send.side_effect = None
    report = api.run_reminder_sweep(manual=True)
    assert report.notified == 1


def test_notify_failure_does_not_block_accrual(api, overdue_loan, notifier):
    notifier.send.side_effect = ExternalServiceError("gateway down")
    report = api.run_overdue_sweep(manual=True)
    assert report.created == 1
    assert report.notified == 0
    assert api.fines_for("alice")[0].amount_incurred == Decimal("15.00")
