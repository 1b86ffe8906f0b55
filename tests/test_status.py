import datetime
import pytest
from decimal import Decimal
from circa.core.exceptions import StateError, ValidationError
from circa.core.models import to_money, days_overdue
from circa.core.status import (
    CopyStatus, LoanStatus, FineStatus, ReturnCondition,
    COPY_TRANSITIONS, LOAN_TRANSITIONS, FINE_TRANSITIONS,
    can_transition, check_transition, sources_of
)

DUE = datetime.datetime(2025, 3, 1, 12, 0)


def test_loan_table_is_linear():
    assert can_transition(LOAN_TRANSITIONS, LoanStatus.PENDING, LoanStatus.ISSUED)
    assert can_transition(LOAN_TRANSITIONS, LoanStatus.ISSUED, LoanStatus.RETURNED)
    assert not can_transition(LOAN_TRANSITIONS, LoanStatus.RETURNED, LoanStatus.ISSUED)
    assert not can_transition(LOAN_TRANSITIONS, LoanStatus.ISSUED, LoanStatus.OVERDUE)


def test_settled_fines_are_terminal():
    for settled in (FineStatus.PAID, FineStatus.WAIVED):
        for target in FineStatus:
            assert not can_transition(FINE_TRANSITIONS, settled, target)


def test_check_transition_raises_state_error():
    with pytest.raises(StateError):
        check_transition(LOAN_TRANSITIONS, LoanStatus.RETURNED, LoanStatus.ISSUED, "loan")
    assert check_transition(COPY_TRANSITIONS, CopyStatus.ISSUED, CopyStatus.LOST) == CopyStatus.LOST


def test_only_available_copies_can_be_issued():
    assert sources_of(COPY_TRANSITIONS, CopyStatus.ISSUED) == {CopyStatus.AVAILABLE}


def test_return_condition_decides_copy_status():
    assert ReturnCondition.GOOD.copy_status == CopyStatus.AVAILABLE
    assert ReturnCondition.POOR.copy_status == CopyStatus.AVAILABLE
    assert ReturnCondition.DAMAGED.copy_status == CopyStatus.UNDER_REPAIR
    assert ReturnCondition.LOST.copy_status == CopyStatus.LOST


@pytest.mark.parametrize("now, grace, expected", [
    (DUE - datetime.timedelta(hours=1), 0, 0),
    (DUE, 0, 0),
    (DUE + datetime.timedelta(hours=1), 0, 1),
    (DUE + datetime.timedelta(days=5), 2, 3),
    (DUE + datetime.timedelta(days=1), 2, 0),
])
def test_days_overdue(now, grace, expected):
    assert days_overdue(DUE, now, grace) == expected


def test_to_money():
    assert to_money("12.5") == Decimal("12.50")
    assert to_money(3) == Decimal("3.00")
    with pytest.raises(ValidationError):
        to_money("twelve")
    with pytest.raises(ValidationError):
        to_money("NaN")
