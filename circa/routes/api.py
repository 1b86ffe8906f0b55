#!/usr/bin/env python

"""
    API routes for Circa,
    covering the catalogue, loans, waiting lists, fines and sweeps.

    Domain errors are not caught here; `circa.app` turns every CircaError
    into a JSON error response.

    :copyright: (c) 2025 by AUTHORS
    :license: see LICENSE for more details
"""

from functools import wraps
from typing import Optional, List
from fastapi import APIRouter, Request, Response, status
from circa.core.circulation import ReturnResult
from circa.core.models import Loan as LoanModel
from circa.schemas.item import Item, ItemCreate, CopiesCreate, BulkStatus
from circa.schemas.loan import Loan, IssueRequest, ReturnRequest, ExtendRequest, ReturnOutcome
from circa.schemas.renewal import RenewalRequest, RenewalCreate, RenewalDecision
from circa.schemas.waitlist import QueueEntry, QueueJoin, RequestOutcome
from circa.schemas.fine import Fine, FineCreate, FineSummary, PaymentCreate, Waiver
from circa.schemas.sweep import SweepReport, SweepRun
from circa.schemas.setting import PolicyUpdate
from circa.core.policy import Policy

router = APIRouter()


def managed(func):
    """
    Runs a sync endpoint against the app's CirculationAPI and hands the
    session back once the response has been built.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        api = kwargs['request'].app.state.api
        try:
            return func(*args, **kwargs)
        finally:
            api.release()
    return wrapper


def _api(request):
    return request.app.state.api


def _loan(request, loan):
    return Loan.at(loan, _api(request).now())


def _outcome(request, result: ReturnResult):
    return ReturnOutcome(
        loan=_loan(request, result.loan),
        fines=[Fine.model_validate(fine) for fine in result.fines],
        allocated=_loan(request, result.allocated) if result.allocated else None,
    )


# Catalogue

@router.get('/items')
@managed
def get_items(request: Request, offset: Optional[int] = None, limit: Optional[int] = 50) -> List[Item]:
    return [Item.model_validate(item) for item in _api(request).items(offset=offset, limit=limit)]


@router.post('/items', status_code=status.HTTP_201_CREATED)
@managed
def register_item(request: Request, body: ItemCreate) -> Item:
    item = _api(request).register_item(body.title, body.quantity, body.default_return_period)
    return Item.model_validate(item)


@router.get('/items/{item_id}')
@managed
def get_item(request: Request, item_id: int) -> Item:
    return Item.model_validate(_api(request).get_item(item_id))


@router.post('/items/{item_id}/copies', status_code=status.HTTP_201_CREATED)
@managed
def add_copies(request: Request, item_id: int, body: CopiesCreate) -> Item:
    return Item.model_validate(_api(request).add_copies(item_id, body.count))


@router.put('/items/{item_id}/copies/status')
@managed
def set_copies_status(request: Request, item_id: int, body: BulkStatus):
    api = _api(request)
    changed = api.set_bulk_status(item_id, body.from_statuses, body.to_status)
    return {"changed": changed, "item": Item.model_validate(api.get_item(item_id))}


@router.delete('/items/{item_id}', status_code=status.HTTP_204_NO_CONTENT)
@managed
def remove_item(request: Request, item_id: int):
    _api(request).remove_item(item_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Loans

@router.post('/loans', status_code=status.HTTP_201_CREATED)
@managed
def issue(request: Request, body: IssueRequest) -> Loan:
    return _loan(request, _api(request).issue(body.item_id, body.user_id))


@router.get('/loans/{loan_id}')
@managed
def get_loan(request: Request, loan_id: int) -> Loan:
    return _loan(request, _api(request).get_loan(loan_id))


@router.get('/users/{user_id}/loans')
@managed
def get_user_loans(request: Request, user_id: str) -> List[Loan]:
    return [_loan(request, loan) for loan in _api(request).open_loans(user_id)]


@router.post('/loans/{loan_id}/return')
@managed
def return_loan(request: Request, loan_id: int, body: Optional[ReturnRequest] = None) -> ReturnOutcome:
    body = body or ReturnRequest()
    result = _api(request).return_loan(loan_id, body.condition, notes=body.notes)
    return _outcome(request, result)


@router.post('/loans/{loan_id}/extend')
@managed
def extend(request: Request, loan_id: int, body: Optional[ExtendRequest] = None) -> Loan:
    body = body or ExtendRequest()
    return _loan(request, _api(request).extend(loan_id, body.new_due_date, body.reason))


@router.post('/loans/{loan_id}/renewals', status_code=status.HTTP_201_CREATED)
@managed
def request_renewal(request: Request, loan_id: int, body: RenewalCreate) -> RenewalRequest:
    renewal = _api(request).request_renewal(loan_id, body.new_due_date, body.reason)
    return RenewalRequest.model_validate(renewal)


@router.post('/renewals/{request_id}/approve')
@managed
def approve_renewal(request: Request, request_id: int,
                    body: Optional[RenewalDecision] = None) -> RenewalRequest:
    body = body or RenewalDecision()
    renewal = _api(request).approve_renewal(request_id, body.approved_due_date, body.notes)
    return RenewalRequest.model_validate(renewal)


@router.post('/renewals/{request_id}/reject')
@managed
def reject_renewal(request: Request, request_id: int,
                   body: Optional[RenewalDecision] = None) -> RenewalRequest:
    body = body or RenewalDecision()
    return RenewalRequest.model_validate(_api(request).reject_renewal(request_id, body.notes))


# Waiting lists

@router.post('/items/{item_id}/request')
@managed
def request_item(request: Request, item_id: int, body: QueueJoin) -> RequestOutcome:
    result = _api(request).request_item(item_id, body.user_id)
    if isinstance(result, LoanModel):
        return RequestOutcome(issued=True, loan=_loan(request, result))
    return RequestOutcome(issued=False, queue_entry=QueueEntry.model_validate(result))


@router.get('/items/{item_id}/queue')
@managed
def get_queue(request: Request, item_id: int) -> List[QueueEntry]:
    return [QueueEntry.model_validate(entry) for entry in _api(request).queue(item_id)]


@router.post('/items/{item_id}/queue', status_code=status.HTTP_201_CREATED)
@managed
def join_queue(request: Request, item_id: int, body: QueueJoin) -> QueueEntry:
    return QueueEntry.model_validate(_api(request).join_queue(item_id, body.user_id))


@router.delete('/items/{item_id}/queue/{user_id}', status_code=status.HTTP_204_NO_CONTENT)
@managed
def leave_queue(request: Request, item_id: int, user_id: str):
    _api(request).leave_queue(item_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post('/items/{item_id}/allocate')
@managed
def allocate(request: Request, item_id: int, body: QueueJoin) -> Loan:
    return _loan(request, _api(request).allocate(item_id, body.user_id))


# Fines

@router.post('/fines', status_code=status.HTTP_201_CREATED)
@managed
def assess_fine(request: Request, body: FineCreate) -> Fine:
    fine = _api(request).assess_fine(body.user_id, body.amount, notes=body.notes,
                                     item_id=body.item_id)
    return Fine.model_validate(fine)


@router.get('/users/{user_id}/fines')
@managed
def get_user_fines(request: Request, user_id: str, open_only: bool = False) -> FineSummary:
    api = _api(request)
    return FineSummary(
        user_id=user_id,
        outstanding_total=api.outstanding_total(user_id),
        fines=[Fine.model_validate(fine) for fine in api.fines_for(user_id, open_only)],
    )


@router.post('/fines/{fine_id}/payments')
@managed
def record_payment(request: Request, fine_id: int, body: PaymentCreate) -> Fine:
    fine = _api(request).record_payment(fine_id, body.amount, body.method, body.reference)
    return Fine.model_validate(fine)


@router.post('/fines/{fine_id}/waive')
@managed
def waive_fine(request: Request, fine_id: int, body: Waiver) -> Fine:
    return Fine.model_validate(_api(request).waive_fine(fine_id, body.reason))


# Sweeps

@router.post('/sweeps/overdue')
@managed
def run_overdue_sweep(request: Request) -> SweepReport:
    return _api(request).run_overdue_sweep(manual=True)


@router.post('/sweeps/reminders')
@managed
def run_reminder_sweep(request: Request) -> SweepReport:
    return _api(request).run_reminder_sweep(manual=True)


@router.get('/sweeps')
@managed
def get_sweeps(request: Request, kind: Optional[str] = None, limit: int = 10) -> List[SweepRun]:
    return [SweepRun.model_validate(run) for run in _api(request).last_runs(kind, limit)]


# Settings

@router.get('/settings')
@managed
def get_settings(request: Request) -> Policy:
    return _api(request).policy()


@router.put('/settings')
@managed
def update_settings(request: Request, body: PolicyUpdate) -> Policy:
    return _api(request).update_policy(**body.model_dump(exclude_unset=True))
