"""
Loan endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, Query

from .dependencies import LoanSystem, get_loan_system, get_user_id
from .schemas import WriteOffRequest, serialize_loan, serialize_entry, serialize_repayment
from ..errors import NotFoundError
from ..reconciliation import LoanStatus
from ..schedule import summarize_schedule


router = APIRouter()


@router.get("")
async def list_loans(
    status_filter: Optional[str] = Query(None, alias="status"),
    client_id: Optional[str] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """List loans, optionally by status and client"""
    loan_status = None
    if status_filter:
        try:
            loan_status = LoanStatus(status_filter)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown status '{status_filter}'")

    loans = system.loan_manager.list_loans(loan_status, client_id)
    return {"loans": [serialize_loan(loan) for loan in loans]}


@router.post("/reconcile-all")
async def reconcile_all(system: LoanSystem = Depends(get_loan_system)):
    """Run the status sync over every loan in repayment"""
    return system.loan_manager.reconcile_all()


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Get loan details"""
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise NotFoundError("loan", loan_id)
    return serialize_loan(loan)


@router.get("/{loan_id}/schedule")
async def get_loan_schedule(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Get loan repayment schedule with totals"""
    if not system.loan_manager.get_loan(loan_id):
        raise NotFoundError("loan", loan_id)
    schedule = system.loan_manager.get_schedule(loan_id)
    return {
        "schedule": [serialize_entry(entry) for entry in schedule],
        "summary": summarize_schedule(schedule).to_dict(),
    }


@router.get("/{loan_id}/standing")
async def get_loan_standing(
    loan_id: str,
    as_of: Optional[date] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """Days past due and arrears per installment"""
    return system.loan_manager.get_standing(loan_id, as_of).to_dict()


@router.get("/{loan_id}/repayments")
async def get_loan_repayments(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Repayment history, reversals included"""
    if not system.loan_manager.get_loan(loan_id):
        raise NotFoundError("loan", loan_id)
    transactions = system.loan_manager.list_repayments(loan_id)
    return {"repayments": [serialize_repayment(t) for t in transactions]}


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system),
    user_id: Optional[str] = Depends(get_user_id)
):
    """Disburse loan funds"""
    loan = system.loan_manager.disburse(loan_id, user_id)
    return serialize_loan(loan)


@router.post("/{loan_id}/reconcile")
async def reconcile_loan(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system),
    user_id: Optional[str] = Depends(get_user_id)
):
    """Re-derive the loan's status as of today"""
    loan_status = system.loan_manager.reconcile_status(loan_id, user_id)
    return {"loan_id": loan_id, "status": loan_status.value}


@router.post("/{loan_id}/write-off")
async def write_off_loan(
    loan_id: str,
    request: WriteOffRequest,
    system: LoanSystem = Depends(get_loan_system),
    user_id: Optional[str] = Depends(get_user_id)
):
    loan = system.loan_manager.write_off(loan_id, request.reason, user_id)
    return serialize_loan(loan)
