"""
Repayment endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import LoanSystem, get_loan_system, get_user_id
from .schemas import RepaymentRequest, ReversalRequest, serialize_repayment


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def post_repayment(
    request: RepaymentRequest,
    system: LoanSystem = Depends(get_loan_system),
    user_id: Optional[str] = Depends(get_user_id)
):
    """Post a repayment and return its receipt"""
    transaction = system.loan_manager.post_repayment(
        loan_id=request.loan_id,
        amount=request.amount.to_money(),
        channel=request.parsed_channel(),
        transaction_date=request.transaction_date,
        reference=request.reference,
        notes=request.notes,
        user_id=user_id
    )
    loan = system.loan_manager.get_loan(request.loan_id)
    data = serialize_repayment(transaction)
    data["loan_status"] = loan.status.value
    return data


@router.get("/{transaction_id}")
async def get_repayment(
    transaction_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    return serialize_repayment(system.loan_manager.get_repayment(transaction_id))


@router.post("/{transaction_id}/reverse")
async def reverse_repayment(
    transaction_id: str,
    request: ReversalRequest,
    system: LoanSystem = Depends(get_loan_system),
    user_id: Optional[str] = Depends(get_user_id)
):
    """Reverse a posted repayment"""
    transaction = system.loan_manager.reverse_repayment(transaction_id, request.reason, user_id)
    loan = system.loan_manager.get_loan(transaction.loan_id)
    data = serialize_repayment(transaction)
    data["loan_status"] = loan.status.value
    return data
