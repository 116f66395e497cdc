"""
Loan application endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, Query, status

from .dependencies import LoanSystem, get_loan_system, get_user_id
from .schemas import (
    CreateApplicationRequest, NotesRequest, CancelRequest, ApprovalRequest,
    RejectionRequest, BulkApproveRequest, BulkRejectRequest, serialize_application,
)
from ..applications import ApplicationStatus, RejectionDecision
from ..errors import NotFoundError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_application(
    request: CreateApplicationRequest,
    system: LoanSystem = Depends(get_loan_system),
    user_id: Optional[str] = Depends(get_user_id)
):
    """Create a draft application"""
    application = system.application_manager.create_application(
        client_id=request.client_id,
        requested_amount=request.requested_amount.to_money(),
        requested_term_months=request.requested_term_months,
        product_version_id=request.product_version_id,
        purpose=request.purpose,
        user_id=user_id
    )
    return serialize_application(application)


@router.get("")
async def list_applications(
    status_filter: Optional[str] = Query(None, alias="status"),
    client_id: Optional[str] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """List applications, optionally by status and client"""
    application_status = None
    if status_filter:
        try:
            application_status = ApplicationStatus(status_filter)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown status '{status_filter}'")

    applications = system.application_manager.list_applications(application_status, client_id)
    return {"applications": [serialize_application(a) for a in applications]}


@router.post("/bulk-approve")
async def bulk_approve(
    request: BulkApproveRequest,
    system: LoanSystem = Depends(get_loan_system),
    user_id: Optional[str] = Depends(get_user_id)
):
    """Approve many applications with the same terms"""
    result = system.bulk_runner.bulk_approve(
        request.application_ids, request.decision.to_decision(), user_id
    )
    return result.to_dict()


@router.post("/bulk-reject")
async def bulk_reject(
    request: BulkRejectRequest,
    system: LoanSystem = Depends(get_loan_system),
    user_id: Optional[str] = Depends(get_user_id)
):
    """Reject many applications with the same reason"""
    result = system.bulk_runner.bulk_reject(
        request.application_ids,
        RejectionDecision(reason=request.reason, notes=request.notes),
        user_id
    )
    return result.to_dict()


@router.get("/{application_id}")
async def get_application(
    application_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Get application details"""
    application = system.application_manager.get_application(application_id)
    if not application:
        raise NotFoundError("application", application_id)
    return serialize_application(application)


@router.post("/{application_id}/submit")
async def submit_application(
    application_id: str,
    system: LoanSystem = Depends(get_loan_system),
    user_id: Optional[str] = Depends(get_user_id)
):
    application = system.application_manager.submit(application_id, user_id)
    return serialize_application(application)


@router.post("/{application_id}/review")
async def move_to_under_review(
    application_id: str,
    system: LoanSystem = Depends(get_loan_system),
    user_id: Optional[str] = Depends(get_user_id)
):
    application = system.application_manager.move_to_under_review(application_id, user_id)
    return serialize_application(application)


@router.post("/{application_id}/return")
async def return_to_client(
    application_id: str,
    request: NotesRequest,
    system: LoanSystem = Depends(get_loan_system),
    user_id: Optional[str] = Depends(get_user_id)
):
    application = system.application_manager.return_to_client(
        application_id, request.notes, user_id
    )
    return serialize_application(application)


@router.post("/{application_id}/cancel")
async def cancel_application(
    application_id: str,
    request: CancelRequest,
    system: LoanSystem = Depends(get_loan_system),
    user_id: Optional[str] = Depends(get_user_id)
):
    application = system.application_manager.cancel(application_id, request.reason, user_id)
    return serialize_application(application)


@router.post("/{application_id}/approve", status_code=status.HTTP_201_CREATED)
async def approve_application(
    application_id: str,
    request: ApprovalRequest,
    system: LoanSystem = Depends(get_loan_system),
    user_id: Optional[str] = Depends(get_user_id)
):
    """Approve with terms and create the loan"""
    loan_id = system.application_manager.approve_and_create_loan(
        application_id, request.to_decision(), user_id
    )
    return {
        "application_id": application_id,
        "loan_id": loan_id,
        "message": "Application approved and loan created"
    }


@router.post("/{application_id}/reject")
async def reject_application(
    application_id: str,
    request: RejectionRequest,
    system: LoanSystem = Depends(get_loan_system),
    user_id: Optional[str] = Depends(get_user_id)
):
    application = system.application_manager.reject(
        application_id, request.to_decision(), user_id
    )
    return serialize_application(application)
