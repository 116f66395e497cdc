"""
Loan Application Module

Review workflow for loan applications: draft, submission, review, and the
approve/reject decision. Approval records the approved terms and creates the
application's single loan in the same atomic block.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional
from enum import Enum
import uuid

from .currency import Money, to_decimal
from .storage import StorageInterface, StorageRecord, KeyedLock
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import LoanEngineConfig, get_config
from .errors import (
    DuplicateApprovalError, IllegalStateTransitionError, InvalidTermsError, NotFoundError,
)
from .logging_config import get_logger, log_action
from .schedule import LoanTerms, RatePeriod, RepaymentFrequency, InterestMethod, processing_fee_for
from .loans import LoanManager, next_reference


logger = get_logger("loan_engine.applications")


class ApplicationStatus(Enum):
    """Loan application review states"""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED_TO_CLIENT = "returned_to_client"
    CANCELLED = "cancelled"


def _money_or_none(value: Optional[Dict[str, str]]) -> Optional[Money]:
    return Money.from_dict(value) if value else None


def _datetime_or_none(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class LoanApplication(StorageRecord):
    """Application for a loan and the decision taken on it"""
    application_number: str
    client_id: str
    requested_amount: Money
    requested_term_months: int
    product_version_id: Optional[str] = None
    purpose: Optional[str] = None
    status: ApplicationStatus = ApplicationStatus.DRAFT

    # Set only on approval
    approved_principal: Optional[Money] = None
    approved_term_months: Optional[int] = None
    approved_interest_rate: Optional[Decimal] = None
    approved_rate_period: Optional[RatePeriod] = None
    approved_repayment_frequency: Optional[RepaymentFrequency] = None
    approved_interest_method: Optional[InterestMethod] = None
    approved_processing_fee: Optional[Money] = None
    approved_start_date: Optional[date] = None

    rejection_reason: Optional[str] = None
    decision_notes: Optional[str] = None
    decided_by: Optional[str] = None
    loan_id: Optional[str] = None

    # Transition timestamps
    submitted_at: Optional[datetime] = None
    review_started_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def approved_terms(self) -> LoanTerms:
        """
        Terms the loan is created with

        Raises:
            IllegalStateTransitionError: If the application is not approved
        """
        if self.status != ApplicationStatus.APPROVED:
            raise IllegalStateTransitionError(
                "application", "create a loan from", self.status.value,
                ApplicationStatus.APPROVED.value
            )
        return LoanTerms(
            principal=self.approved_principal,
            interest_rate=self.approved_interest_rate,
            term_months=self.approved_term_months,
            start_date=self.approved_start_date,
            rate_period=self.approved_rate_period,
            repayment_frequency=self.approved_repayment_frequency,
            interest_method=self.approved_interest_method,
            processing_fee=self.approved_processing_fee,
        )

    def to_dict(self) -> Dict[str, Any]:
        def iso(value):
            return value.isoformat() if value else None

        def enum_value(value):
            return value.value if value else None

        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'application_number': self.application_number,
            'client_id': self.client_id,
            'requested_amount': self.requested_amount.to_dict(),
            'requested_term_months': self.requested_term_months,
            'product_version_id': self.product_version_id,
            'purpose': self.purpose,
            'status': self.status.value,
            'approved_principal': self.approved_principal.to_dict() if self.approved_principal else None,
            'approved_term_months': self.approved_term_months,
            'approved_interest_rate': (str(self.approved_interest_rate)
                                       if self.approved_interest_rate is not None else None),
            'approved_rate_period': enum_value(self.approved_rate_period),
            'approved_repayment_frequency': enum_value(self.approved_repayment_frequency),
            'approved_interest_method': enum_value(self.approved_interest_method),
            'approved_processing_fee': (self.approved_processing_fee.to_dict()
                                        if self.approved_processing_fee else None),
            'approved_start_date': iso(self.approved_start_date),
            'rejection_reason': self.rejection_reason,
            'decision_notes': self.decision_notes,
            'decided_by': self.decided_by,
            'loan_id': self.loan_id,
            'submitted_at': iso(self.submitted_at),
            'review_started_at': iso(self.review_started_at),
            'approved_at': iso(self.approved_at),
            'rejected_at': iso(self.rejected_at),
            'returned_at': iso(self.returned_at),
            'cancelled_at': iso(self.cancelled_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanApplication':
        rate = data.get('approved_interest_rate')
        start = data.get('approved_start_date')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            application_number=data['application_number'],
            client_id=data['client_id'],
            requested_amount=Money.from_dict(data['requested_amount']),
            requested_term_months=int(data['requested_term_months']),
            product_version_id=data.get('product_version_id'),
            purpose=data.get('purpose'),
            status=ApplicationStatus(data['status']),
            approved_principal=_money_or_none(data.get('approved_principal')),
            approved_term_months=data.get('approved_term_months'),
            approved_interest_rate=Decimal(rate) if rate is not None else None,
            approved_rate_period=(RatePeriod(data['approved_rate_period'])
                                  if data.get('approved_rate_period') else None),
            approved_repayment_frequency=(RepaymentFrequency(data['approved_repayment_frequency'])
                                          if data.get('approved_repayment_frequency') else None),
            approved_interest_method=(InterestMethod(data['approved_interest_method'])
                                      if data.get('approved_interest_method') else None),
            approved_processing_fee=_money_or_none(data.get('approved_processing_fee')),
            approved_start_date=date.fromisoformat(start) if start else None,
            rejection_reason=data.get('rejection_reason'),
            decision_notes=data.get('decision_notes'),
            decided_by=data.get('decided_by'),
            loan_id=data.get('loan_id'),
            submitted_at=_datetime_or_none(data.get('submitted_at')),
            review_started_at=_datetime_or_none(data.get('review_started_at')),
            approved_at=_datetime_or_none(data.get('approved_at')),
            rejected_at=_datetime_or_none(data.get('rejected_at')),
            returned_at=_datetime_or_none(data.get('returned_at')),
            cancelled_at=_datetime_or_none(data.get('cancelled_at')),
        )


@dataclass
class ApprovalDecision:
    """Approve with these terms (they may differ from what was requested)"""
    principal: Money
    term_months: int
    interest_rate: Decimal
    rate_period: RatePeriod = RatePeriod.PER_ANNUM
    repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY
    interest_method: InterestMethod = InterestMethod.DECLINING_BALANCE
    processing_fee: Optional[Money] = None
    processing_fee_rate: Optional[Decimal] = None   # Fraction of principal, instead of a fixed fee
    processing_fee_cap: Optional[Money] = None
    start_date: Optional[date] = None   # Defaults to the approval date
    notes: Optional[str] = None

    def to_terms(self, start_date: date) -> LoanTerms:
        """
        Build and validate the loan terms

        Raises:
            InvalidTermsError: If the terms cannot produce a schedule
        """
        try:
            rate = to_decimal(self.interest_rate)
        except ValueError as e:
            raise InvalidTermsError(str(e))
        terms = LoanTerms(
            principal=self.principal,
            interest_rate=rate,
            term_months=self.term_months,
            start_date=self.start_date or start_date,
            rate_period=self.rate_period,
            repayment_frequency=self.repayment_frequency,
            interest_method=self.interest_method,
            processing_fee=processing_fee_for(
                self.principal, self.processing_fee,
                self.processing_fee_rate, self.processing_fee_cap
            ),
        )
        terms.validate()
        return terms


@dataclass
class RejectionDecision:
    """Reject with a reason"""
    reason: str
    notes: Optional[str] = None


class LoanApplicationManager:
    """
    Manages the application review workflow and approval into a loan
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        loan_manager: LoanManager,
        clock: Optional[Clock] = None,
        config: Optional[LoanEngineConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.loan_manager = loan_manager
        self.clock = clock or loan_manager.clock or SystemClock()
        self.config = config or get_config()
        self._locks = KeyedLock()

        self.applications_table = "loan_applications"

    def create_application(
        self,
        client_id: str,
        requested_amount: Money,
        requested_term_months: int,
        product_version_id: Optional[str] = None,
        purpose: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> LoanApplication:
        """
        Create a DRAFT application

        Raises:
            InvalidTermsError: For a non-positive amount or a term under a month
        """
        if not requested_amount.is_positive():
            raise InvalidTermsError(
                f"Requested amount must be positive, got {requested_amount.to_string()}"
            )
        if requested_term_months < 1:
            raise InvalidTermsError(f"Requested term must be at least 1 month, got {requested_term_months}")

        now = self.clock.now()
        with self.storage.atomic():
            application = LoanApplication(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                application_number=next_reference(
                    self.storage, self.config.application_number_prefix, now.year
                ),
                client_id=client_id,
                requested_amount=requested_amount,
                requested_term_months=requested_term_months,
                product_version_id=product_version_id,
                purpose=purpose,
            )
            self._save(application)

            self.audit_trail.log_event(
                event_type=AuditEventType.APPLICATION_CREATED,
                entity_type="application",
                entity_id=application.id,
                metadata={
                    "application_number": application.application_number,
                    "client_id": client_id,
                    "requested_amount": requested_amount.to_string(),
                    "requested_term_months": requested_term_months,
                },
                user_id=user_id
            )

        log_action(logger, "info", f"Application {application.application_number} created",
                   user_id=user_id, action="create_application", resource=application.id)
        return application

    def submit(self, application_id: str, user_id: Optional[str] = None) -> LoanApplication:
        """DRAFT or RETURNED_TO_CLIENT -> SUBMITTED"""
        def mutate(application, now):
            application.submitted_at = now

        return self._transition(
            application_id, "submit",
            (ApplicationStatus.DRAFT, ApplicationStatus.RETURNED_TO_CLIENT),
            ApplicationStatus.SUBMITTED, AuditEventType.APPLICATION_SUBMITTED,
            user_id, mutate
        )

    def move_to_under_review(self, application_id: str, user_id: Optional[str] = None) -> LoanApplication:
        """SUBMITTED -> UNDER_REVIEW"""
        def mutate(application, now):
            application.review_started_at = now

        return self._transition(
            application_id, "move to review", (ApplicationStatus.SUBMITTED,),
            ApplicationStatus.UNDER_REVIEW, AuditEventType.APPLICATION_UNDER_REVIEW,
            user_id, mutate
        )

    def return_to_client(
        self,
        application_id: str,
        notes: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> LoanApplication:
        """UNDER_REVIEW -> RETURNED_TO_CLIENT, for corrections"""
        def mutate(application, now):
            application.returned_at = now
            application.decision_notes = notes

        return self._transition(
            application_id, "return to client", (ApplicationStatus.UNDER_REVIEW,),
            ApplicationStatus.RETURNED_TO_CLIENT, AuditEventType.APPLICATION_RETURNED,
            user_id, mutate, {"notes": notes}
        )

    def cancel(
        self,
        application_id: str,
        reason: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> LoanApplication:
        """DRAFT, SUBMITTED or RETURNED_TO_CLIENT -> CANCELLED"""
        def mutate(application, now):
            application.cancelled_at = now
            application.decision_notes = reason

        return self._transition(
            application_id, "cancel",
            (ApplicationStatus.DRAFT, ApplicationStatus.SUBMITTED,
             ApplicationStatus.RETURNED_TO_CLIENT),
            ApplicationStatus.CANCELLED, AuditEventType.APPLICATION_CANCELLED,
            user_id, mutate, {"reason": reason}
        )

    def reject(
        self,
        application_id: str,
        decision: RejectionDecision,
        user_id: Optional[str] = None
    ) -> LoanApplication:
        """
        UNDER_REVIEW -> REJECTED

        Raises:
            InvalidTermsError: If no reason is given
        """
        if not decision.reason or not decision.reason.strip():
            raise InvalidTermsError("A rejection reason is required")

        def mutate(application, now):
            application.rejected_at = now
            application.rejection_reason = decision.reason
            application.decision_notes = decision.notes
            application.decided_by = user_id

        return self._transition(
            application_id, "reject", (ApplicationStatus.UNDER_REVIEW,),
            ApplicationStatus.REJECTED, AuditEventType.APPLICATION_REJECTED,
            user_id, mutate, {"reason": decision.reason}
        )

    def approve_and_create_loan(
        self,
        application_id: str,
        decision: ApprovalDecision,
        user_id: Optional[str] = None
    ) -> str:
        """
        Approve an application under review and create its loan

        The approved terms are validated before anything is written; the
        approval and the loan are then stored in one atomic block, so a
        failure leaves the application UNDER_REVIEW with no loan.

        Args:
            application_id: Application ID
            decision: Approved terms
            user_id: Approving officer

        Returns:
            ID of the created loan

        Raises:
            NotFoundError: If the application does not exist
            DuplicateApprovalError: If the application is already approved
            IllegalStateTransitionError: Unless the application is UNDER_REVIEW
            InvalidTermsError: If the approved terms are invalid
        """
        with self._locks.hold(application_id):
            application = self._require(application_id)
            if application.status == ApplicationStatus.APPROVED or application.loan_id:
                raise DuplicateApprovalError(
                    f"Application {application.application_number} is already approved"
                )
            if application.status != ApplicationStatus.UNDER_REVIEW:
                raise IllegalStateTransitionError(
                    "application", "approve", application.status.value,
                    ApplicationStatus.UNDER_REVIEW.value
                )
            if decision.principal.currency != application.requested_amount.currency:
                raise InvalidTermsError(
                    f"Approved currency {decision.principal.currency.code} does not match "
                    f"requested currency {application.requested_amount.currency.code}"
                )

            terms = decision.to_terms(self.clock.today())
            now = self.clock.now()

            with self.storage.atomic():
                application.status = ApplicationStatus.APPROVED
                application.approved_principal = terms.principal
                application.approved_term_months = terms.term_months
                application.approved_interest_rate = terms.interest_rate
                application.approved_rate_period = terms.rate_period
                application.approved_repayment_frequency = terms.repayment_frequency
                application.approved_interest_method = terms.interest_method
                application.approved_processing_fee = terms.processing_fee
                application.approved_start_date = terms.start_date
                application.decision_notes = decision.notes
                application.decided_by = user_id
                application.approved_at = now

                loan = self.loan_manager.create_from_application(application, user_id)

                application.loan_id = loan.id
                application.updated_at = now
                self._save(application)

                self.audit_trail.log_event(
                    event_type=AuditEventType.APPLICATION_APPROVED,
                    entity_type="application",
                    entity_id=application.id,
                    metadata={
                        "application_number": application.application_number,
                        "loan_id": loan.id,
                        "approved_principal": terms.principal.to_string(),
                        "approved_term_months": terms.term_months,
                        "approved_interest_rate": str(terms.interest_rate),
                        "requested_amount": application.requested_amount.to_string(),
                    },
                    user_id=user_id
                )

        log_action(logger, "info", f"Application {application.application_number} approved",
                   user_id=user_id, action="approve_application", resource=application.id,
                   extra={"loan_id": loan.id})
        return loan.id

    def approve(
        self,
        application_id: str,
        decision: ApprovalDecision,
        user_id: Optional[str] = None
    ) -> LoanApplication:
        """Approve and return the updated application (see approve_and_create_loan)"""
        self.approve_and_create_loan(application_id, decision, user_id)
        return self._require(application_id)

    def get_application(self, application_id: str) -> Optional[LoanApplication]:
        """Get application by ID"""
        data = self.storage.load(self.applications_table, application_id)
        if data:
            return LoanApplication.from_dict(data)
        return None

    def list_applications(
        self,
        status: Optional[ApplicationStatus] = None,
        client_id: Optional[str] = None
    ) -> List[LoanApplication]:
        """List applications, newest first"""
        filters = {}
        if status:
            filters["status"] = status.value
        if client_id:
            filters["client_id"] = client_id
        applications = [
            LoanApplication.from_dict(data)
            for data in self.storage.find(self.applications_table, filters)
        ]
        applications.sort(key=lambda x: x.created_at, reverse=True)
        return applications

    def _require(self, application_id: str) -> LoanApplication:
        application = self.get_application(application_id)
        if not application:
            raise NotFoundError("application", application_id)
        return application

    def _save(self, application: LoanApplication) -> None:
        self.storage.save(self.applications_table, application.id, application.to_dict())

    def _transition(
        self,
        application_id: str,
        action: str,
        allowed: Iterable[ApplicationStatus],
        target: ApplicationStatus,
        event_type: AuditEventType,
        user_id: Optional[str],
        mutate: Optional[Callable[[LoanApplication, datetime], None]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> LoanApplication:
        """Guarded status change; raises naming the allowed source states"""
        allowed = tuple(allowed)
        with self._locks.hold(application_id):
            application = self._require(application_id)
            if application.status not in allowed:
                raise IllegalStateTransitionError(
                    "application", action, application.status.value,
                    [s.value for s in allowed]
                )

            previous = application.status
            now = self.clock.now()
            application.status = target
            application.updated_at = now
            if mutate:
                mutate(application, now)

            with self.storage.atomic():
                self._save(application)
                self.audit_trail.log_event(
                    event_type=event_type,
                    entity_type="application",
                    entity_id=application.id,
                    metadata=dict(metadata or {}, previous_status=previous, new_status=target),
                    user_id=user_id
                )

        log_action(logger, "info",
                   f"Application {application.application_number} {previous.value} -> {target.value}",
                   user_id=user_id, action=action.replace(" ", "_"), resource=application.id)
        return application
