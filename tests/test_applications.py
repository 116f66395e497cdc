"""
Test suite for the application review workflow

Tests the status machine, rejection rules, and approval into exactly one
loan with terms that may differ from the request.
"""

import threading
import pytest
from decimal import Decimal
from datetime import date

from loan_engine.currency import Money, Currency
from loan_engine.storage import InMemoryStorage
from loan_engine.audit import AuditTrail, AuditEventType
from loan_engine.clock import FixedClock
from loan_engine.config import LoanEngineConfig
from loan_engine.errors import (
    DuplicateApprovalError, IllegalStateTransitionError, InvalidTermsError, NotFoundError,
)
from loan_engine.schedule import RepaymentFrequency, InterestMethod
from loan_engine.reconciliation import LoanStatus
from loan_engine.loans import LoanManager
from loan_engine.applications import (
    LoanApplicationManager, LoanApplication, ApplicationStatus,
    ApprovalDecision, RejectionDecision,
)


def kes(amount: str) -> Money:
    return Money(Decimal(amount), Currency.KES)


class ApplicationTestBase:
    """Wires the managers against in-memory storage and a pinned clock"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.clock = FixedClock(date(2025, 1, 15))
        self.config = LoanEngineConfig()
        self.loans = LoanManager(self.storage, self.audit, self.clock, self.config)
        self.manager = LoanApplicationManager(
            self.storage, self.audit, self.loans, self.clock, self.config
        )

    def _under_review(self, amount='1000', term=6) -> LoanApplication:
        application = self.manager.create_application(
            "CLIENT001", kes(amount), term, product_version_id="PV-1", purpose="Stock"
        )
        self.manager.submit(application.id)
        return self.manager.move_to_under_review(application.id, user_id="OFFICER1")


class TestApplicationWorkflow(ApplicationTestBase):
    """Test application status transitions"""

    def test_create_application(self):
        application = self.manager.create_application("CLIENT001", kes('5000'), 12, user_id="AGENT1")

        assert application.status == ApplicationStatus.DRAFT
        assert application.application_number == "APP-2025-000001"
        assert self.manager.get_application(application.id) == application

    @pytest.mark.parametrize("amount,term", [('0', 6), ('-5', 6), ('1000', 0)])
    def test_create_application_invalid(self, amount, term):
        with pytest.raises(InvalidTermsError):
            self.manager.create_application("CLIENT001", kes(amount), term)

    def test_happy_path_statuses(self):
        application = self._under_review()

        assert application.status == ApplicationStatus.UNDER_REVIEW
        assert application.submitted_at is not None
        assert application.review_started_at is not None

    def test_returned_application_can_be_resubmitted(self):
        application = self._under_review()

        returned = self.manager.return_to_client(application.id, notes="Missing ID copy")
        assert returned.status == ApplicationStatus.RETURNED_TO_CLIENT
        assert returned.decision_notes == "Missing ID copy"

        assert self.manager.submit(application.id).status == ApplicationStatus.SUBMITTED

    def test_review_requires_submission(self):
        application = self.manager.create_application("CLIENT001", kes('1000'), 6)

        with pytest.raises(IllegalStateTransitionError) as exc_info:
            self.manager.move_to_under_review(application.id)
        assert exc_info.value.current == "draft"
        assert exc_info.value.required == ["submitted"]

    def test_cancel(self):
        application = self.manager.create_application("CLIENT001", kes('1000'), 6)

        cancelled = self.manager.cancel(application.id, reason="Client withdrew")

        assert cancelled.status == ApplicationStatus.CANCELLED
        with pytest.raises(IllegalStateTransitionError):
            self.manager.submit(application.id)

    def test_cannot_cancel_under_review(self):
        application = self._under_review()

        with pytest.raises(IllegalStateTransitionError):
            self.manager.cancel(application.id)

    def test_transitions_audited(self):
        application = self._under_review()

        events = self.audit.get_events_for_entity("application", application.id)
        assert [e.event_type for e in events] == [
            AuditEventType.APPLICATION_CREATED,
            AuditEventType.APPLICATION_SUBMITTED,
            AuditEventType.APPLICATION_UNDER_REVIEW,
        ]
        assert events[-1].metadata["previous_status"] == "submitted"
        assert events[-1].user_id == "OFFICER1"

    def test_unknown_application(self):
        assert self.manager.get_application("missing") is None
        with pytest.raises(NotFoundError):
            self.manager.submit("missing")

    def test_list_applications(self):
        first = self.manager.create_application("CLIENT001", kes('1000'), 6)
        self.clock.advance(days=1)
        second = self.manager.create_application("CLIENT002", kes('2000'), 6)
        self.manager.submit(second.id)

        assert [a.id for a in self.manager.list_applications()] == [second.id, first.id]
        assert [a.id for a in self.manager.list_applications(status=ApplicationStatus.DRAFT)] == [first.id]
        assert [a.id for a in self.manager.list_applications(client_id="CLIENT002")] == [second.id]


class TestRejection(ApplicationTestBase):

    def test_reject(self):
        application = self._under_review()

        rejected = self.manager.reject(
            application.id, RejectionDecision("Insufficient income", "Re-apply in 6 months"),
            user_id="OFFICER2"
        )

        assert rejected.status == ApplicationStatus.REJECTED
        assert rejected.rejection_reason == "Insufficient income"
        assert rejected.decided_by == "OFFICER2"
        assert rejected.loan_id is None

    @pytest.mark.parametrize("reason", ["", "   "])
    def test_reason_required(self, reason):
        application = self._under_review()

        with pytest.raises(InvalidTermsError):
            self.manager.reject(application.id, RejectionDecision(reason))
        assert self.manager.get_application(application.id).status == ApplicationStatus.UNDER_REVIEW

    def test_reject_requires_review(self):
        application = self.manager.create_application("CLIENT001", kes('1000'), 6)

        with pytest.raises(IllegalStateTransitionError):
            self.manager.reject(application.id, RejectionDecision("No"))


class TestApproval(ApplicationTestBase):

    def test_approve_creates_one_loan(self):
        application = self._under_review(amount='5000', term=6)

        loan_id = self.manager.approve_and_create_loan(
            application.id, ApprovalDecision(kes('5000'), 6, Decimal('0.18')), user_id="OFFICER2"
        )

        approved = self.manager.get_application(application.id)
        assert approved.status == ApplicationStatus.APPROVED
        assert approved.loan_id == loan_id
        assert approved.decided_by == "OFFICER2"
        assert approved.approved_start_date == date(2025, 1, 15)

        loan = self.loans.get_loan(loan_id)
        assert loan.application_id == application.id
        assert loan.client_id == "CLIENT001"
        assert loan.product_version_id == "PV-1"
        assert loan.status == LoanStatus.PENDING_DISBURSEMENT
        assert len(self.loans.get_schedule(loan_id)) == 6

    def test_approved_terms_may_differ_from_request(self):
        application = self._under_review(amount='5000', term=6)

        loan_id = self.manager.approve_and_create_loan(application.id, ApprovalDecision(
            kes('4000'), 3, Decimal('0.02'),
            repayment_frequency=RepaymentFrequency.WEEKLY,
            interest_method=InterestMethod.FLAT,
            processing_fee=kes('100'),
            start_date=date(2025, 2, 1),
        ))

        loan = self.loans.get_loan(loan_id)
        assert loan.principal == kes('4000')
        assert loan.terms.term_months == 3
        assert loan.terms.start_date == date(2025, 2, 1)
        assert len(self.loans.get_schedule(loan_id)) == 13
        assert self.manager.get_application(application.id).requested_amount == kes('5000')

    def test_percentage_processing_fee_is_capped(self):
        application = self._under_review(amount='50000', term=6)

        loan_id = self.manager.approve_and_create_loan(application.id, ApprovalDecision(
            kes('50000'), 6, Decimal('0.18'),
            processing_fee_rate=Decimal('0.03'), processing_fee_cap=kes('1000'),
        ))

        assert self.loans.get_loan(loan_id).terms.processing_fee == kes('1000')
        assert self.manager.get_application(application.id).approved_processing_fee == kes('1000')
        assert self.loans.get_schedule(loan_id)[0].fees_due == kes('1000')

    def test_approve_twice(self):
        application = self._under_review()
        decision = ApprovalDecision(kes('1000'), 6, Decimal('0.1'))
        self.manager.approve_and_create_loan(application.id, decision)

        with pytest.raises(DuplicateApprovalError):
            self.manager.approve_and_create_loan(application.id, decision)
        assert len(self.loans.list_loans()) == 1

    def test_approve_requires_review(self):
        application = self.manager.create_application("CLIENT001", kes('1000'), 6)

        with pytest.raises(IllegalStateTransitionError):
            self.manager.approve_and_create_loan(application.id, ApprovalDecision(kes('1000'), 6, Decimal('0.1')))

    @pytest.mark.parametrize("principal,term,rate", [
        ('0', 6, '0.1'),
        ('1000', 0, '0.1'),
        ('1000', 6, '-0.1'),
        ('1000', 6, 'NaN'),
        ('1000', 6, 'Infinity'),
    ])
    def test_invalid_terms_leave_application_under_review(self, principal, term, rate):
        application = self._under_review()

        with pytest.raises(InvalidTermsError):
            self.manager.approve_and_create_loan(
                application.id, ApprovalDecision(kes(principal), term, Decimal(rate))
            )

        assert self.manager.get_application(application.id).status == ApplicationStatus.UNDER_REVIEW
        assert self.loans.list_loans() == []

    def test_currency_mismatch(self):
        application = self._under_review()

        with pytest.raises(InvalidTermsError):
            self.manager.approve_and_create_loan(
                application.id, ApprovalDecision(Money(Decimal('1000'), Currency.UGX), 6, Decimal('0.1'))
            )

    def test_failed_loan_creation_rolls_back_approval(self, monkeypatch):
        application = self._under_review()

        def broken(*args, **kwargs):
            raise RuntimeError("schedule store unavailable")

        monkeypatch.setattr(self.loans, "_save_entries", broken)

        with pytest.raises(RuntimeError):
            self.manager.approve_and_create_loan(application.id, ApprovalDecision(kes('1000'), 6, Decimal('0.1')))

        stored = self.manager.get_application(application.id)
        assert stored.status == ApplicationStatus.UNDER_REVIEW
        assert stored.loan_id is None
        assert self.storage.count("loans") == 0

    def test_concurrent_approvals_create_one_loan(self):
        application = self._under_review()
        decision = ApprovalDecision(kes('1000'), 6, Decimal('0.1'))
        outcomes = []

        def approve():
            try:
                outcomes.append(self.manager.approve_and_create_loan(application.id, decision))
            except DuplicateApprovalError as e:
                outcomes.append(e)

        threads = [threading.Thread(target=approve) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        loan_ids = [o for o in outcomes if isinstance(o, str)]
        assert len(loan_ids) == 1
        assert len(outcomes) == 5
        assert self.storage.count("loans") == 1

    def test_approve_returns_application(self):
        application = self._under_review()

        approved = self.manager.approve(application.id, ApprovalDecision(kes('1000'), 6, Decimal('0.1')))

        assert approved.status == ApplicationStatus.APPROVED
        assert approved.approved_terms().principal == kes('1000')

    def test_approved_terms_before_approval(self):
        application = self._under_review()

        with pytest.raises(IllegalStateTransitionError):
            application.approved_terms()

    def test_round_trip(self):
        application = self._under_review()
        self.manager.approve_and_create_loan(application.id, ApprovalDecision(
            kes('1000'), 6, Decimal('0.1'), processing_fee=kes('20'), notes="Good history"
        ))
        stored = self.manager.get_application(application.id)

        assert LoanApplication.from_dict(stored.to_dict()) == stored
