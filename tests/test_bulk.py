"""
Test suite for bulk application decisions
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_engine.currency import Money, Currency
from loan_engine.storage import InMemoryStorage
from loan_engine.audit import AuditTrail
from loan_engine.clock import FixedClock
from loan_engine.config import LoanEngineConfig
from loan_engine.loans import LoanManager
from loan_engine.applications import (
    LoanApplicationManager, ApplicationStatus, ApprovalDecision, RejectionDecision,
)
from loan_engine.bulk import BulkOperationRunner, BulkActionResult


def kes(amount: str) -> Money:
    return Money(Decimal(amount), Currency.KES)


class TestBulkDecisions:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.clock = FixedClock(date(2025, 1, 15))
        config = LoanEngineConfig()
        self.loans = LoanManager(self.storage, self.audit, self.clock, config)
        self.manager = LoanApplicationManager(self.storage, self.audit, self.loans, self.clock, config)
        self.runner = BulkOperationRunner(self.manager)
        self.decision = ApprovalDecision(kes('1000'), 6, Decimal('0.18'))

    def _under_review(self) -> str:
        application = self.manager.create_application("CLIENT001", kes('1000'), 6)
        self.manager.submit(application.id)
        self.manager.move_to_under_review(application.id)
        return application.id

    def test_bulk_approve(self):
        ids = [self._under_review() for _ in range(3)]

        result = self.runner.bulk_approve(ids, self.decision, user_id="MANAGER1")

        assert result.requested == 3
        assert result.succeeded == 3
        assert result.failed == 0
        assert result.succeeded_ids == ids
        assert self.storage.count("loans") == 3
        for application_id in ids:
            assert self.manager.get_application(application_id).loan_id is not None

    def test_failures_do_not_stop_the_batch(self):
        good = self._under_review()
        draft = self.manager.create_application("CLIENT002", kes('1000'), 6).id
        already = self._under_review()
        self.manager.approve_and_create_loan(already, self.decision)

        result = self.runner.bulk_approve([draft, good, "missing", already], self.decision)

        assert result.requested == 4
        assert result.succeeded_ids == [good]
        assert result.failed == 3
        assert result.succeeded + result.failed == result.requested
        assert [e.id for e in result.errors] == [draft, "missing", already]
        assert "not found" in result.errors[1].message
        assert self.manager.get_application(draft).status == ApplicationStatus.DRAFT

    def test_unexpected_error_is_recorded(self, monkeypatch):
        first = self._under_review()
        second = self._under_review()
        original = self.manager.approve_and_create_loan

        def flaky(application_id, decision, user_id=None):
            if application_id == first:
                raise RuntimeError("connection reset")
            return original(application_id, decision, user_id)

        monkeypatch.setattr(self.manager, "approve_and_create_loan", flaky)

        result = self.runner.bulk_approve([first, second], self.decision)

        assert result.succeeded_ids == [second]
        assert result.errors[0].message == "connection reset"

    def test_duplicate_ids(self):
        application_id = self._under_review()

        result = self.runner.bulk_approve([application_id, application_id], self.decision)

        assert result.succeeded == 1
        assert result.failed == 1
        assert self.storage.count("loans") == 1

    def test_bulk_reject(self):
        ids = [self._under_review() for _ in range(2)]

        result = self.runner.bulk_reject(ids, RejectionDecision("Portfolio limit reached"))

        assert result.succeeded == 2
        for application_id in ids:
            application = self.manager.get_application(application_id)
            assert application.status == ApplicationStatus.REJECTED
            assert application.rejection_reason == "Portfolio limit reached"

    def test_bulk_reject_without_reason(self):
        ids = [self._under_review()]

        result = self.runner.bulk_reject(ids, RejectionDecision(""))

        assert result.failed == 1
        assert self.manager.get_application(ids[0]).status == ApplicationStatus.UNDER_REVIEW

    def test_unknown_decision_type(self):
        with pytest.raises(TypeError):
            self.runner.bulk_decide(["x"], "approve")

    def test_empty_batch(self):
        result = self.runner.bulk_approve([], self.decision)

        assert result.to_dict() == {
            "requested": 0, "succeeded": 0, "failed": 0, "succeeded_ids": [], "errors": []
        }


class TestBulkActionResult:

    def test_to_dict(self):
        result = BulkActionResult(requested=2)
        result.record_success("A")
        result.record_failure("B", "Application B not found")

        assert result.to_dict() == {
            "requested": 2,
            "succeeded": 1,
            "failed": 1,
            "succeeded_ids": ["A"],
            "errors": [{"id": "B", "message": "Application B not found"}],
        }
