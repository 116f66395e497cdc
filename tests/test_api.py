"""
Integration tests for the Loan Engine API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from datetime import date
from fastapi.testclient import TestClient

from loan_engine.api import create_app, status_code_for
from loan_engine.api.dependencies import LoanSystem
from loan_engine.clock import FixedClock
from loan_engine.config import LoanEngineConfig
from loan_engine.errors import (
    LoanEngineError, NotFoundError, IllegalStateTransitionError, DuplicateApprovalError,
    ConcurrencyError, InvalidTermsError, AllocationError,
)
from loan_engine.storage import InMemoryStorage


OFFICER = {"X-User-Id": "OFFICER1"}


@pytest.fixture
def system():
    """Loan system on in-memory storage with the clock pinned to 2025-01-15"""
    return LoanSystem(LoanEngineConfig(), InMemoryStorage(), FixedClock(date(2025, 1, 15)))


@pytest.fixture
def client(system):
    return TestClient(create_app(system))


def kes(amount: str) -> dict:
    return {"amount": amount, "currency": "KES"}


def create_under_review(client, amount="1000", term=2) -> str:
    r = client.post("/applications", json={
        "client_id": "CLIENT001",
        "requested_amount": kes(amount),
        "requested_term_months": term,
        "purpose": "Stock for shop",
    }, headers=OFFICER)
    assert r.status_code == 201
    application_id = r.json()["id"]
    assert client.post(f"/applications/{application_id}/submit").status_code == 200
    assert client.post(f"/applications/{application_id}/review").status_code == 200
    return application_id


def approve(client, application_id, amount="1000", term=2, rate="0", **extra):
    body = {"principal": kes(amount), "term_months": term, "interest_rate": rate}
    body.update(extra)
    return client.post(f"/applications/{application_id}/approve", json=body, headers=OFFICER)


def disbursed_loan(client, **kwargs) -> str:
    r = approve(client, create_under_review(client), **kwargs)
    assert r.status_code == 201
    loan_id = r.json()["loan_id"]
    assert client.post(f"/loans/{loan_id}/disburse").status_code == 200
    return loan_id


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"
        assert r.json()["service"] == "loan_engine_api"


class TestApplicationFlow:
    """End-to-end application review tests"""

    def test_create_application(self, client):
        r = client.post("/applications", json={
            "client_id": "CLIENT001",
            "requested_amount": kes("5000"),
            "requested_term_months": 6,
        })
        assert r.status_code == 201
        data = r.json()
        assert data["status"] == "draft"
        assert data["application_number"] == "APP-2025-000001"
        assert data["requested_amount"] == {"amount": "5000.00", "currency": "KES"}

    def test_invalid_amount(self, client):
        r = client.post("/applications", json={
            "client_id": "CLIENT001",
            "requested_amount": kes("abc"),
            "requested_term_months": 6,
        })
        assert r.status_code == 422
        assert r.json()["error"] == "InvalidTermsError"

    def test_approve_creates_loan(self, client):
        application_id = create_under_review(client)

        r = approve(client, application_id, amount="900", rate="0.18")
        assert r.status_code == 201
        loan_id = r.json()["loan_id"]

        application = client.get(f"/applications/{application_id}").json()
        assert application["status"] == "approved"
        assert application["loan_id"] == loan_id
        assert application["decided_by"] == "OFFICER1"

        loan = client.get(f"/loans/{loan_id}").json()
        assert loan["status"] == "pending_disbursement"
        assert loan["principal"] == {"amount": "900.00", "currency": "KES"}

    def test_duplicate_approval_conflict(self, client):
        application_id = create_under_review(client)
        assert approve(client, application_id).status_code == 201

        r = approve(client, application_id)
        assert r.status_code == 409
        assert r.json()["error"] == "DuplicateApprovalError"

    def test_approve_with_invalid_terms(self, client):
        application_id = create_under_review(client)

        r = approve(client, application_id, term=0)
        assert r.status_code == 422
        assert client.get(f"/applications/{application_id}").json()["status"] == "under_review"

    def test_unknown_frequency(self, client):
        application_id = create_under_review(client)

        r = approve(client, application_id, repayment_frequency="daily")
        assert r.status_code == 422

    def test_illegal_transition_conflict(self, client):
        r = client.post("/applications", json={
            "client_id": "CLIENT001", "requested_amount": kes("1000"), "requested_term_months": 6,
        })
        application_id = r.json()["id"]

        r = client.post(f"/applications/{application_id}/reject", json={"reason": "Too early"})
        assert r.status_code == 409
        assert "draft" in r.json()["detail"]

    def test_return_and_cancel(self, client):
        application_id = create_under_review(client)

        r = client.post(f"/applications/{application_id}/return", json={"notes": "Need payslip"})
        assert r.json()["status"] == "returned_to_client"

        r = client.post(f"/applications/{application_id}/cancel", json={"reason": "Withdrawn"})
        assert r.json()["status"] == "cancelled"

    def test_reject(self, client):
        application_id = create_under_review(client)

        r = client.post(f"/applications/{application_id}/reject", json={"reason": "Over-indebted"})
        assert r.status_code == 200
        assert r.json()["rejection_reason"] == "Over-indebted"

    def test_list_by_status(self, client):
        create_under_review(client)
        client.post("/applications", json={
            "client_id": "CLIENT002", "requested_amount": kes("1000"), "requested_term_months": 6,
        })

        r = client.get("/applications", params={"status": "under_review"})
        assert len(r.json()["applications"]) == 1
        assert client.get("/applications", params={"status": "bogus"}).status_code == 422

    def test_unknown_application(self, client):
        r = client.get("/applications/missing")
        assert r.status_code == 404
        assert r.json()["error"] == "NotFoundError"


class TestBulkEndpoints:

    def test_bulk_approve(self, client):
        ids = [create_under_review(client) for _ in range(2)]

        r = client.post("/applications/bulk-approve", json={
            "application_ids": ids + ["missing"],
            "decision": {"principal": kes("1000"), "term_months": 2, "interest_rate": "0.1"},
        })
        assert r.status_code == 200
        data = r.json()
        assert data["requested"] == 3
        assert data["succeeded_ids"] == ids
        assert data["errors"][0]["id"] == "missing"

    def test_bulk_reject(self, client):
        ids = [create_under_review(client) for _ in range(2)]

        r = client.post("/applications/bulk-reject", json={
            "application_ids": ids, "reason": "Branch quota reached",
        })
        assert r.json()["succeeded"] == 2


class TestLoanFlow:
    """Disbursement, repayment, reversal and reconciliation over HTTP"""

    def test_schedule(self, client):
        loan_id = disbursed_loan(client)

        r = client.get(f"/loans/{loan_id}/schedule")
        assert r.status_code == 200
        data = r.json()
        assert [e["due_date"] for e in data["schedule"]] == ["2025-02-15", "2025-03-15"]
        assert data["schedule"][0]["total_due"] == "500.00"
        assert data["summary"]["total_payable"] == {"amount": "1000.00", "currency": "KES"}

    def test_post_and_reverse_repayment(self, client):
        loan_id = disbursed_loan(client)

        r = client.post("/repayments", json={
            "loan_id": loan_id, "amount": kes("1200"), "channel": "mobile_money", "reference": "MP123",
        }, headers={"X-User-Id": "TELLER1"})
        assert r.status_code == 201
        transaction = r.json()
        assert transaction["receipt_number"] == "RCPT-2025-000001"
        assert transaction["unapplied_amount"] == "200.00"
        assert transaction["applied_amount"] == "1000.00"
        assert transaction["loan_status"] == "closed"
        assert transaction["posted_by"] == "TELLER1"

        r = client.post(f"/repayments/{transaction['id']}/reverse", json={"reason": "Wrong loan"})
        assert r.status_code == 200
        assert r.json()["reversed"]
        assert r.json()["loan_status"] == "active"

        r = client.post(f"/repayments/{transaction['id']}/reverse", json={"reason": "Again"})
        assert r.status_code == 409

        history = client.get(f"/loans/{loan_id}/repayments").json()["repayments"]
        assert len(history) == 1

    def test_repayment_on_closed_loan(self, client):
        loan_id = disbursed_loan(client)
        client.post("/repayments", json={"loan_id": loan_id, "amount": kes("1000")})

        r = client.post("/repayments", json={"loan_id": loan_id, "amount": kes("10")})
        assert r.status_code == 422
        assert r.json()["error"] == "AllocationError"

    def test_future_dated_repayment(self, client):
        loan_id = disbursed_loan(client)

        r = client.post("/repayments", json={
            "loan_id": loan_id, "amount": kes("100"), "transaction_date": "2025-02-01",
        })
        assert r.status_code == 422

    def test_reconcile_after_due_date(self, client, system):
        loan_id = disbursed_loan(client)
        system.clock.set(date(2025, 2, 20))

        r = client.post(f"/loans/{loan_id}/reconcile")
        assert r.json() == {"loan_id": loan_id, "status": "in_arrears"}

        standing = client.get(f"/loans/{loan_id}/standing").json()
        assert standing["max_days_past_due"] == 5
        assert standing["arrears_amount"] == {"amount": "500.00", "currency": "KES"}

        assert len(client.get("/loans", params={"status": "in_arrears"}).json()["loans"]) == 1

    def test_reconcile_all(self, client, system):
        disbursed_loan(client)
        disbursed_loan(client)
        system.clock.set(date(2025, 2, 16))

        r = client.post("/loans/reconcile-all")
        assert r.json() == {"processed": 2, "changed": 2, "failed": 0}

    def test_write_off(self, client):
        loan_id = disbursed_loan(client)

        r = client.post(f"/loans/{loan_id}/write-off", json={"reason": "Client absconded"})
        assert r.json()["status"] == "written_off"
        assert client.get(f"/loans/{loan_id}/standing").json()["status"] == "written_off"

        r = client.post("/repayments", json={"loan_id": loan_id, "amount": kes("100")})
        assert r.status_code == 409

    def test_unknown_loan(self, client):
        assert client.get("/loans/missing").status_code == 404
        assert client.post("/loans/missing/disburse").status_code == 404
        assert client.get("/repayments/missing").status_code == 404


class TestSchedulePreview:

    def test_preview(self, client):
        r = client.post("/schedules/preview", json={
            "principal": kes("1000"),
            "term_months": 2,
            "interest_rate": "0.10",
            "rate_period": "per_month",
            "processing_fee": kes("50"),
        })
        assert r.status_code == 200
        data = r.json()
        assert data["terms"]["start_date"] == "2025-01-15"
        assert data["summary"]["installment_amount"] == {"amount": "576.19", "currency": "KES"}
        assert data["summary"]["total_fees"] == {"amount": "50.00", "currency": "KES"}
        assert len(data["schedule"]) == 2

    def test_preview_invalid(self, client):
        r = client.post("/schedules/preview", json={
            "principal": kes("-1"), "term_months": 2, "interest_rate": "0.1",
        })
        assert r.status_code == 422
        assert "Principal" in r.json()["detail"]

    @pytest.mark.parametrize("rate", ["NaN", "Infinity", "-Infinity", "nan"])
    def test_preview_non_finite_rate(self, client, rate):
        r = client.post("/schedules/preview", json={
            "principal": kes("1000"), "term_months": 2, "interest_rate": rate,
        })
        assert r.status_code == 422
        assert r.json()["error"] == "InvalidTermsError"

    @pytest.mark.parametrize("field,value", [
        ("principal", kes("NaN")),
        ("principal", kes("Infinity")),
        ("processing_fee", kes("Infinity")),
        ("processing_fee_rate", "NaN"),
    ])
    def test_preview_non_finite_amount(self, client, field, value):
        body = {"principal": kes("1000"), "term_months": 2, "interest_rate": "0.1"}
        body[field] = value

        r = client.post("/schedules/preview", json=body)
        assert r.status_code == 422
        assert r.json()["error"] == "InvalidTermsError"

    def test_preview_percentage_fee_with_cap(self, client):
        r = client.post("/schedules/preview", json={
            "principal": kes("50000"),
            "term_months": 2,
            "interest_rate": "0",
            "processing_fee_rate": "0.03",
            "processing_fee_cap": kes("500"),
        })
        assert r.status_code == 200
        assert r.json()["terms"]["processing_fee"] == "500.00"
        assert r.json()["schedule"][0]["fees_due"] == "500.00"

    def test_preview_fixed_and_percentage_fee_conflict(self, client):
        r = client.post("/schedules/preview", json={
            "principal": kes("1000"), "term_months": 2, "interest_rate": "0",
            "processing_fee": kes("10"), "processing_fee_rate": "0.02",
        })
        assert r.status_code == 422


class TestErrorMapping:

    @pytest.mark.parametrize("error,code", [
        (NotFoundError("loan", "L1"), 404),
        (IllegalStateTransitionError("loan", "disburse", "active", "pending_disbursement"), 409),
        (DuplicateApprovalError("again"), 409),
        (ConcurrencyError("stale"), 409),
        (InvalidTermsError("bad"), 422),
        (AllocationError("bad"), 422),
        (LoanEngineError("other"), 400),
    ])
    def test_status_codes(self, error, code):
        assert status_code_for(error) == code
