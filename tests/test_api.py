"""
Integration tests for the Loan Back Office API
Tests the HTTP surface end to end using FastAPI TestClient
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from loan_backoffice.api import create_app, status_for
from loan_backoffice.config import BackofficeConfig
from loan_backoffice.errors import (
    ConflictError, ConsistencyIncidentError, IllegalTransitionError, NotFoundError,
    UpstreamStoreError, ValidationError
)
from loan_backoffice.lifecycle import LoanLifecycle

from conftest import FIXED_NOW, FailingStore, seed_application, seed_loan, seed_receipt


@pytest.fixture
def api_store():
    return FailingStore()


@pytest.fixture
def client(api_store):
    """Create a test client backed by an in-memory store"""
    config = BackofficeConfig()
    lifecycle = LoanLifecycle(api_store, config=config, clock=lambda: FIXED_NOW)
    return TestClient(create_app(lifecycle=lifecycle, config=config))


def seed(coro):
    return asyncio.run(coro)


class TestErrorMapping:
    """Test error class to HTTP status mapping"""

    @pytest.mark.parametrize("error,expected", [
        (ValidationError("bad"), 400),
        (IllegalTransitionError("pending", "approved", ["verification"]), 400),
        (NotFoundError("loan", "L1"), 404),
        (ConflictError("busy"), 409),
        (UpstreamStoreError("down", step="get loans"), 502),
        (ConsistencyIncidentError("partial", step="update loans"), 500),
    ])
    def test_status_for(self, error, expected):
        assert status_for(error) == expected


class TestHealthAndReferenceEndpoints:
    """Test health, calculator and workflow endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_calculator(self, client):
        r = client.post("/calculator", json={"principal": "10000", "tenure_months": 3, "frequency": "monthly"})

        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert body["data"]["closing_fee"] == "500.00"
        assert body["data"]["total_interest"] == "6000.00"
        assert body["data"]["total_repayment"] == "16500.00"
        assert body["data"]["installment_amount"] == "5500.00"

    def test_calculator_unknown_frequency(self, client):
        r = client.post("/calculator", json={"principal": "10000", "tenure_months": 3, "frequency": "yearly"})

        assert r.status_code == 400
        assert r.json()["code"] == "INVALID_FREQUENCY"
        assert r.json()["success"] is False

    def test_workflow_statuses(self, client):
        r = client.get("/workflow/statuses")

        assert r.status_code == 200
        statuses = {s["status"]: s for s in r.json()["data"]}
        assert statuses["verification"]["next"] == ["approved", "declined"]
        assert statuses["pending"]["progress"] == 33

    def test_transition_check(self, client):
        r = client.post("/workflow/transitions/check", json={"current": "pending", "target": "approved"})

        assert r.status_code == 200
        assert r.json()["data"] == {"allowed": False, "legal_next": ["verification", "declined"]}


class TestApplicationEndpoints:
    """Test application review endpoints"""

    def test_verify_then_approve(self, client, api_store):
        application_id = seed(seed_application(api_store, status="pending"))

        r = client.post(f"/loan-applications/{application_id}/verify", json={"actor": "admin-1"})
        assert r.status_code == 200
        assert r.json()["data"]["application"]["status"] == "verification"
        assert r.json()["data"]["transition"]["to"] == "verification"

        r = client.post(f"/loan-applications/{application_id}/approve", json={"actor": "admin-1"})
        assert r.status_code == 201
        data = r.json()["data"]
        assert data["loan"]["total_repayment"] == "16500.00"
        assert [i["amount_due"] for i in data["installments"]] == ["5500.00"] * 3

        r = client.post(f"/loan-applications/{application_id}/approve")
        assert r.status_code == 409
        assert r.json()["code"] == "CONFLICT"

    def test_illegal_transition(self, client, api_store):
        application_id = seed(seed_application(api_store, status="approved"))

        r = client.post(f"/loan-applications/{application_id}/verify")

        assert r.status_code == 400
        body = r.json()
        assert body["code"] == "INVALID_STATUS_TRANSITION"
        assert body["details"]["current"] == "approved"
        assert body["details"]["legal_next"] == []

    def test_decline_requires_reason(self, client, api_store):
        application_id = seed(seed_application(api_store, status="pending"))

        r = client.post(f"/loan-applications/{application_id}/decline", json={"reason": " "})
        assert r.status_code == 400
        assert r.json()["code"] == "VALIDATION_ERROR"

        r = client.post(f"/loan-applications/{application_id}/decline", json={})
        assert r.status_code == 400
        assert r.json()["code"] == "VALIDATION_ERROR"

    def test_decline(self, client, api_store):
        application_id = seed(seed_application(api_store, status="pending"))

        r = client.post(f"/loan-applications/{application_id}/decline",
                        json={"reason": "Incomplete documents", "actor": "admin-1"})

        assert r.status_code == 200
        application = r.json()["data"]["application"]
        assert application["status"] == "declined"
        assert application["decline_reason"] == "Incomplete documents"

    def test_reject(self, client, api_store):
        application_id = seed(seed_application(api_store, status="created"))

        r = client.post(f"/loan-applications/{application_id}/reject", json={"reason": "duplicate"})

        assert r.status_code == 200
        assert r.json()["data"]["application"]["status"] == "rejected"

    def test_get_application_with_progress(self, client, api_store):
        application_id = seed(seed_application(api_store, status="verification"))

        r = client.get(f"/loan-applications/{application_id}")

        assert r.status_code == 200
        assert r.json()["data"]["workflow_progress"] == 67
        assert r.json()["data"]["next_statuses"] == ["approved", "declined"]

    def test_verify_document(self, client, api_store):
        application_id = seed(seed_application(
            api_store, status="pending",
            user_data={"kyc_docs": [{"document_type": "employment_letter", "url": "https://x/e.pdf"}]},
        ))

        r = client.post(f"/loan-applications/{application_id}/documents/verify",
                        json={"document_type": "employment_letter", "actor": "admin-1"})

        assert r.status_code == 200
        data = r.json()["data"]
        assert data["application"]["status"] == "pending"
        assert data["documents"][0]["verified"] is True
        assert data["missing_required_documents"] == ["id_card_front", "bank_statements"]

    def test_unknown_application(self, client):
        r = client.get("/loan-applications/missing")
        assert r.status_code == 404
        assert r.json()["code"] == "NOT_FOUND"


class TestLoanEndpoints:
    """Test loan servicing endpoints"""

    def approve(self, client, api_store):
        application_id = seed(seed_application(api_store))
        r = client.post(f"/loan-applications/{application_id}/approve")
        assert r.status_code == 201
        return r.json()["data"]["loan"]["id"]

    def test_installments(self, client, api_store):
        loan_id = self.approve(client, api_store)

        r = client.get(f"/loans/{loan_id}/installments")

        assert r.status_code == 200
        data = r.json()["data"]
        assert [i["installment_number"] for i in data["installments"]] == [1, 2, 3]
        assert data["summary"]["total_amount_due"] == "16500.00"

    def test_settle_then_terminate(self, client, api_store):
        loan_id = self.approve(client, api_store)

        r = client.post(f"/loans/{loan_id}/settle", json={"actor": "admin-1"})
        assert r.status_code == 200
        data = r.json()["data"]
        assert data["loan"]["status"] == "completed"
        assert data["remaining_amount"] == "16500.00"
        assert data["receipt"]["file_url"] == "LOAN SETTLED BY ADMIN"

        r = client.post(f"/loans/{loan_id}/terminate")
        assert r.status_code == 409

    def test_terminate(self, client, api_store):
        loan_id = self.approve(client, api_store)

        r = client.post(f"/loans/{loan_id}/terminate")

        assert r.status_code == 200
        assert r.json()["data"]["loan"]["status"] == "terminated"
        assert r.json()["data"]["remaining_installment_count"] == 0

        r = client.get(f"/loans/{loan_id}")
        assert r.json()["data"]["status"] == "terminated"

    def test_store_outage_is_bad_gateway(self, client, api_store):
        api_store.fail_on("select", "loans", call=None)

        r = client.get("/loans/L1")

        assert r.status_code == 502
        assert r.json()["code"] == "UPSTREAM_STORE_ERROR"


class TestReceiptEndpoints:
    """Test payment receipt review"""

    def test_confirm_receipt(self, client, api_store):
        seeded = seed(seed_loan(api_store))
        receipt_id = seed(seed_receipt(api_store, seeded["installment_ids"][0], "40"))

        r = client.patch(f"/receipts/{receipt_id}", json={"payment_confirmed": True})

        assert r.status_code == 200
        data = r.json()["data"]
        assert data["confirmed"] is True
        assert data["installment"]["amount_due"] == "60.00"
        assert data["installment"]["status"] == "partial"
        assert data["loan"]["amount_paid"] == "40.00"

    def test_reject_receipt(self, client, api_store):
        seeded = seed(seed_loan(api_store))
        receipt_id = seed(seed_receipt(api_store, seeded["installment_ids"][0], "40"))

        r = client.patch(f"/receipts/{receipt_id}", json={"payment_confirmed": False})

        assert r.status_code == 200
        assert r.json()["data"]["receipt"]["status"] == "rejected"

    def test_partial_application_is_consistency_incident(self, client, api_store):
        seeded = seed(seed_loan(api_store))
        receipt_id = seed(seed_receipt(api_store, seeded["installment_ids"][0], "40"))
        api_store.fail_on("update", "loans")

        r = client.patch(f"/receipts/{receipt_id}", json={"payment_confirmed": True})

        assert r.status_code == 500
        body = r.json()
        assert body["code"] == "CONSISTENCY_INCIDENT"
        assert body["details"]["after"]["applied"] == ["receipt", "installment"]
