"""
Integration tests for the EMI Ledger API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from emi_ledger.api import app
from emi_ledger.api.dependencies import get_system, to_http_exception
from emi_ledger.exceptions import (
    ConflictError, EmiLedgerError, NotFoundError, PendingRequestExistsError, ValidationError
)
from emi_ledger.storage import InMemoryStorage
from emi_ledger.system import EmiLedgerSystem


LOAN_TERMS = {
    "principal_amount": "10500",
    "currency": "INR",
    "cadence": "Weekly",
    "total_installments": 10,
    "installment_amount": "1000",
    "emi_start_date": "2024-01-01",
    "installment_mode": "custom",
    "final_installment_amount": "1500"
}


@pytest.fixture
def system():
    """Create an in-memory ledger system for each test"""
    return EmiLedgerSystem(storage=InMemoryStorage())


@pytest.fixture
def client(system):
    """Create a test client wired to the in-memory system"""
    app.dependency_overrides[get_system] = lambda: system
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_loan(client, customer_id="CUST001", loan_number="L1"):
    r = client.post("/loans", json={
        "customer_id": customer_id,
        "loan_number": loan_number,
        "customer_name": "Asha Rao",
        "terms": LOAN_TERMS
    })
    assert r.status_code == 201
    return r.json()["loan_id"]


def pay(client, loan_id, status="Paid", amount=None, payment_date="2024-01-01"):
    body = {"status": status, "payment_date": payment_date}
    if amount is not None:
        body["amount"] = amount
    return client.post(f"/loans/{loan_id}/payments", json=body)


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        """Test health endpoint"""
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        """Test root endpoint"""
        r = client.get("/")
        assert r.status_code == 200
        data = r.json()
        assert data["name"] == "EMI Ledger API"
        assert "loans" in data["endpoints"]


class TestLoanFlow:
    """End-to-end loan origination tests"""

    def test_create_loan(self, client):
        r = client.post("/loans", json={"customer_id": "CUST001", "loan_number": "L1", "terms": LOAN_TERMS})
        assert r.status_code == 201
        data = r.json()
        assert data["status"] == "active"
        assert data["total_due"] == "10500.00"
        assert data["message"] == "Loan originated successfully"

    def test_duplicate_loan_number(self, client):
        create_loan(client)
        r = client.post("/loans", json={"customer_id": "CUST001", "loan_number": "L1", "terms": LOAN_TERMS})
        assert r.status_code == 409

    def test_invalid_terms(self, client):
        r = client.post("/loans", json={
            "customer_id": "CUST001",
            "loan_number": "L1",
            "terms": {**LOAN_TERMS, "cadence": "Yearly"}
        })
        assert r.status_code == 400

    def test_get_loan(self, client):
        loan_id = create_loan(client)
        pay(client, loan_id)

        r = client.get(f"/loans/{loan_id}", params={"include_history": True})
        assert r.status_code == 200
        data = r.json()
        assert data["loan_number"] == "L1"
        assert data["cumulative_paid"]["amount"] == "1000.00"
        assert len(data["history"]) == 1

        assert client.get("/loans/missing").status_code == 404

    def test_schedule(self, client):
        loan_id = create_loan(client)
        pay(client, loan_id)

        r = client.get(f"/loans/{loan_id}/schedule")
        assert r.status_code == 200
        data = r.json()
        assert len(data["installments"]) == 10
        assert data["installments"][0]["settled"]
        assert not data["installments"][1]["settled"]
        assert data["installments"][9]["amount"] == "1500.00"
        assert data["next_installment_index"] == 2

    def test_schedule_preview(self, client):
        r = client.post("/loans/schedule/preview", json=LOAN_TERMS)
        assert r.status_code == 200
        assert r.json()["total_due"] == "10500.00"

        r = client.post("/loans/schedule/preview", json={**LOAN_TERMS, "final_installment_amount": None})
        assert r.status_code == 400

    def test_advance_span(self, client):
        loan_id = create_loan(client)
        pay(client, loan_id)

        r = client.get(f"/loans/{loan_id}/advance-span",
                       params={"from_date": "2024-01-08", "to_date": "2024-01-22"})
        assert r.status_code == 200
        data = r.json()
        assert data["count"] == 3
        assert data["total_amount"] == "3000.00"
        assert [entry["index"] for entry in data["installments"]] == [2, 3, 4]

        r = client.get(f"/loans/{loan_id}/advance-span",
                       params={"from_date": "not-a-date", "to_date": "2024-01-22"})
        assert r.status_code == 400


class TestPaymentFlow:
    """End-to-end payment recording tests"""

    def test_record_paid_payment(self, client):
        loan_id = create_loan(client)

        r = pay(client, loan_id)
        assert r.status_code == 201
        data = r.json()
        assert data["payments"][0]["amount"] == "1000.00"
        assert data["payments"][0]["installment_index"] == 1
        assert data["loan"]["next_due_date"] == "2024-01-08"
        assert data["ledger_synced"]

        r = client.get(f"/ledger/entries/{data['payments'][0]['id']}")
        assert r.status_code == 200
        assert r.json()["amount"] == "1000.00"

    def test_partial_chain(self, client):
        loan_id = create_loan(client)

        r = pay(client, loan_id, status="Partial", amount="600")
        assert r.status_code == 201
        chain_id = r.json()["payments"][0]["partial_chain_id"]
        assert chain_id

        r = client.get(f"/ledger/chains/{chain_id}")
        assert r.status_code == 200
        data = r.json()
        assert data["paid_total"] == "600.00"
        assert data["installment_total"] == "1000.00"
        assert not data["is_complete"]
        assert len(data["entries"]) == 1

        assert client.get("/ledger/chains/missing").status_code == 404

    def test_partial_must_be_below_due(self, client):
        loan_id = create_loan(client)
        r = pay(client, loan_id, status="Partial", amount="1000")
        assert r.status_code == 400

    def test_unknown_loan(self, client):
        r = pay(client, "missing")
        assert r.status_code == 404

    def test_advance_payment(self, client):
        loan_id = create_loan(client)

        r = client.post(f"/loans/{loan_id}/advance-payments", json={
            "from_date": "2024-01-01",
            "to_date": "2024-01-15",
            "payment_date": "2024-01-01"
        })
        assert r.status_code == 201
        data = r.json()
        assert len(data["payments"]) == 3
        assert data["total_amount"]["amount"] == "3000.00"
        assert {p["status"] for p in data["payments"]} == {"Advance"}

        r = client.get(f"/loans/{loan_id}/payments", params={"status_filter": "Advance"})
        assert len(r.json()["payments"]) == 3

    def test_edit_payment(self, client):
        loan_id = create_loan(client)
        payment_id = pay(client, loan_id).json()["payments"][0]["id"]

        r = client.post("/payments/edit", json={
            "payment_id": payment_id,
            "loan_number": "L1",
            "customer_id": "CUST001",
            "new_amount": "1200",
            "new_status": "Paid",
            "edited_by": "operator-1"
        })
        assert r.status_code == 200
        data = r.json()
        assert data["amount_difference"] == "200.00"
        assert data["loan"]["cumulative_paid"]["amount"] == "1200.00"

        r = client.get(f"/ledger/entries/{payment_id}")
        assert r.json()["amount"] == "1200.00"

    def test_edit_unknown_payment(self, client):
        create_loan(client)
        r = client.post("/payments/edit", json={
            "payment_id": "missing",
            "loan_number": "L1",
            "customer_id": "CUST001",
            "new_amount": "1200",
            "new_status": "Paid"
        })
        assert r.status_code == 404


class TestCustomerEndpoints:
    """Test customer aggregate endpoints"""

    def test_customer_aggregate(self, client):
        loan_id = create_loan(client)
        pay(client, loan_id)

        r = client.get("/customers/CUST001/aggregate")
        assert r.status_code == 200
        data = r.json()
        assert data["total_paid"]["amount"] == "1000.00"
        assert data["remaining_balance"]["amount"] == "9500.00"
        assert data["last_payment_date"] == "2024-01-01"
        assert data["active_loan_count"] == 1

        assert client.get("/customers/CUST999/aggregate").status_code == 404

    def test_customer_loans(self, client):
        create_loan(client, loan_number="L1")
        create_loan(client, loan_number="L2")

        r = client.get("/customers/CUST001/loans")
        assert [loan["loan_number"] for loan in r.json()["loans"]] == ["L1", "L2"]


class TestLedgerMaintenance:
    """Test outbox and reconciliation endpoints"""

    def test_outbox_empty_after_sync(self, client):
        loan_id = create_loan(client)
        pay(client, loan_id)

        r = client.get("/ledger/outbox")
        assert r.json()["pending"] == 0

        r = client.post("/ledger/outbox/retry")
        assert r.status_code == 200
        assert r.json()["attempted"] == 0

    def test_reconcile_repairs_missing_entry(self, client, system):
        loan_id = create_loan(client)
        payment_id = pay(client, loan_id).json()["payments"][0]["id"]
        system.ledger.delete_entry(payment_id)

        drift = client.get(f"/ledger/drift/{loan_id}").json()
        assert not drift["in_sync"]
        assert drift["missing"] == [payment_id]

        r = client.post(f"/ledger/reconcile/{loan_id}", params={"reconciled_by": "operator-1"})
        assert r.status_code == 200
        assert r.json()["drift_repaired"]["missing"] == [payment_id]

        assert client.get(f"/ledger/drift/{loan_id}").json()["in_sync"]
        assert client.post("/ledger/reconcile/missing").status_code == 404


class TestLoanRequestFlow:
    """End-to-end loan request tests"""

    def test_addition_request_flow(self, client):
        r = client.get("/requests/available-loan-numbers/CUST002")
        assert len(r.json()["available"]) == 15

        body = {"customer_id": "CUST002", "loan_number": "L4", "terms": LOAN_TERMS}
        r = client.post("/requests/loan-addition", json=body)
        assert r.status_code == 201
        request_id = r.json()["id"]
        assert r.json()["status"] == "Pending"

        r = client.post("/requests/loan-addition", json={**body, "loan_number": "L5"})
        assert r.status_code == 409

        r = client.get("/requests", params={"customer_id": "CUST002", "request_status": "Pending"})
        assert len(r.json()["requests"]) == 1

        r = client.post(f"/requests/{request_id}/resolve", json={"approve": True, "resolved_by": "manager-1"})
        assert r.status_code == 200
        assert r.json()["loan"]["loan_number"] == "L4"

        assert client.get(f"/requests/{request_id}").json()["status"] == "Approved"
        assert client.post(f"/requests/{request_id}/resolve", json={"approve": False}).status_code == 409
        assert client.get("/requests/missing").status_code == 404

    def test_renewal_request(self, client):
        loan_id = create_loan(client)

        r = client.post("/requests/loan-renewal", json={
            "original_loan_id": loan_id, "loan_number": "L1", "terms": LOAN_TERMS
        })
        assert r.status_code == 400

        r = client.post("/requests/loan-renewal", json={
            "original_loan_id": loan_id, "loan_number": "L2", "terms": LOAN_TERMS
        })
        assert r.status_code == 201
        assert r.json()["request_type"] == "Loan Renew"


class TestAuditEndpoints:
    """Test audit trail endpoints"""

    def test_verify(self, client):
        loan_id = create_loan(client)
        pay(client, loan_id)

        r = client.get("/audit/verify")
        assert r.status_code == 200
        assert r.json()["valid"]

        r = client.get(f"/audit/loan/{loan_id}")
        event_types = [event["event_type"] for event in r.json()["events"]]
        assert event_types[0] == "loan_originated"


class TestErrorMapping:
    """Test mapping of domain errors to HTTP statuses"""

    def test_status_codes(self):
        assert to_http_exception(NotFoundError("x")).status_code == 404
        assert to_http_exception(ConflictError("x")).status_code == 409
        assert to_http_exception(PendingRequestExistsError("x")).status_code == 409
        assert to_http_exception(ValidationError("x")).status_code == 400
        assert to_http_exception(EmiLedgerError("x")).status_code == 400
        assert to_http_exception(RuntimeError("x")).status_code == 500

    def test_detail_carries_message(self):
        error = to_http_exception(ValidationError("Payment amount must be positive"))
        assert isinstance(error, HTTPException)
        assert error.detail == "Payment amount must be positive"
