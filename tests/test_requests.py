"""
Test suite for loan addition and renewal requests

Tests loan-number availability, the one-pending-request guard and request
resolution.
"""

import pytest
from decimal import Decimal
from datetime import date

from emi_ledger.audit import AuditEventType
from emi_ledger.currency import Money, Currency
from emi_ledger.events import DomainEvent
from emi_ledger.exceptions import ConflictError, NotFoundError, PendingRequestExistsError, ValidationError
from emi_ledger.models import Cadence, LoanStatus, LoanTerms
from emi_ledger.requests import RequestStatus, RequestType
from emi_ledger.storage import InMemoryStorage
from emi_ledger.system import EmiLedgerSystem


def inr(value) -> Money:
    return Money(Decimal(str(value)), Currency.INR)


def daily_terms() -> LoanTerms:
    return LoanTerms(
        principal=inr('10000'),
        cadence=Cadence.DAILY,
        total_installments=100,
        installment_amount=inr('100'),
        emi_start_date=date(2024, 3, 1),
    )


class TestAvailableLoanNumbers:
    """Test loan-number availability"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = EmiLedgerSystem(storage=InMemoryStorage())
        self.requests = self.system.request_manager

    def test_full_pool_for_new_customer(self):
        available = self.requests.available_loan_numbers("CUST001")
        assert available == [f"L{n}" for n in range(1, 16)]

    def test_active_loan_holds_its_number(self):
        self.system.loan_manager.originate_loan("CUST001", "L3", daily_terms())

        available = self.requests.available_loan_numbers("CUST001")
        assert "L3" not in available
        assert len(available) == 14
        assert len(self.requests.available_loan_numbers("CUST002")) == 15

    def test_pending_request_reserves_its_number(self):
        self.requests.submit_loan_addition("CUST001", "L2", daily_terms())
        assert "L2" not in self.requests.available_loan_numbers("CUST001")


class TestLoanAddition:
    """Test loan addition requests"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = EmiLedgerSystem(storage=InMemoryStorage())
        self.requests = self.system.request_manager
        self.events = []
        self.system.dispatcher.subscribe_all(self.events.append)

    def test_submit(self):
        request = self.requests.submit_loan_addition(
            "CUST001", "L1", daily_terms(), customer_name="Asha Rao", requested_by="operator-1"
        )

        assert request.status == RequestStatus.PENDING
        assert request.request_type == RequestType.LOAN_ADDITION
        assert request.terms == daily_terms()
        assert request.requested_data['customer_name'] == "Asha Rao"
        assert self.requests.get_request(request.id).loan_number == "L1"
        assert self.requests.pending_request_for("CUST001").id == request.id
        assert self.events[-1].event_type == DomainEvent.LOAN_REQUEST_SUBMITTED

    def test_second_pending_request_rejected(self):
        self.requests.submit_loan_addition("CUST001", "L1", daily_terms())

        with pytest.raises(PendingRequestExistsError):
            self.requests.submit_loan_addition("CUST001", "L2", daily_terms())

        assert len(self.requests.list_requests("CUST001")) == 1

    def test_unavailable_number_rejected(self):
        self.system.loan_manager.originate_loan("CUST001", "L1", daily_terms())

        with pytest.raises(ConflictError):
            self.requests.submit_loan_addition("CUST001", "L1", daily_terms())
        with pytest.raises(ValidationError):
            self.requests.submit_loan_addition("CUST001", "L99", daily_terms())

    def test_approve_originates_loan(self):
        request = self.requests.submit_loan_addition("CUST001", "L1", daily_terms(), customer_name="Asha Rao")

        resolved, loan = self.requests.resolve_request(request.id, approve=True, resolved_by="manager-1")

        assert resolved.status == RequestStatus.APPROVED
        assert resolved.loan_id == loan.id
        assert resolved.resolved_by == "manager-1"
        assert resolved.resolved_at is not None
        assert loan.status == LoanStatus.ACTIVE
        assert loan.customer_name == "Asha Rao"
        assert self.requests.pending_request_for("CUST001") is None
        assert "L1" not in self.requests.available_loan_numbers("CUST001")

        event_types = [e.event_type for e in self.events]
        assert DomainEvent.LOAN_REQUEST_RESOLVED in event_types
        assert DomainEvent.LOAN_ORIGINATED in event_types

    def test_reject_frees_number(self):
        request = self.requests.submit_loan_addition("CUST001", "L1", daily_terms())

        resolved, loan = self.requests.resolve_request(request.id, approve=False, note="Incomplete KYC")

        assert loan is None
        assert resolved.status == RequestStatus.REJECTED
        assert resolved.resolution_note == "Incomplete KYC"
        assert "L1" in self.requests.available_loan_numbers("CUST001")
        assert self.system.loan_manager.get_customer_loans("CUST001") == []

        # A new request is allowed once the previous one is resolved
        self.requests.submit_loan_addition("CUST001", "L1", daily_terms())

    def test_resolve_twice_rejected(self):
        request = self.requests.submit_loan_addition("CUST001", "L1", daily_terms())
        self.requests.resolve_request(request.id, approve=False)

        with pytest.raises(ConflictError):
            self.requests.resolve_request(request.id, approve=True)

    def test_resolve_unknown_request(self):
        with pytest.raises(NotFoundError):
            self.requests.resolve_request("missing", approve=True)

    def test_request_audit_trail(self):
        request = self.requests.submit_loan_addition("CUST001", "L1", daily_terms(), requested_by="operator-1")
        self.requests.resolve_request(request.id, approve=False, resolved_by="manager-1")

        audit = self.system.audit_trail.get_events_for_entity("loan_request", request.id)
        assert [e.event_type for e in audit] == [
            AuditEventType.REQUEST_SUBMITTED, AuditEventType.REQUEST_RESOLVED
        ]


class TestLoanRenewal:
    """Test loan renewal requests"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = EmiLedgerSystem(storage=InMemoryStorage())
        self.requests = self.system.request_manager
        self.original = self.system.loan_manager.originate_loan(
            "CUST001", "L1", daily_terms(), customer_name="Asha Rao"
        )

    def test_same_number_rejected(self):
        with pytest.raises(ValidationError):
            self.requests.submit_loan_renewal(self.original.id, "L1", daily_terms())

    def test_unknown_loan_rejected(self):
        with pytest.raises(NotFoundError):
            self.requests.submit_loan_renewal("missing", "L2", daily_terms())

    def test_renewed_loan_cannot_be_renewed_again(self):
        request = self.requests.submit_loan_renewal(self.original.id, "L2", daily_terms())
        self.requests.resolve_request(request.id, approve=True)

        with pytest.raises(ValidationError):
            self.requests.submit_loan_renewal(self.original.id, "L3", daily_terms())

    def test_approve_renewal(self):
        request = self.requests.submit_loan_renewal(self.original.id, "L2", daily_terms(),
                                                    requested_by="operator-1")
        assert request.request_type == RequestType.LOAN_RENEWAL
        assert request.original_loan_id == self.original.id

        resolved, loan = self.requests.resolve_request(request.id, approve=True, resolved_by="manager-1")

        assert loan.loan_number == "L2"
        assert loan.original_loan_number == "L1"
        assert loan.customer_name == "Asha Rao"

        old = self.system.loan_store.require(self.original.id)
        assert old.status == LoanStatus.RENEWED
        assert old.renewed_loan_number == "L2"
        assert old.renewed_date is not None

        available = self.requests.available_loan_numbers("CUST001")
        assert "L1" in available
        assert "L2" not in available

        aggregate = self.system.customer_store.get("CUST001")
        assert aggregate.loan_ids == [loan.id]
