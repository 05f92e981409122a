"""
Loan Module

Loan store (load by id, by customer, by embedded payment id, versioned save)
and the loan manager handling origination and renewal bookkeeping.
"""

from datetime import datetime, timezone, date
from typing import Dict, List, Optional, Tuple
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .config import get_config
from .customers import CustomerAggregateStore
from .events import EventDispatcher, DomainEvent, create_loan_event, get_global_dispatcher
from .exceptions import ConflictError, NotFoundError, ValidationError
from .logging_config import log_action
from .models import Loan, LoanStatus, LoanTerms, PaymentRecord, NUMBER_HOLDING_STATUSES
from .schedule import validate_terms, total_due
from .storage import StorageInterface


logger = logging.getLogger("emi_ledger.loans")


def loan_number_pool(size: Optional[int] = None, prefix: Optional[str] = None) -> List[str]:
    """Loan numbers a customer can hold, e.g. ["L1", ..., "L15"]"""
    config = get_config()
    size = size if size is not None else config.loan_number_pool_size
    prefix = prefix if prefix is not None else config.loan_number_prefix
    return [f"{prefix}{n}" for n in range(1, size + 1)]


class LoanStore:
    """
    Persistence for loans and their embedded payment history.

    Every embedded payment id is also written to an index table so a payment
    can be resolved to its owning loan without scanning all loans.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.loans_table = "loans"
        self.index_table = "loan_payment_index"

    def get(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def require(self, loan_id: str) -> Loan:
        loan = self.get(loan_id)
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def find_by_customer(self, customer_id: str) -> List[Loan]:
        return [Loan.from_dict(data)
                for data in self.storage.find(self.loans_table, {'customer_id': customer_id})]

    def find_by_number(self, customer_id: str, loan_number: str) -> List[Loan]:
        """All loans a customer has held under ``loan_number``, renewed ones included"""
        return [Loan.from_dict(data) for data in self.storage.find(
            self.loans_table, {'customer_id': customer_id, 'loan_number': loan_number}
        )]

    def find_by_payment_id(
        self,
        payment_id: str,
        loan_number: Optional[str] = None,
        customer_id: Optional[str] = None
    ) -> Tuple[Loan, PaymentRecord]:
        """
        Locate the loan owning embedded payment ``payment_id``.

        When ``loan_number``/``customer_id`` are given the owning loan must match
        them, otherwise the payment is treated as not found.

        Raises:
            NotFoundError: no loan (matching the filters) embeds the payment
        """
        loan = None
        index_entry = self.storage.load(self.index_table, payment_id)
        if index_entry:
            loan = self.get(index_entry['loan_id'])
            if loan is not None and loan.find_payment(payment_id) is None:
                loan = None

        if loan is None:
            # Fall back to scanning, then repair the index
            filters = {}
            if customer_id:
                filters['customer_id'] = customer_id
            if loan_number:
                filters['loan_number'] = loan_number
            for data in self.storage.find(self.loans_table, filters):
                candidate = Loan.from_dict(data)
                if candidate.find_payment(payment_id):
                    loan = candidate
                    self._index_payment(payment_id, loan.id)
                    break

        if loan is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        if loan_number and loan.loan_number != loan_number:
            raise NotFoundError(f"Payment {payment_id} not found on loan {loan_number}")
        if customer_id and loan.customer_id != customer_id:
            raise NotFoundError(f"Payment {payment_id} not found for customer {customer_id}")

        return loan, loan.find_payment(payment_id)

    def save(self, loan: Loan) -> Loan:
        """
        Persist ``loan`` with an optimistic version check.

        Raises:
            ConflictError: the stored version moved since ``loan`` was loaded
        """
        with self.storage.atomic():
            stored = self.storage.load(self.loans_table, loan.id)
            stored_version = stored.get('version', 0) if stored else 0
            if stored_version != loan.version:
                raise ConflictError(
                    f"Loan {loan.id} was modified concurrently "
                    f"(expected version {loan.version}, found {stored_version})"
                )

            loan.version += 1
            loan.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.loans_table, loan.id, loan.to_dict())

            for record in loan.history:
                if not self.storage.exists(self.index_table, record.id):
                    self._index_payment(record.id, loan.id)
        return loan

    def _index_payment(self, payment_id: str, loan_id: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.index_table, payment_id, {
            'id': payment_id,
            'loan_id': loan_id,
            'created_at': now,
            'updated_at': now,
        })


class LoanManager:
    """
    Manages loan origination and renewal bookkeeping
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_store: LoanStore,
        customer_store: CustomerAggregateStore,
        audit_trail: AuditTrail,
        dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.loans = loan_store
        self.customers = customer_store
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher or get_global_dispatcher()

    def originate_loan(
        self,
        customer_id: str,
        loan_number: str,
        terms: LoanTerms,
        customer_name: Optional[str] = None,
        originated_by: Optional[str] = None,
        original_loan_number: Optional[str] = None,
        publish: bool = True
    ) -> Loan:
        """
        Originate a new active loan

        Args:
            customer_id: Borrower customer ID
            loan_number: Number from the customer's pool, free among active/pending loans
            terms: Schedule parameters
            customer_name: Borrower display name
            originated_by: Operator creating the loan
            original_loan_number: Number of the loan this one renews
            publish: Publish LOAN_ORIGINATED; callers wrapping this in a larger
                unit of work pass False and publish after their own commit

        Returns:
            Created Loan object
        """
        validate_terms(terms)
        if loan_number not in loan_number_pool():
            raise ValidationError(f"Loan number {loan_number} is outside the loan number pool")

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            self._ensure_number_free(customer_id, loan_number)

            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                customer_id=customer_id,
                customer_name=customer_name,
                loan_number=loan_number,
                terms=terms,
                status=LoanStatus.ACTIVE,
                original_loan_number=original_loan_number,
            )
            self.loans.save(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_ORIGINATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "customer_id": customer_id,
                    "loan_number": loan_number,
                    "total_due": total_due(terms).to_string(),
                    **terms.to_dict(),
                },
                user_id=originated_by
            )
            self.customers.refresh(customer_id, self.loans.find_by_customer(customer_id))

        log_action(logger, "info", f"Loan {loan_number} originated for customer {customer_id}",
                   user_id=originated_by, action="originate_loan", resource=loan.id)
        if publish:
            self.dispatcher.publish(create_loan_event(DomainEvent.LOAN_ORIGINATED, loan))
        return loan

    def mark_renewed(self, loan: Loan, new_loan_number: str, renewed_on: Optional[date] = None,
                     renewed_by: Optional[str] = None) -> Loan:
        """Mark ``loan`` as superseded by the renewal loan ``new_loan_number``"""
        with self.storage.atomic():
            previous_status = loan.status
            loan.status = LoanStatus.RENEWED
            loan.renewed_loan_number = new_loan_number
            loan.renewed_date = renewed_on or datetime.now(timezone.utc).date()
            self.loans.save(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_RENEWED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_number": loan.loan_number,
                    "renewed_loan_number": new_loan_number,
                    "previous_status": previous_status.value,
                },
                user_id=renewed_by
            )
            self.customers.refresh(loan.customer_id, self.loans.find_by_customer(loan.customer_id))
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        return self.loans.get(loan_id)

    def get_customer_loans(self, customer_id: str) -> List[Loan]:
        return self.loans.find_by_customer(customer_id)

    def held_loan_numbers(self, customer_id: str) -> Dict[str, str]:
        """Loan numbers currently held by active/pending loans, mapped to loan id"""
        return {
            loan.loan_number: loan.id
            for loan in self.loans.find_by_customer(customer_id)
            if loan.status in NUMBER_HOLDING_STATUSES
        }

    def _ensure_number_free(self, customer_id: str, loan_number: str) -> None:
        if loan_number in self.held_loan_numbers(customer_id):
            raise ConflictError(
                f"Loan number {loan_number} is already in use for customer {customer_id}"
            )
