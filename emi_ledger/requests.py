"""
Loan Request Module

Loan-number allocation and the pending-request guard. A customer holds at
most one pending loan addition or renewal request at a time, and each request
reserves a loan number from the customer's pool until it is resolved.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any, Tuple
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, EventPayload, DomainEvent, create_loan_event, get_global_dispatcher
from .exceptions import ConflictError, NotFoundError, PendingRequestExistsError, ValidationError
from .loans import LoanManager, LoanStore, loan_number_pool
from .logging_config import log_action
from .models import Loan, LoanStatus, LoanTerms
from .schedule import validate_terms
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("emi_ledger.requests")


class RequestType(Enum):
    LOAN_ADDITION = "Loan Addition"
    LOAN_RENEWAL = "Loan Renew"


class RequestStatus(Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


# Loan statuses a renewal may start from
RENEWABLE_STATUSES = (LoanStatus.ACTIVE, LoanStatus.COMPLETED)


@dataclass
class LoanRequest(StorageRecord):
    """Pending or resolved request to add or renew a loan"""
    customer_id: str
    request_type: RequestType
    loan_number: str
    requested_data: Dict[str, Any] = field(default_factory=dict)  # LoanTerms.to_dict() plus customer_name
    status: RequestStatus = RequestStatus.PENDING
    original_loan_id: Optional[str] = None
    requested_by: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None
    loan_id: Optional[str] = None  # loan created on approval

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['request_type'] = self.request_type.value
        result['status'] = self.status.value
        result['resolved_at'] = self.resolved_at.isoformat() if self.resolved_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanRequest':
        data = dict(data)
        data['request_type'] = RequestType(data['request_type'])
        data['status'] = RequestStatus(data['status'])
        if data.get('resolved_at'):
            data['resolved_at'] = datetime.fromisoformat(data['resolved_at'])
        return super().from_dict(data)

    @property
    def terms(self) -> LoanTerms:
        return LoanTerms.from_dict(self.requested_data)


class LoanRequestManager:
    """
    Manages loan addition/renewal requests and loan-number availability
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_store: LoanStore,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.loans = loan_store
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher or get_global_dispatcher()
        self.table_name = "loan_requests"

    def get_request(self, request_id: str) -> Optional[LoanRequest]:
        data = self.storage.load(self.table_name, request_id)
        if data:
            return LoanRequest.from_dict(data)
        return None

    def list_requests(self, customer_id: Optional[str] = None,
                      status: Optional[RequestStatus] = None) -> List[LoanRequest]:
        filters = {}
        if customer_id:
            filters['customer_id'] = customer_id
        if status:
            filters['status'] = status.value
        requests = [LoanRequest.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        requests.sort(key=lambda r: r.created_at)
        return requests

    def pending_request_for(self, customer_id: str) -> Optional[LoanRequest]:
        pending = self.list_requests(customer_id, RequestStatus.PENDING)
        return pending[0] if pending else None

    def available_loan_numbers(self, customer_id: str) -> List[str]:
        """
        Pool numbers not held by an active/pending loan and not reserved by a
        pending request of the customer, in pool order.
        """
        taken = set(self.loan_manager.held_loan_numbers(customer_id))
        taken.update(r.loan_number for r in self.list_requests(customer_id, RequestStatus.PENDING))
        return [number for number in loan_number_pool() if number not in taken]

    def submit_loan_addition(
        self,
        customer_id: str,
        loan_number: str,
        terms: LoanTerms,
        customer_name: Optional[str] = None,
        requested_by: Optional[str] = None
    ) -> LoanRequest:
        """Request a new loan under ``loan_number``"""
        validate_terms(terms)
        return self._submit(
            customer_id=customer_id,
            request_type=RequestType.LOAN_ADDITION,
            loan_number=loan_number,
            terms=terms,
            customer_name=customer_name,
            requested_by=requested_by,
        )

    def submit_loan_renewal(
        self,
        original_loan_id: str,
        loan_number: str,
        terms: LoanTerms,
        requested_by: Optional[str] = None
    ) -> LoanRequest:
        """
        Request a renewal of ``original_loan_id`` under a different loan number.

        Raises:
            NotFoundError: unknown loan
            ValidationError: same number as the renewed loan, or loan not renewable
        """
        validate_terms(terms)
        original = self.loans.require(original_loan_id)
        if original.status not in RENEWABLE_STATUSES:
            raise ValidationError(f"Loan {original.loan_number} is {original.status.value} and cannot be renewed")
        if loan_number == original.loan_number:
            raise ValidationError("A renewal must use a different loan number than the loan being renewed")

        return self._submit(
            customer_id=original.customer_id,
            request_type=RequestType.LOAN_RENEWAL,
            loan_number=loan_number,
            terms=terms,
            customer_name=original.customer_name,
            requested_by=requested_by,
            original_loan_id=original.id,
        )

    def _submit(self, customer_id: str, request_type: RequestType, loan_number: str, terms: LoanTerms,
                customer_name: Optional[str], requested_by: Optional[str],
                original_loan_id: Optional[str] = None) -> LoanRequest:
        if loan_number not in loan_number_pool():
            raise ValidationError(f"Loan number {loan_number} is outside the loan number pool")

        now = datetime.now(timezone.utc)
        # Check and insert under one serialized unit of work
        with self.storage.atomic():
            existing = self.pending_request_for(customer_id)
            if existing:
                raise PendingRequestExistsError(
                    f"Customer {customer_id} already has a pending {existing.request_type.value} "
                    f"request ({existing.id})"
                )
            if loan_number not in self.available_loan_numbers(customer_id):
                raise ConflictError(f"Loan number {loan_number} is not available for customer {customer_id}")

            request = LoanRequest(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                customer_id=customer_id,
                request_type=request_type,
                loan_number=loan_number,
                requested_data={**terms.to_dict(), 'customer_name': customer_name},
                original_loan_id=original_loan_id,
                requested_by=requested_by,
            )
            self.storage.save(self.table_name, request.id, request.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.REQUEST_SUBMITTED,
                entity_type="loan_request",
                entity_id=request.id,
                metadata={
                    "customer_id": customer_id,
                    "request_type": request_type.value,
                    "loan_number": loan_number,
                    "original_loan_id": original_loan_id,
                },
                user_id=requested_by
            )

        log_action(logger, "info", f"{request_type.value} request submitted for customer {customer_id}",
                   user_id=requested_by, action="submit_loan_request", resource=request.id)
        self.dispatcher.publish(EventPayload(
            event_type=DomainEvent.LOAN_REQUEST_SUBMITTED,
            entity_type="loan_request",
            entity_id=request.id,
            data={"customer_id": customer_id, "request_type": request_type.value, "loan_number": loan_number}
        ))
        return request

    def resolve_request(
        self,
        request_id: str,
        approve: bool,
        resolved_by: Optional[str] = None,
        note: Optional[str] = None
    ) -> Tuple[LoanRequest, Optional[Loan]]:
        """
        Approve or reject a pending request.

        Approving an addition originates the loan. Approving a renewal
        originates the new loan and marks the renewed loan ``renewed``.

        Returns:
            The resolved request and the originated loan (None when rejected)
        """
        loan = None
        renewed = None
        with self.storage.atomic():
            request = self.get_request(request_id)
            if request is None:
                raise NotFoundError(f"Loan request {request_id} not found")
            if request.status != RequestStatus.PENDING:
                raise ConflictError(f"Loan request {request_id} is already {request.status.value}")

            now = datetime.now(timezone.utc)
            if approve:
                original = None
                if request.request_type == RequestType.LOAN_RENEWAL:
                    original = self.loans.require(request.original_loan_id)
                    if original.status not in RENEWABLE_STATUSES:
                        raise ConflictError(
                            f"Loan {original.loan_number} is {original.status.value} and cannot be renewed"
                        )

                loan = self.loan_manager.originate_loan(
                    customer_id=request.customer_id,
                    loan_number=request.loan_number,
                    terms=request.terms,
                    customer_name=request.requested_data.get('customer_name'),
                    originated_by=resolved_by,
                    original_loan_number=original.loan_number if original else None,
                    publish=False,
                )
                if original is not None:
                    renewed = self.loan_manager.mark_renewed(
                        original, request.loan_number, now.date(), renewed_by=resolved_by
                    )
                request.loan_id = loan.id

            request.status = RequestStatus.APPROVED if approve else RequestStatus.REJECTED
            request.resolved_by = resolved_by
            request.resolved_at = now
            request.resolution_note = note
            request.updated_at = now
            self.storage.save(self.table_name, request.id, request.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.REQUEST_RESOLVED,
                entity_type="loan_request",
                entity_id=request.id,
                metadata={
                    "customer_id": request.customer_id,
                    "request_type": request.request_type.value,
                    "status": request.status.value,
                    "loan_id": request.loan_id,
                    "note": note,
                },
                user_id=resolved_by
            )

        self.dispatcher.publish(EventPayload(
            event_type=DomainEvent.LOAN_REQUEST_RESOLVED,
            entity_type="loan_request",
            entity_id=request.id,
            data={"customer_id": request.customer_id, "status": request.status.value, "loan_id": request.loan_id}
        ))
        if loan is not None:
            self.dispatcher.publish(create_loan_event(DomainEvent.LOAN_ORIGINATED, loan))
        if renewed is not None:
            self.dispatcher.publish(create_loan_event(
                DomainEvent.LOAN_RENEWED, renewed, renewed_loan_number=request.loan_number
            ))
        return request, loan
