"""
Payment Recorder Module

Validates and records new payments against a loan:

- Single payments: Paid (settles the next installment) or Partial (a payment
  below the installment's outstanding amount; the schedule does not advance)
- Advance payments: one Advance record per installment falling in a date range

Each recording appends to the loan's embedded history, recomputes the loan
and customer rollups, writes an audit entry and queues ledger mirror work in
one unit of work. The ledger mirror is flushed after commit.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import List, Optional, Union
import logging
import uuid

from .aggregation import recompute_loan, DEFAULT_PARTIAL_WEIGHT
from .audit import AuditTrail, AuditEventType
from .currency import Money, parse_amount
from .customers import CustomerAggregate, CustomerAggregateStore
from .events import EventDispatcher, DomainEvent, create_loan_event, create_payment_event, get_global_dispatcher
from .exceptions import ValidationError
from .loans import LoanStore
from .logging_config import log_action
from .models import Loan, LoanStatus, PaymentRecord, PaymentStatus, PaymentType
from .reconciliation import LedgerOutbox, LedgerReconciler
from .schedule import (
    compute_advance_span, due_amount_for_installment, due_date_for_installment,
    next_installment_index, outstanding_for_installment
)
from .storage import StorageInterface


logger = logging.getLogger("emi_ledger.payments")


def partial_chain_id_for(loan: Loan, installment_index: int) -> str:
    """Chain id shared by all partial payments settling one installment"""
    return f"partial_{loan.id.replace('-', '')[-12:]}_{installment_index}"


@dataclass
class SinglePaymentIntent:
    """A Paid or Partial payment against the next unsettled installment"""
    status: PaymentStatus
    amount: Optional[Union[Decimal, str, int]] = None  # Paid defaults to the outstanding amount
    payment_date: Optional[date] = None
    collected_by: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class AdvancePaymentIntent:
    """Settle every installment that falls in ``from_date``..``to_date``"""
    from_date: date
    to_date: date
    payment_date: Optional[date] = None
    collected_by: Optional[str] = None
    notes: Optional[str] = None


PaymentIntent = Union[SinglePaymentIntent, AdvancePaymentIntent]


@dataclass
class PaymentReceipt:
    """Outcome of one recording"""
    loan_id: str
    records: List[PaymentRecord]
    total_amount: Money
    loan: Loan
    customer: Optional[CustomerAggregate] = None
    ledger_synced: bool = True
    outbox_item_ids: List[str] = field(default_factory=list)


class PaymentRecorder:
    """
    Records new payments against loans
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_store: LoanStore,
        customer_store: CustomerAggregateStore,
        outbox: LedgerOutbox,
        reconciler: LedgerReconciler,
        audit_trail: AuditTrail,
        dispatcher: Optional[EventDispatcher] = None,
        default_collector: str = "data_entry_operator",
        partial_weight: Decimal = DEFAULT_PARTIAL_WEIGHT
    ):
        self.storage = storage
        self.loans = loan_store
        self.customers = customer_store
        self.outbox = outbox
        self.reconciler = reconciler
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher or get_global_dispatcher()
        self.default_collector = default_collector
        self.partial_weight = partial_weight

    def record_payment(self, loan_id: str, intent: PaymentIntent) -> PaymentReceipt:
        """
        Validate and record a payment intent against a loan

        Args:
            loan_id: Loan being paid
            intent: SinglePaymentIntent or AdvancePaymentIntent

        Returns:
            PaymentReceipt with the new records and the loan's post-state

        Raises:
            NotFoundError: unknown loan
            ValidationError: the intent does not fit the loan's current state
        """
        with self.storage.atomic():
            loan = self.loans.require(loan_id)
            if loan.status != LoanStatus.ACTIVE:
                raise ValidationError(
                    f"Loan {loan.loan_number} is {loan.status.value}; only active loans accept payments"
                )

            if isinstance(intent, SinglePaymentIntent):
                records = [self._build_single_record(loan, intent)]
                audit_type = AuditEventType.PAYMENT_RECORDED
            elif isinstance(intent, AdvancePaymentIntent):
                records = self._build_advance_records(loan, intent)
                audit_type = AuditEventType.ADVANCE_PAYMENT_RECORDED
            else:
                raise ValidationError(f"Unsupported payment intent: {type(intent).__name__}")

            previous_status = loan.status
            loan.history.extend(records)
            rollup = recompute_loan(loan, self.partial_weight)
            self.loans.save(loan)

            customer = self.customers.refresh(loan.customer_id, self.loans.find_by_customer(loan.customer_id))

            total = records[0].amount
            for record in records[1:]:
                total = total + record.amount

            self.audit_trail.log_event(
                event_type=audit_type,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_number": loan.loan_number,
                    "customer_id": loan.customer_id,
                    "payment_ids": [r.id for r in records],
                    "status": records[0].status.value,
                    "installment_indexes": [r.installment_index for r in records],
                    "total_amount": str(total.amount),
                    "paid_count": str(loan.paid_count),
                    "remaining_balance": str(loan.remaining_balance.amount),
                    "partial_chain_id": records[0].partial_chain_id,
                },
                user_id=records[0].collected_by
            )

            chain_closed = (records[0].status == PaymentStatus.PAID and records[0].partial_chain_id)
            if chain_closed:
                self.audit_trail.log_event(
                    event_type=AuditEventType.PARTIAL_CHAIN_COMPLETED,
                    entity_type="payment",
                    entity_id=records[0].id,
                    metadata={
                        "loan_id": loan.id,
                        "partial_chain_id": records[0].partial_chain_id,
                        "installment_index": records[0].installment_index,
                    },
                    user_id=records[0].collected_by
                )

            completed = previous_status == LoanStatus.ACTIVE and loan.status == LoanStatus.COMPLETED
            if completed:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_COMPLETED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"loan_number": loan.loan_number, "paid_count": str(loan.paid_count)}
                )

            items = self.outbox.enqueue(loan.id, [r.id for r in records])

        log_action(
            logger, "info",
            f"Recorded {len(records)} {records[0].status.value} payment(s) on loan {loan.loan_number}",
            user_id=records[0].collected_by, action="record_payment", resource=loan.id,
            extra={"total_amount": str(total.amount), "next_installment": rollup.next_installment_index}
        )

        synced = self.reconciler.flush(items)

        for record in records:
            self.dispatcher.publish(create_payment_event(DomainEvent.PAYMENT_RECORDED, loan, record))
        if completed:
            self.dispatcher.publish(create_loan_event(DomainEvent.LOAN_COMPLETED, loan))

        return PaymentReceipt(
            loan_id=loan.id,
            records=records,
            total_amount=total,
            loan=loan,
            customer=customer,
            ledger_synced=synced,
            outbox_item_ids=[item.id for item in items],
        )

    def _next_installment(self, loan: Loan) -> int:
        index = next_installment_index(loan)
        if index > loan.terms.total_installments:
            raise ValidationError(f"Every installment of loan {loan.loan_number} is already settled")
        return index

    def _build_single_record(self, loan: Loan, intent: SinglePaymentIntent) -> PaymentRecord:
        try:
            status = PaymentStatus(intent.status)
        except ValueError:
            raise ValidationError(f"Invalid payment status: {intent.status}")
        if status not in (PaymentStatus.PAID, PaymentStatus.PARTIAL):
            raise ValidationError("Single payments must be Paid or Partial")

        index = self._next_installment(loan)
        due = due_amount_for_installment(loan.terms, index)
        outstanding = outstanding_for_installment(loan, index)
        chain_id = self._open_chain_id(loan, index)

        if intent.amount is None:
            if status == PaymentStatus.PARTIAL:
                raise ValidationError("Partial payments require an amount")
            amount = outstanding
        else:
            amount = Money(parse_amount(intent.amount), loan.currency)

        if not amount.is_positive():
            raise ValidationError("Payment amount must be positive")

        if status == PaymentStatus.PARTIAL:
            if amount >= due:
                raise ValidationError(
                    f"Partial amount {amount.to_string()} must be below the installment due "
                    f"{due.to_string()}; record it as Paid instead"
                )
            if amount >= outstanding:
                raise ValidationError(
                    f"Partial amount {amount.to_string()} covers the outstanding "
                    f"{outstanding.to_string()} of installment {index}; record it as Paid instead"
                )
            chain_id = chain_id or partial_chain_id_for(loan, index)
        elif amount < outstanding:
            raise ValidationError(
                f"Paid amount {amount.to_string()} is below the outstanding "
                f"{outstanding.to_string()} of installment {index}; record it as Partial instead"
            )

        return PaymentRecord(
            id=str(uuid.uuid4()),
            amount=amount,
            status=status,
            payment_date=intent.payment_date or datetime.now(timezone.utc).date(),
            installment_index=index,
            due_date=due_date_for_installment(loan.terms, index),
            collected_by=intent.collected_by or self.default_collector,
            notes=intent.notes,
            payment_type=PaymentType.SINGLE,
            partial_chain_id=chain_id,
            recorded_at=datetime.now(timezone.utc),
        )

    def _build_advance_records(self, loan: Loan, intent: AdvancePaymentIntent) -> List[PaymentRecord]:
        if intent.from_date < loan.terms.emi_start_date:
            raise ValidationError(
                f"Advance cannot start before the schedule begins on {loan.terms.emi_start_date.isoformat()}"
            )
        if intent.to_date < intent.from_date:
            raise ValidationError("Advance end date is before its start date")

        index = self._next_installment(loan)
        if self._open_chain_id(loan, index):
            raise ValidationError(
                f"Installment {index} has an open partial payment; settle it before paying in advance"
            )

        span = compute_advance_span(loan, intent.from_date, intent.to_date)
        if not span.installments:
            raise ValidationError("Advance date range covers no installments")

        batch_id = str(uuid.uuid4())
        payment_date = intent.payment_date or datetime.now(timezone.utc).date()
        recorded_at = datetime.now(timezone.utc)
        return [
            PaymentRecord(
                id=str(uuid.uuid4()),
                amount=entry.amount,
                status=PaymentStatus.ADVANCE,
                payment_date=payment_date,
                installment_index=entry.index,
                due_date=entry.due_date,
                collected_by=intent.collected_by or self.default_collector,
                notes=intent.notes,
                payment_type=PaymentType.ADVANCE,
                advance_from_date=intent.from_date,
                advance_to_date=intent.to_date,
                advance_emi_count=span.count,
                advance_total_amount=span.total_amount,
                advance_batch_id=batch_id,
                recorded_at=recorded_at,
            )
            for entry in span.installments
        ]

    def _open_chain_id(self, loan: Loan, index: int) -> Optional[str]:
        """Chain id of unsettled partial payments already recorded on ``index``"""
        for record in loan.records_for_installment(index):
            if record.status == PaymentStatus.PARTIAL:
                return record.partial_chain_id or partial_chain_id_for(loan, index)
        return None
