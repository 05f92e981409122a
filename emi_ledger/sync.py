"""
Ledger Synchronizer Module

Edit path for an existing payment. The embedded record, the loan rollups,
the customer aggregate and the audit entry change together in one unit of
work; the standalone ledger entry is mirrored right after commit through the
outbox, so a mirror failure leaves the edit committed and retryable.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Union
import logging

from .aggregation import recompute_loan, DEFAULT_PARTIAL_WEIGHT
from .audit import AuditTrail, AuditEventType
from .currency import Money, parse_amount, sum_money
from .customers import CustomerAggregate, CustomerAggregateStore
from .events import EventDispatcher, DomainEvent, create_loan_event, create_payment_event, get_global_dispatcher
from .exceptions import ValidationError
from .loans import LoanStore
from .logging_config import log_action
from .models import Loan, LoanStatus, PaymentStatus
from .payments import partial_chain_id_for
from .reconciliation import LedgerOutbox, LedgerReconciler
from .schedule import due_amount_for_installment
from .storage import StorageInterface


logger = logging.getLogger("emi_ledger.sync")


@dataclass
class EditResult:
    """Outcome of one payment edit"""
    payment_id: str
    loan_id: str
    loan_number: str
    previous_amount: Money
    new_amount: Money
    amount_difference: Money
    previous_status: PaymentStatus
    new_status: PaymentStatus
    loan: Loan
    customer: Optional[CustomerAggregate] = None
    ledger_synced: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'payment_id': self.payment_id,
            'loan_id': self.loan_id,
            'loan_number': self.loan_number,
            'previous_amount': str(self.previous_amount.amount),
            'new_amount': str(self.new_amount.amount),
            'amount_difference': str(self.amount_difference.amount),
            'currency': self.new_amount.currency.code,
            'previous_status': self.previous_status.value,
            'new_status': self.new_status.value,
            'ledger_synced': self.ledger_synced,
        }


class LedgerSynchronizer:
    """
    Applies edits to recorded payments across both persisted views
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
        default_editor: str = "data_entry_operator",
        partial_weight: Decimal = DEFAULT_PARTIAL_WEIGHT
    ):
        self.storage = storage
        self.loans = loan_store
        self.customers = customer_store
        self.outbox = outbox
        self.reconciler = reconciler
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher or get_global_dispatcher()
        self.default_editor = default_editor
        self.partial_weight = partial_weight

    def edit_payment(
        self,
        payment_id: str,
        loan_number: str,
        customer_id: str,
        new_amount: Union[Decimal, str, int, Money],
        new_status: Union[PaymentStatus, str],
        notes: Optional[str] = None,
        edited_by: Optional[str] = None
    ) -> EditResult:
        """
        Correct the amount and status of a recorded payment

        Args:
            payment_id: Identity of the embedded payment record
            loan_number: Loan number the payment belongs to
            customer_id: Customer owning the loan
            new_amount: Corrected amount (must be positive)
            new_status: Corrected status
            notes: Appended to the record's existing notes
            edited_by: Operator making the correction

        Returns:
            EditResult with old/new values and the loan's post-state

        Raises:
            ValidationError: bad amount or status, or a Partial at/above the due amount
            NotFoundError: no such payment on that customer's loan
            ConflictError: the loan changed underneath the edit
        """
        amount = parse_amount(new_amount, "new_amount")
        if amount <= 0:
            raise ValidationError("new_amount must be positive")
        try:
            status = PaymentStatus(new_status)
        except ValueError:
            raise ValidationError(f"Invalid payment status: {new_status}")
        editor = edited_by or self.default_editor

        with self.storage.atomic():
            loan, record = self.loans.find_by_payment_id(
                payment_id, loan_number=loan_number, customer_id=customer_id
            )
            new_money = Money(amount, loan.currency)
            if not new_money.is_positive():
                raise ValidationError(
                    f"new_amount {amount} rounds to {new_money.to_string()}; it must be positive"
                )

            if status == PaymentStatus.PARTIAL:
                due = due_amount_for_installment(loan.terms, record.installment_index)
                if new_money >= due:
                    raise ValidationError(
                        f"Partial amount {new_money.to_string()} must be below the installment due "
                        f"{due.to_string()}"
                    )

            previous_amount = record.amount
            previous_status = record.status
            difference = new_money - previous_amount
            now = datetime.now(timezone.utc)

            record.amount = new_money
            record.status = status
            record.edited_at = now
            record.edited_by = editor
            if notes:
                record.notes = f"{record.notes} | {notes}" if record.notes else notes
            if status == PaymentStatus.PARTIAL and not record.partial_chain_id:
                record.partial_chain_id = partial_chain_id_for(loan, record.installment_index)

            touched = [payment_id]
            if record.advance_batch_id:
                touched = self._refresh_advance_batch(loan, record.advance_batch_id)

            previous_loan_status = loan.status
            recompute_loan(loan, self.partial_weight)
            self.loans.save(loan)

            customer = self.customers.refresh(loan.customer_id, self.loans.find_by_customer(loan.customer_id))

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_EDITED,
                entity_type="payment",
                entity_id=payment_id,
                metadata={
                    "loan_id": loan.id,
                    "loan_number": loan.loan_number,
                    "customer_id": loan.customer_id,
                    "old_amount": str(previous_amount.amount),
                    "new_amount": str(new_money.amount),
                    "amount_difference": str(difference.amount),
                    "old_status": previous_status.value,
                    "new_status": status.value,
                    "notes": notes,
                    "edited_at": now,
                },
                user_id=editor
            )

            if previous_loan_status != loan.status:
                self.audit_trail.log_event(
                    event_type=(AuditEventType.LOAN_COMPLETED if loan.status == LoanStatus.COMPLETED
                                else AuditEventType.LOAN_REOPENED),
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"loan_number": loan.loan_number, "paid_count": str(loan.paid_count)},
                    user_id=editor
                )

            items = self.outbox.enqueue(loan.id, touched)

        log_action(
            logger, "info",
            f"Edited payment {payment_id} on loan {loan.loan_number}: "
            f"{previous_amount.amount} -> {new_money.amount}",
            user_id=editor, action="edit_payment", resource=payment_id,
            extra={"amount_difference": str(difference.amount),
                   "old_status": previous_status.value, "new_status": status.value}
        )

        synced = self.reconciler.flush(items)

        self.dispatcher.publish(create_payment_event(
            DomainEvent.PAYMENT_EDITED, loan, record,
            previous_amount=str(previous_amount.amount),
            amount_difference=str(difference.amount),
            previous_status=previous_status.value,
        ))
        if previous_loan_status != LoanStatus.COMPLETED and loan.status == LoanStatus.COMPLETED:
            self.dispatcher.publish(create_loan_event(DomainEvent.LOAN_COMPLETED, loan))

        return EditResult(
            payment_id=payment_id,
            loan_id=loan.id,
            loan_number=loan.loan_number,
            previous_amount=previous_amount,
            new_amount=new_money,
            amount_difference=difference,
            previous_status=previous_status,
            new_status=status,
            loan=loan,
            customer=customer,
            ledger_synced=synced,
        )

    def _refresh_advance_batch(self, loan: Loan, batch_id: str) -> List[str]:
        """
        Re-derive the batch total and count on every record of an advance batch.

        Only records still marked Advance count towards the batch; every record
        carrying the batch id gets the new figures. Returns their ids.
        """
        batch = [r for r in loan.history if r.advance_batch_id == batch_id]
        members = [r for r in batch if r.status == PaymentStatus.ADVANCE]
        total = sum_money((r.amount for r in members), loan.currency)
        for record in batch:
            record.advance_total_amount = total
            record.advance_emi_count = len(members)
        return [r.id for r in batch]
