"""
Ledger Reconciliation Module

Outbox-style mirroring of embedded payment records into the standalone
payment ledger. An outbox item is written inside the same unit of work as the
loan mutation; once that commits, the item is flushed to the ledger. A flush
failure never touches the committed loan: it is logged, recorded on the item
and left pending for a later retry or a full loan reconciliation.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Any
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, EventPayload, DomainEvent, get_global_dispatcher
from .ledger import PaymentLedger, LedgerDrift
from .loans import LoanStore
from .logging_config import log_action
from .schedule import due_amount_for_installment
from .storage import StorageInterface, StorageRecord


logger = logging.getLogger("emi_ledger.reconciliation")


class OutboxStatus(Enum):
    PENDING = "pending"
    DONE = "done"


@dataclass
class OutboxItem(StorageRecord):
    """One payment record waiting to be mirrored into the ledger"""
    payment_id: str
    loan_id: str
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        result['completed_at'] = self.completed_at.isoformat() if self.completed_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OutboxItem':
        data = dict(data)
        data['status'] = OutboxStatus(data['status'])
        if data.get('completed_at'):
            data['completed_at'] = datetime.fromisoformat(data['completed_at'])
        return super().from_dict(data)


class LedgerOutbox:
    """Outbox table of pending ledger mirror work"""

    def __init__(self, storage: StorageInterface, table_name: str = "ledger_outbox"):
        self.storage = storage
        self.table_name = table_name

    def enqueue(self, loan_id: str, payment_ids: Iterable[str]) -> List[OutboxItem]:
        """Queue mirror work for ``payment_ids``; call inside the mutating unit of work"""
        now = datetime.now(timezone.utc)
        items = []
        for payment_id in payment_ids:
            item = OutboxItem(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                payment_id=payment_id,
                loan_id=loan_id,
            )
            self.save(item)
            items.append(item)
        return items

    def save(self, item: OutboxItem) -> None:
        self.storage.save(self.table_name, item.id, item.to_dict())

    def get(self, item_id: str) -> Optional[OutboxItem]:
        data = self.storage.load(self.table_name, item_id)
        if data:
            return OutboxItem.from_dict(data)
        return None

    def pending(self, loan_id: Optional[str] = None) -> List[OutboxItem]:
        filters = {'status': OutboxStatus.PENDING.value}
        if loan_id:
            filters['loan_id'] = loan_id
        items = [OutboxItem.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        items.sort(key=lambda item: item.created_at)
        return items

    def all_items(self) -> List[OutboxItem]:
        items = [OutboxItem.from_dict(data) for data in self.storage.load_all(self.table_name)]
        items.sort(key=lambda item: item.created_at)
        return items


class LedgerReconciler:
    """
    Flushes outbox items into the payment ledger and repairs drift.
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_store: LoanStore,
        ledger: PaymentLedger,
        outbox: LedgerOutbox,
        audit_trail: AuditTrail,
        dispatcher: Optional[EventDispatcher] = None,
        max_attempts: int = 5
    ):
        self.storage = storage
        self.loans = loan_store
        self.ledger = ledger
        self.outbox = outbox
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher or get_global_dispatcher()
        self.max_attempts = max_attempts

    def flush(self, items: Iterable[OutboxItem]) -> bool:
        """
        Mirror each outbox item into the ledger.

        Returns:
            True when every item was mirrored, False if any is still pending
        """
        all_synced = True
        for item in items:
            item.attempts += 1
            try:
                self._mirror(item)
            except Exception as e:
                all_synced = False
                self._record_failure(item, e)
        return all_synced

    def _mirror(self, item: OutboxItem) -> None:
        with self.storage.atomic():
            loan = self.loans.get(item.loan_id)
            record = loan.find_payment(item.payment_id) if loan else None
            if record is not None:
                self.ledger.upsert_from_record(loan, record)
                if record.partial_chain_id:
                    installment_total = due_amount_for_installment(loan.terms, record.installment_index)
                    self.ledger.recompute_chain_totals(record.partial_chain_id, installment_total)
            else:
                logger.warning(f"Outbox item {item.id} points at missing payment {item.payment_id}")

            now = datetime.now(timezone.utc)
            item.status = OutboxStatus.DONE
            item.last_error = None
            item.completed_at = now
            item.updated_at = now
            self.outbox.save(item)

        if record is not None:
            self.dispatcher.publish(EventPayload(
                event_type=DomainEvent.LEDGER_SYNCED,
                entity_type="payment",
                entity_id=item.payment_id,
                data={"loan_id": item.loan_id, "outbox_item_id": item.id}
            ))

    def _record_failure(self, item: OutboxItem, error: Exception) -> None:
        item.status = OutboxStatus.PENDING
        item.completed_at = None
        item.last_error = f"{type(error).__name__}: {error}"
        item.updated_at = datetime.now(timezone.utc)

        log_action(
            logger, "warning",
            f"Ledger mirror failed for payment {item.payment_id} (attempt {item.attempts})",
            action="ledger_sync", resource=item.payment_id,
            extra={"loan_id": item.loan_id, "outbox_item_id": item.id, "error": item.last_error}
        )

        try:
            with self.storage.atomic():
                self.outbox.save(item)
                self.audit_trail.log_event(
                    event_type=AuditEventType.LEDGER_SYNC_FAILED,
                    entity_type="payment",
                    entity_id=item.payment_id,
                    metadata={
                        "loan_id": item.loan_id,
                        "outbox_item_id": item.id,
                        "attempts": item.attempts,
                        "error": item.last_error,
                    }
                )
        except Exception:
            logger.exception(f"Could not record ledger mirror failure for outbox item {item.id}")

        self.dispatcher.publish(EventPayload(
            event_type=DomainEvent.LEDGER_SYNC_FAILED,
            entity_type="payment",
            entity_id=item.payment_id,
            data={"loan_id": item.loan_id, "attempts": item.attempts, "error": item.last_error}
        ))

    def retry_pending(self, loan_id: Optional[str] = None) -> Dict[str, int]:
        """
        Retry pending outbox items that have not used up their attempts.

        Returns:
            Counts of attempted, succeeded, failed and skipped items
        """
        result = {'attempted': 0, 'succeeded': 0, 'failed': 0, 'skipped': 0}
        for item in self.outbox.pending(loan_id):
            if item.attempts >= self.max_attempts:
                result['skipped'] += 1
                continue
            result['attempted'] += 1
            if self.flush([item]):
                result['succeeded'] += 1
            else:
                result['failed'] += 1

        if result['attempted']:
            logger.info(f"Ledger outbox retry: {result}")
        return result

    def reconcile_loan(self, loan_id: str, reconciled_by: Optional[str] = None) -> LedgerDrift:
        """
        Rebuild every ledger entry of a loan from its embedded history.

        Missing and mismatched entries are upserted, orphaned entries removed,
        chain totals recomputed, and the loan's pending outbox items closed.

        Returns:
            The drift found before repairing it
        """
        with self.storage.atomic():
            loan = self.loans.require(loan_id)
            drift = self.ledger.find_drift(loan)

            # Orphans go first so they never count towards a chain total
            for payment_id in drift.orphaned:
                self.ledger.delete_entry(payment_id)

            chains = {}
            for record in loan.history:
                self.ledger.upsert_from_record(loan, record)
                if record.partial_chain_id:
                    chains[record.partial_chain_id] = record.installment_index
            for chain_id, index in chains.items():
                self.ledger.recompute_chain_totals(chain_id, due_amount_for_installment(loan.terms, index))

            now = datetime.now(timezone.utc)
            for item in self.outbox.pending(loan_id):
                item.status = OutboxStatus.DONE
                item.completed_at = now
                item.updated_at = now
                self.outbox.save(item)

            self.audit_trail.log_event(
                event_type=AuditEventType.LEDGER_RECONCILED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_number": loan.loan_number,
                    "missing": len(drift.missing),
                    "mismatched": len(drift.mismatched),
                    "orphaned": len(drift.orphaned),
                },
                user_id=reconciled_by
            )

        if not drift.in_sync:
            log_action(logger, "info", f"Reconciled ledger for loan {loan.loan_number}",
                       user_id=reconciled_by, action="reconcile_ledger", resource=loan.id,
                       extra=drift.to_dict())
        return drift
