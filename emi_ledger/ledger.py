"""
Payment Ledger Module

Standalone, independently queryable projection of every embedded payment
record. Entries are keyed by the payment id, carry the same identity, amount,
status, payment date and installment index as the embedded record, and are
upserted idempotently from it. Partial-payment chains keep chain-wide totals
on every member entry.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Any

from .currency import Money, Currency, sum_money
from .models import Loan, PaymentRecord, PaymentStatus, SHARED_PAYMENT_FIELDS
from .storage import StorageInterface, StorageRecord


@dataclass
class LedgerEntry(StorageRecord):
    """Mirror of one embedded payment record plus loan and chain context"""
    loan_id: str
    loan_number: str
    customer_id: str
    payment: PaymentRecord
    customer_name: Optional[str] = None

    # Chain-wide figures, identical on every entry of one partial chain
    installment_total_amount: Optional[Money] = None
    installment_paid_amount: Optional[Money] = None
    is_chain_complete: bool = False
    chain_sequence: Optional[int] = None

    @property
    def amount(self) -> Money:
        return self.payment.amount

    @property
    def status(self) -> PaymentStatus:
        return self.payment.status

    @property
    def installment_index(self) -> int:
        return self.payment.installment_index

    @property
    def partial_chain_id(self) -> Optional[str]:
        return self.payment.partial_chain_id

    def to_dict(self) -> Dict[str, Any]:
        result = self.payment.to_dict()
        result.update({
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'loan_number': self.loan_number,
            'customer_id': self.customer_id,
            'customer_name': self.customer_name,
            'installment_total_amount': (
                str(self.installment_total_amount.amount) if self.installment_total_amount else None
            ),
            'installment_paid_amount': (
                str(self.installment_paid_amount.amount) if self.installment_paid_amount else None
            ),
            'is_chain_complete': self.is_chain_complete,
            'chain_sequence': self.chain_sequence,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        currency = Currency[data['currency']]

        def get_money(key: str) -> Optional[Money]:
            if data.get(key):
                return Money(Decimal(data[key]), currency)
            return None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            loan_number=data['loan_number'],
            customer_id=data['customer_id'],
            payment=PaymentRecord.from_dict(data),
            customer_name=data.get('customer_name'),
            installment_total_amount=get_money('installment_total_amount'),
            installment_paid_amount=get_money('installment_paid_amount'),
            is_chain_complete=data.get('is_chain_complete', False),
            chain_sequence=data.get('chain_sequence'),
        )


@dataclass
class ChainSummary:
    """Totals of one partial-payment chain"""
    chain_id: str
    loan_id: Optional[str]
    installment_index: Optional[int]
    installment_total: Optional[Money]
    paid_total: Money
    is_complete: bool
    payment_ids: List[str] = field(default_factory=list)

    @property
    def remaining(self) -> Optional[Money]:
        if self.installment_total is None:
            return None
        remaining = self.installment_total - self.paid_total
        return remaining if remaining.is_positive() else Money.zero(remaining.currency)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'chain_id': self.chain_id,
            'loan_id': self.loan_id,
            'installment_index': self.installment_index,
            'installment_total': str(self.installment_total.amount) if self.installment_total else None,
            'paid_total': str(self.paid_total.amount),
            'remaining': str(self.remaining.amount) if self.remaining else None,
            'currency': self.paid_total.currency.code,
            'is_complete': self.is_complete,
            'payment_ids': list(self.payment_ids),
            'entry_count': len(self.payment_ids),
        }


@dataclass
class LedgerDrift:
    """Differences between a loan's embedded history and its ledger entries"""
    loan_id: str
    missing: List[str] = field(default_factory=list)      # embedded, no ledger entry
    mismatched: List[str] = field(default_factory=list)   # shared fields differ
    orphaned: List[str] = field(default_factory=list)     # ledger entry, no embedded record

    @property
    def in_sync(self) -> bool:
        return not (self.missing or self.mismatched or self.orphaned)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'in_sync': self.in_sync,
            'missing': self.missing,
            'mismatched': self.mismatched,
            'orphaned': self.orphaned,
        }


class PaymentLedger:
    """Standalone ledger store"""

    def __init__(self, storage: StorageInterface, table_name: str = "payment_ledger"):
        self.storage = storage
        self.table_name = table_name

    def get_entry(self, payment_id: str) -> Optional[LedgerEntry]:
        data = self.storage.load(self.table_name, payment_id)
        if data:
            return LedgerEntry.from_dict(data)
        return None

    def entries_for_loan(self, loan_id: str) -> List[LedgerEntry]:
        entries = [LedgerEntry.from_dict(data)
                   for data in self.storage.find(self.table_name, {'loan_id': loan_id})]
        entries.sort(key=lambda e: (e.payment.payment_date, e.created_at))
        return entries

    def entries_in_chain(self, chain_id: str) -> List[LedgerEntry]:
        entries = [LedgerEntry.from_dict(data)
                   for data in self.storage.find(self.table_name, {'partial_chain_id': chain_id})]
        entries.sort(key=lambda e: (e.chain_sequence or 0, e.payment.payment_date, e.created_at))
        return entries

    def upsert_from_record(self, loan: Loan, record: PaymentRecord) -> LedgerEntry:
        """
        Create or overwrite the ledger entry for ``record`` from the embedded copy.

        Creation time, chain position and chain totals of an existing entry are
        kept; everything shared with the embedded record is replaced.
        """
        now = datetime.now(timezone.utc)
        existing = self.get_entry(record.id)

        chain_sequence = None
        if record.partial_chain_id:
            if existing and existing.partial_chain_id == record.partial_chain_id:
                chain_sequence = existing.chain_sequence
            if chain_sequence is None:
                members = [e for e in self.entries_in_chain(record.partial_chain_id) if e.id != record.id]
                chain_sequence = max((e.chain_sequence or 0 for e in members), default=0) + 1

        keep_chain_totals = existing is not None and existing.partial_chain_id == record.partial_chain_id
        entry = LedgerEntry(
            id=record.id,
            created_at=existing.created_at if existing else now,
            updated_at=now,
            loan_id=loan.id,
            loan_number=loan.loan_number,
            customer_id=loan.customer_id,
            customer_name=loan.customer_name,
            payment=record,
            installment_total_amount=existing.installment_total_amount if keep_chain_totals else None,
            installment_paid_amount=existing.installment_paid_amount if keep_chain_totals else None,
            is_chain_complete=existing.is_chain_complete if keep_chain_totals else False,
            chain_sequence=chain_sequence,
        )
        self.storage.save(self.table_name, entry.id, entry.to_dict())
        return entry

    def delete_entry(self, payment_id: str) -> bool:
        return self.storage.delete(self.table_name, payment_id)

    def get_chain_summary(self, chain_id: str) -> Optional[ChainSummary]:
        """Summarize a chain from its stored entries, None for an unknown chain"""
        entries = self.entries_in_chain(chain_id)
        if not entries:
            return None
        return self._summarize(chain_id, entries, entries[0].installment_total_amount)

    def recompute_chain_totals(self, chain_id: str, installment_total: Optional[Money] = None) -> Optional[ChainSummary]:
        """
        Recompute chain-wide totals and write them onto every entry of the chain.

        Args:
            chain_id: Partial chain to recompute
            installment_total: Full due amount of the chain's installment; the
                value already stored on the entries is used when omitted

        Returns:
            ChainSummary, or None when no entry carries ``chain_id``
        """
        entries = self.entries_in_chain(chain_id)
        if not entries:
            return None
        if installment_total is None:
            installment_total = next(
                (e.installment_total_amount for e in entries if e.installment_total_amount), None
            )

        summary = self._summarize(chain_id, entries, installment_total)
        now = datetime.now(timezone.utc)
        for entry in entries:
            entry.installment_total_amount = installment_total
            entry.installment_paid_amount = summary.paid_total
            entry.is_chain_complete = summary.is_complete
            entry.updated_at = now
            self.storage.save(self.table_name, entry.id, entry.to_dict())
        return summary

    def _summarize(self, chain_id: str, entries: List[LedgerEntry],
                   installment_total: Optional[Money]) -> ChainSummary:
        paid_total = sum_money((e.amount for e in entries), entries[0].amount.currency)
        is_complete = (
            any(e.status.settles_installment for e in entries)
            or (installment_total is not None and paid_total >= installment_total)
        )
        return ChainSummary(
            chain_id=chain_id,
            loan_id=entries[0].loan_id,
            installment_index=entries[0].installment_index,
            installment_total=installment_total,
            paid_total=paid_total,
            is_complete=is_complete,
            payment_ids=[e.id for e in entries],
        )

    def find_drift(self, loan: Loan) -> LedgerDrift:
        """Compare the embedded history of ``loan`` with its ledger entries field by field"""
        drift = LedgerDrift(loan_id=loan.id)
        entries = {e.id: e for e in self.entries_for_loan(loan.id)}

        for record in loan.history:
            entry = entries.pop(record.id, None)
            if entry is None:
                drift.missing.append(record.id)
                continue
            embedded = record.to_dict()
            mirrored = entry.to_dict()
            if any(embedded.get(key) != mirrored.get(key) for key in SHARED_PAYMENT_FIELDS):
                drift.mismatched.append(record.id)

        drift.orphaned.extend(entries.keys())
        return drift
