"""
Loan Data Model

Loan, its schedule parameters and the embedded payment history. The embedded
history is the authoritative record of every payment made against a loan;
rollup fields on the loan are always recomputed from it.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .currency import Money, Currency
from .exceptions import ValidationError
from .storage import StorageRecord


class Cadence(Enum):
    """Repayment frequency"""
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"


class InstallmentMode(Enum):
    """Whether every installment is equal or the last one is overridden"""
    FIXED = "fixed"
    CUSTOM = "custom"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"
    PENDING = "pending"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"
    RENEWED = "renewed"


class PaymentStatus(Enum):
    """Status of one payment record"""
    PAID = "Paid"
    PARTIAL = "Partial"
    ADVANCE = "Advance"
    DUE = "Due"
    OVERDUE = "Overdue"

    @property
    def settles_installment(self) -> bool:
        """Paid and Advance records settle their installment outright"""
        return self in (PaymentStatus.PAID, PaymentStatus.ADVANCE)


class PaymentType(Enum):
    SINGLE = "single"
    ADVANCE = "advance"


# Loan states that hold a loan number from the pool
NUMBER_HOLDING_STATUSES = (LoanStatus.ACTIVE, LoanStatus.PENDING)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _to_date(value) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def _to_datetime(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class LoanTerms:
    """Schedule parameters of a loan"""
    principal: Money
    cadence: Cadence
    total_installments: int
    installment_amount: Money
    emi_start_date: date                  # due date of installment 1
    installment_mode: InstallmentMode = InstallmentMode.FIXED
    final_installment_amount: Optional[Money] = None  # custom mode, Weekly/Monthly only

    def __post_init__(self):
        if self.installment_amount.currency != self.principal.currency:
            raise ValidationError("Installment amount currency must match principal currency")
        if (self.final_installment_amount is not None
                and self.final_installment_amount.currency != self.principal.currency):
            raise ValidationError("Final installment currency must match principal currency")

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def has_final_override(self) -> bool:
        """True when the last installment uses the override amount"""
        return self.installment_mode == InstallmentMode.CUSTOM and self.cadence != Cadence.DAILY

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal_amount': str(self.principal.amount),
            'currency': self.currency.code,
            'cadence': self.cadence.value,
            'total_installments': self.total_installments,
            'installment_amount': str(self.installment_amount.amount),
            'installment_mode': self.installment_mode.value,
            'final_installment_amount': (
                str(self.final_installment_amount.amount) if self.final_installment_amount else None
            ),
            'emi_start_date': self.emi_start_date.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        currency = Currency[data['currency']]
        final_amount = data.get('final_installment_amount')
        return cls(
            principal=Money(Decimal(data['principal_amount']), currency),
            cadence=Cadence(data['cadence']),
            total_installments=int(data['total_installments']),
            installment_amount=Money(Decimal(data['installment_amount']), currency),
            emi_start_date=_to_date(data['emi_start_date']),
            installment_mode=InstallmentMode(data.get('installment_mode', 'fixed')),
            final_installment_amount=Money(Decimal(final_amount), currency) if final_amount else None,
        )


# Fields carried identically by the embedded record and the ledger entry
SHARED_PAYMENT_FIELDS = (
    'id', 'amount', 'currency', 'status', 'payment_date', 'installment_index',
    'due_date', 'collected_by', 'notes', 'payment_type',
    'advance_from_date', 'advance_to_date', 'advance_emi_count',
    'advance_total_amount', 'advance_batch_id', 'partial_chain_id',
    'edited_at', 'edited_by',
)


@dataclass
class PaymentRecord:
    """One payment embedded in a loan's history"""
    id: str
    amount: Money
    status: PaymentStatus
    payment_date: date
    installment_index: int
    due_date: Optional[date] = None
    collected_by: Optional[str] = None
    notes: Optional[str] = None
    payment_type: PaymentType = PaymentType.SINGLE

    # Advance batch details, repeated on every record of the batch
    advance_from_date: Optional[date] = None
    advance_to_date: Optional[date] = None
    advance_emi_count: Optional[int] = None
    advance_total_amount: Optional[Money] = None
    advance_batch_id: Optional[str] = None

    # Correlates partial payments settling the same installment
    partial_chain_id: Optional[str] = None

    recorded_at: Optional[datetime] = None
    edited_at: Optional[datetime] = None
    edited_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'status': self.status.value,
            'payment_date': self.payment_date.isoformat(),
            'installment_index': self.installment_index,
            'due_date': _iso(self.due_date),
            'collected_by': self.collected_by,
            'notes': self.notes,
            'payment_type': self.payment_type.value,
            'advance_from_date': _iso(self.advance_from_date),
            'advance_to_date': _iso(self.advance_to_date),
            'advance_emi_count': self.advance_emi_count,
            'advance_total_amount': (
                str(self.advance_total_amount.amount) if self.advance_total_amount else None
            ),
            'advance_batch_id': self.advance_batch_id,
            'partial_chain_id': self.partial_chain_id,
            'recorded_at': _iso(self.recorded_at),
            'edited_at': _iso(self.edited_at),
            'edited_by': self.edited_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentRecord':
        currency = Currency[data['currency']]
        advance_total = data.get('advance_total_amount')
        return cls(
            id=data['id'],
            amount=Money(Decimal(data['amount']), currency),
            status=PaymentStatus(data['status']),
            payment_date=_to_date(data['payment_date']),
            installment_index=int(data['installment_index']),
            due_date=_to_date(data.get('due_date')),
            collected_by=data.get('collected_by'),
            notes=data.get('notes'),
            payment_type=PaymentType(data.get('payment_type', 'single')),
            advance_from_date=_to_date(data.get('advance_from_date')),
            advance_to_date=_to_date(data.get('advance_to_date')),
            advance_emi_count=data.get('advance_emi_count'),
            advance_total_amount=Money(Decimal(advance_total), currency) if advance_total else None,
            advance_batch_id=data.get('advance_batch_id'),
            partial_chain_id=data.get('partial_chain_id'),
            recorded_at=_to_datetime(data.get('recorded_at')),
            edited_at=_to_datetime(data.get('edited_at')),
            edited_by=data.get('edited_by'),
        )


@dataclass
class Loan(StorageRecord):
    """Installment loan with its embedded payment history and rollups"""
    customer_id: str
    loan_number: str                    # drawn from the per-customer pool, e.g. "L3"
    terms: LoanTerms
    customer_name: Optional[str] = None
    status: LoanStatus = LoanStatus.ACTIVE
    history: List[PaymentRecord] = field(default_factory=list)

    # Rollups, recomputed from history after every mutation
    paid_count: Decimal = Decimal('0')
    cumulative_paid: Optional[Money] = None
    remaining_balance: Optional[Money] = None
    next_due_date: Optional[date] = None
    last_payment_date: Optional[date] = None

    # Optimistic concurrency token, bumped on every save
    version: int = 0

    # Renewal lineage
    original_loan_number: Optional[str] = None
    renewed_loan_number: Optional[str] = None
    renewed_date: Optional[date] = None

    def __post_init__(self):
        if self.cumulative_paid is None:
            self.cumulative_paid = Money.zero(self.currency)
        if self.remaining_balance is None:
            self.remaining_balance = self.terms.principal
        if self.next_due_date is None and not self.history:
            self.next_due_date = self.terms.emi_start_date

    @property
    def currency(self) -> Currency:
        return self.terms.currency

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    def find_payment(self, payment_id: str) -> Optional[PaymentRecord]:
        """Return the embedded record with ``payment_id``, if any"""
        for record in self.history:
            if record.id == payment_id:
                return record
        return None

    def records_for_installment(self, index: int) -> List[PaymentRecord]:
        return [r for r in self.history if r.installment_index == index]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'customer_id': self.customer_id,
            'customer_name': self.customer_name,
            'loan_number': self.loan_number,
            'terms': self.terms.to_dict(),
            'status': self.status.value,
            'history': [record.to_dict() for record in self.history],
            'paid_count': str(self.paid_count),
            'cumulative_paid_amount': str(self.cumulative_paid.amount),
            'remaining_balance_amount': str(self.remaining_balance.amount),
            'currency': self.currency.code,
            'next_due_date': _iso(self.next_due_date),
            'last_payment_date': _iso(self.last_payment_date),
            'version': self.version,
            'original_loan_number': self.original_loan_number,
            'renewed_loan_number': self.renewed_loan_number,
            'renewed_date': _iso(self.renewed_date),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        """Create a Loan from its stored dictionary"""
        terms = LoanTerms.from_dict(data['terms'])
        currency = terms.currency
        return cls(
            id=data['id'],
            created_at=_to_datetime(data['created_at']),
            updated_at=_to_datetime(data['updated_at']),
            customer_id=data['customer_id'],
            customer_name=data.get('customer_name'),
            loan_number=data['loan_number'],
            terms=terms,
            status=LoanStatus(data['status']),
            history=[PaymentRecord.from_dict(item) for item in data.get('history', [])],
            paid_count=Decimal(data.get('paid_count', '0')),
            cumulative_paid=Money(Decimal(data.get('cumulative_paid_amount', '0')), currency),
            remaining_balance=Money(
                Decimal(data.get('remaining_balance_amount', data['terms']['principal_amount'])), currency
            ),
            next_due_date=_to_date(data.get('next_due_date')),
            last_payment_date=_to_date(data.get('last_payment_date')),
            version=int(data.get('version', 0)),
            original_loan_number=data.get('original_loan_number'),
            renewed_loan_number=data.get('renewed_loan_number'),
            renewed_date=_to_date(data.get('renewed_date')),
        )
