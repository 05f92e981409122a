"""
Customer Aggregate Module

Per-customer rollup of paid and remaining amounts. The aggregate is owned by
no single loan; it is recomputed from the customer's loans after every
payment mutation and never edited directly.
"""

from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Any

from .aggregation import compute_customer_totals
from .currency import Money, Currency
from .models import Loan
from .storage import StorageInterface, StorageRecord


@dataclass
class CustomerAggregate(StorageRecord):
    """Paid total, remaining balance and last payment date across active loans"""
    customer_id: str
    total_paid: Money
    remaining_balance: Money
    last_payment_date: Optional[date] = None
    active_loan_count: int = 0
    loan_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'customer_id': self.customer_id,
            'total_paid_amount': str(self.total_paid.amount),
            'remaining_balance_amount': str(self.remaining_balance.amount),
            'currency': self.total_paid.currency.code,
            'last_payment_date': self.last_payment_date.isoformat() if self.last_payment_date else None,
            'active_loan_count': self.active_loan_count,
            'loan_ids': list(self.loan_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CustomerAggregate':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            customer_id=data['customer_id'],
            total_paid=Money(Decimal(data['total_paid_amount']), currency),
            remaining_balance=Money(Decimal(data['remaining_balance_amount']), currency),
            last_payment_date=date.fromisoformat(data['last_payment_date']) if data.get('last_payment_date') else None,
            active_loan_count=data.get('active_loan_count', 0),
            loan_ids=data.get('loan_ids', []),
        )


class CustomerAggregateStore:
    """Load/save of customer aggregates, keyed by customer id"""

    def __init__(self, storage: StorageInterface, currency: Currency = Currency.INR):
        self.storage = storage
        self.currency = currency
        self.table_name = "customer_aggregates"

    def get(self, customer_id: str) -> Optional[CustomerAggregate]:
        data = self.storage.load(self.table_name, customer_id)
        if data:
            return CustomerAggregate.from_dict(data)
        return None

    def save(self, aggregate: CustomerAggregate) -> None:
        self.storage.save(self.table_name, aggregate.customer_id, aggregate.to_dict())

    def refresh(self, customer_id: str, loans: Iterable[Loan]) -> CustomerAggregate:
        """
        Recompute the aggregate from ``loans`` and persist it.

        Args:
            customer_id: Customer whose aggregate is rebuilt
            loans: All of the customer's loans (non-active ones are skipped)

        Returns:
            The saved CustomerAggregate
        """
        loans = list(loans)
        currency = loans[0].currency if loans else self.currency
        totals = compute_customer_totals(loans, currency)

        now = datetime.now(timezone.utc)
        existing = self.get(customer_id)
        aggregate = CustomerAggregate(
            id=customer_id,
            created_at=existing.created_at if existing else now,
            updated_at=now,
            customer_id=customer_id,
            total_paid=totals.total_paid,
            remaining_balance=totals.remaining_balance,
            last_payment_date=totals.last_payment_date,
            active_loan_count=totals.active_loan_count,
            loan_ids=totals.loan_ids,
        )
        self.save(aggregate)
        return aggregate
