"""
Aggregation Engine Module

Recomputes loan- and customer-level rollups from the authoritative history.
Rollups are always derived fresh from source records, never patched
incrementally, so repeated edits cannot drift.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .currency import Money, Currency, sum_money
from .models import Loan, LoanStatus, PaymentStatus
from .schedule import next_installment_index, due_date_for_installment


DEFAULT_PARTIAL_WEIGHT = Decimal('0.5')


@dataclass
class LoanRollup:
    """Derived progress figures of one loan"""
    cumulative_paid: Money
    remaining_balance: Money
    paid_count: Decimal
    last_payment_date: Optional[date]
    next_installment_index: int
    next_due_date: Optional[date]

    @property
    def fully_settled(self) -> bool:
        return self.next_due_date is None


def compute_loan_rollup(loan: Loan, partial_weight: Decimal = DEFAULT_PARTIAL_WEIGHT) -> LoanRollup:
    """Derive every rollup field of ``loan`` from its history without mutating it"""
    cumulative = sum_money((r.amount for r in loan.history), loan.currency)
    remaining = loan.terms.principal - cumulative
    if remaining.amount < 0:
        remaining = Money.zero(loan.currency)

    full_count = sum(1 for r in loan.history if r.status.settles_installment)
    partial_count = sum(1 for r in loan.history if r.status == PaymentStatus.PARTIAL)
    paid_count = Decimal(full_count) + partial_weight * partial_count

    last_payment_date = max((r.payment_date for r in loan.history), default=None)

    index = next_installment_index(loan)
    next_due = None
    if index <= loan.terms.total_installments:
        next_due = due_date_for_installment(loan.terms, index)

    return LoanRollup(
        cumulative_paid=cumulative,
        remaining_balance=remaining,
        paid_count=paid_count,
        last_payment_date=last_payment_date,
        next_installment_index=index,
        next_due_date=next_due,
    )


def recompute_loan(loan: Loan, partial_weight: Decimal = DEFAULT_PARTIAL_WEIGHT) -> LoanRollup:
    """
    Apply a fresh rollup to ``loan`` in place.

    An active loan whose every installment is settled becomes completed; a
    completed loan that an edit unsettles goes back to active. Other
    statuses are left alone.
    """
    rollup = compute_loan_rollup(loan, partial_weight)

    loan.cumulative_paid = rollup.cumulative_paid
    loan.remaining_balance = rollup.remaining_balance
    loan.paid_count = rollup.paid_count
    loan.last_payment_date = rollup.last_payment_date
    loan.next_due_date = rollup.next_due_date

    if loan.status == LoanStatus.ACTIVE and rollup.fully_settled:
        loan.status = LoanStatus.COMPLETED
    elif loan.status == LoanStatus.COMPLETED and not rollup.fully_settled:
        loan.status = LoanStatus.ACTIVE

    return rollup


@dataclass
class CustomerTotals:
    total_paid: Money
    remaining_balance: Money
    last_payment_date: Optional[date]
    active_loan_count: int
    loan_ids: List[str]


def compute_customer_totals(loans: Iterable[Loan], currency: Currency) -> CustomerTotals:
    """
    Sum paid and remaining amounts across the customer's active loans.

    Loans in any other status do not contribute.
    """
    active = [loan for loan in loans if loan.status == LoanStatus.ACTIVE]
    return CustomerTotals(
        total_paid=sum_money((loan.cumulative_paid for loan in active), currency),
        remaining_balance=sum_money((loan.remaining_balance for loan in active), currency),
        last_payment_date=max(
            (loan.last_payment_date for loan in active if loan.last_payment_date), default=None
        ),
        active_loan_count=len(active),
        loan_ids=[loan.id for loan in active],
    )
