"""
Test suite for the aggregation engine

Loan rollups and customer totals must always equal a fresh computation over
the embedded history, with no rounding drift across repeated recomputation.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from emi_ledger.aggregation import compute_loan_rollup, recompute_loan, compute_customer_totals
from emi_ledger.currency import Money, Currency
from emi_ledger.models import (
    Cadence, InstallmentMode, Loan, LoanStatus, LoanTerms, PaymentRecord, PaymentStatus
)


def inr(value) -> Money:
    return Money(Decimal(str(value)), Currency.INR)


def make_loan(loan_id="loan-1", total_installments=4, records=None, status=LoanStatus.ACTIVE) -> Loan:
    now = datetime.now(timezone.utc)
    terms = LoanTerms(
        principal=inr(1000 * total_installments),
        cadence=Cadence.MONTHLY,
        total_installments=total_installments,
        installment_amount=inr('1000'),
        emi_start_date=date(2024, 1, 10),
        installment_mode=InstallmentMode.FIXED,
    )
    return Loan(
        id=loan_id,
        created_at=now,
        updated_at=now,
        customer_id="CUST001",
        loan_number="L1",
        terms=terms,
        status=status,
        history=list(records or []),
    )


def record(index, status=PaymentStatus.PAID, amount='1000', paid_on=date(2024, 1, 10), record_id=None):
    return PaymentRecord(
        id=record_id or f"pay-{index}-{amount}",
        amount=inr(amount),
        status=status,
        payment_date=paid_on,
        installment_index=index,
    )


class TestLoanRollup:
    """Test loan-level rollups"""

    def test_rollup_from_mixed_history(self):
        loan = make_loan(records=[
            record(1, paid_on=date(2024, 1, 10)),
            record(2, paid_on=date(2024, 2, 10)),
            record(3, PaymentStatus.PARTIAL, '600', paid_on=date(2024, 3, 5)),
        ])
        rollup = compute_loan_rollup(loan)

        assert rollup.cumulative_paid == inr('2600')
        assert rollup.remaining_balance == inr('1400')
        assert rollup.paid_count == Decimal('2.5')
        assert rollup.last_payment_date == date(2024, 3, 5)
        assert rollup.next_installment_index == 3
        assert rollup.next_due_date == date(2024, 3, 10)
        assert not rollup.fully_settled

    def test_partial_weight_is_configurable(self):
        loan = make_loan(records=[record(1, PaymentStatus.PARTIAL, '250')])
        rollup = compute_loan_rollup(loan, partial_weight=Decimal('0.25'))
        assert rollup.paid_count == Decimal('0.25')

    def test_remaining_balance_never_negative(self):
        loan = make_loan(total_installments=1, records=[record(1, amount='1500')])
        assert compute_loan_rollup(loan).remaining_balance == inr('0')

    def test_rollup_does_not_mutate(self):
        loan = make_loan(records=[record(1)])
        compute_loan_rollup(loan)
        assert loan.cumulative_paid == inr('0')


class TestRecomputeLoan:
    """Test in-place recomputation and status transitions"""

    def test_completes_when_all_settled(self):
        loan = make_loan(total_installments=2, records=[record(1), record(2)])
        recompute_loan(loan)

        assert loan.status == LoanStatus.COMPLETED
        assert loan.next_due_date is None
        assert loan.paid_count == Decimal('2')

    def test_completed_loan_reopens_when_unsettled(self):
        loan = make_loan(total_installments=2, records=[record(1), record(2)])
        recompute_loan(loan)

        loan.history[1].status = PaymentStatus.PARTIAL
        loan.history[1].amount = inr('500')
        recompute_loan(loan)

        assert loan.status == LoanStatus.ACTIVE
        assert loan.next_due_date == date(2024, 2, 10)

    def test_other_statuses_left_alone(self):
        loan = make_loan(total_installments=1, records=[record(1)], status=LoanStatus.RENEWED)
        recompute_loan(loan)
        assert loan.status == LoanStatus.RENEWED

    def test_repeated_recompute_has_no_drift(self):
        """Cumulative paid always equals the exact history sum"""
        loan = make_loan(records=[record(1, record_id="a"), record(2, record_id="b")])
        for amount in ('333.33', '1000.01', '999.99', '1234.56'):
            loan.history[0].amount = inr(amount)
            recompute_loan(loan)
            expected = sum((r.amount.amount for r in loan.history), Decimal('0'))
            assert loan.cumulative_paid.amount == expected


class TestCustomerTotals:
    """Test customer-level totals across loans"""

    def test_only_active_loans_count(self):
        active = make_loan("loan-a", records=[record(1, paid_on=date(2024, 1, 10))])
        recompute_loan(active)
        completed = make_loan("loan-b", total_installments=1, records=[record(1, paid_on=date(2024, 5, 1))])
        recompute_loan(completed)
        assert completed.status == LoanStatus.COMPLETED

        totals = compute_customer_totals([active, completed], Currency.INR)

        assert totals.total_paid == inr('1000')
        assert totals.remaining_balance == inr('3000')
        assert totals.active_loan_count == 1
        assert totals.loan_ids == ["loan-a"]
        assert totals.last_payment_date == date(2024, 1, 10)

    def test_sums_across_active_loans(self):
        first = make_loan("loan-a", records=[record(1)])
        second = make_loan("loan-b", records=[record(1, PaymentStatus.PARTIAL, '400')])
        recompute_loan(first)
        recompute_loan(second)

        totals = compute_customer_totals([first, second], Currency.INR)

        assert totals.total_paid == inr('1400')
        assert totals.remaining_balance == inr('6600')

    def test_no_loans(self):
        totals = compute_customer_totals([], Currency.INR)
        assert totals.total_paid == inr('0')
        assert totals.last_payment_date is None
