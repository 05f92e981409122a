"""
Test suite for the payment recorder

Tests single Paid/Partial payments, partial chains and advance payments
against a weekly custom-mode loan, including every rejection path.
"""

import pytest
from decimal import Decimal
from datetime import date

from emi_ledger.audit import AuditEventType
from emi_ledger.currency import Money, Currency
from emi_ledger.events import DomainEvent
from emi_ledger.exceptions import NotFoundError, ValidationError
from emi_ledger.models import Cadence, InstallmentMode, LoanStatus, LoanTerms, PaymentStatus, PaymentType
from emi_ledger.payments import AdvancePaymentIntent, SinglePaymentIntent, partial_chain_id_for
from emi_ledger.storage import InMemoryStorage
from emi_ledger.system import EmiLedgerSystem


def inr(value) -> Money:
    return Money(Decimal(str(value)), Currency.INR)


def weekly_custom_terms() -> LoanTerms:
    return LoanTerms(
        principal=inr('10500'),
        cadence=Cadence.WEEKLY,
        total_installments=10,
        installment_amount=inr('1000'),
        emi_start_date=date(2024, 1, 1),
        installment_mode=InstallmentMode.CUSTOM,
        final_installment_amount=inr('1500'),
    )


class TestSinglePayments:
    """Test Paid and Partial payments"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = EmiLedgerSystem(storage=InMemoryStorage())
        self.loan = self.system.loan_manager.originate_loan(
            customer_id="CUST001",
            loan_number="L1",
            terms=weekly_custom_terms(),
            customer_name="Asha Rao",
        )
        self.recorder = self.system.payment_recorder

    def pay(self, status=PaymentStatus.PAID, amount=None, **kwargs):
        return self.recorder.record_payment(
            self.loan.id, SinglePaymentIntent(status=status, amount=amount, **kwargs)
        )

    def test_paid_defaults_to_outstanding_amount(self):
        receipt = self.pay(payment_date=date(2024, 1, 1))
        record = receipt.records[0]

        assert record.amount == inr('1000')
        assert record.status == PaymentStatus.PAID
        assert record.installment_index == 1
        assert record.due_date == date(2024, 1, 1)
        assert record.collected_by == "data_entry_operator"
        assert record.payment_type == PaymentType.SINGLE
        assert receipt.loan.next_due_date == date(2024, 1, 8)
        assert receipt.loan.paid_count == Decimal('1')
        assert receipt.ledger_synced

    def test_paid_advances_next_due_date(self):
        self.pay()
        receipt = self.pay()
        assert receipt.records[0].installment_index == 2
        assert receipt.loan.next_due_date == date(2024, 1, 15)

    def test_partial_payment_scenario(self):
        """A 600 partial against a 1000 due installment"""
        self.pay()
        before = self.system.loan_store.get(self.loan.id)

        receipt = self.pay(PaymentStatus.PARTIAL, '600')
        after = receipt.loan

        assert receipt.records[0].amount == inr('600')
        assert before.remaining_balance - after.remaining_balance == inr('600')
        assert after.next_due_date == before.next_due_date
        assert after.paid_count - before.paid_count == Decimal('0.5')

    def test_partial_gets_chain_id(self):
        receipt = self.pay(PaymentStatus.PARTIAL, '600')
        assert receipt.records[0].partial_chain_id == partial_chain_id_for(self.loan, 1)

    def test_partial_at_or_above_due_rejected(self):
        for amount in ('1000', '1200'):
            with pytest.raises(ValidationError):
                self.pay(PaymentStatus.PARTIAL, amount)

        loan = self.system.loan_store.get(self.loan.id)
        assert loan.history == []
        assert loan.version == self.loan.version

    def test_partial_above_outstanding_rejected(self):
        self.pay(PaymentStatus.PARTIAL, '600')
        with pytest.raises(ValidationError):
            self.pay(PaymentStatus.PARTIAL, '500')

    def test_partial_requires_amount(self):
        with pytest.raises(ValidationError):
            self.pay(PaymentStatus.PARTIAL)

    def test_paid_below_outstanding_rejected(self):
        with pytest.raises(ValidationError):
            self.pay(PaymentStatus.PAID, '900')

    def test_non_positive_amount_rejected(self):
        for amount in ('0', '-100'):
            with pytest.raises(ValidationError):
                self.pay(PaymentStatus.PARTIAL, amount)

    def test_non_numeric_amount_rejected(self):
        with pytest.raises(ValidationError):
            self.pay(PaymentStatus.PARTIAL, 'abc')

    def test_single_payment_status_must_be_paid_or_partial(self):
        for status in (PaymentStatus.ADVANCE, PaymentStatus.DUE, "Bogus"):
            with pytest.raises(ValidationError):
                self.pay(status, '100')

    def test_unknown_loan(self):
        with pytest.raises(NotFoundError):
            self.recorder.record_payment("missing", SinglePaymentIntent(status=PaymentStatus.PAID))

    def test_partial_chain_closed_by_paid(self):
        """The closing payment is Paid on the same chain"""
        first = self.pay(PaymentStatus.PARTIAL, '600').records[0]
        closing = self.pay(PaymentStatus.PAID).records[0]

        assert closing.amount == inr('400')
        assert closing.installment_index == 1
        assert closing.partial_chain_id == first.partial_chain_id

        summary = self.system.ledger.get_chain_summary(first.partial_chain_id)
        assert summary.paid_total == inr('1000')
        assert summary.installment_total == inr('1000')
        assert summary.is_complete
        assert len(summary.payment_ids) == 2

        events = self.system.audit_trail.get_events_by_type(AuditEventType.PARTIAL_CHAIN_COMPLETED)
        assert len(events) == 1
        assert events[0].entity_id == closing.id

        loan = self.system.loan_store.get(self.loan.id)
        assert loan.next_due_date == date(2024, 1, 8)
        assert loan.paid_count == Decimal('1.5')

    def test_open_chain_totals_in_ledger(self):
        record = self.pay(PaymentStatus.PARTIAL, '600').records[0]
        entry = self.system.ledger.get_entry(record.id)

        assert entry.installment_total_amount == inr('1000')
        assert entry.installment_paid_amount == inr('600')
        assert not entry.is_chain_complete
        assert entry.chain_sequence == 1

    def test_ledger_mirrors_embedded_record(self):
        record = self.pay(notes="cash at branch").records[0]
        entry = self.system.ledger.get_entry(record.id)

        assert entry.amount == record.amount
        assert entry.status == record.status
        assert entry.installment_index == record.installment_index
        assert entry.payment.payment_date == record.payment_date
        assert entry.loan_number == "L1"
        assert self.system.ledger.find_drift(self.system.loan_store.get(self.loan.id)).in_sync
        assert self.system.outbox.pending() == []

    def test_customer_aggregate_refreshed(self):
        self.pay(payment_date=date(2024, 1, 2))
        aggregate = self.system.customer_store.get("CUST001")

        assert aggregate.total_paid == inr('1000')
        assert aggregate.remaining_balance == inr('9500')
        assert aggregate.last_payment_date == date(2024, 1, 2)

    def test_audit_entry_written(self):
        receipt = self.pay()
        events = self.system.audit_trail.get_events_for_entity("loan", self.loan.id)
        recorded = [e for e in events if e.event_type == AuditEventType.PAYMENT_RECORDED]

        assert len(recorded) == 1
        assert recorded[0].metadata["payment_ids"] == [receipt.records[0].id]
        assert recorded[0].metadata["total_amount"] == "1000.00"

    def test_event_published(self):
        received = []
        self.system.dispatcher.subscribe(DomainEvent.PAYMENT_RECORDED, received.append)

        receipt = self.pay()

        assert len(received) == 1
        assert received[0].entity_id == receipt.records[0].id
        assert received[0].data["amount"] == "1000.00"


class TestAdvancePayments:
    """Test advance payments over a date range"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = EmiLedgerSystem(storage=InMemoryStorage())
        self.loan = self.system.loan_manager.originate_loan(
            customer_id="CUST001",
            loan_number="L1",
            terms=weekly_custom_terms(),
        )
        self.recorder = self.system.payment_recorder

    def pay_installments(self, count: int) -> None:
        for _ in range(count):
            self.recorder.record_payment(self.loan.id, SinglePaymentIntent(status=PaymentStatus.PAID))

    def advance(self, from_date, to_date):
        return self.recorder.record_payment(
            self.loan.id, AdvancePaymentIntent(from_date=from_date, to_date=to_date)
        )

    def test_advance_completes_loan(self):
        """Advance over installments 9-10 after 8 paid"""
        completed = []
        self.system.dispatcher.subscribe(DomainEvent.LOAN_COMPLETED, completed.append)
        self.pay_installments(8)

        receipt = self.advance(date(2024, 2, 26), date(2024, 3, 4))

        breakdown = [(r.installment_index, r.amount.amount, r.installment_index == 10)
                     for r in receipt.records]
        assert breakdown == [(9, Decimal('1000'), False), (10, Decimal('1500'), True)]
        assert receipt.total_amount == inr('2500')
        assert receipt.loan.paid_count == Decimal('10')
        assert receipt.loan.status == LoanStatus.COMPLETED
        assert receipt.loan.next_due_date is None
        assert receipt.loan.remaining_balance == inr('0')
        assert len(completed) == 1

    def test_advance_records_share_batch_details(self):
        receipt = self.advance(date(2024, 1, 1), date(2024, 1, 15))
        records = receipt.records

        assert [r.installment_index for r in records] == [1, 2, 3]
        assert all(r.status == PaymentStatus.ADVANCE for r in records)
        assert all(r.payment_type == PaymentType.ADVANCE for r in records)
        assert len({r.advance_batch_id for r in records}) == 1
        assert all(r.advance_emi_count == 3 for r in records)
        assert all(r.advance_total_amount == inr('3000') for r in records)
        assert receipt.loan.next_due_date == date(2024, 1, 22)

    def test_advance_truncated_at_schedule_end(self):
        self.pay_installments(8)
        receipt = self.advance(date(2024, 2, 26), date(2024, 6, 30))

        assert len(receipt.records) == 2
        assert receipt.total_amount == inr('2500')

    def test_end_before_start_rejected(self):
        with pytest.raises(ValidationError):
            self.advance(date(2024, 1, 15), date(2024, 1, 1))

    def test_start_before_schedule_rejected(self):
        with pytest.raises(ValidationError):
            self.advance(date(2023, 12, 1), date(2024, 1, 15))

    def test_settled_loan_rejects_advance(self):
        self.pay_installments(8)
        self.advance(date(2024, 2, 26), date(2024, 3, 4))

        with pytest.raises(ValidationError):
            self.advance(date(2024, 3, 11), date(2024, 3, 18))

    def test_open_partial_blocks_advance(self):
        self.recorder.record_payment(
            self.loan.id, SinglePaymentIntent(status=PaymentStatus.PARTIAL, amount='300')
        )
        with pytest.raises(ValidationError):
            self.advance(date(2024, 1, 1), date(2024, 1, 15))

    def test_audit_records_advance_batch(self):
        receipt = self.advance(date(2024, 1, 1), date(2024, 1, 8))
        events = self.system.audit_trail.get_events_by_type(AuditEventType.ADVANCE_PAYMENT_RECORDED)

        assert len(events) == 1
        assert events[0].metadata["installment_indexes"] == [1, 2]
        assert events[0].metadata["payment_ids"] == [r.id for r in receipt.records]
