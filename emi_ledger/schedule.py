"""
Schedule Calculator Module

Pure functions deriving installment amounts, due dates and the next unsettled
installment of a loan, plus the advance-span calculation used to settle
several future installments with one payment. Nothing here touches storage.
"""

from datetime import date, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Iterable
import calendar

from .currency import Money, sum_money
from .exceptions import ValidationError
from .models import Cadence, InstallmentMode, LoanTerms, Loan, PaymentRecord, PaymentStatus


def validate_terms(terms: LoanTerms) -> None:
    """
    Reject schedule parameters that cannot produce a schedule.

    Raises:
        ValidationError: non-positive count or amounts, missing final override
            in custom Weekly/Monthly mode, or custom mode on a Daily loan
    """
    if terms.total_installments <= 0:
        raise ValidationError("Total installments must be positive")
    if not terms.installment_amount.is_positive():
        raise ValidationError("Installment amount must be positive")
    if not terms.principal.is_positive():
        raise ValidationError("Principal amount must be positive")
    if terms.installment_mode == InstallmentMode.CUSTOM:
        if terms.cadence == Cadence.DAILY:
            raise ValidationError("Custom installment mode is not available for Daily loans")
        if terms.final_installment_amount is None or not terms.final_installment_amount.is_positive():
            raise ValidationError("Custom installment mode requires a positive final installment amount")


def total_due(terms: LoanTerms) -> Money:
    """Total amount collected over the full schedule"""
    validate_terms(terms)
    if terms.has_final_override:
        return (terms.installment_amount * (terms.total_installments - 1)
                + terms.final_installment_amount)
    return terms.installment_amount * terms.total_installments


def is_final_override(terms: LoanTerms, index: int) -> bool:
    return terms.has_final_override and index == terms.total_installments


def due_amount_for_installment(terms: LoanTerms, index: int) -> Money:
    """Amount due for installment ``index`` (1-based)"""
    validate_terms(terms)
    if index < 1 or index > terms.total_installments:
        raise ValidationError(
            f"Installment index {index} outside schedule of {terms.total_installments}"
        )
    if is_final_override(terms, index):
        return terms.final_installment_amount
    return terms.installment_amount


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def add_periods(start_date: date, cadence: Cadence, periods: int = 1) -> date:
    """Step ``periods`` repayment periods forward from ``start_date``"""
    if cadence == Cadence.DAILY:
        return start_date + timedelta(days=periods)
    elif cadence == Cadence.WEEKLY:
        return start_date + timedelta(days=7 * periods)
    elif cadence == Cadence.MONTHLY:
        return add_months(start_date, periods)
    else:
        raise ValidationError(f"Unsupported cadence: {cadence}")


def due_date_for_installment(terms: LoanTerms, index: int) -> date:
    """Scheduled due date of installment ``index``"""
    # Monthly steps are taken from the start date so day-of-month clamping never accumulates
    return add_periods(terms.emi_start_date, terms.cadence, index - 1)


def amount_recorded_for_installment(history: Iterable[PaymentRecord], index: int, currency) -> Money:
    """Sum of Paid, Partial and Advance amounts recorded against ``index``"""
    return sum_money(
        (r.amount for r in history
         if r.installment_index == index
         and r.status in (PaymentStatus.PAID, PaymentStatus.PARTIAL, PaymentStatus.ADVANCE)),
        currency
    )


def is_installment_settled(loan: Loan, index: int) -> bool:
    """
    An installment is settled once it carries a Paid or Advance record, or once
    the partial amounts recorded against it reach its due amount.
    """
    records = loan.records_for_installment(index)
    if any(r.status.settles_installment for r in records):
        return True
    recorded = amount_recorded_for_installment(records, index, loan.currency)
    return recorded.is_positive() and recorded >= due_amount_for_installment(loan.terms, index)


def next_installment_index(loan: Loan) -> int:
    """
    Smallest unsettled installment index, computed from the ordered history.

    Returns ``total_installments + 1`` once every installment is settled.
    """
    for index in range(1, loan.terms.total_installments + 1):
        if not is_installment_settled(loan, index):
            return index
    return loan.terms.total_installments + 1


def next_due_date(loan: Loan) -> Optional[date]:
    """Due date of the next unsettled installment, None when fully settled"""
    index = next_installment_index(loan)
    if index > loan.terms.total_installments:
        return None
    return due_date_for_installment(loan.terms, index)


def outstanding_for_installment(loan: Loan, index: int) -> Money:
    """Due amount of ``index`` less whatever has already been recorded against it"""
    due = due_amount_for_installment(loan.terms, index)
    if any(r.status.settles_installment for r in loan.records_for_installment(index)):
        return Money.zero(loan.currency)
    remaining = due - amount_recorded_for_installment(loan.history, index, loan.currency)
    return remaining if remaining.is_positive() else Money.zero(loan.currency)


@dataclass
class ScheduleEntry:
    """One row of a repayment schedule"""
    index: int
    due_date: date
    amount: Money
    is_final_override: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'due_date': self.due_date.isoformat(),
            'amount': str(self.amount.amount),
            'is_final_override': self.is_final_override,
        }


@dataclass
class Schedule:
    total_due: Money
    installments: List[ScheduleEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_due': str(self.total_due.amount),
            'currency': self.total_due.currency.code,
            'installments': [entry.to_dict() for entry in self.installments],
        }


def compute_schedule(terms: LoanTerms) -> Schedule:
    """Full per-installment table for a set of loan parameters"""
    validate_terms(terms)
    installments = [
        ScheduleEntry(
            index=index,
            due_date=due_date_for_installment(terms, index),
            amount=due_amount_for_installment(terms, index),
            is_final_override=is_final_override(terms, index),
        )
        for index in range(1, terms.total_installments + 1)
    ]
    return Schedule(total_due=total_due(terms), installments=installments)


@dataclass
class AdvanceSpan:
    """Installments covered by an advance payment over a date range"""
    installments: List[ScheduleEntry]
    total_amount: Money
    requested_span: int
    truncated: bool = False

    @property
    def count(self) -> int:
        return len(self.installments)

    @property
    def breakdown(self) -> List[tuple]:
        """(index, amount, is_final_override) triples"""
        return [(e.index, e.amount.amount, e.is_final_override) for e in self.installments]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installments': [entry.to_dict() for entry in self.installments],
            'total_amount': str(self.total_amount.amount),
            'currency': self.total_amount.currency.code,
            'count': self.count,
            'requested_span': self.requested_span,
            'truncated': self.truncated,
        }


def advance_span_length(cadence: Cadence, from_date: date, to_date: date) -> int:
    """
    Number of cadence periods in the inclusive range ``from_date``..``to_date``.

    Zero when the range is reversed.
    """
    if to_date < from_date:
        return 0
    if cadence == Cadence.DAILY:
        return (to_date - from_date).days + 1
    elif cadence == Cadence.WEEKLY:
        return (to_date - from_date).days // 7 + 1
    elif cadence == Cadence.MONTHLY:
        months = (to_date.year - from_date.year) * 12 + (to_date.month - from_date.month)
        return max(1, months + 1)
    else:
        raise ValidationError(f"Unsupported cadence: {cadence}")


def compute_advance_span(loan: Loan, from_date: date, to_date: date) -> AdvanceSpan:
    """
    Installments an advance over ``from_date``..``to_date`` would settle.

    Starts at the next unsettled installment and stops at the end of the
    schedule, so a span longer than what is left comes back truncated.
    """
    requested = advance_span_length(loan.terms.cadence, from_date, to_date)
    start = next_installment_index(loan)
    last = min(start + requested - 1, loan.terms.total_installments)

    installments = [
        ScheduleEntry(
            index=index,
            due_date=due_date_for_installment(loan.terms, index),
            amount=due_amount_for_installment(loan.terms, index),
            is_final_override=is_final_override(loan.terms, index),
        )
        for index in range(start, last + 1)
    ]
    return AdvanceSpan(
        installments=installments,
        total_amount=sum_money((e.amount for e in installments), loan.currency),
        requested_span=requested,
        truncated=len(installments) < requested,
    )
