"""
Loan and payment recording endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import get_system, to_http_exception
from .schemas import (
    AdvancePaymentRequest, CreateLoanRequest, LoanTermsModel, SinglePaymentRequest,
    loan_to_response, parse_date, parse_optional_date, payment_to_response, receipt_to_response
)
from ..exceptions import EmiLedgerError
from ..payments import AdvancePaymentIntent, SinglePaymentIntent
from ..schedule import compute_advance_span, compute_schedule, is_installment_settled, next_installment_index
from ..system import EmiLedgerSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Originate a new loan"""
    try:
        loan = system.loan_manager.originate_loan(
            customer_id=request.customer_id,
            loan_number=request.loan_number,
            terms=request.terms.to_loan_terms(),
            customer_name=request.customer_name,
            originated_by=request.originated_by
        )

        return {
            "loan_id": loan.id,
            "loan_number": loan.loan_number,
            "status": loan.status.value,
            "total_due": str(compute_schedule(loan.terms).total_due.amount),
            "message": "Loan originated successfully"
        }

    except EmiLedgerError as e:
        raise to_http_exception(e)


@router.post("/schedule/preview")
async def preview_schedule(request: LoanTermsModel):
    """Preview the repayment schedule for a set of loan parameters"""
    try:
        return compute_schedule(request.to_loan_terms()).to_dict()
    except EmiLedgerError as e:
        raise to_http_exception(e)


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    include_history: bool = False,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Get loan details"""
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")

    return loan_to_response(loan, include_history=include_history)


@router.get("/{loan_id}/schedule")
async def get_loan_schedule(
    loan_id: str,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Get the repayment schedule with each installment's settlement state"""
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")

    schedule = compute_schedule(loan.terms)
    result = schedule.to_dict()
    for entry in result["installments"]:
        entry["settled"] = is_installment_settled(loan, entry["index"])
    result["next_installment_index"] = next_installment_index(loan)
    return result


@router.get("/{loan_id}/advance-span")
async def get_advance_span(
    loan_id: str,
    from_date: str,
    to_date: str,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Preview which installments an advance payment over a date range would settle"""
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")

    try:
        span = compute_advance_span(
            loan, parse_date(from_date, "from_date"), parse_date(to_date, "to_date")
        )
        return span.to_dict()
    except EmiLedgerError as e:
        raise to_http_exception(e)


@router.get("/{loan_id}/payments")
async def get_loan_payments(
    loan_id: str,
    status_filter: Optional[str] = None,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Get the loan's embedded payment history"""
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")

    payments = [
        payment_to_response(record) for record in loan.history
        if status_filter is None or record.status.value == status_filter
    ]
    return {"loan_id": loan.id, "payments": payments}


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
async def record_payment(
    loan_id: str,
    request: SinglePaymentRequest,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Record a Paid or Partial payment against the next unsettled installment"""
    try:
        intent = SinglePaymentIntent(
            status=request.status,
            amount=request.amount,
            payment_date=parse_optional_date(request.payment_date, "payment_date"),
            collected_by=request.collected_by,
            notes=request.notes
        )
        receipt = system.payment_recorder.record_payment(loan_id, intent)
        return receipt_to_response(receipt)

    except EmiLedgerError as e:
        raise to_http_exception(e)


@router.post("/{loan_id}/advance-payments", status_code=status.HTTP_201_CREATED)
async def record_advance_payment(
    loan_id: str,
    request: AdvancePaymentRequest,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Settle every installment falling in a date range"""
    try:
        intent = AdvancePaymentIntent(
            from_date=parse_date(request.from_date, "from_date"),
            to_date=parse_date(request.to_date, "to_date"),
            payment_date=parse_optional_date(request.payment_date, "payment_date"),
            collected_by=request.collected_by,
            notes=request.notes
        )
        receipt = system.payment_recorder.record_payment(loan_id, intent)
        return receipt_to_response(receipt)

    except EmiLedgerError as e:
        raise to_http_exception(e)
