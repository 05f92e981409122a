"""
Loan addition and renewal request endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends, status

from .dependencies import get_system, to_http_exception
from .schemas import LoanAdditionRequest, LoanRenewalRequest, ResolveLoanRequest, loan_to_response
from ..exceptions import EmiLedgerError
from ..requests import RequestStatus
from ..system import EmiLedgerSystem


router = APIRouter()


@router.get("/available-loan-numbers/{customer_id}")
async def get_available_loan_numbers(
    customer_id: str,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Loan numbers the customer can request"""
    return {
        "customer_id": customer_id,
        "available": system.request_manager.available_loan_numbers(customer_id)
    }


@router.post("/loan-addition", status_code=status.HTTP_201_CREATED)
async def submit_loan_addition(
    request: LoanAdditionRequest,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Request a new loan for a customer"""
    try:
        loan_request = system.request_manager.submit_loan_addition(
            customer_id=request.customer_id,
            loan_number=request.loan_number,
            terms=request.terms.to_loan_terms(),
            customer_name=request.customer_name,
            requested_by=request.requested_by
        )
        return loan_request.to_dict()

    except EmiLedgerError as e:
        raise to_http_exception(e)


@router.post("/loan-renewal", status_code=status.HTTP_201_CREATED)
async def submit_loan_renewal(
    request: LoanRenewalRequest,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Request the renewal of an existing loan under a new loan number"""
    try:
        loan_request = system.request_manager.submit_loan_renewal(
            original_loan_id=request.original_loan_id,
            loan_number=request.loan_number,
            terms=request.terms.to_loan_terms(),
            requested_by=request.requested_by
        )
        return loan_request.to_dict()

    except EmiLedgerError as e:
        raise to_http_exception(e)


@router.get("")
async def list_loan_requests(
    customer_id: Optional[str] = None,
    request_status: Optional[str] = None,
    system: EmiLedgerSystem = Depends(get_system)
):
    """List loan requests"""
    try:
        status_filter = RequestStatus(request_status) if request_status else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid request status: {request_status}")

    requests = system.request_manager.list_requests(customer_id, status_filter)
    return {"requests": [r.to_dict() for r in requests]}


@router.get("/{request_id}")
async def get_loan_request(
    request_id: str,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Get a loan request"""
    loan_request = system.request_manager.get_request(request_id)
    if not loan_request:
        raise HTTPException(status_code=404, detail="Loan request not found")
    return loan_request.to_dict()


@router.post("/{request_id}/resolve")
async def resolve_loan_request(
    request_id: str,
    request: ResolveLoanRequest,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Approve or reject a pending loan request"""
    try:
        loan_request, loan = system.request_manager.resolve_request(
            request_id,
            approve=request.approve,
            resolved_by=request.resolved_by,
            note=request.note
        )
        return {
            "request": loan_request.to_dict(),
            "loan": loan_to_response(loan) if loan else None
        }

    except EmiLedgerError as e:
        raise to_http_exception(e)
