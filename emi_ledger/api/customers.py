"""
Customer aggregate endpoints
"""

from fastapi import APIRouter, HTTPException, Depends

from .dependencies import get_system
from .schemas import customer_to_response, loan_to_response
from ..system import EmiLedgerSystem


router = APIRouter()


@router.get("/{customer_id}/aggregate")
async def get_customer_aggregate(
    customer_id: str,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Get the customer's totals across active loans"""
    aggregate = system.customer_store.get(customer_id)
    if not aggregate:
        raise HTTPException(status_code=404, detail="Customer not found")

    return customer_to_response(aggregate)


@router.get("/{customer_id}/loans")
async def get_customer_loans(
    customer_id: str,
    system: EmiLedgerSystem = Depends(get_system)
):
    """List every loan of the customer"""
    loans = system.loan_manager.get_customer_loans(customer_id)
    loans.sort(key=lambda loan: loan.created_at)
    return {
        "customer_id": customer_id,
        "loans": [loan_to_response(loan) for loan in loans]
    }
