"""
Payment edit endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_system, to_http_exception
from .schemas import EditPaymentRequest, loan_to_response
from ..exceptions import EmiLedgerError
from ..system import EmiLedgerSystem


router = APIRouter()


@router.post("/edit")
async def edit_payment(
    request: EditPaymentRequest,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Correct the amount and status of a recorded payment"""
    try:
        result = system.synchronizer.edit_payment(
            payment_id=request.payment_id,
            loan_number=request.loan_number,
            customer_id=request.customer_id,
            new_amount=request.new_amount,
            new_status=request.new_status,
            notes=request.notes,
            edited_by=request.edited_by
        )

        response = result.to_dict()
        response["loan"] = loan_to_response(result.loan)
        response["message"] = "Payment updated successfully"
        return response

    except EmiLedgerError as e:
        raise to_http_exception(e)
