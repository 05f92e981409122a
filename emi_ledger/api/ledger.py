"""
Payment ledger, outbox and reconciliation endpoints
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, Depends

from .dependencies import get_system, to_http_exception
from ..exceptions import EmiLedgerError
from ..reconciliation import OutboxStatus
from ..system import EmiLedgerSystem


router = APIRouter()


@router.get("/entries/{payment_id}")
async def get_ledger_entry(
    payment_id: str,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Get the standalone ledger entry mirroring one payment"""
    entry = system.ledger.get_entry(payment_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Ledger entry not found")
    return entry.to_dict()


@router.get("/loans/{loan_id}")
async def get_loan_ledger(
    loan_id: str,
    system: EmiLedgerSystem = Depends(get_system)
):
    """List the ledger entries of one loan"""
    entries = system.ledger.entries_for_loan(loan_id)
    return {"loan_id": loan_id, "entries": [entry.to_dict() for entry in entries]}


@router.get("/chains/{chain_id}")
async def get_partial_chain(
    chain_id: str,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Get the running totals of a partial payment chain"""
    summary = system.ledger.get_chain_summary(chain_id)
    if not summary:
        raise HTTPException(status_code=404, detail="Partial chain not found")

    result = summary.to_dict()
    result["entries"] = [entry.to_dict() for entry in system.ledger.entries_in_chain(chain_id)]
    return result


@router.get("/drift/{loan_id}")
async def get_ledger_drift(
    loan_id: str,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Compare a loan's embedded history with its ledger entries"""
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise HTTPException(status_code=404, detail="Loan not found")
    return system.ledger.find_drift(loan).to_dict()


@router.post("/reconcile/{loan_id}")
async def reconcile_loan(
    loan_id: str,
    reconciled_by: Optional[str] = None,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Rebuild a loan's ledger entries from its embedded history"""
    try:
        drift = system.reconciler.reconcile_loan(loan_id, reconciled_by=reconciled_by)
        return {
            "loan_id": loan_id,
            "drift_repaired": drift.to_dict(),
            "message": "Ledger reconciled successfully"
        }
    except EmiLedgerError as e:
        raise to_http_exception(e)


@router.get("/outbox")
async def list_outbox(
    pending_only: bool = True,
    loan_id: Optional[str] = None,
    system: EmiLedgerSystem = Depends(get_system)
):
    """List ledger outbox items"""
    if pending_only:
        items = system.outbox.pending(loan_id)
    else:
        items = [item for item in system.outbox.all_items()
                 if loan_id is None or item.loan_id == loan_id]
    return {
        "items": [item.to_dict() for item in items],
        "pending": sum(1 for item in items if item.status == OutboxStatus.PENDING)
    }


@router.post("/outbox/retry")
async def retry_outbox(
    loan_id: Optional[str] = None,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Retry pending ledger mirror work"""
    return system.reconciler.retry_pending(loan_id)
