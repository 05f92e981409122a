"""
Shared system instance and error mapping for the API routers
"""

from typing import Optional
from fastapi import HTTPException

from ..exceptions import ConflictError, EmiLedgerError, NotFoundError, ValidationError
from ..system import EmiLedgerSystem


# Global system instance, created on first use
_system: Optional[EmiLedgerSystem] = None


# Dependency to get the ledger system
def get_system() -> EmiLedgerSystem:
    global _system
    if _system is None:
        _system = EmiLedgerSystem()
    return _system


def set_system(system: Optional[EmiLedgerSystem]) -> None:
    global _system
    _system = system


def to_http_exception(error: Exception) -> HTTPException:
    """Map a domain error to the matching HTTP status"""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ConflictError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, (ValidationError, EmiLedgerError)):
        return HTTPException(status_code=400, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
