"""
Audit trail endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import get_system
from ..audit import AuditEventType
from ..system import EmiLedgerSystem


router = APIRouter()


@router.get("/verify")
async def verify_audit_integrity(system: EmiLedgerSystem = Depends(get_system)):
    """Verify the hash chain of the audit trail"""
    result = system.audit_trail.verify_integrity()
    system.audit_trail.log_event(
        event_type=AuditEventType.AUDIT_INTEGRITY_CHECK,
        entity_type="audit_trail",
        entity_id="audit_events",
        metadata={"valid": result["valid"], "total_events": result["total_events"]}
    )
    return result


@router.get("/{entity_type}/{entity_id}")
async def get_entity_audit_events(
    entity_type: str,
    entity_id: str,
    limit: Optional[int] = None,
    system: EmiLedgerSystem = Depends(get_system)
):
    """Get the audit events recorded for one entity"""
    events = system.audit_trail.get_events_for_entity(entity_type, entity_id, limit=limit)
    return {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "events": [event.to_dict() for event in events]
    }
