"""
Audit Ledger Endpoints

Read access to the ledger. Patients may read the trail of their own
record; the global views and chain verification are for administrators.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.access.audit_ledger import AuditLedger
from app.access.audit_repository import AuditQuery
from app.access.capabilities import Capability, has_capability, require_capability
from app.access.exceptions import Forbidden, ValidationFailed
from app.access.models import Principal, Role, as_utc
from app.api.dependencies import get_ledger
from app.api.middleware.auth import require_principal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audit", tags=["Audit"])


def _require_ledger_admin(principal: Principal) -> None:
    require_capability(
        principal.role,
        Capability.VERIFY_LEDGER,
        "Audit ledger access requires administrator role",
        "AUDIT_ACCESS_DENIED",
    )


@router.get("/patients/{patient_id}", summary="Audit trail for one patient")
async def patient_audit_trail(
    patient_id: str,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(require_principal),
    ledger: AuditLedger = Depends(get_ledger),
) -> dict:
    require_capability(
        principal.role,
        Capability.VIEW_AUDIT_TRAIL,
        "Audit trail access denied",
        "AUDIT_ACCESS_DENIED",
    )
    if principal.role == Role.PATIENT and not principal.owns(patient_id):
        raise Forbidden("Patients can only view their own audit trail", code="AUDIT_ACCESS_DENIED")

    if start and end and as_utc(start) > as_utc(end):
        raise ValidationFailed(["start must not be after end"])

    records = await ledger.find(
        AuditQuery(
            patient_id=patient_id,
            start_time=as_utc(start) if start else None,
            end_time=as_utc(end) if end else None,
            limit=limit,
        )
    )
    include_hash = has_capability(principal.role, Capability.VERIFY_LEDGER)
    return {
        "success": True,
        "data": {
            "patientId": patient_id,
            "records": [r.to_dict(include_hash=include_hash) for r in records],
        },
    }


@router.get("/security-events", summary="Recent security events")
async def security_events(
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(require_principal),
    ledger: AuditLedger = Depends(get_ledger),
) -> dict:
    _require_ledger_admin(principal)
    records = await ledger.find_security_events(limit=limit)
    return {"success": True, "data": {"records": [r.to_dict(include_hash=True) for r in records]}}


@router.get("/emergency-access", summary="Recent break-glass events")
async def emergency_access_events(
    limit: int = Query(100, ge=1, le=1000),
    principal: Principal = Depends(require_principal),
    ledger: AuditLedger = Depends(get_ledger),
) -> dict:
    _require_ledger_admin(principal)
    records = await ledger.find_emergency_access(limit=limit)
    return {"success": True, "data": {"records": [r.to_dict(include_hash=True) for r in records]}}


@router.get("/verify", summary="Verify the audit hash chain")
async def verify_ledger(
    principal: Principal = Depends(require_principal),
    ledger: AuditLedger = Depends(get_ledger),
) -> dict:
    _require_ledger_admin(principal)
    result = await ledger.verify_chain()
    logger.info(
        f"Ledger verification requested by {principal.id}: "
        f"valid={result.valid}, total={result.total}"
    )
    return {"success": True, "data": result.to_dict()}
