"""
Consent API Endpoints.

Patient-driven consent management: create, list, update, revoke,
administrative suspension, read-only checks and statistics.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.access.consent_service import ConsentService
from app.access.exceptions import ValidationFailed
from app.access.models import (
    ConsentStatus,
    DataType,
    Limitations,
    Principal,
    Purpose,
    RequestDetails,
    Role,
)
from app.api.dependencies import get_consent_service
from app.api.middleware.auth import require_principal
from app.api.middleware.request_context import get_request_details

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/consents", tags=["Consents"])


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LimitationsModel(CamelModel):
    """Usage bounds on a grant."""

    max_access_count: Optional[int] = Field(
        default=None,
        description="Maximum number of accesses (omit for unlimited)",
        examples=[3],
    )
    ip_address: Optional[str] = None
    device_fingerprint: Optional[str] = None


class ConsentCreateRequest(CamelModel):
    """New consent grant."""

    recipient_id: str = Field(..., min_length=1, description="User receiving access")
    recipient_role: Role
    data_type: DataType = Field(..., examples=["lab_results"])
    purpose: Purpose = Field(..., examples=["diagnosis"])
    valid_from: Optional[datetime] = Field(default=None, description="Defaults to now")
    valid_until: datetime = Field(..., description="Must be in the future")
    limitations: Optional[LimitationsModel] = None


class ConsentUpdateRequest(CamelModel):
    """Mutable consent fields. Scope changes require a new grant."""

    purpose: Optional[Purpose] = None
    valid_until: Optional[datetime] = None
    limitations: Optional[LimitationsModel] = None


class ConsentRevokeRequest(CamelModel):
    reason: Optional[str] = Field(default=None, max_length=500)


def parse_status(value: Optional[str]) -> Optional[ConsentStatus]:
    """'all' (or empty) disables the status filter."""
    if not value or value == "all":
        return None
    try:
        return ConsentStatus(value)
    except ValueError:
        raise ValidationFailed([f"Invalid status: {value}"])


@router.post(
    "/patients/{patient_id}",
    status_code=status.HTTP_201_CREATED,
    summary="Create consent",
)
async def create_consent(
    patient_id: str,
    body: ConsentCreateRequest,
    principal: Principal = Depends(require_principal),
    request_details: RequestDetails = Depends(get_request_details),
    service: ConsentService = Depends(get_consent_service),
) -> dict:
    limits = body.limitations
    grant = await service.create_consent(
        principal,
        patient_id,
        recipient_id=body.recipient_id,
        recipient_role=body.recipient_role,
        data_type=body.data_type,
        purpose=body.purpose,
        valid_until=body.valid_until,
        valid_from=body.valid_from,
        limitations=Limitations(
            max_access_count=limits.max_access_count,
            ip_address=limits.ip_address,
            device_fingerprint=limits.device_fingerprint,
        ) if limits else None,
        request=request_details,
    )
    return {
        "success": True,
        "message": "Consent created successfully",
        "data": {"consent": grant.to_dict()},
    }


@router.get("/patients/{patient_id}", summary="List a patient's consents")
async def list_patient_consents(
    patient_id: str,
    status_filter: Optional[str] = Query("active", alias="status"),
    principal: Principal = Depends(require_principal),
    request_details: RequestDetails = Depends(get_request_details),
    service: ConsentService = Depends(get_consent_service),
) -> dict:
    consents = await service.list_patient_consents(
        principal,
        patient_id,
        request_details,
        status=parse_status(status_filter),
    )
    return {"success": True, "data": {"consents": [c.to_dict() for c in consents]}}


@router.get("/patients/{patient_id}/stats", summary="Consent statistics for a patient")
async def consent_stats(
    patient_id: str,
    principal: Principal = Depends(require_principal),
    request_details: RequestDetails = Depends(get_request_details),
    service: ConsentService = Depends(get_consent_service),
) -> dict:
    stats = await service.consent_stats(principal, patient_id, request_details)
    return {"success": True, "data": stats}


@router.get("/my-consents", summary="Consents granted to the caller")
async def list_my_consents(
    status_filter: Optional[str] = Query("active", alias="status"),
    principal: Principal = Depends(require_principal),
    request_details: RequestDetails = Depends(get_request_details),
    service: ConsentService = Depends(get_consent_service),
) -> dict:
    consents = await service.list_recipient_consents(
        principal,
        request_details,
        status=parse_status(status_filter),
    )
    return {"success": True, "data": {"consents": [c.to_dict() for c in consents]}}


@router.get("/check", summary="Check consent without using it")
async def check_consent(
    patient_id: Optional[str] = Query(None, alias="patientId"),
    recipient_id: Optional[str] = Query(None, alias="recipientId"),
    data_type: Optional[DataType] = Query(None, alias="dataType"),
    purpose: Purpose = Query(Purpose.TREATMENT),
    principal: Principal = Depends(require_principal),
    request_details: RequestDetails = Depends(get_request_details),
    service: ConsentService = Depends(get_consent_service),
) -> dict:
    if not patient_id or not recipient_id or data_type is None:
        raise ValidationFailed(
            ["patientId, recipientId and dataType are required"],
            message="Patient ID, recipient ID, and data type required",
            code="MISSING_CONSENT_CHECK_PARAMETERS",
        )
    result = await service.check_consent(
        principal,
        patient_id,
        recipient_id,
        data_type,
        request_details,
        purpose=purpose,
    )
    return {"success": True, "data": result}


@router.put("/{consent_id}", summary="Update consent")
async def update_consent(
    consent_id: str,
    body: ConsentUpdateRequest,
    principal: Principal = Depends(require_principal),
    request_details: RequestDetails = Depends(get_request_details),
    service: ConsentService = Depends(get_consent_service),
) -> dict:
    grant = await service.update_consent(
        principal,
        consent_id,
        request_details,
        purpose=body.purpose,
        valid_until=body.valid_until,
        limitations=body.limitations.model_dump(exclude_unset=True) if body.limitations else None,
    )
    return {
        "success": True,
        "message": "Consent updated successfully",
        "data": {"consent": grant.to_dict()},
    }


@router.put("/{consent_id}/revoke", summary="Revoke consent")
async def revoke_consent(
    consent_id: str,
    body: Optional[ConsentRevokeRequest] = None,
    principal: Principal = Depends(require_principal),
    request_details: RequestDetails = Depends(get_request_details),
    service: ConsentService = Depends(get_consent_service),
) -> dict:
    grant = await service.revoke_consent(
        principal,
        consent_id,
        request_details,
        reason=body.reason if body else None,
    )
    return {
        "success": True,
        "message": "Consent revoked successfully",
        "data": {"consent": grant.to_dict()},
    }


@router.put("/{consent_id}/suspend", summary="Suspend consent (administrators)")
async def suspend_consent(
    consent_id: str,
    principal: Principal = Depends(require_principal),
    request_details: RequestDetails = Depends(get_request_details),
    service: ConsentService = Depends(get_consent_service),
) -> dict:
    grant = await service.suspend_consent(principal, consent_id, request_details)
    return {"success": True, "data": {"consent": grant.to_dict()}}


@router.put("/{consent_id}/reinstate", summary="Reinstate suspended consent (administrators)")
async def reinstate_consent(
    consent_id: str,
    principal: Principal = Depends(require_principal),
    request_details: RequestDetails = Depends(get_request_details),
    service: ConsentService = Depends(get_consent_service),
) -> dict:
    grant = await service.reinstate_consent(principal, consent_id, request_details)
    return {"success": True, "data": {"consent": grant.to_dict()}}
