"""
Patient Data Endpoints

Every read goes through the AccessGateway: the data type and purpose
come from the request path, and the response carries the access
context downstream record services key off.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from app.access.emergency import EmergencyOverride
from app.access.gateway import AccessContext, AccessGateway
from app.access.models import Principal, RequestDetails
from app.api.dependencies import get_emergency_override, get_gateway
from app.api.middleware.auth import require_principal
from app.api.middleware.rate_limit import require_emergency_rate_limit
from app.api.middleware.request_context import get_request_details

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/patients", tags=["Patients"])


class EmergencyAccessRequest(BaseModel):
    """Break-glass request. Both fields are mandatory and audited."""

    reason: Optional[str] = Field(
        default=None,
        max_length=500,
        description="Clinical emergency",
        examples=["Unresponsive patient in ED"],
    )
    justification: Optional[str] = Field(
        default=None,
        max_length=2000,
        description="Why prior consent cannot be obtained",
    )


async def authorize_patient_access(
    patient_id: str,
    principal: Principal = Depends(require_principal),
    request_details: RequestDetails = Depends(get_request_details),
    gateway: AccessGateway = Depends(get_gateway),
) -> AccessContext:
    """FastAPI dependency: consent-checked access to one patient's data."""
    return await gateway.authorize(principal, patient_id, request_details)


@router.get("/{patient_id}", summary="Read patient record")
async def read_patient(
    context: AccessContext = Depends(authorize_patient_access),
) -> dict:
    return {"success": True, "data": context.to_dict()}


@router.post(
    "/{patient_id}/emergency-access",
    status_code=status.HTTP_201_CREATED,
    summary="Break-glass emergency access",
)
async def emergency_access(
    patient_id: str,
    body: EmergencyAccessRequest,
    principal: Principal = Depends(require_emergency_rate_limit),
    request_details: RequestDetails = Depends(get_request_details),
    override: EmergencyOverride = Depends(get_emergency_override),
) -> dict:
    result = await override.invoke(
        principal,
        patient_id,
        reason=body.reason,
        justification=body.justification,
        request=request_details,
    )
    return {
        "success": True,
        "message": "Emergency access granted",
        "data": result.to_dict(),
    }


@router.get("/{patient_id}/{section:path}", summary="Read a section of a patient record")
async def read_patient_section(
    section: str,
    context: AccessContext = Depends(authorize_patient_access),
) -> dict:
    return {"success": True, "data": {"section": section, **context.to_dict()}}
