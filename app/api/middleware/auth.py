"""
Principal Authentication

JWT verification happens at the upstream gateway, which forwards the
verified identity in trusted headers:

    X-User-ID     user id
    X-User-Role   one of the Role values

A patient's linked record is always resolved through the patient
directory. A client-supplied X-Patient-ID header is never trusted; a
request whose header names a different record than the directory is
rejected.
"""

import logging
from typing import Optional

from fastapi import Depends, Request

from app.access.exceptions import AuthenticationRequired, Forbidden
from app.access.models import Principal, Role
from app.access.patients import PatientDirectory
from app.api.dependencies import get_patient_directory
from app.config import settings

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-ID"
USER_ROLE_HEADER = "X-User-Role"
PATIENT_ID_HEADER = "X-Patient-ID"


def parse_role(value: Optional[str]) -> Optional[Role]:
    if not value:
        return None
    try:
        return Role(value.strip().lower())
    except ValueError:
        return None


async def resolve_patient_link(
    user_id: str,
    claimed_patient_id: Optional[str],
    patients: PatientDirectory,
) -> Optional[str]:
    """
    Look up the patient record linked to a patient-role user.

    Args:
        user_id: Authenticated user id
        claimed_patient_id: Value of the X-Patient-ID header, if sent
        patients: Directory holding the user -> patient links

    Returns:
        The linked patient id, or None if the user has no record

    Raises:
        Forbidden: the header names a record the user is not linked to
    """
    patient_id = await patients.patient_for_user(user_id)
    if claimed_patient_id and claimed_patient_id != patient_id:
        logger.warning(
            f"Patient link mismatch | User: {user_id} | "
            f"Claimed: {claimed_patient_id} | Linked: {patient_id}"
        )
        raise Forbidden("Patient identity mismatch", code="PATIENT_LINK_MISMATCH")
    return patient_id


async def require_principal(
    request: Request,
    patients: PatientDirectory = Depends(get_patient_directory),
) -> Principal:
    """
    FastAPI dependency that requires an authenticated principal.

    Raises:
        AuthenticationRequired: identity headers missing, invalid or not trusted
        Forbidden: a patient claims a record the directory does not link them to
    """
    client_ip = request.client.host if request.client else "unknown"

    if not settings.trusted_identity_headers:
        logger.warning(f"Auth failed: identity headers not trusted | IP: {client_ip}")
        raise AuthenticationRequired("Authentication required")

    user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    role = parse_role(request.headers.get(USER_ROLE_HEADER))

    if not user_id or role is None:
        logger.warning(
            f"Auth failed: missing or invalid identity | IP: {client_ip} | "
            f"Path: {request.url.path}"
        )
        raise AuthenticationRequired(
            "Authentication required",
            code="INVALID_IDENTITY" if user_id else "AUTHENTICATION_REQUIRED",
        )

    patient_id = None
    if role == Role.PATIENT:
        claimed = (request.headers.get(PATIENT_ID_HEADER) or "").strip() or None
        patient_id = await resolve_patient_link(user_id, claimed, patients)

    logger.debug(f"Auth success | User: {user_id} | Role: {role.value} | IP: {client_ip}")
    return Principal(id=user_id, role=role, patient_id=patient_id)
