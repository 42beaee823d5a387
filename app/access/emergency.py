"""
Emergency Override ("break-glass")

Lets clinical staff obtain access without prior consent. The caller
self-grants a 24 hour all_records grant for emergency care; the
mandatory reason and justification plus a high-severity audit record
are the compensating controls. Rate limiting happens before this is
called (see app.api.middleware.rate_limit).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.access.audit_ledger import AuditSink
from app.access.audit_records import AuditRecord, Compliance, DataChanges, SecurityEvent
from app.access.capabilities import Capability, require_capability
from app.access.consent_store import ConsentStore
from app.access.exceptions import ConsentConflict, StorageError, ValidationFailed
from app.access.gateway import AccessBasis, AccessContext
from app.access.models import (
    AuditEventType,
    ConsentGrant,
    DataType,
    EmergencyAccess,
    Principal,
    Purpose,
    RequestDetails,
    ResourceType,
    ThreatLevel,
    as_utc,
    utcnow,
)
from app.access.patients import PatientDirectory

logger = logging.getLogger(__name__)


@dataclass
class EmergencyResult:
    grant: ConsentGrant
    created: bool
    context: AccessContext

    def to_dict(self) -> dict:
        return {
            "consent": self.grant.to_dict(),
            "created": self.created,
            **self.context.to_dict(),
        }


class EmergencyOverride:
    """
    Break-glass grant creation.

    Concurrent calls for the same patient and provider converge on one
    grant: the store rejects a second active emergency all_records grant
    and the loser re-reads and reuses the winner's.
    """

    def __init__(
        self,
        store: ConsentStore,
        audit: AuditSink,
        patients: Optional[PatientDirectory] = None,
        access_hours: int = 24,
    ):
        self.store = store
        self.audit = audit
        self.patients = patients
        self.access_hours = access_hours

    async def invoke(
        self,
        principal: Principal,
        patient_id: str,
        reason: Optional[str],
        justification: Optional[str],
        request: RequestDetails,
        now: Optional[datetime] = None,
    ) -> EmergencyResult:
        """
        Grant emergency access to `patient_id` for the caller.

        Raises:
            ValidationFailed: reason or justification missing
            Forbidden: caller's role may not break glass
            NotFound: patient does not exist
            StorageError: the store failed (a SYSTEM_ERROR record is submitted)
        """
        reason = (reason or "").strip()
        justification = (justification or "").strip()
        if not reason or not justification:
            raise ValidationFailed(
                [
                    message
                    for message, value in (
                        ("Emergency reason is required", reason),
                        ("Emergency justification is required", justification),
                    )
                    if not value
                ],
                message="Emergency access requires reason and justification",
                code="EMERGENCY_ACCESS_DETAILS_REQUIRED",
            )

        require_capability(
            principal.role,
            Capability.EMERGENCY_OVERRIDE,
            "Emergency access not permitted for this role",
            "EMERGENCY_ACCESS_NOT_PERMITTED",
        )

        if self.patients is not None:
            await self.patients.require(patient_id)

        now = as_utc(now or utcnow())
        emergency = EmergencyAccess(
            is_emergency=True,
            emergency_reason=reason,
            emergency_justification=justification,
            approved_by=principal.id,
        )

        try:
            grant, created = await self._find_or_create(principal, patient_id, emergency, request, now)
        except StorageError as e:
            await self._audit_failure(principal, patient_id, reason, request, e)
            raise

        logger.warning(
            f"Emergency access granted: user={principal.id}, role={principal.role.value}, "
            f"patient={patient_id}, consent={grant.id}, created={created}"
        )
        await self.audit.emit(AuditRecord(
            event_type=AuditEventType.EMERGENCY_ACCESS,
            user_id=principal.id,
            user_role=principal.role.value,
            target_patient_id=patient_id,
            resource_type=ResourceType.PATIENT,
            resource_id=patient_id,
            action="EMERGENCY_ACCESS_GRANTED",
            description=f"Emergency access granted: {reason}",
            consent_id=grant.id,
            emergency_access=emergency,
            data_changes=DataChanges(
                after=grant.snapshot(),
                changes=["created"] if created else ["emergencyAccess"],
            ),
            request_details=request,
            security_event=SecurityEvent(is_security_event=True, threat_level=ThreatLevel.HIGH),
            compliance=Compliance(gdpr_relevant=True, hipaa_relevant=True),
        ))

        return EmergencyResult(
            grant=grant,
            created=created,
            context=AccessContext(
                patient_id=patient_id,
                data_type=DataType.ALL_RECORDS,
                purpose=Purpose.EMERGENCY_CARE,
                basis=AccessBasis.EMERGENCY,
                consent_id=grant.id,
                emergency_access=True,
            ),
        )

    async def _find_or_create(
        self,
        principal: Principal,
        patient_id: str,
        emergency: EmergencyAccess,
        request: RequestDetails,
        now: datetime,
    ) -> tuple[ConsentGrant, bool]:
        existing = await self.store.find_active_all_records(patient_id, principal.id, now)
        if existing is not None:
            return await self._mark_emergency(existing, emergency, now), False

        grant = ConsentGrant(
            patient_id=patient_id,
            recipient_id=principal.id,
            recipient_role=principal.role,
            data_type=DataType.ALL_RECORDS,
            purpose=Purpose.EMERGENCY_CARE,
            valid_from=now,
            valid_until=now + timedelta(hours=self.access_hours),
            granted_by=principal.id,
            granted_at=now,
            emergency_access=emergency,
            ip_address=request.ip_address,
            user_agent=request.user_agent,
        )
        try:
            return await self.store.create(grant), True
        except ConsentConflict:
            # A concurrent override won the race
            existing = await self.store.find_active_all_records(patient_id, principal.id, now)
            if existing is None:
                raise
            logger.info(f"Emergency grant race resolved: patient={patient_id}, user={principal.id}")
            return await self._mark_emergency(existing, emergency, now), False

    async def _mark_emergency(
        self,
        grant: ConsentGrant,
        emergency: EmergencyAccess,
        now: datetime,
    ) -> ConsentGrant:
        for attempt in range(2):
            grant.emergency_access = EmergencyAccess(
                is_emergency=True,
                emergency_reason=emergency.emergency_reason,
                emergency_justification=emergency.emergency_justification,
                approved_by=emergency.approved_by,
            )
            try:
                return await self.store.update(grant, now)
            except ConsentConflict:
                if attempt == 1:
                    raise
                grant = await self.store.get_by_id(grant.id)

    async def _audit_failure(
        self,
        principal: Principal,
        patient_id: str,
        reason: str,
        request: RequestDetails,
        error: Exception,
    ) -> None:
        logger.error(
            f"Emergency access failed: user={principal.id}, patient={patient_id}: {error}"
        )
        await self.audit.emit(AuditRecord(
            event_type=AuditEventType.SYSTEM_ERROR,
            user_id=principal.id,
            user_role=principal.role.value,
            target_patient_id=patient_id,
            resource_type=ResourceType.PATIENT,
            resource_id=patient_id,
            action="EMERGENCY_ACCESS_ERROR",
            description=f"Emergency access failed ({reason}): {type(error).__name__}",
            request_details=request,
            security_event=SecurityEvent(
                is_security_event=True,
                threat_level=ThreatLevel.HIGH,
                anomaly_details=str(error),
            ),
            compliance=Compliance(gdpr_relevant=True, hipaa_relevant=True),
        ))
