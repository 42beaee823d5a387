"""
Access Gateway

Orchestrates one patient-data access check:

1. Administrator bypass (always allowed, always audited as CONSENT_BYPASS)
2. Self-access (a patient reading their own record)
3. Consent evaluation, then the atomic access-count increment

Every outcome produces exactly one audit record, written after the
decision is made. Audit delivery never changes the decision.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from app.access.audit_ledger import AuditSink
from app.access.audit_records import Compliance, DataAccessed, AuditRecord, SecurityEvent
from app.access.capabilities import Capability, has_capability
from app.access.consent_evaluator import ConsentDecision, ConsentEvaluator
from app.access.exceptions import AccessControlError, ConsentDenied, StorageError, ValidationFailed
from app.access.models import (
    AuditEventType,
    DataType,
    Principal,
    Purpose,
    RequestDetails,
    ResourceType,
    ThreatLevel,
)
from app.access.resource_mapping import determine_data_type, determine_purpose

logger = logging.getLogger(__name__)


class AccessBasis:
    """Why an access was allowed."""
    ADMINISTRATOR_BYPASS = "administrator_bypass"
    SELF_ACCESS = "self_access"
    CONSENT = "consent"
    EMERGENCY = "emergency"


@dataclass
class AccessContext:
    """What downstream handlers learn about an allowed access."""

    patient_id: str
    data_type: DataType
    purpose: Purpose
    basis: str
    consent_verified: bool = False
    consent_id: Optional[str] = None
    emergency_access: bool = False

    def to_dict(self) -> dict:
        return {
            "patientId": self.patient_id,
            "dataType": self.data_type.value,
            "purpose": self.purpose.value,
            "basis": self.basis,
            "consentVerified": self.consent_verified,
            "consentId": self.consent_id,
            "emergencyAccess": self.emergency_access,
        }


class AccessGateway:
    """
    Single entry point for consent-governed reads.

    Usage:
        gateway = AccessGateway(ConsentEvaluator(store), audit_writer)
        context = await gateway.authorize(principal, patient_id, request_details)
    """

    def __init__(self, evaluator: ConsentEvaluator, audit: AuditSink) -> None:
        self.evaluator = evaluator
        self.audit = audit

    async def authorize(
        self,
        principal: Principal,
        patient_id: str,
        request: RequestDetails,
        data_type: Optional[DataType] = None,
        purpose: Optional[Purpose] = None,
    ) -> AccessContext:
        """
        Decide one access and audit it.

        The data type and purpose default to what the request endpoint
        implies.

        Raises:
            ValidationFailed: patient id missing
            ConsentDenied: no grant authorizes the access
            StorageError: consent storage failed (a SYSTEM_ERROR record is submitted)
        """
        if not patient_id:
            raise ValidationFailed(["Patient ID required"], message="Patient ID required")

        data_type = data_type or determine_data_type(request.endpoint)
        purpose = purpose or determine_purpose(request.endpoint)

        if has_capability(principal.role, Capability.BYPASS_CONSENT):
            await self._audit_bypass(principal, patient_id, data_type, purpose, request)
            return AccessContext(
                patient_id=patient_id,
                data_type=data_type,
                purpose=purpose,
                basis=AccessBasis.ADMINISTRATOR_BYPASS,
            )

        if principal.owns(patient_id):
            await self._audit_self_access(principal, patient_id, data_type, purpose, request)
            return AccessContext(
                patient_id=patient_id,
                data_type=data_type,
                purpose=purpose,
                basis=AccessBasis.SELF_ACCESS,
            )

        try:
            decision = await self.evaluator.check(patient_id, principal.id, data_type, purpose)
            if decision.allowed:
                # Lost race on the last allowed access counts as a denial
                if await self.evaluator.record_access(decision.grant_id) is None:
                    decision = ConsentDecision(allowed=False, reason=decision.reason)
        except AccessControlError as e:
            await self._audit_failure(principal, patient_id, data_type, request, e)
            raise
        except Exception as e:
            logger.exception(f"Consent check error: patient={patient_id}, user={principal.id}")
            await self._audit_failure(principal, patient_id, data_type, request, e)
            raise StorageError(
                "Consent verification failed",
                code="CONSENT_CHECK_ERROR",
            ) from e

        if not decision.allowed:
            await self._audit_violation(principal, patient_id, data_type, purpose, request)
            raise ConsentDenied(data_type.value, purpose.value)

        await self._audit_verified(principal, patient_id, data_type, purpose, request, decision)
        return AccessContext(
            patient_id=patient_id,
            data_type=data_type,
            purpose=purpose,
            basis=AccessBasis.CONSENT,
            consent_verified=True,
            consent_id=decision.grant_id,
        )

    # ==================================
    # Audit records
    # ==================================

    def _record(
        self,
        principal: Principal,
        patient_id: str,
        request: RequestDetails,
        action: str,
        description: str,
        **kwargs: Any,
    ) -> AuditRecord:
        return AuditRecord(
            event_type=kwargs.pop("event_type", AuditEventType.READ),
            user_id=principal.id,
            user_role=principal.role.value,
            target_patient_id=patient_id,
            resource_type=ResourceType.PATIENT,
            resource_id=patient_id,
            action=action,
            description=description,
            request_details=request,
            **kwargs,
        )

    async def _audit_bypass(
        self,
        principal: Principal,
        patient_id: str,
        data_type: DataType,
        purpose: Purpose,
        request: RequestDetails,
    ) -> None:
        logger.warning(
            f"Consent bypass: administrator={principal.id}, patient={patient_id}, "
            f"type={data_type.value}"
        )
        await self.audit.emit(self._record(
            principal, patient_id, request,
            action="CONSENT_BYPASS",
            description="Administrator bypassed consent check: administrator_access",
            consent_verified=False,
            data_accessed=DataAccessed(data_type=data_type.value, purpose=purpose.value),
            security_event=SecurityEvent(is_security_event=True, threat_level=ThreatLevel.MEDIUM),
            compliance=Compliance(gdpr_relevant=True, hipaa_relevant=True),
        ))

    async def _audit_self_access(
        self,
        principal: Principal,
        patient_id: str,
        data_type: DataType,
        purpose: Purpose,
        request: RequestDetails,
    ) -> None:
        await self.audit.emit(self._record(
            principal, patient_id, request,
            action="SELF_ACCESS",
            description=f"Patient accessed own {data_type.value}",
            data_accessed=DataAccessed(data_type=data_type.value, purpose=purpose.value),
            compliance=Compliance(hipaa_relevant=True),
        ))

    async def _audit_violation(
        self,
        principal: Principal,
        patient_id: str,
        data_type: DataType,
        purpose: Purpose,
        request: RequestDetails,
    ) -> None:
        logger.warning(
            f"Consent violation: user={principal.id}, role={principal.role.value}, "
            f"patient={patient_id}, type={data_type.value}, purpose={purpose.value}"
        )
        await self.audit.emit(self._record(
            principal, patient_id, request,
            action="CONSENT_VIOLATION",
            description=f"User attempted to access {data_type.value} without valid consent",
            consent_verified=False,
            data_accessed=DataAccessed(
                data_type=data_type.value,
                purpose=purpose.value,
                consent_granted=False,
            ),
            security_event=SecurityEvent(
                is_security_event=True,
                threat_level=ThreatLevel.MEDIUM,
                anomaly_detected=True,
                anomaly_details="Unauthorized data access attempt",
            ),
            compliance=Compliance(gdpr_relevant=True, hipaa_relevant=True),
        ))

    async def _audit_verified(
        self,
        principal: Principal,
        patient_id: str,
        data_type: DataType,
        purpose: Purpose,
        request: RequestDetails,
        decision: ConsentDecision,
    ) -> None:
        await self.audit.emit(self._record(
            principal, patient_id, request,
            action="CONSENT_VERIFIED_ACCESS",
            description=f"User accessed {data_type.value} with valid consent",
            consent_verified=True,
            consent_id=decision.grant_id,
            data_accessed=DataAccessed(
                data_type=data_type.value,
                purpose=purpose.value,
                consent_granted=True,
            ),
            compliance=Compliance(hipaa_relevant=True),
        ))

    async def _audit_failure(
        self,
        principal: Principal,
        patient_id: str,
        data_type: DataType,
        request: RequestDetails,
        error: Exception,
    ) -> None:
        await self.audit.emit(self._record(
            principal, patient_id, request,
            event_type=AuditEventType.SYSTEM_ERROR,
            action="CONSENT_CHECK_ERROR",
            description=f"Consent verification failed for {data_type.value}: {type(error).__name__}",
            security_event=SecurityEvent(
                is_security_event=True,
                threat_level=ThreatLevel.MEDIUM,
                anomaly_details=str(error),
            ),
            compliance=Compliance(hipaa_relevant=True),
        ))
