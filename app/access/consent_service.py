"""
Consent Service

Patient-driven consent management: one method per consent operation,
each checking the caller's capabilities and writing one audit record.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from app.access.audit_ledger import AuditSink
from app.access.audit_records import (
    AuditRecord,
    Compliance,
    DataAccessed,
    DataChanges,
    SecurityEvent,
)
from app.access.capabilities import Capability, has_capability
from app.access.consent_evaluator import ConsentEvaluator
from app.access.consent_store import ConsentStore
from app.access.exceptions import Forbidden, StorageError, ValidationFailed
from app.access.models import (
    AuditEventType,
    ConsentGrant,
    ConsentStatus,
    DataType,
    Limitations,
    Principal,
    Purpose,
    RequestDetails,
    ResourceType,
    Role,
    ThreatLevel,
    as_utc,
    isoformat,
    utcnow,
)
from app.access.patients import PatientDirectory

logger = logging.getLogger(__name__)

# Limitation fields a holder may change after creation
MUTABLE_LIMITATIONS = ("max_access_count", "ip_address", "device_fingerprint")

OWN_CONSENT_CODES = {
    "create": "PATIENT_CONSENT_ONLY",
    "update": "PATIENT_CONSENT_UPDATE_ONLY",
    "revoke": "PATIENT_CONSENT_REVOKE_ONLY",
}


class ConsentService:
    """
    Consent operations for the HTTP layer.

    Managing a grant (create, update, revoke) is open to the patient who
    owns it and to administrators. Suspension is administrative only.
    """

    def __init__(
        self,
        store: ConsentStore,
        evaluator: ConsentEvaluator,
        audit: AuditSink,
        patients: Optional[PatientDirectory] = None,
    ):
        self.store = store
        self.evaluator = evaluator
        self.audit = audit
        self.patients = patients

    # ==================================
    # Permission checks
    # ==================================

    def _require_manage(self, principal: Principal, patient_id: str, verb: str) -> None:
        if has_capability(principal.role, Capability.MANAGE_ANY_CONSENT):
            return
        if has_capability(principal.role, Capability.MANAGE_OWN_CONSENT):
            if principal.owns(patient_id):
                return
            raise Forbidden(
                f"Only patients can {verb} their own consent",
                code=OWN_CONSENT_CODES[verb],
            )
        raise Forbidden(
            f"Insufficient permissions to {verb} consent",
            code=f"CONSENT_{verb.upper()}_PERMISSION_DENIED",
        )

    def _require_view(self, principal: Principal, patient_id: str, code: str) -> None:
        if principal.role == Role.PATIENT:
            if principal.owns(patient_id):
                return
        elif has_capability(principal.role, Capability.VIEW_PATIENT_CONSENTS):
            return
        raise Forbidden("Access denied to patient consents", code=code)

    async def _require_patient(self, patient_id: str) -> None:
        if self.patients is not None:
            await self.patients.require(patient_id)

    def _record(
        self,
        principal: Principal,
        request: RequestDetails,
        event_type: AuditEventType,
        action: str,
        description: str,
        **kwargs: Any,
    ) -> AuditRecord:
        return AuditRecord(
            event_type=event_type,
            user_id=principal.id,
            user_role=principal.role.value,
            resource_type=kwargs.pop("resource_type", ResourceType.CONSENT),
            action=action,
            description=description,
            request_details=request,
            **kwargs,
        )

    @asynccontextmanager
    async def _storage_errors(
        self,
        principal: Principal,
        request: RequestDetails,
        action: str,
        patient_id: Optional[str] = None,
        consent_id: Optional[str] = None,
    ) -> AsyncIterator[None]:
        """Submit a SYSTEM_ERROR record for a store failure, then re-raise it."""
        try:
            yield
        except StorageError as e:
            logger.error(f"{action} failed: consent={consent_id}, patient={patient_id}: {e}")
            await self.audit.emit(self._record(
                principal, request,
                AuditEventType.SYSTEM_ERROR,
                f"{action}_ERROR",
                f"{action} failed: {type(e).__name__}",
                target_patient_id=patient_id,
                resource_id=consent_id or patient_id,
                consent_id=consent_id,
                security_event=SecurityEvent(
                    is_security_event=True,
                    threat_level=ThreatLevel.MEDIUM,
                    anomaly_details=str(e),
                ),
                compliance=Compliance(hipaa_relevant=True),
            ))
            raise

    # ==================================
    # Operations
    # ==================================

    async def create_consent(
        self,
        principal: Principal,
        patient_id: str,
        recipient_id: str,
        recipient_role: Role,
        data_type: DataType,
        purpose: Purpose,
        valid_until: datetime,
        request: RequestDetails,
        valid_from: Optional[datetime] = None,
        limitations: Optional[Limitations] = None,
    ) -> ConsentGrant:
        """
        Grant a recipient access to one category of a patient's data.

        Raises:
            Forbidden: caller does not manage this patient's consent
            NotFound: patient does not exist
            ValidationFailed: bad scope, window or limitations
        """
        self._require_manage(principal, patient_id, "create")
        await self._require_patient(patient_id)

        now = utcnow()
        grant = ConsentGrant(
            patient_id=patient_id,
            recipient_id=recipient_id,
            recipient_role=recipient_role,
            data_type=data_type,
            purpose=purpose,
            valid_from=as_utc(valid_from) if valid_from else now,
            valid_until=as_utc(valid_until),
            granted_by=principal.id,
            granted_at=now,
            limitations=limitations or Limitations(),
            ip_address=request.ip_address,
            user_agent=request.user_agent,
        )
        async with self._storage_errors(principal, request, "CREATE_CONSENT", patient_id):
            grant = await self.store.create(grant)

        await self.audit.emit(self._record(
            principal, request,
            AuditEventType.CONSENT_GRANTED,
            "CREATE_CONSENT",
            f"Granted {data_type.value} access to {recipient_id} ({recipient_role.value}) "
            f"for {purpose.value}",
            target_patient_id=patient_id,
            resource_id=grant.id,
            consent_id=grant.id,
            data_changes=DataChanges(after={
                "recipientId": grant.recipient_id,
                "dataType": grant.data_type.value,
                "purpose": grant.purpose.value,
                "validUntil": isoformat(grant.valid_until),
            }),
            compliance=Compliance(gdpr_relevant=True, hipaa_relevant=True),
        ))
        return grant

    async def list_patient_consents(
        self,
        principal: Principal,
        patient_id: str,
        request: RequestDetails,
        status: Optional[ConsentStatus] = ConsentStatus.ACTIVE,
    ) -> list[ConsentGrant]:
        self._require_view(principal, patient_id, "PATIENT_CONSENT_ACCESS_DENIED")
        async with self._storage_errors(principal, request, "VIEW_PATIENT_CONSENTS", patient_id):
            consents = await self.store.find_by_patient(patient_id, status)

        await self.audit.emit(self._record(
            principal, request,
            AuditEventType.READ,
            "VIEW_PATIENT_CONSENTS",
            f"Accessed {len(consents)} consent records for patient",
            target_patient_id=patient_id,
            resource_id=patient_id,
            data_accessed=DataAccessed(record_count=len(consents), data_type="consent_records"),
        ))
        return consents

    async def list_recipient_consents(
        self,
        principal: Principal,
        request: RequestDetails,
        status: Optional[ConsentStatus] = ConsentStatus.ACTIVE,
    ) -> list[ConsentGrant]:
        async with self._storage_errors(principal, request, "VIEW_RECIPIENT_CONSENTS"):
            consents = await self.store.find_by_recipient(principal.id, status)

        await self.audit.emit(self._record(
            principal, request,
            AuditEventType.READ,
            "VIEW_RECIPIENT_CONSENTS",
            f"Accessed {len(consents)} consent records as recipient",
            resource_id=principal.id,
            data_accessed=DataAccessed(record_count=len(consents), data_type="consent_records"),
        ))
        return consents

    async def revoke_consent(
        self,
        principal: Principal,
        consent_id: str,
        request: RequestDetails,
        reason: Optional[str] = None,
    ) -> ConsentGrant:
        """Revoke a grant. Terminal: no later check will match it."""
        async with self._storage_errors(principal, request, "REVOKE_CONSENT", consent_id=consent_id):
            grant = await self.store.get_by_id(consent_id)
            self._require_manage(principal, grant.patient_id, "revoke")

            before = grant.snapshot()
            revoked = await self.store.revoke(consent_id, reason, principal.id)
        logger.info(f"Consent revoked: id={consent_id}, by={principal.id}")

        await self.audit.emit(self._record(
            principal, request,
            AuditEventType.CONSENT_REVOKED,
            "REVOKE_CONSENT",
            f"Revoked {revoked.data_type.value} access consent. Reason: {reason}",
            target_patient_id=revoked.patient_id,
            resource_id=revoked.id,
            consent_id=revoked.id,
            data_changes=DataChanges(
                before={"status": before["status"]},
                after={"status": revoked.status.value, "revocationReason": reason},
                changes=["status", "revokedAt", "revokedBy", "revocationReason"],
            ),
            compliance=Compliance(gdpr_relevant=True, hipaa_relevant=True),
        ))
        return revoked

    async def update_consent(
        self,
        principal: Principal,
        consent_id: str,
        request: RequestDetails,
        purpose: Optional[Purpose] = None,
        valid_until: Optional[datetime] = None,
        limitations: Optional[dict[str, Any]] = None,
    ) -> ConsentGrant:
        """
        Change a grant's purpose, end date or limitations.

        Scope fields (patient, recipient, data type) never change; a
        different scope is a new grant.
        """
        async with self._storage_errors(principal, request, "UPDATE_CONSENT", consent_id=consent_id):
            grant = await self.store.get_by_id(consent_id)
        self._require_manage(principal, grant.patient_id, "update")

        before = grant.snapshot()
        changes = []
        if purpose is not None and purpose != grant.purpose:
            grant.purpose = purpose
            changes.append("purpose")
        if valid_until is not None and as_utc(valid_until) != as_utc(grant.valid_until):
            if as_utc(valid_until) <= utcnow():
                raise ValidationFailed(["Valid until date must be in the future"])
            grant.valid_until = as_utc(valid_until)
            changes.append("validUntil")
        for name, value in (limitations or {}).items():
            if name not in MUTABLE_LIMITATIONS:
                continue
            if getattr(grant.limitations, name) != value:
                setattr(grant.limitations, name, value)
                changes.append(f"limitations.{name}")

        async with self._storage_errors(
            principal, request, "UPDATE_CONSENT", grant.patient_id, consent_id
        ):
            updated = await self.store.update(grant)

        await self.audit.emit(self._record(
            principal, request,
            AuditEventType.UPDATE,
            "UPDATE_CONSENT",
            f"Updated consent (version {updated.version})",
            target_patient_id=updated.patient_id,
            resource_id=updated.id,
            consent_id=updated.id,
            data_changes=DataChanges(before=before, after=updated.snapshot(), changes=changes),
            compliance=Compliance(gdpr_relevant=True, hipaa_relevant=True),
        ))
        return updated

    async def suspend_consent(
        self,
        principal: Principal,
        consent_id: str,
        request: RequestDetails,
    ) -> ConsentGrant:
        return await self._set_status(principal, consent_id, request, ConsentStatus.SUSPENDED)

    async def reinstate_consent(
        self,
        principal: Principal,
        consent_id: str,
        request: RequestDetails,
    ) -> ConsentGrant:
        return await self._set_status(principal, consent_id, request, ConsentStatus.ACTIVE)

    async def _set_status(
        self,
        principal: Principal,
        consent_id: str,
        request: RequestDetails,
        status: ConsentStatus,
    ) -> ConsentGrant:
        if not has_capability(principal.role, Capability.SUSPEND_CONSENT):
            raise Forbidden(
                "Only administrators can suspend or reinstate consent",
                code="CONSENT_SUSPEND_PERMISSION_DENIED",
            )
        action = "SUSPEND_CONSENT" if status == ConsentStatus.SUSPENDED else "REINSTATE_CONSENT"
        async with self._storage_errors(principal, request, action, consent_id=consent_id):
            before = (await self.store.get_by_id(consent_id)).snapshot()
            updated = await self.store.set_status(consent_id, status)
        logger.info(f"Consent {status.value}: id={consent_id}, by={principal.id}")

        await self.audit.emit(self._record(
            principal, request,
            AuditEventType.UPDATE,
            action,
            f"Consent set to {status.value} (version {updated.version})",
            target_patient_id=updated.patient_id,
            resource_id=updated.id,
            consent_id=updated.id,
            data_changes=DataChanges(before=before, after=updated.snapshot(), changes=["status"]),
            compliance=Compliance(gdpr_relevant=True, hipaa_relevant=True),
        ))
        return updated

    async def check_consent(
        self,
        principal: Principal,
        patient_id: str,
        recipient_id: str,
        data_type: DataType,
        request: RequestDetails,
        purpose: Purpose = Purpose.TREATMENT,
    ) -> dict:
        """Read-only consent query. Does not count an access."""
        async with self._storage_errors(principal, request, "CHECK_CONSENT", patient_id):
            decision = await self.evaluator.check(patient_id, recipient_id, data_type, purpose)

        await self.audit.emit(self._record(
            principal, request,
            AuditEventType.READ,
            "CHECK_CONSENT",
            f"Checked consent for {data_type.value} access",
            target_patient_id=patient_id,
            data_accessed=DataAccessed(
                data_type=data_type.value,
                purpose=purpose.value,
                consent_granted=decision.allowed,
            ),
        ))
        return {
            "hasConsent": decision.allowed,
            "reason": decision.reason.value if decision.reason else None,
            "consent": decision.grant.to_dict() if decision.grant else None,
        }

    async def consent_stats(
        self,
        principal: Principal,
        patient_id: str,
        request: RequestDetails,
    ) -> dict:
        self._require_view(principal, patient_id, "PATIENT_CONSENT_STATS_ACCESS_DENIED")
        async with self._storage_errors(principal, request, "VIEW_CONSENT_STATISTICS", patient_id):
            stats = await self.store.stats(patient_id)

        await self.audit.emit(self._record(
            principal, request,
            AuditEventType.READ,
            "VIEW_CONSENT_STATISTICS",
            "Accessed consent statistics for patient",
            target_patient_id=patient_id,
            resource_id=patient_id,
        ))
        return stats

    async def expire_stale(self, now: Optional[datetime] = None) -> list[str]:
        """Persist time-based expiry for every active grant past its window."""
        expired = await self.store.expire_stale(now)
        if expired:
            logger.info(f"Expired {len(expired)} stale consents")
            await self.audit.emit(AuditRecord(
                event_type=AuditEventType.UPDATE,
                resource_type=ResourceType.SYSTEM,
                action="EXPIRE_STALE_CONSENTS",
                description=f"Expired {len(expired)} consents past their validity window",
                data_changes=DataChanges(
                    after={"status": ConsentStatus.EXPIRED.value, "consentIds": expired},
                    changes=["status"],
                ),
                request_details=RequestDetails.internal("expire_stale"),
            ))
        return expired
