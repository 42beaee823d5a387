"""
Audit record types.

An AuditRecord is one immutable ledger entry. Its signature hash is a
SHA-256 digest over a canonical subset of fields, so recomputing it from
stored values detects after-the-fact edits.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from app.access.models import (
    AuditEventType,
    EmergencyAccess,
    RequestDetails,
    ResourceType,
    ThreatLevel,
    isoformat,
)

HASH_ALGORITHM = "SHA256"
GENESIS_HASH = "genesis"
ANONYMOUS_ROLE = "anonymous"


@dataclass
class DataAccessed:
    """What a read touched."""

    fields: list[str] = field(default_factory=list)
    record_count: Optional[int] = None
    data_type: Optional[str] = None
    purpose: Optional[str] = None
    consent_granted: Optional[bool] = None

    def to_dict(self) -> dict:
        return {
            "fields": self.fields,
            "recordCount": self.record_count,
            "dataType": self.data_type,
            "purpose": self.purpose,
            "consentGranted": self.consent_granted,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DataAccessed":
        return cls(
            fields=list(data.get("fields") or []),
            record_count=data.get("recordCount"),
            data_type=data.get("dataType"),
            purpose=data.get("purpose"),
            consent_granted=data.get("consentGranted"),
        )


@dataclass
class DataChanges:
    """Before/after state for mutations."""

    before: Optional[dict] = None
    after: Optional[dict] = None
    changes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"before": self.before, "after": self.after, "changes": self.changes}

    @classmethod
    def from_dict(cls, data: dict) -> "DataChanges":
        return cls(
            before=data.get("before"),
            after=data.get("after"),
            changes=list(data.get("changes") or []),
        )


@dataclass
class SystemDetails:
    timestamp: Optional[datetime] = None
    server_name: Optional[str] = None
    process_id: Optional[str] = None
    response_time: Optional[float] = None  # milliseconds

    def to_dict(self) -> dict:
        return {
            "timestamp": isoformat(self.timestamp),
            "serverName": self.server_name,
            "processId": self.process_id,
            "responseTime": self.response_time,
        }


@dataclass
class SecurityEvent:
    is_security_event: bool = False
    threat_level: ThreatLevel = ThreatLevel.LOW
    anomaly_detected: bool = False
    anomaly_details: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "isSecurityEvent": self.is_security_event,
            "threatLevel": self.threat_level.value,
            "anomalyDetected": self.anomaly_detected,
            "anomalyDetails": self.anomaly_details,
        }


@dataclass
class Compliance:
    gdpr_relevant: bool = False
    hipaa_relevant: bool = False
    data_breach: bool = False
    retention_period: Optional[int] = None  # years, ledger default applied on write

    def to_dict(self) -> dict:
        return {
            "gdprRelevant": self.gdpr_relevant,
            "hipaaRelevant": self.hipaa_relevant,
            "dataBreach": self.data_breach,
            "retentionPeriod": self.retention_period,
        }


@dataclass
class AuditSignature:
    hash: Optional[str] = None
    algorithm: str = HASH_ALGORITHM
    previous_hash: Optional[str] = None


@dataclass
class AuditRecord:
    """One entry in the audit ledger."""

    event_type: AuditEventType
    resource_type: ResourceType
    action: str
    description: str
    request_details: RequestDetails

    user_id: Optional[str] = None
    user_role: Optional[str] = None
    target_patient_id: Optional[str] = None
    resource_id: Optional[str] = None

    data_accessed: Optional[DataAccessed] = None
    data_changes: Optional[DataChanges] = None

    consent_verified: bool = False
    consent_id: Optional[str] = None

    emergency_access: EmergencyAccess = field(default_factory=EmergencyAccess)
    system_details: SystemDetails = field(default_factory=SystemDetails)
    security_event: SecurityEvent = field(default_factory=SecurityEvent)
    compliance: Compliance = field(default_factory=Compliance)
    signature: AuditSignature = field(default_factory=AuditSignature)

    id: str = field(default_factory=lambda: str(uuid4()))
    deleted_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.user_role:
            self.user_role = ANONYMOUS_ROLE

    def canonical_payload(self) -> dict[str, Any]:
        """The fields covered by the signature hash."""
        return {
            "eventType": self.event_type.value,
            "userId": self.user_id,
            "action": self.action,
            "timestamp": isoformat(self.system_details.timestamp),
            "requestId": self.request_details.request_id,
        }

    def compute_hash(self) -> str:
        """Deterministic SHA-256 over the canonical payload."""
        content = json.dumps(self.canonical_payload(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(content.encode()).hexdigest()

    def verify(self) -> bool:
        """True if the stored hash matches the stored fields."""
        return self.signature.hash is not None and self.signature.hash == self.compute_hash()

    def to_dict(self, include_hash: bool = False) -> dict:
        """API representation. Hashes are only shown to ledger verifiers."""
        signature: dict[str, Any] = {"algorithm": self.signature.algorithm}
        if include_hash:
            signature["hash"] = self.signature.hash
            signature["previousHash"] = self.signature.previous_hash
        return {
            "id": self.id,
            "eventType": self.event_type.value,
            "userId": self.user_id,
            "userRole": self.user_role,
            "targetPatientId": self.target_patient_id,
            "resourceType": self.resource_type.value,
            "resourceId": self.resource_id,
            "action": self.action,
            "description": self.description,
            "dataAccessed": self.data_accessed.to_dict() if self.data_accessed else None,
            "dataChanges": self.data_changes.to_dict() if self.data_changes else None,
            "consentVerified": self.consent_verified,
            "consentId": self.consent_id,
            "emergencyAccess": self.emergency_access.to_dict(),
            "requestDetails": self.request_details.to_dict(),
            "systemDetails": self.system_details.to_dict(),
            "securityEvent": self.security_event.to_dict(),
            "compliance": self.compliance.to_dict(),
            "signature": signature,
        }
