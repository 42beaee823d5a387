"""
Access control domain models.

Enumerations and dataclasses shared by the consent store, evaluator,
gateway and emergency override. Timestamps are timezone-aware UTC.
"""

import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4


def utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as UTC ISO-8601 with microseconds."""
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


# ==================================
# Enums
# ==================================

class Role(str, Enum):
    """Roles an authenticated principal can hold."""
    PATIENT = "patient"
    DOCTOR = "doctor"
    NURSE = "nurse"
    RECEPTIONIST = "receptionist"
    LAB_TECHNICIAN = "lab_technician"
    PHARMACIST = "pharmacist"
    ADMINISTRATOR = "administrator"


class DataType(str, Enum):
    """Categories of patient data a request can target."""
    DEMOGRAPHICS = "demographics"
    MEDICAL_HISTORY = "medical_history"
    VISITS = "visits"
    MEDICATIONS = "medications"
    LAB_RESULTS = "lab_results"
    PRESCRIPTIONS = "prescriptions"
    ALL_RECORDS = "all_records"
    VITAL_SIGNS = "vital_signs"  # requestable only, covered by all_records grants


class Purpose(str, Enum):
    """Purpose of access (purpose limitation principle)."""
    TREATMENT = "treatment"
    DIAGNOSIS = "diagnosis"
    EMERGENCY_CARE = "emergency_care"
    FOLLOW_UP = "follow_up"
    RESEARCH = "research"
    QUALITY_ASSURANCE = "quality_assurance"
    BILLING = "billing"
    LEGAL_COMPLIANCE = "legal_compliance"


class ConsentStatus(str, Enum):
    """Lifecycle status of a consent grant."""
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    SUSPENDED = "suspended"


class AuditEventType(str, Enum):
    """Types of audit ledger events."""
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    CONSENT_GRANTED = "CONSENT_GRANTED"
    CONSENT_REVOKED = "CONSENT_REVOKED"
    EMERGENCY_ACCESS = "EMERGENCY_ACCESS"
    DATA_EXPORT = "DATA_EXPORT"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    ROLE_CHANGE = "ROLE_CHANGE"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class ThreatLevel(str, Enum):
    """Severity of a security-relevant audit event."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ResourceType(str, Enum):
    """Kinds of resources an audit record can point at."""
    USER = "user"
    PATIENT = "patient"
    CONSENT = "consent"
    MEDICAL_RECORD = "medical_record"
    PRESCRIPTION = "prescription"
    LAB_RESULT = "lab_result"
    VISIT = "visit"
    SYSTEM = "system"


# Data types a patient may put on a grant
GRANTABLE_DATA_TYPES = frozenset(dt for dt in DataType if dt is not DataType.VITAL_SIGNS)

# Roles that may appear as a grant recipient
RECIPIENT_ROLES = frozenset({
    Role.DOCTOR,
    Role.NURSE,
    Role.RECEPTIONIST,
    Role.LAB_TECHNICIAN,
    Role.PHARMACIST,
    Role.ADMINISTRATOR,
})

# Purpose that satisfies any requested purpose
CATCH_ALL_PURPOSE = Purpose.TREATMENT

# Statuses no transition may leave
TERMINAL_STATUSES = frozenset({ConsentStatus.REVOKED, ConsentStatus.EXPIRED})


# ==================================
# Request / identity
# ==================================

@dataclass(frozen=True)
class Principal:
    """Authenticated caller as delivered by the upstream auth layer."""

    id: str
    role: Role
    patient_id: Optional[str] = None  # linked patient record, patients only

    def owns(self, patient_id: str) -> bool:
        """True if this principal is the patient identified by patient_id."""
        return (
            self.role == Role.PATIENT
            and self.patient_id is not None
            and self.patient_id == patient_id
        )


@dataclass(frozen=True)
class RequestDetails:
    """Request metadata copied onto every audit record."""

    ip_address: str
    user_agent: str
    endpoint: str
    method: str
    request_id: str = field(default_factory=lambda: str(uuid4()))
    session_id: Optional[str] = None

    @classmethod
    def internal(cls, operation: str) -> "RequestDetails":
        """Request details for work the service starts on its own."""
        return cls(
            ip_address="127.0.0.1",
            user_agent="consent-ledger/internal",
            endpoint=f"internal:{operation}",
            method="POST",
        )

    def missing_fields(self) -> list[str]:
        """Names of required fields that are empty."""
        return [
            name
            for name in ("ip_address", "user_agent", "endpoint", "method", "request_id")
            if not getattr(self, name)
        ]

    def to_dict(self) -> dict:
        return {
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "endpoint": self.endpoint,
            "method": self.method,
            "requestId": self.request_id,
            "sessionId": self.session_id,
        }


# ==================================
# Consent grant
# ==================================

@dataclass
class Limitations:
    """Usage bounds on a grant."""

    max_access_count: Optional[int] = None  # None = unlimited
    access_count: int = 0
    ip_address: Optional[str] = None
    device_fingerprint: Optional[str] = None

    @property
    def exhausted(self) -> bool:
        return self.max_access_count is not None and self.access_count >= self.max_access_count

    def to_dict(self) -> dict:
        return {
            "maxAccessCount": self.max_access_count,
            "accessCount": self.access_count,
            "ipAddress": self.ip_address,
            "deviceFingerprint": self.device_fingerprint,
        }


@dataclass
class EmergencyAccess:
    """Break-glass metadata carried by grants and audit records."""

    is_emergency: bool = False
    emergency_reason: Optional[str] = None
    emergency_justification: Optional[str] = None
    approved_by: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "isEmergency": self.is_emergency,
            "emergencyReason": self.emergency_reason,
            "emergencyJustification": self.emergency_justification,
            "approvedBy": self.approved_by,
        }


@dataclass
class GrantSignature:
    """Tamper-evidence digest over a grant's scope."""

    hash: str
    algorithm: str = "SHA256"
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ConsentGrant:
    """One patient's authorization for one recipient, data type and purpose."""

    patient_id: str
    recipient_id: str
    recipient_role: Role
    data_type: DataType
    purpose: Purpose
    valid_from: datetime
    valid_until: datetime
    granted_by: str

    id: str = field(default_factory=lambda: str(uuid4()))
    status: ConsentStatus = ConsentStatus.ACTIVE
    limitations: Limitations = field(default_factory=Limitations)
    granted_at: datetime = field(default_factory=utcnow)

    revoked_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None

    emergency_access: EmergencyAccess = field(default_factory=EmergencyAccess)

    version: int = 1
    signature: Optional[GrantSignature] = None

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        """
        Check if the grant can be exercised at `now`.

        Re-derived on every call: active, inside [valid_from, valid_until],
        and below the access cap if one is set.
        """
        now = as_utc(now or utcnow())
        if self.status != ConsentStatus.ACTIVE:
            return False
        if now < as_utc(self.valid_from) or now > as_utc(self.valid_until):
            return False
        return not self.limitations.exhausted

    def is_time_expired(self, now: Optional[datetime] = None) -> bool:
        """True if the grant is still marked active but its window has closed."""
        now = as_utc(now or utcnow())
        return self.status == ConsentStatus.ACTIVE and now > as_utc(self.valid_until)

    def effective_status(self, now: Optional[datetime] = None) -> ConsentStatus:
        """Status as observed at `now`, applying lazy time-based expiry."""
        if self.is_time_expired(now):
            return ConsentStatus.EXPIRED
        return self.status

    def covers(self, data_type: DataType) -> bool:
        """all_records matches any requested data type."""
        return self.data_type == data_type or self.data_type == DataType.ALL_RECORDS

    def allows_purpose(self, purpose: Purpose) -> bool:
        """A treatment grant is the catch-all purpose."""
        return self.purpose == purpose or self.purpose == CATCH_ALL_PURPOSE

    def time_remaining_days(self, now: Optional[datetime] = None) -> int:
        now = as_utc(now or utcnow())
        remaining = as_utc(self.valid_until) - now
        if remaining.total_seconds() <= 0:
            return 0
        return remaining.days

    def compute_signature_hash(self) -> str:
        """SHA-256 over the fields that define what the grant authorizes."""
        data = {
            "id": self.id,
            "patientId": self.patient_id,
            "recipientId": self.recipient_id,
            "dataType": self.data_type.value,
            "purpose": self.purpose.value,
            "validFrom": isoformat(self.valid_from),
            "validUntil": isoformat(self.valid_until),
            "grantedBy": self.granted_by,
        }
        content = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(content.encode()).hexdigest()

    def sign(self) -> None:
        """Refresh the grant signature after a change to its scope."""
        self.signature = GrantSignature(hash=self.compute_signature_hash())

    def copy(self) -> "ConsentGrant":
        """Independent copy, nested parts included."""
        return replace(
            self,
            limitations=replace(self.limitations),
            emergency_access=replace(self.emergency_access),
            signature=replace(self.signature) if self.signature else None,
        )

    def snapshot(self) -> dict[str, Any]:
        """Compact state used in audit dataChanges."""
        return {
            "status": self.status.value,
            "dataType": self.data_type.value,
            "purpose": self.purpose.value,
            "validUntil": isoformat(self.valid_until),
            "maxAccessCount": self.limitations.max_access_count,
            "accessCount": self.limitations.access_count,
            "version": self.version,
        }

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        """API representation. The signature hash is never exposed."""
        return {
            "id": self.id,
            "patientId": self.patient_id,
            "recipientId": self.recipient_id,
            "recipientRole": self.recipient_role.value,
            "dataType": self.data_type.value,
            "purpose": self.purpose.value,
            "status": self.effective_status(now).value,
            "validFrom": isoformat(self.valid_from),
            "validUntil": isoformat(self.valid_until),
            "limitations": self.limitations.to_dict(),
            "grantedBy": self.granted_by,
            "grantedAt": isoformat(self.granted_at),
            "revokedBy": self.revoked_by,
            "revokedAt": isoformat(self.revoked_at),
            "revocationReason": self.revocation_reason,
            "emergencyAccess": self.emergency_access.to_dict(),
            "version": self.version,
            "signature": {
                "algorithm": self.signature.algorithm,
                "timestamp": isoformat(self.signature.timestamp),
            } if self.signature else None,
            "isValid": self.is_valid(now),
            "timeRemaining": self.time_remaining_days(now),
        }
