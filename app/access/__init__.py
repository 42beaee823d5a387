"""
Access Control Module

Consent-governed access to patient data: consent grants and their
store, the consent evaluator, the access gateway, break-glass emergency
override, and the hash-chained audit ledger.
"""

from app.access.models import (
    # Enums
    Role,
    DataType,
    Purpose,
    ConsentStatus,
    AuditEventType,
    ThreatLevel,
    ResourceType,

    # Models
    Principal,
    RequestDetails,
    Limitations,
    EmergencyAccess,
    ConsentGrant,
)

from app.access.exceptions import (
    AccessControlError,
    ValidationFailed,
    AuthenticationRequired,
    Forbidden,
    NotFound,
    ConsentDenied,
    ConsentConflict,
    StorageError,
    AuditWriteFailed,
)

from app.access.capabilities import (
    Capability,
    capabilities_for,
    has_capability,
    require_capability,
)

from app.access.audit_records import AuditRecord

from app.access.consent_store import (
    ConsentStore,
    InMemoryConsentStore,
    SqlConsentStore,
)

from app.access.consent_evaluator import (
    ConsentEvaluator,
    ConsentDecision,
    DenialReason,
)

from app.access.audit_repository import (
    AuditQuery,
    AuditRepository,
    InMemoryAuditRepository,
    SqlAuditRepository,
)

from app.access.audit_ledger import (
    AuditLedger,
    AuditSink,
    ChainVerification,
)

from app.access.audit_writer import AuditWriter

from app.access.gateway import (
    AccessGateway,
    AccessContext,
    AccessBasis,
)

from app.access.emergency import (
    EmergencyOverride,
    EmergencyResult,
)

from app.access.consent_service import ConsentService

from app.access.patients import (
    PatientDirectory,
    InMemoryPatientDirectory,
    SqlPatientDirectory,
)


__all__ = [
    # Enums
    "Role",
    "DataType",
    "Purpose",
    "ConsentStatus",
    "AuditEventType",
    "ThreatLevel",
    "ResourceType",

    # Models
    "Principal",
    "RequestDetails",
    "Limitations",
    "EmergencyAccess",
    "ConsentGrant",
    "AuditRecord",

    # Errors
    "AccessControlError",
    "ValidationFailed",
    "AuthenticationRequired",
    "Forbidden",
    "NotFound",
    "ConsentDenied",
    "ConsentConflict",
    "StorageError",
    "AuditWriteFailed",

    # Capabilities
    "Capability",
    "capabilities_for",
    "has_capability",
    "require_capability",

    # Consent store
    "ConsentStore",
    "InMemoryConsentStore",
    "SqlConsentStore",

    # Evaluator
    "ConsentEvaluator",
    "ConsentDecision",
    "DenialReason",

    # Audit ledger
    "AuditQuery",
    "AuditRepository",
    "InMemoryAuditRepository",
    "SqlAuditRepository",
    "AuditLedger",
    "AuditSink",
    "ChainVerification",
    "AuditWriter",

    # Gateway
    "AccessGateway",
    "AccessContext",
    "AccessBasis",

    # Emergency
    "EmergencyOverride",
    "EmergencyResult",

    # Service
    "ConsentService",

    # Patients
    "PatientDirectory",
    "InMemoryPatientDirectory",
    "SqlPatientDirectory",
]
