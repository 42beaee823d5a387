"""
Database Models

SQLAlchemy ORM models for consent grants, the audit ledger and the
patient directory.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    Enum as SQLEnum, text, true
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.access.models import (
    AuditEventType,
    ConsentStatus,
    DataType,
    Purpose,
    ResourceType,
    Role,
    ThreatLevel,
)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def _enum(enum_cls: type[Enum]) -> SQLEnum:
    """Store enum values (not member names) as portable VARCHARs."""
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


def _new_id() -> str:
    return str(uuid.uuid4())


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class SoftDeleteMixin:
    """Mixin that adds soft delete functionality."""

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )


class Patient(Base, TimestampMixin, SoftDeleteMixin):
    """
    Patient directory entry.

    Clinical content lives in the records service; this table only
    links a patient id to the user account that owns it.
    """

    __tablename__ = "patients"
    __table_args__ = (
        Index("idx_patient_user", "user_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    consents: Mapped[List["ConsentGrantRow"]] = relationship(
        "ConsentGrantRow",
        back_populates="patient"
    )

    def __repr__(self) -> str:
        return f"<Patient(id={self.id}, user_id={self.user_id})>"


class ConsentGrantRow(Base, TimestampMixin):
    """
    Consent grant.

    One patient's time-bounded, purpose-limited authorization for one
    recipient. Mutated only through the consent store.
    """

    __tablename__ = "consent_grants"
    __table_args__ = (
        Index("idx_consent_patient_recipient", "patient_id", "recipient_id"),
        Index("idx_consent_patient_status", "patient_id", "status"),
        Index("idx_consent_recipient_status", "recipient_id", "status"),
        Index("idx_consent_valid_until", "valid_until"),
        Index("idx_consent_status_valid_until", "status", "valid_until"),
        Index("idx_consent_granted_at", "granted_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    patient_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False
    )
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_role: Mapped[Role] = mapped_column(_enum(Role), nullable=False)
    data_type: Mapped[DataType] = mapped_column(_enum(DataType), nullable=False)
    purpose: Mapped[Purpose] = mapped_column(_enum(Purpose), nullable=False)
    status: Mapped[ConsentStatus] = mapped_column(
        _enum(ConsentStatus),
        default=ConsentStatus.ACTIVE,
        nullable=False
    )
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Limitations
    max_access_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    access_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pinned_ip_address: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    device_fingerprint: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Provenance
    granted_by: Mapped[str] = mapped_column(String(64), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    revocation_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Break-glass
    is_emergency: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    emergency_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    emergency_justification: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    emergency_approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Integrity
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    signature_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    signature_algorithm: Mapped[str] = mapped_column(String(20), default="SHA256")
    signature_timestamp: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    # Request metadata at grant time
    ip_address: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    patient: Mapped["Patient"] = relationship("Patient", back_populates="consents")

    def __repr__(self) -> str:
        return (
            f"<ConsentGrantRow(id={self.id}, patient_id={self.patient_id}, "
            f"recipient_id={self.recipient_id}, data_type={self.data_type.value}, "
            f"status={self.status.value})>"
        )


# At most one active break-glass all_records grant per patient/recipient pair
Index(
    "uq_consent_active_emergency",
    ConsentGrantRow.patient_id,
    ConsentGrantRow.recipient_id,
    unique=True,
    postgresql_where=(
        (ConsentGrantRow.data_type == DataType.ALL_RECORDS)
        & (ConsentGrantRow.is_emergency == true())
        & (ConsentGrantRow.status == ConsentStatus.ACTIVE)
    ),
    sqlite_where=(
        (ConsentGrantRow.data_type == DataType.ALL_RECORDS)
        & (ConsentGrantRow.is_emergency == true())
        & (ConsentGrantRow.status == ConsentStatus.ACTIVE)
    ),
)


class AuditLogRow(Base):
    """
    Audit ledger entry.

    Append-only. The repository exposes no update or delete; deleted_at
    is only stamped for erasure requests and hides nothing from auditors.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_user_time", "user_id", "timestamp"),
        Index("idx_audit_patient_time", "target_patient_id", "timestamp"),
        Index("idx_audit_event_time", "event_type", "timestamp"),
        Index("idx_audit_resource", "resource_type", "resource_id"),
        Index("idx_audit_ip", "ip_address"),
        Index("idx_audit_security", "is_security_event"),
        Index("idx_audit_breach", "data_breach"),
        Index("idx_audit_time", "timestamp"),
        Index("idx_audit_user_patient_time", "user_id", "target_patient_id", "timestamp"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    event_type: Mapped[AuditEventType] = mapped_column(_enum(AuditEventType), nullable=False)

    # Actor / target
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_role: Mapped[str] = mapped_column(String(32), default="anonymous", nullable=False)
    target_patient_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    resource_type: Mapped[ResourceType] = mapped_column(_enum(ResourceType), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    action: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    data_accessed: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    data_changes: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    consent_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    consent_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    emergency_access: Mapped[dict] = mapped_column(JSON, default=dict)

    # Request details
    ip_address: Mapped[str] = mapped_column(String(50), nullable=False)
    user_agent: Mapped[str] = mapped_column(String(500), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(500), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    request_id: Mapped[str] = mapped_column(String(100), nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # System details
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    server_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    process_id: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    response_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Security event
    is_security_event: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    threat_level: Mapped[ThreatLevel] = mapped_column(
        _enum(ThreatLevel),
        default=ThreatLevel.LOW,
        nullable=False
    )
    anomaly_detected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    anomaly_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Compliance
    gdpr_relevant: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    hipaa_relevant: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    data_breach: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    retention_period: Mapped[int] = mapped_column(Integer, default=7, nullable=False)

    # Signature
    signature_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    signature_algorithm: Mapped[str] = mapped_column(String(20), default="SHA256")
    previous_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"<AuditLogRow(id={self.id}, event_type={self.event_type.value}, "
            f"action='{self.action}', timestamp={self.timestamp})>"
        )
