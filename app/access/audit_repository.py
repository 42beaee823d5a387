"""
Audit Repository

Append-only persistence for audit records. There is deliberately no
update or delete: the only write after insert is stamping deleted_at
for an erasure request, which leaves every evidentiary field intact.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, exists, select, update
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.access.audit_records import (
    AuditRecord,
    AuditSignature,
    Compliance,
    DataAccessed,
    DataChanges,
    SecurityEvent,
    SystemDetails,
)
from app.access.exceptions import NotFound
from app.access.models import (
    AuditEventType,
    EmergencyAccess,
    RequestDetails,
    as_utc,
)
from app.models.database import AuditLogRow

logger = logging.getLogger(__name__)


@dataclass
class AuditQuery:
    """Query parameters for searching the ledger. Results are newest first."""

    user_id: Optional[str] = None
    patient_id: Optional[str] = None
    event_types: Optional[list[AuditEventType]] = None
    security_only: bool = False
    emergency_only: bool = False
    breach_only: bool = False
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    limit: Optional[int] = 100

    def matches(self, record: AuditRecord) -> bool:
        timestamp = record.system_details.timestamp
        if self.user_id is not None and record.user_id != self.user_id:
            return False
        if self.patient_id is not None and record.target_patient_id != self.patient_id:
            return False
        if self.event_types and record.event_type not in self.event_types:
            return False
        if self.security_only and not record.security_event.is_security_event:
            return False
        if self.emergency_only and not record.emergency_access.is_emergency:
            return False
        if self.breach_only and not record.compliance.data_breach:
            return False
        if self.start_time and (timestamp is None or as_utc(timestamp) < as_utc(self.start_time)):
            return False
        if self.end_time and (timestamp is None or as_utc(timestamp) > as_utc(self.end_time)):
            return False
        return True


@dataclass(frozen=True)
class ChainLink:
    """Hash-chain view of one stored record."""

    record_id: str
    hash: str
    previous_hash: Optional[str]
    intact: bool  # stored hash matches recomputed digest


class AuditRepository(ABC):
    """Storage contract for the audit ledger."""

    @abstractmethod
    async def insert(self, record: AuditRecord) -> None:
        """
        Persist one sealed record.

        Args:
            record: Record whose signature hash and previous_hash are set

        Never overwrites: inserting an existing id raises.
        """

    @abstractmethod
    async def get(self, record_id: str) -> AuditRecord:
        """Raises NotFound if absent."""

    @abstractmethod
    async def find(self, query: AuditQuery) -> list[AuditRecord]:
        """
        Search the ledger.

        Args:
            query: Filters and result limit

        Returns:
            Matching records, newest first
        """

    @abstractmethod
    async def chain_tip(self) -> Optional[str]:
        """Hash of the newest record that no other record links to."""

    @abstractmethod
    async def chain_links(self) -> list[ChainLink]:
        """
        Hash-chain view of every stored record.

        Returns:
            One ChainLink per record, with the stored digest rechecked
        """

    @abstractmethod
    async def set_deleted_at(self, record_id: str, when: datetime) -> None:
        """
        Stamp a record as erased without touching its evidentiary fields.

        Args:
            record_id: Record to mark
            when: Erasure time

        Raises:
            NotFound: no such record
        """


class InMemoryAuditRepository(AuditRepository):
    """Process-local ledger storage for development and tests."""

    def __init__(self) -> None:
        self._records: dict[str, AuditRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> list[AuditRecord]:
        """Stored records in insertion order."""
        return list(self._records.values())

    async def insert(self, record: AuditRecord) -> None:
        if record.id in self._records:
            raise ValueError(f"Audit record {record.id} already exists")
        self._records[record.id] = record

    async def get(self, record_id: str) -> AuditRecord:
        record = self._records.get(record_id)
        if record is None:
            raise NotFound("Audit record not found", code="AUDIT_RECORD_NOT_FOUND")
        return record

    async def find(self, query: AuditQuery) -> list[AuditRecord]:
        found = [r for r in self._records.values() if query.matches(r)]
        found.sort(key=lambda r: as_utc(r.system_details.timestamp), reverse=True)
        return found[: query.limit] if query.limit is not None else found

    async def chain_tip(self) -> Optional[str]:
        linked = {r.signature.previous_hash for r in self._records.values()}
        tips = [r for r in self._records.values() if r.signature.hash not in linked]
        if not tips:
            return None
        tips.sort(key=lambda r: as_utc(r.system_details.timestamp))
        return tips[-1].signature.hash

    async def chain_links(self) -> list[ChainLink]:
        return [
            ChainLink(
                record_id=r.id,
                hash=r.signature.hash,
                previous_hash=r.signature.previous_hash,
                intact=r.verify(),
            )
            for r in self._records.values()
        ]

    async def set_deleted_at(self, record_id: str, when: datetime) -> None:
        record = await self.get(record_id)
        record.deleted_at = when


# ==================================
# SQLAlchemy implementation
# ==================================

def _record_to_row(record: AuditRecord) -> AuditLogRow:
    request = record.request_details
    system = record.system_details
    security = record.security_event
    compliance = record.compliance
    return AuditLogRow(
        id=record.id,
        event_type=record.event_type,
        user_id=record.user_id,
        user_role=record.user_role,
        target_patient_id=record.target_patient_id,
        resource_type=record.resource_type,
        resource_id=record.resource_id,
        action=record.action,
        description=record.description,
        data_accessed=record.data_accessed.to_dict() if record.data_accessed else None,
        data_changes=record.data_changes.to_dict() if record.data_changes else None,
        consent_verified=record.consent_verified,
        consent_id=record.consent_id,
        emergency_access=record.emergency_access.to_dict(),
        ip_address=request.ip_address,
        user_agent=request.user_agent,
        endpoint=request.endpoint,
        method=request.method,
        request_id=request.request_id,
        session_id=request.session_id,
        timestamp=as_utc(system.timestamp),
        server_name=system.server_name,
        process_id=system.process_id,
        response_time=system.response_time,
        is_security_event=security.is_security_event,
        threat_level=security.threat_level,
        anomaly_detected=security.anomaly_detected,
        anomaly_details=security.anomaly_details,
        gdpr_relevant=compliance.gdpr_relevant,
        hipaa_relevant=compliance.hipaa_relevant,
        data_breach=compliance.data_breach,
        retention_period=compliance.retention_period,
        signature_hash=record.signature.hash,
        signature_algorithm=record.signature.algorithm,
        previous_hash=record.signature.previous_hash,
        deleted_at=as_utc(record.deleted_at) if record.deleted_at else None,
    )


def _row_to_record(row: AuditLogRow) -> AuditRecord:
    emergency = row.emergency_access or {}
    return AuditRecord(
        id=row.id,
        event_type=row.event_type,
        resource_type=row.resource_type,
        action=row.action,
        description=row.description,
        request_details=RequestDetails(
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            endpoint=row.endpoint,
            method=row.method,
            request_id=row.request_id,
            session_id=row.session_id,
        ),
        user_id=row.user_id,
        user_role=row.user_role,
        target_patient_id=row.target_patient_id,
        resource_id=row.resource_id,
        data_accessed=DataAccessed.from_dict(row.data_accessed) if row.data_accessed else None,
        data_changes=DataChanges.from_dict(row.data_changes) if row.data_changes else None,
        consent_verified=row.consent_verified,
        consent_id=row.consent_id,
        emergency_access=EmergencyAccess(
            is_emergency=bool(emergency.get("isEmergency", False)),
            emergency_reason=emergency.get("emergencyReason"),
            emergency_justification=emergency.get("emergencyJustification"),
            approved_by=emergency.get("approvedBy"),
        ),
        system_details=SystemDetails(
            timestamp=as_utc(row.timestamp),
            server_name=row.server_name,
            process_id=row.process_id,
            response_time=row.response_time,
        ),
        security_event=SecurityEvent(
            is_security_event=row.is_security_event,
            threat_level=row.threat_level,
            anomaly_detected=row.anomaly_detected,
            anomaly_details=row.anomaly_details,
        ),
        compliance=Compliance(
            gdpr_relevant=row.gdpr_relevant,
            hipaa_relevant=row.hipaa_relevant,
            data_breach=row.data_breach,
            retention_period=row.retention_period,
        ),
        signature=AuditSignature(
            hash=row.signature_hash,
            algorithm=row.signature_algorithm,
            previous_hash=row.previous_hash,
        ),
        deleted_at=as_utc(row.deleted_at) if row.deleted_at else None,
    )


class SqlAuditRepository(AuditRepository):
    """Ledger storage on the audit_logs table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def insert(self, record: AuditRecord) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(_record_to_row(record))

    async def get(self, record_id: str) -> AuditRecord:
        async with self._session_factory() as session:
            row = await session.get(AuditLogRow, record_id)
            if row is None:
                raise NotFound("Audit record not found", code="AUDIT_RECORD_NOT_FOUND")
            return _row_to_record(row)

    async def find(self, query: AuditQuery) -> list[AuditRecord]:
        clauses = []
        if query.user_id is not None:
            clauses.append(AuditLogRow.user_id == query.user_id)
        if query.patient_id is not None:
            clauses.append(AuditLogRow.target_patient_id == query.patient_id)
        if query.event_types:
            clauses.append(AuditLogRow.event_type.in_(query.event_types))
        if query.security_only:
            clauses.append(AuditLogRow.is_security_event.is_(True))
        if query.breach_only:
            clauses.append(AuditLogRow.data_breach.is_(True))
        if query.start_time is not None:
            clauses.append(AuditLogRow.timestamp >= as_utc(query.start_time))
        if query.end_time is not None:
            clauses.append(AuditLogRow.timestamp <= as_utc(query.end_time))

        stmt = select(AuditLogRow).where(*clauses).order_by(AuditLogRow.timestamp.desc())
        # emergency flag lives in a JSON column, filtered after load
        if query.limit is not None and not query.emergency_only:
            stmt = stmt.limit(query.limit)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            records = [_row_to_record(row) for row in result.scalars().all()]

        if query.emergency_only:
            records = [r for r in records if r.emergency_access.is_emergency]
            if query.limit is not None:
                records = records[: query.limit]
        return records

    async def chain_tip(self) -> Optional[str]:
        child = aliased(AuditLogRow)
        stmt = (
            select(AuditLogRow.signature_hash)
            .where(~exists().where(child.previous_hash == AuditLogRow.signature_hash))
            .order_by(AuditLogRow.timestamp.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def chain_links(self) -> list[ChainLink]:
        async with self._session_factory() as session:
            result = await session.execute(select(AuditLogRow))
            return [
                ChainLink(
                    record_id=row.id,
                    hash=row.signature_hash,
                    previous_hash=row.previous_hash,
                    intact=_row_to_record(row).verify(),
                )
                for row in result.scalars().all()
            ]

    async def set_deleted_at(self, record_id: str, when: datetime) -> None:
        stmt = (
            update(AuditLogRow)
            .where(and_(AuditLogRow.id == record_id, AuditLogRow.deleted_at.is_(None)))
            .values(deleted_at=as_utc(when))
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
        if result.rowcount != 1:
            # Either absent or already erased
            await self.get(record_id)
