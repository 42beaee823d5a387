"""
Consent Store

Durable storage and queries over consent grants. Two implementations
share one interface: SQLAlchemy tables for deployments and an
in-memory map for development and tests.

Every mutation bumps the grant's version. record_access is the one
operation that must be atomic under concurrent callers: it increments
the access count and, when the cap is reached, expires the grant in
the same conditional write.
"""

import logging
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Sequence

from sqlalchemy import ColumnElement, and_, case, func, or_, select, true, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.access.exceptions import ConsentConflict, NotFound, StorageError, ValidationFailed
from app.access.models import (
    GRANTABLE_DATA_TYPES,
    RECIPIENT_ROLES,
    TERMINAL_STATUSES,
    ConsentGrant,
    ConsentStatus,
    DataType,
    EmergencyAccess,
    GrantSignature,
    Limitations,
    as_utc,
    utcnow,
)
from app.models.database import ConsentGrantRow

logger = logging.getLogger(__name__)

# Optimistic concurrency retry bound for the in-memory store
MAX_CAS_ATTEMPTS = 5


def validate_grant(grant: ConsentGrant, now: Optional[datetime] = None, creating: bool = True) -> None:
    """
    Check write-time constraints.

    Raises:
        ValidationFailed: with every violated constraint listed
    """
    now = as_utc(now or utcnow())
    errors = []

    if not grant.patient_id:
        errors.append("Patient ID is required")
    if not grant.recipient_id:
        errors.append("Recipient ID is required")
    if grant.recipient_role not in RECIPIENT_ROLES:
        errors.append("Invalid recipient role")
    if grant.data_type not in GRANTABLE_DATA_TYPES:
        errors.append("Invalid data type")
    if creating and as_utc(grant.valid_until) <= now:
        errors.append("Valid until date must be in the future")
    if as_utc(grant.valid_from) >= as_utc(grant.valid_until):
        errors.append("Valid from date must precede valid until date")

    limits = grant.limitations
    if limits.max_access_count is not None and limits.max_access_count < 1:
        errors.append("Max access count must be at least 1")
    if limits.access_count < 0:
        errors.append("Access count cannot be negative")

    if errors:
        raise ValidationFailed(errors)


def status_matches(grant: ConsentGrant, status: Optional[ConsentStatus], now: datetime) -> bool:
    """Filter on effective status (lazy time-based expiry applied)."""
    return status is None or grant.effective_status(now) == status


def _candidate_order(grant: ConsentGrant, data_type: DataType) -> tuple:
    """Exact data type before all_records, then newest grant first."""
    return (grant.data_type != data_type, -as_utc(grant.granted_at).timestamp())


class ConsentStore(ABC):
    """Storage contract for consent grants."""

    @abstractmethod
    async def create(self, grant: ConsentGrant) -> ConsentGrant:
        """
        Validate, sign and persist a new grant.

        Args:
            grant: Unsaved grant (version 0)

        Returns:
            A copy of the stored grant carrying its signature

        Raises:
            ValidationFailed: write-time constraints violated
            ConsentConflict: id taken, or a live emergency grant already exists
        """

    @abstractmethod
    async def get_by_id(self, grant_id: str) -> ConsentGrant:
        """Raises NotFound if absent."""

    @abstractmethod
    async def find_candidates(
        self,
        patient_id: str,
        recipient_id: str,
        data_type: DataType,
        now: Optional[datetime] = None,
    ) -> list[ConsentGrant]:
        """
        Active grants in window whose data type is `data_type` or all_records.

        Args:
            patient_id: Patient whose data is requested
            recipient_id: User asking for access
            data_type: Requested data category
            now: Evaluation instant (defaults to current UTC time)

        Returns:
            Candidates with exact data type matches first, newest first
        """

    @abstractmethod
    async def find_by_patient(
        self,
        patient_id: str,
        status: Optional[ConsentStatus] = ConsentStatus.ACTIVE,
        now: Optional[datetime] = None,
    ) -> list[ConsentGrant]:
        """
        Grants given by a patient.

        Args:
            patient_id: Grant owner
            status: Effective status to keep, or None for every grant
            now: Instant used for lazy expiry

        Returns:
            Matching grants, newest first
        """

    @abstractmethod
    async def find_by_recipient(
        self,
        recipient_id: str,
        status: Optional[ConsentStatus] = ConsentStatus.ACTIVE,
        now: Optional[datetime] = None,
    ) -> list[ConsentGrant]:
        ...

    @abstractmethod
    async def find_active_all_records(
        self,
        patient_id: str,
        recipient_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[ConsentGrant]:
        """The live all_records grant from patient to recipient, if any."""

    @abstractmethod
    async def update(self, grant: ConsentGrant, now: Optional[datetime] = None) -> ConsentGrant:
        """
        Persist changes made to `grant`.

        Applies time-based expiry before writing, bumps the version, and
        fails with ConsentConflict if the stored version moved on.
        """

    @abstractmethod
    async def record_access(self, grant_id: str) -> Optional[ConsentGrant]:
        """
        Count one granted access.

        Args:
            grant_id: Grant the access was authorized by

        Returns:
            The updated grant, or None if the grant was no longer active
            or its cap was already reached
        """

    @abstractmethod
    async def expire_stale(self, now: Optional[datetime] = None) -> list[str]:
        """Persist expiry for active grants past valid_until. Returns their ids."""

    async def find_valid(
        self,
        patient_id: str,
        recipient_id: str,
        data_type: DataType,
        now: Optional[datetime] = None,
    ) -> Optional[ConsentGrant]:
        candidates = await self.find_candidates(patient_id, recipient_id, data_type, now)
        return candidates[0] if candidates else None

    async def revoke(self, grant_id: str, reason: Optional[str], actor_id: str) -> ConsentGrant:
        """
        Move a grant to revoked. Terminal.

        Args:
            grant_id: Grant to revoke
            reason: Free-text revocation reason
            actor_id: User performing the revocation

        Returns:
            The revoked grant

        Raises:
            NotFound: no such grant
            ConsentConflict: already revoked, or changed concurrently
        """
        grant = await self.get_by_id(grant_id)
        if grant.status == ConsentStatus.REVOKED:
            raise ConsentConflict(
                "Consent is already revoked",
                code="CONSENT_ALREADY_REVOKED",
            )
        grant.status = ConsentStatus.REVOKED
        grant.revoked_at = utcnow()
        grant.revoked_by = actor_id
        grant.revocation_reason = reason
        return await self.update(grant)

    async def set_status(self, grant_id: str, status: ConsentStatus) -> ConsentGrant:
        """Administrative active <-> suspended transition."""
        grant = await self.get_by_id(grant_id)
        allowed = {
            ConsentStatus.SUSPENDED: ConsentStatus.ACTIVE,
            ConsentStatus.ACTIVE: ConsentStatus.SUSPENDED,
        }
        if grant.status in TERMINAL_STATUSES or allowed.get(status) != grant.status:
            raise ConsentConflict(
                f"Cannot move consent from {grant.status.value} to {status.value}",
                code="CONSENT_INVALID_TRANSITION",
            )
        grant.status = status
        return await self.update(grant)

    async def stats(self, patient_id: str, now: Optional[datetime] = None) -> dict:
        """Counts by effective status and by data type."""
        now = as_utc(now or utcnow())
        grants = await self.find_by_patient(patient_id, status=None, now=now)
        by_status = Counter(g.effective_status(now).value for g in grants)
        by_type = Counter(g.data_type.value for g in grants)
        return {
            "total": len(grants),
            "statusBreakdown": [{"status": s, "count": c} for s, c in sorted(by_status.items())],
            "dataTypeBreakdown": [{"dataType": t, "count": c} for t, c in sorted(by_type.items())],
        }


# ==================================
# In-memory implementation
# ==================================

class InMemoryConsentStore(ConsentStore):
    """
    Process-local consent store.

    Grants are stored as private copies; callers always get copies back,
    so nothing outside the store can mutate persisted state.
    """

    def __init__(self, grants: Optional[Iterable[ConsentGrant]] = None) -> None:
        self._grants: dict[str, ConsentGrant] = {}
        for grant in grants or ():
            self._grants[grant.id] = grant.copy()

    def _matching(self, predicate: Callable[[ConsentGrant], bool]) -> list[ConsentGrant]:
        return [g.copy() for g in self._grants.values() if predicate(g)]

    def _compare_and_swap(self, expected_version: int, new: ConsentGrant) -> bool:
        current = self._grants.get(new.id)
        if current is None or current.version != expected_version:
            return False
        self._grants[new.id] = new.copy()
        return True

    def _emergency_slot_taken(self, grant: ConsentGrant) -> bool:
        now = utcnow()
        return any(
            g.id != grant.id
            and g.patient_id == grant.patient_id
            and g.recipient_id == grant.recipient_id
            and g.data_type == DataType.ALL_RECORDS
            and g.emergency_access.is_emergency
            and g.effective_status(now) == ConsentStatus.ACTIVE
            for g in self._grants.values()
        )

    async def create(self, grant: ConsentGrant) -> ConsentGrant:
        validate_grant(grant)
        if grant.id in self._grants:
            raise ConsentConflict(f"Consent {grant.id} already exists")
        if (
            grant.emergency_access.is_emergency
            and grant.data_type == DataType.ALL_RECORDS
            and self._emergency_slot_taken(grant)
        ):
            raise ConsentConflict("An active emergency grant already exists")

        grant.sign()
        self._grants[grant.id] = grant.copy()
        logger.info(
            f"Consent created: id={grant.id}, patient={grant.patient_id}, "
            f"recipient={grant.recipient_id}, type={grant.data_type.value}"
        )
        return grant.copy()

    async def get_by_id(self, grant_id: str) -> ConsentGrant:
        grant = self._grants.get(grant_id)
        if grant is None:
            raise NotFound("Consent not found", code="CONSENT_NOT_FOUND")
        return grant.copy()

    async def find_candidates(
        self,
        patient_id: str,
        recipient_id: str,
        data_type: DataType,
        now: Optional[datetime] = None,
    ) -> list[ConsentGrant]:
        now = as_utc(now or utcnow())
        found = self._matching(
            lambda g: g.patient_id == patient_id
            and g.recipient_id == recipient_id
            and g.covers(data_type)
            and g.status == ConsentStatus.ACTIVE
            and as_utc(g.valid_from) <= now <= as_utc(g.valid_until)
        )
        return sorted(found, key=lambda g: _candidate_order(g, data_type))

    async def find_by_patient(
        self,
        patient_id: str,
        status: Optional[ConsentStatus] = ConsentStatus.ACTIVE,
        now: Optional[datetime] = None,
    ) -> list[ConsentGrant]:
        now = as_utc(now or utcnow())
        found = self._matching(
            lambda g: g.patient_id == patient_id and status_matches(g, status, now)
        )
        return sorted(found, key=lambda g: as_utc(g.granted_at), reverse=True)

    async def find_by_recipient(
        self,
        recipient_id: str,
        status: Optional[ConsentStatus] = ConsentStatus.ACTIVE,
        now: Optional[datetime] = None,
    ) -> list[ConsentGrant]:
        now = as_utc(now or utcnow())
        found = self._matching(
            lambda g: g.recipient_id == recipient_id and status_matches(g, status, now)
        )
        return sorted(found, key=lambda g: as_utc(g.granted_at), reverse=True)

    async def find_active_all_records(
        self,
        patient_id: str,
        recipient_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[ConsentGrant]:
        candidates = await self.find_candidates(patient_id, recipient_id, DataType.ALL_RECORDS, now)
        exact = [g for g in candidates if g.data_type == DataType.ALL_RECORDS]
        return exact[0] if exact else None

    async def update(self, grant: ConsentGrant, now: Optional[datetime] = None) -> ConsentGrant:
        now = as_utc(now or utcnow())
        validate_grant(grant, now, creating=False)
        expected_version = grant.version

        if grant.is_time_expired(now):
            grant.status = ConsentStatus.EXPIRED

        new = grant.copy()
        new.version = expected_version + 1
        new.sign()
        if not self._compare_and_swap(expected_version, new):
            if grant.id not in self._grants:
                raise NotFound("Consent not found", code="CONSENT_NOT_FOUND")
            raise ConsentConflict("Consent was modified concurrently")
        return new.copy()

    async def record_access(self, grant_id: str) -> Optional[ConsentGrant]:
        for _ in range(MAX_CAS_ATTEMPTS):
            current = self._grants.get(grant_id)
            if current is None:
                raise NotFound("Consent not found", code="CONSENT_NOT_FOUND")
            if current.status != ConsentStatus.ACTIVE or current.limitations.exhausted:
                return None

            new = current.copy()
            new.limitations.access_count += 1
            if new.limitations.exhausted:
                new.status = ConsentStatus.EXPIRED
            new.version = current.version + 1

            if self._compare_and_swap(current.version, new):
                return new.copy()

        logger.warning(f"record_access gave up after {MAX_CAS_ATTEMPTS} attempts: consent={grant_id}")
        raise ConsentConflict("Consent was modified concurrently")

    async def expire_stale(self, now: Optional[datetime] = None) -> list[str]:
        now = as_utc(now or utcnow())
        expired = []
        for grant in list(self._grants.values()):
            if grant.is_time_expired(now):
                new = grant.copy()
                new.status = ConsentStatus.EXPIRED
                new.version = grant.version + 1
                if self._compare_and_swap(grant.version, new):
                    expired.append(grant.id)
        return expired


# ==================================
# SQLAlchemy implementation
# ==================================

def _row_to_grant(row: ConsentGrantRow) -> ConsentGrant:
    return ConsentGrant(
        id=row.id,
        patient_id=row.patient_id,
        recipient_id=row.recipient_id,
        recipient_role=row.recipient_role,
        data_type=row.data_type,
        purpose=row.purpose,
        status=row.status,
        valid_from=as_utc(row.valid_from),
        valid_until=as_utc(row.valid_until),
        limitations=Limitations(
            max_access_count=row.max_access_count,
            access_count=row.access_count,
            ip_address=row.pinned_ip_address,
            device_fingerprint=row.device_fingerprint,
        ),
        granted_by=row.granted_by,
        granted_at=as_utc(row.granted_at),
        revoked_by=row.revoked_by,
        revoked_at=as_utc(row.revoked_at) if row.revoked_at else None,
        revocation_reason=row.revocation_reason,
        emergency_access=EmergencyAccess(
            is_emergency=row.is_emergency,
            emergency_reason=row.emergency_reason,
            emergency_justification=row.emergency_justification,
            approved_by=row.emergency_approved_by,
        ),
        version=row.version,
        signature=GrantSignature(
            hash=row.signature_hash,
            algorithm=row.signature_algorithm,
            timestamp=as_utc(row.signature_timestamp),
        ) if row.signature_hash and row.signature_timestamp else None,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )


def _grant_columns(grant: ConsentGrant) -> dict:
    """Column values for a grant (everything but the primary key)."""
    return {
        "patient_id": grant.patient_id,
        "recipient_id": grant.recipient_id,
        "recipient_role": grant.recipient_role,
        "data_type": grant.data_type,
        "purpose": grant.purpose,
        "status": grant.status,
        "valid_from": as_utc(grant.valid_from),
        "valid_until": as_utc(grant.valid_until),
        "max_access_count": grant.limitations.max_access_count,
        "access_count": grant.limitations.access_count,
        "pinned_ip_address": grant.limitations.ip_address,
        "device_fingerprint": grant.limitations.device_fingerprint,
        "granted_by": grant.granted_by,
        "granted_at": as_utc(grant.granted_at),
        "revoked_by": grant.revoked_by,
        "revoked_at": as_utc(grant.revoked_at) if grant.revoked_at else None,
        "revocation_reason": grant.revocation_reason,
        "is_emergency": grant.emergency_access.is_emergency,
        "emergency_reason": grant.emergency_access.emergency_reason,
        "emergency_justification": grant.emergency_access.emergency_justification,
        "emergency_approved_by": grant.emergency_access.approved_by,
        "version": grant.version,
        "signature_hash": grant.signature.hash if grant.signature else None,
        "signature_algorithm": grant.signature.algorithm if grant.signature else "SHA256",
        "signature_timestamp": as_utc(grant.signature.timestamp) if grant.signature else None,
        "ip_address": grant.ip_address,
        "user_agent": grant.user_agent,
    }


def _status_clause(status: Optional[ConsentStatus], now: datetime) -> ColumnElement[bool]:
    """WHERE clause for an effective-status filter."""
    if status is None:
        return true()
    if status == ConsentStatus.ACTIVE:
        return and_(
            ConsentGrantRow.status == ConsentStatus.ACTIVE,
            ConsentGrantRow.valid_until >= now,
        )
    if status == ConsentStatus.EXPIRED:
        return or_(
            ConsentGrantRow.status == ConsentStatus.EXPIRED,
            and_(
                ConsentGrantRow.status == ConsentStatus.ACTIVE,
                ConsentGrantRow.valid_until < now,
            ),
        )
    return ConsentGrantRow.status == status


class SqlConsentStore(ConsentStore):
    """
    Consent store backed by the consent_grants table.

    Each call runs in its own short transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _select(
        self,
        *clauses: ColumnElement[bool],
        order_by: Optional[Sequence[Any]] = None,
    ) -> list[ConsentGrant]:
        stmt = select(ConsentGrantRow).where(*clauses)
        if order_by is not None:
            stmt = stmt.order_by(*order_by)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [_row_to_grant(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Consent query failed: {e}")
            raise StorageError("Consent storage unavailable") from e

    async def create(self, grant: ConsentGrant) -> ConsentGrant:
        validate_grant(grant)
        grant.sign()
        row = ConsentGrantRow(id=grant.id, **_grant_columns(grant))
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(row)
        except IntegrityError as e:
            logger.warning(f"Consent create conflict: id={grant.id}: {e}")
            raise ConsentConflict("An active emergency grant already exists") from e
        except SQLAlchemyError as e:
            logger.error(f"Consent create failed: {e}")
            raise StorageError("Consent storage unavailable") from e

        logger.info(
            f"Consent created: id={grant.id}, patient={grant.patient_id}, "
            f"recipient={grant.recipient_id}, type={grant.data_type.value}"
        )
        return grant

    async def get_by_id(self, grant_id: str) -> ConsentGrant:
        found = await self._select(ConsentGrantRow.id == grant_id)
        if not found:
            raise NotFound("Consent not found", code="CONSENT_NOT_FOUND")
        return found[0]

    async def find_candidates(
        self,
        patient_id: str,
        recipient_id: str,
        data_type: DataType,
        now: Optional[datetime] = None,
    ) -> list[ConsentGrant]:
        now = as_utc(now or utcnow())
        found = await self._select(
            ConsentGrantRow.patient_id == patient_id,
            ConsentGrantRow.recipient_id == recipient_id,
            or_(
                ConsentGrantRow.data_type == data_type,
                ConsentGrantRow.data_type == DataType.ALL_RECORDS,
            ),
            ConsentGrantRow.status == ConsentStatus.ACTIVE,
            ConsentGrantRow.valid_from <= now,
            ConsentGrantRow.valid_until >= now,
        )
        return sorted(found, key=lambda g: _candidate_order(g, data_type))

    async def find_by_patient(
        self,
        patient_id: str,
        status: Optional[ConsentStatus] = ConsentStatus.ACTIVE,
        now: Optional[datetime] = None,
    ) -> list[ConsentGrant]:
        now = as_utc(now or utcnow())
        return await self._select(
            ConsentGrantRow.patient_id == patient_id,
            _status_clause(status, now),
            order_by=[ConsentGrantRow.granted_at.desc()],
        )

    async def find_by_recipient(
        self,
        recipient_id: str,
        status: Optional[ConsentStatus] = ConsentStatus.ACTIVE,
        now: Optional[datetime] = None,
    ) -> list[ConsentGrant]:
        now = as_utc(now or utcnow())
        return await self._select(
            ConsentGrantRow.recipient_id == recipient_id,
            _status_clause(status, now),
            order_by=[ConsentGrantRow.granted_at.desc()],
        )

    async def find_active_all_records(
        self,
        patient_id: str,
        recipient_id: str,
        now: Optional[datetime] = None,
    ) -> Optional[ConsentGrant]:
        now = as_utc(now or utcnow())
        found = await self._select(
            ConsentGrantRow.patient_id == patient_id,
            ConsentGrantRow.recipient_id == recipient_id,
            ConsentGrantRow.data_type == DataType.ALL_RECORDS,
            ConsentGrantRow.status == ConsentStatus.ACTIVE,
            ConsentGrantRow.valid_from <= now,
            ConsentGrantRow.valid_until >= now,
            order_by=[ConsentGrantRow.granted_at.desc()],
        )
        return found[0] if found else None

    async def update(self, grant: ConsentGrant, now: Optional[datetime] = None) -> ConsentGrant:
        now = as_utc(now or utcnow())
        validate_grant(grant, now, creating=False)
        expected_version = grant.version

        if grant.is_time_expired(now):
            grant.status = ConsentStatus.EXPIRED

        new = grant.copy()
        new.version = expected_version + 1
        new.sign()

        values = _grant_columns(new)
        values["updated_at"] = now
        stmt = (
            update(ConsentGrantRow)
            .where(
                ConsentGrantRow.id == grant.id,
                ConsentGrantRow.version == expected_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except IntegrityError as e:
            raise ConsentConflict("An active emergency grant already exists") from e
        except SQLAlchemyError as e:
            logger.error(f"Consent update failed: id={grant.id}: {e}")
            raise StorageError("Consent storage unavailable") from e

        if result.rowcount != 1:
            # Distinguish a missing grant from a lost race
            await self.get_by_id(grant.id)
            raise ConsentConflict("Consent was modified concurrently")
        return new

    async def record_access(self, grant_id: str) -> Optional[ConsentGrant]:
        next_count = ConsentGrantRow.access_count + 1
        stmt = (
            update(ConsentGrantRow)
            .where(
                ConsentGrantRow.id == grant_id,
                ConsentGrantRow.status == ConsentStatus.ACTIVE,
                or_(
                    ConsentGrantRow.max_access_count.is_(None),
                    ConsentGrantRow.access_count < ConsentGrantRow.max_access_count,
                ),
            )
            .values(
                access_count=next_count,
                status=case(
                    (
                        and_(
                            ConsentGrantRow.max_access_count.is_not(None),
                            next_count >= ConsentGrantRow.max_access_count,
                        ),
                        ConsentStatus.EXPIRED.value,
                    ),
                    else_=ConsentGrantRow.status,
                ),
                version=ConsentGrantRow.version + 1,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    if result.rowcount != 1:
                        return None
                    row = (
                        await session.execute(
                            select(ConsentGrantRow).where(ConsentGrantRow.id == grant_id)
                        )
                    ).scalar_one()
                    return _row_to_grant(row)
        except SQLAlchemyError as e:
            logger.error(f"record_access failed: consent={grant_id}: {e}")
            raise StorageError("Consent storage unavailable") from e

    async def expire_stale(self, now: Optional[datetime] = None) -> list[str]:
        now = as_utc(now or utcnow())
        stale = await self._select(
            ConsentGrantRow.status == ConsentStatus.ACTIVE,
            ConsentGrantRow.valid_until < now,
        )
        if not stale:
            return []
        ids = [g.id for g in stale]
        stmt = (
            update(ConsentGrantRow)
            .where(
                ConsentGrantRow.id.in_(ids),
                ConsentGrantRow.status == ConsentStatus.ACTIVE,
                ConsentGrantRow.valid_until < now,
            )
            .values(
                status=ConsentStatus.EXPIRED.value,
                version=ConsentGrantRow.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"expire_stale failed: {e}")
            raise StorageError("Consent storage unavailable") from e
        return ids
