"""
Audit Ledger

Signs, chains and persists audit records, and answers compliance
queries over them.

Write policy: audit delivery is best-effort. append() catches every
failure, logs it on this module's logger and returns None; it never
raises into the operation that produced the record. write() is the
strict variant used by AuditWriter so it can retry.

Chaining: each record's previous_hash is the hash of the record
appended just before it by this ledger ("genesis" for the first), so
verify_chain() can detect removed, re-ordered or edited records.
previous_hash is stored next to the hash rather than folded into it;
a record whose previous_hash alone is edited still verifies on its own
and only shows up as a broken link in verify_chain().
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from app.access.audit_records import GENESIS_HASH, HASH_ALGORITHM, AuditRecord
from app.access.audit_repository import AuditQuery, AuditRepository
from app.access.exceptions import AuditWriteFailed
from app.access.models import AuditEventType, ThreatLevel, utcnow

logger = logging.getLogger(__name__)


class AuditSink(ABC):
    """Anything the access layer can hand an audit record to."""

    @abstractmethod
    async def emit(self, record: AuditRecord) -> None:
        """Deliver a record. Must never raise."""


@dataclass
class ChainVerification:
    """Result of walking the ledger's hash chain."""

    total: int = 0
    linked: int = 0
    tampered: list[str] = field(default_factory=list)
    unlinked: list[str] = field(default_factory=list)
    forks: list[str] = field(default_factory=list)
    genesis_count: int = 0

    @property
    def valid(self) -> bool:
        if self.total == 0:
            return True
        return (
            self.genesis_count == 1
            and not self.tampered
            and not self.unlinked
            and not self.forks
        )

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "total": self.total,
            "linked": self.linked,
            "genesisCount": self.genesis_count,
            "tampered": self.tampered,
            "unlinked": self.unlinked,
            "forks": self.forks,
        }


@dataclass
class ActivitySummary:
    """One user's audit activity over a time window."""

    user_id: str
    hours: int
    total_events: int = 0
    unique_ips: list[str] = field(default_factory=list)
    read_events: int = 0
    security_events: int = 0
    failed_logins: int = 0

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "hours": self.hours,
            "totalEvents": self.total_events,
            "uniqueIPs": self.unique_ips,
            "readEvents": self.read_events,
            "securityEvents": self.security_events,
            "failedLogins": self.failed_logins,
        }


class AuditLedger(AuditSink):
    """
    Append-only, hash-chained audit ledger.

    Usage:
        ledger = AuditLedger(SqlAuditRepository(async_session_factory))
        await ledger.append(AuditRecord(...))        # best-effort
        report = await ledger.verify_chain()

    Writes are serialized: _chain_lock is held from reading the chain tip
    through the repository insert, so one slow insert stalls every
    writer in the process. Request paths submit through AuditWriter,
    whose single worker is the only caller of write(); call append()
    directly only from low-volume paths.
    """

    def __init__(
        self,
        repository: AuditRepository,
        server_name: Optional[str] = None,
        retention_years: int = 7,
        write_timeout: Optional[float] = None,
    ):
        self.repository = repository
        self.server_name = server_name
        self.retention_years = retention_years
        self.write_timeout = write_timeout

        self._last_hash: Optional[str] = None
        self._chain_lock = asyncio.Lock()

    # ==================================
    # Writes
    # ==================================

    def prepare(self, record: AuditRecord) -> AuditRecord:
        """
        Fill ledger-owned fields before signing.

        Raises:
            AuditWriteFailed: if required request details are missing
        """
        missing = record.request_details.missing_fields()
        if missing:
            raise AuditWriteFailed(
                f"Audit record is missing request details: {', '.join(missing)}",
                record_id=record.id,
            )

        system = record.system_details
        if system.timestamp is None:
            system.timestamp = utcnow()
        if system.server_name is None:
            system.server_name = self.server_name
        if system.process_id is None:
            system.process_id = str(os.getpid())
        if not record.compliance.retention_period:
            record.compliance.retention_period = self.retention_years
        return record

    async def write(self, record: AuditRecord) -> AuditRecord:
        """
        Sign, chain and persist one record.

        Args:
            record: Unsealed record; ledger-owned fields are filled in

        Returns:
            The stored record with its hash and previous_hash set

        Raises:
            AuditWriteFailed: on validation, timeout or storage failure
        """
        self.prepare(record)

        async with self._chain_lock:
            try:
                previous = self._last_hash or await self.repository.chain_tip() or GENESIS_HASH
                record.signature.algorithm = HASH_ALGORITHM
                record.signature.previous_hash = previous
                record.signature.hash = record.compute_hash()

                await asyncio.wait_for(self.repository.insert(record), timeout=self.write_timeout)
            except asyncio.TimeoutError as e:
                # Insert may still land; re-read the tip next time
                self._last_hash = None
                raise AuditWriteFailed(
                    f"Audit write timed out after {self.write_timeout}s",
                    record_id=record.id,
                ) from e
            except Exception as e:
                self._last_hash = None
                raise AuditWriteFailed(f"Audit write failed: {e}", record_id=record.id) from e

            self._last_hash = record.signature.hash

        logger.debug(
            f"AUDIT: {record.event_type.value} | {record.action} | "
            f"user={record.user_id} | patient={record.target_patient_id}"
        )
        return record

    async def append(self, record: AuditRecord) -> Optional[AuditRecord]:
        """
        Best-effort write.

        Args:
            record: Record to sign, chain and persist

        Returns:
            The stored record, or None if it was dropped (the failure is logged)
        """
        try:
            return await self.write(record)
        except Exception as e:
            logger.error(
                f"Audit record dropped: id={record.id}, event={record.event_type.value}, "
                f"action={record.action}: {e}"
            )
            return None

    async def emit(self, record: AuditRecord) -> None:
        await self.append(record)

    async def mark_erased(self, record_id: str, when: Optional[datetime] = None) -> None:
        """Stamp deleted_at for an erasure request. Content is kept for auditors."""
        await self.repository.set_deleted_at(record_id, when or utcnow())
        logger.info(f"Audit record marked erased: id={record_id}")

    # ==================================
    # Queries
    # ==================================

    async def find(self, query: AuditQuery) -> list[AuditRecord]:
        return await self.repository.find(query)

    async def find_by_user(self, user_id: str, limit: int = 100) -> list[AuditRecord]:
        return await self.find(AuditQuery(user_id=user_id, limit=limit))

    async def find_by_patient(self, patient_id: str, limit: int = 100) -> list[AuditRecord]:
        return await self.find(AuditQuery(patient_id=patient_id, limit=limit))

    async def find_security_events(self, limit: int = 100) -> list[AuditRecord]:
        return await self.find(AuditQuery(security_only=True, limit=limit))

    async def find_emergency_access(self, limit: int = 100) -> list[AuditRecord]:
        return await self.find(AuditQuery(emergency_only=True, limit=limit))

    async def find_data_breaches(self, limit: int = 100) -> list[AuditRecord]:
        return await self.find(AuditQuery(breach_only=True, limit=limit))

    async def audit_report(
        self,
        patient_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> list[AuditRecord]:
        """
        Everything that touched one patient in [start_time, end_time].

        Args:
            patient_id: Patient the records target
            start_time: Inclusive window start
            end_time: Inclusive window end

        Returns:
            Matching records, newest first, without a result limit
        """
        return await self.find(
            AuditQuery(
                patient_id=patient_id,
                start_time=start_time,
                end_time=end_time,
                limit=None,
            )
        )

    async def detect_anomalies(self, user_id: str, hours: int = 24) -> ActivitySummary:
        records = await self.find(
            AuditQuery(
                user_id=user_id,
                start_time=utcnow() - timedelta(hours=hours),
                limit=None,
            )
        )
        summary = ActivitySummary(user_id=user_id, hours=hours, total_events=len(records))
        ips = set()
        for record in records:
            ips.add(record.request_details.ip_address)
            if record.event_type == AuditEventType.READ:
                summary.read_events += 1
            if record.security_event.is_security_event:
                summary.security_events += 1
            if (
                record.event_type == AuditEventType.LOGIN
                and record.security_event.threat_level == ThreatLevel.MEDIUM
            ):
                summary.failed_logins += 1
        summary.unique_ips = sorted(ips)
        return summary

    # ==================================
    # Integrity
    # ==================================

    @staticmethod
    def verify_record(record: AuditRecord) -> bool:
        """Recompute the canonical digest and compare with the stored hash."""
        return record.verify()

    async def verify_chain(self) -> ChainVerification:
        """
        Walk previous_hash links from the genesis record.

        Order-independent: links are followed by hash, not by timestamp.
        The chain is valid when there is exactly one genesis record,
        every record is reachable from it, no record has two successors,
        and every stored hash matches its recomputed digest.
        """
        links = await self.repository.chain_links()
        result = ChainVerification(total=len(links))
        if not links:
            return result

        result.tampered = [link.record_id for link in links if not link.intact]

        successors = defaultdict(list)
        for link in links:
            successors[link.previous_hash].append(link)

        roots = successors.get(GENESIS_HASH, [])
        result.genesis_count = len(roots)

        visited = set()
        current = roots[0] if roots else None
        while current is not None and current.record_id not in visited:
            visited.add(current.record_id)
            children = successors.get(current.hash, [])
            if len(children) > 1:
                result.forks.append(current.record_id)
            current = children[0] if children else None

        result.linked = len(visited)
        result.unlinked = [link.record_id for link in links if link.record_id not in visited]

        if not result.valid:
            logger.warning(
                f"Audit chain verification failed: total={result.total}, "
                f"tampered={len(result.tampered)}, unlinked={len(result.unlinked)}, "
                f"forks={len(result.forks)}, genesis={result.genesis_count}"
            )
        return result
