"""
Consent Evaluator

Decides whether a recipient may touch one category of a patient's data
for one purpose, and counts the access once it is granted.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from app.access.consent_store import ConsentStore
from app.access.exceptions import StorageError
from app.access.models import ConsentGrant, DataType, Purpose, as_utc, utcnow

logger = logging.getLogger(__name__)


class DenialReason(str, Enum):
    """Why a check was denied."""
    NO_GRANT = "no_grant"
    PURPOSE_MISMATCH = "purpose_mismatch"
    USAGE_EXHAUSTED = "usage_exhausted"


@dataclass
class ConsentDecision:
    """Outcome of a consent check."""

    allowed: bool
    grant: Optional[ConsentGrant] = None
    reason: Optional[DenialReason] = None

    @property
    def grant_id(self) -> Optional[str]:
        return self.grant.id if self.grant else None

    def __bool__(self) -> bool:
        return self.allowed


class ConsentEvaluator:
    """
    Pure decision logic over a ConsentStore.

    A patient can hold several live grants for the same recipient
    (an exact data-type grant and an all_records one, say). The first
    candidate that satisfies purpose and usage wins, exact data type
    before all_records.

    Usage:
        evaluator = ConsentEvaluator(store)
        decision = await evaluator.check(patient_id, doctor_id,
                                         DataType.LAB_RESULTS, Purpose.DIAGNOSIS)
        if decision:
            await evaluator.record_access(decision.grant_id)
    """

    def __init__(self, store: ConsentStore, timeout: Optional[float] = None):
        self.store = store
        self.timeout = timeout

    async def check(
        self,
        patient_id: str,
        recipient_id: str,
        data_type: DataType,
        purpose: Purpose,
        now: Optional[datetime] = None,
    ) -> ConsentDecision:
        """
        Evaluate consent at `now`.

        Raises:
            StorageError: if the store fails or the lookup times out
        """
        now = as_utc(now or utcnow())
        try:
            candidates = await asyncio.wait_for(
                self.store.find_candidates(patient_id, recipient_id, data_type, now),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(
                f"Consent lookup timed out after {self.timeout}s: "
                f"patient={patient_id}, recipient={recipient_id}"
            )
            raise StorageError("Consent check timed out", code="CONSENT_CHECK_ERROR") from e

        if not candidates:
            return ConsentDecision(allowed=False, reason=DenialReason.NO_GRANT)

        reason = DenialReason.PURPOSE_MISMATCH
        for grant in candidates:
            if not grant.allows_purpose(purpose):
                continue
            if grant.limitations.exhausted:
                reason = DenialReason.USAGE_EXHAUSTED
                continue
            return ConsentDecision(allowed=True, grant=grant)

        logger.debug(
            f"Consent denied: patient={patient_id}, recipient={recipient_id}, "
            f"type={data_type.value}, purpose={purpose.value}, reason={reason.value}"
        )
        return ConsentDecision(allowed=False, reason=reason)

    async def is_allowed(
        self,
        patient_id: str,
        recipient_id: str,
        data_type: DataType,
        purpose: Purpose,
        now: Optional[datetime] = None,
    ) -> bool:
        decision = await self.check(patient_id, recipient_id, data_type, purpose, now)
        return decision.allowed

    async def record_access(self, grant_id: str) -> Optional[ConsentGrant]:
        """
        Count one granted access against the grant's cap.

        Returns None if a concurrent caller used the last access (or the
        grant stopped being active) between check and increment; the
        access must then be treated as denied.
        """
        try:
            grant = await asyncio.wait_for(self.store.record_access(grant_id), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"record_access timed out after {self.timeout}s: consent={grant_id}")
            raise StorageError("Consent check timed out", code="CONSENT_CHECK_ERROR") from e

        if grant is None:
            logger.warning(f"Access not counted, consent no longer usable: consent={grant_id}")
        elif grant.limitations.exhausted:
            logger.info(f"Consent reached its access cap and expired: consent={grant_id}")
        return grant
