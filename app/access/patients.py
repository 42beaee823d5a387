"""
Patient directory.

Answers the two questions the access layer asks about patients: does
this patient exist, and which patient record belongs to this user.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.access.exceptions import NotFound
from app.models.database import Patient

logger = logging.getLogger(__name__)


class PatientDirectory(ABC):

    @abstractmethod
    async def exists(self, patient_id: str) -> bool:
        ...

    @abstractmethod
    async def patient_for_user(self, user_id: str) -> Optional[str]:
        """Id of the patient record linked to a user account, if any."""

    async def require(self, patient_id: str) -> None:
        """Raises NotFound if the patient does not exist."""
        if not await self.exists(patient_id):
            raise NotFound("Patient not found", code="PATIENT_NOT_FOUND")


class InMemoryPatientDirectory(PatientDirectory):
    """
    Patient directory backed by a dict of patient id -> user id.

    Constructed without a mapping it knows no links and treats every
    patient id as existing (open directory for local runs).
    """

    def __init__(self, patients: Optional[dict[str, Optional[str]]] = None) -> None:
        self._open = patients is None
        self._patients: dict[str, Optional[str]] = dict(patients or {})

    def add(self, patient_id: str, user_id: Optional[str] = None) -> None:
        self._patients[patient_id] = user_id

    async def exists(self, patient_id: str) -> bool:
        return self._open or patient_id in self._patients

    async def patient_for_user(self, user_id: str) -> Optional[str]:
        for patient_id, owner in self._patients.items():
            if owner == user_id:
                return patient_id
        return None


class SqlPatientDirectory(PatientDirectory):
    """Patient directory on the patients table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def exists(self, patient_id: str) -> bool:
        stmt = select(Patient.id).where(Patient.id == patient_id, Patient.is_deleted.is_(False))
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none() is not None

    async def patient_for_user(self, user_id: str) -> Optional[str]:
        stmt = select(Patient.id).where(Patient.user_id == user_id, Patient.is_deleted.is_(False))
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()
