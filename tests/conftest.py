"""Shared fixtures for access control tests."""

from datetime import timedelta

import pytest

from app.access.audit_ledger import AuditLedger
from app.access.audit_repository import InMemoryAuditRepository
from app.access.consent_evaluator import ConsentEvaluator
from app.access.consent_store import InMemoryConsentStore
from app.access.models import (
    ConsentGrant,
    DataType,
    Limitations,
    Principal,
    Purpose,
    RequestDetails,
    Role,
    utcnow,
)


@pytest.fixture
def request_details():
    """Request metadata as the HTTP layer would produce it."""
    return RequestDetails(
        ip_address="10.0.0.5",
        user_agent="pytest",
        endpoint="/patients/patient-1",
        method="GET",
    )


@pytest.fixture
def patient():
    return Principal(id="user-patient-1", role=Role.PATIENT, patient_id="patient-1")


@pytest.fixture
def other_patient():
    return Principal(id="user-patient-2", role=Role.PATIENT, patient_id="patient-2")


@pytest.fixture
def doctor():
    return Principal(id="doctor-1", role=Role.DOCTOR)


@pytest.fixture
def nurse():
    return Principal(id="nurse-1", role=Role.NURSE)


@pytest.fixture
def receptionist():
    return Principal(id="reception-1", role=Role.RECEPTIONIST)


@pytest.fixture
def admin():
    return Principal(id="admin-1", role=Role.ADMINISTRATOR)


@pytest.fixture
def make_grant():
    """Factory for unsaved grants from patient-1 to doctor-1."""

    def _make(**overrides) -> ConsentGrant:
        now = utcnow()
        values = dict(
            patient_id="patient-1",
            recipient_id="doctor-1",
            recipient_role=Role.DOCTOR,
            data_type=DataType.LAB_RESULTS,
            purpose=Purpose.DIAGNOSIS,
            valid_from=now - timedelta(minutes=5),
            valid_until=now + timedelta(days=30),
            granted_by="user-patient-1",
            granted_at=now,
            limitations=Limitations(),
        )
        values.update(overrides)
        return ConsentGrant(**values)

    return _make


@pytest.fixture
def store():
    return InMemoryConsentStore()


@pytest.fixture
def evaluator(store):
    return ConsentEvaluator(store, timeout=1.0)


@pytest.fixture
def repository():
    return InMemoryAuditRepository()


@pytest.fixture
def ledger(repository):
    return AuditLedger(repository, server_name="test-host", write_timeout=1.0)
