"""Tests for emergency (break-glass) access."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from app.access.emergency import EmergencyOverride
from app.access.exceptions import Forbidden, NotFound, StorageError, ValidationFailed
from app.access.gateway import AccessBasis
from app.access.models import AuditEventType, DataType, Purpose, ThreatLevel
from app.access.patients import InMemoryPatientDirectory


@pytest.fixture
def patients():
    return InMemoryPatientDirectory({"patient-1": "user-patient-1"})


@pytest.fixture
def override(store, ledger, patients):
    return EmergencyOverride(store, ledger, patients)


class TestEmergencyOverride:

    @pytest.mark.asyncio
    async def test_reason_and_justification_required(self, override, doctor, request_details):
        with pytest.raises(ValidationFailed) as exc_info:
            await override.invoke(doctor, "patient-1", "cardiac arrest", "  ", request_details)

        error = exc_info.value
        assert error.code == "EMERGENCY_ACCESS_DETAILS_REQUIRED"
        assert error.errors == ["Emergency justification is required"]

    @pytest.mark.asyncio
    async def test_role_without_override(self, override, receptionist, request_details):
        with pytest.raises(Forbidden) as exc_info:
            await override.invoke(receptionist, "patient-1", "fall", "unconscious", request_details)
        assert exc_info.value.code == "EMERGENCY_ACCESS_NOT_PERMITTED"

    @pytest.mark.asyncio
    async def test_unknown_patient(self, store, ledger, doctor, request_details):
        override = EmergencyOverride(store, ledger, InMemoryPatientDirectory({}))

        with pytest.raises(NotFound) as exc_info:
            await override.invoke(doctor, "patient-9", "trauma", "unresponsive", request_details)
        assert exc_info.value.code == "PATIENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_creates_day_long_grant(self, override, doctor, request_details):
        result = await override.invoke(
            doctor, "patient-1", "cardiac arrest", "patient unresponsive in ER", request_details
        )

        grant = result.grant
        assert result.created is True
        assert grant.recipient_id == "doctor-1"
        assert grant.data_type == DataType.ALL_RECORDS
        assert grant.purpose == Purpose.EMERGENCY_CARE
        assert grant.valid_until - grant.valid_from == timedelta(hours=24)
        assert grant.emergency_access.is_emergency is True
        assert grant.emergency_access.approved_by == "doctor-1"

        assert result.context.basis == AccessBasis.EMERGENCY
        assert result.context.emergency_access is True
        assert result.to_dict()["created"] is True

    @pytest.mark.asyncio
    async def test_grant_covers_emergency_care_only(self, override, evaluator, nurse, request_details):
        await override.invoke(nurse, "patient-1", "overdose", "no consent on file", request_details)

        assert await evaluator.is_allowed(
            "patient-1", "nurse-1", DataType.MEDICATIONS, Purpose.EMERGENCY_CARE
        ) is True
        assert await evaluator.is_allowed(
            "patient-1", "nurse-1", DataType.MEDICATIONS, Purpose.BILLING
        ) is False

    @pytest.mark.asyncio
    async def test_second_call_reuses_grant(self, override, store, doctor, request_details):
        first = await override.invoke(doctor, "patient-1", "trauma", "unresponsive", request_details)
        second = await override.invoke(doctor, "patient-1", "trauma", "still unresponsive", request_details)

        assert second.created is False
        assert second.grant.id == first.grant.id
        assert second.grant.emergency_access.emergency_justification == "still unresponsive"
        assert len(await store.find_by_patient("patient-1")) == 1

    @pytest.mark.asyncio
    async def test_reuses_existing_all_records_grant(
        self, override, store, doctor, make_grant, request_details
    ):
        existing = await store.create(make_grant(data_type=DataType.ALL_RECORDS))

        result = await override.invoke(doctor, "patient-1", "stroke", "time critical", request_details)

        assert result.created is False
        assert result.grant.id == existing.id
        assert result.grant.emergency_access.is_emergency is True

    @pytest.mark.asyncio
    async def test_concurrent_calls_converge(self, override, store, doctor, request_details):
        results = await asyncio.gather(*[
            override.invoke(doctor, "patient-1", "trauma", "unresponsive", request_details)
            for _ in range(5)
        ])

        assert len({r.grant.id for r in results}) == 1
        assert sum(r.created for r in results) == 1
        assert len(await store.find_by_patient("patient-1")) == 1

    @pytest.mark.asyncio
    async def test_high_severity_audit(self, override, doctor, request_details, repository):
        result = await override.invoke(doctor, "patient-1", "trauma", "unresponsive", request_details)

        [record] = repository.records
        assert record.event_type == AuditEventType.EMERGENCY_ACCESS
        assert record.action == "EMERGENCY_ACCESS_GRANTED"
        assert record.consent_id == result.grant.id
        assert record.emergency_access.emergency_reason == "trauma"
        assert record.security_event.threat_level == ThreatLevel.HIGH
        assert record.data_changes.changes == ["created"]

    @pytest.mark.asyncio
    async def test_store_failure_is_audited(self, override, store, doctor, request_details, repository):
        store.create = AsyncMock(side_effect=StorageError("Consent storage unavailable"))

        with pytest.raises(StorageError):
            await override.invoke(doctor, "patient-1", "trauma", "unresponsive", request_details)

        [record] = repository.records
        assert record.event_type == AuditEventType.SYSTEM_ERROR
        assert record.action == "EMERGENCY_ACCESS_ERROR"
        assert record.target_patient_id == "patient-1"
        assert record.security_event.threat_level == ThreatLevel.HIGH
        assert await store.find_by_patient("patient-1") == []
