"""Tests for the access gateway."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.access.audit_writer import AuditWriter
from app.access.exceptions import ConsentDenied, StorageError, ValidationFailed
from app.access.gateway import AccessBasis, AccessGateway
from app.access.models import (
    AuditEventType,
    DataType,
    Limitations,
    Purpose,
    RequestDetails,
    ThreatLevel,
)


def details(endpoint: str) -> RequestDetails:
    return RequestDetails(
        ip_address="10.0.0.5",
        user_agent="pytest",
        endpoint=endpoint,
        method="GET",
    )


LAB_RESULTS = details("/patients/patient-1/lab-results")


@pytest.fixture
def gateway(evaluator, ledger):
    return AccessGateway(evaluator, ledger)


class TestAccessGateway:

    @pytest.mark.asyncio
    async def test_administrator_bypass_is_audited(self, gateway, admin, repository):
        context = await gateway.authorize(admin, "patient-1", LAB_RESULTS)

        assert context.basis == AccessBasis.ADMINISTRATOR_BYPASS
        assert context.consent_verified is False

        [record] = repository.records
        assert record.action == "CONSENT_BYPASS"
        assert record.security_event.is_security_event is True
        assert record.security_event.threat_level == ThreatLevel.MEDIUM
        assert record.compliance.gdpr_relevant and record.compliance.hipaa_relevant

    @pytest.mark.asyncio
    async def test_patient_reads_own_record(self, gateway, patient, repository):
        context = await gateway.authorize(patient, "patient-1", LAB_RESULTS)

        assert context.basis == AccessBasis.SELF_ACCESS
        assert [r.action for r in repository.records] == ["SELF_ACCESS"]

    @pytest.mark.asyncio
    async def test_patient_cannot_read_other_patient(self, gateway, other_patient, repository):
        with pytest.raises(ConsentDenied):
            await gateway.authorize(other_patient, "patient-1", LAB_RESULTS)

        assert [r.action for r in repository.records] == ["CONSENT_VIOLATION"]

    @pytest.mark.asyncio
    async def test_consented_access(self, gateway, doctor, store, make_grant, repository):
        grant = await store.create(make_grant(limitations=Limitations(max_access_count=3)))

        context = await gateway.authorize(doctor, "patient-1", LAB_RESULTS)

        assert context.basis == AccessBasis.CONSENT
        assert context.consent_verified is True
        assert context.consent_id == grant.id
        assert context.data_type == DataType.LAB_RESULTS
        assert context.purpose == Purpose.DIAGNOSIS
        assert (await store.get_by_id(grant.id)).limitations.access_count == 1

        [record] = repository.records
        assert record.action == "CONSENT_VERIFIED_ACCESS"
        assert record.consent_verified is True
        assert record.consent_id == grant.id
        assert record.data_accessed.consent_granted is True

    @pytest.mark.asyncio
    async def test_denied_without_consent(self, gateway, doctor, repository):
        with pytest.raises(ConsentDenied) as exc_info:
            await gateway.authorize(doctor, "patient-1", LAB_RESULTS)

        error = exc_info.value
        assert error.status_code == 403
        assert error.to_dict() == {
            "success": False,
            "message": "Patient consent required for this access",
            "code": "CONSENT_REQUIRED",
            "dataType": "lab_results",
            "purpose": "diagnosis",
        }

        [record] = repository.records
        assert record.action == "CONSENT_VIOLATION"
        assert record.security_event.anomaly_detected is True
        assert record.data_accessed.consent_granted is False

    @pytest.mark.asyncio
    async def test_explicit_scope_overrides_path(self, gateway, doctor, store, make_grant):
        await store.create(make_grant(data_type=DataType.MEDICATIONS, purpose=Purpose.TREATMENT))

        context = await gateway.authorize(
            doctor,
            "patient-1",
            details("/patients/patient-1"),
            data_type=DataType.MEDICATIONS,
            purpose=Purpose.FOLLOW_UP,
        )
        assert context.consent_verified is True

    @pytest.mark.asyncio
    async def test_single_use_grant(self, gateway, doctor, store, make_grant):
        await store.create(make_grant(limitations=Limitations(max_access_count=1)))

        await gateway.authorize(doctor, "patient-1", LAB_RESULTS)
        with pytest.raises(ConsentDenied):
            await gateway.authorize(doctor, "patient-1", LAB_RESULTS)

    @pytest.mark.asyncio
    async def test_lost_race_is_denied(self, gateway, evaluator, doctor, store, make_grant, repository):
        await store.create(make_grant())

        with patch.object(evaluator, "record_access", AsyncMock(return_value=None)):
            with pytest.raises(ConsentDenied):
                await gateway.authorize(doctor, "patient-1", LAB_RESULTS)

        assert [r.action for r in repository.records] == ["CONSENT_VIOLATION"]

    @pytest.mark.asyncio
    async def test_store_failure_fails_closed(self, gateway, doctor, store, repository):
        store.find_candidates = AsyncMock(side_effect=RuntimeError("connection reset"))

        with pytest.raises(StorageError) as exc_info:
            await gateway.authorize(doctor, "patient-1", LAB_RESULTS)

        assert exc_info.value.code == "CONSENT_CHECK_ERROR"
        [record] = repository.records
        assert record.event_type == AuditEventType.SYSTEM_ERROR
        assert record.action == "CONSENT_CHECK_ERROR"

    @pytest.mark.asyncio
    async def test_missing_patient_id(self, gateway, doctor, repository):
        with pytest.raises(ValidationFailed):
            await gateway.authorize(doctor, "", LAB_RESULTS)
        assert len(repository) == 0

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_change_decision(
        self, gateway, doctor, store, make_grant, repository
    ):
        await store.create(make_grant())

        with patch.object(repository, "insert", AsyncMock(side_effect=RuntimeError("disk full"))):
            context = await gateway.authorize(doctor, "patient-1", LAB_RESULTS)

        assert context.consent_verified is True

    @pytest.mark.asyncio
    async def test_slow_audit_does_not_block(self, evaluator, doctor, store, make_grant):
        async def slow_write(record):
            await asyncio.sleep(1)

        slow_ledger = MagicMock()
        slow_ledger.write = slow_write
        writer = AuditWriter(slow_ledger)
        gateway = AccessGateway(evaluator, writer)
        await store.create(make_grant())

        context = await asyncio.wait_for(
            gateway.authorize(doctor, "patient-1", LAB_RESULTS),
            timeout=0.5,
        )

        assert context.consent_verified is True
        assert writer.pending + writer.written <= 1
        await writer.stop(timeout=0.01)

    def test_context_to_dict(self):
        from app.access.gateway import AccessContext

        context = AccessContext(
            patient_id="patient-1",
            data_type=DataType.LAB_RESULTS,
            purpose=Purpose.DIAGNOSIS,
            basis=AccessBasis.CONSENT,
            consent_verified=True,
            consent_id="c-1",
        )
        assert context.to_dict() == {
            "patientId": "patient-1",
            "dataType": "lab_results",
            "purpose": "diagnosis",
            "basis": "consent",
            "consentVerified": True,
            "consentId": "c-1",
            "emergencyAccess": False,
        }
