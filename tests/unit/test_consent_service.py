"""Tests for consent management operations."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from app.access.consent_service import ConsentService
from app.access.exceptions import Forbidden, NotFound, StorageError, ValidationFailed
from app.access.models import (
    AuditEventType,
    ConsentStatus,
    DataType,
    Limitations,
    Purpose,
    Role,
    utcnow,
)
from app.access.patients import InMemoryPatientDirectory


@pytest.fixture
def patients():
    return InMemoryPatientDirectory({"patient-1": "user-patient-1", "patient-2": "user-patient-2"})


@pytest.fixture
def service(store, evaluator, ledger, patients):
    return ConsentService(store, evaluator, ledger, patients)


async def grant_lab_results(service, principal, request_details, **kwargs):
    return await service.create_consent(
        principal,
        "patient-1",
        recipient_id="doctor-1",
        recipient_role=Role.DOCTOR,
        data_type=kwargs.pop("data_type", DataType.LAB_RESULTS),
        purpose=kwargs.pop("purpose", Purpose.DIAGNOSIS),
        valid_until=kwargs.pop("valid_until", utcnow() + timedelta(days=30)),
        request=request_details,
        **kwargs,
    )


class TestCreateConsent:

    @pytest.mark.asyncio
    async def test_patient_grants_own_consent(self, service, patient, request_details, repository):
        grant = await grant_lab_results(
            service, patient, request_details, limitations=Limitations(max_access_count=2)
        )

        assert grant.patient_id == "patient-1"
        assert grant.granted_by == "user-patient-1"
        assert grant.status == ConsentStatus.ACTIVE
        assert grant.ip_address == "10.0.0.5"
        assert grant.limitations.max_access_count == 2

        [record] = repository.records
        assert record.event_type == AuditEventType.CONSENT_GRANTED
        assert record.action == "CREATE_CONSENT"
        assert record.consent_id == grant.id
        assert record.data_changes.after["dataType"] == "lab_results"

    @pytest.mark.asyncio
    async def test_patient_cannot_grant_for_another(self, service, other_patient, request_details):
        with pytest.raises(Forbidden) as exc_info:
            await grant_lab_results(service, other_patient, request_details)
        assert exc_info.value.code == "PATIENT_CONSENT_ONLY"

    @pytest.mark.asyncio
    async def test_clinician_cannot_grant(self, service, doctor, request_details):
        with pytest.raises(Forbidden) as exc_info:
            await grant_lab_results(service, doctor, request_details)
        assert exc_info.value.code == "CONSENT_CREATE_PERMISSION_DENIED"

    @pytest.mark.asyncio
    async def test_administrator_can_grant(self, service, admin, request_details):
        grant = await grant_lab_results(service, admin, request_details)
        assert grant.granted_by == "admin-1"

    @pytest.mark.asyncio
    async def test_unknown_patient(self, service, admin, request_details):
        with pytest.raises(NotFound):
            await service.create_consent(
                admin,
                "patient-9",
                recipient_id="doctor-1",
                recipient_role=Role.DOCTOR,
                data_type=DataType.VISITS,
                purpose=Purpose.TREATMENT,
                valid_until=utcnow() + timedelta(days=1),
                request=request_details,
            )

    @pytest.mark.asyncio
    async def test_past_end_date_rejected(self, service, patient, request_details, repository):
        with pytest.raises(ValidationFailed) as exc_info:
            await grant_lab_results(
                service, patient, request_details, valid_until=utcnow() - timedelta(days=1)
            )

        assert "Valid until date must be in the future" in exc_info.value.errors
        assert len(repository) == 0


class TestListConsents:

    @pytest.mark.asyncio
    async def test_patient_lists_own(self, service, patient, request_details, repository):
        await grant_lab_results(service, patient, request_details)

        consents = await service.list_patient_consents(patient, "patient-1", request_details)

        assert len(consents) == 1
        assert repository.records[-1].action == "VIEW_PATIENT_CONSENTS"
        assert repository.records[-1].data_accessed.record_count == 1

    @pytest.mark.asyncio
    async def test_patient_cannot_list_another(self, service, other_patient, request_details):
        with pytest.raises(Forbidden) as exc_info:
            await service.list_patient_consents(other_patient, "patient-1", request_details)
        assert exc_info.value.code == "PATIENT_CONSENT_ACCESS_DENIED"

    @pytest.mark.asyncio
    async def test_clinician_may_list(self, service, patient, nurse, request_details):
        await grant_lab_results(service, patient, request_details)
        assert len(await service.list_patient_consents(nurse, "patient-1", request_details)) == 1

    @pytest.mark.asyncio
    async def test_status_filter(self, service, patient, request_details):
        grant = await grant_lab_results(service, patient, request_details)
        await service.revoke_consent(patient, grant.id, request_details)

        assert await service.list_patient_consents(patient, "patient-1", request_details) == []
        revoked = await service.list_patient_consents(
            patient, "patient-1", request_details, status=ConsentStatus.REVOKED
        )
        assert [g.id for g in revoked] == [grant.id]

    @pytest.mark.asyncio
    async def test_recipient_view(self, service, patient, doctor, request_details):
        await grant_lab_results(service, patient, request_details)

        consents = await service.list_recipient_consents(doctor, request_details)

        assert [g.recipient_id for g in consents] == ["doctor-1"]


class TestConsentMutations:

    @pytest.mark.asyncio
    async def test_revoke(self, service, evaluator, patient, request_details, repository):
        grant = await grant_lab_results(service, patient, request_details)

        revoked = await service.revoke_consent(patient, grant.id, request_details, reason="second opinion")

        assert revoked.status == ConsentStatus.REVOKED
        assert revoked.revoked_by == "user-patient-1"
        assert revoked.revocation_reason == "second opinion"
        assert await evaluator.is_allowed(
            "patient-1", "doctor-1", DataType.LAB_RESULTS, Purpose.DIAGNOSIS
        ) is False

        record = repository.records[-1]
        assert record.event_type == AuditEventType.CONSENT_REVOKED
        assert record.data_changes.before == {"status": "active"}
        assert record.data_changes.after["status"] == "revoked"

    @pytest.mark.asyncio
    async def test_only_owner_revokes(self, service, patient, other_patient, request_details):
        grant = await grant_lab_results(service, patient, request_details)

        with pytest.raises(Forbidden) as exc_info:
            await service.revoke_consent(other_patient, grant.id, request_details)
        assert exc_info.value.code == "PATIENT_CONSENT_REVOKE_ONLY"

    @pytest.mark.asyncio
    async def test_revoke_missing(self, service, patient, request_details):
        with pytest.raises(NotFound):
            await service.revoke_consent(patient, "missing", request_details)

    @pytest.mark.asyncio
    async def test_update_purpose_and_limits(self, service, patient, request_details, repository):
        grant = await grant_lab_results(service, patient, request_details)

        updated = await service.update_consent(
            patient,
            grant.id,
            request_details,
            purpose=Purpose.FOLLOW_UP,
            limitations={"max_access_count": 5, "access_count": 99},
        )

        assert updated.purpose == Purpose.FOLLOW_UP
        assert updated.limitations.max_access_count == 5
        assert updated.limitations.access_count == 0
        assert updated.version == grant.version + 1

        record = repository.records[-1]
        assert record.action == "UPDATE_CONSENT"
        assert record.data_changes.changes == ["purpose", "limitations.max_access_count"]

    @pytest.mark.asyncio
    async def test_update_rejects_past_end_date(self, service, patient, request_details):
        grant = await grant_lab_results(service, patient, request_details)

        with pytest.raises(ValidationFailed):
            await service.update_consent(
                patient, grant.id, request_details, valid_until=utcnow() - timedelta(hours=1)
            )

    @pytest.mark.asyncio
    async def test_suspend_and_reinstate(self, service, evaluator, patient, admin, request_details):
        grant = await grant_lab_results(service, patient, request_details)

        suspended = await service.suspend_consent(admin, grant.id, request_details)
        assert suspended.status == ConsentStatus.SUSPENDED
        assert await evaluator.is_allowed(
            "patient-1", "doctor-1", DataType.LAB_RESULTS, Purpose.DIAGNOSIS
        ) is False

        reinstated = await service.reinstate_consent(admin, grant.id, request_details)
        assert reinstated.status == ConsentStatus.ACTIVE
        assert await evaluator.is_allowed(
            "patient-1", "doctor-1", DataType.LAB_RESULTS, Purpose.DIAGNOSIS
        ) is True

    @pytest.mark.asyncio
    async def test_patient_cannot_suspend(self, service, patient, request_details):
        grant = await grant_lab_results(service, patient, request_details)

        with pytest.raises(Forbidden) as exc_info:
            await service.suspend_consent(patient, grant.id, request_details)
        assert exc_info.value.code == "CONSENT_SUSPEND_PERMISSION_DENIED"


class TestConsentQueries:

    @pytest.mark.asyncio
    async def test_check_does_not_count_access(
        self, service, store, doctor, patient, request_details, repository
    ):
        grant = await grant_lab_results(
            service, patient, request_details, limitations=Limitations(max_access_count=1)
        )

        for _ in range(3):
            result = await service.check_consent(
                doctor, "patient-1", "doctor-1", DataType.LAB_RESULTS, request_details,
                purpose=Purpose.DIAGNOSIS,
            )
            assert result["hasConsent"] is True
            assert result["consent"]["id"] == grant.id

        assert (await store.get_by_id(grant.id)).limitations.access_count == 0
        assert repository.records[-1].action == "CHECK_CONSENT"

    @pytest.mark.asyncio
    async def test_check_reports_reason(self, service, doctor, request_details):
        result = await service.check_consent(
            doctor, "patient-1", "doctor-1", DataType.LAB_RESULTS, request_details
        )
        assert result == {"hasConsent": False, "reason": "no_grant", "consent": None}

    @pytest.mark.asyncio
    async def test_stats(self, service, patient, request_details):
        await grant_lab_results(service, patient, request_details)
        visits = await grant_lab_results(service, patient, request_details, data_type=DataType.VISITS)
        await service.revoke_consent(patient, visits.id, request_details)

        stats = await service.consent_stats(patient, "patient-1", request_details)

        assert stats["total"] == 2
        assert stats["statusBreakdown"] == [
            {"status": "active", "count": 1},
            {"status": "revoked", "count": 1},
        ]

    @pytest.mark.asyncio
    async def test_stats_permission(self, service, other_patient, request_details):
        with pytest.raises(Forbidden) as exc_info:
            await service.consent_stats(other_patient, "patient-1", request_details)
        assert exc_info.value.code == "PATIENT_CONSENT_STATS_ACCESS_DENIED"

    @pytest.mark.asyncio
    async def test_expire_stale(self, service, store, make_grant, repository):
        grant = await store.create(make_grant())
        later = grant.valid_until + timedelta(minutes=1)

        assert await service.expire_stale(later) == [grant.id]
        assert await service.expire_stale(later) == []

        [record] = repository.records
        assert record.action == "EXPIRE_STALE_CONSENTS"
        assert record.data_changes.after["consentIds"] == [grant.id]


class TestStorageFailures:

    @pytest.mark.asyncio
    async def test_create_failure_is_audited(self, service, store, patient, request_details, repository):
        store.create = AsyncMock(side_effect=StorageError("Consent storage unavailable"))

        with pytest.raises(StorageError):
            await grant_lab_results(service, patient, request_details)

        [record] = repository.records
        assert record.event_type == AuditEventType.SYSTEM_ERROR
        assert record.action == "CREATE_CONSENT_ERROR"
        assert record.target_patient_id == "patient-1"
        assert record.security_event.anomaly_details == "Consent storage unavailable"

    @pytest.mark.asyncio
    async def test_revoke_failure_is_audited(self, service, store, patient, request_details, repository):
        grant = await grant_lab_results(service, patient, request_details)
        store.revoke = AsyncMock(side_effect=StorageError("Consent storage unavailable"))

        with pytest.raises(StorageError):
            await service.revoke_consent(patient, grant.id, request_details)

        record = repository.records[-1]
        assert record.action == "REVOKE_CONSENT_ERROR"
        assert record.consent_id == grant.id
        assert [r.event_type for r in repository.records].count(AuditEventType.SYSTEM_ERROR) == 1

    @pytest.mark.asyncio
    async def test_update_failure_is_audited(self, service, store, patient, request_details, repository):
        grant = await grant_lab_results(service, patient, request_details)
        store.update = AsyncMock(side_effect=StorageError("Consent storage unavailable"))

        with pytest.raises(StorageError):
            await service.update_consent(patient, grant.id, request_details, purpose=Purpose.FOLLOW_UP)

        assert repository.records[-1].action == "UPDATE_CONSENT_ERROR"
        assert repository.records[-1].target_patient_id == "patient-1"

    @pytest.mark.asyncio
    async def test_suspend_failure_is_audited(
        self, service, store, patient, admin, request_details, repository
    ):
        grant = await grant_lab_results(service, patient, request_details)
        store.set_status = AsyncMock(side_effect=StorageError("Consent storage unavailable"))

        with pytest.raises(StorageError):
            await service.suspend_consent(admin, grant.id, request_details)

        assert repository.records[-1].action == "SUSPEND_CONSENT_ERROR"
        assert (await store.get_by_id(grant.id)).status == ConsentStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_permission_errors_are_not_storage_errors(
        self, service, other_patient, request_details, repository
    ):
        with pytest.raises(Forbidden):
            await grant_lab_results(service, other_patient, request_details)
        assert len(repository) == 0
