"""Tests for consent grant semantics."""

from datetime import timedelta

from app.access.models import (
    ConsentStatus,
    DataType,
    Limitations,
    Principal,
    Purpose,
    RequestDetails,
    Role,
    utcnow,
)


class TestGrantValidity:
    """Validity is re-derived on every call."""

    def test_valid_inside_window(self, make_grant):
        assert make_grant().is_valid() is True

    def test_not_valid_before_start(self, make_grant):
        now = utcnow()
        grant = make_grant(valid_from=now + timedelta(hours=1))
        assert grant.is_valid(now) is False

    def test_not_valid_after_end(self, make_grant):
        grant = make_grant()
        later = grant.valid_until + timedelta(seconds=1)
        assert grant.is_valid(later) is False

    def test_not_valid_when_not_active(self, make_grant):
        for status in (ConsentStatus.REVOKED, ConsentStatus.SUSPENDED, ConsentStatus.EXPIRED):
            assert make_grant(status=status).is_valid() is False

    def test_not_valid_when_cap_reached(self, make_grant):
        grant = make_grant(limitations=Limitations(max_access_count=2, access_count=2))
        assert grant.limitations.exhausted is True
        assert grant.is_valid() is False

    def test_unlimited_grant_never_exhausted(self, make_grant):
        grant = make_grant(limitations=Limitations(access_count=10_000))
        assert grant.is_valid() is True

    def test_lazy_time_expiry(self, make_grant):
        grant = make_grant()
        later = grant.valid_until + timedelta(days=1)

        assert grant.status == ConsentStatus.ACTIVE
        assert grant.is_time_expired(later) is True
        assert grant.effective_status(later) == ConsentStatus.EXPIRED

    def test_revoked_grant_is_not_time_expired(self, make_grant):
        grant = make_grant(status=ConsentStatus.REVOKED)
        later = grant.valid_until + timedelta(days=1)
        assert grant.effective_status(later) == ConsentStatus.REVOKED


class TestGrantMatching:

    def test_all_records_covers_every_type(self, make_grant):
        grant = make_grant(data_type=DataType.ALL_RECORDS)
        assert all(grant.covers(dt) for dt in DataType)

    def test_specific_type_covers_only_itself(self, make_grant):
        grant = make_grant(data_type=DataType.LAB_RESULTS)
        assert grant.covers(DataType.LAB_RESULTS) is True
        assert grant.covers(DataType.MEDICATIONS) is False

    def test_treatment_is_catch_all_purpose(self, make_grant):
        grant = make_grant(purpose=Purpose.TREATMENT)
        assert all(grant.allows_purpose(p) for p in Purpose)

    def test_other_purposes_match_exactly(self, make_grant):
        grant = make_grant(purpose=Purpose.RESEARCH)
        assert grant.allows_purpose(Purpose.RESEARCH) is True
        assert grant.allows_purpose(Purpose.DIAGNOSIS) is False


class TestGrantSignature:

    def test_signature_is_deterministic(self, make_grant):
        grant = make_grant()
        assert grant.compute_signature_hash() == grant.compute_signature_hash()
        assert len(grant.compute_signature_hash()) == 64

    def test_signature_survives_usage_counting(self, make_grant):
        grant = make_grant(limitations=Limitations(max_access_count=5))
        grant.sign()
        signed = grant.signature.hash

        grant.limitations.access_count += 1
        grant.version += 1
        assert grant.compute_signature_hash() == signed

    def test_signature_changes_with_scope(self, make_grant):
        grant = make_grant()
        before = grant.compute_signature_hash()
        grant.purpose = Purpose.TREATMENT
        assert grant.compute_signature_hash() != before

    def test_to_dict_hides_signature_hash(self, make_grant):
        grant = make_grant()
        grant.sign()
        data = grant.to_dict()

        assert "hash" not in data["signature"]
        assert data["signature"]["algorithm"] == "SHA256"
        assert data["status"] == "active"
        assert data["isValid"] is True

    def test_to_dict_reports_lazy_expiry(self, make_grant):
        grant = make_grant()
        data = grant.to_dict(now=grant.valid_until + timedelta(days=2))
        assert data["status"] == "expired"
        assert data["isValid"] is False
        assert data["timeRemaining"] == 0

    def test_copy_is_independent(self, make_grant):
        grant = make_grant(limitations=Limitations(max_access_count=3))
        clone = grant.copy()
        clone.limitations.access_count = 3
        assert grant.limitations.access_count == 0


class TestPrincipal:

    def test_patient_owns_linked_record(self):
        principal = Principal(id="u1", role=Role.PATIENT, patient_id="p1")
        assert principal.owns("p1") is True
        assert principal.owns("p2") is False

    def test_unlinked_patient_owns_nothing(self):
        assert Principal(id="u1", role=Role.PATIENT).owns("p1") is False

    def test_staff_never_own_patient_records(self):
        assert Principal(id="p1", role=Role.DOCTOR, patient_id="p1").owns("p1") is False


class TestRequestDetails:

    def test_missing_fields(self):
        details = RequestDetails(ip_address="", user_agent="ua", endpoint="/x", method="GET")
        assert details.missing_fields() == ["ip_address"]

    def test_request_id_generated(self):
        details = RequestDetails(ip_address="1.2.3.4", user_agent="ua", endpoint="/x", method="GET")
        assert details.request_id
        assert details.missing_fields() == []

    def test_internal_details_are_complete(self):
        details = RequestDetails.internal("expire_stale")
        assert details.missing_fields() == []
        assert details.endpoint == "internal:expire_stale"
