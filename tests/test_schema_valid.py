"""
Schema tests: claim validation, stored timestamps and domain record helpers.
"""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from plan_acceptance.api import schemas as api_schemas
from plan_acceptance.core.db import from_db_time, get_db, health_check, init_db, to_db_time
from plan_acceptance.core.errors import StoreUnavailableError
from plan_acceptance.core.schema import (
    AcceptanceKey,
    AcceptanceRecord,
    AcceptanceStatus,
    DataSource,
    VerificationClaim,
)

NOW = datetime(2025, 8, 15, 12, 0, tzinfo=timezone.utc)


class TestVerificationClaim:
    """Test claim validation."""

    def test_valid_claim_normalized(self):
        claim = VerificationClaim(
            provider_key="  npi-1 ",
            plan_key="plan-a",
            location_key="   ",
            accepts_insurance=False,
            submitted_by="",
            origin_fingerprint="fp",
            evidence_url="https://example.org/eob.pdf",
        )

        assert claim.provider_key == "npi-1"
        assert claim.location_key is None
        assert claim.submitted_by is None
        assert claim.data_source == DataSource.COMMUNITY_SUBMITTED

    def test_blank_plan_rejected(self):
        with pytest.raises(PydanticValidationError) as exc_info:
            VerificationClaim(provider_key="npi-1", plan_key=" ", accepts_insurance=True, origin_fingerprint="fp")
        assert "must not be blank" in str(exc_info.value)

    def test_evidence_url_scheme(self):
        with pytest.raises(PydanticValidationError) as exc_info:
            VerificationClaim(provider_key="npi-1", plan_key="p", accepts_insurance=True,
                              origin_fingerprint="fp", evidence_url="javascript:alert(1)")
        assert "http(s)" in str(exc_info.value)

    @pytest.mark.parametrize("tag", ["official-registry", "OFFICIAL_REGISTRY", "official_registry"])
    def test_data_source_spellings(self, tag):
        claim = VerificationClaim(provider_key="npi-1", plan_key="p", accepts_insurance=True,
                                  origin_fingerprint="fp", data_source=tag)
        assert claim.data_source == DataSource.OFFICIAL_REGISTRY

    def test_unrecognised_data_source_rejected(self):
        with pytest.raises(PydanticValidationError):
            VerificationClaim(provider_key="npi-1", plan_key="p", accepts_insurance=True,
                              origin_fingerprint="fp", data_source="fax-machine")

    def test_claim_model_shared_with_api(self):
        assert api_schemas.VerificationClaim is VerificationClaim

    def test_unknown_fields_ignored(self):
        claim = VerificationClaim.model_validate({
            "provider_key": "npi-1", "plan_key": "p", "accepts_insurance": True,
            "origin_fingerprint": "fp", "captcha_token": "abc",
        })
        assert not hasattr(claim, "captcha_token")


class TestDomainRecords:
    """Test keys, sources and acceptance record helpers."""

    def test_key_storage_location(self):
        assert AcceptanceKey("npi", "plan").as_params() == ("npi", "plan", "")
        assert AcceptanceKey("npi", "plan", "loc").storage_location == "loc"

    @pytest.mark.parametrize("value,expected", [
        ("OFFICIAL_REGISTRY", DataSource.OFFICIAL_REGISTRY),
        ("community-submitted", DataSource.COMMUNITY_SUBMITTED),
        (" Provider-Confirmed ", DataSource.PROVIDER_CONFIRMED),
        (DataSource.AUTOMATED, DataSource.AUTOMATED),
        ("crowd", DataSource.UNKNOWN),
        (None, DataSource.UNKNOWN),
    ])
    def test_data_source_parse(self, value, expected):
        assert DataSource.parse(value) == expected

    def test_display_status_when_expired(self):
        record = AcceptanceRecord(
            provider_key="npi", plan_key="plan", location_key=None,
            status=AcceptanceStatus.ACCEPTED, confidence_score=80,
            last_verified_at=NOW - timedelta(days=100), verification_count=3,
            expires_at=NOW + timedelta(days=80), updated_at=NOW,
        )

        assert record.display_status(NOW) == AcceptanceStatus.ACCEPTED
        assert record.display_status(NOW + timedelta(days=80)) == AcceptanceStatus.UNKNOWN

    def test_same_content_ignores_bookkeeping(self):
        base = dict(provider_key="npi", plan_key="plan", location_key=None, status=AcceptanceStatus.PENDING,
                    confidence_score=55, last_verified_at=NOW, verification_count=1, expires_at=NOW)
        first = AcceptanceRecord(updated_at=NOW, version=1, **base)
        second = AcceptanceRecord(updated_at=NOW + timedelta(hours=1), version=4, **base)

        assert first.same_content(second)
        assert not first.same_content(AcceptanceRecord(updated_at=NOW, **dict(base, confidence_score=56)))


class TestStorage:
    """Test timestamp encoding and database setup."""

    def test_timestamps_sort_chronologically(self):
        earlier = to_db_time(datetime(2025, 1, 9, 23, 59, 59, tzinfo=timezone.utc))
        later = to_db_time(datetime(2025, 1, 10, 0, 0, 0, 1, tzinfo=timezone.utc))

        assert earlier < later
        assert from_db_time(later) == datetime(2025, 1, 10, 0, 0, 0, 1, tzinfo=timezone.utc)

    def test_naive_and_offset_times_normalized(self):
        offset = timezone(timedelta(hours=-5))

        assert to_db_time(datetime(2025, 1, 1, 7, 0)) == "2025-01-01T07:00:00.000000+00:00"
        assert to_db_time(datetime(2025, 1, 1, 2, 0, tzinfo=offset)) == "2025-01-01T07:00:00.000000+00:00"
        assert to_db_time(None) is None

    def test_init_db_is_idempotent(self, tmp_path):
        path = str(tmp_path / "schema.db")
        init_db(path)
        init_db(path)

        assert health_check(path) is True

    def test_vote_direction_constraint(self, tmp_path):
        path = str(tmp_path / "schema.db")
        init_db(path)

        with get_db(path) as conn:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute(
                    "INSERT INTO votes (verification_id, voter_fingerprint, direction, created_at, updated_at) "
                    "VALUES ('v', 'fp', 'sideways', 'x', 'x')"
                )

    def test_unopenable_database(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("file where a directory should be")

        with pytest.raises(StoreUnavailableError):
            with get_db(str(blocker / "acceptance.db")):
                pass
