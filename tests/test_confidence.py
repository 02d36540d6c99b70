"""
Tests for confidence scoring: factor tables, level capping, explanations and metadata.
"""

import pytest
from datetime import datetime, timedelta, timezone

from plan_acceptance.core.confidence import (
    ConfidenceInput,
    ConfidenceLevel,
    DecayProfile,
    SpecialtyCategory,
    SPECIALTY_NOTES,
    calculate_agreement_score,
    calculate_data_source_score,
    calculate_recency_score,
    calculate_verification_score,
    categorize_specialty,
    days_between,
    get_confidence_level,
    score_confidence,
)
from plan_acceptance.core.schema import DataSource

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def days_ago(days, hours=0):
    return NOW - timedelta(days=days, hours=hours)


class TestFactorTables:
    """Test each factor's lookup table."""

    @pytest.mark.parametrize("source,expected", [
        (DataSource.OFFICIAL_REGISTRY, 25),
        (DataSource.CARRIER_DATA, 20),
        (DataSource.PROVIDER_CONFIRMED, 20),
        (DataSource.COMMUNITY_SUBMITTED, 15),
        (DataSource.AUTOMATED, 10),
        (DataSource.UNKNOWN, 10),
        ("carrier_data", 20),
        ("community-submitted", 15),
        ("OFFICIAL-REGISTRY", 25),
        ("fax_machine", 10),
        (None, 10),
    ])
    def test_data_source_score(self, source, expected):
        assert calculate_data_source_score(source) == expected

    @pytest.mark.parametrize("days,expected", [
        (0, 30), (15, 30), (16, 20), (30, 20), (31, 10), (45, 10), (46, 5), (180, 5), (181, 0), (None, 0),
    ])
    def test_recency_fast_churn(self, days, expected):
        assert calculate_recency_score(days, DecayProfile.FAST_CHURN) == expected

    @pytest.mark.parametrize("days,expected", [
        (0, 30), (30, 30), (31, 20), (60, 20), (61, 10), (90, 10), (91, 5), (180, 5), (181, 0),
    ])
    def test_recency_standard(self, days, expected):
        assert calculate_recency_score(days, DecayProfile.STANDARD) == expected

    @pytest.mark.parametrize("days,expected", [
        (30, 30), (31, 20), (90, 20), (91, 10), (135, 10), (136, 5), (180, 5), (181, 0),
    ])
    def test_recency_slow_churn(self, days, expected):
        assert calculate_recency_score(days, DecayProfile.SLOW_CHURN) == expected

    @pytest.mark.parametrize("count,expected", [(0, 0), (1, 10), (2, 15), (3, 25), (12, 25), (-1, 0)])
    def test_verification_score(self, count, expected):
        assert calculate_verification_score(count) == expected

    @pytest.mark.parametrize("up,down,expected", [
        (0, 0, 0), (3, 0, 20), (4, 1, 15), (3, 2, 10), (2, 3, 5), (1, 4, 0), (0, 5, 0),
    ])
    def test_agreement_score(self, up, down, expected):
        assert calculate_agreement_score(up, down) == expected

    def test_freshness_thresholds_per_category(self):
        assert SpecialtyCategory.MENTAL_HEALTH.decay_profile.freshness_days == 30
        assert SpecialtyCategory.PRIMARY_CARE.decay_profile.freshness_days == 60
        assert SpecialtyCategory.SPECIALIST.decay_profile.freshness_days == 60
        assert SpecialtyCategory.OTHER.decay_profile.freshness_days == 60
        assert SpecialtyCategory.HOSPITAL_BASED.decay_profile.freshness_days == 90


class TestConfidenceLevel:
    """Test score to level mapping and the verification-count cap."""

    @pytest.mark.parametrize("score,expected", [
        (100, ConfidenceLevel.VERY_HIGH),
        (91, ConfidenceLevel.VERY_HIGH),
        (90, ConfidenceLevel.HIGH),
        (76, ConfidenceLevel.HIGH),
        (75, ConfidenceLevel.MEDIUM),
        (51, ConfidenceLevel.MEDIUM),
        (50, ConfidenceLevel.LOW),
        (26, ConfidenceLevel.LOW),
        (25, ConfidenceLevel.VERY_LOW),
        (0, ConfidenceLevel.VERY_LOW),
    ])
    def test_level_bands(self, score, expected):
        assert get_confidence_level(score, 3) == expected

    @pytest.mark.parametrize("count", [0, 1, 2])
    def test_level_capped_below_three_verifications(self, count):
        assert get_confidence_level(95, count) == ConfidenceLevel.MEDIUM
        assert get_confidence_level(80, count) == ConfidenceLevel.MEDIUM
        assert get_confidence_level(40, count) == ConfidenceLevel.LOW


class TestScoreConfidence:
    """Test the full scoring function."""

    def test_primary_care_consensus_scenario(self):
        """Three recent community reports with unanimous upvotes score 90 and rate high."""
        result = score_confidence(ConfidenceInput(
            data_source=DataSource.COMMUNITY_SUBMITTED,
            last_verified_at=days_ago(10),
            verification_count=3,
            upvotes=3,
            downvotes=0,
            specialty=SpecialtyCategory.PRIMARY_CARE,
        ), now=NOW)

        assert result.factors.to_dict() == {"data_source": 15, "recency": 30, "verification": 25, "agreement": 20}
        assert result.score == 90
        assert result.level == ConfidenceLevel.HIGH
        assert result.explanation.startswith("This 90% confidence score is based on:")
        assert result.explanation.endswith(SPECIALTY_NOTES[SpecialtyCategory.PRIMARY_CARE])
        assert result.metadata.is_stale is False
        assert result.metadata.days_until_stale == 50

    def test_hyphenated_source_tag_scores_like_enum(self):
        result = score_confidence(ConfidenceInput(
            data_source="community-submitted",
            last_verified_at=days_ago(10),
            verification_count=3,
            upvotes=3,
            specialty="primary care",
        ), now=NOW)

        assert result.factors.data_source == 15
        assert result.score == 90
        assert result.level == ConfidenceLevel.HIGH

    def test_naive_timestamps_taken_as_utc(self):
        naive_now = NOW.replace(tzinfo=None)
        data = ConfidenceInput(DataSource.COMMUNITY_SUBMITTED, naive_now - timedelta(days=5), 1)

        aware = score_confidence(data, now=NOW)
        naive = score_confidence(data, now=naive_now)

        assert aware.factors.recency == 30
        assert naive.score == aware.score
        assert naive.metadata.to_dict() == aware.metadata.to_dict()

    def test_single_verification_never_rates_high(self):
        result = score_confidence(ConfidenceInput(
            data_source=DataSource.OFFICIAL_REGISTRY,
            last_verified_at=NOW,
            verification_count=1,
            upvotes=5,
        ), now=NOW)

        assert result.score == 85
        assert result.level == ConfidenceLevel.MEDIUM
        assert "3 verifications achieve expert-level accuracy" in result.description
        assert "only 1 verification" in result.explanation

    @pytest.mark.parametrize("category", list(SpecialtyCategory))
    def test_two_hundred_day_old_verification_is_stale_everywhere(self, category):
        result = score_confidence(ConfidenceInput(
            data_source=DataSource.COMMUNITY_SUBMITTED,
            last_verified_at=days_ago(200),
            verification_count=3,
            specialty=category,
        ), now=NOW)

        assert result.factors.recency == 0
        assert result.metadata.is_stale is True
        assert result.metadata.days_until_stale == 0
        assert result.metadata.recommend_reverification is True

    def test_no_evidence(self):
        result = score_confidence(ConfidenceInput(data_source=None, last_verified_at=None, verification_count=0), now=NOW)

        assert result.score == 10
        assert result.level == ConfidenceLevel.VERY_LOW
        assert result.metadata.days_since_verification is None
        assert result.metadata.recommend_reverification is True
        assert result.metadata.days_until_stale == 60

    def test_explanation_lists_only_nonzero_factors(self):
        result = score_confidence(ConfidenceInput(
            data_source=DataSource.CARRIER_DATA,
            last_verified_at=days_ago(200),
            verification_count=0,
        ), now=NOW)

        assert result.score == 20
        assert "carrier" in result.explanation
        assert "stale data" not in result.explanation
        assert "consensus" not in result.explanation

    def test_mental_health_decays_faster(self):
        kwargs = dict(data_source=DataSource.COMMUNITY_SUBMITTED, last_verified_at=days_ago(40), verification_count=3)
        mental = score_confidence(ConfidenceInput(specialty="mental_health", **kwargs), now=NOW)
        hospital = score_confidence(ConfidenceInput(specialty="hospital_based", **kwargs), now=NOW)

        assert mental.factors.recency == 10
        assert hospital.factors.recency == 20
        assert mental.metadata.is_stale is True
        assert hospital.metadata.is_stale is False

    def test_reverification_recommended_near_threshold(self):
        result = score_confidence(ConfidenceInput(
            data_source=DataSource.COMMUNITY_SUBMITTED,
            last_verified_at=days_ago(50),
            verification_count=3,
        ), now=NOW)

        assert result.metadata.is_stale is False
        assert result.metadata.recommend_reverification is True

    def test_future_timestamp_counts_as_today(self):
        result = score_confidence(ConfidenceInput(
            data_source=DataSource.COMMUNITY_SUBMITTED,
            last_verified_at=NOW + timedelta(days=2),
            verification_count=1,
        ), now=NOW)

        assert result.metadata.days_since_verification == 0
        assert result.factors.recency == 30

    def test_score_bounds_and_factor_sum(self):
        """Score stays in range and always equals the sum of its factors."""
        for source in list(DataSource) + [None]:
            for age in (None, 0, 20, 70, 150, 400):
                for count in range(0, 6):
                    for up, down in ((0, 0), (9, 0), (1, 9), (5, 5)):
                        result = score_confidence(ConfidenceInput(
                            data_source=source,
                            last_verified_at=days_ago(age) if age is not None else None,
                            verification_count=count,
                            upvotes=up,
                            downvotes=down,
                        ), now=NOW)
                        assert 0 <= result.score <= 100
                        assert result.factors.total == result.score
                        if count < 3:
                            assert result.level not in (ConfidenceLevel.HIGH, ConfidenceLevel.VERY_HIGH)

    def test_result_to_dict(self):
        data = score_confidence(ConfidenceInput(DataSource.AUTOMATED, days_ago(5), 2), now=NOW).to_dict()

        assert data["level"] in {level.value for level in ConfidenceLevel}
        assert set(data["factors"]) == {"data_source", "recency", "verification", "agreement"}
        assert data["metadata"]["specialty_category"] == "other"


class TestSpecialtyCategories:
    """Test specialty parsing and keyword categorization."""

    @pytest.mark.parametrize("specialty,taxonomy,expected", [
        ("Psychiatry", None, SpecialtyCategory.MENTAL_HEALTH),
        ("Licensed Therapist", None, SpecialtyCategory.MENTAL_HEALTH),
        ("Family Medicine", None, SpecialtyCategory.PRIMARY_CARE),
        ("Internal Medicine", None, SpecialtyCategory.PRIMARY_CARE),
        ("Diagnostic Radiology", None, SpecialtyCategory.HOSPITAL_BASED),
        ("Cardiology", None, SpecialtyCategory.SPECIALIST),
        ("", "Clinical Psychologist", SpecialtyCategory.MENTAL_HEALTH),
        (None, None, SpecialtyCategory.OTHER),
        ("   ", None, SpecialtyCategory.OTHER),
    ])
    def test_categorize_specialty(self, specialty, taxonomy, expected):
        assert categorize_specialty(specialty, taxonomy) == expected

    @pytest.mark.parametrize("value,expected", [
        (SpecialtyCategory.HOSPITAL_BASED, SpecialtyCategory.HOSPITAL_BASED),
        ("mental_health", SpecialtyCategory.MENTAL_HEALTH),
        ("Primary Care", SpecialtyCategory.PRIMARY_CARE),
        ("hospital-based", SpecialtyCategory.HOSPITAL_BASED),
        ("astrology", SpecialtyCategory.OTHER),
        (None, SpecialtyCategory.OTHER),
        (42, SpecialtyCategory.OTHER),
    ])
    def test_parse(self, value, expected):
        assert SpecialtyCategory.parse(value) == expected


def test_days_between_floors_partial_days():
    assert days_between(days_ago(1, hours=23), NOW) == 1
    assert days_between(None, NOW) is None


def test_days_between_mixes_naive_and_aware():
    assert days_between(days_ago(3).replace(tzinfo=None), NOW) == 3
    assert days_between(days_ago(3), NOW.replace(tzinfo=None)) == 3
