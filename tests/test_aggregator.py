"""
Tests for the multi-source hazard risk aggregation engine.

Covers:
    • Risk level classification and band boundaries on the reported score
    • Undecodable provider bodies isolated to their own branch
    • Weighted combination (single source, equal, unequal, zero weights)
    • Primary hazard selection
    • Confidence as branch coverage, monotonic in successes
    • Assessment assembly from settled branch outcomes
    • Request planning (provider / hazard defaults, per-operation branches)
    • Concurrent fan-out: partial failure, no-data, rate limits, deadline
    • End-to-end: two providers, one failing operation

Run with:
    pytest tests/test_aggregator.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from conftest import (
    COMMERCIAL_B_ROUTE,
    EQUAL_WEIGHTS,
    GOV_ROUTE,
    HOUSTON_LAT,
    HOUSTON_LON,
    HYDRO_ROUTE,
    climate_payload,
    commercial_a_route,
    corrupt_gzip,
    first_street_payload,
    gov_payload,
    make_engine,
    reply,
)
from hazard_engine.core.errors import NoDataError, RateLimitExceeded, ServerError, ValidationError
from hazard_engine.core.rate_limiter import RateLimitPolicy
from hazard_engine.scoring.aggregator import (
    PRIMARY_THRESHOLD,
    THRESHOLD_HIGH,
    THRESHOLD_MODERATE,
    THRESHOLD_VERY_HIGH,
    AssessmentRequest,
    Branch,
    BranchOutcome,
    BranchStatus,
    aggregate_hazard,
    build_assessment,
    classify_risk,
    compute_confidence,
    identify_primary_hazards,
    weighted_score,
)
from hazard_engine.scoring.models import (
    HazardType,
    Location,
    NormalizedHazardScore,
    RawHazardReading,
    RiskLevel,
)

HOUSTON = Location(HOUSTON_LAT, HOUSTON_LON)
FIXED_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

def _score(provider: str, hazard: HazardType, value: float) -> NormalizedHazardScore:
    return NormalizedHazardScore(provider, hazard, value, RawHazardReading(provider, hazard, value))


def _reading(provider: str, hazard: str, value: float) -> RawHazardReading:
    return RawHazardReading(provider, HazardType(hazard), value)


def _ok(provider: str, operation: str, *readings: RawHazardReading) -> BranchOutcome:
    branch = Branch(provider, operation, tuple(r.hazard_type for r in readings))
    return BranchOutcome(branch, BranchStatus.SUCCESS, readings=tuple(readings))


def _failed(provider: str, operation: str, *hazards: str) -> BranchOutcome:
    branch = Branch(provider, operation, tuple(HazardType(h) for h in hazards))
    error = ServerError("HTTP 503", provider=provider, operation=operation)
    return BranchOutcome(branch, BranchStatus.FAILED, error=error)


def _no_data(provider: str, operation: str, *hazards: str) -> BranchOutcome:
    branch = Branch(provider, operation, tuple(HazardType(h) for h in hazards))
    error = NoDataError("HTTP 404", provider=provider, operation=operation)
    return BranchOutcome(branch, BranchStatus.NO_DATA, error=error)


def _build(outcomes, hazards=("flood", "wildfire"), weights=None):
    return build_assessment(
        HOUSTON,
        outcomes,
        weights or {},
        [HazardType(h) for h in hazards],
        generated_at=FIXED_TIME,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Classification
# ═══════════════════════════════════════════════════════════════════════════

class TestClassifyRisk:
    @pytest.mark.parametrize("score,level", [
        (0, RiskLevel.LOW),
        (39.99, RiskLevel.LOW),
        (40, RiskLevel.MODERATE),
        (59.9, RiskLevel.MODERATE),
        (60, RiskLevel.HIGH),
        (79.99, RiskLevel.HIGH),
        (80, RiskLevel.VERY_HIGH),
        (100, RiskLevel.VERY_HIGH),
    ])
    def test_bands(self, score, level):
        assert classify_risk(score) == level

    def test_thresholds_ordered(self):
        assert THRESHOLD_MODERATE < THRESHOLD_HIGH < THRESHOLD_VERY_HIGH


# ═══════════════════════════════════════════════════════════════════════════
# Weighted combination
# ═══════════════════════════════════════════════════════════════════════════

class TestWeightedScore:
    def test_single_source_exact(self):
        assert weighted_score([_score("a", HazardType.FLOOD, 63.21)], {"a": 0.3}) == 63.21

    def test_equal_weights_is_mean(self):
        scores = [_score("a", HazardType.FLOOD, 75), _score("b", HazardType.FLOOD, 80)]
        assert weighted_score(scores, {"a": 1.0, "b": 1.0}) == pytest.approx(77.5)

    def test_unequal_weights(self):
        scores = [_score("a", HazardType.FLOOD, 75), _score("b", HazardType.FLOOD, 80)]
        expected = (75 * 0.95 + 80 * 0.85) / (0.95 + 0.85)
        assert weighted_score(scores, {"a": 0.95, "b": 0.85}) == pytest.approx(expected)

    def test_missing_weight_is_neutral(self):
        scores = [_score("a", HazardType.FLOOD, 20), _score("b", HazardType.FLOOD, 40)]
        assert weighted_score(scores, {}) == pytest.approx(30.0)

    def test_zero_weight_excluded(self):
        scores = [_score("a", HazardType.FLOOD, 20), _score("b", HazardType.FLOOD, 40)]
        assert weighted_score(scores, {"a": 0.0, "b": 1.0}) == pytest.approx(40.0)

    def test_all_zero_weights_plain_mean(self):
        scores = [_score("a", HazardType.FLOOD, 20), _score("b", HazardType.FLOOD, 40)]
        assert weighted_score(scores, {"a": 0.0, "b": 0.0}) == pytest.approx(30.0)

    def test_within_min_max(self):
        scores = [_score(p, HazardType.HEAT, v) for p, v in (("a", 12), ("b", 88), ("c", 51))]
        combined = weighted_score(scores, {"a": 2.0, "b": 0.1, "c": 1.3})
        assert 12 <= combined <= 88

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            weighted_score([], {})

    def test_aggregate_classifies_combined(self):
        agg = aggregate_hazard(
            HazardType.FLOOD,
            [_score("a", HazardType.FLOOD, 75), _score("b", HazardType.FLOOD, 80)],
            {},
        )
        assert agg.combined_score == pytest.approx(77.5)
        assert agg.risk_level == RiskLevel.HIGH

    @pytest.mark.parametrize("value, level", [
        (79.4, RiskLevel.HIGH),
        (79.6, RiskLevel.VERY_HIGH),
        (60.5, RiskLevel.HIGH),  # rounds half to even
        (39.6, RiskLevel.MODERATE),
    ])
    def test_aggregate_level_follows_reported_score(self, value, level):
        agg = aggregate_hazard(HazardType.FLOOD, [_score("a", HazardType.FLOOD, value)], {})
        assert agg.risk_level == level
        assert agg.to_dict()["level"] == level.value


# ═══════════════════════════════════════════════════════════════════════════
# Primary hazards and confidence
# ═══════════════════════════════════════════════════════════════════════════

def _aggregates(**scores):
    return {
        HazardType(h): aggregate_hazard(HazardType(h), [_score("a", HazardType(h), v)], {})
        for h, v in scores.items()
    }


class TestPrimaryHazards:
    def test_all_above_threshold_highest_first(self):
        assert identify_primary_hazards(_aggregates(flood=72, hurricane=91, heat=50)) == [
            HazardType.HURRICANE, HazardType.FLOOD,
        ]

    def test_threshold_inclusive(self):
        assert identify_primary_hazards(_aggregates(flood=PRIMARY_THRESHOLD, heat=65)) == [
            HazardType.FLOOD,
        ]

    def test_top_plus_runner_up(self):
        assert identify_primary_hazards(_aggregates(flood=55, heat=31, hail=10)) == [
            HazardType.FLOOD, HazardType.HEAT,
        ]

    def test_threshold_on_reported_score(self):
        assert identify_primary_hazards(_aggregates(flood=69.6, heat=69.4)) == [HazardType.FLOOD]

    def test_runner_up_too_low(self):
        assert identify_primary_hazards(_aggregates(flood=55, heat=30)) == [HazardType.FLOOD]

    def test_single_hazard(self):
        assert identify_primary_hazards(_aggregates(drought=5)) == [HazardType.DROUGHT]

    def test_empty(self):
        assert identify_primary_hazards({}) == []


class TestConfidence:
    def test_ratio(self):
        assert compute_confidence(2, 3) == pytest.approx(2 / 3)

    def test_bounds(self):
        assert compute_confidence(0, 0) == 0.0
        assert compute_confidence(5, 5) == 1.0
        assert compute_confidence(7, 5) == 1.0

    def test_monotonic_in_successes(self):
        values = [compute_confidence(k, 6) for k in range(7)]
        assert values == sorted(values)
        assert len(set(values)) == 7


# ═══════════════════════════════════════════════════════════════════════════
# Assessment assembly
# ═══════════════════════════════════════════════════════════════════════════

class TestBuildAssessment:
    def test_partial_failure(self):
        assessment = _build([
            _ok("gov_index", "risk_index", _reading("gov_index", "flood", 75), _reading("gov_index", "wildfire", 60)),
            _ok("commercial_a", "flood", _reading("commercial_a", "flood", 80)),
            _failed("commercial_a", "wildfire", "wildfire"),
        ])
        assert assessment.hazards[HazardType.FLOOD].combined_score == pytest.approx(77.5)
        assert assessment.hazards[HazardType.WILDFIRE].combined_score == pytest.approx(60.0)
        assert assessment.overall_score == pytest.approx(68.75)
        assert assessment.overall_level == RiskLevel.HIGH
        assert assessment.sources_used == ["gov_index", "commercial_a"]
        assert assessment.sources_failed == ["commercial_a"]
        assert assessment.confidence == pytest.approx(2 / 3)
        assert assessment.failures[0].error_kind == "server_error"

    def test_no_data_listed_separately(self):
        assessment = _build([
            _ok("gov_index", "risk_index", _reading("gov_index", "flood", 50)),
            _no_data("hydro_monitor", "gage_height", "flood"),
        ], hazards=("flood",))
        assert assessment.sources_no_data == ["hydro_monitor"]
        assert assessment.sources_failed == []
        assert assessment.confidence == 0.5

    def test_unrequested_hazards_ignored(self):
        assessment = _build([
            _ok("gov_index", "risk_index", _reading("gov_index", "flood", 50), _reading("gov_index", "hail", 99)),
        ], hazards=("flood",))
        assert list(assessment.hazards) == [HazardType.FLOOD]
        assert assessment.overall_score == 50.0

    def test_success_without_requested_hazard_counts_as_no_data(self):
        assessment = _build([
            _ok("gov_index", "risk_index", _reading("gov_index", "flood", 50)),
            _ok("commercial_b", "property_risk", _reading("commercial_b", "heat", 5)),
        ], hazards=("flood",))
        assert assessment.sources_used == ["gov_index"]
        assert assessment.sources_no_data == ["commercial_b"]

    def test_output_follows_requested_order(self):
        assessment = _build([
            _ok("gov_index", "risk_index",
                _reading("gov_index", "flood", 10),
                _reading("gov_index", "heat", 20),
                _reading("gov_index", "wildfire", 30)),
        ], hazards=("wildfire", "flood", "heat"))
        assert list(assessment.to_dict()["hazards"]) == ["wildfire", "flood", "heat"]

    def test_provider_scales_normalized(self):
        assessment = _build([
            _ok("commercial_b", "property_risk", _reading("commercial_b", "flood", 10)),
            _ok("hydro_monitor", "gage_height", _reading("hydro_monitor", "flood", 0.5)),
        ], hazards=("flood",))
        assert assessment.hazards[HazardType.FLOOD].sources == {"commercial_b": 100, "hydro_monitor": 50}
        assert assessment.overall_score == pytest.approx(75.0)

    def test_all_failed_raises_no_data(self):
        with pytest.raises(NoDataError) as exc:
            _build([
                _failed("gov_index", "risk_index", "flood"),
                _no_data("hydro_monitor", "gage_height", "flood"),
            ], hazards=("flood",))
        assert exc.value.details["sources_failed"] == ["gov_index"]
        assert exc.value.details["sources_no_data"] == ["hydro_monitor"]
        assert exc.value.status_code == 404

    def test_deterministic(self):
        outcomes = [
            _ok("gov_index", "risk_index", _reading("gov_index", "flood", 41.2)),
            _ok("commercial_a", "flood", _reading("commercial_a", "flood", 66.6)),
        ]
        first = _build(outcomes, hazards=("flood",), weights={"gov_index": 0.95, "commercial_a": 0.85})
        second = _build(outcomes, hazards=("flood",), weights={"gov_index": 0.95, "commercial_a": 0.85})
        assert first.to_dict() == second.to_dict()

    def test_serialised_shape(self):
        d = _build([
            _ok("gov_index", "risk_index", _reading("gov_index", "flood", 75.4)),
        ], hazards=("flood",)).to_dict()
        assert d["overallScore"] == 75
        assert d["overallLevel"] == "HIGH"
        assert d["hazards"]["flood"] == {"score": 75, "level": "HIGH", "sources": {"gov_index": 75}}
        assert d["primaryHazards"] == ["flood"]
        assert d["generatedAt"] == "2024-06-01T12:00:00+00:00"
        assert d["location"] == {"latitude": HOUSTON_LAT, "longitude": HOUSTON_LON}


# ═══════════════════════════════════════════════════════════════════════════
# Planning
# ═══════════════════════════════════════════════════════════════════════════

class TestPlan:
    def test_branch_per_operation(self, api):
        engine = make_engine(api)
        _, hazards, branches = engine.plan(AssessmentRequest(
            HOUSTON_LAT, HOUSTON_LON, ["flood", "wildfire"], ["gov_index", "commercial_a"],
        ))
        assert hazards == [HazardType.FLOOD, HazardType.WILDFIRE]
        assert [(b.provider, b.operation) for b in branches] == [
            ("gov_index", "risk_index"),
            ("commercial_a", "flood"),
            ("commercial_a", "wildfire"),
        ]
        assert branches[0].hazard_types == (HazardType.FLOOD, HazardType.WILDFIRE)

    def test_defaults_all_providers_all_hazards(self, api):
        engine = make_engine(api)
        _, hazards, branches = engine.plan(AssessmentRequest(HOUSTON_LAT, HOUSTON_LON))
        assert hazards == list(HazardType)
        assert {b.provider for b in branches} == {
            "gov_index", "commercial_a", "commercial_b", "hydro_monitor",
        }
        assert len(branches) == 1 + 4 + 1 + 1

    def test_hazards_default_to_provider_support(self, api):
        engine = make_engine(api)
        _, hazards, _ = engine.plan(AssessmentRequest(HOUSTON_LAT, HOUSTON_LON, providers=["hydro_monitor"]))
        assert hazards == [HazardType.FLOOD]

    def test_provider_without_requested_hazard_skipped(self, api):
        engine = make_engine(api)
        _, _, branches = engine.plan(AssessmentRequest(
            HOUSTON_LAT, HOUSTON_LON, ["tornado"], ["gov_index", "hydro_monitor"],
        ))
        assert [b.provider for b in branches] == ["gov_index"]

    def test_excluded_providers(self, api):
        engine = make_engine(api)
        _, _, branches = engine.plan(AssessmentRequest(
            HOUSTON_LAT, HOUSTON_LON, ["flood"], excluded_providers=["commercial_a", "commercial_b"],
        ))
        assert [b.provider for b in branches] == ["gov_index", "hydro_monitor"]

    def test_duplicates_collapsed(self, api):
        engine = make_engine(api)
        _, hazards, branches = engine.plan(AssessmentRequest(
            HOUSTON_LAT, HOUSTON_LON, ["flood", "FLOOD", "flood_risk"], ["gov_index", "gov_index"],
        ))
        assert hazards == [HazardType.FLOOD]
        assert len(branches) == 1

    @pytest.mark.parametrize("request_kwargs", [
        {"providers": ["acme"]},
        {"hazard_types": ["volcano"]},
        {"latitude": 91.0},
        {"excluded_providers": ["acme"]},
    ])
    def test_invalid_input(self, api, request_kwargs):
        values = {"latitude": HOUSTON_LAT, "longitude": HOUSTON_LON, **request_kwargs}
        with pytest.raises(ValidationError):
            make_engine(api).plan(AssessmentRequest(**values))


# ═══════════════════════════════════════════════════════════════════════════
# Fan-out
# ═══════════════════════════════════════════════════════════════════════════

def _assess(engine, **kwargs):
    values = {"latitude": HOUSTON_LAT, "longitude": HOUSTON_LON, **kwargs}
    return asyncio.run(engine.assess(AssessmentRequest(**values)))


class TestAssess:
    def test_two_providers_one_operation_failing(self, api):
        api.on(GOV_ROUTE, reply(json=gov_payload(flood=75, wildfire=60)))
        api.on(commercial_a_route("flood"), reply(json=climate_payload(80)))
        api.on(commercial_a_route("wildfire"), reply(500))
        engine = make_engine(api, weights=EQUAL_WEIGHTS)

        d = _assess(
            engine, hazard_types=["flood", "wildfire"], providers=["gov_index", "commercial_a"],
        ).to_dict()

        assert d["hazards"]["flood"]["score"] == 78  # 77.5
        assert d["hazards"]["flood"]["level"] == "HIGH"
        assert d["hazards"]["flood"]["sources"] == {"gov_index": 75, "commercial_a": 80}
        assert d["hazards"]["wildfire"] == {"score": 60, "level": "HIGH", "sources": {"gov_index": 60}}
        assert d["overallScore"] == 69  # 68.75
        assert d["overallLevel"] == "HIGH"
        assert d["sourcesUsed"] == ["gov_index", "commercial_a"]
        assert d["sourcesFailed"] == ["commercial_a"]
        assert d["confidence"] == pytest.approx(0.6667, abs=1e-4)
        assert d["failures"] == [{
            "provider": "commercial_a",
            "operation": "wildfire",
            "hazardTypes": ["wildfire"],
            "errorKind": "server_error",
            "message": "[commercial_a] HTTP 500",
        }]
        assert api.count(commercial_a_route("wildfire")) == 3

        health = engine.registry.health
        assert health.snapshot("gov_index").successes == 1
        assert health.snapshot("commercial_a").successes == 1
        assert health.snapshot("commercial_a").failures == 1

    def test_default_weights_favour_gov(self, api):
        api.on(GOV_ROUTE, reply(json=gov_payload(flood=75)))
        api.on(commercial_a_route("flood"), reply(json=climate_payload(80)))
        assessment = _assess(make_engine(api), hazard_types=["flood"], providers=["gov_index", "commercial_a"])
        expected = (75 * 0.95 + 80 * 0.85) / 1.8
        assert assessment.overall_score == pytest.approx(expected)

    def test_all_providers_mixed_scales(self, api):
        api.on(GOV_ROUTE, reply(json=gov_payload(flood=60)))
        api.on(COMMERCIAL_B_ROUTE, reply(json=first_street_payload(flood=10)))
        api.on(commercial_a_route("flood"), reply(json=climate_payload(40)))
        api.on(HYDRO_ROUTE, reply(404))
        engine = make_engine(api, weights=EQUAL_WEIGHTS)

        assessment = _assess(engine, hazard_types=["flood"])

        assert assessment.hazards[HazardType.FLOOD].combined_score == pytest.approx((60 + 100 + 40) / 3)
        assert assessment.sources_no_data == ["hydro_monitor"]
        assert assessment.confidence == pytest.approx(3 / 4)

    def test_every_provider_failing(self, api):
        api.on(GOV_ROUTE, reply(503))
        api.on(commercial_a_route("flood"), reply(401))
        engine = make_engine(api)
        with pytest.raises(NoDataError) as exc:
            _assess(engine, hazard_types=["flood"], providers=["gov_index", "commercial_a"])
        assert exc.value.details["sources_failed"] == ["gov_index", "commercial_a"]

    def test_no_provider_covers_hazard(self, api):
        with pytest.raises(NoDataError):
            _assess(make_engine(api), hazard_types=["tornado"], providers=["hydro_monitor"])
        assert api.total_calls == 0

    def test_rate_limit_fail_fast(self, api):
        api.on(GOV_ROUTE, reply(json=gov_payload(flood=50)))
        api.on(commercial_a_route("flood"), reply(json=climate_payload(70)))
        engine = make_engine(api)
        engine.registry.rate_limiter.configure("commercial_a", RateLimitPolicy(1, 3600))
        assert engine.registry.rate_limiter.try_acquire("commercial_a")

        assessment = _assess(
            engine, hazard_types=["flood"], providers=["gov_index", "commercial_a"], rate_limit_wait_ms=0,
        )

        assert assessment.sources_failed == ["commercial_a"]
        assert assessment.failures[0].error_kind == RateLimitExceeded.kind.value
        assert api.count(commercial_a_route("flood")) == 0
        assert engine.registry.health.snapshot("commercial_a").failures_by_kind == {
            "rate_limit_exceeded": 1,
        }

    def test_global_deadline_cancels_slow_branch(self, api):
        api.on(GOV_ROUTE, reply(json=gov_payload(flood=50), delay=2.0))
        api.on(commercial_a_route("flood"), reply(json=climate_payload(70)))
        engine = make_engine(api)

        assessment = _assess(
            engine, hazard_types=["flood"], providers=["gov_index", "commercial_a"],
            global_deadline_ms=150,
        )

        assert assessment.sources_used == ["commercial_a"]
        assert assessment.sources_failed == ["gov_index"]
        assert assessment.failures[0].error_kind == "timeout"
        assert assessment.duration_ms < 1500
        record = engine.registry.health.snapshot("gov_index")
        assert record.failures_by_kind == {"timeout": 1}
        assert record.average_latency_ms == pytest.approx(150.0)

    def test_deadline_with_nothing_back(self, api):
        api.on(GOV_ROUTE, reply(json=gov_payload(flood=50), delay=2.0))
        with pytest.raises(NoDataError):
            _assess(make_engine(api), hazard_types=["flood"], providers=["gov_index"], global_deadline_ms=50)

    def test_repeat_assessment_served_from_cache(self, api):
        api.on(GOV_ROUTE, reply(json=gov_payload(flood=75)))
        engine = make_engine(api)
        first = _assess(engine, hazard_types=["flood"], providers=["gov_index"])
        second = _assess(engine, hazard_types=["flood"], providers=["gov_index"])
        assert api.count(GOV_ROUTE) == 1
        assert first.overall_score == second.overall_score

    def test_undecodable_body_isolated_to_its_branch(self, api):
        api.on(GOV_ROUTE, reply(json=gov_payload(flood=75)))
        api.on(commercial_a_route("flood"), corrupt_gzip())
        engine = make_engine(api)

        assessment = _assess(engine, hazard_types=["flood"], providers=["gov_index", "commercial_a"])

        assert assessment.hazards[HazardType.FLOOD].combined_score == 75.0
        assert assessment.sources_used == ["gov_index"]
        assert assessment.sources_failed == ["commercial_a"]
        assert assessment.failures[0].error_kind == "invalid_response"
        assert assessment.confidence == pytest.approx(0.5)

    def test_level_matches_serialised_score(self, api):
        api.on(GOV_ROUTE, reply(json=gov_payload(flood=79.6)))
        d = _assess(make_engine(api), hazard_types=["flood"], providers=["gov_index"]).to_dict()
        assert d["overallScore"] == 80
        assert d["overallLevel"] == "VERY_HIGH"
        assert d["hazards"]["flood"] == {"score": 80, "level": "VERY_HIGH", "sources": {"gov_index": 80}}
