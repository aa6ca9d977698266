"""
Multi-source hazard risk aggregation.

Turns one (location, hazards, providers) request into a single
confidence-scored ``PropertyRiskAssessment``:

    1. PLAN       one branch per (provider, operation) covering a requested
                  hazard; single-call providers get exactly one branch
    2. FAN-OUT    one asyncio task per branch; each branch captures its own
                  outcome, so a failing provider never cancels the others
    3. DEADLINE   branches still running at the global deadline are
                  cancelled and recorded as TIMEOUT failures
    4. NORMALIZE  every reading → 0–100 via the normalization table
    5. COMBINE    per hazard, reliability-weighted mean of provider scores
    6. SUMMARISE  overall score, confidence, source manifest

═══════════════════════════════════════════════════════════════════════════
WEIGHTING FORMULA
═══════════════════════════════════════════════════════════════════════════

Per hazard h with scores sᵢ from providers with reliability weights wᵢ:

    combined_h = Σ(sᵢ · wᵢ) / Σ wᵢ

    • one source          → combined_h = s₁ exactly
    • equal weights       → arithmetic mean
    • all weights zero    → arithmetic mean (no source is preferred)

Overall score is the plain mean of the per-hazard combined scores: every
requested hazard counts the same, however many providers reported it.

Confidence is coverage, not agreement:

    confidence = successful branches / attempted branches      ∈ [0, 1]

A branch whose provider answered "nothing here" (NO_DATA) was attempted but
did not succeed. It is listed in ``sources_no_data``, not in
``sources_failed``.

═══════════════════════════════════════════════════════════════════════════
RISK LEVELS
═══════════════════════════════════════════════════════════════════════════

    score        level
    ─────────    ─────────
      0 – 39     LOW
     40 – 59     MODERATE
     60 – 79     HIGH
     80 – 100    VERY_HIGH

Bands are read off the whole-number score clients see, so 79.6 reports as
80 and VERY_HIGH.

Primary hazards: every hazard ≥ 70, highest first; when none reaches 70,
the top hazard plus the runner-up if it is above 30.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from hazard_engine.core.config import Settings, settings as default_settings
from hazard_engine.core.errors import (
    ErrorKind,
    NoDataError,
    ProviderError,
    ProviderTimeoutError,
    ValidationError,
)
from hazard_engine.providers.fallback import (
    FallbackCandidate,
    FallbackExecutor,
    FallbackResult,
)
from hazard_engine.providers.registry import ProviderRegistry
from hazard_engine.scoring.models import (
    HazardRiskAggregate,
    HazardType,
    Location,
    NormalizedHazardScore,
    PropertyRiskAssessment,
    RawHazardReading,
    RiskLevel,
    SourceFailure,
    reported_score,
)
from hazard_engine.scoring.normalization import DEFAULT_TABLE, NormalizationTable

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Tunable Parameters
# ═══════════════════════════════════════════════════════════════════════════

THRESHOLD_MODERATE = 40.0
THRESHOLD_HIGH = 60.0
THRESHOLD_VERY_HIGH = 80.0

PRIMARY_THRESHOLD = 70.0  # hazards at or above are always primary
SECONDARY_FLOOR = 30.0  # runner-up must exceed this to be listed


# ═══════════════════════════════════════════════════════════════════════════
# Request and branch bookkeeping
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AssessmentRequest:
    """
    Input of one assessment. ``None`` timing fields fall back to settings.

    An empty ``providers`` list means every registered provider; an empty
    ``hazard_types`` list means every hazard the chosen providers support.
    """
    latitude: float
    longitude: float
    hazard_types: Sequence[str] = ()
    providers: Sequence[str] = ()
    per_provider_timeout_ms: Optional[int] = None
    global_deadline_ms: Optional[int] = None
    rate_limit_wait_ms: Optional[int] = None
    excluded_providers: Sequence[str] = ()


class BranchStatus(str, Enum):
    SUCCESS = "success"
    NO_DATA = "no_data"
    FAILED = "failed"


@dataclass(frozen=True)
class Branch:
    provider: str
    operation: str
    hazard_types: Tuple[HazardType, ...]


@dataclass(frozen=True)
class BranchOutcome:
    branch: Branch
    status: BranchStatus
    readings: Tuple[RawHazardReading, ...] = ()
    error: Optional[ProviderError] = None
    latency_ms: float = 0.0

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind.value if self.error is not None else None


# ═══════════════════════════════════════════════════════════════════════════
# Pure scoring functions
# ═══════════════════════════════════════════════════════════════════════════

def classify_risk(score: float) -> RiskLevel:
    """
    Map a 0–100 score onto its risk band.

    Examples
    --------
    >>> classify_risk(39.9)
    <RiskLevel.LOW: 'LOW'>
    >>> classify_risk(60)
    <RiskLevel.HIGH: 'HIGH'>
    """
    if score >= THRESHOLD_VERY_HIGH:
        return RiskLevel.VERY_HIGH
    if score >= THRESHOLD_HIGH:
        return RiskLevel.HIGH
    if score >= THRESHOLD_MODERATE:
        return RiskLevel.MODERATE
    return RiskLevel.LOW


def weighted_score(
    scores: Sequence[NormalizedHazardScore],
    weights: Mapping[str, float],
) -> float:
    """
    Reliability-weighted mean of provider scores.

    Parameters
    ----------
    scores : Sequence[NormalizedHazardScore]
        At least one score, all for the same hazard.
    weights : Mapping[str, float]
        Provider name → reliability weight; missing providers weigh 1.0.

    Returns
    -------
    float
        Combined score in [0, 100].
    """
    if not scores:
        raise ValueError("weighted_score needs at least one score")
    if len(scores) == 1:
        return scores[0].score

    values = np.array([s.score for s in scores], dtype=float)
    w = np.array([weights.get(s.provider, 1.0) for s in scores], dtype=float)
    if w.sum() <= 0:
        return float(values.mean())
    return float(np.average(values, weights=w))


def aggregate_hazard(
    hazard_type: HazardType,
    scores: Sequence[NormalizedHazardScore],
    weights: Mapping[str, float],
) -> HazardRiskAggregate:
    combined = weighted_score(scores, weights)
    return HazardRiskAggregate(
        hazard_type=hazard_type,
        combined_score=combined,
        risk_level=classify_risk(reported_score(combined)),
        breakdown=tuple(scores),
    )


def compute_confidence(succeeded: int, attempted: int) -> float:
    """Share of attempted branches that produced usable data, clamped to [0, 1]."""
    if attempted <= 0:
        return 0.0
    return max(0.0, min(1.0, succeeded / attempted))


def identify_primary_hazards(
    hazards: Mapping[HazardType, HazardRiskAggregate],
) -> List[HazardType]:
    ranked = sorted(hazards.values(), key=lambda a: (-a.combined_score, a.hazard_type.value))
    primary = [a.hazard_type for a in ranked if reported_score(a.combined_score) >= PRIMARY_THRESHOLD]
    if primary or not ranked:
        return primary
    primary = [ranked[0].hazard_type]
    if len(ranked) > 1 and reported_score(ranked[1].combined_score) > SECONDARY_FLOOR:
        primary.append(ranked[1].hazard_type)
    return primary


def _unique(names: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(names))


def build_assessment(
    location: Location,
    outcomes: Sequence[BranchOutcome],
    weights: Mapping[str, float],
    hazard_types: Iterable[HazardType],
    *,
    normalization: NormalizationTable = DEFAULT_TABLE,
    generated_at: Optional[datetime] = None,
    duration_ms: Optional[float] = None,
) -> PropertyRiskAssessment:
    """
    Combine settled branch outcomes into an assessment.

    Pure: no I/O, no clock reads beyond ``generated_at`` defaulting to now.
    Raises ``NoDataError`` when no requested hazard received a score.
    """
    requested = list(hazard_types)
    wanted = set(requested)
    by_hazard: Dict[HazardType, List[NormalizedHazardScore]] = {}
    used: List[str] = []
    failed: List[str] = []
    no_data: List[str] = []
    failures: List[SourceFailure] = []
    succeeded = 0

    for outcome in outcomes:
        provider = outcome.branch.provider
        if outcome.status == BranchStatus.FAILED:
            failed.append(provider)
            failures.append(SourceFailure(
                provider=provider,
                operation=outcome.branch.operation,
                hazard_types=outcome.branch.hazard_types,
                error_kind=outcome.error_kind or ErrorKind.SERVER_ERROR.value,
                message=outcome.error.message if outcome.error else "",
            ))
            continue

        relevant = [r for r in outcome.readings if r.hazard_type in wanted]
        if outcome.status == BranchStatus.NO_DATA or not relevant:
            no_data.append(provider)
            continue

        succeeded += 1
        used.append(provider)
        for reading in relevant:
            by_hazard.setdefault(reading.hazard_type, []).append(
                normalization.normalize_reading(reading)
            )

    if not by_hazard:
        raise NoDataError(
            "No hazard data available for location",
            latitude=location.latitude,
            longitude=location.longitude,
            sources_failed=_unique(failed),
            sources_no_data=_unique(no_data),
        )

    # Output follows the requested hazard order
    hazards = {
        h: aggregate_hazard(h, by_hazard[h], weights)
        for h in requested if h in by_hazard
    }
    overall = float(np.mean([a.combined_score for a in hazards.values()]))
    used = _unique(used)

    return PropertyRiskAssessment(
        location=location,
        overall_score=overall,
        overall_level=classify_risk(reported_score(overall)),
        hazards=hazards,
        sources_used=used,
        sources_failed=_unique(failed),
        sources_no_data=[p for p in _unique(no_data) if p not in used],
        confidence=compute_confidence(succeeded, len(outcomes)),
        generated_at=generated_at or datetime.now(timezone.utc),
        failures=failures,
        primary_hazards=identify_primary_hazards(hazards),
        duration_ms=duration_ms,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Aggregation Engine
# ═══════════════════════════════════════════════════════════════════════════

class AggregationEngine:
    """Concurrent fan-out over the registry's provider clients."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or default_settings

    # ── Planning ──

    def _resolve_providers(self, requested: Sequence[str], excluded: Sequence[str]) -> List[str]:
        names = _unique(requested) if requested else self.registry.names
        for name in list(names) + list(excluded):
            self.registry.descriptor(name)
        skip = set(excluded)
        return [n for n in names if n not in skip]

    def plan(self, request: AssessmentRequest) -> Tuple[Location, List[HazardType], List[Branch]]:
        location = Location(request.latitude, request.longitude)
        providers = self._resolve_providers(request.providers, request.excluded_providers)

        if request.hazard_types:
            hazards = _unique(HazardType.parse(h) for h in request.hazard_types)
        else:
            supported = set()
            for name in providers:
                supported.update(self.registry.descriptor(name).hazard_types)
            hazards = [h for h in HazardType if h in supported]

        branches = []
        for name in providers:
            client = self.registry.client(name)
            for operation in client.operations_for(hazards):
                covered = tuple(h for h in client.hazards_for(operation) if h in hazards)
                branches.append(Branch(name, operation, covered))
        return location, hazards, branches

    # ── Execution ──

    async def _run_branch(
        self,
        branch: Branch,
        location: Location,
        timeout: float,
        rate_limit_wait: Optional[float],
    ) -> BranchOutcome:
        client = self.registry.client(branch.provider)
        start = time.perf_counter()
        try:
            readings = await client.fetch(
                branch.operation, location,
                timeout=timeout, rate_limit_wait=rate_limit_wait,
            )
        except NoDataError as e:
            return BranchOutcome(
                branch, BranchStatus.NO_DATA, error=e,
                latency_ms=(time.perf_counter() - start) * 1000,
            )
        except ProviderError as e:
            return BranchOutcome(
                branch, BranchStatus.FAILED, error=e,
                latency_ms=(time.perf_counter() - start) * 1000,
            )
        return BranchOutcome(
            branch, BranchStatus.SUCCESS, readings=tuple(readings),
            latency_ms=(time.perf_counter() - start) * 1000,
        )

    def _timed_out(self, branch: Branch, deadline_ms: float) -> BranchOutcome:
        error = ProviderTimeoutError(
            f"Global deadline of {deadline_ms:.0f}ms exceeded",
            provider=branch.provider,
            operation=branch.operation,
        )
        self.registry.health.record_failure(
            branch.provider, ErrorKind.TIMEOUT, deadline_ms, error.message,
        )
        return BranchOutcome(branch, BranchStatus.FAILED, error=error, latency_ms=deadline_ms)

    async def fan_out(
        self,
        branches: Sequence[Branch],
        location: Location,
        *,
        timeout: float,
        deadline_ms: float,
        rate_limit_wait: Optional[float],
    ) -> List[BranchOutcome]:
        """Run all branches concurrently; outcomes come back in branch order."""
        tasks = [
            asyncio.create_task(self._run_branch(b, location, timeout, rate_limit_wait))
            for b in branches
        ]
        done, pending = await asyncio.wait(tasks, timeout=deadline_ms / 1000)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "%d branch(es) missed the %.0fms deadline", len(pending), deadline_ms,
                extra={"duration_ms": deadline_ms},
            )

        outcomes = []
        for branch, task in zip(branches, tasks):
            if task in done:
                outcomes.append(task.result())
            else:
                outcomes.append(self._timed_out(branch, deadline_ms))
        return outcomes

    async def assess(self, request: AssessmentRequest) -> PropertyRiskAssessment:
        """
        Produce a risk assessment for one location.

        Raises
        ------
        ValidationError
            Bad coordinates, unknown provider or hazard type.
        NoDataError
            No requested hazard could be scored from any provider.
        """
        s = self.settings
        location, hazards, branches = self.plan(request)
        if not branches:
            raise NoDataError(
                "No requested provider covers the requested hazards",
                hazard_types=[h.value for h in hazards],
            )

        timeout = (request.per_provider_timeout_ms or s.PROVIDER_TIMEOUT_MS) / 1000
        deadline_ms = float(request.global_deadline_ms or s.GLOBAL_DEADLINE_MS)
        wait_ms = s.RATE_LIMIT_WAIT_MS if request.rate_limit_wait_ms is None else request.rate_limit_wait_ms
        if timeout <= 0 or deadline_ms <= 0:
            raise ValidationError("Timeouts must be positive", field="timeouts")

        start = time.perf_counter()
        outcomes = await self.fan_out(
            branches, location,
            timeout=timeout,
            deadline_ms=deadline_ms,
            rate_limit_wait=wait_ms / 1000 if wait_ms > 0 else None,
        )
        duration_ms = (time.perf_counter() - start) * 1000

        assessment = build_assessment(
            location,
            outcomes,
            self.registry.weights(),
            hazards,
            normalization=self.registry.normalization,
            duration_ms=duration_ms,
        )
        logger.info(
            "Assessed (%.4f, %.4f): %s %.1f from %d/%d branches",
            location.latitude, location.longitude,
            assessment.overall_level.value, assessment.overall_score,
            len([o for o in outcomes if o.status == BranchStatus.SUCCESS]), len(outcomes),
            extra={"confidence": assessment.confidence, "duration_ms": duration_ms},
        )
        return assessment

    # ── Single-hazard lookup with fallback ──

    async def _lookup_one(
        self,
        provider: str,
        hazard_type: HazardType,
        location: Location,
        timeout: float,
    ) -> NormalizedHazardScore:
        client = self.registry.client(provider)
        operation = client.operations_for([hazard_type])[0]
        readings = await client.fetch(operation, location, timeout=timeout)
        for reading in readings:
            if reading.hazard_type == hazard_type:
                return self.registry.normalization.normalize_reading(reading)
        raise NoDataError(
            f"No {hazard_type.value} reading", provider=provider, operation=operation,
        )

    async def lookup_hazard(
        self,
        latitude: float,
        longitude: float,
        hazard_type: str,
        providers: Optional[Sequence[str]] = None,
        *,
        min_quality: Optional[float] = None,
        per_provider_timeout_ms: Optional[int] = None,
    ) -> FallbackResult[NormalizedHazardScore]:
        """
        First acceptable score for one hazard, trying providers in order.

        Without an explicit list, providers supporting the hazard are tried
        by priority and then by cost. Quality is the reading's reported
        confidence.
        """
        location = Location(latitude, longitude)
        hazard = HazardType.parse(hazard_type)
        if providers:
            names = [n for n in _unique(providers) if self.registry.descriptor(n).supports(hazard)]
        else:
            names = self.registry.providers_for(hazard)

        timeout = (per_provider_timeout_ms or self.settings.PROVIDER_TIMEOUT_MS) / 1000
        executor = FallbackExecutor(
            min_quality=self.settings.FALLBACK_MIN_QUALITY if min_quality is None else min_quality,
            quality_of=lambda score: score.derived_from.confidence,
        )
        candidates = [
            FallbackCandidate(name, partial(self._lookup_one, name, hazard, location, timeout))
            for name in names
        ]
        return await executor.resolve(candidates)
