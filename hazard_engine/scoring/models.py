"""
Data model shared by provider clients, normalization and aggregation.

Readings flow through three shapes:

    RawHazardReading        provider-native value, as parsed from a response
    NormalizedHazardScore   the same reading on the common 0–100 scale
    HazardRiskAggregate     all scores for one hazard, weighted and classified

and end up in a ``PropertyRiskAssessment``, whose ``to_dict`` is the wire
format returned to callers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from hazard_engine.core.errors import ValidationError


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class HazardType(str, Enum):
    FLOOD      = "flood"
    WILDFIRE   = "wildfire"
    HEAT       = "heat"
    HURRICANE  = "hurricane"
    TORNADO    = "tornado"
    EARTHQUAKE = "earthquake"
    DROUGHT    = "drought"
    HAIL       = "hail"

    @classmethod
    def parse(cls, value: Any) -> "HazardType":
        """
        Accept enum members, any case, and the ``<hazard>_risk`` spelling.

        Raises ``ValidationError`` for anything else.
        """
        if isinstance(value, cls):
            return value
        name = str(value).strip().lower()
        if name.endswith("_risk"):
            name = name[: -len("_risk")]
        try:
            return cls(name)
        except ValueError:
            raise ValidationError(
                f"Unknown hazard type '{value}'",
                field="hazard_types",
                allowed=[h.value for h in cls],
            ) from None


class RiskLevel(str, Enum):
    """Risk band for a 0–100 score."""
    LOW       = "LOW"        # < 40
    MODERATE  = "MODERATE"   # 40–59
    HIGH      = "HIGH"       # 60–79
    VERY_HIGH = "VERY_HIGH"  # ≥ 80


# ═══════════════════════════════════════════════════════════════════════════
# Location
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        for name, value, limit in (
            ("latitude", self.latitude, 90.0),
            ("longitude", self.longitude, 180.0),
        ):
            if not isinstance(value, (int, float)) or not math.isfinite(value):
                raise ValidationError(f"{name} must be a finite number", field=name)
            if not -limit <= value <= limit:
                raise ValidationError(
                    f"{name} {value} outside [-{limit:g}, {limit:g}]", field=name,
                )

    def as_tuple(self) -> Tuple[float, float]:
        return (self.latitude, self.longitude)

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


# ═══════════════════════════════════════════════════════════════════════════
# Readings and scores
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RawHazardReading:
    """A value exactly as the provider reported it (native scale)."""
    provider: str
    hazard_type: HazardType
    raw_value: float
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source_metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def confidence(self) -> float:
        """Provider-reported quality of this reading, 1.0 when not reported."""
        value = self.source_metadata.get("confidence", 1.0)
        try:
            return max(0.0, min(1.0, float(value)))
        except (TypeError, ValueError):
            return 1.0


@dataclass(frozen=True)
class NormalizedHazardScore:
    """One reading mapped onto the common 0–100 scale."""
    provider: str
    hazard_type: HazardType
    score: float
    derived_from: RawHazardReading

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "hazard_type": self.hazard_type.value,
            "score": round(self.score, 2),
            "raw_value": self.derived_from.raw_value,
            "observed_at": self.derived_from.observed_at.isoformat(),
        }


def reported_score(score: float) -> int:
    """Whole-number score as sent to clients; risk bands are read off this value."""
    return int(round(score))


@dataclass(frozen=True)
class HazardRiskAggregate:
    hazard_type: HazardType
    combined_score: float
    risk_level: RiskLevel
    breakdown: Tuple[NormalizedHazardScore, ...]

    @property
    def sources(self) -> Dict[str, int]:
        """Per-provider contribution; the highest score wins if one provider reports twice."""
        out: Dict[str, int] = {}
        for s in self.breakdown:
            out[s.provider] = max(out.get(s.provider, 0), reported_score(s.score))
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": reported_score(self.combined_score),
            "level": self.risk_level.value,
            "sources": self.sources,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Assessment
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SourceFailure:
    """Why one fan-out branch contributed nothing."""
    provider: str
    operation: str
    hazard_types: Tuple[HazardType, ...]
    error_kind: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "operation": self.operation,
            "hazardTypes": [h.value for h in self.hazard_types],
            "errorKind": self.error_kind,
            "message": self.message,
        }


@dataclass(frozen=True)
class PropertyRiskAssessment:
    """
    Final result of one assessment.

    Only ever built with at least one hazard; "no data at all" is reported
    by raising ``NoDataError`` instead.
    """
    location: Location
    overall_score: float
    overall_level: RiskLevel
    hazards: Dict[HazardType, HazardRiskAggregate]
    sources_used: List[str]
    sources_failed: List[str]
    confidence: float
    generated_at: datetime
    sources_no_data: List[str] = field(default_factory=list)
    failures: List[SourceFailure] = field(default_factory=list)
    primary_hazards: List[HazardType] = field(default_factory=list)
    duration_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialise for API response."""
        return {
            "location": self.location.to_dict(),
            "overallScore": reported_score(self.overall_score),
            "overallLevel": self.overall_level.value,
            "hazards": {h.value: agg.to_dict() for h, agg in self.hazards.items()},
            "primaryHazards": [h.value for h in self.primary_hazards],
            "sourcesUsed": list(self.sources_used),
            "sourcesFailed": list(self.sources_failed),
            "sourcesNoData": list(self.sources_no_data),
            "failures": [f.to_dict() for f in self.failures],
            "confidence": round(self.confidence, 4),
            "generatedAt": self.generated_at.isoformat(),
            "durationMs": round(self.duration_ms, 1) if self.duration_ms is not None else None,
        }
