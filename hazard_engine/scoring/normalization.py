"""
Normalization Engine: provider-native values → common 0–100 scale.

Every provider reports on its own scale. The mapping lives in one table
keyed by ``(provider, hazard_type)``; a lookup falls back to the provider's
default rule and then to the table-wide default, which must be given when
the table is built.

Rule kinds:

    IDENTITY              score = raw                       (already 0–100)
    MULTIPLY(k)           score = raw × k                   (e.g. 0–1 → ×100)
    LINEAR_RANGE(lo, hi)  score = (raw − lo) / (hi − lo) × 100

Default table:

    provider        hazard     native scale            rule
    ─────────────   ────────   ─────────────────────   ──────────────────
    gov_index       *          0–100 percentile        IDENTITY
    commercial_a    *          0–100                   IDENTITY
    commercial_b    *          1–10 factor             LINEAR_RANGE(1, 10)
    hydro_monitor   flood      0–1 gauge percentile    MULTIPLY(100)

Whatever the rule produces is clamped to [0, 100]; NaN maps to 0 and ±∞ to
the nearest bound, so a malformed provider value can never leave the range.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from hazard_engine.scoring.models import (
    HazardType,
    NormalizedHazardScore,
    RawHazardReading,
)

SCORE_MIN = 0.0
SCORE_MAX = 100.0


class ScaleKind(str, Enum):
    IDENTITY = "identity"
    MULTIPLY = "multiply"
    LINEAR_RANGE = "linear_range"


@dataclass(frozen=True)
class ScaleRule:
    kind: ScaleKind = ScaleKind.IDENTITY
    factor: float = 1.0
    low: float = 0.0
    high: float = 100.0

    def __post_init__(self) -> None:
        if self.kind == ScaleKind.LINEAR_RANGE and self.high <= self.low:
            raise ValueError("LINEAR_RANGE needs high > low")

    @classmethod
    def identity(cls) -> "ScaleRule":
        return cls(ScaleKind.IDENTITY)

    @classmethod
    def multiply(cls, factor: float) -> "ScaleRule":
        return cls(ScaleKind.MULTIPLY, factor=factor)

    @classmethod
    def linear_range(cls, low: float, high: float) -> "ScaleRule":
        return cls(ScaleKind.LINEAR_RANGE, low=low, high=high)

    def apply(self, raw_value: float) -> float:
        if self.kind == ScaleKind.MULTIPLY:
            return raw_value * self.factor
        if self.kind == ScaleKind.LINEAR_RANGE:
            return (raw_value - self.low) / (self.high - self.low) * SCORE_MAX
        return raw_value


def clamp_score(value: float) -> float:
    """Clamp to [0, 100]; NaN becomes 0."""
    if math.isnan(value):
        return SCORE_MIN
    return max(SCORE_MIN, min(SCORE_MAX, value))


class NormalizationTable:
    """Explicit ``(provider, hazard) → ScaleRule`` map with a required default."""

    def __init__(
        self,
        rules: Optional[Mapping[Tuple[str, HazardType], ScaleRule]] = None,
        *,
        default: ScaleRule,
        provider_defaults: Optional[Mapping[str, ScaleRule]] = None,
    ) -> None:
        self._rules: Dict[Tuple[str, HazardType], ScaleRule] = dict(rules or {})
        self._provider_defaults: Dict[str, ScaleRule] = dict(provider_defaults or {})
        self.default = default

    def rule_for(self, provider: str, hazard_type: HazardType) -> ScaleRule:
        rule = self._rules.get((provider, hazard_type))
        if rule is not None:
            return rule
        return self._provider_defaults.get(provider, self.default)

    def normalize(self, provider: str, hazard_type: HazardType, raw_value: float) -> float:
        try:
            raw = float(raw_value)
        except (TypeError, ValueError):
            return SCORE_MIN
        return clamp_score(self.rule_for(provider, hazard_type).apply(raw))

    def normalize_reading(self, reading: RawHazardReading) -> NormalizedHazardScore:
        return NormalizedHazardScore(
            provider=reading.provider,
            hazard_type=reading.hazard_type,
            score=self.normalize(reading.provider, reading.hazard_type, reading.raw_value),
            derived_from=reading,
        )


DEFAULT_TABLE = NormalizationTable(
    {
        ("hydro_monitor", HazardType.FLOOD): ScaleRule.multiply(100.0),
    },
    default=ScaleRule.identity(),
    provider_defaults={
        "gov_index": ScaleRule.identity(),
        "commercial_a": ScaleRule.identity(),
        "commercial_b": ScaleRule.linear_range(1.0, 10.0),
    },
)


def normalize(provider: str, hazard_type: HazardType, raw_value: float) -> float:
    """
    Map a provider-native value onto [0, 100] using the default table.

    Examples
    --------
    >>> normalize("commercial_b", HazardType.FLOOD, 10)
    100.0
    >>> normalize("gov_index", HazardType.WILDFIRE, 140)
    100.0
    """
    return DEFAULT_TABLE.normalize(provider, hazard_type, raw_value)
