"""
Static provider configuration.

A ``ProviderDescriptor`` is built once from settings when the registry is
created and never changes afterwards. Reliability weights are bounded to
[0.0, 2.0]: 1.0 is a neutral source, 0.0 keeps a provider in the manifest
while removing it from every weighted mean.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from hazard_engine.core.rate_limiter import RateLimitPolicy
from hazard_engine.scoring.models import HazardType

MIN_WEIGHT = 0.0
MAX_WEIGHT = 2.0

# Cache lifetimes in seconds
TTL_REAL_TIME = 900        # gauge readings, 15 min
TTL_HAZARD_INDEX = 86_400  # slowly-changing indices, 1 day
TTL_HISTORICAL = 604_800   # historical records, 1 week


class ProviderKind(str, Enum):
    GOVERNMENT = "government"
    COMMERCIAL = "commercial"
    HYDROLOGICAL = "hydrological"


@dataclass(frozen=True)
class ProviderDescriptor:
    name: str
    display_name: str
    base_url: str
    kind: ProviderKind
    rate_limit: RateLimitPolicy
    hazard_types: FrozenSet[HazardType]
    weight: float = 1.0
    cache_ttl: Mapping[str, float] = field(default_factory=dict)
    default_ttl: float = TTL_HAZARD_INDEX
    priority: int = 100  # lower is tried first in fallback chains
    cost_per_request: float = 0.0
    timeout_seconds: float = 8.0
    max_retries: int = 2
    api_key: Optional[str] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if not MIN_WEIGHT <= self.weight <= MAX_WEIGHT:
            raise ValueError(
                f"weight for {self.name} must be within "
                f"[{MIN_WEIGHT}, {MAX_WEIGHT}], got {self.weight}"
            )
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds for {self.name} must be positive")
        if self.max_retries < 0:
            raise ValueError(f"max_retries for {self.name} must not be negative")

    def ttl_for(self, operation: str) -> float:
        return self.cache_ttl.get(operation, self.default_ttl)

    def supports(self, hazard_type: HazardType) -> bool:
        return hazard_type in self.hazard_types

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "kind": self.kind.value,
            "base_url": self.base_url,
            "weight": self.weight,
            "priority": self.priority,
            "cost_per_request": self.cost_per_request,
            "hazard_types": sorted(h.value for h in self.hazard_types),
            "rate_limit": {
                "max_requests": self.rate_limit.max_requests,
                "window_seconds": self.rate_limit.window_seconds,
            },
            "cache_ttl": dict(self.cache_ttl),
            "timeout_seconds": self.timeout_seconds,
            "max_retries": self.max_retries,
            "configured": self.api_key is not None or self.kind != ProviderKind.COMMERCIAL,
        }
