"""
Pydantic schemas for the assessment API.

Separated from the route handlers so they are reusable by other callers
(background workers, tests). Field names are snake_case in Python and
camelCase on the wire; both spellings are accepted on input.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from hazard_engine.scoring.aggregator import AssessmentRequest


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class AssessmentRequestIn(CamelModel):
    """Request body for POST /api/v1/assess."""
    latitude: float = Field(
        ..., ge=-90.0, le=90.0,
        description="Latitude in decimal degrees",
        examples=[29.7604],
    )
    longitude: float = Field(
        ..., ge=-180.0, le=180.0,
        description="Longitude in decimal degrees",
        examples=[-95.3698],
    )
    hazard_types: List[str] = Field(
        default_factory=list,
        description="Hazards to assess (empty = everything the providers support)",
        examples=[["flood", "wildfire"]],
    )
    providers: List[str] = Field(
        default_factory=list,
        description="Providers to query (empty = all registered)",
        examples=[["gov_index", "commercial_a"]],
    )
    per_provider_timeout_ms: Optional[int] = Field(
        default=None, gt=0, le=120_000,
        description="HTTP timeout per provider attempt",
    )
    global_deadline_ms: Optional[int] = Field(
        default=None, gt=0, le=300_000,
        description="Deadline for the whole fan-out",
    )
    rate_limit_wait_ms: Optional[int] = Field(
        default=None, ge=0, le=60_000,
        description="Longest wait for a rate-limit token (0 = fail fast)",
    )
    excluded_providers: List[str] = Field(default_factory=list)
    exclude_unhealthy: bool = Field(
        default=False,
        description="Skip providers the health monitor currently marks unhealthy",
    )

    def to_engine_request(self, extra_exclusions: Sequence[str] = ()) -> AssessmentRequest:
        excluded = list(dict.fromkeys([*self.excluded_providers, *extra_exclusions]))
        return AssessmentRequest(
            latitude=self.latitude,
            longitude=self.longitude,
            hazard_types=tuple(self.hazard_types),
            providers=tuple(self.providers),
            per_provider_timeout_ms=self.per_provider_timeout_ms,
            global_deadline_ms=self.global_deadline_ms,
            rate_limit_wait_ms=self.rate_limit_wait_ms,
            excluded_providers=tuple(excluded),
        )


class HazardLookupIn(CamelModel):
    """Request body for POST /api/v1/assess/lookup."""
    latitude: float = Field(..., ge=-90.0, le=90.0, examples=[29.7604])
    longitude: float = Field(..., ge=-180.0, le=180.0, examples=[-95.3698])
    hazard_type: str = Field(..., examples=["flood"])
    providers: List[str] = Field(
        default_factory=list,
        description="Fallback order (empty = by priority, then cost)",
    )
    min_quality: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    per_provider_timeout_ms: Optional[int] = Field(default=None, gt=0, le=120_000)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class CoordinateOut(BaseModel):
    latitude: float
    longitude: float


class HazardOut(BaseModel):
    score: int = Field(..., ge=0, le=100)
    level: str
    sources: Dict[str, int]


class SourceFailureOut(CamelModel):
    provider: str
    operation: str
    hazard_types: List[str]
    error_kind: str
    message: str = ""


class AssessmentOut(CamelModel):
    """Response for POST /api/v1/assess."""
    location: CoordinateOut
    overall_score: int = Field(..., ge=0, le=100)
    overall_level: str
    hazards: Dict[str, HazardOut]
    primary_hazards: List[str]
    sources_used: List[str]
    sources_failed: List[str]
    sources_no_data: List[str]
    failures: List[SourceFailureOut]
    confidence: float = Field(..., ge=0.0, le=1.0)
    generated_at: str
    duration_ms: Optional[float] = None


class FallbackAttemptOut(BaseModel):
    source: str
    outcome: str
    quality: Optional[float] = None
    message: str = ""


class HazardLookupOut(CamelModel):
    """Response for POST /api/v1/assess/lookup."""
    hazard_type: str
    provider: str
    score: float
    level: str
    quality: float
    used_fallback: bool
    attempts: List[FallbackAttemptOut]
    raw_value: Any = None
