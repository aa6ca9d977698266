"""
FastAPI routes: hazard risk assessment and provider read-outs.

    POST /api/v1/assess             full multi-provider assessment
    POST /api/v1/assess/lookup      single hazard, first acceptable provider
    GET  /api/v1/providers          static provider configuration
    GET  /api/v1/providers/health   health monitor snapshots

The engine lives on ``app.state.engine`` (built in the app lifespan). Engine
errors are mapped to the JSON error envelope by the handlers in
``core.errors``; a location with no data at all is a 404.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from hazard_engine.api.schemas import (
    AssessmentOut,
    AssessmentRequestIn,
    HazardLookupIn,
    HazardLookupOut,
)
from hazard_engine.scoring.aggregator import AggregationEngine, classify_risk

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["assessment"])


def get_engine(request: Request) -> AggregationEngine:
    return request.app.state.engine


@router.post("/assess", response_model=AssessmentOut)
async def assess_location(
    body: AssessmentRequestIn,
    engine: AggregationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Aggregate every requested provider into one risk assessment."""
    skipped = []
    if body.exclude_unhealthy:
        skipped = engine.registry.health.unhealthy_providers()
        if skipped:
            logger.info("Skipping unhealthy providers: %s", ", ".join(skipped))

    assessment = await engine.assess(body.to_engine_request(skipped))
    return assessment.to_dict()


@router.post("/assess/lookup", response_model=HazardLookupOut)
async def lookup_hazard(
    body: HazardLookupIn,
    engine: AggregationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Score one hazard from the first provider that answers well enough."""
    result = await engine.lookup_hazard(
        body.latitude,
        body.longitude,
        body.hazard_type,
        body.providers or None,
        min_quality=body.min_quality,
        per_provider_timeout_ms=body.per_provider_timeout_ms,
    )
    score = result.value
    return {
        "hazardType": score.hazard_type.value,
        "provider": result.source,
        "score": round(score.score, 2),
        "level": classify_risk(score.score).value,
        "quality": round(result.quality, 4),
        "usedFallback": result.used_fallback,
        "attempts": [a.to_dict() for a in result.attempts],
        "rawValue": score.derived_from.raw_value,
    }


@router.get("/providers")
async def list_providers(engine: AggregationEngine = Depends(get_engine)) -> Dict[str, Any]:
    return {"providers": [d.to_dict() for d in engine.registry.descriptors]}


@router.get("/providers/health")
async def provider_health(engine: AggregationEngine = Depends(get_engine)) -> Dict[str, Any]:
    health = engine.registry.health
    return {
        "summary": health.summary(),
        "providers": [r.to_dict() for r in health.snapshots().values()],
        "cache": engine.registry.cache.stats(),
    }
