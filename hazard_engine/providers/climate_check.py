"""
Commercial climate-risk client (ClimateCheck-style API).

Each hazard has its own analysis endpoint returning ``overall_score`` on a
0–100 scale, so every hazard is a separate operation and a separate
fan-out branch: flood can succeed while wildfire fails.
"""

from __future__ import annotations

from typing import Any, List, Mapping

from hazard_engine.core.errors import ResponseFormatError
from hazard_engine.providers.base import ProviderClient, RequestSpec
from hazard_engine.scoring.models import HazardType, Location, RawHazardReading

ENDPOINTS = {
    "flood": ("flood-analysis", HazardType.FLOOD),
    "wildfire": ("wildfire-analysis", HazardType.WILDFIRE),
    "heat": ("heat-analysis", HazardType.HEAT),
    "hurricane": ("hurricane-analysis", HazardType.HURRICANE),
}


class ClimateCheckClient(ProviderClient):
    operations = {op: (hazard,) for op, (_, hazard) in ENDPOINTS.items()}

    def build_request(
        self, operation: str, location: Location, params: Mapping[str, Any],
    ) -> RequestSpec:
        path, _ = ENDPOINTS[operation]
        return RequestSpec(
            path=path,
            params={"latitude": location.latitude, "longitude": location.longitude},
        )

    def parse_response(
        self,
        operation: str,
        payload: Any,
        location: Location,
        params: Mapping[str, Any],
    ) -> List[RawHazardReading]:
        if not isinstance(payload, dict):
            raise ResponseFormatError(
                "Expected a JSON object", provider=self.name, operation=operation,
            )
        score = payload.get("overall_score")
        if score is None:
            return []
        _, hazard = ENDPOINTS[operation]
        metadata = {"analysis": operation}
        if payload.get("confidence") is not None:
            metadata["confidence"] = float(payload["confidence"])
        if payload.get("percentile") is not None:
            metadata["percentile"] = payload["percentile"]
        return [RawHazardReading(
            provider=self.name,
            hazard_type=hazard,
            raw_value=float(score),
            source_metadata=metadata,
        )]
