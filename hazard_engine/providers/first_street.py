"""
Commercial property-risk client (First Street-style API).

One property lookup returns a 1–10 risk factor per hazard
(``{"flood": {"risk_score": 7}, ...}``); the normalization table maps the
factor onto 0–100. Wind risk is reported for hurricanes.
"""

from __future__ import annotations

from typing import Any, List, Mapping

from hazard_engine.core.errors import ResponseFormatError
from hazard_engine.providers.base import ProviderClient, RequestSpec
from hazard_engine.scoring.models import HazardType, Location, RawHazardReading

SECTIONS = {
    "flood": HazardType.FLOOD,
    "wildfire": HazardType.WILDFIRE,
    "heat": HazardType.HEAT,
    "wind": HazardType.HURRICANE,
}


class FirstStreetClient(ProviderClient):
    operations = {"property_risk": tuple(SECTIONS.values())}

    def build_request(
        self, operation: str, location: Location, params: Mapping[str, Any],
    ) -> RequestSpec:
        return RequestSpec(
            path="property/risk",
            params={"lat": location.latitude, "lng": location.longitude},
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
        readings = []
        for section, hazard in SECTIONS.items():
            data = payload.get(section) or {}
            factor = data.get("risk_score")
            if factor is None:
                continue
            readings.append(RawHazardReading(
                provider=self.name,
                hazard_type=hazard,
                raw_value=float(factor),
                source_metadata={
                    "section": section,
                    "property_id": payload.get("property_id"),
                },
            ))
        return readings
