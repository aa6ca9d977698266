"""
Government hazard index client (FEMA National Risk Index via OpenFEMA).

One call returns the census-tract record covering the point, with a 0–100
percentile risk score per hazard in ``<CODE>_RISKS`` fields. Flooding is
split into riverine (RFLD) and coastal (CFLD); the higher of the two is the
tract's flood reading.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Tuple

from hazard_engine.core.errors import ResponseFormatError
from hazard_engine.providers.base import ProviderClient, RequestSpec
from hazard_engine.scoring.models import HazardType, Location, RawHazardReading

DATASET = "NationalRiskIndex"

# NRI hazard codes per engine hazard type
NRI_CODES: Dict[HazardType, Tuple[str, ...]] = {
    HazardType.FLOOD: ("RFLD", "CFLD"),
    HazardType.WILDFIRE: ("WFIR",),
    HazardType.HEAT: ("HWAV",),
    HazardType.HURRICANE: ("HRCN",),
    HazardType.TORNADO: ("TRND",),
    HazardType.EARTHQUAKE: ("ERQK",),
    HazardType.DROUGHT: ("DRGT",),
    HazardType.HAIL: ("HAIL",),
}


def _parse_score(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return round(float(value), 2)
    except (TypeError, ValueError):
        return None


class GovIndexClient(ProviderClient):
    operations = {"risk_index": tuple(NRI_CODES)}

    def build_request(
        self, operation: str, location: Location, params: Mapping[str, Any],
    ) -> RequestSpec:
        point = f"POINT({location.longitude} {location.latitude})"
        select = ["StateAbbreviation", "CountyName", "CensusTracts", "RISKS", "RISKR"]
        for codes in NRI_CODES.values():
            select.extend(f"{code}_RISKS" for code in codes)
        return RequestSpec(
            path=DATASET,
            params={
                "$filter": f"geo.intersects(boundary, '{point}')",
                "$select": ",".join(select),
                "$top": 1,
            },
        )

    def parse_response(
        self,
        operation: str,
        payload: Any,
        location: Location,
        params: Mapping[str, Any],
    ) -> List[RawHazardReading]:
        if isinstance(payload, dict):
            records = payload.get(DATASET, [])
        elif isinstance(payload, list):
            records = payload
        else:
            raise ResponseFormatError(
                f"Unexpected payload type {type(payload).__name__}",
                provider=self.name, operation=operation,
            )
        if not records:
            return []

        record = records[0]
        metadata = {
            "state": record.get("StateAbbreviation"),
            "county": record.get("CountyName"),
            "census_tract": record.get("CensusTracts"),
            "composite_rating": record.get("RISKR"),
        }

        readings = []
        for hazard, codes in NRI_CODES.items():
            scores = [s for s in (_parse_score(record.get(f"{c}_RISKS")) for c in codes) if s is not None]
            if not scores:
                continue
            readings.append(RawHazardReading(
                provider=self.name,
                hazard_type=hazard,
                raw_value=max(scores),
                source_metadata={**metadata, "fields": [f"{c}_RISKS" for c in codes]},
            ))
        return readings
