"""
Hydrological monitoring client (USGS Water Services, instantaneous values).

Flood indicator from river gauges near the point:

    1. Fetch 7 days of gage height (parameter 00065) for active sites in a
       bounding box of ± BBOX_DEGREES around the point.
    2. Per site, the percentile rank of the latest reading within its own
       7-day record:  p = |{v ∈ record : v ≤ latest}| / |record|
    3. Reading = mean p across sites (0–1); confidence grows with the number
       of sites that contributed, saturating at FULL_CONFIDENCE_SITES.

A gauge at the top of its weekly range reads 1.0 (rising water); a quiet
river near its median reads ~0.5. Readings are cached for 15 minutes.
"""

from __future__ import annotations

from typing import Any, List, Mapping

import numpy as np

from hazard_engine.core.errors import ResponseFormatError
from hazard_engine.providers.base import ProviderClient, RequestSpec
from hazard_engine.scoring.models import HazardType, Location, RawHazardReading

GAGE_HEIGHT = "00065"
BBOX_DEGREES = 0.25
MIN_VALUES_PER_SITE = 2
FULL_CONFIDENCE_SITES = 3
NO_DATA_SENTINEL = -999999.0


def latest_percentile(values: List[float]) -> float:
    """
    Percentile rank (0–1) of the last value within the series.

    Examples
    --------
    >>> latest_percentile([1.0, 2.0, 3.0, 4.0])
    1.0
    >>> latest_percentile([4.0, 3.0, 2.0, 1.0])
    0.25
    """
    arr = np.asarray(values, dtype=float)
    return float(np.mean(arr <= arr[-1]))


def _site_values(series: Mapping[str, Any]) -> List[float]:
    out = []
    for block in series.get("values", []):
        for point in block.get("value", []):
            try:
                v = float(point["value"])
            except (KeyError, TypeError, ValueError):
                continue
            if v != NO_DATA_SENTINEL:
                out.append(v)
    return out


class HydroMonitorClient(ProviderClient):
    operations = {"gage_height": (HazardType.FLOOD,)}

    def build_request(
        self, operation: str, location: Location, params: Mapping[str, Any],
    ) -> RequestSpec:
        west = max(-180.0, location.longitude - BBOX_DEGREES)
        east = min(180.0, location.longitude + BBOX_DEGREES)
        south = max(-90.0, location.latitude - BBOX_DEGREES)
        north = min(90.0, location.latitude + BBOX_DEGREES)
        return RequestSpec(
            path="iv/",
            params={
                "format": "json",
                "bBox": f"{west:.4f},{south:.4f},{east:.4f},{north:.4f}",
                "parameterCd": GAGE_HEIGHT,
                "siteStatus": "active",
                "period": "P7D",
            },
        )

    def parse_response(
        self,
        operation: str,
        payload: Any,
        location: Location,
        params: Mapping[str, Any],
    ) -> List[RawHazardReading]:
        if not isinstance(payload, dict) or "value" not in payload:
            raise ResponseFormatError(
                "Missing 'value' envelope", provider=self.name, operation=operation,
            )
        series_list = payload["value"].get("timeSeries") or []

        sites = []
        percentiles = []
        for series in series_list:
            values = _site_values(series)
            if len(values) < MIN_VALUES_PER_SITE:
                continue
            site_code = series.get("sourceInfo", {}).get("siteCode", [{}])[0].get("value")
            sites.append(site_code)
            percentiles.append(latest_percentile(values))

        if not percentiles:
            return []

        return [RawHazardReading(
            provider=self.name,
            hazard_type=HazardType.FLOOD,
            raw_value=float(np.mean(percentiles)),
            source_metadata={
                "sites": sites,
                "site_count": len(sites),
                "max_site_percentile": max(percentiles),
                "confidence": min(1.0, len(sites) / FULL_CONFIDENCE_SITES),
            },
        )]
