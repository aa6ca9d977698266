"""
Shared test helpers: a routed fake provider API and registry factories.

Every provider client talks to an ``httpx.AsyncClient`` backed by an
``httpx.MockTransport``; ``FakeProviderAPI`` routes requests by URL to
scripted replies and records every call, so tests can assert how many
remote requests (including retries) were made.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
import pytest

from hazard_engine.core.config import Settings
from hazard_engine.providers.registry import ProviderRegistry, default_descriptors
from hazard_engine.scoring.aggregator import AggregationEngine

GOV_URL = "https://gov.test"
COMMERCIAL_A_URL = "https://a.test"
COMMERCIAL_B_URL = "https://b.test"
HYDRO_URL = "https://hydro.test"

GOV_ROUTE = f"{GOV_URL}/NationalRiskIndex"
HYDRO_ROUTE = f"{HYDRO_URL}/iv/"
COMMERCIAL_B_ROUTE = f"{COMMERCIAL_B_URL}/property/risk"


def commercial_a_route(hazard: str) -> str:
    return f"{COMMERCIAL_A_URL}/{hazard}-analysis"


EQUAL_WEIGHTS = {
    "gov_index": 1.0,
    "commercial_a": 1.0,
    "commercial_b": 1.0,
    "hydro_monitor": 1.0,
}

# Houston, TX
HOUSTON_LAT = 29.7604
HOUSTON_LON = -95.3698


# ═══════════════════════════════════════════════════════════════════════════
# Scripted replies
# ═══════════════════════════════════════════════════════════════════════════

Reply = Callable[[httpx.Request], Any]


def reply(
    status: int = 200,
    json: Any = None,
    *,
    headers: Optional[Dict[str, str]] = None,
    delay: float = 0.0,
    text: Optional[str] = None,
) -> Reply:
    """Build a fresh ``httpx.Response`` per request, optionally after a delay."""

    async def _reply(request: httpx.Request) -> httpx.Response:
        if delay:
            await asyncio.sleep(delay)
        if text is not None:
            return httpx.Response(status, text=text, headers=headers, request=request)
        return httpx.Response(status, json=json, headers=headers, request=request)

    return _reply


def raise_error(exc_type: type = httpx.ConnectError, message: str = "connection refused") -> Reply:
    async def _raise(request: httpx.Request) -> httpx.Response:
        raise exc_type(message, request=request)

    return _raise


def corrupt_gzip() -> Reply:
    """A 200 whose body claims gzip encoding but is plain bytes."""

    async def _reply(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"Content-Encoding": "gzip"},
            stream=httpx.ByteStream(b"not gzip at all"),
            request=request,
        )

    return _reply


class FakeProviderAPI:
    """
    URL-routed mock provider backend.

    ``on(url, r1, r2, ...)`` scripts successive replies for one URL; the last
    reply repeats once the script runs out. Unrouted URLs answer 404.
    """

    def __init__(self) -> None:
        self._routes: Dict[str, List[Reply]] = {}
        self.calls: Dict[str, int] = defaultdict(int)
        self.requests: List[httpx.Request] = []

    def on(self, url: str, *replies: Reply) -> "FakeProviderAPI":
        self._routes[url] = list(replies)
        return self

    def count(self, url: str) -> int:
        return self.calls[url]

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        url = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        self.calls[url] += 1
        self.requests.append(request)
        script = self._routes.get(url)
        if not script:
            return httpx.Response(404, json={"detail": "not found"}, request=request)
        handler = script.pop(0) if len(script) > 1 else script[0]
        return await handler(request)


# ═══════════════════════════════════════════════════════════════════════════
# Provider payloads
# ═══════════════════════════════════════════════════════════════════════════

NRI_FIELDS = {
    "flood": "RFLD_RISKS",
    "coastal_flood": "CFLD_RISKS",
    "wildfire": "WFIR_RISKS",
    "heat": "HWAV_RISKS",
    "hurricane": "HRCN_RISKS",
    "tornado": "TRND_RISKS",
    "earthquake": "ERQK_RISKS",
    "drought": "DRGT_RISKS",
    "hail": "HAIL_RISKS",
}


def gov_payload(**scores: float) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "StateAbbreviation": "TX",
        "CountyName": "Harris",
        "CensusTracts": "48201312300",
        "RISKS": 88.1,
        "RISKR": "Relatively High",
    }
    for hazard, value in scores.items():
        record[NRI_FIELDS[hazard]] = value
    return {"NationalRiskIndex": [record]}


def climate_payload(score: Optional[float], **extra: Any) -> Dict[str, Any]:
    return {"overall_score": score, **extra}


def first_street_payload(**factors: float) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"property_id": "fs-123"}
    for section, factor in factors.items():
        payload[section] = {"risk_score": factor}
    return payload


def gauge_series(site: str, values: Sequence[float]) -> Dict[str, Any]:
    return {
        "sourceInfo": {"siteCode": [{"value": site}]},
        "values": [{"value": [{"value": str(v)} for v in values]}],
    }


def hydro_payload(*series: Dict[str, Any]) -> Dict[str, Any]:
    return {"value": {"timeSeries": list(series)}}


# ═══════════════════════════════════════════════════════════════════════════
# Registry factories
# ═══════════════════════════════════════════════════════════════════════════

def make_settings(weights: Optional[Dict[str, float]] = None, **overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        ENVIRONMENT="testing",
        GOV_INDEX_BASE_URL=GOV_URL,
        COMMERCIAL_A_BASE_URL=COMMERCIAL_A_URL,
        COMMERCIAL_A_API_KEY="key-a",
        COMMERCIAL_B_BASE_URL=COMMERCIAL_B_URL,
        COMMERCIAL_B_API_KEY="key-b",
        HYDRO_MONITOR_BASE_URL=HYDRO_URL,
        PROVIDER_WEIGHTS=weights or {},
        PROVIDER_TIMEOUT_MS=5_000,
        GLOBAL_DEADLINE_MS=5_000,
        RATE_LIMIT_WAIT_MS=0,
        MAX_RETRIES=2,
        RETRY_BACKOFF_BASE=0.0,
        RETRY_BACKOFF_MAX=0.0,
    )
    values.update(overrides)
    return Settings(**values)


def make_registry(
    api: FakeProviderAPI,
    *,
    names: Optional[Sequence[str]] = None,
    weights: Optional[Dict[str, float]] = None,
    settings: Optional[Settings] = None,
    **kwargs: Any,
) -> ProviderRegistry:
    """Registry over the built-in clients, all talking to ``api``."""
    s = settings or make_settings(weights)
    descriptors = [d for d in default_descriptors(s) if names is None or d.name in names]
    return ProviderRegistry(
        descriptors,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(api)),
        backoff_base=0.0,
        backoff_max=0.0,
        **kwargs,
    )


def make_engine(
    api: FakeProviderAPI,
    *,
    names: Optional[Sequence[str]] = None,
    weights: Optional[Dict[str, float]] = None,
    **settings_overrides: Any,
) -> AggregationEngine:
    s = make_settings(weights, **settings_overrides)
    return AggregationEngine(make_registry(api, names=names, settings=s), settings=s)


@pytest.fixture
def api() -> FakeProviderAPI:
    return FakeProviderAPI()
