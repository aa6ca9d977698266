"""
Process-wide provider registry.

Built once at startup and passed explicitly to everything that needs it.
It owns:

    • the immutable provider descriptors
    • one ProviderClient per provider
    • the shared Rate Limiter, Cache Manager and Health Monitor
    • the shared httpx.AsyncClient (connection pooling across providers)

Tests build a fresh registry per case, usually with an httpx.MockTransport.

Default providers
=================
    name            source                     weight  priority  rate limit
    ─────────────   ────────────────────────   ──────  ────────  ─────────────
    gov_index       FEMA National Risk Index   0.95    1         1000 / hour
    hydro_monitor   USGS Water Services        0.95    2         1000 / hour
    commercial_b    First Street-style API     0.90    2         10000 / day
    commercial_a    ClimateCheck-style API     0.85    3         5000 / day
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional, Type

import httpx

from hazard_engine.core.cache import CacheManager
from hazard_engine.core.config import Settings
from hazard_engine.core.errors import ValidationError
from hazard_engine.core.health import HealthMonitor
from hazard_engine.core.rate_limiter import RateLimiter, RateLimitPolicy
from hazard_engine.providers.base import ProviderClient
from hazard_engine.providers.climate_check import ClimateCheckClient
from hazard_engine.providers.descriptors import (
    TTL_HAZARD_INDEX,
    TTL_REAL_TIME,
    ProviderDescriptor,
    ProviderKind,
)
from hazard_engine.providers.first_street import FirstStreetClient
from hazard_engine.providers.gov_index import GovIndexClient
from hazard_engine.providers.hydro_monitor import HydroMonitorClient
from hazard_engine.scoring.models import HazardType
from hazard_engine.scoring.normalization import DEFAULT_TABLE, NormalizationTable

logger = logging.getLogger(__name__)

CLIENT_CLASSES: Dict[str, Type[ProviderClient]] = {
    "gov_index": GovIndexClient,
    "commercial_a": ClimateCheckClient,
    "commercial_b": FirstStreetClient,
    "hydro_monitor": HydroMonitorClient,
}


def _all_hazards(client_cls: Type[ProviderClient]) -> frozenset:
    return frozenset(h for hazards in client_cls.operations.values() for h in hazards)


def default_descriptors(settings: Settings) -> List[ProviderDescriptor]:
    """Descriptors for the built-in providers, with config overrides applied."""
    weights = settings.PROVIDER_WEIGHTS
    timeout = settings.PROVIDER_TIMEOUT_MS / 1000
    retries = settings.MAX_RETRIES
    return [
        ProviderDescriptor(
            name="gov_index",
            display_name="FEMA National Risk Index",
            base_url=settings.GOV_INDEX_BASE_URL,
            kind=ProviderKind.GOVERNMENT,
            rate_limit=RateLimitPolicy(1000, 3600),
            hazard_types=_all_hazards(GovIndexClient),
            weight=weights.get("gov_index", 0.95),
            cache_ttl={"risk_index": TTL_HAZARD_INDEX},
            priority=1,
            timeout_seconds=timeout,
            max_retries=retries,
        ),
        ProviderDescriptor(
            name="commercial_a",
            display_name="ClimateCheck",
            base_url=settings.COMMERCIAL_A_BASE_URL,
            kind=ProviderKind.COMMERCIAL,
            rate_limit=RateLimitPolicy(5000, 86_400),
            hazard_types=_all_hazards(ClimateCheckClient),
            weight=weights.get("commercial_a", 0.85),
            default_ttl=TTL_HAZARD_INDEX,
            priority=3,
            cost_per_request=0.002,
            timeout_seconds=timeout,
            max_retries=retries,
            api_key=settings.COMMERCIAL_A_API_KEY,
        ),
        ProviderDescriptor(
            name="commercial_b",
            display_name="First Street",
            base_url=settings.COMMERCIAL_B_BASE_URL,
            kind=ProviderKind.COMMERCIAL,
            rate_limit=RateLimitPolicy(10_000, 86_400),
            hazard_types=_all_hazards(FirstStreetClient),
            weight=weights.get("commercial_b", 0.90),
            cache_ttl={"property_risk": TTL_HAZARD_INDEX},
            priority=2,
            cost_per_request=0.003,
            timeout_seconds=timeout,
            max_retries=retries,
            api_key=settings.COMMERCIAL_B_API_KEY,
        ),
        ProviderDescriptor(
            name="hydro_monitor",
            display_name="USGS Water Services",
            base_url=settings.HYDRO_MONITOR_BASE_URL,
            kind=ProviderKind.HYDROLOGICAL,
            rate_limit=RateLimitPolicy(1000, 3600),
            hazard_types=_all_hazards(HydroMonitorClient),
            weight=weights.get("hydro_monitor", 0.95),
            cache_ttl={"gage_height": TTL_REAL_TIME},
            priority=2,
            timeout_seconds=timeout,
            max_retries=retries,
        ),
    ]


class ProviderRegistry:
    """Descriptors, clients and shared infrastructure for one process."""

    def __init__(
        self,
        descriptors: Iterable[ProviderDescriptor],
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        cache: Optional[CacheManager] = None,
        rate_limiter: Optional[RateLimiter] = None,
        health: Optional[HealthMonitor] = None,
        client_classes: Optional[Mapping[str, Type[ProviderClient]]] = None,
        normalization: NormalizationTable = DEFAULT_TABLE,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        user_agent: str = "hazard-risk-engine",
    ) -> None:
        self.http_client = http_client or httpx.AsyncClient(
            headers={"User-Agent": user_agent, "Accept": "application/json"},
        )
        self.cache = cache or CacheManager()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.health = health or HealthMonitor()
        self.normalization = normalization
        classes = {**CLIENT_CLASSES, **(client_classes or {})}

        self._descriptors: Dict[str, ProviderDescriptor] = {}
        self._clients: Dict[str, ProviderClient] = {}
        for descriptor in descriptors:
            if descriptor.name in self._descriptors:
                raise ValueError(f"Duplicate provider '{descriptor.name}'")
            client_cls = classes.get(descriptor.name)
            if client_cls is None:
                raise ValueError(f"No client class for provider '{descriptor.name}'")
            self._descriptors[descriptor.name] = descriptor
            self._clients[descriptor.name] = client_cls(
                descriptor,
                http_client=self.http_client,
                cache=self.cache,
                rate_limiter=self.rate_limiter,
                health=self.health,
                backoff_base=backoff_base,
                backoff_max=backoff_max,
            )
            self.rate_limiter.configure(descriptor.name, descriptor.rate_limit)
            self.health.register(descriptor.name)

        logger.info("Provider registry ready: %s", ", ".join(self._descriptors))

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "ProviderRegistry":
        return cls(
            default_descriptors(settings),
            http_client=http_client,
            cache=CacheManager.from_settings(settings),
            backoff_base=settings.RETRY_BACKOFF_BASE,
            backoff_max=settings.RETRY_BACKOFF_MAX,
            user_agent=settings.HTTP_USER_AGENT,
        )

    @property
    def names(self) -> List[str]:
        return list(self._descriptors)

    @property
    def descriptors(self) -> List[ProviderDescriptor]:
        return list(self._descriptors.values())

    def descriptor(self, name: str) -> ProviderDescriptor:
        try:
            return self._descriptors[name]
        except KeyError:
            raise ValidationError(
                f"Unknown provider '{name}'", field="providers", allowed=self.names,
            ) from None

    def client(self, name: str) -> ProviderClient:
        self.descriptor(name)
        return self._clients[name]

    def weights(self) -> Dict[str, float]:
        return {name: d.weight for name, d in self._descriptors.items()}

    def providers_for(self, hazard_type: HazardType) -> List[str]:
        """Providers able to report ``hazard_type``, cheapest-first fallback order."""
        candidates = [d for d in self._descriptors.values() if d.supports(hazard_type)]
        candidates.sort(key=lambda d: (d.priority, d.cost_per_request, d.name))
        return [d.name for d in candidates]

    async def close(self) -> None:
        await self.http_client.aclose()
        await self.cache.close()
