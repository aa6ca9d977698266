"""
Provider Client: the control flow every provider call goes through.

    1. Cache lookup      hit → parse cached payload and return (no remote call)
    2. Rate limit        take a token, waiting at most ``rate_limit_wait``
    3. HTTP call         shared httpx.AsyncClient, per-attempt timeout
    4. Retry             transient failures only, exponential backoff
    5. Parse             provider-specific, may raise NoDataError
    6. Write-through     cache the raw payload under the operation's TTL
    7. Health            record success or failure with latency and kind

Error Handling Strategy
========================
    Transient (retried up to ``max_retries`` times, wait = base · 2^(n-1)):
        httpx.TimeoutException    → ProviderTimeoutError
        httpx.TransportError      → NetworkError
        HTTP 5xx                  → ServerError
        HTTP 429                  → RemoteRateLimitError (Retry-After honoured)

    Terminal (raised on first occurrence):
        HTTP 401 / 403            → AuthenticationError
        HTTP 404                  → NoDataError
        other HTTP 4xx            → InvalidParameterError
        undecodable body          → ResponseFormatError
        no local token in time    → RateLimitExceeded

A response that parses to nothing for the location is not a provider fault:
the payload is cached, the call is recorded as a health success and
``NoDataError`` is raised so the caller can tell "no data" from "failed".

Concrete providers implement only ``build_request`` and ``parse_response``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional, Tuple

import httpx

from hazard_engine.core.cache import CacheManager
from hazard_engine.core.errors import (
    AuthenticationError,
    InvalidParameterError,
    NetworkError,
    NoDataError,
    ProviderError,
    ProviderTimeoutError,
    RemoteRateLimitError,
    ResponseFormatError,
    ServerError,
)
from hazard_engine.core.health import HealthMonitor
from hazard_engine.core.rate_limiter import RateLimiter
from hazard_engine.providers.descriptors import ProviderDescriptor
from hazard_engine.scoring.models import HazardType, Location, RawHazardReading

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestSpec:
    """What to send for one operation; ``path`` is relative to the base URL."""
    path: str
    params: Mapping[str, Any] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)
    method: str = "GET"


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class ProviderClient(ABC):
    """
    Base class for one external hazard data provider.

    ``operations`` maps each operation name to the hazard types one call of
    it can report. A provider that answers every hazard in one call has a
    single operation; a provider with per-hazard endpoints has one
    operation per hazard.
    """

    operations: ClassVar[Dict[str, Tuple[HazardType, ...]]] = {}

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        *,
        http_client: httpx.AsyncClient,
        cache: CacheManager,
        rate_limiter: RateLimiter,
        health: HealthMonitor,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
    ) -> None:
        self.descriptor = descriptor
        self._http = http_client
        self._cache = cache
        self._rate_limiter = rate_limiter
        self._health = health
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    @property
    def name(self) -> str:
        return self.descriptor.name

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"

    # ── Operations ──

    def hazards_for(self, operation: str) -> Tuple[HazardType, ...]:
        try:
            return self.operations[operation]
        except KeyError:
            raise InvalidParameterError(
                f"Unknown operation '{operation}'",
                provider=self.name,
                operation=operation,
                supported=sorted(self.operations),
            ) from None

    def operations_for(self, hazard_types: Iterable[HazardType]) -> List[str]:
        """Operations needed to cover ``hazard_types``, in declaration order."""
        wanted = set(hazard_types)
        return [op for op, hazards in self.operations.items() if wanted.intersection(hazards)]

    # ── Provider-specific hooks ──

    @abstractmethod
    def build_request(
        self, operation: str, location: Location, params: Mapping[str, Any],
    ) -> RequestSpec:
        """Describe the HTTP request for ``operation`` at ``location``."""

    @abstractmethod
    def parse_response(
        self,
        operation: str,
        payload: Any,
        location: Location,
        params: Mapping[str, Any],
    ) -> List[RawHazardReading]:
        """
        Turn a decoded payload into readings.

        Return an empty list when the provider has nothing for the location;
        raise ``ResponseFormatError`` when the payload is malformed.
        """

    def auth_headers(self) -> Dict[str, str]:
        if self.descriptor.api_key:
            return {"Authorization": f"Bearer {self.descriptor.api_key}"}
        return {}

    # ── Control flow ──

    async def fetch(
        self,
        operation: str,
        location: Location,
        *,
        timeout: Optional[float] = None,
        rate_limit_wait: Optional[float] = None,
        **params: Any,
    ) -> List[RawHazardReading]:
        """
        Fetch readings for one operation at one location.

        Parameters
        ----------
        operation : str
            One of ``self.operations``.
        location : Location
            Point to assess.
        timeout : float, optional
            Per-attempt HTTP timeout in seconds; defaults to the descriptor's.
        rate_limit_wait : float, optional
            Longest wait for a rate-limit token; ``None`` fails fast.

        Returns
        -------
        List[RawHazardReading]
            Never empty; an empty result is raised as ``NoDataError``.
        """
        self.hazards_for(operation)
        key = self._cache.make_key(
            self.name, operation, location.latitude, location.longitude, **params,
        )

        cached = await self._cache.get(key)
        if cached is not None:
            readings = self._parse(operation, cached, location, params)
            if not readings:
                raise NoDataError(
                    "No data for location (cached)", provider=self.name, operation=operation,
                )
            return readings

        try:
            await self._rate_limiter.acquire(self.name, timeout=rate_limit_wait)
        except ProviderError as e:
            self._health.record_failure(self.name, e.kind, 0.0, e.message)
            raise

        start = time.perf_counter()
        try:
            payload = await self._request_with_retry(
                operation, location, params, timeout or self.descriptor.timeout_seconds,
            )
            readings = self._parse(operation, payload, location, params)
        except NoDataError:
            # 404: the provider answered, it just has nothing here
            self._health.record_success(self.name, self._elapsed_ms(start))
            raise
        except ProviderError as e:
            latency_ms = self._elapsed_ms(start)
            self._health.record_failure(self.name, e.kind, latency_ms, e.message)
            logger.warning(
                "%s/%s failed: %s", self.name, operation, e.message,
                extra={
                    "provider": self.name,
                    "operation": operation,
                    "error_kind": e.kind.value,
                    "latency_ms": latency_ms,
                },
            )
            raise

        latency_ms = self._elapsed_ms(start)
        await self._cache.set(key, payload, ttl=self.descriptor.ttl_for(operation))
        self._health.record_success(self.name, latency_ms)

        if not readings:
            raise NoDataError("No data for location", provider=self.name, operation=operation)

        logger.debug(
            "%s/%s returned %d readings in %.0fms",
            self.name, operation, len(readings), latency_ms,
            extra={"provider": self.name, "operation": operation, "latency_ms": latency_ms},
        )
        return readings

    def _parse(
        self, operation: str, payload: Any, location: Location, params: Mapping[str, Any],
    ) -> List[RawHazardReading]:
        try:
            return self.parse_response(operation, payload, location, params)
        except ProviderError:
            raise
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            raise ResponseFormatError(
                f"Malformed response: {e}", provider=self.name, operation=operation,
            ) from e

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return (time.perf_counter() - start) * 1000

    def _backoff(self, attempt: int, error: ProviderError) -> float:
        wait = self.backoff_base * (2 ** (attempt - 1))
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            wait = max(wait, retry_after)
        return min(wait, self.backoff_max)

    async def _request_with_retry(
        self,
        operation: str,
        location: Location,
        params: Mapping[str, Any],
        timeout: float,
    ) -> Any:
        req = self.build_request(operation, location, params)
        max_retries = self.descriptor.max_retries
        attempt = 0

        while True:
            try:
                return await self._send(operation, req, timeout)
            except ProviderError as e:
                if not e.retryable or attempt >= max_retries:
                    raise
                attempt += 1
                wait = self._backoff(attempt, e)
                logger.info(
                    "Retry %d/%d for %s/%s after %.2fs: %s",
                    attempt, max_retries, self.name, operation, wait, e.message,
                    extra={"provider": self.name, "operation": operation, "attempt": attempt},
                )
            await asyncio.sleep(wait)

    async def _send(self, operation: str, req: RequestSpec, timeout: float) -> Any:
        url = f"{self.descriptor.base_url.rstrip('/')}/{req.path.lstrip('/')}"
        headers = {**self.auth_headers(), **req.headers}
        ctx = {"provider": self.name, "operation": operation}
        try:
            response = await self._http.request(
                req.method, url, params=dict(req.params), headers=headers, timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Timed out after {timeout:.1f}s", **ctx) from e
        except httpx.DecodingError as e:
            raise ResponseFormatError(f"Undecodable body: {e}", **ctx) from e
        except httpx.RequestError as e:
            # Transport failures plus redirect loops and other client-side errors
            raise NetworkError(f"{type(e).__name__}: {e}", **ctx) from e

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(f"HTTP {status}", http_status=status, **ctx)
        if status == 404:
            raise NoDataError("HTTP 404", http_status=status, **ctx)
        if status == 429:
            raise RemoteRateLimitError(
                "HTTP 429", retry_after=_retry_after_seconds(response), http_status=status, **ctx,
            )
        if status >= 500:
            raise ServerError(f"HTTP {status}", http_status=status, **ctx)
        if status >= 400:
            raise InvalidParameterError(f"HTTP {status}", http_status=status, **ctx)

        try:
            return response.json()
        except ValueError as e:
            raise ResponseFormatError(f"Invalid JSON: {e}", http_status=status, **ctx) from e
