"""
Provider Health Monitor and the service health report built on top of it.

The monitor keeps one record per provider: request counts, success/failure
counts, cumulative latency, consecutive failures and the last error. Provider
clients write to it after every remote call; operators and callers read
immutable snapshots. Records are never reset except by restarting the
process.

Status classification (derived from a record, never stored):

    UNKNOWN     no requests recorded yet
    UNHEALTHY   ≥ 3 consecutive failures, or error rate > 50 %
    DEGRADED    ≥ 2 consecutive failures, or error rate > 15 %
    HEALTHY     otherwise

The monitor only reports. Whether an unhealthy provider is skipped is the
caller's decision (see ``unhealthy_providers``); the aggregation engine
always attempts every provider it is asked for.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from hazard_engine.core.config import settings

logger = logging.getLogger(__name__)

UNHEALTHY_ERROR_RATE = 0.50
DEGRADED_ERROR_RATE = 0.15
UNHEALTHY_CONSECUTIVE_FAILURES = 3
DEGRADED_CONSECUTIVE_FAILURES = 2


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"  # no traffic yet


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Health records
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class HealthRecord:
    """Immutable point-in-time copy of one provider's counters."""
    provider: str
    total_requests: int = 0
    successes: int = 0
    failures: int = 0
    cumulative_latency_ms: float = 0.0
    consecutive_failures: int = 0
    last_error_message: Optional[str] = None
    last_error_kind: Optional[str] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    failures_by_kind: Mapping[str, int] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 1.0
        return self.successes / self.total_requests

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.failures / self.total_requests

    @property
    def average_latency_ms(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.cumulative_latency_ms / self.total_requests

    @property
    def status(self) -> HealthStatus:
        if self.total_requests == 0:
            return HealthStatus.UNKNOWN
        if (
            self.consecutive_failures >= UNHEALTHY_CONSECUTIVE_FAILURES
            or self.error_rate > UNHEALTHY_ERROR_RATE
        ):
            return HealthStatus.UNHEALTHY
        if (
            self.consecutive_failures >= DEGRADED_CONSECUTIVE_FAILURES
            or self.error_rate > DEGRADED_ERROR_RATE
        ):
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "status": self.status.value,
            "total_requests": self.total_requests,
            "successes": self.successes,
            "failures": self.failures,
            "success_rate": round(self.success_rate, 4),
            "average_latency_ms": round(self.average_latency_ms, 2),
            "consecutive_failures": self.consecutive_failures,
            "failures_by_kind": dict(self.failures_by_kind),
            "last_error_kind": self.last_error_kind,
            "last_error_message": self.last_error_message,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
        }


@dataclass
class _ProviderCounters:
    """Mutable counters for one provider, guarded by their own lock."""
    provider: str
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    total_requests: int = 0
    successes: int = 0
    failures: int = 0
    cumulative_latency_ms: float = 0.0
    consecutive_failures: int = 0
    last_error_message: Optional[str] = None
    last_error_kind: Optional[str] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    failures_by_kind: Dict[str, int] = field(default_factory=dict)

    def freeze(self) -> HealthRecord:
        return HealthRecord(
            provider=self.provider,
            total_requests=self.total_requests,
            successes=self.successes,
            failures=self.failures,
            cumulative_latency_ms=self.cumulative_latency_ms,
            consecutive_failures=self.consecutive_failures,
            last_error_message=self.last_error_message,
            last_error_kind=self.last_error_kind,
            last_success_at=self.last_success_at,
            last_failure_at=self.last_failure_at,
            failures_by_kind=dict(self.failures_by_kind),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Health Monitor
# ═══════════════════════════════════════════════════════════════════════════

class HealthMonitor:
    """
    Per-provider success/failure/latency accounting.

    Each provider has its own lock, held only while counters are updated or
    copied, so concurrent branches for different providers never contend.
    The monitor-wide lock only guards the creation of new provider entries.
    """

    def __init__(self) -> None:
        self._counters: Dict[str, _ProviderCounters] = {}
        self._lock = threading.Lock()

    def _entry(self, provider: str) -> _ProviderCounters:
        entry = self._counters.get(provider)
        if entry is None:
            with self._lock:
                entry = self._counters.setdefault(provider, _ProviderCounters(provider))
        return entry

    def register(self, provider: str) -> None:
        """Create an empty record so the provider shows up before its first call."""
        self._entry(provider)

    def record_success(self, provider: str, latency_ms: float) -> None:
        entry = self._entry(provider)
        with entry.lock:
            entry.total_requests += 1
            entry.successes += 1
            entry.cumulative_latency_ms += max(0.0, latency_ms)
            entry.consecutive_failures = 0
            entry.last_success_at = _utcnow()

    def record_failure(
        self,
        provider: str,
        error_kind: Any,
        latency_ms: float,
        message: str = "",
    ) -> None:
        kind = getattr(error_kind, "value", str(error_kind))
        entry = self._entry(provider)
        with entry.lock:
            entry.total_requests += 1
            entry.failures += 1
            entry.cumulative_latency_ms += max(0.0, latency_ms)
            entry.consecutive_failures += 1
            entry.last_error_kind = kind
            entry.last_error_message = message or kind
            entry.last_failure_at = _utcnow()
            entry.failures_by_kind[kind] = entry.failures_by_kind.get(kind, 0) + 1
            consecutive = entry.consecutive_failures

        if consecutive == UNHEALTHY_CONSECUTIVE_FAILURES:
            logger.warning(
                "Provider %s marked unhealthy after %d consecutive failures (last: %s)",
                provider, consecutive, kind,
                extra={"provider": provider, "error_kind": kind},
            )

    def snapshot(self, provider: str) -> HealthRecord:
        """Immutable copy of one provider's record (empty if never seen)."""
        entry = self._counters.get(provider)
        if entry is None:
            return HealthRecord(provider=provider)
        with entry.lock:
            return entry.freeze()

    def snapshots(self) -> Dict[str, HealthRecord]:
        return {name: self.snapshot(name) for name in sorted(self._counters)}

    def unhealthy_providers(self) -> List[str]:
        """Providers a caller may choose to exclude from the next assessment."""
        return [
            name for name, record in self.snapshots().items()
            if record.status == HealthStatus.UNHEALTHY
        ]

    def summary(self) -> Dict[str, Any]:
        records = self.snapshots()
        total = sum(r.total_requests for r in records.values())
        successes = sum(r.successes for r in records.values())
        by_status: Dict[str, int] = {}
        for record in records.values():
            by_status[record.status.value] = by_status.get(record.status.value, 0) + 1
        return {
            "providers": len(records),
            "total_requests": total,
            "overall_success_rate": round(successes / total, 4) if total else 1.0,
            "by_status": by_status,
            "unhealthy": [n for n, r in records.items() if r.status == HealthStatus.UNHEALTHY],
        }


# ═══════════════════════════════════════════════════════════════════════════
# Service health report (/health)
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or _utcnow().isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


_start_time = time.monotonic()


def provider_component(record: HealthRecord) -> ComponentHealth:
    """Map a provider record onto a report component."""
    status = record.status
    message = ""
    if status == HealthStatus.UNKNOWN:
        # No traffic is not a fault
        status = HealthStatus.HEALTHY
        message = "No requests yet"
    elif record.last_error_message and status != HealthStatus.HEALTHY:
        message = record.last_error_message
    return ComponentHealth(
        name=f"provider:{record.provider}",
        status=status,
        latency_ms=record.average_latency_ms,
        message=message,
        details={
            "total_requests": record.total_requests,
            "success_rate": round(record.success_rate, 4),
            "consecutive_failures": record.consecutive_failures,
        },
    )


async def build_health_report(monitor: HealthMonitor, cache: Any = None) -> HealthReport:
    """
    Aggregate provider health and cache reachability into one report.

    A single unhealthy provider only degrades the service, since assessments
    still succeed from the remaining sources. An unreachable cache backend
    degrades it as well; the engine then simply fetches every time.
    """
    report = HealthReport(
        timestamp=_utcnow().isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    for record in monitor.snapshots().values():
        report.components.append(provider_component(record))

    if cache is not None:
        start = time.monotonic()
        reachable = await cache.ping()
        report.components.append(ComponentHealth(
            name=f"cache:{cache.backend_name}",
            status=HealthStatus.HEALTHY if reachable else HealthStatus.DEGRADED,
            latency_ms=(time.monotonic() - start) * 1000,
            message="" if reachable else "Cache backend unreachable",
            details=cache.stats(),
        ))

    statuses = [c.status for c in report.components]
    provider_statuses = [
        c.status for c in report.components if c.name.startswith("provider:")
    ]
    if provider_statuses and all(s == HealthStatus.UNHEALTHY for s in provider_statuses):
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.UNHEALTHY in statuses or HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
