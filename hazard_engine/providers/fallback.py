"""
Fallback Executor: first acceptable answer from an ordered list of sources.

Used where providers can stand in for one another. Candidates are tried
strictly one after the other, never in parallel:

    for candidate in candidates:
        try result = await candidate.call()
        if quality(result) ≥ min_quality → return it
        otherwise note why and move on
    → NoDataError with the full attempt log

A candidate that raises an engine error or returns a low-quality result is
logged and skipped; any other exception is a bug and propagates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

from hazard_engine.core.errors import HazardEngineError, NoDataError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class FallbackCandidate(Generic[T]):
    name: str
    call: Callable[[], Awaitable[T]]


@dataclass(frozen=True)
class FallbackAttempt:
    source: str
    outcome: str  # "accepted" | "low_quality" | error kind / code
    quality: Optional[float] = None
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "outcome": self.outcome,
            "quality": self.quality,
            "message": self.message,
        }


@dataclass
class FallbackResult(Generic[T]):
    value: T
    source: str
    quality: float
    attempts: List[FallbackAttempt] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return len(self.attempts) > 1


def _default_quality(value: Any) -> float:
    return float(getattr(value, "quality", 1.0))


class FallbackExecutor:
    def __init__(
        self,
        min_quality: float = 0.5,
        quality_of: Optional[Callable[[Any], float]] = None,
    ) -> None:
        self.min_quality = min_quality
        self.quality_of = quality_of or _default_quality

    async def resolve(self, candidates: Sequence[FallbackCandidate[T]]) -> FallbackResult[T]:
        attempts: List[FallbackAttempt] = []

        for candidate in candidates:
            try:
                value = await candidate.call()
            except HazardEngineError as e:
                kind = getattr(getattr(e, "kind", None), "value", e.error_code)
                attempts.append(FallbackAttempt(candidate.name, kind, message=e.message))
                logger.info(
                    "Fallback source %s failed (%s), trying next", candidate.name, kind,
                    extra={"provider": candidate.name, "error_kind": kind},
                )
                continue

            quality = self.quality_of(value)
            if quality >= self.min_quality:
                attempts.append(FallbackAttempt(candidate.name, "accepted", quality))
                if len(attempts) > 1:
                    logger.info(
                        "Fallback resolved by %s after %d attempts",
                        candidate.name, len(attempts),
                        extra={"provider": candidate.name},
                    )
                return FallbackResult(value, candidate.name, quality, attempts)

            attempts.append(FallbackAttempt(
                candidate.name, "low_quality", quality,
                f"quality {quality:.2f} below {self.min_quality:.2f}",
            ))
            logger.info(
                "Fallback source %s below quality floor (%.2f < %.2f)",
                candidate.name, quality, self.min_quality,
                extra={"provider": candidate.name},
            )

        raise NoDataError(
            f"No acceptable result from {len(attempts)} source(s)",
            attempts=[a.to_dict() for a in attempts],
        )
