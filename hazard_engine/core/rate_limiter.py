"""
Per-provider sliding-window rate limiter.

Each provider keeps a ledger of the monotonic timestamps of calls admitted
within its window. A call is admitted while fewer than ``max_requests``
timestamps fall inside ``[now - window, now]``; the token it consumes comes
back when its timestamp leaves the window.

    tokens_available = max_requests - |{t ∈ ledger : t > now - window}|
    retry_after      = oldest_t + window - now        (when no token is left)

Waiting policy is per call:

    acquire(provider)               fail fast with RateLimitExceeded
    acquire(provider, timeout=2.0)  sleep until a token frees up, up to 2 s

Ledgers have independent locks, so a saturated provider never delays
another one. Providers without a configured policy are not limited.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional

from hazard_engine.core.errors import RateLimitExceeded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """At most ``max_requests`` calls per rolling ``window_seconds``."""
    max_requests: int
    window_seconds: float

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")


@dataclass
class _Ledger:
    policy: RateLimitPolicy
    timestamps: Deque[float] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def prune(self, now: float) -> None:
        cutoff = now - self.policy.window_seconds
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()

    def wait_time(self, now: float) -> float:
        if len(self.timestamps) < self.policy.max_requests:
            return 0.0
        return max(0.0, self.timestamps[0] + self.policy.window_seconds - now)


class RateLimiter:
    """Sliding-window limiter keyed by provider name."""

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._ledgers: Dict[str, _Ledger] = {}
        self._lock = threading.Lock()

    def configure(self, provider: str, policy: RateLimitPolicy) -> None:
        """Install (or replace) the policy for a provider; clears its ledger."""
        with self._lock:
            self._ledgers[provider] = _Ledger(policy)
        logger.debug(
            "Rate limit for %s: %d per %.0fs",
            provider, policy.max_requests, policy.window_seconds,
        )

    def policy(self, provider: str) -> Optional[RateLimitPolicy]:
        ledger = self._ledgers.get(provider)
        return ledger.policy if ledger else None

    def try_acquire(self, provider: str) -> bool:
        """Take a token if one is available right now."""
        ledger = self._ledgers.get(provider)
        if ledger is None:
            return True
        with ledger.lock:
            now = self._clock()
            ledger.prune(now)
            if len(ledger.timestamps) < ledger.policy.max_requests:
                ledger.timestamps.append(now)
                return True
            return False

    def available(self, provider: str) -> Optional[int]:
        """Tokens left in the current window (None when unlimited)."""
        ledger = self._ledgers.get(provider)
        if ledger is None:
            return None
        with ledger.lock:
            ledger.prune(self._clock())
            return ledger.policy.max_requests - len(ledger.timestamps)

    def retry_after(self, provider: str) -> float:
        """Seconds until the next token frees up (0.0 if one is available)."""
        ledger = self._ledgers.get(provider)
        if ledger is None:
            return 0.0
        with ledger.lock:
            now = self._clock()
            ledger.prune(now)
            return ledger.wait_time(now)

    async def acquire(self, provider: str, timeout: Optional[float] = None) -> None:
        """
        Take a token for ``provider`` or raise ``RateLimitExceeded``.

        Parameters
        ----------
        provider : str
            Provider name the ledger is keyed by.
        timeout : float, optional
            Longest time in seconds to wait for a token. ``None`` or ``0``
            fails fast.
        """
        if self.try_acquire(provider):
            return

        budget = max(0.0, timeout or 0.0)
        deadline = self._clock() + budget
        while True:
            wait = self.retry_after(provider)
            remaining = deadline - self._clock()
            if remaining <= 0 or wait > remaining:
                logger.info(
                    "Rate limit exhausted for %s (retry in %.2fs)", provider, wait,
                    extra={"provider": provider},
                )
                raise RateLimitExceeded(
                    f"No token within {budget:.2f}s",
                    provider=provider,
                    retry_after=wait,
                )
            await asyncio.sleep(wait)
            if self.try_acquire(provider):
                return
