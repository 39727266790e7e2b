from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Optional

from dota_scout.settings import Settings

logger = logging.getLogger(__name__)

# Applied after a 429 that carries no usable Retry-After.
DEFAULT_BACKOFF_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimit:
    max_requests: int
    window_seconds: float = 60.0
    min_interval: float = 1.0


DEFAULT_RATE_LIMITS: Dict[str, RateLimit] = {
    "opendota": RateLimit(max_requests=60),
    "stratz": RateLimit(max_requests=30),
}
FALLBACK_RATE_LIMIT = RateLimit(max_requests=30)


class RateLimiter:
    """Per-provider sliding window plus a minimum gap between requests.

    Callers reserve a slot before each upstream request and wait out the
    returned delay. A recorded 429 blocks the provider until its backoff ends.
    Safe to share between threads and the event loop.
    """

    def __init__(
        self,
        limits: Optional[Dict[str, RateLimit]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        sync_sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.limits = dict(DEFAULT_RATE_LIMITS if limits is None else limits)
        self._clock = clock
        self._sleep = sleep
        self._sync_sleep = sync_sleep
        self._lock = threading.Lock()
        self._requests: Dict[str, Deque[float]] = defaultdict(deque)
        self._last_request: Dict[str, float] = {}
        self._backoff_until: Dict[str, float] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimiter":
        return cls(
            {
                "opendota": RateLimit(
                    max_requests=settings.rate_limit_opendota_per_minute,
                    min_interval=settings.rate_limit_min_interval,
                ),
                "stratz": RateLimit(
                    max_requests=settings.rate_limit_stratz_per_minute,
                    min_interval=settings.rate_limit_min_interval,
                ),
            }
        )

    def limit_for(self, provider: str) -> RateLimit:
        return self.limits.get(provider, FALLBACK_RATE_LIMIT)

    def _window(self, provider: str, now: float) -> Deque[float]:
        requests = self._requests[provider]
        cutoff = now - self.limit_for(provider).window_seconds
        while requests and requests[0] <= cutoff:
            requests.popleft()
        return requests

    def _delay_locked(self, provider: str, now: float) -> float:
        backoff_until = self._backoff_until.get(provider, 0.0)
        if backoff_until > now:
            return backoff_until - now
        limit = self.limit_for(provider)
        requests = self._window(provider, now)
        window_wait = 0.0
        if len(requests) >= limit.max_requests:
            window_wait = requests[-limit.max_requests] + limit.window_seconds - now
        last = self._last_request.get(provider)
        interval_wait = 0.0 if last is None else limit.min_interval - (now - last)
        return max(0.0, window_wait, interval_wait)

    def delay_needed(self, provider: str) -> float:
        with self._lock:
            return self._delay_locked(provider, self._clock())

    def _reserve(self, provider: str) -> float:
        # Book the slot up front so concurrent callers queue behind each other.
        with self._lock:
            now = self._clock()
            delay = self._delay_locked(provider, now)
            slot = now + delay
            self._requests[provider].append(slot)
            self._last_request[provider] = slot
            return delay

    async def acquire(self, provider: str) -> float:
        delay = self._reserve(provider)
        if delay > 0:
            logger.info(f"[RATE_LIMIT] {provider} waiting {delay:.2f}s")
            await self._sleep(delay)
        return delay

    def acquire_sync(self, provider: str) -> float:
        delay = self._reserve(provider)
        if delay > 0:
            logger.info(f"[RATE_LIMIT] {provider} waiting {delay:.2f}s")
            self._sync_sleep(delay)
        return delay

    def record_rate_limit_hit(self, provider: str, retry_after: Optional[float] = None) -> None:
        backoff = retry_after if retry_after and retry_after > 0 else DEFAULT_BACKOFF_SECONDS
        with self._lock:
            until = self._clock() + backoff
            self._backoff_until[provider] = max(self._backoff_until.get(provider, 0.0), until)
        logger.warning(f"[RATE_LIMIT] {provider} backing off for {backoff:.0f}s")

    def stats(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            now = self._clock()
            return {
                provider: {
                    "requests_in_window": len(self._window(provider, now)),
                    "max_requests": self.limit_for(provider).max_requests,
                    "backoff_remaining": round(max(0.0, self._backoff_until.get(provider, 0.0) - now), 3),
                }
                for provider in sorted(set(self.limits) | set(self._requests))
            }
