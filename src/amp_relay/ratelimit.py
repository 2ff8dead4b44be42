"""Fixed-window rate limiting for federation traffic.

Each key gets ``max_requests`` per ``window_seconds``; the counter resets
entirely when the window that started with the key's first request ends.
Counters are transient: memory by default, Redis when configured.
"""

from __future__ import annotations

import importlib
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)

_FIXED_WINDOW_LUA = (
    "local count = redis.call('INCR', KEYS[1])\n"
    "if count == 1 then\n"
    "  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))\n"
    "end\n"
    "local ttl = redis.call('TTL', KEYS[1])\n"
    "return {count, ttl}\n"
)


@dataclass(slots=True, frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0


class FixedWindowRateLimiter:
    def __init__(
        self,
        *,
        window_seconds: int = 60,
        max_requests: int = 120,
        clock: Callable[[], float] = time.monotonic,
        redis_client: Optional[Any] = None,
        key_prefix: str = "amp:rl",
    ) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._clock = clock
        self._redis = redis_client
        self._key_prefix = key_prefix
        self._windows: dict[str, tuple[float, int]] = {}
        self._last_cleanup = clock()

    @classmethod
    def from_settings(cls, settings: Any, *, clock: Callable[[], float] = time.monotonic) -> "FixedWindowRateLimiter":
        amp = settings.amp
        redis_client = None
        if amp.rate_limit_backend == "redis" and amp.rate_limit_redis_url:
            try:
                redis_asyncio = importlib.import_module("redis.asyncio")
                redis_client = redis_asyncio.Redis.from_url(amp.rate_limit_redis_url)
            except (ImportError, ValueError) as exc:
                logger.warning("ratelimit.redis_unavailable", extra={"error": str(exc)})
                redis_client = None
        return cls(
            window_seconds=amp.federation_rate_limit_window_seconds,
            max_requests=amp.federation_rate_limit_max_requests,
            clock=clock,
            redis_client=redis_client,
        )

    def _cleanup(self, now: float) -> None:
        expired = [key for key, (start, _count) in self._windows.items() if now - start >= self.window_seconds]
        for key in expired:
            del self._windows[key]

    def _check_memory(self, key: str) -> RateDecision:
        now = self._clock()
        if now - self._last_cleanup > self.window_seconds:
            self._cleanup(now)
            self._last_cleanup = now
        start, count = self._windows.get(key, (now, 0))
        if now - start >= self.window_seconds:
            start, count = now, 0
        if count >= self.max_requests:
            self._windows[key] = (start, count)
            retry_after = max(1, math.ceil(start + self.window_seconds - now))
            return RateDecision(allowed=False, remaining=0, retry_after=retry_after)
        count += 1
        self._windows[key] = (start, count)
        return RateDecision(allowed=True, remaining=self.max_requests - count)

    async def check(self, key: str) -> RateDecision:
        """Count one request for ``key`` and report whether it is within the window's cap."""
        if self.max_requests <= 0:
            return RateDecision(allowed=True, remaining=0)
        if self._redis is not None:
            try:
                count, ttl = await self._redis.eval(
                    _FIXED_WINDOW_LUA, 1, f"{self._key_prefix}:{key}", self.window_seconds
                )
                count = int(count)
                if count > self.max_requests:
                    return RateDecision(allowed=False, remaining=0, retry_after=max(1, int(ttl)))
                return RateDecision(allowed=True, remaining=self.max_requests - count)
            except Exception as exc:
                # Fall back to memory on Redis failure
                logger.warning("ratelimit.redis_failed", extra={"error": str(exc)[:200]})
        return self._check_memory(key)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)
