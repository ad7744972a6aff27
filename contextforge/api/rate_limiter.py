"""Per-identifier token bucket rate limiter for the chat endpoint."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    max_tokens: int = 20
    refill_rate: float = 20 / 60
    """Tokens added per second."""

    window_seconds: float = 60.0


@dataclass
class TokenBucket:
    tokens: float
    last_refill: float


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    """Unix timestamp (seconds) after which a request should be allowed."""


class RateLimiter:
    """In-memory token buckets keyed by user, session or IP.

    One instance is shared by every request handler in a process. State
    is not persisted and is not shared between processes.
    """

    def __init__(
        self,
        config: RateLimitConfig = RateLimitConfig(),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self._clock = clock
        self._buckets: dict[str, TokenBucket] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    def now(self) -> float:
        return self._clock()

    def _refilled_tokens(self, bucket: TokenBucket, now: float) -> float:
        elapsed = now - bucket.last_refill
        return min(
            float(self.config.max_tokens),
            bucket.tokens + elapsed * self.config.refill_rate,
        )

    def check(self, identifier: str) -> RateLimitResult:
        """Consume one token for ``identifier`` if one is available."""
        now = self._clock()
        bucket = self._buckets.get(identifier)

        if bucket is None:
            bucket = TokenBucket(
                tokens=float(self.config.max_tokens - 1), last_refill=now
            )
            self._buckets[identifier] = bucket
            return RateLimitResult(
                allowed=True,
                remaining=int(bucket.tokens),
                reset_at=now + self.config.window_seconds,
            )

        bucket.tokens = self._refilled_tokens(bucket, now)
        bucket.last_refill = now

        if bucket.tokens >= 1.0:
            bucket.tokens -= 1.0
            return RateLimitResult(
                allowed=True,
                remaining=math.floor(bucket.tokens),
                reset_at=now + self.config.window_seconds,
            )

        wait = math.ceil((1.0 - bucket.tokens) / self.config.refill_rate)
        logger.info("Rate limit exceeded for %s, retry in %ds", identifier, wait)
        return RateLimitResult(allowed=False, remaining=0, reset_at=now + wait)

    async def acquire(self, identifier: str, timeout: float = 300.0) -> None:
        """Wait until ``identifier`` may make a request.

        Raises TimeoutError if no slot frees up within ``timeout`` seconds.
        """
        deadline = self._clock() + timeout
        while True:
            result = self.check(identifier)
            if result.allowed:
                return
            now = self._clock()
            if now >= deadline:
                raise TimeoutError(
                    f"Rate limiter timed out after {timeout:.0f}s waiting "
                    f"for capacity ({identifier}, max={self.config.max_tokens})"
                )
            await asyncio.sleep(min(result.reset_at, deadline) - now)

    def status(self, identifier: str) -> RateLimitResult:
        """Current state for ``identifier`` without consuming a token."""
        now = self._clock()
        bucket = self._buckets.get(identifier)
        if bucket is None:
            remaining = self.config.max_tokens
        else:
            remaining = math.floor(self._refilled_tokens(bucket, now))
        return RateLimitResult(
            allowed=remaining >= 1,
            remaining=remaining,
            reset_at=now + self.config.window_seconds,
        )

    def reset(self, identifier: str) -> None:
        self._buckets.pop(identifier, None)

    def clear(self) -> None:
        self._buckets.clear()

    def cleanup_old_buckets(self, max_idle: float = 3600.0) -> int:
        """Drop buckets untouched for longer than ``max_idle`` seconds."""
        cutoff = self._clock() - max_idle
        stale = [
            key for key, bucket in self._buckets.items()
            if bucket.last_refill < cutoff
        ]
        for key in stale:
            del self._buckets[key]
        if stale:
            logger.debug("Evicted %d idle rate limit buckets", len(stale))
        return len(stale)

    async def run_cleanup(
        self, interval: float = 600.0, max_idle: float = 3600.0
    ) -> None:
        """Sweep idle buckets every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            self.cleanup_old_buckets(max_idle)
