from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import os
import time
from typing import Callable, Optional, Protocol

from pydantic import BaseModel
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app import settings

logger = logging.getLogger("carefi-analysis.rate-limit")


class RateLimitDecision(BaseModel):
    allowed: bool
    remaining: int
    retry_after_s: float = 0.0


@dataclass
class RateLimitBucket:
    tokens: int
    last_refill_at: float


class RateLimiter(Protocol):
    @property
    def capacity(self) -> int: ...

    @property
    def window_s(self) -> float: ...

    async def check_and_consume(self, key: str) -> RateLimitDecision: ...

    async def evict_idle(self) -> int: ...

    async def close(self) -> None: ...


def _normalize_key(key: str) -> str:
    if not isinstance(key, str):
        raise TypeError("rate limit key must be a string")
    normalized = key.strip()
    if not normalized:
        raise ValueError("rate limit key must be non-empty")
    return normalized


class InMemoryRateLimiter(RateLimiter):
    """Per-key token bucket refilled in full once ``window_s`` has elapsed.

    State is process-local; a restart resets every limit.
    """

    def __init__(
        self,
        *,
        capacity: int = settings.RATE_LIMIT_CAPACITY,
        window_s: float = settings.RATE_LIMIT_WINDOW_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if window_s <= 0:
            raise ValueError("window_s must be > 0")
        self._capacity = capacity
        self._window_s = window_s
        self._clock = clock
        self._lock = asyncio.Lock()
        self._buckets: dict[str, RateLimitBucket] = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def window_s(self) -> float:
        return self._window_s

    def __len__(self) -> int:
        return len(self._buckets)

    async def check_and_consume(self, key: str) -> RateLimitDecision:
        key = _normalize_key(key)
        async with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                self._buckets[key] = RateLimitBucket(tokens=self._capacity - 1, last_refill_at=now)
                return RateLimitDecision(allowed=True, remaining=self._capacity - 1)

            elapsed = now - bucket.last_refill_at
            if elapsed >= self._window_s:
                bucket.tokens = self._capacity
                bucket.last_refill_at = now
                elapsed = 0.0

            if bucket.tokens > 0:
                bucket.tokens -= 1
                return RateLimitDecision(allowed=True, remaining=bucket.tokens)

            return RateLimitDecision(allowed=False, remaining=0, retry_after_s=self._window_s - elapsed)

    async def evict_idle(self) -> int:
        async with self._lock:
            now = self._clock()
            # A bucket idle for two windows has refilled to capacity.
            stale = [k for k, b in self._buckets.items() if now - b.last_refill_at > 2 * self._window_s]
            for key in stale:
                del self._buckets[key]
        if stale:
            logger.debug("rate_limit_evicted count=%s", len(stale))
        return len(stale)

    async def close(self) -> None:
        return None


class RedisRateLimiter(RateLimiter):
    """Fixed-window counter shared by every process pointing at the same Redis."""

    def __init__(
        self,
        *,
        redis_url: str,
        capacity: int = settings.RATE_LIMIT_CAPACITY,
        window_s: float = settings.RATE_LIMIT_WINDOW_S,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "analysis_rate",
    ) -> None:
        self._capacity = capacity
        self._window_s = window_s
        self._key_prefix = key_prefix.strip(":") or "analysis_rate"
        self._redis = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout_s,
            socket_timeout=socket_timeout_s,
        )

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def window_s(self) -> float:
        return self._window_s

    async def ping(self) -> None:
        await self._redis.ping()

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{_normalize_key(key)}"

    async def check_and_consume(self, key: str) -> RateLimitDecision:
        redis_key = self._key(key)
        window_ms = max(1, int(self._window_s * 1000))
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(redis_key, 0, px=window_ms, nx=True)
            pipe.incr(redis_key)
            pipe.pttl(redis_key)
            _, count, ttl_ms = await pipe.execute()

        count = int(count)
        if count <= self._capacity:
            return RateLimitDecision(allowed=True, remaining=self._capacity - count)

        ttl_ms = int(ttl_ms)
        retry_after_s = ttl_ms / 1000.0 if ttl_ms > 0 else self._window_s
        return RateLimitDecision(allowed=False, remaining=0, retry_after_s=retry_after_s)

    async def evict_idle(self) -> int:
        # Keys carry their own expiry.
        return 0

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except Exception:
            pass


class PersistentRateLimiter(RateLimiter):
    def __init__(
        self,
        *,
        redis_url: Optional[str] = None,
        capacity: int = settings.RATE_LIMIT_CAPACITY,
        window_s: float = settings.RATE_LIMIT_WINDOW_S,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "analysis_rate",
    ) -> None:
        self._redis_url = redis_url
        self._capacity = capacity
        self._window_s = window_s
        self._connect_timeout_s = connect_timeout_s
        self._socket_timeout_s = socket_timeout_s
        self._key_prefix = key_prefix

        self._backend: RateLimiter = InMemoryRateLimiter(capacity=capacity, window_s=window_s)
        self._backend_kind = "memory"

    @property
    def backend_kind(self) -> str:
        return self._backend_kind

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def window_s(self) -> float:
        return self._window_s

    async def initialize(self) -> None:
        redis_url = (self._redis_url or os.getenv("REDIS_URL") or "").strip() or None
        if not redis_url:
            self._backend = InMemoryRateLimiter(capacity=self._capacity, window_s=self._window_s)
            self._backend_kind = "memory"
            logger.info("rate_limiter_backend=memory reason=missing_REDIS_URL")
            return

        try:
            redis_backend = RedisRateLimiter(
                redis_url=redis_url,
                capacity=self._capacity,
                window_s=self._window_s,
                connect_timeout_s=self._connect_timeout_s,
                socket_timeout_s=self._socket_timeout_s,
                key_prefix=self._key_prefix,
            )
            await redis_backend.ping()
        except Exception as exc:
            self._backend = InMemoryRateLimiter(capacity=self._capacity, window_s=self._window_s)
            self._backend_kind = "memory"
            logger.warning(
                "rate_limiter_backend=memory reason=redis_unavailable err=%s",
                getattr(exc, "message", str(exc)),
            )
            return

        self._backend = redis_backend
        self._backend_kind = "redis"
        logger.info("rate_limiter_backend=redis")

    async def check_and_consume(self, key: str) -> RateLimitDecision:
        try:
            return await self._backend.check_and_consume(key)
        except RedisError as exc:
            logger.warning(
                "rate_limit_check_failed backend=%s err=%s",
                self._backend_kind,
                getattr(exc, "message", str(exc)),
            )
            await self._fallback_to_memory(reason="redis_error")
            return await self._backend.check_and_consume(key)

    async def evict_idle(self) -> int:
        return await self._backend.evict_idle()

    async def _fallback_to_memory(self, *, reason: str) -> None:
        if self._backend_kind == "memory":
            return
        try:
            await self._backend.close()
        except Exception:
            pass
        self._backend = InMemoryRateLimiter(capacity=self._capacity, window_s=self._window_s)
        self._backend_kind = "memory"
        logger.warning("rate_limiter_backend=memory reason=%s", reason)

    async def close(self) -> None:
        await self._backend.close()


async def run_eviction_loop(limiter: RateLimiter, *, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            await limiter.evict_idle()
        except Exception as exc:
            logger.warning("rate_limit_eviction_failed err=%s", exc)


ANALYSIS_RATE_LIMITER = PersistentRateLimiter()
