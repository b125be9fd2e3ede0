"""
Per-client request rate limiting.

A fixed window counter keyed by client address, applied as the outermost
middleware so that unmatched routes (404s) are counted too.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from ..api.responses import NegotiatedResponse, error_body
from ..config.models import RateLimitSettings
from ..monitoring.metrics import rate_limited_total

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class RateLimiterBackend:
    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:  # pragma: no cover - interface
        raise NotImplementedError


class MemoryRateLimiter(RateLimiterBackend):
    def __init__(self, clock=time.monotonic) -> None:
        self._lock = asyncio.Lock()
        self._buckets: Dict[str, Dict[str, float]] = {}
        self._clock = clock

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        now = self._clock()
        async with self._lock:
            bucket = self._buckets.get(key)
            if not bucket or now >= bucket["reset"]:
                # new window
                bucket = {"count": 0, "reset": now + window_seconds}
                self._buckets[key] = bucket
                self._evict_expired(now)
            bucket["count"] += 1
            count = int(bucket["count"])
            reset = max(0, math.ceil(bucket["reset"] - now))
        return RateLimitDecision(
            allowed=count <= limit,
            limit=limit,
            remaining=max(0, limit - count),
            reset_seconds=reset,
        )

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, b in self._buckets.items() if now >= b["reset"]]
        for k in expired:
            del self._buckets[k]


class RedisRateLimiter(RateLimiterBackend):
    def __init__(self, url: str) -> None:
        self._url = url
        self._client = None

    async def _client_lazy(self):
        if self._client is None:
            import redis.asyncio as redis  # type: ignore

            self._client = redis.from_url(self._url)
        return self._client

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        client = await self._client_lazy()
        redis_key = f"myydh:ratelimit:{key}"
        pipe = client.pipeline()
        pipe.incr(redis_key)
        pipe.expire(redis_key, window_seconds, nx=True)
        pipe.ttl(redis_key)
        count, _, ttl = await pipe.execute()
        count = int(count)
        reset = int(ttl) if ttl and int(ttl) > 0 else window_seconds
        return RateLimitDecision(
            allowed=count <= limit,
            limit=limit,
            remaining=max(0, limit - count),
            reset_seconds=reset,
        )


def get_rate_backend(settings: RateLimitSettings) -> RateLimiterBackend:
    if settings.backend == "redis" and settings.redis_url:
        return RedisRateLimiter(settings.redis_url)
    if settings.backend == "redis":
        logger.warning("RATE_LIMIT_BACKEND=redis without REDIS_URL; using memory backend")
    return MemoryRateLimiter()


def client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class RateLimiter:
    def __init__(
        self,
        settings: RateLimitSettings,
        backend: Optional[RateLimiterBackend] = None,
    ) -> None:
        self.limit = settings.max
        self.window_seconds = settings.window_seconds
        self.allow_list = frozenset(settings.allow_list)
        self.backend = backend or get_rate_backend(settings)

    def is_allow_listed(self, key: str) -> bool:
        return key in self.allow_list

    async def check(self, key: str) -> Optional[RateLimitDecision]:
        """Count a request for ``key``; None when the key is allow-listed."""
        if self.is_allow_listed(key):
            return None
        return await self.backend.hit(key, self.limit, self.window_seconds)


def _rate_headers(decision: RateLimitDecision) -> Dict[str, str]:
    return {
        "x-ratelimit-limit": str(decision.limit),
        "x-ratelimit-remaining": str(decision.remaining),
        "x-ratelimit-reset": str(decision.reset_seconds),
    }


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, limiter: RateLimiter):
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        decision = await self.limiter.check(client_key(request))
        if decision is not None and not decision.allowed:
            rate_limited_total.inc()
            logger.info("Rate limit exceeded for %s", client_key(request))
            body = error_body(
                429, f"Rate limit exceeded, retry in {decision.reset_seconds} seconds"
            )
            headers = _rate_headers(decision)
            headers["retry-after"] = str(decision.reset_seconds)
            return NegotiatedResponse(body, request=request, status_code=429, headers=headers)

        response = await call_next(request)
        if decision is not None:
            response.headers.update(_rate_headers(decision))
        return response
