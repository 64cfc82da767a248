"""In-memory token-bucket rate limiting for the public payment endpoints.

Buckets live in process memory, so limits apply per worker. That is enough
to stop a single client from spamming STK prompts at a phone number.
"""
from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from fastapi import Request, status

from app.config import get_settings
from app.services.mpesa_callbacks import client_ip_from_headers
from app.utils.errors import http_error

_GC_INTERVAL_SECONDS = 300
_STALE_AFTER_SECONDS = 600
_MAX_BUCKETS = 10_000


@dataclass
class _Bucket:
    tokens: float
    last_refill: float


@dataclass(frozen=True)
class ConsumeResult:
    allowed: bool
    remaining: int
    retry_after_seconds: float


class TokenBucketLimiter:
    """``capacity`` tokens per key, fully refilled every ``interval_seconds``."""

    def __init__(
        self,
        capacity: int,
        interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.capacity = capacity
        self.interval = interval_seconds
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._last_gc = clock()

    def _gc(self, now: float) -> None:
        if now - self._last_gc < _GC_INTERVAL_SECONDS:
            return
        self._last_gc = now
        for key, bucket in list(self._buckets.items()):
            if now - bucket.last_refill > _STALE_AFTER_SECONDS:
                del self._buckets[key]
        if len(self._buckets) > _MAX_BUCKETS:
            oldest = sorted(self._buckets.items(), key=lambda item: item[1].last_refill)
            for key, _ in oldest[: len(self._buckets) - _MAX_BUCKETS]:
                del self._buckets[key]

    def consume(self, key: str, tokens: int = 1) -> ConsumeResult:
        with self._lock:
            now = self._clock()
            self._gc(now)
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = _Bucket(tokens=self.capacity, last_refill=now)

            refills = math.floor((now - bucket.last_refill) / self.interval)
            if refills > 0:
                bucket.tokens = min(self.capacity, bucket.tokens + refills * self.capacity)
                bucket.last_refill += refills * self.interval

            if bucket.tokens >= tokens:
                bucket.tokens -= tokens
                return ConsumeResult(True, int(bucket.tokens), 0.0)

            retry_after = bucket.last_refill + self.interval - now
            return ConsumeResult(False, 0, max(retry_after, 0.0))

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiters: dict[str, TokenBucketLimiter] = {}


def get_limiter(name: str) -> TokenBucketLimiter:
    """Return the named process-wide limiter, created on first use."""

    limiter = _limiters.get(name)
    if limiter is None:
        settings = get_settings()
        capacities = {
            "payment": settings.RATE_LIMIT_PAYMENT_PER_MINUTE,
            "public_read": settings.RATE_LIMIT_PUBLIC_READ_PER_MINUTE,
            "invoice_create": settings.RATE_LIMIT_INVOICE_CREATE_PER_MINUTE,
            "private_crud": settings.RATE_LIMIT_PRIVATE_CRUD_PER_MINUTE,
        }
        limiter = _limiters[name] = TokenBucketLimiter(capacities[name])
    return limiter


def reset_limiters() -> None:
    for limiter in _limiters.values():
        limiter.reset()


def rate_limit(name: str) -> Callable[[Request], None]:
    """FastAPI dependency enforcing the named limiter per client IP."""

    def _dependency(request: Request) -> None:
        peer = request.client.host if request.client else None
        client_ip = client_ip_from_headers(request.headers, peer)
        result = get_limiter(name).consume(f"{name}:{client_ip}")
        if not result.allowed:
            raise http_error(
                status.HTTP_429_TOO_MANY_REQUESTS,
                "RATE_LIMITED",
                "Too many requests. Please wait before trying again.",
                headers={"Retry-After": str(max(1, math.ceil(result.retry_after_seconds)))},
            )

    return _dependency


__all__ = ["ConsumeResult", "TokenBucketLimiter", "get_limiter", "rate_limit", "reset_limiters"]
