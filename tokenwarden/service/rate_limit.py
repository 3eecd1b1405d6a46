"""Fixed-window rate limiting keyed by ``scope:identifier``.

The counter store performs increment-and-compare atomically (a Lua script on
Redis, a lock locally). When the counter store is unreachable the limiter
fails open: the request is allowed and a warning is logged, because blocking
every login on a Redis outage is worse than briefly losing throttling.
Account lockout still applies in that case.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Protocol, Tuple

from tokenwarden.logging import get_logger
from tokenwarden.service.errors import RateLimitedError

logger = get_logger(__name__)

RATE_LIMIT_KEY_PREFIX = "rate_limit"


class CounterStore(Protocol):
    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Increment ``key`` and return ``(count, seconds_left_in_window)``."""
        ...


@dataclass(frozen=True)
class RateLimitPolicy:
    scope: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    remaining: int
    retry_after: int
    # seconds until the current window closes, allowed or not
    reset_seconds: int = 0


class LocalCounterStore:
    """Process-local fixed-window counters used when Redis is not configured."""

    def __init__(self, *, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._counters: Dict[str, Tuple[int, float]] = {}

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        now = self._clock()
        with self._lock:
            count, expires_at = self._counters.get(key, (0, 0.0))
            if now >= expires_at:
                count, expires_at = 0, now + window_seconds
            count += 1
            self._counters[key] = (count, expires_at)
        return count, max(int(math.ceil(expires_at - now)), 0)

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()


def rate_limit_key(scope: str, identifier: str) -> str:
    return f"{RATE_LIMIT_KEY_PREFIX}:{scope}:{identifier}"


def identifier_for(
    headers: Mapping[str, str],
    client_host: Optional[str],
    email: Optional[str] = None,
) -> str:
    """Pick the counting identity for a request.

    Order: an email carried in the body, then the first X-Forwarded-For hop,
    then X-Real-IP, then the connection address. Keying on the email groups
    attempts against one account coming from many addresses.
    """
    if email and email.strip():
        return email.strip().lower()
    forwarded = headers.get("x-forwarded-for") or headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip") or headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return client_host or "unknown"


class RateLimiter:
    def __init__(self, store: CounterStore, *, fail_open: bool = True) -> None:
        self.store = store
        self.fail_open = fail_open

    async def hit(
        self, scope: str, identifier: str, limit: int, window_seconds: int
    ) -> RateLimitDecision:
        if limit <= 0:
            return RateLimitDecision(True, 0, limit, 0, 0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                scope=scope,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = 60
        key = rate_limit_key(scope, identifier)
        try:
            count, ttl = await self.store.incr_window(key, window_seconds)
        except Exception as exc:
            if not self.fail_open:
                raise
            logger.warning(
                "rate_limit_store_unavailable",
                scope=scope,
                error=str(exc),
                message="Counter store unreachable; allowing request",
            )
            return RateLimitDecision(True, 0, limit, limit, 0)
        allowed = count <= limit
        retry_after = 0 if allowed else max(ttl, 1)
        if not allowed:
            logger.info("rate_limited", scope=scope, count=count, limit=limit)
        return RateLimitDecision(
            allowed=allowed,
            count=count,
            limit=limit,
            remaining=max(limit - count, 0),
            retry_after=retry_after,
            reset_seconds=ttl,
        )

    async def allow(
        self, scope: str, identifier: str, limit: int, window_seconds: int
    ) -> bool:
        decision = await self.hit(scope, identifier, limit, window_seconds)
        return decision.allowed

    async def enforce(self, policy: RateLimitPolicy, identifier: str) -> RateLimitDecision:
        decision = await self.hit(
            policy.scope, identifier, policy.limit, policy.window_seconds
        )
        if not decision.allowed:
            raise RateLimitedError(
                "rate limit exceeded",
                retry_after=decision.retry_after,
                detail={"limit": decision.limit, "window_seconds": policy.window_seconds},
            )
        return decision
