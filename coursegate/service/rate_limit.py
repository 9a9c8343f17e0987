from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional

from redis.exceptions import RedisError

from coursegate.logging import get_logger
from coursegate.service.errors import RateLimitedError
from coursegate.storage.models import RateLimitResult, utcnow
from coursegate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window_ms: int
    fail_open: bool = True


# Auth endpoints deny while Redis is unreachable; general traffic is let through.
RATE_LIMIT_PRESETS: Dict[str, RateLimitPolicy] = {
    "login": RateLimitPolicy(max_requests=5, window_ms=60_000, fail_open=False),
    "signup": RateLimitPolicy(max_requests=3, window_ms=60_000, fail_open=False),
    "forgot_password": RateLimitPolicy(max_requests=3, window_ms=60_000, fail_open=False),
    "reset_password": RateLimitPolicy(max_requests=3, window_ms=60_000, fail_open=False),
    "default": RateLimitPolicy(max_requests=100, window_ms=60_000, fail_open=True),
}


class RateLimiter:
    """Fixed-window request counter backed by an atomic Redis script."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def check_and_increment(
        self, key: str, max_requests: int, window_ms: int
    ) -> RateLimitResult:
        """Count one request against ``key``.

        The whole read-compare-write runs server side, so N concurrent
        callers against a limit of K get exactly K allowed results.
        Store errors propagate; callers pick the failure policy.
        """
        window_seconds = max(1, math.ceil(window_ms / 1000))
        allowed, count, ttl = await self.cache.increment_rate_counter(
            key, max_requests, window_seconds
        )
        reset_in = ttl if ttl > 0 else window_seconds
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, max_requests - count),
            reset_at=utcnow() + timedelta(seconds=reset_in),
        )

    async def enforce(
        self,
        prefix: str,
        identifier: str,
        policy: Optional[RateLimitPolicy] = None,
    ) -> RateLimitResult:
        """Apply ``policy`` (or the preset named ``prefix``) and raise when denied.

        ``identifier`` is the authenticated principal id when known,
        otherwise the client address.
        """
        policy = policy or RATE_LIMIT_PRESETS.get(prefix, RATE_LIMIT_PRESETS["default"])
        key = f"ratelimit:{prefix}:{identifier}"
        try:
            result = await self.check_and_increment(
                key, policy.max_requests, policy.window_ms
            )
        except (RedisError, OSError) as exc:
            window_seconds = max(1, math.ceil(policy.window_ms / 1000))
            if policy.fail_open:
                logger.warning(
                    "rate_limit_store_unavailable",
                    prefix=prefix,
                    action="allow",
                    error=str(exc),
                )
                return RateLimitResult(
                    allowed=True,
                    remaining=policy.max_requests,
                    reset_at=utcnow() + timedelta(seconds=window_seconds),
                )
            logger.error(
                "rate_limit_store_unavailable",
                prefix=prefix,
                action="deny",
                error=str(exc),
            )
            raise RateLimitedError(retry_after=window_seconds) from exc

        if not result.allowed:
            logger.info("rate_limited", prefix=prefix, identifier=identifier)
            raise RateLimitedError(retry_after=result.retry_after_seconds)
        return result
