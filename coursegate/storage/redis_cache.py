from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from coursegate.logging import get_logger

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for session caches, auth state and rate limits.

    Every primitive the auth core needs from the key-value store lives
    here: TTL'd JSON values, cursor scans, GETDEL, SET NX and server-side
    scripts. Services never touch ``self.client`` directly.
    """

    SCAN_COUNT = 100

    # Fixed-window counter: TTL is set on the first hit only, later hits
    # INCR without touching it. Returns {allowed, count, ttl}.
    _RATE_LIMIT_SCRIPT = """
local current = redis.call('GET', KEYS[1])
local count = tonumber(current) or 0
local max_requests = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local ttl = redis.call('TTL', KEYS[1])

if count < max_requests then
  if count == 0 then
    redis.call('SETEX', KEYS[1], window, 1)
    ttl = window
  else
    redis.call('INCR', KEYS[1])
  end
  return {1, count + 1, ttl}
end

return {0, count, ttl}
"""

    # Release a lock only if it still carries our owner token
    _RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._rate_limit = self.client.register_script(self._RATE_LIMIT_SCRIPT)
        self._release_lock = self.client.register_script(self._RELEASE_LOCK_SCRIPT)

    async def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        await self.client.ping()

    async def close(self) -> None:
        await self.client.aclose()

    @staticmethod
    def _loads(raw: Optional[str]) -> Optional[Dict[str, Any]]:
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            # Corrupted entry - treat as a miss
            return None
        return data if isinstance(data, dict) else None

    # =========================================================================
    # Rate limiting
    # =========================================================================

    async def increment_rate_counter(
        self, key: str, max_requests: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Atomically check-and-increment a fixed-window counter.

        Returns ``(allowed, count, ttl_seconds)``; ``ttl_seconds`` is the
        remaining window (or a non-positive Redis TTL sentinel).
        """
        allowed, count, ttl = await self._rate_limit(
            keys=[key], args=[max_requests, window_seconds]
        )
        return bool(int(allowed)), int(count), int(ttl)

    # =========================================================================
    # Session cache
    # =========================================================================

    async def get_cached_session(
        self, prefix: str, session_id: str
    ) -> Optional[Dict[str, Any]]:
        return self._loads(await self.client.get(f"{prefix}{session_id}"))

    async def set_cached_session(
        self, prefix: str, session_id: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            f"{prefix}{session_id}", json.dumps(payload), ex=ttl_seconds
        )

    async def delete_cached_session(self, prefix: str, session_id: str) -> None:
        await self.client.delete(f"{prefix}{session_id}")

    async def delete_cached_sessions_for_principal(
        self, prefix: str, principal_id: str
    ) -> int:
        """Delete every cached session under ``prefix`` owned by ``principal_id``.

        Walks the keyspace with SCAN (``COUNT`` batches) rather than KEYS so
        the server is never blocked; cost is proportional to the number of
        cached sessions across all principals.
        """
        deleted = 0
        cursor = 0
        while True:
            cursor, keys = await self.client.scan(
                cursor=cursor, match=f"{prefix}*", count=self.SCAN_COUNT
            )
            if keys:
                values = await self.client.mget(keys)
                stale: List[str] = []
                for key, raw in zip(keys, values):
                    data = self._loads(raw)
                    if data and str(data.get("principal_id")) == principal_id:
                        stale.append(key)
                if stale:
                    deleted += int(await self.client.delete(*stale))
            if int(cursor) == 0:
                break
        return deleted

    # =========================================================================
    # OAuth state
    # =========================================================================

    async def set_oauth_state(
        self, state: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(f"oauth:state:{state}", json.dumps(payload), ex=ttl_seconds)

    async def pop_oauth_state(self, state: str) -> Optional[Dict[str, Any]]:
        """Atomically get and delete OAuth state so a callback can't be replayed."""
        return self._loads(await self.client.getdel(f"oauth:state:{state}"))

    # =========================================================================
    # Password reset tokens and cooldowns
    # =========================================================================

    async def store_reset_token(
        self, namespace: str, token_hash: str, payload: Dict[str, Any], ttl_seconds: int
    ) -> None:
        await self.client.set(
            f"{namespace}:token:{token_hash}", json.dumps(payload), ex=ttl_seconds
        )

    async def get_reset_token(
        self, namespace: str, token_hash: str
    ) -> Optional[Dict[str, Any]]:
        return self._loads(await self.client.get(f"{namespace}:token:{token_hash}"))

    async def delete_reset_token(self, namespace: str, token_hash: str) -> bool:
        """Remove a token; True only for the caller whose DEL removed the key."""
        return int(await self.client.delete(f"{namespace}:token:{token_hash}")) == 1

    async def increment_reset_attempts(
        self, namespace: str, token_hash: str
    ) -> Optional[int]:
        """Atomically bump ``attempts`` inside the stored JSON payload.

        Optimistic WATCH/MULTI loop: a concurrent writer aborts our EXEC and
        we retry from a fresh read. The key keeps its remaining TTL.
        Returns the new count, or None if the token no longer exists.
        """
        key = f"{namespace}:token:{token_hash}"
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    data = self._loads(await pipe.get(key))
                    if data is None:
                        return None
                    data["attempts"] = int(data.get("attempts", 0)) + 1
                    pipe.multi()
                    pipe.set(key, json.dumps(data), keepttl=True)
                    await pipe.execute()
                    return data["attempts"]
                except WatchError:
                    logger.debug("reset_attempts_retry", token_hash=token_hash[:12])
                    continue

    async def set_reset_cooldown(
        self, namespace: str, email: str, ttl_seconds: int
    ) -> None:
        await self.client.set(f"{namespace}:cooldown:{email}", "1", ex=ttl_seconds)

    async def get_reset_cooldown_ttl(self, namespace: str, email: str) -> int:
        """Seconds left on the cooldown marker; 0 when none is set."""
        ttl = int(await self.client.ttl(f"{namespace}:cooldown:{email}"))
        return ttl if ttl > 0 else 0

    async def clear_reset_cooldown(self, namespace: str, email: str) -> None:
        await self.client.delete(f"{namespace}:cooldown:{email}")

    # =========================================================================
    # Distributed locks
    # =========================================================================

    async def acquire_lock(self, name: str, owner: str, ttl_seconds: int) -> bool:
        return bool(await self.client.set(name, owner, nx=True, ex=ttl_seconds))

    async def release_lock(self, name: str, owner: str) -> bool:
        return bool(int(await self._release_lock(keys=[name], args=[owner])))
