from __future__ import annotations

from typing import Any, Dict, Optional

from coursegate.logging import get_logger, session_fingerprint
from coursegate.storage.models import CachedSession, utcnow
from coursegate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

CUSTOMER_SESSION_PREFIX = "session:cache:"
STAFF_SESSION_PREFIX = "admin:session:cache:"
DEFAULT_SESSION_CACHE_TTL_SECONDS = 300


class SessionCache:
    """Short-lived session id -> principal view mapping.

    An optimization only: a hit means the session was active when the entry
    was written. Every revocation path deletes entries explicitly instead
    of waiting for the TTL.
    """

    def __init__(
        self,
        cache: RedisCache,
        key_prefix: str = CUSTOMER_SESSION_PREFIX,
        ttl_seconds: int = DEFAULT_SESSION_CACHE_TTL_SECONDS,
    ) -> None:
        self.cache = cache
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds

    async def get(self, session_id: str) -> Optional[CachedSession]:
        payload = await self.cache.get_cached_session(self.key_prefix, session_id)
        if payload is None:
            return None
        try:
            return CachedSession.from_payload(payload)
        except (KeyError, TypeError, ValueError):
            logger.warning(
                "session_cache_entry_malformed",
                session_fingerprint=session_fingerprint(session_id),
            )
            return None

    async def set(
        self, session_id: str, principal_id: str, principal_view: Dict[str, Any]
    ) -> None:
        entry = CachedSession(
            principal_id=principal_id, principal=principal_view, cached_at=utcnow()
        )
        await self.cache.set_cached_session(
            self.key_prefix, session_id, entry.to_payload(), self.ttl_seconds
        )

    async def invalidate(self, session_id: str) -> None:
        await self.cache.delete_cached_session(self.key_prefix, session_id)

    async def invalidate_all_for_principal(self, principal_id: str) -> int:
        deleted = await self.cache.delete_cached_sessions_for_principal(
            self.key_prefix, principal_id
        )
        if deleted:
            logger.info(
                "session_cache_bulk_invalidated",
                prefix=self.key_prefix,
                principal_id=principal_id,
                deleted=deleted,
            )
        return deleted
