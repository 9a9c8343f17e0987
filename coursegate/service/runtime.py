from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

import httpx

from coursegate.config import Settings
from coursegate.logging import get_logger
from coursegate.service.cleanup import SessionCleanupJob
from coursegate.service.email import EmailService
from coursegate.service.gateway import CustomerAuthService, StaffAuthService
from coursegate.service.oauth import GoogleOAuthService
from coursegate.service.password_reset import PasswordResetPolicy, PasswordResetService
from coursegate.service.rate_limit import RateLimiter
from coursegate.service.session_cache import (
    CUSTOMER_SESSION_PREFIX,
    STAFF_SESSION_PREFIX,
    SessionCache,
)
from coursegate.storage.memory import MemoryStore
from coursegate.storage.postgres import PostgresStore
from coursegate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:secret@host:6379 -> redis://:***@host:6379"""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Explicit process context: connection handles plus the services wired on them.

    Nothing connects in ``__init__``. The FastAPI lifespan (or a script)
    calls ``start()`` once and ``close()`` on shutdown. Tests pass their own
    store, cache, mailer and HTTP transport.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[Union[PostgresStore, MemoryStore]] = None,
        cache: Optional[RedisCache] = None,
        email: Optional[EmailService] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        if store is None:
            store = (
                MemoryStore()
                if settings.use_memory_store
                else PostgresStore(
                    settings.database_url,
                    min_size=settings.database_pool_min_size,
                    max_size=settings.database_pool_max_size,
                    connect_timeout=settings.database_connect_timeout_seconds,
                    statement_timeout_ms=settings.database_statement_timeout_ms,
                )
            )
        self.store = store
        self.cache = cache or RedisCache(
            settings.redis_url, socket_timeout=settings.redis_socket_timeout_seconds
        )
        self.email = email or EmailService.from_settings(settings)

        self.rate_limiter = RateLimiter(self.cache)
        self.customer_auth = CustomerAuthService(
            self.store,
            SessionCache(
                self.cache, CUSTOMER_SESSION_PREFIX, settings.session_cache_ttl_seconds
            ),
            session_max_age_days=settings.session_max_age_days,
            password_hash_cost=settings.password_hash_cost,
        )
        self.staff_auth = StaffAuthService(
            self.store,
            SessionCache(
                self.cache, STAFF_SESSION_PREFIX, settings.session_cache_ttl_seconds
            ),
            session_max_age_days=settings.session_max_age_days,
            password_hash_cost=settings.password_hash_cost,
        )
        reset_options = dict(
            token_ttl_minutes=settings.password_reset_token_ttl_minutes,
            cooldown_seconds=settings.password_reset_cooldown_seconds,
            max_attempts=settings.password_reset_max_attempts,
        )
        self.customer_reset = PasswordResetService(
            self.customer_auth,
            self.cache,
            self.email,
            frontend_url=settings.frontend_url,
            policy=PasswordResetPolicy.ENUMERATION_SAFE,
            **reset_options,
        )
        self.staff_reset = PasswordResetService(
            self.staff_auth,
            self.cache,
            self.email,
            frontend_url=settings.admin_frontend_url,
            policy=PasswordResetPolicy.REVEAL_MISSING,
            **reset_options,
        )
        self.oauth = GoogleOAuthService(
            self.cache,
            self.customer_auth,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=settings.google_redirect_uri,
            timeout_seconds=settings.oauth_http_timeout_seconds,
            transport=http_transport,
        )
        self.cleanup = SessionCleanupJob(
            self.store,
            self.cache,
            interval_seconds=settings.session_cleanup_interval_seconds,
            batch_size=settings.session_cleanup_batch_size,
            revoked_retention_days=settings.session_revoked_retention_days,
            max_age_days=settings.session_max_age_days,
        )

    async def start(self) -> None:
        store_type = "memory" if isinstance(self.store, MemoryStore) else "postgres"
        try:
            await self.store.open()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        try:
            await self.cache.verify_connection()
        except Exception as exc:
            logger.error(
                "runtime_redis_unavailable",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            await self.store.close()
            raise RuntimeError(
                "Redis is required for session caching, rate limits and auth state"
            ) from exc

        if self.settings.session_cleanup_enabled:
            await self.cleanup.start()
        logger.info(
            "runtime_started",
            store_type=store_type,
            email_configured=self.email.is_configured,
            google_oauth_configured=self.oauth.is_configured,
            session_cleanup_enabled=self.settings.session_cleanup_enabled,
        )

    async def close(self) -> None:
        await self.cleanup.stop()
        await self.cache.close()
        await self.store.close()
        logger.info("runtime_closed")
