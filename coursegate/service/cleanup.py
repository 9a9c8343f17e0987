"""Periodic purge of revoked and expired session rows.

Every instance runs the loop; a Redis lock makes sure only one of them
does the work in any given pass.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional

from coursegate.logging import get_logger
from coursegate.service.security import generate_secure_token
from coursegate.storage.models import TRACKS
from coursegate.storage.redis_cache import RedisCache

if TYPE_CHECKING:
    from coursegate.storage.memory import MemoryStore
    from coursegate.storage.postgres import PostgresStore

logger = get_logger(__name__)

CLEANUP_LOCK_NAME = "session-cleanup-lock"
CLEANUP_LOCK_TTL_SECONDS = 300
DEFAULT_INTERVAL_SECONDS = 60 * 60
DEFAULT_BATCH_SIZE = 1000
MAX_BACKOFF_SECONDS = 300


@dataclass
class CleanupReport:
    revoked: Dict[str, int] = field(default_factory=dict)
    expired: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.revoked.values()) + sum(self.expired.values())


class SessionCleanupJob:
    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        cache: RedisCache,
        *,
        interval_seconds: int = DEFAULT_INTERVAL_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        revoked_retention_days: int = 7,
        max_age_days: int = 30,
    ) -> None:
        self.store = store
        self.cache = cache
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.revoked_retention_days = revoked_retention_days
        self.max_age_days = max_age_days
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Run one pass now, then keep running every ``interval_seconds``."""
        if self._running:
            logger.warning("session_cleanup_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("session_cleanup_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("session_cleanup_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "session_cleanup_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(MAX_BACKOFF_SECONDS, 2 ** consecutive_errors)
                    await asyncio.sleep(min(backoff, self.interval_seconds))
                    continue
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self) -> Optional[CleanupReport]:
        """One guarded pass over both session tracks.

        Returns None when another instance holds the lock. The lock is
        released in ``finally`` only if it still carries our owner token;
        its TTL covers a crash mid-run.
        """
        owner = generate_secure_token(16)
        acquired = await self.cache.acquire_lock(
            CLEANUP_LOCK_NAME, owner, CLEANUP_LOCK_TTL_SECONDS
        )
        if not acquired:
            logger.debug("session_cleanup_skipped", reason="lock_held")
            return None

        report = CleanupReport()
        try:
            for track in TRACKS:
                report.revoked[track] = await self.store.cleanup_revoked_sessions(
                    track, self.revoked_retention_days, self.batch_size
                )
                report.expired[track] = await self.store.cleanup_expired_sessions(
                    track, self.max_age_days, self.batch_size
                )
            logger.info(
                "session_cleanup_completed",
                revoked=report.revoked,
                expired=report.expired,
                total=report.total,
            )
            return report
        finally:
            released = await self.cache.release_lock(CLEANUP_LOCK_NAME, owner)
            if not released:
                logger.warning("session_cleanup_lock_lost", lock=CLEANUP_LOCK_NAME)
