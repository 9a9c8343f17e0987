"""Token based password reset, shared by the customer and staff tracks.

Per email address the flow is a small state machine kept in Redis:

* ``request_password_reset`` issues a token (only the SHA-256 of it is
  stored) unless a cooldown marker for the address is still live.
* ``reset_password_with_token`` redeems it. Failed submissions bump an
  attempt counter inside the stored record; once the counter reaches the
  configured maximum the record is deleted and the raw token is dead.
* A successful redemption deletes the token, revokes every session of the
  principal, drops its cached sessions and clears the cooldown.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Protocol

from coursegate.logging import email_fingerprint, get_logger
from coursegate.service.errors import (
    AccountNotFoundError,
    PasswordResetMaxAttemptsError,
    PasswordSameAsOldError,
    TokenInvalidError,
)
from coursegate.service.gateway import Principal, SessionGateway
from coursegate.service.security import (
    generate_secure_token,
    hash_token,
    verify_password_async,
)
from coursegate.storage.models import ResetTokenRecord, normalize_email
from coursegate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class PasswordResetPolicy(str, enum.Enum):
    # always answer success so callers cannot learn which emails exist
    ENUMERATION_SAFE = "enumeration_safe"
    # unknown emails raise ACCOUNT_NOT_FOUND
    REVEAL_MISSING = "reveal_missing"


class ResetMailer(Protocol):
    async def send_password_reset_email(self, to_email: str, reset_url: str) -> bool: ...


@dataclass
class ResetRequestResult:
    success: bool
    cooldown_remaining: Optional[int] = None


class PasswordResetService:
    def __init__(
        self,
        gateway: SessionGateway,
        cache: RedisCache,
        mailer: ResetMailer,
        *,
        frontend_url: str,
        policy: PasswordResetPolicy = PasswordResetPolicy.ENUMERATION_SAFE,
        token_ttl_minutes: int = 60,
        cooldown_seconds: int = 60,
        max_attempts: int = 5,
    ) -> None:
        self.gateway = gateway
        self.cache = cache
        self.mailer = mailer
        self.frontend_url = frontend_url.rstrip("/")
        self.policy = policy
        self.token_ttl_seconds = token_ttl_minutes * 60
        self.cooldown_seconds = cooldown_seconds
        self.max_attempts = max_attempts

    @property
    def namespace(self) -> str:
        return self.gateway.track.reset_namespace

    def build_reset_url(self, raw_token: str) -> str:
        return f"{self.frontend_url}/reset-password?token={raw_token}"

    async def _issue_token(self, principal: Principal) -> None:
        """Store a fresh token for ``principal`` and mail the link.

        Mail failures are logged only: the token is already stored and the
        user can ask again after the cooldown.
        """
        raw_token = generate_secure_token(32)
        token_hash = hash_token(raw_token)
        record = ResetTokenRecord(email=principal.email)
        await self.cache.store_reset_token(
            self.namespace, token_hash, record.to_payload(), self.token_ttl_seconds
        )
        logger.info(
            "password_reset_token_issued",
            track=self.gateway.track.name,
            principal_id=principal.id,
        )
        try:
            sent = await self.mailer.send_password_reset_email(
                principal.email, self.build_reset_url(raw_token)
            )
        except Exception as exc:
            logger.error(
                "password_reset_email_failed",
                principal_id=principal.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not sent:
            logger.warning("password_reset_email_not_sent", principal_id=principal.id)

    async def request_password_reset(self, email: str) -> ResetRequestResult:
        email = normalize_email(email)
        remaining = await self.cache.get_reset_cooldown_ttl(self.namespace, email)
        if remaining > 0:
            return ResetRequestResult(success=False, cooldown_remaining=remaining)
        await self.cache.set_reset_cooldown(self.namespace, email, self.cooldown_seconds)

        if self.policy is PasswordResetPolicy.REVEAL_MISSING:
            principal = await self.gateway.get_principal_by_email(email)
            if principal is None:
                raise AccountNotFoundError()
            await self._issue_token(principal)
            return ResetRequestResult(success=True)

        # Past the cooldown nothing may tell "unknown email" apart from success.
        try:
            principal = await self.gateway.get_principal_by_email(email)
            if principal is not None:
                await self._issue_token(principal)
            else:
                logger.info(
                    "password_reset_unknown_email", email_hash=email_fingerprint(email)
                )
        except Exception as exc:
            logger.error(
                "password_reset_request_failed",
                email_hash=email_fingerprint(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
        return ResetRequestResult(success=True)

    async def issue_reset_for_principal(self, principal_id: str) -> ResetRequestResult:
        """Admin-initiated reset: mail a link without consulting the cooldown."""
        principal = await self.gateway.get_principal(principal_id)
        if principal is None:
            raise AccountNotFoundError()
        await self._issue_token(principal)
        return ResetRequestResult(success=True)

    async def _count_failed_attempt(self, token_hash: str) -> None:
        attempts = await self.cache.increment_reset_attempts(self.namespace, token_hash)
        if attempts is not None and attempts >= self.max_attempts:
            await self.cache.delete_reset_token(self.namespace, token_hash)
            logger.warning("password_reset_token_exhausted", attempts=attempts)
            raise PasswordResetMaxAttemptsError()

    async def reset_password_with_token(self, token: str, new_password: str) -> None:
        if not token:
            raise TokenInvalidError()
        token_hash = hash_token(token)
        payload = await self.cache.get_reset_token(self.namespace, token_hash)
        if payload is None:
            raise TokenInvalidError()
        try:
            record = ResetTokenRecord.from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            await self.cache.delete_reset_token(self.namespace, token_hash)
            raise TokenInvalidError() from exc

        if record.attempts >= self.max_attempts:
            await self.cache.delete_reset_token(self.namespace, token_hash)
            raise PasswordResetMaxAttemptsError()

        principal = await self.gateway.get_principal_by_email(record.email)
        if principal is None:
            raise AccountNotFoundError()

        if principal.password_hash is not None and await verify_password_async(
            new_password, principal.password_hash
        ):
            # counts as a failed attempt
            await self._count_failed_attempt(token_hash)
            raise PasswordSameAsOldError()

        new_hash = await self.gateway.hash_password(new_password)
        # consume before writing; a concurrent redemption loses the DEL
        if not await self.cache.delete_reset_token(self.namespace, token_hash):
            raise TokenInvalidError()
        await self.gateway.track.set_password_hash(self.gateway.store, principal.id, new_hash)
        await self.gateway.revoke_all_sessions(principal.id)
        await self.cache.clear_reset_cooldown(self.namespace, record.email)
        logger.info(
            "password_reset_completed",
            track=self.gateway.track.name,
            principal_id=principal.id,
        )
