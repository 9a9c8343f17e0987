from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from coursegate.logging import get_logger
from coursegate.service.errors import (
    OAuthEmailRequiredError,
    OAuthProviderError,
    OAuthStateInvalidError,
    ServerError,
)
from coursegate.service.gateway import CustomerAuthService
from coursegate.service.security import (
    generate_code_challenge,
    generate_code_verifier,
    generate_secure_token,
)
from coursegate.storage.models import Customer, OAuthIdentity, OAuthState, Session
from coursegate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

GOOGLE_PROVIDER = {
    "name": "google",
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": "openid email profile",
}

OAUTH_STATE_TTL_SECONDS = 600


@dataclass
class OAuthLoginResult:
    customer: Customer
    session: Session
    is_new_user: bool


class GoogleOAuthService:
    """Google sign-in using the authorization code flow with PKCE.

    State entries are single use: the callback consumes them with GETDEL,
    so a replayed or raced callback finds nothing and is rejected.
    """

    def __init__(
        self,
        cache: RedisCache,
        customers: CustomerAuthService,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.cache = cache
        self.customers = customers
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def _require_configured(self) -> None:
        if not self.is_configured:
            logger.error("oauth_not_configured", provider=GOOGLE_PROVIDER["name"])
            raise ServerError("Google sign-in is not configured")

    async def get_auth_url(self) -> str:
        self._require_configured()
        state = generate_secure_token(32)
        verifier = generate_code_verifier()
        record = OAuthState(
            provider=GOOGLE_PROVIDER["name"],
            code_verifier=verifier,
            redirect_uri=self.redirect_uri,
        )
        await self.cache.set_oauth_state(
            state, record.to_payload(), OAUTH_STATE_TTL_SECONDS
        )
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_PROVIDER["scope"],
            "state": state,
            "code_challenge": generate_code_challenge(verifier),
            "code_challenge_method": "S256",
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{GOOGLE_PROVIDER['auth_url']}?{urlencode(params)}"

    async def _consume_state(self, state: str) -> OAuthState:
        payload = await self.cache.pop_oauth_state(state) if state else None
        if payload is None:
            raise OAuthStateInvalidError()
        try:
            record = OAuthState.from_payload(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise OAuthStateInvalidError() from exc
        if record.provider != GOOGLE_PROVIDER["name"]:
            raise OAuthStateInvalidError()
        return record

    async def _fetch_userinfo(self, code: str, record: OAuthState) -> Dict[str, Any]:
        """Exchange ``code`` for an access token and return the userinfo body.

        Any transport failure, timeout, non-2xx answer or unusable JSON is
        reported as a provider error.
        """
        token_data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": record.redirect_uri,
            "code_verifier": record.code_verifier,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                token_response = await client.post(
                    GOOGLE_PROVIDER["token_url"],
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token")
                    if isinstance(token_result, dict)
                    else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider="google")
                    raise OAuthProviderError("Google did not return an access token")

                userinfo_response = await client.get(
                    GOOGLE_PROVIDER["userinfo_url"],
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=exc.response.status_code,
                url=str(exc.request.url),
            )
            raise OAuthProviderError() from exc
        except httpx.HTTPError as exc:
            # timeouts and connection failures
            logger.error(
                "oauth_exchange_transport_error",
                provider="google",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise OAuthProviderError() from exc
        except ValueError as exc:
            logger.error("oauth_exchange_parse_error", provider="google", error=str(exc))
            raise OAuthProviderError() from exc

        if not isinstance(userinfo, dict) or not userinfo.get("id"):
            logger.error("oauth_userinfo_invalid", provider="google")
            raise OAuthProviderError()
        return userinfo

    async def handle_callback(self, code: str, state: str) -> OAuthLoginResult:
        record = await self._consume_state(state)
        self._require_configured()
        if not code:
            raise OAuthProviderError("authorization code missing")

        userinfo = await self._fetch_userinfo(code, record)
        email = userinfo.get("email")
        if not email or userinfo.get("verified_email") is not True:
            raise OAuthEmailRequiredError()

        identity = OAuthIdentity(
            provider=GOOGLE_PROVIDER["name"],
            provider_account_id=str(userinfo["id"]),
            email=email,
            first_name=userinfo.get("given_name"),
            last_name=userinfo.get("family_name"),
            avatar_url=userinfo.get("picture"),
        )
        result, is_new = await self.customers.login_oauth_identity(identity)
        logger.info(
            "oauth_login_success",
            provider="google",
            customer_id=result.principal.id,
            is_new_user=is_new,
        )
        return OAuthLoginResult(
            customer=result.principal, session=result.session, is_new_user=is_new
        )
