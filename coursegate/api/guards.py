"""Request authentication for the HTTP boundary.

Guards only know the ``SessionValidator`` protocol, so they never import
the gateway module; the concrete gateway is taken from the runtime that
the app lifespan stored on ``app.state``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from fastapi import Depends, Request

from coursegate.service.errors import (
    InsufficientRoleError,
    SessionInvalidError,
    UnauthorizedError,
)
from coursegate.service.runtime import Runtime


class SessionValidator(Protocol):
    async def validate_session(self, session_id: Optional[str]) -> Optional[Dict[str, Any]]: ...


@dataclass
class AuthContext:
    session_id: str
    principal: Dict[str, Any]

    @property
    def principal_id(self) -> str:
        return str(self.principal["id"])

    @property
    def role(self) -> Optional[str]:
        return self.principal.get("role")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def extract_session_id(request: Request, cookie_name: str) -> Optional[str]:
    """Session id from the track cookie, else from an ``Authorization: Bearer`` header."""
    session_id = request.cookies.get(cookie_name)
    if session_id:
        return session_id
    header = request.headers.get("authorization")
    if header:
        scheme, _, value = header.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    return None


async def authenticate(
    request: Request, validator: SessionValidator, cookie_name: str
) -> AuthContext:
    session_id = extract_session_id(request, cookie_name)
    if not session_id:
        raise UnauthorizedError()
    principal = await validator.validate_session(session_id)
    if principal is None:
        raise SessionInvalidError()
    return AuthContext(session_id=session_id, principal=principal)


async def require_customer(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> AuthContext:
    return await authenticate(
        request, runtime.customer_auth, runtime.settings.session_cookie_name
    )


async def require_staff(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> AuthContext:
    return await authenticate(
        request, runtime.staff_auth, runtime.settings.admin_session_cookie_name
    )


def require_roles(*roles: str) -> Callable[..., Awaitable[AuthContext]]:
    """Staff guard that additionally demands one of ``roles``."""

    async def _dependency(ctx: AuthContext = Depends(require_staff)) -> AuthContext:
        if ctx.role not in roles:
            raise InsufficientRoleError()
        return ctx

    return _dependency
