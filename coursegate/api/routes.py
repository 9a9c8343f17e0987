from __future__ import annotations

from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse

from coursegate.api.guards import (
    AuthContext,
    extract_session_id,
    get_runtime,
    require_customer,
    require_roles,
    require_staff,
)
from coursegate.api.schemas import (
    ChangePasswordRequest,
    CreateStaffRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    OAuthUrlResponse,
    ResetPasswordRequest,
    ResetRequestResponse,
    SessionResponse,
    SignupRequest,
    UpdateEmailRequest,
)
from coursegate.logging import get_logger
from coursegate.service.errors import ServiceError
from coursegate.service.runtime import Runtime
from coursegate.storage.models import Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_identifier(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _throttle_principal(runtime: Runtime, ctx: AuthContext) -> None:
    # general budget per signed-in principal; fails open when Redis is down
    await runtime.rate_limiter.enforce("default", ctx.principal_id)


def _set_session_cookie(
    response: Response, runtime: Runtime, cookie_name: str, session: Session
) -> None:
    response.set_cookie(
        cookie_name,
        session.id,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        max_age=runtime.settings.session_max_age_days * 24 * 60 * 60,
        path="/",
    )


def _clear_session_cookie(response: Response, runtime: Runtime, cookie_name: str) -> None:
    response.delete_cookie(
        cookie_name, path="/", secure=runtime.settings.cookie_secure, samesite="lax"
    )


def _ok(data) -> Envelope:
    return Envelope(status="ok", data=data)


# ---------------------------------------------------------------------------
# Customer track
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(
    body: SignupRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.rate_limiter.enforce("signup", _client_identifier(request))
    result = await runtime.customer_auth.signup(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    _set_session_cookie(response, runtime, runtime.settings.session_cookie_name, result.session)
    return _ok(
        SessionResponse(user=result.principal.public_view(), session_id=result.session.id)
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.rate_limiter.enforce("login", _client_identifier(request))
    result = await runtime.customer_auth.login(body.email, body.password)
    _set_session_cookie(response, runtime, runtime.settings.session_cookie_name, result.session)
    return _ok(
        SessionResponse(user=result.principal.public_view(), session_id=result.session.id)
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request, response: Response, runtime: Runtime = Depends(get_runtime)
):
    cookie_name = runtime.settings.session_cookie_name
    session_id = extract_session_id(request, cookie_name)
    if session_id:
        await runtime.customer_auth.logout(session_id)
    _clear_session_cookie(response, runtime, cookie_name)
    return _ok({"success": True})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(ctx: AuthContext = Depends(require_customer)):
    return _ok(ctx.principal)


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.rate_limiter.enforce("forgot_password", _client_identifier(request))
    result = await runtime.customer_reset.request_password_reset(body.email)
    return _ok(
        ResetRequestResponse(
            success=result.success, cooldown_remaining=result.cooldown_remaining
        )
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.rate_limiter.enforce("reset_password", _client_identifier(request))
    await runtime.customer_reset.reset_password_with_token(body.token, body.new_password)
    return _ok({"success": True})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    response: Response,
    ctx: AuthContext = Depends(require_customer),
    runtime: Runtime = Depends(get_runtime),
):
    await _throttle_principal(runtime, ctx)
    await runtime.customer_auth.change_password(
        ctx.principal_id, body.current_password, body.new_password
    )
    # every session, this one included, was revoked
    _clear_session_cookie(response, runtime, runtime.settings.session_cookie_name)
    return _ok({"success": True})


@router.get("/auth/google", response_model=Envelope, tags=["auth"])
async def google_auth(runtime: Runtime = Depends(get_runtime)):
    url = await runtime.oauth.get_auth_url()
    return _ok(OAuthUrlResponse(url=url))


@router.get("/auth/google/callback", tags=["auth"])
async def google_callback(
    code: str = Query(default=""),
    state: str = Query(default=""),
    runtime: Runtime = Depends(get_runtime),
):
    """Finish Google sign-in and send the browser back to the frontend.

    Failures never surface as JSON here; the frontend gets ``success=false``.
    """
    landing = f"{runtime.settings.frontend_url}/callback"
    try:
        result = await runtime.oauth.handle_callback(code, state)
    except ServiceError as exc:
        logger.warning("oauth_callback_failed", error_code=exc.error_code)
        query = urlencode({"success": "false", "error": "Authentication failed"})
        return RedirectResponse(f"{landing}?{query}", status_code=302)

    query = urlencode(
        {"success": "true", "isNewUser": "true" if result.is_new_user else "false"}
    )
    redirect = RedirectResponse(f"{landing}?{query}", status_code=302)
    _set_session_cookie(redirect, runtime, runtime.settings.session_cookie_name, result.session)
    return redirect


# ---------------------------------------------------------------------------
# Staff track
# ---------------------------------------------------------------------------


@router.post("/admin/auth/login", response_model=Envelope, tags=["admin"])
async def admin_login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.rate_limiter.enforce("login", _client_identifier(request))
    result = await runtime.staff_auth.login(body.email, body.password)
    _set_session_cookie(
        response, runtime, runtime.settings.admin_session_cookie_name, result.session
    )
    return _ok(
        SessionResponse(user=result.principal.public_view(), session_id=result.session.id)
    )


@router.post("/admin/auth/logout", response_model=Envelope, tags=["admin"])
async def admin_logout(
    request: Request, response: Response, runtime: Runtime = Depends(get_runtime)
):
    cookie_name = runtime.settings.admin_session_cookie_name
    session_id = extract_session_id(request, cookie_name)
    if session_id:
        await runtime.staff_auth.logout(session_id)
    _clear_session_cookie(response, runtime, cookie_name)
    return _ok({"success": True})


@router.get("/admin/auth/me", response_model=Envelope, tags=["admin"])
async def admin_me(ctx: AuthContext = Depends(require_staff)):
    return _ok(ctx.principal)


@router.post("/admin/auth/forgot-password", response_model=Envelope, tags=["admin"])
async def admin_forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.rate_limiter.enforce("forgot_password", _client_identifier(request))
    result = await runtime.staff_reset.request_password_reset(body.email)
    return _ok(
        ResetRequestResponse(
            success=result.success, cooldown_remaining=result.cooldown_remaining
        )
    )


@router.post("/admin/auth/reset-password", response_model=Envelope, tags=["admin"])
async def admin_reset_password(
    body: ResetPasswordRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.rate_limiter.enforce("reset_password", _client_identifier(request))
    await runtime.staff_reset.reset_password_with_token(body.token, body.new_password)
    return _ok({"success": True})


@router.post("/admin/staff", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_staff(
    body: CreateStaffRequest,
    ctx: AuthContext = Depends(require_roles("admin")),
    runtime: Runtime = Depends(get_runtime),
):
    await _throttle_principal(runtime, ctx)
    staff = await runtime.staff_auth.create_staff(
        body.email, body.password, name=body.name, role=body.role
    )
    return _ok(staff.public_view())


@router.post("/admin/staff/{staff_id}/deactivate", response_model=Envelope, tags=["admin"])
async def admin_deactivate_staff(
    staff_id: str,
    ctx: AuthContext = Depends(require_roles("admin")),
    runtime: Runtime = Depends(get_runtime),
):
    await _throttle_principal(runtime, ctx)
    await runtime.staff_auth.deactivate_staff(staff_id, ctx.principal_id)
    return _ok({"success": True})


@router.post("/admin/staff/{staff_id}/activate", response_model=Envelope, tags=["admin"])
async def admin_activate_staff(
    staff_id: str,
    ctx: AuthContext = Depends(require_roles("admin")),
    runtime: Runtime = Depends(get_runtime),
):
    await _throttle_principal(runtime, ctx)
    await runtime.staff_auth.activate_staff(staff_id)
    return _ok({"success": True})


@router.patch("/admin/customers/{customer_id}/email", response_model=Envelope, tags=["admin"])
async def admin_update_customer_email(
    customer_id: str,
    body: UpdateEmailRequest,
    ctx: AuthContext = Depends(require_roles("admin")),
    runtime: Runtime = Depends(get_runtime),
):
    await _throttle_principal(runtime, ctx)
    customer = await runtime.customer_auth.update_customer_email(customer_id, body.email)
    return _ok(customer.public_view())


@router.post(
    "/admin/customers/{customer_id}/reset-password", response_model=Envelope, tags=["admin"]
)
async def admin_reset_customer_password(
    customer_id: str,
    ctx: AuthContext = Depends(require_roles("admin")),
    runtime: Runtime = Depends(get_runtime),
):
    await _throttle_principal(runtime, ctx)
    result = await runtime.customer_reset.issue_reset_for_principal(customer_id)
    return _ok({"success": result.success})


@router.post(
    "/admin/customers/{customer_id}/require-password-reset",
    response_model=Envelope,
    tags=["admin"],
)
async def admin_require_customer_password_reset(
    customer_id: str,
    ctx: AuthContext = Depends(require_roles("admin")),
    runtime: Runtime = Depends(get_runtime),
):
    await _throttle_principal(runtime, ctx)
    revoked = await runtime.customer_auth.require_password_reset(customer_id)
    return _ok({"success": True, "sessions_revoked": revoked})
