from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from credvault.api.schemas import (
    AuthResponse,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    OAuthStartResponse,
    PasswordChangeRequest,
    PasswordForgotRequest,
    PasswordResetConfirm,
    RegisterRequest,
    TokenRefreshRequest,
    UpdateUserRoleRequest,
    UserListResponse,
    UserResponse,
)
from credvault.logging import get_logger
from credvault.service.auth import AuthResult
from credvault.service.errors import TokenExpired, TokenInvalid
from credvault.service.runtime import check_rate_limit, get_runtime
from credvault.service.tokens import AuthContext

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/v1/auth"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return HTTPException(status_code=status_code, detail={"status": "error", "error": error})


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    """Spend one unit for ``key``; answer 429 when the bucket is empty.

    With ``response`` the X-RateLimit-* headers are set on success.
    """
    allowed, remaining, retry_after = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        # keys embed emails and addresses; log the bucket family only
        logger.warning("rate_limited", bucket=key.partition(":")[0])
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after_seconds": retry_after or window_seconds},
        )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
        response.headers["X-RateLimit-Reset"] = str(retry_after or window_seconds)


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


def _optional_principal(authorization: Optional[str]) -> Optional[AuthContext]:
    # a stale access token must not block revoking a refresh token
    if not authorization:
        return None
    try:
        return get_runtime().auth.authenticate(authorization)
    except (TokenExpired, TokenInvalid):
        return None


def _apply_session_cookies(response: Response, result: AuthResult) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        REFRESH_COOKIE,
        result.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        expires=result.refresh_expires_at,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_session_cookies(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        REFRESH_COOKIE,
        path=REFRESH_COOKIE_PATH,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


def _auth_response(result: AuthResult, *, include_refresh_token: bool) -> AuthResponse:
    return AuthResponse(
        user_id=result.user.id,
        role=result.user.role,
        access_token=result.access_token,
        access_expires_at=result.access_expires_at,
        refresh_token=result.refresh_token if include_refresh_token else None,
        refresh_expires_at=result.refresh_expires_at,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create a password account.

    A verification link is emailed; no tokens are issued until login.

    Answers 403 while signup is disabled and 409 when the email or username
    is already registered.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{_client_key(request)}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
    )
    user = await runtime.auth.register(body.email, body.username, body.password)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email or username and password.

    The refresh token is set as an httponly cookie and only echoed in the
    body when ``include_refresh_token`` is set.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.identifier.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.login(body.identifier, body.password)
    _apply_session_cookies(response, result)
    return Envelope(
        status="ok",
        data=_auth_response(result, include_refresh_token=body.include_refresh_token),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_key(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
    )
    raw = (body.refresh_token if body else None) or refresh_cookie
    result = await runtime.auth.refresh(raw)
    _apply_session_cookies(response, result)
    return Envelope(
        status="ok",
        data=_auth_response(
            result, include_refresh_token=bool(body and body.include_refresh_token)
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    authorization: Optional[str] = Header(None),
):
    """Revoke the presented refresh token, or every session with ``all_sessions``.

    Only signing out everywhere needs a valid access token.
    """
    runtime = get_runtime()
    all_sessions = bool(body and body.all_sessions)
    if all_sessions:
        principal = runtime.auth.authenticate(authorization)
    else:
        principal = _optional_principal(authorization)
    raw = (body.refresh_token if body else None) or refresh_cookie
    revoked = await runtime.auth.logout(raw, identity=principal, all_sessions=all_sessions)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request):
    runtime = get_runtime()
    # token brute-forcing
    await _enforce_rate_limit(runtime, f"verify:email:{_client_key(request)}", limit=10, window_seconds=300)
    user = await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data={"status": "verified", "user_id": user.id})


@router.post("/auth/verify-email/resend", response_model=Envelope, tags=["auth"])
async def resend_email_verification(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"verify:request:{principal.user_id}", limit=5, window_seconds=300
    )
    await runtime.auth.resend_email_verification(principal)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordForgotRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.forgot_password(body.email)
    # same answer whether or not the account exists
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"reset:confirm:{_client_key(request)}", limit=5, window_seconds=300)
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"status": "reset"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Change the caller's password.

    Every existing session is signed out; the response carries a fresh pair.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"password:change:{principal.user_id}", limit=5, window_seconds=300
    )
    result = await runtime.auth.change_password(
        principal, body.current_password, body.new_password
    )
    _apply_session_cookies(response, result)
    return Envelope(
        status="ok",
        data=_auth_response(result, include_refresh_token=body.include_refresh_token),
    )


@router.get("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(
    request: Request,
    provider: str = Path(..., max_length=32, description="Identity provider (google, github)"),
):
    """Return the provider's authorization URL with a signed state value."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"oauth:start:{_client_key(request)}", limit=20, window_seconds=60)
    start = runtime.oauth.authorization_url(provider)
    return Envelope(
        status="ok",
        data=OAuthStartResponse(
            authorization_url=start.authorization_url,
            state=start.state,
            provider=provider,
        ),
    )


@router.get("/auth/oauth/{provider}/callback", tags=["auth"])
async def oauth_callback(
    request: Request,
    response: Response,
    provider: str = Path(..., max_length=32),
    code: str = Query(..., max_length=512, description="Authorization code from the provider"),
    state: str = Query(..., max_length=2048, description="Signed state from the start step"),
):
    """Complete a provider sign-in.

    Redirects to ``oauth_success_redirect_url`` when configured, otherwise
    returns the token envelope.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"oauth:callback:{_client_key(request)}", limit=10, window_seconds=60)
    runtime.oauth.verify_state(provider, state)
    identity = await runtime.oauth.exchange_code(provider, code)
    result = await runtime.auth.oauth_callback(provider, identity)
    success_url = runtime.settings.oauth_success_redirect_url
    if success_url:
        redirect = RedirectResponse(success_url, status_code=302)
        _apply_session_cookies(redirect, result)
        return redirect
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_response(result, include_refresh_token=False))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.current_user(principal)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500, description="Maximum users to return"),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"admin:read:{principal.user_id}",
        runtime.settings.admin_rate_limit_per_minute,
        60,
    )
    users = await runtime.auth.list_users(principal, limit=limit)
    return Envelope(
        status="ok", data=UserListResponse(items=[UserResponse.from_user(u) for u in users])
    )


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    body: UpdateUserRoleRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"admin:set_role:{principal.user_id}",
        runtime.settings.admin_rate_limit_per_minute,
        60,
    )
    user = await runtime.auth.assign_role(principal, user_id, body.role)
    return Envelope(status="ok", data=UserResponse.from_user(user))
