from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Query, Request, Response

from archivum.api.schemas import (
    AdminCreateUserRequest,
    AdminUpdateUserRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    ProfileUpdateRequest,
    RefreshResponse,
    RegisterRequest,
    ResetPasswordRequest,
    RoleUpdateRequest,
    SessionResponse,
    SetupData,
    SetupRequiredResponse,
    TwoFactorRequiredResponse,
    UserListResponse,
    UserResponse,
    VerifyTwoFactorRequest,
    VerifyTwoFactorResponse,
)
from archivum.config import Settings
from archivum.service.auth import (
    AuthContext,
    AuthenticatedSession,
    SetupChallenge,
    TwoFactorChallenge,
)
from archivum.service.errors import RateLimitedError
from archivum.service.runtime import check_rate_limit, get_runtime
from archivum.service.tokens import TokenKind
from archivum.storage.models import Role

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/v1/auth"

_ACCESS_ONLY = frozenset({TokenKind.ACCESS})
_TWO_FACTOR_ONLY = frozenset({TokenKind.SETUP, TokenKind.PENDING})


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one request from ``key``'s bucket or raise ``RateLimitedError``."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after": max(1, reset_seconds)}
        )
    return info


def _set_refresh_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path=REFRESH_COOKIE_PATH,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _setup_payload(challenge: SetupChallenge) -> SetupRequiredResponse:
    return SetupRequiredResponse(
        setup_data=SetupData(secret=challenge.secret, qr_code=challenge.qr_code),
        temp_token=challenge.temp_token,
    )


# -- gate dependencies ---------------------------------------------------


async def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    """Access-token identity; setup and pending tokens are refused."""
    ctx = get_runtime().auth.authenticate(authorization, _ACCESS_ONLY)
    request.state.user_id = ctx.user_id
    request.state.principal = ctx
    return ctx


async def get_two_factor_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    """Identity carried by a setup or pending token; used only by ``/verify-2fa``."""
    ctx = get_runtime().auth.authenticate(authorization, _TWO_FACTOR_ONLY)
    request.state.user_id = ctx.user_id
    request.state.principal = ctx
    return ctx


def require_roles(*roles: Role):
    allowed = frozenset(roles)

    async def _require(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        get_runtime().auth.authorize(principal, allowed)
        return principal

    return _require


# -- auth ----------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Visitors and researchers receive an access token and the refresh cookie
    (200). Curators and admins receive a short-lived temporary token instead
    (202): a setup token with the provisioning QR code while 2FA is not yet
    confirmed, or a pending token once it is.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    outcome = await runtime.auth.login(body.email, body.password)
    if isinstance(outcome, SetupChallenge):
        response.status_code = 202
        return Envelope(status="ok", data=_setup_payload(outcome))
    if isinstance(outcome, TwoFactorChallenge):
        response.status_code = 202
        return Envelope(
            status="ok", data=TwoFactorRequiredResponse(temp_token=outcome.temp_token)
        )
    _set_refresh_cookie(response, outcome.refresh_token, runtime.settings)
    return Envelope(
        status="ok",
        data=SessionResponse(
            access_token=outcome.access_token, user=UserResponse.from_user(outcome.user)
        ),
    )


@router.post("/auth/verify-2fa", response_model=Envelope, tags=["auth"])
async def verify_two_factor(
    body: VerifyTwoFactorRequest,
    response: Response,
    principal: AuthContext = Depends(get_two_factor_principal),
):
    """Exchange a setup or pending token plus a TOTP code for a session."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mfa:{principal.user_id}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    session: AuthenticatedSession = await runtime.auth.verify_two_factor(principal, body.code)
    _set_refresh_cookie(response, session.refresh_token, runtime.settings)
    return Envelope(
        status="ok",
        data=VerifyTwoFactorResponse(
            access_token=session.access_token,
            user=UserResponse.from_user(session.user),
            two_factor_enabled=True,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    response: Response,
    refresh_token: Optional[str] = Cookie(None),
):
    """Rotate the refresh cookie and mint a new access token."""
    runtime = get_runtime()
    session = await runtime.auth.refresh(refresh_token)
    _set_refresh_cookie(response, session.refresh_token, runtime.settings)
    return Envelope(status="ok", data=RefreshResponse(access_token=session.access_token))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    principal: AuthContext = Depends(get_principal),
    refresh_token: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    await runtime.auth.logout(refresh_token, user_id=principal.user_id)
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Email a reset link when the account exists.

    The response is identical whether or not the email is registered.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"forgot:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.forgot_password(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(
            message="if the account exists, a password reset email has been sent"
        ),
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        "reset:global",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.auth.reset_password(body.token, body.new_password)
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a visitor account.

    Raises:
        409: If the email is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{body.email}",
        runtime.settings.register_rate_limit_per_minute,
        60,
    )
    user = await runtime.auth.register(
        body.email, body.password, body.name, biography=body.biography
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/auth/setup-2fa", response_model=Envelope, tags=["auth"])
async def setup_two_factor(principal: AuthContext = Depends(get_principal)):
    """Issue a fresh authenticator secret; confirm it through ``/verify-2fa``."""
    runtime = get_runtime()
    challenge = await runtime.auth.start_two_factor_setup(principal.user_id)
    return Envelope(status="ok", data=_setup_payload(challenge))


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def get_profile(principal: AuthContext = Depends(get_principal)):
    user = get_runtime().auth.get_profile(principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.patch("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_principal)
):
    user = get_runtime().auth.update_profile(
        principal.user_id, name=body.name, biography=body.biography
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


# -- user administration -------------------------------------------------


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(require_roles(Role.ADMIN)),
):
    users = get_runtime().auth.list_users(limit=limit)
    return Envelope(
        status="ok", data=UserListResponse(items=[UserResponse.from_user(u) for u in users])
    )


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(
    body: AdminCreateUserRequest,
    principal: AuthContext = Depends(require_roles(Role.ADMIN)),
):
    user = get_runtime().auth.create_user(
        principal.user_id,
        body.email,
        body.password,
        body.name,
        role=body.role,
        biography=body.biography,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    body: AdminUpdateUserRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_roles(Role.ADMIN)),
):
    user = get_runtime().auth.update_user(
        principal.user_id,
        user_id,
        email=body.email,
        name=body.name,
        biography=body.biography,
        role=body.role,
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.patch("/users/{user_id}/role", response_model=Envelope, tags=["users"])
async def change_user_role(
    body: RoleUpdateRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_roles(Role.ADMIN)),
):
    user = get_runtime().auth.set_user_role(principal.user_id, user_id, body.role)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_roles(Role.ADMIN)),
):
    get_runtime().auth.delete_user(principal.user_id, user_id)
    return Envelope(status="ok", data=MessageResponse(message="user deleted"))
