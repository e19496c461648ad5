from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from marketsphere.api.error_handling import service_error_response
from marketsphere.api.schemas import (
    AuthResponse,
    CurrentUserResponse,
    Envelope,
    GoogleLoginRequest,
    LoginRequest,
    LogoutRequest,
    RevocationHealthResponse,
    SessionStatusResponse,
    SuspendUserRequest,
    TokenRefreshRequest,
    UserResponse,
)
from marketsphere.config import Settings
from marketsphere.logging import get_logger
from marketsphere.service.errors import (
    MissingRefreshTokenError,
    NotFoundError,
    RateLimitedError,
    ServiceError,
)
from marketsphere.service.fingerprint import RequestContext
from marketsphere.service.gate import ACCESS_TOKEN_COOKIE, AuthContext
from marketsphere.service.runtime import Runtime, check_rate_limit, get_runtime
from marketsphere.service.sessions import TokenPair
from marketsphere.storage.models import UserView

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_TOKEN_COOKIE = "refreshToken"
REMEMBER_ME_COOKIE = "rememberMe"


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
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Enforce a token-bucket limit and optionally add headers to ``response``.

    Raises:
        RateLimitedError: when the bucket for ``key`` is empty.
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limited", key=key, limit=limit, window_seconds=window_seconds)
        raise RateLimitedError(detail={"retry_after": info.reset_seconds})
    return info


def _request_context(request: Request) -> RequestContext:
    client_host = request.client.host if request.client else None
    return RequestContext.from_headers(client_host, request.headers)


async def get_current_context(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.gate.authenticate(
        authorization, request.cookies, _request_context(request)
    )
    await _enforce_rate_limit(
        runtime,
        f"api:{ctx.user_id}",
        runtime.settings.general_rate_limit,
        runtime.settings.general_rate_window_seconds,
        response=response,
    )
    return ctx


async def get_optional_context(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    runtime = get_runtime()
    return await runtime.gate.authenticate_optional(
        authorization, request.cookies, _request_context(request)
    )


async def get_admin_context(
    ctx: AuthContext = Depends(get_current_context),
) -> AuthContext:
    return get_runtime().gate.require_admin(ctx)


def _apply_auth_cookies(response: Response, tokens: TokenPair, settings: Settings) -> None:
    if not settings.cookies_enabled:
        return
    common = {
        "secure": settings.cookie_secure,
        "samesite": "strict",
        "domain": settings.cookie_domain,
        "path": "/",
    }
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        tokens.access_token,
        httponly=True,
        max_age=tokens.access_expires_in,
        **common,
    )
    response.set_cookie(
        REFRESH_TOKEN_COOKIE,
        tokens.refresh_token,
        httponly=True,
        max_age=tokens.refresh_expires_in,
        **common,
    )
    # Readable by the client so it can restore the flag without a round trip
    response.set_cookie(
        REMEMBER_ME_COOKIE,
        "true" if tokens.remember else "false",
        httponly=False,
        max_age=tokens.refresh_expires_in,
        **common,
    )


def _clear_auth_cookies(response: Response, settings: Settings) -> None:
    if not settings.cookies_enabled:
        return
    for name in (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE, REMEMBER_ME_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            domain=settings.cookie_domain,
            secure=settings.cookie_secure,
            samesite="strict",
        )


def _auth_payload(
    tokens: TokenPair,
    settings: Settings,
    *,
    user: Optional[UserView] = None,
    is_new_user: Optional[bool] = None,
) -> AuthResponse:
    body_tokens = settings.body_tokens_enabled
    return AuthResponse(
        user=UserResponse.from_view(user) if user is not None else None,
        access_token=tokens.access_token if body_tokens else None,
        refresh_token=tokens.refresh_token if body_tokens else None,
        expires_in=tokens.access_expires_in,
        refresh_expires_in=tokens.refresh_expires_in,
        remember=tokens.remember,
        is_new_user=is_new_user,
    )


def _remember_cookie(request: Request) -> bool:
    return request.cookies.get(REMEMBER_ME_COOKIE) == "true"


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Issues an access/refresh pair sized by ``remember`` and, depending on the
    configured transport, sets the auth cookies. Rate limited per email and
    client address.

    Raises:
        401: INVALID_CREDENTIALS for unknown email, wrong password or unverified account
        403: ACCOUNT_SUSPENDED
        429: RATE_LIMITED
    """
    runtime = get_runtime()
    context = _request_context(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}:{context.ip or 'unknown'}",
        runtime.settings.login_rate_limit,
        runtime.settings.login_rate_window_seconds,
        response=response,
    )
    result = await runtime.sessions.login(
        body.email, body.password, remember=body.remember, context=context
    )
    _apply_auth_cookies(response, result.tokens, runtime.settings)
    return Envelope(
        status="ok",
        data=_auth_payload(result.tokens, runtime.settings, user=result.user),
    )


@router.post("/auth/google", response_model=Envelope, tags=["auth"])
async def login_with_google(body: GoogleLoginRequest, request: Request, response: Response):
    """Sign in with a Google ID token, creating the account on first use."""
    runtime = get_runtime()
    context = _request_context(request)
    await _enforce_rate_limit(
        runtime,
        f"oauth:{context.ip or 'unknown'}",
        runtime.settings.login_rate_limit,
        runtime.settings.login_rate_window_seconds,
        response=response,
    )
    result = await runtime.sessions.login_with_oauth(
        body.credential, remember=body.remember, context=context
    )
    _apply_auth_cookies(response, result.tokens, runtime.settings)
    return Envelope(
        status="ok",
        data=_auth_payload(
            result.tokens,
            runtime.settings,
            user=result.user,
            is_new_user=result.is_new_user,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    """Rotate the refresh token and issue a new pair.

    The token comes from the body, else from the ``refreshToken`` cookie.
    Any failure clears the auth cookies so the browser never keeps a dead
    session.
    """
    runtime = get_runtime()
    settings = runtime.settings
    context = _request_context(request)
    await _enforce_rate_limit(
        runtime,
        f"refresh:{context.ip or 'unknown'}",
        settings.refresh_rate_limit,
        settings.refresh_rate_window_seconds,
        response=response,
    )
    refresh_token = body.refresh_token if body else None
    if not refresh_token and settings.cookies_enabled:
        refresh_token = request.cookies.get(REFRESH_TOKEN_COOKIE)
    remember = (
        body.remember
        if body is not None and body.remember is not None
        else _remember_cookie(request)
    )
    try:
        if not refresh_token:
            raise MissingRefreshTokenError()
        tokens = await runtime.sessions.refresh(
            refresh_token, remember=remember, context=context
        )
    except ServiceError as exc:
        failure = service_error_response(request, exc)
        _clear_auth_cookies(failure, settings)
        return failure
    _apply_auth_cookies(response, tokens, settings)
    return Envelope(status="ok", data=_auth_payload(tokens, settings))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    settings = runtime.settings
    try:
        ctx = await runtime.gate.authenticate(
            authorization, request.cookies, _request_context(request)
        )
    except ServiceError as exc:
        failure = service_error_response(request, exc)
        _clear_auth_cookies(failure, settings)
        return failure
    refresh_token = body.refresh_token if body else None
    if not refresh_token and settings.cookies_enabled:
        refresh_token = request.cookies.get(REFRESH_TOKEN_COOKIE)
    await runtime.sessions.logout(ctx.token, refresh_token, user_id=ctx.user_id)
    _clear_auth_cookies(response, settings)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(request: Request, ctx: AuthContext = Depends(get_current_context)):
    return Envelope(
        status="ok",
        data=CurrentUserResponse(
            user=UserResponse.from_view(ctx.user),
            remember_me=_remember_cookie(request),
        ),
    )


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def session_status(ctx: Optional[AuthContext] = Depends(get_optional_context)):
    """Report whether the caller is signed in without failing when they are not."""
    if ctx is None:
        return Envelope(status="ok", data=SessionStatusResponse(authenticated=False))
    return Envelope(
        status="ok",
        data=SessionStatusResponse(authenticated=True, user=UserResponse.from_view(ctx.user)),
    )


@router.get("/health/revocation", response_model=Envelope, tags=["health"])
async def revocation_health():
    runtime = get_runtime()
    return Envelope(
        status="ok", data=RevocationHealthResponse(**runtime.revocation.health())
    )


@router.post("/admin/revocation/reconnect", response_model=Envelope, tags=["admin"])
async def reconnect_revocation(ctx: AuthContext = Depends(get_admin_context)):
    """Re-probe the shared revocation cache after an outage."""
    runtime = get_runtime()
    status = await asyncio.to_thread(runtime.revocation.reconnect)
    logger.info("admin_revocation_reconnect", user_id=ctx.user_id, status=status.value)
    return Envelope(
        status="ok", data=RevocationHealthResponse(**runtime.revocation.health())
    )


@router.post("/admin/users/{user_id}/suspend", response_model=Envelope, tags=["admin"])
async def suspend_user(
    user_id: str,
    body: SuspendUserRequest,
    ctx: AuthContext = Depends(get_admin_context),
):
    """Suspend or reinstate a user; suspension also ends their refresh session."""
    runtime = get_runtime()
    user = runtime.store.set_suspended(user_id, body.suspended)
    if user is None:
        raise NotFoundError("user not found", detail={"user_id": user_id})
    logger.info(
        "user_suspension_changed",
        user_id=user_id,
        suspended=body.suspended,
        admin_id=ctx.user_id,
    )
    return Envelope(status="ok", data=UserResponse.from_view(UserView.from_user(user)))
