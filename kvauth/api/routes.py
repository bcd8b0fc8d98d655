from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Query, Response

from kvauth.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
)
from kvauth.config import Settings
from kvauth.service.errors import AuthenticationError
from kvauth.service.results import Err
from kvauth.service.runtime import get_runtime
from kvauth.storage.models import LoginResult, TokenPair

router = APIRouter(prefix="/v1/auth", tags=["auth"])

ACCESS_TOKEN_COOKIE = "access_token"
REFRESH_TOKEN_COOKIE = "refresh_token"


def _apply_token_cookies(response: Response, tokens: TokenPair, settings: Settings) -> None:
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_TOKEN_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def clear_token_cookies(response: Response, settings: Settings) -> None:
    for name in (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
        )


def _auth_envelope(result: LoginResult) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=result.user_id,
            session_id=result.session_id,
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
        ),
    )


async def _refresh_from_cookies(
    response: Response,
    *,
    access_token: Optional[str],
    refresh_token: Optional[str],
    session_id: str,
    user_id: str,
) -> TokenPair:
    if not access_token or not refresh_token:
        raise AuthenticationError("missing token cookies", trigger_logout=True)
    runtime = get_runtime()
    result = await runtime.auth.refresh(access_token, refresh_token, session_id, user_id)
    if isinstance(result, Err):
        raise result.error.to_service_error()
    _apply_token_cookies(response, result.value, runtime.settings)
    return result.value


async def require_fresh_tokens(
    response: Response,
    session_id: str = Header(..., alias="session_id", convert_underscores=False),
    user_id: str = Header(..., alias="user_id", convert_underscores=False),
    access_token: Optional[str] = Cookie(None),
    refresh_token: Optional[str] = Cookie(None),
) -> TokenPair:
    """Run the refresh workflow before a protected handler and re-set the cookies."""
    return await _refresh_from_cookies(
        response,
        access_token=access_token,
        refresh_token=refresh_token,
        session_id=session_id,
        user_id=user_id,
    )


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, response: Response):
    """Create an account and log it in.

    Raises:
        409: If the email is already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.register(body.to_profile())
    if isinstance(result, Err):
        raise result.error.to_service_error()
    _apply_token_cookies(response, result.value.tokens, runtime.settings)
    return _auth_envelope(result.value)


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        409: If the account already has an active session
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    if isinstance(result, Err):
        raise result.error.to_service_error()
    _apply_token_cookies(response, result.value.tokens, runtime.settings)
    return _auth_envelope(result.value)


@router.post("/refresh", response_model=Envelope)
async def refresh(
    body: RefreshRequest,
    response: Response,
    access_token: Optional[str] = Cookie(None),
    refresh_token: Optional[str] = Cookie(None),
):
    """Exchange the cookie-held token pair for the pair the client should keep.

    A terminal failure clears both cookies and sets ``trigger_logout``.
    """
    tokens = await _refresh_from_cookies(
        response,
        access_token=access_token,
        refresh_token=refresh_token,
        session_id=body.session_id,
        user_id=body.user_id,
    )
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            access_token=tokens.access_token, refresh_token=tokens.refresh_token
        ),
    )


@router.post("/logout", response_model=Envelope)
async def logout(body: LogoutRequest, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.logout(body.session_id)
    if isinstance(result, Err):
        raise result.error.to_service_error()
    clear_token_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/sessions", response_model=Envelope)
async def list_sessions(
    limit: Optional[int] = Query(None, ge=1, le=100),
    _tokens: TokenPair = Depends(require_fresh_tokens),
):
    runtime = get_runtime()
    result = await runtime.auth.list_sessions(limit)
    if isinstance(result, Err):
        raise result.error.to_service_error()
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[SessionResponse.from_session(s) for s in result.value]
        ),
    )
