from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Request

from tokenward.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutResponse,
    RegisterRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    UserResponse,
)
from tokenward.logging import get_correlation_id, get_logger
from tokenward.service.auth import AuthResult
from tokenward.service.errors import RateLimitedError
from tokenward.service.gate import AuthContext, extract_bearer
from tokenward.service.runtime import get_runtime
from tokenward.storage.bounded import bounded_call
from tokenward.storage.models import Identity, normalize_email

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _ok(data: Any) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    correlation_id = get_correlation_id()
    if correlation_id:
        envelope.request_id = correlation_id
    return envelope


def _user_to_response(identity: Identity) -> UserResponse:
    return UserResponse(**identity.public_view())


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=_user_to_response(result.identity),
        tokens=TokenPairResponse(**result.tokens.to_dict()),
    )


_RATE_WINDOW_SECONDS = 60


def _client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(runtime, key: str, limit: int) -> None:
    """Consume one attempt from ``key``'s bucket or raise 429.

    A limit of zero disables the check. A limiter outage surfaces as 503.
    """
    if limit <= 0:
        return
    limiter = runtime.rate_limiter
    decision = await bounded_call(
        limiter.hit(key, limit, _RATE_WINDOW_SECONDS),
        timeout=runtime.settings.store_timeout_seconds,
        backend=limiter.backend,
        operation="rate_limit",
    )
    if not decision.allowed:
        logger.warning(
            "rate_limited", scope=key.partition(":")[0], retry_after=decision.retry_after
        )
        raise RateLimitedError("too many attempts", retry_after=decision.retry_after)


async def get_principal(
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Resolve the caller from the bearer access token or fail with 401/404."""
    runtime = get_runtime()
    outcome = await runtime.gate.authenticate(authorization)
    return outcome.unwrap()


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account with email and password and return a token pair.

    Raises:
        400: invalid input or signup disabled
        409: email already registered
        429: too many attempts for this email from this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{normalize_email(body.email)}|{_client_address(request)}",
        runtime.settings.signup_rate_limit_per_minute,
    )
    outcome = await runtime.auth.register(body.email, body.password, body.name)
    return _ok(_auth_response(outcome.unwrap()))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Exchange email and password for a token pair.

    Unknown email and wrong password produce the same 401. Attempts are
    throttled per email and client address (429).
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{normalize_email(body.email)}|{_client_address(request)}",
        runtime.settings.login_rate_limit_per_minute,
    )
    outcome = await runtime.auth.login(body.email, body.password)
    return _ok(_auth_response(outcome.unwrap()))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    """Rotate a refresh token. The presented token stops working on success."""
    runtime = get_runtime()
    outcome = await runtime.auth.refresh(body.refresh_token)
    return _ok(TokenPairResponse(**outcome.unwrap().to_dict()))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    outcome = await runtime.auth.logout(extract_bearer(authorization))
    return _ok(LogoutResponse(revoked=outcome.unwrap()))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    return _ok(_user_to_response(principal.identity))
