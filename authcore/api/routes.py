from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from authcore.api.schemas import (
    AuthResponse,
    Envelope,
    FederatedLoginRequest,
    LoginRequest,
    LogoutRequest,
    OAuthStartResponse,
    RegisterRequest,
    TokenRefreshRequest,
    UpdateProfileRequest,
    UserListResponse,
    UserResponse,
)
from authcore.logging import bind_request_context, get_logger
from authcore.service.auth import DEFAULT_PAGE_SIZE, AuthContext, AuthResult
from authcore.service.oauth import ProviderUserInfo
from authcore.service.runtime import check_rate_limit, get_runtime
from authcore.storage.models import Identity, Provider

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

# Every limit is configured per minute
_RATE_WINDOW_SECONDS = 60


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    error: dict[str, object] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return HTTPException(status_code=status_code, detail={"status": "error", "error": error})


class RateLimitInfo:
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
    key: str, per_minute: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token from bucket ``key``; raise a 429 envelope when it is empty.

    When ``response`` is given the X-RateLimit-* headers are set on it whether
    or not the request is allowed.
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        get_runtime(), key, per_minute, _RATE_WINDOW_SECONDS, return_remaining=True
    )
    info = RateLimitInfo(per_minute, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.info("rate_limited", bucket=key.split(":", 1)[0], retry_after=reset_seconds)
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after_seconds": reset_seconds},
        )
    return info


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _parse_provider(raw: str) -> Provider:
    try:
        provider = Provider(raw.upper())
    except ValueError:
        provider = None
    if provider is None or provider == Provider.LOCAL:
        raise _http_error("validation_error", "unsupported provider", status_code=400)
    return provider


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    ctx = await get_runtime().auth.authenticate(authorization)
    bind_request_context(user_id=ctx.user_id)
    return ctx


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    await get_runtime().auth.authorize_admin(principal)
    return principal


def _user_to_response(user: Identity) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role.value,
        provider=user.provider.value,
        avatar=user.avatar,
        email_verified=user.email_verified,
        has_password=user.has_password,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def _auth_to_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=_user_to_response(result.identity),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_in=result.expires_in,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, response: Response):
    """Create a local account and start its first session.

    Raises:
        400: If the email, name or password is unacceptable
        409: If the email is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"register:{body.email}",
        runtime.settings.register_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.register(body.email, body.password, body.name)
    return Envelope(status="ok", data=_auth_to_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Every earlier session of the account is revoked before the new one is
    issued.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_to_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"refresh:{_client_host(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_to_response(result))


@router.post("/auth/federated/{provider}", response_model=Envelope, tags=["auth"])
async def federated_login(
    body: FederatedLoginRequest,
    response: Response,
    provider: str = Path(..., max_length=32, description="Federated provider (google)"),
    x_upstream_secret: Optional[str] = Header(None, alias="X-Upstream-Secret"),
):
    """Sign in with an identity an upstream has already verified with the provider."""
    runtime = get_runtime()
    expected = runtime.settings.federated_upstream_secret
    if not expected or not x_upstream_secret or not hmac.compare_digest(
        expected.encode(), x_upstream_secret.encode()
    ):
        logger.warning("federated_upstream_rejected", provider=provider)
        raise _http_error("forbidden", "federated upstream not trusted", status_code=403)
    resolved = _parse_provider(provider)
    await _enforce_rate_limit(
        f"federated:{resolved.value}:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    info = ProviderUserInfo(
        provider=resolved,
        external_id=body.external_id,
        email=body.email,
        name=body.name,
        avatar=body.avatar,
        email_verified=body.email_verified,
    )
    result = await runtime.auth.federated_login(info)
    return Envelope(status="ok", data=_auth_to_response(result))


@router.get("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(
    provider: str = Path(..., max_length=32, description="OAuth provider (google)"),
):
    """Start the OAuth authorization-code flow.

    Returns the provider authorization URL; the client redirects the user
    there and the provider calls back with ``code`` and ``state``.
    """
    runtime = get_runtime()
    resolved = _parse_provider(provider)
    # Rate limit OAuth start to prevent state token exhaustion
    await _enforce_rate_limit(
        f"oauth:start:{resolved.value}", runtime.settings.oauth_rate_limit_per_minute
    )
    start = await runtime.auth.start_federated_login(resolved)
    return Envelope(
        status="ok",
        data=OAuthStartResponse(
            authorization_url=start["authorization_url"],
            state=start["state"],
            provider=resolved.value.lower(),
        ),
    )


@router.get("/auth/oauth/{provider}/callback", response_model=Envelope, tags=["auth"])
async def oauth_callback(
    provider: str = Path(..., max_length=32, description="OAuth provider"),
    code: str = Query(..., max_length=512, description="Authorization code from OAuth provider"),
    state: str = Query(..., max_length=128, description="State parameter for CSRF protection"),
):
    """Complete the OAuth flow and start a session for the resolved identity."""
    runtime = get_runtime()
    resolved = _parse_provider(provider)
    # Rate limit OAuth callback to prevent code brute-forcing
    await _enforce_rate_limit(
        f"oauth:callback:{resolved.value}", runtime.settings.oauth_rate_limit_per_minute
    )
    result = await runtime.auth.federated_login_with_code(resolved, code, state)
    return Envelope(status="ok", data=_auth_to_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal.user_id)
    return Envelope(status="ok", data={"revoked_sessions": revoked})


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    identity = await runtime.auth.get_profile(principal.user_id)
    return Envelope(status="ok", data=_user_to_response(identity))


@router.put("/users/me", response_model=Envelope, tags=["users"])
async def update_me(
    body: UpdateProfileRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    identity = await runtime.auth.update_profile(
        principal.user_id, name=body.name, avatar=body.avatar
    )
    return Envelope(status="ok", data=_user_to_response(identity))


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(DEFAULT_PAGE_SIZE, description="Maximum users to return"),
    offset: int = Query(0, description="Users to skip"),
    principal: AuthContext = Depends(get_admin_user),
):
    """List users, newest first.

    Out-of-range ``limit`` falls back to the default page size and a negative
    ``offset`` is treated as zero.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"admin:read:{principal.user_id}", runtime.settings.admin_rate_limit_per_minute
    )
    users, total, resolved_limit, resolved_offset = await runtime.auth.list_users(
        limit=limit, offset=offset
    )
    return Envelope(
        status="ok",
        data=UserListResponse(
            users=[_user_to_response(u) for u in users],
            total=total,
            limit=resolved_limit,
            offset=resolved_offset,
        ),
    )


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"admin:read:{principal.user_id}", runtime.settings.admin_rate_limit_per_minute
    )
    identity = await runtime.auth.get_user(user_id)
    return Envelope(status="ok", data=_user_to_response(identity))


@router.post("/admin/users/{user_id}/promote", response_model=Envelope, tags=["admin"])
async def admin_promote_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"admin:set_role:{principal.user_id}", runtime.settings.admin_rate_limit_per_minute
    )
    identity = await runtime.auth.promote_user(user_id)
    logger.info("admin_promoted_user", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data=_user_to_response(identity))


@router.post("/admin/users/{user_id}/demote", response_model=Envelope, tags=["admin"])
async def admin_demote_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"admin:set_role:{principal.user_id}", runtime.settings.admin_rate_limit_per_minute
    )
    identity = await runtime.auth.demote_user(user_id)
    logger.info("admin_demoted_user", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data=_user_to_response(identity))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        f"admin:delete_user:{principal.user_id}", runtime.settings.admin_rate_limit_per_minute
    )
    await runtime.auth.delete_user(user_id)
    logger.info("admin_deleted_user", admin_id=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data={"deleted": True, "user_id": user_id})
