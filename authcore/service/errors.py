from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code``, the envelope
    ``error_code`` clients branch on, and a ``kind`` naming the exact failure.
    ``kind`` and ``reason`` are written to logs only; authentication and token
    failures share one external message so callers cannot tell which check
    failed.

    Envelope codes:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - provider_error (502)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: str = "service_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.reason = reason or self.kind


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    kind = "validation_error"
    default_message = "invalid request"


class WeakPasswordError(ValidationError):
    """Password length is outside the accepted range."""
    kind = "weak_password"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    kind = "unauthorized"
    default_message = "invalid credentials"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password."""
    kind = "invalid_credentials"


class FederatedAccountError(InvalidCredentialsError):
    """Password login attempted on an account that only has federated sign-in."""
    kind = "oauth_account_requires_federated_login"


class UnverifiedEmailError(InvalidCredentialsError):
    """The federated provider has not verified the email address."""
    kind = "unverified_email"


class TokenRejectedError(AuthenticationError):
    default_message = "invalid or expired token"
    kind = "token_rejected"


class InvalidRefreshTokenError(TokenRejectedError):
    """Refresh token failed signature, expiry or kind checks."""
    kind = "invalid_refresh_token"


class RevokedOrExpiredError(TokenRejectedError):
    """Refresh token is well formed but no longer has an active session."""
    kind = "revoked_or_expired"


class InvalidAccessTokenError(TokenRejectedError):
    kind = "invalid_access_token"


class IdentityNotFoundError(TokenRejectedError):
    """Refresh token belongs to an identity that has since been deleted."""
    kind = "identity_not_found"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    kind = "forbidden"
    default_message = "admin access required"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    kind = "not_found"
    default_message = "not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    kind = "conflict"
    default_message = "conflict"


class DuplicateEmailError(ConflictError):
    kind = "duplicate_email"
    default_message = "email already exists"


class AlreadyAdminError(ConflictError):
    kind = "already_admin"
    default_message = "user is already an admin"


class AlreadyUserError(ConflictError):
    kind = "already_user"
    default_message = "user is not an admin"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    kind = "rate_limited"
    default_message = "rate limit exceeded"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    kind = "server_error"
    default_message = "internal server error"


class ProviderError(ServiceError):
    """Federated identity provider failed or returned unusable data (502)."""
    status_code = 502
    error_code = "provider_error"
    kind = "provider_error"
    default_message = "federated provider unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "FederatedAccountError",
    "UnverifiedEmailError",
    "TokenRejectedError",
    "InvalidRefreshTokenError",
    "RevokedOrExpiredError",
    "InvalidAccessTokenError",
    "IdentityNotFoundError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "AlreadyAdminError",
    "AlreadyUserError",
    "RateLimitedError",
    "ServerError",
    "ProviderError",
]
