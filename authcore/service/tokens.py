from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from authcore.config import Settings
from authcore.logging import get_logger

logger = get_logger(__name__)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenError(Exception):
    """Base class for token validation failures."""

    reason = "invalid_token"


class InvalidTokenError(TokenError):
    """Malformed token, bad signature, or claims that fail policy checks."""


class TokenExpiredError(TokenError):
    reason = "expired"


class WrongTokenKindError(TokenError):
    """Token is valid but was minted for the other purpose."""

    reason = "wrong_kind"


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    role: str
    kind: TokenKind
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
    subject: str
    jti: str


def _from_ts(value: Any) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class TokenService:
    """Issues and validates HS256-signed access and refresh tokens.

    Tokens carry no revocation state. Refresh tokens are additionally checked
    against the session store by the caller; access tokens are stateless.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._clock_skew_leeway = timedelta(seconds=settings.jwt_clock_skew_seconds)

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def expiry_for(self, kind: TokenKind) -> timedelta:
        if kind == TokenKind.ACCESS:
            return timedelta(minutes=self.settings.access_token_ttl_minutes)
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def issue_access(self, user_id: str, email: str, role: str) -> str:
        return self._issue(TokenKind.ACCESS, user_id, email, role)

    def issue_refresh(self, user_id: str, email: str, role: str) -> str:
        return self._issue(TokenKind.REFRESH, user_id, email, role)

    def validate_access(self, token: str) -> TokenClaims:
        return self._validate(token, TokenKind.ACCESS)

    def validate_refresh(self, token: str) -> TokenClaims:
        return self._validate(token, TokenKind.REFRESH)

    def _issue(self, kind: TokenKind, user_id: str, email: str, role: str) -> str:
        now = self._now()
        issued = int(now.timestamp())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "user_id": user_id,
            "email": email,
            "role": str(getattr(role, "value", role)),
            "token_type": kind.value,
            # Unique per token so two pairs minted in the same second differ
            "jti": uuid.uuid4().hex,
            "iat": issued,
            "nbf": issued,
            "exp": int((now + self.expiry_for(kind)).timestamp()),
        }
        return self._encode_jwt(payload)

    def _validate(self, token: str, expected: TokenKind) -> TokenClaims:
        payload = self._decode_jwt(token)
        now_ts = self._now().timestamp()
        leeway = self._clock_skew_leeway.total_seconds()
        try:
            exp_ts = float(payload["exp"])
            nbf_ts = float(payload.get("nbf", payload.get("iat", 0)))
            iat_ts = float(payload.get("iat", nbf_ts))
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenError("token timestamps missing or malformed") from exc
        if exp_ts <= now_ts - leeway:
            raise TokenExpiredError("token expired")
        if nbf_ts > now_ts + leeway:
            raise InvalidTokenError("token not yet valid")
        kind = payload.get("token_type")
        if kind != expected.value:
            raise WrongTokenKindError(f"expected {expected.value} token")
        user_id = payload.get("user_id") or payload.get("sub")
        if not user_id or payload.get("sub") != user_id:
            raise InvalidTokenError("token subject missing")
        return TokenClaims(
            user_id=user_id,
            email=payload.get("email", ""),
            role=payload.get("role", ""),
            kind=expected,
            issued_at=_from_ts(iat_ts),
            not_before=_from_ts(nbf_ts),
            expires_at=_from_ts(exp_ts),
            subject=payload["sub"],
            jti=payload.get("jti", ""),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        """Verify structure, algorithm, signature and issuer; return the payload."""
        if not token or not isinstance(token, str):
            raise InvalidTokenError("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError as exc:
            raise InvalidTokenError("token must have three segments") from exc

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("token header malformed") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError("token signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("token payload malformed") from exc
        if not isinstance(payload, dict):
            raise InvalidTokenError("token payload malformed")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("token audience mismatch")
        return payload
