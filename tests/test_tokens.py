"""Tests for access and refresh token issuance and validation."""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from authcore.service.tokens import (
    InvalidTokenError,
    TokenExpiredError,
    TokenKind,
    TokenService,
    WrongTokenKindError,
)


@pytest.fixture
def tokens(settings):
    return TokenService(settings)


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestTokenRoundTrip:
    def test_access_token_claims(self, tokens):
        token = tokens.issue_access("user-1", "u@example.com", "USER")
        claims = tokens.validate_access(token)
        assert claims.user_id == "user-1"
        assert claims.subject == "user-1"
        assert claims.email == "u@example.com"
        assert claims.role == "USER"
        assert claims.kind == TokenKind.ACCESS
        lifetime = claims.expires_at - claims.issued_at
        assert lifetime == timedelta(minutes=tokens.settings.access_token_ttl_minutes)

    def test_refresh_token_claims(self, tokens):
        token = tokens.issue_refresh("user-1", "u@example.com", "ADMIN")
        claims = tokens.validate_refresh(token)
        assert claims.kind == TokenKind.REFRESH
        assert claims.role == "ADMIN"
        lifetime = claims.expires_at - claims.issued_at
        assert lifetime == timedelta(minutes=tokens.settings.refresh_token_ttl_minutes)

    def test_tokens_minted_together_differ(self, tokens):
        first = tokens.issue_refresh("user-1", "u@example.com", "USER")
        second = tokens.issue_refresh("user-1", "u@example.com", "USER")
        assert first != second


class TestTokenKindIsolation:
    """A token is only accepted by the validator for its own kind."""

    def test_refresh_token_rejected_as_access(self, tokens):
        token = tokens.issue_refresh("user-1", "u@example.com", "USER")
        with pytest.raises(WrongTokenKindError) as exc_info:
            tokens.validate_access(token)
        assert exc_info.value.reason == "wrong_kind"

    def test_access_token_rejected_as_refresh(self, tokens):
        token = tokens.issue_access("user-1", "u@example.com", "USER")
        with pytest.raises(WrongTokenKindError):
            tokens.validate_refresh(token)


class TestTokenRejection:
    def test_tampered_payload_rejected(self, tokens):
        token = tokens.issue_access("user-1", "u@example.com", "USER")
        header, payload, sig = token.split(".")
        forged = _b64({**json.loads(tokens._decode_segment(payload)), "role": "ADMIN"})
        with pytest.raises(InvalidTokenError):
            tokens.validate_access(f"{header}.{forged}.{sig}")

    def test_other_secret_rejected(self, tokens, settings):
        other = TokenService(settings.model_copy(update={"jwt_secret": "x" * 48}))
        token = other.issue_access("user-1", "u@example.com", "USER")
        with pytest.raises(InvalidTokenError):
            tokens.validate_access(token)

    def test_alg_none_rejected(self, tokens):
        token = tokens.issue_access("user-1", "u@example.com", "USER")
        _, payload, _ = token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        with pytest.raises(InvalidTokenError):
            tokens.validate_access(f"{header}.{payload}.")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_rejected(self, tokens, token):
        with pytest.raises(InvalidTokenError):
            tokens.validate_access(token)

    def test_issuer_mismatch_rejected(self, tokens, settings):
        other = TokenService(settings.model_copy(update={"jwt_issuer": "someone-else"}))
        token = other.issue_access("user-1", "u@example.com", "USER")
        with pytest.raises(InvalidTokenError):
            tokens.validate_access(token)

    def test_expired_token_rejected(self, tokens, monkeypatch):
        token = tokens.issue_access("user-1", "u@example.com", "USER")
        later = datetime.now(timezone.utc) + timedelta(
            minutes=tokens.settings.access_token_ttl_minutes, hours=1
        )
        monkeypatch.setattr(tokens, "_now", lambda: later)
        with pytest.raises(TokenExpiredError) as exc_info:
            tokens.validate_access(token)
        assert exc_info.value.reason == "expired"

    def test_clock_skew_tolerated(self, tokens, monkeypatch):
        token = tokens.issue_access("user-1", "u@example.com", "USER")
        earlier = datetime.now(timezone.utc) - timedelta(
            seconds=tokens.settings.jwt_clock_skew_seconds // 2
        )
        monkeypatch.setattr(tokens, "_now", lambda: earlier)
        assert tokens.validate_access(token).user_id == "user-1"
