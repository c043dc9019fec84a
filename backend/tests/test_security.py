"""
Tests for bearer token handling and principal resolution.
"""

from datetime import timedelta

import pytest
from jose import jwt

from marketplace.core.config import get_settings
from marketplace.core.security import (
    Principal,
    Role,
    TokenError,
    create_access_token,
    decode_token,
)


class TestTokens:
    def test_round_trip(self) -> None:
        token = create_access_token("S1", Role.SELLER, email="s1@example.com")

        claims = decode_token(token)

        assert claims["sub"] == "S1"
        assert claims["role"] == "seller"
        assert claims["email"] == "s1@example.com"
        assert claims["type"] == "access"

    def test_email_is_optional(self) -> None:
        assert "email" not in decode_token(create_access_token("admin-1", Role.ADMIN))

    def test_expired_token(self) -> None:
        token = create_access_token(
            "customer-1", Role.CUSTOMER, expires_delta=timedelta(seconds=-1)
        )

        with pytest.raises(TokenError) as exc_info:
            decode_token(token)

        assert exc_info.value.code == "TOKEN_EXPIRED"

    def test_token_signed_with_other_key(self) -> None:
        settings = get_settings()
        token = jwt.encode(
            {"sub": "customer-1", "role": "customer"},
            "not-the-secret",
            algorithm=settings.jwt_algorithm,
        )

        with pytest.raises(TokenError) as exc_info:
            decode_token(token)

        assert exc_info.value.code == "TOKEN_INVALID"

    @pytest.mark.parametrize("token", ["", "garbage", "a.b.c"])
    def test_malformed_tokens(self, token: str) -> None:
        with pytest.raises(TokenError):
            decode_token(token)


class TestPrincipal:
    def test_from_claims(self) -> None:
        principal = Principal.from_claims(
            {"sub": "S1", "role": "seller", "email": "s1@example.com"}
        )

        assert principal == Principal(id="S1", role=Role.SELLER, email="s1@example.com")

    def test_role_defaults_to_customer(self) -> None:
        assert Principal.from_claims({"sub": 42}).role == Role.CUSTOMER
        assert Principal.from_claims({"sub": 42}).id == "42"

    def test_missing_subject(self) -> None:
        with pytest.raises(TokenError):
            Principal.from_claims({"role": "seller"})

    def test_unknown_role(self) -> None:
        with pytest.raises(TokenError):
            Principal.from_claims({"sub": "x", "role": "superuser"})
