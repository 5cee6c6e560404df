"""Tests for HS256 bearer token issue and verification."""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from farmgate.config import get_settings
from farmgate.service.tokens import TokenIssuer
from farmgate.storage.models import Role, User


@pytest.fixture
def issuer():
    return TokenIssuer(get_settings())


@pytest.fixture
def user():
    return User(
        id="user-1",
        email="grower@farm.io",
        username="grower",
        first_name="Ada",
        last_name="Field",
        email_confirmed=True,
        is_active=True,
        roles=[Role.CUSTOMER, Role.SUPER_ADMIN],
    )


def _segment(token: str, index: int) -> dict:
    raw = token.split(".")[index]
    return json.loads(base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4)))


class TestIssue:
    def test_header_is_hs256(self, issuer, user):
        token = issuer.issue(user)
        assert _segment(token, 0) == {"alg": "HS256", "typ": "JWT"}

    def test_claims(self, issuer, user):
        settings = get_settings()
        claims = _segment(issuer.issue(user), 1)

        assert claims["sub"] == "user-1"
        assert claims["name"] == "grower"
        assert claims["email"] == "grower@farm.io"
        assert claims["first_name"] == "Ada"
        assert claims["last_name"] == "Field"
        assert claims["roles"] == ["Customer", "SuperAdmin"]
        assert claims["iss"] == settings.jwt_issuer
        assert claims["aud"] == settings.jwt_audience
        assert claims["exp"] - claims["iat"] == settings.access_token_ttl_minutes * 60
        assert claims["nbf"] == claims["iat"]

    def test_each_token_has_unique_jti(self, issuer, user):
        first = _segment(issuer.issue(user), 1)["jti"]
        second = _segment(issuer.issue(user), 1)["jti"]
        assert first != second


class TestDecode:
    def test_round_trip(self, issuer, user):
        claims = issuer.decode(issuer.issue(user))
        assert claims is not None
        assert claims["sub"] == "user-1"

    def test_tampered_payload_rejected(self, issuer, user):
        header, _, signature = issuer.issue(user).split(".")
        forged = issuer._encode_segment(json.dumps({"sub": "admin"}).encode())
        assert issuer.decode(f"{header}.{forged}.{signature}") is None

    def test_other_secret_rejected(self, issuer, user):
        other = TokenIssuer(
            get_settings().model_copy(update={"jwt_secret": "x" * 40})
        )
        assert issuer.decode(other.issue(user)) is None

    def test_alg_none_rejected(self, issuer, user):
        _, payload, _ = issuer.issue(user).split(".")
        header = issuer._encode_segment(json.dumps({"alg": "none"}).encode())
        assert issuer.decode(f"{header}.{payload}.") is None

    def test_expired_token_rejected(self, issuer, user, monkeypatch):
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        monkeypatch.setattr(issuer, "_now", lambda: past)
        token = issuer.issue(user)
        assert issuer.decode(token) is None

    def test_expired_token_returned_when_expiry_deferred(self, issuer, user, monkeypatch):
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        monkeypatch.setattr(issuer, "_now", lambda: past)
        claims = issuer.decode(issuer.issue(user), verify_exp=False)
        assert claims is not None
        assert claims["sub"] == user.id

    def test_wrong_audience_rejected(self, issuer, user):
        other = TokenIssuer(
            get_settings().model_copy(update={"jwt_audience": "someone-else"})
        )
        assert issuer.decode(other.issue(user)) is None

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_rejected(self, issuer, token):
        assert issuer.decode(token) is None
