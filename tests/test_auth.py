"""
Tests for session token verification.
"""

from datetime import datetime, timedelta, timezone

from jose import jwt
import pytest

from src.assist.auth import token_from_request, verify_token
from src.assist.errors import AuthError

SECRET = "test_jwt_secret"


def _token(claims, secret=SECRET, expires_in=timedelta(hours=1)):
    payload = dict(claims)
    payload["exp"] = datetime.now(timezone.utc) + expires_in
    return jwt.encode(payload, secret, algorithm="HS256")


class TestTokenFromRequest:

    def test_query_param_wins(self):
        assert token_from_request({"token": "abc"}, {"authorization": "Bearer xyz"}) == "abc"

    def test_bearer_header(self):
        assert token_from_request({}, {"authorization": "Bearer xyz"}) == "xyz"

    def test_other_scheme_ignored(self):
        assert token_from_request({}, {"authorization": "Basic xyz"}) is None

    def test_nothing(self):
        assert token_from_request({}, {}) is None


class TestVerifyToken:

    @pytest.mark.parametrize("claim", ["sub", "userId", "id"])
    def test_user_id_claims(self, claim):
        principal = verify_token(_token({claim: "user-7"}), SECRET)
        assert principal.user_id == "user-7"

    def test_missing_token(self):
        with pytest.raises(AuthError) as exc:
            verify_token(None, SECRET)
        assert exc.value.code == "AUTH_REQUIRED"
        assert exc.value.is_fatal

    def test_expired(self):
        with pytest.raises(AuthError) as exc:
            verify_token(_token({"sub": "u"}, expires_in=timedelta(minutes=-5)), SECRET)
        assert exc.value.code == "AUTH_EXPIRED"

    def test_wrong_secret(self):
        with pytest.raises(AuthError) as exc:
            verify_token(_token({"sub": "u"}, secret="other"), SECRET)
        assert exc.value.code == "AUTH_INVALID"

    def test_garbage(self):
        with pytest.raises(AuthError) as exc:
            verify_token("not.a.jwt", SECRET)
        assert exc.value.code == "AUTH_INVALID"

    def test_no_user_id(self):
        with pytest.raises(AuthError) as exc:
            verify_token(_token({"role": "admin"}), SECRET)
        assert exc.value.code == "AUTH_INVALID"
