"""
Tests for JWT verification
"""
from datetime import datetime, timedelta, timezone

import jwt as pyjwt
import pytest

from discovery_ai.api.auth import TokenVerifier, create_access_token, extract_token
from discovery_ai.errors import AuthenticationError, ErrorCode

SECRET = "unit-test-secret"


class TestTokenVerifier:

    @pytest.fixture
    def verifier(self) -> TokenVerifier:
        return TokenVerifier(secret=SECRET)

    @pytest.mark.unit
    async def test_valid_token(self, verifier):
        token = create_access_token("42", secret=SECRET, algorithm="HS256")

        assert await verifier.verify(token) == "42"

    @pytest.mark.unit
    async def test_expired_token(self, verifier):
        token = create_access_token("42", secret=SECRET, algorithm="HS256", expires_minutes=-5)

        with pytest.raises(AuthenticationError) as exc_info:
            await verifier.verify(token)

        assert exc_info.value.message == "Authentication token expired"
        assert exc_info.value.error_code == ErrorCode.AUTHENTICATION_FAILED

    @pytest.mark.unit
    async def test_wrong_secret(self, verifier):
        token = create_access_token("42", secret="another-secret", algorithm="HS256")

        with pytest.raises(AuthenticationError):
            await verifier.verify(token)

    @pytest.mark.unit
    async def test_missing_subject(self, verifier):
        exp = datetime.now(timezone.utc) + timedelta(minutes=5)
        token = pyjwt.encode({"exp": int(exp.timestamp())}, SECRET, algorithm="HS256")

        with pytest.raises(AuthenticationError):
            await verifier.verify(token)

    @pytest.mark.unit
    async def test_missing_token(self, verifier):
        with pytest.raises(AuthenticationError):
            await verifier.verify(None)

    @pytest.mark.unit
    async def test_audience_and_issuer(self):
        verifier = TokenVerifier(secret=SECRET, audience="air-discovery", issuer="https://auth.example")
        good = create_access_token(
            "42", secret=SECRET, algorithm="HS256",
            extra_claims={"aud": "air-discovery", "iss": "https://auth.example"},
        )
        wrong = create_access_token(
            "42", secret=SECRET, algorithm="HS256",
            extra_claims={"aud": "someone-else", "iss": "https://auth.example"},
        )

        assert await verifier.verify(good) == "42"
        with pytest.raises(AuthenticationError):
            await verifier.verify(wrong)


class TestExtractToken:

    @pytest.mark.unit
    def test_header_wins_over_query(self):
        assert extract_token({"authorization": "Bearer abc"}, {"token": "xyz"}) == "abc"

    @pytest.mark.unit
    def test_scheme_is_case_insensitive(self):
        assert extract_token({"authorization": "bearer abc"}, {}) == "abc"

    @pytest.mark.unit
    def test_query_fallback(self):
        assert extract_token({}, {"token": " xyz "}) == "xyz"

    @pytest.mark.unit
    def test_nothing(self):
        assert extract_token({"authorization": "Basic dXNlcg=="}, {}) is None
        assert extract_token({}, {"token": "  "}) is None
