import base64
import json
import time

import pytest

from agent_gateway.service.auth import (
    BEARER_FORMAT_MESSAGE,
    MISSING_HEADER_MESSAGE,
    TokenVerifier,
    extract_bearer,
)
from agent_gateway.service.errors import (
    AuthenticationError,
    InvalidTokenError,
    TokenExpiredError,
)


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _forge(verifier: TokenVerifier, header: dict, payload: dict) -> str:
    signing_input = f"{_segment(header)}.{_segment(payload)}"
    return f"{signing_input}.{verifier._sign(signing_input)}"


def test_issue_and_verify_round_trip(verifier):
    token = verifier.issue("user-1", claims={"role": "dev"})
    identity = verifier.verify(token)
    assert identity.subject == "user-1"
    assert identity.claims["role"] == "dev"


def test_claims_are_read_only(verifier):
    identity = verifier.verify(verifier.issue("user-1"))
    with pytest.raises(TypeError):
        identity.claims["sub"] = "someone-else"


def test_expired_token_reports_expiry(verifier):
    token = verifier.issue("user-1", ttl_seconds=-10)
    with pytest.raises(TokenExpiredError) as exc_info:
        verifier.verify(token)
    assert exc_info.value.message == "Token expired"
    assert exc_info.value.status_code == 401


def test_wrong_secret_is_invalid(verifier):
    other = TokenVerifier("a-different-secret")
    with pytest.raises(InvalidTokenError) as exc_info:
        verifier.verify(other.issue("user-1"))
    assert exc_info.value.message == "Invalid token"


def test_tampered_payload_is_invalid(verifier):
    header, _, signature = verifier.issue("user-1").split(".")
    forged_payload = _segment({"sub": "admin", "exp": int(time.time()) + 3600})
    with pytest.raises(InvalidTokenError):
        verifier.verify(f"{header}.{forged_payload}.{signature}")


def test_alg_none_rejected(verifier):
    token = f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{_segment({'sub': 'user-1'})}."
    with pytest.raises(InvalidTokenError):
        verifier.verify(token)


@pytest.mark.parametrize(
    "token",
    [
        "",
        "abc",
        "a.b",
        "a.b.c.d",
        "!!!.###.$$$",
        "eyJhbGciOiJIUzI1NiJ9.e30.\u00e9",
        "\u00e9.e30.sig",
    ],
)
def test_malformed_tokens_invalid(verifier, token):
    with pytest.raises(InvalidTokenError):
        verifier.verify(token)


def test_expired_with_bad_signature_is_invalid_not_expired(verifier):
    other = TokenVerifier("a-different-secret")
    with pytest.raises(InvalidTokenError):
        verifier.verify(other.issue("user-1", ttl_seconds=-10))


def test_openid_claim_used_when_sub_missing(verifier):
    token = _forge(
        verifier,
        {"alg": "HS256", "typ": "JWT"},
        {"openid": "wx-openid-42", "exp": int(time.time()) + 60},
    )
    assert verifier.verify(token).subject == "wx-openid-42"


def test_token_without_subject_invalid(verifier):
    token = _forge(verifier, {"alg": "HS256"}, {"exp": int(time.time()) + 60})
    with pytest.raises(InvalidTokenError):
        verifier.verify(token)


def test_not_yet_valid_token_invalid(verifier):
    token = _forge(
        verifier,
        {"alg": "HS256"},
        {"sub": "user-1", "nbf": int(time.time()) + 3600},
    )
    with pytest.raises(InvalidTokenError):
        verifier.verify(token)


def test_empty_secret_rejected():
    with pytest.raises(ValueError):
        TokenVerifier("")


class TestExtractBearer:
    def test_valid_header(self):
        assert extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"

    @pytest.mark.parametrize("header", [None, ""])
    def test_missing_header(self, header):
        with pytest.raises(AuthenticationError) as exc_info:
            extract_bearer(header)
        assert exc_info.value.message == MISSING_HEADER_MESSAGE

    @pytest.mark.parametrize(
        "header",
        ["Token abc", "Bearer", "Bearer ", "bearer abc", "Bearer a b", "abc"],
    )
    def test_bad_format(self, header):
        with pytest.raises(AuthenticationError) as exc_info:
            extract_bearer(header)
        assert exc_info.value.message == BEARER_FORMAT_MESSAGE


class TestOptionalVerification:
    def test_valid_token_identifies(self, verifier, token):
        identity = verifier.authenticate_optional(f"Bearer {token}")
        assert identity is not None
        assert identity.subject == "user-123"

    def test_missing_header_is_anonymous(self, verifier):
        assert verifier.authenticate_optional(None) is None

    def test_bad_token_is_anonymous(self, verifier):
        assert verifier.verify_optional("not-a-token") is None

    def test_expired_token_is_anonymous(self, verifier):
        assert verifier.verify_optional(verifier.issue("u", ttl_seconds=-1)) is None
