from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

from agent_gateway.logging import get_logger
from agent_gateway.service.errors import (
    AuthenticationError,
    InvalidTokenError,
    TokenExpiredError,
)

logger = get_logger(__name__)

BEARER_FORMAT_MESSAGE = "Invalid Authorization header format. Use: Bearer <token>"
MISSING_HEADER_MESSAGE = "Missing Authorization header"


@dataclass(frozen=True)
class AuthIdentity:
    """Verified caller identity; lives for one request only."""

    subject: str
    claims: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "claims", MappingProxyType(dict(self.claims)))


def extract_bearer(header: Optional[str]) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header.

    The header must be exactly two space-separated parts with the literal
    ``Bearer`` scheme; anything else is rejected with a format message.
    """
    if not header:
        raise AuthenticationError(MISSING_HEADER_MESSAGE)
    parts = header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        raise AuthenticationError(BEARER_FORMAT_MESSAGE)
    return parts[1]


class TokenVerifier:
    """HS256 bearer-token verification against the shared secret."""

    def __init__(self, secret: str, *, clock_skew_seconds: int = 0) -> None:
        if not secret:
            raise ValueError("JWT_SECRET is required")
        self._secret = secret.encode()
        self._clock_skew_seconds = clock_skew_seconds

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self,
        subject: str,
        *,
        ttl_seconds: int = 3600,
        claims: Optional[dict[str, Any]] = None,
    ) -> str:
        """Mint a signed token for ``subject``; used by operator tooling and tests."""
        now = int(time.time())
        payload = {**(claims or {}), "sub": subject, "iat": now, "exp": now + ttl_seconds}
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> AuthIdentity:
        """Validate ``token`` and return the identity it asserts.

        Raises:
            TokenExpiredError: signature is valid but ``exp`` has passed
            InvalidTokenError: anything else wrong with the token
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError() from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError() from None
        # Reject "none" and asymmetric algorithms outright
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        # Compare bytes: str comparison rejects non-ASCII input with TypeError
        expected = self._sign(f"{header_b64}.{payload_b64}").encode("ascii")
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8")):
            raise InvalidTokenError()

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError() from None
        if not isinstance(payload, dict):
            raise InvalidTokenError()

        now = time.time()
        exp = payload.get("exp")
        if exp is not None:
            try:
                exp_ts = float(exp)
            except (TypeError, ValueError):
                raise InvalidTokenError() from None
            if exp_ts <= now - self._clock_skew_seconds:
                raise TokenExpiredError()
        nbf = payload.get("nbf")
        if nbf is not None:
            try:
                if float(nbf) > now + self._clock_skew_seconds:
                    raise InvalidTokenError()
            except (TypeError, ValueError):
                raise InvalidTokenError() from None

        subject = payload.get("sub") or payload.get("openid")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError()
        return AuthIdentity(subject=subject, claims=payload)

    def verify_optional(self, token: Optional[str]) -> Optional[AuthIdentity]:
        """Like :meth:`verify` but returns ``None`` instead of raising."""
        if not token:
            return None
        try:
            return self.verify(token)
        except AuthenticationError as exc:
            logger.debug("optional_auth_ignored", reason=exc.message)
            return None

    def authenticate(self, authorization: Optional[str]) -> AuthIdentity:
        """Parse the ``Authorization`` header and verify the bearer token."""
        return self.verify(extract_bearer(authorization))

    def authenticate_optional(self, authorization: Optional[str]) -> Optional[AuthIdentity]:
        try:
            token = extract_bearer(authorization)
        except AuthenticationError:
            return None
        return self.verify_optional(token)
