"""Tests for the shared error envelope.

Every failure renders as:
{
    "error": "<status label>",
    "message": "<human readable>",
    "statusCode": <int>,
    "timestamp": "<ISO-8601 UTC>",
    "retryAfter": <ms, 429 only>,
    "details": <optional>
}
"""

import json
import re

import pytest

from agent_gateway.api.error_handling import (
    _STATUS_TO_ERROR,
    _error_label_for_status,
    error_response,
)
from agent_gateway.api.schemas import ErrorResponse, utc_timestamp
from agent_gateway.service.errors import (
    BadRequestError,
    InvalidTokenError,
    NotImplementedFeatureError,
    RateLimitedError,
    ServiceError,
    TokenExpiredError,
    UpstreamError,
)

TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")


class TestErrorResponseModel:
    def test_wire_names_are_camel_case(self):
        body = ErrorResponse(error="Too Many Requests", message="slow down", status_code=429, retry_after=1500)
        wire = body.to_wire()
        assert wire["statusCode"] == 429
        assert wire["retryAfter"] == 1500
        assert "status_code" not in wire

    def test_optional_fields_omitted(self):
        wire = ErrorResponse(error="Not Found", message="nope", status_code=404).to_wire()
        assert set(wire) == {"error", "message", "statusCode", "timestamp"}

    def test_timestamp_format(self):
        assert TIMESTAMP_RE.match(utc_timestamp())
        assert TIMESTAMP_RE.match(ErrorResponse(error="x", message="y", status_code=400).timestamp)


class TestErrorResponseHelper:
    def test_label_from_status(self):
        response = error_response(404, "Route GET /x not found")
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["error"] == "Not Found"
        assert body["statusCode"] == 404

    def test_retry_after_and_headers(self):
        response = error_response(429, "slow", retry_after_ms=2000, headers={"Retry-After": "2"})
        body = json.loads(response.body)
        assert body["retryAfter"] == 2000
        assert response.headers["Retry-After"] == "2"

    def test_details_included(self):
        response = error_response(400, "bad", details={"index": 1})
        assert json.loads(response.body)["details"] == {"index": 1}

    @pytest.mark.parametrize("status,label", sorted(_STATUS_TO_ERROR.items()))
    def test_known_labels(self, status, label):
        assert _error_label_for_status(status) == label

    def test_unknown_status_label(self):
        assert _error_label_for_status(418) == "Error"


class TestServiceErrors:
    def test_status_and_labels(self):
        assert (BadRequestError("x").status_code, BadRequestError("x").error) == (400, "Bad Request")
        assert InvalidTokenError().status_code == 401
        assert TokenExpiredError().error == "Unauthorized"
        assert NotImplementedFeatureError("x").status_code == 501
        assert UpstreamError("x").status_code == 500

    def test_overrides(self):
        exc = ServiceError("teapot", status_code=418, error="I'm a teapot", detail={"a": 1})
        assert exc.status_code == 418
        assert exc.error == "I'm a teapot"
        assert exc.detail == {"a": 1}
        # class defaults untouched
        assert ServiceError.status_code == 400

    def test_rate_limited_message_rounds_seconds(self):
        assert RateLimitedError(1400).message == "Rate limit exceeded. Try again in 1 seconds."
        assert RateLimitedError(59_600).message == "Rate limit exceeded. Try again in 60 seconds."
        assert RateLimitedError(59_600).retry_after_ms == 59_600
