"""
Error taxonomy tests.

Verifies:
- Upstream failures are classified into stable categories
- HTTP status codes and response bodies for each pipeline error
- User-facing messages never leak provider detail
"""
import pytest

from orchestration.errors import (
    Forbidden,
    NotFound,
    PipelineError,
    QuotaExceeded,
    UpstreamErrorCategory,
    UpstreamFailure,
    ValidationError,
    classify_upstream_error,
    user_message,
)


class TestUpstreamClassification:
    """Test classification by status first, text second."""

    @pytest.mark.parametrize("status,expected", [
        (401, UpstreamErrorCategory.AUTH_FAILED),
        (403, UpstreamErrorCategory.AUTH_FAILED),
        (429, UpstreamErrorCategory.RATE_LIMITED),
        (503, UpstreamErrorCategory.NETWORK_ERROR),
        (400, UpstreamErrorCategory.BAD_RESPONSE),
        (500, UpstreamErrorCategory.BAD_RESPONSE),
    ])
    def test_by_status(self, status, expected):
        assert classify_upstream_error(status, "whatever") == expected

    def test_by_text(self):
        assert classify_upstream_error(None, "Unauthorized") == UpstreamErrorCategory.AUTH_FAILED
        assert classify_upstream_error(None, "Rate limit exceeded") == UpstreamErrorCategory.RATE_LIMITED
        assert classify_upstream_error(None, "Connection refused") == UpstreamErrorCategory.NETWORK_ERROR
        assert classify_upstream_error(None, "JSON decode error") == UpstreamErrorCategory.BAD_RESPONSE

    def test_unknown(self):
        assert classify_upstream_error(None, "Something odd") == UpstreamErrorCategory.UNKNOWN_ERROR


class TestPipelineErrors:
    """Test status codes and serialized bodies."""

    @pytest.mark.parametrize("error_class,status", [
        (ValidationError, 400),
        (Forbidden, 403),
        (NotFound, 404),
    ])
    def test_status_codes(self, error_class, status):
        error = error_class("nope")
        assert isinstance(error, PipelineError)
        assert error.status_code == status
        assert error.to_dict()["error"] == "nope"

    def test_custom_code(self):
        assert ValidationError("bad", code="bad_source").to_dict() == {"error": "bad", "code": "bad_source"}

    def test_quota_exceeded_body(self):
        error = QuotaExceeded("Daily messages limit reached", event="message", scope="session")

        assert error.status_code == 429
        assert error.to_dict() == {
            "error": "Daily messages limit reached",
            "code": "quota_exceeded",
            "event": "message",
            "scope": "session",
        }

    def test_upstream_failure_hides_detail(self):
        error = UpstreamFailure(
            "Chat completion failed: invalid api key sk-123 (status 401)",
            category=UpstreamErrorCategory.AUTH_FAILED,
            status=401,
        )

        body = error.to_dict()
        assert error.status_code == 502
        assert body["category"] == UpstreamErrorCategory.AUTH_FAILED
        assert "sk-123" not in body["error"]
        assert body["error"] == user_message(UpstreamErrorCategory.AUTH_FAILED)

    def test_user_message_default(self):
        assert user_message(UpstreamErrorCategory.UNKNOWN_ERROR) == (
            "Something went wrong while processing your message."
        )
