"""
Error taxonomy for the chat pipeline.

PipelineError subclasses map one-to-one onto HTTP status codes at the server
boundary. Upstream (model gateway) failures are classified into stable
categories so callers never see provider internals.
"""
from typing import Any, Dict, Optional


class UpstreamErrorCategory:
    """Stable upstream error categories."""

    AUTH_FAILED = "upstream.auth_failed"
    RATE_LIMITED = "upstream.rate_limited"
    NETWORK_ERROR = "upstream.network_error"
    BAD_RESPONSE = "upstream.bad_response"
    UNKNOWN_ERROR = "upstream.unknown_error"


class PipelineError(Exception):
    """Base class for errors surfaced to HTTP callers."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(PipelineError):
    status_code = 400
    code = "validation_error"


class NotFound(PipelineError):
    status_code = 404
    code = "not_found"


class Forbidden(PipelineError):
    status_code = 403
    code = "forbidden"


class QuotaExceeded(PipelineError):
    """Raised when the usage limiter denies a metered action."""

    status_code = 429
    code = "quota_exceeded"

    def __init__(self, message: str, event: str, scope: Optional[str]):
        super().__init__(message)
        self.event = event
        self.scope = scope

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["event"] = self.event
        result["scope"] = self.scope
        return result


class UpstreamFailure(PipelineError):
    """A planner, specialist, evaluator or realtime call failed."""

    status_code = 502
    code = "upstream_failure"

    def __init__(
        self,
        message: str,
        category: str = UpstreamErrorCategory.UNKNOWN_ERROR,
        status: Optional[int] = None,
    ):
        super().__init__(message)
        self.category = category
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        return {"error": user_message(self.category), "code": self.code, "category": self.category}


def classify_upstream_error(status: Optional[int], detail: str = "") -> str:
    """
    Classify an upstream failure into a stable category.

    Uses the HTTP status when present, otherwise falls back to the error text.
    """
    if status is not None:
        if status in (401, 403):
            return UpstreamErrorCategory.AUTH_FAILED
        if status == 429:
            return UpstreamErrorCategory.RATE_LIMITED
        if status in (502, 503, 504):
            return UpstreamErrorCategory.NETWORK_ERROR
        if 400 <= status < 600:
            return UpstreamErrorCategory.BAD_RESPONSE

    text = detail.lower()
    if "unauthorized" in text or "auth" in text:
        return UpstreamErrorCategory.AUTH_FAILED
    if "rate limit" in text or "throttle" in text:
        return UpstreamErrorCategory.RATE_LIMITED
    if "timeout" in text or "connection" in text or "network" in text:
        return UpstreamErrorCategory.NETWORK_ERROR
    if "json" in text or "decode" in text:
        return UpstreamErrorCategory.BAD_RESPONSE
    return UpstreamErrorCategory.UNKNOWN_ERROR


def user_message(category: str) -> str:
    """User-facing message for an upstream error category."""
    messages = {
        UpstreamErrorCategory.RATE_LIMITED: "The assistant is busy right now. Please try again in a moment.",
        UpstreamErrorCategory.NETWORK_ERROR: "The assistant could not be reached. Please try again.",
        UpstreamErrorCategory.AUTH_FAILED: "The assistant is not available right now.",
    }
    return messages.get(category, "Something went wrong while processing your message.")
