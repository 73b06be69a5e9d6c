"""Provider errors and transient-failure classification.

Providers raise ``LLMError`` carrying the HTTP status and provider error code
so retry policies can decide what is worth another attempt. Classification
also works on foreign exceptions by reading ``status``, ``status_code``,
``code`` and the message text.
"""

from __future__ import annotations

from typing import Any

from franz_common.exceptions import OperationError

RETRYABLE_CODES = {
    "rate_limit_exceeded",
    "quota_exceeded",
    "service_unavailable",
    "network_error",
    "ECONNRESET",
    "ECONNREFUSED",
    "timeout",
    "DEADLINE_EXCEEDED",
    "UNAVAILABLE",
    "RESOURCE_EXHAUSTED",
}

NON_RETRYABLE_CODES = {
    "unauthenticated",
    "unauthorized",
    "permission_denied",
    "forbidden",
    "invalid_request",
    "bad_request",
    "INVALID_ARGUMENT",
    "PERMISSION_DENIED",
    "UNAUTHENTICATED",
}


class LLMError(OperationError):
    """Raised when a provider call fails.

    Attributes:
        status_code: HTTP status, when the failure came from an HTTP response
        code: Provider error code (e.g. ``RESOURCE_EXHAUSTED``)
        provider: Provider name
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        provider: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.code = code
        self.provider = provider
        super().__init__(
            message,
            context={"status_code": status_code, "code": code, "provider": provider},
        )


def _error_fields(error: BaseException) -> tuple[int, str, str]:
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if not isinstance(status, int):
        status = 0
    code = getattr(error, "code", None)
    if isinstance(code, int):
        status = status or code
        code = None
    return status, str(code or ""), str(error)


def is_rate_limit_error(error: BaseException) -> bool:
    """True for 429s and rate-limit or quota messages."""
    status, code, message = _error_fields(error)
    lowered = message.lower()
    return (
        status == 429
        or code in ("rate_limit_exceeded", "RESOURCE_EXHAUSTED")
        or "rate limit" in lowered
        or "quota" in lowered
    )


def is_retryable_error(error: BaseException) -> bool:
    """Decide whether a failed AI call is worth retrying.

    Rate limits, quota errors, 5xx responses, network failures and timeouts
    are retried. Other 4xx responses, auth and permission failures, invalid
    requests and unrecognized errors are not.
    """
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    status, code, message = _error_fields(error)
    lowered = message.lower()

    if code in NON_RETRYABLE_CODES:
        return False
    if status == 429 or code in RETRYABLE_CODES:
        return True
    if 500 <= status < 600:
        return True
    if 400 <= status < 500:
        return False
    if "quota" in lowered or "timeout" in lowered or "timed out" in lowered:
        return True
    if "deadline_exceeded" in lowered or "failed to fetch" in lowered:
        return True
    if "temporarily unavailable" in lowered or "try again" in lowered:
        return True
    return False


def get_retry_reason(error: BaseException | None) -> str:
    """Human-readable reason for a failed attempt."""
    if error is None:
        return "Unknown error"

    status, code, message = _error_fields(error)
    lowered = message.lower()

    if status == 429 or code in ("rate_limit_exceeded", "RESOURCE_EXHAUSTED"):
        return "Rate limit exceeded"
    if code == "quota_exceeded" or "quota" in lowered:
        return "Quota exceeded"
    if status == 503 or code == "service_unavailable":
        return "Service unavailable"
    if 500 <= status < 600:
        return f"Server error ({status})"
    if isinstance(error, ConnectionError) or code in ("network_error", "ECONNRESET", "ECONNREFUSED"):
        return "Network error"
    if isinstance(error, TimeoutError) or code == "timeout" or "timeout" in lowered:
        return "Request timeout"
    if code in ("DEADLINE_EXCEEDED", "UNAVAILABLE"):
        return "Google AI API unavailable"
    if "failed to fetch" in lowered:
        return "Network fetch failed"
    return message[:100] or "Unknown error"


def describe_error(error: BaseException) -> dict[str, Any]:
    """Structured summary of an error for logs."""
    status, code, message = _error_fields(error)
    return {
        "type": type(error).__name__,
        "message": message,
        "status": status or None,
        "code": code or None,
    }
