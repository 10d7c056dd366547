from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx


QUOTA_HTTP_STATUS = 429
PLATFORM_THROTTLE_CODES = frozenset({80004, 2446079})


@dataclass(frozen=True)
class ErrorClassification:
    error_code: str
    reason_code: str
    retryable: bool
    severity: str


@dataclass(frozen=True)
class ErrorDetails:
    message: str
    status_code: int | None = None
    code: int | None = None
    platform_message: str | None = None


class ProviderError(Exception):
    def __init__(
        self,
        message: str,
        *,
        error_code: str,
        reason_code: str,
        retryable: bool,
        severity: str,
        upstream_payload: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.reason_code = reason_code
        self.retryable = retryable
        self.severity = severity
        self.upstream_payload = upstream_payload
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    def __init__(
        self,
        message: str = "Platform request timed out.",
        *,
        upstream_payload: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            error_code="provider_timeout",
            reason_code="timeout",
            retryable=True,
            severity="error",
            upstream_payload=upstream_payload,
            status_code=status_code,
        )


class ProviderConnectionError(ProviderError):
    def __init__(self, message: str = "Platform connection failed.", *, upstream_payload: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            error_code="provider_connection",
            reason_code="connection_error",
            retryable=True,
            severity="error",
            upstream_payload=upstream_payload,
        )


class ProviderRateLimitError(ProviderError):
    def __init__(
        self,
        message: str = "Platform rate-limited request.",
        *,
        upstream_payload: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            error_code="provider_rate_limited",
            reason_code="rate_limited",
            retryable=True,
            severity="warning",
            upstream_payload=upstream_payload,
            status_code=status_code,
        )


class ProviderAuthError(ProviderError):
    def __init__(
        self,
        message: str = "Platform authentication failed.",
        *,
        upstream_payload: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            error_code="provider_auth",
            reason_code="auth_failed",
            retryable=False,
            severity="critical",
            upstream_payload=upstream_payload,
            status_code=status_code,
        )


class PlatformRejectionError(ProviderError):
    """Business-logic error reported by the platform, either under a 4xx or embedded in a 2xx body."""

    def __init__(
        self,
        message: str = "Platform rejected the operation.",
        *,
        upstream_payload: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            error_code="platform_rejection",
            reason_code="rejected",
            retryable=False,
            severity="error",
            upstream_payload=upstream_payload,
            status_code=status_code,
        )


class ProviderResponseFormatError(ProviderError):
    def __init__(self, message: str = "Platform response format is invalid.", *, upstream_payload: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            error_code="provider_response_invalid",
            reason_code="response_invalid",
            retryable=False,
            severity="error",
            upstream_payload=upstream_payload,
        )


class ProviderDependencyError(ProviderError):
    def __init__(
        self,
        message: str = "Platform dependency unavailable.",
        *,
        upstream_payload: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(
            message,
            error_code="provider_dependency_unavailable",
            reason_code="dependency_unavailable",
            retryable=True,
            severity="error",
            upstream_payload=upstream_payload,
            status_code=status_code,
        )


class ProviderCircuitOpenError(ProviderError):
    def __init__(
        self,
        message: str = "Platform circuit breaker is open.",
        *,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(
            message,
            error_code="provider_circuit_open",
            reason_code="circuit_open",
            retryable=False,
            severity="warning",
        )
        self.retry_after_seconds = retry_after_seconds


class BatchValidationError(ProviderError):
    def __init__(self, message: str) -> None:
        super().__init__(
            message,
            error_code="batch_invalid",
            reason_code="validation_failed",
            retryable=False,
            severity="error",
        )


class OperationValidationError(ValueError):
    pass


def _platform_error_object(payload: Any) -> dict[str, Any] | None:
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict):
        return error
    return None


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def has_quota_signature(status_code: int | None, payload: Any) -> bool:
    if status_code == QUOTA_HTTP_STATUS:
        return True
    error = _platform_error_object(payload)
    if error is None:
        return False
    code = _as_int(error.get("code"))
    subcode = _as_int(error.get("error_subcode"))
    return code in PLATFORM_THROTTLE_CODES or subcode in PLATFORM_THROTTLE_CODES


def is_quota_error(exc: BaseException) -> bool:
    if isinstance(exc, ProviderRateLimitError):
        return True
    if isinstance(exc, ProviderError):
        return has_quota_signature(exc.status_code, exc.upstream_payload)
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        return has_quota_signature(exc.response.status_code, _safe_json(exc.response))
    return False


def raise_for_platform_error(status_code: int, payload: Any) -> None:
    body = payload if isinstance(payload, dict) else None
    error = _platform_error_object(payload) or {}
    platform_message = error.get("message")
    message = f"Platform request failed with status {status_code}."
    if platform_message:
        message = f"{message} {platform_message}"
    if has_quota_signature(status_code, payload):
        raise ProviderRateLimitError(message, upstream_payload=body, status_code=status_code)
    if status_code in {401, 403}:
        raise ProviderAuthError(message, upstream_payload=body, status_code=status_code)
    if status_code in {408, 504}:
        raise ProviderTimeoutError(message, upstream_payload=body, status_code=status_code)
    if 400 <= status_code < 500:
        raise PlatformRejectionError(message, upstream_payload=body, status_code=status_code)
    raise ProviderDependencyError(message, upstream_payload=body, status_code=status_code)


def classification_from_exception(exc: BaseException) -> ErrorClassification:
    if isinstance(exc, ProviderError):
        return ErrorClassification(
            error_code=exc.error_code,
            reason_code=exc.reason_code,
            retryable=exc.retryable,
            severity=exc.severity,
        )
    if isinstance(exc, TimeoutError | httpx.TimeoutException):
        return ErrorClassification("provider_timeout", "timeout", True, "error")
    if isinstance(exc, ConnectionError | httpx.ConnectError):
        return ErrorClassification("provider_connection", "connection_error", True, "error")
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code if exc.response is not None else 0
        if is_quota_error(exc):
            return ErrorClassification("provider_rate_limited", "rate_limited", True, "warning")
        if status_code == 401 or status_code == 403:
            return ErrorClassification("provider_auth", "auth_failed", False, "critical")
        if 400 <= status_code < 500:
            return ErrorClassification("platform_rejection", "rejected", False, "error")
        if status_code >= 500:
            return ErrorClassification("provider_dependency_unavailable", "dependency_unavailable", True, "error")
    if isinstance(exc, httpx.HTTPError):
        return ErrorClassification("provider_dependency_unavailable", "dependency_unavailable", True, "error")
    return ErrorClassification("provider_internal_error", "internal_error", False, "critical")


def classify_provider_error(exc: BaseException) -> ProviderError:
    if isinstance(exc, ProviderError):
        return exc
    classification = classification_from_exception(exc)
    status_code = None
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        status_code = exc.response.status_code
    return ProviderError(
        str(exc) or classification.reason_code,
        error_code=classification.error_code,
        reason_code=classification.reason_code,
        retryable=classification.retryable,
        severity=classification.severity,
        status_code=status_code,
    )


def describe_error(exc: BaseException) -> ErrorDetails:
    status_code: int | None = None
    payload: Any = None
    if isinstance(exc, ProviderError):
        status_code = exc.status_code
        payload = exc.upstream_payload
    elif isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        status_code = exc.response.status_code
        payload = _safe_json(exc.response)

    message = str(exc) or type(exc).__name__
    code = None
    platform_message = None
    error = _platform_error_object(payload)
    if error is not None:
        platform_message = str(error.get("message") or error)
        code = _as_int(error.get("code")) or _as_int(error.get("error_subcode"))

    if status_code == QUOTA_HTTP_STATUS:
        message = "Rate limit exceeded (429) - API throttled"
    elif error is not None and _as_int(error.get("code")) == 80004:
        message = "Rate limit error (code 80004) - API throttled"
    elif error is not None and 2446079 in {_as_int(error.get("code")), _as_int(error.get("error_subcode"))}:
        message = "Application request limit reached (2446079)"
    return ErrorDetails(message=message, status_code=status_code, code=code, platform_message=platform_message)


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
