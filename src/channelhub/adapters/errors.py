"""Classification of provider failures into a retry-aware taxonomy."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
from prometheus_client import Counter

logger = logging.getLogger(__name__)

ADAPTER_ERRORS = Counter(
    "channel_adapter_errors_total",
    "Classified errors returned by channel adapters.",
    ["platform", "type"],
)

MESSAGING_WINDOW_MESSAGE = (
    "This conversation is outside the 24-hour messaging window. The customer has to "
    "write to you again before you can reply."
)


class ErrorType(str, Enum):
    VALIDATION = "VALIDATION"
    NETWORK = "NETWORK"
    API = "API"
    AUTHENTICATION = "AUTHENTICATION"
    RATE_LIMIT = "RATE_LIMIT"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    THREAD_NOT_FOUND = "THREAD_NOT_FOUND"
    MESSAGE_TOO_LONG = "MESSAGE_TOO_LONG"
    UNKNOWN = "UNKNOWN"


CREDENTIAL_FAILURES = frozenset(
    {ErrorType.AUTHENTICATION, ErrorType.INVALID_CREDENTIALS, ErrorType.PERMISSION_DENIED}
)


@dataclass(slots=True)
class AdapterError:
    """Structured, retry-annotated failure returned by adapters."""

    type: ErrorType
    message: str
    retryable: bool = False
    status_code: int | None = None
    original_error: Any | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }
        if self.status_code is not None:
            payload["status_code"] = self.status_code
        return payload


def adapter_error(
    error_type: ErrorType,
    message: str,
    *,
    retryable: bool = False,
    status_code: int | None = None,
    original_error: Any | None = None,
    details: Mapping[str, Any] | None = None,
) -> AdapterError:
    return AdapterError(
        type=error_type,
        message=message,
        retryable=retryable,
        status_code=status_code,
        original_error=original_error,
        details=dict(details or {}),
    )


def is_credential_failure(error: AdapterError | None) -> bool:
    return error is not None and error.type in CREDENTIAL_FAILURES and not error.retryable


_STATUS_TABLE: dict[int, tuple[ErrorType, bool, str]] = {
    400: (ErrorType.VALIDATION, False, "request rejected as invalid"),
    401: (ErrorType.AUTHENTICATION, False, "invalid or expired access token"),
    403: (ErrorType.PERMISSION_DENIED, False, "insufficient permissions for this operation"),
    429: (ErrorType.RATE_LIMIT, True, "rate limit exceeded; retry later"),
    500: (ErrorType.API, True, "provider internal error"),
    502: (ErrorType.API, True, "provider gateway error"),
    503: (ErrorType.API, True, "provider temporarily unavailable"),
    504: (ErrorType.API, True, "provider gateway timeout"),
}


def classify_status(
    status_code: int,
    platform: str,
    context: str,
    *,
    body: Any | None = None,
    original_error: Any | None = None,
) -> AdapterError:
    """Map an HTTP status to the taxonomy."""

    error_type, retryable, message = _STATUS_TABLE.get(
        status_code, (ErrorType.API, status_code >= 500, f"provider returned HTTP {status_code}")
    )
    details: dict[str, Any] = {"platform": platform, "context": context, "status": status_code}
    provider_message = _provider_message(body)
    if provider_message:
        details["provider_message"] = provider_message
    return adapter_error(
        error_type,
        f"{platform} {context}: {message}",
        retryable=retryable,
        status_code=status_code,
        original_error=original_error,
        details=details,
    )


def _provider_message(body: Any) -> str | None:
    if isinstance(body, Mapping):
        error = body.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
        if body.get("message"):
            return str(body["message"])
    return None


def classify_meta_error(
    body: Any,
    platform: str,
    context: str,
    *,
    status_code: int | None = None,
) -> AdapterError:
    """Translate Graph API ``error.code`` values into the taxonomy."""

    error = body.get("error") if isinstance(body, Mapping) else None
    if not isinstance(error, Mapping):
        if status_code is not None:
            return classify_status(status_code, platform, context, body=body)
        return adapter_error(
            ErrorType.UNKNOWN,
            f"{platform} {context}: unrecognised error response",
            details={"platform": platform, "context": context},
        )

    code = error.get("code")
    try:
        code = int(code) if code is not None else None
    except (TypeError, ValueError):
        code = None
    provider_message = str(error.get("message") or "unknown error")
    details: dict[str, Any] = {
        "platform": platform,
        "context": context,
        "code": code,
        "subcode": error.get("error_subcode"),
        "fbtrace_id": error.get("fbtrace_id"),
        "provider_message": provider_message,
    }
    if status_code is not None:
        details["status"] = status_code

    def build(error_type: ErrorType, message: str, retryable: bool = False) -> AdapterError:
        return adapter_error(
            error_type,
            message,
            retryable=retryable,
            status_code=status_code,
            original_error=dict(error),
            details=details,
        )

    if code in (190, 463):
        return build(
            ErrorType.AUTHENTICATION, "access token expired or invalid; reconnect the channel"
        )
    if code == 368:
        return build(ErrorType.RATE_LIMIT, "temporarily blocked for policy violations", True)
    if code == 4:
        return build(ErrorType.QUOTA_EXCEEDED, "application request limit reached", True)
    if code == 100:
        return build(ErrorType.VALIDATION, f"invalid parameter: {provider_message}")
    if code == 10:
        details["user_message"] = MESSAGING_WINDOW_MESSAGE
        return build(ErrorType.PERMISSION_DENIED, MESSAGING_WINDOW_MESSAGE)
    if code is not None and 200 <= code <= 299:
        return build(ErrorType.PERMISSION_DENIED, f"permission missing: {provider_message}")
    if status_code is not None and status_code in _STATUS_TABLE:
        mapped = classify_status(status_code, platform, context, body=body)
        mapped.details.update(details)
        mapped.original_error = dict(error)
        return mapped
    return build(
        ErrorType.API,
        f"{platform} API error: {provider_message}",
        status_code is not None and status_code >= 500,
    )


def classify(raw_error: Any, platform: str, context: str) -> AdapterError:
    """Deterministically classify any failure raised or returned by a provider call."""

    if isinstance(raw_error, AdapterError):
        return raw_error

    if isinstance(raw_error, httpx.TimeoutException):
        return adapter_error(
            ErrorType.NETWORK,
            f"{platform} {context}: request timed out",
            retryable=True,
            original_error=raw_error,
            details={"platform": platform, "context": context, "timeout": True},
        )
    if isinstance(raw_error, httpx.TransportError) or (
        isinstance(raw_error, TypeError) and "fetch" in str(raw_error)
    ):
        return adapter_error(
            ErrorType.NETWORK,
            f"{platform} {context}: network error contacting provider",
            retryable=True,
            original_error=raw_error,
            details={"platform": platform, "context": context, "error": str(raw_error)},
        )

    response: httpx.Response | None = None
    if isinstance(raw_error, httpx.HTTPStatusError):
        response = raw_error.response
    elif isinstance(raw_error, httpx.Response):
        response = raw_error
    if response is not None:
        return classify_status(
            response.status_code,
            platform,
            context,
            body=_safe_json(response),
            original_error=raw_error,
        )

    status_code = getattr(raw_error, "status_code", None)
    if isinstance(status_code, int):
        return classify_status(status_code, platform, context, original_error=raw_error)

    return adapter_error(
        ErrorType.UNKNOWN,
        f"{platform} {context}: {raw_error}",
        original_error=raw_error,
        details={"platform": platform, "context": context},
    )


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def log_adapter_error(
    platform: str,
    operation: str,
    error: AdapterError,
    *,
    channel_id: str | None = None,
    **context: Any,
) -> None:
    """Transient failures are warnings; everything else is an error."""

    ADAPTER_ERRORS.labels(platform.lower(), error.type.value).inc()
    extra = {
        "platform": platform,
        "operation": operation,
        "error_type": error.type.value,
        "retryable": error.retryable,
        "status_code": error.status_code,
        "channel_id": channel_id,
        **context,
    }
    if error.type in (ErrorType.NETWORK, ErrorType.API):
        logger.warning(error.message, extra=extra)
    else:
        logger.error(error.message, extra=extra)
