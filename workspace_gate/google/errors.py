"""
Normalisation of Google API failures.

Every failure an outbound call can produce (a googleapiclient ``HttpError``,
a JSON-shaped error dict, an exception carrying ``code``/``status`` attributes,
a dropped connection, a bare string) is first classified into one of the ``ErrorShape`` variants
below and then converted into a single ``NormalizedError`` carrying a
retryability verdict.

Usage:
    from .errors import normalize

    try:
        ...
    except Exception as e:
        info = normalize(e)
        if info.is_retryable:
            ...
"""

from __future__ import annotations

import errno
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from googleapiclient.errors import HttpError

from ..constants import (
    DEFAULT_HTTP_STATUS,
    MAX_HTTP_STATUS,
    MIN_HTTP_STATUS,
    RETRYABLE_REASONS,
    UNKNOWN_ERROR_MESSAGE,
)

logger = logging.getLogger(__name__)

_SCALAR_TYPES = (str, bytes, int, float, bool)

# "status 404", "code 500", checked before the plain left-to-right scan
_CONTEXTUAL_STATUS_RE = re.compile(r"\b(?:status|code)\s+(\d+)\b", re.IGNORECASE)
_INTEGER_RUN_RE = re.compile(r"\d+")
_RETRY_HINT_RES = (
    re.compile(r"retry after (\d+)", re.IGNORECASE),
    re.compile(r"retry in (\d+)", re.IGNORECASE),
)

_TRANSIENT_ERRNO_NAMES = (
    "ECONNRESET", "ECONNREFUSED", "ECONNABORTED", "ETIMEDOUT",
    "EHOSTUNREACH", "ENETUNREACH", "ENETDOWN", "EPIPE", "EAI_AGAIN",
)
_TRANSIENT_ERRNOS = frozenset(
    getattr(errno, name) for name in _TRANSIENT_ERRNO_NAMES if hasattr(errno, name)
)


@dataclass(frozen=True)
class NormalizedError:
    """Uniform view of an upstream failure."""

    http_status: int
    message: str
    status: str | None = None
    reason: str | None = None
    domain: str | None = None
    location: str | None = None
    location_type: str | None = None
    details: tuple[Mapping[str, Any], ...] = ()
    is_retryable: bool = False
    original_error: Any = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "http_status": self.http_status,
            "message": self.message,
            "status": self.status,
            "reason": self.reason,
            "domain": self.domain,
            "location": self.location,
            "location_type": self.location_type,
            "details": [dict(d) for d in self.details],
            "is_retryable": self.is_retryable,
        }


# ── Error shapes ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class NoError:
    """``None`` was raised or returned."""


@dataclass(frozen=True)
class ScalarError:
    value: Any


@dataclass(frozen=True)
class BareException:
    """A plain exception with no HTTP hints at all."""

    message: str | None


@dataclass(frozen=True)
class NetworkError:
    """The connection failed before any HTTP response arrived."""

    code: str
    message: str | None


@dataclass(frozen=True)
class StructuredApiError:
    """A Google ``{"error": {"code", "message", ...}}`` body."""

    error: Mapping[str, Any]


@dataclass(frozen=True)
class HttpResponseError:
    status: int
    status_text: str | None
    message: str | None


@dataclass(frozen=True)
class CodedError:
    code: int
    message: str | None


@dataclass(frozen=True)
class StatusError:
    status: int
    message: str | None


@dataclass(frozen=True)
class MessageOnlyError:
    message: str | None


ErrorShape = Union[
    NoError,
    ScalarError,
    BareException,
    NetworkError,
    StructuredApiError,
    HttpResponseError,
    CodedError,
    StatusError,
    MessageOnlyError,
]


# ── Field access helpers ────────────────────────────────────────────────────────


def _field(obj: Any, name: str) -> Any:
    """Read ``name`` from a mapping key or an attribute; None when absent."""
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


def _has_field(obj: Any, name: str) -> bool:
    if isinstance(obj, Mapping):
        return name in obj
    return hasattr(obj, name)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _in_http_range(value: int) -> bool:
    return MIN_HTTP_STATUS <= value <= MAX_HTTP_STATUS


def _message_of(obj: Any) -> str | None:
    message = _field(obj, "message")
    if isinstance(message, str):
        return message
    if isinstance(obj, BaseException):
        return str(obj) or None
    return None


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _network_error_code(error: Any) -> str | None:
    """Symbolic errno for a dropped or refused connection, else None."""
    if isinstance(error, OSError):
        name = errno.errorcode.get(error.errno) if error.errno is not None else None
        if isinstance(error, ConnectionError):
            return name or type(error).__name__
        if error.errno in _TRANSIENT_ERRNOS:
            return name
        return None
    code = _field(error, "code")
    if isinstance(code, str) and code.upper() in _TRANSIENT_ERRNO_NAMES:
        return code.upper()
    return None


def _parse_body(data: Any) -> Any:
    """Response bodies may arrive as raw JSON text."""
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if isinstance(data, str):
        try:
            return json.loads(data)
        except ValueError:
            return None
    return data


# ── Type guards ─────────────────────────────────────────────────────────────────


def is_http_error_like(error: Any) -> bool:
    """True for a non-null object carrying a string message."""
    if error is None or isinstance(error, _SCALAR_TYPES):
        return False
    return _message_of(error) is not None


def is_google_api_error_response(data: Any) -> bool:
    """True when ``data`` is a ``{"error": {"code": int, "message": str}}`` body."""
    if not isinstance(data, Mapping):
        return False
    error = data.get("error")
    return (
        isinstance(error, Mapping)
        and _is_int(error.get("code"))
        and isinstance(error.get("message"), str)
    )


# ── Classification ──────────────────────────────────────────────────────────────


def classify(error: Any) -> ErrorShape:
    """Map an arbitrary failure onto the first matching shape."""
    if error is None:
        return NoError()
    if isinstance(error, _SCALAR_TYPES):
        return ScalarError(error)

    message = _message_of(error)

    if isinstance(error, HttpError):
        body = _parse_body(error.content)
        if is_google_api_error_response(body):
            return StructuredApiError(body["error"])
        reason = _str_or_none(getattr(error, "reason", None))
        return HttpResponseError(
            status=int(error.resp.status),
            status_text=_str_or_none(getattr(error.resp, "reason", None)),
            message=reason or message,
        )

    response = _field(error, "response")
    if response is not None:
        body = _parse_body(_field(response, "data"))
        if is_google_api_error_response(body):
            return StructuredApiError(body["error"])
        status = _field(response, "status")
        if not _is_int(status):
            status = _field(response, "status_code")
        if _is_int(status):
            return HttpResponseError(
                status=status,
                status_text=_str_or_none(_field(response, "statusText")),
                message=message,
            )

    code = _field(error, "code")
    if isinstance(code, str) and code.strip().isdigit():
        code = int(code.strip())
    if _is_int(code) and _in_http_range(code):
        return CodedError(code, message)

    for name in ("status", "status_code"):
        status = _field(error, name)
        if _is_int(status):
            return StatusError(status, message)

    network_code = _network_error_code(error)
    if network_code is not None:
        return NetworkError(network_code, message)

    if isinstance(error, BaseException) and not any(
        _has_field(error, name) for name in ("response", "code", "status", "status_code")
    ):
        return BareException(message)

    return MessageOnlyError(message)


def parse_status_from_message(message: str) -> int | None:
    """
    Find an HTTP-looking status in free text.

    A number introduced by "status" or "code" wins; otherwise integer runs
    are scanned left to right and the first one in the HTTP range is used.
    Out-of-range runs are skipped, not fatal.
    """
    for match in _CONTEXTUAL_STATUS_RE.finditer(message):
        value = int(match.group(1))
        if _in_http_range(value):
            return value
    for match in _INTEGER_RUN_RE.finditer(message):
        value = int(match.group(0))
        if _in_http_range(value):
            return value
    return None


def is_retryable_status(http_status: int, reason: str | None = None) -> bool:
    """429 and 5xx are transient; some upstream reasons are too."""
    if http_status == 429 or 500 <= http_status <= 599:
        return True
    return reason in RETRYABLE_REASONS


def _from_structured(error: Mapping[str, Any], original: Any) -> NormalizedError:
    errors = error.get("errors")
    details: tuple[Mapping[str, Any], ...] = ()
    if isinstance(errors, (list, tuple)) and errors:
        details = tuple(errors)
    primary = details[0] if details else None
    reason = _str_or_none(_field(primary, "reason")) if primary is not None else None
    http_status = error["code"]
    return NormalizedError(
        http_status=http_status,
        message=error["message"],
        status=_str_or_none(error.get("status")),
        reason=reason,
        domain=_str_or_none(_field(primary, "domain")) if primary is not None else None,
        location=_str_or_none(_field(primary, "location")) if primary is not None else None,
        location_type=(
            _str_or_none(_field(primary, "locationType")) if primary is not None else None
        ),
        details=details,
        is_retryable=is_retryable_status(http_status, reason),
        original_error=original,
    )


def _from_shape(shape: ErrorShape, original: Any) -> NormalizedError:
    if isinstance(shape, NoError):
        return NormalizedError(
            http_status=DEFAULT_HTTP_STATUS,
            message=UNKNOWN_ERROR_MESSAGE,
            is_retryable=True,
            original_error=original,
        )

    if isinstance(shape, ScalarError):
        value = shape.value
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        return NormalizedError(
            http_status=DEFAULT_HTTP_STATUS,
            message=str(value),
            is_retryable=False,
            original_error=original,
        )

    if isinstance(shape, BareException):
        return NormalizedError(
            http_status=DEFAULT_HTTP_STATUS,
            message=shape.message or UNKNOWN_ERROR_MESSAGE,
            is_retryable=False,
            original_error=original,
        )

    if isinstance(shape, NetworkError):
        return NormalizedError(
            http_status=DEFAULT_HTTP_STATUS,
            message=shape.message or shape.code,
            is_retryable=True,
            original_error=original,
        )

    if isinstance(shape, StructuredApiError):
        return _from_structured(shape.error, original)

    if isinstance(shape, HttpResponseError):
        http_status = shape.status
        message = shape.message or shape.status_text or UNKNOWN_ERROR_MESSAGE
    elif isinstance(shape, CodedError):
        http_status = shape.code
        message = shape.message or UNKNOWN_ERROR_MESSAGE
    elif isinstance(shape, StatusError):
        http_status = shape.status
        message = shape.message or UNKNOWN_ERROR_MESSAGE
    else:
        parsed = parse_status_from_message(shape.message) if shape.message else None
        http_status = parsed if parsed is not None else DEFAULT_HTTP_STATUS
        message = shape.message or UNKNOWN_ERROR_MESSAGE

    return NormalizedError(
        http_status=http_status,
        message=message,
        is_retryable=is_retryable_status(http_status),
        original_error=original,
    )


def normalize(error: Any) -> NormalizedError:
    """Convert any failure into a ``NormalizedError``. Never raises."""
    try:
        return _from_shape(classify(error), error)
    except Exception as e:
        logger.warning("Could not normalise %s: %s", type(error).__name__, e)
        return NormalizedError(
            http_status=DEFAULT_HTTP_STATUS,
            message=_safe_str(error) or UNKNOWN_ERROR_MESSAGE,
            is_retryable=False,
            original_error=error,
        )


def _safe_str(value: Any) -> str:
    try:
        return str(value)
    except Exception:
        return ""


# ── Retry-after hints ───────────────────────────────────────────────────────────


def _response_headers(error: Any) -> Mapping[str, Any] | None:
    if isinstance(error, HttpError):
        return error.resp
    response = _field(error, "response")
    if response is None:
        return None
    headers = _field(response, "headers")
    return headers if isinstance(headers, Mapping) else None


def extract_retry_after_ms(error: Any) -> int | None:
    """
    Return an explicit retry delay carried by the error, in milliseconds.

    Looks at ``retry_after_ms`` (ms), then ``retry_after`` (seconds), then a
    ``Retry-After`` header on the HTTP response (seconds), and finally a
    "retry after N" or "retry in N" phrase in the message (seconds).
    """
    if error is None or isinstance(error, _SCALAR_TYPES):
        return None

    value = _field(error, "retry_after_ms")
    if _is_number(value) and value >= 0:
        return int(value)

    value = _field(error, "retry_after")
    if _is_number(value) and value >= 0:
        return int(value * 1000)

    headers = _response_headers(error) or {}
    for key, raw in headers.items():
        if isinstance(key, str) and key.lower() == "retry-after":
            try:
                seconds = float(str(raw).strip())
            except ValueError:
                break
            if seconds >= 0:
                return int(seconds * 1000)
            break

    message = _message_of(error)
    if message:
        for pattern in _RETRY_HINT_RES:
            match = pattern.search(message)
            if match:
                return int(match.group(1)) * 1000
    return None


# ── Error-kind detection ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class DetectionRule:
    """What marks an error as belonging to one family."""

    http_statuses: frozenset[int]
    upstream_statuses: frozenset[str]
    reasons: frozenset[str]
    message_keywords: tuple[str, ...]
    reason_substring: str | None = None


AUTHENTICATION_RULE = DetectionRule(
    http_statuses=frozenset({401, 403}),
    upstream_statuses=frozenset({"PERMISSION_DENIED", "UNAUTHENTICATED"}),
    reasons=frozenset({"forbidden", "unauthorized"}),
    message_keywords=(
        "authentication",
        "authorization",
        "credential",
        "token",
        "permission",
        "forbidden",
        "unauthorized",
        "access denied",
    ),
    reason_substring="auth",
)

RATE_LIMIT_RULE = DetectionRule(
    http_statuses=frozenset({429}),
    upstream_statuses=frozenset({"RESOURCE_EXHAUSTED"}),
    reasons=frozenset({
        "rateLimitExceeded",
        "userRateLimitExceeded",
        "quotaExceeded",
        "dailyLimitExceeded",
    }),
    message_keywords=(
        "rate limit",
        "quota exceeded",
        "too many requests",
        "daily limit",
        "api limit",
    ),
)

NOT_FOUND_RULE = DetectionRule(
    http_statuses=frozenset({404}),
    upstream_statuses=frozenset({"NOT_FOUND"}),
    reasons=frozenset({"notFound"}),
    message_keywords=("not found",),
)


def matches_rule(
    error: Any, rule: DetectionRule, normalized: NormalizedError | None = None
) -> bool:
    if error is None or isinstance(error, _SCALAR_TYPES):
        return False
    info = normalized if normalized is not None else normalize(error)

    if info.http_status in rule.http_statuses:
        return True
    if info.status and info.status in rule.upstream_statuses:
        return True
    if info.reason:
        if info.reason in rule.reasons:
            return True
        if rule.reason_substring and rule.reason_substring in info.reason:
            return True

    message = (_message_of(error) or "").lower()
    return any(keyword in message for keyword in rule.message_keywords)


def is_authentication_error(error: Any, normalized: NormalizedError | None = None) -> bool:
    return matches_rule(error, AUTHENTICATION_RULE, normalized)


def is_rate_limit_error(error: Any, normalized: NormalizedError | None = None) -> bool:
    return matches_rule(error, RATE_LIMIT_RULE, normalized)


def is_not_found_error(error: Any, normalized: NormalizedError | None = None) -> bool:
    return matches_rule(error, NOT_FOUND_RULE, normalized)
