from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from .retry import parse_retry_after


# Body fields searched for a human-readable message, highest priority first.
MESSAGE_FIELDS: tuple[str, ...] = ("message", "error", "detail", "error_description")

NETWORK_ERROR_CODES = frozenset({"TIMEOUT", "CONNECT_ERROR", "NETWORK_ERROR"})
RETRYABLE_STATUSES = frozenset({502, 503, 504})


@dataclass(frozen=True)
class RateLimitInfo:
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset: Optional[int] = None


def _header_int(headers: httpx.Headers, *names: str) -> Optional[int]:
    for name in names:
        raw = headers.get(name)
        if raw is None:
            continue
        try:
            return int(float(raw.strip()))
        except ValueError:
            continue
    return None


def _rate_limit_from_headers(headers: httpx.Headers) -> Optional[RateLimitInfo]:
    info = RateLimitInfo(
        limit=_header_int(headers, "x-ratelimit-limit", "ratelimit-limit"),
        remaining=_header_int(headers, "x-ratelimit-remaining", "ratelimit-remaining"),
        reset=_header_int(headers, "x-ratelimit-reset", "ratelimit-reset"),
    )
    if info.limit is None and info.remaining is None and info.reset is None:
        return None
    return info


def decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _extract_message(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        for field in MESSAGE_FIELDS:
            value = body.get(field)
            if isinstance(value, str) and value.strip():
                return value
        return None
    if isinstance(body, str) and body.strip():
        return body
    return None


def _request_id_of(source: Any) -> Optional[str]:
    # httpx raises RuntimeError when a response/exception has no request attached
    try:
        return source.request.headers.get("x-request-id")
    except RuntimeError:
        return None


def _network_code(exc: httpx.TransportError) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "TIMEOUT"
    if isinstance(exc, httpx.ConnectError):
        return "CONNECT_ERROR"
    return "NETWORK_ERROR"


class ApiError(RuntimeError):
    """Uniform error raised for every failed API call.

    Built either from a non-2xx ``httpx.Response`` or from a transport-level
    failure (connection refused, timeout, ...), in which case ``status`` is 0.
    """

    def __init__(
        self,
        message: str,
        status: int = 500,
        status_text: str = "Internal Server Error",
        *,
        code: Optional[str] = None,
        errors: Optional[list[Any]] = None,
        rate_limit: Optional[RateLimitInfo] = None,
        retry_after: Optional[float] = None,
        request_id: Optional[str] = None,
        response: Optional[httpx.Response] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.status_text = status_text
        self.code = code
        self.errors: list[Any] = list(errors or [])
        self.rate_limit = rate_limit
        self.retry_after = retry_after
        self.request_id = request_id
        self.response = response
        self.timestamp = datetime.now(tz=timezone.utc).isoformat()

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiError":
        status = response.status_code
        status_text = response.reason_phrase or ""
        body = decode_body(response)
        message = _extract_message(body) or f"{status} {status_text}".strip()

        code: Optional[str] = None
        errors: list[Any] = []
        if isinstance(body, dict):
            raw_code = body.get("code")
            if raw_code is not None:
                code = str(raw_code)
            if isinstance(body.get("errors"), list):
                errors = body["errors"]

        return cls(
            message,
            status,
            status_text,
            code=code,
            errors=errors,
            rate_limit=_rate_limit_from_headers(response.headers),
            retry_after=parse_retry_after(response.headers.get("retry-after")),
            request_id=_request_id_of(response),
            response=response,
        )

    @classmethod
    def from_transport_error(cls, exc: httpx.TransportError) -> "ApiError":
        request_id = _request_id_of(exc)
        return cls(
            f"Network error or timeout: {exc}" if str(exc) else "Network error or timeout",
            0,
            "Network Error",
            code=_network_code(exc),
            request_id=request_id,
        )

    def is_authentication_error(self) -> bool:
        return self.status == 401

    def is_authorization_error(self) -> bool:
        return self.status == 403

    def is_not_found_error(self) -> bool:
        return self.status == 404

    def is_validation_error(self) -> bool:
        return self.status in (400, 422)

    def is_rate_limit_error(self) -> bool:
        return self.status == 429

    def is_server_error(self) -> bool:
        return 500 <= self.status < 600

    def is_network_error(self) -> bool:
        return self.status == 0 or self.code in NETWORK_ERROR_CODES

    def is_retryable(self) -> bool:
        """Network failures, 429 and gateway-class 5xx are worth another attempt."""
        return self.is_network_error() or self.is_rate_limit_error() or self.status in RETRYABLE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": self.message,
            "status": self.status,
            "status_text": self.status_text,
            "code": self.code,
            "errors": self.errors,
            "rate_limit": None
            if self.rate_limit is None
            else {"limit": self.rate_limit.limit, "remaining": self.rate_limit.remaining, "reset": self.rate_limit.reset},
            "request_id": self.request_id,
            "timestamp": self.timestamp,
        }

    def __str__(self) -> str:
        out = f"{type(self).__name__}: {self.message} ({self.status} {self.status_text})"
        if self.code:
            out += f" [{self.code}]"
        if self.errors:
            out += "\nValidation errors:\n" + "\n".join(f"  - {e}" for e in self.errors)
        return out

    @classmethod
    def validation_error(cls, message: str, errors: Optional[list[Any]] = None) -> "ApiError":
        return cls(message, 400, "Bad Request", code="VALIDATION_ERROR", errors=errors)

    @classmethod
    def authentication_error(cls, message: str = "Invalid or expired authentication token") -> "ApiError":
        return cls(message, 401, "Unauthorized", code="AUTHENTICATION_ERROR")

    @classmethod
    def authorization_error(cls, message: str = "Access denied") -> "ApiError":
        return cls(message, 403, "Forbidden", code="AUTHORIZATION_ERROR")

    @classmethod
    def not_found_error(cls, resource: str) -> "ApiError":
        return cls(f"{resource} not found", 404, "Not Found", code="NOT_FOUND_ERROR")

    @classmethod
    def rate_limit_error(cls, message: str = "Too many requests. Try again later.") -> "ApiError":
        return cls(message, 429, "Too Many Requests", code="RATE_LIMIT_ERROR")
