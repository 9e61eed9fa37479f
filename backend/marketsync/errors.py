"""Error taxonomy for the market-data pipeline.

Every failure that leaves the pipeline is a :class:`MarketDataError` carrying a
fixed, user-presentable message. The raw upstream text is kept in ``detail``
for logging and never shown to end users.
"""

from __future__ import annotations

import asyncio
import enum
import json
import socket
from urllib.error import HTTPError, URLError

from pydantic import ValidationError as PydanticValidationError


class ErrorKind(str, enum.Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    UPSTREAM = "upstream"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class MarketDataError(Exception):
    kind: ErrorKind = ErrorKind.UNKNOWN
    message: str = "An unexpected error occurred. Please try again."
    retryable: bool = False

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(self.message)
        self.detail = detail
        self.retry_count = 0

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, detail={self.detail!r})"


class NetworkError(MarketDataError):
    kind = ErrorKind.NETWORK
    message = "Network error. Please check your connection and try again."
    retryable = True


class FetchTimeoutError(MarketDataError):
    kind = ErrorKind.TIMEOUT
    message = "Request timed out. Please try again."
    retryable = True


class UpstreamAPIError(MarketDataError):
    kind = ErrorKind.UPSTREAM
    message = "API request failed. Please try again."
    retryable = True


class ValidationError(MarketDataError):
    kind = ErrorKind.VALIDATION
    message = "Invalid input provided. Please check your data and try again."


class UnknownError(MarketDataError):
    kind = ErrorKind.UNKNOWN


class RateLimitError(MarketDataError):
    kind = ErrorKind.RATE_LIMITED
    message = "Rate limit reached. Please wait a moment before trying again."

    def __init__(self, retry_after_ms: int = 0, detail: str | None = None) -> None:
        super().__init__(detail)
        self.retry_after_ms = max(0, int(retry_after_ms))
        if self.retry_after_ms:
            seconds = -(-self.retry_after_ms // 1000)
            self.message = f"Rate limit reached. Please wait {seconds}s before trying again."
            self.args = (self.message,)


_RATE_LIMIT_HINTS = ("429", "quota", "rate limit")
_NETWORK_HINTS = ("network", "fetch", "connection")
_TIMEOUT_HINTS = ("timeout", "timed out", "abort")
_UPSTREAM_HINTS = ("http", "api")
_VALIDATION_HINTS = ("validation", "invalid")

# Shape problems in an upstream payload.
_PAYLOAD_ERRORS = (
    json.JSONDecodeError,
    KeyError,
    IndexError,
    TypeError,
    AttributeError,
    PydanticValidationError,
)


def _retry_after_ms(exc: HTTPError) -> int:
    header = exc.headers.get("Retry-After") if exc.headers else None
    try:
        return int(float(header) * 1000) if header else 0
    except ValueError:
        return 0


def classify_error(exc: BaseException) -> MarketDataError:
    """Map any exception raised while fetching onto the error taxonomy."""
    if isinstance(exc, MarketDataError):
        return exc

    detail = str(exc) or type(exc).__name__
    # HTTPError subclasses URLError and TimeoutError subclasses OSError.
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, socket.timeout)):
        return FetchTimeoutError(detail)
    if isinstance(exc, HTTPError):
        if exc.code == 429:
            return RateLimitError(_retry_after_ms(exc), detail)
        return UpstreamAPIError(detail)
    if isinstance(exc, URLError):
        if isinstance(exc.reason, (TimeoutError, socket.timeout)):
            return FetchTimeoutError(detail)
        return NetworkError(detail)
    if isinstance(exc, (ConnectionError, OSError)):
        return NetworkError(detail)
    if isinstance(exc, _PAYLOAD_ERRORS):
        return UpstreamAPIError(detail)

    lowered = detail.lower()
    if any(hint in lowered for hint in _RATE_LIMIT_HINTS):
        return RateLimitError(detail=detail)
    if any(hint in lowered for hint in _NETWORK_HINTS):
        return NetworkError(detail)
    if any(hint in lowered for hint in _TIMEOUT_HINTS):
        return FetchTimeoutError(detail)
    if any(hint in lowered for hint in _UPSTREAM_HINTS):
        return UpstreamAPIError(detail)
    if any(hint in lowered for hint in _VALIDATION_HINTS):
        return ValidationError(detail)
    return UnknownError(detail)
