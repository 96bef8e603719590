"""
Typed request errors and the classifier that produces them.

Every failure that crosses the optimizer or client boundary is an ApiError
carrying a closed ErrorType. ErrorClassifier.classify() is the only place
that inspects raw exceptions, HTTP-like statuses and backend error codes.
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Union

from requestflow.exceptions import RequestFlowError


class ErrorType(str, Enum):
    """Closed error taxonomy."""

    VALIDATION = "validation"
    NETWORK = "network"
    AUTH = "auth"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    SERVER = "server"
    TIMEOUT = "timeout"
    OFFLINE = "offline"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"


RETRYABLE_BY_DEFAULT = frozenset({
    ErrorType.NETWORK,
    ErrorType.SERVER,
    ErrorType.TIMEOUT,
    ErrorType.RATE_LIMIT,
})

# Backend error codes with a fixed meaning; anything else is a server error.
BACKEND_ERROR_CODES: Dict[str, ErrorType] = {
    "PGRST301": ErrorType.RATE_LIMIT,
    "PGRST204": ErrorType.NOT_FOUND,
    "PGRST116": ErrorType.NOT_FOUND,
}

CIRCUIT_OPEN_CODE = "CIRCUIT_OPEN"
SHUTDOWN_CODE = "OPTIMIZER_SHUTDOWN"


class ApiError(RequestFlowError):
    """
    Classified request failure.

    Attributes:
        type: Error category
        message: Human readable message
        code: HTTP status or backend error code
        retryable: Explicit override of the per-type default
        retry_after: Server supplied wait, in seconds
        context: Where the error was produced
        details: Extra diagnostic text
        field: Offending field for validation errors
        timestamp: When the error was created
    """

    def __init__(
        self,
        type: ErrorType,
        message: str,
        code: Optional[Union[str, int]] = None,
        retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
        context: Optional[str] = None,
        details: Optional[str] = None,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.type = ErrorType(type)
        self.message = message
        self.code = code
        self.retryable = retryable
        self.retry_after = retry_after
        self.context = context
        self.details = details
        self.field = field
        self.timestamp = datetime.now(timezone.utc)

    @property
    def is_retryable(self) -> bool:
        """Explicit override if set, else the per-type default."""
        if self.retryable is not None:
            return self.retryable
        return self.type in RETRYABLE_BY_DEFAULT

    def format(self) -> str:
        """User-facing message for the error type."""
        if self.type == ErrorType.VALIDATION:
            return f"{self.field}: {self.message}" if self.field else self.message
        prefixes = {
            ErrorType.NETWORK: "Connection error",
            ErrorType.AUTH: "Authentication error",
            ErrorType.PERMISSION: "Permission denied",
            ErrorType.NOT_FOUND: "Not found",
            ErrorType.SERVER: "Server error",
        }
        prefix = prefixes.get(self.type)
        return f"{prefix}: {self.message}" if prefix else self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "type": self.type.value,
            "message": self.message,
            "code": self.code,
            "retryable": self.is_retryable,
            "retry_after": self.retry_after,
            "context": self.context,
            "details": self.details,
            "field": self.field,
            "timestamp": self.timestamp.isoformat(),
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ApiError):
            return NotImplemented
        return (
            self.type == other.type
            and self.message == other.message
            and self.code == other.code
            and self.is_retryable == other.is_retryable
            and self.retry_after == other.retry_after
        )

    __hash__ = RequestFlowError.__hash__

    def __repr__(self) -> str:
        return f"ApiError(type={self.type.value!r}, message={self.message!r}, code={self.code!r})"

    # Factories

    @classmethod
    def validation(cls, field: Optional[str], message: str) -> "ApiError":
        return cls(ErrorType.VALIDATION, message, field=field)

    @classmethod
    def network(cls, message: str = "Network error occurred", retryable: bool = True) -> "ApiError":
        return cls(ErrorType.NETWORK, message, retryable=retryable)

    @classmethod
    def timeout(cls, timeout_ms: float = 30000) -> "ApiError":
        return cls(
            ErrorType.TIMEOUT,
            f"Request timed out after {timeout_ms:g}ms",
            code="TIMEOUT",
            retryable=True,
        )

    @classmethod
    def offline(cls) -> "ApiError":
        return cls(ErrorType.OFFLINE, "You are currently offline", code="OFFLINE", retryable=True)

    @classmethod
    def rate_limit(cls, retry_after: Optional[float] = None) -> "ApiError":
        return cls(
            ErrorType.RATE_LIMIT,
            "Too many requests. Please try again later.",
            code="RATE_LIMIT",
            retryable=True,
            retry_after=retry_after,
        )

    @classmethod
    def auth(cls, message: str = "Authentication failed") -> "ApiError":
        return cls(ErrorType.AUTH, message)

    @classmethod
    def from_http_status(
        cls,
        status: int,
        status_text: str = "Unknown error",
        retry_after: Optional[float] = None,
    ) -> "ApiError":
        """Bucket an HTTP-like status into the taxonomy."""
        retryable = False
        if 400 <= status < 500:
            type_ = {
                401: ErrorType.AUTH,
                403: ErrorType.PERMISSION,
                404: ErrorType.NOT_FOUND,
                429: ErrorType.RATE_LIMIT,
            }.get(status, ErrorType.NETWORK)
            retryable = status == 429
        elif 500 <= status < 600:
            type_ = ErrorType.SERVER
            retryable = True
        else:
            type_ = ErrorType.NETWORK

        return cls(
            type_,
            f"HTTP {status}: {status_text}",
            code=status,
            retryable=retryable,
            retry_after=retry_after,
        )

    @classmethod
    def from_unknown(cls, error: Any, context: Optional[str] = None) -> "ApiError":
        message = "An unexpected error occurred"
        details = None
        if isinstance(error, BaseException):
            message = str(error) or type(error).__name__
            details = repr(error)
        elif isinstance(error, str):
            message = error
        elif error is not None:
            message = str(_read(error, "message") or message)
            details = repr(error)
        if context:
            details = f"{context}: {details}"
        return cls(ErrorType.UNKNOWN, message, retryable=False, context=context, details=details)


def _read(raw: Any, name: str) -> Any:
    """Read a field from a mapping or an attribute from an object."""
    if isinstance(raw, Mapping):
        return raw.get(name)
    return getattr(raw, name, None)


def _http_status(raw: Any) -> Optional[int]:
    for name in ("status", "status_code"):
        value = _read(raw, name)
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            return value
    # e.g. httpx.HTTPStatusError / requests.HTTPError carry a response
    response = _read(raw, "response")
    if response is not None and response is not raw:
        value = _read(response, "status_code")
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _retry_after(raw: Any) -> Optional[float]:
    value = _read(raw, "retry_after")
    if value is None:
        headers = _read(raw, "headers")
        if headers is None:
            response = _read(raw, "response")
            headers = _read(response, "headers") if response is not None else None
        if headers is not None:
            try:
                value = headers.get("Retry-After") or headers.get("retry-after")
            except AttributeError:
                value = None
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class ErrorClassifier:
    """
    Normalizes arbitrary failures into ApiError.

    Example:
        classifier = ErrorClassifier(is_online=lambda: network_monitor.online)
        error = classifier.classify(ConnectionError("reset by peer"))
        # error.type == ErrorType.NETWORK
    """

    def __init__(self, is_online: Optional[Callable[[], bool]] = None):
        """
        Args:
            is_online: Connectivity probe; assumed online when omitted.
        """
        self._is_online = is_online or (lambda: True)

    def classify(self, raw: Any) -> ApiError:
        """Classify a raw failure. Never raises."""
        try:
            return self._classify(raw)
        except Exception as exc:  # a broken probe or exotic object
            return ApiError.from_unknown(exc, "Error classification")

    def _classify(self, raw: Any) -> ApiError:
        if isinstance(raw, ApiError):
            return raw

        if isinstance(raw, ConnectionError) or (
            isinstance(raw, Exception) and str(raw) == "Failed to fetch"
        ):
            if self._is_online():
                return ApiError.network("Network request failed")
            return ApiError.offline()

        if isinstance(raw, (TimeoutError, asyncio.TimeoutError)):
            return ApiError.timeout()

        if isinstance(raw, asyncio.CancelledError):
            return ApiError(ErrorType.TIMEOUT, "Request was cancelled", code="TIMEOUT", retryable=True)

        if raw is not None and not isinstance(raw, (str, bytes, int, float)):
            status = _http_status(raw)
            if status is not None:
                status_text = _read(raw, "status_text") or _read(raw, "reason") or "Unknown error"
                return ApiError.from_http_status(status, str(status_text), _retry_after(raw))

            code = _read(raw, "code")
            if isinstance(code, str) and code:
                return self._from_backend_code(code, raw)

        return ApiError.from_unknown(raw, "Network detection")

    def _from_backend_code(self, code: str, raw: Any) -> ApiError:
        message = _read(raw, "message") or (str(raw) if isinstance(raw, Exception) else None)
        type_ = BACKEND_ERROR_CODES.get(code, ErrorType.SERVER)
        if type_ == ErrorType.RATE_LIMIT:
            return ApiError(type_, "Too many requests", code=code, retryable=True,
                            retry_after=_retry_after(raw))
        if type_ == ErrorType.NOT_FOUND:
            return ApiError(type_, "Resource not found", code=code)
        return ApiError(type_, str(message or "Database error"), code=code, retryable=True)


_default_classifier = ErrorClassifier()


def classify(raw: Any) -> ApiError:
    """Classify with an always-online classifier."""
    return _default_classifier.classify(raw)
