"""Error taxonomy for structured model-output processing.

Every error raised or returned by this library normalizes into a small,
closed set of kinds (`ErrorKind`). Each error carries a short code, a
user-facing message and a bounded diagnostic mapping so batch logs stay
readable even when a backend returns megabytes of garbage.
"""

from __future__ import annotations

import asyncio
from enum import StrEnum
from typing import Any, ClassVar, Literal

import httpx

# Raw excerpts attached to errors never exceed this many characters.
CONTEXT_EXCERPT_CHARS = 100
RAW_PREVIEW_CHARS = 500

type CancelOrigin = Literal["user", "circuit_breaker"]


class ErrorKind(StrEnum):
    """Closed set of error kinds surfaced to callers."""

    PARSE = "parse_error"
    VALIDATION = "validation_error"
    TRANSFORM = "transform_error"
    CONNECTION = "connection_error"
    AUTH = "auth_error"
    RATE_LIMIT = "rate_limit_error"
    SERVER = "server_error"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    CONFIGURATION = "configuration_error"
    UNKNOWN = "unknown"


# Only these kinds are worth resending the identical request for.
RECOVERABLE_KINDS = frozenset({ErrorKind.PARSE, ErrorKind.VALIDATION})


def excerpt(text: str | None, limit: int = CONTEXT_EXCERPT_CHARS) -> str:
    """Return at most `limit` characters of `text` for diagnostics."""
    if not text:
        return ""
    return text[:limit]


class StructuredBatchError(Exception):
    """Base exception for structured-batch errors."""

    kind: ClassVar[ErrorKind] = ErrorKind.UNKNOWN
    default_code: ClassVar[str] = "UNKNOWN_ERROR"
    default_user_message: ClassVar[str] = "An unexpected error occurred."

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize with a developer message, optional code and details."""
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details: dict[str, Any] = dict(details or {})

    @property
    def user_message(self) -> str:
        """Short message suitable for showing to an end user."""
        return self.default_user_message

    @property
    def recoverable(self) -> bool:
        """Whether a parse-layer retry could plausibly succeed."""
        return self.kind in RECOVERABLE_KINDS


# --- Parsing layer ---


class ExtractionError(StructuredBatchError):
    """Raised when no JSON value can be located or repaired in a response."""

    kind = ErrorKind.PARSE
    default_code = "NO_JSON_FOUND"
    default_user_message = (
        "The model returned an unexpected response format. Please try again."
    )

    def __init__(
        self,
        message: str,
        *,
        code: Literal["EMPTY_RESPONSE", "NO_JSON_FOUND"] = "NO_JSON_FOUND",
        context: str | None = None,
    ) -> None:
        """Initialize with a classification code and a bounded context excerpt."""
        self.context = excerpt(context)
        super().__init__(message, code=code, details={"context": self.context})


class SchemaValidationError(StructuredBatchError):
    """Raised when a decoded value does not satisfy its schema."""

    kind = ErrorKind.VALIDATION
    default_code = "SCHEMA_MISMATCH"
    default_user_message = (
        "The model response was invalid. Please try again with different input."
    )

    def __init__(
        self,
        issues: list[Any],
        *,
        warnings: list[str] | None = None,
    ) -> None:
        """Initialize from a list of validation issues."""
        self.issues = list(issues)
        self.warnings = list(warnings or [])
        summary = ", ".join(getattr(i, "message", str(i)) for i in self.issues)
        super().__init__(
            f"Validation failed: {summary}",
            details={
                "validation_errors": [str(i) for i in self.issues[:20]],
                "warnings": self.warnings[:20],
            },
        )


class TransformError(StructuredBatchError):
    """Raised when a caller-supplied transform fails. Never recovered."""

    kind = ErrorKind.TRANSFORM
    default_code = "TRANSFORM_FAILED"
    default_user_message = "The model response could not be processed."


class ResponseParseError(StructuredBatchError):
    """Terminal parse failure after retries and lenient fallback."""

    kind = ErrorKind.PARSE
    default_code = "PARSE_ERROR"
    default_user_message = (
        "The model returned an unexpected response format. Please try again."
    )

    def __init__(
        self,
        message: str,
        *,
        raw_response: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize with the final raw response attached."""
        self.raw_response = raw_response
        merged = {"raw_preview": excerpt(raw_response, RAW_PREVIEW_CHARS)}
        merged.update(details or {})
        super().__init__(message, details=merged)


# --- Transport layer ---


class BackendError(StructuredBatchError):
    """Base for failures reported by a model backend."""

    kind = ErrorKind.CONNECTION
    default_code = "BACKEND_ERROR"
    default_user_message = "Could not reach the model backend."

    def __init__(
        self,
        message: str,
        *,
        backend_id: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize with optional backend identity and HTTP status."""
        self.backend_id = backend_id
        self.status_code = status_code
        merged = {"backend_id": backend_id, "status_code": status_code}
        merged.update(details or {})
        super().__init__(message, details=merged)


class BackendConnectionError(BackendError):
    """The backend could not be reached or returned an unusable reply."""

    default_code = "CONNECTION_ERROR"


class BackendAuthError(BackendError):
    """The backend rejected the credentials."""

    kind = ErrorKind.AUTH
    default_code = "AUTH_ERROR"
    default_user_message = "Authentication with the model backend failed."


class BackendRateLimitError(BackendError):
    """The backend is throttling requests."""

    kind = ErrorKind.RATE_LIMIT
    default_code = "RATE_LIMITED"
    default_user_message = "The model backend is rate limiting requests."

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        backend_id: str | None = None,
        status_code: int | None = 429,
    ) -> None:
        """Initialize with an optional retry-after hint in seconds."""
        self.retry_after = retry_after
        super().__init__(
            message,
            backend_id=backend_id,
            status_code=status_code,
            details={"retry_after": retry_after},
        )


class BackendServerError(BackendError):
    """The backend failed with a server-side error."""

    kind = ErrorKind.SERVER
    default_code = "SERVER_ERROR"
    default_user_message = "The model backend reported an internal error."


# --- Control flow ---


class OperationCancelledError(StructuredBatchError):
    """Raised when a cancellation token aborts work."""

    kind = ErrorKind.CANCELLED
    default_code = "CANCELLED"

    def __init__(
        self,
        message: str = "Operation cancelled",
        *,
        origin: CancelOrigin = "user",
        code: str | None = None,
    ) -> None:
        """Initialize with the origin of the cancellation."""
        self.origin: CancelOrigin = origin
        super().__init__(message, code=code, details={"origin": origin})

    @property
    def user_message(self) -> str:
        """Distinguish user cancellation from an automatic batch abort."""
        if self.origin == "circuit_breaker":
            return "The batch was stopped after repeated failures."
        return "The operation was cancelled."


class RequestTimeoutError(StructuredBatchError):
    """Raised when a single backend attempt exceeds its timeout."""

    kind = ErrorKind.TIMEOUT
    default_code = "TIMEOUT"
    default_user_message = "The request timed out."

    def __init__(self, timeout_s: float | None = None) -> None:
        """Initialize with the timeout that elapsed."""
        self.timeout_s = timeout_s
        suffix = f" after {timeout_s:g}s" if timeout_s is not None else ""
        super().__init__(
            f"Request timed out{suffix}", details={"timeout_s": timeout_s}
        )


class FeatureNotFoundError(StructuredBatchError):
    """Raised when a feature id is not registered."""

    kind = ErrorKind.CONFIGURATION
    default_code = "FEATURE_NOT_FOUND"
    default_user_message = "The requested feature is not available."

    def __init__(self, feature_id: str) -> None:
        """Initialize with the missing feature id."""
        self.feature_id = feature_id
        super().__init__(
            f'Feature "{feature_id}" is not registered',
            details={"feature_id": feature_id},
        )


class ConfigurationError(StructuredBatchError):
    """Raised when runtime configuration is unusable."""

    kind = ErrorKind.CONFIGURATION
    default_code = "CONFIGURATION_ERROR"
    default_user_message = "The structured-batch configuration is invalid."


# --- Normalization ---


def _from_http_status(exc: httpx.HTTPStatusError) -> BackendError:
    status = exc.response.status_code
    message = f"HTTP {status} from {exc.request.url}"
    if status in (401, 403):
        return BackendAuthError(
            f"Authentication failed: {message}", status_code=status
        )
    if status == 429:
        retry_after: float | None = None
        header = exc.response.headers.get("retry-after")
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        return BackendRateLimitError(
            f"Rate limited: {message}", retry_after=retry_after, status_code=status
        )
    if status >= 500:
        return BackendServerError(message, status_code=status)
    return BackendConnectionError(message, status_code=status)


def to_structured_error(exc: BaseException) -> StructuredBatchError:
    """Normalize any exception into the closed error taxonomy.

    Library errors pass through unchanged. Transport exceptions raised by
    httpx-based backends are classified by type and HTTP status.
    """
    if isinstance(exc, StructuredBatchError):
        return exc
    if isinstance(exc, httpx.TimeoutException | TimeoutError):
        return RequestTimeoutError()
    if isinstance(exc, httpx.HTTPStatusError):
        return _from_http_status(exc)
    if isinstance(exc, httpx.TransportError | ConnectionError):
        return BackendConnectionError(f"Connection failed: {exc}")
    if isinstance(exc, asyncio.CancelledError):
        return OperationCancelledError()
    error = StructuredBatchError(
        str(exc) or type(exc).__name__,
        details={"original_error": type(exc).__name__},
    )
    error.__cause__ = exc
    return error


def is_cancellation(exc: BaseException) -> bool:
    """Return True for any cancellation, library or asyncio."""
    return isinstance(exc, OperationCancelledError | asyncio.CancelledError)
