"""Error taxonomy and normalization of foreign exceptions."""

import asyncio

import httpx
import pytest

from structured_batch.core.exceptions import (
    BackendAuthError,
    BackendConnectionError,
    BackendRateLimitError,
    BackendServerError,
    ErrorKind,
    ExtractionError,
    OperationCancelledError,
    RequestTimeoutError,
    ResponseParseError,
    SchemaValidationError,
    StructuredBatchError,
    TransformError,
    is_cancellation,
    to_structured_error,
)


def _status_error(status: int, headers: dict[str, str] | None = None):
    request = httpx.Request("POST", "https://models.example/v1/chat")
    response = httpx.Response(status, request=request, headers=headers or {})
    return httpx.HTTPStatusError("failed", request=request, response=response)


class TestNormalization:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("status", "expected", "kind"),
        [
            (401, BackendAuthError, ErrorKind.AUTH),
            (403, BackendAuthError, ErrorKind.AUTH),
            (429, BackendRateLimitError, ErrorKind.RATE_LIMIT),
            (500, BackendServerError, ErrorKind.SERVER),
            (503, BackendServerError, ErrorKind.SERVER),
            (404, BackendConnectionError, ErrorKind.CONNECTION),
        ],
    )
    def test_http_status_mapping(self, status, expected, kind):
        error = to_structured_error(_status_error(status))
        assert type(error) is expected
        assert error.kind is kind
        assert error.status_code == status
        assert not error.recoverable

    @pytest.mark.unit
    def test_retry_after_header(self):
        error = to_structured_error(_status_error(429, {"retry-after": "1.5"}))
        assert error.retry_after == 1.5
        error = to_structured_error(_status_error(429, {"retry-after": "soon"}))
        assert error.retry_after is None

    @pytest.mark.unit
    def test_transport_and_timeout_errors(self):
        assert isinstance(
            to_structured_error(httpx.ConnectError("refused")), BackendConnectionError
        )
        assert isinstance(
            to_structured_error(httpx.ReadTimeout("slow")), RequestTimeoutError
        )
        assert isinstance(to_structured_error(TimeoutError()), RequestTimeoutError)
        assert isinstance(
            to_structured_error(ConnectionResetError()), BackendConnectionError
        )

    @pytest.mark.unit
    def test_cancelled_error(self):
        error = to_structured_error(asyncio.CancelledError())
        assert isinstance(error, OperationCancelledError)
        assert is_cancellation(error)
        assert is_cancellation(asyncio.CancelledError())
        assert not is_cancellation(ValueError())

    @pytest.mark.unit
    def test_library_errors_pass_through(self):
        original = TransformError("bad transform")
        assert to_structured_error(original) is original

    @pytest.mark.unit
    def test_unknown_errors_keep_cause(self):
        cause = KeyError("x")
        error = to_structured_error(cause)
        assert type(error) is StructuredBatchError
        assert error.kind is ErrorKind.UNKNOWN
        assert error.details["original_error"] == "KeyError"
        assert error.__cause__ is cause


class TestErrorShapes:
    @pytest.mark.unit
    def test_only_parse_and_validation_are_recoverable(self):
        assert ExtractionError("x").recoverable
        assert SchemaValidationError(["a: bad"]).recoverable
        assert not TransformError("x").recoverable
        assert not RequestTimeoutError(1.0).recoverable
        assert not OperationCancelledError().recoverable

    @pytest.mark.unit
    def test_context_excerpt_is_bounded(self):
        error = ExtractionError("x", context="y" * 1000)
        assert len(error.context) == 100
        assert error.details["context"] == error.context

    @pytest.mark.unit
    def test_response_parse_error_preview_is_bounded(self):
        raw = "z" * 2000
        error = ResponseParseError("failed", raw_response=raw, details={"attempts": 3})
        assert error.raw_response == raw
        assert len(error.details["raw_preview"]) == 500
        assert error.details["attempts"] == 3
        assert error.code == "PARSE_ERROR"

    @pytest.mark.unit
    def test_cancellation_messages_depend_on_origin(self):
        assert OperationCancelledError().user_message == "The operation was cancelled."
        breaker = OperationCancelledError(origin="circuit_breaker", code="NOT_ATTEMPTED")
        assert breaker.code == "NOT_ATTEMPTED"
        assert breaker.details["origin"] == "circuit_breaker"
        assert "repeated failures" in breaker.user_message

    @pytest.mark.unit
    def test_timeout_message(self):
        assert str(RequestTimeoutError(2.5)) == "Request timed out after 2.5s"
        assert str(RequestTimeoutError()) == "Request timed out"
