"""Structured output from chat model backends, reliably and in batches."""

import importlib.metadata
import logging

from structured_batch.backends.base import (
    ChatBackend,
    ChatMessage,
    ChatOptions,
    ChatResponse,
)
from structured_batch.config import FrozenConfig, ResolvedConfig, resolve_config
from structured_batch.core.exceptions import (
    BackendAuthError,
    BackendConnectionError,
    BackendError,
    BackendRateLimitError,
    BackendServerError,
    ConfigurationError,
    ErrorKind,
    ExtractionError,
    FeatureNotFoundError,
    OperationCancelledError,
    RequestTimeoutError,
    ResponseParseError,
    SchemaValidationError,
    StructuredBatchError,
    TransformError,
    to_structured_error,
)
from structured_batch.core.schema import SchemaNode
from structured_batch.core.types import (
    BatchResult,
    BatchSummary,
    Failure,
    FeatureMetadata,
    FeatureResult,
    OrderedResult,
    ParseMetadata,
    ParseOutcome,
    ParseStatus,
    Result,
    RetryAttemptInfo,
    Success,
)
from structured_batch.execution.cancellation import CancelToken
from structured_batch.execution.coordinator import (
    CircuitBreaker,
    run_batch_coordinator,
)
from structured_batch.execution.executor import (
    BatchCallbacks,
    FeatureExecutor,
    FeatureOptions,
)
from structured_batch.execution.scheduler import (
    OrderedCallbacks,
    run_concurrent_ordered,
)
from structured_batch.features.prompts import CustomPrompt
from structured_batch.features.registry import FeatureConfig, FeatureRegistry
from structured_batch.parsing.extraction import ExtractionOptions, extract_json
from structured_batch.parsing.interpreter import parse_response
from structured_batch.parsing.recovery import recover_partial
from structured_batch.parsing.text import parse_text_response
from structured_batch.parsing.validator import validate
from structured_batch.telemetry import TelemetryContext, TelemetryReporter

# Version handling
try:
    __version__ = importlib.metadata.version("structured-batch")
except importlib.metadata.PackageNotFoundError:
    __version__ = "development"

# Set up a null handler for the library's root logger.
# This prevents 'No handler found' errors if the consuming app has no logging configured.
logging.getLogger(__name__).addHandler(logging.NullHandler())

# Public API
__all__ = [  # noqa: RUF022
    # Parsing
    "parse_response",
    "extract_json",
    "validate",
    "recover_partial",
    "parse_text_response",
    "ExtractionOptions",
    "SchemaNode",
    # Execution
    "FeatureExecutor",
    "FeatureOptions",
    "BatchCallbacks",
    "run_concurrent_ordered",
    "run_batch_coordinator",
    "OrderedCallbacks",
    "CircuitBreaker",
    "CancelToken",
    # Features
    "FeatureRegistry",
    "FeatureConfig",
    "CustomPrompt",
    # Backends
    "ChatBackend",
    "ChatMessage",
    "ChatOptions",
    "ChatResponse",
    # Configuration
    "resolve_config",
    "ResolvedConfig",
    "FrozenConfig",
    # Telemetry (extension points)
    "TelemetryContext",
    "TelemetryReporter",
    # Core Types
    "ParseOutcome",
    "ParseMetadata",
    "ParseStatus",
    "OrderedResult",
    "FeatureResult",
    "FeatureMetadata",
    "RetryAttemptInfo",
    "BatchResult",
    "BatchSummary",
    "Result",
    "Success",
    "Failure",
    # Exceptions
    "ErrorKind",
    "StructuredBatchError",
    "ExtractionError",
    "SchemaValidationError",
    "TransformError",
    "ResponseParseError",
    "BackendError",
    "BackendConnectionError",
    "BackendAuthError",
    "BackendRateLimitError",
    "BackendServerError",
    "OperationCancelledError",
    "RequestTimeoutError",
    "FeatureNotFoundError",
    "ConfigurationError",
    "to_structured_error",
]
