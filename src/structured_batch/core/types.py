"""Core data types that flow through parsing and batch execution.

Everything here is an immutable value object. Parsing produces a
`ParseOutcome`, the executor wraps it in a `FeatureResult`, and the
scheduler reports each settled task as an `OrderedResult` bound to the
index it was submitted at.
"""

from __future__ import annotations

import dataclasses
from enum import StrEnum
from types import MappingProxyType
import typing

from structured_batch.core.exceptions import CancelOrigin, StructuredBatchError

# --- Minimal guard helpers ---

T = typing.TypeVar("T")


def _freeze_mapping(
    m: dict[str, T] | typing.Mapping[str, T] | None,
) -> typing.Mapping[str, T] | None:
    """Return an immutable mapping view or None."""
    if m is None or isinstance(m, MappingProxyType):
        return m
    return MappingProxyType(dict(m))


def _require(
    *,
    condition: bool,
    message: str,
    exc: type[Exception] = ValueError,
    field_name: str | None = None,
) -> None:
    """Centralized validation with optional field context for clearer errors."""
    if not condition:
        if field_name:
            raise exc(f"{field_name}: {message}")
        raise exc(message)


# --- Result Monad ---
# Internal pipeline helpers return these instead of raising so failures are
# a predictable part of the data flow.

TSuccess = typing.TypeVar("TSuccess")
TFailure = typing.TypeVar("TFailure", bound=Exception)


@dataclasses.dataclass(frozen=True, slots=True)
class Success[TSuccess]:
    """A successful result."""

    value: TSuccess


@dataclasses.dataclass(frozen=True, slots=True)
class Failure[TFailure]:
    """A failure, containing the error."""

    error: TFailure


Result = Success[TSuccess] | Failure[TFailure]

# --- Parsing ---


class ParseStatus(StrEnum):
    """Trust classification of returned data."""

    VALID = "VALID"
    MALFORMED = "MALFORMED"
    INVALID = "INVALID"


type ExtractionMethod = typing.Literal["direct", "code-block", "lenient"]


@dataclasses.dataclass(frozen=True, slots=True)
class RecoveryAttempt:
    """Outcome of one recovery strategy, recorded whether or not it won."""

    name: str
    recovered: int = 0
    skipped: int = 0
    error: str | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class RecoveryInfo:
    """Diagnostics for a recovery pass."""

    strategy: str | None
    recovered_count: int
    skipped_count: int
    attempts: tuple[RecoveryAttempt, ...] = ()
    wrapped_property: str | None = None
    warnings: tuple[str, ...] = ()

    @property
    def recovered(self) -> bool:
        """Whether any strategy produced items."""
        return self.strategy is not None


@dataclasses.dataclass(frozen=True, slots=True)
class ParseMetadata:
    """How a `ParseOutcome` was produced."""

    parse_status: ParseStatus
    extraction_method: ExtractionMethod | None = None
    validated: bool = False
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    repairs: tuple[str, ...] = ()
    recovery_info: RecoveryInfo | None = None

    def __post_init__(self) -> None:
        """VALID data is never the product of recovery."""
        _require(
            condition=not (
                self.parse_status is ParseStatus.VALID
                and self.recovery_info is not None
                and self.recovery_info.recovered
            ),
            message="VALID outcomes cannot carry recovered data",
            field_name="parse_status",
        )


@dataclasses.dataclass(frozen=True, slots=True)
class ParseOutcome[T]:
    """Result of interpreting one raw model response."""

    success: bool
    raw_input: str
    metadata: ParseMetadata
    data: T | None = None
    error: StructuredBatchError | None = None

    @property
    def parse_status(self) -> ParseStatus:
        """Shortcut for `metadata.parse_status`."""
        return self.metadata.parse_status


# --- Scheduling ---


@dataclasses.dataclass(frozen=True, slots=True)
class OrderedResult[T]:
    """A settled task bound to its submission index."""

    index: int
    status: typing.Literal["fulfilled", "rejected"]
    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        """True when the task fulfilled."""
        return self.status == "fulfilled"


# --- Feature execution ---


@dataclasses.dataclass(frozen=True, slots=True)
class TokenUsage:
    """Token accounting reported by a backend, when available."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        """Sum of prompt and completion tokens."""
        return self.prompt_tokens + self.completion_tokens


@dataclasses.dataclass(frozen=True, slots=True)
class RetryAttemptInfo:
    """Passed to retry callbacks before each resend."""

    attempt: int
    max_attempts: int
    error_message: str
    attempt_duration_ms: float


@dataclasses.dataclass(frozen=True, slots=True)
class FeatureMetadata:
    """Execution details for a single feature call."""

    feature_id: str
    backend_id: str | None = None
    model: str | None = None
    duration_ms: float = 0.0
    token_usage: TokenUsage | None = None
    retry_attempts: int = 0
    parse_status: ParseStatus = ParseStatus.INVALID
    extraction_method: ExtractionMethod | None = None
    lenient: bool = False
    parse_warnings: tuple[str, ...] = ()
    parse_errors: tuple[str, ...] = ()
    recovery: RecoveryInfo | None = None
    attempted: bool = True


@dataclasses.dataclass(frozen=True, slots=True)
class FeatureResult[T]:
    """Outcome of `execute_feature`; failures are values, not exceptions."""

    success: bool
    metadata: FeatureMetadata
    data: T | None = None
    error: StructuredBatchError | None = None
    raw_response: str | None = None

    def __post_init__(self) -> None:
        """A result is either successful or carries an error."""
        _require(
            condition=self.success == (self.error is None),
            message="successful results carry no error; failed results must",
            field_name="error",
        )


@dataclasses.dataclass(frozen=True, slots=True)
class BatchSummary:
    """Aggregate counts for one batch run."""

    total: int
    succeeded: int
    failed: int
    skipped: int
    not_attempted: int
    duration_ms: float
    aborted_by: CancelOrigin | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class BatchResult[T]:
    """Per-input results aligned with the caller's inputs, plus a summary."""

    results: tuple[FeatureResult[T], ...]
    summary: BatchSummary
    extra: typing.Mapping[str, typing.Any] = dataclasses.field(
        default_factory=lambda: MappingProxyType({})
    )

    def __post_init__(self) -> None:
        """Freeze `extra` so a batch result can be shared safely."""
        object.__setattr__(self, "extra", _freeze_mapping(self.extra))
