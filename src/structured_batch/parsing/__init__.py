"""Extraction, validation and recovery of structured model output.

The pipeline is pure and synchronous: identical input text and options
always produce an identical `ParseOutcome`.
"""

from structured_batch.parsing.extraction import (
    ExtractionOptions,
    ExtractionResult,
    extract_json,
)
from structured_batch.parsing.interpreter import (
    parse_array_response,
    parse_field_response,
    parse_object_response,
    parse_response,
)
from structured_batch.parsing.recovery import (
    RecoveryResult,
    RecoveryStrategy,
    apply_recovery_strategies,
    recover_partial,
    standard_strategies,
)
from structured_batch.parsing.text import TextParseResult, parse_text_response
from structured_batch.parsing.validator import (
    ValidationResult,
    make_item_guard,
    validate,
)

__all__ = [  # noqa: RUF022
    "extract_json",
    "ExtractionOptions",
    "ExtractionResult",
    "validate",
    "make_item_guard",
    "ValidationResult",
    "recover_partial",
    "apply_recovery_strategies",
    "standard_strategies",
    "RecoveryStrategy",
    "RecoveryResult",
    "parse_response",
    "parse_array_response",
    "parse_object_response",
    "parse_field_response",
    "parse_text_response",
    "TextParseResult",
]
