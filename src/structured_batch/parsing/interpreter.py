"""Turn one raw model response into a `ParseOutcome`.

Pipeline: extraction, then validation when a schema is given, then (on
failure, if requested) partial recovery against the original raw text, then
an optional caller transform. A failing transform is terminal and never
falls back to recovery.
"""

from __future__ import annotations

from collections.abc import Callable
import logging
from typing import Any

from structured_batch.core.exceptions import (
    RAW_PREVIEW_CHARS,
    ExtractionError,
    SchemaValidationError,
    StructuredBatchError,
    TransformError,
    excerpt,
)
from structured_batch.core.schema import SchemaNode, array_of, object_of
from structured_batch.core.types import (
    ExtractionMethod,
    ParseMetadata,
    ParseOutcome,
    ParseStatus,
    RecoveryInfo,
)
from structured_batch.parsing.extraction import ExtractionOptions, extract_json
from structured_batch.parsing.recovery import recover_partial as run_recovery
from structured_batch.parsing.validator import validate

log = logging.getLogger(__name__)

type Transform = Callable[[Any], Any]


def _failure(
    text: str,
    error: StructuredBatchError,
    *,
    method: ExtractionMethod | None = None,
    validated: bool = False,
    warnings: tuple[str, ...] = (),
    errors: tuple[str, ...] = (),
    repairs: tuple[str, ...] = (),
    recovery: RecoveryInfo | None = None,
) -> ParseOutcome[Any]:
    return ParseOutcome(
        success=False,
        raw_input=text,
        error=error,
        metadata=ParseMetadata(
            parse_status=ParseStatus.INVALID,
            extraction_method=method,
            validated=validated,
            warnings=warnings,
            errors=errors or (str(error),),
            repairs=repairs,
            recovery_info=recovery,
        ),
    )


def apply_transform(
    outcome: ParseOutcome[Any], transform: Transform | None
) -> ParseOutcome[Any]:
    """Run `transform` over a successful outcome's data.

    A raising transform turns the outcome INVALID with a `TransformError`.
    """
    if transform is None or not outcome.success:
        return outcome
    try:
        data = transform(outcome.data)
    except Exception as exc:
        error = TransformError(f"Transform failed: {exc}")
        error.__cause__ = exc
        log.debug("Transform raised %s", type(exc).__name__)
        meta = outcome.metadata
        return _failure(
            outcome.raw_input,
            error,
            method=meta.extraction_method,
            validated=meta.validated,
            warnings=meta.warnings,
            repairs=meta.repairs,
            recovery=meta.recovery_info,
        )
    return ParseOutcome(
        success=True,
        raw_input=outcome.raw_input,
        metadata=outcome.metadata,
        data=data,
    )


def parse_response(
    text: str,
    *,
    schema: SchemaNode | None = None,
    extraction: ExtractionOptions | None = None,
    apply_defaults: bool = True,
    transform: Transform | None = None,
    recover_partial: bool = False,
    strict: bool = False,
) -> ParseOutcome[Any]:
    """Extract, validate, optionally recover and transform a raw response.

    Args:
        text: Raw model output.
        schema: Structural schema for the decoded value. Without one the
            extracted value is returned as-is.
        extraction: Extraction knobs (leniency, depth bound).
        apply_defaults: Inject schema defaults for missing values.
        transform: Callable applied to the validated data. An exception it
            raises yields an INVALID outcome with a `TransformError`.
        recover_partial: Attempt partial array recovery when extraction or
            validation fails.
        strict: Report coercions as validation errors instead of warnings.

    Returns:
        A `ParseOutcome`. This function does not raise for bad input.
    """
    opts = extraction or ExtractionOptions()
    text = text or ""

    try:
        extracted = extract_json(text, opts)
    except ExtractionError as exc:
        if recover_partial and exc.code != "EMPTY_RESPONSE":
            return apply_transform(
                _recover(
                    text,
                    schema,
                    exc,
                    opts,
                    strict=strict,
                    apply_defaults=apply_defaults,
                ),
                transform,
            )
        return _failure(text, exc)

    if schema is None:
        outcome = ParseOutcome(
            success=True,
            raw_input=text,
            data=extracted.value,
            metadata=ParseMetadata(
                parse_status=ParseStatus.VALID,
                extraction_method=extracted.method,
                repairs=extracted.repairs,
            ),
        )
        return apply_transform(outcome, transform)

    result = validate(
        extracted.value, schema, apply_defaults=apply_defaults, strict=strict
    )
    if not result.valid:
        error = SchemaValidationError(list(result.errors), warnings=list(result.warnings))
        if recover_partial:
            return apply_transform(
                _recover(
                    text,
                    schema,
                    error,
                    opts,
                    strict=strict,
                    apply_defaults=apply_defaults,
                    method=extracted.method,
                    repairs=extracted.repairs,
                ),
                transform,
            )
        return _failure(
            text,
            error,
            method=extracted.method,
            validated=True,
            warnings=result.warnings,
            errors=result.errors,
            repairs=extracted.repairs,
        )

    status = ParseStatus.MALFORMED if result.warnings else ParseStatus.VALID
    outcome = ParseOutcome(
        success=True,
        raw_input=text,
        data=result.data,
        metadata=ParseMetadata(
            parse_status=status,
            extraction_method=extracted.method,
            validated=True,
            warnings=result.warnings,
            repairs=extracted.repairs,
        ),
    )
    return apply_transform(outcome, transform)


def _recover(
    text: str,
    schema: SchemaNode | None,
    cause: StructuredBatchError,
    opts: ExtractionOptions,
    *,
    strict: bool,
    apply_defaults: bool = True,
    method: ExtractionMethod | None = None,
    repairs: tuple[str, ...] = (),
) -> ParseOutcome[Any]:
    recovery = run_recovery(
        text,
        schema,
        max_depth=opts.max_depth,
        strict=strict,
        apply_defaults=apply_defaults,
    )
    if not recovery.success:
        return _failure(
            text,
            cause,
            method=method,
            validated=schema is not None,
            repairs=repairs,
            recovery=recovery.info,
        )
    info = recovery.info
    log.warning(
        "Recovered %d item(s) from malformed response via %s (%d skipped); raw: %s",
        info.recovered_count,
        info.strategy,
        info.skipped_count,
        excerpt(text, RAW_PREVIEW_CHARS),
    )
    return ParseOutcome(
        success=True,
        raw_input=text,
        data=recovery.data,
        metadata=ParseMetadata(
            parse_status=ParseStatus.MALFORMED,
            extraction_method=method or "lenient",
            validated=schema is not None,
            warnings=info.warnings,
            errors=(str(cause),),
            repairs=repairs,
            recovery_info=info,
        ),
    )


# --- Convenience parsers ---


def parse_array_response(
    text: str, item_schema: SchemaNode | None = None, **kwargs: Any
) -> ParseOutcome[list[Any]]:
    """Parse a response expected to be an array."""
    return parse_response(text, schema=array_of(item_schema), **kwargs)


def parse_object_response(
    text: str,
    properties: dict[str, SchemaNode] | None = None,
    required: list[str] | None = None,
    **kwargs: Any,
) -> ParseOutcome[dict[str, Any]]:
    """Parse a response expected to be an object."""
    return parse_response(
        text, schema=object_of(properties or {}, required=required), **kwargs
    )


def parse_field_response(
    text: str,
    field_name: str,
    field_schema: SchemaNode | None = None,
    **kwargs: Any,
) -> ParseOutcome[Any]:
    """Parse an object response and return only `field_name`."""
    properties = {field_name: field_schema} if field_schema is not None else {}
    outcome = parse_response(
        text, schema=object_of(properties, required=[field_name]), **kwargs
    )
    if not outcome.success:
        return outcome
    return ParseOutcome(
        success=True,
        raw_input=outcome.raw_input,
        metadata=outcome.metadata,
        data=outcome.data[field_name],
    )
