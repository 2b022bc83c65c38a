"""Salvage independently valid array elements from malformed model output.

Recovery is the last line of defence before a parse is declared a failure.
It never invents data: every item it returns was present in the raw text as
a complete element and passed the item schema on its own.

Strategies run in order and the first one that recovers at least one item
wins. Every strategy that ran is recorded in the resulting `RecoveryInfo`.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
import dataclasses
import logging
import re
from typing import Any

from structured_batch.core.exceptions import StructuredBatchError
from structured_batch.core.schema import SchemaNode
from structured_batch.core.types import RecoveryAttempt, RecoveryInfo
from structured_batch.parsing.extraction import (
    DEFAULT_MAX_DEPTH,
    ExtractionOptions,
    extract_json,
    get_property,
    iter_array_elements,
    loads_strict,
)
from structured_batch.parsing.validator import validate

log = logging.getLogger(__name__)

COMPLETE_ELEMENTS = "complete-elements"
LENIENT_PARSE = "lenient-parse"
WRAPPED_ARRAY_PROPERTY = "wrapped-array-property"


@dataclasses.dataclass(frozen=True, slots=True)
class Harvest:
    """What a single strategy produced."""

    value: Any
    recovered: int
    skipped: int = 0
    warnings: tuple[str, ...] = ()
    wrapped_property: str | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class RecoveryStrategy:
    """A named function mapping raw text to a `Harvest`."""

    name: str
    attempt: Callable[[str], Harvest]


@dataclasses.dataclass(frozen=True, slots=True)
class RecoveryResult:
    """Outcome of `apply_recovery_strategies` / `recover_partial`."""

    data: Any
    info: RecoveryInfo

    @property
    def success(self) -> bool:
        """True when some strategy recovered at least one item."""
        return self.info.recovered


# --- Item filtering ---


def _filter_items(
    candidates: Sequence[Any],
    item_schema: SchemaNode | None,
    *,
    strict: bool,
    apply_defaults: bool = True,
) -> tuple[list[Any], int, list[str]]:
    kept: list[Any] = []
    warnings: list[str] = []
    skipped = 0
    for index, item in enumerate(candidates):
        if item_schema is None:
            kept.append(item)
            continue
        result = validate(
            item, item_schema, apply_defaults=apply_defaults, strict=strict
        )
        if result.valid:
            kept.append(result.data)
            warnings.extend(f"item {index}: {w}" for w in result.warnings)
        else:
            skipped += 1
    return kept, skipped, warnings


def _array_start(raw: str, property_name: str | None) -> int | None:
    if property_name is None:
        pos = raw.find("[")
        return pos if pos != -1 else None
    match = re.search(rf'"{re.escape(property_name)}"\s*:\s*\[', raw)
    return match.end() - 1 if match else None


def harvest_complete_elements(
    raw: str,
    item_schema: SchemaNode | None,
    *,
    property_name: str | None = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
    strict: bool = False,
    apply_defaults: bool = True,
) -> Harvest:
    """Parse each complete element of the target array on its own.

    Elements that are syntactically broken or fail the item schema are
    skipped. Scanning stops at the first truncated element.
    """
    start = _array_start(raw, property_name)
    if start is None:
        return Harvest([], 0)
    parsed: list[Any] = []
    skipped = 0
    for element in iter_array_elements(raw, start, max_depth):
        try:
            parsed.append(loads_strict(element))
        except (ValueError, RecursionError):
            skipped += 1
    kept, invalid, warnings = _filter_items(
        parsed, item_schema, strict=strict, apply_defaults=apply_defaults
    )
    return Harvest(kept, len(kept), skipped + invalid, tuple(warnings))


def harvest_lenient(
    raw: str,
    item_schema: SchemaNode | None,
    *,
    property_name: str | None = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
    strict: bool = False,
    apply_defaults: bool = True,
) -> Harvest:
    """Lenient-parse the whole text and filter the array through the item schema."""
    extracted = extract_json(
        raw, ExtractionOptions(lenient=True, max_depth=max_depth)
    ).value
    if property_name is not None:
        extracted = get_property(extracted, property_name)
    if not isinstance(extracted, list):
        raise ValueError("lenient parse did not produce an array")
    kept, skipped, warnings = _filter_items(
        extracted, item_schema, strict=strict, apply_defaults=apply_defaults
    )
    return Harvest(kept, len(kept), skipped, tuple(warnings))


# --- Strategy factories ---


def complete_elements_strategy(
    item_schema: SchemaNode | None,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    strict: bool = False,
    apply_defaults: bool = True,
) -> RecoveryStrategy:
    """Strategy 1: independently parse syntactically complete elements."""
    return RecoveryStrategy(
        COMPLETE_ELEMENTS,
        lambda raw: harvest_complete_elements(
            raw,
            item_schema,
            max_depth=max_depth,
            strict=strict,
            apply_defaults=apply_defaults,
        ),
    )


def lenient_parse_strategy(
    item_schema: SchemaNode | None,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    strict: bool = False,
    apply_defaults: bool = True,
) -> RecoveryStrategy:
    """Strategy 2: lenient parse, then filter items."""
    return RecoveryStrategy(
        LENIENT_PARSE,
        lambda raw: harvest_lenient(
            raw,
            item_schema,
            max_depth=max_depth,
            strict=strict,
            apply_defaults=apply_defaults,
        ),
    )


def wrapped_array_strategy(
    schema: SchemaNode,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    strict: bool = False,
    apply_defaults: bool = True,
) -> RecoveryStrategy:
    """Strategy 3: recover the sole array property of an object schema.

    Runs strategies 1 and 2 against the property's item schema, re-wraps the
    items as ``{property: items}`` and re-validates the wrapper.
    """
    found = schema.single_array_property()

    def attempt(raw: str) -> Harvest:
        if found is None:
            raise ValueError("schema has no single array property")
        prop, prop_schema = found
        knobs: dict[str, Any] = {
            "property_name": prop,
            "max_depth": max_depth,
            "strict": strict,
            "apply_defaults": apply_defaults,
        }
        item_schema = prop_schema.item_schema
        harvest = harvest_complete_elements(raw, item_schema, **knobs)
        if not harvest.recovered:
            harvest = harvest_lenient(raw, item_schema, **knobs)
        if not harvest.recovered:
            return dataclasses.replace(harvest, value=None, wrapped_property=prop)
        wrapper = validate(
            {prop: harvest.value},
            schema,
            apply_defaults=apply_defaults,
            strict=strict,
        )
        if not wrapper.valid:
            raise ValueError(
                "re-wrapped items failed validation: " + "; ".join(wrapper.errors)
            )
        return Harvest(
            wrapper.data,
            harvest.recovered,
            harvest.skipped,
            harvest.warnings + wrapper.warnings,
            wrapped_property=prop,
        )

    return RecoveryStrategy(WRAPPED_ARRAY_PROPERTY, attempt)


def standard_strategies(
    schema: SchemaNode | None,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    strict: bool = False,
    apply_defaults: bool = True,
) -> list[RecoveryStrategy]:
    """The default ordered strategy list for a target schema."""
    if schema is None:
        return [
            complete_elements_strategy(None, max_depth=max_depth),
            lenient_parse_strategy(None, max_depth=max_depth),
        ]
    knobs: dict[str, Any] = {
        "max_depth": max_depth,
        "strict": strict,
        "apply_defaults": apply_defaults,
    }
    if schema.kind == "array":
        return [
            complete_elements_strategy(schema.item_schema, **knobs),
            lenient_parse_strategy(schema.item_schema, **knobs),
        ]
    if schema.single_array_property() is not None:
        return [wrapped_array_strategy(schema, **knobs)]
    return []


# --- Orchestration ---


def apply_recovery_strategies(
    raw: str, strategies: Sequence[RecoveryStrategy]
) -> RecoveryResult:
    """Run `strategies` in order; the first that recovers anything wins."""
    attempts: list[RecoveryAttempt] = []
    for strategy in strategies:
        try:
            harvest = strategy.attempt(raw)
        except (StructuredBatchError, ValueError) as exc:
            log.debug("Recovery strategy %s failed: %s", strategy.name, exc)
            attempts.append(RecoveryAttempt(strategy.name, error=str(exc)))
            continue
        attempts.append(
            RecoveryAttempt(strategy.name, harvest.recovered, harvest.skipped)
        )
        if harvest.recovered > 0:
            return RecoveryResult(
                data=harvest.value,
                info=RecoveryInfo(
                    strategy=strategy.name,
                    recovered_count=harvest.recovered,
                    skipped_count=harvest.skipped,
                    attempts=tuple(attempts),
                    wrapped_property=harvest.wrapped_property,
                    warnings=harvest.warnings,
                ),
            )
    return RecoveryResult(
        data=None,
        info=RecoveryInfo(
            strategy=None,
            recovered_count=0,
            skipped_count=max((a.skipped for a in attempts), default=0),
            attempts=tuple(attempts),
        ),
    )


def recover_partial(
    raw: str,
    schema: SchemaNode | None = None,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    strict: bool = False,
    apply_defaults: bool = True,
) -> RecoveryResult:
    """Recover valid items from `raw` for an array schema, an object schema
    with one array property, or no schema at all."""
    strategies = standard_strategies(
        schema, max_depth=max_depth, strict=strict, apply_defaults=apply_defaults
    )
    if not strategies:
        return RecoveryResult(
            data=None,
            info=RecoveryInfo(strategy=None, recovered_count=0, skipped_count=0),
        )
    result = apply_recovery_strategies(raw, strategies)
    if result.success:
        log.debug(
            "Recovered %d item(s) via %s, skipped %d",
            result.info.recovered_count,
            result.info.strategy,
            result.info.skipped_count,
        )
    return result
