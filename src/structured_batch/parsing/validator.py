"""Structural validation and coercion of decoded values against a `SchemaNode`.

Models often get types almost right, so numeric strings and numbers are
coerced into each other instead of rejected, and a non-empty array given
where a string or number is expected is collapsed (joined with spaces, or
its first numeric element). Every coercion produces exactly
one warning. With ``strict=True`` each coercion is reported as an error
instead, and the value is left untouched.
"""

from __future__ import annotations

from collections.abc import Callable
import copy
import dataclasses
import json
import math
from typing import Any

from structured_batch.core.schema import SchemaNode


@dataclasses.dataclass(frozen=True, slots=True)
class ValidationResult:
    """Output of `validate`.

    `data` is the post-coercion, post-defaults value. It is None when the
    value failed validation.
    """

    valid: bool
    data: Any
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


class _Context:
    __slots__ = ("apply_defaults", "errors", "strict", "warnings")

    def __init__(self, *, apply_defaults: bool, strict: bool) -> None:
        self.apply_defaults = apply_defaults
        self.strict = strict
        self.errors: list[str] = []
        self.warnings: list[str] = []

    def error(self, path: str, message: str) -> None:
        self.errors.append(f"{path or 'root'}: {message}")

    def coerce(self, path: str, message: str) -> bool:
        """Record a coercion; returns False when strict mode forbids it."""
        if self.strict:
            self.error(path, f"{message} (coercion disabled in strict mode)")
            return False
        self.warnings.append(f"{path or 'root'}: {message}")
        return True


def type_name(value: Any) -> str:
    """Name of a decoded value's JSON type."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _child_path(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def _parse_number(text: str) -> int | float | None:
    candidate = text.strip()
    if not candidate:
        return None
    try:
        return int(candidate)
    except ValueError:
        pass
    try:
        parsed = float(candidate)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def _number_to_string(value: int | float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _element_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return _number_to_string(value)
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _array_to_scalar(items: list[Any], kind: str) -> tuple[Any, str] | None:
    """Collapse a non-empty array into a string or number, with the warning."""
    if not items:
        return None
    if kind == "string":
        return " ".join(_element_text(v) for v in items), "array coerced to string"
    if kind == "number":
        first = items[0]
        if type_name(first) == "number":
            parsed = first
        elif isinstance(first, str):
            parsed = _parse_number(first)
        else:
            parsed = None
        if parsed is not None:
            return parsed, "array coerced to number from first element"
    return None


def _in_enum(value: Any, allowed: tuple[Any, ...]) -> bool:
    # Type-aware membership: True must not match 1, "1" must not match 1.
    return any(type_name(value) == type_name(a) and value == a for a in allowed)


def _validate_node(value: Any, node: SchemaNode, path: str, ctx: _Context) -> Any:
    if value is None:
        if node.has_default and ctx.apply_defaults:
            return copy.deepcopy(node.default_value)
        ctx.error(path, f"Expected {node.kind}, got null")
        return value

    if node.kind == "array" and not isinstance(value, list):
        if node.allow_single_value_as_array and ctx.coerce(
            path, "single value coerced to array"
        ):
            value = [value]

    actual = type_name(value)
    if actual != node.kind:
        if actual == "array" and node.kind in ("string", "number"):
            collapsed = _array_to_scalar(value, node.kind)
            if collapsed is not None:
                if not ctx.coerce(path, collapsed[1]):
                    return value
                value, actual = collapsed[0], node.kind
        if node.kind == "string" and actual == "number":
            if ctx.coerce(path, "number coerced to string"):
                return _number_to_string(value)
            return value
        if node.kind == "number" and actual == "string":
            parsed = _parse_number(value)
            if parsed is not None:
                if ctx.coerce(path, "string coerced to number"):
                    value, actual = parsed, "number"
                else:
                    return value
        if actual != node.kind:
            ctx.error(path, f"Expected {node.kind}, got {actual}")
            return value

    if node.enum_values is not None and not _in_enum(value, node.enum_values):
        allowed = ", ".join(str(v) for v in node.enum_values)
        ctx.error(path, f"Value must be one of: {allowed}")

    if node.kind == "object":
        return _validate_object(value, node, path, ctx)
    if node.kind == "array":
        return _validate_array(value, node, path, ctx)
    if node.kind == "string":
        _check_string(value, node, path, ctx)
    elif node.kind == "number":
        _check_number(value, node, path, ctx)
    return value


def _validate_object(
    value: dict[str, Any], node: SchemaNode, path: str, ctx: _Context
) -> dict[str, Any]:
    result = dict(value)  # unknown keys pass through
    properties = node.properties or {}

    for key, prop in properties.items():
        present = result.get(key)
        if present is None:
            if prop.has_default and ctx.apply_defaults:
                result[key] = copy.deepcopy(prop.default_value)
            continue
        result[key] = _validate_node(present, prop, _child_path(path, key), ctx)

    for key in node.required_keys:
        if not node.is_required(key):
            continue
        if result.get(key) is None:
            ctx.error(_child_path(path, key), f"Required field missing: {key}")

    return result


def _validate_array(
    value: list[Any], node: SchemaNode, path: str, ctx: _Context
) -> list[Any]:
    item_schema = node.item_schema
    if item_schema is None:
        return list(value)
    out: list[Any] = []
    for index, item in enumerate(value):
        item_path = f"{path}[{index}]"
        if (
            node.allow_numeric_to_string_array
            and item_schema.kind == "string"
            and type_name(item) == "number"
        ):
            if ctx.coerce(item_path, "number coerced to string in array"):
                out.append(_number_to_string(item))
                continue
            out.append(item)
            continue
        out.append(_validate_node(item, item_schema, item_path, ctx))
    return out


def _check_string(value: str, node: SchemaNode, path: str, ctx: _Context) -> None:
    if node.min_length is not None and len(value) < node.min_length:
        ctx.error(path, f"String too short (min: {node.min_length})")
    if node.max_length is not None and len(value) > node.max_length:
        ctx.error(path, f"String too long (max: {node.max_length})")


def _check_number(
    value: int | float, node: SchemaNode, path: str, ctx: _Context
) -> None:
    if node.minimum is not None and value < node.minimum:
        ctx.error(path, f"Number too small (min: {node.minimum:g})")
    if node.maximum is not None and value > node.maximum:
        ctx.error(path, f"Number too large (max: {node.maximum:g})")


def validate(
    value: Any,
    schema: SchemaNode,
    *,
    apply_defaults: bool = True,
    strict: bool = False,
) -> ValidationResult:
    """Validate `value` against `schema`.

    The input is never mutated; containers are copied as they are checked.

    Example:
        >>> from structured_batch.core.schema import object_of, string, number
        >>> schema = object_of(
        ...     {"name": string(), "age": number(default=0)}, required=["name"]
        ... )
        >>> validate({"name": "Alice"}, schema).data
        {'name': 'Alice', 'age': 0}
    """
    ctx = _Context(apply_defaults=apply_defaults, strict=strict)
    data = _validate_node(value, schema, "", ctx)
    valid = not ctx.errors
    return ValidationResult(
        valid=valid,
        data=data if valid else None,
        errors=tuple(ctx.errors),
        warnings=tuple(ctx.warnings),
    )


def make_item_guard(
    schema: SchemaNode, *, strict: bool = False
) -> Callable[[Any], bool]:
    """Return a predicate that accepts values satisfying `schema`."""

    def guard(value: Any) -> bool:
        return validate(value, schema, strict=strict).valid

    return guard
