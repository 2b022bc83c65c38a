"""Recursive structural schema used for validation and coercion policy.

`SchemaNode` accepts the familiar JSON-schema spellings (`type`, `items`,
`required`, `enum`, `default`, `minLength`, ...) so schemas can be written
as plain dictionaries and loaded with `SchemaNode.model_validate`.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

type SchemaKind = Literal["object", "array", "string", "number", "boolean"]


class SchemaNode(BaseModel):
    """Structural type descriptor for one level of a decoded value."""

    model_config = ConfigDict(
        frozen=True, populate_by_name=True, extra="ignore", strict=False
    )

    kind: SchemaKind = Field(alias="type")
    properties: dict[str, SchemaNode] | None = None
    item_schema: SchemaNode | None = Field(default=None, alias="items")
    required_keys: tuple[str, ...] = Field(default=(), alias="required")
    enum_values: tuple[Any, ...] | None = Field(default=None, alias="enum")
    default_value: Any = Field(default=None, alias="default")
    optional: bool = False
    description: str | None = None

    min_length: int | None = Field(default=None, alias="minLength", ge=0)
    max_length: int | None = Field(default=None, alias="maxLength", ge=0)
    minimum: float | None = None
    maximum: float | None = None

    # Opt-in lax array handling
    allow_single_value_as_array: bool = Field(
        default=False, alias="allowSingleValueAsArray"
    )
    allow_numeric_to_string_array: bool = Field(
        default=False, alias="allowNumericToStringArray"
    )

    @model_validator(mode="after")
    def check_shape(self) -> SchemaNode:
        if self.properties is not None and self.kind != "object":
            raise ValueError("properties are only valid on object schemas")
        if self.item_schema is not None and self.kind != "array":
            raise ValueError("items are only valid on array schemas")
        if self.required_keys and self.kind != "object":
            raise ValueError("required is only valid on object schemas")
        return self

    @property
    def has_default(self) -> bool:
        """True when a default was declared, even an explicit `None`."""
        return "default_value" in self.model_fields_set

    def is_required(self, key: str) -> bool:
        """Whether `key` must be present on objects matching this node."""
        if key not in self.required_keys:
            return False
        prop = (self.properties or {}).get(key)
        return not (prop is not None and prop.optional)

    def single_array_property(self) -> tuple[str, SchemaNode] | None:
        """Return the sole array-typed property of an object schema, if any."""
        if self.kind != "object" or not self.properties:
            return None
        arrays = [(k, v) for k, v in self.properties.items() if v.kind == "array"]
        return arrays[0] if len(arrays) == 1 else None


# --- Convenience constructors ---


def object_of(
    properties: dict[str, SchemaNode],
    *,
    required: list[str] | tuple[str, ...] | None = None,
    **extra: Any,
) -> SchemaNode:
    """Build an object schema."""
    return SchemaNode(
        kind="object", properties=properties, required_keys=tuple(required or ()), **extra
    )


def array_of(items: SchemaNode | None = None, **extra: Any) -> SchemaNode:
    """Build an array schema."""
    return SchemaNode(kind="array", item_schema=items, **extra)


def string(**extra: Any) -> SchemaNode:
    """Build a string schema."""
    return SchemaNode(kind="string", **extra)


def number(**extra: Any) -> SchemaNode:
    """Build a number schema."""
    return SchemaNode(kind="number", **extra)


def boolean(**extra: Any) -> SchemaNode:
    """Build a boolean schema."""
    return SchemaNode(kind="boolean", **extra)


SchemaNode.model_rebuild()
