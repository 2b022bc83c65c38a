"""Feature definitions and an explicit, instance-scoped registry.

There is no module-level registry: callers create a `FeatureRegistry`, fill
it, and hand it to the `FeatureExecutor`. Tests get a fresh one per case.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
import dataclasses
from typing import Any, Literal

from structured_batch.core.exceptions import FeatureNotFoundError
from structured_batch.core.schema import SchemaNode
from structured_batch.core.types import _require

type FeatureCategory = Literal["metadata", "text", "structural", "export"]

_CATEGORIES = ("metadata", "text", "structural", "export")


@dataclasses.dataclass(frozen=True, slots=True)
class FeatureConfig:
    """Static definition of one feature.

    `response_schema` selects structured (JSON) handling; without it the
    response is returned as text, cleaned when `clean_text` is set.
    `transform` post-processes validated data; an exception it raises is a
    terminal `TransformError`.

    `batchable`, `default_batch_size`, `requires_confirmation` and
    `available_placeholders` are caller-facing metadata for UIs and job
    planners. The executor never reads them: a non-batchable feature still
    runs through `execute_batch`, and templates may use any variable.
    """

    id: str
    name: str
    system_prompt: str
    user_prompt_template: str
    category: FeatureCategory = "metadata"
    response_schema: SchemaNode | None = None
    batchable: bool = True
    default_batch_size: int = 10
    requires_confirmation: bool = False
    available_placeholders: tuple[str, ...] = ()
    recover_partial: bool | None = None
    clean_text: bool = False
    transform: Callable[[Any], Any] | None = None

    def __post_init__(self) -> None:
        """Validate invariants."""
        _require(
            condition=isinstance(self.id, str) and self.id.strip() != "",
            message="must be a non-empty str",
            field_name="id",
        )
        _require(
            condition=self.category in _CATEGORIES,
            message=f"must be one of {list(_CATEGORIES)}, got {self.category!r}",
            field_name="category",
        )
        _require(
            condition=self.default_batch_size >= 1,
            message="must be >= 1",
            field_name="default_batch_size",
        )
        _require(
            condition=self.transform is None or callable(self.transform),
            message="must be callable",
            field_name="transform",
            exc=TypeError,
        )
        object.__setattr__(
            self, "available_placeholders", tuple(self.available_placeholders)
        )


class FeatureRegistry:
    """In-memory mapping of feature id to `FeatureConfig`.

    Insertion order is preserved by `all()` and iteration.
    """

    def __init__(self, features: list[FeatureConfig] | None = None) -> None:
        """Create a registry, optionally pre-populated."""
        self._features: dict[str, FeatureConfig] = {}
        for feature in features or ():
            self.register(feature)

    def register(self, feature: FeatureConfig) -> None:
        """Add a feature.

        Raises:
            ValueError: A feature with the same id is already registered.
        """
        if feature.id in self._features:
            raise ValueError(f'Feature "{feature.id}" is already registered')
        self._features[feature.id] = feature

    def get(self, feature_id: str) -> FeatureConfig | None:
        """Return the feature for `feature_id`, if registered."""
        return self._features.get(feature_id)

    def get_or_raise(self, feature_id: str) -> FeatureConfig:
        """Return the feature for `feature_id` or raise `FeatureNotFoundError`."""
        feature = self._features.get(feature_id)
        if feature is None:
            raise FeatureNotFoundError(feature_id)
        return feature

    def has(self, feature_id: str) -> bool:
        """Whether `feature_id` is registered."""
        return feature_id in self._features

    def all(self) -> list[FeatureConfig]:
        """All registered features, in registration order."""
        return list(self._features.values())

    def by_category(self, category: FeatureCategory) -> list[FeatureConfig]:
        """Registered features in `category`."""
        return [f for f in self._features.values() if f.category == category]

    def unregister(self, feature_id: str) -> bool:
        """Remove a feature; returns whether it was present."""
        return self._features.pop(feature_id, None) is not None

    def clear(self) -> None:
        """Remove every feature."""
        self._features.clear()

    def __len__(self) -> int:
        return len(self._features)

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self._features

    def __iter__(self) -> Iterator[FeatureConfig]:
        return iter(list(self._features.values()))
