"""Configuration data types: resolve once, freeze, then flow.

`ResolvedConfig` carries audit metadata (where each value came from);
`FrozenConfig` is the immutable form handed to the executor and scheduler.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal, NamedTuple

ConfigOrigin = Literal["programmatic", "env", "file", "default"]
SourceMap = Mapping[str, ConfigOrigin]

FIELD_ORDER = (
    "max_retries",
    "request_timeout_s",
    "temperature",
    "max_tokens",
    "concurrency",
    "breaker_threshold",
    "yield_every",
    "lenient",
    "max_depth",
    "recover_partial",
    "strict_coercion",
)


class ResolvedConfig(NamedTuple):
    """Configuration after merging every source, before freezing."""

    max_retries: int
    request_timeout_s: float
    temperature: float | None
    max_tokens: int | None
    concurrency: int
    breaker_threshold: int
    yield_every: int
    lenient: bool
    max_depth: int
    recover_partial: bool
    strict_coercion: bool

    # Audit metadata: origin of each field
    origin: SourceMap

    def to_frozen(self) -> FrozenConfig:
        """Drop audit metadata and freeze."""
        return FrozenConfig(**{f: getattr(self, f) for f in FIELD_ORDER})

    def with_overrides(self, **overrides: object) -> ResolvedConfig:
        """Return a copy with programmatic overrides applied. Unknown keys are ignored."""
        values = self._asdict()
        origin = dict(self.origin)
        for field, value in overrides.items():
            if field in FIELD_ORDER:
                values[field] = value
                origin[field] = "programmatic"
        values["origin"] = origin
        return ResolvedConfig(**values)

    def audit(self) -> str:
        """One ``field: origin:value`` line per field."""
        lines = []
        for field in FIELD_ORDER:
            origin = self.origin.get(field, "default")
            value = getattr(self, field)
            if origin == "env":
                lines.append(f"{field}: env:STRUCTURED_BATCH_{field.upper()}={value}")
            else:
                lines.append(f"{field}: {origin}:{value}")
        return "\n".join(lines)


@dataclass(frozen=True)
class FrozenConfig:
    """Immutable configuration consumed by library code."""

    max_retries: int = 2
    request_timeout_s: float = 120.0
    temperature: float | None = None
    max_tokens: int | None = None
    concurrency: int = 3
    breaker_threshold: int = 5
    yield_every: int = 10
    lenient: bool = True
    max_depth: int = 10
    recover_partial: bool = True
    strict_coercion: bool = False
