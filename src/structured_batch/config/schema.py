"""Settings schema validated with pydantic-settings.

Defaults here are the lowest-precedence source. The resolver feeds merged
values back through `BatchSettings` so every source gets the same type
coercion and bounds checks.
"""

from __future__ import annotations

from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "STRUCTURED_BATCH_"


class BatchSettings(BaseSettings):
    """Runtime knobs for parsing, retries and batch concurrency."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=None,  # Only used when explicitly requested
        case_sensitive=False,
        extra="ignore",
    )

    # --- Executor ---
    max_retries: int = Field(
        default=2, ge=0, description="Parse-failure retries after the first attempt"
    )
    request_timeout_s: float = Field(
        default=120.0, gt=0, description="Per-attempt backend timeout in seconds"
    )
    temperature: float | None = Field(default=None, ge=0)
    max_tokens: int | None = Field(default=None, ge=1)

    # --- Batch scheduling ---
    concurrency: int = Field(default=3, ge=1, description="Concurrent backend calls")
    breaker_threshold: int = Field(
        default=5, ge=1, description="Consecutive failures that abort a batch"
    )
    yield_every: int = Field(
        default=10, ge=1, description="Emissions between cooperative yields"
    )

    # --- Parsing ---
    lenient: bool = True
    max_depth: int = Field(default=10, ge=1)
    recover_partial: bool = True
    strict_coercion: bool = Field(
        default=False, description="Treat schema coercions as validation errors"
    )

    @classmethod
    def defaults(cls) -> dict[str, Any]:
        """Field defaults without reading the environment."""
        return {name: info.default for name, info in cls.model_fields.items()}

    def to_dict(self) -> dict[str, Any]:
        """Plain mapping of field values."""
        return self.model_dump()
