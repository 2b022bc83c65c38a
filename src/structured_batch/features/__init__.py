"""Feature definitions, the feature registry and prompt compilation."""

from structured_batch.features.prompts import (
    CustomPrompt,
    build_messages,
    compile_template,
)
from structured_batch.features.registry import FeatureConfig, FeatureRegistry

__all__ = [
    "CustomPrompt",
    "FeatureConfig",
    "FeatureRegistry",
    "build_messages",
    "compile_template",
]
