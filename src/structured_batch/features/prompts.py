"""Compile feature prompt templates into the message pair sent to a backend."""

from __future__ import annotations

import dataclasses
from typing import Any

from jinja2 import (
    Environment,
    StrictUndefined,
    TemplateSyntaxError,
    Undefined,
    UndefinedError,
)

from structured_batch.backends.base import ChatMessage
from structured_batch.core.exceptions import ConfigurationError
from structured_batch.features.registry import FeatureConfig

# Missing placeholders render as empty strings; features often leave
# optional context out.
_ENV = Environment(
    undefined=Undefined,
    autoescape=False,  # noqa: S701 - prompts are plain text, not HTML
    keep_trailing_newline=False,
)
_STRICT_ENV = Environment(
    undefined=StrictUndefined,
    autoescape=False,  # noqa: S701
    keep_trailing_newline=False,
)


@dataclasses.dataclass(frozen=True, slots=True)
class CustomPrompt:
    """Per-call override of a feature's prompts. Unset parts keep the default."""

    system_prompt: str | None = None
    user_prompt_template: str | None = None


def compile_template(
    template: str, variables: dict[str, Any] | None = None, *, strict: bool = False
) -> str:
    """Render a Jinja2 template (``{{ name }}`` placeholders), trimmed.

    Raises:
        ConfigurationError: The template does not parse, or `strict` is set
            and a placeholder has no value.
    """
    env = _STRICT_ENV if strict else _ENV
    try:
        rendered = env.from_string(template).render(**(variables or {}))
    except TemplateSyntaxError as exc:
        raise ConfigurationError(
            f"Invalid prompt template: {exc.message}",
            details={"line": exc.lineno},
        ) from exc
    except UndefinedError as exc:
        raise ConfigurationError(f"Missing prompt variable: {exc.message}") from exc
    return rendered.strip()


def build_messages(
    feature: FeatureConfig,
    variables: dict[str, Any] | None = None,
    custom_prompt: CustomPrompt | None = None,
) -> list[ChatMessage]:
    """Return the ``[system, user]`` message pair for `feature`."""
    system = feature.system_prompt
    user_template = feature.user_prompt_template
    if custom_prompt is not None:
        system = custom_prompt.system_prompt or system
        user_template = custom_prompt.user_prompt_template or user_template
    return [
        ChatMessage("system", compile_template(system, variables)),
        ChatMessage("user", compile_template(user_template, variables)),
    ]
