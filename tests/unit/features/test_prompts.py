"""Prompt template compilation and message building."""

import pytest

from structured_batch.core.exceptions import ConfigurationError
from structured_batch.features.prompts import (
    CustomPrompt,
    build_messages,
    compile_template,
)
from structured_batch.features.registry import FeatureConfig

FEATURE = FeatureConfig(
    id="summary",
    name="Summary",
    system_prompt="Summarize in {{ language }}.",
    user_prompt_template="{{ text }}\n\nTitle: {{ title }}",
)


class TestCompileTemplate:
    @pytest.mark.unit
    def test_substitutes_variables(self):
        assert compile_template("Hi {{ name }}!", {"name": "Ada"}) == "Hi Ada!"

    @pytest.mark.unit
    def test_missing_variables_render_empty_and_trim(self):
        assert compile_template("  {{ missing }} tail  ") == "tail"

    @pytest.mark.unit
    def test_strict_mode_reports_missing_variables(self):
        with pytest.raises(ConfigurationError, match="Missing prompt variable"):
            compile_template("{{ missing }}", strict=True)

    @pytest.mark.unit
    def test_syntax_error_is_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            compile_template("{% if %}")
        assert "line" in exc_info.value.details

    @pytest.mark.unit
    def test_no_html_escaping(self):
        assert compile_template("{{ text }}", {"text": "<b>&</b>"}) == "<b>&</b>"


class TestBuildMessages:
    @pytest.mark.unit
    def test_returns_system_then_user(self):
        messages = build_messages(
            FEATURE, {"language": "French", "text": "Body", "title": "T"}
        )
        assert [m.role for m in messages] == ["system", "user"]
        assert messages[0].content == "Summarize in French."
        assert messages[1].content == "Body\n\nTitle: T"

    @pytest.mark.unit
    def test_custom_prompt_overrides_only_given_parts(self):
        messages = build_messages(
            FEATURE,
            {"language": "French", "text": "Body"},
            CustomPrompt(user_prompt_template="Just {{ text }}"),
        )
        assert messages[0].content == "Summarize in French."
        assert messages[1].content == "Just Body"
