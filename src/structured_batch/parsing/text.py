"""Clean-up for plain-text (non-JSON) model responses.

Text features get back prose that is often wrapped in quotes or code fences,
prefixed with a "Here is the revised text:" preamble, or replaced outright by
a refusal. These helpers strip the artifacts and, when an original text is
supplied, fall back to it on error-like responses.
"""

from __future__ import annotations

from collections.abc import Sequence
import dataclasses
import re

DEFAULT_ERROR_PATTERNS: tuple[str, ...] = (
    "i cannot",
    "i can't",
    "i'm sorry",
    "i am sorry",
    "as an ai",
    "as a language model",
    "i don't have",
    "i do not have",
    "error:",
    "apologies",
    "unfortunately",
)

_QUOTE_PAIRS = (('"', '"'), ("'", "'"), ("“", "”"), ("‘", "’"))

_PREAMBLE_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^here is the (?:revised|corrected|fixed|updated) (?:text|version|transcript)[:\s]*",
        r"^(?:revised|corrected|fixed|updated) (?:text|version|transcript)[:\s]*",
        r"^the (?:revised|corrected|fixed) (?:text|version) is[:\s]*",
        r"^here(?:'s| is) (?:the|your) (?:revised|corrected) (?:text|version)[:\s]*",
    )
)

_PARAGRAPH_BREAK_RE = re.compile(r"\n\n+")


@dataclasses.dataclass(frozen=True, slots=True)
class TextParseResult:
    """Cleaned text plus what happened along the way."""

    text: str
    was_error: bool = False
    used_fallback: bool = False
    warnings: tuple[str, ...] = ()


def strip_quotes(text: str) -> str:
    """Remove one pair of matching quotes (straight or smart) around `text`."""
    result = text.strip()
    for opening, closing in _QUOTE_PAIRS[:2]:
        if len(result) >= 2 and result.startswith(opening) and result.endswith(closing):
            result = result[1:-1]
            break
    for opening, closing in _QUOTE_PAIRS[2:]:
        if len(result) >= 2 and result.startswith(opening) and result.endswith(closing):
            result = result[1:-1]
            break
    return result


def strip_code_blocks(text: str) -> str:
    """Unwrap a response fenced in ``` or a single inline backtick pair."""
    result = text.strip()
    if len(result) >= 6 and result.startswith("```") and result.endswith("```"):
        result = result[3:-3].strip()
        newline = result.find("\n")
        # A short first line with no spaces is a language tag.
        if 0 < newline < 20 and " " not in result[:newline]:
            result = result[newline + 1 :].strip()
    if (
        len(result) >= 2
        and result.startswith("`")
        and result.endswith("`")
        and "\n" not in result
    ):
        result = result[1:-1]
    return result


def looks_like_error(
    text: str, patterns: Sequence[str] = DEFAULT_ERROR_PATTERNS
) -> bool:
    """Whether `text` reads like a refusal or error message."""
    lowered = text.lower()
    return any(p in lowered for p in patterns)


def extract_first_paragraph(text: str) -> str:
    """Return the first paragraph, dropping trailing explanations."""
    first = _PARAGRAPH_BREAK_RE.split(text)[0].strip()
    return first or text


def remove_preamble(text: str) -> str:
    """Drop leading "Here is the revised text:" style prefixes."""
    result = text
    for pattern in _PREAMBLE_PATTERNS:
        result = pattern.sub("", result)
    return result.strip()


def parse_text_response(
    response: str,
    *,
    original_text: str | None = None,
    remove_quotes: bool = True,
    remove_code_blocks: bool = True,
    detect_errors: bool = True,
    error_patterns: Sequence[str] = DEFAULT_ERROR_PATTERNS,
) -> TextParseResult:
    """Clean a plain-text response.

    When `detect_errors` is on and the response looks like a refusal, the
    result is flagged ``was_error`` and, if `original_text` was given, the
    original is returned in its place.
    """
    warnings: list[str] = []
    text = response.strip()
    if remove_quotes:
        text = strip_quotes(text)
    if remove_code_blocks:
        text = strip_code_blocks(text)

    was_error = False
    used_fallback = False
    if detect_errors and looks_like_error(text, error_patterns):
        was_error = True
        warnings.append(f'Response appears to be an error: "{text[:100]}..."')
        if original_text:
            text = original_text
            used_fallback = True
            warnings.append("Falling back to original text")

    return TextParseResult(text, was_error, used_fallback, tuple(warnings))
