"""Locate and, when asked, repair a JSON value embedded in model output.

Extraction tries, in order, and the first success wins:

1. A direct parse of the trimmed text.
2. The content of a fenced code block (```` ``` ```` or ```` ```json ````).
3. The first balanced object or array span. Whichever bracket type starts
   earliest in the text is the one scanned.
4. With ``lenient`` enabled, bounded textual repair of the most specific
   candidate (fenced content, then the text from the earliest bracket, then
   the whole text).

Extraction is all-or-nothing: it returns a fully parsed value or raises
`ExtractionError`. It never guesses at the contents of a truncated string.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
import dataclasses
import json
import logging
import re
from typing import Any

from structured_batch.core.exceptions import ExtractionError
from structured_batch.core.types import ExtractionMethod

log = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10

_CODE_BLOCK_RE = re.compile(r"```(?:json)?[ \t]*\n?([\s\S]*?)\n?[ \t]*```", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_$][\w$]*)(\s*:)")
_OPENERS = {"{": "}", "[": "]"}
_CLOSERS = {"}": "{", "]": "["}


@dataclasses.dataclass(frozen=True, slots=True)
class ExtractionOptions:
    """Knobs for `extract_json`."""

    lenient: bool = True
    extract_from_code_blocks: bool = True
    max_depth: int = DEFAULT_MAX_DEPTH

    def __post_init__(self) -> None:
        """Reject a depth bound that could never match anything."""
        if self.max_depth < 1:
            raise ValueError("max_depth must be >= 1")


@dataclasses.dataclass(frozen=True, slots=True)
class ExtractionResult:
    """A decoded value and how it was obtained."""

    value: Any
    method: ExtractionMethod
    repairs: tuple[str, ...] = ()


# --- Lexical helpers ---


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant: {name}")


def loads_strict(text: str) -> Any:
    """`json.loads` that rejects the NaN/Infinity/-Infinity extensions.

    Raises:
        ValueError: Invalid JSON, including those constants.
    """
    return json.loads(text, parse_constant=_reject_constant)


def _try_parse(text: str) -> tuple[bool, Any]:
    try:
        return True, loads_strict(text)
    except (ValueError, RecursionError):
        return False, None


def find_matching_bracket(
    text: str, start: int, max_depth: int = DEFAULT_MAX_DEPTH
) -> int | None:
    """Return the index closing the bracket at `start`, or None.

    Bracket characters inside string literals are ignored. Mismatched
    closers and nesting deeper than `max_depth` both count as no match.
    """
    if start >= len(text) or text[start] not in _OPENERS:
        return None
    stack: list[str] = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        char = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _OPENERS:
            stack.append(char)
            if len(stack) > max_depth:
                return None
        elif char in _CLOSERS:
            if not stack or stack[-1] != _CLOSERS[char]:
                return None
            stack.pop()
            if not stack:
                return i
    return None


def _earliest_bracket(text: str) -> int | None:
    positions = [p for p in (text.find("{"), text.find("[")) if p != -1]
    return min(positions) if positions else None


def find_json_span(text: str, max_depth: int = DEFAULT_MAX_DEPTH) -> str | None:
    """Return the balanced span starting at the earliest bracket, if any."""
    start = _earliest_bracket(text)
    if start is None:
        return None
    end = find_matching_bracket(text, start, max_depth)
    if end is None:
        return None
    return text[start : end + 1]


def iter_array_elements(
    text: str, start: int, max_depth: int = DEFAULT_MAX_DEPTH
) -> Iterator[str]:
    """Yield the raw text of each syntactically complete element of an array.

    `text[start]` must be the opening ``[``. Scanning stops at the closing
    bracket, at the first element that runs off the end of the text and at
    any structural inconsistency. An element that reaches the end of the text
    without a following delimiter is treated as truncated and not yielded.
    """
    if start >= len(text) or text[start] != "[":
        return
    pos = start + 1
    length = len(text)
    while pos < length:
        while pos < length and (text[pos].isspace() or text[pos] == ","):
            pos += 1
        if pos >= length or text[pos] == "]":
            return
        elem_start = pos
        stack: list[str] = []
        in_string = False
        escaped = False
        while pos < length:
            char = text[pos]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
            elif char == '"':
                in_string = True
            elif char in _OPENERS:
                stack.append(char)
                if len(stack) > max_depth:
                    return
            elif char in _CLOSERS:
                if not stack:
                    break  # closer of the enclosing array
                if stack[-1] != _CLOSERS[char]:
                    return
                stack.pop()
            elif char == "," and not stack:
                break
            pos += 1
        else:
            return  # truncated element
        element = text[elem_start:pos].strip()
        if element:
            yield element
        if text[pos] == "]":
            return


def _map_outside_strings(text: str, fn: Callable[[str], str]) -> str:
    """Apply `fn` to every segment of `text` that is not a string literal."""
    parts: list[str] = []
    segment_start = 0
    i = 0
    length = len(text)
    while i < length:
        if text[i] != '"':
            i += 1
            continue
        parts.append(fn(text[segment_start:i]))
        j = i + 1
        escaped = False
        while j < length:
            if escaped:
                escaped = False
            elif text[j] == "\\":
                escaped = True
            elif text[j] == '"':
                break
            j += 1
        parts.append(text[i : j + 1])
        i = j + 1
        segment_start = i
    if segment_start < length:
        parts.append(fn(text[segment_start:]))
    return "".join(parts)


# --- Lenient repairs ---


def _remove_trailing_commas(text: str) -> str:
    return _map_outside_strings(text, lambda s: _TRAILING_COMMA_RE.sub(r"\1", s))


def _convert_single_quotes(text: str) -> str:
    if '"' in text:
        return text
    return text.replace("'", '"')


def _quote_bare_keys(text: str) -> str:
    return _map_outside_strings(text, lambda s: _BARE_KEY_RE.sub(r'\1"\2"\3', s))


def _close_brackets(text: str) -> str:
    """Append the closers needed to balance `text`.

    Leaves the text untouched when it ends inside a string literal, after a
    dangling key separator, or when its brackets are inconsistent.
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _OPENERS:
            stack.append(char)
        elif char in _CLOSERS:
            if not stack or stack[-1] != _CLOSERS[char]:
                return text
            stack.pop()
    if in_string or not stack:
        return text
    body = text.rstrip()
    if body.endswith(":"):
        return text
    if body.endswith(","):
        body = body[:-1].rstrip()
    return body + "".join(_OPENERS[c] for c in reversed(stack))


_REPAIRS: tuple[tuple[str, Callable[[str], str]], ...] = (
    ("trailing-commas", _remove_trailing_commas),
    ("single-quotes", _convert_single_quotes),
    ("bare-keys", _quote_bare_keys),
    ("close-brackets", _close_brackets),
)


def lenient_parse(candidate: str) -> tuple[bool, Any, tuple[str, ...]]:
    """Apply the repairs cumulatively, parsing after each one that changed text.

    Returns ``(ok, value, repairs_applied)``.
    """
    applied: list[str] = []
    current = candidate
    for name, repair in _REPAIRS:
        fixed = repair(current)
        if fixed == current:
            continue
        current = fixed
        applied.append(name)
        ok, value = _try_parse(current)
        if ok:
            return True, value, tuple(applied)
    return False, None, tuple(applied)


# --- Public API ---


def _fenced_content(text: str) -> str | None:
    match = _CODE_BLOCK_RE.search(text)
    if match is None:
        return None
    content = match.group(1).strip()
    return content or None


def _lenient_candidates(text: str, fenced: str | None, max_depth: int) -> list[str]:
    candidates: list[str] = []
    if fenced is not None:
        candidates.append(fenced)
    start = _earliest_bracket(text)
    if start is not None:
        end = find_matching_bracket(text, start, max_depth)
        candidates.append(text[start : end + 1] if end is not None else text[start:])
    candidates.append(text)
    unique: list[str] = []
    for c in candidates:
        if c not in unique:
            unique.append(c)
    return unique


def extract_json(text: str, options: ExtractionOptions | None = None) -> ExtractionResult:
    """Extract a JSON value from model output.

    Raises:
        ExtractionError: ``EMPTY_RESPONSE`` for blank input, ``NO_JSON_FOUND``
            when every step failed.
    """
    opts = options or ExtractionOptions()
    if text is None or not text.strip():
        raise ExtractionError("Empty response received", code="EMPTY_RESPONSE")
    trimmed = text.strip()

    ok, value = _try_parse(trimmed)
    if ok:
        return ExtractionResult(value, "direct")

    fenced = _fenced_content(trimmed) if opts.extract_from_code_blocks else None
    if fenced is not None:
        ok, value = _try_parse(fenced)
        if ok:
            log.debug("Extracted JSON from fenced code block")
            return ExtractionResult(value, "code-block")

    span = find_json_span(trimmed, opts.max_depth)
    if span is not None:
        ok, value = _try_parse(span)
        if ok:
            log.debug("Extracted JSON span embedded in surrounding text")
            return ExtractionResult(value, "lenient")

    if opts.lenient:
        for candidate in _lenient_candidates(trimmed, fenced, opts.max_depth):
            ok, value, repairs = lenient_parse(candidate)
            if ok:
                log.debug("Lenient repair succeeded: %s", ", ".join(repairs))
                return ExtractionResult(value, "lenient", repairs)

    raise ExtractionError(
        "No valid JSON found in response", code="NO_JSON_FOUND", context=trimmed
    )


# --- Value helpers ---


def is_object(value: Any) -> bool:
    """True for decoded JSON objects."""
    return isinstance(value, dict)


def is_array(value: Any) -> bool:
    """True for decoded JSON arrays."""
    return isinstance(value, list)


def get_property(obj: Any, key: str, default: Any = None) -> Any:
    """Return `obj[key]` when `obj` is an object that has it, else `default`."""
    if isinstance(obj, dict) and key in obj:
        return obj[key]
    return default
