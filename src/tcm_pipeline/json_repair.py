"""
Best-effort structural repair of JSON produced by generative models.

Handles: markdown code fences, prose around the object, orphan string
fragments in key position, trailing commas, literal newlines inside strings,
and output truncated mid-object. Valid JSON is never modified.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from typing import Any

import structlog

from .errors import JSONRepairError

log = structlog.get_logger()

_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n?|\n?```")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def _string_end(text: str, start: int) -> int:
    """Index just past the string literal opening at ``start`` (len(text) if unterminated)."""
    i = start + 1
    n = len(text)
    while i < n:
        c = text[i]
        if c == "\\":
            i += 2
            continue
        if c == '"':
            return i + 1
        i += 1
    return n


def isolate_outer_value(text: str) -> str:
    """Drop prose before the first ``{``/``[`` and anything after its balanced close."""
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return text
    start = min(starts)
    depth = 0
    i = start
    n = len(text)
    while i < n:
        c = text[i]
        if c == '"':
            i = _string_end(text, i)
            continue
        if c in "{[":
            depth += 1
        elif c in "}]":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
        i += 1
    return text[start:]


def fix_newlines_in_strings(text: str) -> str:
    out: list[str] = []
    in_string = False
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c == "\\" and in_string and i + 1 < n:
            out.append(text[i : i + 2])
            i += 2
            continue
        if c == '"':
            in_string = not in_string
        out.append(" " if c == "\n" and in_string else c)
        i += 1
    return "".join(out)


def _pop_trailing_comma(out: list[str]) -> bool:
    while out and out[-1].isspace():
        out.pop()
    if out and out[-1] == ",":
        out.pop()
        return True
    return False


def drop_orphan_strings(text: str) -> str:
    """Remove string fragments sitting where an object key belongs but not followed by ``:``.

    ``{"a": "b", "orphan"}`` -> ``{"a": "b"}``. Arrays are left untouched.
    """
    out: list[str] = []
    # Each frame: [opener, expect] where expect is one of key/colon/value/comma for objects.
    stack: list[list[str | None]] = []
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        frame = stack[-1] if stack else None
        in_object = frame is not None and frame[0] == "{"
        if c == '"':
            end = _string_end(text, i)
            if in_object and frame[1] == "key":
                k = end
                while k < n and text[k].isspace():
                    k += 1
                if k >= n or text[k] != ":":
                    if not _pop_trailing_comma(out) and k < n and text[k] == ",":
                        end = k + 1
                    frame[1] = "comma" if out and out[-1] not in "{" else "key"
                    i = end
                    continue
                frame[1] = "colon"
            elif in_object and frame[1] == "value":
                frame[1] = "comma"
            out.append(text[i:end])
            i = end
            continue
        if c in "{[":
            if in_object and frame[1] == "value":
                frame[1] = "comma"
            stack.append(["{", "key"] if c == "{" else ["[", None])
        elif c in "}]":
            if stack:
                stack.pop()
        elif in_object and c == ":":
            frame[1] = "value"
        elif in_object and c == ",":
            frame[1] = "key"
        elif in_object and frame[1] == "value" and not c.isspace():
            frame[1] = "comma"
        out.append(c)
        i += 1
    return "".join(out)


def drop_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def close_truncated(text: str) -> str:
    """Close an unterminated string and any open brackets, innermost first."""
    text = re.sub(r",\s*$", "", text.rstrip())
    stack: list[str] = []
    in_string = False
    i = 0
    n = len(text)
    while i < n:
        c = text[i]
        if c == "\\" and in_string:
            i += 2
            continue
        if c == '"':
            in_string = not in_string
        elif not in_string:
            if c in "{[":
                stack.append(c)
            elif c == "}" and stack and stack[-1] == "{":
                stack.pop()
            elif c == "]" and stack and stack[-1] == "[":
                stack.pop()
        i += 1
    if in_string:
        text += '"'
    for opener in reversed(stack):
        text += "]" if opener == "[" else "}"
    return text


_REPAIRS: tuple[tuple[str, Callable[[str], str]], ...] = (
    ("isolate_outer_value", isolate_outer_value),
    ("fix_newlines_in_strings", fix_newlines_in_strings),
    ("drop_orphan_strings", drop_orphan_strings),
    ("drop_trailing_commas", drop_trailing_commas),
    ("close_truncated", close_truncated),
)


def _parses(text: str) -> bool:
    try:
        json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return False
    return True


def repair_json(text: str) -> str:
    """Apply the bounded repair steps in order, stopping at the first text that parses.

    Returns the best-effort result; callers must still parse it.
    """
    current = strip_code_fences(text)
    if _parses(current):
        return current
    for name, step in _REPAIRS:
        current = step(current)
        if _parses(current):
            log.debug("json_repair_applied", last_step=name)
            return current
    return current


def parse_json_lenient(text: str) -> Any:
    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except (json.JSONDecodeError, ValueError):
        pass
    repaired = repair_json(cleaned)
    try:
        return json.loads(repaired)
    except (json.JSONDecodeError, ValueError) as e:
        raise JSONRepairError(f"Could not parse model output as JSON: {e}") from e
