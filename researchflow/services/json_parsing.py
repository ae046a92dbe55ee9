"""Tolerant JSON extraction from free-form model output."""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Optional

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)

_decoder = json.JSONDecoder()


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the text unchanged."""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def iter_json_values(text: str):
    """Yield ``(start, end, value)`` for every well-formed JSON object or list in ``text``.

    Scans left to right from each ``{`` / ``[`` and skips past a decoded value,
    so nested values are not yielded separately.
    """
    index = 0
    length = len(text)
    while index < length:
        if text[index] not in "{[":
            index += 1
            continue
        try:
            value, end = _decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index += 1
            continue
        yield index, end, value
        index = end


def find_json_value(
    text: str,
    accept: Callable[[Any], bool],
) -> Optional[tuple[int, int, Any]]:
    """First JSON value in ``text`` (fences stripped first) that ``accept`` approves."""
    for candidate in (strip_code_fences(text), text):
        for start, end, value in iter_json_values(candidate):
            if accept(value):
                return start, end, value
    return None


def extract_json_object(raw_text: str) -> dict[str, Any]:
    found = find_json_value(raw_text, lambda value: isinstance(value, dict))
    if found is None:
        raise json.JSONDecodeError("object not found", raw_text, 0)
    return found[2]
