"""Recover JSON values from noisy model output.

Extraction policy, first hit wins. Objects are searched before arrays at every stage,
so a bracketed aside in prose never shadows the object that follows it.

1. fenced code blocks (```json or bare ```), parsed directly;
2. a bracket-balanced scan over the text that respects string escaping;
3. the same scan over a repaired copy (trailing commas, single quotes, unquoted keys);
4. ```yaml fenced blocks parsed with ``yaml.safe_load``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterator
from typing import Final

import yaml

NO_JSON_FOUND: Final[str] = "No valid JSON found in response"

_FENCED_BLOCK_RE: Final[re.Pattern[str]] = re.compile(
    r"(?P<fence>`{3,})(?P<lang>[^\n`]*)\n(?P<body>.*?)(?:\n(?P=fence))",
    flags=re.DOTALL,
)
_TRAILING_COMMA_RE: Final[re.Pattern[str]] = re.compile(r",(\s*[}\]])")
_UNQUOTED_KEY_RE: Final[re.Pattern[str]] = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)")
_CLOSERS: Final[dict[str, str]] = {"{": "}", "[": "]"}


def extract_first_json_value(text: str) -> object | None:
    """Return the first JSON object found in ``text``, else the first array, else ``None``."""
    if not isinstance(text, str):
        raise ValueError(f"text must be a string, got {type(text).__name__}")
    for opener in _CLOSERS:
        found = _first_value(text, opener)
        if found is not None:
            return found
    return None


def extract_all_json_values(text: str) -> list[object]:
    """Return every top-level JSON object or array embedded in ``text``, in order."""
    return list(_iter_balanced_values(text))


def repair_json(text: str) -> str:
    """Apply best-effort fixes for common model JSON mistakes.

    Single quotes are replaced blindly, so apostrophes inside strings get mangled.
    That trade-off only applies after strict extraction has already failed.
    """
    repaired = _TRAILING_COMMA_RE.sub(r"\1", text)
    repaired = repaired.replace("'", '"')
    return _UNQUOTED_KEY_RE.sub(r'\1"\2"\3', repaired)


def extract_json_with_repair(text: str) -> object | None:
    """Full extraction pipeline used by the planner; ``None`` when nothing is recoverable."""
    if not isinstance(text, str):
        raise ValueError(f"text must be a string, got {type(text).__name__}")
    repaired = repair_json(text)
    for opener in _CLOSERS:
        for candidate in (text, repaired):
            found = _first_value(candidate, opener)
            if found is not None:
                return found
    return _first_yaml_block(text)


def _first_value(text: str, opener: str) -> object | None:
    wanted = dict if opener == "{" else list
    for match in _FENCED_BLOCK_RE.finditer(text):
        if match.group("lang").strip().lower() not in {"", "json"}:
            continue
        try:
            parsed = json.loads(match.group("body").strip())
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, wanted):
            return parsed
    for parsed in _iter_balanced_values(text, openers=opener):
        return parsed
    return None


def _iter_balanced_values(text: str, *, openers: str = "{[") -> Iterator[object]:
    index = 0
    length = len(text)
    while index < length:
        opener = text[index]
        if opener not in openers:
            index += 1
            continue
        end = _balanced_end(text, index)
        if end is None:
            index += 1
            continue
        try:
            parsed = json.loads(text[index : end + 1])
        except json.JSONDecodeError:
            index += 1
            continue
        yield parsed
        index = end + 1


def _balanced_end(text: str, start: int) -> int | None:
    """Index of the bracket closing ``text[start]``, ignoring brackets inside strings."""
    opener = text[start]
    closer = _CLOSERS[opener]
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
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
        elif char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return index
    return None


def _first_yaml_block(text: str) -> object | None:
    for match in _FENCED_BLOCK_RE.finditer(text):
        if match.group("lang").strip().lower() not in {"yaml", "yml"}:
            continue
        try:
            parsed = yaml.safe_load(match.group("body"))
        except yaml.YAMLError:
            continue
        if isinstance(parsed, (dict, list)):
            return parsed
    return None


__all__ = [
    "NO_JSON_FOUND",
    "extract_all_json_values",
    "extract_first_json_value",
    "extract_json_with_repair",
    "repair_json",
]
