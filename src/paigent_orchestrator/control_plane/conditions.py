"""Dotted-path lookup, ``{{path}}`` template substitution and edge conditions."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Final

from paigent_orchestrator.domain.graph import JSONValue

_PLACEHOLDER_RE: Final[re.Pattern[str]] = re.compile(r"\{\{\s*([A-Za-z0-9_\-.]+)\s*\}\}")
_COMPARISON_RE: Final[re.Pattern[str]] = re.compile(r"^(?P<path>[^=!\s]+)\s*(?P<op>==|!=)\s*(?P<literal>.+)$")


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


MISSING: Final[_Missing] = _Missing()


def resolve_path(context: Mapping[str, object], path: str) -> object:
    """Walk ``a.b.0.c`` through mappings and lists; :data:`MISSING` when absent."""
    current: object = context
    for segment in path.split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def substitute_template(template: JSONValue, context: Mapping[str, object]) -> JSONValue:
    """Fill ``{{path}}`` placeholders from ``context``.

    A string that is exactly one placeholder takes the raw value (objects stay
    objects); embedded placeholders are rendered as text. Unresolvable
    placeholders are left untouched.
    """
    if isinstance(template, str):
        whole = _PLACEHOLDER_RE.fullmatch(template.strip())
        if whole is not None:
            value = resolve_path(context, whole.group(1))
            return template if value is MISSING else _as_json(value)
        return _PLACEHOLDER_RE.sub(lambda match: _render(match, context), template)
    if isinstance(template, list):
        return [substitute_template(item, context) for item in template]
    if isinstance(template, dict):
        return {key: substitute_template(value, context) for key, value in template.items()}
    return template


def render_text(template: str, context: Mapping[str, object]) -> str:
    return _PLACEHOLDER_RE.sub(lambda match: _render(match, context), template)


def evaluate_condition(condition: str, context: Mapping[str, object]) -> bool:
    """Evaluate ``true``/``false``, ``path``, ``!path``, ``path == literal`` or ``path != literal``.

    ``true`` and ``false`` compare against a branch ``result`` when ``context``
    carries one.
    """
    expression = condition.strip()
    if expression in ("true", "false"):
        expected = expression == "true"
        if "result" in context:
            return bool(context["result"]) is expected
        return expected

    comparison = _COMPARISON_RE.match(expression)
    if comparison is not None:
        actual = resolve_path(context, comparison.group("path"))
        literal = _parse_literal(comparison.group("literal").strip())
        equal = actual is not MISSING and actual == literal
        return equal if comparison.group("op") == "==" else not equal

    if expression.startswith("!"):
        return not _truthy(resolve_path(context, expression[1:].strip()))
    return _truthy(resolve_path(context, expression))


def _truthy(value: object) -> bool:
    return value is not MISSING and bool(value)


def _parse_literal(text: str) -> object:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    try:
        return json.loads(text)
    except ValueError:
        return text


def _render(match: re.Match[str], context: Mapping[str, object]) -> str:
    value = resolve_path(context, match.group(1))
    if value is MISSING:
        return match.group(0)
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, ensure_ascii=False)


def _as_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (str, int, float, bool, list, dict)):
        return value  # type: ignore[return-value]
    return str(value)


__all__ = ["MISSING", "evaluate_condition", "render_text", "resolve_path", "substitute_template"]
