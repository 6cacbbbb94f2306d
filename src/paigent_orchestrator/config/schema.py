"""
paigent-orchestrator — configuration schema and validation.

File: src/paigent_orchestrator/config/schema.py
Last updated: 2026-10-16

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums and numeric bounds.
- Profile overlay validation and deterministic deep-merge helpers.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Atomic amounts are decimal strings in config and are never floats.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, TypedDict

from paigent_orchestrator.constants import (
    BACKOFF_BASE_MS,
    BACKOFF_CAP_MS,
    BACKOFF_JITTER_RATIO,
    CLAIM_SCAN_LIMIT,
    CONFIG_SCHEMA_VERSION,
    DEFAULT_ASSET,
    DEFAULT_AUTO_PAY_MAX_PER_RUN_ATOMIC,
    DEFAULT_AUTO_PAY_MAX_PER_STEP_ATOMIC,
    DEFAULT_MAX_BUDGET_ATOMIC,
    DEFAULT_MAX_RETRIES,
    DEFAULT_NETWORK,
    DEFAULT_PLANNER_MODEL,
    DEFAULT_TIMEOUT_MS,
    LEASE_TIMEOUT_MULTIPLIER,
    MAX_RETRIES_LIMIT,
    MAX_TIMEOUT_MS,
    MIN_TIMEOUT_MS,
    PLANNER_MAX_ATTEMPTS,
    PLANNER_MAX_OUTPUT_TOKENS,
    PLANNER_RETRY_DELAY_MS,
    PLANNER_TEMPERATURE,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "permissive", "development")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_ATOMIC_PATTERN = re.compile(r"^(0|[1-9][0-9]*)$")

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_db"),
    ("observability", "log_dir"),
)

_OVERLAY_SECTIONS: Final[tuple[str, ...]] = (
    "auto_pay",
    "budgets",
    "execution",
    "observability",
    "paths",
    "planner",
)


class MetaConfig(TypedDict):
    schema_version: int


class PlannerConfig(TypedDict):
    model: str
    max_attempts: int
    max_output_tokens: int
    temperature: float
    retry_delay_ms: int


class ExecutionConfig(TypedDict):
    lease_timeout_multiplier: int
    backoff_base_ms: int
    backoff_cap_ms: int
    backoff_jitter_ratio: float
    default_max_retries: int
    default_timeout_ms: int
    claim_scan_limit: int


class BudgetsConfig(TypedDict):
    asset: str
    network: str
    default_max_atomic: str


class AutoPayConfig(TypedDict):
    enabled: bool
    max_per_step_atomic: str
    max_per_run_atomic: str
    tool_allowlist: list[str]


class PathsConfig(TypedDict):
    state_db: str


class ObservabilityConfig(TypedDict):
    log_level: str
    log_format: str
    log_dir: str
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    planner: dict[str, Any]
    execution: dict[str, Any]
    budgets: dict[str, Any]
    auto_pay: dict[str, Any]
    paths: dict[str, Any]
    observability: dict[str, Any]


class PaigentConfig(TypedDict):
    meta: MetaConfig
    planner: PlannerConfig
    execution: ExecutionConfig
    budgets: BudgetsConfig
    auto_pay: AutoPayConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[PaigentConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "planner": {
        "model": DEFAULT_PLANNER_MODEL,
        "max_attempts": PLANNER_MAX_ATTEMPTS,
        "max_output_tokens": PLANNER_MAX_OUTPUT_TOKENS,
        "temperature": PLANNER_TEMPERATURE,
        "retry_delay_ms": PLANNER_RETRY_DELAY_MS,
    },
    "execution": {
        "lease_timeout_multiplier": LEASE_TIMEOUT_MULTIPLIER,
        "backoff_base_ms": BACKOFF_BASE_MS,
        "backoff_cap_ms": BACKOFF_CAP_MS,
        "backoff_jitter_ratio": BACKOFF_JITTER_RATIO,
        "default_max_retries": DEFAULT_MAX_RETRIES,
        "default_timeout_ms": DEFAULT_TIMEOUT_MS,
        "claim_scan_limit": CLAIM_SCAN_LIMIT,
    },
    "budgets": {
        "asset": DEFAULT_ASSET,
        "network": DEFAULT_NETWORK,
        "default_max_atomic": str(DEFAULT_MAX_BUDGET_ATOMIC),
    },
    "auto_pay": {
        "enabled": True,
        "max_per_step_atomic": str(DEFAULT_AUTO_PAY_MAX_PER_STEP_ATOMIC),
        "max_per_run_atomic": str(DEFAULT_AUTO_PAY_MAX_PER_RUN_ATOMIC),
        "tool_allowlist": [],
    },
    "paths": {
        "state_db": "state/paigent.sqlite",
    },
    "observability": {
        "log_level": "INFO",
        "log_format": "json",
        "log_dir": "logs/",
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "auto_pay": {"enabled": False},
            "planner": {"temperature": 0.2},
        },
        "permissive": {},
        "development": {
            "observability": {"log_level": "DEBUG", "log_format": "text"},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> PaigentConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade paigent.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the paigent-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``; lists are replaced, not merged."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    materialized = _deep_copy_mapping(config)
    if profile is None or not profile.strip():
        return materialized
    selected = profile.strip()

    profiles_raw = materialized.get("profiles")
    if not isinstance(profiles_raw, Mapping):
        raise ConfigValidationError((ConfigValidationIssue("profiles", "profiles section is required"),))
    overlay_raw = profiles_raw.get(selected)
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(materialized, overlay_raw), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)

    selected_profile = active_profile.strip() if isinstance(active_profile, str) else None
    if selected_profile:
        profiles = normalized.get("profiles")
        if not isinstance(profiles, Mapping) or selected_profile not in profiles:
            issues.add("profiles", f"profile {selected_profile!r} is not defined")

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


_SectionValidator = Callable[[Mapping[str, object], str, _IssueCollector, bool], dict[str, Any]]


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    validators = _section_validators()
    allowed = {"meta", "profiles", *validators}
    _reject_unknown_keys(payload, allowed, "", issues)
    _require_keys(payload, {"meta", *validators}, "", issues)

    out: dict[str, Any] = {}
    if "meta" in payload:
        meta = _as_object(payload["meta"], "meta", issues)
        if meta is not None:
            out["meta"] = _validate_meta(meta, "meta", issues)
    for key in sorted(validators):
        if key not in payload:
            continue
        section = _as_object(payload[key], key, issues)
        if section is not None:
            out[key] = validators[key](section, key, issues, False)

    if payload.get("profiles") is not None:
        profiles = _as_object(payload["profiles"], "profiles", issues)
        if profiles is not None:
            out["profiles"] = _validate_profiles(profiles, "profiles", issues)

    execution = out.get("execution")
    if isinstance(execution, Mapping):
        base = execution.get("backoff_base_ms")
        cap = execution.get("backoff_cap_ms")
        if isinstance(base, int) and isinstance(cap, int) and cap < base:
            issues.add("execution.backoff_cap_ms", "must be >= execution.backoff_base_ms")
    return out


def _section_validators() -> dict[str, _SectionValidator]:
    return {
        "planner": _validate_planner,
        "execution": _validate_execution,
        "budgets": _validate_budgets,
        "auto_pay": _validate_auto_pay,
        "paths": _validate_paths,
        "observability": _validate_observability,
    }


def _validate_meta(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_planner(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"model", "max_attempts", "max_output_tokens", "temperature", "retry_delay_ms"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "model" in payload:
        _store(out, "model", _as_str(payload["model"], _join(path, "model"), issues))
    if "max_attempts" in payload:
        _store(
            out,
            "max_attempts",
            _as_int(payload["max_attempts"], _join(path, "max_attempts"), issues, minimum=1, maximum=10),
        )
    if "max_output_tokens" in payload:
        _store(
            out,
            "max_output_tokens",
            _as_int(payload["max_output_tokens"], _join(path, "max_output_tokens"), issues, minimum=1),
        )
    if "temperature" in payload:
        _store(
            out,
            "temperature",
            _as_float(payload["temperature"], _join(path, "temperature"), issues, minimum=0.0, maximum=2.0),
        )
    if "retry_delay_ms" in payload:
        _store(
            out,
            "retry_delay_ms",
            _as_int(payload["retry_delay_ms"], _join(path, "retry_delay_ms"), issues, minimum=0),
        )
    return out


def _validate_execution(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    bounds: dict[str, tuple[int, int | None]] = {
        "lease_timeout_multiplier": (1, 10),
        "backoff_base_ms": (0, None),
        "backoff_cap_ms": (0, None),
        "default_max_retries": (0, MAX_RETRIES_LIMIT),
        "default_timeout_ms": (MIN_TIMEOUT_MS, MAX_TIMEOUT_MS),
        "claim_scan_limit": (1, 1_000),
    }
    allowed = {*bounds, "backoff_jitter_ratio"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(bounds):
        if key in payload:
            minimum, maximum = bounds[key]
            _store(out, key, _as_int(payload[key], _join(path, key), issues, minimum=minimum, maximum=maximum))
    if "backoff_jitter_ratio" in payload:
        _store(
            out,
            "backoff_jitter_ratio",
            _as_float(
                payload["backoff_jitter_ratio"],
                _join(path, "backoff_jitter_ratio"),
                issues,
                minimum=0.0,
                maximum=1.0,
            ),
        )
    return out


def _validate_budgets(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"asset", "network", "default_max_atomic"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in ("asset", "network"):
        if key in payload:
            _store(out, key, _as_str(payload[key], _join(path, key), issues))
    if "default_max_atomic" in payload:
        _store(
            out,
            "default_max_atomic",
            _as_atomic(payload["default_max_atomic"], _join(path, "default_max_atomic"), issues),
        )
    return out


def _validate_auto_pay(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"enabled", "max_per_step_atomic", "max_per_run_atomic", "tool_allowlist"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "enabled" in payload:
        _store(out, "enabled", _as_bool(payload["enabled"], _join(path, "enabled"), issues))
    for key in ("max_per_step_atomic", "max_per_run_atomic"):
        if key in payload:
            _store(out, key, _as_atomic(payload[key], _join(path, key), issues))
    if "tool_allowlist" in payload:
        raw = payload["tool_allowlist"]
        list_path = _join(path, "tool_allowlist")
        if not isinstance(raw, (list, tuple)):
            issues.add(list_path, f"expected array, got {type(raw).__name__}")
        else:
            parsed = [_as_str(item, f"{list_path}[{index}]", issues) for index, item in enumerate(raw)]
            if all(item is not None for item in parsed):
                out["tool_allowlist"] = parsed
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"state_db"}, path, issues)
    if not partial:
        _require_keys(payload, {"state_db"}, path, issues)
    out: dict[str, Any] = {}
    if "state_db" in payload:
        _store(out, "state_db", _as_path_text(payload["state_db"], _join(path, "state_db"), issues))
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"log_level", "log_format", "log_dir", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        _store(
            out,
            "log_level",
            _as_enum(
                payload["log_level"],
                _join(path, "log_level"),
                issues,
                allowed_values=("DEBUG", "INFO", "WARNING", "ERROR"),
            ),
        )
    if "log_format" in payload:
        _store(
            out,
            "log_format",
            _as_enum(payload["log_format"], _join(path, "log_format"), issues, allowed_values=("json", "text")),
        )
    if "log_dir" in payload:
        _store(out, "log_dir", _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues))
    if "redact_secrets" in payload:
        _store(out, "redact_secrets", _as_bool(payload["redact_secrets"], _join(path, "redact_secrets"), issues))
    return out


def _validate_profiles(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    validators = _section_validators()
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        overlay = _as_object(payload[profile_name], profile_path, issues)
        if overlay is None:
            continue
        _reject_unknown_keys(overlay, set(_OVERLAY_SECTIONS), profile_path, issues)
        validated: dict[str, Any] = {}
        for section in _OVERLAY_SECTIONS:
            if section not in overlay:
                continue
            section_path = _join(profile_path, section)
            section_obj = _as_object(overlay[section], section_path, issues)
            if section_obj is not None:
                validated[section] = validators[section](section_obj, section_path, issues, True)
        out[profile_name] = validated
    return out


def _store(out: dict[str, Any], key: str, value: object | None) -> None:
    if value is not None:
        out[key] = value


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_atomic(value: object, path: str, issues: _IssueCollector) -> str | None:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return str(value)
    if isinstance(value, str) and _ATOMIC_PATTERN.fullmatch(value.strip()):
        return value.strip()
    issues.add(path, "expected a non-negative integer amount in atomic units (decimal string)")
    return None


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    if maximum is not None and value > maximum:
        issues.add(path, f"must be <= {maximum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    if maximum is not None and parsed > maximum:
        issues.add(path, f"must be <= {maximum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    return key if not path else f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            nested = existing if isinstance(existing, dict) else {}
            _merge_into(nested, value)
            target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value)}


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "PaigentConfig",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "validate_config",
]
