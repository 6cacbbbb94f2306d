"""
paigent-orchestrator — runtime config loader.

File: src/paigent_orchestrator/config/loader.py
Last updated: 2026-10-16

Purpose
- Build the effective orchestrator config as a stack of layers, lowest first:
  built-in defaults, the TOML file, the selected profile, ``PAIGENT_*`` variables and
  explicit overrides.

What should be included in this file
- ``load_config`` and the layer builders it stacks.
- Environment names derived from the config tree itself, so every scalar setting has one.
- Path fields resolved against the directory of the config file.

Functional requirements
- The result always passes schema validation; loading errors raise ``ConfigLoadError``.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from paigent_orchestrator.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "paigent.toml"
ENV_PREFIX: Final[str] = "PAIGENT_"

# Sections that never take environment overrides.
_ENV_EXCLUDED_SECTIONS: Final[frozenset[str]] = frozenset({"meta", "profiles"})
_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

ConfigPath = tuple[str, ...]


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


@dataclass(frozen=True, slots=True)
class ConfigFile:
    """Where the TOML layer comes from; a missing optional file contributes nothing."""

    path: Path
    required: bool

    @classmethod
    def locate(cls, config_path: str | Path | None) -> ConfigFile:
        if config_path is None:
            return cls((Path.cwd() / DEFAULT_CONFIG_FILE).resolve(), required=False)
        return cls(Path(config_path).expanduser().resolve(), required=True)

    def read(self) -> dict[str, Any]:
        if not self.path.exists():
            if self.required:
                raise ConfigLoadError(f"config file not found: {self.path}")
            return {}
        try:
            return tomllib.loads(self.path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ConfigLoadError(f"invalid TOML in {self.path}: {exc}") from exc
        except OSError as exc:
            raise ConfigLoadError(f"unable to read config file {self.path}: {exc}") from exc


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated config; later layers win: overrides, env, profile, file, defaults."""
    source = ConfigFile.locate(config_path)
    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})
    active_profile = select_profile(profile, overrides, env)

    config = assert_valid_config(merge_config(default_config(), source.read()))
    if active_profile is not None:
        config = apply_profile_overlay(config, active_profile)
    config = merge_config(config, env_overrides(config, env))
    config = merge_config(config, expand_overrides(overrides))
    config = assert_valid_config(config, active_profile=active_profile)
    return normalize_paths(config, base_dir=source.path.parent)


def select_profile(
    explicit: str | None,
    overrides: Mapping[str, object],
    environ: Mapping[str, str],
) -> str | None:
    """First of: the ``profile`` argument, a ``profile`` override, ``PAIGENT_PROFILE``."""
    if explicit is not None:
        chosen: object = explicit
    elif "profile" in overrides and overrides["profile"] is not None:
        chosen = overrides["profile"]
        if not isinstance(chosen, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
    else:
        chosen = environ.get(f"{ENV_PREFIX}PROFILE")
    if not isinstance(chosen, str):
        return None
    return chosen.strip() or None


def env_overrides(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    """Overlay built from every ``PAIGENT_<SECTION>_<KEY>`` variable that names a known setting."""
    overlay: dict[str, Any] = {}
    for path, current in _settings(config):
        name = env_name(path)
        if name not in environ:
            continue
        coerce = _COERCERS.get(type(current))
        if coerce is None:
            continue
        _assign(overlay, path, coerce(environ[name].strip(), f"{name} -> {'.'.join(path)}"))
    return overlay


def env_name(path: ConfigPath) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


def expand_overrides(overrides: Mapping[str, object]) -> dict[str, Any]:
    """Turn ``{"planner.max_attempts": 6}`` style keys into a nested overlay."""
    overlay: dict[str, Any] = {}
    for key in sorted(overrides):
        if key == "profile":
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        value = overrides[key]
        _assign(overlay, path, merge_config({}, value) if isinstance(value, Mapping) else value)
    return overlay


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve configured path fields relative to ``base_dir``."""
    resolved = merge_config({}, config)
    for path in PATH_FIELDS:
        section = resolved.get(path[0])
        if not isinstance(section, dict):
            continue
        raw = section.get(path[-1])
        if isinstance(raw, str):
            section[path[-1]] = _resolve_against(raw, base_dir)
    return resolved


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(config, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _settings(tree: Mapping[str, object], prefix: ConfigPath = ()) -> Iterator[tuple[ConfigPath, object]]:
    for key in sorted(tree):
        if not prefix and key in _ENV_EXCLUDED_SECTIONS:
            continue
        value = tree[key]
        if isinstance(value, Mapping):
            yield from _settings(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _assign(tree: dict[str, Any], path: ConfigPath, value: object) -> None:
    *parents, leaf = path
    for part in parents:
        child = tree.get(part)
        if not isinstance(child, dict):
            child = tree[part] = {}
        tree = child
    tree[leaf] = value


def _resolve_against(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


def _as_int(raw: str, label: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigLoadError(f"{label} must be an integer") from exc


def _as_float(raw: str, label: str) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigLoadError(f"{label} must be a number") from exc


def _as_bool(raw: str, label: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ConfigLoadError(f"{label} must be a boolean (true/false/1/0/yes/no/on/off)")


def _as_list(raw: str, label: str) -> list[str]:
    del label
    # Comma-separated; an empty value clears the list.
    return [item.strip() for item in raw.split(",") if item.strip()]


def _as_str(raw: str, label: str) -> str:
    del label
    return raw


# Keyed on the exact type of the current value so booleans never coerce as integers.
_COERCERS: Final[dict[type, Callable[[str, str], object]]] = {
    bool: _as_bool,
    int: _as_int,
    float: _as_float,
    str: _as_str,
    list: _as_list,
}


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "ConfigFile",
    "ConfigLoadError",
    "dump_effective_config",
    "env_name",
    "env_overrides",
    "expand_overrides",
    "load_config",
    "normalize_paths",
    "select_profile",
]
