"""Structured logging setup: structlog front end, stdlib handlers, JSON-lines output with redaction."""

from __future__ import annotations

import json
import logging
import math
import re
import sys
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Final

import structlog

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_REDACTED_VALUE: Final[str] = "***REDACTED***"
_DEFAULT_LOGGER_NAME: Final[str] = "paigent_orchestrator"
_DEFAULT_LOG_FILENAME: Final[str] = "paigent.jsonl"
_LOG_FORMATS: Final[frozenset[str]] = frozenset({"json", "text"})

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "access_token",
    "auth_token",
    "authorization",
    "credential",
    "cookie",
    "private_key",
    "mnemonic",
)

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|private[_-]?key|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_HEX_PRIVATE_KEY_PATTERN: Final[re.Pattern[str]] = re.compile(r"\b0x[0-9a-fA-F]{64}\b")

_STANDARD_LOG_RECORD_FIELDS: Final[frozenset[str]] = frozenset(
    {
        "args",
        "asctime",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "thread",
        "threadName",
        "taskName",
    }
)


class _JsonLineFormatter(logging.Formatter):
    """One canonical JSON object per log line."""

    def __init__(self, *, redact: bool) -> None:
        super().__init__()
        self._redact = redact

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, JSONValue] = {
            "timestamp": _iso8601z_from_epoch(record.created),
            "level": record.levelname,
            "logger": record.name,
            "event": self._clean(record.getMessage()),
        }
        extras = _extract_extra_fields(record)
        if extras:
            cleaned = self._clean(extras)
            if isinstance(cleaned, dict):
                event.update(cleaned)
        if record.exc_info is not None:
            event["exception"] = self._clean(self.formatException(record.exc_info))
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _clean(self, value: object) -> JSONValue:
        normalized = _normalize_json_value(value)
        return redact_value(normalized) if self._redact else normalized


class _KeyValueFormatter(logging.Formatter):
    """Human-readable ``time level logger event key=value`` lines."""

    def __init__(self, *, redact: bool) -> None:
        super().__init__()
        self._redact = redact

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        extras = _normalize_json_value(_extract_extra_fields(record))
        if self._redact:
            message = _redact_string(message)
            extras = redact_value(extras)
        parts = [_iso8601z_from_epoch(record.created), record.levelname, record.name, message]
        if isinstance(extras, dict):
            parts.extend(f"{key}={json.dumps(extras[key], ensure_ascii=False)}" for key in sorted(extras))
        line = " ".join(parts)
        if record.exc_info is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    stream: IO[str] | None = None,
    logger_name: str = _DEFAULT_LOGGER_NAME,
) -> logging.Logger:
    """Configure stdlib handlers and route structlog through them.

    Parameters
    ----------
    observability_config:
        Mapping compatible with the ``[observability]`` section of ``paigent.toml``
        (``log_level``, ``log_format``, ``log_dir``, ``redact_secrets``).
    stream:
        Console sink; defaults to ``sys.stderr``.
    logger_name:
        Root logger of the package hierarchy to configure.
    """

    cfg = dict(observability_config or {})
    level = _parse_log_level(cfg.get("log_level", "INFO"))
    log_format = str(cfg.get("log_format", "json")).lower()
    if log_format not in _LOG_FORMATS:
        raise ValueError(f"observability.log_format: must be one of {sorted(_LOG_FORMATS)}")
    redact = bool(cfg.get("redact_secrets", True))

    formatter: logging.Formatter = (
        _JsonLineFormatter(redact=redact) if log_format == "json" else _KeyValueFormatter(redact=redact)
    )

    handlers: list[logging.Handler] = []
    console = logging.StreamHandler(stream if stream is not None else sys.stderr)
    console.setFormatter(formatter)
    handlers.append(console)

    raw_log_dir = cfg.get("log_dir")
    if isinstance(raw_log_dir, (str, Path)) and str(raw_log_dir).strip():
        log_dir = Path(raw_log_dir).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / _DEFAULT_LOG_FILENAME, encoding="utf-8")
        # Files always carry JSON lines so they stay machine-parseable.
        file_handler.setFormatter(_JsonLineFormatter(redact=redact))
        handlers.append(file_handler)

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    for handler in handlers:
        handler.setLevel(level)
        logger.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
    return logger


def redact_value(value: JSONValue, *, key_context: str | None = None) -> JSONValue:
    """Mask secret-looking keys and values in a JSON-compatible structure."""
    if key_context is not None and _requires_redaction_for_key(key_context):
        return _REDACTED_VALUE
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, list):
        return [redact_value(item) for item in value]
    if isinstance(value, dict):
        return {key: redact_value(item, key_context=key) for key, item in value.items()}
    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", text
    )
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", redacted)
    return _HEX_PRIVATE_KEY_PATTERN.sub(_REDACTED_VALUE, redacted)


def _parse_log_level(value: object) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        resolved = logging.getLevelName(value.strip().upper())
        if isinstance(resolved, int):
            return resolved
    raise ValueError(f"observability.log_level: unknown level {value!r}")


def _iso8601z_from_epoch(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=UTC)
    return moment.isoformat(timespec="microseconds").replace("+00:00", "Z")


def _extract_extra_fields(record: logging.LogRecord) -> dict[str, object]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_LOG_RECORD_FIELDS and not key.startswith("_")
    }


def _normalize_json_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, datetime):
        normalized = value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)
        return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _normalize_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_json_value(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize_json_value(item) for item in value), key=repr)
    return repr(value)


__all__ = ["configure_logging", "redact_value"]
