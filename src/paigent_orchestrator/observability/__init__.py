"""Observability: the per-run event log with replay, and structured logging setup."""

from paigent_orchestrator.observability.events import (
    Event,
    EventLog,
    EventType,
    RunProjection,
    StepProjection,
    replay,
)
from paigent_orchestrator.observability.logging import configure_logging, redact_value

__all__ = [
    "Event",
    "EventLog",
    "EventType",
    "RunProjection",
    "StepProjection",
    "configure_logging",
    "redact_value",
    "replay",
]
