"""Append-only per-run event log and state replay.

Every mutation of a run, a step or a budget appends exactly one event inside the
same transaction as the mutation. Events carry the *after* state of what they
describe (``newStatus``, ``attempt``, ``spentAtomic``...), so :func:`replay` can
rebuild the run from nothing but its log.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, cast

import structlog

from paigent_orchestrator.domain.graph import JSONValue
from paigent_orchestrator.domain.ids import generate_event_id
from paigent_orchestrator.domain.models import Actor, ActorType, RunStatus, StepStatus
from paigent_orchestrator.persistence.state_db import (
    RowValue,
    StateDB,
    canonical_json,
    iso8601z,
    parse_iso8601z,
    utc_now,
)

if TYPE_CHECKING:
    import sqlite3
    from enum import StrEnum
else:
    try:
        from enum import StrEnum
    except ImportError:

        class StrEnum(str, Enum):
            """Compatibility fallback for Python < 3.11."""


class EventType(StrEnum):
    RUN_CREATED = "RUN_CREATED"
    RUN_PLANNING_FAILED = "RUN_PLANNING_FAILED"
    RUN_STARTED = "RUN_STARTED"
    RUN_PAUSED = "RUN_PAUSED"
    RUN_RESUMED = "RUN_RESUMED"
    RUN_SUCCEEDED = "RUN_SUCCEEDED"
    RUN_FAILED = "RUN_FAILED"
    RUN_CANCELED = "RUN_CANCELED"

    STEP_CLAIMED = "STEP_CLAIMED"
    STEP_STARTED = "STEP_STARTED"
    STEP_SUCCEEDED = "STEP_SUCCEEDED"
    STEP_FAILED = "STEP_FAILED"
    STEP_RETRY_SCHEDULED = "STEP_RETRY_SCHEDULED"
    STEP_BLOCKED = "STEP_BLOCKED"
    STEP_APPROVED = "STEP_APPROVED"
    STEP_REJECTED = "STEP_REJECTED"
    STEP_LEASE_EXPIRED = "STEP_LEASE_EXPIRED"
    STEP_CANCELED = "STEP_CANCELED"

    BUDGET_RESERVED = "BUDGET_RESERVED"
    BUDGET_COMMITTED = "BUDGET_COMMITTED"
    BUDGET_RELEASED = "BUDGET_RELEASED"
    BUDGET_REJECTED = "BUDGET_REJECTED"

    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_FAILED = "PAYMENT_FAILED"


@dataclass(frozen=True, slots=True)
class Event:
    id: str
    run_id: str
    seq: int
    ts: datetime
    type: EventType
    data: dict[str, JSONValue]
    actor: Actor

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "runId": self.run_id,
            "seq": self.seq,
            "ts": iso8601z(self.ts),
            "type": self.type.value,
            "data": self.data,
            "actor": {"type": self.actor.type.value, "id": self.actor.id},
        }


class EventLog:
    """Writer and reader for the ``events`` table."""

    def __init__(
        self,
        db: StateDB,
        *,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._db.ensure_migrated()

    def append(
        self,
        run_id: str,
        event_type: EventType,
        data: Mapping[str, JSONValue],
        actor: Actor,
        *,
        conn: sqlite3.Connection,
    ) -> Event:
        """Append inside the caller's transaction; ``seq`` and ``ts`` are monotonic per run."""
        last = self._db.query_one(
            "SELECT seq, ts FROM events WHERE run_id = ? ORDER BY seq DESC LIMIT 1",
            (run_id,),
            conn=conn,
        )
        seq = 1 if last is None else int(cast("int", last["seq"])) + 1
        ts_text = iso8601z(self._clock())
        if last is not None and str(last["ts"]) > ts_text:
            ts_text = str(last["ts"])

        event = Event(
            id=generate_event_id(),
            run_id=run_id,
            seq=seq,
            ts=parse_iso8601z(ts_text),
            type=EventType(event_type),
            data=dict(data),
            actor=actor,
        )
        self._db.execute(
            """
            INSERT INTO events (id, run_id, seq, ts, type, data_json, actor_type, actor_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                run_id,
                seq,
                ts_text,
                event.type.value,
                canonical_json(event.data),
                actor.type.value,
                actor.id,
            ),
            conn=conn,
        )
        self._logger.debug("event_appended", run_id=run_id, seq=seq, event_type=event.type.value)
        return event

    def list_for_run(
        self,
        run_id: str,
        *,
        types: Iterable[EventType | str] | None = None,
        since_seq: int = 0,
        limit: int | None = None,
    ) -> list[Event]:
        sql = "SELECT * FROM events WHERE run_id = ? AND seq > ?"
        params: list[object] = [run_id, since_seq]
        if types is not None:
            wanted = [EventType(item).value for item in types]
            if not wanted:
                return []
            sql += f" AND type IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        sql += " ORDER BY seq ASC"
        if limit is not None:
            if limit <= 0:
                raise ValueError("limit must be > 0")
            sql += " LIMIT ?"
            params.append(limit)
        return [_event_from_row(row) for row in self._db.query_all(sql, tuple(params))]  # type: ignore[arg-type]

    def latest(self, run_id: str, *, event_type: EventType | str | None = None) -> Event | None:
        if event_type is None:
            row = self._db.query_one(
                "SELECT * FROM events WHERE run_id = ? ORDER BY seq DESC LIMIT 1", (run_id,)
            )
        else:
            row = self._db.query_one(
                "SELECT * FROM events WHERE run_id = ? AND type = ? ORDER BY seq DESC LIMIT 1",
                (run_id, EventType(event_type).value),
            )
        return None if row is None else _event_from_row(row)

    def for_step(self, run_id: str, step_id: str) -> list[Event]:
        rows = self._db.query_all(
            """
            SELECT * FROM events
            WHERE run_id = ? AND json_extract(data_json, '$.stepId') = ?
            ORDER BY seq ASC
            """,
            (run_id, step_id),
        )
        return [_event_from_row(row) for row in rows]

    def count_by_type(self, run_id: str) -> dict[str, int]:
        rows = self._db.query_all(
            "SELECT type, COUNT(*) AS total FROM events WHERE run_id = ? GROUP BY type ORDER BY type",
            (run_id,),
        )
        return {str(row["type"]): int(cast("int", row["total"])) for row in rows}


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StepProjection:
    status: StepStatus
    attempt: int = 0


@dataclass(frozen=True, slots=True)
class RunProjection:
    run_id: str
    status: RunStatus | None = None
    steps: dict[str, StepProjection] = field(default_factory=dict)
    max_atomic: int = 0
    spent_atomic: int = 0
    reserved_atomic: int = 0
    last_seq: int = 0


def replay(events: Sequence[Event]) -> RunProjection:
    """Fold a run's events, in ``seq`` order, into its state."""
    if not events:
        raise ValueError("cannot replay an empty event log")
    run_id = events[0].run_id
    status: RunStatus | None = None
    steps: dict[str, StepProjection] = {}
    max_atomic = spent = reserved = 0
    last_seq = 0

    for event in sorted(events, key=lambda item: item.seq):
        if event.run_id != run_id:
            raise ValueError(f"event {event.id} belongs to run {event.run_id}, not {run_id}")
        if event.seq != last_seq + 1:
            raise ValueError(f"event log gap: expected seq {last_seq + 1}, got {event.seq}")
        last_seq = event.seq
        data = event.data

        if event.type in (EventType.RUN_CREATED, EventType.RUN_PLANNING_FAILED):
            initial = StepStatus.PENDING if event.type is EventType.RUN_CREATED else StepStatus.FAILED
            steps = {str(step_id): StepProjection(initial) for step_id in _as_list(data.get("stepIds"))}
            max_atomic = int(str(data.get("maxAtomic", "0")))

        if "stepId" in data and "newStatus" in data:
            step_id = str(data["stepId"])
            previous = steps.get(step_id, StepProjection(StepStatus.PENDING))
            steps[step_id] = StepProjection(
                status=StepStatus(str(data["newStatus"])),
                attempt=int(cast("int", data.get("attempt", previous.attempt))),
            )
        elif "newStatus" in data:
            status = RunStatus(str(data["newStatus"]))

        if "spentAtomic" in data:
            spent = int(str(data["spentAtomic"]))
        if "reservedAtomic" in data:
            reserved = int(str(data["reservedAtomic"]))

    return RunProjection(
        run_id=run_id,
        status=status,
        steps=steps,
        max_atomic=max_atomic,
        spent_atomic=spent,
        reserved_atomic=reserved,
        last_seq=last_seq,
    )


def _as_list(value: object) -> list[object]:
    return list(value) if isinstance(value, list) else []


def _event_from_row(row: Mapping[str, RowValue]) -> Event:
    data = json.loads(str(row["data_json"]))
    return Event(
        id=str(row["id"]),
        run_id=str(row["run_id"]),
        seq=int(cast("int", row["seq"])),
        ts=parse_iso8601z(str(row["ts"])),
        type=EventType(str(row["type"])),
        data=data,
        actor=Actor(ActorType(str(row["actor_type"])), str(row["actor_id"])),
    )


__all__ = ["Event", "EventLog", "EventType", "RunProjection", "StepProjection", "replay"]
