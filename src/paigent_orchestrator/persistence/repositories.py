"""
paigent-orchestrator — typed repositories

File: src/paigent_orchestrator/persistence/repositories.py
Last updated: 2026-10-16

Purpose
- Read/write typed domain records (runs, steps, tools, reservations, receipts,
  workspace members) against the state DB.

What should be included in this file
- Row <-> record decoding, with atomic amounts stored as canonical decimal text.
- Reporting helpers used by the facade (counts by status, spend by tool).
- Pagination guards.

Functional requirements
- Status changes are NOT written here; the run state machine owns conditional writes.
- Every read accepts an optional ``conn`` so callers can read inside their own transaction.

Non-functional requirements
- Must be efficient; list queries are bounded by explicit page sizes.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Final, cast

from paigent_orchestrator.domain import ids
from paigent_orchestrator.domain.graph import JSONValue, NodeType
from paigent_orchestrator.domain.models import (
    AutoPayPolicy,
    PaymentReceipt,
    PricingHints,
    ReceiptStatus,
    Reservation,
    ReservationStatus,
    Run,
    RunBudget,
    RunStatus,
    Step,
    StepError,
    StepMetrics,
    StepStatus,
    Tool,
    ToolEndpoint,
    parse_atomic,
)
from paigent_orchestrator.persistence.state_db import (
    WORKSPACE_ROLES,
    RowValue,
    SQLParams,
    SQLValue,
    StateDB,
    canonical_json,
    iso8601z,
    parse_iso8601z,
    utc_now,
)
from paigent_orchestrator.planning.validator import parse_graph

if TYPE_CHECKING:
    import sqlite3

Clock = Callable[[], datetime]

_MAX_PAGE_SIZE: Final[int] = 1_000

_RUN_COLUMNS: Final[str] = (
    "id, workspace_id, input, status, graph_json, budget_asset, budget_network, "
    "budget_max_atomic, budget_spent_atomic, budget_reserved_atomic, auto_pay_json, "
    "created_by, planning_error, created_at, updated_at"
)

_STEP_COLUMNS: Final[str] = (
    "id, run_id, step_id, node_type, status, attempt, inputs_json, outputs_json, error_json, "
    "metrics_json, next_eligible_at, lease_owner, lease_expires_at, approved, started_at, "
    "created_at, updated_at"
)


class _BaseRepo:
    def __init__(self, db: StateDB, *, clock: Clock = utc_now) -> None:
        self._db = db
        self._clock = clock
        self._db.ensure_migrated()

    @staticmethod
    def _validate_page(limit: int, offset: int) -> None:
        if limit <= 0 or limit > _MAX_PAGE_SIZE:
            raise ValueError(f"limit must be in [1, {_MAX_PAGE_SIZE}]")
        if offset < 0:
            raise ValueError("offset must be >= 0")


class RunRepo(_BaseRepo):
    """Runs with their materialized graph and embedded budget ledger."""

    def insert(self, run: Run, *, conn: sqlite3.Connection) -> None:
        now = iso8601z(run.created_at or self._clock())
        self._db.execute(
            f"INSERT INTO runs ({_RUN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                run.id,
                run.workspace_id,
                run.input,
                run.status.value,
                run.graph.to_json(),
                run.budget.asset,
                run.budget.network,
                str(run.budget.max_atomic),
                str(run.budget.spent_atomic),
                str(run.budget.reserved_atomic),
                canonical_json(run.auto_pay.to_dict()),
                run.created_by,
                run.planning_error,
                now,
                iso8601z(run.updated_at) if run.updated_at is not None else now,
            ),
            conn=conn,
        )

    def get(self, run_id: str, *, conn: sqlite3.Connection | None = None) -> Run | None:
        ids.validate_run_id(run_id)
        row = self._db.query_one(f"SELECT {_RUN_COLUMNS} FROM runs WHERE id = ?", (run_id,), conn=conn)
        return None if row is None else run_from_row(row)

    def require(self, run_id: str, *, conn: sqlite3.Connection | None = None) -> Run:
        run = self.get(run_id, conn=conn)
        if run is None:
            raise KeyError(f"run_id not found: {run_id}")
        return run

    def list(
        self,
        *,
        workspace_id: str | None = None,
        status: RunStatus | str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Run]:
        self._validate_page(limit, offset)
        clauses: list[str] = []
        params: list[object] = []
        if workspace_id is not None:
            clauses.append("workspace_id = ?")
            params.append(workspace_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(RunStatus(status).value)
        sql = f"SELECT {_RUN_COLUMNS} FROM runs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend((limit, offset))
        rows = self._db.query_all(sql, cast("SQLParams", tuple(params)))
        return [run_from_row(row) for row in rows]

    def count_by_status(self, *, workspace_id: str | None = None) -> dict[str, int]:
        sql = "SELECT status, COUNT(*) AS total FROM runs"
        params: tuple[str, ...] = ()
        if workspace_id is not None:
            sql += " WHERE workspace_id = ?"
            params = (workspace_id,)
        sql += " GROUP BY status ORDER BY status ASC"
        return {str(row["status"]): int(cast("int", row["total"])) for row in self._db.query_all(sql, params)}


class StepRepo(_BaseRepo):
    def insert(self, step: Step, *, conn: sqlite3.Connection) -> None:
        created = iso8601z(step.created_at or self._clock())
        self._db.execute(
            f"INSERT INTO steps ({_STEP_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                step.id,
                step.run_id,
                step.step_id,
                step.node_type.value,
                step.status.value,
                step.attempt,
                _dump_optional(step.inputs),
                _dump_optional(step.outputs),
                None if step.error is None else canonical_json(step.error.to_dict()),
                None if step.metrics is None else canonical_json(step.metrics.to_dict()),
                iso8601z(step.next_eligible_at) if step.next_eligible_at is not None else created,
                step.lease_owner,
                None if step.lease_expires_at is None else iso8601z(step.lease_expires_at),
                1 if step.approved else 0,
                None if step.started_at is None else iso8601z(step.started_at),
                created,
                created,
            ),
            conn=conn,
        )

    def get(self, run_id: str, step_id: str, *, conn: sqlite3.Connection | None = None) -> Step | None:
        row = self._db.query_one(
            f"SELECT {_STEP_COLUMNS} FROM steps WHERE run_id = ? AND step_id = ?",
            (run_id, step_id),
            conn=conn,
        )
        return None if row is None else step_from_row(row)

    def require(self, run_id: str, step_id: str, *, conn: sqlite3.Connection | None = None) -> Step:
        step = self.get(run_id, step_id, conn=conn)
        if step is None:
            raise KeyError(f"step not found: {run_id}/{step_id}")
        return step

    def list_for_run(self, run_id: str, *, conn: sqlite3.Connection | None = None) -> list[Step]:
        rows = self._db.query_all(
            f"SELECT {_STEP_COLUMNS} FROM steps WHERE run_id = ? ORDER BY created_at ASC, id ASC",
            (run_id,),
            conn=conn,
        )
        return [step_from_row(row) for row in rows]

    def list_claim_candidates(self, now: datetime, *, limit: int, after: Step | None = None) -> list[Step]:
        """Pending steps whose backoff has elapsed, oldest eligibility first.

        ``after`` continues a scan past the last candidate of the previous page, keyed on
        ``(next_eligible_at, created_at, id)``.
        """
        if limit <= 0:
            raise ValueError("limit must be > 0")
        params: list[SQLValue] = [StepStatus.PENDING.value, iso8601z(now), RunStatus.RUNNING.value]
        keyset = ""
        if after is not None:
            if after.next_eligible_at is None or after.created_at is None:
                raise ValueError("after must be a stored step with next_eligible_at and created_at")
            keyset = "AND (s.next_eligible_at, s.created_at, s.id) > (?, ?, ?)"
            params.extend([iso8601z(after.next_eligible_at), iso8601z(after.created_at), after.id])
        params.append(limit)
        rows = self._db.query_all(
            f"""
            SELECT {", ".join(f"s.{column.strip()}" for column in _STEP_COLUMNS.split(","))}
            FROM steps AS s
            JOIN runs AS r ON r.id = s.run_id
            WHERE s.status = ? AND s.next_eligible_at <= ? AND r.status = ?
            {keyset}
            ORDER BY s.next_eligible_at ASC, s.created_at ASC, s.id ASC
            LIMIT ?
            """,
            tuple(params),
        )
        return [step_from_row(row) for row in rows]

    def list_expired_leases(self, now: datetime) -> list[Step]:
        rows = self._db.query_all(
            f"""
            SELECT {_STEP_COLUMNS} FROM steps
            WHERE status IN (?, ?) AND lease_expires_at IS NOT NULL AND lease_expires_at <= ?
            ORDER BY lease_expires_at ASC, id ASC
            """,
            (StepStatus.CLAIMED.value, StepStatus.RUNNING.value, iso8601z(now)),
        )
        return [step_from_row(row) for row in rows]


class ToolRepo(_BaseRepo):
    """SQLite-backed tool catalog."""

    def add(self, tool: Tool) -> Tool:
        now = iso8601z(self._clock())
        self._db.execute(
            """
            INSERT INTO tools (
                id, workspace_id, name, description, base_url, endpoints_json, pricing_json,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tool.id,
                tool.workspace_id,
                tool.name,
                tool.description,
                tool.base_url,
                canonical_json([endpoint.to_dict() for endpoint in tool.endpoints]),
                canonical_json(tool.pricing.to_dict()),
                now,
                now,
            ),
        )
        return tool

    def list_tools(self, workspace_id: str) -> list[Tool]:
        rows = self._db.query_all(
            "SELECT * FROM tools WHERE workspace_id = ? ORDER BY name ASC, id ASC", (workspace_id,)
        )
        return [_tool_from_row(row) for row in rows]

    def get_tool(self, tool_id: str) -> Tool | None:
        row = self._db.query_one("SELECT * FROM tools WHERE id = ?", (tool_id,))
        return None if row is None else _tool_from_row(row)


class ReservationRepo(_BaseRepo):
    def get_open(
        self, run_id: str, step_id: str, *, conn: sqlite3.Connection | None = None
    ) -> Reservation | None:
        row = self._db.query_one(
            "SELECT * FROM budget_reservations WHERE run_id = ? AND step_id = ? AND status = ?",
            (run_id, step_id, ReservationStatus.RESERVED.value),
            conn=conn,
        )
        return None if row is None else _reservation_from_row(row)

    def list_for_run(self, run_id: str) -> list[Reservation]:
        rows = self._db.query_all(
            "SELECT * FROM budget_reservations WHERE run_id = ? ORDER BY created_at ASC, id ASC",
            (run_id,),
        )
        return [_reservation_from_row(row) for row in rows]


class ReceiptRepo(_BaseRepo):
    def add(self, receipt: PaymentReceipt, *, conn: sqlite3.Connection | None = None) -> PaymentReceipt:
        self._db.execute(
            """
            INSERT INTO payment_receipts (
                id, run_id, step_id, tool_id, network, asset, amount_atomic, tx_hash, status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                receipt.id,
                receipt.run_id,
                receipt.step_id,
                receipt.tool_id,
                receipt.network,
                receipt.asset,
                str(receipt.amount_atomic),
                receipt.tx_hash,
                receipt.status.value,
                iso8601z(receipt.created_at or self._clock()),
            ),
            conn=conn,
        )
        return receipt

    def list_for_run(self, run_id: str, *, limit: int = 100, offset: int = 0) -> list[PaymentReceipt]:
        self._validate_page(limit, offset)
        rows = self._db.query_all(
            """
            SELECT * FROM payment_receipts WHERE run_id = ?
            ORDER BY created_at ASC, id ASC LIMIT ? OFFSET ?
            """,
            (run_id, limit, offset),
        )
        return [_receipt_from_row(row) for row in rows]

    def total_spent(self, run_id: str) -> int:
        """Sum of settled receipts; failed payments never count."""
        rows = self._db.query_all(
            "SELECT amount_atomic FROM payment_receipts WHERE run_id = ? AND status = ?",
            (run_id, ReceiptStatus.SETTLED.value),
        )
        return sum(int(str(row["amount_atomic"])) for row in rows)

    def spending_by_tool(self, run_id: str) -> dict[str, int]:
        rows = self._db.query_all(
            "SELECT tool_id, amount_atomic FROM payment_receipts WHERE run_id = ? AND status = ?",
            (run_id, ReceiptStatus.SETTLED.value),
        )
        totals: dict[str, int] = {}
        for row in rows:
            tool_id = str(row["tool_id"])
            totals[tool_id] = totals.get(tool_id, 0) + int(str(row["amount_atomic"]))
        return dict(sorted(totals.items()))


class WorkspaceRepo(_BaseRepo):
    """Workspace membership lookups."""

    def add_member(self, workspace_id: str, clerk_user_id: str, *, role: str = "member") -> None:
        if role not in WORKSPACE_ROLES:
            raise ValueError(f"role: must be one of {', '.join(WORKSPACE_ROLES)}")
        self._db.execute(
            """
            INSERT INTO workspace_members (workspace_id, clerk_user_id, role, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (workspace_id, clerk_user_id) DO UPDATE SET role = excluded.role
            """,
            (workspace_id, clerk_user_id, role, iso8601z(self._clock())),
        )

    def verify_membership(self, clerk_user_id: str, workspace_id: str) -> str | None:
        """Return the member's role, or ``None`` when the user is not a member."""
        row = self._db.query_one(
            "SELECT role FROM workspace_members WHERE workspace_id = ? AND clerk_user_id = ?",
            (workspace_id, clerk_user_id),
        )
        return None if row is None else str(row["role"])

    def list_members(self, workspace_id: str) -> list[tuple[str, str]]:
        rows = self._db.query_all(
            """
            SELECT clerk_user_id, role FROM workspace_members
            WHERE workspace_id = ? ORDER BY created_at ASC, id ASC
            """,
            (workspace_id,),
        )
        return [(str(row["clerk_user_id"]), str(row["role"])) for row in rows]


# ---------------------------------------------------------------------------
# Row decoding
# ---------------------------------------------------------------------------


def run_from_row(row: Mapping[str, RowValue]) -> Run:
    auto_pay = _load_json_object(_row_text(row, "auto_pay_json"), "runs.auto_pay_json")
    return Run(
        id=_row_text(row, "id"),
        workspace_id=_row_text(row, "workspace_id"),
        input=_row_text(row, "input"),
        graph=parse_graph(json.loads(_row_text(row, "graph_json"))),
        budget=RunBudget(
            max_atomic=parse_atomic(row["budget_max_atomic"], "runs.budget_max_atomic"),
            spent_atomic=parse_atomic(row["budget_spent_atomic"], "runs.budget_spent_atomic"),
            reserved_atomic=parse_atomic(row["budget_reserved_atomic"], "runs.budget_reserved_atomic"),
            asset=_row_text(row, "budget_asset"),
            network=_row_text(row, "budget_network"),
        ),
        status=RunStatus(_row_text(row, "status")),
        auto_pay=AutoPayPolicy(
            enabled=bool(auto_pay.get("enabled", True)),
            max_per_step_atomic=parse_atomic(auto_pay["maxPerStepAtomic"], "autoPay.maxPerStepAtomic"),
            max_per_run_atomic=parse_atomic(auto_pay["maxPerRunAtomic"], "autoPay.maxPerRunAtomic"),
            tool_allowlist=tuple(str(item) for item in cast("list[object]", auto_pay.get("toolAllowlist", []))),
        ),
        created_by=_row_optional_text(row, "created_by"),
        planning_error=_row_optional_text(row, "planning_error"),
        created_at=parse_iso8601z(_row_text(row, "created_at")),
        updated_at=parse_iso8601z(_row_text(row, "updated_at")),
    )


def step_from_row(row: Mapping[str, RowValue]) -> Step:
    error_json = _row_optional_text(row, "error_json")
    metrics_json = _row_optional_text(row, "metrics_json")
    metrics: StepMetrics | None = None
    if metrics_json is not None:
        raw_metrics = _load_json_object(metrics_json, "steps.metrics_json")
        metrics = StepMetrics(
            latency_ms=int(cast("int", raw_metrics.get("latencyMs", 0))),
            tokens=int(cast("int", raw_metrics.get("tokens", 0))),
            cost_atomic=parse_atomic(raw_metrics.get("costAtomic", "0"), "metrics.costAtomic"),
        )
    return Step(
        id=_row_text(row, "id"),
        run_id=_row_text(row, "run_id"),
        step_id=_row_text(row, "step_id"),
        node_type=NodeType(_row_text(row, "node_type")),
        status=StepStatus(_row_text(row, "status")),
        attempt=int(cast("int", row["attempt"])),
        inputs=_load_optional_object(row, "inputs_json"),
        outputs=_load_optional_object(row, "outputs_json"),
        error=(
            None
            if error_json is None
            else StepError.from_dict(_load_json_object(error_json, "steps.error_json"))
        ),
        metrics=metrics,
        next_eligible_at=_row_optional_time(row, "next_eligible_at"),
        lease_owner=_row_optional_text(row, "lease_owner"),
        lease_expires_at=_row_optional_time(row, "lease_expires_at"),
        approved=bool(row["approved"]),
        started_at=_row_optional_time(row, "started_at"),
        created_at=_row_optional_time(row, "created_at"),
        updated_at=_row_optional_time(row, "updated_at"),
    )


def _tool_from_row(row: Mapping[str, RowValue]) -> Tool:
    endpoints = json.loads(_row_text(row, "endpoints_json"))
    pricing = _load_json_object(_row_text(row, "pricing_json"), "tools.pricing_json")
    typical = pricing.get("typicalAmountAtomic")
    return Tool(
        id=_row_text(row, "id"),
        workspace_id=_row_text(row, "workspace_id"),
        name=_row_text(row, "name"),
        base_url=_row_text(row, "base_url"),
        description=_row_text(row, "description"),
        endpoints=tuple(
            ToolEndpoint(
                path=str(item["path"]),
                method=str(item.get("method", "GET")),
                description=str(item.get("description", "")),
            )
            for item in endpoints
        ),
        pricing=PricingHints(
            typical_amount_atomic=None if typical is None else parse_atomic(typical, "pricing.typicalAmountAtomic"),
            asset=str(pricing.get("asset", "USDC")),
            network=str(pricing.get("network", "eip155:8453")),
        ),
    )


def _reservation_from_row(row: Mapping[str, RowValue]) -> Reservation:
    actual = row.get("actual_atomic")
    return Reservation(
        id=_row_text(row, "id"),
        run_id=_row_text(row, "run_id"),
        step_id=_row_text(row, "step_id"),
        amount_atomic=parse_atomic(row["amount_atomic"], "budget_reservations.amount_atomic"),
        status=ReservationStatus(_row_text(row, "status")),
        actual_atomic=None if actual is None else parse_atomic(actual, "budget_reservations.actual_atomic"),
    )


def _receipt_from_row(row: Mapping[str, RowValue]) -> PaymentReceipt:
    return PaymentReceipt(
        id=_row_text(row, "id"),
        run_id=_row_text(row, "run_id"),
        step_id=_row_text(row, "step_id"),
        tool_id=_row_text(row, "tool_id"),
        amount_atomic=parse_atomic(row["amount_atomic"], "payment_receipts.amount_atomic"),
        status=ReceiptStatus(_row_text(row, "status")),
        tx_hash=_row_optional_text(row, "tx_hash"),
        asset=_row_text(row, "asset"),
        network=_row_text(row, "network"),
        created_at=parse_iso8601z(_row_text(row, "created_at")),
    )


def _dump_optional(value: Mapping[str, JSONValue] | None) -> str | None:
    return None if value is None else canonical_json(value)


def _row_text(row: Mapping[str, RowValue], key: str) -> str:
    value = row.get(key)
    if not isinstance(value, str):
        raise ValueError(f"{key}: expected text column, got {type(value).__name__}")
    return value


def _row_optional_text(row: Mapping[str, RowValue], key: str) -> str | None:
    value = row.get(key)
    return None if value is None else _row_text(row, key)


def _row_optional_time(row: Mapping[str, RowValue], key: str) -> datetime | None:
    value = _row_optional_text(row, key)
    return None if value is None else parse_iso8601z(value)


def _load_json_object(payload: str, path: str) -> dict[str, object]:
    loaded = json.loads(payload)
    if not isinstance(loaded, dict):
        raise ValueError(f"{path}: expected JSON object")
    return loaded


def _load_optional_object(row: Mapping[str, RowValue], key: str) -> dict[str, JSONValue] | None:
    payload = _row_optional_text(row, key)
    if payload is None:
        return None
    return cast("dict[str, JSONValue]", _load_json_object(payload, f"steps.{key}"))


__all__ = [
    "ReceiptRepo",
    "ReservationRepo",
    "RunRepo",
    "StepRepo",
    "ToolRepo",
    "WorkspaceRepo",
    "run_from_row",
    "step_from_row",
]
