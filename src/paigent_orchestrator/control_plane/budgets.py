"""
Per-run budget ledger in integer atomic units.

This module enforces the hard spend ceiling of a run:
- reservations hold budget for an in-flight payment
- commits move the actually paid amount into ``spent``
- releases drop a reservation that will never be paid
- auto-pay policy decisions for the step executor

Every mutation is one ``BEGIN IMMEDIATE`` transaction whose run-row update is
conditional on the spent/reserved values read inside it, and appends exactly one
``BUDGET_*`` event.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from paigent_orchestrator.domain.errors import BudgetExceeded, TransitionConflict
from paigent_orchestrator.domain.ids import generate_reservation_id
from paigent_orchestrator.domain.models import (
    Actor,
    AutoPayPolicy,
    Reservation,
    ReservationStatus,
    RunBudget,
    Tool,
    parse_atomic,
)
from paigent_orchestrator.observability.events import EventLog, EventType
from paigent_orchestrator.persistence.repositories import ReservationRepo
from paigent_orchestrator.persistence.state_db import StateDB, iso8601z, utc_now

if TYPE_CHECKING:
    import sqlite3


@dataclass(frozen=True, slots=True)
class _Balance:
    max_atomic: int
    spent_atomic: int
    reserved_atomic: int


@dataclass(frozen=True, slots=True)
class AutoPayDecision:
    """Whether a payment may proceed without a human approval."""

    allowed: bool
    reason: str | None = None


class BudgetLedger:
    """Reserve, commit and release spend against a run's immutable ceiling."""

    def __init__(
        self,
        db: StateDB,
        event_log: EventLog,
        *,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._events = event_log
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._reservations = ReservationRepo(db, clock=clock)

    def reserve(
        self,
        run_id: str,
        step_id: str,
        amount_atomic: int,
        *,
        actor: Actor | None = None,
        guard: Callable[[sqlite3.Connection], None] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Reservation:
        """Hold ``amount_atomic`` for ``step_id``; idempotent while a reservation is open.

        ``guard`` runs first inside the reserving transaction; whatever it raises
        propagates and nothing is reserved.
        """
        _check_amount(amount_atomic, "amount_atomic")
        who = actor or Actor.system()
        outcome: Reservation | BudgetExceeded

        with self._db.transaction(conn=conn) as tx:
            if guard is not None:
                guard(tx)
            existing = self._reservations.get_open(run_id, step_id, conn=tx)
            if existing is not None:
                return existing

            balance = self._read_balance(run_id, tx)
            projected = balance.spent_atomic + balance.reserved_atomic + amount_atomic
            if projected > balance.max_atomic:
                # The rejection event commits with this transaction; the error is raised after it.
                self._events.append(
                    run_id,
                    EventType.BUDGET_REJECTED,
                    {
                        "stepId": step_id,
                        "amountAtomic": str(amount_atomic),
                        "projectedAtomic": str(projected),
                        "maxAtomic": str(balance.max_atomic),
                    },
                    who,
                    conn=tx,
                )
                outcome = BudgetExceeded(
                    run_id=run_id,
                    requested=amount_atomic,
                    projected=projected,
                    max_atomic=balance.max_atomic,
                )
            else:
                outcome = self._open_reservation(run_id, step_id, amount_atomic, balance, who, tx)

        if isinstance(outcome, BudgetExceeded):
            self._logger.warning(
                "budget_rejected",
                run_id=run_id,
                step_id=step_id,
                requested=amount_atomic,
                projected=outcome.projected,
                max_atomic=outcome.max_atomic,
            )
            raise outcome
        self._logger.info("budget_reserved", run_id=run_id, step_id=step_id, amount=amount_atomic)
        return outcome

    def _open_reservation(
        self,
        run_id: str,
        step_id: str,
        amount_atomic: int,
        balance: _Balance,
        actor: Actor,
        tx: sqlite3.Connection,
    ) -> Reservation:
        new_reserved = balance.reserved_atomic + amount_atomic
        self._write_balance(run_id, balance, balance.spent_atomic, new_reserved, tx)
        now = iso8601z(self._clock())
        reservation = Reservation(
            id=generate_reservation_id(),
            run_id=run_id,
            step_id=step_id,
            amount_atomic=amount_atomic,
            status=ReservationStatus.RESERVED,
        )
        self._db.execute(
            """
            INSERT INTO budget_reservations (
                id, run_id, step_id, amount_atomic, actual_atomic, status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, NULL, ?, ?, ?)
            """,
            (
                reservation.id,
                run_id,
                step_id,
                str(amount_atomic),
                reservation.status.value,
                now,
                now,
            ),
            conn=tx,
        )
        self._events.append(
            run_id,
            EventType.BUDGET_RESERVED,
            {
                "stepId": step_id,
                "reservationId": reservation.id,
                "amountAtomic": str(amount_atomic),
                "spentAtomic": str(balance.spent_atomic),
                "reservedAtomic": str(new_reserved),
            },
            actor,
            conn=tx,
        )
        return reservation

    def commit(
        self,
        run_id: str,
        step_id: str,
        actual_atomic: int,
        *,
        actor: Actor | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> RunBudget:
        """Move ``actual_atomic`` into spent, consuming the open reservation if any."""
        _check_amount(actual_atomic, "actual_atomic")
        who = actor or Actor.system()
        with self._db.transaction(conn=conn) as tx:
            reservation = self._reservations.get_open(run_id, step_id, conn=tx)
            held = 0 if reservation is None else reservation.amount_atomic
            balance = self._read_balance(run_id, tx)
            new_spent = balance.spent_atomic + actual_atomic
            new_reserved = balance.reserved_atomic - held
            if actual_atomic > held and new_spent + new_reserved > balance.max_atomic:
                raise BudgetExceeded(
                    run_id=run_id,
                    requested=actual_atomic,
                    projected=new_spent + new_reserved,
                    max_atomic=balance.max_atomic,
                )
            self._write_balance(run_id, balance, new_spent, new_reserved, tx)
            if reservation is not None:
                self._close_reservation(reservation, ReservationStatus.COMMITTED, actual_atomic, tx)
            self._events.append(
                run_id,
                EventType.BUDGET_COMMITTED,
                {
                    "stepId": step_id,
                    "amountAtomic": str(actual_atomic),
                    "heldAtomic": str(held),
                    "spentAtomic": str(new_spent),
                    "reservedAtomic": str(new_reserved),
                },
                who,
                conn=tx,
            )
        self._logger.info(
            "budget_committed",
            run_id=run_id,
            step_id=step_id,
            amount=actual_atomic,
            spent=new_spent,
        )
        return RunBudget(
            max_atomic=balance.max_atomic,
            spent_atomic=new_spent,
            reserved_atomic=new_reserved,
        )

    def release(
        self,
        run_id: str,
        step_id: str,
        *,
        actor: Actor | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> bool:
        """Drop the open reservation of ``step_id``; ``False`` when there is none."""
        who = actor or Actor.system()
        with self._db.transaction(conn=conn) as tx:
            reservation = self._reservations.get_open(run_id, step_id, conn=tx)
            if reservation is None:
                return False
            balance = self._read_balance(run_id, tx)
            new_reserved = balance.reserved_atomic - reservation.amount_atomic
            self._write_balance(run_id, balance, balance.spent_atomic, new_reserved, tx)
            self._close_reservation(reservation, ReservationStatus.RELEASED, None, tx)
            self._events.append(
                run_id,
                EventType.BUDGET_RELEASED,
                {
                    "stepId": step_id,
                    "amountAtomic": str(reservation.amount_atomic),
                    "spentAtomic": str(balance.spent_atomic),
                    "reservedAtomic": str(new_reserved),
                },
                who,
                conn=tx,
            )
        self._logger.info(
            "budget_released", run_id=run_id, step_id=step_id, amount=reservation.amount_atomic
        )
        return True

    def snapshot(self, run_id: str, *, conn: sqlite3.Connection | None = None) -> RunBudget:
        row = self._db.query_one(
            """
            SELECT budget_max_atomic, budget_spent_atomic, budget_reserved_atomic,
                   budget_asset, budget_network
            FROM runs WHERE id = ?
            """,
            (run_id,),
            conn=conn,
        )
        if row is None:
            raise KeyError(f"run_id not found: {run_id}")
        return RunBudget(
            max_atomic=parse_atomic(row["budget_max_atomic"], "runs.budget_max_atomic"),
            spent_atomic=parse_atomic(row["budget_spent_atomic"], "runs.budget_spent_atomic"),
            reserved_atomic=parse_atomic(row["budget_reserved_atomic"], "runs.budget_reserved_atomic"),
            asset=str(row["budget_asset"]),
            network=str(row["budget_network"]),
        )

    def _read_balance(self, run_id: str, conn: sqlite3.Connection) -> _Balance:
        budget = self.snapshot(run_id, conn=conn)
        return _Balance(budget.max_atomic, budget.spent_atomic, budget.reserved_atomic)

    def _write_balance(
        self,
        run_id: str,
        previous: _Balance,
        spent_atomic: int,
        reserved_atomic: int,
        conn: sqlite3.Connection,
    ) -> None:
        changed = self._db.execute(
            """
            UPDATE runs
            SET budget_spent_atomic = ?, budget_reserved_atomic = ?, updated_at = ?
            WHERE id = ? AND budget_spent_atomic = ? AND budget_reserved_atomic = ?
            """,
            (
                str(spent_atomic),
                str(reserved_atomic),
                iso8601z(self._clock()),
                run_id,
                str(previous.spent_atomic),
                str(previous.reserved_atomic),
            ),
            conn=conn,
        )
        if changed != 1:
            raise TransitionConflict("run budget", run_id, f"{previous.spent_atomic}/{previous.reserved_atomic}")

    def _close_reservation(
        self,
        reservation: Reservation,
        status: ReservationStatus,
        actual_atomic: int | None,
        conn: sqlite3.Connection,
    ) -> None:
        changed = self._db.execute(
            """
            UPDATE budget_reservations SET status = ?, actual_atomic = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                status.value,
                None if actual_atomic is None else str(actual_atomic),
                iso8601z(self._clock()),
                reservation.id,
                ReservationStatus.RESERVED.value,
            ),
            conn=conn,
        )
        if changed != 1:
            raise TransitionConflict("reservation", reservation.id, ReservationStatus.RESERVED.value)


def check_auto_pay(policy: AutoPayPolicy, *, amount_atomic: int, spent_atomic: int) -> AutoPayDecision:
    """Decide whether ``amount_atomic`` may be paid without approval."""
    if not policy.enabled:
        return AutoPayDecision(False, "auto-pay is disabled for this run")
    if amount_atomic > policy.max_per_step_atomic:
        return AutoPayDecision(
            False,
            f"payment {amount_atomic} exceeds auto-pay per-step limit {policy.max_per_step_atomic}",
        )
    if spent_atomic + amount_atomic > policy.max_per_run_atomic:
        return AutoPayDecision(
            False,
            f"spend {spent_atomic + amount_atomic} would exceed auto-pay per-run limit "
            f"{policy.max_per_run_atomic}",
        )
    return AutoPayDecision(True)


def is_tool_allowlisted(policy: AutoPayPolicy, tool: Tool) -> bool:
    # An empty allowlist admits every tool.
    return not policy.tool_allowlist or tool.base_url in policy.tool_allowlist


def _check_amount(value: int, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an int")
    if value < 0:
        raise ValueError(f"{name} must be >= 0")


__all__ = ["AutoPayDecision", "BudgetLedger", "check_auto_pay", "is_tool_allowlisted"]
