"""
paigent-orchestrator — run and step state machine

File: src/paigent_orchestrator/control_plane/run_state.py
Last updated: 2026-10-16

Purpose
- Own every status write for runs and steps: legal transition tables, conditional
  updates, one event per transition, and the settle pass that derives run progress
  from step outcomes.

What should be included in this file
- Legal run/step transition tables and validators.
- Run creation (queued or planning-failed) with one step per graph node.
- Predecessor requirement resolution shared with the claim queue.
- Approval, rejection and cancellation entry points for external actors.

Functional requirements
- A transition that is not in the table raises IllegalTransition and writes nothing.
- A conditional write that changes zero rows raises TransitionConflict.
- A mutation and its event commit in the same transaction.

Non-functional requirements
- No in-memory coordination; every decision is re-read inside the writing transaction.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Final

import structlog

from paigent_orchestrator.control_plane.conditions import evaluate_condition
from paigent_orchestrator.domain.errors import IllegalTransition, TransitionConflict
from paigent_orchestrator.domain.graph import (
    ApprovalNode,
    Graph,
    JSONValue,
    Link,
    LinkKind,
    MergeNode,
    MergeStrategy,
)
from paigent_orchestrator.domain.ids import generate_run_id, generate_step_id
from paigent_orchestrator.domain.models import (
    Actor,
    AutoPayPolicy,
    Run,
    RunBudget,
    RunStatus,
    Step,
    StepError,
    StepStatus,
)
from paigent_orchestrator.observability.events import EventLog, EventType
from paigent_orchestrator.persistence.repositories import RunRepo, StepRepo
from paigent_orchestrator.persistence.state_db import SQLValue, StateDB, canonical_json, iso8601z, utc_now

if TYPE_CHECKING:
    import sqlite3
    from enum import StrEnum
else:
    try:
        from enum import StrEnum
    except ImportError:

        class StrEnum(str, Enum):
            """Compatibility fallback for Python < 3.11."""


LEGAL_RUN_TRANSITIONS: Final[Mapping[RunStatus, frozenset[RunStatus]]] = {
    RunStatus.QUEUED: frozenset({RunStatus.RUNNING, RunStatus.CANCELED}),
    RunStatus.RUNNING: frozenset(
        {
            RunStatus.PAUSED_FOR_APPROVAL,
            RunStatus.SUCCEEDED,
            RunStatus.FAILED,
            RunStatus.CANCELED,
        }
    ),
    RunStatus.PAUSED_FOR_APPROVAL: frozenset({RunStatus.RUNNING, RunStatus.CANCELED}),
    RunStatus.SUCCEEDED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELED: frozenset(),
}

LEGAL_STEP_TRANSITIONS: Final[Mapping[StepStatus, frozenset[StepStatus]]] = {
    StepStatus.PENDING: frozenset({StepStatus.CLAIMED, StepStatus.REQUIRES_APPROVAL, StepStatus.CANCELED}),
    StepStatus.CLAIMED: frozenset(
        {StepStatus.RUNNING, StepStatus.PENDING, StepStatus.FAILED, StepStatus.CANCELED}
    ),
    StepStatus.RUNNING: frozenset(
        {
            StepStatus.SUCCEEDED,
            StepStatus.FAILED,
            StepStatus.PENDING,
            StepStatus.REQUIRES_APPROVAL,
            StepStatus.CANCELED,
        }
    ),
    StepStatus.REQUIRES_APPROVAL: frozenset(
        {StepStatus.PENDING, StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.CANCELED}
    ),
    StepStatus.SUCCEEDED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.CANCELED: frozenset(),
}

_DEFAULT_STEP_EVENTS: Final[Mapping[StepStatus, EventType]] = {
    StepStatus.CLAIMED: EventType.STEP_CLAIMED,
    StepStatus.RUNNING: EventType.STEP_STARTED,
    StepStatus.SUCCEEDED: EventType.STEP_SUCCEEDED,
    StepStatus.FAILED: EventType.STEP_FAILED,
    StepStatus.PENDING: EventType.STEP_RETRY_SCHEDULED,
    StepStatus.REQUIRES_APPROVAL: EventType.STEP_BLOCKED,
    StepStatus.CANCELED: EventType.STEP_CANCELED,
}

# Columns a step transition may write besides status/updated_at.
_STEP_WRITABLE_COLUMNS: Final[frozenset[str]] = frozenset(
    {
        "attempt",
        "inputs_json",
        "outputs_json",
        "error_json",
        "metrics_json",
        "next_eligible_at",
        "lease_owner",
        "lease_expires_at",
        "approved",
        "started_at",
    }
)

_OPEN_STEP_STATUSES: Final[tuple[StepStatus, ...]] = (StepStatus.PENDING, StepStatus.REQUIRES_APPROVAL)


class Requirement(StrEnum):
    """Whether a step's predecessors allow it to run."""

    SATISFIED = "satisfied"
    WAITING = "waiting"
    UNREACHABLE = "unreachable"


def validate_run_transition(current: RunStatus, requested: RunStatus) -> None:
    if requested not in LEGAL_RUN_TRANSITIONS[current]:
        raise IllegalTransition("run", current.value, requested.value)


def validate_step_transition(current: StepStatus, requested: StepStatus) -> None:
    if requested not in LEGAL_STEP_TRANSITIONS[current]:
        raise IllegalTransition("step", current.value, requested.value)


def link_requirement(link: Link, predecessor: Step | None) -> Requirement:
    if predecessor is None:
        return Requirement.UNREACHABLE
    status = predecessor.status
    if link.kind is LinkKind.FAILURE:
        if status is StepStatus.FAILED:
            return Requirement.SATISFIED
        return Requirement.UNREACHABLE if status.is_terminal else Requirement.WAITING
    if status is not StepStatus.SUCCEEDED:
        return Requirement.UNREACHABLE if status.is_terminal else Requirement.WAITING

    outputs: Mapping[str, object] = predecessor.outputs or {}
    if link.kind is LinkKind.CONDITIONAL:
        holds = evaluate_condition(link.condition or "true", outputs)
    elif link.kind is LinkKind.BRANCH_TRUE:
        holds = bool(outputs.get("result")) is True
    elif link.kind is LinkKind.BRANCH_FALSE:
        holds = bool(outputs.get("result")) is False
    else:
        holds = True
    return Requirement.SATISFIED if holds else Requirement.UNREACHABLE


def requirement_for(graph: Graph, node_id: str, steps: Mapping[str, Step]) -> Requirement:
    """Combine every incoming link of ``node_id``; merge ``any``/``first`` needs only one."""
    links = graph.incoming(node_id)
    if not links:
        return Requirement.SATISFIED
    states = [link_requirement(link, steps.get(link.source)) for link in links]
    node = graph.node(node_id)
    if isinstance(node, MergeNode) and node.merge_strategy in (MergeStrategy.ANY, MergeStrategy.FIRST):
        if Requirement.SATISFIED in states:
            return Requirement.SATISFIED
        if all(state is Requirement.UNREACHABLE for state in states):
            return Requirement.UNREACHABLE
        return Requirement.WAITING
    if all(state is Requirement.SATISFIED for state in states):
        return Requirement.SATISFIED
    if Requirement.UNREACHABLE in states:
        return Requirement.UNREACHABLE
    return Requirement.WAITING


def needs_approval_gate(graph: Graph, step: Step) -> bool:
    node = graph.node(step.step_id)
    return isinstance(node, ApprovalNode) or (node.policy.requires_approval and not step.approved)


class RunStateMachine:
    """Conditional status writes for runs and steps, each with exactly one event."""

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
        self._runs = RunRepo(db, clock=clock)
        self._steps = StepRepo(db, clock=clock)

    @property
    def runs(self) -> RunRepo:
        return self._runs

    @property
    def steps(self) -> StepRepo:
        return self._steps

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_run(
        self,
        *,
        workspace_id: str,
        intent: str,
        graph: Graph,
        budget: RunBudget,
        auto_pay: AutoPayPolicy | None = None,
        created_by: str | None = None,
        planning_error: str | None = None,
    ) -> Run:
        """Insert the run and one step per node in a single transaction."""
        now = self._clock()
        failed = planning_error is not None
        run = Run(
            id=generate_run_id(),
            workspace_id=workspace_id,
            input=intent,
            graph=graph,
            budget=RunBudget(max_atomic=budget.max_atomic, asset=budget.asset, network=budget.network),
            status=RunStatus.FAILED if failed else RunStatus.QUEUED,
            auto_pay=auto_pay or AutoPayPolicy(),
            created_by=created_by,
            planning_error=planning_error,
            created_at=now,
            updated_at=now,
        )
        step_error = StepError(code="planning_failed", message=planning_error) if failed else None
        steps = [
            Step(
                id=generate_step_id(),
                run_id=run.id,
                step_id=node.id,
                node_type=node.node_type,
                status=StepStatus.FAILED if failed else StepStatus.PENDING,
                error=step_error,
                created_at=now,
            )
            for node in graph.nodes
        ]
        data: dict[str, JSONValue] = {
            "newStatus": run.status.value,
            "stepIds": [step.step_id for step in steps],
            "maxAtomic": str(run.budget.max_atomic),
        }
        if failed:
            data["error"] = {"code": "planning_failed", "message": planning_error}
            event_type, actor = EventType.RUN_PLANNING_FAILED, Actor.planner()
        else:
            event_type = EventType.RUN_CREATED
            actor = Actor.user(created_by) if created_by else Actor.system()

        with self._db.transaction() as tx:
            self._runs.insert(run, conn=tx)
            for step in steps:
                self._steps.insert(step, conn=tx)
            self._events.append(run.id, event_type, data, actor, conn=tx)

        self._logger.info(
            "run_created",
            run_id=run.id,
            workspace_id=workspace_id,
            status=run.status.value,
            step_count=len(steps),
        )
        return run

    # ------------------------------------------------------------------
    # Run transitions
    # ------------------------------------------------------------------

    def transition_run(
        self,
        run_id: str,
        new_status: RunStatus,
        *,
        actor: Actor,
        expected: RunStatus | None = None,
        data: Mapping[str, JSONValue] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> RunStatus:
        with self._db.transaction(conn=conn) as tx:
            current = expected or self._runs.require(run_id, conn=tx).status
            validate_run_transition(current, new_status)
            changed = self._db.execute(
                "UPDATE runs SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (new_status.value, iso8601z(self._clock()), run_id, current.value),
                conn=tx,
            )
            if changed != 1:
                raise TransitionConflict("run", run_id, current.value)
            payload: dict[str, JSONValue] = {
                "previousStatus": current.value,
                "newStatus": new_status.value,
            }
            payload.update(data or {})
            self._events.append(run_id, _run_event_type(current, new_status), payload, actor, conn=tx)
        self._logger.info("run_transitioned", run_id=run_id, previous=current.value, status=new_status.value)
        return new_status

    def start_run(self, run_id: str, *, actor: Actor | None = None) -> RunStatus:
        who = actor or Actor.system()
        with self._db.transaction() as tx:
            self.transition_run(run_id, RunStatus.RUNNING, actor=who, expected=RunStatus.QUEUED, conn=tx)
            return self._settle(run_id, who, tx)

    def cancel_run(self, run_id: str, *, actor: Actor, reason: str | None = None) -> RunStatus:
        """Cancel the run and its open steps; in-flight steps are fenced by their worker."""
        with self._db.transaction() as tx:
            run = self._runs.require(run_id, conn=tx)
            validate_run_transition(run.status, RunStatus.CANCELED)
            self._cancel_open_steps(run_id, actor, "run_canceled", tx)
            data: dict[str, JSONValue] = {} if reason is None else {"reason": reason}
            return self.transition_run(
                run_id, RunStatus.CANCELED, actor=actor, expected=run.status, data=data, conn=tx
            )

    # ------------------------------------------------------------------
    # Step transitions
    # ------------------------------------------------------------------

    def transition_step(
        self,
        run_id: str,
        step_id: str,
        new_status: StepStatus,
        *,
        expected: StepStatus,
        actor: Actor,
        event_type: EventType | None = None,
        updates: Mapping[str, SQLValue] | None = None,
        data: Mapping[str, JSONValue] | None = None,
        lease_owner: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Step:
        """Conditionally move a step from ``expected`` to ``new_status``.

        ``lease_owner`` additionally fences the write to the worker holding the lease.
        """
        validate_step_transition(expected, new_status)
        assignments = ["status = ?", "updated_at = ?"]
        params: list[SQLValue] = [new_status.value, iso8601z(self._clock())]
        for column, value in (updates or {}).items():
            if column not in _STEP_WRITABLE_COLUMNS:
                raise ValueError(f"steps.{column} is not writable by a transition")
            assignments.append(f"{column} = ?")
            params.append(value)
        sql = f"UPDATE steps SET {', '.join(assignments)} WHERE run_id = ? AND step_id = ? AND status = ?"
        params.extend((run_id, step_id, expected.value))
        if lease_owner is not None:
            sql += " AND lease_owner = ?"
            params.append(lease_owner)

        with self._db.transaction(conn=conn) as tx:
            if self._db.execute(sql, tuple(params), conn=tx) != 1:
                raise TransitionConflict("step", f"{run_id}/{step_id}", expected.value)
            step = self._steps.require(run_id, step_id, conn=tx)
            payload: dict[str, JSONValue] = {
                "stepId": step_id,
                "previousStatus": expected.value,
                "newStatus": new_status.value,
                "attempt": step.attempt,
            }
            payload.update(data or {})
            self._events.append(
                run_id, event_type or _DEFAULT_STEP_EVENTS[new_status], payload, actor, conn=tx
            )
        self._logger.debug(
            "step_transitioned",
            run_id=run_id,
            step_id=step_id,
            previous=expected.value,
            status=new_status.value,
            attempt=step.attempt,
        )
        return step

    def approve_step(self, run_id: str, step_id: str, *, actor: Actor) -> Step:
        """Resolve an approval gate; approval nodes succeed, other gated steps become claimable."""
        with self._db.transaction() as tx:
            run = self._runs.require(run_id, conn=tx)
            step = self._steps.require(run_id, step_id, conn=tx)
            node = run.graph.node(step_id)
            approved_by: dict[str, JSONValue] = {"approvedBy": actor.id}
            if isinstance(node, ApprovalNode):
                validate_step_transition(step.status, StepStatus.SUCCEEDED)
                outputs: dict[str, JSONValue] = {"approved": True, "approvedBy": actor.id}
                updated = self.transition_step(
                    run_id,
                    step_id,
                    StepStatus.SUCCEEDED,
                    expected=StepStatus.REQUIRES_APPROVAL,
                    actor=actor,
                    event_type=EventType.STEP_APPROVED,
                    updates={"outputs_json": canonical_json(outputs), "approved": 1},
                    data=approved_by,
                    conn=tx,
                )
            else:
                validate_step_transition(step.status, StepStatus.PENDING)
                updated = self.transition_step(
                    run_id,
                    step_id,
                    StepStatus.PENDING,
                    expected=StepStatus.REQUIRES_APPROVAL,
                    actor=actor,
                    event_type=EventType.STEP_APPROVED,
                    updates={"approved": 1, "next_eligible_at": iso8601z(self._clock())},
                    data=approved_by,
                    conn=tx,
                )
            self._resume_if_ungated(run_id, actor, tx)
            self._settle(run_id, actor, tx)
        self._logger.info("step_approved", run_id=run_id, step_id=step_id, actor=actor.id)
        return updated

    def reject_step(self, run_id: str, step_id: str, *, actor: Actor, reason: str | None = None) -> Step:
        message = reason or "Rejected by user"
        with self._db.transaction() as tx:
            step = self._steps.require(run_id, step_id, conn=tx)
            validate_step_transition(step.status, StepStatus.FAILED)
            error = StepError(code="rejected", message=message)
            updated = self.transition_step(
                run_id,
                step_id,
                StepStatus.FAILED,
                expected=StepStatus.REQUIRES_APPROVAL,
                actor=actor,
                event_type=EventType.STEP_REJECTED,
                updates={"error_json": canonical_json(error.to_dict())},
                data={"error": {"code": error.code, "message": error.message}},
                conn=tx,
            )
            self._resume_if_ungated(run_id, actor, tx)
            self._settle(run_id, actor, tx)
        self._logger.info("step_rejected", run_id=run_id, step_id=step_id, actor=actor.id)
        return updated

    # ------------------------------------------------------------------
    # Settling
    # ------------------------------------------------------------------

    def settle(self, run_id: str, *, actor: Actor | None = None) -> RunStatus:
        """Derive run progress from step outcomes and return the run status."""
        with self._db.transaction() as tx:
            return self._settle(run_id, actor or Actor.system(), tx)

    def _settle(self, run_id: str, actor: Actor, tx: sqlite3.Connection) -> RunStatus:
        run = self._runs.require(run_id, conn=tx)
        if run.status not in (RunStatus.RUNNING, RunStatus.PAUSED_FOR_APPROVAL):
            return run.status
        graph = run.graph

        changed = True
        while changed:
            changed = False
            steps = {step.step_id: step for step in self._steps.list_for_run(run_id, conn=tx)}
            unhandled = [
                step
                for step in steps.values()
                if step.status is StepStatus.FAILED and not graph.has_failure_handler(step.step_id)
            ]
            if unhandled:
                return self._fail_run(run_id, run.status, unhandled[0], actor, tx)

            for step in steps.values():
                if step.status is not StepStatus.PENDING:
                    continue
                requirement = requirement_for(graph, step.step_id, steps)
                if requirement is Requirement.UNREACHABLE:
                    self.transition_step(
                        run_id,
                        step.step_id,
                        StepStatus.CANCELED,
                        expected=StepStatus.PENDING,
                        actor=actor,
                        data={"reason": "unreachable"},
                        conn=tx,
                    )
                    changed = True
                elif requirement is Requirement.SATISFIED and needs_approval_gate(graph, step):
                    self.transition_step(
                        run_id,
                        step.step_id,
                        StepStatus.REQUIRES_APPROVAL,
                        expected=StepStatus.PENDING,
                        actor=actor,
                        data={"reason": "approval_gate"},
                        conn=tx,
                    )
                    changed = True

        status = run.status
        steps_now = self._steps.list_for_run(run_id, conn=tx)
        gated = any(step.status is StepStatus.REQUIRES_APPROVAL for step in steps_now)
        if gated and status is RunStatus.RUNNING:
            return self.transition_run(
                run_id, RunStatus.PAUSED_FOR_APPROVAL, actor=actor, expected=status, conn=tx
            )
        if all(step.status.is_terminal for step in steps_now):
            if status is RunStatus.PAUSED_FOR_APPROVAL:
                status = self.transition_run(run_id, RunStatus.RUNNING, actor=actor, expected=status, conn=tx)
            return self.transition_run(run_id, RunStatus.SUCCEEDED, actor=actor, expected=status, conn=tx)
        return status

    def _fail_run(
        self,
        run_id: str,
        status: RunStatus,
        failed_step: Step,
        actor: Actor,
        tx: sqlite3.Connection,
    ) -> RunStatus:
        if status is RunStatus.PAUSED_FOR_APPROVAL:
            status = self.transition_run(run_id, RunStatus.RUNNING, actor=actor, expected=status, conn=tx)
        self._cancel_open_steps(run_id, actor, "run_failed", tx)
        error = failed_step.error or StepError(code="step_failed", message=f"step {failed_step.step_id} failed")
        self._logger.warning(
            "run_failed",
            run_id=run_id,
            failed_step=failed_step.step_id,
            error_code=error.code,
        )
        return self.transition_run(
            run_id,
            RunStatus.FAILED,
            actor=actor,
            expected=status,
            data={
                "failedStepId": failed_step.step_id,
                "error": {"code": error.code, "message": error.message},
            },
            conn=tx,
        )

    def _cancel_open_steps(self, run_id: str, actor: Actor, reason: str, tx: sqlite3.Connection) -> None:
        for step in self._steps.list_for_run(run_id, conn=tx):
            if step.status in _OPEN_STEP_STATUSES:
                self.transition_step(
                    run_id,
                    step.step_id,
                    StepStatus.CANCELED,
                    expected=step.status,
                    actor=actor,
                    data={"reason": reason},
                    conn=tx,
                )

    def _resume_if_ungated(self, run_id: str, actor: Actor, tx: sqlite3.Connection) -> None:
        run = self._runs.require(run_id, conn=tx)
        if run.status is not RunStatus.PAUSED_FOR_APPROVAL:
            return
        steps: Sequence[Step] = self._steps.list_for_run(run_id, conn=tx)
        if not any(step.status is StepStatus.REQUIRES_APPROVAL for step in steps):
            self.transition_run(run_id, RunStatus.RUNNING, actor=actor, expected=run.status, conn=tx)


def _run_event_type(current: RunStatus, new_status: RunStatus) -> EventType:
    if new_status is RunStatus.RUNNING:
        return EventType.RUN_RESUMED if current is RunStatus.PAUSED_FOR_APPROVAL else EventType.RUN_STARTED
    return {
        RunStatus.PAUSED_FOR_APPROVAL: EventType.RUN_PAUSED,
        RunStatus.SUCCEEDED: EventType.RUN_SUCCEEDED,
        RunStatus.FAILED: EventType.RUN_FAILED,
        RunStatus.CANCELED: EventType.RUN_CANCELED,
    }[new_status]


__all__ = [
    "LEGAL_RUN_TRANSITIONS",
    "LEGAL_STEP_TRANSITIONS",
    "Requirement",
    "RunStateMachine",
    "link_requirement",
    "needs_approval_gate",
    "requirement_for",
    "validate_run_transition",
    "validate_step_transition",
]
