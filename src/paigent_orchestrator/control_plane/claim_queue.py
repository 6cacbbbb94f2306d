"""Durable step claim queue: eligibility scan, leased claims, retries with backoff and lease recycling.

Workers never coordinate in memory. A claim is a conditional ``pending -> claimed``
write; the loser of a race sees :class:`ClaimConflict` and moves on. Every
later write by the worker is fenced on ``lease_owner`` so that a recycled lease
cannot be overwritten by its previous holder.
"""

from __future__ import annotations

import random as random_module
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from paigent_orchestrator.constants import (
    BACKOFF_BASE_MS,
    BACKOFF_CAP_MS,
    BACKOFF_JITTER_RATIO,
    CLAIM_SCAN_LIMIT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMEOUT_MS,
    LEASE_TIMEOUT_MULTIPLIER,
)
from paigent_orchestrator.control_plane.budgets import BudgetLedger
from paigent_orchestrator.control_plane.run_state import (
    Requirement,
    RunStateMachine,
    needs_approval_gate,
    requirement_for,
)
from paigent_orchestrator.domain.errors import (
    ClaimConflict,
    FatalStepError,
    LeaseLost,
    OrchestrationError,
    TransitionConflict,
)
from paigent_orchestrator.domain.graph import JSONValue, NodePolicy
from paigent_orchestrator.domain.models import (
    Actor,
    Run,
    RunStatus,
    Step,
    StepError,
    StepMetrics,
    StepStatus,
)
from paigent_orchestrator.observability.events import EventType
from paigent_orchestrator.persistence.state_db import StateDB, canonical_json, iso8601z, utc_now
from paigent_orchestrator.providers.base import BackoffConfig, RandomFn, compute_backoff_delay

if TYPE_CHECKING:
    import sqlite3


@dataclass(frozen=True, slots=True)
class ExecutionSettings:
    lease_timeout_multiplier: int = LEASE_TIMEOUT_MULTIPLIER
    backoff_base_ms: int = BACKOFF_BASE_MS
    backoff_cap_ms: int = BACKOFF_CAP_MS
    backoff_jitter_ratio: float = BACKOFF_JITTER_RATIO
    default_max_retries: int = DEFAULT_MAX_RETRIES
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    claim_scan_limit: int = CLAIM_SCAN_LIMIT

    def __post_init__(self) -> None:
        if self.lease_timeout_multiplier < 1:
            raise ValueError("lease_timeout_multiplier must be >= 1")
        if self.claim_scan_limit < 1:
            raise ValueError("claim_scan_limit must be >= 1")
        if self.backoff_cap_ms < self.backoff_base_ms:
            raise ValueError("backoff_cap_ms must be >= backoff_base_ms")
        if not (0.0 <= self.backoff_jitter_ratio <= 1.0):
            raise ValueError("backoff_jitter_ratio must be between 0.0 and 1.0")

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> ExecutionSettings:
        return cls(
            lease_timeout_multiplier=int(section.get("lease_timeout_multiplier", LEASE_TIMEOUT_MULTIPLIER)),
            backoff_base_ms=int(section.get("backoff_base_ms", BACKOFF_BASE_MS)),
            backoff_cap_ms=int(section.get("backoff_cap_ms", BACKOFF_CAP_MS)),
            backoff_jitter_ratio=float(section.get("backoff_jitter_ratio", BACKOFF_JITTER_RATIO)),
            default_max_retries=int(section.get("default_max_retries", DEFAULT_MAX_RETRIES)),
            default_timeout_ms=int(section.get("default_timeout_ms", DEFAULT_TIMEOUT_MS)),
            claim_scan_limit=int(section.get("claim_scan_limit", CLAIM_SCAN_LIMIT)),
        )

    @property
    def backoff(self) -> BackoffConfig:
        return BackoffConfig(
            initial_delay_seconds=self.backoff_base_ms / 1000,
            multiplier=2.0,
            max_delay_seconds=self.backoff_cap_ms / 1000,
            jitter_ratio=self.backoff_jitter_ratio,
        )

    @property
    def default_policy(self) -> NodePolicy:
        return NodePolicy(max_retries=self.default_max_retries, timeout_ms=self.default_timeout_ms)


_CLEAR_LEASE: Mapping[str, None] = {"lease_owner": None, "lease_expires_at": None}


class ClaimQueue:
    """Claims, completes, retries and recycles steps through conditional writes."""

    def __init__(
        self,
        db: StateDB,
        state: RunStateMachine,
        ledger: BudgetLedger,
        *,
        settings: ExecutionSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
        random_fn: RandomFn = random_module.random,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._state = state
        self._ledger = ledger
        self._settings = settings or ExecutionSettings()
        self._clock = clock
        self._random_fn = random_fn
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def settings(self) -> ExecutionSettings:
        return self._settings

    def backoff_ms(self, attempt: int) -> int:
        """``min(base * 2**(attempt-1), cap)`` with symmetric jitter, in milliseconds."""
        delay = compute_backoff_delay(
            retry_number=max(attempt, 1),
            config=self._settings.backoff,
            random_fn=self._random_fn,
        )
        return int(round(delay * 1000))

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def claim(self, run_id: str, step_id: str, worker_id: str, *, now: datetime | None = None) -> Step:
        """Take the lease on a pending step of a running run, or raise :class:`ClaimConflict`."""
        at = now or self._clock()
        with self._db.transaction() as tx:
            run = self._state.runs.require(run_id, conn=tx)
            step = self._state.steps.require(run_id, step_id, conn=tx)
            if step.status is not StepStatus.PENDING or run.status is not RunStatus.RUNNING:
                raise ClaimConflict(run_id, step_id)
            lease_ms = self._settings.lease_timeout_multiplier * run.graph.node(step_id).policy.timeout_ms
            try:
                claimed = self._state.transition_step(
                    run_id,
                    step_id,
                    StepStatus.CLAIMED,
                    expected=StepStatus.PENDING,
                    actor=Actor.worker(worker_id),
                    updates={
                        "attempt": step.attempt + 1,
                        "lease_owner": worker_id,
                        "lease_expires_at": iso8601z(at + timedelta(milliseconds=lease_ms)),
                    },
                    data={"workerId": worker_id},
                    conn=tx,
                )
            except TransitionConflict as exc:
                raise ClaimConflict(run_id, step_id) from exc
        self._logger.info(
            "step_claimed",
            run_id=run_id,
            step_id=step_id,
            worker_id=worker_id,
            attempt=claimed.attempt,
        )
        return claimed

    def claim_next(self, worker_id: str, *, now: datetime | None = None) -> Step | None:
        """Claim the first eligible step in ``(next_eligible_at, created_at, id)`` order.

        Candidates are read ``claim_scan_limit`` rows at a time; blocked rows never hide
        later ones.
        """
        at = now or self._clock()
        limit = self._settings.claim_scan_limit
        runs: dict[str, tuple[Run, dict[str, Step]]] = {}
        after: Step | None = None
        while True:
            candidates = self._state.steps.list_claim_candidates(at, limit=limit, after=after)
            for candidate in candidates:
                if candidate.run_id not in runs:
                    runs[candidate.run_id] = (
                        self._state.runs.require(candidate.run_id),
                        {step.step_id: step for step in self._state.steps.list_for_run(candidate.run_id)},
                    )
                run, steps = runs[candidate.run_id]
                if needs_approval_gate(run.graph, candidate):
                    continue
                if requirement_for(run.graph, candidate.step_id, steps) is not Requirement.SATISFIED:
                    continue
                try:
                    return self.claim(candidate.run_id, candidate.step_id, worker_id, now=at)
                except ClaimConflict:
                    self._logger.debug(
                        "step_claim_lost",
                        run_id=candidate.run_id,
                        step_id=candidate.step_id,
                        worker_id=worker_id,
                    )
            if len(candidates) < limit:
                return None
            after = candidates[-1]

    # ------------------------------------------------------------------
    # Worker-side transitions (fenced on the lease owner)
    # ------------------------------------------------------------------

    def start(self, step: Step, worker_id: str, *, now: datetime | None = None) -> Step:
        return self._state.transition_step(
            step.run_id,
            step.step_id,
            StepStatus.RUNNING,
            expected=StepStatus.CLAIMED,
            actor=Actor.worker(worker_id),
            updates={"started_at": iso8601z(now or self._clock())},
            lease_owner=worker_id,
        )

    def ensure_lease(
        self,
        step: Step,
        worker_id: str,
        *,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Raise unless ``worker_id`` still holds an unexpired lease on a running step of an active run."""
        at = now or self._clock()
        with self._db.transaction(conn=conn) as tx:
            run = self._state.runs.require(step.run_id, conn=tx)
            if run.status.is_terminal:
                raise FatalStepError(f"run {run.id!r} is {run.status.value}", code="run_not_active")
            current = self._state.steps.require(step.run_id, step.step_id, conn=tx)
            if (
                current.status is not StepStatus.RUNNING
                or current.lease_owner != worker_id
                or current.lease_expires_at is None
                or current.lease_expires_at <= at
            ):
                raise LeaseLost(step.run_id, step.step_id, worker_id)

    def complete(
        self,
        step: Step,
        worker_id: str,
        *,
        outputs: Mapping[str, JSONValue],
        inputs: Mapping[str, JSONValue] | None = None,
        metrics: StepMetrics | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Step:
        return self._state.transition_step(
            step.run_id,
            step.step_id,
            StepStatus.SUCCEEDED,
            expected=StepStatus.RUNNING,
            actor=Actor.worker(worker_id),
            updates={
                **_CLEAR_LEASE,
                "outputs_json": canonical_json(dict(outputs)),
                "inputs_json": None if inputs is None else canonical_json(dict(inputs)),
                "metrics_json": None if metrics is None else canonical_json(metrics.to_dict()),
                "error_json": None,
            },
            lease_owner=worker_id,
            conn=conn,
        )

    def fail(
        self,
        step: Step,
        worker_id: str,
        error: OrchestrationError,
        *,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Step:
        """Retry a retryable error while ``attempt <= maxRetries``; otherwise fail the step."""
        at = now or self._clock()
        policy = self._policy_for(step, conn=conn)
        step_error = StepError(code=error.code, message=error.detail, retryable=error.retryable)
        data: dict[str, JSONValue] = {"error": {"code": step_error.code, "message": step_error.message}}
        with self._db.transaction(conn=conn) as tx:
            self._ledger.release(step.run_id, step.step_id, actor=Actor.worker(worker_id), conn=tx)
            if error.retryable and step.attempt <= policy.max_retries:
                delay_ms = self.backoff_ms(step.attempt)
                data["retryInMs"] = delay_ms
                updated = self._state.transition_step(
                    step.run_id,
                    step.step_id,
                    StepStatus.PENDING,
                    expected=step.status,
                    actor=Actor.worker(worker_id),
                    event_type=EventType.STEP_RETRY_SCHEDULED,
                    updates={
                        **_CLEAR_LEASE,
                        "error_json": canonical_json(step_error.to_dict()),
                        "next_eligible_at": iso8601z(at + timedelta(milliseconds=delay_ms)),
                    },
                    data=data,
                    lease_owner=worker_id,
                    conn=tx,
                )
            else:
                updated = self._state.transition_step(
                    step.run_id,
                    step.step_id,
                    StepStatus.FAILED,
                    expected=step.status,
                    actor=Actor.worker(worker_id),
                    updates={**_CLEAR_LEASE, "error_json": canonical_json(step_error.to_dict())},
                    data=data,
                    lease_owner=worker_id,
                    conn=tx,
                )
        self._logger.warning(
            "step_failed" if updated.status is StepStatus.FAILED else "step_retry_scheduled",
            run_id=step.run_id,
            step_id=step.step_id,
            attempt=step.attempt,
            error_code=step_error.code,
            retryable=step_error.retryable,
        )
        return updated

    def defer(
        self,
        step: Step,
        worker_id: str,
        *,
        delay_ms: int,
        outputs: Mapping[str, JSONValue] | None = None,
        now: datetime | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> Step:
        """Return a running step to ``pending`` until ``now + delay_ms``; polling does not use up attempts."""
        at = now or self._clock()
        with self._db.transaction(conn=conn) as tx:
            self._ledger.release(step.run_id, step.step_id, actor=Actor.worker(worker_id), conn=tx)
            return self._state.transition_step(
                step.run_id,
                step.step_id,
                StepStatus.PENDING,
                expected=StepStatus.RUNNING,
                actor=Actor.worker(worker_id),
                updates={
                    **_CLEAR_LEASE,
                    "attempt": max(step.attempt - 1, 0),
                    "outputs_json": None if outputs is None else canonical_json(dict(outputs)),
                    "next_eligible_at": iso8601z(at + timedelta(milliseconds=delay_ms)),
                },
                data={"reason": "waiting", "retryInMs": delay_ms},
                lease_owner=worker_id,
                conn=tx,
            )

    def require_approval(
        self,
        step: Step,
        worker_id: str,
        *,
        reason: str,
        conn: sqlite3.Connection | None = None,
    ) -> Step:
        with self._db.transaction(conn=conn) as tx:
            self._ledger.release(step.run_id, step.step_id, actor=Actor.worker(worker_id), conn=tx)
            return self._state.transition_step(
                step.run_id,
                step.step_id,
                StepStatus.REQUIRES_APPROVAL,
                expected=StepStatus.RUNNING,
                actor=Actor.worker(worker_id),
                updates=dict(_CLEAR_LEASE),
                data={"reason": reason},
                lease_owner=worker_id,
                conn=tx,
            )

    def cancel(
        self,
        step: Step,
        worker_id: str,
        *,
        reason: str,
        conn: sqlite3.Connection | None = None,
    ) -> Step:
        with self._db.transaction(conn=conn) as tx:
            self._ledger.release(step.run_id, step.step_id, actor=Actor.worker(worker_id), conn=tx)
            return self._state.transition_step(
                step.run_id,
                step.step_id,
                StepStatus.CANCELED,
                expected=step.status,
                actor=Actor.worker(worker_id),
                updates=dict(_CLEAR_LEASE),
                data={"reason": reason},
                lease_owner=worker_id,
                conn=tx,
            )

    # ------------------------------------------------------------------
    # Lease recycling
    # ------------------------------------------------------------------

    def recycle_expired_leases(self, *, now: datetime | None = None) -> list[Step]:
        """Return steps with expired leases to ``pending`` (or fail them when retries are spent)."""
        at = now or self._clock()
        recycled: list[Step] = []
        for step in self._state.steps.list_expired_leases(at):
            try:
                recycled.append(self._recycle_one(step, at))
            except TransitionConflict:
                # The holder finished between the scan and the write.
                self._logger.debug("lease_recycle_lost", run_id=step.run_id, step_id=step.step_id)
        for run_id in sorted({step.run_id for step in recycled}):
            self._state.settle(run_id)
        return recycled

    def _recycle_one(self, step: Step, at: datetime) -> Step:
        actor = Actor.system()
        error = StepError(
            code="lease_expired",
            message=f"lease held by {step.lease_owner} expired",
            retryable=True,
        )
        data: dict[str, JSONValue] = {
            "reason": "lease_expired",
            "previousOwner": step.lease_owner,
            "error": {"code": error.code, "message": error.message},
        }
        with self._db.transaction() as tx:
            run = self._state.runs.require(step.run_id, conn=tx)
            self._ledger.release(step.run_id, step.step_id, actor=actor, conn=tx)
            policy = run.graph.node(step.step_id).policy
            if run.status.is_terminal:
                target, event_type = StepStatus.CANCELED, EventType.STEP_CANCELED
                updates: dict[str, str | None] = dict(_CLEAR_LEASE)
            elif step.attempt <= policy.max_retries:
                target, event_type = StepStatus.PENDING, EventType.STEP_LEASE_EXPIRED
                delay_ms = self.backoff_ms(step.attempt)
                data["retryInMs"] = delay_ms
                updates = {
                    **_CLEAR_LEASE,
                    "error_json": canonical_json(error.to_dict()),
                    "next_eligible_at": iso8601z(at + timedelta(milliseconds=delay_ms)),
                }
            else:
                target, event_type = StepStatus.FAILED, EventType.STEP_FAILED
                updates = {**_CLEAR_LEASE, "error_json": canonical_json(error.to_dict())}
            recycled = self._state.transition_step(
                step.run_id,
                step.step_id,
                target,
                expected=step.status,
                actor=actor,
                event_type=event_type,
                updates=updates,
                data=data,
                lease_owner=step.lease_owner,
                conn=tx,
            )
        self._logger.warning(
            "step_lease_expired",
            run_id=step.run_id,
            step_id=step.step_id,
            previous_owner=step.lease_owner,
            status=recycled.status.value,
        )
        return recycled

    def _policy_for(self, step: Step, *, conn: sqlite3.Connection | None) -> NodePolicy:
        return self._state.runs.require(step.run_id, conn=conn).graph.node(step.step_id).policy


__all__ = ["ClaimQueue", "ExecutionSettings"]
