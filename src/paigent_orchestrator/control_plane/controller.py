"""Orchestrator facade: submit an intent, drive workers, resolve approvals, inspect runs."""

from __future__ import annotations

import random as random_module
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Any, cast

import structlog

from paigent_orchestrator.config.loader import load_config
from paigent_orchestrator.config.schema import assert_valid_config, default_config, merge_config
from paigent_orchestrator.control_plane.budgets import BudgetLedger
from paigent_orchestrator.control_plane.claim_queue import ClaimQueue, ExecutionSettings
from paigent_orchestrator.control_plane.executor import ReasoningSettings, StepExecutor, StepOutcome
from paigent_orchestrator.control_plane.run_state import RunStateMachine
from paigent_orchestrator.domain.models import (
    Actor,
    AutoPayPolicy,
    PaymentReceipt,
    Run,
    RunBudget,
    RunStatus,
    Step,
    Tool,
    parse_atomic,
)
from paigent_orchestrator.observability.events import Event, EventLog, EventType, RunProjection, replay
from paigent_orchestrator.persistence.repositories import ReceiptRepo, ToolRepo
from paigent_orchestrator.persistence.state_db import StateDB, utc_now
from paigent_orchestrator.planning.planner import Planner, PlannerSettings, fallback_graph

if TYPE_CHECKING:
    from pathlib import Path

    from paigent_orchestrator.providers.base import (
        PaymentClient,
        RandomFn,
        StatusPoller,
        TextGenerator,
        ToolCatalog,
        ToolInvoker,
    )


class Orchestrator:
    """Wires the planner, state machine, ledger, claim queue and executor over one state DB."""

    def __init__(
        self,
        config: Mapping[str, object] | None = None,
        *,
        generator: TextGenerator,
        db: StateDB | None = None,
        payments: PaymentClient | None = None,
        invoker: ToolInvoker | None = None,
        poller: StatusPoller | None = None,
        catalog: ToolCatalog | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        random_fn: RandomFn = random_module.random,
        logger: Any | None = None,
    ) -> None:
        self._config = _effective_config(config)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        paths = cast("Mapping[str, Any]", self._config["paths"])
        self._db = db if db is not None else StateDB(str(paths["state_db"]))
        self._db.migrate()

        execution = ExecutionSettings.from_config(cast("Mapping[str, Any]", self._config["execution"]))
        planner_settings = PlannerSettings.from_config(cast("Mapping[str, Any]", self._config["planner"]))
        self._events = EventLog(self._db, clock=clock, logger=logger)
        self._state = RunStateMachine(self._db, self._events, clock=clock, logger=logger)
        self._ledger = BudgetLedger(self._db, self._events, clock=clock, logger=logger)
        self._queue = ClaimQueue(
            self._db,
            self._state,
            self._ledger,
            settings=execution,
            clock=clock,
            random_fn=random_fn,
            logger=logger,
        )
        self._tools = ToolRepo(self._db, clock=clock)
        self._receipts = ReceiptRepo(self._db, clock=clock)
        self._catalog: ToolCatalog = catalog if catalog is not None else self._tools
        self._planner = Planner(
            generator,
            settings=planner_settings,
            default_policy=execution.default_policy,
            sleep=sleep,
            logger=logger,
        )
        self._executor = StepExecutor(
            self._db,
            self._state,
            self._queue,
            self._ledger,
            self._events,
            catalog=self._catalog,
            generator=generator,
            payments=payments,
            invoker=invoker,
            poller=poller,
            reasoning=ReasoningSettings(
                model=planner_settings.model,
                max_tokens=planner_settings.max_output_tokens,
                temperature=planner_settings.temperature,
            ),
            clock=clock,
            monotonic=monotonic,
            logger=logger,
        )

    @classmethod
    def from_config_file(
        cls,
        config_path: str | Path | None = None,
        *,
        generator: TextGenerator,
        profile: str | None = None,
        cli_overrides: Mapping[str, object] | None = None,
        environ: Mapping[str, str] | None = None,
        **collaborators: Any,
    ) -> Orchestrator:
        """Build from a TOML file layered with profile, ``PAIGENT_*`` variables and overrides."""
        config = load_config(config_path, profile=profile, cli_overrides=cli_overrides, environ=environ)
        return cls(config, generator=generator, **collaborators)

    @property
    def config(self) -> dict[str, object]:
        return self._config

    @property
    def db(self) -> StateDB:
        return self._db

    @property
    def state(self) -> RunStateMachine:
        return self._state

    @property
    def ledger(self) -> BudgetLedger:
        return self._ledger

    @property
    def queue(self) -> ClaimQueue:
        return self._queue

    @property
    def executor(self) -> StepExecutor:
        return self._executor

    def register_tool(self, tool: Tool) -> Tool:
        return self._tools.add(tool)

    def submit_intent(
        self,
        workspace_id: str,
        intent: str,
        *,
        max_budget_atomic: int | None = None,
        created_by: str | None = None,
        auto_pay: AutoPayPolicy | None = None,
    ) -> Run:
        """Plan ``intent`` and create its run; a planning failure yields a failed run, not an exception."""
        if not intent.strip():
            raise ValueError("intent must be non-empty")
        budgets = cast("Mapping[str, Any]", self._config["budgets"])
        max_atomic = (
            parse_atomic(budgets["default_max_atomic"], "budgets.default_max_atomic")
            if max_budget_atomic is None
            else parse_atomic(max_budget_atomic, "max_budget_atomic")
        )
        policy = auto_pay or self._default_auto_pay()
        tools = list(self._catalog.list_tools(workspace_id))
        plan = self._planner.plan_workflow(intent, tools, max_atomic, auto_pay_enabled=policy.enabled)
        budget = RunBudget(
            max_atomic=max_atomic,
            asset=str(budgets["asset"]),
            network=str(budgets["network"]),
        )

        if not plan.success or plan.graph is None:
            error = plan.error or "planning failed"
            run = self._state.create_run(
                workspace_id=workspace_id,
                intent=intent,
                graph=fallback_graph(intent, error),
                budget=budget,
                auto_pay=policy,
                created_by=created_by,
                planning_error=error,
            )
            self._logger.warning("intent_planning_failed", run_id=run.id, attempts=plan.attempts, error=error)
            return run

        run = self._state.create_run(
            workspace_id=workspace_id,
            intent=intent,
            graph=plan.graph,
            budget=budget,
            auto_pay=policy,
            created_by=created_by,
        )
        actor = Actor.user(created_by) if created_by else Actor.system()
        self._state.start_run(run.id, actor=actor)
        self._logger.info(
            "intent_submitted",
            run_id=run.id,
            workspace_id=workspace_id,
            attempts=plan.attempts,
            tokens=plan.tokens,
            node_count=len(plan.graph.nodes),
        )
        return self._state.runs.require(run.id)

    def run_worker(self, worker_id: str, *, max_cycles: int = 100) -> list[StepOutcome]:
        return self._executor.run_until_idle(worker_id, max_cycles=max_cycles)

    def approve_step(self, run_id: str, step_id: str, *, user_id: str) -> Step:
        return self._state.approve_step(run_id, step_id, actor=Actor.user(user_id))

    def reject_step(self, run_id: str, step_id: str, *, user_id: str, reason: str | None = None) -> Step:
        return self._state.reject_step(run_id, step_id, actor=Actor.user(user_id), reason=reason)

    def cancel_run(self, run_id: str, *, user_id: str, reason: str | None = None) -> RunStatus:
        return self._state.cancel_run(run_id, actor=Actor.user(user_id), reason=reason)

    def get_run(self, run_id: str) -> Run:
        return self._state.runs.require(run_id)

    def list_runs(
        self,
        *,
        workspace_id: str | None = None,
        status: RunStatus | str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Run]:
        return self._state.runs.list(workspace_id=workspace_id, status=status, limit=limit, offset=offset)

    def list_steps(self, run_id: str) -> list[Step]:
        self._state.runs.require(run_id)
        return self._state.steps.list_for_run(run_id)

    def events(
        self,
        run_id: str,
        *,
        types: Iterable[EventType | str] | None = None,
        since_seq: int = 0,
        limit: int | None = None,
    ) -> list[Event]:
        return self._events.list_for_run(run_id, types=types, since_seq=since_seq, limit=limit)

    def replay(self, run_id: str) -> RunProjection:
        return replay(self._events.list_for_run(run_id))

    def budget(self, run_id: str) -> RunBudget:
        return self._ledger.snapshot(run_id)

    def receipts(self, run_id: str, *, limit: int = 100, offset: int = 0) -> list[PaymentReceipt]:
        return self._receipts.list_for_run(run_id, limit=limit, offset=offset)

    def _default_auto_pay(self) -> AutoPayPolicy:
        section = cast("Mapping[str, Any]", self._config["auto_pay"])
        return AutoPayPolicy(
            enabled=bool(section["enabled"]),
            max_per_step_atomic=parse_atomic(section["max_per_step_atomic"], "auto_pay.max_per_step_atomic"),
            max_per_run_atomic=parse_atomic(section["max_per_run_atomic"], "auto_pay.max_per_run_atomic"),
            tool_allowlist=tuple(str(item) for item in section["tool_allowlist"]),
        )


def _effective_config(config: Mapping[str, object] | None) -> dict[str, object]:
    merged = merge_config(default_config(), config or {})
    return cast("dict[str, object]", assert_valid_config(merged))


__all__ = ["Orchestrator"]
