"""
paigent-orchestrator — step executor

File: src/paigent_orchestrator/control_plane/executor.py
Last updated: 2026-10-16

Purpose
- Run one claim/execute/commit cycle for a worker: recycle expired leases, claim the
  next eligible step, dispatch it by node type and record the outcome.

What should be included in this file
- One handler per executable node type (tool_call, llm_reason, branch, wait, merge, finalize).
- Payment flow for paid tool calls: allowlist, auto-pay policy, reserve, pay, commit, receipt.
- Cancellation fencing before any result is committed.

Functional requirements
- External calls (generator, payment, invoker, poller) run outside any transaction.
- Errors are converted into a step status plus an event; they never escape run_once
  unless they are programming errors.

Non-functional requirements
- Deterministic given deterministic collaborators and clock.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, cast

import structlog

from paigent_orchestrator.constants import (
    DEFAULT_PLANNER_MODEL,
    PLANNER_MAX_OUTPUT_TOKENS,
    PLANNER_TEMPERATURE,
)
from paigent_orchestrator.control_plane.budgets import BudgetLedger, check_auto_pay, is_tool_allowlisted
from paigent_orchestrator.control_plane.claim_queue import ClaimQueue
from paigent_orchestrator.control_plane.conditions import (
    MISSING,
    evaluate_condition,
    render_text,
    resolve_path,
    substitute_template,
)
from paigent_orchestrator.control_plane.run_state import RunStateMachine
from paigent_orchestrator.domain.errors import (
    ApprovalRequired,
    BudgetExceeded,
    FatalStepError,
    LeaseLost,
    OrchestrationError,
    PaymentError,
    StepDeferred,
    TransientStepError,
    TransitionConflict,
)
from paigent_orchestrator.domain.graph import (
    ApprovalNode,
    BranchNode,
    FinalizeFormat,
    FinalizeNode,
    JSONValue,
    LinkKind,
    LlmReasonNode,
    MergeNode,
    MergeStrategy,
    Node,
    ReasonOutputFormat,
    ToolCallNode,
    WaitNode,
)
from paigent_orchestrator.domain.ids import generate_receipt_id
from paigent_orchestrator.domain.models import (
    Actor,
    PaymentReceipt,
    ReceiptStatus,
    Run,
    Step,
    StepError,
    StepMetrics,
    StepStatus,
    Tool,
    ToolEndpoint,
)
from paigent_orchestrator.observability.events import EventLog, EventType
from paigent_orchestrator.persistence.repositories import ReceiptRepo
from paigent_orchestrator.persistence.state_db import StateDB, iso8601z, parse_iso8601z, utc_now
from paigent_orchestrator.planning.json_extraction import extract_json_with_repair
from paigent_orchestrator.providers.base import ProviderError

if TYPE_CHECKING:
    from paigent_orchestrator.providers.base import (
        PaymentClient,
        PaymentConfirmation,
        StatusPoller,
        TextGenerator,
        ToolCatalog,
        ToolInvoker,
    )

_DEFAULT_REASON_SYSTEM_PROMPT = "You are a careful analyst. Answer using only the provided inputs."


@dataclass(frozen=True, slots=True)
class ReasoningSettings:
    """Model parameters for ``llm_reason`` steps."""

    model: str = DEFAULT_PLANNER_MODEL
    max_tokens: int = PLANNER_MAX_OUTPUT_TOKENS
    temperature: float = PLANNER_TEMPERATURE


@dataclass(frozen=True, slots=True)
class StepOutcome:
    run_id: str
    step_id: str
    node_type: str
    status: StepStatus
    attempt: int
    outputs: dict[str, JSONValue] | None = None
    error: StepError | None = None


@dataclass(slots=True)
class _HandlerResult:
    outputs: dict[str, JSONValue]
    tokens: int = 0
    cost_atomic: int = 0


class StepExecutor:
    """Executes claimed steps against the collaborator protocols."""

    def __init__(
        self,
        db: StateDB,
        state: RunStateMachine,
        queue: ClaimQueue,
        ledger: BudgetLedger,
        event_log: EventLog,
        *,
        catalog: ToolCatalog,
        generator: TextGenerator | None = None,
        payments: PaymentClient | None = None,
        invoker: ToolInvoker | None = None,
        poller: StatusPoller | None = None,
        reasoning: ReasoningSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._db = db
        self._state = state
        self._queue = queue
        self._ledger = ledger
        self._events = event_log
        self._catalog = catalog
        self._generator = generator
        self._payments = payments
        self._invoker = invoker
        self._poller = poller
        self._reasoning = reasoning or ReasoningSettings()
        self._clock = clock
        self._monotonic = monotonic
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._receipts = ReceiptRepo(db, clock=clock)

    def run_until_idle(self, worker_id: str, *, max_cycles: int = 100) -> list[StepOutcome]:
        if max_cycles < 1:
            raise ValueError("max_cycles must be >= 1")
        outcomes: list[StepOutcome] = []
        for _ in range(max_cycles):
            outcome = self.run_once(worker_id)
            if outcome is None:
                break
            outcomes.append(outcome)
        return outcomes

    def run_once(self, worker_id: str, *, now: datetime | None = None) -> StepOutcome | None:
        """One cycle: recycle, claim, start, dispatch, fence and commit, settle."""
        at = now or self._clock()
        self._queue.recycle_expired_leases(now=at)
        claimed = self._queue.claim_next(worker_id, now=at)
        if claimed is None:
            return None

        log = self._logger.bind(run_id=claimed.run_id, step_id=claimed.step_id, worker_id=worker_id)
        try:
            step = self._queue.start(claimed, worker_id, now=at)
        except TransitionConflict:
            log.warning("step_start_lost")
            return None

        run = self._state.runs.require(step.run_id)
        node = run.graph.node(step.step_id)
        inputs = self._build_inputs(run, node)
        started = self._monotonic()
        outcome: _HandlerResult | OrchestrationError
        try:
            outcome = self._dispatch(run, step, node, inputs, worker_id)
        except OrchestrationError as exc:
            outcome = exc
        except ProviderError as exc:
            outcome = _from_provider_error(exc)
        except Exception as exc:  # noqa: BLE001
            # Faults outside the known taxonomies are treated as transient.
            outcome = TransientStepError(str(exc) or type(exc).__name__, code="tool_error")
            log.warning("step_collaborator_error", error=outcome.detail, error_type=type(exc).__name__)

        latency_ms = int((self._monotonic() - started) * 1000)
        if isinstance(outcome, _HandlerResult) and outcome.cost_atomic == 0 and latency_ms > node.policy.timeout_ms:
            outcome = TransientStepError(
                f"step took {latency_ms} ms, over its {node.policy.timeout_ms} ms timeout",
                code="step_timeout",
            )

        try:
            final = self._finish(run, step, worker_id, inputs, outcome, latency_ms, at)
        except TransitionConflict:
            # Our lease was recycled while the handler ran; the new holder owns the step.
            log.warning("step_result_discarded", reason="lease_lost")
            final = self._state.steps.require(step.run_id, step.step_id)

        self._state.settle(run.id, actor=Actor.worker(worker_id))
        log.info(
            "step_cycle_finished",
            node_type=node.node_type.value,
            status=final.status.value,
            attempt=final.attempt,
            latency_ms=latency_ms,
        )
        return StepOutcome(
            run_id=final.run_id,
            step_id=final.step_id,
            node_type=node.node_type.value,
            status=final.status,
            attempt=final.attempt,
            outputs=final.outputs,
            error=final.error,
        )

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _finish(
        self,
        run: Run,
        step: Step,
        worker_id: str,
        inputs: dict[str, JSONValue],
        outcome: _HandlerResult | OrchestrationError,
        latency_ms: int,
        at: datetime,
    ) -> Step:
        if isinstance(outcome, LeaseLost):
            self._logger.warning("step_result_discarded", run_id=run.id, step_id=step.step_id, reason="lease_lost")
            return self._state.steps.require(step.run_id, step.step_id)
        with self._db.transaction() as tx:
            current = self._state.runs.require(run.id, conn=tx)
            if current.status.is_terminal:
                self._logger.info(
                    "step_result_fenced",
                    run_id=run.id,
                    step_id=step.step_id,
                    run_status=current.status.value,
                )
                return self._queue.cancel(step, worker_id, reason="run_not_active", conn=tx)
            if isinstance(outcome, _HandlerResult):
                return self._queue.complete(
                    step,
                    worker_id,
                    outputs=outcome.outputs,
                    inputs=inputs,
                    metrics=StepMetrics(
                        latency_ms=latency_ms,
                        tokens=outcome.tokens,
                        cost_atomic=outcome.cost_atomic,
                    ),
                    conn=tx,
                )
            if isinstance(outcome, ApprovalRequired):
                return self._queue.require_approval(step, worker_id, reason=outcome.reason, conn=tx)
            if isinstance(outcome, StepDeferred):
                return self._queue.defer(
                    step,
                    worker_id,
                    delay_ms=outcome.delay_ms,
                    outputs=cast("dict[str, JSONValue]", outcome.outputs),
                    now=at,
                    conn=tx,
                )
            return self._queue.fail(step, worker_id, outcome, now=at, conn=tx)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(
        self,
        run: Run,
        step: Step,
        node: Node,
        inputs: dict[str, JSONValue],
        worker_id: str,
    ) -> _HandlerResult:
        if isinstance(node, ToolCallNode):
            return self._run_tool_call(run, step, node, inputs, worker_id)
        if isinstance(node, LlmReasonNode):
            return self._run_llm_reason(node, inputs)
        if isinstance(node, BranchNode):
            return _HandlerResult({"result": evaluate_condition(node.condition, inputs)})
        if isinstance(node, WaitNode):
            return self._run_wait(step, node)
        if isinstance(node, MergeNode):
            return self._run_merge(run, node, inputs)
        if isinstance(node, FinalizeNode):
            return _run_finalize(node, inputs)
        if isinstance(node, ApprovalNode):
            raise ApprovalRequired(node.message or f"approval required for {node.id}")
        raise FatalStepError(f"unsupported node type {node.node_type.value!r}", code="unsupported_node")

    def _run_tool_call(
        self,
        run: Run,
        step: Step,
        node: ToolCallNode,
        inputs: Mapping[str, JSONValue],
        worker_id: str,
    ) -> _HandlerResult:
        actor = Actor.worker(worker_id)
        tool = self._catalog.get_tool(node.tool_id)
        if tool is None:
            raise FatalStepError(f"unknown tool {node.tool_id!r}", code="tool_not_found")
        if not is_tool_allowlisted(run.auto_pay, tool):
            raise FatalStepError(
                f"tool base URL {tool.base_url!r} is not in the run's tool allowlist",
                code="tool_not_allowlisted",
            )
        endpoint = _resolve_endpoint(tool, node)
        payload = substitute_template(node.request_template or {}, inputs)

        amount = _payment_amount(node, tool)
        paid = 0
        if amount > 0:
            if self._payments is None:
                raise FatalStepError("no payment client is configured", code="payment_unavailable")
            if not step.approved:
                spent = self._ledger.snapshot(run.id).spent_atomic
                decision = check_auto_pay(run.auto_pay, amount_atomic=amount, spent_atomic=spent)
                if not decision.allowed:
                    raise ApprovalRequired(decision.reason or "auto-pay limit reached")
            # The reservation only opens while this worker still holds a live lease on an active run.
            self._ledger.reserve(
                run.id,
                step.step_id,
                amount,
                actor=actor,
                guard=lambda tx: self._queue.ensure_lease(step, worker_id, conn=tx),
            )
            try:
                confirmation = self._payments.pay(tool, endpoint, amount)
            except (PaymentError, ProviderError) as exc:
                self._record_payment_failure(run, step, tool, amount, exc, actor)
                raise
            except Exception as exc:  # noqa: BLE001
                self._record_payment_failure(run, step, tool, amount, exc, actor)
                raise PaymentError(str(exc) or type(exc).__name__) from exc
            paid = self._record_payment(run, step, tool, confirmation, actor)

        if self._invoker is None:
            raise FatalStepError("no tool invoker is configured", code="invoker_unavailable")
        response = self._invoker.invoke(tool, endpoint, payload if isinstance(payload, dict) else {})
        return _HandlerResult(outputs=dict(response), cost_atomic=paid)

    def _record_payment(
        self,
        run: Run,
        step: Step,
        tool: Tool,
        confirmation: PaymentConfirmation,
        actor: Actor,
    ) -> int:
        receipt = PaymentReceipt(
            id=generate_receipt_id(),
            run_id=run.id,
            step_id=step.step_id,
            tool_id=tool.id,
            amount_atomic=confirmation.amount_atomic,
            status=ReceiptStatus.SETTLED,
            tx_hash=confirmation.tx_hash,
            asset=confirmation.asset or run.budget.asset,
            network=confirmation.network or run.budget.network,
        )
        try:
            with self._db.transaction() as tx:
                self._ledger.commit(run.id, step.step_id, confirmation.amount_atomic, actor=actor, conn=tx)
                self._receipts.add(receipt, conn=tx)
                self._events.append(
                    run.id,
                    EventType.PAYMENT_CONFIRMED,
                    {
                        "stepId": step.step_id,
                        "toolId": tool.id,
                        "receiptId": receipt.id,
                        "amountAtomic": str(receipt.amount_atomic),
                        "txHash": receipt.tx_hash,
                    },
                    actor,
                    conn=tx,
                )
        except BudgetExceeded:
            self._logger.error(
                "payment_exceeds_ceiling",
                run_id=run.id,
                step_id=step.step_id,
                amount=confirmation.amount_atomic,
                tx_hash=confirmation.tx_hash,
            )
            raise
        self._logger.info(
            "payment_confirmed",
            run_id=run.id,
            step_id=step.step_id,
            tool_id=tool.id,
            amount=receipt.amount_atomic,
        )
        return receipt.amount_atomic

    def _record_payment_failure(
        self,
        run: Run,
        step: Step,
        tool: Tool,
        amount: int,
        exc: Exception,
        actor: Actor,
    ) -> None:
        receipt = PaymentReceipt(
            id=generate_receipt_id(),
            run_id=run.id,
            step_id=step.step_id,
            tool_id=tool.id,
            amount_atomic=amount,
            status=ReceiptStatus.FAILED,
            asset=run.budget.asset,
            network=run.budget.network,
        )
        with self._db.transaction() as tx:
            self._ledger.release(run.id, step.step_id, actor=actor, conn=tx)
            self._receipts.add(receipt, conn=tx)
            self._events.append(
                run.id,
                EventType.PAYMENT_FAILED,
                {
                    "stepId": step.step_id,
                    "toolId": tool.id,
                    "amountAtomic": str(amount),
                    "error": {"code": getattr(exc, "code", "payment_failed"), "message": str(exc)},
                },
                actor,
                conn=tx,
            )
        self._logger.warning("payment_failed", run_id=run.id, step_id=step.step_id, tool_id=tool.id)

    def _run_llm_reason(self, node: LlmReasonNode, inputs: Mapping[str, JSONValue]) -> _HandlerResult:
        if self._generator is None:
            raise FatalStepError("no text generator is configured", code="generator_unavailable")
        system_prompt = render_text(node.system_prompt or _DEFAULT_REASON_SYSTEM_PROMPT, inputs)
        if node.user_prompt_template:
            user_prompt = render_text(node.user_prompt_template, inputs)
        else:
            user_prompt = (
                f"Task: {node.label}\n\nInputs:\n"
                f"{json.dumps(inputs, sort_keys=True, indent=2, ensure_ascii=False)}"
            )
        generated = self._generator.generate(
            system_prompt,
            user_prompt,
            model=self._reasoning.model,
            max_tokens=self._reasoning.max_tokens,
            temperature=self._reasoning.temperature,
        )
        outputs: dict[str, JSONValue] = {"text": generated.text}
        if node.output_format is ReasonOutputFormat.JSON:
            data = extract_json_with_repair(generated.text)
            if data is None:
                raise TransientStepError("model output contained no JSON object", code="llm_output_invalid")
            outputs["data"] = cast("JSONValue", data)
        return _HandlerResult(outputs=outputs, tokens=generated.tokens)

    def _run_wait(self, step: Step, node: WaitNode) -> _HandlerResult:
        if node.status_url is None:
            return _HandlerResult({"waitCompleted": True})
        if self._poller is None:
            raise FatalStepError("no status poller is configured", code="poller_unavailable")

        now = self._clock()
        progress = step.outputs or {}
        started_text = progress.get("waitStartedAt")
        started = parse_iso8601z(started_text) if isinstance(started_text, str) else now

        status = self._poller.poll(node.status_url)
        observed = resolve_path(status, node.completion_field)
        if observed is not MISSING and observed == node.completion_value:
            return _HandlerResult({"waitCompleted": True, "status": dict(status)})

        waited_ms = int((now - started).total_seconds() * 1000)
        if waited_ms >= node.max_wait_ms:
            raise FatalStepError(
                f"{node.completion_field} did not reach {node.completion_value!r} within {node.max_wait_ms} ms",
                code="wait_timeout",
            )
        raise StepDeferred(
            f"waiting for {node.completion_field}",
            delay_ms=node.poll_interval_ms,
            outputs={"waitStartedAt": iso8601z(started)},
        )

    def _run_merge(self, run: Run, node: MergeNode, inputs: Mapping[str, JSONValue]) -> _HandlerResult:
        sources: list[str] = []
        for link in run.graph.incoming(node.id):
            if link.source not in sources and link.source in inputs:
                sources.append(link.source)
        if node.merge_strategy is MergeStrategy.ALL:
            return _HandlerResult({"merged": {source: inputs[source] for source in sources}})
        if not sources:
            raise FatalStepError("no predecessor produced an output to merge", code="merge_empty")
        return _HandlerResult({"merged": inputs[sources[0]], "source": sources[0]})

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def _build_inputs(self, run: Run, node: Node) -> dict[str, JSONValue]:
        steps = {step.step_id: step for step in self._state.steps.list_for_run(run.id)}
        inputs: dict[str, JSONValue] = {"intent": run.input}
        for link in run.graph.incoming(node.id):
            predecessor = steps.get(link.source)
            if predecessor is None or link.source in inputs:
                continue
            if predecessor.status is StepStatus.SUCCEEDED:
                inputs[link.source] = dict(predecessor.outputs or {})
            elif link.kind is LinkKind.FAILURE and predecessor.status is StepStatus.FAILED:
                error = predecessor.error or StepError(code="step_failed", message="")
                inputs[link.source] = {"error": error.to_dict()}
        return inputs


def _run_finalize(node: FinalizeNode, inputs: Mapping[str, JSONValue]) -> _HandlerResult:
    if node.output_template:
        text = render_text(node.output_template, inputs)
    else:
        text = json.dumps(inputs, sort_keys=True, indent=2, ensure_ascii=False)
    outputs: dict[str, JSONValue] = {"output": text, "format": node.output_format.value}
    if node.output_format is FinalizeFormat.JSON:
        data = extract_json_with_repair(text)
        if data is not None:
            outputs["data"] = cast("JSONValue", data)
    return _HandlerResult(outputs)


def _resolve_endpoint(tool: Tool, node: ToolCallNode) -> ToolEndpoint | None:
    if node.endpoint is None:
        return tool.endpoint_for(None)
    return tool.endpoint_for(node.endpoint.path) or ToolEndpoint(
        path=node.endpoint.path, method=node.endpoint.method
    )


def _payment_amount(node: ToolCallNode, tool: Tool) -> int:
    if node.payment is None or not node.payment.allowed:
        return 0
    if node.payment.max_atomic is not None:
        return node.payment.max_atomic
    return tool.pricing.typical_amount_atomic or 0


def _from_provider_error(exc: ProviderError) -> OrchestrationError:
    if exc.retryable:
        return TransientStepError(exc.detail, code=exc.code)
    return FatalStepError(exc.detail, code=exc.code)


__all__ = ["ReasoningSettings", "StepExecutor", "StepOutcome"]
