"""
paigent-orchestrator — workflow execution through the executor

File: tests/integration/test_workflow_execution.py
Last updated: 2026-10-16

Purpose
- Exercise claim/execute/commit cycles over a real state DB with scripted collaborators.

What this test file should cover
- Failure edges, unhandled failures, retries with backoff and lease recycling.
- Approval gates, auto-pay limits, budget ceilings and payment failures.
- Wait polling, branch pruning, cancellation and replay of the persisted log.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from paigent_orchestrator.domain.errors import TransitionConflict
from paigent_orchestrator.domain.models import AutoPayPolicy, ReceiptStatus, RunStatus, StepStatus
from paigent_orchestrator.observability.events import EventType, StepProjection
from paigent_orchestrator.persistence.repositories import ToolRepo
from paigent_orchestrator.providers.base import ProviderRateLimitError, ProviderResponseError

from . import (
    EchoInvoker,
    FakeClock,
    RecordingPayments,
    ScriptedGenerator,
    ScriptedPoller,
    failing_payments,
    make_orchestrator,
    make_tool,
    start_run,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

    from paigent_orchestrator.control_plane import Orchestrator
    from paigent_orchestrator.domain.models import Tool


def _event_types(orchestrator: Orchestrator, run_id: str) -> list[str]:
    return [event.type.value for event in orchestrator.events(run_id)]


def _step_status(orchestrator: Orchestrator, run_id: str, step_id: str) -> StepStatus:
    return orchestrator.state.steps.require(run_id, step_id).status


def _paid_fetch_graph(tool_id: str) -> dict[str, object]:
    return {
        "nodes": [
            {
                "id": "buy",
                "type": "tool_call",
                "label": "Buy dataset",
                "toolId": tool_id,
                "endpoint": {"path": "/search"},
                "requestTemplate": {"q": "{{intent}}"},
                "payment": {"allowed": True},
            },
            {"id": "report", "type": "finalize", "label": "Report", "outputTemplate": "{{buy.items}}"},
        ],
        "edges": [{"from": "buy", "to": "report"}],
        "entryNodeId": "buy",
    }


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


def test_failure_edge_routes_error_to_recovery_node(tmp_path: Path) -> None:
    invoker = EchoInvoker(errors=[ProviderResponseError("upstream returned HTML")])
    orchestrator = make_orchestrator(tmp_path, invoker=invoker)
    tool = orchestrator.register_tool(make_tool())
    graph = {
        "nodes": [
            {
                "id": "fetch",
                "type": "tool_call",
                "label": "Fetch",
                "toolId": tool.id,
                "requestTemplate": {"q": "{{intent}}"},
            },
            {
                "id": "recover",
                "type": "finalize",
                "label": "Recover",
                "outputTemplate": "recovered from {{fetch.error.code}}",
            },
        ],
        "edges": [{"from": "fetch", "to": "recover", "type": "failure"}],
        "entryNodeId": "fetch",
    }
    run = start_run(orchestrator, graph)

    outcomes = orchestrator.run_worker("w-1")

    assert [(outcome.step_id, outcome.status) for outcome in outcomes] == [
        ("fetch", StepStatus.FAILED),
        ("recover", StepStatus.SUCCEEDED),
    ]
    assert outcomes[1].outputs is not None
    assert outcomes[1].outputs["output"] == "recovered from response_invalid"
    assert invoker.payloads == [{"q": "Summarize the top 3 AI news articles"}]
    assert orchestrator.get_run(run.id).status is RunStatus.SUCCEEDED


def test_unhandled_failure_fails_run_and_cancels_remaining_steps(tmp_path: Path) -> None:
    invoker = EchoInvoker(errors=[ProviderResponseError("schema mismatch")])
    orchestrator = make_orchestrator(tmp_path, invoker=invoker)
    tool = orchestrator.register_tool(make_tool())
    graph = {
        "nodes": [
            {"id": "fetch", "type": "tool_call", "label": "Fetch", "toolId": tool.id},
            {"id": "report", "type": "finalize", "label": "Report"},
        ],
        "edges": [{"from": "fetch", "to": "report"}],
        "entryNodeId": "fetch",
    }
    run = start_run(orchestrator, graph)

    orchestrator.run_worker("w-1")

    assert orchestrator.get_run(run.id).status is RunStatus.FAILED
    assert _step_status(orchestrator, run.id, "report") is StepStatus.CANCELED
    failed = orchestrator.events(run.id, types=[EventType.RUN_FAILED])
    assert len(failed) == 1
    assert failed[0].data["failedStepId"] == "fetch"
    assert failed[0].data["error"] == {"code": "response_invalid", "message": "schema mismatch"}


def test_retryable_error_schedules_backoff_then_succeeds(tmp_path: Path) -> None:
    clock = FakeClock()
    invoker = EchoInvoker({"items": ["a"]}, errors=[ProviderRateLimitError("slow down")])
    orchestrator = make_orchestrator(tmp_path, invoker=invoker, clock=clock)
    tool = orchestrator.register_tool(make_tool())
    graph = {
        "nodes": [{"id": "fetch", "type": "tool_call", "label": "Fetch", "toolId": tool.id}],
        "edges": [],
        "entryNodeId": "fetch",
    }
    run = start_run(orchestrator, graph)

    first = orchestrator.run_worker("w-1")
    assert [outcome.status for outcome in first] == [StepStatus.PENDING]
    retry = orchestrator.events(run.id, types=[EventType.STEP_RETRY_SCHEDULED])
    assert retry[0].data["retryInMs"] == 1000
    assert retry[0].data["error"] == {"code": "rate_limit", "message": "slow down"}

    clock.advance(ms=999)
    assert orchestrator.run_worker("w-1") == []

    clock.advance(ms=1)
    second = orchestrator.run_worker("w-1")
    assert [(outcome.status, outcome.attempt) for outcome in second] == [(StepStatus.SUCCEEDED, 2)]
    assert orchestrator.get_run(run.id).status is RunStatus.SUCCEEDED


def test_retries_stop_after_max_retries(tmp_path: Path) -> None:
    clock = FakeClock()
    errors: list[Exception] = [ProviderRateLimitError(f"busy {index}") for index in range(3)]
    orchestrator = make_orchestrator(tmp_path, invoker=EchoInvoker(errors=errors), clock=clock)
    tool = orchestrator.register_tool(make_tool())
    graph = {
        "nodes": [
            {
                "id": "fetch",
                "type": "tool_call",
                "label": "Fetch",
                "toolId": tool.id,
                "policy": {"maxRetries": 1},
            }
        ],
        "edges": [],
        "entryNodeId": "fetch",
    }
    run = start_run(orchestrator, graph)

    orchestrator.run_worker("w-1")
    clock.advance(seconds=10)
    orchestrator.run_worker("w-1")

    step = orchestrator.state.steps.require(run.id, "fetch")
    assert step.status is StepStatus.FAILED
    assert step.attempt == 2
    assert step.error is not None
    assert step.error.code == "rate_limit"
    assert orchestrator.get_run(run.id).status is RunStatus.FAILED


def test_collaborator_exception_becomes_a_retryable_step_error(tmp_path: Path) -> None:
    clock = FakeClock()
    invoker = EchoInvoker({"items": ["a"]}, errors=[ConnectionError("socket reset")])
    orchestrator = make_orchestrator(tmp_path, invoker=invoker, clock=clock)
    tool = orchestrator.register_tool(make_tool())
    graph = {
        "nodes": [{"id": "fetch", "type": "tool_call", "label": "Fetch", "toolId": tool.id}],
        "edges": [],
        "entryNodeId": "fetch",
    }
    run = start_run(orchestrator, graph)

    first = orchestrator.run_worker("w-1")

    assert [(outcome.status, outcome.attempt) for outcome in first] == [(StepStatus.PENDING, 1)]
    assert first[0].error is not None
    assert (first[0].error.code, first[0].error.message) == ("tool_error", "socket reset")
    step = orchestrator.state.steps.require(run.id, "fetch")
    assert step.lease_owner is None

    clock.advance(seconds=1)
    second = orchestrator.run_worker("w-1")
    assert [(outcome.status, outcome.attempt) for outcome in second] == [(StepStatus.SUCCEEDED, 2)]
    assert orchestrator.get_run(run.id).status is RunStatus.SUCCEEDED


def test_payment_client_exception_is_recorded_as_failed_payment(tmp_path: Path) -> None:
    payments = RecordingPayments(fail_with=ConnectionError("gateway unreachable"))
    orchestrator = make_orchestrator(tmp_path, payments=payments, invoker=EchoInvoker())
    tool = orchestrator.register_tool(make_tool(typical_amount_atomic=500_000))
    run = start_run(orchestrator, _paid_fetch_graph(tool.id))

    outcomes = orchestrator.run_worker("w-1")

    assert [(outcome.status, outcome.attempt) for outcome in outcomes] == [(StepStatus.PENDING, 1)]
    assert outcomes[0].error is not None
    assert outcomes[0].error.code == "payment_failed"
    budget = orchestrator.budget(run.id)
    assert (budget.spent_atomic, budget.reserved_atomic) == (0, 0)
    assert [receipt.status for receipt in orchestrator.receipts(run.id)] == [ReceiptStatus.FAILED]


def test_step_over_its_timeout_is_retried(tmp_path: Path) -> None:
    clock = FakeClock()
    readings = iter((0.0, 31.0, 40.0, 40.0))
    orchestrator = make_orchestrator(tmp_path, clock=clock, monotonic=lambda: next(readings))
    graph = {
        "nodes": [{"id": "only", "type": "finalize", "label": "Only"}],
        "edges": [],
        "entryNodeId": "only",
    }
    run = start_run(orchestrator, graph)

    first = orchestrator.run_worker("w-1")
    assert [(outcome.status, outcome.attempt) for outcome in first] == [(StepStatus.PENDING, 1)]
    assert first[0].error is not None
    assert first[0].error.code == "step_timeout"

    clock.advance(seconds=1)
    second = orchestrator.run_worker("w-1")
    assert [(outcome.status, outcome.attempt) for outcome in second] == [(StepStatus.SUCCEEDED, 2)]
    assert orchestrator.get_run(run.id).status is RunStatus.SUCCEEDED


def test_expired_lease_is_recycled_and_stale_holder_is_fenced(tmp_path: Path) -> None:
    clock = FakeClock()
    orchestrator = make_orchestrator(tmp_path, clock=clock)
    graph = {
        "nodes": [{"id": "only", "type": "finalize", "label": "Only"}],
        "edges": [],
        "entryNodeId": "only",
    }
    run = start_run(orchestrator, graph)

    claimed = orchestrator.queue.claim_next("w-a")
    assert claimed is not None
    orchestrator.ledger.reserve(run.id, "only", 250_000)

    clock.advance(seconds=61)
    recycled = orchestrator.queue.recycle_expired_leases()

    assert [step.step_id for step in recycled] == ["only"]
    step = orchestrator.state.steps.require(run.id, "only")
    assert step.status is StepStatus.PENDING
    assert step.attempt == 1
    assert step.lease_owner is None
    assert orchestrator.budget(run.id).reserved_atomic == 0
    types = _event_types(orchestrator, run.id)
    assert EventType.STEP_LEASE_EXPIRED.value in types
    assert EventType.BUDGET_RELEASED.value in types

    with pytest.raises(TransitionConflict):
        orchestrator.queue.start(claimed, "w-a")

    clock.advance(seconds=2)
    outcomes = orchestrator.run_worker("w-b")
    assert [(outcome.status, outcome.attempt) for outcome in outcomes] == [(StepStatus.SUCCEEDED, 2)]


def test_lease_within_timeout_is_not_recycled(tmp_path: Path) -> None:
    clock = FakeClock()
    orchestrator = make_orchestrator(tmp_path, clock=clock)
    graph = {
        "nodes": [{"id": "only", "type": "finalize", "label": "Only"}],
        "edges": [],
        "entryNodeId": "only",
    }
    start_run(orchestrator, graph)
    assert orchestrator.queue.claim_next("w-a") is not None

    clock.advance(seconds=59)
    assert orchestrator.queue.recycle_expired_leases() == []


# ---------------------------------------------------------------------------
# Approvals and payments
# ---------------------------------------------------------------------------


def _approval_graph() -> dict[str, object]:
    return {
        "nodes": [
            {"id": "draft", "type": "llm_reason", "label": "Draft", "userPromptTemplate": "Draft: {{intent}}"},
            {"id": "approve", "type": "approval", "label": "Review", "message": "Publish this draft?"},
            {"id": "publish", "type": "finalize", "label": "Publish", "outputTemplate": "{{draft.text}}"},
        ],
        "edges": [
            {"from": "draft", "to": "approve"},
            {"from": "approve", "to": "publish"},
            {"from": "draft", "to": "publish"},
        ],
        "entryNodeId": "draft",
    }


def test_approval_node_pauses_run_until_approved(tmp_path: Path) -> None:
    generator = ScriptedGenerator(reply="A tidy draft.")
    orchestrator = make_orchestrator(tmp_path, generator=generator)
    run = start_run(orchestrator, _approval_graph())

    orchestrator.run_worker("w-1")
    assert orchestrator.get_run(run.id).status is RunStatus.PAUSED_FOR_APPROVAL
    assert _step_status(orchestrator, run.id, "approve") is StepStatus.REQUIRES_APPROVAL
    assert orchestrator.run_worker("w-1") == []

    approved = orchestrator.approve_step(run.id, "approve", user_id="user-7")
    assert approved.status is StepStatus.SUCCEEDED
    assert approved.outputs == {"approved": True, "approvedBy": "user-7"}
    assert orchestrator.get_run(run.id).status is RunStatus.RUNNING

    orchestrator.run_worker("w-1")
    publish = orchestrator.state.steps.require(run.id, "publish")
    assert publish.outputs is not None
    assert publish.outputs["output"] == "A tidy draft."
    assert orchestrator.get_run(run.id).status is RunStatus.SUCCEEDED

    types = _event_types(orchestrator, run.id)
    assert types.index("RUN_PAUSED") < types.index("STEP_APPROVED") < types.index("RUN_RESUMED")
    assert generator.reason_prompts[0][1] == "Draft: Summarize the top 3 AI news articles"


def test_rejected_approval_fails_the_run(tmp_path: Path) -> None:
    orchestrator = make_orchestrator(tmp_path)
    run = start_run(orchestrator, _approval_graph())
    orchestrator.run_worker("w-1")

    rejected = orchestrator.reject_step(run.id, "approve", user_id="user-7", reason="Not today")

    assert rejected.status is StepStatus.FAILED
    assert rejected.error is not None
    assert (rejected.error.code, rejected.error.message) == ("rejected", "Not today")
    assert orchestrator.get_run(run.id).status is RunStatus.FAILED
    assert _step_status(orchestrator, run.id, "publish") is StepStatus.CANCELED


def test_payment_over_auto_pay_limit_requires_approval(tmp_path: Path) -> None:
    payments = RecordingPayments()
    invoker = EchoInvoker({"items": ["one", "two"]})
    orchestrator = make_orchestrator(tmp_path, payments=payments, invoker=invoker)
    tool = orchestrator.register_tool(make_tool(typical_amount_atomic=2_000_000))
    run = start_run(orchestrator, _paid_fetch_graph(tool.id))

    outcomes = orchestrator.run_worker("w-1")

    assert [outcome.status for outcome in outcomes] == [StepStatus.REQUIRES_APPROVAL]
    assert orchestrator.get_run(run.id).status is RunStatus.PAUSED_FOR_APPROVAL
    assert payments.calls == []
    assert orchestrator.budget(run.id).spent_atomic == 0
    blocked = orchestrator.events(run.id, types=[EventType.STEP_BLOCKED])
    assert blocked[-1].data["reason"] == "payment 2000000 exceeds auto-pay per-step limit 1000000"

    orchestrator.approve_step(run.id, "buy", user_id="user-1")
    orchestrator.run_worker("w-1")

    assert orchestrator.get_run(run.id).status is RunStatus.SUCCEEDED
    assert payments.calls == [(tool.id, 2_000_000)]
    budget = orchestrator.budget(run.id)
    assert (budget.spent_atomic, budget.reserved_atomic) == (2_000_000, 0)
    receipts = orchestrator.receipts(run.id)
    assert [(receipt.status, receipt.amount_atomic) for receipt in receipts] == [
        (ReceiptStatus.SETTLED, 2_000_000)
    ]
    report = orchestrator.state.steps.require(run.id, "report")
    assert report.outputs is not None
    assert report.outputs["output"] == '["one", "two"]'


def test_payment_beyond_budget_ceiling_fails_without_paying(tmp_path: Path) -> None:
    payments = RecordingPayments()
    orchestrator = make_orchestrator(tmp_path, payments=payments, invoker=EchoInvoker())
    tool = orchestrator.register_tool(make_tool(typical_amount_atomic=2_000_000))
    policy = AutoPayPolicy(max_per_step_atomic=5_000_000, max_per_run_atomic=5_000_000)
    run = start_run(orchestrator, _paid_fetch_graph(tool.id), max_atomic=1_500_000, auto_pay=policy)

    orchestrator.run_worker("w-1")

    assert payments.calls == []
    step = orchestrator.state.steps.require(run.id, "buy")
    assert step.status is StepStatus.FAILED
    assert step.error is not None
    assert step.error.code == "budget_exceeded"
    assert orchestrator.get_run(run.id).status is RunStatus.FAILED
    assert EventType.BUDGET_REJECTED.value in _event_types(orchestrator, run.id)


def test_failed_payment_releases_reservation_and_retries(tmp_path: Path) -> None:
    orchestrator = make_orchestrator(tmp_path, payments=failing_payments(), invoker=EchoInvoker())
    tool = orchestrator.register_tool(make_tool(typical_amount_atomic=500_000))
    run = start_run(orchestrator, _paid_fetch_graph(tool.id))

    outcomes = orchestrator.run_worker("w-1")

    assert [(outcome.status, outcome.attempt) for outcome in outcomes] == [(StepStatus.PENDING, 1)]
    budget = orchestrator.budget(run.id)
    assert (budget.spent_atomic, budget.reserved_atomic) == (0, 0)
    assert [receipt.status for receipt in orchestrator.receipts(run.id)] == [ReceiptStatus.FAILED]
    failed = orchestrator.events(run.id, types=[EventType.PAYMENT_FAILED])
    assert failed[0].data["error"] == {"code": "payment_failed", "message": "insufficient funds"}


class _LookupHookCatalog:
    """Delegates to ``tools`` and runs ``on_lookup`` once, just before the next tool lookup."""

    def __init__(self) -> None:
        self.tools: ToolRepo | None = None
        self.on_lookup: Callable[[], object] | None = None

    def list_tools(self, workspace_id: str) -> Sequence[Tool]:
        assert self.tools is not None
        return self.tools.list_tools(workspace_id)

    def get_tool(self, tool_id: str) -> Tool | None:
        assert self.tools is not None
        hook, self.on_lookup = self.on_lookup, None
        if hook is not None:
            hook()
        return self.tools.get_tool(tool_id)


def _hooked_orchestrator(
    tmp_path: Path, payments: RecordingPayments, clock: FakeClock
) -> tuple[Orchestrator, _LookupHookCatalog]:
    catalog = _LookupHookCatalog()
    orchestrator = make_orchestrator(
        tmp_path, payments=payments, invoker=EchoInvoker({"items": ["a"]}), clock=clock, catalog=catalog
    )
    catalog.tools = ToolRepo(orchestrator.db, clock=clock)
    return orchestrator, catalog


def test_recycled_lease_blocks_the_stale_worker_from_paying(tmp_path: Path) -> None:
    clock = FakeClock()
    payments = RecordingPayments()
    orchestrator, catalog = _hooked_orchestrator(tmp_path, payments, clock)
    tool = orchestrator.register_tool(make_tool(typical_amount_atomic=500_000))
    run = start_run(orchestrator, _paid_fetch_graph(tool.id))

    def lease_expires_mid_step() -> None:
        clock.advance(seconds=61)
        assert [step.step_id for step in orchestrator.queue.recycle_expired_leases()] == ["buy"]

    catalog.on_lookup = lease_expires_mid_step
    stale = orchestrator.run_worker("w-a")

    assert [(outcome.step_id, outcome.status) for outcome in stale] == [("buy", StepStatus.PENDING)]
    assert payments.calls == []
    budget = orchestrator.budget(run.id)
    assert (budget.spent_atomic, budget.reserved_atomic) == (0, 0)
    assert orchestrator.events(run.id, types=[EventType.BUDGET_RESERVED]) == []

    clock.advance(seconds=1)
    orchestrator.run_worker("w-b")

    assert payments.calls == [(tool.id, 500_000)]
    assert [receipt.status for receipt in orchestrator.receipts(run.id)] == [ReceiptStatus.SETTLED]
    assert orchestrator.budget(run.id).spent_atomic == 500_000
    assert orchestrator.get_run(run.id).status is RunStatus.SUCCEEDED


def test_run_canceled_before_payment_cancels_the_step_unpaid(tmp_path: Path) -> None:
    clock = FakeClock()
    payments = RecordingPayments()
    orchestrator, catalog = _hooked_orchestrator(tmp_path, payments, clock)
    tool = orchestrator.register_tool(make_tool(typical_amount_atomic=500_000))
    run = start_run(orchestrator, _paid_fetch_graph(tool.id))

    catalog.on_lookup = lambda: orchestrator.cancel_run(run.id, user_id="user-1")
    outcomes = orchestrator.run_worker("w-a")

    assert [(outcome.step_id, outcome.status) for outcome in outcomes] == [("buy", StepStatus.CANCELED)]
    assert payments.calls == []
    assert orchestrator.receipts(run.id) == []
    assert orchestrator.budget(run.id).reserved_atomic == 0
    assert orchestrator.get_run(run.id).status is RunStatus.CANCELED


def test_tool_outside_allowlist_is_refused(tmp_path: Path) -> None:
    payments = RecordingPayments()
    orchestrator = make_orchestrator(tmp_path, payments=payments, invoker=EchoInvoker())
    tool = orchestrator.register_tool(make_tool())
    policy = AutoPayPolicy(tool_allowlist=("https://other.example.test",))
    run = start_run(orchestrator, _paid_fetch_graph(tool.id), auto_pay=policy)

    orchestrator.run_worker("w-1")

    step = orchestrator.state.steps.require(run.id, "buy")
    assert step.error is not None
    assert step.error.code == "tool_not_allowlisted"
    assert payments.calls == []


# ---------------------------------------------------------------------------
# Control flow
# ---------------------------------------------------------------------------


def test_wait_node_polls_without_consuming_attempts(tmp_path: Path) -> None:
    clock = FakeClock()
    poller = ScriptedPoller([{"status": "running"}, {"status": "completed", "result": 7}])
    orchestrator = make_orchestrator(tmp_path, poller=poller, clock=clock)
    graph = {
        "nodes": [
            {
                "id": "job",
                "type": "wait",
                "label": "Wait for job",
                "statusUrl": "https://jobs.example.test/42",
                "pollIntervalMs": 1000,
            },
            {"id": "done", "type": "finalize", "label": "Done", "outputTemplate": "result={{job.status.result}}"},
        ],
        "edges": [{"from": "job", "to": "done"}],
        "entryNodeId": "job",
    }
    run = start_run(orchestrator, graph)

    first = orchestrator.run_worker("w-1")
    assert [(outcome.status, outcome.attempt) for outcome in first] == [(StepStatus.PENDING, 0)]

    clock.advance(seconds=1)
    orchestrator.run_worker("w-1")

    job = orchestrator.state.steps.require(run.id, "job")
    assert job.status is StepStatus.SUCCEEDED
    assert job.attempt == 1
    done = orchestrator.state.steps.require(run.id, "done")
    assert done.outputs is not None
    assert done.outputs["output"] == "result=7"
    assert poller.urls == ["https://jobs.example.test/42"] * 2


def test_deferred_step_is_reclaimed_behind_many_blocked_steps(tmp_path: Path) -> None:
    clock = FakeClock()
    poller = ScriptedPoller([{"status": "running"}, {"status": "completed"}])
    orchestrator = make_orchestrator(tmp_path, poller=poller, clock=clock)
    chain = [f"m{index:02d}" for index in range(60)]
    graph = {
        "nodes": [
            {
                "id": "job",
                "type": "wait",
                "label": "Wait for job",
                "statusUrl": "https://jobs.example.test/9",
                "pollIntervalMs": 1000,
            },
            *({"id": node_id, "type": "merge", "label": node_id} for node_id in chain),
        ],
        "edges": [
            {"from": source, "to": target}
            for source, target in zip(["job", *chain[:-1]], chain, strict=True)
        ],
        "entryNodeId": "job",
    }
    run = start_run(orchestrator, graph)

    orchestrator.run_worker("w-1")
    assert _step_status(orchestrator, run.id, "job") is StepStatus.PENDING

    clock.advance(seconds=1)
    orchestrator.run_worker("w-1")

    assert _step_status(orchestrator, run.id, "job") is StepStatus.SUCCEEDED
    assert _step_status(orchestrator, run.id, chain[-1]) is StepStatus.SUCCEEDED
    assert orchestrator.get_run(run.id).status is RunStatus.SUCCEEDED
    assert len(poller.urls) == 2


def test_wait_node_times_out(tmp_path: Path) -> None:
    clock = FakeClock()
    orchestrator = make_orchestrator(tmp_path, poller=ScriptedPoller([{"status": "running"}]), clock=clock)
    graph = {
        "nodes": [
            {
                "id": "job",
                "type": "wait",
                "label": "Wait for job",
                "statusUrl": "https://jobs.example.test/1",
                "pollIntervalMs": 1000,
                "maxWaitMs": 2000,
            }
        ],
        "edges": [],
        "entryNodeId": "job",
    }
    run = start_run(orchestrator, graph)

    for _ in range(4):
        orchestrator.run_worker("w-1")
        clock.advance(seconds=1)

    job = orchestrator.state.steps.require(run.id, "job")
    assert job.status is StepStatus.FAILED
    assert job.error is not None
    assert job.error.code == "wait_timeout"


def test_branch_prunes_the_untaken_path(tmp_path: Path) -> None:
    orchestrator = make_orchestrator(tmp_path)
    graph = {
        "nodes": [
            {
                "id": "check",
                "type": "branch",
                "label": "Go?",
                "condition": "intent == 'go'",
                "trueBranch": "yes",
                "falseBranch": "no",
            },
            {"id": "yes", "type": "finalize", "label": "Yes", "outputTemplate": "took yes"},
            {"id": "no", "type": "finalize", "label": "No", "outputTemplate": "took no"},
        ],
        "edges": [],
        "entryNodeId": "check",
    }
    run = start_run(orchestrator, graph, intent="go")

    orchestrator.run_worker("w-1")

    assert _step_status(orchestrator, run.id, "yes") is StepStatus.SUCCEEDED
    assert _step_status(orchestrator, run.id, "no") is StepStatus.CANCELED
    assert orchestrator.get_run(run.id).status is RunStatus.SUCCEEDED


def test_cancel_run_cancels_open_steps_and_stops_work(tmp_path: Path) -> None:
    orchestrator = make_orchestrator(tmp_path)
    run = start_run(orchestrator, _approval_graph())
    orchestrator.run_worker("w-1")

    status = orchestrator.cancel_run(run.id, user_id="user-1", reason="changed my mind")

    assert status is RunStatus.CANCELED
    statuses = {step.step_id: step.status for step in orchestrator.list_steps(run.id)}
    assert statuses == {
        "draft": StepStatus.SUCCEEDED,
        "approve": StepStatus.CANCELED,
        "publish": StepStatus.CANCELED,
    }
    assert orchestrator.run_worker("w-1") == []
    canceled = orchestrator.events(run.id, types=[EventType.RUN_CANCELED])
    assert canceled[0].data["reason"] == "changed my mind"


def test_replay_matches_persisted_state(tmp_path: Path) -> None:
    payments = RecordingPayments()
    orchestrator = make_orchestrator(tmp_path, payments=payments, invoker=EchoInvoker({"items": []}))
    tool = orchestrator.register_tool(make_tool(typical_amount_atomic=750_000))
    run = start_run(orchestrator, _paid_fetch_graph(tool.id))
    orchestrator.run_worker("w-1")

    projection = orchestrator.replay(run.id)
    persisted = orchestrator.get_run(run.id)
    budget = orchestrator.budget(run.id)

    assert projection.status is persisted.status is RunStatus.SUCCEEDED
    assert projection.max_atomic == budget.max_atomic == 5_000_000
    assert (projection.spent_atomic, projection.reserved_atomic) == (budget.spent_atomic, budget.reserved_atomic)
    assert projection.steps == {
        step.step_id: StepProjection(status=step.status, attempt=step.attempt)
        for step in orchestrator.list_steps(run.id)
    }
    assert projection.last_seq == len(orchestrator.events(run.id))
