"""Shared deterministic builders for persistence tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Final

from paigent_orchestrator.domain import ids
from paigent_orchestrator.domain.graph import FinalizeNode, Graph, LlmReasonNode, NodeType
from paigent_orchestrator.domain.models import (
    AutoPayPolicy,
    PaymentReceipt,
    PricingHints,
    ReceiptStatus,
    Run,
    RunBudget,
    RunStatus,
    Step,
    StepStatus,
    Tool,
    ToolEndpoint,
)

_BASE_TS: Final[datetime] = datetime(2026, 10, 16, 9, 0, 0, tzinfo=UTC)


def fixed_now(seed: int) -> datetime:
    return _BASE_TS + timedelta(seconds=seed)


def _timestamp_ms(seed: int) -> int:
    return int(fixed_now(seed).timestamp() * 1000)


def _randbytes(seed: int):
    byte_value = (seed % 251) + 1

    def _provider(size: int) -> bytes:
        return bytes([byte_value]) * size

    return _provider


def make_graph() -> Graph:
    return Graph(
        nodes=(
            LlmReasonNode(id="think", label="Think"),
            FinalizeNode(id="done", label="Done", depends_on=("think",)),
        ),
        edges=(),
        entry_node_id="think",
    )


def make_run(
    seed: int,
    *,
    workspace_id: str = "ws-1",
    status: RunStatus = RunStatus.RUNNING,
    max_atomic: int = 5_000_000,
) -> Run:
    created = fixed_now(seed)
    return Run(
        id=ids.generate_run_id(timestamp_ms=_timestamp_ms(seed), randbytes=_randbytes(seed)),
        workspace_id=workspace_id,
        input=f"intent {seed}",
        graph=make_graph(),
        budget=RunBudget(max_atomic=max_atomic),
        status=status,
        auto_pay=AutoPayPolicy(tool_allowlist=("tool-a",)),
        created_by=f"user-{seed}",
        created_at=created,
        updated_at=created,
    )


def make_step(
    seed: int,
    *,
    run_id: str,
    step_id: str = "think",
    node_type: NodeType = NodeType.LLM_REASON,
    status: StepStatus = StepStatus.PENDING,
    next_eligible_at: datetime | None = None,
    lease_owner: str | None = None,
    lease_expires_at: datetime | None = None,
) -> Step:
    return Step(
        id=ids.generate_step_id(timestamp_ms=_timestamp_ms(seed), randbytes=_randbytes(seed)),
        run_id=run_id,
        step_id=step_id,
        node_type=node_type,
        status=status,
        next_eligible_at=next_eligible_at,
        lease_owner=lease_owner,
        lease_expires_at=lease_expires_at,
        created_at=fixed_now(seed),
    )


def make_tool(seed: int, *, workspace_id: str = "ws-1", name: str | None = None) -> Tool:
    return Tool(
        id=ids.generate_tool_id(timestamp_ms=_timestamp_ms(seed), randbytes=_randbytes(seed)),
        workspace_id=workspace_id,
        name=name or f"Tool {seed}",
        base_url=f"https://tool-{seed}.example.test",
        description="Search the web",
        endpoints=(ToolEndpoint(path="/search", method="POST", description="Full-text search"),),
        pricing=PricingHints(typical_amount_atomic=10_000 * (seed + 1)),
    )


def make_receipt(
    seed: int,
    *,
    run_id: str,
    tool_id: str,
    amount_atomic: int,
    status: ReceiptStatus = ReceiptStatus.SETTLED,
) -> PaymentReceipt:
    return PaymentReceipt(
        id=ids.generate_receipt_id(timestamp_ms=_timestamp_ms(seed), randbytes=_randbytes(seed)),
        run_id=run_id,
        step_id="think",
        tool_id=tool_id,
        amount_atomic=amount_atomic,
        status=status,
        tx_hash=None if status is ReceiptStatus.FAILED else f"0x{seed:064x}",
        created_at=fixed_now(seed),
    )


__all__ = ["fixed_now", "make_graph", "make_receipt", "make_run", "make_step", "make_tool"]
