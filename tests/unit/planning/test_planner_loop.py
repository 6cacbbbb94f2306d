"""
paigent-orchestrator — unit tests for the planner retry loop

File: tests/unit/planning/test_planner_loop.py
Last updated: 2026-10-16

Purpose
- Exercise the pure transition function and the I/O loop around it with a scripted generator.
"""

from __future__ import annotations

import json

import pytest

from paigent_orchestrator.domain.graph import FinalizeNode, Graph, LlmReasonNode, ToolCallNode
from paigent_orchestrator.domain.models import PricingHints, Tool
from paigent_orchestrator.planning.json_extraction import NO_JSON_FOUND
from paigent_orchestrator.planning.planner import (
    Attempting,
    Exhausted,
    GenerationFailed,
    Invalid,
    NoJson,
    Planner,
    PlannerSettings,
    Succeeded,
    Valid,
    advance,
    estimate_graph_cost,
    fallback_graph,
    graph_summary,
)
from paigent_orchestrator.planning.validator import validate_graph
from paigent_orchestrator.providers.base import GenerationResult

_VALID_PLAN = {
    "nodes": [
        {"id": "think", "type": "llm_reason", "label": "Think"},
        {"id": "done", "type": "finalize", "label": "Done", "dependsOn": ["think"]},
    ],
    "edges": [],
    "entryNodeId": "think",
}
_MISSING_ENTRY = {"nodes": [{"id": "done", "type": "finalize", "label": "Done"}], "edges": []}


class _ScriptedGenerator:
    def __init__(self, replies: list[object]) -> None:
        self._replies = list(replies)
        self.prompts: list[str] = []

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> GenerationResult:
        self.prompts.append(user_prompt)
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return GenerationResult(text=str(reply), tokens=10, latency_ms=5)


def _planner(generator: _ScriptedGenerator, sleeps: list[float]) -> Planner:
    return Planner(generator, sleep=sleeps.append, clock=lambda: 0.0)


def _graph() -> Graph:
    return Graph(nodes=(FinalizeNode(id="only", label="Only"),), edges=(), entry_node_id="only")


# ---------------------------------------------------------------------------
# advance
# ---------------------------------------------------------------------------


def test_valid_outcome_succeeds_on_the_current_attempt() -> None:
    graph = _graph()
    assert advance(Attempting(attempt=2, prompt="p"), Valid(graph)) == Succeeded(graph=graph, attempts=2)


def test_no_json_builds_a_retry_prompt() -> None:
    state = advance(Attempting(attempt=1, prompt="p"), NoJson(raw="just prose"))

    assert isinstance(state, Attempting)
    assert state.attempt == 2
    assert state.last_error == NO_JSON_FOUND
    assert "just prose" in state.prompt
    assert NO_JSON_FOUND in state.prompt


def test_invalid_outcome_joins_errors() -> None:
    state = advance(Attempting(attempt=1, prompt="p"), Invalid(raw="{}", errors=("first", "second")))
    assert isinstance(state, Attempting)
    assert state.last_error == "first; second"

    empty = advance(Attempting(attempt=1, prompt="p"), Invalid(raw="{}", errors=()))
    assert isinstance(empty, Attempting)
    assert empty.last_error == "Schema validation failed"


def test_generation_failure_reuses_the_prompt() -> None:
    state = advance(Attempting(attempt=1, prompt="original"), GenerationFailed("timeout"))
    assert state == Attempting(attempt=2, prompt="original", last_error="timeout")


def test_last_attempt_exhausts() -> None:
    state = advance(Attempting(attempt=3, prompt="p"), NoJson(raw="x"), max_attempts=3)
    assert state == Exhausted(
        error=f"Failed to generate valid workflow after 3 attempts. Last error: {NO_JSON_FOUND}",
        attempts=3,
    )


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


def test_planner_recovers_on_the_third_attempt() -> None:
    generator = _ScriptedGenerator(
        ["I would rather not.", json.dumps(_MISSING_ENTRY), f"```json\n{json.dumps(_VALID_PLAN)}\n```"]
    )
    sleeps: list[float] = []

    result = _planner(generator, sleeps).plan_workflow("think hard", [], 1_000_000)

    assert result.success
    assert result.attempts == 3
    assert result.tokens == 30
    assert result.latency_ms == 15
    assert result.graph is not None
    assert result.graph.node_ids == ("think", "done")
    assert NO_JSON_FOUND in generator.prompts[1]
    assert "entryNodeId: expected string, got NoneType" in generator.prompts[2]
    assert sleeps == []


def test_generator_errors_wait_and_retry_with_the_same_prompt() -> None:
    generator = _ScriptedGenerator([RuntimeError("upstream down"), json.dumps(_VALID_PLAN)])
    sleeps: list[float] = []

    result = _planner(generator, sleeps).plan_workflow("think", [], 1_000_000)

    assert result.success
    assert result.attempts == 2
    assert sleeps == [1.0]
    assert generator.prompts[0] == generator.prompts[1]


def test_planner_gives_up_after_three_attempts() -> None:
    generator = _ScriptedGenerator(["nope", "still nope", "{broken"])

    result = _planner(generator, []).plan_workflow("impossible", [], 1_000_000)

    assert not result.success
    assert result.graph is None
    assert result.attempts == 3
    assert result.error is not None
    assert result.error.startswith("Failed to generate valid workflow after 3 attempts")
    assert result.raw_response == "{broken"


def test_unknown_tool_ids_are_rejected_against_the_catalog() -> None:
    plan = {
        "nodes": [{"id": "call", "type": "tool_call", "label": "Call", "toolId": "tool-imaginary"}],
        "edges": [],
        "entryNodeId": "call",
    }
    generator = _ScriptedGenerator([json.dumps(plan)])
    planner = Planner(generator, settings=PlannerSettings(max_attempts=1), sleep=lambda _: None)

    result = planner.plan_workflow("call it", [], 1_000_000)

    assert not result.success
    assert result.error is not None
    assert "unknown tool 'tool-imaginary'" in result.error


def test_planner_settings() -> None:
    with pytest.raises(ValueError, match="max_attempts must be >= 1"):
        PlannerSettings(max_attempts=0)
    with pytest.raises(ValueError, match="retry_delay_ms must be >= 0"):
        PlannerSettings(retry_delay_ms=-1)

    settings = PlannerSettings.from_config({"model": "m", "max_attempts": "5", "temperature": "0.1"})
    assert settings.model == "m"
    assert settings.max_attempts == 5
    assert settings.temperature == 0.1
    assert settings.retry_delay_ms == 1_000


# ---------------------------------------------------------------------------
# Graph helpers
# ---------------------------------------------------------------------------


def test_fallback_graph_is_a_single_valid_finalize_node() -> None:
    graph = fallback_graph("book a flight", "model unavailable")

    assert graph.entry_node_id == "error"
    assert graph.edges == ()
    (node,) = graph.nodes
    assert isinstance(node, FinalizeNode)
    assert node.output_template is not None
    assert '"book a flight"' in node.output_template
    assert "Error: model unavailable" in node.output_template
    assert validate_graph(graph.to_dict()).valid


def test_estimate_graph_cost_and_summary() -> None:
    tools = [
        Tool(id="tool-a", workspace_id="ws", name="A", base_url="u", pricing=PricingHints(typical_amount_atomic=1_500)),
        Tool(id="tool-b", workspace_id="ws", name="B", base_url="u"),
    ]
    graph = Graph(
        nodes=(
            ToolCallNode(id="one", label="One", tool_id="tool-a"),
            ToolCallNode(id="two", label="Two", tool_id="tool-a", depends_on=("one",)),
            ToolCallNode(id="three", label="Three", tool_id="tool-b", depends_on=("two",)),
            LlmReasonNode(id="four", label="Four", depends_on=("three",)),
        ),
        edges=(),
        entry_node_id="one",
    )

    assert estimate_graph_cost(graph, tools) == 3_000
    assert graph_summary(graph) == {
        "totalNodes": 4,
        "nodesByType": {"tool_call": 3, "llm_reason": 1},
        "hasApprovalGates": False,
        "hasBranching": False,
        "estimatedSteps": 4,
    }
