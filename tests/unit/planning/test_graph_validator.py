"""
paigent-orchestrator — unit tests for the workflow graph validator

File: tests/unit/planning/test_graph_validator.py
Last updated: 2026-10-16

Purpose
- Pin the error messages a planner retry prompt relies on and the structural rules
  every accepted graph satisfies.
"""

from __future__ import annotations

import copy

import pytest

from paigent_orchestrator.domain.errors import GraphValidationError
from paigent_orchestrator.domain.graph import NodePolicy, ToolCallNode
from paigent_orchestrator.planning.validator import parse_graph, validate_graph

_VALID = {
    "nodes": [
        {
            "id": "search",
            "type": "tool_call",
            "label": "Search",
            "toolId": "tool-news",
            "payment": {"allowed": True, "maxAtomic": "250000"},
        },
        {"id": "summarize", "type": "llm_reason", "label": "Summarize"},
        {"id": "report", "type": "finalize", "label": "Report", "outputFormat": "markdown"},
    ],
    "edges": [{"from": "search", "to": "summarize"}, {"from": "summarize", "to": "report"}],
    "entryNodeId": "search",
}


def _payload(**changes: object) -> dict[str, object]:
    payload = copy.deepcopy(_VALID)
    payload.update(changes)
    return payload


def test_valid_graph_parses_into_typed_nodes() -> None:
    result = validate_graph(_VALID, tool_catalog=["tool-news"])

    assert result.valid
    assert result.errors == ()
    assert result.data is not None
    search = result.data.node("search")
    assert isinstance(search, ToolCallNode)
    assert search.payment is not None
    assert search.payment.max_atomic == 250_000
    assert search.policy == NodePolicy()


def test_non_object_candidate() -> None:
    result = validate_graph(["nodes"])
    assert not result.valid
    assert result.errors == ("graph: expected object, got list",)


def test_empty_nodes_and_missing_entry() -> None:
    result = validate_graph({"nodes": [], "edges": []})
    assert "nodes: expected a non-empty array of nodes" in result.errors
    assert "entryNodeId: expected string, got NoneType" in result.errors


def test_errors_are_collected_across_nodes_and_edges() -> None:
    payload = _payload(
        nodes=[
            {"id": "a", "type": "tool_call", "label": "A"},
            {"id": "a", "type": "finalize", "label": "A again"},
            {"id": "b", "type": "teleport", "label": "B"},
        ],
        edges=[{"from": "a", "to": "ghost"}, {"from": "a", "to": "a"}],
        entryNodeId="missing",
    )

    errors = validate_graph(payload).errors

    assert "nodes[0].toolId: tool_call nodes require a non-empty toolId" in errors
    assert "nodes: duplicate node id 'a'" in errors
    assert any(error.startswith("nodes[2].type: invalid value 'teleport'") for error in errors)
    assert "edges[0].to: unknown node 'ghost'" in errors
    assert "edges[1]: self-loop on 'a' is not allowed" in errors
    assert "entryNodeId: unknown node 'missing'" in errors


def test_unknown_tool_is_reported_against_the_catalog() -> None:
    errors = validate_graph(_VALID, tool_catalog=["tool-other"]).errors
    assert errors == ("nodes[0].toolId: unknown tool 'tool-news'; use an id from the available tools",)


def test_conditional_edge_requires_condition() -> None:
    payload = _payload(edges=[{"from": "search", "to": "summarize", "type": "conditional"}])
    assert "edges[0].condition: conditional edges require a condition" in validate_graph(payload).errors


def test_cycle_is_reported_with_its_path() -> None:
    payload = _payload(
        edges=[
            {"from": "search", "to": "summarize"},
            {"from": "summarize", "to": "report"},
            {"from": "report", "to": "summarize"},
        ]
    )
    assert validate_graph(payload).errors == ("Graph contains cycles: report -> summarize -> report",)


def test_entry_with_incoming_edge_and_extra_roots() -> None:
    payload = _payload(
        edges=[{"from": "summarize", "to": "search"}, {"from": "summarize", "to": "report"}],
    )
    errors = validate_graph(payload).errors
    assert "Entry node should not have incoming edges" in errors
    assert "multiple entry nodes ['summarize']: only 'search' may have no predecessors" in errors


def test_depends_on_cycle_is_reported() -> None:
    payload = _payload(
        nodes=[
            *_VALID["nodes"],
            {"id": "orphan", "type": "finalize", "label": "Orphan", "dependsOn": ["orphan2"]},
            {"id": "orphan2", "type": "finalize", "label": "Orphan 2", "dependsOn": ["orphan"]},
        ],
    )
    assert validate_graph(payload).errors == ("Graph contains cycles: orphan -> orphan2 -> orphan",)


def test_unreachable_node_is_reported() -> None:
    payload = _payload(
        nodes=[*_VALID["nodes"], {"id": "island", "type": "finalize", "label": "Island"}],
        edges=[*_VALID["edges"], {"from": "island", "to": "report"}],
    )
    errors = validate_graph(payload).errors
    assert "multiple entry nodes ['island']: only 'search' may have no predecessors" in errors
    assert "node 'island' is not reachable from entry node 'search'" in errors


def test_structural_checks_wait_for_reference_errors() -> None:
    payload = _payload(
        edges=[
            {"from": "search", "to": "summarize"},
            {"from": "summarize", "to": "search"},
            {"from": "report", "to": "nowhere"},
        ]
    )
    errors = validate_graph(payload).errors
    assert errors == ("edges[2].to: unknown node 'nowhere'",)


@pytest.mark.parametrize(
    ("policy", "message"),
    [
        ({"maxRetries": 11}, "nodes[0].policy.maxRetries: must be <= 10"),
        ({"maxRetries": -1}, "nodes[0].policy.maxRetries: must be >= 0"),
        ({"timeoutMs": 999}, "nodes[0].policy.timeoutMs: must be >= 1000"),
        ({"timeoutMs": 300_001}, "nodes[0].policy.timeoutMs: must be <= 300000"),
        ({"requiresApproval": "yes"}, "nodes[0].policy.requiresApproval: expected boolean, got str"),
    ],
)
def test_policy_bounds(policy: dict[str, object], message: str) -> None:
    payload = _payload()
    payload["nodes"][0]["policy"] = policy  # type: ignore[index]
    assert message in validate_graph(payload).errors


def test_omitted_policy_fields_take_the_default_policy() -> None:
    payload = _payload()
    payload["nodes"][1]["policy"] = {"requiresApproval": True}  # type: ignore[index]
    default = NodePolicy(max_retries=5, timeout_ms=45_000)

    graph = parse_graph(payload, default_policy=default)

    assert graph.node("summarize").policy == NodePolicy(requires_approval=True, max_retries=5, timeout_ms=45_000)
    assert graph.node("report").policy == default


def test_parse_graph_raises_with_all_errors() -> None:
    with pytest.raises(GraphValidationError) as error:
        parse_graph(_payload(entryNodeId="nope", edges=[{"from": "search", "to": "gone"}]))
    assert error.value.code == "graph_invalid"
    assert error.value.errors == (
        "entryNodeId: unknown node 'nope'",
        "edges[0].to: unknown node 'gone'",
    )
