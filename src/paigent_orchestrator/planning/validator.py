"""Pure structural validation of candidate workflow graphs.

Schema errors are collected per node and per edge so that a planner retry prompt
can carry every problem at once. Structural checks (cycles, reachability, entry
uniqueness) run only once every reference resolves.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import NoReturn, TypeVar

from paigent_orchestrator.constants import (
    MAX_RETRIES_LIMIT,
    MAX_TIMEOUT_MS,
    MIN_TIMEOUT_MS,
)
from paigent_orchestrator.domain.errors import GraphValidationError
from paigent_orchestrator.domain.graph import (
    ApprovalNode,
    AsyncMode,
    AsyncSpec,
    BranchNode,
    Edge,
    EdgeType,
    EndpointRef,
    FinalizeFormat,
    FinalizeNode,
    Graph,
    JSONValue,
    LlmReasonNode,
    MergeNode,
    MergeStrategy,
    Node,
    NodePolicy,
    NodeType,
    PaymentSpec,
    ReasonOutputFormat,
    ToolCallNode,
    WaitNode,
)
from paigent_orchestrator.domain.models import parse_atomic
from paigent_orchestrator.planning.task_graph import CycleError, TaskGraph

TEnum = TypeVar("TEnum", bound=Enum)

_MAX_ID_LEN = 100
_MAX_LABEL_LEN = 200
_MAX_TEXT = 32_768
_MAX_JSON_DEPTH = 16


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    data: Graph | None = None
    errors: tuple[str, ...] = ()


def validate_graph(
    candidate: object,
    *,
    tool_catalog: Collection[str] | None = None,
    default_policy: NodePolicy | None = None,
) -> ValidationResult:
    """Validate ``candidate`` (decoded JSON) against the workflow graph rules.

    ``tool_catalog`` is the collection of tool ids the run may call; when given,
    every ``tool_call.toolId`` must be a member. ``default_policy`` fills in the
    retry and timeout bounds of nodes that omit them.
    """
    errors: list[str] = []

    if not isinstance(candidate, Mapping):
        return ValidationResult(False, errors=(f"graph: expected object, got {type(candidate).__name__}",))

    raw_nodes = candidate.get("nodes")
    raw_edges = candidate.get("edges", [])
    raw_entry = candidate.get("entryNodeId")

    nodes: list[Node] = []
    declared_ids: list[str] = []
    if not isinstance(raw_nodes, list) or not raw_nodes:
        errors.append("nodes: expected a non-empty array of nodes")
        raw_nodes = []
    for index, raw_node in enumerate(raw_nodes):
        path = f"nodes[{index}]"
        if isinstance(raw_node, Mapping) and isinstance(raw_node.get("id"), str):
            declared_ids.append(raw_node["id"])
        try:
            nodes.append(_parse_node(raw_node, path, default_policy or NodePolicy()))
        except ValueError as exc:
            errors.append(str(exc))

    edges: list[Edge] = []
    if not isinstance(raw_edges, list):
        errors.append("edges: expected array")
        raw_edges = []
    for index, raw_edge in enumerate(raw_edges):
        try:
            edges.append(_parse_edge(raw_edge, f"edges[{index}]"))
        except ValueError as exc:
            errors.append(str(exc))

    entry: str | None = None
    try:
        entry = _as_str(raw_entry, "entryNodeId", max_len=_MAX_ID_LEN)
    except ValueError as exc:
        errors.append(str(exc))

    # Uniqueness and references are checked against every declared id so that a
    # malformed node does not also surface as a dangling reference.
    seen: set[str] = set()
    for node_id in declared_ids:
        if node_id in seen:
            errors.append(f"nodes: duplicate node id {node_id!r}")
        seen.add(node_id)

    reference_errors = _check_references(seen, nodes, edges, entry)
    errors.extend(reference_errors)

    if tool_catalog is not None:
        known_tools = set(tool_catalog)
        for index, node in enumerate(nodes):
            if isinstance(node, ToolCallNode) and node.tool_id not in known_tools:
                errors.append(
                    f"nodes[{_index_of(raw_nodes, node.id, index)}].toolId: "
                    f"unknown tool {node.tool_id!r}; use an id from the available tools"
                )

    if errors or entry is None:
        return ValidationResult(False, errors=tuple(errors))

    graph = Graph(nodes=tuple(nodes), edges=tuple(edges), entry_node_id=entry)
    structural = _check_structure(graph)
    if structural:
        return ValidationResult(False, errors=tuple(structural))
    return ValidationResult(True, data=graph)


def parse_graph(
    payload: object,
    *,
    tool_catalog: Collection[str] | None = None,
    default_policy: NodePolicy | None = None,
) -> Graph:
    """Return the validated graph or raise :class:`GraphValidationError`."""
    result = validate_graph(payload, tool_catalog=tool_catalog, default_policy=default_policy)
    if not result.valid or result.data is None:
        raise GraphValidationError(result.errors)
    return result.data


# ---------------------------------------------------------------------------
# Structural checks
# ---------------------------------------------------------------------------


def _check_references(
    known: set[str],
    nodes: list[Node],
    edges: list[Edge],
    entry: str | None,
) -> list[str]:
    problems: list[str] = []
    if entry is not None and entry not in known:
        problems.append(f"entryNodeId: unknown node {entry!r}")

    for index, edge in enumerate(edges):
        for end, node_id in (("from", edge.source), ("to", edge.target)):
            if node_id not in known:
                problems.append(f"edges[{index}].{end}: unknown node {node_id!r}")
        if edge.source == edge.target:
            problems.append(f"edges[{index}]: self-loop on {edge.source!r} is not allowed")

    for node in nodes:
        for dependency in node.depends_on:
            if dependency not in known:
                problems.append(f"node {node.id!r}.dependsOn: unknown node {dependency!r}")
            elif dependency == node.id:
                problems.append(f"node {node.id!r}.dependsOn: node cannot depend on itself")
        if isinstance(node, BranchNode):
            for field_name, target in (("trueBranch", node.true_branch), ("falseBranch", node.false_branch)):
                if target is None:
                    continue
                if target not in known:
                    problems.append(f"node {node.id!r}.{field_name}: unknown node {target!r}")
                elif target == node.id:
                    problems.append(f"node {node.id!r}.{field_name}: branch cannot target itself")
    return problems


def _check_structure(graph: Graph) -> list[str]:
    dag = TaskGraph(nodes=graph.node_ids, edges=((link.source, link.target) for link in graph.links()))
    try:
        dag.topological_sort()
    except CycleError as exc:
        return [str(exc)]

    problems: list[str] = []
    entry = graph.entry_node_id
    if dag.parents(entry):
        problems.append("Entry node should not have incoming edges")

    extra_roots = [node_id for node_id in dag.roots() if node_id != entry]
    if extra_roots:
        problems.append(
            f"multiple entry nodes {extra_roots}: only {entry!r} may have no predecessors"
        )

    reachable = dag.reachable_from(entry)
    for node_id in graph.node_ids:
        if node_id not in reachable:
            problems.append(f"node {node_id!r} is not reachable from entry node {entry!r}")
    return problems


def _index_of(raw_nodes: list[object], node_id: str, fallback: int) -> int:
    for index, raw in enumerate(raw_nodes):
        if isinstance(raw, Mapping) and raw.get("id") == node_id:
            return index
    return fallback


# ---------------------------------------------------------------------------
# Node and edge parsing
# ---------------------------------------------------------------------------


def _parse_node(value: object, path: str, default_policy: NodePolicy) -> Node:
    data = _expect_object(value, path, required=("id", "type", "label"))
    node_type = _as_enum(NodeType, data["type"], f"{path}.type")
    common: dict[str, object] = {
        "id": _as_str(data["id"], f"{path}.id", max_len=_MAX_ID_LEN),
        "label": _as_str(data["label"], f"{path}.label", max_len=_MAX_LABEL_LEN),
        "depends_on": _as_str_tuple(data.get("dependsOn"), f"{path}.dependsOn"),
        "policy": _parse_policy(data.get("policy"), f"{path}.policy", default_policy),
    }
    parser = _NODE_PARSERS[node_type]
    return parser(data, path, common)


def _parse_policy(value: object, path: str, default: NodePolicy) -> NodePolicy:
    if value is None:
        return default
    data = _expect_object(value, path, required=())
    requires_approval = data.get("requiresApproval", False)
    return NodePolicy(
        requires_approval=_as_bool(requires_approval, f"{path}.requiresApproval"),
        max_retries=_as_int(
            data.get("maxRetries", default.max_retries),
            f"{path}.maxRetries",
            minimum=0,
            maximum=MAX_RETRIES_LIMIT,
        ),
        timeout_ms=_as_int(
            data.get("timeoutMs", default.timeout_ms),
            f"{path}.timeoutMs",
            minimum=MIN_TIMEOUT_MS,
            maximum=MAX_TIMEOUT_MS,
        ),
    )


def _parse_tool_call(data: dict[str, object], path: str, common: dict[str, object]) -> ToolCallNode:
    tool_id = data.get("toolId")
    if not isinstance(tool_id, str) or not tool_id.strip():
        _fail(f"{path}.toolId", "tool_call nodes require a non-empty toolId")

    endpoint: EndpointRef | None = None
    if data.get("endpoint") is not None:
        raw = _expect_object(data["endpoint"], f"{path}.endpoint", required=("path",))
        endpoint = EndpointRef(
            path=_as_str(raw["path"], f"{path}.endpoint.path"),
            method=_as_str(raw.get("method", "GET"), f"{path}.endpoint.method").upper(),
        )

    payment: PaymentSpec | None = None
    if data.get("payment") is not None:
        raw = _expect_object(data["payment"], f"{path}.payment", required=("allowed",))
        max_atomic = raw.get("maxAtomic")
        payment = PaymentSpec(
            allowed=_as_bool(raw["allowed"], f"{path}.payment.allowed"),
            max_atomic=None if max_atomic is None else parse_atomic(max_atomic, f"{path}.payment.maxAtomic"),
        )

    async_spec: AsyncSpec | None = None
    if data.get("async") is not None:
        raw = _expect_object(data["async"], f"{path}.async", required=())
        async_spec = AsyncSpec(
            mode=_as_enum(AsyncMode, raw.get("mode", "sync"), f"{path}.async.mode"),
            poll_url_path=_as_optional_str(raw.get("pollUrlPath"), f"{path}.async.pollUrlPath"),
            max_polls=_as_int(raw.get("maxPolls", 10), f"{path}.async.maxPolls", minimum=1, maximum=100),
            poll_interval_ms=_as_int(
                raw.get("pollIntervalMs", 5_000),
                f"{path}.async.pollIntervalMs",
                minimum=1_000,
                maximum=60_000,
            ),
        )

    return ToolCallNode(
        **common,  # type: ignore[arg-type]
        tool_id=tool_id.strip(),
        endpoint=endpoint,
        request_template=_as_optional_json_object(data.get("requestTemplate"), f"{path}.requestTemplate"),
        response_schema=_as_optional_json_object(data.get("responseSchema"), f"{path}.responseSchema"),
        payment=payment,
        async_spec=async_spec,
    )


def _parse_llm_reason(data: dict[str, object], path: str, common: dict[str, object]) -> LlmReasonNode:
    return LlmReasonNode(
        **common,  # type: ignore[arg-type]
        system_prompt=_as_optional_str(data.get("systemPrompt"), f"{path}.systemPrompt"),
        user_prompt_template=_as_optional_str(data.get("userPromptTemplate"), f"{path}.userPromptTemplate"),
        output_format=_as_enum(ReasonOutputFormat, data.get("outputFormat", "text"), f"{path}.outputFormat"),
        output_schema=_as_optional_json_object(data.get("outputSchema"), f"{path}.outputSchema"),
    )


def _parse_approval(data: dict[str, object], path: str, common: dict[str, object]) -> ApprovalNode:
    return ApprovalNode(
        **common,  # type: ignore[arg-type]
        message=_as_optional_str(data.get("message"), f"{path}.message"),
        context_keys=_as_str_tuple(data.get("contextKeys"), f"{path}.contextKeys"),
    )


def _parse_branch(data: dict[str, object], path: str, common: dict[str, object]) -> BranchNode:
    if "condition" not in data:
        _fail(f"{path}.condition", "branch nodes require a condition")
    return BranchNode(
        **common,  # type: ignore[arg-type]
        condition=_as_str(data["condition"], f"{path}.condition"),
        true_branch=_as_optional_str(data.get("trueBranch"), f"{path}.trueBranch", max_len=_MAX_ID_LEN),
        false_branch=_as_optional_str(data.get("falseBranch"), f"{path}.falseBranch", max_len=_MAX_ID_LEN),
    )


def _parse_wait(data: dict[str, object], path: str, common: dict[str, object]) -> WaitNode:
    completion_value = data.get("completionValue", "completed")
    if completion_value is not None and not isinstance(completion_value, (str, int, float, bool)):
        _fail(f"{path}.completionValue", "expected a JSON scalar")
    return WaitNode(
        **common,  # type: ignore[arg-type]
        status_url=_as_optional_str(data.get("statusUrl"), f"{path}.statusUrl"),
        max_wait_ms=_as_int(data.get("maxWaitMs", 300_000), f"{path}.maxWaitMs", minimum=1_000),
        poll_interval_ms=_as_int(data.get("pollIntervalMs", 5_000), f"{path}.pollIntervalMs", minimum=1_000),
        completion_field=_as_str(data.get("completionField", "status"), f"{path}.completionField"),
        completion_value=completion_value,
    )


def _parse_merge(data: dict[str, object], path: str, common: dict[str, object]) -> MergeNode:
    return MergeNode(
        **common,  # type: ignore[arg-type]
        merge_strategy=_as_enum(MergeStrategy, data.get("mergeStrategy", "all"), f"{path}.mergeStrategy"),
    )


def _parse_finalize(data: dict[str, object], path: str, common: dict[str, object]) -> FinalizeNode:
    return FinalizeNode(
        **common,  # type: ignore[arg-type]
        output_format=_as_enum(FinalizeFormat, data.get("outputFormat", "text"), f"{path}.outputFormat"),
        output_template=_as_optional_str(data.get("outputTemplate"), f"{path}.outputTemplate"),
    )


_NodeParser = Callable[[dict[str, object], str, dict[str, object]], Node]

_NODE_PARSERS: dict[NodeType, _NodeParser] = {
    NodeType.TOOL_CALL: _parse_tool_call,
    NodeType.LLM_REASON: _parse_llm_reason,
    NodeType.APPROVAL: _parse_approval,
    NodeType.BRANCH: _parse_branch,
    NodeType.WAIT: _parse_wait,
    NodeType.MERGE: _parse_merge,
    NodeType.FINALIZE: _parse_finalize,
}


def _parse_edge(value: object, path: str) -> Edge:
    data = _expect_object(value, path, required=("from", "to"))
    edge_type = _as_enum(EdgeType, data.get("type", "success"), f"{path}.type")
    condition = _as_optional_str(data.get("condition"), f"{path}.condition")
    if edge_type is EdgeType.CONDITIONAL and condition is None:
        _fail(f"{path}.condition", "conditional edges require a condition")
    return Edge(
        source=_as_str(data["from"], f"{path}.from", max_len=_MAX_ID_LEN),
        target=_as_str(data["to"], f"{path}.to", max_len=_MAX_ID_LEN),
        type=edge_type,
        condition=condition,
    )


# ---------------------------------------------------------------------------
# Primitive coercions
# ---------------------------------------------------------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(value: object, path: str, *, required: tuple[str, ...]) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    parsed = {str(key): item for key, item in value.items()}
    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")
    return parsed


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must be at least 1 character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str | None:
    if value is None:
        return None
    return _as_str(value, path, max_len=max_len)


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        _fail(path, f"expected array, got {type(value).__name__}")
    return tuple(_as_str(item, f"{path}[{index}]", max_len=_MAX_ID_LEN) for index, item in enumerate(value))


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(
    value: object,
    path: str,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            _fail(path, "expected integer")
        value = int(value)
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    if maximum is not None and value > maximum:
        _fail(path, f"must be <= {maximum}")
    return value


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(item.value for item in enum_type)
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, (list, tuple)):
        return [_as_json_value(item, f"{path}[{idx}]", depth=depth + 1) for idx, item in enumerate(value)]
    if isinstance(value, Mapping):
        return {str(key): _as_json_value(item, f"{path}.{key}", depth=depth + 1) for key, item in value.items()}
    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _as_optional_json_object(value: object, path: str) -> dict[str, JSONValue] | None:
    if value is None:
        return None
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected JSON object")
    return parsed


__all__ = ["ValidationResult", "parse_graph", "validate_graph"]
