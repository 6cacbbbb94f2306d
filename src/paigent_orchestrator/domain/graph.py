"""Workflow graph model: a closed set of typed nodes, typed edges and one entry node.

Instances are produced by :func:`paigent_orchestrator.planning.validator.validate_graph`
and are immutable. ``to_dict`` emits the camelCase wire shape the planner speaks.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, ClassVar

from paigent_orchestrator.constants import DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT_MS

if TYPE_CHECKING:
    from enum import StrEnum
else:
    try:
        from enum import StrEnum
    except ImportError:

        class StrEnum(str, Enum):
            """Compatibility fallback for Python < 3.11."""


JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class NodeType(StrEnum):
    TOOL_CALL = "tool_call"
    LLM_REASON = "llm_reason"
    APPROVAL = "approval"
    BRANCH = "branch"
    WAIT = "wait"
    MERGE = "merge"
    FINALIZE = "finalize"


class EdgeType(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    CONDITIONAL = "conditional"


class AsyncMode(StrEnum):
    SYNC = "sync"
    POLL = "poll"


class ReasonOutputFormat(StrEnum):
    TEXT = "text"
    JSON = "json"


class FinalizeFormat(StrEnum):
    TEXT = "text"
    JSON = "json"
    MARKDOWN = "markdown"
    HTML = "html"


class MergeStrategy(StrEnum):
    ALL = "all"
    ANY = "any"
    FIRST = "first"


class LinkKind(StrEnum):
    """How a predecessor gates its successor."""

    DEPENDS_ON = "depends_on"
    SUCCESS = "success"
    FAILURE = "failure"
    CONDITIONAL = "conditional"
    BRANCH_TRUE = "branch_true"
    BRANCH_FALSE = "branch_false"


@dataclass(frozen=True, slots=True)
class NodePolicy:
    requires_approval: bool = False
    max_retries: int = DEFAULT_MAX_RETRIES
    timeout_ms: int = DEFAULT_TIMEOUT_MS

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "requiresApproval": self.requires_approval,
            "maxRetries": self.max_retries,
            "timeoutMs": self.timeout_ms,
        }


@dataclass(frozen=True, slots=True)
class EndpointRef:
    path: str
    method: str = "GET"

    def to_dict(self) -> dict[str, JSONValue]:
        return {"path": self.path, "method": self.method}


@dataclass(frozen=True, slots=True)
class PaymentSpec:
    allowed: bool
    max_atomic: int | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {"allowed": self.allowed}
        if self.max_atomic is not None:
            payload["maxAtomic"] = str(self.max_atomic)
        return payload


@dataclass(frozen=True, slots=True)
class AsyncSpec:
    mode: AsyncMode = AsyncMode.SYNC
    poll_url_path: str | None = None
    max_polls: int = 10
    poll_interval_ms: int = 5_000

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "mode": self.mode.value,
            "maxPolls": self.max_polls,
            "pollIntervalMs": self.poll_interval_ms,
        }
        if self.poll_url_path is not None:
            payload["pollUrlPath"] = self.poll_url_path
        return payload


@dataclass(frozen=True, slots=True, kw_only=True)
class BaseNode:
    node_type: ClassVar[NodeType]

    id: str
    label: str
    depends_on: tuple[str, ...] = ()
    policy: NodePolicy = field(default_factory=NodePolicy)

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "id": self.id,
            "type": self.node_type.value,
            "label": self.label,
            "policy": self.policy.to_dict(),
        }
        if self.depends_on:
            payload["dependsOn"] = list(self.depends_on)
        for key, value in self._type_fields().items():
            if value is not None:
                payload[key] = value
        return payload

    def _type_fields(self) -> dict[str, JSONValue]:
        return {}


@dataclass(frozen=True, slots=True, kw_only=True)
class ToolCallNode(BaseNode):
    node_type: ClassVar[NodeType] = NodeType.TOOL_CALL

    tool_id: str
    endpoint: EndpointRef | None = None
    request_template: dict[str, JSONValue] | None = None
    response_schema: dict[str, JSONValue] | None = None
    payment: PaymentSpec | None = None
    async_spec: AsyncSpec | None = None

    def _type_fields(self) -> dict[str, JSONValue]:
        return {
            "toolId": self.tool_id,
            "endpoint": None if self.endpoint is None else self.endpoint.to_dict(),
            "requestTemplate": self.request_template,
            "responseSchema": self.response_schema,
            "payment": None if self.payment is None else self.payment.to_dict(),
            "async": None if self.async_spec is None else self.async_spec.to_dict(),
        }


@dataclass(frozen=True, slots=True, kw_only=True)
class LlmReasonNode(BaseNode):
    node_type: ClassVar[NodeType] = NodeType.LLM_REASON

    system_prompt: str | None = None
    user_prompt_template: str | None = None
    output_format: ReasonOutputFormat = ReasonOutputFormat.TEXT
    output_schema: dict[str, JSONValue] | None = None

    def _type_fields(self) -> dict[str, JSONValue]:
        return {
            "systemPrompt": self.system_prompt,
            "userPromptTemplate": self.user_prompt_template,
            "outputFormat": self.output_format.value,
            "outputSchema": self.output_schema,
        }


@dataclass(frozen=True, slots=True, kw_only=True)
class ApprovalNode(BaseNode):
    node_type: ClassVar[NodeType] = NodeType.APPROVAL

    message: str | None = None
    context_keys: tuple[str, ...] = ()

    def _type_fields(self) -> dict[str, JSONValue]:
        return {
            "message": self.message,
            "contextKeys": list(self.context_keys) if self.context_keys else None,
        }


@dataclass(frozen=True, slots=True, kw_only=True)
class BranchNode(BaseNode):
    node_type: ClassVar[NodeType] = NodeType.BRANCH

    condition: str
    true_branch: str | None = None
    false_branch: str | None = None

    def _type_fields(self) -> dict[str, JSONValue]:
        return {
            "condition": self.condition,
            "trueBranch": self.true_branch,
            "falseBranch": self.false_branch,
        }


@dataclass(frozen=True, slots=True, kw_only=True)
class WaitNode(BaseNode):
    node_type: ClassVar[NodeType] = NodeType.WAIT

    status_url: str | None = None
    max_wait_ms: int = 300_000
    poll_interval_ms: int = 5_000
    completion_field: str = "status"
    completion_value: JSONScalar = "completed"

    def _type_fields(self) -> dict[str, JSONValue]:
        return {
            "statusUrl": self.status_url,
            "maxWaitMs": self.max_wait_ms,
            "pollIntervalMs": self.poll_interval_ms,
            "completionField": self.completion_field,
            "completionValue": self.completion_value,
        }


@dataclass(frozen=True, slots=True, kw_only=True)
class MergeNode(BaseNode):
    node_type: ClassVar[NodeType] = NodeType.MERGE

    merge_strategy: MergeStrategy = MergeStrategy.ALL

    def _type_fields(self) -> dict[str, JSONValue]:
        return {"mergeStrategy": self.merge_strategy.value}


@dataclass(frozen=True, slots=True, kw_only=True)
class FinalizeNode(BaseNode):
    node_type: ClassVar[NodeType] = NodeType.FINALIZE

    output_format: FinalizeFormat = FinalizeFormat.TEXT
    output_template: str | None = None

    def _type_fields(self) -> dict[str, JSONValue]:
        return {
            "outputFormat": self.output_format.value,
            "outputTemplate": self.output_template,
        }


Node = (
    ToolCallNode | LlmReasonNode | ApprovalNode | BranchNode | WaitNode | MergeNode | FinalizeNode
)

NODE_CLASSES: dict[NodeType, type[BaseNode]] = {
    NodeType.TOOL_CALL: ToolCallNode,
    NodeType.LLM_REASON: LlmReasonNode,
    NodeType.APPROVAL: ApprovalNode,
    NodeType.BRANCH: BranchNode,
    NodeType.WAIT: WaitNode,
    NodeType.MERGE: MergeNode,
    NodeType.FINALIZE: FinalizeNode,
}


@dataclass(frozen=True, slots=True)
class Edge:
    source: str
    target: str
    type: EdgeType = EdgeType.SUCCESS
    condition: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "from": self.source,
            "to": self.target,
            "type": self.type.value,
        }
        if self.condition is not None:
            payload["condition"] = self.condition
        return payload


@dataclass(frozen=True, slots=True)
class Link:
    """One predecessor requirement of ``target`` on ``source``."""

    source: str
    target: str
    kind: LinkKind
    condition: str | None = None


@dataclass(frozen=True, slots=True)
class Graph:
    nodes: tuple[Node, ...]
    edges: tuple[Edge, ...]
    entry_node_id: str

    def node(self, node_id: str) -> Node:
        for candidate in self.nodes:
            if candidate.id == node_id:
                return candidate
        raise KeyError(f"unknown node: {node_id}")

    @property
    def node_ids(self) -> tuple[str, ...]:
        return tuple(node.id for node in self.nodes)

    def links(self) -> tuple[Link, ...]:
        """Every predecessor requirement: edges, ``dependsOn`` and branch targets."""
        collected: list[Link] = []
        for edge in self.edges:
            collected.append(
                Link(
                    source=edge.source,
                    target=edge.target,
                    kind=LinkKind(edge.type.value),
                    condition=edge.condition,
                )
            )
        for node in self.nodes:
            for dependency in node.depends_on:
                collected.append(Link(dependency, node.id, LinkKind.DEPENDS_ON))
            if isinstance(node, BranchNode):
                if node.true_branch is not None:
                    collected.append(Link(node.id, node.true_branch, LinkKind.BRANCH_TRUE))
                if node.false_branch is not None:
                    collected.append(Link(node.id, node.false_branch, LinkKind.BRANCH_FALSE))
        return tuple(collected)

    def incoming(self, node_id: str) -> tuple[Link, ...]:
        return tuple(link for link in self.links() if link.target == node_id)

    def has_failure_handler(self, node_id: str) -> bool:
        return any(
            edge.source == node_id and edge.type is EdgeType.FAILURE for edge in self.edges
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "entryNodeId": self.entry_node_id,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "NODE_CLASSES",
    "ApprovalNode",
    "AsyncMode",
    "AsyncSpec",
    "BaseNode",
    "BranchNode",
    "Edge",
    "EdgeType",
    "EndpointRef",
    "FinalizeFormat",
    "FinalizeNode",
    "Graph",
    "JSONScalar",
    "JSONValue",
    "Link",
    "LinkKind",
    "LlmReasonNode",
    "MergeNode",
    "MergeStrategy",
    "Node",
    "NodePolicy",
    "NodeType",
    "PaymentSpec",
    "ReasonOutputFormat",
    "ToolCallNode",
    "WaitNode",
]
