"""
paigent-orchestrator — planner prompts

File: src/paigent_orchestrator/planning/prompts.py
Last updated: 2026-10-16

Purpose
- System, user and retry prompts for the workflow planner.

What should be included in this file
- The static system prompt documenting the graph schema, node types, rules and one example.
- Strict-undefined Jinja rendering for the user and retry prompts.

Functional requirements
- Must render deterministically for the same inputs.
- The retry prompt must embed the previous raw output and the literal validation error.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Final

from jinja2 import Environment, StrictUndefined

from paigent_orchestrator.constants import ATOMIC_UNITS_PER_ASSET
from paigent_orchestrator.domain.models import Tool

PLANNER_SYSTEM_PROMPT: Final[str] = """\
You are the workflow planner for an orchestration engine. Convert the user's intent into a
workflow graph that the engine can execute step by step.

## Output format
Respond with ONE JSON object and nothing else:
{
  "nodes": [
    {
      "id": "unique_node_id",
      "type": "tool_call" | "llm_reason" | "approval" | "branch" | "wait" | "merge" | "finalize",
      "label": "What this step does",
      "dependsOn": ["node_id"],
      "policy": {"requiresApproval": false, "maxRetries": 3, "timeoutMs": 30000}
    }
  ],
  "edges": [
    {"from": "node_id", "to": "node_id", "type": "success" | "failure" | "conditional", "condition": "expr"}
  ],
  "entryNodeId": "first_node_id"
}
"dependsOn" and "policy" are optional. "condition" is only used on conditional edges.

## Node types
### tool_call
Calls an external HTTP tool, possibly paying for it.
- toolId (REQUIRED): the id of a tool from the Available Tools list. A tool_call without a valid toolId fails.
- endpoint: {"path": "/api/...", "method": "GET" | "POST" | ...}
- requestTemplate: JSON object; "{{node_id.field}}" placeholders are filled from earlier outputs.
- payment: {"allowed": true, "maxAtomic": "<integer amount in atomic units>"}

### llm_reason
Analysis, summarization, critique or decisions done by a language model.
- systemPrompt, userPromptTemplate, outputFormat: "text" | "json"

### approval
Pauses the workflow until a human approves. Place one before costly or irreversible actions.
- message, contextKeys

### branch
Chooses a path from earlier outputs.
- condition (REQUIRED), trueBranch, falseBranch (node ids)

### wait
Polls a status URL until a field reaches a value.
- statusUrl, maxWaitMs, pollIntervalMs, completionField, completionValue

### merge
Joins branches. mergeStrategy: "all" | "any" | "first"

### finalize
Produces the deliverable. outputFormat: "text" | "json" | "markdown" | "html"; outputTemplate

## Rules
1. The graph must be a DAG. No cycles.
2. Every node must be reachable from entryNodeId.
3. Use tool_call only for external API operations.
4. Every tool_call MUST carry a "toolId" copied from the Available Tools list.
5. Use llm_reason for analysis and decisions.
6. Put an approval node before any action costing more than $1 or that cannot be undone.
7. Edge types: "success" follows a succeeded node, "failure" follows a failed node (error handling),
   "conditional" follows when its condition holds.
8. There is exactly one entry node and it has no incoming edges.
9. Finish with a finalize node.
10. Use as few tool calls as the intent allows.
11. Stay within the budget.
12. If no available tool fits, do NOT invent a tool_call. Use llm_reason to explain what is missing.

## Example
Intent "Summarize the top 3 news articles about AI" with tool NewsSearch (id: "tool-news"):
{
  "nodes": [
    {"id": "search", "type": "tool_call", "label": "Search for AI news articles",
     "toolId": "tool-news", "endpoint": {"path": "/search", "method": "POST"},
     "requestTemplate": {"query": "AI news", "limit": 5},
     "payment": {"allowed": true, "maxAtomic": "1000000"}},
    {"id": "summarize", "type": "llm_reason", "label": "Summarize each article",
     "dependsOn": ["search"], "systemPrompt": "You are a news summarizer. Be concise.",
     "outputFormat": "json"},
    {"id": "final", "type": "finalize", "label": "Format final output",
     "dependsOn": ["summarize"], "outputFormat": "markdown"}
  ],
  "edges": [
    {"from": "search", "to": "summarize", "type": "success"},
    {"from": "summarize", "to": "final", "type": "success"}
  ],
  "entryNodeId": "search"
}

Output ONLY the JSON object."""

_USER_TEMPLATE: Final[str] = """\
## User Intent
"{{ intent }}"

## Available Tools
{% if tools -%}
{% for tool in tools -%}
- {{ tool.name }} (id: {{ tool.id }}): {{ tool.description }}
{%- if tool.endpoints %}
  Endpoints:
{%- for endpoint in tool.endpoints %}
    - {{ endpoint.method }} {{ endpoint.path }}{% if endpoint.description %}: {{ endpoint.description }}{% endif %}
{%- endfor %}
{%- endif %}
{%- if tool.cost %}
  Typical cost: ~${{ tool.cost }} USDC
{%- endif %}
{%- if not loop.last %}

{% endif %}
{%- endfor %}
{%- else -%}
No external tools available. Use llm_reason nodes for all operations.
{%- endif %}

## Budget Constraints
- Maximum budget: ${{ budget }} USDC
- Auto-pay enabled: {{ "Yes (within limits)" if auto_pay else "No (manual approval required for payments)" }}

## Instructions
Create a workflow graph that accomplishes the intent. Consider:
1. Which tools are needed and in what order
2. Which steps need human approval
3. How failures are handled
4. How the final output is formatted

Output the workflow graph JSON:"""

_RETRY_TEMPLATE: Final[str] = """\
Your previous output was not valid JSON or failed schema validation.

Previous output:
{{ previous_output }}

Validation error:
{{ validation_error }}

Fix the JSON and answer again. Checklist:
1. Output ONLY valid JSON
2. No text before or after the JSON
3. All required fields are present (every tool_call has a toolId)
4. Node ids are unique
5. Every edge and dependsOn reference names an existing node
6. entryNodeId names an existing node with no incoming edges

Corrected JSON:"""

_ENVIRONMENT: Final[Environment] = Environment(
    undefined=StrictUndefined,
    autoescape=False,
    newline_sequence="\n",
    keep_trailing_newline=False,
)


def build_user_prompt(
    intent: str,
    available_tools: Sequence[Tool],
    *,
    max_budget_atomic: int,
    auto_pay_enabled: bool = True,
) -> str:
    tools = [
        {
            "id": tool.id,
            "name": tool.name,
            "description": tool.description,
            "endpoints": [endpoint.to_dict() for endpoint in tool.endpoints],
            "cost": (
                None
                if not tool.pricing.typical_amount_atomic
                else _usd(tool.pricing.typical_amount_atomic, places=4)
            ),
        }
        for tool in available_tools
    ]
    return _ENVIRONMENT.from_string(_USER_TEMPLATE).render(
        intent=intent,
        tools=tools,
        budget=_usd(max_budget_atomic, places=2),
        auto_pay=auto_pay_enabled,
    )


def build_retry_prompt(previous_output: str, validation_error: str) -> str:
    return _ENVIRONMENT.from_string(_RETRY_TEMPLATE).render(
        previous_output=previous_output,
        validation_error=validation_error,
    )


def _usd(amount_atomic: int, *, places: int) -> str:
    # Integer rounding keeps the display exact for any amount size.
    scale = 10**places
    rounded = (amount_atomic * scale * 2 + ATOMIC_UNITS_PER_ASSET) // (2 * ATOMIC_UNITS_PER_ASSET)
    whole, frac = divmod(rounded, scale)
    return f"{whole}.{frac:0{places}d}"


__all__ = ["PLANNER_SYSTEM_PROMPT", "build_retry_prompt", "build_user_prompt"]
