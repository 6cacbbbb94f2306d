"""Intent-to-graph planner: a generate, extract, validate, retry loop.

The loop is an explicit state machine. :func:`advance` is the pure transition
function; :class:`Planner` only performs I/O (the text-generation call and the
retry delay) between transitions.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from paigent_orchestrator.constants import (
    DEFAULT_PLANNER_MODEL,
    PLANNER_MAX_ATTEMPTS,
    PLANNER_MAX_OUTPUT_TOKENS,
    PLANNER_RETRY_DELAY_MS,
    PLANNER_TEMPERATURE,
)
from paigent_orchestrator.domain.graph import FinalizeFormat, FinalizeNode, Graph, NodePolicy, ToolCallNode
from paigent_orchestrator.planning.json_extraction import NO_JSON_FOUND, extract_json_with_repair
from paigent_orchestrator.planning.prompts import (
    PLANNER_SYSTEM_PROMPT,
    build_retry_prompt,
    build_user_prompt,
)
from paigent_orchestrator.planning.validator import validate_graph

if TYPE_CHECKING:
    from paigent_orchestrator.domain.models import Tool
    from paigent_orchestrator.providers.base import TextGenerator


# ---------------------------------------------------------------------------
# States and outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Attempting:
    attempt: int
    prompt: str
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class Succeeded:
    graph: Graph
    attempts: int


@dataclass(frozen=True, slots=True)
class Exhausted:
    error: str
    attempts: int


PlannerState = Attempting | Succeeded | Exhausted


@dataclass(frozen=True, slots=True)
class GenerationFailed:
    """The text generator raised; the prompt is reused unchanged."""

    error: str


@dataclass(frozen=True, slots=True)
class NoJson:
    raw: str


@dataclass(frozen=True, slots=True)
class Invalid:
    raw: str
    errors: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class Valid:
    graph: Graph


AttemptOutcome = GenerationFailed | NoJson | Invalid | Valid


def advance(
    state: Attempting,
    outcome: AttemptOutcome,
    *,
    max_attempts: int = PLANNER_MAX_ATTEMPTS,
) -> PlannerState:
    """Pure transition: the next planner state after ``outcome`` of ``state.attempt``."""
    if isinstance(outcome, Valid):
        return Succeeded(graph=outcome.graph, attempts=state.attempt)

    if isinstance(outcome, GenerationFailed):
        error = outcome.error
        next_prompt = state.prompt
    elif isinstance(outcome, NoJson):
        error = NO_JSON_FOUND
        next_prompt = build_retry_prompt(outcome.raw, error)
    else:
        error = "; ".join(outcome.errors) or "Schema validation failed"
        next_prompt = build_retry_prompt(outcome.raw, error)

    if state.attempt >= max_attempts:
        return Exhausted(
            error=(
                f"Failed to generate valid workflow after {max_attempts} attempts. "
                f"Last error: {error}"
            ),
            attempts=state.attempt,
        )
    return Attempting(attempt=state.attempt + 1, prompt=next_prompt, last_error=error)


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PlannerSettings:
    model: str = DEFAULT_PLANNER_MODEL
    max_attempts: int = PLANNER_MAX_ATTEMPTS
    max_output_tokens: int = PLANNER_MAX_OUTPUT_TOKENS
    temperature: float = PLANNER_TEMPERATURE
    retry_delay_ms: int = PLANNER_RETRY_DELAY_MS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.retry_delay_ms < 0:
            raise ValueError("retry_delay_ms must be >= 0")

    @classmethod
    def from_config(cls, section: Mapping[str, Any]) -> PlannerSettings:
        return cls(
            model=str(section.get("model", DEFAULT_PLANNER_MODEL)),
            max_attempts=int(section.get("max_attempts", PLANNER_MAX_ATTEMPTS)),
            max_output_tokens=int(section.get("max_output_tokens", PLANNER_MAX_OUTPUT_TOKENS)),
            temperature=float(section.get("temperature", PLANNER_TEMPERATURE)),
            retry_delay_ms=int(section.get("retry_delay_ms", PLANNER_RETRY_DELAY_MS)),
        )


@dataclass(frozen=True, slots=True)
class PlanResult:
    success: bool
    attempts: int
    latency_ms: int
    tokens: int
    graph: Graph | None = None
    error: str | None = None
    raw_response: str = ""


class Planner:
    """Compiles an intent into a validated :class:`Graph` using a text generator."""

    def __init__(
        self,
        generator: TextGenerator,
        *,
        settings: PlannerSettings | None = None,
        default_policy: NodePolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._generator = generator
        self._settings = settings or PlannerSettings()
        self._default_policy = default_policy or NodePolicy()
        self._sleep = sleep
        self._clock = clock
        self._logger = logger or structlog.get_logger(__name__)

    @property
    def settings(self) -> PlannerSettings:
        return self._settings

    def plan_workflow(
        self,
        intent: str,
        available_tools: Sequence[Tool],
        budget_max_atomic: int,
        *,
        auto_pay_enabled: bool = True,
    ) -> PlanResult:
        catalog_ids = [tool.id for tool in available_tools]
        state: PlannerState = Attempting(
            attempt=1,
            prompt=build_user_prompt(
                intent,
                available_tools,
                max_budget_atomic=budget_max_atomic,
                auto_pay_enabled=auto_pay_enabled,
            ),
        )
        latency_ms = 0
        tokens = 0
        raw_response = ""

        while isinstance(state, Attempting):
            started = self._clock()
            outcome: AttemptOutcome
            try:
                generated = self._generator.generate(
                    PLANNER_SYSTEM_PROMPT,
                    state.prompt,
                    model=self._settings.model,
                    max_tokens=self._settings.max_output_tokens,
                    temperature=self._settings.temperature,
                )
            except Exception as exc:  # noqa: BLE001
                latency_ms += int((self._clock() - started) * 1000)
                outcome = GenerationFailed(str(exc) or type(exc).__name__)
                self._logger.warning(
                    "planner_generation_failed",
                    attempt=state.attempt,
                    error=outcome.error,
                    error_type=type(exc).__name__,
                )
            else:
                latency_ms += generated.latency_ms or int((self._clock() - started) * 1000)
                tokens += generated.tokens
                raw_response = generated.text
                outcome = self._evaluate(generated.text, catalog_ids)

            next_state = advance(state, outcome, max_attempts=self._settings.max_attempts)
            if isinstance(next_state, Attempting):
                self._logger.info(
                    "planner_attempt_rejected",
                    attempt=state.attempt,
                    error=next_state.last_error,
                )
                if isinstance(outcome, GenerationFailed) and self._settings.retry_delay_ms:
                    self._sleep(self._settings.retry_delay_ms / 1000)
            state = next_state

        if isinstance(state, Succeeded):
            self._logger.info(
                "planner_succeeded",
                attempts=state.attempts,
                node_count=len(state.graph.nodes),
                tokens=tokens,
            )
            return PlanResult(
                success=True,
                graph=state.graph,
                attempts=state.attempts,
                latency_ms=latency_ms,
                tokens=tokens,
                raw_response=raw_response,
            )

        self._logger.warning("planner_exhausted", attempts=state.attempts, error=state.error)
        return PlanResult(
            success=False,
            error=state.error,
            attempts=state.attempts,
            latency_ms=latency_ms,
            tokens=tokens,
            raw_response=raw_response,
        )

    def _evaluate(self, text: str, catalog_ids: Iterable[str]) -> AttemptOutcome:
        extracted = extract_json_with_repair(text)
        if extracted is None:
            return NoJson(raw=text)
        result = validate_graph(
            extracted,
            tool_catalog=tuple(catalog_ids),
            default_policy=self._default_policy,
        )
        if not result.valid or result.data is None:
            return Invalid(raw=text, errors=result.errors)
        return Valid(graph=result.data)


# ---------------------------------------------------------------------------
# Graph helpers
# ---------------------------------------------------------------------------


def fallback_graph(intent: str, error: str) -> Graph:
    """Single-node graph explaining a planning failure."""
    template = (
        f'Failed to create a workflow plan for: "{intent}"\n\n'
        f"Error: {error}\n\n"
        "Please try rephrasing your request or contact support if the issue persists."
    )
    node = FinalizeNode(
        id="error",
        label="Planning failed",
        output_format=FinalizeFormat.TEXT,
        output_template=template,
    )
    return Graph(nodes=(node,), edges=(), entry_node_id="error")


def estimate_graph_cost(graph: Graph, tools: Iterable[Tool]) -> int:
    """Sum of typical tool prices (atomic units) over every ``tool_call`` node."""
    typical = {tool.id: tool.pricing.typical_amount_atomic or 0 for tool in tools}
    return sum(
        typical.get(node.tool_id, 0) for node in graph.nodes if isinstance(node, ToolCallNode)
    )


def graph_summary(graph: Graph) -> dict[str, object]:
    by_type: dict[str, int] = {}
    for node in graph.nodes:
        by_type[node.node_type.value] = by_type.get(node.node_type.value, 0) + 1
    return {
        "totalNodes": len(graph.nodes),
        "nodesByType": by_type,
        "hasApprovalGates": by_type.get("approval", 0) > 0,
        "hasBranching": by_type.get("branch", 0) > 0,
        "estimatedSteps": len(graph.nodes),
    }


__all__ = [
    "AttemptOutcome",
    "Attempting",
    "Exhausted",
    "GenerationFailed",
    "Invalid",
    "NoJson",
    "PlanResult",
    "Planner",
    "PlannerSettings",
    "PlannerState",
    "Succeeded",
    "Valid",
    "advance",
    "estimate_graph_cost",
    "fallback_graph",
    "graph_summary",
]
