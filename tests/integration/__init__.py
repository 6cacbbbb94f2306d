"""
paigent-orchestrator — integration test helpers

File: tests/integration/__init__.py
Last updated: 2026-10-16

Purpose
- Deterministic collaborators and builders shared by the integration and smoke tests.

What should be included in this file
- A settable clock, scripted text generator, recording payment client, echo invoker, scripted poller.
- Builders for tools, an Orchestrator over a temp state DB, and started runs from graph payloads.

Functional requirements
- Must not trigger provider calls or network access.

Non-functional requirements
- Deterministic and side-effect free outside the given tmp_path.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Final

from paigent_orchestrator.control_plane import Orchestrator
from paigent_orchestrator.domain import ids
from paigent_orchestrator.domain.errors import PaymentError
from paigent_orchestrator.domain.graph import JSONValue
from paigent_orchestrator.domain.models import (
    AutoPayPolicy,
    PricingHints,
    Run,
    RunBudget,
    Tool,
    ToolEndpoint,
)
from paigent_orchestrator.planning.prompts import PLANNER_SYSTEM_PROMPT
from paigent_orchestrator.planning.validator import parse_graph
from paigent_orchestrator.providers.base import GenerationResult, PaymentConfirmation

if TYPE_CHECKING:
    from pathlib import Path

    from paigent_orchestrator.providers.base import ToolCatalog

try:
    from datetime import UTC
except ImportError:
    UTC = timezone.utc  # noqa: UP017

BASE_TS: Final[datetime] = datetime(2026, 10, 16, 9, 0, 0, tzinfo=UTC)
WORKSPACE_ID: Final[str] = "ws-test"


class FakeClock:
    def __init__(self, start: datetime = BASE_TS) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, *, ms: int = 0, seconds: float = 0.0) -> datetime:
        self.now = self.now + timedelta(milliseconds=ms, seconds=seconds)
        return self.now


class ScriptedGenerator:
    """Answers planner calls from ``plans`` in order and every other call with ``reply``."""

    def __init__(
        self,
        plans: list[str] | None = None,
        *,
        reply: str | Callable[[str], str] = "Three short headlines about AI.",
    ) -> None:
        self._plans = list(plans or [])
        self._reply = reply
        self.planner_prompts: list[str] = []
        self.reason_prompts: list[tuple[str, str]] = []

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> GenerationResult:
        del model, max_tokens, temperature
        if system_prompt == PLANNER_SYSTEM_PROMPT:
            self.planner_prompts.append(user_prompt)
            if not self._plans:
                raise AssertionError("planner called more often than scripted")
            text = self._plans.pop(0) if len(self._plans) > 1 else self._plans[0]
            return GenerationResult(text=text, tokens=100)
        self.reason_prompts.append((system_prompt, user_prompt))
        text = self._reply(user_prompt) if callable(self._reply) else self._reply
        return GenerationResult(text=text, tokens=42)


class RecordingPayments:
    def __init__(self, *, fail_with: Exception | None = None, tx_prefix: str = "0xfeed") -> None:
        self.fail_with = fail_with
        self.tx_prefix = tx_prefix
        self.calls: list[tuple[str, int]] = []

    def pay(self, tool: Tool, endpoint: ToolEndpoint | None, amount_atomic: int) -> PaymentConfirmation:
        del endpoint
        self.calls.append((tool.id, amount_atomic))
        if self.fail_with is not None:
            raise self.fail_with
        return PaymentConfirmation(
            amount_atomic=amount_atomic,
            tx_hash=f"{self.tx_prefix}{len(self.calls):04d}",
        )


class EchoInvoker:
    """Returns ``response`` (or raises ``errors`` in order first) and records payloads."""

    def __init__(
        self,
        response: Mapping[str, JSONValue] | None = None,
        *,
        errors: list[Exception] | None = None,
    ) -> None:
        self.response = dict(response or {"ok": True})
        self.errors = list(errors or [])
        self.payloads: list[dict[str, JSONValue]] = []

    def invoke(
        self,
        tool: Tool,
        endpoint: ToolEndpoint | None,
        payload: Mapping[str, JSONValue],
    ) -> Mapping[str, JSONValue]:
        del tool, endpoint
        self.payloads.append(dict(payload))
        if self.errors:
            raise self.errors.pop(0)
        return self.response


class ScriptedPoller:
    def __init__(self, statuses: list[Mapping[str, JSONValue]]) -> None:
        self._statuses = list(statuses)
        self.urls: list[str] = []

    def poll(self, url: str) -> Mapping[str, JSONValue]:
        self.urls.append(url)
        return self._statuses.pop(0) if len(self._statuses) > 1 else self._statuses[0]


def make_tool(
    *,
    name: str = "NewsSearch",
    base_url: str = "https://news.example.test",
    typical_amount_atomic: int | None = 1_000_000,
    workspace_id: str = WORKSPACE_ID,
) -> Tool:
    return Tool(
        id=ids.generate_tool_id(),
        workspace_id=workspace_id,
        name=name,
        base_url=base_url,
        description="Searches recent news articles",
        endpoints=(ToolEndpoint(path="/search", method="GET", description="Keyword search"),),
        pricing=PricingHints(typical_amount_atomic=typical_amount_atomic),
    )


def make_orchestrator(
    tmp_path: Path,
    *,
    generator: ScriptedGenerator | None = None,
    payments: RecordingPayments | None = None,
    invoker: EchoInvoker | None = None,
    poller: ScriptedPoller | None = None,
    clock: FakeClock | None = None,
    config: Mapping[str, object] | None = None,
    catalog: ToolCatalog | None = None,
    monotonic: Callable[[], float] | None = None,
) -> Orchestrator:
    overlay: dict[str, object] = {"paths": {"state_db": str(tmp_path / "state" / "paigent.sqlite")}}
    overlay.update(config or {})
    return Orchestrator(
        overlay,
        generator=generator or ScriptedGenerator(),
        payments=payments,
        invoker=invoker,
        poller=poller,
        catalog=catalog,
        clock=clock or FakeClock(),
        sleep=lambda _seconds: None,
        monotonic=monotonic or (lambda: 0.0),
        random_fn=lambda: 0.5,
    )


def start_run(
    orchestrator: Orchestrator,
    graph_payload: Mapping[str, object],
    *,
    max_atomic: int = 5_000_000,
    auto_pay: AutoPayPolicy | None = None,
    intent: str = "Summarize the top 3 AI news articles",
) -> Run:
    """Create a run from an already-validated graph and move it to ``running``."""
    run = orchestrator.state.create_run(
        workspace_id=WORKSPACE_ID,
        intent=intent,
        graph=parse_graph(graph_payload),
        budget=RunBudget(max_atomic=max_atomic),
        auto_pay=auto_pay,
        created_by="user-1",
    )
    orchestrator.state.start_run(run.id)
    return orchestrator.get_run(run.id)


def failing_payments(detail: str = "insufficient funds") -> RecordingPayments:
    return RecordingPayments(fail_with=PaymentError(detail))


__all__ = [
    "BASE_TS",
    "WORKSPACE_ID",
    "EchoInvoker",
    "FakeClock",
    "RecordingPayments",
    "ScriptedGenerator",
    "ScriptedPoller",
    "failing_payments",
    "make_orchestrator",
    "make_tool",
    "start_run",
]
