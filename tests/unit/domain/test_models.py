"""Unit tests for atomic-unit helpers and domain records."""

from __future__ import annotations

import pytest

from paigent_orchestrator.domain.models import (
    Actor,
    ActorType,
    AutoPayPolicy,
    PricingHints,
    RunBudget,
    RunStatus,
    StepError,
    StepMetrics,
    StepStatus,
    Tool,
    ToolEndpoint,
    format_atomic,
    parse_atomic,
)


def test_parse_atomic_accepts_ints_and_digit_strings() -> None:
    assert parse_atomic(0, "x") == 0
    assert parse_atomic("5000000", "x") == 5_000_000
    assert parse_atomic("123456789012345678901234567890", "x") == 123456789012345678901234567890


@pytest.mark.parametrize(
    ("value", "message"),
    [
        (True, "expected atomic amount, got bool"),
        (-1, "atomic amount must be >= 0"),
        ("1.5", "expected non-negative integer string"),
        ("-3", "expected non-negative integer string"),
        (1.0, "expected non-negative integer string"),
        (None, "expected non-negative integer string"),
    ],
)
def test_parse_atomic_rejects_invalid_values(value: object, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        parse_atomic(value, "budget.maxAtomic")


def test_format_atomic() -> None:
    assert format_atomic(1_500_000) == "1.500000"
    assert format_atomic(7) == "0.000007"
    assert format_atomic(42, decimals=0) == "42"
    with pytest.raises(ValueError):
        format_atomic(-1)


def test_terminal_statuses() -> None:
    assert {status for status in RunStatus if status.is_terminal} == {
        RunStatus.SUCCEEDED,
        RunStatus.FAILED,
        RunStatus.CANCELED,
    }
    assert not StepStatus.REQUIRES_APPROVAL.is_terminal
    assert StepStatus.CANCELED.is_terminal


def test_actor_constructors() -> None:
    assert Actor.system() == Actor(ActorType.SYSTEM, "system")
    assert Actor.planner().type is ActorType.PLANNER
    assert Actor.worker("w-1").id == "w-1"
    assert Actor.user("u-1").type is ActorType.USER


def test_run_budget_remaining_and_serialization() -> None:
    budget = RunBudget(max_atomic=5_000_000, spent_atomic=1_000_000, reserved_atomic=250_000)
    assert budget.remaining_atomic == 3_750_000
    assert budget.to_dict() == {
        "asset": "USDC",
        "network": budget.network,
        "maxAtomic": "5000000",
        "spentAtomic": "1000000",
        "reservedAtomic": "250000",
    }
    with pytest.raises(ValueError, match="budget.max_atomic"):
        RunBudget(max_atomic=-1)
    with pytest.raises(ValueError, match="budget.spent_atomic"):
        RunBudget(max_atomic=1, spent_atomic=True)


def test_auto_pay_policy_defaults() -> None:
    policy = AutoPayPolicy()
    assert policy.enabled is True
    assert policy.to_dict() == {
        "enabled": True,
        "maxPerStepAtomic": "1000000",
        "maxPerRunAtomic": "10000000",
        "toolAllowlist": [],
    }


def test_step_error_and_metrics_dicts() -> None:
    error = StepError(code="rate_limit", message="slow down", retryable=True)
    assert StepError.from_dict(error.to_dict()) == error
    assert StepError.from_dict({}) == StepError(code="unknown", message="")
    assert StepMetrics(latency_ms=12, tokens=3, cost_atomic=500).to_dict() == {
        "latencyMs": 12,
        "tokens": 3,
        "costAtomic": "500",
    }


def test_tool_endpoint_lookup() -> None:
    tool = Tool(
        id="tool-1",
        workspace_id="ws",
        name="Weather",
        base_url="https://weather.example.test",
        endpoints=(ToolEndpoint(path="/now"), ToolEndpoint(path="/forecast", method="POST")),
        pricing=PricingHints(typical_amount_atomic=10_000),
    )
    assert tool.endpoint_for(None) == ToolEndpoint(path="/now")
    endpoint = tool.endpoint_for("/forecast")
    assert endpoint is not None
    assert endpoint.method == "POST"
    assert tool.endpoint_for("/missing") is None
    assert Tool(id="t", workspace_id="ws", name="n", base_url="u").endpoint_for(None) is None
    assert tool.pricing.to_dict()["typicalAmountAtomic"] == "10000"
