"""Control-plane public API."""

from paigent_orchestrator.control_plane.budgets import (
    AutoPayDecision,
    BudgetLedger,
    check_auto_pay,
    is_tool_allowlisted,
)
from paigent_orchestrator.control_plane.claim_queue import ClaimQueue, ExecutionSettings
from paigent_orchestrator.control_plane.controller import Orchestrator
from paigent_orchestrator.control_plane.executor import ReasoningSettings, StepExecutor, StepOutcome
from paigent_orchestrator.control_plane.run_state import (
    LEGAL_RUN_TRANSITIONS,
    LEGAL_STEP_TRANSITIONS,
    Requirement,
    RunStateMachine,
    validate_run_transition,
    validate_step_transition,
)

__all__ = [
    "LEGAL_RUN_TRANSITIONS",
    "LEGAL_STEP_TRANSITIONS",
    "AutoPayDecision",
    "BudgetLedger",
    "ClaimQueue",
    "ExecutionSettings",
    "Orchestrator",
    "ReasoningSettings",
    "Requirement",
    "RunStateMachine",
    "StepExecutor",
    "StepOutcome",
    "check_auto_pay",
    "is_tool_allowlisted",
    "validate_run_transition",
    "validate_step_transition",
]
