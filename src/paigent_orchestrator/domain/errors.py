"""Orchestration error taxonomy.

Every error carries a machine-readable ``code``, a human ``detail`` and a
``retryable`` flag. Components recover these at the boundary that detects them
and convert them into a step or run status plus an event whose ``data.error``
holds ``{code, message}``.
"""

from __future__ import annotations

from collections.abc import Sequence


def _normalize_detail(detail: object) -> str:
    text = " ".join(str(detail).split())
    return text or "no detail"


class OrchestrationError(RuntimeError):
    """Base orchestration error with deterministic machine-readable fields."""

    def __init__(self, detail: str, *, code: str, retryable: bool = False) -> None:
        self.code = code
        self.detail = _normalize_detail(detail)
        self.retryable = bool(retryable)
        super().__init__(self.detail)

    def to_dict(self) -> dict[str, object]:
        return {"code": self.code, "message": self.detail, "retryable": self.retryable}


class GraphValidationError(OrchestrationError, ValueError):
    """Raised when a candidate workflow graph fails validation."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = tuple(errors)
        super().__init__("; ".join(self.errors) or "invalid graph", code="graph_invalid")


class PlanningExhausted(OrchestrationError):
    def __init__(self, detail: str, *, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(detail, code="planning_exhausted")


class ClaimConflict(OrchestrationError):
    """Another worker claimed the step first. Losers move on."""

    def __init__(self, run_id: str, step_id: str) -> None:
        self.run_id = run_id
        self.step_id = step_id
        super().__init__(
            f"step {step_id!r} of run {run_id!r} was claimed by another worker",
            code="claim_conflict",
            retryable=True,
        )


class TransitionConflict(OrchestrationError):
    """A conditional status write changed zero rows."""

    def __init__(self, entity: str, entity_id: str, expected: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.expected = expected
        super().__init__(
            f"{entity} {entity_id!r} is no longer {expected!r}",
            code="transition_conflict",
            retryable=True,
        )


class IllegalTransition(OrchestrationError, ValueError):
    def __init__(self, entity: str, current: str, requested: str) -> None:
        self.entity = entity
        self.current = current
        self.requested = requested
        super().__init__(
            f"illegal {entity} transition: {current} -> {requested}",
            code="illegal_transition",
        )


class LeaseLost(OrchestrationError):
    """The worker no longer holds a live lease on the step; its result must not be written."""

    def __init__(self, run_id: str, step_id: str, worker_id: str) -> None:
        self.run_id = run_id
        self.step_id = step_id
        self.worker_id = worker_id
        super().__init__(
            f"worker {worker_id!r} no longer holds the lease on step {step_id!r} of run {run_id!r}",
            code="lease_lost",
        )


class BudgetExceeded(OrchestrationError):
    """Spend would breach the run's immutable ceiling."""

    def __init__(self, *, run_id: str, requested: int, projected: int, max_atomic: int) -> None:
        self.run_id = run_id
        self.requested = requested
        self.projected = projected
        self.max_atomic = max_atomic
        super().__init__(
            f"Would exceed budget: {projected} > {max_atomic}",
            code="budget_exceeded",
        )


class TransientStepError(OrchestrationError):
    def __init__(self, detail: str, *, code: str = "transient") -> None:
        super().__init__(detail, code=code, retryable=True)


class FatalStepError(OrchestrationError):
    def __init__(self, detail: str, *, code: str = "fatal") -> None:
        super().__init__(detail, code=code, retryable=False)


class PaymentError(TransientStepError):
    """Raised by payment collaborators when a payment cannot be settled."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail, code="payment_failed")


class ApprovalRequired(OrchestrationError):
    """Internal signal: the step must wait for an external approval."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason, code="approval_required")


class StepDeferred(OrchestrationError):
    """Internal signal: the step is not finished yet and should be re-polled later."""

    def __init__(self, detail: str, *, delay_ms: int, outputs: dict[str, object] | None = None) -> None:
        self.delay_ms = delay_ms
        self.outputs = dict(outputs or {})
        super().__init__(detail, code="deferred", retryable=True)


__all__ = [
    "ApprovalRequired",
    "BudgetExceeded",
    "ClaimConflict",
    "FatalStepError",
    "GraphValidationError",
    "IllegalTransition",
    "LeaseLost",
    "OrchestrationError",
    "PaymentError",
    "PlanningExhausted",
    "StepDeferred",
    "TransientStepError",
    "TransitionConflict",
]
