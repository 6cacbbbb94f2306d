"""Run, step, tool, receipt and reservation records plus atomic-unit helpers."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from paigent_orchestrator.constants import (
    DEFAULT_ASSET,
    DEFAULT_AUTO_PAY_MAX_PER_RUN_ATOMIC,
    DEFAULT_AUTO_PAY_MAX_PER_STEP_ATOMIC,
    DEFAULT_NETWORK,
)
from paigent_orchestrator.domain.graph import Graph, JSONValue, NodeType

if TYPE_CHECKING:
    from enum import StrEnum
else:
    try:
        from enum import StrEnum
    except ImportError:

        class StrEnum(str, Enum):
            """Compatibility fallback for Python < 3.11."""


_ATOMIC_RE = re.compile(r"^\d+$")


class RunStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED_FOR_APPROVAL = "paused_for_approval"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_RUN_STATUSES


class StepStatus(StrEnum):
    PENDING = "pending"
    CLAIMED = "claimed"
    RUNNING = "running"
    REQUIRES_APPROVAL = "requires_approval"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STEP_STATUSES


_TERMINAL_RUN_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELED})
_TERMINAL_STEP_STATUSES = frozenset({StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.CANCELED})


class ActorType(StrEnum):
    SYSTEM = "system"
    USER = "user"
    WORKER = "worker"
    PLANNER = "planner"


class ReservationStatus(StrEnum):
    RESERVED = "reserved"
    COMMITTED = "committed"
    RELEASED = "released"


class ReceiptStatus(StrEnum):
    SETTLED = "settled"
    FAILED = "failed"


def parse_atomic(value: object, path: str) -> int:
    """Parse a non-negative atomic amount from an ``int`` or a decimal digit string."""
    if isinstance(value, bool):
        raise ValueError(f"{path}: expected atomic amount, got bool")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"{path}: atomic amount must be >= 0")
        return value
    if isinstance(value, str) and _ATOMIC_RE.fullmatch(value):
        return int(value)
    raise ValueError(f"{path}: expected non-negative integer string, got {value!r}")


def format_atomic(amount: int, *, decimals: int = 6) -> str:
    """Render atomic units as a fixed-point decimal string, e.g. ``1500000 -> "1.500000"``."""
    if amount < 0:
        raise ValueError("amount must be >= 0")
    whole, frac = divmod(amount, 10**decimals)
    return f"{whole}.{frac:0{decimals}d}" if decimals else str(whole)


@dataclass(frozen=True, slots=True)
class Actor:
    type: ActorType
    id: str

    @classmethod
    def system(cls) -> Actor:
        return cls(ActorType.SYSTEM, "system")

    @classmethod
    def worker(cls, worker_id: str) -> Actor:
        return cls(ActorType.WORKER, worker_id)

    @classmethod
    def user(cls, user_id: str) -> Actor:
        return cls(ActorType.USER, user_id)

    @classmethod
    def planner(cls) -> Actor:
        return cls(ActorType.PLANNER, "planner")


@dataclass(frozen=True, slots=True)
class RunBudget:
    max_atomic: int
    spent_atomic: int = 0
    reserved_atomic: int = 0
    asset: str = DEFAULT_ASSET
    network: str = DEFAULT_NETWORK

    def __post_init__(self) -> None:
        for name in ("max_atomic", "spent_atomic", "reserved_atomic"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"budget.{name}: must be a non-negative int")

    @property
    def remaining_atomic(self) -> int:
        return self.max_atomic - self.spent_atomic - self.reserved_atomic

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "asset": self.asset,
            "network": self.network,
            "maxAtomic": str(self.max_atomic),
            "spentAtomic": str(self.spent_atomic),
            "reservedAtomic": str(self.reserved_atomic),
        }


@dataclass(frozen=True, slots=True)
class AutoPayPolicy:
    enabled: bool = True
    max_per_step_atomic: int = DEFAULT_AUTO_PAY_MAX_PER_STEP_ATOMIC
    max_per_run_atomic: int = DEFAULT_AUTO_PAY_MAX_PER_RUN_ATOMIC
    tool_allowlist: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "enabled": self.enabled,
            "maxPerStepAtomic": str(self.max_per_step_atomic),
            "maxPerRunAtomic": str(self.max_per_run_atomic),
            "toolAllowlist": list(self.tool_allowlist),
        }


@dataclass(frozen=True, slots=True)
class StepError:
    code: str
    message: str
    retryable: bool = False

    def to_dict(self) -> dict[str, JSONValue]:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StepError:
        return cls(
            code=str(data.get("code", "unknown")),
            message=str(data.get("message", "")),
            retryable=bool(data.get("retryable", False)),
        )


@dataclass(frozen=True, slots=True)
class StepMetrics:
    latency_ms: int = 0
    tokens: int = 0
    cost_atomic: int = 0

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "latencyMs": self.latency_ms,
            "tokens": self.tokens,
            "costAtomic": str(self.cost_atomic),
        }


@dataclass(frozen=True, slots=True)
class Run:
    id: str
    workspace_id: str
    input: str
    graph: Graph
    budget: RunBudget
    status: RunStatus
    auto_pay: AutoPayPolicy = field(default_factory=AutoPayPolicy)
    created_by: str | None = None
    planning_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class Step:
    id: str
    run_id: str
    step_id: str
    node_type: NodeType
    status: StepStatus
    attempt: int = 0
    inputs: dict[str, JSONValue] | None = None
    outputs: dict[str, JSONValue] | None = None
    error: StepError | None = None
    metrics: StepMetrics | None = None
    next_eligible_at: datetime | None = None
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    approved: bool = False
    started_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ToolEndpoint:
    path: str
    method: str = "GET"
    description: str = ""

    def to_dict(self) -> dict[str, JSONValue]:
        return {"path": self.path, "method": self.method, "description": self.description}


@dataclass(frozen=True, slots=True)
class PricingHints:
    typical_amount_atomic: int | None = None
    asset: str = DEFAULT_ASSET
    network: str = DEFAULT_NETWORK

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "typicalAmountAtomic": (
                None if self.typical_amount_atomic is None else str(self.typical_amount_atomic)
            ),
            "asset": self.asset,
            "network": self.network,
        }


@dataclass(frozen=True, slots=True)
class Tool:
    """Catalog record for an external, optionally paid, HTTP tool."""

    id: str
    workspace_id: str
    name: str
    base_url: str
    description: str = ""
    endpoints: tuple[ToolEndpoint, ...] = ()
    pricing: PricingHints = field(default_factory=PricingHints)

    def endpoint_for(self, path: str | None) -> ToolEndpoint | None:
        if path is None:
            return self.endpoints[0] if self.endpoints else None
        for endpoint in self.endpoints:
            if endpoint.path == path:
                return endpoint
        return None


@dataclass(frozen=True, slots=True)
class PaymentReceipt:
    id: str
    run_id: str
    step_id: str
    tool_id: str
    amount_atomic: int
    status: ReceiptStatus
    tx_hash: str | None = None
    asset: str = DEFAULT_ASSET
    network: str = DEFAULT_NETWORK
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class Reservation:
    id: str
    run_id: str
    step_id: str
    amount_atomic: int
    status: ReservationStatus
    actual_atomic: int | None = None


__all__ = [
    "Actor",
    "ActorType",
    "AutoPayPolicy",
    "PaymentReceipt",
    "PricingHints",
    "ReceiptStatus",
    "Reservation",
    "ReservationStatus",
    "Run",
    "RunBudget",
    "RunStatus",
    "Step",
    "StepError",
    "StepMetrics",
    "StepStatus",
    "Tool",
    "ToolEndpoint",
    "format_atomic",
    "parse_atomic",
]
