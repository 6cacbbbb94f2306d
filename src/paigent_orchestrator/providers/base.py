"""
paigent-orchestrator — collaborator contracts and shared provider utilities

File: src/paigent_orchestrator/providers/base.py
Last updated: 2026-10-16

Purpose
- Protocols for every external collaborator of the orchestration core: text generation,
  tool catalog, payments, tool invocation and status polling.

What should be included in this file
- Request/response value types exchanged with collaborators.
- Provider error taxonomy and retryability classification.
- Bounded exponential backoff policy shared by the planner and the claim queue.

Functional requirements
- Collaborators raise ProviderError subclasses (or PaymentError) and never return partial results.

Non-functional requirements
- Adding a new collaborator implementation must not touch core logic.
"""

from __future__ import annotations

import random as random_module
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, TypeAlias, runtime_checkable

if TYPE_CHECKING:
    from paigent_orchestrator.domain.models import Tool, ToolEndpoint

JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

RandomFn: TypeAlias = Callable[[], float]


@dataclass(frozen=True, slots=True)
class GenerationResult:
    text: str
    tokens: int = 0
    latency_ms: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.text, str):
            raise ValueError("text must be a string")
        if self.tokens < 0 or self.latency_ms < 0:
            raise ValueError("tokens and latency_ms must be >= 0")


@dataclass(frozen=True, slots=True)
class PaymentConfirmation:
    """What a settled payment reports back."""

    amount_atomic: int
    tx_hash: str | None = None
    network: str | None = None
    asset: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.amount_atomic, bool) or not isinstance(self.amount_atomic, int):
            raise ValueError("amount_atomic must be an int")
        if self.amount_atomic < 0:
            raise ValueError("amount_atomic must be >= 0")


@runtime_checkable
class TextGenerator(Protocol):
    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        max_tokens: int,
        temperature: float,
    ) -> GenerationResult: ...


@runtime_checkable
class ToolCatalog(Protocol):
    def list_tools(self, workspace_id: str) -> Sequence[Tool]: ...

    def get_tool(self, tool_id: str) -> Tool | None: ...


@runtime_checkable
class PaymentClient(Protocol):
    def pay(self, tool: Tool, endpoint: ToolEndpoint | None, amount_atomic: int) -> PaymentConfirmation:
        """Settle ``amount_atomic``; raise ``PaymentError`` on failure."""
        ...


@runtime_checkable
class ToolInvoker(Protocol):
    def invoke(
        self,
        tool: Tool,
        endpoint: ToolEndpoint | None,
        payload: Mapping[str, JSONValue],
    ) -> Mapping[str, JSONValue]: ...


@runtime_checkable
class StatusPoller(Protocol):
    def poll(self, url: str) -> Mapping[str, JSONValue]: ...


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------


def _normalize_detail(detail: object) -> str:
    text = " ".join(str(detail).split())
    return text or "no detail"


class ProviderError(RuntimeError):
    """Base normalized provider error with deterministic machine-readable fields."""

    def __init__(
        self,
        *,
        provider: str,
        code: str,
        detail: str,
        retryable: bool,
        http_status: int | None = None,
    ) -> None:
        if not provider.strip() or not code.strip():
            raise ValueError("provider and code must be non-empty")
        self.provider = provider.strip()
        self.code = code.strip()
        self.detail = _normalize_detail(detail)
        self.retryable = bool(retryable)
        self.http_status = http_status

        parts = [f"provider={self.provider}", f"code={self.code}", f"retryable={str(self.retryable).lower()}"]
        if http_status is not None:
            parts.append(f"http_status={http_status}")
        parts.append(f"detail={self.detail}")
        super().__init__(" ".join(parts))


class ProviderRateLimitError(ProviderError):
    """Rate-limited (retryable)."""

    def __init__(self, detail: str, *, provider: str = "provider", http_status: int | None = 429) -> None:
        super().__init__(provider=provider, code="rate_limit", detail=detail, retryable=True, http_status=http_status)


class ProviderTimeoutError(ProviderError):
    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="timeout", detail=detail, retryable=True)


class ProviderServiceError(ProviderError):
    def __init__(
        self,
        detail: str,
        *,
        provider: str = "provider",
        retryable: bool = True,
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            provider=provider,
            code="service",
            detail=detail,
            retryable=retryable,
            http_status=http_status,
        )


class ProviderResponseError(ProviderError):
    """The collaborator answered but the answer could not be used."""

    def __init__(self, detail: str, *, provider: str = "provider") -> None:
        super().__init__(provider=provider, code="response_invalid", detail=detail, retryable=False)


def is_retryable_error(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BackoffConfig:
    """Bounded exponential backoff policy."""

    initial_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 60.0
    jitter_ratio: float = 0.1

    def __post_init__(self) -> None:
        if self.initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.max_delay_seconds < self.initial_delay_seconds:
            raise ValueError("initial_delay_seconds must be <= max_delay_seconds")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")


def compute_backoff_delay(
    *,
    retry_number: int,
    config: BackoffConfig,
    random_fn: RandomFn = random_module.random,
) -> float:
    """Delay in seconds before retry N (1-based): ``min(initial * multiplier**(N-1), max)`` with jitter."""
    if retry_number <= 0:
        raise ValueError("retry_number must be > 0")

    bounded = min(
        config.initial_delay_seconds * (config.multiplier ** (retry_number - 1)),
        config.max_delay_seconds,
    )
    if config.jitter_ratio == 0.0:
        return bounded

    sample = random_fn()
    if not (0.0 <= sample <= 1.0):
        raise ValueError("random_fn must return values in [0.0, 1.0]")
    jitter = ((sample * 2.0) - 1.0) * bounded * config.jitter_ratio
    return max(0.0, min(config.max_delay_seconds, bounded + jitter))


__all__ = [
    "BackoffConfig",
    "GenerationResult",
    "JSONScalar",
    "JSONValue",
    "PaymentClient",
    "PaymentConfirmation",
    "ProviderError",
    "ProviderRateLimitError",
    "ProviderResponseError",
    "ProviderServiceError",
    "ProviderTimeoutError",
    "RandomFn",
    "StatusPoller",
    "TextGenerator",
    "ToolCatalog",
    "ToolInvoker",
    "compute_backoff_delay",
    "is_retryable_error",
]
