"""Collaborator protocols (LLM, catalog, payments, tool invocation, polling) and provider errors."""

from __future__ import annotations

from paigent_orchestrator.providers.base import (
    BackoffConfig,
    GenerationResult,
    PaymentClient,
    PaymentConfirmation,
    ProviderError,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderServiceError,
    ProviderTimeoutError,
    StatusPoller,
    TextGenerator,
    ToolCatalog,
    ToolInvoker,
    compute_backoff_delay,
    is_retryable_error,
)

__all__ = [
    "BackoffConfig",
    "GenerationResult",
    "PaymentClient",
    "PaymentConfirmation",
    "ProviderError",
    "ProviderRateLimitError",
    "ProviderResponseError",
    "ProviderServiceError",
    "ProviderTimeoutError",
    "StatusPoller",
    "TextGenerator",
    "ToolCatalog",
    "ToolInvoker",
    "compute_backoff_delay",
    "is_retryable_error",
]
