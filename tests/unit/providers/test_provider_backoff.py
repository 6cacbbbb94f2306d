"""
Unit tests for the shared provider error taxonomy and bounded backoff.

Coverage:
- Deterministic error messages and retryability per subclass.
- Backoff growth, cap, jitter bounds and config validation.
"""

from __future__ import annotations

import pytest

from paigent_orchestrator.providers.base import (
    BackoffConfig,
    GenerationResult,
    ProviderError,
    ProviderRateLimitError,
    ProviderResponseError,
    ProviderServiceError,
    ProviderTimeoutError,
    compute_backoff_delay,
    is_retryable_error,
)


def test_compute_backoff_delay_grows_caps_and_jitters() -> None:
    random_values = iter((0.0, 1.0, 0.5))

    def random_fn() -> float:
        return next(random_values)

    config = BackoffConfig(initial_delay_seconds=0.5, multiplier=2.0, max_delay_seconds=4.0, jitter_ratio=0.5)

    assert compute_backoff_delay(retry_number=1, config=config, random_fn=random_fn) == pytest.approx(0.25)
    assert compute_backoff_delay(retry_number=2, config=config, random_fn=random_fn) == pytest.approx(1.5)
    assert compute_backoff_delay(retry_number=6, config=config, random_fn=random_fn) == pytest.approx(4.0)


def test_compute_backoff_delay_without_jitter_never_samples() -> None:
    def random_fn() -> float:
        raise AssertionError("random_fn must not be called without jitter")

    config = BackoffConfig(initial_delay_seconds=1.0, multiplier=3.0, max_delay_seconds=5.0, jitter_ratio=0.0)

    delays = [compute_backoff_delay(retry_number=n, config=config, random_fn=random_fn) for n in (1, 2, 3)]
    assert delays == [1.0, 3.0, 5.0]


def test_compute_backoff_delay_rejects_bad_inputs() -> None:
    config = BackoffConfig()
    with pytest.raises(ValueError, match="retry_number must be > 0"):
        compute_backoff_delay(retry_number=0, config=config)
    with pytest.raises(ValueError, match=r"random_fn must return values in \[0.0, 1.0\]"):
        compute_backoff_delay(retry_number=1, config=config, random_fn=lambda: 1.5)


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"initial_delay_seconds": -1.0}, "initial_delay_seconds must be >= 0"),
        ({"multiplier": 0.5}, r"multiplier must be >= 1.0"),
        ({"initial_delay_seconds": 10.0, "max_delay_seconds": 1.0}, "initial_delay_seconds must be <= max_delay_seconds"),
        ({"jitter_ratio": -0.1}, r"jitter_ratio must be between 0.0 and 1.0"),
    ],
)
def test_backoff_config_validation(kwargs: dict[str, float], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        BackoffConfig(**kwargs)


def test_provider_error_message_is_deterministic() -> None:
    error = ProviderError(
        provider=" llm ",
        code="service",
        detail="  upstream\n  exploded  ",
        retryable=False,
        http_status=502,
    )

    assert str(error) == "provider=llm code=service retryable=false http_status=502 detail=upstream exploded"
    assert ProviderError(provider="p", code="c", detail="   ", retryable=True).detail == "no detail"
    with pytest.raises(ValueError, match="provider and code must be non-empty"):
        ProviderError(provider="", code="c", detail="x", retryable=False)


@pytest.mark.parametrize(
    ("error", "code", "retryable", "http_status"),
    [
        (ProviderRateLimitError("slow down"), "rate_limit", True, 429),
        (ProviderTimeoutError("timed out"), "timeout", True, None),
        (ProviderServiceError("bad gateway", http_status=502), "service", True, 502),
        (ProviderServiceError("maintenance", retryable=False), "service", False, None),
        (ProviderResponseError("not json"), "response_invalid", False, None),
    ],
)
def test_provider_error_subclasses(
    error: ProviderError, code: str, retryable: bool, http_status: int | None
) -> None:
    assert error.provider == "provider"
    assert error.code == code
    assert error.retryable is retryable
    assert error.http_status == http_status
    assert str(error).startswith(f"provider=provider code={code} retryable={str(retryable).lower()}")
    assert is_retryable_error(error) is retryable


def test_non_provider_errors_are_not_retryable() -> None:
    assert is_retryable_error(RuntimeError("boom")) is False
    assert is_retryable_error(TimeoutError()) is False


def test_generation_result_validation() -> None:
    assert GenerationResult("ok").tokens == 0
    with pytest.raises(ValueError, match="tokens and latency_ms must be >= 0"):
        GenerationResult("ok", tokens=-1)
