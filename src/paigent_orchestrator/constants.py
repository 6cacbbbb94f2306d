"""Stable constants shared across orchestrator components."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1

# Settlement asset defaults. Amounts are integer atomic units (USDC has 6 decimals).
DEFAULT_ASSET: Final[str] = "USDC"
DEFAULT_NETWORK: Final[str] = "eip155:8453"
ATOMIC_UNITS_PER_ASSET: Final[int] = 1_000_000
DEFAULT_MAX_BUDGET_ATOMIC: Final[int] = 5_000_000
DEFAULT_AUTO_PAY_MAX_PER_STEP_ATOMIC: Final[int] = 1_000_000
DEFAULT_AUTO_PAY_MAX_PER_RUN_ATOMIC: Final[int] = 10_000_000

# Planner loop.
PLANNER_MAX_ATTEMPTS: Final[int] = 3
PLANNER_MAX_OUTPUT_TOKENS: Final[int] = 4096
PLANNER_TEMPERATURE: Final[float] = 0.7
PLANNER_RETRY_DELAY_MS: Final[int] = 1_000
DEFAULT_PLANNER_MODEL: Final[str] = "accounts/fireworks/models/llama-v3p3-70b-instruct"

# Node policy bounds.
DEFAULT_MAX_RETRIES: Final[int] = 3
MAX_RETRIES_LIMIT: Final[int] = 10
DEFAULT_TIMEOUT_MS: Final[int] = 30_000
MIN_TIMEOUT_MS: Final[int] = 1_000
MAX_TIMEOUT_MS: Final[int] = 300_000

# Step execution policy.
LEASE_TIMEOUT_MULTIPLIER: Final[int] = 2
BACKOFF_BASE_MS: Final[int] = 1_000
BACKOFF_CAP_MS: Final[int] = 60_000
BACKOFF_JITTER_RATIO: Final[float] = 0.1
CLAIM_SCAN_LIMIT: Final[int] = 50

__all__ = [
    "ATOMIC_UNITS_PER_ASSET",
    "BACKOFF_BASE_MS",
    "BACKOFF_CAP_MS",
    "BACKOFF_JITTER_RATIO",
    "CLAIM_SCAN_LIMIT",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_ASSET",
    "DEFAULT_AUTO_PAY_MAX_PER_RUN_ATOMIC",
    "DEFAULT_AUTO_PAY_MAX_PER_STEP_ATOMIC",
    "DEFAULT_MAX_BUDGET_ATOMIC",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_NETWORK",
    "DEFAULT_PLANNER_MODEL",
    "DEFAULT_TIMEOUT_MS",
    "LEASE_TIMEOUT_MULTIPLIER",
    "MAX_RETRIES_LIMIT",
    "MAX_TIMEOUT_MS",
    "MIN_TIMEOUT_MS",
    "PLANNER_MAX_ATTEMPTS",
    "PLANNER_MAX_OUTPUT_TOKENS",
    "PLANNER_RETRY_DELAY_MS",
    "PLANNER_TEMPERATURE",
    "STATE_DB_SCHEMA_VERSION",
]
