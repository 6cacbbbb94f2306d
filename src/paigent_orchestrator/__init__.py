"""
paigent-orchestrator — package root

File: src/paigent_orchestrator/__init__.py
Last updated: 2026-10-16

Purpose
- Package root for the intent-driven, budget-gated workflow orchestration core.

What should be included in this file
- Version export and a minimal public API surface.
- Import boundary rules: avoid importing heavy submodules at import time.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
