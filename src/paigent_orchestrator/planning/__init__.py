"""
paigent-orchestrator — planning plane

File: src/paigent_orchestrator/planning/__init__.py
Last updated: 2026-10-16

Purpose
- Turn a user intent into a validated workflow graph.

What should be included in this package
- Graph validation (validator, task_graph).
- Model output recovery (json_extraction) and prompts.
- The planner state machine and its I/O driver (planner).

Functional requirements
- Validation is pure and deterministic; the planner never returns an unvalidated graph.
"""

from __future__ import annotations
