"""
paigent-orchestrator — domain layer

File: src/paigent_orchestrator/domain/__init__.py
Last updated: 2026-10-16

Purpose
- Pure data types shared by every plane: workflow graphs, runs, steps, tools,
  receipts, reservations, identifiers and the orchestration error taxonomy.

Functional requirements
- No I/O and no persistence imports; everything here is constructible in tests.
"""

from __future__ import annotations

from paigent_orchestrator.domain import errors, graph, ids, models

__all__ = ["errors", "graph", "ids", "models"]
