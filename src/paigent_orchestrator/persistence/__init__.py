"""
paigent-orchestrator — persistence layer

File: src/paigent_orchestrator/persistence/__init__.py
Last updated: 2026-10-16

Purpose
- State DB access, migrations and typed repositories.

Functional requirements
- Must support concurrent workers through conditional writes and safe resume after crash.

Non-functional requirements
- SQLite-first; no server database dependency.
"""

from paigent_orchestrator.persistence.repositories import (
    ReceiptRepo,
    ReservationRepo,
    RunRepo,
    StepRepo,
    ToolRepo,
    WorkspaceRepo,
)
from paigent_orchestrator.persistence.state_db import (
    StateDB,
    StateDBBusyError,
    StateDBCorruptionError,
    StateDBError,
    StateDBMigrationError,
)

__all__ = [
    "ReceiptRepo",
    "ReservationRepo",
    "RunRepo",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "StepRepo",
    "ToolRepo",
    "WorkspaceRepo",
]
