"""
paigent-orchestrator — run transition table enforcement

File: tests/integration/test_run_transition_table.py
Last updated: 2026-10-16

Purpose
- Every run transition outside the legal table is refused without touching the row
  or the event log.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from paigent_orchestrator.control_plane import LEGAL_RUN_TRANSITIONS
from paigent_orchestrator.domain.errors import IllegalTransition, TransitionConflict
from paigent_orchestrator.domain.models import Actor, RunStatus

from . import make_orchestrator, start_run

if TYPE_CHECKING:
    from pathlib import Path

_GRAPH = {
    "nodes": [{"id": "only", "type": "finalize", "label": "Only step"}],
    "edges": [],
    "entryNodeId": "only",
}

_ILLEGAL_PAIRS = [
    (current, requested)
    for current in RunStatus
    for requested in RunStatus
    if requested not in LEGAL_RUN_TRANSITIONS[current]
]


@pytest.mark.parametrize(
    ("current", "requested"),
    _ILLEGAL_PAIRS,
    ids=[f"{current.value}->{requested.value}" for current, requested in _ILLEGAL_PAIRS],
)
def test_illegal_run_transition_is_rejected(
    tmp_path: Path,
    current: RunStatus,
    requested: RunStatus,
) -> None:
    orchestrator = make_orchestrator(tmp_path)
    run = start_run(orchestrator, _GRAPH)
    orchestrator.db.execute("UPDATE runs SET status = ? WHERE id = ?", (current.value, run.id))
    events_before = len(orchestrator.events(run.id))

    with pytest.raises(IllegalTransition, match=f"illegal run transition: {current.value} -> {requested.value}"):
        orchestrator.state.transition_run(run.id, requested, actor=Actor.system())

    assert orchestrator.get_run(run.id).status is current
    assert len(orchestrator.events(run.id)) == events_before


def test_terminal_statuses_have_no_exits() -> None:
    for status in RunStatus:
        assert bool(LEGAL_RUN_TRANSITIONS[status]) is not status.is_terminal


def test_stale_expected_status_is_a_conflict(tmp_path: Path) -> None:
    orchestrator = make_orchestrator(tmp_path)
    run = start_run(orchestrator, _GRAPH)

    with pytest.raises(TransitionConflict):
        orchestrator.state.transition_run(
            run.id,
            RunStatus.RUNNING,
            actor=Actor.system(),
            expected=RunStatus.PAUSED_FOR_APPROVAL,
        )
    assert orchestrator.get_run(run.id).status is RunStatus.RUNNING


def test_cancel_of_terminal_run_is_illegal(tmp_path: Path) -> None:
    orchestrator = make_orchestrator(tmp_path)
    run = start_run(orchestrator, _GRAPH)
    orchestrator.run_worker("w-1")
    assert orchestrator.get_run(run.id).status is RunStatus.SUCCEEDED

    with pytest.raises(IllegalTransition):
        orchestrator.cancel_run(run.id, user_id="user-1")
