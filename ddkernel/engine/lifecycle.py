"""Session lifecycle state machine.

    STARTING ──> READY ──> TERMINATING ──> TERMINATED
        │                      ^
        └──────────────────────┘  (startup failure or early shutdown)

Only READY accepts new executions. Submits that arrive while
STARTING wait for readiness. Moves not listed below are rejected
with ValueError.
"""
from __future__ import annotations

from .models import SessionState

VALID_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.STARTING: frozenset({SessionState.READY, SessionState.TERMINATING}),
    SessionState.READY: frozenset({SessionState.TERMINATING}),
    SessionState.TERMINATING: frozenset({SessionState.TERMINATED}),
    SessionState.TERMINATED: frozenset(),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in VALID_TRANSITIONS[current]


def is_terminal(state: SessionState) -> bool:
    return not VALID_TRANSITIONS[state]


def validate_transition(current: SessionState, target: SessionState) -> None:
    if can_transition(current, target):
        return
    if is_terminal(current):
        raise ValueError(
            f"Session state {current.value} is terminal; cannot move to {target.value}"
        )
    options = ", ".join(sorted(s.value for s in VALID_TRANSITIONS[current]))
    raise ValueError(
        f"Invalid session transition {current.value} -> {target.value} "
        f"(expected one of: {options})"
    )
