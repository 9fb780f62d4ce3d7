"""Task status legality table."""

from __future__ import annotations

from stepgate.engine.errors import IllegalTransition
from stepgate.engine.models import TaskStatus

TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETE, TaskStatus.FAILED, TaskStatus.ABORTED})

_FORWARD: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.INITIALIZING: frozenset({TaskStatus.PLANNING}),
    TaskStatus.PLANNING: frozenset({TaskStatus.READY_TO_BUILD, TaskStatus.BUILDING}),
    TaskStatus.READY_TO_BUILD: frozenset({TaskStatus.BUILDING}),
    TaskStatus.BUILDING: frozenset({TaskStatus.AWAITING_QUALITY_GATE}),
    TaskStatus.AWAITING_QUALITY_GATE: frozenset({TaskStatus.COMPLETE, TaskStatus.FAILED}),
    TaskStatus.HALTED: frozenset(),
    TaskStatus.COMPLETE: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.ABORTED: frozenset(),
}

# Rollback rewinds work; only a checkpoint restore may take these edges.
_ROLLBACK: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.BUILDING: frozenset({TaskStatus.BUILDING}),
    TaskStatus.AWAITING_QUALITY_GATE: frozenset(
        {TaskStatus.BUILDING, TaskStatus.AWAITING_QUALITY_GATE},
    ),
    TaskStatus.HALTED: frozenset({TaskStatus.BUILDING, TaskStatus.AWAITING_QUALITY_GATE}),
}


def is_terminal(status: TaskStatus) -> bool:
    return status in TERMINAL_STATUSES


def allowed_targets(status: TaskStatus) -> frozenset[TaskStatus]:
    """Statuses reachable from ``status`` through normal progress."""

    targets = set(_FORWARD[status])
    if not is_terminal(status):
        targets.update({TaskStatus.HALTED, TaskStatus.ABORTED})
    targets.discard(status)
    return frozenset(targets)


def can_transition(current: TaskStatus, target: TaskStatus, *, rollback: bool = False) -> bool:
    if rollback:
        return target in _ROLLBACK.get(current, frozenset())
    return target in allowed_targets(current)


def ensure_transition(current: TaskStatus, target: TaskStatus, *, rollback: bool = False) -> None:
    """Raise ``IllegalTransition`` unless the legality table allows the move."""

    if not can_transition(current, target, rollback=rollback):
        kind = "rollback" if rollback else "transition"
        raise IllegalTransition(f"Illegal {kind}: {current.value} -> {target.value}")
