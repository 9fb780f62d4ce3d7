"""Context snapshots that let a caller resume a task after losing its working memory."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from stepgate.engine.errors import StateCorrupted, TaskNotFound
from stepgate.engine.lifecycle import is_terminal
from stepgate.engine.models import (
    RecoverySnapshot,
    ResumableContext,
    ResumeCandidate,
    TaskState,
    TaskStatus,
)
from stepgate.storage.common import load_json, write_json_atomic
from stepgate.storage.state_store import TaskStateStore

logger = logging.getLogger(__name__)


class RecoveryProtocol:
    """Build, persist and re-render recovery snapshots."""

    def __init__(self, store: TaskStateStore) -> None:
        self.store = store

    def snapshot(self, state: TaskState) -> RecoverySnapshot:
        """Project the task record; time comes from the record, never the clock."""

        return RecoverySnapshot(
            task_id=state.task_id,
            goal=state.goal,
            status=state.status,
            current_step=_current_step(state),
            total_steps=len(state.steps),
            completed_steps=tuple(state.completed_step_ids()),
            last_activity=state.updated_at,
        )

    def save(self, snapshot: RecoverySnapshot) -> None:
        write_json_atomic(self.store.recovery_path(snapshot.task_id), snapshot.to_dict())

    def has_snapshot(self, task_id: str) -> bool:
        return self.store.recovery_path(task_id).exists()

    def load(self, task_id: str) -> RecoverySnapshot:
        path = self.store.recovery_path(task_id)
        if not path.exists():
            raise TaskNotFound(task_id)
        try:
            return RecoverySnapshot.from_dict(load_json(path))
        except (KeyError, TypeError, ValueError) as error:
            raise StateCorrupted(f"Cannot read recovery snapshot {path}: {error}") from error

    def restore(self, snapshot: RecoverySnapshot) -> ResumableContext:
        next_hint = _next_hint(snapshot)
        return ResumableContext(
            snapshot=snapshot,
            next_hint=next_hint,
            text=render_context(snapshot, next_hint),
        )

    def resume_candidates(self, states: Iterable[TaskState]) -> list[ResumeCandidate]:
        """Non-terminal tasks, most recent activity first."""

        candidates = [
            ResumeCandidate(
                task_id=state.task_id,
                goal=state.goal,
                status=state.status,
                current_step=_current_step(state),
                total_steps=len(state.steps),
                completed_steps=len(state.completed_step_ids()),
                last_activity=state.updated_at,
            )
            for state in states
            if not is_terminal(state.status)
        ]
        candidates.sort(
            key=lambda candidate: (candidate.last_activity, candidate.task_id),
            reverse=True,
        )
        return candidates

    def offer(self, states: Iterable[TaskState]) -> ResumeCandidate | None:
        candidates = self.resume_candidates(states)
        if not candidates:
            return None
        logger.info("Offering task %s for resumption", candidates[0].task_id)
        return candidates[0]


def render_context(snapshot: RecoverySnapshot, next_hint: str) -> str:
    """Plain-text block a caller re-injects into its working context."""

    completed = ", ".join(snapshot.completed_steps) if snapshot.completed_steps else "none"
    lines = [
        "=== CONTEXT RECOVERY ===",
        f"Task: {snapshot.task_id}",
        f"Goal: {snapshot.goal}",
        f"Status: {snapshot.status.value}",
        f"Progress: {len(snapshot.completed_steps)}/{snapshot.total_steps} steps completed",
        f"Completed steps: {completed}",
        f"Current step: {snapshot.current_step or 'none'}",
        f"Last activity: {snapshot.last_activity.isoformat()}",
        f"Next: {next_hint}",
        "=== END CONTEXT RECOVERY ===",
    ]
    return "\n".join(lines)


def _current_step(state: TaskState) -> str | None:
    in_progress = state.in_progress_step()
    if in_progress is not None:
        return in_progress.step_id
    return state.current_step


def _next_hint(snapshot: RecoverySnapshot) -> str:
    if snapshot.status == TaskStatus.AWAITING_QUALITY_GATE:
        return "Run the quality gate."
    if snapshot.status == TaskStatus.HALTED:
        return "Manual intervention required: fix the failure, then roll back or abort."
    if snapshot.status in {TaskStatus.COMPLETE, TaskStatus.FAILED, TaskStatus.ABORTED}:
        return "Task is finished; nothing to resume."
    if snapshot.current_step:
        return f"Continue with step {snapshot.current_step}."
    return "Request the next step."

