"""Engine facade: the external interface used by callers and the CLI."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from stepgate.config import Settings
from stepgate.engine.checkpoints import CheckpointManager
from stepgate.engine.errors import (
    IllegalTransition,
    InvalidPlan,
    StateCorrupted,
    TaskAborted,
    TaskAlreadyExists,
)
from stepgate.engine.models import (
    Decision,
    NextAction,
    OutcomeResult,
    QualityGateResult,
    RecoverySnapshot,
    ResumableContext,
    ResumeCandidate,
    StepState,
    TaskEventView,
    TaskState,
    TaskStatus,
)
from stepgate.engine.plan import Plan, parse_plan, plan_to_dict, validate_plan
from stepgate.engine.quality_gate import QualityGate
from stepgate.engine.recovery import RecoveryProtocol
from stepgate.engine.retry import RetryPolicy
from stepgate.engine.state_machine import StepOutcome, TaskStateMachine
from stepgate.engine.validation import ValidationRunner
from stepgate.storage.common import utc_now
from stepgate.storage.journal import DecisionJournal
from stepgate.storage.state_store import TaskStateStore

logger = logging.getLogger(__name__)

_TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class StepEngine:
    """Coordinates plan intake, step issuing, validation and recovery for tasks."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStateStore,
        journal: DecisionJournal | None = None,
        workdir: Path | None = None,
        command_timeout_seconds: int = 120,
        output_preview_chars: int = 240,
        gate_block_status: TaskStatus = TaskStatus.AWAITING_QUALITY_GATE,
        mandatory_checkpoints: bool = False,
        default_max_attempts: int = 3,
    ) -> None:
        self.store = store
        self.journal = journal
        self.default_max_attempts = default_max_attempts
        self.runner = ValidationRunner(
            workdir=workdir or Path.cwd(),
            timeout_seconds=command_timeout_seconds,
            preview_chars=output_preview_chars,
        )
        self.machine = TaskStateMachine(
            store=store,
            runner=self.runner,
            checkpoints=CheckpointManager(
                self.runner,
                mandatory_by_default=mandatory_checkpoints,
            ),
            retry_policy=RetryPolicy(),
            journal=journal,
            gate_block_status=gate_block_status,
        )
        self.quality_gate = QualityGate(self.runner)
        self.recovery = RecoveryProtocol(store)

    @classmethod
    def from_settings(cls, settings: Settings, *, workdir: Path | None = None) -> StepEngine:
        """Build an engine with file storage and a migrated journal."""

        settings.validate()
        journal = DecisionJournal(
            settings.storage.journal_path,
            busy_timeout_ms=settings.storage.sqlite_busy_timeout_ms,
        )
        journal.init_schema()
        return cls(
            store=TaskStateStore(settings.storage.home),
            journal=journal,
            workdir=workdir,
            command_timeout_seconds=settings.validation.command_timeout_seconds,
            output_preview_chars=settings.validation.output_preview_chars,
            gate_block_status=(
                TaskStatus.FAILED
                if settings.policy.gate_block_status == "failed"
                else TaskStatus.AWAITING_QUALITY_GATE
            ),
            mandatory_checkpoints=settings.policy.mandatory_checkpoints,
            default_max_attempts=settings.policy.default_max_attempts,
        )

    def close(self) -> None:
        if self.journal is not None:
            self.journal.close()

    def create_task(self, plan: Plan | dict[str, Any], task_id: str | None = None) -> str:
        """Validate the plan and create a task record; nothing is written for an invalid plan."""

        if isinstance(plan, Plan):
            errors, _ = validate_plan(plan)
            if errors:
                raise InvalidPlan(errors)
        else:
            plan = parse_plan(plan, default_max_attempts=self.default_max_attempts)

        resolved_id = task_id or _new_task_id()
        if not _TASK_ID_PATTERN.match(resolved_id):
            raise ValueError(f"Invalid task id: {resolved_id!r}")
        if self.store.exists(resolved_id):
            raise TaskAlreadyExists(resolved_id)

        for warning in plan.warnings:
            logger.warning("Plan %s: %s", plan.plan_id, warning)

        now = utc_now()
        state = TaskState(
            task_id=resolved_id,
            plan_id=plan.plan_id,
            goal=plan.goal,
            status=TaskStatus.INITIALIZING,
            steps=[
                StepState(step_id=step.step_id, max_attempts=step.retry.max_attempts)
                for step in plan.steps
            ],
            created_at=now,
            updated_at=now,
        )
        self.store.save_plan(resolved_id, plan_to_dict(plan))
        self.machine.start(state, plan)
        logger.info("Created task %s for plan %s", resolved_id, plan.plan_id)
        return resolved_id

    def next_step(self, task_id: str) -> NextAction:
        state = self.store.load(task_id)
        action, _ = self.machine.advance(state, self.load_plan(task_id))
        return action  # type: ignore[return-value]

    def report_outcome(
        self,
        task_id: str,
        step_id: str,
        result: OutcomeResult | str,
        evidence: str | None = None,
    ) -> Decision:
        """Validate the reported step and return the engine decision."""

        state = self.store.load(task_id)
        outcome = StepOutcome(step_id=step_id, result=OutcomeResult(result), evidence=evidence)
        decision, _ = self.machine.advance(state, self.load_plan(task_id), outcome)
        return decision  # type: ignore[return-value]

    def run_quality_gate(self, task_id: str) -> QualityGateResult:
        """Adjudicate a finished task; a COMPLETE task returns its stored result."""

        state = self.store.load(task_id)
        if state.status == TaskStatus.COMPLETE and state.quality_gate is not None:
            return state.quality_gate
        if state.status == TaskStatus.ABORTED:
            raise TaskAborted(task_id)
        if state.status != TaskStatus.AWAITING_QUALITY_GATE:
            raise IllegalTransition(
                f"Task {task_id} is {state.status.value}; quality gate not expected",
            )
        result = self.quality_gate.run(self.load_plan(task_id).quality_gate)
        self.machine.apply_quality_gate(state, result)
        return result

    def resume_list(self) -> list[ResumeCandidate]:
        return self.recovery.resume_candidates(self.store.list_states())

    def offer_resume(self) -> ResumeCandidate | None:
        """Most recently active unfinished task; acting on it is the caller's choice."""

        return self.recovery.offer(self.store.list_states())

    def rollback(self, task_id: str, checkpoint_name: str) -> TaskState:
        state = self.store.load(task_id)
        return self.machine.rollback(state, self.load_plan(task_id), checkpoint_name)

    def abort(self, task_id: str, reason: str = "aborted by caller") -> TaskState:
        return self.machine.abort(self.store.load(task_id), reason)

    def get_state(self, task_id: str) -> TaskState:
        return self.store.load(task_id)

    def list_tasks(self, *, include_archived: bool = True) -> list[TaskState]:
        return self.store.list_states(include_archived=include_archived)

    def snapshot(self, task_id: str) -> RecoverySnapshot:
        """Write ``recovery.json`` for the task and return it."""

        snapshot = self.recovery.snapshot(self.store.load(task_id))
        self.recovery.save(snapshot)
        if self.journal is not None:
            self.journal.record(
                task_id=task_id,
                event_type="snapshot_saved",
                status_from=snapshot.status,
                status_to=snapshot.status,
                step_id=snapshot.current_step,
                details={"completed_steps": list(snapshot.completed_steps)},
            )
        return snapshot

    def restore(self, task_id: str) -> ResumableContext:
        """Rebuild the re-injection context from the saved snapshot.

        A missing snapshot, or one older than the task record, is rebuilt and
        saved first.
        """

        state = self.store.load(task_id)
        snapshot = self.recovery.load(task_id) if self.recovery.has_snapshot(task_id) else None
        if snapshot is None or snapshot.last_activity < state.updated_at:
            snapshot = self.snapshot(task_id)
        return self.recovery.restore(snapshot)

    def history(self, task_id: str) -> list[TaskEventView]:
        self.store.load(task_id)
        if self.journal is None:
            return []
        return self.journal.list_events(task_id)

    def load_plan(self, task_id: str) -> Plan:
        try:
            return parse_plan(
                self.store.load_plan(task_id),
                default_max_attempts=self.default_max_attempts,
            )
        except InvalidPlan as error:
            raise StateCorrupted(f"Stored plan for task {task_id} is invalid: {error}") from error


def _new_task_id() -> str:
    stamp = datetime.now(tz=UTC).strftime("%Y%m%d_%H%M%S")
    return f"task_{stamp}_{uuid4().hex[:6]}"
