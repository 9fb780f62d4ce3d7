"""Task state machine: the only code that mutates a task record."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field

from stepgate.engine.checkpoints import CheckpointManager, status_after_rollback
from stepgate.engine.errors import IllegalTransition, NoRunnableStep, TaskAborted
from stepgate.engine.lifecycle import ensure_transition, is_terminal
from stepgate.engine.models import (
    SATISFIED_STEP_STATUSES,
    AwaitingQualityGate,
    CriterionResult,
    Decision,
    DecisionKind,
    FailureClass,
    NextAction,
    OutcomeResult,
    QualityGateResult,
    RetryAction,
    StepAction,
    StepState,
    StepStatus,
    TaskComplete,
    TaskHalted,
    TaskState,
    TaskStatus,
    Verdict,
    first_failure,
)
from stepgate.engine.plan import Plan, Step
from stepgate.engine.retry import RetryPolicy, fix_hints_for, render_halt_summary
from stepgate.engine.validation import ValidationRunner
from stepgate.storage.common import utc_now
from stepgate.storage.journal import DecisionJournal
from stepgate.storage.state_store import TaskStateStore

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StepOutcome:
    """Outcome the caller reports after performing a step."""

    step_id: str
    result: OutcomeResult
    evidence: str | None = None


@dataclass(slots=True)
class _PendingEvent:
    event_type: str
    status_from: TaskStatus | None = None
    status_to: TaskStatus | None = None
    step_id: str | None = None
    details: dict[str, object] = field(default_factory=dict)


class TaskStateMachine:
    """Advance a task one decision at a time.

    Each call works on a copy of the record, persists it before returning
    (write-ahead), then appends the decision to the journal.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStateStore,
        runner: ValidationRunner,
        checkpoints: CheckpointManager,
        retry_policy: RetryPolicy | None = None,
        journal: DecisionJournal | None = None,
        gate_block_status: TaskStatus = TaskStatus.AWAITING_QUALITY_GATE,
    ) -> None:
        if gate_block_status not in {TaskStatus.AWAITING_QUALITY_GATE, TaskStatus.FAILED}:
            raise ValueError("gate_block_status must be AWAITING_QUALITY_GATE or FAILED")
        self.store = store
        self.runner = runner
        self.checkpoints = checkpoints
        self.retry_policy = retry_policy or RetryPolicy()
        self.journal = journal
        self.gate_block_status = gate_block_status

    def start(self, state: TaskState, plan: Plan) -> TaskState:
        """Persist a fresh record and walk it from INITIALIZING to READY_TO_BUILD."""

        working = copy.deepcopy(state)
        events = [
            _PendingEvent(
                event_type="created",
                status_to=working.status,
                details={
                    "plan_id": plan.plan_id,
                    "steps": [step.step_id for step in plan.steps],
                    "warnings": list(plan.warnings),
                },
            ),
        ]
        self._transition(working, TaskStatus.PLANNING, events)
        self._transition(working, TaskStatus.READY_TO_BUILD, events)
        self._commit(working, events)
        return working

    def advance(
        self,
        state: TaskState,
        plan: Plan,
        outcome: StepOutcome | None = None,
    ) -> tuple[NextAction | Decision, TaskState]:
        """Issue the next step, or apply a reported outcome."""

        working = copy.deepcopy(state)
        if outcome is None:
            return self._issue_next(working, plan), working
        return self._apply_outcome(working, plan, outcome), working

    def apply_quality_gate(self, state: TaskState, result: QualityGateResult) -> TaskState:
        if state.status != TaskStatus.AWAITING_QUALITY_GATE:
            raise IllegalTransition(
                f"Task {state.task_id} is {state.status.value}; quality gate not expected",
            )
        working = copy.deepcopy(state)
        working.quality_gate = result
        events = [
            _PendingEvent(
                event_type="quality_gate",
                details={
                    "verdict": result.verdict.value,
                    "blocking_checks": result.blocking_checks,
                    "failed_optional_checks": result.failed_optional_checks,
                },
            ),
        ]
        if result.verdict == Verdict.BLOCK:
            summary = "Quality gate blocked by required checks: " + ", ".join(
                result.blocking_checks,
            )
            if self.gate_block_status == TaskStatus.FAILED:
                working.halt_summary = summary
                self._transition(working, TaskStatus.FAILED, events)
        else:
            self._transition(working, TaskStatus.COMPLETE, events)
        self._commit(working, events)
        return working

    def rollback(self, state: TaskState, plan: Plan, checkpoint_name: str) -> TaskState:
        if state.status == TaskStatus.ABORTED:
            raise TaskAborted(state.task_id)
        rewound = self.checkpoints.rollback(state, plan, checkpoint_name)
        target = status_after_rollback(rewound)
        ensure_transition(state.status, target, rollback=True)
        events = [
            _PendingEvent(
                event_type="rolled_back",
                status_from=state.status,
                status_to=target,
                details={
                    "checkpoint": checkpoint_name,
                    "reset_steps": _reset_step_ids(state, rewound),
                },
            ),
        ]
        rewound.status = target
        logger.info("Task %s rolled back to checkpoint %s", state.task_id, checkpoint_name)
        self._commit(rewound, events)
        return rewound

    def abort(self, state: TaskState, reason: str) -> TaskState:
        if state.status == TaskStatus.ABORTED:
            raise TaskAborted(state.task_id)
        working = copy.deepcopy(state)
        events = [_PendingEvent(event_type="aborted", details={"reason": reason})]
        working.abort_reason = reason
        self._transition(working, TaskStatus.ABORTED, events)
        self._commit(working, events)
        return working

    def _issue_next(self, state: TaskState, plan: Plan) -> NextAction:
        status = state.status
        if status == TaskStatus.ABORTED:
            raise TaskAborted(state.task_id)
        if status == TaskStatus.COMPLETE:
            verdict = state.quality_gate.verdict if state.quality_gate else None
            return TaskComplete(task_id=state.task_id, verdict=verdict)
        if status in {TaskStatus.HALTED, TaskStatus.FAILED}:
            return TaskHalted(
                task_id=state.task_id,
                status=status,
                summary=state.halt_summary or f"Task {state.task_id} is {status.value}.",
            )
        if status == TaskStatus.AWAITING_QUALITY_GATE:
            return AwaitingQualityGate(task_id=state.task_id)
        if status not in {TaskStatus.READY_TO_BUILD, TaskStatus.BUILDING}:
            raise IllegalTransition(f"Task {state.task_id} is {status.value}; not ready to build")

        in_progress = state.in_progress_step()
        if in_progress is not None:
            step = plan.step(in_progress.step_id)
            return _step_action(state, step, in_progress, self._hints(step, in_progress))

        events: list[_PendingEvent] = []
        runnable = _first_runnable(state, plan)
        if runnable is None:
            if state.all_steps_terminal():
                self._transition(state, TaskStatus.AWAITING_QUALITY_GATE, events)
                self._commit(state, events)
                return AwaitingQualityGate(task_id=state.task_id)
            blocked = [
                step_state.step_id
                for step_state in state.steps
                if step_state.status == StepStatus.PENDING
            ]
            raise NoRunnableStep(task_id=state.task_id, blocked_steps=blocked)

        if state.status == TaskStatus.READY_TO_BUILD:
            self._transition(state, TaskStatus.BUILDING, events)
        runnable.status = StepStatus.IN_PROGRESS
        runnable.attempts = 1
        runnable.last_results = []
        runnable.started_at = utc_now()
        runnable.finished_at = None
        state.current_step = runnable.step_id
        events.append(
            _PendingEvent(
                event_type="step_started",
                step_id=runnable.step_id,
                details={"attempt": 1, "max_attempts": runnable.max_attempts},
            ),
        )
        self._commit(state, events)
        return _step_action(state, plan.step(runnable.step_id), runnable, ())

    def _apply_outcome(self, state: TaskState, plan: Plan, outcome: StepOutcome) -> Decision:
        if state.status == TaskStatus.ABORTED:
            raise TaskAborted(state.task_id)
        if state.status != TaskStatus.BUILDING:
            raise IllegalTransition(
                f"Task {state.task_id} is {state.status.value}; no step outcome expected",
            )
        step_state = state.in_progress_step()
        if step_state is None or step_state.step_id != outcome.step_id:
            active = step_state.step_id if step_state is not None else "none"
            raise IllegalTransition(
                f"Step {outcome.step_id} is not in progress for task {state.task_id} "
                f"(in progress: {active})",
            )

        step = plan.step(step_state.step_id)
        events: list[_PendingEvent] = []
        results = self._validate(step, outcome, events)
        step_state.last_results = results

        if first_failure(results) is None:
            results = self._verify_checkpoints(state, plan, step, events)
            if not results:
                return self._succeed(state, step_state, events)
            step_state.last_results = results
        return self._fail(state, step, step_state, results, events)

    def _validate(
        self,
        step: Step,
        outcome: StepOutcome,
        events: list[_PendingEvent],
    ) -> list[CriterionResult]:
        if outcome.result == OutcomeResult.FAILED:
            return [
                CriterionResult(
                    criterion_id="reported",
                    description="caller reported the action as failed",
                    passed=False,
                    observed=outcome.evidence or "action failed",
                    expected="action completed",
                    failure_class=FailureClass.REPORTED_FAILURE,
                ),
            ]
        if not step.criteria:
            events.append(_PendingEvent(event_type="no_criteria", step_id=step.step_id))
        return self.runner.evaluate(step, outcome.evidence)

    def _verify_checkpoints(
        self,
        state: TaskState,
        plan: Plan,
        step: Step,
        events: list[_PendingEvent],
    ) -> list[CriterionResult]:
        """Run checkpoints anchored on ``step``; return results of a failed mandatory one."""

        for spec in plan.checkpoints_after(step.step_id):
            if self.checkpoints.try_checkpoint(state, plan, spec):
                events.append(
                    _PendingEvent(
                        event_type="checkpoint_reached",
                        step_id=step.step_id,
                        details={"checkpoint": spec.name},
                    ),
                )
                continue
            failure = state.failed_checkpoints[-1]
            events.append(
                _PendingEvent(
                    event_type="checkpoint_failed",
                    step_id=step.step_id,
                    details={
                        "checkpoint": spec.name,
                        "mandatory": failure.mandatory,
                        "results": [result.to_dict() for result in failure.results],
                    },
                ),
            )
            if failure.mandatory:
                return failure.results
        return []

    def _succeed(
        self,
        state: TaskState,
        step_state: StepState,
        events: list[_PendingEvent],
    ) -> Decision:
        step_state.status = StepStatus.SUCCESS
        step_state.finished_at = utc_now()
        state.current_step = None
        events.append(
            _PendingEvent(
                event_type="step_succeeded",
                step_id=step_state.step_id,
                details={
                    "attempt": step_state.attempts,
                    "results": [result.to_dict() for result in step_state.last_results],
                },
            ),
        )
        self._after_step_terminal(state, events)
        self._commit(state, events)
        return Decision(
            kind=DecisionKind.CONTINUE,
            task_id=state.task_id,
            step_id=step_state.step_id,
            attempt=step_state.attempts,
            max_attempts=step_state.max_attempts,
            task_status=state.status,
            results=list(step_state.last_results),
        )

    def _fail(  # noqa: PLR0913
        self,
        state: TaskState,
        step: Step,
        step_state: StepState,
        results: list[CriterionResult],
        events: list[_PendingEvent],
    ) -> Decision:
        attempt = step_state.attempts
        retry = self.retry_policy.decide(step, attempt, results)
        failed = first_failure(results)
        details: dict[str, object] = {
            "attempt": attempt,
            "max_attempts": step_state.max_attempts,
            "failed_criterion": failed.to_dict() if failed is not None else None,
        }
        if failed is not None and failed.classification is not None:
            details["classification"] = failed.classification

        summary: str | None = None
        if retry.action == RetryAction.RETRY:
            kind = DecisionKind.RETRY
            step_state.attempts = retry.next_attempt or attempt + 1
            details["next_attempt"] = step_state.attempts
            events.append(_PendingEvent("step_retry", step_id=step.step_id, details=details))
        elif retry.action == RetryAction.ESCALATE_SKIP:
            kind = DecisionKind.SKIPPED
            step_state.status = StepStatus.SKIPPED
            step_state.finished_at = utc_now()
            state.current_step = None
            events.append(_PendingEvent("step_skipped", step_id=step.step_id, details=details))
            logger.warning("Step %s skipped after %d attempts", step.step_id, attempt)
            self._after_step_terminal(state, events)
        else:
            kind = DecisionKind.HALTED
            step_state.status = StepStatus.FAILED
            step_state.finished_at = utc_now()
            summary = render_halt_summary(step, attempt, results, retry.fix_hints)
            state.halt_summary = summary
            events.append(_PendingEvent("step_failed", step_id=step.step_id, details=details))
            self._transition(state, TaskStatus.HALTED, events)
            logger.error("Task %s halted on step %s", state.task_id, step.step_id)

        self._commit(state, events)
        return Decision(
            kind=kind,
            task_id=state.task_id,
            step_id=step.step_id,
            attempt=attempt,
            max_attempts=step_state.max_attempts,
            task_status=state.status,
            fix_hints=retry.fix_hints,
            results=list(results),
            summary=summary,
        )

    def _after_step_terminal(self, state: TaskState, events: list[_PendingEvent]) -> None:
        if state.all_steps_terminal():
            self._transition(state, TaskStatus.AWAITING_QUALITY_GATE, events)

    def _hints(self, step: Step, step_state: StepState) -> tuple[str, ...]:
        if step_state.attempts <= 1:
            return ()
        return fix_hints_for(step, step_state.last_results)

    def _transition(
        self,
        state: TaskState,
        target: TaskStatus,
        events: list[_PendingEvent],
    ) -> None:
        ensure_transition(state.status, target)
        events.append(
            _PendingEvent(
                event_type="status_changed",
                status_from=state.status,
                status_to=target,
                step_id=state.current_step,
            ),
        )
        logger.info("Task %s: %s -> %s", state.task_id, state.status.value, target.value)
        state.status = target

    def _commit(self, state: TaskState, events: list[_PendingEvent]) -> None:
        state.updated_at = utc_now()
        self.store.save(state)
        if self.journal is not None:
            for event in events:
                self.journal.record(
                    task_id=state.task_id,
                    event_type=event.event_type,
                    status_from=event.status_from,
                    status_to=event.status_to,
                    step_id=event.step_id,
                    details=event.details,
                )
        if is_terminal(state.status):
            self.store.archive(state.task_id)


def _first_runnable(state: TaskState, plan: Plan) -> StepState | None:
    satisfied = {
        step_state.step_id
        for step_state in state.steps
        if step_state.status in SATISFIED_STEP_STATUSES
    }
    for step_state in state.steps:
        if step_state.status != StepStatus.PENDING:
            continue
        step = plan.step(step_state.step_id)
        if all(dependency in satisfied for dependency in step.depends_on):
            return step_state
    return None


def _step_action(
    state: TaskState,
    step: Step,
    step_state: StepState,
    fix_hints: tuple[str, ...],
) -> StepAction:
    return StepAction(
        task_id=state.task_id,
        step_id=step.step_id,
        name=step.name,
        action=step.action,
        attempt=step_state.attempts,
        max_attempts=step_state.max_attempts,
        fix_hints=fix_hints,
        criteria=tuple(criterion.description for criterion in step.criteria),
    )


def _reset_step_ids(before: TaskState, after: TaskState) -> list[str]:
    return [
        new.step_id
        for old, new in zip(before.steps, after.steps, strict=True)
        if old.status != new.status or old.attempts != new.attempts
    ]
