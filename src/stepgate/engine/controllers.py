"""Controllers for stepgate CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from stepgate.config import Settings
from stepgate.engine.models import (
    AwaitingQualityGate,
    Decision,
    DecisionKind,
    NextAction,
    QualityGateResult,
    StepAction,
    TaskComplete,
    TaskState,
    Verdict,
    first_failure,
)
from stepgate.engine.plan import read_plan
from stepgate.engine.service import StepEngine


@dataclass(slots=True)
class CreateTaskCommand:
    """CLI input for task creation."""

    home: Path | None
    plan_path: Path
    task_id: str | None


@dataclass(slots=True)
class TaskCommand:
    """CLI input for commands addressing one task."""

    home: Path | None
    task_id: str


@dataclass(slots=True)
class ReportOutcomeCommand:
    """CLI input for reporting a step outcome."""

    home: Path | None
    task_id: str
    step_id: str
    result: str
    evidence: str | None


@dataclass(slots=True)
class RollbackCommand:
    home: Path | None
    task_id: str
    checkpoint: str


@dataclass(slots=True)
class AbortCommand:
    home: Path | None
    task_id: str
    reason: str


@dataclass(slots=True)
class ListTasksCommand:
    home: Path | None
    include_archived: bool


@dataclass(slots=True)
class CommandResult:
    """Rendered lines plus whether the command's verdict is a success."""

    lines: list[str]
    success: bool


class StepgateCliController:
    """Coordinates task lifecycle, validation and recovery CLI operations."""

    def create(self, command: CreateTaskCommand) -> list[str]:
        settings = Settings.from_env(home=command.home)
        plan = read_plan(
            command.plan_path,
            default_max_attempts=settings.policy.default_max_attempts,
        )
        with _engine(settings) as engine:
            task_id = engine.create_task(plan, task_id=command.task_id)
            state = engine.get_state(task_id)

        lines = [
            f"Task created: task_id={task_id} plan={plan.plan_id} status={state.status.value}",
            f"Steps: {len(plan.steps)} checkpoints={len(plan.checkpoints)} "
            f"quality_checks={len(plan.quality_gate.checks)}",
        ]
        lines.extend(f"Warning: {warning}" for warning in plan.warnings)
        return lines

    def next_step(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(home=command.home)
        with _engine(settings) as engine:
            action = engine.next_step(command.task_id)
        return render_next_action(action)

    def report(self, command: ReportOutcomeCommand) -> CommandResult:
        settings = Settings.from_env(home=command.home)
        with _engine(settings) as engine:
            decision = engine.report_outcome(
                command.task_id,
                command.step_id,
                command.result,
                command.evidence,
            )
        return CommandResult(
            lines=render_decision(decision),
            success=decision.kind != DecisionKind.HALTED,
        )

    def gate(self, command: TaskCommand) -> CommandResult:
        settings = Settings.from_env(home=command.home)
        with _engine(settings) as engine:
            result = engine.run_quality_gate(command.task_id)
            state = engine.get_state(command.task_id)
        lines = render_quality_gate(result)
        lines.append(f"Task status: {state.status.value}")
        return CommandResult(lines=lines, success=result.verdict != Verdict.BLOCK)

    def rollback(self, command: RollbackCommand) -> list[str]:
        settings = Settings.from_env(home=command.home)
        with _engine(settings) as engine:
            state = engine.rollback(command.task_id, command.checkpoint)
        return [
            f"Rolled back: task_id={state.task_id} checkpoint={command.checkpoint} "
            f"status={state.status.value}",
            f"Next step: {state.current_step or '-'}",
        ]

    def abort(self, command: AbortCommand) -> list[str]:
        settings = Settings.from_env(home=command.home)
        with _engine(settings) as engine:
            state = engine.abort(command.task_id, command.reason)
        return [f"Task aborted: {state.task_id} reason={command.reason}"]

    def status(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(home=command.home)
        with _engine(settings) as engine:
            state = engine.get_state(command.task_id)
        return render_state(state)

    def history(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(home=command.home)
        with _engine(settings) as engine:
            events = engine.history(command.task_id)
        if not events:
            return [f"No journal events for task {command.task_id}"]
        lines = [f"Events for task {command.task_id}: {len(events)}"]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'} "
                f"step={event.step_id or '-'}",
            )
        return lines

    def resume(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(home=command.home)
        with _engine(settings) as engine:
            candidates = engine.resume_list()
            offered = engine.offer_resume()
        if not candidates or offered is None:
            return ["No resumable tasks."]
        lines = [f"Resumable tasks: {len(candidates)}"]
        for candidate in candidates:
            lines.append(
                f"  {candidate.task_id} status={candidate.status.value} "
                f"progress={candidate.completed_steps}/{candidate.total_steps} "
                f"current_step={candidate.current_step or '-'} "
                f"last_activity={candidate.last_activity.isoformat()} goal={candidate.goal}",
            )
        lines.append(
            f"Offered: {offered.task_id}. Run 'stepgate restore {offered.task_id}' to resume, "
            f"'stepgate abort {offered.task_id}' to drop it, or create a new task.",
        )
        return lines

    def snapshot(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(home=command.home)
        with _engine(settings) as engine:
            snapshot = engine.snapshot(command.task_id)
            path = engine.store.recovery_path(command.task_id)
        return [
            f"Snapshot saved: task_id={snapshot.task_id} status={snapshot.status.value} "
            f"progress={len(snapshot.completed_steps)}/{snapshot.total_steps}",
            f"Path: {path}",
        ]

    def restore(self, command: TaskCommand) -> list[str]:
        settings = Settings.from_env(home=command.home)
        with _engine(settings) as engine:
            context = engine.restore(command.task_id)
        return context.text.splitlines()

    def tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(home=command.home)
        with _engine(settings) as engine:
            states = engine.list_tasks(include_archived=command.include_archived)
        if not states:
            return ["No tasks."]
        states.sort(key=lambda state: state.updated_at, reverse=True)
        return [
            f"{state.task_id} status={state.status.value} "
            f"progress={len(state.completed_step_ids())}/{len(state.steps)} "
            f"updated_at={state.updated_at.isoformat()}"
            for state in states
        ]


def render_next_action(action: NextAction) -> list[str]:
    if isinstance(action, StepAction):
        lines = [
            f"Step: {action.step_id} ({action.name}) "
            f"attempt {action.attempt}/{action.max_attempts}",
            f"Action: {action.action}",
        ]
        lines.extend(f"  criterion: {criterion}" for criterion in action.criteria)
        if action.fix_hints:
            lines.append(f"Fix hints: {'; '.join(action.fix_hints)}")
        return lines
    if isinstance(action, AwaitingQualityGate):
        return [f"All steps finished for task {action.task_id}; run the quality gate."]
    if isinstance(action, TaskComplete):
        verdict = action.verdict.value if action.verdict else "-"
        return [f"Task {action.task_id} is COMPLETE (verdict={verdict})."]
    return [f"Task {action.task_id} is {action.status.value}.", *action.summary.splitlines()]


def render_decision(decision: Decision) -> list[str]:
    lines = [
        f"Decision: {decision.kind.value} step={decision.step_id} "
        f"attempt={decision.attempt}/{decision.max_attempts} "
        f"task_status={decision.task_status.value}",
    ]
    failed = first_failure(decision.results)
    if failed is not None:
        lines.append(f"Failed criterion: {failed.criterion_id} - {failed.description}")
        lines.append(f"Expected: {failed.expected}")
        lines.append(f"Observed: {failed.observed}")
        if failed.failure_class is not None:
            lines.append(f"Failure class: {failed.failure_class.value}")
    if decision.kind == DecisionKind.RETRY and decision.fix_hints:
        lines.append(f"Fix hints: {'; '.join(decision.fix_hints)}")
    if decision.summary:
        lines.extend(decision.summary.splitlines())
    return lines


def render_quality_gate(result: QualityGateResult) -> list[str]:
    lines = [f"Verdict: {result.verdict.value}"]
    for check in result.checks:
        marker = "PASS" if check.passed else "FAIL"
        kind = "required" if check.required else "optional"
        lines.append(f"  {marker} {check.name} ({kind})")
        if not check.passed:
            lines.append(f"    expected: {check.expected}")
            lines.append(f"    observed: {check.observed}")
    if result.blocking_checks:
        lines.append(f"Blocking checks: {', '.join(result.blocking_checks)}")
    return lines


def render_state(state: TaskState) -> list[str]:
    lines = [
        f"Task: {state.task_id}",
        f"Plan: {state.plan_id}",
        f"Goal: {state.goal}",
        f"Status: {state.status.value}",
        f"Current step: {state.current_step or '-'}",
        f"Rollback target: {state.rollback_to or '-'}",
        "Checkpoints reached: "
        + (", ".join(record.name for record in state.checkpoints_reached) or "-"),
        f"Updated: {state.updated_at.isoformat()}",
    ]
    for step_state in state.steps:
        lines.append(
            f"  {step_state.step_id} {step_state.status.value} "
            f"attempts={step_state.attempts}/{step_state.max_attempts}",
        )
    if state.halt_summary:
        lines.extend(state.halt_summary.splitlines())
    if state.abort_reason:
        lines.append(f"Abort reason: {state.abort_reason}")
    return lines


@contextmanager
def _engine(settings: Settings) -> Iterator[StepEngine]:
    engine = StepEngine.from_settings(settings)
    try:
        yield engine
    finally:
        engine.close()
