"""Domain models for task execution state and engine decisions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from stepgate.engine.errors import (
    AttemptsExhausted,
    QualityGateBlocked,
    StateCorrupted,
    ValidationFailure,
)
from stepgate.storage.common import from_iso, to_iso


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    INITIALIZING = "INITIALIZING"
    PLANNING = "PLANNING"
    READY_TO_BUILD = "READY_TO_BUILD"
    BUILDING = "BUILDING"
    AWAITING_QUALITY_GATE = "AWAITING_QUALITY_GATE"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    HALTED = "HALTED"
    ABORTED = "ABORTED"


class StepStatus(str, Enum):
    """Per-step execution states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STEP_STATUSES = frozenset({StepStatus.SUCCESS, StepStatus.FAILED, StepStatus.SKIPPED})
SATISFIED_STEP_STATUSES = frozenset({StepStatus.SUCCESS, StepStatus.SKIPPED})


class Escalation(str, Enum):
    """What happens when a step exhausts its retry budget."""

    HALT_WITH_CONTEXT = "halt_with_context"
    SKIP_IF_OPTIONAL = "skip_if_optional"


class OutcomeResult(str, Enum):
    """Outcome reported by the caller after performing a step's action."""

    COMPLETED = "completed"
    FAILED = "failed"


class DecisionKind(str, Enum):
    """Engine decision returned for a reported outcome."""

    CONTINUE = "CONTINUE"
    RETRY = "RETRY"
    SKIPPED = "SKIPPED"
    HALTED = "HALTED"


class RetryAction(str, Enum):
    """Retry policy verdict for a failed attempt."""

    RETRY = "RETRY"
    ESCALATE_HALT = "ESCALATE_HALT"
    ESCALATE_SKIP = "ESCALATE_SKIP"


class Verdict(str, Enum):
    """Quality gate verdicts."""

    STRONG = "STRONG"
    SOUND = "SOUND"
    BLOCK = "BLOCK"


class FailureClass(str, Enum):
    """Normalized failure classes attached to failed criteria."""

    REPORTED_FAILURE = "reported_failure"
    COMMAND_NOT_FOUND = "command_not_found"
    TIMEOUT = "timeout"
    MISSING_FILE = "missing_file"
    PERMISSION_DENIED = "permission_denied"
    SYNTAX_ERROR = "syntax_error"
    TEST_FAILURE = "test_failure"
    OUTPUT_MISMATCH = "output_mismatch"
    EXIT_CODE = "exit_code"


@dataclass(slots=True)
class CriterionResult:
    """One evaluated success criterion with its evidence."""

    criterion_id: str
    description: str
    passed: bool
    observed: str
    expected: str
    failure_class: FailureClass | None = None
    classification: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "criterion_id": self.criterion_id,
            "description": self.description,
            "passed": self.passed,
            "observed": self.observed,
            "expected": self.expected,
            "failure_class": self.failure_class.value if self.failure_class else None,
            "classification": self.classification,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CriterionResult:
        failure_class = raw.get("failure_class")
        return cls(
            criterion_id=str(raw["criterion_id"]),
            description=str(raw.get("description", "")),
            passed=bool(raw["passed"]),
            observed=str(raw.get("observed", "")),
            expected=str(raw.get("expected", "")),
            failure_class=FailureClass(failure_class) if failure_class else None,
            classification=raw.get("classification"),
        )


def first_failure(results: list[CriterionResult]) -> CriterionResult | None:
    """Return the failing result of a fail-fast evaluation, if any."""

    for result in results:
        if not result.passed:
            return result
    return None


@dataclass(slots=True)
class StepState:
    """Mutable execution record for one plan step."""

    step_id: str
    max_attempts: int
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    last_results: list[CriterionResult] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def reset(self) -> None:
        self.status = StepStatus.PENDING
        self.attempts = 0
        self.last_results = []
        self.started_at = None
        self.finished_at = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.step_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_results": [result.to_dict() for result in self.last_results],
            "started_at": _iso_or_none(self.started_at),
            "finished_at": _iso_or_none(self.finished_at),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> StepState:
        return cls(
            step_id=str(raw["id"]),
            max_attempts=int(raw["max_attempts"]),
            status=StepStatus(raw["status"]),
            attempts=int(raw["attempts"]),
            last_results=[CriterionResult.from_dict(item) for item in raw.get("last_results", [])],
            started_at=_datetime_or_none(raw.get("started_at")),
            finished_at=_datetime_or_none(raw.get("finished_at")),
        )


@dataclass(slots=True)
class CheckpointRecord:
    """A verified waypoint usable as a rollback target."""

    name: str
    anchor_step: str
    step_index: int
    reached_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "anchor_step": self.anchor_step,
            "step_index": self.step_index,
            "reached_at": to_iso(self.reached_at),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CheckpointRecord:
        return cls(
            name=str(raw["name"]),
            anchor_step=str(raw["anchor_step"]),
            step_index=int(raw["step_index"]),
            reached_at=from_iso(str(raw["reached_at"])),
        )


@dataclass(slots=True)
class CheckpointFailure:
    """A checkpoint whose verification failed, kept for observability."""

    name: str
    anchor_step: str
    mandatory: bool
    failed_at: datetime
    results: list[CriterionResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "anchor_step": self.anchor_step,
            "mandatory": self.mandatory,
            "failed_at": to_iso(self.failed_at),
            "results": [result.to_dict() for result in self.results],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CheckpointFailure:
        return cls(
            name=str(raw["name"]),
            anchor_step=str(raw["anchor_step"]),
            mandatory=bool(raw.get("mandatory", False)),
            failed_at=from_iso(str(raw["failed_at"])),
            results=[CriterionResult.from_dict(item) for item in raw.get("results", [])],
        )


@dataclass(slots=True)
class CheckResult:
    """Outcome of one quality-gate check."""

    name: str
    required: bool
    passed: bool
    observed: str = ""
    expected: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "required": self.required,
            "passed": self.passed,
            "observed": self.observed,
            "expected": self.expected,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CheckResult:
        return cls(
            name=str(raw["name"]),
            required=bool(raw["required"]),
            passed=bool(raw["passed"]),
            observed=str(raw.get("observed", "")),
            expected=str(raw.get("expected", "")),
        )


@dataclass(slots=True)
class QualityGateResult:
    """Final gate verdict with per-check outcomes."""

    verdict: Verdict
    checks: list[CheckResult]
    ran_at: datetime

    @property
    def blocking_checks(self) -> list[str]:
        """Names of failed required checks."""

        return [check.name for check in self.checks if check.required and not check.passed]

    @property
    def failed_optional_checks(self) -> list[str]:
        return [check.name for check in self.checks if not check.required and not check.passed]

    def raise_for_verdict(self) -> None:
        """Raise QualityGateBlocked when the verdict is BLOCK."""

        if self.verdict == Verdict.BLOCK:
            raise QualityGateBlocked(self.blocking_checks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "checks": [check.to_dict() for check in self.checks],
            "ran_at": to_iso(self.ran_at),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> QualityGateResult:
        return cls(
            verdict=Verdict(raw["verdict"]),
            checks=[CheckResult.from_dict(item) for item in raw.get("checks", [])],
            ran_at=from_iso(str(raw["ran_at"])),
        )


@dataclass(slots=True)
class TaskState:
    """Single mutable per-task record, owned and mutated only by the engine."""

    task_id: str
    plan_id: str
    goal: str
    status: TaskStatus
    steps: list[StepState]
    created_at: datetime
    updated_at: datetime
    current_step: str | None = None
    checkpoints_reached: list[CheckpointRecord] = field(default_factory=list)
    rollback_to: str | None = None
    failed_checkpoints: list[CheckpointFailure] = field(default_factory=list)
    halt_summary: str | None = None
    abort_reason: str | None = None
    quality_gate: QualityGateResult | None = None

    def step(self, step_id: str) -> StepState:
        for step_state in self.steps:
            if step_state.step_id == step_id:
                return step_state
        raise KeyError(step_id)

    def has_step(self, step_id: str) -> bool:
        return any(step_state.step_id == step_id for step_state in self.steps)

    def in_progress_step(self) -> StepState | None:
        for step_state in self.steps:
            if step_state.status == StepStatus.IN_PROGRESS:
                return step_state
        return None

    def completed_step_ids(self) -> list[str]:
        return [
            step_state.step_id
            for step_state in self.steps
            if step_state.status == StepStatus.SUCCESS
        ]

    def all_steps_terminal(self) -> bool:
        return all(step_state.status in TERMINAL_STEP_STATUSES for step_state in self.steps)

    def checkpoint(self, name: str) -> CheckpointRecord | None:
        for record in self.checkpoints_reached:
            if record.name == name:
                return record
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "plan_id": self.plan_id,
            "goal": self.goal,
            "status": self.status.value,
            "current_step": self.current_step,
            "steps": [step_state.to_dict() for step_state in self.steps],
            "checkpoints_reached": [record.to_dict() for record in self.checkpoints_reached],
            "rollback_to": self.rollback_to,
            "failed_checkpoints": [failure.to_dict() for failure in self.failed_checkpoints],
            "halt_summary": self.halt_summary,
            "abort_reason": self.abort_reason,
            "quality_gate": self.quality_gate.to_dict() if self.quality_gate else None,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TaskState:
        try:
            quality_gate = raw.get("quality_gate")
            return cls(
                task_id=str(raw["task_id"]),
                plan_id=str(raw["plan_id"]),
                goal=str(raw["goal"]),
                status=TaskStatus(raw["status"]),
                steps=[StepState.from_dict(item) for item in raw["steps"]],
                created_at=from_iso(str(raw["created_at"])),
                updated_at=from_iso(str(raw["updated_at"])),
                current_step=raw.get("current_step"),
                checkpoints_reached=[
                    CheckpointRecord.from_dict(item) for item in raw.get("checkpoints_reached", [])
                ],
                rollback_to=raw.get("rollback_to"),
                failed_checkpoints=[
                    CheckpointFailure.from_dict(item) for item in raw.get("failed_checkpoints", [])
                ],
                halt_summary=raw.get("halt_summary"),
                abort_reason=raw.get("abort_reason"),
                quality_gate=QualityGateResult.from_dict(quality_gate) if quality_gate else None,
            )
        except (KeyError, TypeError, ValueError) as error:
            raise StateCorrupted(f"Malformed task record: {error}") from error


@dataclass(slots=True)
class Decision:
    """Engine decision for one reported step outcome."""

    kind: DecisionKind
    task_id: str
    step_id: str
    attempt: int
    max_attempts: int
    task_status: TaskStatus
    fix_hints: tuple[str, ...] = ()
    results: list[CriterionResult] = field(default_factory=list)
    summary: str | None = None

    def as_error(self) -> ValidationFailure | AttemptsExhausted | None:
        """Map RETRY/HALTED decisions onto the error taxonomy."""

        if self.kind == DecisionKind.RETRY:
            failed = first_failure(self.results)
            detail = failed.description if failed is not None else "step failed"
            return ValidationFailure(
                step_id=self.step_id,
                attempt=self.attempt,
                max_attempts=self.max_attempts,
                detail=detail,
            )
        if self.kind == DecisionKind.HALTED:
            return AttemptsExhausted(
                step_id=self.step_id,
                attempts=self.attempt,
                summary=self.summary or f"Step {self.step_id} exhausted its attempts.",
            )
        return None

    def raise_for_failure(self) -> None:
        error = self.as_error()
        if error is not None:
            raise error


@dataclass(slots=True, frozen=True)
class StepAction:
    """Next step the caller should perform."""

    task_id: str
    step_id: str
    name: str
    action: str
    attempt: int
    max_attempts: int
    fix_hints: tuple[str, ...] = ()
    criteria: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class AwaitingQualityGate:
    """All steps are terminal; the caller should run the quality gate."""

    task_id: str


@dataclass(slots=True, frozen=True)
class TaskComplete:
    """Task passed its quality gate."""

    task_id: str
    verdict: Verdict | None


@dataclass(slots=True, frozen=True)
class TaskHalted:
    """Task stopped and needs manual intervention or rollback."""

    task_id: str
    status: TaskStatus
    summary: str


NextAction = StepAction | AwaitingQualityGate | TaskComplete | TaskHalted


@dataclass(slots=True, frozen=True)
class RecoverySnapshot:
    """Minimal projection of a task that is cheap to re-inject after context loss."""

    task_id: str
    goal: str
    status: TaskStatus
    current_step: str | None
    total_steps: int
    completed_steps: tuple[str, ...]
    last_activity: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "goal": self.goal,
            "status": self.status.value,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "completed_steps": list(self.completed_steps),
            "last_activity": to_iso(self.last_activity),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RecoverySnapshot:
        return cls(
            task_id=str(raw["task_id"]),
            goal=str(raw["goal"]),
            status=TaskStatus(raw["status"]),
            current_step=raw.get("current_step"),
            total_steps=int(raw["total_steps"]),
            completed_steps=tuple(str(item) for item in raw.get("completed_steps", [])),
            last_activity=from_iso(str(raw["last_activity"])),
        )


@dataclass(slots=True, frozen=True)
class ResumableContext:
    """Restored snapshot plus the text block handed back to the caller."""

    snapshot: RecoverySnapshot
    next_hint: str
    text: str


@dataclass(slots=True, frozen=True)
class ResumeCandidate:
    """One non-terminal task offered for resumption."""

    task_id: str
    goal: str
    status: TaskStatus
    current_step: str | None
    total_steps: int
    completed_steps: int
    last_activity: datetime


@dataclass(slots=True)
class TaskEventView:
    """Journal entry for the audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    step_id: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


def _iso_or_none(value: datetime | None) -> str | None:
    return to_iso(value) if value is not None else None


def _datetime_or_none(value: object) -> datetime | None:
    if value is None:
        return None
    return from_iso(str(value))
