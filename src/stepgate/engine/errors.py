"""Error taxonomy for plan execution."""

from __future__ import annotations

from collections.abc import Sequence


class StepgateError(Exception):
    """Base class for engine errors."""


class InvalidPlan(StepgateError):
    """Plan rejected at creation; no task state is written."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid plan: " + "; ".join(self.errors))


class PredicateError(StepgateError):
    """Malformed validation predicate definition."""


class ValidationFailure(StepgateError):
    """Step criteria failed; recoverable through the retry policy."""

    def __init__(self, *, step_id: str, attempt: int, max_attempts: int, detail: str) -> None:
        self.step_id = step_id
        self.attempt = attempt
        self.max_attempts = max_attempts
        super().__init__(
            f"Step {step_id} failed validation (attempt {attempt}/{max_attempts}): {detail}",
        )


class AttemptsExhausted(StepgateError):
    """Step used its whole retry budget and the task halted."""

    def __init__(self, *, step_id: str, attempts: int, summary: str) -> None:
        self.step_id = step_id
        self.attempts = attempts
        self.summary = summary
        super().__init__(summary)


class QualityGateBlocked(StepgateError):
    """Final quality gate failed on at least one required check."""

    def __init__(self, failing_checks: Sequence[str]) -> None:
        self.failing_checks = list(failing_checks)
        super().__init__(
            "Quality gate blocked by required checks: " + ", ".join(self.failing_checks),
        )


class NoRunnableStep(StepgateError):
    """Steps remain but none can start: a planning defect, never skipped silently."""

    def __init__(self, *, task_id: str, blocked_steps: Sequence[str]) -> None:
        self.task_id = task_id
        self.blocked_steps = list(blocked_steps)
        super().__init__(
            f"Task {task_id} has no runnable step; blocked: {', '.join(self.blocked_steps)}",
        )


class TaskNotFound(StepgateError):
    """No record exists for the task id."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class TaskAlreadyExists(StepgateError):
    """A record already exists for the requested task id."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task already exists: {task_id}")


class IllegalTransition(StepgateError):
    """Requested change is not allowed from the current task or step state."""


class TaskAborted(IllegalTransition):
    """Task was aborted; the engine refuses to advance it."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} is aborted and cannot advance.")


class StateCorrupted(StepgateError):
    """Persisted task record could not be parsed."""
