"""Bounded retry and escalation policy for failed step attempts."""

from __future__ import annotations

from dataclasses import dataclass

from stepgate.engine.failure_classifier import DEFAULT_FIX_HINTS
from stepgate.engine.models import CriterionResult, Escalation, RetryAction, first_failure
from stepgate.engine.plan import Step


@dataclass(slots=True)
class RetryDecision:
    """Decision returned by retry policy."""

    action: RetryAction
    next_attempt: int | None
    fix_hints: tuple[str, ...]
    reason: str


class RetryPolicy:
    """Decide between re-issuing a step and escalating once attempts run out."""

    def decide(
        self,
        step: Step,
        attempts_so_far: int,
        results: list[CriterionResult],
    ) -> RetryDecision:
        max_attempts = step.retry.max_attempts
        hints = fix_hints_for(step, results)
        if attempts_so_far < max_attempts:
            return RetryDecision(
                action=RetryAction.RETRY,
                next_attempt=attempts_so_far + 1,
                fix_hints=hints,
                reason=f"Attempt {attempts_so_far} of {max_attempts} failed.",
            )
        if step.retry.escalation == Escalation.SKIP_IF_OPTIONAL:
            return RetryDecision(
                action=RetryAction.ESCALATE_SKIP,
                next_attempt=None,
                fix_hints=hints,
                reason=f"Attempts exhausted ({max_attempts}); optional step skipped.",
            )
        return RetryDecision(
            action=RetryAction.ESCALATE_HALT,
            next_attempt=None,
            fix_hints=hints,
            reason=f"Attempts exhausted ({max_attempts}); manual intervention required.",
        )


def fix_hints_for(step: Step, results: list[CriterionResult]) -> tuple[str, ...]:
    """Plan hints, or a class-based default when the plan gives none."""

    if step.retry.fix_hints:
        return step.retry.fix_hints
    failed = first_failure(results)
    if failed is not None and failed.failure_class is not None:
        return (DEFAULT_FIX_HINTS[failed.failure_class],)
    return ("Check the error and try again.",)


def render_halt_summary(
    step: Step,
    attempts: int,
    results: list[CriterionResult],
    fix_hints: tuple[str, ...],
) -> str:
    """Human-readable context for a halted task."""

    failed = first_failure(results)
    lines = ["TASK HALTED", "", f"Step: {step.step_id} ({step.name})"]
    if failed is not None:
        lines.extend(
            [
                f"Criterion: {failed.criterion_id} - {failed.description}",
                f"Expected: {failed.expected}",
                f"Observed: {failed.observed}",
            ],
        )
        if failed.failure_class is not None:
            lines.append(f"Failure class: {failed.failure_class.value}")
    lines.append(f"Attempts: {attempts}/{step.retry.max_attempts} (exhausted)")
    lines.append(f"Fix hints tried: {'; '.join(fix_hints)}")
    lines.append("")
    lines.append(
        "Manual intervention required. Fix the issue and roll back to a checkpoint, "
        "or abort the task.",
    )
    return "\n".join(lines)
