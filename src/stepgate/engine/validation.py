"""Fail-fast evaluation of a step's success criteria."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from stepgate.engine.failure_classifier import classify_criterion_failure
from stepgate.engine.models import CriterionResult
from stepgate.engine.plan import Step, SuccessCriterion
from stepgate.engine.predicates import Predicate, PredicateContext

logger = logging.getLogger(__name__)


class ValidationRunner:
    """Evaluate criteria in order and stop at the first failure.

    The runner never touches task state; callers persist the returned results.
    """

    def __init__(
        self,
        *,
        workdir: Path,
        timeout_seconds: int = 120,
        preview_chars: int = 240,
    ) -> None:
        self.workdir = workdir
        self.timeout_seconds = timeout_seconds
        self.preview_chars = preview_chars

    def evaluate(self, step: Step, evidence: str | None = None) -> list[CriterionResult]:
        """Evaluate a step's criteria; an empty list means the step passes trivially."""

        if not step.criteria:
            logger.warning("Step %s has no success criteria; passing trivially", step.step_id)
            return []
        return self.evaluate_criteria(step.criteria, evidence=evidence)

    def evaluate_criteria(
        self,
        criteria: Sequence[SuccessCriterion],
        *,
        evidence: str | None = None,
    ) -> list[CriterionResult]:
        context = self._context(evidence)
        results: list[CriterionResult] = []
        for criterion in criteria:
            result = self._run(
                criterion.criterion_id,
                criterion.description,
                criterion.predicate,
                context,
            )
            results.append(result)
            if not result.passed:
                logger.info(
                    "Criterion %s failed: expected %s, observed %s",
                    criterion.criterion_id,
                    result.expected,
                    result.observed,
                )
                break
        return results

    def evaluate_predicates(
        self,
        predicates: Sequence[Predicate],
        *,
        prefix: str,
    ) -> list[CriterionResult]:
        """Fail-fast evaluation of bare predicates, e.g. checkpoint verification."""

        context = self._context(None)
        results: list[CriterionResult] = []
        for index, predicate in enumerate(predicates, start=1):
            result = self._run(
                f"{prefix}#{index}",
                predicate.describe_expected(),
                predicate,
                context,
            )
            results.append(result)
            if not result.passed:
                break
        return results

    def check(self, predicate: Predicate, *, name: str) -> CriterionResult:
        """Evaluate a single predicate."""

        return self._run(name, predicate.describe_expected(), predicate, self._context(None))

    def _context(self, evidence: str | None) -> PredicateContext:
        return PredicateContext(
            workdir=self.workdir,
            timeout_seconds=self.timeout_seconds,
            preview_chars=self.preview_chars,
            evidence=evidence,
        )

    def _run(
        self,
        criterion_id: str,
        description: str,
        predicate: Predicate,
        context: PredicateContext,
    ) -> CriterionResult:
        raw = predicate.evaluate(context)
        if raw.passed:
            return CriterionResult(
                criterion_id=criterion_id,
                description=description,
                passed=True,
                observed=raw.observed,
                expected=raw.expected,
            )
        classification = classify_criterion_failure(raw)
        return CriterionResult(
            criterion_id=criterion_id,
            description=description,
            passed=raw.passed,
            observed=raw.observed,
            expected=raw.expected,
            failure_class=classification.failure_class,
            classification=classification.to_event_details(),
        )
