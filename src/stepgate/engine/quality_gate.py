"""Final quality-gate adjudication."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from stepgate.engine.models import CheckResult, QualityGateResult, Verdict
from stepgate.engine.plan import QualityGateSpec
from stepgate.engine.validation import ValidationRunner
from stepgate.storage.common import utc_now

logger = logging.getLogger(__name__)


def compute_verdict(checks: Sequence[CheckResult]) -> Verdict:
    """STRONG when everything passes, SOUND when only optional checks fail, else BLOCK."""

    if any(check.required and not check.passed for check in checks):
        return Verdict.BLOCK
    if any(not check.passed for check in checks):
        return Verdict.SOUND
    return Verdict.STRONG


class QualityGate:
    """Run every configured check; never short-circuits."""

    def __init__(self, runner: ValidationRunner) -> None:
        self.runner = runner

    def run(self, spec: QualityGateSpec) -> QualityGateResult:
        checks: list[CheckResult] = []
        for check in spec.checks:
            outcome = self.runner.check(check.predicate, name=check.name)
            checks.append(
                CheckResult(
                    name=check.name,
                    required=check.required,
                    passed=outcome.passed,
                    observed=outcome.observed,
                    expected=outcome.expected,
                ),
            )

        result = QualityGateResult(
            verdict=compute_verdict(checks),
            checks=checks,
            ran_at=utc_now(),
        )
        if result.verdict == Verdict.BLOCK:
            logger.warning(
                "Quality gate blocked by required checks: %s",
                ", ".join(result.blocking_checks),
            )
        elif result.verdict == Verdict.SOUND:
            logger.info(
                "Quality gate passed with optional failures: %s",
                ", ".join(result.failed_optional_checks),
            )
        return result
