"""Deterministic classification of failed criteria for halt summaries and hints."""

from __future__ import annotations

from dataclasses import dataclass

from stepgate.engine.models import FailureClass
from stepgate.engine.predicates import PredicateResult

FAILURE_CLASSIFIER_VERSION = 1

_COMMAND_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "command not found",
    "not recognized as an internal or external command",
    "no such command",
    "modulenotfounderror",
    "no module named",
)
_PERMISSION_PATTERNS: tuple[str, ...] = (
    "permission denied",
    "operation not permitted",
    "eacces",
    "access is denied",
)
_MISSING_FILE_PATTERNS: tuple[str, ...] = (
    "no such file or directory",
    "filenotfounderror",
    "cannot find the path",
    "enoent",
    "not found",
)
_SYNTAX_PATTERNS: tuple[str, ...] = (
    "syntaxerror",
    "syntax error",
    "indentationerror",
    "parse error",
    "unexpected token",
)
_TEST_FAILURE_PATTERNS: tuple[str, ...] = (
    "assertionerror",
    "failed",
    "failures",
    "tests failed",
    "expected",
)

_SHELL_COMMAND_NOT_FOUND_EXIT = 127
_SHELL_NOT_EXECUTABLE_EXIT = 126

DEFAULT_FIX_HINTS: dict[FailureClass, str] = {
    FailureClass.COMMAND_NOT_FOUND: "Install the missing tool or fix the command name.",
    FailureClass.TIMEOUT: "Check for hung processes or slow operations.",
    FailureClass.MISSING_FILE: "Create the missing file or fix the path.",
    FailureClass.PERMISSION_DENIED: "Fix file permissions or run from the right directory.",
    FailureClass.SYNTAX_ERROR: "Fix the syntax error reported in the output.",
    FailureClass.TEST_FAILURE: "Read the failing assertion and fix the code under test.",
    FailureClass.OUTPUT_MISMATCH: "Compare the observed output with the expectation.",
    FailureClass.EXIT_CODE: "Inspect the command output for the cause of the failure.",
    FailureClass.REPORTED_FAILURE: "Review why the action failed before retrying.",
}


@dataclass(slots=True)
class CriterionFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for journal events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_criterion_failure(result: PredicateResult) -> CriterionFailureClassification:
    """Classify a failed predicate result into one deterministic class."""

    if result.timed_out:
        return CriterionFailureClassification(FailureClass.TIMEOUT, "timed_out", None)
    if result.missing_path:
        return CriterionFailureClassification(FailureClass.MISSING_FILE, "missing_path", None)

    haystack = result.observed.lower()

    if result.exit_code == _SHELL_COMMAND_NOT_FOUND_EXIT:
        return CriterionFailureClassification(
            FailureClass.COMMAND_NOT_FOUND,
            "shell_exit_127",
            None,
        )
    pattern = _first_match(haystack, _COMMAND_NOT_FOUND_PATTERNS)
    if pattern is not None:
        return CriterionFailureClassification(
            FailureClass.COMMAND_NOT_FOUND,
            "command_not_found",
            pattern,
        )

    pattern = _first_match(haystack, _PERMISSION_PATTERNS)
    if pattern is not None or result.exit_code == _SHELL_NOT_EXECUTABLE_EXIT:
        return CriterionFailureClassification(
            FailureClass.PERMISSION_DENIED,
            "permission_denied" if pattern is not None else "shell_exit_126",
            pattern,
        )

    pattern = _first_match(haystack, _SYNTAX_PATTERNS)
    if pattern is not None:
        return CriterionFailureClassification(FailureClass.SYNTAX_ERROR, "syntax_error", pattern)

    pattern = _first_match(haystack, _MISSING_FILE_PATTERNS)
    if pattern is not None:
        return CriterionFailureClassification(FailureClass.MISSING_FILE, "missing_file", pattern)

    if result.exit_code not in (None, 0):
        pattern = _first_match(haystack, _TEST_FAILURE_PATTERNS)
        if pattern is not None:
            return CriterionFailureClassification(
                FailureClass.TEST_FAILURE,
                "test_failure",
                pattern,
            )
        return CriterionFailureClassification(FailureClass.EXIT_CODE, "non_zero_exit", None)

    return CriterionFailureClassification(
        FailureClass.OUTPUT_MISMATCH,
        "fallback_output_mismatch",
        None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
