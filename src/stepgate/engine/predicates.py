"""Validation predicates evaluated against the workspace and reported evidence."""

from __future__ import annotations

import json
import re
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from stepgate.engine.errors import PredicateError

_MISSING = object()


@dataclass(slots=True)
class PredicateContext:
    """Everything a predicate may look at while evaluating."""

    workdir: Path
    timeout_seconds: int = 120
    preview_chars: int = 240
    evidence: str | None = None


@dataclass(slots=True)
class PredicateResult:
    """Raw evaluation outcome, before failure classification."""

    passed: bool
    observed: str
    expected: str
    exit_code: int | None = None
    timed_out: bool = False
    missing_path: bool = False


class Predicate(Protocol):
    """Protocol implemented by every validation predicate kind."""

    kind: str

    def evaluate(self, context: PredicateContext) -> PredicateResult:
        """Evaluate the predicate; never raises for a failing check."""

    def describe_expected(self) -> str:
        """Human-readable expectation used in evidence and halt summaries."""

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to the plan document form."""


class MatchMode(str, Enum):
    """How command output is compared with the expected value."""

    CONTAINS = "contains"
    EQUALS = "equals"
    REGEX = "regex"
    ANY = "any"


@dataclass(slots=True, frozen=True)
class OutputMatcher:
    """Comparison of captured text against an expected value."""

    mode: MatchMode = MatchMode.ANY
    value: str = ""

    def matches(self, output: str) -> bool:
        if self.mode == MatchMode.ANY:
            return True
        if self.mode == MatchMode.CONTAINS:
            return self.value in output
        if self.mode == MatchMode.EQUALS:
            return output.strip() == self.value.strip()
        return re.search(self.value, output, flags=re.MULTILINE) is not None

    def describe(self) -> str:
        if self.mode == MatchMode.ANY:
            return "any output"
        if self.mode == MatchMode.CONTAINS:
            return f"output contains {self.value!r}"
        if self.mode == MatchMode.EQUALS:
            return f"output equals {self.value!r}"
        return f"output matches /{self.value}/"

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> OutputMatcher:
        mode_raw = raw.get("match")
        expected = raw.get("expected")
        if mode_raw is None:
            mode_raw = MatchMode.CONTAINS.value if expected not in (None, "") else "any"
        try:
            mode = MatchMode(str(mode_raw))
        except ValueError as error:
            raise PredicateError(f"unknown match mode: {mode_raw!r}") from error
        if mode != MatchMode.ANY and not isinstance(expected, str):
            raise PredicateError(f"match mode {mode.value!r} requires a string 'expected'")
        if mode == MatchMode.REGEX:
            try:
                re.compile(str(expected))
            except re.error as error:
                raise PredicateError(f"invalid regex {expected!r}: {error}") from error
        return cls(mode=mode, value=str(expected) if expected is not None else "")


@dataclass(slots=True, frozen=True)
class CommandPredicate:
    """Run a shell command; check its exit code and combined output."""

    command: str
    matcher: OutputMatcher = OutputMatcher()
    exit_code: int | None = 0
    kind: str = "command"

    def evaluate(self, context: PredicateContext) -> PredicateResult:
        expected = self.describe_expected()
        try:
            completed = subprocess.run(  # noqa: S602
                self.command,
                shell=True,
                check=False,
                cwd=context.workdir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                timeout=context.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return PredicateResult(
                passed=False,
                observed=f"command timed out after {context.timeout_seconds}s",
                expected=expected,
                timed_out=True,
            )
        except OSError as error:
            return PredicateResult(
                passed=False,
                observed=f"command failed to start: {error}",
                expected=expected,
            )

        output = completed.stdout or ""
        exit_ok = self.exit_code is None or completed.returncode == self.exit_code
        passed = exit_ok and self.matcher.matches(output)
        observed = _truncate(output.strip(), limit=context.preview_chars)
        if not exit_ok:
            prefix = f"exit code {completed.returncode}"
            observed = f"{prefix}: {observed}" if observed else prefix
        return PredicateResult(
            passed=passed,
            observed=observed,
            expected=expected,
            exit_code=completed.returncode,
        )

    def describe_expected(self) -> str:
        parts: list[str] = []
        if self.exit_code is not None:
            parts.append(f"exit code {self.exit_code}")
        if self.matcher.mode != MatchMode.ANY or not parts:
            parts.append(self.matcher.describe())
        return " and ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.kind,
            "command": self.command,
            "match": self.matcher.mode.value,
            "exit_code": self.exit_code,
        }
        if self.matcher.mode != MatchMode.ANY:
            payload["expected"] = self.matcher.value
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CommandPredicate:
        command = _required_str(raw, "command")
        exit_code = raw.get("exit_code", 0)
        if exit_code is not None and (
            isinstance(exit_code, bool) or not isinstance(exit_code, int)
        ):
            raise PredicateError("'exit_code' must be an integer or null")
        return cls(command=command, matcher=OutputMatcher.from_dict(raw), exit_code=exit_code)


@dataclass(slots=True, frozen=True)
class FileExistsPredicate:
    path: str
    kind: str = "file_exists"

    def evaluate(self, context: PredicateContext) -> PredicateResult:
        target = _resolve(context.workdir, self.path)
        found = target.exists()
        return PredicateResult(
            passed=found,
            observed=f"{self.path} exists" if found else f"{self.path} not found",
            expected=self.describe_expected(),
            missing_path=not found,
        )

    def describe_expected(self) -> str:
        return f"{self.path} exists"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "path": self.path}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> FileExistsPredicate:
        return cls(path=_required_str(raw, "path"))


@dataclass(slots=True, frozen=True)
class FileContainsPredicate:
    path: str
    matcher: OutputMatcher
    kind: str = "file_contains"

    def evaluate(self, context: PredicateContext) -> PredicateResult:
        target = _resolve(context.workdir, self.path)
        expected = self.describe_expected()
        if not target.is_file():
            return PredicateResult(
                passed=False,
                observed=f"{self.path} not found",
                expected=expected,
                missing_path=True,
            )
        try:
            content = target.read_text("utf-8")
        except (OSError, UnicodeDecodeError) as error:
            return PredicateResult(
                passed=False,
                observed=f"cannot read {self.path}: {error}",
                expected=expected,
            )
        passed = self.matcher.matches(content)
        return PredicateResult(
            passed=passed,
            observed=_truncate(content.strip(), limit=context.preview_chars),
            expected=expected,
        )

    def describe_expected(self) -> str:
        return f"{self.path}: {self.matcher.describe()}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "path": self.path,
            "match": self.matcher.mode.value,
            "expected": self.matcher.value,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> FileContainsPredicate:
        matcher = OutputMatcher.from_dict(raw)
        if matcher.mode == MatchMode.ANY:
            raise PredicateError("file_contains requires an 'expected' value")
        return cls(path=_required_str(raw, "path"), matcher=matcher)


@dataclass(slots=True, frozen=True)
class JsonFieldPredicate:
    """Structured assertion on one field of a JSON document."""

    path: str
    field: str
    expected: Any = _MISSING
    kind: str = "json_field"

    def evaluate(self, context: PredicateContext) -> PredicateResult:
        target = _resolve(context.workdir, self.path)
        expected = self.describe_expected()
        if not target.is_file():
            return PredicateResult(
                passed=False,
                observed=f"{self.path} not found",
                expected=expected,
                missing_path=True,
            )
        try:
            document = json.loads(target.read_text("utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as error:
            return PredicateResult(
                passed=False,
                observed=f"cannot parse {self.path}: {error}",
                expected=expected,
            )

        value = _lookup(document, self.field)
        if value is _MISSING:
            return PredicateResult(
                passed=False,
                observed=f"{self.field} missing",
                expected=expected,
            )
        observed = json.dumps(value, ensure_ascii=False, sort_keys=True)
        passed = self.expected is _MISSING or _json_equal(value, self.expected)
        return PredicateResult(
            passed=passed,
            observed=_truncate(f"{self.field} = {observed}", limit=context.preview_chars),
            expected=expected,
        )

    def describe_expected(self) -> str:
        if self.expected is _MISSING:
            return f"{self.path}: {self.field} present"
        rendered = json.dumps(self.expected, ensure_ascii=False, sort_keys=True)
        return f"{self.path}: {self.field} = {rendered}"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.kind, "path": self.path, "field": self.field}
        if self.expected is not _MISSING:
            payload["equals"] = self.expected
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> JsonFieldPredicate:
        return cls(
            path=_required_str(raw, "path"),
            field=_required_str(raw, "field"),
            expected=raw.get("equals", _MISSING),
        )


@dataclass(slots=True, frozen=True)
class EvidencePredicate:
    """Match the evidence text the caller reported with the outcome."""

    matcher: OutputMatcher
    kind: str = "evidence"

    def evaluate(self, context: PredicateContext) -> PredicateResult:
        expected = self.describe_expected()
        if context.evidence is None:
            return PredicateResult(passed=False, observed="no evidence reported", expected=expected)
        return PredicateResult(
            passed=self.matcher.matches(context.evidence),
            observed=_truncate(context.evidence.strip(), limit=context.preview_chars),
            expected=expected,
        )

    def describe_expected(self) -> str:
        return f"evidence {self.matcher.describe()}"

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.kind, "match": self.matcher.mode.value}
        if self.matcher.mode != MatchMode.ANY:
            payload["expected"] = self.matcher.value
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> EvidencePredicate:
        return cls(matcher=OutputMatcher.from_dict(raw))


PredicateFactory = Callable[[dict[str, Any]], Predicate]

_REGISTRY: dict[str, PredicateFactory] = {}


def register_predicate(kind: str, factory: PredicateFactory) -> None:
    """Register a predicate kind for plan parsing."""

    _REGISTRY[kind] = factory


def registered_kinds() -> tuple[str, ...]:
    return tuple(sorted(_REGISTRY))


def build_predicate(raw: object) -> Predicate:
    """Build a predicate from its plan document form."""

    if not isinstance(raw, dict):
        raise PredicateError("predicate must be an object")
    kind = raw.get("type")
    if not isinstance(kind, str) or not kind:
        raise PredicateError("predicate 'type' must be a non-empty string")
    factory = _REGISTRY.get(kind)
    if factory is None:
        raise PredicateError(
            f"unknown predicate type {kind!r}; expected one of: {', '.join(registered_kinds())}",
        )
    return factory(raw)


def legacy_command_predicate(command: str, expected_output: str | None) -> CommandPredicate:
    """Flat ``validation_command`` + ``expected_output`` form.

    Matches the expected text as a substring of the combined output and ignores
    the exit code.
    """

    if expected_output:
        matcher = OutputMatcher(mode=MatchMode.CONTAINS, value=expected_output)
    else:
        matcher = OutputMatcher()
    return CommandPredicate(command=command, matcher=matcher, exit_code=None)


def _test_passes_from_dict(raw: dict[str, Any]) -> CommandPredicate:
    return CommandPredicate(command=_required_str(raw, "command"))


register_predicate("command", CommandPredicate.from_dict)
register_predicate("test_passes", _test_passes_from_dict)
register_predicate("file_exists", FileExistsPredicate.from_dict)
register_predicate("file_contains", FileContainsPredicate.from_dict)
register_predicate("json_field", JsonFieldPredicate.from_dict)
register_predicate("evidence", EvidencePredicate.from_dict)


def _required_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise PredicateError(f"{raw.get('type', 'predicate')} requires a non-empty string '{key}'")
    return value


def _resolve(workdir: Path, path: str) -> Path:
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    return workdir / candidate


def _lookup(document: object, dotted: str) -> object:
    current = document
    for part in dotted.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def _json_equal(left: Any, right: Any) -> bool:
    """Structural equality where ``true``, ``1`` and ``1.0`` stay distinct."""

    if type(left) is not type(right):
        return False
    if isinstance(left, dict):
        return left.keys() == right.keys() and all(
            _json_equal(left[key], right[key]) for key in left
        )
    if isinstance(left, list):
        return len(left) == len(right) and all(
            _json_equal(a, b) for a, b in zip(left, right)
        )
    return left == right


def _truncate(value: str, *, limit: int = 240) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 3] + "..."
