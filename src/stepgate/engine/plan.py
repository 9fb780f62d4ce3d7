"""Plan contract: parsing, serialization and structural validation."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stepgate.engine.errors import InvalidPlan, PredicateError
from stepgate.engine.models import Escalation
from stepgate.engine.predicates import (
    CommandPredicate,
    Predicate,
    build_predicate,
    legacy_command_predicate,
)
from stepgate.storage.common import load_json

COMPLEXITY_STEP_LIMITS: dict[str, int] = {
    "trivial": 3,
    "simple": 5,
    "moderate": 10,
    "complex": 20,
}


@dataclass(slots=True, frozen=True)
class SuccessCriterion:
    criterion_id: str
    description: str
    predicate: Predicate

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.criterion_id,
            "description": self.description,
            "check": self.predicate.to_dict(),
        }


@dataclass(slots=True, frozen=True)
class RetryBehavior:
    max_attempts: int = 3
    fix_hints: tuple[str, ...] = ()
    escalation: str = Escalation.HALT_WITH_CONTEXT.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "fix_hints": list(self.fix_hints),
            "escalation": self.escalation,
        }


@dataclass(slots=True, frozen=True)
class Step:
    step_id: str
    name: str
    action: str
    criteria: tuple[SuccessCriterion, ...] = ()
    retry: RetryBehavior = RetryBehavior()
    depends_on: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.step_id,
            "name": self.name,
            "action": self.action,
            "success_criteria": [criterion.to_dict() for criterion in self.criteria],
            "retry_behavior": self.retry.to_dict(),
            "depends_on": list(self.depends_on),
        }


@dataclass(slots=True, frozen=True)
class CheckpointSpec:
    name: str
    after_step: str
    mandatory: bool = False
    verify: tuple[Predicate, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "after_step": self.after_step,
            "mandatory": self.mandatory,
            "verify": [predicate.to_dict() for predicate in self.verify],
        }


@dataclass(slots=True, frozen=True)
class QualityCheck:
    name: str
    predicate: Predicate
    required: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "required": self.required, "check": self.predicate.to_dict()}


@dataclass(slots=True, frozen=True)
class QualityGateSpec:
    checks: tuple[QualityCheck, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"checks": [check.to_dict() for check in self.checks]}


@dataclass(slots=True, frozen=True)
class Plan:
    """Validated, read-only work plan."""

    plan_id: str
    goal: str
    steps: tuple[Step, ...]
    checkpoints: tuple[CheckpointSpec, ...] = ()
    quality_gate: QualityGateSpec = QualityGateSpec()
    estimated_complexity: str | None = None
    warnings: tuple[str, ...] = field(default=(), compare=False)

    def step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        raise KeyError(step_id)

    def step_index(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.step_id == step_id:
                return index
        raise KeyError(step_id)

    def checkpoints_after(self, step_id: str) -> list[CheckpointSpec]:
        return [checkpoint for checkpoint in self.checkpoints if checkpoint.after_step == step_id]

    def checkpoint(self, name: str) -> CheckpointSpec:
        for checkpoint in self.checkpoints:
            if checkpoint.name == name:
                return checkpoint
        raise KeyError(name)


def plan_to_dict(plan: Plan) -> dict[str, Any]:
    """Serialize a plan into its canonical document form."""

    payload: dict[str, Any] = {
        "id": plan.plan_id,
        "goal": plan.goal,
        "steps": [step.to_dict() for step in plan.steps],
        "checkpoints": [checkpoint.to_dict() for checkpoint in plan.checkpoints],
        "quality_gate": plan.quality_gate.to_dict(),
    }
    if plan.estimated_complexity is not None:
        payload["estimated_complexity"] = plan.estimated_complexity
    return payload


def read_plan(path: Path, *, default_max_attempts: int = 3) -> Plan:
    """Load and validate a plan document from disk."""

    try:
        raw = load_json(path)
    except (OSError, ValueError, TypeError) as error:
        raise InvalidPlan([f"cannot read plan {path}: {error}"]) from error
    return parse_plan(raw, default_max_attempts=default_max_attempts)


def parse_plan(raw: object, *, default_max_attempts: int = 3) -> Plan:
    """Parse and validate a plan document.

    All structural problems are collected and raised together as
    ``InvalidPlan`` so the caller can fix the whole document in one pass.
    Non-fatal findings are attached to ``Plan.warnings``.
    """

    if not isinstance(raw, dict):
        raise InvalidPlan(["plan must be a JSON object"])

    errors: list[str] = []
    plan_id = _string_field(raw, "id", errors, where="plan")
    goal = _string_field(raw, "goal", errors, where="plan")

    raw_steps = raw.get("steps")
    steps: list[Step] = []
    if not isinstance(raw_steps, list) or not raw_steps:
        errors.append("plan.steps must be a non-empty array")
    else:
        for index, raw_step in enumerate(raw_steps):
            step = _parse_step(raw_step, index, errors, default_max_attempts=default_max_attempts)
            if step is not None:
                steps.append(step)

    checkpoints = _parse_checkpoints(raw.get("checkpoints", []), errors)
    quality_gate = _parse_quality_gate(raw, errors)

    complexity = raw.get("estimated_complexity")
    if complexity is not None and not isinstance(complexity, str):
        errors.append("plan.estimated_complexity must be a string")
        complexity = None

    plan = Plan(
        plan_id=plan_id,
        goal=goal,
        steps=tuple(steps),
        checkpoints=tuple(checkpoints),
        quality_gate=quality_gate,
        estimated_complexity=complexity,
    )
    structural_errors, warnings = validate_plan(plan)
    errors.extend(structural_errors)
    if errors:
        raise InvalidPlan(errors)
    return Plan(
        plan_id=plan.plan_id,
        goal=plan.goal,
        steps=plan.steps,
        checkpoints=plan.checkpoints,
        quality_gate=plan.quality_gate,
        estimated_complexity=plan.estimated_complexity,
        warnings=tuple(warnings),
    )


def validate_plan(plan: Plan) -> tuple[list[str], list[str]]:
    """Check cross-references of a parsed plan; return ``(errors, warnings)``."""

    errors: list[str] = []
    warnings: list[str] = []

    seen: set[str] = set()
    for step in plan.steps:
        if step.step_id in seen:
            errors.append(f"duplicate step id: {step.step_id}")
        seen.add(step.step_id)

    for step in plan.steps:
        for dependency in step.depends_on:
            if dependency == step.step_id:
                errors.append(f"step {step.step_id} depends on itself")
            elif dependency not in seen:
                errors.append(f"step {step.step_id} depends on unknown step {dependency}")
        if step.name == step.step_id:
            warnings.append(f"step {step.step_id} has no name")
        if not step.criteria:
            warnings.append(f"step {step.step_id} has no success criteria and will pass trivially")

    cycle = _find_cycle(plan)
    if cycle:
        errors.append("dependency cycle: " + " -> ".join(cycle))

    checkpoint_names: set[str] = set()
    for checkpoint in plan.checkpoints:
        if checkpoint.name in checkpoint_names:
            errors.append(f"duplicate checkpoint name: {checkpoint.name}")
        checkpoint_names.add(checkpoint.name)
        if checkpoint.after_step not in seen:
            errors.append(
                f"checkpoint {checkpoint.name} anchors on unknown step {checkpoint.after_step}",
            )

    if not plan.quality_gate.checks:
        warnings.append("plan defines no quality-gate checks; the gate passes as STRONG")

    if plan.estimated_complexity is not None:
        limit = COMPLEXITY_STEP_LIMITS.get(plan.estimated_complexity)
        if limit is None:
            warnings.append(f"unknown estimated_complexity: {plan.estimated_complexity}")
        elif len(plan.steps) > limit:
            warnings.append(
                f"{len(plan.steps)} steps exceed the {plan.estimated_complexity} "
                f"complexity limit of {limit}",
            )

    return errors, warnings


def _find_cycle(plan: Plan) -> list[str]:
    known = {step.step_id for step in plan.steps}
    graph = {
        step.step_id: [
            dependency
            for dependency in step.depends_on
            if dependency in known and dependency != step.step_id
        ]
        for step in plan.steps
    }
    visiting: set[str] = set()
    done: set[str] = set()
    path: list[str] = []

    def visit(node: str) -> list[str]:
        visiting.add(node)
        path.append(node)
        for dependency in graph.get(node, []):
            if dependency in visiting:
                return [*path[path.index(dependency) :], dependency]
            if dependency not in done:
                found = visit(dependency)
                if found:
                    return found
        visiting.discard(node)
        done.add(node)
        path.pop()
        return []

    for node in graph:
        if node not in done:
            found = visit(node)
            if found:
                return found
    return []


def _parse_step(
    raw: object,
    index: int,
    errors: list[str],
    *,
    default_max_attempts: int,
) -> Step | None:
    where = f"steps[{index}]"
    if not isinstance(raw, dict):
        errors.append(f"{where} must be an object")
        return None

    step_id = _string_field(raw, "id", errors, where=where)
    if step_id:
        where = f"step {step_id}"
    action = _string_field(raw, "action", errors, where=where)
    name = raw.get("name")
    if name is not None and not isinstance(name, str):
        errors.append(f"{where}.name must be a string")
        name = None

    criteria: list[SuccessCriterion] = []
    raw_criteria = raw.get("success_criteria", [])
    if not isinstance(raw_criteria, list):
        errors.append(f"{where}.success_criteria must be an array")
        raw_criteria = []
    for criterion_index, raw_criterion in enumerate(raw_criteria):
        criterion = _parse_criterion(raw_criterion, criterion_index, errors, where=where)
        if criterion is not None:
            criteria.append(criterion)

    retry = _parse_retry(raw.get("retry_behavior"), errors, where, default_max_attempts)

    depends_on = raw.get("depends_on", [])
    if not isinstance(depends_on, list) or not all(isinstance(item, str) for item in depends_on):
        errors.append(f"{where}.depends_on must be an array of step ids")
        depends_on = []

    return Step(
        step_id=step_id,
        name=name or step_id,
        action=action,
        criteria=tuple(criteria),
        retry=retry,
        depends_on=tuple(depends_on),
    )


def _parse_criterion(
    raw: object,
    index: int,
    errors: list[str],
    *,
    where: str,
) -> SuccessCriterion | None:
    location = f"{where}.success_criteria[{index}]"
    if not isinstance(raw, dict):
        errors.append(f"{location} must be an object")
        return None

    criterion_id = raw.get("id")
    if criterion_id is None:
        criterion_id = f"c{index + 1}"
    if not isinstance(criterion_id, str) or not criterion_id:
        errors.append(f"{location}.id must be a non-empty string")
        return None

    description = raw.get("description", raw.get("criterion", ""))
    if not isinstance(description, str):
        errors.append(f"{location}.description must be a string")
        description = ""

    try:
        if "check" in raw:
            predicate = build_predicate(raw["check"])
        elif "validation_command" in raw:
            command = raw.get("validation_command")
            expected_output = raw.get("expected_output")
            if not isinstance(command, str) or not command.strip():
                raise PredicateError("validation_command must be a non-empty string")
            if expected_output is not None and not isinstance(expected_output, str):
                raise PredicateError("expected_output must be a string")
            predicate = legacy_command_predicate(command, expected_output)
        else:
            raise PredicateError("criterion needs a 'check' or 'validation_command'")
    except PredicateError as error:
        errors.append(f"{location}: {error}")
        return None

    return SuccessCriterion(
        criterion_id=criterion_id,
        description=description or predicate.describe_expected(),
        predicate=predicate,
    )


def _parse_retry(
    raw: object,
    errors: list[str],
    where: str,
    default_max_attempts: int,
) -> RetryBehavior:
    if raw is None:
        return RetryBehavior(max_attempts=default_max_attempts)
    if not isinstance(raw, dict):
        errors.append(f"{where}.retry_behavior must be an object")
        return RetryBehavior(max_attempts=default_max_attempts)

    max_attempts = raw.get("max_attempts", default_max_attempts)
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
        errors.append(f"{where}.retry_behavior.max_attempts must be an integer >= 1")
        max_attempts = default_max_attempts

    fix_hints = raw.get("fix_hints", [])
    if not isinstance(fix_hints, list) or not all(isinstance(item, str) for item in fix_hints):
        errors.append(f"{where}.retry_behavior.fix_hints must be an array of strings")
        fix_hints = []

    # Any policy other than skip_if_optional halts once attempts run out.
    escalation = raw.get("escalation", Escalation.HALT_WITH_CONTEXT.value)
    if not isinstance(escalation, str) or not escalation.strip():
        errors.append(f"{where}.retry_behavior.escalation must be a non-empty string")
        escalation = Escalation.HALT_WITH_CONTEXT.value

    return RetryBehavior(
        max_attempts=max_attempts,
        fix_hints=tuple(fix_hints),
        escalation=escalation,
    )


def _parse_checkpoints(raw: object, errors: list[str]) -> list[CheckpointSpec]:
    if not isinstance(raw, list):
        errors.append("plan.checkpoints must be an array")
        return []

    checkpoints: list[CheckpointSpec] = []
    for index, item in enumerate(raw):
        where = f"checkpoints[{index}]"
        if not isinstance(item, dict):
            errors.append(f"{where} must be an object")
            continue
        name = _string_field(item, "name", errors, where=where)
        after_step = _string_field(item, "after_step", errors, where=where)
        mandatory = item.get("mandatory", False)
        if not isinstance(mandatory, bool):
            errors.append(f"{where}.mandatory must be a boolean")
            mandatory = False
        raw_verify = item.get("verify", [])
        if not isinstance(raw_verify, list):
            errors.append(f"{where}.verify must be an array")
            raw_verify = []
        verify: list[Predicate] = []
        for predicate_index, raw_predicate in enumerate(raw_verify):
            try:
                verify.append(build_predicate(raw_predicate))
            except PredicateError as error:
                errors.append(f"{where}.verify[{predicate_index}]: {error}")
        checkpoints.append(
            CheckpointSpec(
                name=name,
                after_step=after_step,
                mandatory=mandatory,
                verify=tuple(verify),
            ),
        )
    return checkpoints


def _parse_quality_gate(raw: dict[str, Any], errors: list[str]) -> QualityGateSpec:
    gate = raw.get("quality_gate")
    if gate is None:
        hooks = raw.get("validation_hooks")
        if isinstance(hooks, dict):
            gate = hooks.get("quality_gate")
    if gate is None:
        return QualityGateSpec()
    if not isinstance(gate, dict):
        errors.append("plan.quality_gate must be an object")
        return QualityGateSpec()

    raw_checks = gate.get("checks", [])
    if not isinstance(raw_checks, list):
        errors.append("plan.quality_gate.checks must be an array")
        return QualityGateSpec()

    checks: list[QualityCheck] = []
    names: set[str] = set()
    for index, item in enumerate(raw_checks):
        where = f"quality_gate.checks[{index}]"
        if not isinstance(item, dict):
            errors.append(f"{where} must be an object")
            continue
        name = _string_field(item, "name", errors, where=where)
        if name in names:
            errors.append(f"duplicate quality-gate check name: {name}")
        names.add(name)
        required = item.get("required", True)
        if not isinstance(required, bool):
            errors.append(f"{where}.required must be a boolean")
            required = True
        try:
            if "check" in item:
                predicate = build_predicate(item["check"])
            elif isinstance(item.get("command"), str) and item["command"].strip():
                predicate = CommandPredicate(command=item["command"])
            else:
                raise PredicateError("check needs a 'check' object or a 'command'")
        except PredicateError as error:
            errors.append(f"{where}: {error}")
            continue
        checks.append(QualityCheck(name=name, predicate=predicate, required=required))
    return QualityGateSpec(checks=tuple(checks))


def _string_field(raw: dict[str, Any], key: str, errors: list[str], *, where: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        errors.append(f"{where}.{key} must be a non-empty string")
        return ""
    return value
