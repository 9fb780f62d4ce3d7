from __future__ import annotations

import random
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest
from support import evidence_step, make_plan, py_command

from stepgate.engine.errors import (
    AttemptsExhausted,
    IllegalTransition,
    InvalidPlan,
    NoRunnableStep,
    TaskAborted,
    TaskAlreadyExists,
    ValidationFailure,
)
from stepgate.engine.models import (
    AwaitingQualityGate,
    DecisionKind,
    FailureClass,
    StepAction,
    StepState,
    StepStatus,
    TaskComplete,
    TaskHalted,
    TaskState,
    TaskStatus,
    Verdict,
)
from stepgate.engine.plan import Plan, Step
from stepgate.engine.service import StepEngine
from stepgate.storage.journal import DecisionJournal
from stepgate.storage.state_store import TaskStateStore

pytestmark = [
    allure.epic("Plan Execution"),
    allure.feature("Task State Machine"),
]


def _complete_step(engine: StepEngine, task_id: str, step_id: str) -> None:
    action = engine.next_step(task_id)
    assert isinstance(action, StepAction)
    assert action.step_id == step_id
    decision = engine.report_outcome(task_id, step_id, "completed", "ok")
    assert decision.kind == DecisionKind.CONTINUE


def test_create_task_walks_to_ready_to_build(engine: StepEngine) -> None:
    task_id = engine.create_task(make_plan([evidence_step("s1")]))

    state = engine.get_state(task_id)
    assert task_id.startswith("task_")
    assert state.status == TaskStatus.READY_TO_BUILD
    assert [step.status for step in state.steps] == [StepStatus.PENDING]
    assert engine.load_plan(task_id).plan_id == "plan-under-test"


def test_create_task_rejects_duplicate_and_malformed_ids(engine: StepEngine) -> None:
    plan = make_plan([evidence_step("s1")])
    engine.create_task(plan, task_id="release-42")

    with pytest.raises(TaskAlreadyExists, match="release-42"):
        engine.create_task(plan, task_id="release-42")
    with pytest.raises(ValueError, match="Invalid task id"):
        engine.create_task(plan, task_id="../escape")


def test_cyclic_plan_creates_no_state(engine: StepEngine, home: Path) -> None:
    raw = make_plan(
        [evidence_step("a", depends_on=["b"]), evidence_step("b", depends_on=["a"])],
    )
    plan_object = Plan(
        plan_id="cyclic",
        goal="never runs",
        steps=(
            Step(step_id="a", name="a", action="a", depends_on=("b",)),
            Step(step_id="b", name="b", action="b", depends_on=("a",)),
        ),
    )

    with pytest.raises(InvalidPlan, match="dependency cycle"):
        engine.create_task(raw, task_id="cyclic-dict")
    with pytest.raises(InvalidPlan, match="dependency cycle"):
        engine.create_task(plan_object, task_id="cyclic-object")

    assert not engine.store.exists("cyclic-dict")
    assert not engine.store.exists("cyclic-object")
    assert not (home / "tasks").exists()


def test_scenario_a_independent_steps_pass_first_try(engine: StepEngine) -> None:
    task_id = engine.create_task(
        make_plan([evidence_step("s1"), evidence_step("s2"), evidence_step("s3")]),
    )

    for step_id in ("s1", "s2", "s3"):
        _complete_step(engine, task_id, step_id)

    state = engine.get_state(task_id)
    assert state.status == TaskStatus.AWAITING_QUALITY_GATE
    assert all(step.status == StepStatus.SUCCESS for step in state.steps)
    assert all(step.attempts == 1 for step in state.steps)
    assert state.current_step is None
    assert engine.next_step(task_id) == AwaitingQualityGate(task_id=task_id)


def test_scenario_b_step_passes_on_third_attempt(engine: StepEngine) -> None:
    task_id = engine.create_task(
        make_plan([evidence_step("s1"), evidence_step("s2", max_attempts=3), evidence_step("s3")]),
    )
    _complete_step(engine, task_id, "s1")

    decisions = []
    for evidence in ("still broken", "still broken", "ok"):
        action = engine.next_step(task_id)
        assert isinstance(action, StepAction)
        assert action.step_id == "s2"
        decisions.append(engine.report_outcome(task_id, "s2", "completed", evidence))

    assert [decision.kind for decision in decisions] == [
        DecisionKind.RETRY,
        DecisionKind.RETRY,
        DecisionKind.CONTINUE,
    ]
    assert [decision.attempt for decision in decisions] == [1, 2, 3]
    assert decisions[0].fix_hints == ("fix s2",)
    assert decisions[0].results[0].failure_class == FailureClass.OUTPUT_MISMATCH
    step = engine.get_state(task_id).step("s2")
    assert step.status == StepStatus.SUCCESS
    assert step.attempts == 3


def test_retry_reissues_same_step_with_fix_hints(engine: StepEngine) -> None:
    task_id = engine.create_task(make_plan([evidence_step("s1", fix_hints=["rerun codegen"])]))
    engine.next_step(task_id)

    engine.report_outcome(task_id, "s1", "completed", "nope")
    action = engine.next_step(task_id)

    assert isinstance(action, StepAction)
    assert action.step_id == "s1"
    assert action.attempt == 2
    assert action.max_attempts == 3
    assert action.fix_hints == ("rerun codegen",)


def test_scenario_c_exhausted_step_halts_task(engine: StepEngine) -> None:
    task_id = engine.create_task(
        make_plan([evidence_step("s1", max_attempts=3), evidence_step("s2")]),
    )

    decisions = []
    for _ in range(3):
        engine.next_step(task_id)
        decisions.append(engine.report_outcome(task_id, "s1", "completed", "broken"))

    assert [decision.kind for decision in decisions] == [
        DecisionKind.RETRY,
        DecisionKind.RETRY,
        DecisionKind.HALTED,
    ]
    halted = decisions[-1]
    assert halted.task_status == TaskStatus.HALTED
    assert halted.summary is not None
    assert halted.summary.startswith("TASK HALTED")
    assert "Attempts: 3/3 (exhausted)" in halted.summary

    state = engine.get_state(task_id)
    assert state.status == TaskStatus.HALTED
    assert state.step("s1").status == StepStatus.FAILED
    assert state.step("s1").attempts == 3
    assert state.step("s2").status == StepStatus.PENDING
    assert state.halt_summary == halted.summary

    action = engine.next_step(task_id)
    assert isinstance(action, TaskHalted)
    assert action.status == TaskStatus.HALTED
    with pytest.raises(IllegalTransition):
        engine.report_outcome(task_id, "s1", "completed", "ok")


def test_scenario_d_exhausted_optional_step_is_skipped(engine: StepEngine) -> None:
    task_id = engine.create_task(
        make_plan(
            [
                evidence_step("docs", max_attempts=2, escalation="skip_if_optional"),
                evidence_step("release", depends_on=["docs"]),
            ],
        ),
    )

    engine.next_step(task_id)
    first = engine.report_outcome(task_id, "docs", "completed", "missing")
    engine.next_step(task_id)
    second = engine.report_outcome(task_id, "docs", "completed", "missing")

    assert first.kind == DecisionKind.RETRY
    assert second.kind == DecisionKind.SKIPPED
    assert second.task_status == TaskStatus.BUILDING
    state = engine.get_state(task_id)
    assert state.step("docs").status == StepStatus.SKIPPED
    assert state.step("docs").attempts == 2

    _complete_step(engine, task_id, "release")
    assert engine.get_state(task_id).status == TaskStatus.AWAITING_QUALITY_GATE


def test_scenario_e_sound_verdict_completes_task(engine: StepEngine) -> None:
    task_id = engine.create_task(
        make_plan(
            [evidence_step("s1")],
            checks=[
                {"name": "unit", "command": py_command("print('12 passed')")},
                {"name": "types", "command": py_command("print('no issues')")},
                {"name": "lint", "command": py_command("raise SystemExit(1)"), "required": False},
            ],
        ),
    )
    _complete_step(engine, task_id, "s1")

    result = engine.run_quality_gate(task_id)

    assert result.verdict == Verdict.SOUND
    assert result.failed_optional_checks == ["lint"]
    assert result.blocking_checks == []
    state = engine.get_state(task_id)
    assert state.status == TaskStatus.COMPLETE
    assert engine.store.is_archived(task_id)
    assert engine.next_step(task_id) == TaskComplete(task_id=task_id, verdict=Verdict.SOUND)


def test_completed_gate_returns_stored_result(engine: StepEngine) -> None:
    task_id = engine.create_task(make_plan([evidence_step("s1")]))
    _complete_step(engine, task_id, "s1")
    first = engine.run_quality_gate(task_id)

    again = engine.run_quality_gate(task_id)

    assert first.verdict == Verdict.STRONG
    assert again.verdict == first.verdict
    assert again.ran_at == first.ran_at


def test_blocked_gate_stays_awaiting_and_can_be_rerun(engine: StepEngine, workdir: Path) -> None:
    check = {"name": "report", "check": {"type": "file_exists", "path": "report.xml"}}
    task_id = engine.create_task(make_plan([evidence_step("s1")], checks=[check]))
    _complete_step(engine, task_id, "s1")

    blocked = engine.run_quality_gate(task_id)
    assert blocked.verdict == Verdict.BLOCK
    assert blocked.blocking_checks == ["report"]
    assert engine.get_state(task_id).status == TaskStatus.AWAITING_QUALITY_GATE

    (workdir / "report.xml").write_text("<testsuite/>", "utf-8")
    rerun = engine.run_quality_gate(task_id)
    assert rerun.verdict == Verdict.STRONG
    assert engine.get_state(task_id).status == TaskStatus.COMPLETE


def test_blocked_gate_can_fail_task(home: Path, workdir: Path, journal: DecisionJournal) -> None:
    engine = StepEngine(
        store=TaskStateStore(home),
        journal=journal,
        workdir=workdir,
        gate_block_status=TaskStatus.FAILED,
    )
    check = {"name": "tests", "command": py_command("raise SystemExit(1)")}
    task_id = engine.create_task(make_plan([evidence_step("s1")], checks=[check]))
    _complete_step(engine, task_id, "s1")

    result = engine.run_quality_gate(task_id)

    state = engine.get_state(task_id)
    assert result.verdict == Verdict.BLOCK
    assert state.status == TaskStatus.FAILED
    assert state.halt_summary == "Quality gate blocked by required checks: tests"
    assert engine.store.is_archived(task_id)
    with pytest.raises(IllegalTransition):
        engine.run_quality_gate(task_id)


def test_quality_gate_requires_finished_steps(engine: StepEngine) -> None:
    task_id = engine.create_task(make_plan([evidence_step("s1")]))

    with pytest.raises(IllegalTransition, match="quality gate not expected"):
        engine.run_quality_gate(task_id)


def test_next_step_is_idempotent(engine: StepEngine) -> None:
    task_id = engine.create_task(make_plan([evidence_step("s1"), evidence_step("s2")]))

    first = engine.next_step(task_id)
    second = engine.next_step(task_id)
    third = engine.next_step(task_id)

    assert first == second == third
    assert engine.get_state(task_id).step("s1").attempts == 1
    started = [event for event in engine.history(task_id) if event.event_type == "step_started"]
    assert len(started) == 1


def test_dependencies_decide_issue_order(engine: StepEngine) -> None:
    task_id = engine.create_task(
        make_plan(
            [
                evidence_step("deploy", depends_on=["build"]),
                evidence_step("build"),
                evidence_step("notes"),
            ],
        ),
    )

    order = []
    for _ in range(3):
        action = engine.next_step(task_id)
        assert isinstance(action, StepAction)
        order.append(action.step_id)
        engine.report_outcome(task_id, action.step_id, "completed", "ok")

    assert order == ["build", "deploy", "notes"]


def test_attempts_never_exceed_budget_under_random_failures(engine: StepEngine) -> None:
    rng = random.Random(20261018)
    for run in range(12):
        task_id = engine.create_task(
            make_plan(
                [
                    evidence_step("a", max_attempts=rng.randint(1, 4)),
                    evidence_step(
                        "b",
                        max_attempts=rng.randint(1, 4),
                        escalation="skip_if_optional",
                    ),
                    evidence_step("c", max_attempts=rng.randint(1, 4), depends_on=["a"]),
                ],
            ),
            task_id=f"random-{run}",
        )
        for _ in range(50):
            action = engine.next_step(task_id)
            if not isinstance(action, StepAction):
                break
            evidence = "ok" if rng.random() < 0.4 else "flaky"
            result = "failed" if rng.random() < 0.1 else "completed"
            engine.report_outcome(task_id, action.step_id, result, evidence)
            state = engine.get_state(task_id)
            assert all(step.attempts <= step.max_attempts for step in state.steps)
            assert sum(step.status == StepStatus.IN_PROGRESS for step in state.steps) <= 1

        final = engine.get_state(task_id)
        assert final.status in {TaskStatus.AWAITING_QUALITY_GATE, TaskStatus.HALTED}


def test_reported_failure_is_validated_as_failed(engine: StepEngine) -> None:
    task_id = engine.create_task(make_plan([evidence_step("s1")]))
    engine.next_step(task_id)

    decision = engine.report_outcome(task_id, "s1", "failed", "compiler crashed")

    assert decision.kind == DecisionKind.RETRY
    failed = decision.results[0]
    assert failed.criterion_id == "reported"
    assert failed.observed == "compiler crashed"
    assert failed.failure_class == FailureClass.REPORTED_FAILURE


def test_unrecognised_escalation_policy_halts(engine: StepEngine) -> None:
    plan = make_plan([evidence_step("s1", max_attempts=1, escalation="ask_user")])
    task_id = engine.create_task(plan)
    engine.next_step(task_id)

    decision = engine.report_outcome(task_id, "s1", "completed", "bad")

    assert decision.kind == DecisionKind.HALTED
    state = engine.get_state(task_id)
    assert state.status == TaskStatus.HALTED
    assert state.steps[0].status == StepStatus.FAILED


def test_undecodable_command_output_is_validated(engine: StepEngine) -> None:
    step = {
        "id": "s1",
        "name": "emit",
        "action": "emit binary noise",
        "success_criteria": [
            {
                "check": {
                    "type": "command",
                    "command": py_command(
                        "import sys; sys.stdout.buffer.write(bytes([0xff, 0xfe])); "
                        "sys.stdout.buffer.flush(); print('ok')",
                    ),
                    "expected": "ok",
                },
            },
        ],
    }
    task_id = engine.create_task(make_plan([step]))
    engine.next_step(task_id)

    decision = engine.report_outcome(task_id, "s1", "completed")

    assert decision.kind == DecisionKind.CONTINUE
    assert engine.get_state(task_id).steps[0].status == StepStatus.SUCCESS


def test_decision_maps_onto_error_taxonomy(engine: StepEngine) -> None:
    task_id = engine.create_task(make_plan([evidence_step("s1", max_attempts=2)]))
    engine.next_step(task_id)
    retry = engine.report_outcome(task_id, "s1", "completed", "bad")
    engine.next_step(task_id)
    halted = engine.report_outcome(task_id, "s1", "completed", "bad")

    with pytest.raises(ValidationFailure, match=r"attempt 1/2"):
        retry.raise_for_failure()
    with pytest.raises(AttemptsExhausted) as error:
        halted.raise_for_failure()
    assert error.value.attempts == 2


def test_outcome_for_wrong_step_is_rejected(engine: StepEngine) -> None:
    task_id = engine.create_task(make_plan([evidence_step("s1"), evidence_step("s2")]))

    with pytest.raises(IllegalTransition, match="no step outcome expected"):
        engine.report_outcome(task_id, "s1", "completed", "ok")

    engine.next_step(task_id)
    with pytest.raises(IllegalTransition, match="Step s2 is not in progress"):
        engine.report_outcome(task_id, "s2", "completed", "ok")
    assert engine.get_state(task_id).step("s2").status == StepStatus.PENDING


def test_step_without_criteria_passes_and_is_journaled(engine: StepEngine) -> None:
    task_id = engine.create_task(make_plan([{"id": "s1", "name": "notes", "action": "write"}]))
    engine.next_step(task_id)

    decision = engine.report_outcome(task_id, "s1", "completed")

    assert decision.kind == DecisionKind.CONTINUE
    assert decision.results == []
    assert "no_criteria" in [event.event_type for event in engine.history(task_id)]


def test_no_runnable_step_is_raised(engine: StepEngine) -> None:
    plan = Plan(
        plan_id="broken",
        goal="deadlock",
        steps=(
            Step(step_id="a", name="a", action="a", depends_on=("b",)),
            Step(step_id="b", name="b", action="b", depends_on=("a",)),
        ),
    )
    now = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)
    state = TaskState(
        task_id="deadlocked",
        plan_id=plan.plan_id,
        goal=plan.goal,
        status=TaskStatus.READY_TO_BUILD,
        steps=[StepState(step_id="a", max_attempts=3), StepState(step_id="b", max_attempts=3)],
        created_at=now,
        updated_at=now,
    )

    with pytest.raises(NoRunnableStep) as error:
        engine.machine.advance(state, plan)

    assert error.value.blocked_steps == ["a", "b"]
    assert not engine.store.exists("deadlocked")


def test_mandatory_checkpoint_failure_feeds_retry(engine: StepEngine, workdir: Path) -> None:
    task_id = engine.create_task(
        make_plan(
            [evidence_step("s1"), evidence_step("s2")],
            checkpoints=[
                {
                    "name": "artifact",
                    "after_step": "s1",
                    "mandatory": True,
                    "verify": [{"type": "file_exists", "path": "dist/app.whl"}],
                },
            ],
        ),
    )
    engine.next_step(task_id)

    retry = engine.report_outcome(task_id, "s1", "completed", "ok")

    assert retry.kind == DecisionKind.RETRY
    assert retry.results[0].criterion_id == "checkpoint:artifact#1"
    assert retry.results[0].failure_class == FailureClass.MISSING_FILE
    state = engine.get_state(task_id)
    assert state.step("s1").status == StepStatus.IN_PROGRESS
    assert [failure.name for failure in state.failed_checkpoints] == ["artifact"]
    assert state.checkpoints_reached == []

    (workdir / "dist").mkdir()
    (workdir / "dist" / "app.whl").write_text("", "utf-8")
    engine.next_step(task_id)
    passed = engine.report_outcome(task_id, "s1", "completed", "ok")

    assert passed.kind == DecisionKind.CONTINUE
    state = engine.get_state(task_id)
    assert [record.name for record in state.checkpoints_reached] == ["artifact"]
    assert state.rollback_to == "artifact"


def test_advisory_checkpoint_failure_does_not_block(engine: StepEngine) -> None:
    task_id = engine.create_task(
        make_plan(
            [evidence_step("s1"), evidence_step("s2")],
            checkpoints=[
                {
                    "name": "smoke",
                    "after_step": "s1",
                    "verify": [{"type": "file_exists", "path": "smoke.log"}],
                },
            ],
        ),
    )
    engine.next_step(task_id)

    decision = engine.report_outcome(task_id, "s1", "completed", "ok")

    assert decision.kind == DecisionKind.CONTINUE
    state = engine.get_state(task_id)
    assert state.step("s1").status == StepStatus.SUCCESS
    assert state.checkpoints_reached == []
    assert state.failed_checkpoints[0].mandatory is False
    events = [event.event_type for event in engine.history(task_id)]
    assert "checkpoint_failed" in events


def test_checkpoints_can_be_mandatory_by_configuration(
    home: Path,
    workdir: Path,
    journal: DecisionJournal,
) -> None:
    engine = StepEngine(
        store=TaskStateStore(home),
        journal=journal,
        workdir=workdir,
        mandatory_checkpoints=True,
    )
    task_id = engine.create_task(
        make_plan(
            [evidence_step("s1")],
            checkpoints=[
                {
                    "name": "smoke",
                    "after_step": "s1",
                    "verify": [{"type": "file_exists", "path": "smoke.log"}],
                },
            ],
        ),
    )
    engine.next_step(task_id)

    assert engine.report_outcome(task_id, "s1", "completed", "ok").kind == DecisionKind.RETRY


def _rollback_plan() -> dict[str, object]:
    return make_plan(
        [
            evidence_step("s1"),
            evidence_step("s2"),
            evidence_step("s3", max_attempts=2),
            evidence_step("s4"),
        ],
        checkpoints=[
            {"name": "foundation", "after_step": "s1"},
            {"name": "core", "after_step": "s2"},
        ],
    )


def test_rollback_resets_steps_after_anchor(engine: StepEngine) -> None:
    task_id = engine.create_task(_rollback_plan())
    _complete_step(engine, task_id, "s1")
    _complete_step(engine, task_id, "s2")
    engine.next_step(task_id)
    engine.report_outcome(task_id, "s3", "completed", "bad")
    before = engine.get_state(task_id)
    assert before.rollback_to == "core"

    after = engine.rollback(task_id, "foundation")

    assert after.status == TaskStatus.BUILDING
    assert after.step("s1") == before.step("s1")
    for step_id in ("s2", "s3", "s4"):
        assert after.step(step_id).status == StepStatus.PENDING
        assert after.step(step_id).attempts == 0
    assert [record.name for record in after.checkpoints_reached] == ["foundation"]
    assert after.rollback_to == "foundation"
    assert after.current_step == "s2"
    assert engine.get_state(task_id) == after

    action = engine.next_step(task_id)
    assert isinstance(action, StepAction)
    assert (action.step_id, action.attempt) == ("s2", 1)


def test_rollback_recovers_halted_task(engine: StepEngine) -> None:
    task_id = engine.create_task(_rollback_plan())
    _complete_step(engine, task_id, "s1")
    _complete_step(engine, task_id, "s2")
    for _ in range(2):
        engine.next_step(task_id)
        engine.report_outcome(task_id, "s3", "completed", "bad")
    assert engine.get_state(task_id).status == TaskStatus.HALTED

    after = engine.rollback(task_id, "core")

    assert after.status == TaskStatus.BUILDING
    assert after.halt_summary is None
    assert after.step("s2").status == StepStatus.SUCCESS
    assert after.step("s3").status == StepStatus.PENDING
    assert after.step("s3").attempts == 0
    _complete_step(engine, task_id, "s3")


def test_rollback_rejects_unknown_or_unreached_checkpoint(engine: StepEngine) -> None:
    task_id = engine.create_task(_rollback_plan())
    _complete_step(engine, task_id, "s1")

    with pytest.raises(IllegalTransition, match="Checkpoint core was not reached"):
        engine.rollback(task_id, "core")
    with pytest.raises(IllegalTransition, match="was not reached"):
        engine.rollback(task_id, "nonexistent")


def test_rollback_cannot_clear_failure_before_anchor(engine: StepEngine) -> None:
    task_id = engine.create_task(
        make_plan(
            [
                evidence_step("s1", max_attempts=1, depends_on=["s2"]),
                evidence_step("s2"),
            ],
            checkpoints=[{"name": "cp", "after_step": "s2"}],
        ),
    )
    _complete_step(engine, task_id, "s2")
    engine.next_step(task_id)
    engine.report_outcome(task_id, "s1", "completed", "bad")
    assert engine.get_state(task_id).status == TaskStatus.HALTED

    with pytest.raises(IllegalTransition, match="would not clear it"):
        engine.rollback(task_id, "cp")


def test_abort_is_terminal(engine: StepEngine) -> None:
    task_id = engine.create_task(make_plan([evidence_step("s1")]))
    engine.next_step(task_id)

    state = engine.abort(task_id, "requirements changed")

    assert state.status == TaskStatus.ABORTED
    assert state.abort_reason == "requirements changed"
    assert engine.store.is_archived(task_id)
    with pytest.raises(TaskAborted):
        engine.next_step(task_id)
    with pytest.raises(TaskAborted):
        engine.report_outcome(task_id, "s1", "completed", "ok")
    with pytest.raises(TaskAborted):
        engine.run_quality_gate(task_id)
    with pytest.raises(TaskAborted):
        engine.abort(task_id)
