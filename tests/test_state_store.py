from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from stepgate.engine.errors import StateCorrupted, TaskNotFound
from stepgate.engine.models import (
    CheckpointRecord,
    CriterionResult,
    FailureClass,
    StepState,
    StepStatus,
    TaskState,
    TaskStatus,
)
from stepgate.storage.state_store import TaskStateStore

pytestmark = [
    allure.epic("Plan Execution"),
    allure.feature("Task Records"),
]

CREATED_AT = datetime(2026, 10, 18, 7, 30, tzinfo=UTC)


def _state(task_id: str = "t1", status: TaskStatus = TaskStatus.BUILDING) -> TaskState:
    return TaskState(
        task_id=task_id,
        plan_id="plan-1",
        goal="Ship it",
        status=status,
        current_step="s2",
        steps=[
            StepState(
                step_id="s1",
                max_attempts=3,
                status=StepStatus.SUCCESS,
                attempts=2,
                last_results=[
                    CriterionResult(
                        criterion_id="c1",
                        description="build ok",
                        passed=True,
                        observed="ok",
                        expected="output contains 'ok'",
                    ),
                ],
                started_at=CREATED_AT,
                finished_at=CREATED_AT,
            ),
            StepState(
                step_id="s2",
                max_attempts=2,
                status=StepStatus.IN_PROGRESS,
                attempts=1,
                last_results=[
                    CriterionResult(
                        criterion_id="c1",
                        description="tests pass",
                        passed=False,
                        observed="exit code 1",
                        expected="exit code 0",
                        failure_class=FailureClass.EXIT_CODE,
                    ),
                ],
            ),
        ],
        checkpoints_reached=[
            CheckpointRecord(name="cp", anchor_step="s1", step_index=0, reached_at=CREATED_AT),
        ],
        rollback_to="cp",
        created_at=CREATED_AT,
        updated_at=CREATED_AT,
    )


def test_save_and_load_round_trip(tmp_path: Path) -> None:
    store = TaskStateStore(tmp_path)
    state = _state()

    store.save(state)

    assert store.load("t1") == state
    assert not list((tmp_path / "tasks" / "t1").glob("*.tmp"))


def test_record_is_flat_readable_json(tmp_path: Path) -> None:
    store = TaskStateStore(tmp_path)
    store.save(_state())

    text = (tmp_path / "tasks" / "t1" / "state.json").read_text("utf-8")
    payload = json.loads(text)

    assert text.startswith("{\n  ")
    assert payload["status"] == "BUILDING"
    assert payload["current_step"] == "s2"
    assert [step["status"] for step in payload["steps"]] == ["success", "in_progress"]
    assert [step["attempts"] for step in payload["steps"]] == [2, 1]
    assert payload["checkpoints_reached"][0]["name"] == "cp"
    assert payload["created_at"] == "2026-10-18T07:30:00+00:00"


def test_load_missing_task_raises(tmp_path: Path) -> None:
    with pytest.raises(TaskNotFound, match="Task not found: ghost"):
        TaskStateStore(tmp_path).load("ghost")


def test_load_corrupted_record_raises(tmp_path: Path) -> None:
    store = TaskStateStore(tmp_path)
    path = tmp_path / "tasks" / "t1" / "state.json"
    path.parent.mkdir(parents=True)
    path.write_text("{truncated", "utf-8")

    with pytest.raises(StateCorrupted):
        store.load("t1")

    path.write_text(json.dumps({"task_id": "t1", "status": "SLEEPING"}), "utf-8")
    with pytest.raises(StateCorrupted, match="Malformed task record"):
        store.load("t1")


def test_plan_copy_is_written_once(tmp_path: Path) -> None:
    store = TaskStateStore(tmp_path)
    store.save_plan("t1", {"id": "p"})

    with pytest.raises(FileExistsError):
        store.save_plan("t1", {"id": "other"})
    assert store.load_plan("t1") == {"id": "p"}


def test_archive_moves_task_and_keeps_it_loadable(tmp_path: Path) -> None:
    store = TaskStateStore(tmp_path)
    store.save(_state(status=TaskStatus.COMPLETE))
    store.save_plan("t1", {"id": "p"})

    target = store.archive("t1")

    assert target == tmp_path / "archive" / "t1"
    assert not (tmp_path / "tasks" / "t1").exists()
    assert store.is_archived("t1")
    assert store.exists("t1")
    assert store.load("t1").status == TaskStatus.COMPLETE
    assert store.load_plan("t1") == {"id": "p"}
    assert store.archive("t1") == target


def test_list_states_skips_unreadable_records(tmp_path: Path, caplog) -> None:
    store = TaskStateStore(tmp_path)
    store.save(_state("a"))
    store.save(_state("b", status=TaskStatus.COMPLETE))
    store.archive("b")
    broken = tmp_path / "tasks" / "c" / "state.json"
    broken.parent.mkdir(parents=True)
    broken.write_text("[]", "utf-8")

    with caplog.at_level("WARNING", logger="stepgate.storage.state_store"):
        active = store.list_states()
    everything = store.list_states(include_archived=True)

    assert [state.task_id for state in active] == ["a"]
    assert sorted(state.task_id for state in everything) == ["a", "b"]
    assert "Skipping unreadable task record" in caplog.text
