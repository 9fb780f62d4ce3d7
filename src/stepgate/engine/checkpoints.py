"""Checkpoint verification and rollback."""

from __future__ import annotations

import copy
import logging

from stepgate.engine.errors import IllegalTransition
from stepgate.engine.models import (
    CheckpointFailure,
    CheckpointRecord,
    StepStatus,
    TaskState,
    TaskStatus,
)
from stepgate.engine.plan import CheckpointSpec, Plan
from stepgate.engine.validation import ValidationRunner
from stepgate.storage.common import utc_now

logger = logging.getLogger(__name__)


class CheckpointManager:
    """Record verified waypoints and rewind a task to one of them."""

    def __init__(self, runner: ValidationRunner, *, mandatory_by_default: bool = False) -> None:
        self.runner = runner
        self.mandatory_by_default = mandatory_by_default

    def is_mandatory(self, spec: CheckpointSpec) -> bool:
        return spec.mandatory or self.mandatory_by_default

    def try_checkpoint(self, state: TaskState, plan: Plan, spec: CheckpointSpec) -> bool:
        """Verify ``spec`` after its anchor succeeded; mutate ``state`` with the outcome.

        A failure is appended to ``state.failed_checkpoints`` with its results.
        """

        results = self.runner.evaluate_predicates(spec.verify, prefix=f"checkpoint:{spec.name}")
        if all(result.passed for result in results):
            state.checkpoints_reached = [
                record for record in state.checkpoints_reached if record.name != spec.name
            ]
            state.checkpoints_reached.append(
                CheckpointRecord(
                    name=spec.name,
                    anchor_step=spec.after_step,
                    step_index=plan.step_index(spec.after_step),
                    reached_at=utc_now(),
                ),
            )
            state.rollback_to = _furthest(state.checkpoints_reached)
            logger.info("Checkpoint %s reached for task %s", spec.name, state.task_id)
            return True

        mandatory = self.is_mandatory(spec)
        state.failed_checkpoints.append(
            CheckpointFailure(
                name=spec.name,
                anchor_step=spec.after_step,
                mandatory=mandatory,
                failed_at=utc_now(),
                results=results,
            ),
        )
        if mandatory:
            logger.info("Mandatory checkpoint %s failed for task %s", spec.name, state.task_id)
        else:
            logger.warning("Advisory checkpoint %s failed for task %s", spec.name, state.task_id)
        return False

    def rollback(self, state: TaskState, plan: Plan, name: str) -> TaskState:
        """Return a copy of ``state`` rewound to checkpoint ``name``.

        Steps after the anchor go back to pending with zero attempts. Status is
        left to the caller, which owns the legality table.
        """

        record = state.checkpoint(name)
        if record is None:
            raise IllegalTransition(f"Checkpoint {name} was not reached by task {state.task_id}")

        anchor_index = plan.step_index(record.anchor_step)
        for index, step_state in enumerate(state.steps):
            if index <= anchor_index and step_state.status == StepStatus.FAILED:
                raise IllegalTransition(
                    f"Step {step_state.step_id} failed at or before checkpoint {name}; "
                    "rolling back would not clear it",
                )

        rewound = copy.deepcopy(state)
        for index, step_state in enumerate(rewound.steps):
            if index > anchor_index:
                step_state.reset()

        rewound.checkpoints_reached = [
            checkpoint
            for checkpoint in rewound.checkpoints_reached
            if checkpoint.step_index <= anchor_index
        ]
        rewound.rollback_to = name
        rewound.halt_summary = None
        rewound.quality_gate = None
        following = anchor_index + 1
        rewound.current_step = (
            plan.steps[following].step_id if following < len(plan.steps) else None
        )
        return rewound


def status_after_rollback(state: TaskState) -> TaskStatus:
    """BUILDING while work remains, else back to the quality gate."""

    if state.all_steps_terminal():
        return TaskStatus.AWAITING_QUALITY_GATE
    return TaskStatus.BUILDING


def _furthest(records: list[CheckpointRecord]) -> str | None:
    if not records:
        return None
    return max(records, key=lambda record: (record.step_index, record.reached_at)).name
