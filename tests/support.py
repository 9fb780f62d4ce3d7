"""Plan builders shared by the test modules."""

from __future__ import annotations

import shlex
import sys
from typing import Any


def py_command(code: str) -> str:
    """Shell command running ``code`` with the current interpreter."""

    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def evidence_step(  # noqa: PLR0913
    step_id: str,
    *,
    expected: str = "ok",
    depends_on: list[str] | None = None,
    max_attempts: int = 3,
    escalation: str = "halt_with_context",
    fix_hints: list[str] | None = None,
) -> dict[str, Any]:
    """Step whose only criterion matches the reported evidence."""

    return {
        "id": step_id,
        "name": f"Step {step_id}",
        "action": f"perform {step_id}",
        "depends_on": depends_on or [],
        "success_criteria": [
            {
                "id": f"{step_id}-evidence",
                "description": f"evidence for {step_id} contains {expected}",
                "check": {"type": "evidence", "match": "contains", "expected": expected},
            },
        ],
        "retry_behavior": {
            "max_attempts": max_attempts,
            "fix_hints": fix_hints if fix_hints is not None else [f"fix {step_id}"],
            "escalation": escalation,
        },
    }


def make_plan(
    steps: list[dict[str, Any]],
    *,
    checkpoints: list[dict[str, Any]] | None = None,
    checks: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    return {
        "id": "plan-under-test",
        "goal": "Ship the feature",
        "steps": steps,
        "checkpoints": checkpoints or [],
        "quality_gate": {"checks": checks or []},
    }
