"""File-backed task records: one flat JSON document per task."""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Any

from stepgate.engine.errors import StateCorrupted, TaskNotFound
from stepgate.engine.models import TaskState
from stepgate.storage.common import load_json, write_json_atomic

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"
PLAN_FILENAME = "plan.json"
RECOVERY_FILENAME = "recovery.json"


class TaskStateStore:
    """Durable per-task records under ``<root>/tasks`` and ``<root>/archive``.

    Every write goes through ``write_json_atomic`` so an interrupted process
    leaves either the previous record or the new one, never a torn file.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.tasks_dir = root / "tasks"
        self.archive_dir = root / "archive"

    def task_dir(self, task_id: str) -> Path:
        """Directory holding the task's files, active or archived."""

        active = self.tasks_dir / task_id
        if active.exists():
            return active
        archived = self.archive_dir / task_id
        if archived.exists():
            return archived
        return active

    def exists(self, task_id: str) -> bool:
        return (self.task_dir(task_id) / STATE_FILENAME).exists()

    def is_archived(self, task_id: str) -> bool:
        return (self.archive_dir / task_id / STATE_FILENAME).exists()

    def save(self, state: TaskState) -> None:
        write_json_atomic(self.task_dir(state.task_id) / STATE_FILENAME, state.to_dict())

    def load(self, task_id: str) -> TaskState:
        path = self.task_dir(task_id) / STATE_FILENAME
        if not path.exists():
            raise TaskNotFound(task_id)
        return TaskState.from_dict(self._read(path))

    def save_plan(self, task_id: str, payload: dict[str, Any]) -> None:
        """Store the read-only plan copy; refuses to overwrite it."""

        path = self.task_dir(task_id) / PLAN_FILENAME
        if path.exists():
            raise FileExistsError(f"Plan copy already stored for task {task_id}")
        write_json_atomic(path, payload)

    def load_plan(self, task_id: str) -> dict[str, Any]:
        path = self.task_dir(task_id) / PLAN_FILENAME
        if not path.exists():
            raise TaskNotFound(task_id)
        return self._read(path)

    def recovery_path(self, task_id: str) -> Path:
        return self.task_dir(task_id) / RECOVERY_FILENAME

    def list_states(self, *, include_archived: bool = False) -> list[TaskState]:
        """Load every readable task record; unreadable ones are logged and skipped."""

        roots = [self.tasks_dir]
        if include_archived:
            roots.append(self.archive_dir)

        states: list[TaskState] = []
        for base in roots:
            if not base.exists():
                continue
            for path in sorted(base.glob(f"*/{STATE_FILENAME}")):
                try:
                    states.append(TaskState.from_dict(self._read(path)))
                except StateCorrupted as error:
                    logger.warning("Skipping unreadable task record %s: %s", path, error)
        return states

    def archive(self, task_id: str) -> Path:
        """Move a finished task's directory under ``archive/``."""

        source = self.tasks_dir / task_id
        target = self.archive_dir / task_id
        if not source.exists():
            if target.exists():
                return target
            raise TaskNotFound(task_id)
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        if target.exists():
            shutil.rmtree(target)
        shutil.move(str(source), str(target))
        logger.info("Archived task %s to %s", task_id, target)
        return target

    def _read(self, path: Path) -> dict[str, Any]:
        try:
            return load_json(path)
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError) as error:
            raise StateCorrupted(f"Cannot read {path}: {error}") from error
