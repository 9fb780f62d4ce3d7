"""Append-only decision journal backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from sqlmodel import Session, col, select

from stepgate.engine.models import TaskEventView, TaskStatus
from stepgate.storage.alembic_runner import upgrade_head
from stepgate.storage.common import build_sqlite_engine, utc_now
from stepgate.storage.sqlmodel_models import TaskEvent


class DecisionJournal:
    """Audit trail of every engine decision, one row per event."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def record(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None = None,
        status_to: TaskStatus | None = None,
        step_id: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append one event."""

        with Session(self.engine) as session:
            session.add(
                TaskEvent(
                    task_id=task_id,
                    event_type=event_type,
                    status_from=status_from.value if status_from is not None else None,
                    status_to=status_to.value if status_to is not None else None,
                    step_id=step_id,
                    details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                    if details
                    else None,
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def list_events(self, task_id: str) -> list[TaskEventView]:
        """Return the ordered event stream of one task."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    step_id=row.step_id,
                    created_at=_to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events


def _to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
