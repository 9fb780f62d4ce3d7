"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from stepgate.engine.service import StepEngine
from stepgate.storage.journal import DecisionJournal
from stepgate.storage.state_store import TaskStateStore


@pytest.fixture()
def home(tmp_path: Path) -> Path:
    return tmp_path / "home"


@pytest.fixture()
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture()
def journal(home: Path):
    journal = DecisionJournal(home / "journal.db")
    journal.init_schema()
    yield journal
    journal.close()


@pytest.fixture()
def engine(home: Path, workdir: Path, journal: DecisionJournal) -> StepEngine:
    return StepEngine(
        store=TaskStateStore(home),
        journal=journal,
        workdir=workdir,
        command_timeout_seconds=30,
    )
