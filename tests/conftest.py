from __future__ import annotations

from pathlib import Path

import pytest

from taskgraph.events import TaskGraphEvent
from taskgraph.graph import TaskGraph
from taskgraph.stores.state import STATE_DIR_ENV


@pytest.fixture(autouse=True)
def _isolated_state_dir(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(STATE_DIR_ENV, raising=False)


@pytest.fixture
def events() -> list[TaskGraphEvent]:
    return []


@pytest.fixture
def graph(tmp_path: Path, events: list[TaskGraphEvent]) -> TaskGraph:
    return TaskGraph.from_workdir(tmp_path, event_sink=events.append)
