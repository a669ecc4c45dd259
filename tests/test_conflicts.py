from __future__ import annotations

from pathlib import Path

import pytest

from taskgraph.conflicts import classify, describe
from taskgraph.graph import TaskGraph


def _touch(graph: TaskGraph, task_id: str, *actions: str, name: str = "shared.py") -> dict:
    return graph.save_dependencies(
        task_id,
        [{"kind": "file", "name": name, "action": action} for action in actions],
    )


@pytest.mark.parametrize(
    ("mine", "theirs", "expected"),
    [
        ("modifies", "modifies", ("concurrent_write", "high")),
        ("creates", "modifies", ("concurrent_write", "high")),
        ("creates", "creates", ("concurrent_write", "high")),
        ("modifies", "uses", ("concurrent_modify", "medium")),
        ("uses", "modifies", ("concurrent_modify", "medium")),
        ("uses", "uses", ("potential_collision", "low")),
        ("creates", "uses", ("potential_collision", "low")),
    ],
)
def test_classify_action_pairs(mine: str, theirs: str, expected: tuple[str, str]) -> None:
    assert classify(mine, theirs) == expected


def test_concurrent_writes_are_high_from_both_sides(graph: TaskGraph) -> None:
    a = graph.create_task("a", status="todo")
    b = graph.create_task("b", status="in_progress")

    assert _touch(graph, a["id"], "modifies")["conflicts"] == []
    saved = _touch(graph, b["id"], "modifies")

    assert len(saved["conflicts"]) == 1
    conflict = saved["conflicts"][0]
    assert conflict["task_id"] == a["id"]
    assert conflict["task_title"] == "a"
    assert conflict["resource_name"] == "shared.py"
    assert conflict["conflict_type"] == "concurrent_write"
    assert conflict["severity"] == "high"
    assert conflict["description"] == describe("concurrent_write", "shared.py")

    reverse = graph.get_conflicts(a["id"])
    assert [(c["task_id"], c["severity"]) for c in reverse] == [(b["id"], "high")]


def test_shared_reads_are_low_severity(graph: TaskGraph) -> None:
    a = graph.create_task("a", status="todo")
    b = graph.create_task("b", status="todo")
    _touch(graph, a["id"], "uses")
    _touch(graph, b["id"], "uses")

    for task_id in (a["id"], b["id"]):
        conflicts = graph.get_conflicts(task_id)
        assert [(c["conflict_type"], c["severity"]) for c in conflicts] == [
            ("potential_collision", "low")
        ]


def test_modify_while_in_use_is_medium(graph: TaskGraph) -> None:
    a = graph.create_task("a", status="todo")
    b = graph.create_task("b", status="todo")
    _touch(graph, a["id"], "modifies")
    _touch(graph, b["id"], "uses")

    assert graph.get_conflicts(a["id"])[0]["conflict_type"] == "concurrent_modify"
    assert graph.get_conflicts(b["id"])[0]["severity"] == "medium"


@pytest.mark.parametrize("inactive", ["backlog", "done"])
def test_inactive_tasks_never_conflict(graph: TaskGraph, inactive: str) -> None:
    a = graph.create_task("a", status="todo")
    b = graph.create_task("b", status=inactive)
    _touch(graph, a["id"], "modifies")
    _touch(graph, b["id"], "modifies")

    assert graph.get_conflicts(a["id"]) == []


def test_one_finding_per_task_and_resource_at_highest_severity(graph: TaskGraph) -> None:
    a = graph.create_task("a", status="todo")
    b = graph.create_task("b", status="todo")
    _touch(graph, a["id"], "uses", "modifies")
    _touch(graph, b["id"], "modifies")
    _touch(graph, b["id"], "uses", name="other.py")
    _touch(graph, a["id"], "uses", name="other.py")

    conflicts = graph.get_conflicts(a["id"])

    assert sorted((c["resource_name"], c["severity"]) for c in conflicts) == [
        ("other.py", "low"),
        ("shared.py", "high"),
    ]


def test_conflicts_track_status_changes_without_caching(graph: TaskGraph) -> None:
    a = graph.create_task("a", status="todo")
    b = graph.create_task("b", status="todo")
    _touch(graph, a["id"], "modifies")
    _touch(graph, b["id"], "modifies")
    assert len(graph.get_conflicts(a["id"])) == 1

    graph.set_status(b["id"], "done")

    assert graph.get_conflicts(a["id"]) == []


def test_unknown_task_has_no_conflicts(graph: TaskGraph) -> None:
    assert graph.get_conflicts("task-missing") == []
    assert graph.get_conflicts("") == []


def test_active_statuses_come_from_config(tmp_path: Path) -> None:
    config = tmp_path / ".taskgraph" / "taskgraph.toml"
    config.parent.mkdir(parents=True)
    config.write_text('[conflicts]\nactive_statuses = ["in_progress"]\n', encoding="utf-8")
    graph = TaskGraph.from_workdir(tmp_path)

    a = graph.create_task("a", status="todo")
    b = graph.create_task("b", status="todo")
    c = graph.create_task("c", status="in_progress")
    _touch(graph, a["id"], "uses")
    _touch(graph, b["id"], "uses")
    _touch(graph, c["id"], "uses")

    assert [row["task_id"] for row in graph.get_conflicts(a["id"])] == [c["id"]]


def test_create_against_use_has_its_own_description(graph: TaskGraph) -> None:
    a = graph.create_task("a", status="todo")
    b = graph.create_task("b", status="todo")
    _touch(graph, a["id"], "creates")
    _touch(graph, b["id"], "uses")

    conflict = graph.get_conflicts(a["id"])[0]

    assert conflict["conflict_type"] == "potential_collision"
    assert conflict["description"] == '"shared.py" being created while another task uses it'
    assert "reading" not in graph.get_conflicts(b["id"])[0]["description"]
    assert describe("potential_collision", "shared.py").startswith("Both tasks reading")
