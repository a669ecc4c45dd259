from __future__ import annotations

import pytest

from taskgraph.errors import NotFoundError, ValidationError
from taskgraph.graph import TaskGraph
from taskgraph.stores.resource import ResourceSpec


def _count(graph: TaskGraph, table: str) -> int:
    with graph.db.reader() as conn:
        return int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])


def test_resource_upsert_is_idempotent(graph: TaskGraph) -> None:
    a = graph.create_task("a")
    b = graph.create_task("b")
    entry = {"kind": "file", "name": "a.ts", "action": "modifies"}

    first = graph.save_dependencies(a["id"], [entry])
    second = graph.save_dependencies(a["id"], [entry])
    third = graph.save_dependencies(b["id"], [entry])

    assert first["resource_ids"] == second["resource_ids"] == third["resource_ids"]
    assert _count(graph, "resources") == 1
    assert _count(graph, "resource_edges") == 2


def test_distinct_actions_are_distinct_edges(graph: TaskGraph) -> None:
    a = graph.create_task("a")

    result = graph.save_dependencies(
        a["id"],
        [
            {"kind": "component", "name": "Cart", "action": "uses"},
            {"kind": "component", "name": "Cart", "action": "modifies"},
        ],
    )

    assert len(result["resource_ids"]) == 1
    dep_graph = graph.get_dependency_graph(a["id"])
    assert [node["name"] for node in dep_graph["nodes"]] == ["Cart"]
    assert sorted(edge["action"] for edge in dep_graph["edges"]) == ["modifies", "uses"]


def test_same_name_with_different_kind_is_a_different_resource(graph: TaskGraph) -> None:
    a = graph.create_task("a")

    result = graph.save_dependencies(
        a["id"],
        [
            {"kind": "file", "name": "user", "action": "uses"},
            {"kind": "model", "name": "user", "action": "uses"},
        ],
    )

    assert len(result["resource_ids"]) == 2


def test_path_is_kept_when_absent_and_updated_when_supplied(graph: TaskGraph) -> None:
    a = graph.create_task("a")
    graph.save_dependencies(
        a["id"],
        [{"kind": "file", "name": "api.py", "path": "src/api.py", "action": "uses"}],
    )
    graph.save_dependencies(a["id"], [{"kind": "file", "name": "api.py", "action": "uses"}])
    assert graph.resources.find("file", "api.py")["path"] == "src/api.py"

    graph.save_dependencies(
        a["id"],
        [{"kind": "file", "name": "api.py", "path": "lib/api.py", "action": "uses"}],
    )
    assert graph.resources.find("file", "api.py")["path"] == "lib/api.py"


def test_confidence_is_stored_but_does_not_gate_the_edge(graph: TaskGraph) -> None:
    a = graph.create_task("a")

    graph.save_dependencies(
        a["id"],
        [
            ResourceSpec(kind="api", name="/v1/orders", action="creates", confidence=0.0),
            {"type": "model", "name": "Order", "action": "uses"},
        ],
    )

    edges = graph.get_dependency_graph(a["id"])["edges"]
    assert [edge["confidence"] for edge in edges] == [0.0, None]


def test_batch_is_all_or_nothing(graph: TaskGraph) -> None:
    a = graph.create_task("a")

    with pytest.raises(ValidationError, match="invalid resource action"):
        graph.save_dependencies(
            a["id"],
            [
                {"kind": "file", "name": "ok.py", "action": "uses"},
                {"kind": "file", "name": "bad.py", "action": "deletes"},
            ],
        )
    with pytest.raises(ValidationError, match="between 0 and 1"):
        graph.save_dependencies(
            a["id"],
            [{"kind": "file", "name": "ok.py", "action": "uses", "confidence": 1.5}],
        )
    with pytest.raises(ValidationError, match="invalid resource kind"):
        graph.save_dependencies(a["id"], [{"kind": "table", "name": "t", "action": "uses"}])

    assert _count(graph, "resources") == 0
    assert _count(graph, "resource_edges") == 0


def test_save_for_unknown_task_is_not_found(graph: TaskGraph) -> None:
    graph.create_task("a")

    with pytest.raises(NotFoundError, match="unknown task: task-missing"):
        graph.save_dependencies(
            "task-missing",
            [{"kind": "file", "name": "a.ts", "action": "uses"}],
        )
    assert _count(graph, "resources") == 0


def test_resource_usage_lists_every_task_and_action(graph: TaskGraph) -> None:
    a = graph.create_task("a", status="todo")
    b = graph.create_task("b")
    saved = graph.save_dependencies(a["id"], [{"kind": "file", "name": "db.py", "action": "uses"}])
    graph.save_dependencies(b["id"], [{"kind": "file", "name": "db.py", "action": "modifies"}])

    usage = graph.get_resource_usage(saved["resource_ids"][0])

    assert usage["resource"]["kind"] == "file"
    assert usage["resource"]["name"] == "db.py"
    assert [(row["task_id"], row["action"], row["task_status"]) for row in usage["tasks"]] == [
        (a["id"], "uses", "todo"),
        (b["id"], "modifies", "backlog"),
    ]


def test_lookups_are_empty_for_unknown_ids(graph: TaskGraph) -> None:
    assert graph.get_dependency_graph("task-missing") == {"nodes": [], "edges": []}
    assert graph.get_resource_usage("res-missing") == {"resource": None, "tasks": []}


def test_deleting_a_task_removes_its_edges_but_keeps_resources(graph: TaskGraph) -> None:
    a = graph.create_task("a")
    saved = graph.save_dependencies(a["id"], [{"kind": "file", "name": "x.py", "action": "uses"}])

    graph.delete_task(a["id"])

    assert _count(graph, "resource_edges") == 0
    usage = graph.get_resource_usage(saved["resource_ids"][0])
    assert usage["resource"] is not None
    assert usage["tasks"] == []
