from __future__ import annotations

from taskgraph.cache import TTLCache
from taskgraph.graph import TaskGraph


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_their_ttl() -> None:
    clock = _Clock()
    cache = TTLCache(default_ttl_s=10.0, clock=clock)

    cache.set("a", 1)
    cache.set("b", 2, ttl_s=30.0)
    clock.now += 10.0

    assert cache.get("a") is None
    assert cache.get("b") == 2
    assert len(cache) == 1


def test_non_positive_ttl_disables_storage() -> None:
    cache = TTLCache()

    cache.set("a", 1, ttl_s=0)

    assert cache.get("a") is None
    assert len(cache) == 0


def test_get_or_set_calls_the_factory_once() -> None:
    cache = TTLCache()
    calls: list[int] = []

    def factory() -> str:
        calls.append(1)
        return "value"

    assert cache.get_or_set("k", factory) == "value"
    assert cache.get_or_set("k", factory) == "value"
    assert len(calls) == 1


def test_clear_prefix_only_touches_matching_keys() -> None:
    cache = TTLCache()
    cache.set("order:*:*", 1)
    cache.set("order:s:todo", 2)
    cache.set("graph:t", 3)

    assert cache.clear_prefix("order:") == 2
    assert cache.get("graph:t") == 3

    cache.delete("graph:t")
    assert len(cache) == 0


def test_resource_saves_refresh_cached_graph_and_usage(graph: TaskGraph) -> None:
    a = graph.create_task("a")
    b = graph.create_task("b")
    assert graph.get_dependency_graph(a["id"]) == {"nodes": [], "edges": []}

    saved = graph.save_dependencies(a["id"], [{"kind": "file", "name": "f.py", "action": "uses"}])
    resource_id = saved["resource_ids"][0]
    assert len(graph.get_dependency_graph(a["id"])["edges"]) == 1
    assert len(graph.get_resource_usage(resource_id)["tasks"]) == 1

    graph.save_dependencies(b["id"], [{"kind": "file", "name": "f.py", "action": "uses"}])
    assert len(graph.get_resource_usage(resource_id)["tasks"]) == 2


def test_cached_results_are_copies(graph: TaskGraph) -> None:
    a = graph.create_task("a")
    graph.save_dependencies(a["id"], [{"kind": "file", "name": "f.py", "action": "uses"}])

    graph.get_dependency_graph(a["id"])["nodes"].clear()

    assert len(graph.get_dependency_graph(a["id"])["nodes"]) == 1


def test_task_updates_refresh_cached_usage_rows(graph: TaskGraph) -> None:
    a = graph.create_task("a")
    saved = graph.save_dependencies(a["id"], [{"kind": "file", "name": "f.py", "action": "uses"}])
    resource_id = saved["resource_ids"][0]
    assert graph.get_resource_usage(resource_id)["tasks"][0]["task_status"] == "backlog"

    graph.set_status(a["id"], "todo")

    assert graph.get_resource_usage(resource_id)["tasks"][0]["task_status"] == "todo"


def test_values_computed_across_an_invalidation_are_not_stored() -> None:
    cache = TTLCache()

    def racing_factory() -> str:
        cache.clear_prefix("graph:")
        return "stale"

    assert cache.get_or_set("graph:t", racing_factory) == "stale"
    assert cache.get("graph:t") is None

    generation = cache.generation
    cache.delete("other")
    assert cache.set("graph:t", "late", generation=generation) is False
    assert cache.set("graph:t", "fresh", generation=cache.generation) is True
    assert cache.get("graph:t") == "fresh"


def test_write_during_a_cached_read_is_visible_afterwards(graph: TaskGraph) -> None:
    a = graph.create_task("a")
    assert graph.cache is not None

    def snapshot_then_write() -> dict:
        snapshot = graph.resources.dependency_graph(a["id"])
        graph.save_dependencies(a["id"], [{"kind": "file", "name": "f.py", "action": "uses"}])
        return snapshot

    stale = graph.cache.get_or_set(f"graph:{a['id']}", snapshot_then_write, ttl_s=60.0)

    assert stale == {"nodes": [], "edges": []}
    assert len(graph.get_dependency_graph(a["id"])["edges"]) == 1


def test_shared_resource_path_updates_reach_other_cached_graphs(graph: TaskGraph) -> None:
    a = graph.create_task("a")
    b = graph.create_task("b")
    graph.save_dependencies(a["id"], [{"kind": "file", "name": "x.py", "action": "uses"}])
    assert graph.get_dependency_graph(a["id"])["nodes"][0]["path"] is None

    graph.save_dependencies(
        b["id"],
        [{"kind": "file", "name": "x.py", "path": "src/x.py", "action": "modifies"}],
    )

    assert graph.get_dependency_graph(a["id"])["nodes"][0]["path"] == "src/x.py"
