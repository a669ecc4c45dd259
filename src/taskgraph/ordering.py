"""Execution order over a task subset (Kahn's algorithm).

Only edges whose endpoints are both inside the subset count; a dependency on
a task outside it is ignored. Ties among ready tasks keep input order. When
not every task can be placed, the unplaced remainder contains a cycle and the
first closed path found by a depth-first walk is reported instead.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .cache import TTLCache
from .status import normalize_status
from .stores.db import Database
from .stores.task import dependencies_by_task


@dataclass(frozen=True)
class OrderedTask:
    id: str
    title: str
    position: int
    dependencies: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "position": self.position,
            "dependencies": list(self.dependencies),
        }


@dataclass(frozen=True)
class ExecutionOrder:
    ok: bool
    order: tuple[OrderedTask, ...] = ()
    cycle: tuple[str, ...] = ()
    error: str | None = None

    @property
    def positions(self) -> dict[str, int]:
        return {item.id: item.position for item in self.order}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ok": self.ok,
            "order": [item.to_dict() for item in self.order],
        }
        if not self.ok:
            payload["cycle"] = list(self.cycle)
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class OrderInput:
    id: str
    title: str = ""
    dependencies: tuple[str, ...] = field(default_factory=tuple)


def _restricted_dependencies(tasks: Sequence[OrderInput]) -> dict[str, list[str]]:
    members = {task.id for task in tasks}
    out: dict[str, list[str]] = {}
    for task in tasks:
        deps: list[str] = []
        for dep in task.dependencies:
            if dep in members and dep != task.id and dep not in deps:
                deps.append(dep)
        out[task.id] = deps
    return out


def find_cycle(
    tasks: Sequence[OrderInput],
    placed: set[str],
    dependencies: Mapping[str, Sequence[str]],
) -> list[str]:
    remainder = [task.id for task in tasks if task.id not in placed]
    visited: set[str] = set()
    on_stack: set[str] = set()
    path: list[str] = []
    # explicit stack of dependency iterators, parallel to ``path``
    pending: list[Iterator[str]] = []

    for root in remainder:
        if root in visited:
            continue
        visited.add(root)
        on_stack.add(root)
        path.append(root)
        pending.append(iter(dependencies.get(root, ())))
        while pending:
            for dep in pending[-1]:
                if dep in placed:
                    continue
                if dep in on_stack:
                    return path[path.index(dep):]
                if dep not in visited:
                    visited.add(dep)
                    on_stack.add(dep)
                    path.append(dep)
                    pending.append(iter(dependencies.get(dep, ())))
                    break
            else:
                pending.pop()
                on_stack.discard(path.pop())
    return []


def topological_order(tasks: Sequence[OrderInput]) -> ExecutionOrder:
    dependencies = _restricted_dependencies(tasks)
    in_degree = {task.id: len(dependencies[task.id]) for task in tasks}
    dependents: dict[str, list[str]] = {task.id: [] for task in tasks}
    for task in tasks:
        for dep in dependencies[task.id]:
            dependents[dep].append(task.id)

    titles = {task.id: task.title for task in tasks}
    queue: deque[str] = deque(task.id for task in tasks if in_degree[task.id] == 0)
    order: list[OrderedTask] = []
    while queue:
        task_id = queue.popleft()
        order.append(
            OrderedTask(
                id=task_id,
                title=titles[task_id],
                position=len(order) + 1,
                dependencies=tuple(dependencies[task_id]),
            )
        )
        for nxt in dependents[task_id]:
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                queue.append(nxt)

    if len(order) == len(tasks):
        return ExecutionOrder(ok=True, order=tuple(order))

    cycle = find_cycle(tasks, {item.id for item in order}, dependencies)
    return ExecutionOrder(
        ok=False,
        cycle=tuple(cycle),
        error="circular dependency detected: " + " -> ".join([*cycle, *cycle[:1]]),
    )


def order_cache_key(story_id: str | None, status: str | None) -> str:
    return f"order:{story_id or '*'}:{status or '*'}"


@dataclass
class ExecutionOrderEngine:
    db: Database
    cache: TTLCache | None = None
    ttl_s: float = 300.0

    def load_subset(
        self,
        *,
        story_id: str | None = None,
        status: str | None = None,
    ) -> list[OrderInput]:
        if not self.db.exists():
            return []
        where: list[str] = []
        params: list[Any] = []
        if story_id:
            where.append("parent_story_id = ?")
            params.append(story_id)
        if status:
            where.append("status = ?")
            params.append(status)
        query = "SELECT id, title FROM tasks"
        if where:
            query += " WHERE " + " AND ".join(where)
        query += " ORDER BY seq ASC"

        with self.db.reader() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
            ids = [str(row["id"]) for row in rows]
            deps = dependencies_by_task(conn, ids)
        return [
            OrderInput(
                id=str(row["id"]),
                title=str(row["title"]),
                dependencies=tuple(deps.get(str(row["id"]), [])),
            )
            for row in rows
        ]

    def execution_order(
        self,
        *,
        story_id: str | None = None,
        status: str | None = None,
    ) -> ExecutionOrder:
        story_key = str(story_id).strip() if story_id else None
        status_key = normalize_status(status) if status else None
        key = order_cache_key(story_key, status_key)
        if self.cache is None:
            return topological_order(self.load_subset(story_id=story_key, status=status_key))
        return self.cache.get_or_set(
            key,
            lambda: topological_order(self.load_subset(story_id=story_key, status=status_key)),
            ttl_s=self.ttl_s,
        )
