from __future__ import annotations

import copy
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .cache import TTLCache
from .config import TaskGraphFileConfig, load_config
from .conflicts import ConflictDetector
from .deletion import DeletionGuard
from .events import DEPENDENCIES_SAVED, EventSink, TaskGraphEvent, make_event
from .ordering import ExecutionOrder, ExecutionOrderEngine
from .status import story_health
from .stores.db import Database
from .stores.resource import ResourceSpec, ResourceStore
from .stores.state import now_ms
from .stores.task import TaskStore


_ORDER_PREFIX = "order:"
_GRAPH_PREFIX = "graph:"
_USAGE_PREFIX = "usage:"


@dataclass
class TaskGraph:
    """Entry point for the task/resource graph.

    Owns one ``Database`` plus the stores and engines layered over it, a
    per-instance read cache, and an optional event sink. Every mutating
    method invalidates the cache entries its write could have changed
    before returning, so a caller never reads its own stale data.
    """

    db: Database
    config: TaskGraphFileConfig
    event_sink: EventSink | None = None
    cache: TTLCache | None = None

    def __post_init__(self) -> None:
        if self.cache is None and self.config.cache.enabled:
            self.cache = TTLCache(default_ttl_s=self.config.cache.execution_order_ttl_s)
        self.tasks = TaskStore(self.db, event_sink=self._emit)
        self.resources = ResourceStore(self.db)
        self.detector = ConflictDetector(
            self.db,
            active_statuses=self.config.conflicts.active_statuses,
        )
        self.ordering = ExecutionOrderEngine(
            self.db,
            cache=self.cache,
            ttl_s=self.config.cache.execution_order_ttl_s,
        )
        self.guard = DeletionGuard(self.db, event_sink=self._emit)

    @classmethod
    def from_workdir(
        cls,
        cwd: Path | None = None,
        *,
        create: bool = True,
        event_sink: EventSink | None = None,
    ) -> "TaskGraph":
        db = Database.from_workdir(cwd, create=create)
        return cls(db, load_config(db.root), event_sink=event_sink)

    def _emit(self, event: TaskGraphEvent) -> None:
        if self.event_sink is not None:
            self.event_sink(event)

    def _invalidate(self, *prefixes: str) -> None:
        if self.cache is None:
            return
        if not prefixes:
            self.cache.clear()
            return
        for prefix in prefixes:
            self.cache.clear_prefix(prefix)

    def _cached(self, key: str, factory: Callable[[], Any], *, ttl_s: float) -> Any:
        if self.cache is None:
            return factory()
        return copy.deepcopy(self.cache.get_or_set(key, factory, ttl_s=ttl_s))

    # tasks

    def create_task(
        self,
        title: str,
        *,
        description: str = "",
        status: str = "backlog",
        parent_story_id: str | None = None,
        is_story: bool = False,
        dependencies: Iterable[str] | None = None,
        priority: str | None = None,
        tags: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        task = self.tasks.create(
            title,
            description=description,
            status=status,
            parent_story_id=parent_story_id,
            is_story=is_story,
            dependencies=dependencies,
            priority=priority,
            tags=tags,
        )
        self._invalidate(_ORDER_PREFIX)
        return task

    def create_story(self, title: str, *, description: str = "", **kwargs: Any) -> dict[str, Any]:
        return self.create_task(title, description=description, is_story=True, **kwargs)

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        return self.tasks.get(task_id)

    def require_task(self, task_id: str) -> dict[str, Any]:
        return self.tasks.require(task_id)

    def list_tasks(
        self,
        *,
        status: str | None = None,
        story_id: str | None = None,
        is_story: bool | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        return self.tasks.list(status=status, story_id=story_id, is_story=is_story, limit=limit)

    def list_story_tasks(self, story_id: str) -> list[dict[str, Any]]:
        return self.tasks.children(story_id)

    def update_task(
        self,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        status: str | None = None,
        priority: str | None = None,
        tags: Iterable[str] | None = None,
        dependencies: Iterable[str] | None = None,
        add_dependencies: Iterable[str] | None = None,
        remove_dependencies: Iterable[str] | None = None,
    ) -> dict[str, Any]:
        task = self.tasks.update(
            task_id,
            title=title,
            description=description,
            status=status,
            priority=priority,
            tags=tags,
            dependencies=dependencies,
            add_dependencies=add_dependencies,
            remove_dependencies=remove_dependencies,
        )
        self._invalidate(_ORDER_PREFIX, _USAGE_PREFIX)
        return task

    def set_status(self, task_id: str, status: str) -> dict[str, Any]:
        return self.update_task(task_id, status=status)

    def add_dependency(self, task_id: str, depends_on: str) -> dict[str, Any]:
        task = self.tasks.add_dependency(task_id, depends_on)
        self._invalidate(_ORDER_PREFIX)
        return task

    def remove_dependency(self, task_id: str, depends_on: str) -> dict[str, Any]:
        task = self.tasks.remove_dependency(task_id, depends_on)
        self._invalidate(_ORDER_PREFIX)
        return task

    def delete_task(self, task_id: str) -> dict[str, Any]:
        try:
            return self.guard.delete_task(task_id)
        finally:
            self._invalidate()

    def delete_story(self, story_id: str, *, force: bool = False) -> dict[str, Any]:
        try:
            return self.guard.delete_story(story_id, force=force)
        finally:
            self._invalidate()

    # resource graph

    def save_dependencies(
        self,
        task_id: str,
        resources: Iterable[ResourceSpec | Mapping[str, Any]],
    ) -> dict[str, Any]:
        task_key = str(task_id or "").strip()
        resource_ids = self.resources.save(task_key, resources)
        # an upsert can change a shared resource's path in other tasks' graphs
        self._invalidate(_GRAPH_PREFIX, _USAGE_PREFIX)
        conflicts = self.get_conflicts(task_key)
        self._emit(
            make_event(
                DEPENDENCIES_SAVED,
                {
                    "task_id": task_key,
                    "resource_ids": list(resource_ids),
                    "conflict_count": len(conflicts),
                },
                timestamp=now_ms(),
            )
        )
        return {"task_id": task_key, "resource_ids": resource_ids, "conflicts": conflicts}

    def get_dependency_graph(self, task_id: str) -> dict[str, list[dict[str, Any]]]:
        task_key = str(task_id or "").strip()
        return self._cached(
            f"{_GRAPH_PREFIX}{task_key}",
            lambda: self.resources.dependency_graph(task_key),
            ttl_s=self.config.cache.dependency_graph_ttl_s,
        )

    def get_resource_usage(self, resource_id: str) -> dict[str, Any]:
        resource_key = str(resource_id or "").strip()
        return self._cached(
            f"{_USAGE_PREFIX}{resource_key}",
            lambda: self.resources.usage(resource_key),
            ttl_s=self.config.cache.resource_usage_ttl_s,
        )

    def get_conflicts(self, task_id: str) -> list[dict[str, Any]]:
        return [conflict.to_dict() for conflict in self.detector.conflicts_for(task_id)]

    # derived views

    def get_execution_order(
        self,
        *,
        story_id: str | None = None,
        status: str | None = None,
    ) -> ExecutionOrder:
        return self.ordering.execution_order(story_id=story_id, status=status)

    def get_user_story_health(self) -> list[dict[str, Any]]:
        if not self.db.exists():
            return []
        with self.db.reader() as conn:
            return story_health(conn)

    def safe_delete_by_status(self, status: str) -> dict[str, Any]:
        result = self.guard.safe_delete_by_status(status)
        self._invalidate()
        return result
